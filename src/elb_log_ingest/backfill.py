#!/usr/bin/env python

"""
Re-ingest access-log objects that already sit in S3.

Reads the same environment configuration as the Lambda function, then runs
the pipeline for each requested key, one after another:

    python -m elb_log_ingest.backfill --bucket my-logs --prefix AWSLogs/2024/05/
    python -m elb_log_ingest.backfill --bucket my-logs --key a.log.gz --key b.log.gz
"""

import argparse
import logging
import sys
from typing import Iterable

from rich.console import Console
from rich.table import Table

from .clients import build_s3_client, build_search_client
from .config import get_config
from .exceptions import LogIngestError, get_error_context
from .patterns import PatternSet
from .pipeline import ObjectSource, process_object
from .stats import FileRunStats

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Re-ingest load balancer access logs from S3.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--bucket", required=True, help="Bucket holding the logs.")
    selection = parser.add_mutually_exclusive_group(required=True)
    selection.add_argument("--prefix", help="Ingest every object under this prefix.")
    selection.add_argument(
        "--key", action="append", help="Ingest this key (may be repeated)."
    )
    parser.add_argument("--region", help="Region of the bucket.")
    parser.add_argument(
        "--stop-on-error",
        action="store_true",
        help="Abort at the first file that fails.",
    )
    return parser.parse_args(argv)


def _summary_table(results: Iterable[tuple[str, FileRunStats | None, str]]) -> Table:
    table = Table(title="Backfill summary")
    table.add_column("Key")
    table.add_column("Status")
    table.add_column("Lines", justify="right")
    table.add_column("Indexed", justify="right")
    table.add_column("Errors", justify="right")
    for key, stats, status in results:
        if stats is None:
            table.add_row(key, f"[red]{status}[/red]", "-", "-", "-")
        else:
            table.add_row(
                key,
                f"[green]{status}[/green]",
                str(stats.lines_seen),
                str(stats.lines_indexed),
                str(stats.errors),
            )
    return table


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    console = Console()
    config = get_config()
    logging.basicConfig(level=config.log_level)

    s3_client = build_s3_client(args.region)
    search_client = build_search_client(config)
    patterns = PatternSet()

    keys: Iterable[str] = args.key or s3_client.iter_keys(args.bucket, args.prefix)
    results: list[tuple[str, FileRunStats | None, str]] = []
    failed = 0

    try:
        for key in keys:
            source = ObjectSource(bucket=args.bucket, key=key, region=args.region)
            try:
                stats = process_object(s3_client, search_client, source, config, patterns)
                results.append((key, stats, "OK"))
            except LogIngestError as e:
                failed += 1
                logger.error(
                    f"Failed to ingest {source.uri}: {e}", extra=get_error_context(e)
                )
                results.append((key, None, e.error_code))
                if args.stop_on_error:
                    break
            except Exception as e:
                failed += 1
                logger.exception(
                    f"Unexpected error ingesting {source.uri}.",
                    extra={"error_type": type(e).__name__},
                )
                results.append((key, None, type(e).__name__))
                if args.stop_on_error:
                    break
    finally:
        search_client.close()

    console.print(_summary_table(results))
    console.print(f"{len(results) - failed} succeeded, {failed} failed.")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
