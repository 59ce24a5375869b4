"""
The Lambda Adapter for the ELB Log Ingest service.

This module is the main entry point for the AWS Lambda function. It is
responsible for:
1.  Initializing AWS Lambda Powertools (Logger, Tracer, Metrics).
2.  Accepting S3 event notifications, either delivered directly by S3 or
    wrapped in SQS messages.
3.  Validating each notification and running the ingest pipeline for it,
    independently of the others.
4.  Reporting failures so that only the affected files are retried: SQS
    partial batch responses, or an exception for direct invocations.

The S3 and search clients are created once per execution environment and
reused by every invocation.
"""

import json
from functools import lru_cache
from typing import Any, cast

import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.batch.types import (
    PartialItemFailureResponse,
    PartialItemFailures,
)
from aws_lambda_powertools.utilities.typing import LambdaContext
from opensearchpy import OpenSearch

from .clients import S3Client, build_s3_client, build_search_client
from .config import get_config
from .exceptions import (
    IngestBatchError,
    InvalidS3EventError,
    LogIngestError,
    get_error_context,
    is_retryable_error,
)
from .indexer import Deadline
from .patterns import PatternSet
from .pipeline import process_object
from .schemas import S3EventNotificationRecord
from .stats import FileRunStats

# --- Global & Reusable Components ---
CONFIG = get_config()

logger = Logger(service=CONFIG.service_name, level=CONFIG.log_level)
copy_config_to_registered_loggers(source_logger=logger, include={"elb_log_ingest"})
tracer = Tracer(service=CONFIG.service_name)
metrics = Metrics(namespace="ElbLogIngest", service=CONFIG.service_name)

PATTERNS = PatternSet()


@lru_cache(maxsize=None)
def get_s3_client(region: str | None) -> S3Client:
    """One S3 client per region the notifications come from."""
    return build_s3_client(region)


@lru_cache(maxsize=1)
def get_search_client() -> OpenSearch:
    """The single bulk-write client for this execution environment."""
    return build_search_client(CONFIG)


def build_partial_failure_response(
    failed_message_ids: set[str],
) -> PartialItemFailureResponse:
    """
    Given a set of SQS message IDs, return the structure that the
    Lambda partial batch response API expects.
    """
    failures = [
        cast(PartialItemFailures, {"itemIdentifier": mid}) for mid in failed_message_ids
    ]
    return cast(PartialItemFailureResponse, {"batchItemFailures": failures})


def _record_file_metrics(stats: FileRunStats) -> None:
    metrics.add_metric(name="FilesProcessed", unit=MetricUnit.Count, value=1)
    metrics.add_metric(name="LinesIndexed", unit=MetricUnit.Count, value=stats.lines_indexed)
    metrics.add_metric(name="ParseMisses", unit=MetricUnit.Count, value=stats.parse_misses)
    metrics.add_metric(
        name="DroppedRecords", unit=MetricUnit.Count, value=stats.dropped_records
    )
    metrics.add_metric(name="ItemErrors", unit=MetricUnit.Count, value=stats.item_errors)
    metrics.add_metric(
        name="GzipMemberFailures",
        unit=MetricUnit.Count,
        value=stats.gzip_member_failures,
    )


@tracer.capture_method
def ingest_record(raw_record: dict[str, Any], context: LambdaContext) -> FileRunStats:
    """Validate one S3 event record and ingest the object it describes."""
    try:
        record = S3EventNotificationRecord.model_validate(raw_record)
    except pydantic.ValidationError as e:
        metrics.add_metric(name="InvalidS3Records", unit=MetricUnit.Count, value=1)
        raise InvalidS3EventError(
            "Invalid S3 record failed validation.",
            context={"validation_errors": e.errors(include_url=False)},
        ) from e

    source = record.to_object_source()
    stats = process_object(
        s3_client=get_s3_client(source.region),
        search_client=get_search_client(),
        source=source,
        config=CONFIG,
        patterns=PATTERNS,
        deadline=Deadline.from_context(context, CONFIG.timeout_guard_threshold_ms),
    )
    _record_file_metrics(stats)
    return stats


def _describe(raw_record: dict[str, Any]) -> str:
    if not isinstance(raw_record, dict):
        return "unknown-bucket/unknown-key"
    s3 = raw_record.get("s3") or {}
    bucket = (s3.get("bucket") or {}).get("name", "unknown-bucket")
    key = (s3.get("object") or {}).get("key", "unknown-key")
    return f"{bucket}/{key}"


def _ingest_or_classify(
    raw_record: dict[str, Any], context: LambdaContext, retry_invalid: bool
) -> bool:
    """
    Ingest one record. Returns False when the record should be retried;
    non-retryable failures are logged and reported as handled. Invalid
    records are only sent back when *retry_invalid* is set, so that SQS can
    move them to its dead-letter queue.
    """
    target = _describe(raw_record)
    try:
        ingest_record(raw_record, context)
        return True
    except InvalidS3EventError as e:
        logger.warning(f"Invalid S3 record: {e}", extra=get_error_context(e))
        return not retry_invalid
    except LogIngestError as e:
        metrics.add_metric(name="FilesFailed", unit=MetricUnit.Count, value=1)
        if is_retryable_error(e):
            logger.warning(
                f"Retryable error ingesting {target}: {e}", extra=get_error_context(e)
            )
            return False
        logger.error(
            f"Non-retryable error ingesting {target}: {e}", extra=get_error_context(e)
        )
        return True
    except Exception as e:
        metrics.add_metric(name="FilesFailed", unit=MetricUnit.Count, value=1)
        logger.exception(
            f"Unexpected error ingesting {target}.",
            extra={"error_type": type(e).__name__},
        )
        return False


def _handle_s3_event(s3_records: list[dict], context: LambdaContext) -> dict:
    failed: list[str] = []
    for raw_record in s3_records:
        if not _ingest_or_classify(raw_record, context, retry_invalid=False):
            failed.append(_describe(raw_record))

    if failed:
        raise IngestBatchError(failed_keys=failed)
    return {"processed": len(s3_records)}


def _handle_sqs_event(
    sqs_records: list[dict], context: LambdaContext
) -> PartialItemFailureResponse:
    failed_message_ids: set[str] = set()

    for sqs_record in sqs_records:
        message_id = sqs_record["messageId"]
        try:
            body = json.loads(sqs_record["body"])
            if not isinstance(body, dict):
                raise TypeError(f"expected a JSON object, got {type(body).__name__}")
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(
                "Failed to parse SQS message body.",
                extra={"messageId": message_id, "error": str(e)},
            )
            failed_message_ids.add(message_id)
            continue

        if body.get("Event") == "s3:TestEvent":
            logger.info("Ignoring S3 test event.", extra={"messageId": message_id})
            continue

        s3_records = body.get("Records")
        if not s3_records:
            logger.warning(
                "SQS message body has no S3 records.", extra={"messageId": message_id}
            )
            failed_message_ids.add(message_id)
            continue

        for raw_record in s3_records:
            if not _ingest_or_classify(raw_record, context, retry_invalid=True):
                failed_message_ids.add(message_id)

    return build_partial_failure_response(failed_message_ids)


def _is_sqs_event(records: list[dict]) -> bool:
    return bool(records) and records[0].get("eventSource") == "aws:sqs"


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> dict:
    """Main Lambda handler for S3 notifications, direct or via SQS."""
    metrics.add_dimension("environment", CONFIG.environment)
    records: list[dict] = event.get("Records", [])
    logger.info(f"TriggerStart - {len(records)} events found")

    if not records:
        logger.warning("Event did not contain any records. Exiting gracefully.")
        return {"batchItemFailures": []}

    if _is_sqs_event(records):
        response = _handle_sqs_event(records, context)
    else:
        response = _handle_s3_event(records, context)

    logger.info("TriggerFinish")
    return cast(dict, response)
