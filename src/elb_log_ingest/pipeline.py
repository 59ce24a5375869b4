# src/elb_log_ingest/pipeline.py

"""
End-to-end ingestion of one access-log object.

`process_object` fetches the object from S3, reconstructs the plaintext of
gzip objects, and hands the line stream to `process_stream`, which parses,
buffers and flushes the records. Line-level problems are counted on the
returned `FileRunStats`; a failed flush propagates to the caller and fails
the whole object. Flushes that already succeeded stay applied.
"""

import hashlib
import io
import logging
from contextlib import ExitStack, closing
from dataclasses import dataclass
from typing import BinaryIO

from opensearchpy import OpenSearch

from .clients import S3Client, body_read_errors
from .config import AppConfig
from .gzip_members import reconstruct_stream
from .indexer import BatchingIndexer, Deadline
from .patterns import PatternSet, is_compressed_key
from .stats import FileRunStats
from .transform import RecordTransformer

logger = logging.getLogger(__name__)

DEADLINE_CHECK_LINES = 1_000


@dataclass(frozen=True)
class ObjectSource:
    """One newly-arrived object, as described by its notification."""

    bucket: str
    key: str
    region: str | None = None

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


def document_id(source_uri: str, line_number: int) -> str:
    """Deterministic id, so re-processing an object overwrites its documents."""
    return hashlib.sha256(f"{source_uri}#{line_number}".encode("utf-8")).hexdigest()


def process_stream(
    stream: BinaryIO,
    transformer: RecordTransformer,
    indexer: BatchingIndexer,
    stats: FileRunStats,
    id_namespace: str | None = None,
    deadline: Deadline | None = None,
) -> FileRunStats:
    """
    Parse every line of *stream* into *indexer*, then flush the remainder.

    Lines that do not match are counted as parse misses and skipped. When
    *id_namespace* is given, each document gets a stable id derived from it
    and the line number. A *deadline* is checked every
    `DEADLINE_CHECK_LINES` lines and raises `IndexingTimeoutError` once
    spent.
    """
    reader = io.TextIOWrapper(stream, encoding="utf-8", errors="replace", newline=None)
    try:
        for line_number, line in enumerate(reader, start=1):
            if deadline is not None and line_number % DEADLINE_CHECK_LINES == 0:
                deadline.budget_ms()
            line = line.rstrip("\n")
            if not line.strip():
                continue
            stats.lines_seen += 1

            record = transformer.transform(line)
            if record is None:
                stats.parse_misses += 1
                logger.debug("Line did not match.", extra={"line_number": line_number})
                continue

            doc_id = document_id(id_namespace, line_number) if id_namespace else None
            indexer.add(record, doc_id=doc_id)

        indexer.close()
    finally:
        # The caller owns the underlying stream.
        reader.detach()

    return stats


def process_object(
    s3_client: S3Client,
    search_client: OpenSearch,
    source: ObjectSource,
    config: AppConfig,
    patterns: PatternSet,
    deadline: Deadline | None = None,
) -> FileRunStats:
    """Ingest one S3 object and return its counters."""
    logger.info("StartFile", extra={"bucket": source.bucket, "key": source.key})
    stats = FileRunStats(bucket=source.bucket, key=source.key)

    body, content_length = s3_client.get_object_stream(source.bucket, source.key)
    stats.bytes_in = content_length
    logger.info("Size", extra={"key": source.key, "bytes": content_length})

    transformer = RecordTransformer(
        primary=patterns.select(source.key),
        secondary=patterns.domain,
        source_id=source.bucket,
    )
    indexer = BatchingIndexer(
        client=search_client,
        index_prefix=config.index_prefix,
        stats=stats,
        page_size=config.page_size,
        document_type=config.document_type,
        request_timeout=config.request_timeout_seconds,
        deadline=deadline,
    )

    with body_read_errors(source.bucket, source.key), ExitStack() as stack:
        stack.enter_context(closing(body))
        stream: BinaryIO = body
        if is_compressed_key(source.key):
            reconstructed = stack.enter_context(
                reconstruct_stream(
                    body, config.spool_file_max_size_bytes, deadline=deadline
                )
            )
            stats.gzip_candidates = reconstructed.candidates
            stats.gzip_members = reconstructed.members_decoded
            stats.gzip_member_failures = reconstructed.members_failed
            stream = reconstructed.reader

        process_stream(
            stream,
            transformer,
            indexer,
            stats,
            id_namespace=source.uri if config.stable_document_ids else None,
            deadline=deadline,
        )

    logger.info("EndFile", extra=stats.to_dict())
    return stats
