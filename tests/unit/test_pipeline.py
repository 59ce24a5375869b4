# tests/unit/test_pipeline.py

import dataclasses
import gzip
import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ReadTimeoutError, ResponseStreamingError
from opensearchpy.exceptions import ConnectionError as SearchConnectionError

from elb_log_ingest.exceptions import (
    BulkIndexError,
    IndexingTimeoutError,
    S3ObjectNotFoundError,
    S3TimeoutError,
)
from elb_log_ingest.indexer import BatchingIndexer, Deadline
from elb_log_ingest.patterns import PatternSet
from elb_log_ingest.pipeline import (
    ObjectSource,
    document_id,
    process_object,
    process_stream,
)
from elb_log_ingest.stats import FileRunStats
from elb_log_ingest.transform import RecordTransformer

from conftest import CLB_LINE, alb_line, bulk_ok, gzip_members


@pytest.fixture(scope="module")
def patterns() -> PatternSet:
    return PatternSet()


def _s3_client_returning(data: bytes) -> MagicMock:
    s3_client = MagicMock()
    s3_client.get_object_stream.return_value = (io.BytesIO(data), len(data))
    return s3_client


def _indexed_documents(search_client) -> list[dict]:
    return [doc for call in search_client.bulk.call_args_list for doc in call.kwargs["body"][1::2]]


# --- process_object ---


def test_multi_member_gzip_object_is_indexed_in_order(
    patterns, search_client, app_config
):
    lines = [alb_line(n) for n in range(6)]
    blob = gzip_members(
        ("\n".join(lines[:2]) + "\n").encode(),
        ("\n".join(lines[2:5]) + "\n").encode(),
        (lines[5] + "\n").encode(),
    )
    source = ObjectSource(bucket="source-bucket", key="AWSLogs/elb.log.gz")

    stats = process_object(
        _s3_client_returning(blob), search_client, source, app_config, patterns
    )

    documents = _indexed_documents(search_client)
    assert [d["trace_id"] for d in documents] == [f"1-58337281-{n:024d}" for n in range(6)]
    assert all(d["logbucket"] == "source-bucket" for d in documents)
    assert stats.gzip_members == 3
    assert stats.gzip_member_failures == 0
    assert stats.lines_seen == 6
    assert stats.lines_indexed == 6
    assert stats.bytes_in == len(blob)


def test_plain_object_uses_classic_pattern(patterns, search_client, app_config):
    data = (CLB_LINE + "\n" + CLB_LINE + "\n").encode()
    source = ObjectSource(bucket="b", key="AWSLogs/elb.log")

    stats = process_object(_s3_client_returning(data), search_client, source, app_config, patterns)

    assert stats.lines_indexed == 2
    assert stats.gzip_candidates == 0
    assert _indexed_documents(search_client)[0]["elb"] == "my-loadbalancer"


def test_one_bad_line_among_many(patterns, search_client, app_config):
    lines = [alb_line(n) for n in range(1000)]
    lines[500] = "garbage that matches nothing"
    blob = gzip.compress(("\n".join(lines) + "\n").encode(), mtime=0)
    source = ObjectSource(bucket="b", key="elb.log.gz")

    stats = process_object(_s3_client_returning(blob), search_client, source, app_config, patterns)

    assert stats.lines_seen == 1000
    assert stats.parse_misses == 1
    assert stats.lines_indexed == 999
    assert stats.item_errors == 0
    assert len(_indexed_documents(search_client)) == 999


def test_stable_document_ids(patterns, search_client, app_config):
    blob = gzip_members((alb_line(1) + "\n" + alb_line(2) + "\n").encode())
    source = ObjectSource(bucket="b", key="elb.log.gz")

    process_object(_s3_client_returning(blob), search_client, source, app_config, patterns)

    actions = search_client.bulk.call_args.kwargs["body"][::2]
    assert [a["index"]["_id"] for a in actions] == [
        document_id("s3://b/elb.log.gz", 1),
        document_id("s3://b/elb.log.gz", 2),
    ]


def test_document_ids_can_be_disabled(patterns, search_client, app_config):
    config = dataclasses.replace(app_config, stable_document_ids=False)
    blob = gzip_members((alb_line(1) + "\n").encode())
    source = ObjectSource(bucket="b", key="elb.log.gz")

    process_object(_s3_client_returning(blob), search_client, source, config, patterns)

    actions = search_client.bulk.call_args.kwargs["body"][::2]
    assert "_id" not in actions[0]["index"]


def test_document_id_is_deterministic():
    assert document_id("s3://b/k", 7) == document_id("s3://b/k", 7)
    assert document_id("s3://b/k", 7) != document_id("s3://b/k", 8)


def test_s3_errors_propagate(patterns, search_client, app_config):
    s3_client = MagicMock()
    s3_client.get_object_stream.side_effect = S3ObjectNotFoundError(bucket="b", key="k.gz")

    with pytest.raises(S3ObjectNotFoundError):
        process_object(
            s3_client, search_client, ObjectSource("b", "k.gz"), app_config, patterns
        )

    search_client.bulk.assert_not_called()


# --- process_stream ---


def _stream_setup(patterns, client, page_size):
    stats = FileRunStats(bucket="b", key="k.gz")
    transformer = RecordTransformer(patterns.alb, patterns.domain, source_id="b")
    indexer = BatchingIndexer(client, "elb", stats, page_size=page_size)
    return stats, transformer, indexer


def test_flush_failure_aborts_file_and_keeps_earlier_flushes(patterns):
    client = MagicMock()
    responses = iter([None, SearchConnectionError("N/A", "refused", Exception("down"))])

    def bulk(body, **kwargs):
        outcome = next(responses)
        if isinstance(outcome, Exception):
            raise outcome
        return bulk_ok(body)

    client.bulk.side_effect = bulk
    stats, transformer, indexer = _stream_setup(patterns, client, page_size=10)
    data = "\n".join(alb_line(n) for n in range(25)).encode()

    with pytest.raises(BulkIndexError):
        process_stream(io.BytesIO(data), transformer, indexer, stats)

    assert client.bulk.call_count == 2
    assert stats.lines_indexed == 10
    assert stats.flushes == 1
    client.delete_by_query.assert_not_called()


def test_blank_lines_are_skipped(patterns, search_client):
    stats, transformer, indexer = _stream_setup(patterns, search_client, page_size=10)
    data = f"\n{alb_line(1)}\n\n   \n{alb_line(2)}".encode()

    process_stream(io.BytesIO(data), transformer, indexer, stats)

    assert stats.lines_seen == 2
    assert stats.lines_indexed == 2
    assert stats.parse_misses == 0


def test_undecodable_bytes_do_not_abort(patterns, search_client):
    stats, transformer, indexer = _stream_setup(patterns, search_client, page_size=10)
    data = b"\xff\xfe broken\n" + alb_line(1).encode() + b"\n"

    process_stream(io.BytesIO(data), transformer, indexer, stats)

    assert stats.parse_misses == 1
    assert stats.lines_indexed == 1


def test_process_stream_leaves_source_open(patterns, search_client):
    stats, transformer, indexer = _stream_setup(patterns, search_client, page_size=10)
    source = io.BytesIO(alb_line(1).encode())

    process_stream(source, transformer, indexer, stats)

    assert not source.closed


def test_object_source_uri():
    assert ObjectSource("bucket", "a/b.log.gz").uri == "s3://bucket/a/b.log.gz"


def test_file_run_stats_error_total():
    stats = FileRunStats(
        bucket="b",
        key="k",
        parse_misses=2,
        dropped_records=1,
        item_errors=3,
        gzip_member_failures=4,
    )

    assert stats.errors == 10
    assert stats.to_dict()["errors"] == 10


# --- Read failures and deadlines ---


class FailingBody(io.RawIOBase):
    """A response body whose connection drops on the first read."""

    def __init__(self, error: Exception):
        super().__init__()
        self.error = error

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        raise self.error


@pytest.mark.parametrize("key", ["AWSLogs/elb.log.gz", "AWSLogs/elb.log"])
@pytest.mark.parametrize(
    "error",
    [
        ReadTimeoutError(endpoint_url="https://s3.eu-west-1.amazonaws.com"),
        ResponseStreamingError(error=Exception("connection reset")),
    ],
)
def test_body_read_failures_become_s3_timeouts(
    patterns, search_client, app_config, key, error
):
    s3_client = MagicMock()
    s3_client.get_object_stream.return_value = (FailingBody(error), 1024)

    with pytest.raises(S3TimeoutError) as exc_info:
        process_object(s3_client, search_client, ObjectSource("b", key), app_config, patterns)

    assert exc_info.value.context["key"] == key
    search_client.bulk.assert_not_called()


def _expired_deadline() -> Deadline:
    return Deadline(lambda: 1_000, guard_ms=10_000)


def test_expired_deadline_stops_reading_before_any_flush(patterns, search_client):
    stats, transformer, indexer = _stream_setup(patterns, search_client, page_size=10_000)
    data = "\n".join(alb_line(n) for n in range(1500)).encode()

    with pytest.raises(IndexingTimeoutError):
        process_stream(
            io.BytesIO(data), transformer, indexer, stats, deadline=_expired_deadline()
        )

    assert stats.lines_seen == 999
    search_client.bulk.assert_not_called()


def test_expired_deadline_stops_gzip_reconstruction(patterns, search_client, app_config):
    blob = gzip_members((alb_line(1) + "\n").encode(), (alb_line(2) + "\n").encode())
    source = ObjectSource(bucket="b", key="elb.log.gz")

    with pytest.raises(IndexingTimeoutError):
        process_object(
            _s3_client_returning(blob),
            search_client,
            source,
            app_config,
            patterns,
            deadline=_expired_deadline(),
        )

    search_client.bulk.assert_not_called()


def test_live_deadline_lets_the_object_through(patterns, search_client, app_config):
    blob = gzip_members((alb_line(1) + "\n").encode())
    source = ObjectSource(bucket="b", key="elb.log.gz")

    stats = process_object(
        _s3_client_returning(blob),
        search_client,
        source,
        app_config,
        patterns,
        deadline=Deadline(lambda: 300_000, guard_ms=10_000),
    )

    assert stats.lines_indexed == 1
