"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import gzip
import json
import os
import types
import uuid
from unittest.mock import MagicMock

import pytest

# The Lambda module reads its configuration at import time, so the
# environment has to be in place before any test module imports it.
os.environ.setdefault("ES_CLUSTER", "https://search-test.eu-west-1.es.amazonaws.com")
os.environ.setdefault("ES_REGION", "eu-west-1")
os.environ.setdefault("ES_INDEXPREFIX", "elb")
os.environ.setdefault("SERVICE_NAME", "elb-log-ingest-test")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "ElbLogIngestTest")

from elb_log_ingest.config import AppConfig  # noqa: E402

ALB_LINE = (
    "https 2018-07-02T22:23:00.186641Z app/my-loadbalancer/50dc6c495c0c9188 "
    "192.168.131.39:2817 10.0.0.1:80 0.086 0.048 0.037 200 200 0 57 "
    '"GET https://www.Example.com:443/path/to?x=1 HTTP/1.1" "curl/7.46.0" '
    "ECDHE-RSA-AES128-GCM-SHA256 TLSv1.2 "
    "arn:aws:elasticloadbalancing:us-east-2:123456789012:targetgroup/my-targets/73e2d6bc24d8a067 "
    '"Root=1-58337281-1d84f3d73c47ec4e58577259" "www.example.com" '
    '"arn:aws:acm:us-east-2:123456789012:certificate/12345678-1234-1234-1234-123456789012" '
    '0 2018-07-02T22:22:48.364000Z "forward" "-" "-" "10.0.0.1:80" "200" "-" "-"'
)

CLB_LINE = (
    "2015-05-13T23:39:43.945958Z my-loadbalancer 192.168.131.39:2817 10.0.0.1:80 "
    '0.000073 0.001048 0.000057 200 200 0 29 "GET http://www.example.com:80/ HTTP/1.1" '
    '"curl/7.38.0" - -'
)


def alb_line(n: int) -> str:
    """A distinct, well-formed ALB line (the trace id carries *n*)."""
    return ALB_LINE.replace("1d84f3d73c47ec4e58577259", f"{n:024d}")


def gzip_members(*chunks: bytes) -> bytes:
    """Concatenate each chunk as its own gzip member."""
    return b"".join(gzip.compress(chunk, mtime=0) for chunk in chunks)


def bulk_ok(body, **kwargs) -> dict:
    """A bulk response in which every document was indexed."""
    items = [
        {"index": {"_index": action["index"]["_index"], "status": 201}}
        for action in body[::2]
    ]
    return {"took": 3, "errors": False, "items": items}


@pytest.fixture
def search_client() -> MagicMock:
    """A stand-in for the OpenSearch client that accepts every document."""
    client = MagicMock()
    client.bulk.side_effect = bulk_ok
    return client


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        es_cluster="https://search-test.eu-west-1.es.amazonaws.com",
        es_region="eu-west-1",
        index_prefix="elb",
        service_name="elb-log-ingest-test",
        environment="test",
        log_level="INFO",
        page_size=10_000,
        document_type=None,
        request_timeout_seconds=60,
        stable_document_ids=True,
        spool_file_max_size_mb=1,
        timeout_guard_threshold_seconds=10,
    )


# ---------- Minimal, realistic dummy events ---------- #
def s3_record(bucket: str = "source-bucket", key: str = "AWSLogs/elb.log.gz") -> dict:
    return {
        "eventVersion": "2.1",
        "eventSource": "aws:s3",
        "awsRegion": "eu-west-1",
        "eventName": "ObjectCreated:Put",
        "s3": {
            "bucket": {"name": bucket},
            "object": {"key": key, "size": 123, "sequencer": "0055AED6DCD90281E5"},
        },
    }


@pytest.fixture
def s3_event() -> dict:
    """A direct S3 notification for a single object."""
    return {"Records": [s3_record()]}


def sqs_message(body: str) -> dict:
    return {
        "messageId": str(uuid.uuid4()),
        "receiptHandle": "ignore",
        "body": body,
        "attributes": {},
        "messageAttributes": {},
        "md5OfBody": "dummy",
        "eventSource": "aws:sqs",
        "eventSourceARN": "arn:aws:sqs:eu-west-1:000000000000:dummy",
        "awsRegion": "eu-west-1",
    }


@pytest.fixture
def sqs_event() -> dict:
    """One SQS record that wraps a *single* S3 PUT event."""
    return {"Records": [sqs_message(json.dumps({"Records": [s3_record()]}))]}


@pytest.fixture
def lambda_context():
    """A *very* small stand-in for the LambdaContext object."""
    return types.SimpleNamespace(
        function_name="elb-log-ingest",
        memory_limit_in_mb=512,
        aws_request_id="req-" + uuid.uuid4().hex,
        invoked_function_arn="arn:aws:lambda:eu-west-1:000000000000:function:dummy",
        get_remaining_time_in_millis=lambda: 300_000,
    )
