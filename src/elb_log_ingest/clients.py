# src/elb_log_ingest/clients.py

"""
Client wrappers for the services the ingest pipeline talks to.

`S3Client` wraps a boto3 S3 client and maps botocore failures onto the
service's exception hierarchy. `build_search_client` constructs the single
OpenSearch client used for bulk writes; it is built once per process and
passed explicitly into the pipeline.
"""

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, BinaryIO, Iterator, NoReturn, cast

import boto3
from botocore.credentials import Credentials
from botocore.exceptions import (
    ClientError,
    EndpointConnectionError,
    IncompleteReadError,
    ReadTimeoutError,
    ResponseStreamingError,
)
from opensearchpy import AWSV4SignerAuth, OpenSearch, RequestsHttpConnection

from .config import AppConfig
from .exceptions import (
    ConfigurationError,
    S3AccessDeniedError,
    S3ClientError,
    S3ObjectNotFoundError,
    S3ThrottlingError,
    S3TimeoutError,
)

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

logger = logging.getLogger(__name__)

_THROTTLING_CODES = ("Throttling", "ThrottlingException", "RequestLimitExceeded", "SlowDown")
_TIMEOUT_CODES = ("RequestTimeout", "RequestTimeoutException")


def _raise_for_client_error(
    e: ClientError, operation: str, bucket: str, key: str
) -> NoReturn:
    error_code = e.response["Error"]["Code"]
    error_message = e.response["Error"]["Message"]
    context = {
        "bucket": bucket,
        "key": key,
        "aws_error_code": error_code,
        "aws_error_message": error_message,
    }

    # Map boto3 error codes to our specific exception types
    if error_code in ("NoSuchKey", "NoSuchBucket", "404"):
        raise S3ObjectNotFoundError(bucket=bucket, key=key, context=context) from e
    elif error_code in ("AccessDenied", "403"):
        raise S3AccessDeniedError(bucket=bucket, key=key, context=context) from e
    elif error_code in _THROTTLING_CODES:
        raise S3ThrottlingError(operation, context=context) from e
    elif error_code in _TIMEOUT_CODES:
        raise S3TimeoutError(operation, context=context) from e
    else:
        raise S3ClientError(f"S3 client error: {error_message}", context=context) from e


@contextmanager
def body_read_errors(bucket: str, key: str) -> Iterator[None]:
    """
    Maps botocore failures raised while reading a `StreamingBody` onto the
    same exceptions `S3Client.get_object_stream` raises.
    """
    try:
        yield
    except ClientError as e:
        _raise_for_client_error(e, "GetObjectBody", bucket, key)
    except (
        ReadTimeoutError,
        EndpointConnectionError,
        ResponseStreamingError,
        IncompleteReadError,
    ) as e:
        raise S3TimeoutError(
            "GetObjectBody",
            context={"bucket": bucket, "key": key, "read_error": str(e)},
        ) from e


class S3Client:
    """
    A wrapper for the S3 read operations the ingest pipeline needs.
    """

    def __init__(self, s3_client: "S3ClientType"):
        self._client = s3_client

    def get_object_stream(self, bucket: str, key: str) -> tuple[BinaryIO, int]:
        """
        Retrieves an S3 object's body as a streaming file-like object together
        with its declared content length.
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return cast(BinaryIO, response["Body"]), int(response.get("ContentLength", 0))
        except ClientError as e:
            _raise_for_client_error(e, "GetObject", bucket, key)
        except ReadTimeoutError as e:
            raise S3TimeoutError(
                "GetObject",
                context={"bucket": bucket, "key": key, "timeout_error": str(e)},
            ) from e
        except EndpointConnectionError as e:
            raise S3TimeoutError(
                "GetObject",
                context={"bucket": bucket, "key": key, "connection_error": str(e)},
            ) from e

    def iter_keys(self, bucket: str, prefix: str = "") -> Iterator[str]:
        """Yields every object key under *prefix*, following pagination."""
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    yield item["Key"]
        except ClientError as e:
            _raise_for_client_error(e, "ListObjectsV2", bucket, prefix)
        except (ReadTimeoutError, EndpointConnectionError) as e:
            raise S3TimeoutError(
                "ListObjectsV2",
                context={"bucket": bucket, "prefix": prefix, "error": str(e)},
            ) from e


def build_s3_client(region: str | None = None) -> S3Client:
    return S3Client(s3_client=boto3.client("s3", region_name=region))


def _signing_credentials(config: AppConfig) -> Any:
    if config.has_static_credentials:
        return Credentials(config.es_access_key, config.es_access_secret)

    credentials = boto3.Session().get_credentials()
    if credentials is None:
        raise ConfigurationError(
            "No AWS credentials available to sign search requests.",
            context={"es_region": config.es_region},
        )
    return credentials


def build_search_client(config: AppConfig) -> OpenSearch:
    """
    Constructs the SigV4-signed OpenSearch client for the configured cluster.

    The client keeps a connection pool and is safe to share between
    concurrent bulk calls; build it once and reuse it.
    """
    auth = AWSV4SignerAuth(_signing_credentials(config), config.es_region, "es")
    client = OpenSearch(
        hosts=[config.es_cluster],
        http_auth=auth,
        use_ssl=config.es_cluster.startswith("https://"),
        verify_certs=True,
        connection_class=RequestsHttpConnection,
        timeout=config.request_timeout_seconds,
        max_retries=0,
        retry_on_timeout=False,
    )
    logger.info(
        "Search client initialized.",
        extra={
            "es_cluster": config.es_cluster,
            "es_region": config.es_region,
            "static_credentials": config.has_static_credentials,
        },
    )
    return client
