import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_TRUTHY = ("true", "1", "yes", "on")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    es_cluster: str
    es_region: str
    index_prefix: str

    # --- Optional Variables with Defaults ---
    service_name: str
    environment: str
    log_level: str
    page_size: int
    document_type: str | None
    request_timeout_seconds: int
    stable_document_ids: bool
    spool_file_max_size_mb: int
    timeout_guard_threshold_seconds: int

    # --- Optional signing credentials (default credential chain otherwise) ---
    es_access_key: str | None = None
    es_access_secret: str | None = None

    # --- Derived Properties ---
    @property
    def spool_file_max_size_bytes(self) -> int:
        return self.spool_file_max_size_mb * 1_048_576

    @property
    def timeout_guard_threshold_ms(self) -> int:
        return self.timeout_guard_threshold_seconds * 1000

    @property
    def has_static_credentials(self) -> bool:
        return bool(self.es_access_key and self.es_access_secret)

    def __repr__(self) -> str:
        # Keep the secret out of log lines.
        return (
            f"AppConfig(es_cluster={self.es_cluster!r}, es_region={self.es_region!r}, "
            f"index_prefix={self.index_prefix!r}, page_size={self.page_size}, "
            f"static_credentials={self.has_static_credentials})"
        )

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            es_cluster = os.environ["ES_CLUSTER"]
            es_region = os.environ["ES_REGION"]
            index_prefix = os.environ["ES_INDEXPREFIX"]

            if not es_cluster.startswith(("http://", "https://")):
                raise ValueError("ES_CLUSTER must be an http(s) URL.")
            if not index_prefix:
                raise ValueError("ES_INDEXPREFIX must not be empty.")

            service_name = os.getenv("SERVICE_NAME", "elb-log-ingest")
            environment = os.getenv("ENVIRONMENT", "prod")

            # --- Handle optional and numeric variables with validation ---
            page_size = int(os.getenv("ES_PUSH_PAGE_SIZE", "10000"))
            if page_size <= 0:
                raise ValueError("ES_PUSH_PAGE_SIZE must be a positive integer.")

            request_timeout_seconds = int(os.getenv("ES_REQUEST_TIMEOUT_SECONDS", "60"))
            if request_timeout_seconds <= 0:
                raise ValueError("ES_REQUEST_TIMEOUT_SECONDS must be a positive integer.")

            spool_file_max_size_mb = int(os.getenv("SPOOL_FILE_MAX_SIZE_MB", "64"))
            if spool_file_max_size_mb <= 0:
                raise ValueError("SPOOL_FILE_MAX_SIZE_MB must be a positive integer.")

            timeout_guard_threshold_seconds = int(
                os.getenv("TIMEOUT_GUARD_THRESHOLD_SECONDS", "10")
            )
            if timeout_guard_threshold_seconds < 0:
                raise ValueError(
                    "TIMEOUT_GUARD_THRESHOLD_SECONDS must be a non-negative integer."
                )

            document_type = os.getenv("ES_DOCUMENT_TYPE", "").strip() or None

            stable_document_ids = (
                os.getenv("STABLE_DOCUMENT_IDS", "true").lower() in _TRUTHY
            )

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            es_access_key = os.getenv("ES_ACCESS_KEY") or None
            es_access_secret = os.getenv("ES_ACCESS_SECRET") or None
            if bool(es_access_key) != bool(es_access_secret):
                raise ValueError(
                    "ES_ACCESS_KEY and ES_ACCESS_SECRET must be set together."
                )

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            es_cluster=es_cluster,
            es_region=es_region,
            index_prefix=index_prefix,
            service_name=service_name,
            environment=environment,
            log_level=log_level,
            page_size=page_size,
            document_type=document_type,
            request_timeout_seconds=request_timeout_seconds,
            stable_document_ids=stable_document_ids,
            spool_file_max_size_mb=spool_file_max_size_mb,
            timeout_guard_threshold_seconds=timeout_guard_threshold_seconds,
            es_access_key=es_access_key,
            es_access_secret=es_access_secret,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
