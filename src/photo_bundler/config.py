import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_MIN_S3_PART_SIZE_MB = 5
_MAX_PRESIGN_EXPIRY_SECONDS = 604_800
_OBJECT_KEY_LAYOUTS = ("timestamped", "event")


def _optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Worker configuration loaded from environment variables."""

    # --- Required Variables ---
    job_queue_url: str
    distribution_bucket: str
    service_name: str
    environment: str

    # --- Storage ---
    aws_region: str | None
    s3_endpoint_url: str | None
    kms_key_id: str | None
    public_base_url: str | None
    download_url_expiry_seconds: int
    object_key_layout: str

    # --- Notifications ---
    notification_webhook_urls: tuple[str, ...]
    notification_timeout_seconds: float

    # --- Archive & Upload ---
    compression_level: int
    min_part_size_mb: int
    max_part_upload_attempts: int
    part_retry_backoff_seconds: float
    max_concurrent_part_uploads: int
    pipe_buffer_mb: int
    spool_file_max_size_mb: int

    # --- Fetching ---
    fetch_timeout_seconds: float
    max_redirects: int

    # --- Queue polling & lifecycle ---
    poll_wait_seconds: int
    poll_error_backoff_seconds: float
    visibility_timeout_seconds: int | None
    idle_shutdown_seconds: int
    idle_check_interval_seconds: int
    health_port: int
    log_level: str

    # --- Derived Properties ---
    @property
    def min_part_size_bytes(self) -> int:
        return self.min_part_size_mb * 1_048_576

    @property
    def pipe_buffer_bytes(self) -> int:
        return self.pipe_buffer_mb * 1_048_576

    @property
    def spool_file_max_size_bytes(self) -> int:
        return self.spool_file_max_size_mb * 1_048_576

    @property
    def health_enabled(self) -> bool:
        return self.health_port > 0

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            job_queue_url = os.environ["JOB_QUEUE_URL"]
            distribution_bucket = os.environ["DISTRIBUTION_BUCKET_NAME"]
            service_name = os.environ["SERVICE_NAME"]
            environment = os.environ["ENVIRONMENT"]

            # --- Storage ---
            public_base_url = _optional("PUBLIC_BASE_URL")
            if public_base_url:
                public_base_url = public_base_url.rstrip("/")

            download_url_expiry_seconds = int(
                os.getenv("DOWNLOAD_URL_EXPIRY_SECONDS", str(_MAX_PRESIGN_EXPIRY_SECONDS))
            )
            if not 0 < download_url_expiry_seconds <= _MAX_PRESIGN_EXPIRY_SECONDS:
                raise ValueError(
                    "DOWNLOAD_URL_EXPIRY_SECONDS must be between 1 and "
                    f"{_MAX_PRESIGN_EXPIRY_SECONDS}."
                )

            object_key_layout = os.getenv("OBJECT_KEY_LAYOUT", "timestamped").lower()
            if object_key_layout not in _OBJECT_KEY_LAYOUTS:
                raise ValueError(
                    f"OBJECT_KEY_LAYOUT must be one of {list(_OBJECT_KEY_LAYOUTS)}, "
                    f"not '{object_key_layout}'"
                )

            # --- Notifications ---
            notification_webhook_urls = tuple(
                url.strip()
                for url in os.getenv("NOTIFICATION_WEBHOOK_URLS", "").split(",")
                if url.strip()
            )
            notification_timeout_seconds = float(
                os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10")
            )
            if notification_timeout_seconds <= 0:
                raise ValueError("NOTIFICATION_TIMEOUT_SECONDS must be positive.")

            # --- Archive & Upload ---
            compression_level = int(os.getenv("COMPRESSION_LEVEL", "6"))
            if not 0 <= compression_level <= 9:
                raise ValueError("COMPRESSION_LEVEL must be between 0 and 9.")

            min_part_size_mb = int(os.getenv("MIN_PART_SIZE_MB", str(_MIN_S3_PART_SIZE_MB)))
            if min_part_size_mb < _MIN_S3_PART_SIZE_MB:
                raise ValueError(
                    f"MIN_PART_SIZE_MB must be at least {_MIN_S3_PART_SIZE_MB}."
                )

            max_part_upload_attempts = int(os.getenv("MAX_PART_UPLOAD_ATTEMPTS", "3"))
            if max_part_upload_attempts < 1:
                raise ValueError("MAX_PART_UPLOAD_ATTEMPTS must be at least 1.")

            part_retry_backoff_seconds = float(
                os.getenv("PART_RETRY_BACKOFF_SECONDS", "1.0")
            )
            if part_retry_backoff_seconds < 0:
                raise ValueError("PART_RETRY_BACKOFF_SECONDS must be non-negative.")

            max_concurrent_part_uploads = int(
                os.getenv("MAX_CONCURRENT_PART_UPLOADS", "2")
            )
            if max_concurrent_part_uploads < 1:
                raise ValueError("MAX_CONCURRENT_PART_UPLOADS must be at least 1.")

            pipe_buffer_mb = int(os.getenv("PIPE_BUFFER_MB", "8"))
            if pipe_buffer_mb <= 0:
                raise ValueError("PIPE_BUFFER_MB must be a positive integer.")

            spool_file_max_size_mb = int(os.getenv("SPOOL_FILE_MAX_SIZE_MB", "64"))
            if spool_file_max_size_mb <= 0:
                raise ValueError("SPOOL_FILE_MAX_SIZE_MB must be a positive integer.")

            # --- Fetching ---
            fetch_timeout_seconds = float(os.getenv("FETCH_TIMEOUT_SECONDS", "60"))
            if fetch_timeout_seconds <= 0:
                raise ValueError("FETCH_TIMEOUT_SECONDS must be positive.")

            max_redirects = int(os.getenv("MAX_REDIRECTS", "5"))
            if max_redirects < 0:
                raise ValueError("MAX_REDIRECTS must be a non-negative integer.")

            # --- Queue polling & lifecycle ---
            poll_wait_seconds = int(os.getenv("POLL_WAIT_SECONDS", "20"))
            if not 0 <= poll_wait_seconds <= 20:
                raise ValueError("POLL_WAIT_SECONDS must be between 0 and 20.")

            poll_error_backoff_seconds = float(
                os.getenv("POLL_ERROR_BACKOFF_SECONDS", "5")
            )
            if poll_error_backoff_seconds < 0:
                raise ValueError("POLL_ERROR_BACKOFF_SECONDS must be non-negative.")

            raw_visibility = _optional("VISIBILITY_TIMEOUT_SECONDS")
            visibility_timeout_seconds = int(raw_visibility) if raw_visibility else None
            if visibility_timeout_seconds is not None and visibility_timeout_seconds < 0:
                raise ValueError("VISIBILITY_TIMEOUT_SECONDS must be non-negative.")

            idle_shutdown_seconds = int(os.getenv("IDLE_SHUTDOWN_SECONDS", "600"))
            if idle_shutdown_seconds <= 0:
                raise ValueError("IDLE_SHUTDOWN_SECONDS must be a positive integer.")

            idle_check_interval_seconds = int(
                os.getenv("IDLE_CHECK_INTERVAL_SECONDS", "60")
            )
            if idle_check_interval_seconds <= 0:
                raise ValueError(
                    "IDLE_CHECK_INTERVAL_SECONDS must be a positive integer."
                )

            health_port = int(os.getenv("HEALTH_PORT", "8080"))
            if not 0 <= health_port <= 65535:
                raise ValueError("HEALTH_PORT must be between 0 and 65535.")

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
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
            job_queue_url=job_queue_url,
            distribution_bucket=distribution_bucket,
            service_name=service_name,
            environment=environment,
            aws_region=_optional("AWS_REGION"),
            s3_endpoint_url=_optional("S3_ENDPOINT_URL"),
            kms_key_id=_optional("KMS_KEY_ID"),
            public_base_url=public_base_url,
            download_url_expiry_seconds=download_url_expiry_seconds,
            object_key_layout=object_key_layout,
            notification_webhook_urls=notification_webhook_urls,
            notification_timeout_seconds=notification_timeout_seconds,
            compression_level=compression_level,
            min_part_size_mb=min_part_size_mb,
            max_part_upload_attempts=max_part_upload_attempts,
            part_retry_backoff_seconds=part_retry_backoff_seconds,
            max_concurrent_part_uploads=max_concurrent_part_uploads,
            pipe_buffer_mb=pipe_buffer_mb,
            spool_file_max_size_mb=spool_file_max_size_mb,
            fetch_timeout_seconds=fetch_timeout_seconds,
            max_redirects=max_redirects,
            poll_wait_seconds=poll_wait_seconds,
            poll_error_backoff_seconds=poll_error_backoff_seconds,
            visibility_timeout_seconds=visibility_timeout_seconds,
            idle_shutdown_seconds=idle_shutdown_seconds,
            idle_check_interval_seconds=idle_check_interval_seconds,
            health_port=health_port,
            log_level=log_level,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the worker configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading worker configuration from environment...")
    return AppConfig.load_from_env()
