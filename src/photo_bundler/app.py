"""
The worker process for the photo bundle service.

This module is the main entry point of the long-running worker. It is
responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger and Metrics)
    and wiring the boto3/httpx clients from configuration.
2.  Long-polling the job queue, one job at a time, with an unbounded fixed
    backoff when the queue itself is unreachable.
3.  Invoking the core business logic (`process_job`) for each job.
4.  Notifying the recipient and deleting the message once the job reached a
    terminal state, success or failure.
5.  Keeping the idle-shutdown supervisor informed, so the process exits after
    a quiet period and never in the middle of a job.
"""

import os
import signal
import sys
import time
from typing import Callable

import boto3
from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
from aws_lambda_powertools.metrics import MetricUnit
from botocore.config import Config as BotoConfig

from .clients import QueueClient, S3Client
from .config import AppConfig, get_config
from .core import process_job
from .exceptions import (
    ConfigurationError,
    InvalidJobMessageError,
    QueueAcknowledgeError,
    QueueReceiveError,
    get_error_context,
)
from .fetcher import MediaFetcher
from .health import HealthServer, create_health_app
from .job_source import JobSource, ReceivedJob
from .notifications import NotificationDispatcher
from .retry import RetryPolicy
from .schemas import Job, JobOutcome, JobStatus
from .supervisor import IdleShutdownSupervisor

# --- Global & Reusable Components ---
logger = Logger(service=os.getenv("SERVICE_NAME", "photo-bundler"))
metrics = Metrics(namespace="PhotoBundler", service=os.getenv("SERVICE_NAME", "photo-bundler"))

_JOB_LOG_KEYS = ["event_id", "request_id", "message_id"]


class Worker:
    """Serial job loop: receive → process → notify → acknowledge → idle."""

    def __init__(
        self,
        *,
        source: JobSource,
        s3_client: S3Client,
        fetcher: MediaFetcher,
        dispatcher: NotificationDispatcher,
        supervisor: IdleShutdownSupervisor,
        config: AppConfig,
        receive_retry: RetryPolicy | None = None,
        process: Callable[..., JobOutcome] = process_job,
    ):
        self._source = source
        self._s3_client = s3_client
        self._fetcher = fetcher
        self._dispatcher = dispatcher
        self._supervisor = supervisor
        self._config = config
        self._receive_retry = receive_retry or RetryPolicy.unbounded(
            config.poll_error_backoff_seconds
        )
        self._process = process

    def run(self) -> None:
        """Poll until the supervisor initiates shutdown."""
        logger.info(
            "Starting queue polling",
            extra={"queue_url": self._config.job_queue_url, "bucket": self._config.distribution_bucket},
        )
        consecutive_failures = 0
        while not self._supervisor.shutdown_requested:
            try:
                received = self._source.receive()
                consecutive_failures = 0
            except QueueReceiveError as e:
                consecutive_failures += 1
                delay = self._receive_retry.compute_delay(consecutive_failures)
                metrics.add_metric(name="QueueReceiveErrors", unit=MetricUnit.Count, value=1)
                logger.warning(
                    f"Queue polling error; retrying in {delay:.0f}s",
                    extra=get_error_context(e),
                )
                self._flush_metrics()
                # Sleeping on the shutdown event lets a signal cut the backoff short.
                self._supervisor.wait_for_shutdown(delay)
                continue
            except InvalidJobMessageError as e:
                metrics.add_metric(name="MalformedMessages", unit=MetricUnit.Count, value=1)
                logger.warning("Discarded malformed job message", extra=get_error_context(e))
                self._flush_metrics()
                continue

            if received is not None:
                self.handle(received)

        logger.info("Queue polling stopped")

    def handle(self, received: ReceivedJob) -> JobOutcome | None:
        """Run one job to a terminal state. Returns None if the job was handed back."""
        job = received.job
        if not self._supervisor.mark_busy(job.event_id):
            logger.info(
                "Shutdown in progress; releasing job", extra={"message_id": received.message_id}
            )
            try:
                self._source.release(received)
            except QueueAcknowledgeError as e:
                logger.warning("Could not release message", extra=e.to_dict())
            return None

        logger.append_keys(
            event_id=job.event_id, request_id=job.request_id, message_id=received.message_id
        )
        try:
            outcome = self._run_job(job)
            if not self._dispatcher.notify(job, outcome):
                metrics.add_metric(name="NotificationFailures", unit=MetricUnit.Count, value=1)
                logger.warning(
                    "Recipient could not be notified; job is not retried",
                    extra={"status": outcome.status.value, "download_url": outcome.download_url},
                )

            try:
                self._source.acknowledge(received)
            except QueueAcknowledgeError as e:
                logger.error(
                    "Failed to delete job message; it may be processed again",
                    extra=e.to_dict(),
                )

            self._record_metrics(outcome)
            return outcome
        finally:
            logger.remove_keys(_JOB_LOG_KEYS)
            self._supervisor.mark_idle()
            self._flush_metrics()

    def _run_job(self, job: Job) -> JobOutcome:
        started = time.monotonic()
        try:
            return self._process(
                job,
                self._s3_client,
                self._fetcher,
                self._config,
                on_part_retry=self._count_part_retry,
            )
        except Exception:
            logger.exception("Unexpected error while processing job.")
            return JobOutcome(
                status=JobStatus.FAILED,
                succeeded_count=0,
                failed_items=(),
                processing_time_seconds=time.monotonic() - started,
                total_items=len(job.items),
                error="An unexpected error occurred while preparing your download.",
                error_code="UNEXPECTED_ERROR",
            )

    @staticmethod
    def _count_part_retry(part_number: int, attempt: int, error: BaseException) -> None:
        metrics.add_metric(name="PartUploadRetries", unit=MetricUnit.Count, value=1)

    @staticmethod
    def _record_metrics(outcome: JobOutcome) -> None:
        if outcome.is_success:
            metrics.add_metric(name="JobsSucceeded", unit=MetricUnit.Count, value=1)
            metrics.add_metric(name="ArchiveBytes", unit=MetricUnit.Bytes, value=outcome.archive_size_bytes)
            metrics.add_metric(name="PartsUploaded", unit=MetricUnit.Count, value=outcome.parts_uploaded)
        else:
            metrics.add_metric(name="JobsFailed", unit=MetricUnit.Count, value=1)
        metrics.add_metric(name="ItemsBundled", unit=MetricUnit.Count, value=outcome.succeeded_count)
        metrics.add_metric(name="ItemsFailed", unit=MetricUnit.Count, value=len(outcome.failed_items))
        metrics.add_metric(
            name="JobDurationSeconds",
            unit=MetricUnit.Seconds,
            value=round(outcome.processing_time_seconds, 3),
        )

    @staticmethod
    def _flush_metrics() -> None:
        metrics.flush_metrics(raise_on_empty_metrics=False)

    def close(self) -> None:
        self._fetcher.close()
        self._dispatcher.close()


def build_worker(config: AppConfig, supervisor: IdleShutdownSupervisor) -> Worker:
    """Wires boto3 and httpx clients from configuration."""
    session = boto3.session.Session(region_name=config.aws_region)
    # Part retries are owned by the upload coordinator's retry policy.
    s3_boto_client = session.client(
        "s3",
        endpoint_url=config.s3_endpoint_url,
        config=BotoConfig(retries={"mode": "standard", "max_attempts": 1}),
    )
    sqs_boto_client = session.client(
        "sqs",
        config=BotoConfig(read_timeout=config.poll_wait_seconds + 10),
    )

    source = JobSource(
        QueueClient(sqs_boto_client, config.job_queue_url),
        wait_seconds=config.poll_wait_seconds,
        visibility_timeout=config.visibility_timeout_seconds,
    )
    return Worker(
        source=source,
        s3_client=S3Client(s3_boto_client, kms_key_id=config.kms_key_id),
        fetcher=MediaFetcher(
            timeout=config.fetch_timeout_seconds, max_redirects=config.max_redirects
        ),
        dispatcher=NotificationDispatcher(
            config.notification_webhook_urls,
            timeout=config.notification_timeout_seconds,
            source=config.service_name,
        ),
        supervisor=supervisor,
        config=config,
    )


def main() -> int:
    try:
        config = get_config()
    except ConfigurationError as e:
        logger.error("Invalid configuration; refusing to start", extra=e.to_dict())
        return 2

    logger.setLevel(config.log_level)
    copy_config_to_registered_loggers(
        source_logger=logger, log_level=config.log_level, include={"photo_bundler"}
    )
    metrics.set_default_dimensions(environment=config.environment)

    supervisor = IdleShutdownSupervisor(
        config.idle_shutdown_seconds, config.idle_check_interval_seconds
    )
    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, lambda sig, _frame: supervisor.request_shutdown(signal.Signals(sig).name))

    health_server = None
    if config.health_enabled:
        health_server = HealthServer(
            create_health_app(supervisor, config.service_name, config.environment),
            config.health_port,
        )
        health_server.start()

    worker = build_worker(config, supervisor)
    logger.info(
        "Photo bundle worker starting",
        extra={
            "bucket": config.distribution_bucket,
            "idle_shutdown_seconds": config.idle_shutdown_seconds,
            "min_part_size_mb": config.min_part_size_mb,
            "notification_endpoints": len(config.notification_webhook_urls),
        },
    )
    supervisor.start()
    try:
        worker.run()
    finally:
        supervisor.stop()
        if health_server is not None:
            health_server.stop()
        worker.close()

    logger.info("Photo bundle worker stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
