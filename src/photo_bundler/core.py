# src/photo_bundler/core.py

"""
Core business logic for bundling one job's media into a single ZIP.

Its main entry point, `process_job`, fetches every media item in job order,
appends it to a streaming ZIP and uploads that ZIP with a multipart upload
that runs concurrently with archive construction. Memory stays bounded by the
pipe buffer, the spool threshold and the parts in flight, however large the
collection is.

Per-item failures are absorbed into the outcome; job-fatal failures abort the
pipeline, release the incomplete upload and come back as a failed outcome.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from .archive import StreamingArchiveBuilder, begin_archive
from .clients import S3Client
from .config import AppConfig
from .exceptions import (
    AllItemsFailedError,
    ArchiveStreamAbortedError,
    BundlerError,
    FetchFailedError,
    get_error_context,
)
from .fetcher import MediaFetcher
from .pipe import BytePipe
from .retry import RetryPolicy
from .schemas import ArchiveEntryResult, Job, JobOutcome, JobStatus, MediaItem
from .security import sanitize_key_component
from .upload import MultipartUploadCoordinator

logger = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPE = "application/zip"
_PROGRESS_LOG_EVERY = 10


# --- Helpers ---
def build_object_key(event_id: str, layout: str, now_ms: int) -> str:
    """Object key for a job's archive under the configured layout."""
    safe_event_id = sanitize_key_component(event_id)
    if layout == "event":
        return f"events/{safe_event_id}/photos.zip"
    return f"downloads/event_{safe_event_id}_photos_{now_ms}.zip"


def _download_url(s3_client: S3Client, config: AppConfig, key: str) -> str:
    if config.public_base_url:
        return f"{config.public_base_url}/{key}"
    return s3_client.generate_download_url(
        config.distribution_bucket, key, config.download_url_expiry_seconds
    )


def _append_items(
    builder: StreamingArchiveBuilder,
    entries: list[tuple[str, MediaItem]],
    fetcher: MediaFetcher,
) -> None:
    """Fetch-and-append every item in job order; one bad URL never stops the loop."""
    for position, (name, item) in enumerate(entries, start=1):
        if not item.has_http_url:
            builder.record_failure(name, item.source_url, "invalid url")
            continue
        try:
            stream = fetcher.fetch(item.source_url)
        except FetchFailedError as e:
            builder.record_failure(name, item.source_url, e.reason)
            continue

        builder.append_entry(
            name, stream, source_url=item.source_url, declared_size=item.declared_size
        )
        if position % _PROGRESS_LOG_EVERY == 0:
            logger.info(
                "Bundling progress",
                extra={"position": position, "total": len(entries), "succeeded": builder.succeeded_count},
            )


def _consumer_error(consumer: Future) -> BaseException | None:
    """The consumer's own failure, ignoring the abort we just caused ourselves."""
    error = consumer.exception()
    if error is None or isinstance(error, ArchiveStreamAbortedError):
        return None
    return error


# --- Core Bundling Routine ---
def _stage_bundle(
    job: Job,
    entries: list[tuple[str, MediaItem]],
    results: list[ArchiveEntryResult],
    s3_client: S3Client,
    fetcher: MediaFetcher,
    config: AppConfig,
    on_part_retry: Callable[[int, int, BaseException], None] | None,
) -> tuple[str, int, int]:
    """
    Runs fetch → archive → upload for one job.
    Returns (object_key, archive_bytes, part_count).

    The archive producer runs on the calling thread; the upload consumer runs
    on its own thread and the two are joined at finalize.
    """
    if not entries:
        raise AllItemsFailedError("No photos provided for processing")

    key = build_object_key(job.event_id, config.object_key_layout, int(time.time() * 1000))
    coordinator = MultipartUploadCoordinator(
        s3_client,
        min_part_size=config.min_part_size_bytes,
        retry_policy=RetryPolicy(
            max_attempts=config.max_part_upload_attempts,
            backoff_seconds=config.part_retry_backoff_seconds,
        ),
        max_concurrent_parts=config.max_concurrent_part_uploads,
        on_part_retry=on_part_retry,
    )
    coordinator.begin_upload(
        config.distribution_bucket,
        key,
        ARCHIVE_CONTENT_TYPE,
        metadata={
            "eventId": job.event_id,
            "email": job.recipient_email,
            "fileCount": str(len(entries)),
            "requestId": job.request_id,
        },
    )

    pipe = BytePipe(config.pipe_buffer_bytes)
    builder = begin_archive(pipe, config.compression_level, config.spool_file_max_size_bytes)

    try:
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="upload-consumer") as executor:
            consumer = executor.submit(coordinator.consume, pipe)
            try:
                _append_items(builder, entries, fetcher)
                if builder.succeeded_count == 0:
                    raise AllItemsFailedError(
                        f"None of the {len(entries)} files could be downloaded",
                        failed_count=len(entries),
                    )
                builder.finalize()
                consumer.result()
            except BaseException as e:
                pipe.abort(str(e) or type(e).__name__)
                root_cause = _consumer_error(consumer)
                coordinator.abort_upload(reason=str(root_cause or e))
                if root_cause is not None and root_cause is not e:
                    raise root_cause
                raise
    finally:
        results.extend(builder.results)

    parts = coordinator.complete_upload()
    return key, sum(p.size for p in parts), len(parts)


def process_job(
    job: Job,
    s3_client: S3Client,
    fetcher: MediaFetcher,
    config: AppConfig,
    *,
    clock: Callable[[], float] = time.monotonic,
    on_part_retry: Callable[[int, int, BaseException], None] | None = None,
) -> JobOutcome:
    """
    Bundle one job and report what happened. Worker errors never escape:
    they become a FAILED outcome whose ``error`` is fit for the recipient.
    """
    started = clock()
    entries = job.archive_entries()
    results: list[ArchiveEntryResult] = []

    total_declared = sum(item.declared_size or 0 for _, item in entries)
    logger.info(
        "Starting bundle creation",
        extra={
            "item_count": len(entries),
            "declared_size_mb": round(total_declared / (1024 * 1024), 2),
        },
    )

    try:
        key, archive_bytes, part_count = _stage_bundle(
            job, entries, results, s3_client, fetcher, config, on_part_retry
        )
        download_url = _download_url(s3_client, config, key)
    except BundlerError as e:
        logger.error("Job failed", extra=get_error_context(e))
        return JobOutcome(
            status=JobStatus.FAILED,
            succeeded_count=sum(1 for r in results if r.succeeded),
            failed_items=tuple(r for r in results if not r.succeeded),
            processing_time_seconds=clock() - started,
            total_items=len(entries),
            error=e.message,
            error_code=e.error_code,
            entries=tuple(results),
        )

    outcome = JobOutcome(
        status=JobStatus.COMPLETED,
        succeeded_count=sum(1 for r in results if r.succeeded),
        failed_items=tuple(r for r in results if not r.succeeded),
        processing_time_seconds=clock() - started,
        download_url=download_url,
        object_key=key,
        archive_size_bytes=archive_bytes,
        parts_uploaded=part_count,
        total_items=len(entries),
        entries=tuple(results),
    )
    logger.info(
        "Bundle creation completed",
        extra={
            "object_key": key,
            "succeeded": outcome.succeeded_count,
            "failed": len(outcome.failed_items),
            "archive_size_mb": outcome.archive_size_mb,
            "processing_time_seconds": round(outcome.processing_time_seconds, 1),
        },
    )
    return outcome
