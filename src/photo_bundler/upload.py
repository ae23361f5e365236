# src/photo_bundler/upload.py

"""
Multipart upload of an archive that is still being written.

The coordinator drains a BytePipe, cuts the stream into parts of at least the
configured minimum size and uploads them on a small thread pool. Part numbers
are handed out at flush time, in the order the bytes were produced, so the
object is always reassembled in stream order however the uploads finish.

State machine (single use, no re-entry):

    NOT_STARTED -> IN_PROGRESS -> COMPLETING -> COMPLETED
                   IN_PROGRESS -> ABORTING   -> ABORTED
"""

import enum
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable

from .clients import S3Client
from .exceptions import (
    ArchiveStreamAbortedError,
    PartUploadFailedError,
    S3AccessDeniedError,
    S3Error,
    UploadStateError,
    get_error_context,
)
from .pipe import BytePipe
from .retry import RetryPolicy
from .schemas import UploadPart

logger = logging.getLogger(__name__)


class UploadState(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTING = "aborting"
    ABORTED = "aborted"


class MultipartUploadCoordinator:
    def __init__(
        self,
        s3_client: S3Client,
        *,
        min_part_size: int,
        retry_policy: RetryPolicy | None = None,
        max_concurrent_parts: int = 2,
        sleep: Callable[[float], None] = time.sleep,
        on_part_retry: Callable[[int, int, BaseException], None] | None = None,
    ):
        """
        Args:
            s3_client: Wrapped S3 client used for every multipart call.
            min_part_size: Every part except the last is at least this large.
            retry_policy: Per-part retry policy (default: 3 attempts, exponential).
            max_concurrent_parts: Upper bound on parts in flight; together with
                min_part_size this bounds the coordinator's memory.
            sleep: Injected for tests.
            on_part_retry: Called with (part_number, attempt, error) before each retry.
        """
        self._s3 = s3_client
        self._min_part_size = min_part_size
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=3, backoff_seconds=1.0)
        self._max_concurrent_parts = max_concurrent_parts
        self._sleep = sleep
        self._on_part_retry = on_part_retry

        self._lock = threading.Lock()
        self._state = UploadState.NOT_STARTED
        self._bucket: str | None = None
        self._key: str | None = None
        self._upload_id: str | None = None
        self._parts: list[UploadPart] = []

    # --- properties ---

    @property
    def state(self) -> UploadState:
        return self._state

    @property
    def upload_id(self) -> str | None:
        return self._upload_id

    @property
    def key(self) -> str | None:
        return self._key

    @property
    def parts(self) -> list[UploadPart]:
        with self._lock:
            return sorted(self._parts, key=lambda p: p.part_number)

    @property
    def bytes_uploaded(self) -> int:
        with self._lock:
            return sum(p.size for p in self._parts)

    # --- state machine ---

    def _transition(self, operation: str, expected: UploadState, target: UploadState) -> None:
        with self._lock:
            if self._state is not expected:
                raise UploadStateError(operation, self._state.value)
            self._state = target

    def begin_upload(
        self,
        bucket: str,
        key: str,
        content_type: str = "application/zip",
        metadata: dict[str, str] | None = None,
    ) -> str:
        self._transition("begin", UploadState.NOT_STARTED, UploadState.IN_PROGRESS)
        self._bucket, self._key = bucket, key
        try:
            self._upload_id = self._s3.create_multipart_upload(
                bucket, key, content_type, metadata
            )
        except S3Error:
            with self._lock:
                self._state = UploadState.ABORTED
            raise
        logger.info(
            "Started multipart upload",
            extra={"bucket": bucket, "key": key, "upload_id": self._upload_id},
        )
        return self._upload_id

    def consume(self, pipe: BytePipe) -> list[UploadPart]:
        """
        Drain ``pipe`` until end-of-stream, uploading parts as they fill up.

        Blocks until every part finished. Returns the parts sorted by number.

        Raises:
            PartUploadFailedError: A part exhausted its retries. The pipe and the
                upload have both been aborted before this propagates.
            ArchiveStreamAbortedError: The producer gave up; the caller aborts.
        """
        if self._state is not UploadState.IN_PROGRESS:
            raise UploadStateError("consume", self._state.value)

        buffer = bytearray()
        next_part_number = 1
        in_flight: list[Future] = []
        slots = threading.BoundedSemaphore(self._max_concurrent_parts)

        def submit(pool: ThreadPoolExecutor, part_number: int, body: bytes) -> None:
            slots.acquire()
            future = pool.submit(self._upload_part_with_retry, part_number, body)
            future.add_done_callback(lambda _f: slots.release())
            in_flight.append(future)

        try:
            with ThreadPoolExecutor(
                max_workers=self._max_concurrent_parts, thread_name_prefix="part-upload"
            ) as pool:
                while True:
                    self._raise_first_failure(in_flight)
                    chunk = pipe.read_chunk()
                    if not chunk:
                        break
                    buffer += chunk
                    if len(buffer) >= self._min_part_size:
                        submit(pool, next_part_number, bytes(buffer))
                        next_part_number += 1
                        buffer = bytearray()

                # The remainder always goes out as the last part, however small.
                if buffer or next_part_number == 1:
                    submit(pool, next_part_number, bytes(buffer))

                wait(in_flight)
                self._raise_first_failure(in_flight)
        except PartUploadFailedError as e:
            pipe.abort(str(e))
            self.abort_upload(reason=str(e))
            raise
        except ArchiveStreamAbortedError:
            logger.warning(
                "Archive producer aborted; upload will be released",
                extra={"key": self._key, "upload_id": self._upload_id},
            )
            raise
        except Exception as e:
            pipe.abort(f"upload consumer failed: {e}")
            raise

        return self.parts

    def complete_upload(self) -> list[UploadPart]:
        """Finalize the object from all uploaded parts, sorted by part number."""
        self._transition("complete", UploadState.IN_PROGRESS, UploadState.COMPLETING)
        parts = self.parts
        expected = list(range(1, len(parts) + 1))
        if [p.part_number for p in parts] != expected:
            self.abort_upload(reason="non-contiguous part numbers")
            raise UploadStateError("complete with non-contiguous parts", UploadState.ABORTED.value)

        try:
            self._s3.complete_multipart_upload(self._bucket, self._key, self._upload_id, parts)
        except S3Error:
            self.abort_upload(reason="completion rejected")
            raise

        with self._lock:
            self._state = UploadState.COMPLETED
        logger.info(
            "Multipart upload completed",
            extra={
                "key": self._key,
                "parts": len(parts),
                "bytes": sum(p.size for p in parts),
            },
        )
        return parts

    def abort_upload(self, reason: str = "aborted") -> None:
        """Release server-side storage for the incomplete object. Idempotent."""
        with self._lock:
            if self._state in (UploadState.ABORTING, UploadState.ABORTED):
                return
            if self._state is UploadState.COMPLETED:
                raise UploadStateError("abort", self._state.value)
            if self._state is UploadState.NOT_STARTED or self._upload_id is None:
                self._state = UploadState.ABORTED
                return
            self._state = UploadState.ABORTING

        logger.warning(
            "Aborting multipart upload",
            extra={"key": self._key, "upload_id": self._upload_id, "reason": reason},
        )
        try:
            self._s3.abort_multipart_upload(self._bucket, self._key, self._upload_id)
        except S3Error as e:
            # The bucket lifecycle rule is the backstop for uploads we could not abort.
            logger.error("Failed to abort multipart upload", extra=get_error_context(e))
        finally:
            with self._lock:
                self._state = UploadState.ABORTED

    # --- internals ---

    def _upload_part_with_retry(self, part_number: int, body: bytes) -> UploadPart:
        attempts = 0

        def attempt() -> UploadPart:
            nonlocal attempts
            attempts += 1
            return self._s3.upload_part(
                self._bucket, self._key, self._upload_id, part_number, body
            )

        def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "Part upload failed; retrying",
                extra={
                    "part_number": part_number,
                    "attempt": attempt_number,
                    "delay_seconds": delay,
                    "error": str(error),
                },
            )
            if self._on_part_retry is not None:
                self._on_part_retry(part_number, attempt_number, error)

        try:
            part = self._retry_policy.call(
                attempt,
                retry_on=(S3Error,),
                give_up_on=(S3AccessDeniedError,),
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except S3Error as e:
            raise PartUploadFailedError(part_number, attempts, e.message) from e

        with self._lock:
            self._parts.append(part)
        logger.debug(
            "Uploaded part", extra={"part_number": part_number, "size": part.size}
        )
        return part

    @staticmethod
    def _raise_first_failure(futures: list[Future]) -> None:
        for future in futures:
            if future.done() and future.exception() is not None:
                raise future.exception()
