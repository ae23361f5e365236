# tests/unit/test_upload.py

import time
from unittest.mock import MagicMock

import pytest

from photo_bundler.exceptions import (
    ArchiveStreamAbortedError,
    PartUploadFailedError,
    S3AccessDeniedError,
    S3ThrottlingError,
    S3UploadError,
    UploadStateError,
)
from photo_bundler.pipe import BytePipe
from photo_bundler.retry import RetryPolicy
from photo_bundler.schemas import UploadPart
from photo_bundler.upload import MultipartUploadCoordinator, UploadState


def _echo_part(bucket, key, upload_id, part_number, body):
    return UploadPart(part_number=part_number, etag=f'"etag-{part_number}"', size=len(body))


@pytest.fixture
def mock_s3() -> MagicMock:
    s3 = MagicMock()
    s3.create_multipart_upload.return_value = "upload-1"
    s3.upload_part.side_effect = _echo_part
    return s3


@pytest.fixture
def coordinator(mock_s3: MagicMock) -> MultipartUploadCoordinator:
    coordinator = MultipartUploadCoordinator(
        mock_s3,
        min_part_size=10,
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0),
        max_concurrent_parts=2,
        sleep=MagicMock(),
    )
    coordinator.begin_upload("bucket", "downloads/a.zip", "application/zip", {"eventId": "e"})
    return coordinator


def _filled_pipe(*chunks: bytes) -> BytePipe:
    pipe = BytePipe(capacity=1024 * 1024)
    for chunk in chunks:
        pipe.write(chunk)
    pipe.close()
    return pipe


def test_begin_upload_starts_multipart(coordinator, mock_s3):
    assert coordinator.state is UploadState.IN_PROGRESS
    assert coordinator.upload_id == "upload-1"
    mock_s3.create_multipart_upload.assert_called_once_with(
        "bucket", "downloads/a.zip", "application/zip", {"eventId": "e"}
    )


def test_parts_respect_minimum_size_and_remainder_goes_last(coordinator, mock_s3):
    # Arrange: 7 chunks of 4 bytes with a 10 byte minimum
    pipe = _filled_pipe(*([b"abcd"] * 7))

    # Act
    parts = coordinator.consume(pipe)
    completed = coordinator.complete_upload()

    # Assert
    assert [p.part_number for p in parts] == [1, 2, 3]
    assert [p.size for p in parts] == [12, 12, 4]
    assert all(p.size >= 10 for p in parts[:-1])
    assert completed == parts
    assert coordinator.state is UploadState.COMPLETED
    assert coordinator.bytes_uploaded == 28
    mock_s3.complete_multipart_upload.assert_called_once_with(
        "bucket", "downloads/a.zip", "upload-1", parts
    )


def test_parts_are_numbered_in_stream_order_even_if_finished_out_of_order(coordinator, mock_s3):
    # Arrange: part 1 is slow, so part 2 finishes first
    def slow_first(bucket, key, upload_id, part_number, body):
        if part_number == 1:
            time.sleep(0.1)
        return _echo_part(bucket, key, upload_id, part_number, body)

    mock_s3.upload_part.side_effect = slow_first
    pipe = _filled_pipe(b"A" * 10, b"B" * 10, b"C" * 3)

    # Act
    coordinator.consume(pipe)
    coordinator.complete_upload()

    # Assert
    bodies = {c.args[3]: c.args[4] for c in mock_s3.upload_part.call_args_list}
    assert bodies == {1: b"A" * 10, 2: b"B" * 10, 3: b"C" * 3}
    sent_parts = mock_s3.complete_multipart_upload.call_args.args[3]
    assert [p.part_number for p in sent_parts] == [1, 2, 3]


def test_empty_stream_uploads_a_single_part(coordinator, mock_s3):
    parts = coordinator.consume(_filled_pipe())

    assert [(p.part_number, p.size) for p in parts] == [(1, 0)]


def test_transient_part_failure_is_retried(coordinator, mock_s3):
    # Arrange
    mock_s3.upload_part.side_effect = [
        S3ThrottlingError("UploadPart#1"),
        UploadPart(1, '"etag-1"', 5),
    ]

    # Act
    parts = coordinator.consume(_filled_pipe(b"12345"))

    # Assert
    assert mock_s3.upload_part.call_count == 2
    assert parts == [UploadPart(1, '"etag-1"', 5)]


def test_retry_exhaustion_aborts_pipe_and_upload(mock_s3):
    # Arrange
    on_part_retry = MagicMock()
    coordinator = MultipartUploadCoordinator(
        mock_s3,
        min_part_size=10,
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0),
        sleep=MagicMock(),
        on_part_retry=on_part_retry,
    )
    coordinator.begin_upload("bucket", "k.zip")
    mock_s3.upload_part.side_effect = S3UploadError("UploadPart#1", "InternalError")
    pipe = _filled_pipe(b"12345")

    # Act & Assert
    with pytest.raises(PartUploadFailedError) as exc_info:
        coordinator.consume(pipe)

    assert exc_info.value.part_number == 1
    assert exc_info.value.context["attempts"] == 3
    assert mock_s3.upload_part.call_count == 3
    assert on_part_retry.call_count == 2
    assert pipe.aborted
    mock_s3.abort_multipart_upload.assert_called_once_with("bucket", "k.zip", "upload-1")
    mock_s3.complete_multipart_upload.assert_not_called()
    assert coordinator.state is UploadState.ABORTED


def test_access_denied_is_not_retried(coordinator, mock_s3):
    mock_s3.upload_part.side_effect = S3AccessDeniedError("bucket", "downloads/a.zip")

    with pytest.raises(PartUploadFailedError):
        coordinator.consume(_filled_pipe(b"12345"))

    assert mock_s3.upload_part.call_count == 1


def test_producer_abort_surfaces_to_consumer(coordinator, mock_s3):
    pipe = BytePipe(capacity=1024)
    pipe.abort("fetch loop crashed")

    with pytest.raises(ArchiveStreamAbortedError):
        coordinator.consume(pipe)

    mock_s3.upload_part.assert_not_called()


def test_abort_is_idempotent(coordinator, mock_s3):
    coordinator.abort_upload("first")
    coordinator.abort_upload("second")

    mock_s3.abort_multipart_upload.assert_called_once()
    assert coordinator.state is UploadState.ABORTED


def test_abort_storage_failure_is_logged_not_raised(coordinator, mock_s3):
    mock_s3.abort_multipart_upload.side_effect = S3UploadError("AbortMultipartUpload", "NoSuchUpload")

    coordinator.abort_upload("job failed")

    assert coordinator.state is UploadState.ABORTED


def test_completed_upload_cannot_be_aborted(coordinator, mock_s3):
    coordinator.consume(_filled_pipe(b"x"))
    coordinator.complete_upload()

    with pytest.raises(UploadStateError):
        coordinator.abort_upload("too late")


def test_non_contiguous_parts_are_never_completed(coordinator, mock_s3):
    # Arrange: simulate a lost part 2
    coordinator._parts.extend([UploadPart(1, '"a"', 10), UploadPart(3, '"c"', 1)])

    # Act & Assert
    with pytest.raises(UploadStateError):
        coordinator.complete_upload()
    mock_s3.complete_multipart_upload.assert_not_called()
    mock_s3.abort_multipart_upload.assert_called_once()


def test_completion_rejected_aborts_upload(coordinator, mock_s3):
    mock_s3.complete_multipart_upload.side_effect = S3UploadError(
        "CompleteMultipartUpload", "InvalidPart"
    )
    coordinator.consume(_filled_pipe(b"x"))

    with pytest.raises(S3UploadError):
        coordinator.complete_upload()
    assert coordinator.state is UploadState.ABORTED


def test_illegal_transitions_raise():
    coordinator = MultipartUploadCoordinator(MagicMock(), min_part_size=10)

    with pytest.raises(UploadStateError):
        coordinator.complete_upload()
    with pytest.raises(UploadStateError):
        coordinator.consume(BytePipe(capacity=8))
