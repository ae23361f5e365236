# tests/unit/test_clients.py

"""
Unit tests for the boto3 wrappers in src/photo_bundler/clients.py.

These tests ensure that S3Client and QueueClient pass the expected arguments
to the underlying boto3 clients and translate botocore failures into the
worker's own exception types.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from photo_bundler.clients import QueueClient, S3Client
from photo_bundler.exceptions import (
    QueueAcknowledgeError,
    QueueReceiveError,
    S3AccessDeniedError,
    S3ThrottlingError,
    S3TimeoutError,
    S3UploadError,
)
from photo_bundler.schemas import UploadPart


def _client_error(code: str, operation: str = "UploadPart") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} message"}}, operation)


# -----------------------------------------------------------------------------
# Fixtures for setting up clients with mock dependencies
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_boto_s3_client() -> MagicMock:
    """Yields a MagicMock for the boto3 S3 client."""
    return MagicMock()


@pytest.fixture
def s3_client(mock_boto_s3_client: MagicMock) -> S3Client:
    """Yields an instance of our S3Client wrapper without KMS."""
    return S3Client(s3_client=mock_boto_s3_client)


@pytest.fixture
def s3_client_with_kms(mock_boto_s3_client: MagicMock) -> S3Client:
    """Yields an instance of our S3Client wrapper with KMS enabled."""
    return S3Client(s3_client=mock_boto_s3_client, kms_key_id="test-kms-key")


@pytest.fixture
def mock_boto_sqs_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def queue_client(mock_boto_sqs_client: MagicMock) -> QueueClient:
    return QueueClient(mock_boto_sqs_client, "https://sqs.test/queue")


# -----------------------------------------------------------------------------
# Tests for S3Client
# -----------------------------------------------------------------------------


def test_create_multipart_upload(s3_client: S3Client, mock_boto_s3_client: MagicMock):
    """
    Verifies that create_multipart_upload passes content type and metadata
    and returns the UploadId.
    """
    # Arrange
    mock_boto_s3_client.create_multipart_upload.return_value = {"UploadId": "up-1"}

    # Act
    upload_id = s3_client.create_multipart_upload(
        "bucket", "key.zip", "application/zip", {"eventId": "e1"}
    )

    # Assert
    assert upload_id == "up-1"
    mock_boto_s3_client.create_multipart_upload.assert_called_once_with(
        Bucket="bucket",
        Key="key.zip",
        ContentType="application/zip",
        Metadata={"eventId": "e1"},
    )


def test_create_multipart_upload_with_kms(
    s3_client_with_kms: S3Client, mock_boto_s3_client: MagicMock
):
    """Verifies that SSE-KMS arguments are added when a KMS key is configured."""
    # Arrange
    mock_boto_s3_client.create_multipart_upload.return_value = {"UploadId": "up-1"}

    # Act
    s3_client_with_kms.create_multipart_upload("bucket", "key.zip", "application/zip")

    # Assert
    mock_boto_s3_client.create_multipart_upload.assert_called_once_with(
        Bucket="bucket",
        Key="key.zip",
        ContentType="application/zip",
        ServerSideEncryption="aws:kms",
        SSEKMSKeyId="test-kms-key",
    )


def test_upload_part_returns_part_with_etag(s3_client: S3Client, mock_boto_s3_client: MagicMock):
    # Arrange
    mock_boto_s3_client.upload_part.return_value = {"ETag": '"etag-2"'}

    # Act
    part = s3_client.upload_part("bucket", "key.zip", "up-1", 2, b"12345")

    # Assert
    assert part == UploadPart(part_number=2, etag='"etag-2"', size=5)
    mock_boto_s3_client.upload_part.assert_called_once_with(
        Bucket="bucket", Key="key.zip", UploadId="up-1", PartNumber=2, Body=b"12345"
    )


def test_complete_multipart_upload_sends_parts_in_order(
    s3_client: S3Client, mock_boto_s3_client: MagicMock
):
    # Arrange
    parts = [UploadPart(1, '"a"', 10), UploadPart(2, '"b"', 5)]

    # Act
    s3_client.complete_multipart_upload("bucket", "key.zip", "up-1", parts)

    # Assert
    mock_boto_s3_client.complete_multipart_upload.assert_called_once_with(
        Bucket="bucket",
        Key="key.zip",
        UploadId="up-1",
        MultipartUpload={
            "Parts": [{"PartNumber": 1, "ETag": '"a"'}, {"PartNumber": 2, "ETag": '"b"'}]
        },
    )


@pytest.mark.parametrize(
    "error, expected_type",
    [
        (_client_error("AccessDenied"), S3AccessDeniedError),
        (_client_error("SlowDown"), S3ThrottlingError),
        (_client_error("RequestTimeout"), S3TimeoutError),
        (_client_error("NoSuchUpload"), S3UploadError),
        (EndpointConnectionError(endpoint_url="https://s3.test"), S3TimeoutError),
    ],
)
def test_upload_part_error_mapping(
    s3_client: S3Client, mock_boto_s3_client: MagicMock, error, expected_type
):
    """Verifies that botocore failures surface as our S3 exception types."""
    # Arrange
    mock_boto_s3_client.upload_part.side_effect = error

    # Act & Assert
    with pytest.raises(expected_type) as exc_info:
        s3_client.upload_part("bucket", "key.zip", "up-1", 1, b"x")
    assert exc_info.value.__cause__ is error


def test_abort_multipart_upload(s3_client: S3Client, mock_boto_s3_client: MagicMock):
    s3_client.abort_multipart_upload("bucket", "key.zip", "up-1")

    mock_boto_s3_client.abort_multipart_upload.assert_called_once_with(
        Bucket="bucket", Key="key.zip", UploadId="up-1"
    )


def test_generate_download_url(s3_client: S3Client, mock_boto_s3_client: MagicMock):
    # Arrange
    mock_boto_s3_client.generate_presigned_url.return_value = "https://signed"

    # Act
    url = s3_client.generate_download_url("bucket", "key.zip", 3600)

    # Assert
    assert url == "https://signed"
    mock_boto_s3_client.generate_presigned_url.assert_called_once_with(
        "get_object", Params={"Bucket": "bucket", "Key": "key.zip"}, ExpiresIn=3600
    )


# -----------------------------------------------------------------------------
# Tests for QueueClient
# -----------------------------------------------------------------------------


def test_receive_one_long_polls_for_a_single_message(
    queue_client: QueueClient, mock_boto_sqs_client: MagicMock
):
    # Arrange
    message = {"MessageId": "m1", "ReceiptHandle": "r1", "Body": "{}"}
    mock_boto_sqs_client.receive_message.return_value = {"Messages": [message]}

    # Act
    result = queue_client.receive_one(wait_seconds=20, visibility_timeout=900)

    # Assert
    assert result == message
    mock_boto_sqs_client.receive_message.assert_called_once_with(
        QueueUrl="https://sqs.test/queue",
        MaxNumberOfMessages=1,
        WaitTimeSeconds=20,
        MessageAttributeNames=["All"],
        AttributeNames=["ApproximateReceiveCount"],
        VisibilityTimeout=900,
    )


def test_receive_one_returns_none_on_empty_poll(
    queue_client: QueueClient, mock_boto_sqs_client: MagicMock
):
    mock_boto_sqs_client.receive_message.return_value = {}

    assert queue_client.receive_one(wait_seconds=1) is None


def test_receive_one_wraps_client_errors(
    queue_client: QueueClient, mock_boto_sqs_client: MagicMock
):
    mock_boto_sqs_client.receive_message.side_effect = _client_error(
        "AWS.SimpleQueueService.NonExistentQueue", "ReceiveMessage"
    )

    with pytest.raises(QueueReceiveError) as exc_info:
        queue_client.receive_one(wait_seconds=1)
    assert exc_info.value.context["aws_error_code"] == "AWS.SimpleQueueService.NonExistentQueue"


def test_delete_and_release(queue_client: QueueClient, mock_boto_sqs_client: MagicMock):
    # Act
    queue_client.delete("m1", "r1")
    queue_client.release("m1", "r1")

    # Assert
    mock_boto_sqs_client.delete_message.assert_called_once_with(
        QueueUrl="https://sqs.test/queue", ReceiptHandle="r1"
    )
    mock_boto_sqs_client.change_message_visibility.assert_called_once_with(
        QueueUrl="https://sqs.test/queue", ReceiptHandle="r1", VisibilityTimeout=0
    )


def test_delete_failure_raises_acknowledge_error(
    queue_client: QueueClient, mock_boto_sqs_client: MagicMock
):
    mock_boto_sqs_client.delete_message.side_effect = _client_error(
        "ReceiptHandleIsInvalid", "DeleteMessage"
    )

    with pytest.raises(QueueAcknowledgeError) as exc_info:
        queue_client.delete("m1", "r1")
    assert exc_info.value.context["message_id"] == "m1"
