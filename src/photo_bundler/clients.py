# src/photo_bundler/clients.py

"""
Client wrappers for interacting with AWS services (S3 and SQS).

These classes provide a clean, abstracted interface over raw boto3 clients,
making the worker logic easier to read, test, and maintain. Every botocore
failure is translated into the worker's own exception hierarchy here, so no
other module needs to know about ClientError codes.
"""

import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .exceptions import (
    QueueAcknowledgeError,
    QueueReceiveError,
    S3AccessDeniedError,
    S3ThrottlingError,
    S3TimeoutError,
    S3UploadError,
)
from .schemas import UploadPart

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType
    from mypy_boto3_sqs.client import SQSClient as SQSClientType

logger = logging.getLogger(__name__)

_THROTTLING_CODES = {"Throttling", "ThrottlingException", "RequestLimitExceeded", "SlowDown"}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException"}


def _raise_storage_error(e: Exception, operation: str, bucket: str, key: str) -> None:
    """Map a botocore exception to our specific S3 exception types."""
    if isinstance(e, ClientError):
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        error_message = e.response.get("Error", {}).get("Message", str(e))
        context = {
            "bucket": bucket,
            "key": key,
            "aws_error_code": error_code,
            "aws_error_message": error_message,
        }
        if error_code == "AccessDenied":
            raise S3AccessDeniedError(bucket=bucket, key=key, context=context) from e
        elif error_code in _THROTTLING_CODES:
            raise S3ThrottlingError(operation, context=context) from e
        elif error_code in _TIMEOUT_CODES:
            raise S3TimeoutError(operation, context=context) from e
        else:
            raise S3UploadError(operation, error_message, context=context) from e
    elif isinstance(e, (ReadTimeoutError, EndpointConnectionError)):
        raise S3TimeoutError(
            operation,
            context={"bucket": bucket, "key": key, "connection_error": str(e)},
        ) from e
    raise S3UploadError(
        operation, str(e), context={"bucket": bucket, "key": key}
    ) from e


class S3Client:
    """
    A wrapper for the S3 multipart upload API, focused on streaming archives.
    Works against any S3-compatible endpoint.
    """

    def __init__(self, s3_client: "S3ClientType", kms_key_id: str | None = None):
        """
        Initializes the S3Client.

        Args:
            s3_client: A typed boto3 S3 client.
            kms_key_id: Optional KMS key ID for server-side encryption.
        """
        self._client = s3_client
        self._kms_key_id = kms_key_id
        if self._kms_key_id:
            logger.debug(
                "S3Client initialized with SSE-KMS enabled.",
                extra={"kms_key_id": self._kms_key_id},
            )

    def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Starts a multipart upload and returns its UploadId."""
        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": key,
            "ContentType": content_type,
        }
        if metadata:
            params["Metadata"] = metadata
        if self._kms_key_id:
            params.update(
                {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key_id}
            )

        try:
            response = self._client.create_multipart_upload(**params)
        except (ClientError, BotoCoreError) as e:
            _raise_storage_error(e, "CreateMultipartUpload", bucket, key)
        return response["UploadId"]

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, body: bytes
    ) -> UploadPart:
        """Uploads one part and returns the part with the ETag the store assigned."""
        try:
            response = self._client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
            )
        except (ClientError, BotoCoreError) as e:
            _raise_storage_error(e, f"UploadPart#{part_number}", bucket, key)
        return UploadPart(part_number=part_number, etag=response["ETag"], size=len(body))

    def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: list[UploadPart]
    ) -> None:
        """Finalizes the object. ``parts`` must already be sorted by part number."""
        try:
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": [p.to_completion_entry() for p in parts]},
            )
        except (ClientError, BotoCoreError) as e:
            _raise_storage_error(e, "CompleteMultipartUpload", bucket, key)
        logger.debug(
            "Multipart upload completed",
            extra={"bucket": bucket, "key": key, "parts": len(parts)},
        )

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Releases the storage held by an incomplete upload."""
        try:
            self._client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as e:
            _raise_storage_error(e, "AbortMultipartUpload", bucket, key)

    def generate_download_url(self, bucket: str, key: str, expires_in: int) -> str:
        """Presigned GET URL for the finished archive."""
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            _raise_storage_error(e, "GeneratePresignedUrl", bucket, key)


class QueueClient:
    """
    A wrapper for the SQS operations the worker needs: long-poll one message,
    delete it, or hand it back to the queue.
    """

    def __init__(self, sqs_client: "SQSClientType", queue_url: str):
        self._client = sqs_client
        self._queue_url = queue_url

    @property
    def queue_url(self) -> str:
        return self._queue_url

    def receive_one(
        self, wait_seconds: int, visibility_timeout: int | None = None
    ) -> dict | None:
        """Long-polls for a single message. Returns the raw message dict or None."""
        params: dict[str, Any] = {
            "QueueUrl": self._queue_url,
            "MaxNumberOfMessages": 1,
            "WaitTimeSeconds": wait_seconds,
            "MessageAttributeNames": ["All"],
            "AttributeNames": ["ApproximateReceiveCount"],
        }
        if visibility_timeout is not None:
            params["VisibilityTimeout"] = visibility_timeout

        try:
            response = self._client.receive_message(**params)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            raise QueueReceiveError(
                e.response.get("Error", {}).get("Message", str(e)),
                context={"queue_url": self._queue_url, "aws_error_code": error_code},
            ) from e
        except BotoCoreError as e:
            raise QueueReceiveError(
                str(e), context={"queue_url": self._queue_url}
            ) from e

        messages = response.get("Messages") or []
        return messages[0] if messages else None

    def delete(self, message_id: str, receipt_handle: str) -> None:
        try:
            self._client.delete_message(
                QueueUrl=self._queue_url, ReceiptHandle=receipt_handle
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueAcknowledgeError(message_id, str(e)) from e

    def release(self, message_id: str, receipt_handle: str) -> None:
        """Makes the message visible again immediately."""
        try:
            self._client.change_message_visibility(
                QueueUrl=self._queue_url,
                ReceiptHandle=receipt_handle,
                VisibilityTimeout=0,
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueAcknowledgeError(message_id, str(e)) from e
