"""
Job source adapter: turns queue messages into Job values.

A message is owned by exactly one job from receive until it is acknowledged
(deleted) or released. Deletion only ever happens once the job reached a
terminal state.
"""

import json
import logging
from dataclasses import dataclass

import pydantic

from .clients import QueueClient
from .exceptions import InvalidJobMessageError, QueueAcknowledgeError
from .schemas import Job

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReceivedJob:
    """A parsed job plus the queue bookkeeping needed to settle its message."""

    job: Job
    message_id: str
    receipt_handle: str
    receive_count: int = 1


def parse_job_message(body: str, message_id: str = "unknown") -> Job:
    """Deserialize and validate a message body, normalizing field aliases."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidJobMessageError(
            "Message body is not valid JSON",
            context={"message_id": message_id, "error": str(e)},
        ) from e

    if not isinstance(payload, dict):
        raise InvalidJobMessageError(
            "Message body is not a JSON object",
            context={"message_id": message_id, "type": type(payload).__name__},
        )

    try:
        return Job.model_validate(payload)
    except pydantic.ValidationError as e:
        raise InvalidJobMessageError(
            "Message body failed validation",
            context={
                "message_id": message_id,
                "validation_errors": e.errors(include_url=False, include_input=False),
            },
        ) from e


class JobSource:
    def __init__(
        self,
        queue: QueueClient,
        wait_seconds: int = 20,
        visibility_timeout: int | None = None,
    ):
        self._queue = queue
        self._wait_seconds = wait_seconds
        self._visibility_timeout = visibility_timeout

    def receive(self) -> ReceivedJob | None:
        """
        Long-poll for one job. Returns None when the poll window elapsed empty.

        Raises:
            QueueReceiveError: The queue could not be reached; the caller backs off.
            InvalidJobMessageError: The message was unusable. It has already
                been deleted, since redelivering it can never succeed.
        """
        message = self._queue.receive_one(self._wait_seconds, self._visibility_timeout)
        if message is None:
            return None

        message_id = message.get("MessageId", "unknown")
        receipt_handle = message["ReceiptHandle"]
        try:
            job = parse_job_message(message.get("Body", ""), message_id)
        except InvalidJobMessageError:
            logger.warning(
                "Deleting malformed job message", extra={"message_id": message_id}
            )
            self._delete_quietly(message_id, receipt_handle)
            raise

        receive_count = int(message.get("Attributes", {}).get("ApproximateReceiveCount", 1))
        logger.info(
            "Received job",
            extra={
                "message_id": message_id,
                "event_id": job.event_id,
                "item_count": len(job.items),
                "receive_count": receive_count,
            },
        )
        return ReceivedJob(
            job=job,
            message_id=message_id,
            receipt_handle=receipt_handle,
            receive_count=receive_count,
        )

    def acknowledge(self, received: ReceivedJob) -> None:
        """Deletes the message. Only call once the job reached a terminal state."""
        self._queue.delete(received.message_id, received.receipt_handle)
        logger.debug("Acknowledged job message", extra={"message_id": received.message_id})

    def release(self, received: ReceivedJob) -> None:
        """Hands an unprocessed message straight back to the queue."""
        self._queue.release(received.message_id, received.receipt_handle)
        logger.info("Released job message", extra={"message_id": received.message_id})

    def _delete_quietly(self, message_id: str, receipt_handle: str) -> None:
        try:
            self._queue.delete(message_id, receipt_handle)
        except QueueAcknowledgeError as e:
            logger.error(
                "Could not delete malformed message; it will be redelivered",
                extra=e.to_dict(),
            )
