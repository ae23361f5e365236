# In src/photo_bundler/schemas.py

import enum
import re
import uuid
from dataclasses import dataclass, field

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .security import disambiguate_entry_name, sanitize_entry_name

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Only the first few skipped files are listed in a completion notification
MAX_REPORTED_FAILURES = 20


def _new_request_id() -> str:
    return uuid.uuid4().hex[:8]


# --- Runtime Validation (using Pydantic) ---


class MediaItem(BaseModel):
    """
    One remotely hosted file to bundle. Aliases are normalized at parse time.

    Item fields are lenient: a missing or unusable URL is reported as a failed
    item when the job runs rather than rejecting the whole message.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    file_name: str | None = Field(
        None, validation_alias=AliasChoices("fileName", "filename", "file_name")
    )
    source_url: str = Field(
        "",
        validation_alias=AliasChoices("url", "downloadUrl", "downloadURL", "source_url"),
    )
    declared_size: int | None = Field(
        None, validation_alias=AliasChoices("size", "declared_size")
    )

    @field_validator("source_url", mode="before")
    @classmethod
    def coerce_url(cls, value) -> str:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else str(value)

    @field_validator("declared_size", mode="before")
    @classmethod
    def drop_unusable_size(cls, value):
        # The declared size is only a hint for logging
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return None
        return value

    @property
    def has_http_url(self) -> bool:
        return self.source_url.lower().startswith(("http://", "https://"))


class Job(BaseModel):
    """
    Pydantic model for runtime parsing and validation of a queue message body.

    Accepts ``email``/``customerEmail`` and ``photos``/``files`` as equivalent keys.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_id: str = Field(..., min_length=1, validation_alias=AliasChoices("eventId", "event_id"))
    recipient_email: str = Field(
        ...,
        validation_alias=AliasChoices("email", "customerEmail", "recipient_email"),
    )
    items: tuple[MediaItem, ...] = Field(
        default=(), validation_alias=AliasChoices("photos", "files", "items")
    )
    request_id: str = Field(
        default_factory=_new_request_id,
        validation_alias=AliasChoices("requestId", "request_id"),
    )

    @field_validator("event_id", "request_id", mode="before")
    @classmethod
    def coerce_identifier(cls, value):
        # Event ids are sometimes numeric in producer payloads
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("recipient_email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip()
        if not _EMAIL_PATTERN.match(value):
            raise ValueError("invalid email format")
        return value

    @field_validator("items", mode="before")
    @classmethod
    def none_is_empty(cls, value):
        return () if value is None else value

    def archive_entries(self) -> list[tuple[str, MediaItem]]:
        """
        Pair every item with its final archive entry name, in job order.

        Names are sanitized and then made unique within the archive.
        """
        taken: set[str] = set()
        entries = []
        for position, item in enumerate(self.items, start=1):
            name = disambiguate_entry_name(
                sanitize_entry_name(item.file_name, position), taken
            )
            taken.add(name)
            entries.append((name, item))
        return entries


# --- Processing results ---


@dataclass(frozen=True, slots=True)
class ArchiveEntryResult:
    """Per-item outcome: either bytes were written or the item was skipped."""

    entry_name: str
    source_url: str
    succeeded: bool
    bytes_written: int = 0
    reason: str | None = None

    @classmethod
    def success(cls, entry_name: str, source_url: str, bytes_written: int) -> "ArchiveEntryResult":
        return cls(entry_name, source_url, True, bytes_written=bytes_written)

    @classmethod
    def failure(cls, entry_name: str, source_url: str, reason: str) -> "ArchiveEntryResult":
        return cls(entry_name, source_url, False, reason=reason)


@dataclass(frozen=True, slots=True)
class UploadPart:
    """A multipart part: 1-based number, the ETag the store returned, and its size."""

    part_number: int
    etag: str
    size: int

    def to_completion_entry(self) -> dict:
        return {"PartNumber": self.part_number, "ETag": self.etag}


class JobStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class JobOutcome:
    """Produced once per job and handed to the notification dispatcher."""

    status: JobStatus
    succeeded_count: int
    failed_items: tuple[ArchiveEntryResult, ...]
    processing_time_seconds: float
    download_url: str | None = None
    object_key: str | None = None
    archive_size_bytes: int = 0
    parts_uploaded: int = 0
    total_items: int = 0
    error: str | None = None
    error_code: str | None = None
    entries: tuple[ArchiveEntryResult, ...] = field(default=(), repr=False)

    @property
    def is_success(self) -> bool:
        return self.status is JobStatus.COMPLETED

    @property
    def archive_size_mb(self) -> float:
        return round(self.archive_size_bytes / 1_048_576, 2)


# --- Wire payloads for the notification webhook ---


class _WirePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class FailedFile(_WirePayload):
    file_name: str = Field(..., alias="fileName")
    error: str


class CompletionPayload(_WirePayload):
    event_id: str = Field(..., alias="eventId")
    email: str
    download_url: str = Field(..., alias="downloadUrl")
    file_count: int = Field(..., alias="fileCount")
    original_file_count: int = Field(..., alias="originalFileCount")
    final_size_mb: float = Field(..., alias="finalSizeMB")
    processing_time_seconds: float = Field(..., alias="processingTimeSeconds")
    request_id: str = Field(..., alias="requestId")
    failed_files: list[FailedFile] = Field(default_factory=list, alias="failedFiles")
    source: str | None = None


class FailurePayload(_WirePayload):
    event_id: str = Field(..., alias="eventId")
    email: str
    error: str
    is_error: bool = Field(True, alias="isError")
    request_id: str | None = Field(None, alias="requestId")
    source: str | None = None


def build_notification_payload(job: Job, outcome: JobOutcome, source: str | None = None) -> dict:
    """Render a job outcome into the JSON body posted to the webhook."""
    if outcome.is_success and outcome.download_url:
        return CompletionPayload(
            event_id=job.event_id,
            email=job.recipient_email,
            download_url=outcome.download_url,
            file_count=outcome.succeeded_count,
            original_file_count=outcome.total_items,
            final_size_mb=outcome.archive_size_mb,
            processing_time_seconds=round(outcome.processing_time_seconds, 1),
            request_id=job.request_id,
            failed_files=[
                FailedFile(file_name=item.entry_name, error=item.reason or "unknown error")
                for item in outcome.failed_items[:MAX_REPORTED_FAILURES]
            ],
            source=source,
        ).to_wire()

    return FailurePayload(
        event_id=job.event_id,
        email=job.recipient_email,
        error=outcome.error or "Processing failed",
        request_id=job.request_id,
        source=source,
    ).to_wire()
