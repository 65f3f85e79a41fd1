"""Domain model for blob ingestion: events, idempotency records and run results."""

import enum
import hashlib
import json
import posixpath
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass(frozen=True)
class BlobEvent:
    """One notification that an object was created in a container."""
    event_id: str
    object_key: str
    container: str
    size_bytes: int = 0
    content_type: str = "application/octet-stream"
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not self.event_id:
            raise ValueError("event_id must not be empty")
        if not self.object_key:
            raise ValueError("object_key must not be empty")
        if not self.container:
            raise ValueError("container must not be empty")
        if self.size_bytes < 0:
            raise ValueError(f"size_bytes must not be negative, got {self.size_bytes}")


@dataclass(frozen=True)
class IdempotencyKey:
    container: str
    object_key: str
    event_id: str

    @classmethod
    def for_event(cls, event: BlobEvent) -> "IdempotencyKey":
        return cls(container=event.container, object_key=event.object_key, event_id=event.event_id)

    def digest(self) -> str:
        """Stable identifier, safe to use as a storage key whatever the parts contain."""
        encoded = json.dumps([self.container, self.object_key, self.event_id])
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def __str__(self):
        return f"{self.container}/{self.object_key}#{self.event_id}"


class RecordStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BeginOutcome(enum.Enum):
    ACQUIRED = "acquired"
    ALREADY_COMPLETED = "already_completed"
    ALREADY_PENDING = "already_pending"
    # acquired from a pending run whose lease ran out
    RECLAIMED = "reclaimed"


@dataclass
class IdempotencyRecord:
    """Ledger entry for one idempotency key.

    ``completed_at`` is set if and only if the status is COMPLETED.
    ``lease_expires_at`` is set while the record is PENDING; once it has
    passed, the run holding the key is presumed dead and the key can be
    reclaimed.
    """
    key: IdempotencyKey
    status: RecordStatus
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    attempts: int = 1
    lease_expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is RecordStatus.COMPLETED


class ResultStatus(enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of a single pipeline run."""
    status: ResultStatus
    event: BlobEvent
    destination_key: Optional[str] = None
    reason: Optional[str] = None
    bytes_copied: int = 0
    error_type: Optional[str] = None

    @classmethod
    def success(cls, event: BlobEvent, destination_key: str, bytes_copied: int) -> "PipelineResult":
        return cls(ResultStatus.SUCCESS, event, destination_key=destination_key, bytes_copied=bytes_copied)

    @classmethod
    def skipped(cls, event: BlobEvent, reason: str = "already completed") -> "PipelineResult":
        return cls(ResultStatus.SKIPPED, event, reason=reason)

    @classmethod
    def retryable(cls, event: BlobEvent, reason: str, error_type: Optional[str] = None) -> "PipelineResult":
        return cls(ResultStatus.RETRYABLE_FAILURE, event, reason=reason, error_type=error_type)

    @classmethod
    def fatal(cls, event: BlobEvent, reason: str, error_type: Optional[str] = None) -> "PipelineResult":
        return cls(ResultStatus.FATAL_FAILURE, event, reason=reason, error_type=error_type)

    @property
    def retryable_failure(self) -> bool:
        return self.status is ResultStatus.RETRYABLE_FAILURE


@dataclass(frozen=True)
class DestinationNamer:
    """Derives the destination key for a source key.

    The prefix is applied to the full key, and the suffix goes in front of the
    extension of the last path segment:

    >>> DestinationNamer("processed-", "-v1").derive("2024/invoice.pdf")
    'processed-2024/invoice-v1.pdf'
    """
    prefix: str = "processed-"
    suffix: str = ""

    def derive(self, object_key: str) -> str:
        if not object_key:
            raise ValueError("object_key must not be empty")
        head, tail = posixpath.split(object_key)
        if not tail:
            raise ValueError(f"object_key {object_key!r} ends with '/' and names no blob")
        key = object_key
        if self.suffix:
            stem, ext = posixpath.splitext(tail)
            key = posixpath.join(head, f"{stem}{self.suffix}{ext}") if head else f"{stem}{self.suffix}{ext}"
        return f"{self.prefix}{key}"
