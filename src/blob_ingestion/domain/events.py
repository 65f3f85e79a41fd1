"""Domain events for the blob ingestion service, one per terminal outcome."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from shared.domain.commands import Event


def _now():
    return datetime.now(timezone.utc)


@dataclass
class BlobIngested(Event):
    """Event raised when a blob has been copied to its destination."""
    event_id: str
    container: str
    object_key: str
    destination_container: str
    destination_key: str
    bytes_copied: int
    attempts: int
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class BlobSkipped(Event):
    """Event raised when a duplicate delivery was absorbed by the ledger."""
    event_id: str
    container: str
    object_key: str
    reason: str
    attempts: int
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class BlobIngestionFailed(Event):
    """Event raised when a run failed for good without exhausting retries."""
    event_id: str
    container: str
    object_key: str
    reason: str
    attempts: int
    error_type: Optional[str] = None
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class BlobDeadLettered(Event):
    """Event raised when an event ran out of retries and went to the dead-letter sink."""
    event_id: str
    container: str
    object_key: str
    reason: str
    attempts: int
    occurred_at: datetime = field(default_factory=_now)
