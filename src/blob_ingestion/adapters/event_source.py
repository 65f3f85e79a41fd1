"""Event source adapter - turns raw notification payloads into BlobEvents.

Two payload shapes are understood:

* the generic webhook shape::

    {"event_id": "e1", "event_type": "blob.created", "object_key": "invoice.pdf",
     "container": "in", "size": 1024, "content_type": "application/pdf",
     "event_time": "2024-01-15T08:30:00Z"}

* the Azure Event Grid blob schema, where container and name are encoded in
  ``subject`` and size/content type live under ``data``.

Everything here is pure: no I/O, no clock other than the fallback
``received_at`` when the payload carries no event time.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from blob_ingestion.domain.model import BlobEvent

logger = logging.getLogger(__name__)

CREATION_EVENT_TYPES = frozenset({
    "Microsoft.Storage.BlobCreated",
    "BlobCreated",
    "blob.created",
    "ObjectCreated",
})
S3_CREATION_PREFIX = "s3:ObjectCreated:"
SUBSCRIPTION_VALIDATION_EVENT = "Microsoft.EventGrid.SubscriptionValidationEvent"

# /blobServices/default/containers/{container}/blobs/{name}
_BLOB_SUBJECT = re.compile(r"^/blobServices/[^/]+/containers/(?P<container>[^/]+)/blobs/(?P<name>.+)$")
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


class NotificationPayload(BaseModel):
    """Validated view of one inbound notification record."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    event_id: str = Field(min_length=1, validation_alias=AliasChoices("event_id", "id", "eventId"))
    event_type: str = Field(min_length=1, validation_alias=AliasChoices("event_type", "eventType"))
    object_key: Optional[str] = Field(default=None, validation_alias=AliasChoices("object_key", "objectKey"))
    subject: Optional[str] = None
    container: Optional[str] = None
    size: int = Field(default=0, ge=0, validation_alias=AliasChoices("size", "size_bytes", "contentLength"))
    content_type: str = Field(
        default="application/octet-stream",
        validation_alias=AliasChoices("content_type", "contentType"),
    )
    event_time: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("event_time", "eventTime"))

    @field_validator("event_time", mode="before")
    @classmethod
    def trim_fraction(cls, value):
        # Event Grid sends 100ns precision, datetime holds microseconds
        if isinstance(value, str):
            return _EXCESS_FRACTION.sub(r"\1", value, count=1)
        return value


def load_records(raw_payload: bytes) -> List[Dict[str, Any]]:
    """Decode a payload holding one record or a JSON array of records."""
    try:
        decoded = json.loads(raw_payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedPayload(f"Payload is not valid JSON: {e}") from e

    records = decoded if isinstance(decoded, list) else [decoded]
    if not records:
        raise MalformedPayload("Payload contains no events")
    for record in records:
        if not isinstance(record, dict):
            raise MalformedPayload(f"Expected a JSON object per event, got {type(record).__name__}")
    return records


def validation_code(records: List[Dict[str, Any]]) -> Optional[str]:
    """Return the Event Grid subscription validation code, if this is the handshake."""
    for record in records:
        event_type = record.get("eventType") or record.get("event_type")
        if event_type == SUBSCRIPTION_VALIDATION_EVENT:
            data = record.get("data") or {}
            code = data.get("validationCode") if isinstance(data, dict) else None
            if not code:
                raise MalformedPayload("Subscription validation event without validationCode")
            return code
    return None


def is_creation_event(event_type: str) -> bool:
    return event_type in CREATION_EVENT_TYPES or event_type.startswith(S3_CREATION_PREFIX)


def parse_record(record: Dict[str, Any]) -> BlobEvent:
    """Parse one decoded notification record into a BlobEvent.

    Raises:
        MalformedPayload: required fields are missing or invalid
        UnsupportedEventType: the record is not an object creation event
    """
    flattened = dict(record)
    data = record.get("data")
    if isinstance(data, dict):
        # Event Grid keeps blob properties under "data"
        for name in ("contentLength", "contentType"):
            if name in data and name not in flattened:
                flattened[name] = data[name]

    try:
        payload = NotificationPayload.model_validate(flattened)
    except ValidationError as e:
        raise MalformedPayload(f"Invalid event payload: {_describe(e)}") from e

    if not is_creation_event(payload.event_type):
        raise UnsupportedEventType(payload.event_type)

    container, object_key = _resolve_location(payload)
    if not object_key:
        raise MalformedPayload(f"Event {payload.event_id} has no object_key or subject")
    if not container:
        raise MalformedPayload(f"Event {payload.event_id} has no container")

    received_at = payload.event_time or datetime.now(timezone.utc)
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    return BlobEvent(
        event_id=payload.event_id,
        object_key=object_key,
        container=container,
        size_bytes=payload.size,
        content_type=payload.content_type,
        received_at=received_at,
    )


def parse(raw_payload: bytes) -> BlobEvent:
    """Parse a raw payload carrying exactly one notification."""
    records = load_records(raw_payload)
    if len(records) != 1:
        raise MalformedPayload(f"Expected a single event, got {len(records)}")
    return parse_record(records[0])


def _resolve_location(payload: NotificationPayload):
    container = payload.container
    object_key = payload.object_key

    if payload.subject:
        match = _BLOB_SUBJECT.match(payload.subject)
        if match:
            container = container or match.group("container")
            object_key = object_key or match.group("name")
        elif not object_key:
            object_key = payload.subject

    return container, object_key


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


class ParseError(Exception):
    """Base class for payloads that cannot become a BlobEvent. Never retried."""
    pass


class MalformedPayload(ParseError):
    """Required fields are missing or invalid."""
    pass


class UnsupportedEventType(ParseError):
    """The notification is not an object creation event; dropped, not an error."""

    def __init__(self, event_type: str):
        super().__init__(f"Unsupported event type: {event_type}")
        self.event_type = event_type
