"""Redis adapter for publishing outcome events."""

import enum
import json
import logging
from dataclasses import asdict
from datetime import datetime

import redis

from shared.domain.commands import Event

logger = logging.getLogger(__name__)


def json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_event(event: Event) -> str:
    """Serialize event to JSON, tagging it with its type and handling datetimes."""
    event_dict = asdict(event)
    event_dict["event_type"] = type(event).__name__
    return json.dumps(event_dict, default=json_default)


class RedisPublisher:
    """Publishes domain events on a Redis pub/sub channel."""

    def __init__(self, client: redis.Redis, channel: str = "blob-ingestion:outcomes"):
        self.client = client
        self.channel = channel

    def publish(self, event: Event):
        logger.debug("publishing: channel=%s, event=%s", self.channel, event)
        self.client.publish(self.channel, serialize_event(event))
