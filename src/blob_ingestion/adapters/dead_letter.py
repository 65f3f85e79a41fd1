"""Dead-letter sink for events that exhausted their retry budget."""

import abc
import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone

import redis

from blob_ingestion.adapters.redis_adapter import json_default
from blob_ingestion.domain.model import BlobEvent

logger = logging.getLogger(__name__)


class AbstractDeadLetterSink(abc.ABC):

    @abc.abstractmethod
    def publish(self, event: BlobEvent, reason: str) -> None:
        """Hand the event over for out-of-band handling. Fire-and-forget."""
        raise NotImplementedError


class RedisDeadLetterSink(AbstractDeadLetterSink):
    """Appends dead letters as JSON documents to a Redis list."""

    def __init__(self, client: redis.Redis, key: str = "blob-ingestion:dead-letter"):
        self.client = client
        self.key = key

    def publish(self, event: BlobEvent, reason: str) -> None:
        document = asdict(event)
        document["reason"] = reason
        document["dead_lettered_at"] = datetime.now(timezone.utc)
        try:
            self.client.rpush(self.key, json.dumps(document, default=json_default))
            logger.info(f"Dead-lettered event {event.event_id} for {event.container}/{event.object_key}: {reason}")
        except redis.RedisError:
            logger.exception("Failed to dead-letter event %s (%s)", event.event_id, reason)
