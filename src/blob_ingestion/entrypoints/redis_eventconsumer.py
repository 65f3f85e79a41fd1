"""Redis event consumer - pull-mode intake of blob notifications from a Redis list."""

import logging
import time

import redis

import config
from blob_ingestion import bootstrap
from blob_ingestion.adapters import event_source
from blob_ingestion.adapters.event_source import MalformedPayload, UnsupportedEventType
from blob_ingestion.domain.commands import IngestBlob
from blob_ingestion.service_layer.dispatcher import CapacityExceeded, DispatcherClosed

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
IGNORED = "ignored"
REJECTED = "rejected"
DEFERRED = "deferred"

BACKOFF_SECONDS = 1.0


def main():
    """Main entry point for the Redis intake consumer."""
    logging.basicConfig(level=logging.INFO)
    logger.info("Blob ingestion Redis consumer starting")

    service = bootstrap.bootstrap(start=True)
    r = redis.Redis(**config.get_redis_host_and_port())
    intake = service.settings["intake_list"]

    logger.info(f"Reading notifications from '{intake}', waiting for messages...")

    try:
        while True:
            item = r.blpop([intake], timeout=5)
            if item is None:
                continue
            _, raw = item
            if handle_message(raw, service.bus) == DEFERRED:
                # put it back at the head so it is the next one retried
                r.lpush(intake, raw)
                time.sleep(BACKOFF_SECONDS)
    except KeyboardInterrupt:
        logger.info("Consumer stopped by user")
    finally:
        service.dispatcher.shutdown(cancel_running=True, timeout=30)


def handle_message(raw, bus) -> str:
    """
    Parse one raw notification and hand it to the message bus.

    Args:
        raw: payload bytes as pushed by the event source
        bus: message bus with an IngestBlob handler

    Returns:
        str: accepted, ignored, rejected (malformed, dropped for good) or
        deferred (no capacity right now, push it back)
    """
    try:
        records = event_source.load_records(raw)
        events = []
        for record in records:
            try:
                events.append(event_source.parse_record(record))
            except UnsupportedEventType as e:
                logger.info(f"Dropping notification: {e}")
    except MalformedPayload as e:
        logger.error(f"Rejected malformed notification: {e}")
        return REJECTED

    accepted = 0
    try:
        for blob_event in events:
            if bus.handle(IngestBlob(event=blob_event)) is not None:
                accepted += 1
    except (CapacityExceeded, DispatcherClosed) as e:
        logger.warning(f"Deferring notification: {e}")
        return DEFERRED

    return ACCEPTED if accepted else IGNORED


if __name__ == "__main__":
    main()
