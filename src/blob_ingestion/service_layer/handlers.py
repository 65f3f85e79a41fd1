import logging
from datetime import timedelta
from typing import Iterable, Optional

from shared.domain.commands import Event
from blob_ingestion.adapters.ledger import AbstractIdempotencyLedger
from blob_ingestion.adapters.redis_adapter import RedisPublisher
from blob_ingestion.domain.commands import EvictExpiredRecords, IngestBlob
from blob_ingestion.domain.events import (
    BlobDeadLettered,
    BlobIngested,
    BlobIngestionFailed,
    BlobSkipped,
)
from blob_ingestion.domain.model import PipelineResult, ResultStatus
from blob_ingestion.service_layer.dispatcher import Dispatcher, WorkItem

logger = logging.getLogger(__name__)


def enqueue_blob(
    command: IngestBlob,
    dispatcher: Dispatcher,
    destination_container: str,
    source_containers: Iterable[str] = (),
) -> Optional[str]:
    """
    Hand a parsed blob event to the dispatcher.

    Events from containers outside ``source_containers`` (when given) and
    events from the destination container itself are ignored; the latter
    would otherwise feed the pipeline its own output.

    Returns:
        The work item id, or None when the event was ignored

    Raises:
        CapacityExceeded: intake queue is full
        DispatcherClosed: dispatcher is not accepting events
    """
    event = command.event
    allowed = set(source_containers)

    if event.container == destination_container:
        logger.info(f"Ignoring event {event.event_id}: {event.container} is the destination container")
        return None
    if allowed and event.container not in allowed:
        logger.info(f"Ignoring event {event.event_id}: container {event.container} is not watched")
        return None

    item = dispatcher.submit(event)
    logger.info(f"Accepted event {event.event_id} for {event.container}/{event.object_key} as {item.item_id}")
    return item.item_id


def evict_expired_records(command: EvictExpiredRecords, ledger: AbstractIdempotencyLedger) -> int:
    evicted = ledger.evict_older_than(timedelta(seconds=command.ttl_seconds))
    logger.debug(f"Ledger housekeeping evicted {evicted} records")
    return evicted


def outcome_event(item: WorkItem, result: PipelineResult, destination_container: str) -> Event:
    """Map a terminal run outcome onto the domain event announcing it."""
    event = item.event
    common = dict(
        event_id=event.event_id,
        container=event.container,
        object_key=event.object_key,
        attempts=item.attempts,
    )

    if item.dead_lettered:
        return BlobDeadLettered(reason=result.reason or "", **common)
    if result.status is ResultStatus.SUCCESS:
        return BlobIngested(
            destination_container=destination_container,
            destination_key=result.destination_key,
            bytes_copied=result.bytes_copied,
            **common,
        )
    if result.status is ResultStatus.SKIPPED:
        return BlobSkipped(reason=result.reason or "", **common)
    return BlobIngestionFailed(reason=result.reason or "", error_type=result.error_type, **common)


def publish_outcome(event: Event, publisher: RedisPublisher):
    """Publish the outcome so downstream services and alerting can react."""
    publisher.publish(event)


def alert_on_access_denied(event: BlobIngestionFailed):
    """Access denied is a deployment problem, not a data problem; shout about it."""
    if event.error_type == "AccessDeniedError":
        logger.critical(
            f"ALERT access denied while ingesting {event.container}/{event.object_key} "
            f"(event {event.event_id}): {event.reason}"
        )
