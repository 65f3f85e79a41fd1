"""Wires adapters, pipeline, dispatcher and message bus together.

Every collaborator can be injected; anything left out is built from the
environment through ``config``.
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, Optional

import redis
from minio import Minio

import config
from shared.service_layer.messagebus import MessageBus
from blob_ingestion.adapters.dead_letter import AbstractDeadLetterSink, RedisDeadLetterSink
from blob_ingestion.adapters.ledger import (
    AbstractIdempotencyLedger,
    InMemoryIdempotencyLedger,
    RedisIdempotencyLedger,
)
from blob_ingestion.adapters.object_store import AbstractObjectStore, MinIOObjectStore
from blob_ingestion.adapters.redis_adapter import RedisPublisher
from blob_ingestion.domain import commands, events
from blob_ingestion.domain.model import DestinationNamer
from blob_ingestion.service_layer import handlers
from blob_ingestion.service_layer.dispatcher import Dispatcher, RetryPolicy
from blob_ingestion.service_layer.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)


@dataclass
class Service:
    bus: MessageBus
    dispatcher: Dispatcher
    pipeline: IngestionPipeline
    settings: Dict[str, Any]


def bootstrap(
    store: Optional[AbstractObjectStore] = None,
    ledger: Optional[AbstractIdempotencyLedger] = None,
    dead_letters: Optional[AbstractDeadLetterSink] = None,
    publisher=None,
    settings: Optional[Dict[str, Any]] = None,
    redis_client: Optional[redis.Redis] = None,
    start: bool = False,
) -> Service:
    settings = {**config.get_pipeline_config(), **(settings or {})}
    namer = DestinationNamer(settings["destination_prefix"], settings["destination_suffix"])
    destination = settings["destination_container"]

    if destination in settings["source_containers"] and namer.derive("x") == "x":
        raise ValueError("An empty destination name rule would overwrite source blobs in place")

    if redis_client is None and (ledger is None or dead_letters is None or publisher is None):
        redis_client = redis.Redis(**config.get_redis_host_and_port())

    if store is None:
        minio_config = config.get_minio_config()
        store = MinIOObjectStore(
            Minio(
                endpoint=minio_config["endpoint"],
                access_key=minio_config["access_key"],
                secret_key=minio_config["secret_key"],
                secure=minio_config["secure"],
            ),
            part_size=minio_config["part_size"],
        )
        store.ensure_container(destination)

    if ledger is None:
        lease_seconds = settings["run_timeout"] + settings["ledger_lease_margin"]
        if settings["ledger_backend"] == "memory":
            ledger = InMemoryIdempotencyLedger(lease_seconds=lease_seconds)
        else:
            ledger = RedisIdempotencyLedger(redis_client, prefix=settings["ledger_prefix"], lease_seconds=lease_seconds)
    elif ledger.lease_seconds <= settings["run_timeout"]:
        logger.warning(
            f"Ledger lease of {ledger.lease_seconds}s does not outlast the {settings['run_timeout']}s run timeout; "
            "a slow run can lose its key to a redelivery"
        )
    if dead_letters is None:
        dead_letters = RedisDeadLetterSink(redis_client, key=settings["dead_letter_key"])
    if publisher is None:
        publisher = RedisPublisher(redis_client, channel=settings["outcomes_channel"])

    pipeline = IngestionPipeline(
        store=store,
        ledger=ledger,
        destination_container=destination,
        namer=namer,
        run_timeout=settings["run_timeout"],
    )

    bus = MessageBus()

    def on_outcome(item, result):
        bus.handle(handlers.outcome_event(item, result, destination))

    dispatcher = Dispatcher(
        pipeline=pipeline,
        dead_letters=dead_letters,
        workers=settings["workers"],
        queue_size=settings["queue_size"],
        retry_policy=RetryPolicy(
            max_attempts=settings["retry_max_attempts"],
            backoff_base=settings["retry_backoff_base"],
            backoff_max=settings["retry_backoff_max"],
            jitter=settings["retry_jitter"],
        ),
        on_outcome=on_outcome,
        housekeeping=partial(bus.handle, commands.EvictExpiredRecords(ttl_seconds=settings["ledger_ttl_seconds"])),
        housekeeping_interval=settings["ledger_eviction_interval"],
    )

    bus.register_handler(
        commands.IngestBlob,
        partial(
            handlers.enqueue_blob,
            dispatcher=dispatcher,
            destination_container=destination,
            source_containers=settings["source_containers"],
        ),
    )
    bus.register_handler(commands.EvictExpiredRecords, partial(handlers.evict_expired_records, ledger=ledger))

    for event_type in (events.BlobIngested, events.BlobSkipped, events.BlobIngestionFailed, events.BlobDeadLettered):
        bus.register_event_handler(event_type, partial(handlers.publish_outcome, publisher=publisher))
    bus.register_event_handler(events.BlobIngestionFailed, handlers.alert_on_access_denied)

    if start:
        dispatcher.start()

    logger.info(
        f"Blob ingestion bootstrapped: sources={settings['source_containers'] or 'any'} "
        f"destination={destination} workers={settings['workers']}"
    )
    return Service(bus=bus, dispatcher=dispatcher, pipeline=pipeline, settings=settings)
