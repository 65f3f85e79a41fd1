# pylint: disable=redefined-outer-name
import io
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

import fakeredis
import pytest
from tenacity import retry, retry_if_result, stop_after_delay, wait_fixed

from blob_ingestion.adapters.dead_letter import AbstractDeadLetterSink
from blob_ingestion.adapters.ledger import InMemoryIdempotencyLedger
from blob_ingestion.adapters.object_store import AbstractObjectStore, NotFoundError, ObjectInfo
from blob_ingestion.domain.model import BlobEvent, DestinationNamer
from blob_ingestion.service_layer.pipeline import IngestionPipeline

SOURCE = "in"
DESTINATION = "out"


class FakeObjectStore(AbstractObjectStore):
    """In-memory object store with failure injection.

    read_failures / write_failures hold exceptions raised by successive
    get_stream / _write calls. A write failure is raised after the first
    chunk has been consumed, so the staging object is partially written.
    """

    chunk_size = 256

    def __init__(self):
        self.objects = {}
        self.containers = set()
        self.read_failures = []
        self.write_failures = []
        self.writes = 0
        self.finalized = []
        self.gate = None
        self._lock = threading.Lock()

    def add(self, container, key, data: bytes, content_type="application/octet-stream"):
        self.objects[(container, key)] = (data, content_type)

    def read(self, container, key) -> bytes:
        return self.objects[(container, key)][0]

    def keys(self, container):
        return sorted(key for c, key in self.objects if c == container)

    @contextmanager
    def get_stream(self, container, key):
        if self.gate is not None:
            self.gate.wait(timeout=10)
        with self._lock:
            if self.read_failures:
                raise self.read_failures.pop(0)
            if (container, key) not in self.objects:
                raise NotFoundError(f"{container}/{key} not found")
            data = self.objects[(container, key)][0]
        yield io.BytesIO(data)

    def _write(self, container, key, stream, content_type):
        with self._lock:
            self.writes += 1
            failure = self.write_failures.pop(0) if self.write_failures else None
        buffer = bytearray()
        while True:
            chunk = stream.read(self.chunk_size)
            if not chunk:
                break
            buffer.extend(chunk)
            with self._lock:
                self.objects[(container, key)] = (bytes(buffer), content_type)
            if failure is not None:
                raise failure

    def copy(self, src_container, src_key, dst_container, dst_key):
        with self._lock:
            if (src_container, src_key) not in self.objects:
                raise NotFoundError(f"{src_container}/{src_key} not found")
            self.objects[(dst_container, dst_key)] = self.objects[(src_container, src_key)]
            self.finalized.append((dst_container, dst_key))

    def delete(self, container, key):
        with self._lock:
            self.objects.pop((container, key), None)

    def stat(self, container, key):
        with self._lock:
            if (container, key) not in self.objects:
                raise NotFoundError(f"{container}/{key} not found")
            data, content_type = self.objects[(container, key)]
        return ObjectInfo(size=len(data), content_type=content_type)

    def ensure_container(self, container):
        self.containers.add(container)


class FakeDeadLetterSink(AbstractDeadLetterSink):
    def __init__(self):
        self.published = []

    def publish(self, event, reason):
        self.published.append((event, reason))


class FakePublisher:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


@retry(stop=stop_after_delay(5), wait=wait_fixed(0.01), retry=retry_if_result(lambda ok: not ok))
def wait_until(predicate):
    return predicate()


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def ledger():
    return InMemoryIdempotencyLedger()


@pytest.fixture
def dead_letters():
    return FakeDeadLetterSink()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis()


@pytest.fixture
def pipeline(store, ledger):
    return IngestionPipeline(
        store=store,
        ledger=ledger,
        destination_container=DESTINATION,
        namer=DestinationNamer("processed-"),
        run_timeout=30.0,
    )


@pytest.fixture
def make_event():
    def _make(event_id="e1", object_key="invoice.pdf", container=SOURCE, size_bytes=1024, content_type="application/pdf"):
        return BlobEvent(
            event_id=event_id,
            object_key=object_key,
            container=container,
            size_bytes=size_bytes,
            content_type=content_type,
            received_at=datetime(2024, 1, 15, 8, 30, tzinfo=timezone.utc),
        )
    return _make


@pytest.fixture
def service_settings():
    """Pipeline settings for in-process tests: fast retries, no source filter."""
    return dict(
        source_containers=[],
        destination_container=DESTINATION,
        destination_prefix="processed-",
        destination_suffix="",
        workers=2,
        queue_size=10,
        retry_max_attempts=3,
        retry_backoff_base=0.0,
        retry_backoff_max=0.0,
        retry_jitter=0.0,
        run_timeout=30.0,
        ledger_ttl_seconds=3600.0,
        ledger_eviction_interval=3600.0,
    )


@pytest.fixture
def eventually():
    """Wait (up to 5s) for a condition that background threads make true."""
    return wait_until
