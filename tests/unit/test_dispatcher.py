# pylint: disable=redefined-outer-name
import threading
import time
from unittest import mock

import pytest

from blob_ingestion.adapters.object_store import TransientStoreError
from blob_ingestion.domain.model import IdempotencyKey, RecordStatus, ResultStatus
from blob_ingestion.service_layer.dispatcher import (
    CapacityExceeded,
    Dispatcher,
    DispatcherClosed,
    RetryPolicy,
    WorkState,
)

NO_BACKOFF = RetryPolicy(max_attempts=3, backoff_base=0.0, backoff_max=0.0, jitter=0.0)


@pytest.fixture
def make_dispatcher(pipeline, dead_letters):
    created = []

    def _make(**kwargs):
        kwargs.setdefault("workers", 2)
        kwargs.setdefault("queue_size", 10)
        kwargs.setdefault("retry_policy", NO_BACKOFF)
        dispatcher = Dispatcher(pipeline, dead_letters, **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield _make
    for dispatcher in created:
        dispatcher.shutdown(timeout=5)


@pytest.fixture
def outcomes():
    return []


@pytest.fixture
def invoice(store):
    store.add("in", "invoice.pdf", b"x" * 1024, content_type="application/pdf")


class TestRetryPolicy:

    def test_delay_doubles_up_to_the_cap(self):
        policy = RetryPolicy(backoff_base=1.0, backoff_max=10.0, jitter=0.0)

        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_jitter_shrinks_the_delay(self):
        policy = RetryPolicy(backoff_base=2.0, backoff_max=60.0, jitter=0.5)

        assert policy.delay(2, rng=lambda low, high: low) == 2.0
        assert policy.delay(2, rng=lambda low, high: high) == 4.0

    def test_jittered_delay_stays_in_bounds(self):
        policy = RetryPolicy(backoff_base=1.0, backoff_max=60.0, jitter=1.0)

        for _ in range(50):
            assert 0.0 <= policy.delay(3) <= 4.0

    def test_exhausted(self):
        policy = RetryPolicy(max_attempts=3)

        assert not policy.exhausted(2)
        assert policy.exhausted(3)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"backoff_base": -1.0},
            {"backoff_max": -1.0},
            {"jitter": 1.5},
        ]
    )
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


def test_submit_before_start_is_rejected(make_dispatcher, make_event):
    dispatcher = make_dispatcher()

    with pytest.raises(DispatcherClosed):
        dispatcher.submit(make_event())


def test_full_queue_raises_capacity_exceeded(make_dispatcher, make_event):
    dispatcher = make_dispatcher(queue_size=1)
    dispatcher.open()
    dispatcher.submit(make_event(event_id="e1"))

    with pytest.raises(CapacityExceeded):
        dispatcher.submit(make_event(event_id="e2"))

    stats = dispatcher.stats()
    assert stats["submitted"] == 1
    assert stats["rejected"] == 1
    assert stats["queued"] == 1


def test_successful_run(make_dispatcher, store, make_event, invoice, outcomes):
    dispatcher = make_dispatcher(on_outcome=lambda item, result: outcomes.append((item, result)))
    dispatcher.start()

    item = dispatcher.submit(make_event())

    assert dispatcher.drain(timeout=5)
    assert item.state is WorkState.DONE
    assert item.attempts == 1
    assert store.read("out", "processed-invoice.pdf") == b"x" * 1024
    assert [result.status for _, result in outcomes] == [ResultStatus.SUCCESS]
    assert dispatcher.stats()["done"] == 1


def test_transient_failures_are_retried_until_success(make_dispatcher, store, ledger, make_event, invoice, dead_letters):
    store.read_failures.extend([TransientStoreError("reset"), TransientStoreError("reset")])
    dispatcher = make_dispatcher()
    dispatcher.start()

    item = dispatcher.submit(make_event())

    assert dispatcher.drain(timeout=5)
    assert item.state is WorkState.DONE
    assert item.attempts == 3
    assert store.finalized == [("out", "processed-invoice.pdf")]
    assert dead_letters.published == []
    assert ledger.get(IdempotencyKey("in", "invoice.pdf", "e1")).status is RecordStatus.COMPLETED
    assert dispatcher.stats()["requeued"] == 2


def test_exhausted_retries_are_dead_lettered(make_dispatcher, store, ledger, make_event, invoice, dead_letters, outcomes):
    store.read_failures.extend([TransientStoreError("reset")] * 3)
    dispatcher = make_dispatcher(on_outcome=lambda item, result: outcomes.append((item, result)))
    dispatcher.start()

    item = dispatcher.submit(make_event())

    assert dispatcher.drain(timeout=5)
    assert item.dead_lettered
    assert item.state is WorkState.DROPPED
    assert item.attempts == 3
    assert [(event.event_id, reason) for event, reason in dead_letters.published] == [("e1", "reset")]
    assert ledger.get(IdempotencyKey("in", "invoice.pdf", "e1")).status is RecordStatus.FAILED
    assert store.keys("out") == []
    assert len(outcomes) == 1
    assert dispatcher.stats()["dead_lettered"] == 1


def test_fatal_failure_is_dropped_without_retry(make_dispatcher, make_event, dead_letters):
    dispatcher = make_dispatcher()
    dispatcher.start()

    item = dispatcher.submit(make_event())

    assert dispatcher.drain(timeout=5)
    assert item.state is WorkState.DROPPED
    assert item.attempts == 1
    assert not item.dead_lettered
    assert dead_letters.published == []
    assert dispatcher.stats()["dropped"] == 1


def test_duplicate_submissions_copy_once(make_dispatcher, store, make_event, invoice):
    dispatcher = make_dispatcher(
        workers=4,
        retry_policy=RetryPolicy(max_attempts=20, backoff_base=0.01, backoff_max=0.05, jitter=0.0),
    )
    dispatcher.start()

    for _ in range(5):
        dispatcher.submit(make_event())

    assert dispatcher.drain(timeout=5)
    assert store.finalized == [("out", "processed-invoice.pdf")]
    stats = dispatcher.stats()
    assert stats["done"] == 1
    assert stats["skipped"] == 4


def test_shutdown_dead_letters_waiting_retries(make_dispatcher, store, make_event, invoice, dead_letters, eventually):
    store.read_failures.append(TransientStoreError("reset"))
    dispatcher = make_dispatcher(retry_policy=RetryPolicy(max_attempts=5, backoff_base=60.0, backoff_max=60.0, jitter=0.0))
    dispatcher.start()
    item = dispatcher.submit(make_event())
    eventually(lambda: dispatcher.stats()["waiting_retry"] == 1)

    dispatcher.shutdown(timeout=5)

    assert item.dead_lettered
    assert [reason for _, reason in dead_letters.published] == ["dispatcher shut down before retry"]
    assert dispatcher.stats()["outstanding"] == 0
    assert not dispatcher.accepting


def test_shutdown_dead_letters_queued_events(make_dispatcher, make_event, dead_letters):
    dispatcher = make_dispatcher()
    dispatcher.open()
    dispatcher.submit(make_event())

    dispatcher.shutdown(timeout=5)

    assert len(dead_letters.published) == 1
    assert dispatcher.drain(timeout=0)


def test_shutdown_with_a_full_queue_honours_its_timeout(make_dispatcher, store, make_event, invoice, dead_letters, eventually):
    store.gate = threading.Event()
    dispatcher = make_dispatcher(workers=1, queue_size=1)
    dispatcher.start()
    running = dispatcher.submit(make_event(event_id="e1"))
    eventually(lambda: running.state is WorkState.RUNNING)
    queued = dispatcher.submit(make_event(event_id="e2"))

    try:
        started = time.monotonic()
        dispatcher.shutdown(cancel_running=True, timeout=0.5)
        elapsed = time.monotonic() - started
    finally:
        store.gate.set()

    assert elapsed < 2.0
    assert queued.dead_lettered
    assert queued.attempts == 0
    assert [(e.event_id, reason) for e, reason in dead_letters.published][0] == ("e2", "dispatcher shut down before retry")

    # the abandoned run is dead-lettered once it notices the cancellation
    assert dispatcher.drain(timeout=5)
    assert running.dead_lettered
    assert dead_letters.published[1][1].startswith("shutdown: ")
    assert store.finalized == []


def test_submit_after_shutdown_is_rejected(make_dispatcher, make_event):
    dispatcher = make_dispatcher()
    dispatcher.start()
    dispatcher.shutdown(timeout=5)

    with pytest.raises(DispatcherClosed):
        dispatcher.submit(make_event())


def test_failing_outcome_callback_does_not_stall_the_pool(make_dispatcher, make_event, invoice):
    callback = mock.Mock(side_effect=RuntimeError("subscriber down"))
    dispatcher = make_dispatcher(on_outcome=callback)
    dispatcher.start()

    dispatcher.submit(make_event(event_id="e1"))
    dispatcher.submit(make_event(event_id="e2"))

    assert dispatcher.drain(timeout=5)
    assert callback.call_count == 2
    assert dispatcher.stats()["done"] == 2


def test_pipeline_exception_is_retried(make_dispatcher, pipeline, make_event, invoice):
    original = pipeline.ledger.try_begin
    calls = []

    def flaky_begin(key):
        calls.append(key)
        if len(calls) == 1:
            raise ConnectionError("ledger down")
        return original(key)

    pipeline.ledger.try_begin = flaky_begin
    dispatcher = make_dispatcher()
    dispatcher.start()

    item = dispatcher.submit(make_event())

    assert dispatcher.drain(timeout=5)
    assert item.attempts == 2
    assert item.last_result.status is ResultStatus.SUCCESS


def test_housekeeping_runs_periodically(make_dispatcher, eventually):
    housekeeping = mock.Mock()
    dispatcher = make_dispatcher(housekeeping=housekeeping, housekeeping_interval=0.01)
    dispatcher.start()

    eventually(lambda: housekeeping.call_count >= 2)


def test_failing_housekeeping_keeps_the_scheduler_alive(make_dispatcher, eventually):
    housekeeping = mock.Mock(side_effect=RuntimeError("redis down"))
    dispatcher = make_dispatcher(housekeeping=housekeeping, housekeeping_interval=0.01)
    dispatcher.start()

    eventually(lambda: housekeeping.call_count >= 2)
