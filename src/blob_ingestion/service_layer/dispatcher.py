"""Dispatcher - bounded worker pool with retry scheduling and dead-lettering."""

import enum
import heapq
import itertools
import logging
import queue
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from blob_ingestion.adapters.dead_letter import AbstractDeadLetterSink
from blob_ingestion.adapters.ledger import LedgerRecordNotFound
from blob_ingestion.domain.model import BlobEvent, PipelineResult, ResultStatus
from blob_ingestion.service_layer.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)


class WorkState(enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    REQUEUED = "requeued"
    DROPPED = "dropped"


@dataclass
class WorkItem:
    event: BlobEvent
    item_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    state: WorkState = WorkState.QUEUED
    last_result: Optional[PipelineResult] = None
    dead_lettered: bool = False


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff with jitter.

    ``jitter`` is the fraction of the delay that is randomized: 0 gives the
    plain exponential delay, 1 gives "full jitter" in ``[0, delay]``.
    """
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    jitter: float = 0.5

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ValueError("backoff values must not be negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")

    def delay(self, attempt: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        raw = min(self.backoff_max, self.backoff_base * 2 ** (attempt - 1))
        return raw * rng(1.0 - self.jitter, 1.0)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


OutcomeCallback = Callable[[WorkItem, PipelineResult], None]

# how often idle workers check for shutdown
_POLL_INTERVAL = 0.2


class Dispatcher:
    """Schedules pipeline runs on a fixed pool of worker threads.

    Intake is a bounded queue: ``submit`` never blocks and raises
    CapacityExceeded when the queue is full, so the event source can redeliver
    later. Retryable failures wait in a delay heap until their backoff expires
    and then go back through the intake queue; after ``max_attempts`` the event
    is dead-lettered.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        dead_letters: AbstractDeadLetterSink,
        workers: int = 4,
        queue_size: int = 100,
        retry_policy: RetryPolicy = RetryPolicy(),
        on_outcome: Optional[OutcomeCallback] = None,
        housekeeping: Optional[Callable[[], object]] = None,
        housekeeping_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.pipeline = pipeline
        self.dead_letters = dead_letters
        self.workers = workers
        self.retry_policy = retry_policy
        self.on_outcome = on_outcome
        self.housekeeping = housekeeping
        self.housekeeping_interval = housekeeping_interval
        self.clock = clock

        self._intake: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._retries: List[Tuple[float, int, WorkItem]] = []
        self._sequence = itertools.count()
        self._cond = threading.Condition()
        self._outstanding = 0
        self._accepting = False
        self._stopping = threading.Event()
        self._cancel = threading.Event()
        self._threads: List[threading.Thread] = []
        self._scheduler: Optional[threading.Thread] = None
        self._counters: Dict[str, int] = {
            "submitted": 0,
            "done": 0,
            "skipped": 0,
            "requeued": 0,
            "dropped": 0,
            "dead_lettered": 0,
            "rejected": 0,
        }

    def start(self):
        with self._cond:
            if self._accepting:
                return
            self._accepting = True
        self._stopping.clear()
        self._cancel.clear()
        for n in range(self.workers):
            thread = threading.Thread(target=self._worker_loop, name=f"ingest-worker-{n}", daemon=True)
            thread.start()
            self._threads.append(thread)
        self._scheduler = threading.Thread(target=self._scheduler_loop, name="ingest-scheduler", daemon=True)
        self._scheduler.start()
        logger.info(f"Dispatcher started with {self.workers} workers, queue size {self._intake.maxsize}")

    def open(self):
        """Accept submissions without starting workers (events stay queued)."""
        with self._cond:
            self._accepting = True

    def submit(self, event: BlobEvent) -> WorkItem:
        """Enqueue an event for processing without blocking."""
        item = WorkItem(event=event)
        with self._cond:
            if not self._accepting or self._stopping.is_set():
                self._counters["rejected"] += 1
                raise DispatcherClosed("dispatcher is not accepting events")
            try:
                self._intake.put_nowait(item)
            except queue.Full:
                self._counters["rejected"] += 1
                raise CapacityExceeded(f"intake queue is full ({self._intake.maxsize} events)") from None
            self._outstanding += 1
            self._counters["submitted"] += 1
        logger.debug(f"Queued event {event.event_id} as work item {item.item_id}")
        return item

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until nothing is queued, running or waiting for a retry."""
        with self._cond:
            return self._cond.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def shutdown(self, cancel_running: bool = False, timeout: Optional[float] = None):
        """Stop intake and workers, waiting at most ``timeout`` seconds for them.

        Events still queued or waiting for a retry are dead-lettered right away.
        With ``cancel_running`` the running copies are abandoned (their ledger
        keys are failed and become retryable); otherwise a run that outlasts
        ``timeout`` finishes in the background and is dead-lettered if it fails.
        """
        with self._cond:
            self._accepting = False
            self._stopping.set()
            self._cond.notify_all()
        if cancel_running:
            self._cancel.set()
        self._dead_letter_unstarted()

        deadline = None if timeout is None else time.monotonic() + timeout
        threads = self._threads + ([self._scheduler] if self._scheduler is not None else [])
        for thread in threads:
            thread.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        still_running = [thread.name for thread in threads if thread.is_alive()]
        if still_running:
            logger.warning(f"Dispatcher shutdown timed out waiting for {', '.join(still_running)}")
        self._threads = []
        self._scheduler = None

        # the scheduler may have requeued a retry while we were draining
        self._dead_letter_unstarted()
        logger.info("Dispatcher stopped")

    def _dead_letter_unstarted(self):
        with self._cond:
            unstarted = [item for _, _, item in self._retries]
            self._retries.clear()
        while True:
            try:
                unstarted.append(self._intake.get_nowait())
            except queue.Empty:
                break
        for item in unstarted:
            self._dead_letter(item, "dispatcher shut down before retry")

    def stats(self) -> Dict[str, int]:
        with self._cond:
            stats = dict(self._counters)
            stats["queued"] = self._intake.qsize()
            stats["waiting_retry"] = len(self._retries)
            stats["outstanding"] = self._outstanding
        return stats

    @property
    def accepting(self) -> bool:
        return self._accepting and not self._stopping.is_set()

    def _worker_loop(self):
        while True:
            try:
                item = self._intake.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                continue
            if self._stopping.is_set():
                self._dead_letter(item, "dispatcher shut down before retry")
                continue
            self._run(item)

    def _run(self, item: WorkItem):
        item.state = WorkState.RUNNING
        item.attempts += 1
        try:
            result = self.pipeline.process(item.event, cancel=self._cancel)
        except LedgerRecordNotFound as e:
            logger.exception("Ledger lost track of work item %s", item.item_id)
            result = PipelineResult.fatal(item.event, str(e))
        except Exception as e:
            # ledger or store unreachable before a run could be classified
            logger.exception("Pipeline run for work item %s failed", item.item_id)
            result = PipelineResult.retryable(item.event, f"pipeline error: {e!r}")
        item.last_result = result
        self._route(item, result)

    def _route(self, item: WorkItem, result: PipelineResult):
        event = item.event
        if result.status in (ResultStatus.SUCCESS, ResultStatus.SKIPPED):
            item.state = WorkState.DONE
            self._count("done" if result.status is ResultStatus.SUCCESS else "skipped")
            logger.info(
                f"outcome={result.status.value} container={event.container} object_key={event.object_key} "
                f"event_id={event.event_id} attempts={item.attempts} destination={result.destination_key}"
            )
            self._finish(item, result)
        elif result.status is ResultStatus.FATAL_FAILURE:
            item.state = WorkState.DROPPED
            self._count("dropped")
            logger.error(
                f"outcome={result.status.value} container={event.container} object_key={event.object_key} "
                f"event_id={event.event_id} attempts={item.attempts} reason={result.reason}"
            )
            self._finish(item, result)
        elif self.retry_policy.exhausted(item.attempts) or self._stopping.is_set():
            reason = result.reason if not self._stopping.is_set() else f"shutdown: {result.reason}"
            self._dead_letter(item, reason)
        else:
            delay = self.retry_policy.delay(item.attempts)
            item.state = WorkState.REQUEUED
            self._count("requeued")
            logger.warning(
                f"outcome=retry container={event.container} object_key={event.object_key} "
                f"event_id={event.event_id} attempts={item.attempts} delay={delay:.2f}s reason={result.reason}"
            )
            with self._cond:
                heapq.heappush(self._retries, (self.clock() + delay, next(self._sequence), item))
                self._cond.notify_all()

    def _dead_letter(self, item: WorkItem, reason: str):
        event = item.event
        item.state = WorkState.DROPPED
        item.dead_lettered = True
        self._count("dead_lettered")
        logger.error(
            f"outcome=dead_lettered container={event.container} object_key={event.object_key} "
            f"event_id={event.event_id} attempts={item.attempts} reason={reason}"
        )
        try:
            self.dead_letters.publish(event, reason)
        except Exception:
            logger.exception("Dead-letter sink failed for event %s", event.event_id)
        self._finish(item, PipelineResult.retryable(event, reason))

    def _finish(self, item: WorkItem, result: PipelineResult):
        if self.on_outcome is not None:
            try:
                self.on_outcome(item, result)
            except Exception:
                logger.exception("Outcome callback failed for work item %s", item.item_id)
        with self._cond:
            self._outstanding -= 1
            self._cond.notify_all()

    def _count(self, name: str):
        with self._cond:
            self._counters[name] += 1

    def _scheduler_loop(self):
        next_housekeeping = self.clock() + self.housekeeping_interval
        while not self._stopping.is_set():
            due: List[WorkItem] = []
            with self._cond:
                now = self.clock()
                while self._retries and self._retries[0][0] <= now:
                    due.append(heapq.heappop(self._retries)[2])
                wake_at = self._retries[0][0] if self._retries else now + 1.0
                if self.housekeeping is not None:
                    wake_at = min(wake_at, next_housekeeping)
                if not due:
                    self._cond.wait(timeout=max(0.0, min(wake_at - now, 1.0)))

            for item in due:
                self._requeue(item)

            if self.housekeeping is not None and self.clock() >= next_housekeeping:
                next_housekeeping = self.clock() + self.housekeeping_interval
                try:
                    self.housekeeping()
                except Exception:
                    logger.exception("Housekeeping task failed")

    def _requeue(self, item: WorkItem):
        item.state = WorkState.QUEUED
        while not self._stopping.is_set():
            try:
                # retries share the bounded queue with fresh events
                self._intake.put(item, timeout=0.5)
                return
            except queue.Full:
                continue
        with self._cond:
            heapq.heappush(self._retries, (self.clock(), next(self._sequence), item))


class CapacityExceeded(Exception):
    """The intake queue is full; the caller should redeliver later."""
    pass


class DispatcherClosed(Exception):
    """The dispatcher is stopped or shutting down; the caller should redeliver later."""
    pass
