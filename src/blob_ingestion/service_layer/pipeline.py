import logging
import threading
import time
from typing import BinaryIO, Callable, Optional

from tenacity import Retrying, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from blob_ingestion.adapters.ledger import AbstractIdempotencyLedger, LedgerRecordNotFound
from blob_ingestion.adapters.object_store import (
    AbstractObjectStore,
    AccessDeniedError,
    NotFoundError,
    TransientStoreError,
)
from blob_ingestion.domain.model import (
    BeginOutcome,
    BlobEvent,
    DestinationNamer,
    IdempotencyKey,
    PipelineResult,
    ResultStatus,
)

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Copies a newly created blob to the destination container, at most once per event.

    Flow for ``process``:
    1. Claim the idempotency key in the ledger
    2. Stream the source object into the destination under its derived name
    3. Mark the key completed, or failed if the copy did not happen

    A key reclaimed from an expired lease may belong to a run that finalized its
    copy but never reached step 3; if the destination already holds a copy of
    the source's size, step 2 is skipped.

    The store and ledger are injected; the pipeline holds no locks of its own.
    """

    def __init__(
        self,
        store: AbstractObjectStore,
        ledger: AbstractIdempotencyLedger,
        destination_container: str,
        namer: DestinationNamer = DestinationNamer(),
        run_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        ledger_attempts: int = 3,
    ):
        self.store = store
        self.ledger = ledger
        self.destination_container = destination_container
        self.namer = namer
        self.run_timeout = run_timeout
        self.clock = clock
        self.ledger_attempts = ledger_attempts

    def process(self, event: BlobEvent, cancel: Optional[threading.Event] = None) -> PipelineResult:
        """
        Run the pipeline for one event.

        Args:
            event: parsed blob creation event
            cancel: optional flag; once set, an ongoing copy is abandoned

        Returns:
            PipelineResult: success, skipped, retryable or fatal failure
        """
        key = IdempotencyKey.for_event(event)

        try:
            destination_key = self.namer.derive(event.object_key)
        except ValueError as e:
            logger.error(f"Cannot name a destination for {key}: {e}")
            return PipelineResult.fatal(event, str(e), error_type=type(e).__name__)

        outcome = self.ledger.try_begin(key)
        if outcome is BeginOutcome.ALREADY_COMPLETED:
            logger.info(f"Skipping {key}: already completed")
            return PipelineResult.skipped(event)
        if outcome is BeginOutcome.ALREADY_PENDING:
            logger.info(f"Deferring {key}: another run is in progress")
            return PipelineResult.retryable(event, "ledger conflict: another run is in progress")

        logger.info(f"Processing blob\n Name: {event.object_key} \n Container: {event.container} \n Size: {event.size_bytes} bytes")

        try:
            bytes_copied = None
            if outcome is BeginOutcome.RECLAIMED:
                bytes_copied = self._finalized_copy(event, destination_key)
            if bytes_copied is None:
                bytes_copied = self._copy(event, destination_key, cancel)
        except (TransientStoreError, RunTimeout, RunCancelled) as e:
            logger.warning(f"Retryable failure copying {key}: {e}")
            return self._settle(key, "fail", PipelineResult.retryable(event, str(e), error_type=type(e).__name__))
        except (NotFoundError, AccessDeniedError) as e:
            logger.error(f"Fatal failure copying {key}: {e}")
            return self._settle(key, "fail", PipelineResult.fatal(event, str(e), error_type=type(e).__name__))
        except Exception as e:
            logger.exception("Unexpected error copying %s", key)
            return self._settle(
                key, "fail", PipelineResult.fatal(event, f"unexpected error: {e!r}", error_type=type(e).__name__)
            )

        result = self._settle(key, "complete", PipelineResult.success(event, destination_key, bytes_copied))
        if result.status is not ResultStatus.SUCCESS:
            return result

        if bytes_copied != event.size_bytes:
            logger.warning(
                f"Size mismatch for {key}: event reported {event.size_bytes} bytes, copied {bytes_copied}"
            )
        logger.info(
            f"Processing complete for {event.object_key}. Blob copied to "
            f"{self.destination_container} with new name {destination_key}."
        )
        return result

    def _settle(self, key: IdempotencyKey, transition: str, result: PipelineResult) -> PipelineResult:
        """Record the run's outcome with ``ledger.complete`` or ``ledger.fail``.

        Ledger errors are retried a few times. If the ledger stays unreachable the
        record is left pending, so the result becomes retryable: the next delivery
        after the lease expires reclaims the key.
        """
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.ledger_attempts),
                wait=wait_exponential(multiplier=0.05, max=1.0),
                retry=retry_if_not_exception_type(LedgerRecordNotFound),
                reraise=True,
            ):
                with attempt:
                    getattr(self.ledger, transition)(key)
        except LedgerRecordNotFound:
            raise
        except Exception as e:
            logger.error(f"Could not {transition} ledger record for {key}: {e!r}")
            return PipelineResult.retryable(result.event, f"ledger error: {e!r}", error_type=type(e).__name__)
        return result

    def _finalized_copy(self, event: BlobEvent, destination_key: str) -> Optional[int]:
        """Size of a destination copy left by an abandoned run, or None if there is none."""
        try:
            existing = self.store.stat(self.destination_container, destination_key)
        except NotFoundError:
            return None
        source = self.store.stat(event.container, event.object_key)
        if existing.size != source.size:
            logger.warning(
                f"Replacing {self.destination_container}/{destination_key}: "
                f"{existing.size} bytes, source has {source.size}"
            )
            return None
        logger.info(f"{self.destination_container}/{destination_key} was finalized by an earlier run")
        return existing.size

    def _copy(self, event: BlobEvent, destination_key: str, cancel: Optional[threading.Event]) -> int:
        deadline = self.clock() + self.run_timeout
        with self.store.get_stream(event.container, event.object_key) as source:
            guarded = GuardedReader(source, deadline=deadline, clock=self.clock, cancel=cancel)
            self.store.put_stream(
                self.destination_container,
                destination_key,
                guarded,
                content_type=event.content_type,
            )
        return guarded.bytes_read


class GuardedReader:
    """File-like wrapper that counts bytes and enforces deadline and cancellation.

    The checks run before and after every read, so a copy that overruns is
    abandoned before the store gets to finalize it.
    """

    def __init__(
        self,
        stream: BinaryIO,
        deadline: float,
        clock: Callable[[], float] = time.monotonic,
        cancel: Optional[threading.Event] = None,
    ):
        self.stream = stream
        self.deadline = deadline
        self.clock = clock
        self.cancel = cancel
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        self._check()
        chunk = self.stream.read(size)
        self.bytes_read += len(chunk)
        self._check()
        return chunk

    def _check(self):
        if self.cancel is not None and self.cancel.is_set():
            raise RunCancelled("run cancelled during copy")
        if self.clock() > self.deadline:
            raise RunTimeout("run exceeded its deadline")


class RunTimeout(Exception):
    """The run went past its overall deadline. Retryable."""
    pass


class RunCancelled(Exception):
    """The run was cancelled, typically on shutdown. Retryable."""
    pass
