"""Idempotency ledger - turns at-least-once delivery into effectively-once processing.

Every pipeline run claims its ``(container, object_key, event_id)`` key with
``try_begin`` before touching the object store. Exactly one concurrent caller
acquires a key; a completed key short-circuits every later duplicate, and a
failed key may be acquired again.

A pending key carries a lease. A run that never records its outcome (the
process died, or the ledger was unreachable when the run finished) holds the
key only until the lease expires; after that the next ``try_begin`` reclaims it.
"""

import abc
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import redis

from blob_ingestion.domain.model import BeginOutcome, IdempotencyKey, IdempotencyRecord, RecordStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# run timeout default plus a minute
DEFAULT_LEASE_SECONDS = 360.0


class AbstractIdempotencyLedger(abc.ABC):

    def __init__(self, clock: Clock = time.time, lease_seconds: float = DEFAULT_LEASE_SECONDS):
        if lease_seconds <= 0:
            raise ValueError(f"lease_seconds must be positive, got {lease_seconds}")
        self.clock = clock
        self.lease_seconds = lease_seconds

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    @abc.abstractmethod
    def try_begin(self, key: IdempotencyKey) -> BeginOutcome:
        """Atomically claim ``key`` for a run.

        Returns ACQUIRED for a new or failed key, RECLAIMED for a pending key
        whose lease has expired, and ALREADY_COMPLETED or ALREADY_PENDING
        otherwise.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def complete(self, key: IdempotencyKey) -> None:
        """Mark a pending key completed. Raises LedgerRecordNotFound otherwise."""
        raise NotImplementedError

    @abc.abstractmethod
    def fail(self, key: IdempotencyKey) -> None:
        """Mark a pending key failed so it can be acquired again."""
        raise NotImplementedError

    @abc.abstractmethod
    def evict_older_than(self, ttl: timedelta) -> int:
        """Purge completed and failed records not updated within ``ttl``.

        Pending records are kept; an abandoned one is reclaimed by its next
        delivery instead.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, key: IdempotencyKey) -> Optional[IdempotencyRecord]:
        raise NotImplementedError


class InMemoryIdempotencyLedger(AbstractIdempotencyLedger):
    """Process-local ledger guarded by a single lock."""

    def __init__(self, clock: Clock = time.time, lease_seconds: float = DEFAULT_LEASE_SECONDS):
        super().__init__(clock, lease_seconds)
        self._records: Dict[IdempotencyKey, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    def try_begin(self, key: IdempotencyKey) -> BeginOutcome:
        with self._lock:
            now = self._now()
            lease_expires_at = now + timedelta(seconds=self.lease_seconds)
            record = self._records.get(key)
            if record is None:
                self._records[key] = IdempotencyRecord(
                    key=key, status=RecordStatus.PENDING, started_at=now, updated_at=now,
                    lease_expires_at=lease_expires_at,
                )
                return BeginOutcome.ACQUIRED
            if record.status is RecordStatus.COMPLETED:
                return BeginOutcome.ALREADY_COMPLETED

            outcome = BeginOutcome.ACQUIRED
            if record.status is RecordStatus.PENDING:
                if record.lease_expires_at is not None and now < record.lease_expires_at:
                    return BeginOutcome.ALREADY_PENDING
                logger.warning(f"Lease on {key} expired at {record.lease_expires_at}, reclaiming")
                outcome = BeginOutcome.RECLAIMED

            record.status = RecordStatus.PENDING
            record.started_at = now
            record.updated_at = now
            record.lease_expires_at = lease_expires_at
            record.attempts += 1
            return outcome

    def complete(self, key: IdempotencyKey) -> None:
        with self._lock:
            record = self._pending(key)
            now = self._now()
            record.status = RecordStatus.COMPLETED
            record.updated_at = now
            record.completed_at = now
            record.lease_expires_at = None

    def fail(self, key: IdempotencyKey) -> None:
        with self._lock:
            record = self._pending(key)
            record.status = RecordStatus.FAILED
            record.updated_at = self._now()
            record.lease_expires_at = None

    def evict_older_than(self, ttl: timedelta) -> int:
        with self._lock:
            cutoff = self._now() - ttl
            expired = [
                key for key, record in self._records.items()
                if record.status is not RecordStatus.PENDING and record.updated_at < cutoff
            ]
            for key in expired:
                del self._records[key]
        return len(expired)

    def get(self, key: IdempotencyKey) -> Optional[IdempotencyRecord]:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            return IdempotencyRecord(**vars(record))

    def _pending(self, key: IdempotencyKey) -> IdempotencyRecord:
        record = self._records.get(key)
        if record is None or record.status is not RecordStatus.PENDING:
            raise LedgerRecordNotFound(key)
        return record

    def __len__(self):
        with self._lock:
            return len(self._records)


class RedisIdempotencyLedger(AbstractIdempotencyLedger):
    """Ledger shared between processes, one Redis hash per key.

    Check-and-set goes through WATCH/MULTI: if another client touches the hash
    between the read and EXEC the transaction aborts and is retried.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "blob-ingestion:ledger",
        clock: Clock = time.time,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ):
        super().__init__(clock, lease_seconds)
        self.client = client
        self.prefix = prefix

    def _name(self, key: IdempotencyKey) -> str:
        return f"{self.prefix}:{key.digest()}"

    def try_begin(self, key: IdempotencyKey) -> BeginOutcome:
        name = self._name(key)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(name)
                    fields = _decode_hash(pipe.hgetall(name))
                    status = fields.get("status")

                    if status == RecordStatus.COMPLETED.value:
                        pipe.unwatch()
                        return BeginOutcome.ALREADY_COMPLETED

                    now = self.clock()
                    outcome = BeginOutcome.ACQUIRED
                    if status == RecordStatus.PENDING.value:
                        lease_expires_at = self._lease_expiry(fields)
                        if now < lease_expires_at:
                            pipe.unwatch()
                            return BeginOutcome.ALREADY_PENDING
                        logger.warning(f"Lease on {key} expired at {_timestamp(lease_expires_at)}, reclaiming")
                        outcome = BeginOutcome.RECLAIMED

                    attempts = int(fields.get("attempts", 0)) + 1
                    pipe.multi()
                    pipe.hset(name, mapping={
                        "container": key.container,
                        "object_key": key.object_key,
                        "event_id": key.event_id,
                        "status": RecordStatus.PENDING.value,
                        "started_at": repr(now),
                        "updated_at": repr(now),
                        "attempts": attempts,
                        "lease_expires_at": repr(now + self.lease_seconds),
                    })
                    pipe.hdel(name, "completed_at")
                    pipe.execute()
                    return outcome
                except redis.WatchError:
                    logger.debug(f"Concurrent update on ledger key {key}, retrying")
                    continue

    def _lease_expiry(self, fields: Dict[str, str]) -> float:
        if "lease_expires_at" in fields:
            return float(fields["lease_expires_at"])
        # records written before leases existed
        return float(fields["started_at"]) + self.lease_seconds

    def complete(self, key: IdempotencyKey) -> None:
        now = repr(self.clock())
        self._transition(key, {"status": RecordStatus.COMPLETED.value, "updated_at": now, "completed_at": now})

    def fail(self, key: IdempotencyKey) -> None:
        self._transition(key, {"status": RecordStatus.FAILED.value, "updated_at": repr(self.clock())})

    def _transition(self, key: IdempotencyKey, mapping: Dict[str, str]) -> None:
        name = self._name(key)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(name)
                    status = _decode(pipe.hget(name, "status"))
                    if status != RecordStatus.PENDING.value:
                        pipe.unwatch()
                        raise LedgerRecordNotFound(key)
                    pipe.multi()
                    pipe.hset(name, mapping=mapping)
                    pipe.hdel(name, "lease_expires_at")
                    pipe.execute()
                    return
                except redis.WatchError:
                    continue

    def evict_older_than(self, ttl: timedelta) -> int:
        cutoff = self.clock() - ttl.total_seconds()
        evicted = 0
        for name in self.client.scan_iter(match=f"{self.prefix}:*"):
            with self.client.pipeline() as pipe:
                try:
                    pipe.watch(name)
                    fields = _decode_hash(pipe.hgetall(name))
                    if fields.get("status") == RecordStatus.PENDING.value or "updated_at" not in fields:
                        pipe.unwatch()
                        continue
                    if float(fields["updated_at"]) >= cutoff:
                        pipe.unwatch()
                        continue
                    pipe.multi()
                    pipe.delete(name)
                    pipe.execute()
                    evicted += 1
                except redis.WatchError:
                    # re-acquired while we looked at it; keep it
                    continue
        if evicted:
            logger.info(f"Evicted {evicted} ledger records older than {ttl}")
        return evicted

    def get(self, key: IdempotencyKey) -> Optional[IdempotencyRecord]:
        fields = _decode_hash(self.client.hgetall(self._name(key)))
        if not fields:
            return None
        completed_at = fields.get("completed_at")
        lease_expires_at = fields.get("lease_expires_at")
        return IdempotencyRecord(
            key=key,
            status=RecordStatus(fields["status"]),
            started_at=_timestamp(fields["started_at"]),
            updated_at=_timestamp(fields["updated_at"]),
            completed_at=_timestamp(completed_at) if completed_at else None,
            attempts=int(fields.get("attempts", 1)),
            lease_expires_at=_timestamp(lease_expires_at) if lease_expires_at else None,
        )


def _decode(value):
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _decode_hash(fields) -> Dict[str, str]:
    return {_decode(k): _decode(v) for k, v in (fields or {}).items()}


def _timestamp(value) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class LedgerRecordNotFound(Exception):
    """No pending record exists for the key; a programming error in the caller."""

    def __init__(self, key: IdempotencyKey):
        super().__init__(f"No pending ledger record for {key}")
        self.key = key
