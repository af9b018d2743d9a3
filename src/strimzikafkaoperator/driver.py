"""The reconciliation loop driver: per-cluster locks, triggers and retries.

Each cluster gets an event channel holding at most one pending trigger and
a single worker task consuming it. A trigger arriving while the slot is
full is coalesced into the pending one, so a change observed during a
cycle costs at most one re-run.
"""

from __future__ import annotations

__all__ = ("BUSY", "LockRegistry", "LoopDriver", "ReconciliationLock")

import asyncio
import enum
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.status import Outcome


class _Busy(enum.Enum):
    BUSY = "busy"


BUSY = _Busy.BUSY
"""Returned by `LockRegistry.acquire` when the lock cannot be taken."""


@dataclass(frozen=True)
class ReconciliationLock:
    identity: ClusterIdentity
    holder: str
    acquired_at: float
    max_hold: float

    def expired(self, now: float) -> bool:
        return now - self.acquired_at > self.max_hold


class LockRegistry:
    """A bounded registry of per-cluster reconciliation locks.

    Parameters
    ----------
    max_hold : `float`
        Seconds after which a held lock may be taken over.
    max_size : `int`
        Number of clusters tracked. When full, the least recently used idle
        entry is evicted to make room.
    clock : callable
        Monotonic clock in seconds.
    """

    def __init__(
        self,
        *,
        max_hold: float,
        max_size: int,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self.max_hold = max_hold
        self.max_size = max_size
        self._clock = clock
        self._logger = logger or structlog.get_logger(__name__)
        self._locks: OrderedDict[ClusterIdentity, ReconciliationLock | None] = (
            OrderedDict()
        )

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, identity: ClusterIdentity) -> bool:
        return identity in self._locks

    def holder(self, identity: ClusterIdentity) -> ReconciliationLock | None:
        return self._locks.get(identity)

    def acquire(
        self, identity: ClusterIdentity, holder: str
    ) -> ReconciliationLock | _Busy:
        now = self._clock()
        if identity in self._locks:
            current = self._locks[identity]
            if current is not None:
                if not current.expired(now):
                    return BUSY
                self._logger.warning(
                    "Taking over expired reconciliation lock",
                    cluster=str(identity),
                    previous_holder=current.holder,
                    held_for=now - current.acquired_at,
                )
            self._locks.move_to_end(identity)
        elif len(self._locks) >= self.max_size:
            idle = next(
                (key for key, lock in self._locks.items() if lock is None), None
            )
            if idle is None:
                self._logger.warning(
                    "Lock registry is full", cluster=str(identity), size=len(self)
                )
                return BUSY
            del self._locks[idle]
        lock = ReconciliationLock(identity, holder, now, self.max_hold)
        self._locks[identity] = lock
        return lock

    def release(self, lock: ReconciliationLock) -> None:
        # A lock taken over after expiry belongs to its new holder.
        if self._locks.get(lock.identity) is lock:
            self._locks[lock.identity] = None

    def evict(self, identity: ClusterIdentity) -> None:
        self._locks.pop(identity, None)


class LoopDriver:
    """Serialize, coalesce and retry reconciliation cycles per cluster.

    Parameters
    ----------
    reconciler : `strimzikafkaoperator.reconciler.Reconciler`
        Runs one cycle.
    resync_interval : `float`
        Seconds without a trigger after which a cluster is reconciled
        anyway.
    backoff_base : `float`
        Delay before the first retry of a retryable failure; doubled for
        each further consecutive failure.
    backoff_max : `float`
        Ceiling of the retry delay.
    conflict_retries : `int`
        Immediate re-runs allowed after conflicts before backing off.
    lock_max_hold : `float`
        See `LockRegistry`.
    max_clusters : `int`
        See `LockRegistry`.
    """

    def __init__(
        self,
        reconciler: Any,
        *,
        resync_interval: float,
        backoff_base: float,
        backoff_max: float,
        conflict_retries: int,
        lock_max_hold: float,
        max_clusters: int,
        logger: Any | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.resync_interval = resync_interval
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.conflict_retries = conflict_retries
        self._logger = logger or structlog.get_logger(__name__)
        self.locks = LockRegistry(
            max_hold=lock_max_hold, max_size=max_clusters, logger=self._logger
        )
        self._channels: dict[ClusterIdentity, asyncio.Queue] = {}
        self._workers: dict[ClusterIdentity, asyncio.Task] = {}
        self._blocked: dict[ClusterIdentity, int] = {}
        self._superseding: set[ClusterIdentity] = set()

    @property
    def clusters(self) -> list[ClusterIdentity]:
        return sorted(self._workers)

    def blocked_generation(self, identity: ClusterIdentity) -> int | None:
        return self._blocked.get(identity)

    def backoff(self, failures: int) -> float:
        """Delay before the retry following ``failures`` consecutive failures."""
        return min(self.backoff_base * 2 ** (failures - 1), self.backoff_max)

    def trigger(
        self, identity: ClusterIdentity, reason: str, *, supersedes: bool = True
    ) -> bool:
        """Request a reconciliation of ``identity``.

        Parameters
        ----------
        identity : `strimzikafkaoperator.model.ClusterIdentity`
            The cluster.
        reason : `str`
            Why, for the logs.
        supersedes : `bool`
            Whether the trigger cuts short a rolling update in progress.
            Changes to the workloads being rolled pass `False`.

        Returns
        -------
        queued : `bool`
            `False` if the trigger was coalesced into a pending one.
        """
        channel = self._channels.get(identity)
        if channel is None:
            channel = asyncio.Queue(maxsize=1)
            self._channels[identity] = channel
            self._workers[identity] = asyncio.create_task(
                self._worker(identity, channel), name=f"reconcile-{identity}"
            )
        if supersedes:
            self._superseding.add(identity)
        try:
            channel.put_nowait(reason)
        except asyncio.QueueFull:
            self._logger.debug(
                "Coalesced trigger", cluster=str(identity), reason=reason
            )
            return False
        return True

    async def evict(self, identity: ClusterIdentity) -> None:
        """Stop reconciling a deleted cluster and forget its state."""
        worker = self._workers.pop(identity, None)
        self._channels.pop(identity, None)
        self._blocked.pop(identity, None)
        self._superseding.discard(identity)
        self.locks.evict(identity)
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._logger.info("Evicted cluster", cluster=str(identity))

    async def shutdown(self) -> None:
        for identity in list(self._workers):
            await self.evict(identity)

    async def _worker(
        self, identity: ClusterIdentity, channel: asyncio.Queue
    ) -> None:
        logger = self._logger.bind(cluster=str(identity))
        while True:
            try:
                reason = await asyncio.wait_for(
                    channel.get(), timeout=self.resync_interval
                )
            except asyncio.TimeoutError:
                reason = "resync"
            self._superseding.discard(identity)
            try:
                outcome = await self._run(identity, channel, reason)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Reconciler.reconcile reports its own failures; this is a
                # bug in the driver itself.
                logger.exception("Reconciliation worker failed", reason=reason)
                continue
            if outcome is not None and outcome.deleted:
                await self.evict(identity)
                return

    async def _run(
        self, identity: ClusterIdentity, channel: asyncio.Queue, reason: str
    ) -> Outcome | None:
        logger = self._logger.bind(cluster=str(identity), reason=reason)
        failures = 0
        conflicts = 0
        while True:
            lock = self.locks.acquire(identity, holder=f"{identity}:{reason}")
            if lock is BUSY:
                failures += 1
                await asyncio.sleep(self.backoff(failures))
                continue
            try:
                outcome = await self.reconciler.reconcile(
                    identity,
                    superseded=lambda: identity in self._superseding,
                    blocked_generation=self._blocked.get(identity),
                )
            finally:
                self.locks.release(lock)

            if outcome.deleted or outcome.blocked:
                return outcome
            if outcome.error is None:
                self._blocked.pop(identity, None)
                return outcome
            if not outcome.retryable:
                logger.warning(
                    "Not retrying until the resource changes",
                    generation=outcome.generation,
                )
                self._blocked[identity] = outcome.generation
                return outcome
            if outcome.conflict and conflicts < self.conflict_retries:
                conflicts += 1
                logger.info("Re-running after conflict", attempt=conflicts)
                continue

            failures += 1
            delay = self.backoff(failures)
            logger.info("Retrying after failure", attempt=failures, delay=delay)
            await asyncio.sleep(delay)
            # The retry observes the latest spec, so it serves any trigger
            # that arrived during the backoff.
            while not channel.empty():
                channel.get_nowait()
            self._superseding.discard(identity)
