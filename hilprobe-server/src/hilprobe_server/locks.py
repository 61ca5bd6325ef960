"""Per-probe mutual exclusion with first-come-first-served queuing.

``asyncio.Lock`` makes no fairness promise across cancellation, so each probe
gets an explicit lock with a FIFO queue of waiting jobs. Ownership is handed
directly from the releasing job to the next waiter; a newcomer can never jump
the queue.

Example:
    >>> table = ProbeLockTable()
    >>> async with table.hold("0483:374b", job.id):
    ...     await driver.flash(image)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class ProbeLock:
    """FIFO lock guarding one physical probe.

    Args:
        probe_id: Canonical probe identifier, for logging.
    """

    def __init__(self, probe_id: str) -> None:
        self.probe_id = probe_id
        self._holder: str | None = None
        self._waiters: deque[tuple[str, asyncio.Future[None]]] = deque()

    @property
    def holder(self) -> str | None:
        """ID of the job holding the probe, or None."""
        return self._holder

    @property
    def locked(self) -> bool:
        return self._holder is not None

    @property
    def queue_depth(self) -> int:
        """Number of jobs waiting for the probe."""
        return sum(1 for _, fut in self._waiters if not fut.done())

    async def acquire(self, job_id: str) -> None:
        """Wait until ``job_id`` holds the probe.

        If the waiting task is cancelled it leaves the queue without ever
        holding the probe, and the queue order of everyone else is preserved.

        Args:
            job_id: ID of the acquiring job.
        """
        if self._holder is None and not self._waiters:
            self._holder = job_id
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (job_id, fut)
        self._waiters.append(entry)
        logger.debug(
            "Job %s queued for probe %s (position %d)", job_id, self.probe_id, len(self._waiters)
        )
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Ownership was handed over just as we were cancelled.
                self.release(job_id)
            else:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(entry)
            raise

    def release(self, job_id: str) -> None:
        """Release the probe and hand it to the next waiter.

        Args:
            job_id: ID of the releasing job.

        Raises:
            RuntimeError: If ``job_id`` does not hold the probe.
        """
        if self._holder != job_id:
            raise RuntimeError(
                f"Job {job_id} released probe {self.probe_id} held by {self._holder}"
            )
        self._holder = None
        while self._waiters:
            next_id, fut = self._waiters.popleft()
            if fut.done():
                continue
            self._holder = next_id
            fut.set_result(None)
            logger.debug("Probe %s handed to job %s", self.probe_id, next_id)
            return


class ProbeLockTable:
    """Lazily created :class:`ProbeLock` per probe ID."""

    def __init__(self) -> None:
        self._locks: dict[str, ProbeLock] = {}

    def get(self, probe_id: str) -> ProbeLock:
        """Return the lock for ``probe_id``, creating it on first use."""
        lock = self._locks.get(probe_id)
        if lock is None:
            lock = self._locks[probe_id] = ProbeLock(probe_id)
        return lock

    def locked(self, probe_id: str) -> bool:
        lock = self._locks.get(probe_id)
        return lock is not None and lock.locked

    def queue_depth(self, probe_id: str) -> int:
        lock = self._locks.get(probe_id)
        return lock.queue_depth if lock is not None else 0

    @contextlib.asynccontextmanager
    async def hold(self, probe_id: str, job_id: str) -> AsyncIterator[ProbeLock]:
        """Hold the probe for the duration of the ``async with`` block."""
        lock = self.get(probe_id)
        await lock.acquire(job_id)
        try:
            yield lock
        finally:
            lock.release(job_id)
