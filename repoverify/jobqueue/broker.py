"""Broker contract and the in-process implementation.

A broker stores ``JobMessage``s in FIFO order, holds delayed messages (retry
backoff) until they are due and then appends them to the tail, and keeps an
advisory queue-level status per job.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from repoverify.errors import TransientInfraError
from repoverify.schemas import JobMessage, QueueJobStatus, QueueState


logger = logging.getLogger(__name__)


class Broker(ABC):
    """Shared queue the workers drain."""

    @abstractmethod
    async def enqueue(self, message: JobMessage, delay: float = 0.0) -> None:
        """Append ``message`` to the tail, after ``delay`` seconds if given.

        Raises:
            TransientInfraError: The broker is unreachable
        """
        ...

    @abstractmethod
    async def dequeue(self, timeout: float = 1.0) -> JobMessage | None:
        """Pop the oldest ready message, or None after ``timeout`` seconds.

        Raises:
            TransientInfraError: The broker is unreachable
        """
        ...

    @abstractmethod
    async def set_state(
        self,
        job_id: str,
        state: QueueState,
        progress: int | None = None,
        attempt: int | None = None,
    ) -> None:
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> QueueJobStatus | None:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Check if the broker is reachable."""
        ...

    async def close(self) -> None:
        return None


class InMemoryBroker(Broker):
    """Single-process broker for development, the CLI and tests.

    ``available`` can be flipped off to simulate an outage.
    """

    def __init__(self):
        self._queue: asyncio.Queue[JobMessage] = asyncio.Queue()
        self._timers: set[asyncio.TimerHandle] = set()
        self._status: dict[str, QueueJobStatus] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise TransientInfraError("In-memory broker is unavailable")

    def _release(self, message: JobMessage, timer: asyncio.TimerHandle | None = None) -> None:
        if timer is not None:
            self._timers.discard(timer)
        self._status[message.job_id] = QueueJobStatus(
            job_id=message.job_id, state=QueueState.WAITING, attempt=message.attempt
        )
        self._queue.put_nowait(message)

    async def enqueue(self, message: JobMessage, delay: float = 0.0) -> None:
        self._check()
        if delay <= 0:
            self._release(message)
            return

        self._status[message.job_id] = QueueJobStatus(
            job_id=message.job_id, state=QueueState.DELAYED, attempt=message.attempt
        )
        loop = asyncio.get_running_loop()
        holder: list[asyncio.TimerHandle] = []
        timer = loop.call_later(delay, lambda: self._release(message, holder[0]))
        holder.append(timer)
        self._timers.add(timer)

    async def dequeue(self, timeout: float = 1.0) -> JobMessage | None:
        self._check()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def set_state(
        self,
        job_id: str,
        state: QueueState,
        progress: int | None = None,
        attempt: int | None = None,
    ) -> None:
        self._check()
        current = self._status.get(job_id) or QueueJobStatus(job_id=job_id, state=state)
        update: dict = {"state": state}
        if progress is not None:
            update["progress"] = progress
        if attempt is not None:
            update["attempt"] = attempt
        self._status[job_id] = current.model_copy(update=update)

    async def get_status(self, job_id: str) -> QueueJobStatus | None:
        self._check()
        return self._status.get(job_id)

    async def ping(self) -> bool:
        return self.available

    @property
    def pending_count(self) -> int:
        """Messages ready now plus messages waiting out a delay."""
        return self._queue.qsize() + len(self._timers)

    async def close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
