"""Job queue, worker pool and watchdog."""

from __future__ import annotations

from repoverify.config import Settings
from repoverify.jobqueue.broker import Broker, InMemoryBroker
from repoverify.jobqueue.dispatcher import JobQueue, QueueConfig, QueueHandle, backoff_delay
from repoverify.jobqueue.watchdog import Watchdog


def build_broker(settings: Settings) -> Broker:
    """Create the configured broker."""
    if settings.broker_backend == "memory":
        return InMemoryBroker()

    from repoverify.jobqueue.redis_broker import RedisBroker

    return RedisBroker.from_url(str(settings.redis_url), namespace=settings.broker_namespace)


__all__ = [
    "Broker",
    "InMemoryBroker",
    "JobQueue",
    "QueueConfig",
    "QueueHandle",
    "Watchdog",
    "backoff_delay",
    "build_broker",
]
