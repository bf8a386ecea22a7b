"""Redis-backed broker.

Keys (under the configured namespace):
- ``{ns}:waiting``          list, RPUSH to enqueue, BLPOP to dequeue (FIFO)
- ``{ns}:delayed``          sorted set of messages scored by ready time
- ``{ns}:status:{job_id}``  hash with the advisory queue status

Delayed messages are promoted to the tail of the waiting list by whichever
worker sees them due first. A Lua script removes and pushes each message in
one atomic step, so a message is never out of both keys.
"""

from __future__ import annotations

import logging
import time

import redis.asyncio as redis
from redis.exceptions import RedisError

from repoverify.errors import TransientInfraError
from repoverify.jobqueue.broker import Broker
from repoverify.schemas import JobMessage, QueueJobStatus, QueueState


logger = logging.getLogger(__name__)

STATUS_TTL_SECONDS = 7 * 24 * 3600
PROMOTE_BATCH = 100

# KEYS[1] delayed set, KEYS[2] waiting list, ARGV[1] payload
PROMOTE_SCRIPT = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 1 then
    redis.call("RPUSH", KEYS[2], ARGV[1])
    return 1
end
return 0
"""


class RedisBroker(Broker):
    """Broker over a Redis list plus a delayed sorted set."""

    def __init__(self, client: redis.Redis, namespace: str = "repoverify"):
        self._redis = client
        self.namespace = namespace
        self.waiting_key = f"{namespace}:waiting"
        self.delayed_key = f"{namespace}:delayed"

    @classmethod
    def from_url(cls, url: str, namespace: str = "repoverify") -> "RedisBroker":
        return cls(redis.Redis.from_url(url, decode_responses=True), namespace=namespace)

    def _status_key(self, job_id: str) -> str:
        return f"{self.namespace}:status:{job_id}"

    async def enqueue(self, message: JobMessage, delay: float = 0.0) -> None:
        payload = message.model_dump_json()
        try:
            if delay > 0:
                await self._redis.zadd(self.delayed_key, {payload: time.time() + delay})
                state = QueueState.DELAYED
            else:
                await self._redis.rpush(self.waiting_key, payload)
                state = QueueState.WAITING
            await self._write_status(message.job_id, state, attempt=message.attempt)
        except RedisError as e:
            raise TransientInfraError(f"Failed to enqueue job {message.job_id}: {e}") from e

    async def _promote_due(self) -> None:
        due = await self._redis.zrangebyscore(
            self.delayed_key, 0, time.time(), start=0, num=PROMOTE_BATCH
        )
        for payload in due:
            moved = await self._redis.eval(
                PROMOTE_SCRIPT, 2, self.delayed_key, self.waiting_key, payload
            )
            if moved:
                message = JobMessage.model_validate_json(payload)
                await self._write_status(message.job_id, QueueState.WAITING)

    async def dequeue(self, timeout: float = 1.0) -> JobMessage | None:
        try:
            await self._promote_due()
            item = await self._redis.blpop([self.waiting_key], timeout=timeout)
        except RedisError as e:
            raise TransientInfraError(f"Failed to dequeue: {e}") from e

        if item is None:
            return None
        _, payload = item
        return JobMessage.model_validate_json(payload)

    async def _write_status(
        self,
        job_id: str,
        state: QueueState,
        progress: int | None = None,
        attempt: int | None = None,
    ) -> None:
        mapping: dict[str, str | int] = {"state": state.value}
        if progress is not None:
            mapping["progress"] = progress
        if attempt is not None:
            mapping["attempt"] = attempt
        key = self._status_key(job_id)
        await self._redis.hset(key, mapping=mapping)
        await self._redis.expire(key, STATUS_TTL_SECONDS)

    async def set_state(
        self,
        job_id: str,
        state: QueueState,
        progress: int | None = None,
        attempt: int | None = None,
    ) -> None:
        try:
            await self._write_status(job_id, state, progress=progress, attempt=attempt)
        except RedisError as e:
            raise TransientInfraError(f"Failed to update queue state: {e}") from e

    async def get_status(self, job_id: str) -> QueueJobStatus | None:
        try:
            data = await self._redis.hgetall(self._status_key(job_id))
        except RedisError as e:
            raise TransientInfraError(f"Failed to read queue state: {e}") from e

        if not data:
            return None
        return QueueJobStatus(
            job_id=job_id,
            state=QueueState(data["state"]),
            progress=int(data.get("progress", 0)),
            attempt=int(data.get("attempt", 1)),
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
