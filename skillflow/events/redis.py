"""Redis event bus for cross-process delivery of workflow events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis

from ..contracts import WorkflowEvent
from .base import EventBus

logger = logging.getLogger(__name__)

# (processing list, serialized event)
RedisDelivery = Tuple[str, str]


class RedisEventBus(EventBus[RedisDelivery]):
    """Reliable per-topic queue on Redis lists.

    Consumers move each event into a processing list while they handle it;
    ``ack`` removes it from there. Events left in a processing list by a
    consumer that died can be put back with ``requeue_unacked``.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "skillflow",
        poll_timeout: int = 1,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.poll_timeout = poll_timeout
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info(f"Connected event bus to redis {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:events:{topic}"

    def _processing_name(self, topic: str) -> str:
        return f"{self._queue_name(topic)}:processing"

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def publish(self, topic: str, event: WorkflowEvent) -> None:
        client = await self._client()
        await client.lpush(self._queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RedisDelivery, WorkflowEvent]]:
        """Yield events oldest first until ``lifespan`` seconds have passed."""
        client = await self._client()
        queue, processing = self._queue_name(topic), self._processing_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            payload = await client.blmove(
                queue, processing, self.poll_timeout, src="RIGHT", dest="LEFT"
            )
            if payload is None:
                continue
            try:
                event = WorkflowEvent.from_json(payload)
            except ValueError as e:
                logger.error(f"Dropping malformed event on {queue}: {e}")
                await client.lrem(processing, 1, payload)
                continue
            yield (processing, payload), event

    async def ack(self, raw_message: RedisDelivery) -> None:
        processing, payload = raw_message
        client = await self._client()
        await client.lrem(processing, 1, payload)

    async def requeue_unacked(self, topic: str) -> int:
        """Move events a dead consumer never acknowledged back onto the queue."""
        client = await self._client()
        queue, processing = self._queue_name(topic), self._processing_name(topic)
        moved = 0
        while await client.lmove(processing, queue, src="RIGHT", dest="RIGHT"):
            moved += 1
        if moved:
            logger.warning(f"Requeued {moved} unacknowledged event(s) on {queue}")
        return moved
