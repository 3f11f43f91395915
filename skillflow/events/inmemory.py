"""In-memory event bus for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import WorkflowEvent
from .base import EventBus

# (serialized event, event)
InMemoryDelivery = Tuple[str, WorkflowEvent]


class InMemoryEventBus(EventBus[InMemoryDelivery]):
    """One FIFO queue per topic; subscribers wake as soon as an event arrives.

    Every published event is also kept in ``published`` so tests can assert
    on what the runner emitted without subscribing. Both hold at most
    ``max_buffered`` events; when full, the oldest event is dropped.
    """

    def __init__(self, max_buffered: int = 1000) -> None:
        self.max_buffered = max_buffered
        self._queues: Dict[str, Deque[InMemoryDelivery]] = defaultdict(
            lambda: deque(maxlen=max_buffered)
        )
        self._arrivals: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.published: Deque[WorkflowEvent] = deque(maxlen=max_buffered)

    async def publish(self, topic: str, event: WorkflowEvent) -> None:
        self._queues[topic].append((event.to_json(), event))
        self.published.append(event)
        self._arrivals[topic].set()

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[InMemoryDelivery, WorkflowEvent]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        queue = self._queues[topic]
        arrival = self._arrivals[topic]

        while True:
            while queue:
                delivery = queue.popleft()
                yield delivery, delivery[1]
            arrival.clear()
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return
            try:
                await asyncio.wait_for(arrival.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return

    async def ack(self, raw_message: InMemoryDelivery) -> None:
        pass

    def events_of(self, event_type: str) -> List[WorkflowEvent]:
        return [e for e in self.published if e.type == event_type]
