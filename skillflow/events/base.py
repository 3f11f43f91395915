"""Event bus interface for skillflow domain events."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import WorkflowEvent

RawMessageT = TypeVar("RawMessageT")


class EventBus(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Delivers ``WorkflowEvent``s to notification services and chained workflows.

    Publishing happens from the runner; consumers iterate ``subscribe`` and
    acknowledge each event once handled. Usable as an async context manager.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "EventBus[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, event: WorkflowEvent) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, WorkflowEvent]]:
        """Yield ``(raw message, event)`` pairs published on ``topic``.

        ``lifespan`` bounds how long to listen, in seconds; ``None`` listens
        until the consumer stops iterating.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark ``raw_message`` as handled."""
        raise NotImplementedError
