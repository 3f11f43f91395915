"""Event bus factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SkillflowConfig, load_config
from .base import EventBus
from .inmemory import InMemoryEventBus


def get_event_bus(
    backend: Optional[str] = None, config: Optional[SkillflowConfig] = None
) -> EventBus:
    """Factory function to get the configured event bus."""

    config = config or load_config()
    backend = (
        backend or os.getenv("SKILLFLOW_EVENTS") or config.events.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventBus(max_buffered=config.events.max_buffered)
    elif backend == "redis":
        from .redis import RedisEventBus

        redis_conf = config.events.redis
        return RedisEventBus(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.prefix,
        )
    else:
        raise ValueError(f"Unsupported event backend: {backend}")


__all__ = ["EventBus", "InMemoryEventBus", "get_event_bus"]
