from __future__ import annotations

import logging
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_BACKOFF_MAX_MS,
    DEFAULT_CANCEL_GRACE_MS,
    DEFAULT_CONCURRENCY,
    DEFAULT_JITTER,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RATE_LIMIT_MULTIPLIER,
    DEFAULT_TIMEOUT_MS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis event bus."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "skillflow"


class EventsConfig(BaseModel):
    """Domain event delivery settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    # Events kept per topic (and in the published history) by the in-memory bus
    max_buffered: int = Field(default=1000, gt=0)


class ExecutorConfig(BaseModel):
    """Defaults applied when a skill or call does not override them."""

    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    default_max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    backoff_max_ms: int = DEFAULT_BACKOFF_MAX_MS
    jitter: float = DEFAULT_JITTER
    rate_limit_multiplier: float = DEFAULT_RATE_LIMIT_MULTIPLIER
    cancel_grace_ms: int = DEFAULT_CANCEL_GRACE_MS
    default_concurrency: int = DEFAULT_CONCURRENCY


class RunnerConfig(BaseModel):
    """Workflow runner behaviour."""

    optional_failure_policy: Literal["ignore", "log", "alert"] = "log"


class SkillflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    events: EventsConfig = EventsConfig()
    executor: ExecutorConfig = ExecutorConfig()
    runner: RunnerConfig = RunnerConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> SkillflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SKILLFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SKILLFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SkillflowConfig(**data)
    else:
        config = SkillflowConfig()

    env_db_url = os.getenv("SKILLFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_events = os.getenv("SKILLFLOW_EVENTS")
    if env_events:
        config.events.backend = env_events.lower()
    return config


def configure_logging(level: str | int = "INFO") -> None:
    """Install a basic stream handler for command line use."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
