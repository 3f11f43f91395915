"""Persistence layer for skillflow runs and the execution log."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SkillflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import ExecutionQuery
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[SkillflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``SKILLFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SKILLFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        return InMemoryWorkflowRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresWorkflowRepository

        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ExecutionQuery",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
