"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from ..contracts import ExecutionRecord, RunStatus, WorkflowRun
from ..errors import RunStateError
from .models import ExecutionQuery, apply_run_update
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._log: List[ExecutionRecord] = []
        self._latest: Dict[str, ExecutionRecord] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> None:
        async with self._lock:
            if run.id in self._runs:
                raise RunStateError(f"Run {run.id} already exists")
            self._runs[run.id] = run.model_copy(deep=True)

    async def update_run(self, run_id: str, fields: dict[str, Any]) -> WorkflowRun:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunStateError(f"Run {run_id} not found")
            updated = apply_run_update(run, fields)
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        definition_name: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> list[WorkflowRun]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at)
        if status is not None:
            runs = [r for r in runs if r.status == status]
        if definition_name is not None:
            runs = [r for r in runs if r.definition_name == definition_name]
        if resource_type is not None:
            runs = [r for r in runs if r.resource_type == resource_type]
        if resource_id is not None:
            runs = [r for r in runs if r.resource_id == resource_id]
        return [r.model_copy(deep=True) for r in runs]

    # ------------------------------------------------------------------
    async def append_execution_record(self, record: ExecutionRecord) -> None:
        snapshot = record.model_copy(deep=True)
        async with self._lock:
            self._log.append(snapshot)
            self._latest[snapshot.id] = snapshot

    async def query_execution_records(
        self, query: ExecutionQuery
    ) -> list[ExecutionRecord]:
        # dicts keep first-insertion order, i.e. record creation order
        records = list(self._latest.values())
        return [r.model_copy(deep=True) for r in query.apply(records)]

    @property
    def snapshot_count(self) -> int:
        return len(self._log)
