"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..contracts import ExecutionRecord, RunStatus, WorkflowRun
from .models import ExecutionQuery


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    async def create_run(self, run: WorkflowRun) -> None:
        """Persist a newly created run."""

    async def update_run(self, run_id: str, fields: dict[str, Any]) -> WorkflowRun:
        """Apply a partial update and return the stored run."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve the run by id."""

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        definition_name: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> list[WorkflowRun]:
        """Return persisted runs, oldest first.

        ``resource_type`` and ``resource_id`` select the runs linked to one
        business entity, such as a listing or a campaign.
        """

    async def append_execution_record(self, record: ExecutionRecord) -> None:
        """Append a snapshot of ``record`` to the execution log."""

    async def query_execution_records(
        self, query: ExecutionQuery
    ) -> list[ExecutionRecord]:
        """Return the latest snapshot of each matching record."""
