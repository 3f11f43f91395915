"""Query models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..contracts import ExecutionRecord, ExecutionStatus, RunStatus, WorkflowRun
from ..errors import RunStateError


class ExecutionQuery(BaseModel):
    """Filter for execution log queries. Unset fields match everything."""

    record_id: Optional[str] = None
    skill_id: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    correlation_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, gt=0)
    newest_first: bool = False

    def matches(self, record: ExecutionRecord) -> bool:
        if self.record_id is not None and record.id != self.record_id:
            return False
        if self.skill_id is not None and record.skill_id != self.skill_id:
            return False
        if self.status is not None and record.status != self.status:
            return False
        if self.correlation_id is not None and record.correlation_id != self.correlation_id:
            return False
        created = as_utc(record.created_at)
        if self.since is not None and created < as_utc(self.since):
            return False
        if self.until is not None and created > as_utc(self.until):
            return False
        return True

    def apply(self, records: Iterable[ExecutionRecord]) -> List[ExecutionRecord]:
        """Filter, order and limit an iterable of latest record snapshots."""
        matched = [r for r in records if self.matches(r)]
        if self.newest_first:
            matched.reverse()
        if self.limit is not None:
            matched = matched[: self.limit]
        return matched


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def apply_run_update(run: WorkflowRun, fields: dict[str, Any]) -> WorkflowRun:
    """Return a copy of ``run`` with ``fields`` applied.

    Terminal runs are immutable; corrections must create a new run.
    """
    if run.status.is_terminal:
        raise RunStateError(
            f"Run {run.id} is {run.status.value} and can no longer be updated"
        )
    unknown = set(fields) - set(WorkflowRun.model_fields)
    if unknown:
        raise ValueError(f"Unknown run fields: {sorted(unknown)}")
    data = run.model_dump()
    data.update(fields)
    if "updated_at" not in fields:
        data["updated_at"] = datetime.now(timezone.utc)
    return WorkflowRun.model_validate(data)


__all__ = [
    "ExecutionQuery",
    "RunStatus",
    "apply_run_update",
    "as_utc",
]
