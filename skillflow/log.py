"""Append-only execution log and the aggregates dashboards read from it."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from .contracts import ExecutionRecord, ExecutionStatus, RunStatus
from .persistence import ExecutionQuery, WorkflowRepository

logger = logging.getLogger(__name__)


class SkillStats(BaseModel):
    """Per-skill execution metrics."""

    skill_id: str
    total_executions: int = 0
    success_count: int = 0
    failure_count: int = 0
    timeout_count: int = 0
    cancelled_count: int = 0
    success_rate: float = 0.0
    avg_duration_ms: float = 0.0
    p50_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    total_attempts: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    last_executed_at: Optional[datetime] = None


class WorkflowStats(BaseModel):
    """Per-workflow run metrics."""

    definition_name: str
    total_runs: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0
    running: int = 0
    success_rate: float = 0.0
    avg_duration_ms: float = 0.0


class ExecutionLog:
    """Audit trail of every execution, stored through a ``WorkflowRepository``.

    Every call to ``append`` stores a new snapshot; readers always see the
    latest snapshot per record id.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    async def append(self, record: ExecutionRecord) -> None:
        await self._repository.append_execution_record(record)

    async def get(self, record_id: str) -> ExecutionRecord | None:
        found = await self._repository.query_execution_records(
            ExecutionQuery(record_id=record_id)
        )
        return found[0] if found else None

    async def query(
        self,
        skill_id: Optional[str] = None,
        status: Optional[ExecutionStatus | str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[ExecutionRecord]:
        return await self._repository.query_execution_records(
            ExecutionQuery(
                skill_id=skill_id,
                status=ExecutionStatus(status) if status is not None else None,
                since=since,
                until=until,
                correlation_id=correlation_id,
                limit=limit,
                newest_first=newest_first,
            )
        )

    async def recent(self, skill_id: str, limit: int = 10) -> List[ExecutionRecord]:
        return await self.query(skill_id=skill_id, limit=limit, newest_first=True)

    async def skill_stats(self, skill_id: Optional[str] = None) -> List[SkillStats]:
        records = await self.query(skill_id=skill_id)
        grouped: Dict[str, List[ExecutionRecord]] = defaultdict(list)
        for record in records:
            grouped[record.skill_id].append(record)
        return [_summarize_skill(sid, recs) for sid, recs in sorted(grouped.items())]

    async def workflow_stats(
        self, definition_name: Optional[str] = None
    ) -> List[WorkflowStats]:
        runs = await self._repository.list_runs(definition_name=definition_name)
        grouped: Dict[str, WorkflowStats] = {}
        durations: Dict[str, List[float]] = defaultdict(list)
        for run in runs:
            stats = grouped.setdefault(
                run.definition_name, WorkflowStats(definition_name=run.definition_name)
            )
            stats.total_runs += 1
            if run.status is RunStatus.COMPLETED:
                stats.completed += 1
            elif run.status is RunStatus.FAILED:
                stats.failed += 1
            elif run.status is RunStatus.PAUSED:
                stats.paused += 1
            else:
                stats.running += 1
            if run.completed_at is not None:
                durations[run.definition_name].append(
                    (run.completed_at - run.created_at).total_seconds() * 1000
                )
        for name, stats in grouped.items():
            finished = stats.completed + stats.failed
            stats.success_rate = stats.completed / finished if finished else 0.0
            values = durations[name]
            stats.avg_duration_ms = sum(values) / len(values) if values else 0.0
        return [grouped[name] for name in sorted(grouped)]


def _percentile(values: List[float], fraction: float) -> float:
    if not values:
        return 0.0
    index = min(int(len(values) * fraction), len(values) - 1)
    return values[index]


def _summarize_skill(skill_id: str, records: List[ExecutionRecord]) -> SkillStats:
    stats = SkillStats(skill_id=skill_id)
    durations: List[float] = []
    for record in records:
        if not record.status.is_terminal:
            continue
        stats.total_executions += 1
        stats.total_attempts += record.attempts
        if record.status is ExecutionStatus.SUCCEEDED:
            stats.success_count += 1
        elif record.status is ExecutionStatus.TIMED_OUT:
            stats.timeout_count += 1
        elif record.status is ExecutionStatus.CANCELLED:
            stats.cancelled_count += 1
        else:
            stats.failure_count += 1
        if record.duration_ms is not None:
            durations.append(record.duration_ms)
        stats.total_tokens += record.usage.tokens
        stats.total_cost_usd += record.usage.cost_usd
        started = record.started_at or record.created_at
        if stats.last_executed_at is None or started > stats.last_executed_at:
            stats.last_executed_at = started
    if stats.total_executions:
        stats.success_rate = stats.success_count / stats.total_executions
    durations.sort()
    if durations:
        stats.avg_duration_ms = sum(durations) / len(durations)
        stats.p50_duration_ms = _percentile(durations, 0.5)
        stats.p95_duration_ms = _percentile(durations, 0.95)
    return stats
