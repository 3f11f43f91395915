"""Core records exchanged between the executor, runner and execution log."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import TRIGGER_CONTEXT_KEY
from .errors import ErrorInfo, InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_EXECUTION


_TERMINAL_EXECUTION = {
    ExecutionStatus.SUCCEEDED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMED_OUT,
}

_EXECUTION_RANK = {
    ExecutionStatus.PENDING: 0,
    ExecutionStatus.RUNNING: 1,
    ExecutionStatus.SUCCEEDED: 2,
    ExecutionStatus.FAILED: 2,
    ExecutionStatus.CANCELLED: 2,
    ExecutionStatus.TIMED_OUT: 2,
}


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class TriggerSource(str, Enum):
    WEBHOOK = "webhook"
    CRON = "cron"
    MANUAL = "manual"
    API = "api"
    WORKFLOW = "workflow"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    APPROVED = "approved"


class RetryPolicy(BaseModel):
    """Retry and backoff settings for a skill."""

    max_retries: int = Field(default=3, ge=0)
    backoff_base_ms: int = Field(default=1_000, ge=0)
    backoff_max_ms: int = Field(default=30_000, ge=0)
    jitter: float = Field(default=0.25, ge=0)


class ExecutionOptions(BaseModel):
    """Per-call overrides of a descriptor's timeout and retry defaults."""

    timeout_ms: Optional[int] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    backoff: Optional[RetryPolicy] = None


class ResourceUsage(BaseModel):
    tokens: int = 0
    cost_usd: float = 0.0


class ExecutionRecord(BaseModel):
    """Audit entry for one ``execute`` call, updated as attempts progress."""

    id: str = Field(default_factory=new_id)
    skill_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: Any = None
    output: Any = None
    error: Optional[ErrorInfo] = None
    attempts: int = 0
    trigger_source: TriggerSource = TriggerSource.MANUAL
    correlation_id: Optional[str] = None
    definition_name: Optional[str] = None
    step_key: Optional[str] = None
    step_index: Optional[int] = None
    usage: ResourceUsage = Field(default_factory=ResourceUsage)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None

    def transition(self, status: ExecutionStatus) -> None:
        """Move to ``status``, rejecting backward or post-terminal moves."""
        current = self.status
        if current.is_terminal:
            raise InvalidTransition(
                f"Execution {self.id} is already {current.value}; cannot move to {status.value}"
            )
        if _EXECUTION_RANK[status] < _EXECUTION_RANK[current]:
            raise InvalidTransition(
                f"Execution {self.id} cannot move from {current.value} to {status.value}"
            )
        now = utcnow()
        if status is ExecutionStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if status.is_terminal:
            self.completed_at = now
            if self.started_at is not None:
                self.duration_ms = (now - self.started_at).total_seconds() * 1000
        self.status = status

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.SUCCEEDED


class Trigger(BaseModel):
    """The event that starts a workflow run."""

    event: str
    source: TriggerSource = TriggerSource.MANUAL
    payload: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: Optional[str] = None
    # Business entity the run works on, e.g. ("listing", "lst-42")
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None


class StepState(BaseModel):
    """Resolution of a single step within a run."""

    status: StepStatus
    execution_id: Optional[str] = None
    attempts: int = 0
    error: Optional[ErrorInfo] = None
    resolved_at: datetime = Field(default_factory=utcnow)


class WorkflowRun(BaseModel):
    """One executing or finished instance of a workflow definition."""

    id: str = Field(default_factory=new_id)
    definition_name: str
    trigger_event: str
    trigger_source: TriggerSource = TriggerSource.MANUAL
    status: RunStatus = RunStatus.PENDING
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    current_stage: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)
    step_states: Dict[str, StepState] = Field(default_factory=dict)
    execution_ids: List[str] = Field(default_factory=list)
    error: Optional[ErrorInfo] = None
    resumed_from: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def trigger_payload(self) -> Dict[str, Any]:
        return self.context.get(TRIGGER_CONTEXT_KEY) or {}

    def is_resolved(self, step_key: str) -> bool:
        return step_key in self.step_states

    @property
    def failing_step(self) -> Optional[str]:
        return self.error.step_key if self.error else None


class WorkflowEvent(BaseModel):
    """Domain event emitted when a run changes state in a way others care about."""

    event_id: str = Field(default_factory=new_id)
    type: str
    run_id: str
    definition_name: str
    trigger_source: TriggerSource = TriggerSource.MANUAL
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
