"""Error taxonomy for skill execution and workflow orchestration."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class ErrorInfo(BaseModel):
    """Serialisable description of a failure, stored on records and runs."""

    type: str
    message: str
    skill_id: Optional[str] = None
    attempt: Optional[int] = None
    step_index: Optional[int] = None
    step_key: Optional[str] = None


class SkillflowError(Exception):
    """Base class for all skillflow errors."""


class SkillError(SkillflowError):
    """Failure attributable to a skill invocation."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        skill_id: Optional[str] = None,
        attempt: Optional[int] = None,
        step_index: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.skill_id = skill_id
        self.attempt = attempt
        self.step_index = step_index

    def to_info(self, step_key: Optional[str] = None) -> ErrorInfo:
        return ErrorInfo(
            type=type(self).__name__,
            message=self.message,
            skill_id=self.skill_id,
            attempt=self.attempt,
            step_index=self.step_index,
            step_key=step_key,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.skill_id:
            parts.append(f"skill={self.skill_id}")
        if self.attempt is not None:
            parts.append(f"attempt={self.attempt}")
        if self.step_index is not None:
            parts.append(f"step={self.step_index}")
        return " ".join(parts)


class ValidationError(SkillError):
    """Bad input or output. Never retried."""


class TransientError(SkillError):
    """Network, rate-limit or upstream 5xx failure. Retried per policy."""

    retryable = True

    def __init__(self, message: str, *, rate_limited: bool = False, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.rate_limited = rate_limited


class SkillTimeoutError(SkillError):
    """Handler exceeded its deadline and was cancelled."""


class SkillCancelledError(SkillError):
    """Execution was cancelled by its owner."""


class FatalError(SkillError):
    """Unknown skill or configuration problem. Never retried."""


class NotFound(FatalError):
    """Requested skill, run or definition does not exist."""


class ConfigurationError(FatalError):
    """Registry or engine misconfiguration."""


class CompositionError(FatalError):
    """A workflow definition failed validation."""

    def __init__(self, problems: list[str], *, workflow: Optional[str] = None) -> None:
        self.problems = list(problems)
        self.workflow = workflow
        prefix = f"Invalid workflow '{workflow}'" if workflow else "Invalid workflow"
        super().__init__(f"{prefix}: " + "; ".join(self.problems))


class InvalidTransition(SkillflowError):
    """A status change would move a record or run backwards."""


class RunStateError(SkillflowError):
    """Operation is not allowed for the run in its current state."""


def error_info_from_exception(
    exc: BaseException,
    *,
    skill_id: Optional[str] = None,
    attempt: Optional[int] = None,
    step_index: Optional[int] = None,
    step_key: Optional[str] = None,
) -> ErrorInfo:
    """Build an ``ErrorInfo`` for any exception, filling in missing context."""
    if isinstance(exc, SkillError):
        info = exc.to_info(step_key=step_key)
        return info.model_copy(
            update={
                "skill_id": info.skill_id or skill_id,
                "attempt": info.attempt if info.attempt is not None else attempt,
                "step_index": (
                    info.step_index if info.step_index is not None else step_index
                ),
            }
        )
    return ErrorInfo(
        type=type(exc).__name__,
        message=str(exc) or type(exc).__name__,
        skill_id=skill_id,
        attempt=attempt,
        step_index=step_index,
        step_key=step_key,
    )
