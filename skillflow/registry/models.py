"""Skill contract and descriptor models."""

from __future__ import annotations

import abc
import asyncio
import functools
import inspect
from enum import Enum
from typing import Any, Callable, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..constants import DEFAULT_TIMEOUT_MS
from ..contracts import ResourceUsage, RetryPolicy, TriggerSource
from ..errors import ConfigurationError, SkillCancelledError


class SkillCategory(str, Enum):
    GENERATE = "generate"
    TRANSFORM = "transform"
    INTEGRATE = "integrate"
    DATA = "data"
    NOTIFY = "notify"
    DECISION = "decision"


class ExecutionContext:
    """Per-attempt context handed to a skill handler.

    Handlers observe cancellation cooperatively through ``cancelled``,
    ``raise_if_cancelled()`` or ``wait_cancelled()``. Async handlers are
    additionally cancelled at their next ``await`` when the deadline passes.
    """

    def __init__(
        self,
        execution_id: str,
        skill_id: str,
        attempt: int,
        timeout_ms: int,
        correlation_id: Optional[str] = None,
        trigger_source: TriggerSource = TriggerSource.MANUAL,
        step_key: Optional[str] = None,
    ) -> None:
        self.execution_id = execution_id
        self.skill_id = skill_id
        self.attempt = attempt
        self.timeout_ms = timeout_ms
        self.correlation_id = correlation_id
        self.trigger_source = trigger_source
        self.step_key = step_key
        self.usage = ResourceUsage()
        self.cancel_reason: Optional[str] = None
        self._cancelled = asyncio.Event()
        # loop.time() is monotonic and safe to read from worker threads
        self._loop = asyncio.get_running_loop()
        self._deadline = self._loop.time() + timeout_ms / 1000

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float:
        """Seconds left before the deadline (never negative)."""
        return max(0.0, self._deadline - self._loop.time())

    def cancel(self, reason: str) -> None:
        if not self._cancelled.is_set():
            self.cancel_reason = reason
            self._cancelled.set()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise SkillCancelledError(
                f"Execution cancelled: {self.cancel_reason}",
                skill_id=self.skill_id,
                attempt=self.attempt,
            )

    def report_usage(self, tokens: int = 0, cost_usd: float = 0.0) -> None:
        self.usage.tokens += tokens
        self.usage.cost_usd += cost_usd


class Skill(abc.ABC):
    """A single named capability: ``invoke(input, context) -> output``."""

    @abc.abstractmethod
    async def invoke(self, input: Any, context: ExecutionContext) -> Any:
        raise NotImplementedError


class FunctionSkill(Skill):
    """Adapt a plain callable ``fn(input, context)`` to the ``Skill`` interface.

    Coroutine functions run on the event loop; regular functions run in a
    worker thread and can only stop early by checking ``context.cancelled``.
    """

    def __init__(self, fn: Callable[[Any, ExecutionContext], Any]) -> None:
        if not callable(fn):
            raise TypeError(f"Skill handler must be callable, got {type(fn)!r}")
        self.fn = fn
        self.is_async = inspect.iscoroutinefunction(fn)

    async def invoke(self, input: Any, context: ExecutionContext) -> Any:
        if self.is_async:
            return await self.fn(input, context)
        result = await _run_in_thread(functools.partial(self.fn, input, context))
        if inspect.isawaitable(result):
            result = await result
        return result

    def __eq__(self, other: object) -> bool:
        return isinstance(other, FunctionSkill) and other.fn is self.fn

    def __hash__(self) -> int:
        return hash(self.fn)

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"FunctionSkill({getattr(self.fn, '__qualname__', self.fn)!r})"


async def _run_in_thread(call: Callable[[], Any]) -> Any:
    """Run ``call`` in a worker thread.

    A thread cannot be interrupted, so when the awaiting task is cancelled it
    stays pending until the thread returns and then re-raises the
    cancellation. The executor therefore sees a still-running handler as
    running and keeps holding its concurrency permit.
    """
    future = asyncio.get_running_loop().run_in_executor(None, call)
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait([future])
        if not future.cancelled():
            future.exception()
        raise


class SkillDescriptor(BaseModel):
    """Metadata and handler for a registered skill."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    # Identity
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    category: SkillCategory = SkillCategory.TRANSFORM
    version: str = "1.0.0"
    provider: Optional[str] = None
    active: bool = True
    tags: List[str] = Field(default_factory=list)

    # Contract
    handler: Skill
    input_schema: Optional[Type[BaseModel]] = None
    output_schema: Optional[Type[BaseModel]] = None

    # Execution policy
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    idempotent: bool = False
    concurrency_limit: Optional[int] = Field(default=None, gt=0)
    concurrency_group: Optional[str] = None

    # Pricing: ``estimate_cost(input)`` returns the expected USD cost of one call
    estimate_cost: Optional[Callable[[Any], Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _require_identity(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        skill_id = data.get("id")
        if not isinstance(skill_id, str) or not skill_id.strip():
            raise ConfigurationError("Skill id must be a non-empty string")
        if data.get("handler") is None:
            raise ConfigurationError(
                f"Skill '{skill_id}' has no handler", skill_id=skill_id
            )
        return data

    @field_validator("handler", mode="before")
    @classmethod
    def _wrap_callable(cls, v: Any) -> Any:
        if not isinstance(v, Skill) and callable(v):
            return FunctionSkill(v)
        return v

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def semaphore_key(self) -> str:
        return self.concurrency_group or self.id


def skill(skill_id: str, **fields: Any) -> Callable[[Callable], SkillDescriptor]:
    """Decorator turning ``fn(input, context)`` into a ``SkillDescriptor``."""

    def wrap(fn: Callable) -> SkillDescriptor:
        fields.setdefault("description", inspect.getdoc(fn))
        return SkillDescriptor(id=skill_id, handler=FunctionSkill(fn), **fields)

    return wrap
