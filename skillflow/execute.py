"""Skill execution engine: timeouts, true cancellation, retries and logging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pydantic
from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from .config import ExecutorConfig
from .contracts import (
    ExecutionOptions,
    ExecutionRecord,
    ExecutionStatus,
    RetryPolicy,
    TriggerSource,
)
from .errors import (
    FatalError,
    SkillCancelledError,
    SkillError,
    SkillTimeoutError,
    TransientError,
    ValidationError,
    error_info_from_exception,
)
from .log import ExecutionLog
from .registry import ExecutionContext, SkillDescriptor
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

_FAILURE_STATUS = {
    SkillTimeoutError: ExecutionStatus.TIMED_OUT,
    SkillCancelledError: ExecutionStatus.CANCELLED,
}


def to_jsonable(value: Any) -> Any:
    """Convert handler inputs and outputs into JSON-compatible data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return to_jsonable_python(value, fallback=repr)


class SkillExecutor:
    """Invoke one skill under a timeout and retry policy.

    Each attempt runs the handler in its own task. When the deadline passes,
    or the owner cancels, the executor signals the handler's context, cancels
    the task and waits ``cancel_grace_ms`` for it to stop. A handler that keeps
    running after that is abandoned and whatever it eventually returns is
    discarded.
    """

    def __init__(
        self, log: ExecutionLog, config: Optional[ExecutorConfig] = None
    ) -> None:
        self._log = log
        self._config = config or ExecutorConfig()
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._leaked: Set[asyncio.Task] = set()

    @property
    def log(self) -> ExecutionLog:
        return self._log

    @property
    def leaked_tasks(self) -> int:
        """Number of abandoned handler tasks that have not finished yet."""
        return len(self._leaked)

    # ------------------------------------------------------------------
    async def execute(
        self,
        descriptor: SkillDescriptor,
        input: Any,
        options: Optional[ExecutionOptions] = None,
        *,
        correlation_id: Optional[str] = None,
        trigger_source: TriggerSource = TriggerSource.MANUAL,
        definition_name: Optional[str] = None,
        step_key: Optional[str] = None,
        step_index: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionRecord:
        """Run ``descriptor`` against ``input`` and return its final record.

        Handler failures never raise; they are reported through the record's
        status and error. ``asyncio.CancelledError`` propagates only when the
        calling task itself is cancelled, after the record is closed.
        """
        timeout_ms, policy = self._resolve_policy(descriptor, options)
        record = ExecutionRecord(
            skill_id=descriptor.id,
            input=to_jsonable(input),
            trigger_source=trigger_source,
            correlation_id=correlation_id,
            definition_name=definition_name,
            step_key=step_key,
            step_index=step_index,
        )
        await self._log.append(record)

        local_cancel = asyncio.Event()
        self._cancel_events[record.id] = local_cancel
        cancel_events = [local_cancel] + ([cancel_event] if cancel_event else [])
        try:
            return await self._run(
                descriptor, input, record, timeout_ms, policy, cancel_events
            )
        except asyncio.CancelledError:
            if not record.status.is_terminal:
                error = SkillCancelledError(
                    "Execution cancelled by owner",
                    skill_id=descriptor.id,
                    attempt=record.attempts or None,
                    step_index=step_index,
                )
                await self._finish(record, ExecutionStatus.CANCELLED, error)
            raise
        finally:
            self._cancel_events.pop(record.id, None)

    async def execute_many(
        self,
        calls: Iterable[Tuple[SkillDescriptor, Any]],
        **kwargs: Any,
    ) -> List[ExecutionRecord]:
        """Execute several skills concurrently; records keep call order."""
        return list(
            await asyncio.gather(
                *(self.execute(descriptor, data, **kwargs) for descriptor, data in calls)
            )
        )

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation of an in-flight execution by id."""
        event = self._cancel_events.get(execution_id)
        if event is None:
            return False
        logger.info(f"Cancellation requested for execution {execution_id}")
        event.set()
        return True

    # ------------------------------------------------------------------
    def _resolve_policy(
        self, descriptor: SkillDescriptor, options: Optional[ExecutionOptions]
    ) -> Tuple[int, RetryPolicy]:
        options = options or ExecutionOptions()
        policy = options.backoff or descriptor.retry
        if options.max_retries is not None:
            policy = policy.model_copy(update={"max_retries": options.max_retries})
        timeout_ms = options.timeout_ms or descriptor.timeout_ms
        return timeout_ms, policy

    def _semaphore_for(self, descriptor: SkillDescriptor) -> asyncio.Semaphore:
        key = descriptor.semaphore_key
        semaphore = self._semaphores.get(key)
        if semaphore is None:
            limit = descriptor.concurrency_limit or self._config.default_concurrency
            semaphore = asyncio.Semaphore(limit)
            self._semaphores[key] = semaphore
        return semaphore

    async def _run(
        self,
        descriptor: SkillDescriptor,
        input: Any,
        record: ExecutionRecord,
        timeout_ms: int,
        policy: RetryPolicy,
        cancel_events: List[asyncio.Event],
    ) -> ExecutionRecord:
        try:
            payload = _validate(descriptor.input_schema, input, "input")
        except ValidationError as exc:
            exc.skill_id = descriptor.id
            exc.step_index = record.step_index
            record.attempts = 1
            record.transition(ExecutionStatus.RUNNING)
            return await self._finish(record, ExecutionStatus.FAILED, exc)

        max_attempts = policy.max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            if _any_set(cancel_events):
                error = SkillCancelledError(
                    "Execution cancelled before attempt",
                    skill_id=descriptor.id,
                    attempt=attempt,
                    step_index=record.step_index,
                )
                return await self._finish(record, ExecutionStatus.CANCELLED, error)

            record.attempts = attempt
            record.transition(ExecutionStatus.RUNNING)
            await self._log.append(record)
            logger.debug(
                f"Executing skill {descriptor.id} attempt {attempt}/{max_attempts} "
                f"correlation_id={record.correlation_id}"
            )

            try:
                output = await self._attempt(
                    descriptor, payload, record, attempt, timeout_ms, cancel_events
                )
                output = _validate(descriptor.output_schema, output, "output")
            except SkillError as exc:
                error = exc
            except Exception as exc:
                error = TransientError(f"{type(exc).__name__}: {exc}")
                error.__cause__ = exc
            else:
                record.output = to_jsonable(output)
                return await self._finish(record, ExecutionStatus.SUCCEEDED)

            error.skill_id = error.skill_id or descriptor.id
            error.attempt = attempt
            if error.step_index is None:
                error.step_index = record.step_index

            if attempt < max_attempts and _should_retry(error, descriptor):
                multiplier = (
                    self._config.rate_limit_multiplier
                    if getattr(error, "rate_limited", False)
                    else 1.0
                )
                delay = compute_backoff(
                    attempt,
                    base_ms=policy.backoff_base_ms,
                    jitter=policy.jitter,
                    max_ms=policy.backoff_max_ms,
                    multiplier=multiplier,
                )
                logger.warning(
                    f"Skill {descriptor.id} attempt {attempt} failed ({error}); "
                    f"retrying in {delay:.2f}s correlation_id={record.correlation_id}"
                )
                if await _wait_any(cancel_events, delay):
                    cancelled = SkillCancelledError(
                        "Execution cancelled during backoff",
                        skill_id=descriptor.id,
                        attempt=attempt,
                        step_index=record.step_index,
                    )
                    return await self._finish(
                        record, ExecutionStatus.CANCELLED, cancelled
                    )
                continue

            status = _FAILURE_STATUS.get(type(error), ExecutionStatus.FAILED)
            return await self._finish(record, status, error)

    async def _attempt(
        self,
        descriptor: SkillDescriptor,
        payload: Any,
        record: ExecutionRecord,
        attempt: int,
        timeout_ms: int,
        cancel_events: List[asyncio.Event],
    ) -> Any:
        semaphore = self._semaphore_for(descriptor)
        await semaphore.acquire()
        task: Optional[asyncio.Task] = None
        try:
            context = ExecutionContext(
                execution_id=record.id,
                skill_id=descriptor.id,
                attempt=attempt,
                timeout_ms=timeout_ms,
                correlation_id=record.correlation_id,
                trigger_source=record.trigger_source,
                step_key=record.step_key,
            )
            task = asyncio.create_task(
                descriptor.handler.invoke(payload, context),
                name=f"skill:{descriptor.id}:{record.id}:{attempt}",
            )
            waiters = [asyncio.create_task(e.wait()) for e in cancel_events]
            try:
                await asyncio.wait(
                    [task, *waiters],
                    timeout=timeout_ms / 1000,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                context.cancel("owner cancelled")
                await self._stop(task, descriptor, record)
                raise
            finally:
                for waiter in waiters:
                    waiter.cancel()
                record.usage.tokens += context.usage.tokens
                record.usage.cost_usd += context.usage.cost_usd

            if _any_set(cancel_events):
                context.cancel("cancelled")
                await self._stop(task, descriptor, record)
                raise SkillCancelledError("Execution cancelled")

            if task.done():
                if task.cancelled():
                    raise SkillCancelledError("Handler cancelled itself")
                return task.result()

            context.cancel("timeout")
            await self._stop(task, descriptor, record)
            raise SkillTimeoutError(f"Handler exceeded {timeout_ms} ms deadline")
        finally:
            if task is None or task.done():
                semaphore.release()
            else:
                # an abandoned handler holds its permit until it really returns
                task.add_done_callback(lambda _: semaphore.release())

    async def _stop(
        self, task: asyncio.Task, descriptor: SkillDescriptor, record: ExecutionRecord
    ) -> None:
        """Cancel ``task`` and wait for acknowledgement within the grace period."""
        if not task.done():
            task.cancel()
            await asyncio.wait([task], timeout=self._config.cancel_grace_ms / 1000)
        if task.done():
            _discard_result(task, descriptor.id, record.id)
            return
        logger.warning(
            f"Skill {descriptor.id} ignored cancellation of execution {record.id}; "
            "abandoning handler, any late result will be discarded"
        )
        self._leaked.add(task)
        task.add_done_callback(
            lambda t: self._on_leaked_done(t, descriptor.id, record.id)
        )

    def _on_leaked_done(self, task: asyncio.Task, skill_id: str, execution_id: str) -> None:
        self._leaked.discard(task)
        _discard_result(task, skill_id, execution_id)

    async def _finish(
        self,
        record: ExecutionRecord,
        status: ExecutionStatus,
        error: Optional[BaseException] = None,
    ) -> ExecutionRecord:
        if error is not None:
            record.error = error_info_from_exception(
                error,
                skill_id=record.skill_id,
                attempt=record.attempts,
                step_index=record.step_index,
                step_key=record.step_key,
            )
        record.transition(status)
        await self._log.append(record)
        if status is ExecutionStatus.SUCCEEDED:
            logger.info(
                f"Skill {record.skill_id} succeeded after {record.attempts} attempt(s) "
                f"correlation_id={record.correlation_id}"
            )
        else:
            logger.warning(
                f"Skill {record.skill_id} ended {status.value} after {record.attempts} "
                f"attempt(s): {record.error.message if record.error else ''} "
                f"correlation_id={record.correlation_id}"
            )
        return record


def _should_retry(error: SkillError, descriptor: SkillDescriptor) -> bool:
    if isinstance(error, SkillTimeoutError):
        return descriptor.idempotent
    if isinstance(error, (ValidationError, FatalError, SkillCancelledError)):
        return False
    return error.retryable


def _validate(schema: Optional[type[BaseModel]], value: Any, what: str) -> Any:
    if schema is None or isinstance(value, schema):
        return value
    try:
        return schema.model_validate(value)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid {what} for {schema.__name__}: {e.error_count()} error(s): "
            + "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
        ) from e


def _any_set(events: List[asyncio.Event]) -> bool:
    return any(e.is_set() for e in events)


async def _wait_any(events: List[asyncio.Event], timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds; return ``True`` if any event fired."""
    if _any_set(events):
        return True
    waiters = [asyncio.create_task(e.wait()) for e in events]
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for waiter in waiters:
            waiter.cancel()
    return bool(done)


def _discard_result(task: asyncio.Task, skill_id: str, execution_id: str) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(
            f"Skill {skill_id} execution {execution_id} raised after cancellation: {exc!r}"
        )
        return
    logger.warning(
        f"Discarding late result of skill {skill_id} for execution {execution_id}"
    )
