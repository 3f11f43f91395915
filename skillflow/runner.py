"""Workflow runner: drives a run through its definition's stages."""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from .composer import (
    PauseStage,
    SkillStep,
    Stage,
    WorkflowDefinition,
    validate_definition,
)
from .config import RunnerConfig
from .constants import TRIGGER_CONTEXT_KEY
from .contracts import (
    ExecutionOptions,
    ExecutionRecord,
    ExecutionStatus,
    RunStatus,
    StepState,
    StepStatus,
    Trigger,
    WorkflowEvent,
    WorkflowRun,
    utcnow,
)
from .errors import (
    CompositionError,
    ErrorInfo,
    NotFound,
    RunStateError,
    SkillError,
    ValidationError,
    error_info_from_exception,
)
from .events import EventBus
from .execute import SkillExecutor
from .persistence import WorkflowRepository
from .registry import SkillRegistry

logger = logging.getLogger(__name__)

COMPLETED_EVENT = "workflow.completed"
FAILED_EVENT = "workflow.failed"
PAUSED_EVENT = "workflow.paused"
OPTIONAL_FAILED_EVENT = "step.optional_failed"

DEFAULT_APPROVAL = {"approved": True}


class WorkflowRunner:
    """State machine moving a ``WorkflowRun`` from PENDING to a terminal state.

    The runner owns each run's context. Handlers only return outputs, which
    are merged under the producing step's key exactly once. Progress is
    persisted after every step resolution so a crashed run can be resumed at
    its first unresolved step without replaying finished ones.
    """

    def __init__(
        self,
        registry: SkillRegistry,
        executor: SkillExecutor,
        repository: WorkflowRepository,
        events: Optional[EventBus] = None,
        config: Optional[RunnerConfig] = None,
        definitions: Optional[List[WorkflowDefinition]] = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._repository = repository
        self._events = events
        self._config = config or RunnerConfig()
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._active: Dict[str, asyncio.Event] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        for definition in definitions or []:
            self.register_definition(definition)

    # ------------------------------------------------------------------
    # Definitions
    def register_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        problems = validate_definition(definition, self._registry)
        if problems:
            raise CompositionError(problems, workflow=definition.name)
        existing = self._definitions.get(definition.name)
        if existing is not None and existing != definition:
            logger.warning(f"Replacing workflow definition {definition.name}")
        self._definitions[definition.name] = definition
        return definition

    def definition(self, name: str) -> WorkflowDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise NotFound(f"Workflow definition '{name}' not found") from None

    @property
    def definitions(self) -> List[WorkflowDefinition]:
        return list(self._definitions.values())

    # ------------------------------------------------------------------
    # Public operations
    async def start(
        self, definition: WorkflowDefinition | str, trigger: Trigger
    ) -> WorkflowRun:
        """Create a run for ``trigger`` and drive it as far as it can go."""
        if isinstance(definition, str):
            definition = self.definition(definition)
        elif self._definitions.get(definition.name) != definition:
            self.register_definition(definition)

        if trigger.event != definition.trigger_event:
            raise RunStateError(
                f"Workflow {definition.name} expects trigger "
                f"'{definition.trigger_event}', got '{trigger.event}'"
            )

        run = WorkflowRun(
            definition_name=definition.name,
            trigger_event=trigger.event,
            trigger_source=trigger.source,
            resource_type=trigger.resource_type,
            resource_id=trigger.resource_id,
            context={TRIGGER_CONTEXT_KEY: dict(trigger.payload)},
        )
        await self._repository.create_run(run)
        logger.info(
            f"Created run {run.id} for workflow {definition.name} "
            f"from {trigger.source.value} trigger {trigger.event}"
        )
        return await self._drive(run.id)

    async def resume(
        self, run_id: str, approval: Optional[Mapping[str, Any]] = None
    ) -> WorkflowRun:
        """Re-enter the runner for ``run_id``.

        A completed run is returned unchanged. A failed run is never mutated:
        a new run inherits its resolved steps and context and continues from
        the first unresolved step. Paused and interrupted runs continue in
        place; ``approval`` is stored under the pause step's key.
        """
        run = await self._get_run(run_id)
        if run.status is RunStatus.COMPLETED:
            logger.info(f"Run {run_id} already completed; nothing to resume")
            return run
        if run.status is RunStatus.FAILED:
            retry = self._fork(run)
            await self._repository.create_run(retry)
            logger.info(f"Resuming failed run {run_id} as new run {retry.id}")
            return await self._drive(retry.id)
        if run.status is RunStatus.PAUSED and approval is None:
            approval = DEFAULT_APPROVAL
        return await self._drive(run_id, approval=approval)

    async def cancel(self, run_id: str) -> bool:
        """Cancel a run; in-flight handlers are cancelled and the run fails."""
        event = self._active.get(run_id)
        if event is not None:
            logger.info(f"Cancelling active run {run_id}")
            event.set()
            return True
        run = await self._get_run(run_id)
        if run.status.is_terminal:
            return False
        await self._fail(
            run,
            ErrorInfo(type="RunCancelled", message="Run cancelled by operator"),
        )
        return True

    async def recover(self) -> List[WorkflowRun]:
        """Resume every persisted run left RUNNING or PENDING by a crashed process."""
        recovered: List[WorkflowRun] = []
        for status in (RunStatus.RUNNING, RunStatus.PENDING):
            for run in await self._repository.list_runs(status=status):
                if run.id in self._active:
                    continue
                if run.definition_name not in self._definitions:
                    logger.warning(
                        f"Cannot recover run {run.id}: workflow "
                        f"{run.definition_name} is not registered"
                    )
                    continue
                logger.info(f"Recovering run {run.id} ({run.status.value})")
                recovered.append(await self._drive(run.id))
        return recovered

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    async def runs_for_resource(
        self, resource_type: str, resource_id: str
    ) -> List[WorkflowRun]:
        """Every run started for one business entity, oldest first."""
        return await self._repository.list_runs(
            resource_type=resource_type, resource_id=resource_id
        )


    # ------------------------------------------------------------------
    # State machine
    async def _drive(
        self, run_id: str, approval: Optional[Mapping[str, Any]] = None
    ) -> WorkflowRun:
        if run_id in self._active:
            raise RunStateError(f"Run {run_id} is already being executed")
        cancel_event = asyncio.Event()
        self._active[run_id] = cancel_event
        try:
            run = await self._get_run(run_id)
            definition = self.definition(run.definition_name)
            if run.status is RunStatus.RUNNING:
                run = await self._reconcile(run, definition)
            run = await self._update(run_id, status=RunStatus.RUNNING)

            for stage in definition.stages()[run.current_stage :]:
                if isinstance(stage, PauseStage):
                    step = stage.step
                    if not run.is_resolved(step.key):
                        if approval is None:
                            return await self._pause(run, stage)
                        run = await self._approve(run_id, step.key, approval)
                        approval = None
                else:
                    failure = await self._run_stage(
                        run_id, definition, stage, cancel_event
                    )
                    if cancel_event.is_set():
                        return await self._fail(
                            await self._get_run(run_id),
                            ErrorInfo(type="RunCancelled", message="Run cancelled"),
                        )
                    if failure is not None:
                        return await self._fail(await self._get_run(run_id), failure)
                # barrier crossed
                run = await self._update(run_id, current_stage=stage.index + 1)

            return await self._complete(run)
        except asyncio.CancelledError:
            run = await self._repository.get_run(run_id)
            if run is not None and not run.status.is_terminal:
                await self._fail(
                    run, ErrorInfo(type="RunCancelled", message="Run task cancelled")
                )
            raise
        finally:
            self._active.pop(run_id, None)
            self._locks.pop(run_id, None)

    async def _run_stage(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        stage: Stage,
        cancel_event: asyncio.Event,
    ) -> Optional[ErrorInfo]:
        """Run the unresolved steps of ``stage`` and wait for all of them."""
        run = await self._get_run(run_id)
        pending = [s for s in stage.steps if not run.is_resolved(s.key)]
        if not pending:
            return None
        context = MappingProxyType(dict(run.context))
        if len(pending) > 1:
            logger.debug(
                f"Run {run_id}: dispatching {len(pending)} steps of stage {stage.index}"
            )
        failures = await asyncio.gather(
            *(
                self._run_step(run, definition, step, context, cancel_event)
                for step in pending
            )
        )
        for failure in failures:
            if failure is not None:
                return failure
        return None

    async def _run_step(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: SkillStep,
        context: Mapping[str, Any],
        cancel_event: asyncio.Event,
    ) -> Optional[ErrorInfo]:
        index = definition.index_of(step.key)
        error: Optional[SkillError] = None
        try:
            if not step.should_run(context):
                logger.info(f"Run {run.id}: skipping step {step.key} (condition not met)")
                await self._resolve(run.id, step.key, StepState(status=StepStatus.SKIPPED))
                return None
            descriptor = self._registry.resolve(step.skill_id)
            payload = step.build_input(context)
        except SkillError as exc:
            error = exc
        except Exception as exc:
            error = ValidationError(f"Input mapping failed: {type(exc).__name__}: {exc}")

        if error is not None:
            error.skill_id = error.skill_id or step.skill_id
            error.step_index = index
            record = ExecutionRecord(
                skill_id=step.skill_id,
                trigger_source=run.trigger_source,
                correlation_id=run.id,
                definition_name=definition.name,
                step_key=step.key,
                step_index=index,
                error=error.to_info(step_key=step.key),
            )
            record.transition(ExecutionStatus.FAILED)
            await self._executor.log.append(record)
        else:
            record = await self._executor.execute(
                descriptor,
                payload,
                ExecutionOptions(timeout_ms=step.timeout_ms, max_retries=step.max_retries),
                correlation_id=run.id,
                trigger_source=run.trigger_source,
                definition_name=definition.name,
                step_key=step.key,
                step_index=index,
                cancel_event=cancel_event,
            )
        return await self._settle(run, step, index, record)

    async def _settle(
        self,
        run: WorkflowRun,
        step: SkillStep,
        index: int,
        record: ExecutionRecord,
    ) -> Optional[ErrorInfo]:
        """Record a step's execution on the run; return the error if it must halt."""
        if record.succeeded:
            updated = await self._resolve(
                run.id,
                step.key,
                StepState(
                    status=StepStatus.SUCCEEDED,
                    execution_id=record.id,
                    attempts=record.attempts,
                ),
                record=record,
            )
            if step.on_success is not None:
                context = _read_only(updated.context)
                await self._call_hook(
                    run.id,
                    f"{step.key}.on_success",
                    step.on_success,
                    context.get(step.key),
                    context,
                )
            return None

        error = record.error or ErrorInfo(
            type="ExecutionFailed", message=f"Execution {record.status.value}"
        )
        error = error.model_copy(
            update={"step_key": step.key, "step_index": index, "skill_id": step.skill_id}
        )
        if step.required:
            async with self._lock(run.id):
                current = await self._get_run(run.id)
                updated = await self._repository.update_run(
                    run.id, {"execution_ids": [*current.execution_ids, record.id]}
                )
            logger.error(
                f"Run {run.id}: required step {step.key} {record.status.value}: {error.message}"
            )
            await self._step_failed_hook(run.id, step, error, updated)
            return error

        updated = await self._resolve(
            run.id,
            step.key,
            StepState(
                status=StepStatus.FAILED,
                execution_id=record.id,
                attempts=record.attempts,
                error=error,
            ),
            record=record,
        )
        await self._optional_failed(run, step, error)
        await self._step_failed_hook(run.id, step, error, updated)
        return None

    async def _resolve(
        self,
        run_id: str,
        step_key: str,
        state: StepState,
        record: Optional[ExecutionRecord] = None,
        output: Any = None,
    ) -> WorkflowRun:
        async with self._lock(run_id):
            run = await self._get_run(run_id)
            if run.is_resolved(step_key):
                raise RunStateError(f"Step {step_key} of run {run_id} already resolved")
            fields: Dict[str, Any] = {
                "step_states": {**run.step_states, step_key: state},
            }
            if record is not None:
                fields["execution_ids"] = [*run.execution_ids, record.id]
                if record.succeeded:
                    output = record.output
            if state.status in (StepStatus.SUCCEEDED, StepStatus.APPROVED):
                fields["context"] = _write_once(run.context, step_key, output)
            return await self._repository.update_run(run_id, fields)

    async def _optional_failed(
        self, run: WorkflowRun, step: SkillStep, error: ErrorInfo
    ) -> None:
        policy = self._config.optional_failure_policy
        message = f"Run {run.id}: optional step {step.key} failed: {error.message}"
        if policy == "ignore":
            logger.debug(message)
            return
        logger.warning(message)
        if policy == "alert":
            await self._emit(
                OPTIONAL_FAILED_EVENT,
                run,
                {"step_key": step.key, "error": error.model_dump(mode="json")},
            )

    async def _approve(
        self, run_id: str, step_key: str, approval: Mapping[str, Any]
    ) -> WorkflowRun:
        logger.info(f"Run {run_id}: pause step {step_key} approved")
        return await self._resolve(
            run_id,
            step_key,
            StepState(status=StepStatus.APPROVED),
            output=dict(approval),
        )

    async def _pause(self, run: WorkflowRun, stage: PauseStage) -> WorkflowRun:
        run = await self._update(
            run.id, status=RunStatus.PAUSED, current_stage=stage.index
        )
        logger.info(f"Run {run.id} paused at {stage.step.key}: {stage.step.reason}")
        await self._emit(
            PAUSED_EVENT, run, {"step_key": stage.step.key, "reason": stage.step.reason}
        )
        return run

    async def _complete(self, run: WorkflowRun) -> WorkflowRun:
        run = await self._update(
            run.id, status=RunStatus.COMPLETED, completed_at=utcnow()
        )
        logger.info(f"Run {run.id} of workflow {run.definition_name} completed")
        await self._emit(COMPLETED_EVENT, run, {"context_keys": sorted(run.context)})
        await self._on_complete(run)
        return run

    async def _fail(self, run: WorkflowRun, error: ErrorInfo) -> WorkflowRun:
        run = await self._update(
            run.id, status=RunStatus.FAILED, error=error, completed_at=utcnow()
        )
        logger.error(
            f"Run {run.id} of workflow {run.definition_name} failed at "
            f"{error.step_key or 'run level'}: {error.message}"
        )
        await self._emit(
            FAILED_EVENT,
            run,
            {
                "error": error.model_dump(mode="json"),
                "failing_step": error.step_key,
                "context_keys": sorted(run.context),
            },
        )
        await self._on_complete(run)
        return run

    # ------------------------------------------------------------------
    # Recovery
    async def _reconcile(
        self, run: WorkflowRun, definition: WorkflowDefinition
    ) -> WorkflowRun:
        """Settle executions left behind by a process that died mid-run."""
        records = await self._executor.log.query(correlation_id=run.id)
        for record in records:
            key = record.step_key
            if key is None or run.is_resolved(key) or record.id in run.execution_ids:
                continue
            try:
                step = definition.step(key)
            except KeyError:
                continue
            if record.succeeded and isinstance(step, SkillStep):
                logger.warning(
                    f"Run {run.id}: adopting succeeded execution {record.id} of step {key}"
                )
                await self._settle(run, step, definition.index_of(key), record)
                run = await self._get_run(run.id)
            elif not record.status.is_terminal:
                logger.warning(
                    f"Run {run.id}: closing interrupted execution {record.id} of step {key}"
                )
                record.error = error_info_from_exception(
                    RunStateError("Execution interrupted by process restart"),
                    skill_id=record.skill_id,
                    attempt=record.attempts,
                    step_index=record.step_index,
                    step_key=key,
                )
                record.transition(ExecutionStatus.CANCELLED)
                await self._executor.log.append(record)
        return run

    def _fork(self, run: WorkflowRun) -> WorkflowRun:
        """New run continuing where a failed run stopped."""
        return WorkflowRun(
            definition_name=run.definition_name,
            trigger_event=run.trigger_event,
            trigger_source=run.trigger_source,
            resource_type=run.resource_type,
            resource_id=run.resource_id,
            current_stage=run.current_stage,
            context=dict(run.context),
            step_states=dict(run.step_states),
            execution_ids=list(run.execution_ids),
            resumed_from=run.id,
        )

    # ------------------------------------------------------------------
    # Helpers
    def _lock(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = self._locks[run_id] = asyncio.Lock()
        return lock

    async def _get_run(self, run_id: str) -> WorkflowRun:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise NotFound(f"Run '{run_id}' not found")
        return run

    async def _update(self, run_id: str, **fields: Any) -> WorkflowRun:
        async with self._lock(run_id):
            return await self._repository.update_run(run_id, fields)

    async def _call_hook(
        self, run_id: str, name: str, hook: Optional[Callable[..., Any]], *args: Any
    ) -> None:
        """Run a lifecycle hook; failures are logged and never reach the run."""
        if hook is None:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Run {run_id}: {name} hook failed: {type(e).__name__}: {e}")

    async def _step_failed_hook(
        self, run_id: str, step: SkillStep, error: ErrorInfo, run: WorkflowRun
    ) -> None:
        if step.on_error is not None:
            await self._call_hook(
                run_id,
                f"{step.key}.on_error",
                step.on_error,
                error.model_copy(deep=True),
                _read_only(run.context),
            )

    async def _on_complete(self, run: WorkflowRun) -> None:
        definition = self._definitions.get(run.definition_name)
        if definition is not None:
            await self._call_hook(
                run.id, "on_complete", definition.on_complete, run.model_copy(deep=True)
            )

    async def _emit(self, event_type: str, run: WorkflowRun, payload: dict) -> None:
        if self._events is None:
            return
        event = WorkflowEvent(
            type=event_type,
            run_id=run.id,
            definition_name=run.definition_name,
            trigger_source=run.trigger_source,
            resource_type=run.resource_type,
            resource_id=run.resource_id,
            payload=payload,
        )
        try:
            await self._events.publish(event_type, event)
        except Exception as e:
            logger.error(f"Failed to publish {event_type} for run {run.id}: {e}")


def _write_once(context: Mapping[str, Any], key: str, value: Any) -> Dict[str, Any]:
    if key in context:
        raise RunStateError(f"Context key '{key}' has already been written")
    return {**context, key: value}


def _read_only(context: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(copy.deepcopy(dict(context)))
