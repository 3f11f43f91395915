"""Wire the registry, executor, runner and dispatcher from configuration."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import pydantic

from .composer import WorkflowDefinition, load_workflow_file
from .config import SkillflowConfig, load_config
from .contracts import RetryPolicy, TriggerSource, WorkflowRun
from .dispatch import TriggerDispatcher
from .errors import ConfigurationError
from .events import EventBus, get_event_bus
from .execute import SkillExecutor
from .log import ExecutionLog
from .persistence import WorkflowRepository, get_repository
from .registry import FunctionSkill, SkillDescriptor, SkillRegistry
from .runner import WorkflowRunner

logger = logging.getLogger(__name__)


class Engine:
    """One process-wide set of skillflow components.

    Skills and workflows are registered during startup. ``freeze()`` ends
    that phase; afterwards the registry is read-only and runs can be
    triggered concurrently.
    """

    def __init__(
        self,
        config: Optional[SkillflowConfig] = None,
        repository: Optional[WorkflowRepository] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = config or SkillflowConfig()
        self.registry = SkillRegistry()
        self.repository = repository or get_repository(
            self.config.database_url, self.config
        )
        self.log = ExecutionLog(self.repository)
        self.executor = SkillExecutor(self.log, self.config.executor)
        self.events = events if events is not None else get_event_bus(config=self.config)
        self.runner = WorkflowRunner(
            self.registry,
            self.executor,
            self.repository,
            events=self.events,
            config=self.config.runner,
        )
        self.dispatcher = TriggerDispatcher(self.runner)

    @classmethod
    def from_config(
        cls, config: Optional[SkillflowConfig | str] = None, **kwargs: Any
    ) -> "Engine":
        """Build an engine from a config object, a YAML path, or the environment."""
        if config is None or isinstance(config, str):
            config = load_config(config)
        return cls(config, **kwargs)

    # ------------------------------------------------------------------
    # Registration
    def register_skill(
        self, handler: Any, skill_id: Optional[str] = None, **fields: Any
    ) -> SkillDescriptor:
        """Register a descriptor, or build one from a callable or ``Skill``.

        Timeout and retry settings not given explicitly come from the
        ``executor`` section of the configuration.
        """
        if isinstance(handler, SkillDescriptor):
            return self.registry.register(handler)
        if skill_id is None:
            raise ConfigurationError("A skill id is required to register a handler")
        executor_config = self.config.executor
        fields.setdefault("timeout_ms", executor_config.default_timeout_ms)
        fields.setdefault(
            "retry",
            RetryPolicy(
                max_retries=executor_config.default_max_retries,
                backoff_base_ms=executor_config.backoff_base_ms,
                backoff_max_ms=executor_config.backoff_max_ms,
                jitter=executor_config.jitter,
            ),
        )
        try:
            descriptor = SkillDescriptor(id=skill_id, handler=handler, **fields)
        except pydantic.ValidationError as e:
            raise ConfigurationError(
                f"Invalid skill '{skill_id}': {e}", skill_id=skill_id
            ) from e
        return self.registry.register(descriptor)

    def skill(self, skill_id: str, **fields: Any) -> Callable[[Callable], SkillDescriptor]:
        """Decorator form of ``register_skill`` for ``fn(input, context)``."""

        def wrap(fn: Callable) -> SkillDescriptor:
            fields.setdefault("description", fn.__doc__)
            return self.register_skill(FunctionSkill(fn), skill_id, **fields)

        return wrap

    def register_workflow(
        self, definition: WorkflowDefinition | str
    ) -> WorkflowDefinition:
        """Register a definition object or a YAML workflow file path."""
        if isinstance(definition, str):
            definition = load_workflow_file(definition, self.registry)
        return self.dispatcher.register(definition)

    def freeze(self) -> "Engine":
        self.registry.freeze()
        logger.info(
            f"Engine ready: {len(self.registry)} skills, "
            f"{len(self.dispatcher.definitions)} workflows"
        )
        return self

    # ------------------------------------------------------------------
    # Convenience
    async def trigger(
        self,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        source: TriggerSource = TriggerSource.API,
        triggered_by: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> list[WorkflowRun]:
        return await self.dispatcher.dispatch(
            event, payload, source, triggered_by, resource_type, resource_id
        )

    async def runs_for_resource(
        self, resource_type: str, resource_id: str
    ) -> list[WorkflowRun]:
        return await self.runner.runs_for_resource(resource_type, resource_id)

    async def resume(
        self, run_id: str, approval: Optional[Dict[str, Any]] = None
    ) -> WorkflowRun:
        return await self.runner.resume(run_id, approval)

    async def cancel(self, run_id: str) -> bool:
        return await self.runner.cancel(run_id)

    async def recover(self) -> list[WorkflowRun]:
        return await self.runner.recover()

    async def estimate_cost(self, skill_id: str, input: Any = None) -> float:
        return await self.registry.estimate_cost(skill_id, input)
