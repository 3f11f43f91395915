"""Route incoming trigger events to the workflows that listen for them."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .composer import WorkflowDefinition
from .contracts import Trigger, TriggerSource, WorkflowEvent, WorkflowRun
from .events import EventBus
from .runner import WorkflowRunner

logger = logging.getLogger(__name__)


class TriggerDispatcher:
    """Service responsible for starting runs when trigger events arrive."""

    def __init__(self, runner: WorkflowRunner) -> None:
        self._runner = runner

    @property
    def runner(self) -> WorkflowRunner:
        return self._runner

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate ``definition`` and route its trigger event to it."""
        self._runner.register_definition(definition)
        logger.info(
            f"Registered workflow {definition.name} for trigger {definition.trigger_event}"
        )
        return definition

    @property
    def definitions(self) -> List[WorkflowDefinition]:
        return self._runner.definitions

    def listeners(self, event: str) -> List[WorkflowDefinition]:
        return [d for d in self._runner.definitions if d.trigger_event == event]

    async def dispatch(
        self,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        source: TriggerSource = TriggerSource.API,
        triggered_by: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> List[WorkflowRun]:
        """Start one run per workflow registered for ``event``.

        Args:
            event: Trigger event name, e.g. ``listing.created``.
            payload: Data stored under the run context's ``trigger`` key.
            source: Where the trigger came from.
            triggered_by: Optional identity of the caller, for auditing.
            resource_type: Kind of entity the runs work on, e.g. ``listing``.
            resource_id: Identifier of that entity.

        Returns:
            The runs started, in registration order. A workflow whose run
            could not be started is logged and left out.
        """
        trigger = Trigger(
            event=event,
            source=source,
            payload=payload or {},
            triggered_by=triggered_by,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        return await self.dispatch_trigger(trigger)

    async def dispatch_trigger(self, trigger: Trigger) -> List[WorkflowRun]:
        definitions = self.listeners(trigger.event)
        if not definitions:
            logger.info(f"No workflow listens for trigger {trigger.event}")
            return []
        results = await asyncio.gather(
            *(self._runner.start(definition, trigger) for definition in definitions),
            return_exceptions=True,
        )
        runs: List[WorkflowRun] = []
        for definition, result in zip(definitions, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    f"Failed to start workflow {definition.name} for trigger "
                    f"{trigger.event}: {result!r}"
                )
                continue
            runs.append(result)
        return runs

    async def listen(
        self, bus: EventBus, topic: str, lifespan: Optional[float] = None
    ) -> int:
        """Chain workflows: treat events published on ``topic`` as triggers.

        Each event's type becomes the trigger event name and its payload,
        together with the originating run id, becomes the trigger payload.
        Returns the number of events consumed.
        """
        consumed = 0
        async for raw_message, event in bus.subscribe(topic, lifespan=lifespan):
            await self._dispatch_event(event)
            await bus.ack(raw_message)
            consumed += 1
        return consumed

    async def _dispatch_event(self, event: WorkflowEvent) -> None:
        payload = {
            **event.payload,
            "run_id": event.run_id,
            "definition_name": event.definition_name,
        }
        try:
            await self.dispatch(
                event.type,
                payload,
                TriggerSource.WORKFLOW,
                triggered_by=event.run_id,
                resource_type=event.resource_type,
                resource_id=event.resource_id,
            )
        except Exception as e:
            logger.error(
                f"Failed to dispatch chained trigger {event.type} from run {event.run_id}: {e}"
            )
