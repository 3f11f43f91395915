"""Declarative workflow definitions and the builder that validates them."""

from __future__ import annotations

import importlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Annotated,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .constants import TRIGGER_CONTEXT_KEY
from .errors import CompositionError

if TYPE_CHECKING:
    from .registry import SkillRegistry

logger = logging.getLogger(__name__)

Mapper = Callable[[Mapping[str, Any]], Any]
Condition = Callable[[Mapping[str, Any]], bool]
# Lifecycle hooks see read-only copies; whatever they return is ignored.
StepHook = Callable[[Any, Mapping[str, Any]], Any]


# ----------------------------------------------------------------------
# Context mappers
class ContextMapper:
    """A pure function of the run context that declares which keys it reads.

    ``reads`` lists top-level context namespaces (step keys or ``trigger``);
    the composer uses them to reject same-group and forward dependencies.
    """

    def __init__(
        self,
        fn: Callable[[Mapping[str, Any]], Any],
        reads: Iterable[str],
        document: Optional[dict] = None,
    ) -> None:
        self.fn = fn
        self.reads = tuple(dict.fromkeys(_root(r) for r in reads))
        self.document = document

    def __call__(self, context: Mapping[str, Any]) -> Any:
        return self.fn(context)

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"ContextMapper(reads={self.reads!r})"


def lookup(context: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Resolve a dotted ``path`` such as ``enrich.lat`` against ``context``."""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return default
    return current


def select(*keys: str) -> ContextMapper:
    """Pass the named context namespaces through unchanged.

    Namespaces missing from the context (for example, the output of an optional
    step that failed) are omitted from the input.
    """

    def _select(context: Mapping[str, Any]) -> dict:
        return {k: context[k] for k in keys if k in context}

    return ContextMapper(_select, reads=keys, document={"select": list(keys)})


def pick(**fields: str) -> ContextMapper:
    """Build an input dict from dotted context paths; missing paths give ``None``."""

    def _pick(context: Mapping[str, Any]) -> dict:
        return {name: lookup(context, path) for name, path in fields.items()}

    return ContextMapper(_pick, reads=fields.values(), document={"pick": dict(fields)})


def from_trigger(*fields: str) -> ContextMapper:
    """Copy fields of the trigger payload; with no fields, copy all of it."""
    if not fields:

        def _all(context: Mapping[str, Any]) -> dict:
            return dict(context.get(TRIGGER_CONTEXT_KEY) or {})

        return ContextMapper(
            _all, reads=[TRIGGER_CONTEXT_KEY], document={"from_trigger": []}
        )
    mapper = pick(**{f: f"{TRIGGER_CONTEXT_KEY}.{f}" for f in fields})
    mapper.document = {"from_trigger": list(fields)}
    return mapper


def when(fn: Condition, reads: Iterable[str]) -> ContextMapper:
    """Declare the reads of a step condition."""
    return ContextMapper(fn, reads=reads)


def _root(path: str) -> str:
    return path.split(".", 1)[0]


# ----------------------------------------------------------------------
# Step kinds
class SkillStep(BaseModel):
    """Invoke a registered skill and store its output under ``key``."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    kind: Literal["skill"] = "skill"
    key: str
    skill_id: str
    required: bool = True
    parallel_group: Optional[str] = None
    input_mapper: Optional[Callable[..., Any]] = None
    condition: Optional[Callable[..., Any]] = None
    reads: Tuple[str, ...] = ()
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    # on_success(output, context) and on_error(error_info, context)
    on_success: Optional[Callable[..., Any]] = None
    on_error: Optional[Callable[..., Any]] = None

    def build_input(self, context: Mapping[str, Any]) -> Any:
        if self.input_mapper is None:
            return dict(context.get(TRIGGER_CONTEXT_KEY) or {})
        return self.input_mapper(context)

    def should_run(self, context: Mapping[str, Any]) -> bool:
        if self.condition is None:
            return True
        return bool(self.condition(context))


class PauseStep(BaseModel):
    """Suspend the run until it is resumed, e.g. after human approval."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["pause"] = "pause"
    key: str
    reason: str = ""


StepSpec = Annotated[Union[SkillStep, PauseStep], Field(discriminator="kind")]


@dataclass(frozen=True)
class SequentialStage:
    index: int
    step: SkillStep

    @property
    def steps(self) -> Tuple[SkillStep, ...]:
        return (self.step,)


@dataclass(frozen=True)
class ParallelGroup:
    """Sibling steps dispatched together; the run waits for all of them."""

    index: int
    name: str
    steps: Tuple[SkillStep, ...]


@dataclass(frozen=True)
class PauseStage:
    index: int
    step: PauseStep

    @property
    def steps(self) -> Tuple[PauseStep, ...]:
        return (self.step,)


Stage = Union[SequentialStage, ParallelGroup, PauseStage]


# ----------------------------------------------------------------------
# Definition
class WorkflowDefinition(BaseModel):
    """A named, triggerable composition of skill and pause steps."""

    model_config = ConfigDict(frozen=True)

    name: str
    trigger_event: str
    description: str = ""
    version: str = "1.0.0"
    steps: List[StepSpec] = Field(default_factory=list)
    # on_complete(run), called once the run is completed or failed
    on_complete: Optional[Callable[..., Any]] = None

    def stages(self) -> List[Stage]:
        """Group steps into stages; consecutive steps sharing a group form one."""
        stages: List[Stage] = []
        pending: List[SkillStep] = []
        group: Optional[str] = None

        def flush() -> None:
            nonlocal pending, group
            if pending:
                stages.append(ParallelGroup(len(stages), group, tuple(pending)))
            pending, group = [], None

        for step in self.steps:
            if isinstance(step, SkillStep) and step.parallel_group:
                if step.parallel_group != group:
                    flush()
                    group = step.parallel_group
                pending.append(step)
                continue
            flush()
            if isinstance(step, PauseStep):
                stages.append(PauseStage(len(stages), step))
            else:
                stages.append(SequentialStage(len(stages), step))
        flush()
        return stages

    def step(self, key: str) -> StepSpec:
        for step in self.steps:
            if step.key == key:
                return step
        raise KeyError(key)

    def index_of(self, key: str) -> int:
        for index, step in enumerate(self.steps):
            if step.key == key:
                return index
        raise KeyError(key)

    @property
    def skill_ids(self) -> List[str]:
        return [s.skill_id for s in self.steps if isinstance(s, SkillStep)]

    # ------------------------------------------------------------------
    def to_document(self) -> dict:
        """Serialise to plain data; mappers become references or helper specs."""
        document = {
            "name": self.name,
            "trigger_event": self.trigger_event,
            "description": self.description,
            "version": self.version,
            "steps": [_step_to_document(s) for s in self.steps],
        }
        if self.on_complete is not None:
            document["on_complete"] = _callable_ref(self.on_complete)
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "WorkflowDefinition":
        steps = [_step_from_document(s) for s in document.get("steps", [])]
        return cls(
            name=document["name"],
            trigger_event=document["trigger_event"],
            description=document.get("description", ""),
            version=document.get("version", "1.0.0"),
            steps=steps,
            on_complete=_hook_from_document(document.get("on_complete")),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_document())

    @classmethod
    def from_json(cls, data: str) -> "WorkflowDefinition":
        return cls.from_document(json.loads(data))


def _callable_ref(fn: Callable) -> str:
    module = getattr(fn, "__module__", None)
    qualname = getattr(fn, "__qualname__", None)
    if not module or not qualname or "<" in qualname:
        raise ValueError(
            f"Cannot serialise {fn!r}: only module-level functions or helper mappers are supported"
        )
    return f"{module}:{qualname}"


def _resolve_ref(ref: str) -> Callable:
    module_name, _, qualname = ref.partition(":")
    try:
        target: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"Failed to resolve callable reference '{ref}': {e}") from e
    return target


def _hook_from_document(ref: Optional[str]) -> Optional[Callable]:
    return _resolve_ref(ref) if ref else None


def _mapper_to_document(mapper: Optional[Callable]) -> Optional[dict]:
    if mapper is None:
        return None
    if isinstance(mapper, ContextMapper):
        if mapper.document is not None:
            return mapper.document
        return {"ref": _callable_ref(mapper.fn), "reads": list(mapper.reads)}
    return {"ref": _callable_ref(mapper)}


def _mapper_from_document(document: Optional[Mapping[str, Any]]) -> Optional[Callable]:
    if document is None:
        return None
    if "select" in document:
        return select(*document["select"])
    if "pick" in document:
        return pick(**document["pick"])
    if "from_trigger" in document:
        return from_trigger(*document["from_trigger"])
    if "ref" in document:
        fn = _resolve_ref(document["ref"])
        if "reads" in document:
            return ContextMapper(fn, reads=document["reads"])
        return fn
    raise ValueError(f"Unrecognised mapper document: {dict(document)!r}")


def _step_to_document(step: StepSpec) -> dict:
    if isinstance(step, PauseStep):
        return {"kind": "pause", "key": step.key, "reason": step.reason}
    document: Dict[str, Any] = {
        "kind": "skill",
        "key": step.key,
        "skill_id": step.skill_id,
        "required": step.required,
        "parallel_group": step.parallel_group,
        "reads": list(step.reads),
        "input_mapper": _mapper_to_document(step.input_mapper),
        "condition": _mapper_to_document(step.condition),
    }
    if step.timeout_ms is not None:
        document["timeout_ms"] = step.timeout_ms
    if step.max_retries is not None:
        document["max_retries"] = step.max_retries
    for hook in ("on_success", "on_error"):
        if getattr(step, hook) is not None:
            document[hook] = _callable_ref(getattr(step, hook))
    return document


def _step_from_document(document: Mapping[str, Any]) -> StepSpec:
    kind = document.get("kind", "skill")
    if kind == "pause":
        return PauseStep(key=document["key"], reason=document.get("reason", ""))
    if kind != "skill":
        raise ValueError(f"Unknown step kind: {kind!r}")
    input_mapper = _mapper_from_document(document.get("input_mapper"))
    condition = _mapper_from_document(document.get("condition"))
    reads = document.get("reads")
    if reads is None:
        reads = _infer_reads(input_mapper, condition)
    return SkillStep(
        key=document.get("key") or document["skill_id"],
        skill_id=document["skill_id"],
        required=document.get("required", True),
        parallel_group=document.get("parallel_group"),
        input_mapper=input_mapper,
        condition=condition,
        reads=tuple(reads),
        timeout_ms=document.get("timeout_ms"),
        max_retries=document.get("max_retries"),
        on_success=_hook_from_document(document.get("on_success")),
        on_error=_hook_from_document(document.get("on_error")),
    )


def _infer_reads(
    input_mapper: Optional[Callable], condition: Optional[Callable]
) -> Tuple[str, ...]:
    reads: List[str] = []
    if input_mapper is None:
        reads.append(TRIGGER_CONTEXT_KEY)
    elif isinstance(input_mapper, ContextMapper):
        reads.extend(input_mapper.reads)
    if isinstance(condition, ContextMapper):
        reads.extend(condition.reads)
    return tuple(dict.fromkeys(reads))


# ----------------------------------------------------------------------
# Validation
def validate_definition(
    definition: WorkflowDefinition, registry: Optional["SkillRegistry"] = None
) -> List[str]:
    """Return every problem found in ``definition``; empty means valid."""
    problems: List[str] = []
    if not definition.steps:
        problems.append("workflow has no steps")

    seen: set[str] = set()
    for step in definition.steps:
        if not step.key:
            problems.append("step key must be non-empty")
        elif step.key == TRIGGER_CONTEXT_KEY:
            problems.append(f"step key '{TRIGGER_CONTEXT_KEY}' is reserved")
        elif step.key in seen:
            problems.append(f"duplicate step key '{step.key}'")
        seen.add(step.key)

    if registry is not None:
        for skill_id in dict.fromkeys(definition.skill_ids):
            if not registry.has(skill_id):
                problems.append(f"unknown skill '{skill_id}'")

    closed: set[str] = set()
    previous: Optional[str] = None
    for step in definition.steps:
        group = step.parallel_group if isinstance(step, SkillStep) else None
        if group != previous and previous is not None:
            closed.add(previous)
        if group is not None and group in closed:
            problems.append(
                f"parallel group '{group}' is split; its steps must be contiguous"
            )
        previous = group

    produced_in: Dict[str, int] = {}
    for stage in definition.stages():
        for step in stage.steps:
            produced_in.setdefault(step.key, stage.index)

    for stage in definition.stages():
        for step in stage.steps:
            if not isinstance(step, SkillStep):
                continue
            for read in step.reads:
                key = _root(read)
                if key == TRIGGER_CONTEXT_KEY:
                    continue
                producer = produced_in.get(key)
                if producer is None:
                    problems.append(
                        f"step '{step.key}' reads '{key}' which no step produces"
                    )
                elif key == step.key:
                    problems.append(f"step '{step.key}' reads its own output")
                elif producer == stage.index:
                    problems.append(
                        f"step '{step.key}' reads '{key}' from the same parallel group"
                    )
                elif producer > stage.index:
                    problems.append(
                        f"step '{step.key}' reads '{key}' which is only produced by a later step"
                    )
    return problems


# ----------------------------------------------------------------------
# Builder
class WorkflowBuilder:
    """Fluent builder for ``WorkflowDefinition``.

    Example:
        definition = (
            WorkflowBuilder("new-listing", "listing.created", registry)
            .add_step("validate-listing", input_mapper=from_trigger())
            .add_step("enrich-listing", input_mapper=select("validate-listing"))
            .add_step("notify-agent", input_mapper=pick(lat="enrich-listing.lat"))
            .build()
        )
    """

    def __init__(
        self,
        name: str,
        trigger_event: str,
        registry: Optional["SkillRegistry"] = None,
    ) -> None:
        self._name = name
        self._trigger_event = trigger_event
        self._registry = registry
        self._description = ""
        self._version = "1.0.0"
        self._steps: List[StepSpec] = []
        self._problems: List[str] = []
        self._on_complete: Optional[Callable[..., Any]] = None

    def describe(self, description: str) -> "WorkflowBuilder":
        self._description = description
        return self

    def version(self, version: str) -> "WorkflowBuilder":
        self._version = version
        return self

    def add_step(
        self,
        skill_id: str,
        *,
        required: bool = True,
        parallel_group: Optional[str] = None,
        input_mapper: Optional[Mapper] = None,
        reads: Optional[Sequence[str]] = None,
        key: Optional[str] = None,
        condition: Optional[Condition] = None,
        timeout_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        on_success: Optional[StepHook] = None,
        on_error: Optional[StepHook] = None,
    ) -> "WorkflowBuilder":
        key = key or skill_id
        if reads is None:
            if input_mapper is not None and not isinstance(input_mapper, ContextMapper):
                self._problems.append(
                    f"step '{key}' uses a plain input mapper; declare reads= or use select()/pick()"
                )
            step_reads = _infer_reads(input_mapper, condition)
        else:
            step_reads = tuple(dict.fromkeys([_root(r) for r in reads]))
            if isinstance(condition, ContextMapper):
                step_reads = tuple(dict.fromkeys([*step_reads, *condition.reads]))
        self._steps.append(
            SkillStep(
                key=key,
                skill_id=skill_id,
                required=required,
                parallel_group=parallel_group,
                input_mapper=input_mapper,
                condition=condition,
                reads=step_reads,
                timeout_ms=timeout_ms,
                max_retries=max_retries,
                on_success=on_success,
                on_error=on_error,
            )
        )
        return self

    def add_parallel_steps(
        self, group: str, steps: Iterable[Union[str, Mapping[str, Any]]]
    ) -> "WorkflowBuilder":
        """Add several steps to ``group``; each item is a skill id or kwargs."""
        for item in steps:
            if isinstance(item, str):
                self.add_step(item, parallel_group=group)
            else:
                options = dict(item)
                skill_id = options.pop("skill_id")
                options["parallel_group"] = group
                self.add_step(skill_id, **options)
        return self

    def add_pause(self, key: str, reason: str = "") -> "WorkflowBuilder":
        self._steps.append(PauseStep(key=key, reason=reason))
        return self

    def on_complete(self, hook: Callable[..., Any]) -> "WorkflowBuilder":
        """Call ``hook(run)`` whenever a run of this workflow completes or fails."""
        self._on_complete = hook
        return self

    def build(self, registry: Optional["SkillRegistry"] = None) -> WorkflowDefinition:
        definition = WorkflowDefinition(
            name=self._name,
            trigger_event=self._trigger_event,
            description=self._description,
            version=self._version,
            steps=list(self._steps),
            on_complete=self._on_complete,
        )
        problems = self._problems + validate_definition(
            definition, registry or self._registry
        )
        if problems:
            raise CompositionError(problems, workflow=self._name)
        logger.debug(
            f"Built workflow {self._name} with {len(definition.steps)} steps "
            f"in {len(definition.stages())} stages"
        )
        return definition


def load_workflow_file(
    path: str | Path, registry: Optional["SkillRegistry"] = None
) -> WorkflowDefinition:
    """Load and validate a workflow definition from a YAML or JSON file."""
    with open(path) as f:
        document = yaml.safe_load(f) or {}
    try:
        definition = WorkflowDefinition.from_document(document)
    except (KeyError, ValueError) as e:
        raise CompositionError([str(e)], workflow=document.get("name")) from e
    problems = validate_definition(definition, registry)
    if problems:
        raise CompositionError(problems, workflow=definition.name)
    return definition


def dump_workflow_file(definition: WorkflowDefinition, path: str | Path) -> None:
    with open(path, "w") as f:
        yaml.safe_dump(definition.to_document(), f, sort_keys=False)
