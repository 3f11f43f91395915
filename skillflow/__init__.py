"""skillflow: skill execution and workflow orchestration for real-estate automation."""

from .composer import (
    WorkflowBuilder,
    WorkflowDefinition,
    from_trigger,
    load_workflow_file,
    pick,
    select,
    when,
)
from .contracts import (
    ExecutionOptions,
    ExecutionRecord,
    ExecutionStatus,
    RetryPolicy,
    RunStatus,
    Trigger,
    TriggerSource,
    WorkflowRun,
)
from .dispatch import TriggerDispatcher
from .engine import Engine
from .errors import (
    CompositionError,
    ConfigurationError,
    FatalError,
    NotFound,
    SkillError,
    SkillTimeoutError,
    TransientError,
    ValidationError,
)
from .execute import SkillExecutor
from .log import ExecutionLog
from .persistence import get_repository
from .registry import ExecutionContext, SkillCategory, SkillDescriptor, SkillRegistry, skill
from .runner import WorkflowRunner

__version__ = "0.1.0"
__all__ = [
    "CompositionError",
    "ConfigurationError",
    "Engine",
    "ExecutionContext",
    "ExecutionLog",
    "ExecutionOptions",
    "ExecutionRecord",
    "ExecutionStatus",
    "FatalError",
    "NotFound",
    "RetryPolicy",
    "RunStatus",
    "SkillCategory",
    "SkillDescriptor",
    "SkillError",
    "SkillExecutor",
    "SkillRegistry",
    "SkillTimeoutError",
    "TransientError",
    "Trigger",
    "TriggerDispatcher",
    "TriggerSource",
    "ValidationError",
    "WorkflowBuilder",
    "WorkflowDefinition",
    "WorkflowRun",
    "WorkflowRunner",
    "from_trigger",
    "get_repository",
    "load_workflow_file",
    "pick",
    "select",
    "skill",
]
