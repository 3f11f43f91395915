"""Shared fixtures for skillflow tests."""

import pytest

from skillflow.config import ExecutorConfig, RunnerConfig
from skillflow.contracts import RetryPolicy
from skillflow.events import InMemoryEventBus
from skillflow.execute import SkillExecutor
from skillflow.log import ExecutionLog
from skillflow.persistence import InMemoryWorkflowRepository
from skillflow.registry import SkillDescriptor, SkillRegistry
from skillflow.runner import WorkflowRunner

FAST_RETRY = RetryPolicy(max_retries=3, backoff_base_ms=1, backoff_max_ms=5, jitter=0)


def make_skill(skill_id, fn, **fields):
    """Descriptor with millisecond backoff so retry tests stay fast."""
    fields.setdefault("retry", FAST_RETRY)
    return SkillDescriptor(id=skill_id, handler=fn, **fields)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for name in (
        "SKILLFLOW_CONFIG",
        "SKILLFLOW_DATABASE_URL",
        "DATABASE_URL",
        "SKILLFLOW_EVENTS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def execution_log(repository):
    return ExecutionLog(repository)


@pytest.fixture
def executor(execution_log):
    return SkillExecutor(execution_log, ExecutorConfig(cancel_grace_ms=50))


@pytest.fixture
def registry():
    return SkillRegistry()


@pytest.fixture
def events():
    return InMemoryEventBus()


@pytest.fixture
def runner_config():
    return RunnerConfig()


@pytest.fixture
def runner(registry, executor, repository, events, runner_config):
    return WorkflowRunner(
        registry, executor, repository, events=events, config=runner_config
    )
