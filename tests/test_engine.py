"""Engine wiring, trigger dispatch and workflow chaining."""

import pytest

from skillflow import Engine, TriggerSource, WorkflowBuilder, select
from skillflow.config import SkillflowConfig
from skillflow.contracts import RunStatus
from skillflow.errors import ConfigurationError, TransientError
from skillflow.events import InMemoryEventBus


async def validate(input, context):
    return {"valid": True}


async def notify(input, context):
    return {"notified": input}


@pytest.fixture
def engine():
    config = SkillflowConfig(executor={"backoff_base_ms": 1, "backoff_max_ms": 5})
    engine = Engine(config)
    engine.register_skill(validate, "validate-listing", category="data")
    engine.register_skill(notify, "notify-agent", category="notify")
    return engine


def test_from_config_applies_executor_defaults(tmp_path):
    path = tmp_path / "skillflow.yaml"
    path.write_text("executor:\n  default_timeout_ms: 1234\n  default_max_retries: 1\n")

    engine = Engine.from_config(str(path))
    desc = engine.register_skill(validate, "validate-listing")

    assert desc.timeout_ms == 1234
    assert desc.retry.max_retries == 1
    assert isinstance(engine.events, InMemoryEventBus)


def test_register_skill_errors(engine):
    with pytest.raises(ConfigurationError):
        engine.register_skill(validate)
    with pytest.raises(ConfigurationError):
        engine.register_skill(validate, "bad", timeout_ms=-1)

    engine.freeze()
    with pytest.raises(ConfigurationError):
        engine.register_skill(notify, "late-skill")


@pytest.mark.asyncio
async def test_dispatch_starts_every_listening_workflow(engine):
    for name in ("new-listing", "listing-audit"):
        engine.register_workflow(
            WorkflowBuilder(name, "listing.created", engine.registry)
            .add_step("validate-listing")
            .add_step("notify-agent", input_mapper=select("validate-listing"))
            .build()
        )
    engine.register_workflow(
        WorkflowBuilder("sold", "listing.sold", engine.registry)
        .add_step("notify-agent")
        .build()
    )
    engine.freeze()

    runs = await engine.trigger("listing.created", {"listing_id": "l-1"})

    assert sorted(r.definition_name for r in runs) == ["listing-audit", "new-listing"]
    assert all(r.status is RunStatus.COMPLETED for r in runs)
    assert all(r.trigger_source is TriggerSource.API for r in runs)
    assert runs[0].trigger_payload == {"listing_id": "l-1"}
    assert await engine.trigger("listing.withdrawn") == []

    stats = await engine.log.workflow_stats()
    assert [s.definition_name for s in stats] == ["listing-audit", "new-listing"]


@pytest.mark.asyncio
async def test_dispatch_keeps_runs_when_one_workflow_fails_to_start(engine, monkeypatch):
    for name in ("new-listing", "listing-audit"):
        engine.register_workflow(
            WorkflowBuilder(name, "listing.created", engine.registry)
            .add_step("validate-listing")
            .build()
        )
    engine.freeze()
    start = engine.runner.start

    async def start_or_fail(definition, trigger):
        if definition.name == "listing-audit":
            raise RuntimeError("repository unavailable")
        return await start(definition, trigger)

    monkeypatch.setattr(engine.runner, "start", start_or_fail)

    runs = await engine.trigger("listing.created", {"listing_id": "l-1"})

    assert [r.definition_name for r in runs] == ["new-listing"]
    assert runs[0].status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_trigger_links_runs_to_resource(engine):
    engine.register_workflow(
        WorkflowBuilder("new-listing", "listing.created", engine.registry)
        .add_step("validate-listing")
        .build()
    )
    engine.freeze()

    runs = await engine.trigger(
        "listing.created", {"listing_id": "l-9"}, resource_type="listing", resource_id="l-9"
    )

    assert [r.id for r in await engine.runs_for_resource("listing", "l-9")] == [runs[0].id]


@pytest.mark.asyncio
async def test_engine_estimates_skill_cost(engine):
    engine.register_skill(
        notify, "render-flyer", provider="bannerbear", category="generate"
    )
    engine.register_skill(
        notify, "caption", provider="openai", estimate_cost=lambda input: 0.001 * len(input)
    )

    assert await engine.estimate_cost("render-flyer", {}) == 0.10
    assert await engine.estimate_cost("caption", "x" * 20) == pytest.approx(0.02)


def test_register_workflow_from_yaml(engine, tmp_path):
    path = tmp_path / "listing.yaml"
    path.write_text(
        "name: from-yaml\ntrigger_event: listing.created\nsteps:\n"
        "  - skill_id: validate-listing\n"
    )

    definition = engine.register_workflow(str(path))

    assert definition.name == "from-yaml"
    assert [d.name for d in engine.dispatcher.listeners("listing.created")] == ["from-yaml"]


@pytest.mark.asyncio
async def test_failed_run_triggers_chained_workflow(engine):
    async def sync_mls(input, context):
        raise TransientError("MLS offline")

    engine.register_skill(sync_mls, "sync-mls", retry={"max_retries": 0})
    engine.register_workflow(
        WorkflowBuilder("mls-sync", "listing.created", engine.registry)
        .add_step("sync-mls")
        .build()
    )
    engine.register_workflow(
        WorkflowBuilder("alert-ops", "workflow.failed", engine.registry)
        .add_step("notify-agent")
        .build()
    )
    engine.freeze()

    [failed] = await engine.trigger("listing.created", {"listing_id": "l-1"})
    assert failed.status is RunStatus.FAILED

    consumed = await engine.dispatcher.listen(
        engine.events, "workflow.failed", lifespan=0.3
    )

    assert consumed == 1
    [alert] = await engine.repository.list_runs(definition_name="alert-ops")
    assert alert.status is RunStatus.COMPLETED
    assert alert.trigger_source is TriggerSource.WORKFLOW
    assert alert.trigger_payload["run_id"] == failed.id
    assert alert.trigger_payload["failing_step"] == "sync-mls"
    assert alert.context["notify-agent"]["notified"]["definition_name"] == "mls-sync"
