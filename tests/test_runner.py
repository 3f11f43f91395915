"""End-to-end workflow runs through the runner state machine."""

import asyncio

import pytest

from conftest import make_skill
from skillflow.composer import WorkflowBuilder, pick, select, when
from skillflow.config import RunnerConfig
from skillflow.contracts import (
    ExecutionRecord,
    ExecutionStatus,
    RunStatus,
    StepState,
    StepStatus,
    Trigger,
    WorkflowRun,
)
from skillflow.errors import CompositionError, NotFound, RunStateError, TransientError
from skillflow.runner import WorkflowRunner

LISTING = {"listing_id": "l-1", "address": "12 Elm St", "price": 450000}


def listing_trigger(**payload):
    return Trigger(event="listing.created", payload={**LISTING, **payload})


class Calls:
    """Collects the inputs each skill handler received."""

    def __init__(self):
        self.inputs = {}

    def record(self, skill_id, input):
        self.inputs.setdefault(skill_id, []).append(input)

    def count(self, skill_id):
        return len(self.inputs.get(skill_id, []))


@pytest.fixture
def calls():
    return Calls()


@pytest.fixture
def listing_skills(registry, calls):
    """validate -> enrich (flaky twice) -> notify, plus media skills."""

    async def validate(input, context):
        calls.record("validate-listing", input)
        return {"listing_id": input["listing_id"], "valid": True}

    async def enrich(input, context):
        calls.record("enrich-listing", input)
        if calls.count("enrich-listing") < 3:
            raise TransientError("geocoder 503")
        return {"lat": 30.27, "lng": -97.74}

    async def notify(input, context):
        calls.record("notify-agent", input)
        return {"sent": True}

    async def describe(input, context):
        calls.record("generate-description", input)
        return {"headline": "Sunny bungalow"}

    async def publish(input, context):
        calls.record("publish-listing", input)
        return {"published": True}

    for skill_id, fn in [
        ("validate-listing", validate),
        ("enrich-listing", enrich),
        ("notify-agent", notify),
        ("generate-description", describe),
        ("publish-listing", publish),
    ]:
        registry.register(make_skill(skill_id, fn))
    return registry


def new_listing_workflow(registry):
    return (
        WorkflowBuilder("new-listing", "listing.created", registry)
        .add_step("validate-listing")
        .add_step("enrich-listing", input_mapper=select("validate-listing"))
        .add_step("notify-agent", input_mapper=pick(lat="enrich-listing.lat"))
        .build()
    )


@pytest.mark.asyncio
async def test_sequential_run_retries_transient_step_and_completes(
    runner, listing_skills, calls, execution_log, events
):
    definition = new_listing_workflow(listing_skills)

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.COMPLETED
    assert run.completed_at is not None
    assert run.context["trigger"] == LISTING
    assert run.context["notify-agent"] == {"sent": True}
    assert calls.inputs["notify-agent"] == [{"lat": 30.27}]
    assert calls.inputs["enrich-listing"][0] == {
        "validate-listing": {"listing_id": "l-1", "valid": True}
    }

    enrich = await execution_log.query(correlation_id=run.id, skill_id="enrich-listing")
    assert len(enrich) == 1
    assert enrich[0].attempts == 3
    assert enrich[0].status is ExecutionStatus.SUCCEEDED
    assert enrich[0].step_key == "enrich-listing"
    assert enrich[0].step_index == 1

    assert len(run.execution_ids) == 3
    assert [e.run_id for e in events.events_of("workflow.completed")] == [run.id]


@pytest.mark.asyncio
async def test_optional_failure_in_parallel_group_does_not_fail_run(
    runner, listing_skills, calls, execution_log, events
):
    async def render_video(input, context):
        raise ValueError("codec missing") from None

    listing_skills.register(
        make_skill("render-video", render_video, retry={"max_retries": 0})
    )
    definition = (
        WorkflowBuilder("media-kit", "listing.created", listing_skills)
        .add_parallel_steps(
            "media",
            [
                {"skill_id": "generate-description", "required": False},
                {"skill_id": "render-video", "required": False},
            ],
        )
        .add_step(
            "publish-listing",
            input_mapper=select("generate-description", "render-video"),
        )
        .build()
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.COMPLETED
    assert run.context["generate-description"] == {"headline": "Sunny bungalow"}
    assert "render-video" not in run.context
    assert run.step_states["render-video"].status is StepStatus.FAILED
    assert run.step_states["render-video"].error.step_key == "render-video"
    assert calls.inputs["publish-listing"] == [
        {"generate-description": {"headline": "Sunny bungalow"}}
    ]

    video = await execution_log.query(correlation_id=run.id, skill_id="render-video")
    assert video[0].status is ExecutionStatus.FAILED
    # default policy logs only
    assert events.events_of("step.optional_failed") == []


@pytest.mark.asyncio
async def test_alert_policy_publishes_optional_failure(
    registry, executor, repository, events
):
    async def flaky(input, context):
        raise TransientError("provider down")

    registry.register(make_skill("post-social", flaky, retry={"max_retries": 0}))
    definition = (
        WorkflowBuilder("social", "listing.created", registry)
        .add_step("post-social", required=False)
        .build()
    )
    runner = WorkflowRunner(
        registry,
        executor,
        repository,
        events=events,
        config=RunnerConfig(optional_failure_policy="alert"),
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.COMPLETED
    alerts = events.events_of("step.optional_failed")
    assert len(alerts) == 1
    assert alerts[0].payload["step_key"] == "post-social"
    assert alerts[0].payload["error"]["type"] == "TransientError"


@pytest.mark.asyncio
async def test_required_step_timeout_fails_run_and_stops_downstream(
    runner, listing_skills, calls, execution_log, events
):
    async def render_video(input, context):
        await asyncio.sleep(10)

    listing_skills.register(make_skill("render-video", render_video, timeout_ms=50))
    definition = (
        WorkflowBuilder("video-first", "listing.created", listing_skills)
        .add_step("render-video")
        .add_step("publish-listing", input_mapper=select("render-video"))
        .build()
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.FAILED
    assert run.error.type == "SkillTimeoutError"
    assert run.error.step_key == "render-video"
    assert run.error.step_index == 0
    assert run.error.skill_id == "render-video"
    assert run.error.attempt == 1
    assert run.failing_step == "render-video"
    assert calls.count("publish-listing") == 0

    records = await execution_log.query(correlation_id=run.id)
    assert [r.status for r in records] == [ExecutionStatus.TIMED_OUT]

    failed = events.events_of("workflow.failed")
    assert failed[0].payload["failing_step"] == "render-video"


@pytest.mark.asyncio
async def test_unknown_skill_is_rejected_before_any_run(runner, registry, repository):
    with pytest.raises(NotFound):
        registry.resolve("nonexistent-skill")

    with pytest.raises(CompositionError) as exc:
        WorkflowBuilder("broken", "listing.created", registry).add_step(
            "nonexistent-skill"
        ).build()
    assert "unknown skill 'nonexistent-skill'" in exc.value.problems

    unchecked = WorkflowBuilder("broken", "listing.created").add_step(
        "nonexistent-skill"
    ).build()
    with pytest.raises(CompositionError):
        await runner.start(unchecked, listing_trigger())
    assert await repository.list_runs() == []


@pytest.mark.asyncio
async def test_parallel_group_steps_run_concurrently_behind_a_barrier(
    runner, registry, calls
):
    photos_started = asyncio.Event()
    plan_started = asyncio.Event()

    async def photos(input, context):
        photos_started.set()
        await asyncio.wait_for(plan_started.wait(), timeout=1)
        return {"photos": 24}

    async def floor_plan(input, context):
        plan_started.set()
        await asyncio.wait_for(photos_started.wait(), timeout=1)
        return {"rooms": 4}

    async def brochure(input, context):
        calls.record("build-brochure", input)
        return "brochure.pdf"

    for skill_id, fn in [
        ("process-photos", photos),
        ("draw-floor-plan", floor_plan),
        ("build-brochure", brochure),
    ]:
        registry.register(make_skill(skill_id, fn))
    definition = (
        WorkflowBuilder("brochure", "listing.created", registry)
        .add_parallel_steps("assets", ["process-photos", "draw-floor-plan"])
        .add_step(
            "build-brochure", input_mapper=select("process-photos", "draw-floor-plan")
        )
        .build()
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.COMPLETED
    assert run.step_states["process-photos"].attempts == 1
    assert run.step_states["draw-floor-plan"].attempts == 1
    assert calls.inputs["build-brochure"] == [
        {"process-photos": {"photos": 24}, "draw-floor-plan": {"rooms": 4}}
    ]


@pytest.mark.asyncio
async def test_required_failure_in_group_still_waits_for_siblings(
    runner, registry, calls
):
    async def slow_ok(input, context):
        await asyncio.sleep(0.05)
        calls.record("slow-ok", input)
        return "done"

    async def broken(input, context):
        raise TransientError("down")

    async def after(input, context):
        calls.record("after", input)

    registry.register(make_skill("slow-ok", slow_ok))
    registry.register(make_skill("broken", broken, retry={"max_retries": 0}))
    registry.register(make_skill("after", after))
    definition = (
        WorkflowBuilder("group-fail", "listing.created", registry)
        .add_parallel_steps("g", ["slow-ok", "broken"])
        .add_step("after")
        .build()
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.FAILED
    assert run.error.step_key == "broken"
    assert run.step_states["slow-ok"].status is StepStatus.SUCCEEDED
    assert run.context["slow-ok"] == "done"
    assert calls.count("after") == 0


@pytest.mark.asyncio
async def test_condition_false_skips_step(runner, listing_skills, calls, execution_log):
    definition = (
        WorkflowBuilder("luxury", "listing.created", listing_skills)
        .add_step("validate-listing")
        .add_step(
            "notify-agent",
            condition=when(lambda ctx: ctx["trigger"]["price"] > 1_000_000, reads=["trigger"]),
        )
        .build()
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.COMPLETED
    assert run.step_states["notify-agent"].status is StepStatus.SKIPPED
    assert "notify-agent" not in run.context
    assert calls.count("notify-agent") == 0
    assert await execution_log.query(skill_id="notify-agent") == []


@pytest.mark.asyncio
async def test_mapper_error_fails_step_with_validation_error(
    runner, listing_skills, execution_log
):
    definition = (
        WorkflowBuilder("bad-mapper", "listing.created", listing_skills)
        .add_step("validate-listing")
        .add_step(
            "notify-agent",
            input_mapper=lambda ctx: ctx["validate-listing"]["agent_email"],
            reads=["validate-listing"],
        )
        .build()
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.FAILED
    assert run.error.type == "ValidationError"
    assert run.error.step_key == "notify-agent"
    records = await execution_log.query(correlation_id=run.id, skill_id="notify-agent")
    assert records[0].status is ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_pause_and_resume_with_approval(runner, listing_skills, calls, events):
    definition = (
        WorkflowBuilder("approve-copy", "listing.created", listing_skills)
        .add_step("generate-description")
        .add_pause("agent-approval", "Listing agent reviews the description")
        .add_step(
            "publish-listing",
            input_mapper=select("generate-description", "agent-approval"),
        )
        .build()
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.PAUSED
    assert run.current_stage == 1
    assert calls.count("publish-listing") == 0
    paused = events.events_of("workflow.paused")
    assert paused[0].payload["step_key"] == "agent-approval"

    resumed = await runner.resume(run.id, {"approved_by": "agent-7"})

    assert resumed.id == run.id
    assert resumed.status is RunStatus.COMPLETED
    assert resumed.step_states["agent-approval"].status is StepStatus.APPROVED
    assert calls.inputs["publish-listing"] == [
        {
            "generate-description": {"headline": "Sunny bungalow"},
            "agent-approval": {"approved_by": "agent-7"},
        }
    ]
    assert calls.count("generate-description") == 1


@pytest.mark.asyncio
async def test_resume_completed_run_is_noop(runner, listing_skills, calls, repository):
    run = await runner.start(new_listing_workflow(listing_skills), listing_trigger())
    snapshots = repository.snapshot_count

    again = await runner.resume(run.id)

    assert again.status is RunStatus.COMPLETED
    assert again.updated_at == run.updated_at
    assert repository.snapshot_count == snapshots
    assert calls.count("validate-listing") == 1


@pytest.mark.asyncio
async def test_terminal_run_cannot_be_mutated(runner, listing_skills, repository):
    run = await runner.start(new_listing_workflow(listing_skills), listing_trigger())

    with pytest.raises(RunStateError):
        await repository.update_run(run.id, {"status": RunStatus.RUNNING})


@pytest.mark.asyncio
async def test_resume_failed_run_creates_new_run_from_failing_step(
    runner, registry, calls, repository
):
    state = {"healthy": False}

    async def validate(input, context):
        calls.record("validate-listing", input)
        return {"ok": True}

    async def sync_mls(input, context):
        calls.record("sync-mls", input)
        if not state["healthy"]:
            raise TransientError("MLS offline")
        return {"mls_id": "M-55"}

    registry.register(make_skill("validate-listing", validate))
    registry.register(make_skill("sync-mls", sync_mls, retry={"max_retries": 0}))
    definition = (
        WorkflowBuilder("mls", "listing.created", registry)
        .add_step("validate-listing")
        .add_step("sync-mls", input_mapper=select("validate-listing"))
        .build()
    )

    failed = await runner.start(definition, listing_trigger())
    assert failed.status is RunStatus.FAILED

    state["healthy"] = True
    retried = await runner.resume(failed.id)

    assert retried.id != failed.id
    assert retried.resumed_from == failed.id
    assert retried.status is RunStatus.COMPLETED
    assert retried.context["sync-mls"] == {"mls_id": "M-55"}
    assert calls.count("validate-listing") == 1
    assert calls.count("sync-mls") == 2

    original = await repository.get_run(failed.id)
    assert original.status is RunStatus.FAILED


@pytest.mark.asyncio
async def test_runs_are_linked_to_their_resource(runner, listing_skills, events):
    definition = new_listing_workflow(listing_skills)

    def linked(listing_id):
        return Trigger(
            event="listing.created",
            payload={**LISTING, "listing_id": listing_id},
            resource_type="listing",
            resource_id=listing_id,
        )

    first = await runner.start(definition, linked("l-1"))
    second = await runner.start(definition, linked("l-1"))
    await runner.start(definition, linked("l-2"))
    unlinked = await runner.start(definition, listing_trigger())

    assert (first.resource_type, first.resource_id) == ("listing", "l-1")
    assert unlinked.resource_id is None
    runs = await runner.runs_for_resource("listing", "l-1")
    assert [r.id for r in runs] == [first.id, second.id]
    assert await runner.runs_for_resource("campaign", "l-1") == []

    completed = events.events_of("workflow.completed")[0]
    assert (completed.resource_type, completed.resource_id) == ("listing", "l-1")


@pytest.mark.asyncio
async def test_resumed_run_keeps_its_resource_link(runner, registry):
    state = {"healthy": False}

    async def sync_mls(input, context):
        if not state["healthy"]:
            raise TransientError("MLS offline")
        return {"mls_id": "M-55"}

    registry.register(make_skill("sync-mls", sync_mls, retry={"max_retries": 0}))
    definition = WorkflowBuilder("mls", "listing.created", registry).add_step("sync-mls").build()
    trigger = Trigger(
        event="listing.created", payload=LISTING, resource_type="listing", resource_id="l-1"
    )

    failed = await runner.start(definition, trigger)
    state["healthy"] = True
    retried = await runner.resume(failed.id)

    assert retried.status is RunStatus.COMPLETED
    assert (retried.resource_type, retried.resource_id) == ("listing", "l-1")
    assert [r.id for r in await runner.runs_for_resource("listing", "l-1")] == [
        failed.id,
        retried.id,
    ]


@pytest.mark.asyncio
async def test_resume_unknown_run_raises(runner):
    with pytest.raises(NotFound):
        await runner.resume("no-such-run")


@pytest.mark.asyncio
async def test_trigger_event_mismatch_is_rejected(runner, listing_skills):
    definition = new_listing_workflow(listing_skills)

    with pytest.raises(RunStateError):
        await runner.start(definition, Trigger(event="listing.sold"))


async def _interrupted_run(repository, definition):
    """Persist a run as a crashed process would have left it."""
    run = WorkflowRun(
        definition_name=definition.name,
        trigger_event=definition.trigger_event,
        status=RunStatus.RUNNING,
        current_stage=1,
        context={"trigger": LISTING, "validate-listing": {"valid": True}},
        step_states={"validate-listing": StepState(status=StepStatus.SUCCEEDED)},
    )
    await repository.create_run(run)
    return run


@pytest.mark.asyncio
async def test_recover_closes_orphaned_execution_and_reruns_step(
    runner, registry, calls, repository, execution_log
):
    async def enrich(input, context):
        calls.record("enrich-listing", input)
        return {"lat": 1.0}

    async def validate(input, context):
        calls.record("validate-listing", input)

    registry.register(make_skill("validate-listing", validate))
    registry.register(make_skill("enrich-listing", enrich))
    definition = (
        WorkflowBuilder("recoverable", "listing.created", registry)
        .add_step("validate-listing")
        .add_step("enrich-listing", input_mapper=select("validate-listing"))
        .build()
    )
    runner.register_definition(definition)
    run = await _interrupted_run(repository, definition)

    orphan = ExecutionRecord(
        skill_id="enrich-listing",
        correlation_id=run.id,
        step_key="enrich-listing",
        step_index=1,
    )
    orphan.transition(ExecutionStatus.RUNNING)
    await execution_log.append(orphan)

    recovered = await runner.recover()

    assert [r.id for r in recovered] == [run.id]
    assert recovered[0].status is RunStatus.COMPLETED
    assert recovered[0].context["enrich-listing"] == {"lat": 1.0}
    assert calls.count("validate-listing") == 0
    assert calls.count("enrich-listing") == 1

    closed = await execution_log.get(orphan.id)
    assert closed.status is ExecutionStatus.CANCELLED


@pytest.mark.asyncio
async def test_recover_adopts_execution_that_finished_before_crash(
    runner, registry, calls, repository, execution_log
):
    async def enrich(input, context):
        calls.record("enrich-listing", input)
        return {"lat": 2.0}

    registry.register(make_skill("validate-listing", lambda input, context: None))
    registry.register(make_skill("enrich-listing", enrich))
    definition = (
        WorkflowBuilder("adopting", "listing.created", registry)
        .add_step("validate-listing")
        .add_step("enrich-listing", input_mapper=select("validate-listing"))
        .build()
    )
    runner.register_definition(definition)
    run = await _interrupted_run(repository, definition)

    done = ExecutionRecord(
        skill_id="enrich-listing",
        correlation_id=run.id,
        step_key="enrich-listing",
        step_index=1,
        attempts=1,
    )
    done.transition(ExecutionStatus.RUNNING)
    done.output = {"lat": 9.0}
    done.transition(ExecutionStatus.SUCCEEDED)
    await execution_log.append(done)

    recovered = await runner.recover()

    assert recovered[0].status is RunStatus.COMPLETED
    assert recovered[0].context["enrich-listing"] == {"lat": 9.0}
    assert calls.count("enrich-listing") == 0


@pytest.mark.asyncio
async def test_cancel_active_run_stops_in_flight_handler(runner, registry, events):
    started = asyncio.Event()
    cancelled = asyncio.Event()
    run_ids = []

    async def long_render(input, context):
        run_ids.append(context.correlation_id)
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    registry.register(make_skill("render-video", long_render))
    definition = (
        WorkflowBuilder("video", "listing.created", registry)
        .add_step("render-video")
        .build()
    )

    task = asyncio.create_task(runner.start(definition, listing_trigger()))
    await started.wait()
    assert runner.is_active(run_ids[0])

    assert await runner.cancel(run_ids[0]) is True
    run = await task

    assert run.status is RunStatus.FAILED
    assert run.error.type == "RunCancelled"
    assert cancelled.is_set()
    assert not runner.is_active(run.id)


@pytest.mark.asyncio
async def test_cancel_paused_run_marks_it_failed(runner, listing_skills, repository):
    definition = (
        WorkflowBuilder("wait", "listing.created", listing_skills)
        .add_pause("approval")
        .add_step("publish-listing")
        .build()
    )
    run = await runner.start(definition, listing_trigger())
    assert run.status is RunStatus.PAUSED

    assert await runner.cancel(run.id) is True
    stored = await repository.get_run(run.id)
    assert stored.status is RunStatus.FAILED
    assert await runner.cancel(run.id) is False


@pytest.mark.asyncio
async def test_stubborn_optional_step_result_never_reaches_context(
    runner, listing_skills, executor, repository, calls
):
    finished = asyncio.Event()

    async def render_video(input, context):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            await asyncio.sleep(0.3)
            finished.set()
            return {"url": "late.mp4"}

    listing_skills.register(make_skill("render-video", render_video, timeout_ms=50))
    definition = (
        WorkflowBuilder("video-optional", "listing.created", listing_skills)
        .add_step("render-video", required=False)
        .add_step("publish-listing")
        .build()
    )

    run = await runner.start(definition, listing_trigger())
    assert run.status is RunStatus.COMPLETED
    assert executor.leaked_tasks == 1

    await asyncio.wait_for(finished.wait(), timeout=2)
    for _ in range(100):
        if executor.leaked_tasks == 0:
            break
        await asyncio.sleep(0.01)
    assert executor.leaked_tasks == 0

    stored = await repository.get_run(run.id)
    assert stored.status is RunStatus.COMPLETED
    assert "render-video" not in stored.context
    assert stored.step_states["render-video"].status is StepStatus.FAILED
    assert stored.step_states["render-video"].error.type == "SkillTimeoutError"
    assert calls.count("publish-listing") == 1


@pytest.mark.asyncio
async def test_lifecycle_hooks_cannot_change_or_fail_the_run(
    runner, listing_skills, calls, repository
):
    seen = []

    async def render_video(input, context):
        raise ValueError("codec missing")

    def tamper(output, context):
        seen.append(("validated", dict(output)))
        output["valid"] = False
        context["trigger"]["listing_id"] = "tampered"

    def overwrite(output, context):
        context["notify-agent"] = {"sent": False}

    def video_failed(error, context):
        seen.append(("video", error.type, error.step_key, sorted(context)))

    async def finished(run):
        seen.append(("finished", run.status, sorted(run.context)))
        run.context["extra"] = True
        raise RuntimeError("dashboard offline")

    listing_skills.register(
        make_skill("render-video", render_video, retry={"max_retries": 0})
    )
    definition = (
        WorkflowBuilder("hooked", "listing.created", listing_skills)
        .add_step("validate-listing", on_success=tamper)
        .add_step("render-video", required=False, on_error=video_failed)
        .add_step(
            "notify-agent", input_mapper=select("validate-listing"), on_success=overwrite
        )
        .on_complete(finished)
        .build()
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.COMPLETED
    assert seen == [
        ("validated", {"listing_id": "l-1", "valid": True}),
        ("video", "TransientError", "render-video", ["trigger", "validate-listing"]),
        (
            "finished",
            RunStatus.COMPLETED,
            ["notify-agent", "trigger", "validate-listing"],
        ),
    ]
    assert calls.inputs["notify-agent"] == [
        {"validate-listing": {"listing_id": "l-1", "valid": True}}
    ]

    stored = await repository.get_run(run.id)
    assert stored.context["trigger"]["listing_id"] == "l-1"
    assert stored.context["validate-listing"] == {"listing_id": "l-1", "valid": True}
    assert stored.context["notify-agent"] == {"sent": True}
    assert "extra" not in stored.context


@pytest.mark.asyncio
async def test_on_complete_runs_for_failed_runs(runner, registry):
    outcomes = []

    async def sync_mls(input, context):
        raise TransientError("MLS offline")

    registry.register(make_skill("sync-mls", sync_mls, retry={"max_retries": 0}))
    definition = (
        WorkflowBuilder("mls", "listing.created", registry)
        .add_step("sync-mls", on_error=lambda error, context: outcomes.append(error.type))
        .on_complete(lambda run: outcomes.append(run.status))
        .build()
    )

    run = await runner.start(definition, listing_trigger())

    assert run.status is RunStatus.FAILED
    assert outcomes == ["TransientError", RunStatus.FAILED]
