"""Tests for record state transitions and backoff computation."""

import pytest

from skillflow.contracts import (
    ExecutionRecord,
    ExecutionStatus,
    RunStatus,
    WorkflowEvent,
    WorkflowRun,
)
from skillflow.errors import (
    ErrorInfo,
    InvalidTransition,
    SkillTimeoutError,
    TransientError,
    error_info_from_exception,
)
from skillflow.utils.retry import compute_backoff


def test_record_moves_forward_and_sets_timestamps() -> None:
    record = ExecutionRecord(skill_id="geocode")
    assert record.status is ExecutionStatus.PENDING

    record.transition(ExecutionStatus.RUNNING)
    record.transition(ExecutionStatus.RUNNING)
    assert record.started_at is not None

    record.transition(ExecutionStatus.SUCCEEDED)
    assert record.completed_at is not None
    assert record.duration_ms >= 0
    assert record.succeeded


@pytest.mark.parametrize(
    "status",
    [ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.FAILED],
)
def test_terminal_record_cannot_change(status) -> None:
    record = ExecutionRecord(skill_id="geocode")
    record.transition(ExecutionStatus.TIMED_OUT)

    with pytest.raises(InvalidTransition):
        record.transition(status)


def test_record_cannot_move_back_to_pending() -> None:
    record = ExecutionRecord(skill_id="geocode")
    record.transition(ExecutionStatus.RUNNING)

    with pytest.raises(InvalidTransition):
        record.transition(ExecutionStatus.PENDING)


def test_run_status_terminality() -> None:
    assert RunStatus.COMPLETED.is_terminal
    assert RunStatus.FAILED.is_terminal
    assert not RunStatus.PAUSED.is_terminal
    assert not RunStatus.RUNNING.is_terminal


def test_run_exposes_trigger_payload_and_failing_step() -> None:
    run = WorkflowRun(
        definition_name="new-listing",
        trigger_event="listing.created",
        context={"trigger": {"listing_id": "l-1"}},
        error=ErrorInfo(type="TransientError", message="down", step_key="sync-mls"),
    )

    assert run.trigger_payload == {"listing_id": "l-1"}
    assert run.failing_step == "sync-mls"
    assert not run.is_resolved("sync-mls")


def test_event_json_round_trip() -> None:
    event = WorkflowEvent(
        type="workflow.completed",
        run_id="r-1",
        definition_name="new-listing",
        payload={"context_keys": ["trigger"]},
    )
    assert WorkflowEvent.from_json(event.to_json()) == event


def test_error_info_from_skill_error_fills_context() -> None:
    info = error_info_from_exception(
        SkillTimeoutError("too slow"),
        skill_id="render-video",
        attempt=2,
        step_index=4,
        step_key="render-video",
    )
    assert info.type == "SkillTimeoutError"
    assert info.skill_id == "render-video"
    assert info.attempt == 2
    assert info.step_index == 4
    assert info.step_key == "render-video"

    plain = error_info_from_exception(KeyError("agent_email"), skill_id="notify")
    assert plain.type == "KeyError"
    assert plain.skill_id == "notify"


def test_skill_error_str_includes_context() -> None:
    error = TransientError("503", skill_id="sync-mls", attempt=2, rate_limited=True)
    assert str(error) == "503 skill=sync-mls attempt=2"
    assert error.retryable
    assert error.rate_limited


def test_backoff_doubles_per_attempt_without_jitter() -> None:
    assert compute_backoff(1, base_ms=1000, jitter=0) == pytest.approx(1.0)
    assert compute_backoff(2, base_ms=1000, jitter=0) == pytest.approx(2.0)
    assert compute_backoff(3, base_ms=1000, jitter=0) == pytest.approx(4.0)


def test_backoff_jitter_and_cap() -> None:
    for _ in range(50):
        delay = compute_backoff(2, base_ms=1000, jitter=0.25)
        assert 2.0 <= delay <= 2.5
    assert compute_backoff(10, base_ms=1000, jitter=0) == pytest.approx(30.0)


def test_rate_limited_backoff_is_tripled() -> None:
    assert compute_backoff(1, base_ms=1000, jitter=0, multiplier=3.0) == pytest.approx(3.0)
    assert compute_backoff(5, base_ms=1000, jitter=0, multiplier=3.0) == pytest.approx(30.0)
