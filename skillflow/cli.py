"""Command line interface for skillflow."""

from __future__ import annotations

import asyncio
import importlib
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer

from .composer import load_workflow_file
from .config import configure_logging, load_config
from .contracts import RunStatus, TriggerSource, WorkflowRun
from .engine import Engine
from .errors import SkillflowError
from .log import ExecutionLog
from .persistence import get_repository

app = typer.Typer(help="CLI for skillflow skills and workflows")

# Command groups
skill_app = typer.Typer(help="Commands for inspecting skills")
workflow_app = typer.Typer(help="Commands for workflow definitions")
run_app = typer.Typer(help="Commands for workflow runs")
log_app = typer.Typer(help="Commands for the execution log")

app.add_typer(skill_app, name="skill")
app.add_typer(workflow_app, name="workflow")
app.add_typer(run_app, name="run")
app.add_typer(log_app, name="log")

ENGINE_HELP = "Engine to use, as 'module:attribute' (an Engine or a factory returning one)"


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """skillflow CLI entry point."""
    configure_logging(log_level or load_config().log_level)


def load_engine(spec: Optional[str]) -> Engine:
    """Import ``module:attribute`` and return the engine it names."""
    if not spec:
        return Engine.from_config()
    module_name, _, attr = spec.partition(":")
    if not attr:
        raise typer.BadParameter("expected 'module:attribute'", param_hint="--engine")
    try:
        target: Any = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise typer.BadParameter(f"cannot load {spec}: {e}", param_hint="--engine")
    if not isinstance(target, Engine) and callable(target):
        target = target()
    if not isinstance(target, Engine):
        raise typer.BadParameter(f"{spec} is not an Engine", param_hint="--engine")
    return target


def _parse_json(value: Optional[str], option: str) -> Optional[dict]:
    if value is None:
        return None
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"invalid JSON: {e}", param_hint=option)
    if not isinstance(data, dict):
        raise typer.BadParameter("expected a JSON object", param_hint=option)
    return data


def _echo_run(run: WorkflowRun) -> None:
    typer.echo(f"{run.id}\t{run.definition_name}\t{run.status.value}")


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# skill
@skill_app.command("list")
def skill_list(
    category: Optional[str] = None,
    inactive: bool = typer.Option(False, help="Include inactive skills"),
    engine: Optional[str] = typer.Option(None, help=ENGINE_HELP),
) -> None:
    """
    List registered skills.

    Example:
        skillflow skill list --category generate --engine app.engine:engine
        # Output: generate-description    generate    1.0.0    Generate Description
    """
    eng = load_engine(engine)
    skills = eng.registry.list(category=category, active=None if inactive else True)
    if not skills:
        typer.echo("No skills registered")
        return
    for s in skills:
        typer.echo(f"{s.id}\t{s.category.value}\t{s.version}\t{s.display_name}")


# ----------------------------------------------------------------------
# workflow
@workflow_app.command("validate")
def workflow_validate(
    path: Path,
    engine: Optional[str] = typer.Option(None, help=ENGINE_HELP),
) -> None:
    """Validate a YAML workflow definition against the engine's skills."""
    eng = load_engine(engine)
    try:
        definition = load_workflow_file(path, eng.registry)
    except SkillflowError as e:
        _fail(str(e))
    stages = definition.stages()
    typer.echo(
        f"Workflow {definition.name} is valid: {len(definition.steps)} steps "
        f"in {len(stages)} stages, trigger '{definition.trigger_event}'"
    )


@workflow_app.command("list")
def workflow_list(engine: Optional[str] = typer.Option(None, help=ENGINE_HELP)) -> None:
    """List workflow definitions registered on the engine."""
    eng = load_engine(engine)
    definitions = eng.dispatcher.definitions
    if not definitions:
        typer.echo("No workflows registered")
        return
    for d in definitions:
        typer.echo(f"{d.name}\t{d.trigger_event}\t{len(d.steps)} steps")


@workflow_app.command("trigger")
def workflow_trigger(
    event: str,
    payload: Optional[str] = typer.Option(None, help="Trigger payload as a JSON object"),
    source: TriggerSource = typer.Option(TriggerSource.MANUAL),
    resource_type: Optional[str] = typer.Option(None, help="Linked entity kind, e.g. listing"),
    resource_id: Optional[str] = typer.Option(None, help="Linked entity id"),
    engine: Optional[str] = typer.Option(None, help=ENGINE_HELP),
) -> None:
    """
    Fire a trigger event and run every workflow listening for it.

    Example:
        skillflow workflow trigger listing.created --payload '{"listing_id": "l-1"}'
        # Output: 5f0c...    new-listing    completed
    """
    data = _parse_json(payload, "--payload")
    eng = load_engine(engine)
    try:
        runs = asyncio.run(
            eng.trigger(
                event,
                data,
                source,
                resource_type=resource_type,
                resource_id=resource_id,
            )
        )
    except SkillflowError as e:
        _fail(str(e))
    if not runs:
        typer.echo(f"No workflow listens for '{event}'")
        return
    for run in runs:
        _echo_run(run)


# ----------------------------------------------------------------------
# run
@run_app.command("list")
def run_list(
    status: Optional[RunStatus] = None,
    workflow: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
) -> None:
    """List persisted runs, optionally filtered by status, workflow or linked entity."""
    repo = get_repository()
    runs = asyncio.run(
        repo.list_runs(
            status=status,
            definition_name=workflow,
            resource_type=resource_type,
            resource_id=resource_id,
        )
    )
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        _echo_run(run)


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show a run's status, step resolutions and error."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        _fail("Run not found")
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Workflow: {run.definition_name} (trigger {run.trigger_event})")
    if run.resource_type or run.resource_id:
        typer.echo(f"Resource: {run.resource_type} {run.resource_id}")
    if run.resumed_from:
        typer.echo(f"Resumed from: {run.resumed_from}")
    for key, state in run.step_states.items():
        line = f"- {key}: {state.status.value}"
        if state.attempts:
            line += f" after {state.attempts} attempt(s)"
        typer.echo(line)
    if run.error:
        typer.echo(f"Error at {run.error.step_key}: {run.error.type}: {run.error.message}")


@run_app.command("resume")
def run_resume(
    run_id: str,
    approval: Optional[str] = typer.Option(None, help="Approval data as a JSON object"),
    engine: Optional[str] = typer.Option(None, help=ENGINE_HELP),
) -> None:
    """Resume a paused, interrupted or failed run."""
    data = _parse_json(approval, "--approval")
    eng = load_engine(engine)
    try:
        run = asyncio.run(eng.resume(run_id, data))
    except SkillflowError as e:
        _fail(str(e))
    _echo_run(run)


@run_app.command("cancel")
def run_cancel(
    run_id: str,
    engine: Optional[str] = typer.Option(None, help=ENGINE_HELP),
) -> None:
    """Mark a run that is not finished as failed."""
    eng = load_engine(engine)
    try:
        cancelled = asyncio.run(eng.cancel(run_id))
    except SkillflowError as e:
        _fail(str(e))
    typer.echo("Run cancelled" if cancelled else "Run already finished")


@run_app.command("recover")
def run_recover(engine: Optional[str] = typer.Option(None, help=ENGINE_HELP)) -> None:
    """Resume every run left running by a stopped process."""
    eng = load_engine(engine)
    runs = asyncio.run(eng.recover())
    if not runs:
        typer.echo("No runs to recover")
        return
    for run in runs:
        _echo_run(run)


# ----------------------------------------------------------------------
# log
@log_app.command("query")
def log_query(
    skill: Optional[str] = None,
    status: Optional[str] = None,
    run: Optional[str] = typer.Option(None, help="Correlation (run) id"),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> None:
    """Query execution records from the log."""
    log = ExecutionLog(get_repository())
    records = asyncio.run(
        log.query(
            skill_id=skill,
            status=status,
            since=since,
            until=until,
            correlation_id=run,
            limit=limit,
        )
    )
    if not records:
        typer.echo("No executions found")
        return
    for r in records:
        duration = f"{r.duration_ms:.0f}ms" if r.duration_ms is not None else "-"
        typer.echo(
            f"{r.id}\t{r.skill_id}\t{r.status.value}\t{r.attempts}\t{duration}"
        )


@app.command("stats")
def stats(skill: Optional[str] = None) -> None:
    """Show per-skill success rates and latency."""
    log = ExecutionLog(get_repository())
    summaries = asyncio.run(log.skill_stats(skill))
    if not summaries:
        typer.echo("No executions found")
        return
    for s in summaries:
        typer.echo(
            f"{s.skill_id}\t{s.total_executions} runs\t"
            f"{s.success_rate * 100:.1f}% ok\t"
            f"avg {s.avg_duration_ms:.0f}ms\tp95 {s.p95_duration_ms:.0f}ms"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
