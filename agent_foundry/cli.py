"""agent-foundry CLI."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, NoReturn

import typer

from agent_foundry.control_plane.db.db import FoundryDB
from agent_foundry.control_plane.errors import FoundryError
from agent_foundry.control_plane.models.records import RunKind
from agent_foundry.control_plane.orchestration.coordinator import LifecycleCoordinator
from agent_foundry.shared.clock import utc_now
from agent_foundry.shared.logging_setup import setup_logging
from agent_foundry.shared.settings import FoundrySettings, get_settings

app = typer.Typer(
    add_completion=False, help="agent-foundry: task-event leasing and run tracking"
)


@dataclass(frozen=True)
class CliState:
    """Per-invocation options shared with subcommands through ``ctx.obj``."""

    settings: FoundrySettings
    db_path: str = ""


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _open_db(ctx: typer.Context) -> FoundryDB:
    state = _state(ctx)
    return FoundryDB(state.db_path or state.settings.sqlite_path)


def _coordinator(ctx: typer.Context) -> LifecycleCoordinator:
    return LifecycleCoordinator.from_settings(_open_db(ctx), _state(ctx).settings)


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def _fail(exc: FoundryError) -> NoReturn:
    typer.echo(json.dumps({"error": exc.code, "detail": exc.detail}), err=True)
    raise typer.Exit(code=1) from exc


def _parse_document(raw: str, option: str) -> dict[str, Any]:
    try:
        value = json.loads(raw or "{}")
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{option} must be a JSON object") from exc
    if not isinstance(value, dict):
        raise typer.BadParameter(f"{option} must be a JSON object")
    return value


@app.callback()
def main(
    ctx: typer.Context,
    db: str = typer.Option("", "--db", help="SQLite path or file: URI (overrides settings)."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    settings = get_settings()
    ctx.obj = CliState(settings=settings, db_path=db)
    setup_logging(
        log_dir=settings.log_dir,
        console_level=logging.DEBUG if verbose else logging.WARNING,
    )


@app.command()
def init_db(ctx: typer.Context) -> None:
    """Create the schema if it does not exist."""
    database = _open_db(ctx)
    _emit({"sqlite_path": database.db_path})


@app.command()
def create_issue(
    ctx: typer.Context,
    issue_id: str,
    name: str = typer.Option(..., "--name"),
    context: str = typer.Option("{}", "--context"),
) -> None:
    """Create an issue (an inert container for tasks)."""
    try:
        issue = _open_db(ctx).create_issue(issue_id, name, _parse_document(context, "--context"))
    except FoundryError as exc:
        _fail(exc)
    _emit(issue.model_dump(mode="json"))


@app.command()
def create_task(
    ctx: typer.Context, issue_id: str, name: str = typer.Option(..., "--name")
) -> None:
    """Create a task under an issue."""
    try:
        task = _open_db(ctx).create_task(issue_id, name)
    except FoundryError as exc:
        _fail(exc)
    _emit(task.model_dump(mode="json"))


@app.command()
def plan_event(
    ctx: typer.Context,
    task_id: int,
    agent: str = typer.Option(..., "--agent"),
    seq: int = typer.Option(None, "--seq", help="Explicit event_seq; defaults to the next one."),
    attempt: int = typer.Option(0, "--attempt"),
) -> None:
    """Create a task event and enqueue it."""
    try:
        event = _coordinator(ctx).plan_event(task_id, agent, event_seq=seq, attempt_no=attempt)
    except FoundryError as exc:
        _fail(exc)
    _emit(event.model_dump(mode="json"))


@app.command()
def lease(
    ctx: typer.Context,
    event_id: int,
    owner: str = typer.Option(..., "--owner"),
    seconds: int = typer.Option(0, "--seconds", help="Lease length; defaults to settings."),
) -> None:
    """Try to lease an event. Exits with code 3 when another owner holds it."""
    coordinator = _coordinator(ctx)
    duration = seconds if seconds > 0 else coordinator.lease_duration
    acquired = coordinator.acquire(event_id, owner, utc_now(), duration)
    _emit({"event_id": event_id, "owner": owner, "acquired": acquired})
    if not acquired:
        raise typer.Exit(code=3)


@app.command()
def record_run(
    ctx: typer.Context,
    event_id: int,
    owner: str = typer.Option(..., "--owner"),
    kind: RunKind = typer.Option(..., "--kind"),
    payload: str = typer.Option("{}", "--payload"),
    worker: str = typer.Option("", "--worker", help="Worker name; defaults to the lease owner."),
) -> None:
    """Append a run record for an event leased by --owner."""
    coordinator = _coordinator(ctx)
    document = _parse_document(payload, "--payload")
    recorders = {
        RunKind.START: coordinator.start_attempt,
        RunKind.END: coordinator.finish_attempt,
        RunKind.HEARTBEAT: coordinator.heartbeat,
        RunKind.ERROR: coordinator.record_error,
    }
    try:
        run_id = recorders[kind](
            event_id, owner, utc_now(), worker_id=worker or None, payload=document
        )
    except FoundryError as exc:
        _fail(exc)
    _emit({"event_id": event_id, "run_id": run_id, "kind": kind.value})


@app.command()
def complete(
    ctx: typer.Context,
    event_id: int,
    outcome: str = typer.Option("succeeded", "--outcome"),
) -> None:
    """Mark an event succeeded/failed and retire its queue entry."""
    try:
        event = _coordinator(ctx).complete_event(event_id, outcome, utc_now())
    except FoundryError as exc:
        _fail(exc)
    except ValueError as exc:
        raise typer.BadParameter(f"unknown outcome: {outcome}") from exc
    _emit(event.model_dump(mode="json"))


@app.command()
def reclaim(ctx: typer.Context, actor: str = typer.Option("reclaimer", "--actor")) -> None:
    """Release expired leases, sweep entries of finished events, and apply the attempt policy."""
    try:
        counts = _coordinator(ctx).reclaim_expired(utc_now(), actor=actor)
    except FoundryError as exc:
        _fail(exc)
    _emit(counts)


@app.command()
def reconcile(ctx: typer.Context) -> None:
    """Remove queue entries whose event is already terminal."""
    try:
        swept = _coordinator(ctx).reconcile()
    except FoundryError as exc:
        _fail(exc)
    _emit({"swept": swept})


@app.command()
def show_event(ctx: typer.Context, event_id: int) -> None:
    """Print an event with its queue entry and run history."""
    try:
        snapshot = _coordinator(ctx).describe(event_id)
    except FoundryError as exc:
        _fail(exc)
    _emit(snapshot)


if __name__ == "__main__":
    app()
