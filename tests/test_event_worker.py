from datetime import datetime, timedelta, timezone

import pytest

from agent_foundry.control_plane.db.db import FoundryDB
from agent_foundry.control_plane.models.records import EventStatus, RunKind, TaskEvent
from agent_foundry.control_plane.orchestration.coordinator import (
    AttemptPolicy,
    LifecycleCoordinator,
)
from agent_foundry.control_plane.orchestration.worker import EventWorker

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _coordinator(max_attempts: int = 2) -> tuple[LifecycleCoordinator, int]:
    db = FoundryDB()
    db.create_issue("ISS-1", "Demo")
    task = db.create_task("ISS-1", "Dev")
    coordinator = LifecycleCoordinator(
        db, policy=AttemptPolicy(max_attempts=max_attempts), lease_duration=timedelta(minutes=5)
    )
    return coordinator, task.id


def test_worker_runs_handler_and_retires_event() -> None:
    coordinator, task_id = _coordinator()
    event = coordinator.plan_event(task_id, "dev-agent")
    seen: list[int] = []

    def handle(task_event: TaskEvent) -> dict[str, object]:
        seen.append(task_event.id)
        return {"files_changed": 3}

    worker = EventWorker(
        coordinator=coordinator, worker_id="runner-1", handlers={"dev-agent": handle}
    )
    counts = worker.run_once(NOW)

    assert counts == {"claimed": 1, "succeeded": 1, "failed": 0, "retried": 0, "contended": 0}
    assert seen == [event.id]
    assert coordinator.ledger.get_status(event.id) is EventStatus.SUCCEEDED
    assert coordinator.queue.get_entry(event.id) is None
    runs = list(coordinator.runs.list_runs(event.id))
    assert [run.kind for run in runs] == [RunKind.START, RunKind.END]
    assert runs[0].data == {"agent_name": "dev-agent", "attempt_no": 0}
    assert runs[1].data == {"ok": True, "files_changed": 3}


def test_worker_processes_task_events_in_sequence_order() -> None:
    coordinator, task_id = _coordinator()
    first = coordinator.plan_event(task_id, "dev-agent")
    second = coordinator.plan_event(task_id, "dev-agent")
    order: list[int] = []
    worker = EventWorker(
        coordinator=coordinator,
        worker_id="runner-1",
        handlers={"dev-agent": lambda task_event: order.append(task_event.event_seq)},
    )

    assert worker.run_once(NOW)["succeeded"] == 1
    assert worker.run_once(NOW)["succeeded"] == 1

    assert order == [1, 2]
    assert coordinator.ledger.get_status(first.id) is EventStatus.SUCCEEDED
    assert coordinator.ledger.get_status(second.id) is EventStatus.SUCCEEDED


def test_handler_failure_is_retried_then_failed() -> None:
    coordinator, task_id = _coordinator(max_attempts=2)
    event = coordinator.plan_event(task_id, "dev-agent")

    def explode(task_event: TaskEvent) -> None:
        raise RuntimeError(f"attempt {task_event.attempt_no} failed")

    worker = EventWorker(
        coordinator=coordinator, worker_id="runner-1", handlers={"dev-agent": explode}
    )

    first = worker.run_once(NOW)
    assert first["retried"] == 1
    assert coordinator.ledger.get_event(event.id).attempt_no == 1

    second = worker.run_once(NOW)
    assert second["failed"] == 1
    assert coordinator.ledger.get_status(event.id) is EventStatus.FAILED
    assert coordinator.queue.get_entry(event.id) is None

    kinds = [run.kind for run in coordinator.runs.list_runs(event.id)]
    assert kinds == [RunKind.START, RunKind.ERROR, RunKind.END] * 2
    errors = [run for run in coordinator.runs.list_runs(event.id) if run.kind is RunKind.ERROR]
    assert errors[0].data == {"error": "RuntimeError", "message": "attempt 0 failed"}


def test_unknown_agent_fails_event() -> None:
    coordinator, task_id = _coordinator()
    event = coordinator.plan_event(task_id, "ghost-agent")
    worker = EventWorker(coordinator=coordinator, worker_id="runner-1", handlers={})

    counts = worker.run_once(NOW)

    assert counts["failed"] == 1
    assert coordinator.ledger.get_status(event.id) is EventStatus.FAILED
    last = coordinator.runs.latest_run(event.id)
    assert last is not None
    assert last.data == {"ok": False, "reason": "unknown_agent"}


def test_worker_skips_events_leased_elsewhere() -> None:
    coordinator, task_id = _coordinator()
    event = coordinator.plan_event(task_id, "dev-agent")
    coordinator.acquire(event.id, "someone-else", NOW)
    worker = EventWorker(
        coordinator=coordinator, worker_id="runner-1", handlers={"dev-agent": lambda e: None}
    )

    assert worker.run_once(NOW)["claimed"] == 0
    assert coordinator.ledger.get_status(event.id) is EventStatus.PENDING


def test_worker_requires_an_identity() -> None:
    coordinator, _ = _coordinator()

    with pytest.raises(ValueError):
        EventWorker(coordinator=coordinator, worker_id=" ", handlers={})


def test_handler_result_cannot_override_success_flag() -> None:
    coordinator, task_id = _coordinator()
    event = coordinator.plan_event(task_id, "dev-agent")
    worker = EventWorker(
        coordinator=coordinator,
        worker_id="runner-1",
        handlers={"dev-agent": lambda task_event: {"ok": False, "note": "partial"}},
    )

    assert worker.run_once(NOW)["succeeded"] == 1

    last = coordinator.runs.latest_run(event.id)
    assert last is not None
    assert last.data == {"ok": True, "note": "partial"}
    assert coordinator.ledger.get_status(event.id) is EventStatus.SUCCEEDED
