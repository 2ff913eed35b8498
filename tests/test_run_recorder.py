import pytest

from agent_foundry.control_plane.db.db import FoundryDB
from agent_foundry.control_plane.errors import ConstraintViolation, InvalidTransition
from agent_foundry.control_plane.models.records import RunKind
from agent_foundry.control_plane.orchestration.event_ledger import EventLedger
from agent_foundry.control_plane.orchestration.run_recorder import RunRecorder


def _recorder_with_event() -> tuple[RunRecorder, int]:
    db = FoundryDB()
    db.create_issue("ISS-1", "Demo")
    task = db.create_task("ISS-1", "Dev")
    event_id = EventLedger(db).create_event(task.id, "dev-agent", 1, 0)
    return RunRecorder(db), event_id


def test_run_seq_starts_at_one_and_is_gap_free() -> None:
    recorder, event_id = _recorder_with_event()

    recorder.append_run(event_id, "runner-1", RunKind.START)
    recorder.append_run(event_id, "runner-1", RunKind.HEARTBEAT, {"progress": 0.5})
    recorder.append_run(event_id, "runner-1", RunKind.END, {"ok": True})
    recorder.append_run(event_id, "runner-2", "start")

    runs = list(recorder.list_runs(event_id))
    assert [run.run_seq for run in runs] == [1, 2, 3, 4]
    assert [run.kind for run in runs] == [
        RunKind.START,
        RunKind.HEARTBEAT,
        RunKind.END,
        RunKind.START,
    ]
    assert runs[2].data == {"ok": True}
    assert runs[3].worker_name == "runner-2"


def test_sequences_are_scoped_per_event() -> None:
    recorder, event_id = _recorder_with_event()
    task_id = EventLedger(recorder.db).get_event(event_id).task_id
    other_event = EventLedger(recorder.db).create_event(task_id, "dev-agent", 2, 0)

    recorder.append_run(event_id, "runner-1", RunKind.START)
    recorder.append_run(other_event, "runner-1", RunKind.START)

    assert [run.run_seq for run in recorder.list_runs(other_event)] == [1]


def test_end_requires_an_open_attempt() -> None:
    recorder, event_id = _recorder_with_event()

    with pytest.raises(InvalidTransition):
        recorder.append_run(event_id, "runner-1", RunKind.END, {"ok": True})

    recorder.append_run(event_id, "runner-1", RunKind.START)
    recorder.append_run(event_id, "runner-1", RunKind.END, {"ok": True})
    with pytest.raises(InvalidTransition):
        recorder.append_run(event_id, "runner-1", RunKind.END, {"ok": True})


def test_same_worker_cannot_start_twice_while_attempt_is_open() -> None:
    recorder, event_id = _recorder_with_event()
    recorder.append_run(event_id, "runner-1", RunKind.START)

    with pytest.raises(InvalidTransition):
        recorder.append_run(event_id, "runner-1", RunKind.START)

    assert recorder.has_open_attempt(event_id) is True
    recorder.append_run(event_id, "runner-1", RunKind.ERROR, {"message": "boom"})
    assert recorder.has_open_attempt(event_id) is True


def test_start_by_new_worker_closes_abandoned_attempt() -> None:
    recorder, event_id = _recorder_with_event()
    recorder.append_run(event_id, "runner-1", RunKind.START)

    recorder.append_run(event_id, "runner-2", RunKind.START, {"attempt_no": 1})

    runs = list(recorder.list_runs(event_id))
    assert [(run.run_seq, run.kind, run.worker_name) for run in runs] == [
        (1, RunKind.START, "runner-1"),
        (2, RunKind.END, "runner-2"),
        (3, RunKind.START, "runner-2"),
    ]
    assert runs[1].data == {"ok": False, "reason": "lease_expired", "worker_name": "runner-1"}
    assert runs[2].data == {"attempt_no": 1}
    recorder.append_run(event_id, "runner-2", RunKind.END, {"ok": True})
    assert recorder.has_open_attempt(event_id) is False


def test_unknown_event_is_constraint_violation() -> None:
    recorder, _ = _recorder_with_event()

    with pytest.raises(ConstraintViolation):
        recorder.append_run(777, "runner-1", RunKind.START)


def test_duplicate_run_seq_is_rejected_by_the_store() -> None:
    recorder, event_id = _recorder_with_event()
    recorder.append_run(event_id, "runner-1", RunKind.START)

    with pytest.raises(ConstraintViolation):
        with recorder.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO task_event_runs (task_event_id, run_seq, worker_name, kind, data_json)
                VALUES (?, 1, 'runner-2', 'start', '{}')
                """,
                (event_id,),
            )


def test_list_runs_is_restartable_and_sees_new_appends() -> None:
    recorder, event_id = _recorder_with_event()
    recorder.append_run(event_id, "runner-1", RunKind.START)

    first_pass = [run.run_seq for run in recorder.list_runs(event_id)]
    recorder.append_run(event_id, "runner-1", RunKind.END, {"ok": False})
    second_pass = [run.run_seq for run in recorder.list_runs(event_id)]

    assert first_pass == [1]
    assert second_pass == [1, 2]
    latest = recorder.latest_run(event_id)
    assert latest is not None
    assert latest.kind is RunKind.END


def test_payload_must_be_an_object_and_kind_known() -> None:
    recorder, event_id = _recorder_with_event()

    with pytest.raises(ValueError):
        recorder.append_run(event_id, "runner-1", RunKind.START, ["not", "an", "object"])
    with pytest.raises(ValueError):
        recorder.append_run(event_id, "runner-1", "teleport")
    assert recorder.latest_run(event_id) is None
