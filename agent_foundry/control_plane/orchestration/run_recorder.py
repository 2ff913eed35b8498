"""Append-only run history: start/end markers and free-form records per task event."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from typing import Any

from agent_foundry.control_plane.db.db import FoundryDB
from agent_foundry.control_plane.errors import ConstraintViolation, InvalidTransition
from agent_foundry.control_plane.models.records import RunKind, RunRecord, dump_document

logger = logging.getLogger(__name__)

_RUN_COLUMNS = "id, task_event_id, run_seq, worker_name, kind, data_json"


class RunRecorder:
    def __init__(self, db: FoundryDB, max_retries: int = 3) -> None:
        self.db = db
        self.max_retries = max(0, int(max_retries))

    def append_run(
        self,
        event_id: int,
        worker_id: str,
        kind: RunKind | str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Insert the next record for the event and return its row id.

        ``run_seq`` is ``max + 1`` computed inside the write transaction. A
        sequence conflict is retried up to ``max_retries`` times before it
        surfaces as ``ConstraintViolation``. A ``start`` from another worker
        while an attempt is still open first closes that attempt with an
        ``end`` record, so the new lease holder can always begin.
        """

        run_kind = RunKind(kind)
        worker = worker_id.strip()
        if not worker:
            raise ValueError("missing_worker_name")
        data_json = dump_document(payload)
        for attempt in range(self.max_retries + 1):
            try:
                return self._insert_next(int(event_id), worker, run_kind, data_json)
            except ConstraintViolation as exc:
                if "UNIQUE" not in exc.detail or attempt >= self.max_retries:
                    raise
                logger.warning(
                    "run_seq conflict event_id=%s attempt=%s; retrying", event_id, attempt + 1
                )
        raise ConstraintViolation("constraint_violation:run_seq", str(event_id))

    def _insert_next(self, event_id: int, worker: str, kind: RunKind, data_json: str) -> int:
        with self.db.transaction() as conn:
            exists = conn.execute("SELECT 1 FROM task_events WHERE id = ?", (event_id,)).fetchone()
            if exists is None:
                raise ConstraintViolation("constraint_violation:unknown_task_event", str(event_id))
            open_worker = self._open_attempt_worker(conn, event_id)
            if kind is RunKind.END and open_worker is None:
                raise InvalidTransition("invalid_transition:no_open_attempt", str(event_id))
            if kind is RunKind.START and open_worker == worker:
                raise InvalidTransition("invalid_transition:attempt_already_open", str(event_id))
            run_seq = int(
                conn.execute(
                    """
                    SELECT COALESCE(MAX(run_seq), 0) + 1
                    FROM task_event_runs
                    WHERE task_event_id = ?
                    """,
                    (event_id,),
                ).fetchone()[0]
            )
            if kind is RunKind.START and open_worker is not None:
                # Another worker took over after the lease lapsed; close the abandoned attempt.
                closing = {"ok": False, "reason": "lease_expired", "worker_name": open_worker}
                self._insert(conn, event_id, run_seq, worker, RunKind.END, dump_document(closing))
                logger.info(
                    "Abandoned attempt closed event_id=%s previous_worker=%s", event_id, open_worker
                )
                run_seq += 1
            run_id = self._insert(conn, event_id, run_seq, worker, kind, data_json)
        logger.debug(
            "Run appended event_id=%s run_seq=%s kind=%s worker=%s",
            event_id,
            run_seq,
            kind.value,
            worker,
        )
        return run_id

    @staticmethod
    def _insert(
        conn: sqlite3.Connection,
        event_id: int,
        run_seq: int,
        worker: str,
        kind: RunKind,
        data_json: str,
    ) -> int:
        cur = conn.execute(
            """
            INSERT INTO task_event_runs (task_event_id, run_seq, worker_name, kind, data_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (event_id, run_seq, worker, kind.value, data_json),
        )
        return int(cur.lastrowid)

    @staticmethod
    def _open_attempt_worker(conn: sqlite3.Connection, event_id: int) -> str | None:
        """Worker that wrote the unmatched ``start``, or ``None`` when no attempt is open."""

        row = conn.execute(
            """
            SELECT kind, worker_name FROM task_event_runs
            WHERE task_event_id = ? AND kind IN ('start', 'end')
            ORDER BY run_seq DESC
            LIMIT 1
            """,
            (event_id,),
        ).fetchone()
        if row is None or str(row["kind"]) != RunKind.START.value:
            return None
        return str(row["worker_name"])

    def has_open_attempt(self, event_id: int) -> bool:
        return self._open_attempt_worker(self.db.conn, int(event_id)) is not None

    def list_runs(self, event_id: int) -> Iterator[RunRecord]:
        """Stream the event's records by ``run_seq``; calling again re-reads the store."""

        cur = self.db.conn.execute(
            f"""
            SELECT {_RUN_COLUMNS} FROM task_event_runs
            WHERE task_event_id = ?
            ORDER BY run_seq ASC
            """,
            (int(event_id),),
        )
        for row in cur:
            yield RunRecord.from_row(row)

    def latest_run(self, event_id: int) -> RunRecord | None:
        row = self.db.conn.execute(
            f"""
            SELECT {_RUN_COLUMNS} FROM task_event_runs
            WHERE task_event_id = ?
            ORDER BY run_seq DESC
            LIMIT 1
            """,
            (int(event_id),),
        ).fetchone()
        return RunRecord.from_row(row) if row else None
