"""Event ledger: durable task events, their status, and attempt counters."""

from __future__ import annotations

import logging
from datetime import datetime

from agent_foundry.control_plane.db.db import FoundryDB
from agent_foundry.control_plane.errors import InvalidTransition, NotFound
from agent_foundry.control_plane.models.records import EventStatus, TaskEvent
from agent_foundry.shared.clock import to_iso

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = "id, task_id, agent_name, event_seq, attempt_no, status, finished_at"


class EventLedger:
    def __init__(self, db: FoundryDB) -> None:
        self.db = db

    def create_event(
        self, task_id: int, agent_name: str, event_seq: int, attempt_no: int = 0
    ) -> int:
        """Insert a pending event; duplicate ``(task_id, event_seq)`` or unknown task fail."""

        if not agent_name.strip():
            raise ValueError("missing_agent_name")
        if int(event_seq) < 0 or int(attempt_no) < 0:
            raise ValueError("sequence_numbers_must_be_non_negative")
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO task_events (task_id, agent_name, event_seq, attempt_no)
                VALUES (?, ?, ?, ?)
                """,
                (int(task_id), agent_name.strip(), int(event_seq), int(attempt_no)),
            )
            event_id = int(cur.lastrowid)
        logger.debug(
            "Event created id=%s task_id=%s event_seq=%s attempt_no=%s",
            event_id,
            task_id,
            event_seq,
            attempt_no,
        )
        return event_id

    def next_event_seq(self, task_id: int) -> int:
        row = self.db.conn.execute(
            "SELECT COALESCE(MAX(event_seq), 0) + 1 FROM task_events WHERE task_id = ?",
            (int(task_id),),
        ).fetchone()
        return int(row[0])

    def append_event(self, task_id: int, agent_name: str, attempt_no: int = 0) -> int:
        """Create an event with the next ``event_seq`` for the task in one write transaction."""

        with self.db.transaction():
            return self.create_event(
                task_id, agent_name, self.next_event_seq(task_id), attempt_no=attempt_no
            )

    def mark_terminal(
        self, event_id: int, status: EventStatus | str, completed_at: datetime
    ) -> None:
        terminal = EventStatus(status)
        if not terminal.is_terminal:
            raise InvalidTransition("invalid_transition:not_terminal", terminal.value)
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE task_events
                SET status = ?, finished_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (terminal.value, to_iso(completed_at), int(event_id)),
            )
            if cur.rowcount == 0:
                current = self.get_status(event_id)
                raise InvalidTransition(
                    "invalid_transition:terminal_state",
                    f"event {event_id} is already {current.value}",
                )
        logger.debug("Event terminal id=%s status=%s", event_id, terminal.value)

    def get_status(self, event_id: int) -> EventStatus:
        row = self.db.conn.execute(
            "SELECT status FROM task_events WHERE id = ?", (int(event_id),)
        ).fetchone()
        if row is None:
            raise NotFound("not_found:task_event", str(event_id))
        return EventStatus(str(row["status"]))

    def get_event(self, event_id: int) -> TaskEvent:
        row = self.db.conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM task_events WHERE id = ?", (int(event_id),)
        ).fetchone()
        if row is None:
            raise NotFound("not_found:task_event", str(event_id))
        return TaskEvent.from_row(row)

    def list_events(
        self, task_id: int, status: EventStatus | str | None = None
    ) -> list[TaskEvent]:
        sql = f"SELECT {_EVENT_COLUMNS} FROM task_events WHERE task_id = ?"
        args: list[object] = [int(task_id)]
        if status is not None:
            sql += " AND status = ?"
            args.append(EventStatus(status).value)
        rows = self.db.conn.execute(sql + " ORDER BY event_seq ASC", args).fetchall()
        return [TaskEvent.from_row(row) for row in rows]

    def increment_attempt(self, event_id: int) -> int:
        """Bump ``attempt_no`` on a pending event and return the new value."""

        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE task_events SET attempt_no = attempt_no + 1
                WHERE id = ? AND status = 'pending'
                """,
                (int(event_id),),
            )
            if cur.rowcount == 0:
                current = self.get_status(event_id)
                raise InvalidTransition(
                    "invalid_transition:terminal_state",
                    f"event {event_id} is already {current.value}",
                )
            row = conn.execute(
                "SELECT attempt_no FROM task_events WHERE id = ?", (int(event_id),)
            ).fetchone()
        attempt_no = int(row["attempt_no"])
        logger.debug("Event attempt bumped id=%s attempt_no=%s", event_id, attempt_no)
        return attempt_no
