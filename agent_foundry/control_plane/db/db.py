"""SQLite persistence for issues, tasks, task events, the lease queue, and run history."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from agent_foundry.control_plane.errors import ConstraintViolation, NotFound
from agent_foundry.control_plane.models.records import Issue, Task, dump_document

logger = logging.getLogger(__name__)


class FoundryDB:
    """Small SQLite wrapper owning one connection and the task-event schema.

    Each worker (thread or process) opens its own ``FoundryDB``; correctness
    across workers comes from constraints and conditional writes, never from
    sharing a connection.
    """

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        uri = self.db_path.startswith("file:")
        if self.db_path != ":memory:" and not uri:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, uri=uri
        )
        self.conn.row_factory = sqlite3.Row
        self._configure_connection()
        self._init_schema()
        logger.debug("FoundryDB ready path=%s", self.db_path)

    def _configure_connection(self) -> None:
        """Apply local-first SQLite settings for durability and concurrent writers."""

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA temp_store=MEMORY")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS issues (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                context_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                issue_id TEXT NOT NULL,
                name TEXT NOT NULL,
                FOREIGN KEY(issue_id) REFERENCES issues(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS task_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL,
                agent_name TEXT NOT NULL,
                event_seq INTEGER NOT NULL CHECK (event_seq >= 0),
                attempt_no INTEGER NOT NULL DEFAULT 0 CHECK (attempt_no >= 0),
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'succeeded', 'failed')),
                finished_at TEXT,
                UNIQUE(task_id, event_seq),
                FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS task_event_queue (
                task_event_id INTEGER PRIMARY KEY,
                lease_owner TEXT,
                lease_expires TEXT,
                CHECK ((lease_owner IS NULL) = (lease_expires IS NULL)),
                FOREIGN KEY(task_event_id) REFERENCES task_events(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS task_event_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_event_id INTEGER NOT NULL,
                run_seq INTEGER NOT NULL CHECK (run_seq >= 1),
                worker_name TEXT NOT NULL,
                kind TEXT NOT NULL,
                data_json TEXT NOT NULL DEFAULT '{}',
                UNIQUE(task_event_id, run_seq),
                FOREIGN KEY(task_event_id) REFERENCES task_events(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_task_events_task_status
                ON task_events(task_id, status);
            CREATE INDEX IF NOT EXISTS idx_task_event_queue_expires
                ON task_event_queue(lease_expires);
            """
        )

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside one ``BEGIN IMMEDIATE`` write transaction.

        Nested use joins the outer transaction. Integrity errors are rolled back
        and surface as ``ConstraintViolation``.
        """

        if self.conn.in_transaction:
            yield self.conn
            return
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except sqlite3.IntegrityError as exc:
            self.conn.rollback()
            raise ConstraintViolation(detail=str(exc)) from exc
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    # Issues and tasks are inert containers: created and read, never scheduled.

    def create_issue(
        self, issue_id: str, name: str, context: dict[str, Any] | None = None
    ) -> Issue:
        issue = Issue(id=issue_id, name=name, context=context or {})
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO issues (id, name, context_json) VALUES (?, ?, ?)",
                (issue.id, issue.name, dump_document(issue.context)),
            )
        return issue

    def get_issue(self, issue_id: str) -> Issue:
        row = self.conn.execute(
            "SELECT id, name, context_json FROM issues WHERE id = ?", (issue_id,)
        ).fetchone()
        if row is None:
            raise NotFound("not_found:issue", issue_id)
        return Issue.from_row(row)

    def delete_issue(self, issue_id: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM issues WHERE id = ?", (issue_id,))

    def create_task(self, issue_id: str, name: str) -> Task:
        if not name.strip():
            raise ValueError("missing_task_name")
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO tasks (issue_id, name) VALUES (?, ?)", (issue_id, name.strip())
            )
            task_id = int(cur.lastrowid)
        return Task(id=task_id, issue_id=issue_id, name=name.strip())

    def get_task(self, task_id: int) -> Task:
        row = self.conn.execute(
            "SELECT id, issue_id, name FROM tasks WHERE id = ?", (int(task_id),)
        ).fetchone()
        if row is None:
            raise NotFound("not_found:task", str(task_id))
        return Task.from_row(row)

    def list_tasks(self, issue_id: str) -> list[Task]:
        rows = self.conn.execute(
            "SELECT id, issue_id, name FROM tasks WHERE issue_id = ? ORDER BY id ASC",
            (issue_id,),
        ).fetchall()
        return [Task.from_row(row) for row in rows]
