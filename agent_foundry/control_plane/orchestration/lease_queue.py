"""Durable lease queue granting time-bounded exclusive ownership of pending events."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from agent_foundry.control_plane.db.db import FoundryDB
from agent_foundry.control_plane.models.records import QueueEntry
from agent_foundry.shared.clock import as_duration, to_iso

logger = logging.getLogger(__name__)

# An entry is blocked while an earlier pending event of the same task is still queued.
_NO_EARLIER_QUEUED_EVENT = """
    NOT EXISTS (
        SELECT 1
        FROM task_event_queue AS prior_q
        JOIN task_events AS prior ON prior.id = prior_q.task_event_id
        WHERE prior.task_id = target.task_id
          AND prior.event_seq < target.event_seq
          AND prior.status = 'pending'
    )
"""


class LeaseQueue:
    def __init__(self, db: FoundryDB) -> None:
        self.db = db

    def enqueue(self, event_id: int) -> None:
        """Add a live entry; a second entry for the same event is a ``ConstraintViolation``."""

        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO task_event_queue (task_event_id) VALUES (?)", (int(event_id),)
            )
        logger.debug("Event enqueued id=%s", event_id)

    def get_entry(self, event_id: int) -> QueueEntry | None:
        row = self.db.conn.execute(
            """
            SELECT task_event_id, lease_owner, lease_expires
            FROM task_event_queue
            WHERE task_event_id = ?
            """,
            (int(event_id),),
        ).fetchone()
        return QueueEntry.from_row(row) if row else None

    def acquire_lease(
        self,
        event_id: int,
        owner_id: str,
        lease_duration: timedelta | int | float,
        now: datetime,
    ) -> bool:
        """Compare-and-set on ``lease_owner IS NULL``; exactly one racing caller wins.

        Losing the race is not an error: the caller gets ``False`` and nothing changes.
        """

        owner = owner_id.strip()
        if not owner:
            raise ValueError("missing_lease_owner")
        expires = to_iso(now + as_duration(lease_duration))
        with self.db.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE task_event_queue
                SET lease_owner = ?, lease_expires = ?
                WHERE task_event_id = ?
                  AND lease_owner IS NULL
                  AND EXISTS (
                    SELECT 1 FROM task_events AS target
                    WHERE target.id = task_event_queue.task_event_id
                      AND target.status = 'pending'
                      AND {_NO_EARLIER_QUEUED_EVENT}
                  )
                """,
                (owner, expires, int(event_id)),
            )
        acquired = int(cur.rowcount or 0) == 1
        logger.debug(
            "Lease acquire id=%s owner=%s acquired=%s expires=%s",
            event_id,
            owner,
            acquired,
            expires,
        )
        return acquired

    def renew_lease(
        self,
        event_id: int,
        owner_id: str,
        lease_duration: timedelta | int | float,
        now: datetime,
    ) -> bool:
        """Extend an unexpired lease held by ``owner_id``."""

        expires = to_iso(now + as_duration(lease_duration))
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE task_event_queue
                SET lease_expires = ?
                WHERE task_event_id = ?
                  AND lease_owner = ?
                  AND lease_expires >= ?
                """,
                (expires, int(event_id), owner_id, to_iso(now)),
            )
        renewed = int(cur.rowcount or 0) == 1
        logger.debug("Lease renew id=%s owner=%s renewed=%s", event_id, owner_id, renewed)
        return renewed

    def release_lease(self, event_id: int, owner_id: str) -> bool:
        """Voluntarily give up a lease held by ``owner_id``."""

        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE task_event_queue
                SET lease_owner = NULL, lease_expires = NULL
                WHERE task_event_id = ? AND lease_owner = ?
                """,
                (int(event_id), owner_id),
            )
        released = int(cur.rowcount or 0) == 1
        logger.debug("Lease release id=%s owner=%s released=%s", event_id, owner_id, released)
        return released

    def is_expired(self, event_id: int, now: datetime) -> bool:
        """True when a lease exists and ``now > lease_expires``. Never mutates."""

        row = self.db.conn.execute(
            """
            SELECT 1 FROM task_event_queue
            WHERE task_event_id = ?
              AND lease_expires IS NOT NULL
              AND lease_expires < ?
            """,
            (int(event_id), to_iso(now)),
        ).fetchone()
        return row is not None

    def release_expired(self, event_id: int, now: datetime) -> bool:
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE task_event_queue
                SET lease_owner = NULL, lease_expires = NULL
                WHERE task_event_id = ?
                  AND lease_expires IS NOT NULL
                  AND lease_expires < ?
                """,
                (int(event_id), to_iso(now)),
            )
        released = int(cur.rowcount or 0) == 1
        if released:
            logger.debug("Expired lease released id=%s", event_id)
        return released

    def remove(self, event_id: int) -> None:
        """Delete the live entry. Removing an absent entry is a no-op."""

        with self.db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM task_event_queue WHERE task_event_id = ?", (int(event_id),)
            )
        logger.debug("Queue remove id=%s removed=%s", event_id, int(cur.rowcount or 0))

    def list_eligible(self, limit: int = 32) -> list[QueueEntry]:
        """Unleased entries next in line for their task, ordered by task then ``event_seq``."""

        rows = self.db.conn.execute(
            f"""
            SELECT q.task_event_id, q.lease_owner, q.lease_expires
            FROM task_event_queue AS q
            JOIN task_events AS target ON target.id = q.task_event_id
            WHERE q.lease_owner IS NULL
              AND target.status = 'pending'
              AND {_NO_EARLIER_QUEUED_EVENT}
            ORDER BY target.task_id ASC, target.event_seq ASC
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        return [QueueEntry.from_row(row) for row in rows]

    def list_expired(self, now: datetime) -> list[QueueEntry]:
        rows = self.db.conn.execute(
            """
            SELECT task_event_id, lease_owner, lease_expires
            FROM task_event_queue
            WHERE lease_expires IS NOT NULL AND lease_expires < ?
            ORDER BY lease_expires ASC, task_event_id ASC
            """,
            (to_iso(now),),
        ).fetchall()
        return [QueueEntry.from_row(row) for row in rows]

    def list_stale(self) -> list[int]:
        """Event ids still queued although their ledger row is already terminal."""

        rows = self.db.conn.execute(
            """
            SELECT q.task_event_id
            FROM task_event_queue AS q
            JOIN task_events AS e ON e.id = q.task_event_id
            WHERE e.status != 'pending'
            ORDER BY q.task_event_id ASC
            """
        ).fetchall()
        return [int(row["task_event_id"]) for row in rows]
