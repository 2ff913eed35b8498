"""Lifecycle coordinator: queued -> leased -> executing -> terminal -> retired."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from agent_foundry.control_plane.db.db import FoundryDB
from agent_foundry.control_plane.errors import InvalidTransition, LeaseContention, NotFound
from agent_foundry.control_plane.models.records import (
    EventStatus,
    QueueEntry,
    RunKind,
    TaskEvent,
)
from agent_foundry.control_plane.orchestration.event_ledger import EventLedger
from agent_foundry.control_plane.orchestration.lease_queue import LeaseQueue
from agent_foundry.control_plane.orchestration.run_recorder import RunRecorder
from agent_foundry.shared.clock import as_duration
from agent_foundry.shared.settings import FoundrySettings

logger = logging.getLogger(__name__)

DEFAULT_LEASE_DURATION = timedelta(minutes=10)


@dataclass(frozen=True)
class AttemptPolicy:
    """How ``attempt_no`` moves when a lease is given back without completion.

    ``max_attempts`` counts every attempt including the first; once the
    current attempt is the last allowed one, a failed or abandoned attempt
    fails the event instead of re-queueing it.
    """

    max_attempts: int = 3
    bump_on_reclaim: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts_must_be_positive")

    def exhausted(self, attempt_no: int) -> bool:
        return attempt_no + 1 >= self.max_attempts


class LifecycleCoordinator:
    def __init__(
        self,
        db: FoundryDB,
        *,
        policy: AttemptPolicy | None = None,
        lease_duration: timedelta | int | float = DEFAULT_LEASE_DURATION,
    ) -> None:
        self.db = db
        self.ledger = EventLedger(db)
        self.queue = LeaseQueue(db)
        self.runs = RunRecorder(db)
        self.policy = policy or AttemptPolicy()
        self.lease_duration = as_duration(lease_duration)

    @classmethod
    def from_settings(cls, db: FoundryDB, settings: FoundrySettings) -> LifecycleCoordinator:
        return cls(
            db,
            policy=AttemptPolicy(
                max_attempts=settings.max_attempts,
                bump_on_reclaim=settings.bump_attempt_on_reclaim,
            ),
            lease_duration=timedelta(seconds=settings.lease_seconds),
        )

    def plan_event(
        self,
        task_id: int,
        agent_name: str,
        *,
        event_seq: int | None = None,
        attempt_no: int = 0,
    ) -> TaskEvent:
        """Create an event (next ``event_seq`` unless given) and enqueue it atomically."""

        with self.db.transaction():
            if event_seq is None:
                event_id = self.ledger.append_event(task_id, agent_name, attempt_no=attempt_no)
            else:
                event_id = self.ledger.create_event(
                    task_id, agent_name, event_seq, attempt_no=attempt_no
                )
            self.queue.enqueue(event_id)
        event = self.ledger.get_event(event_id)
        logger.info(
            "Event planned id=%s task_id=%s event_seq=%s agent=%s",
            event.id,
            event.task_id,
            event.event_seq,
            event.agent_name,
        )
        return event

    def acquire(
        self,
        event_id: int,
        owner_id: str,
        now: datetime,
        lease_duration: timedelta | int | float | None = None,
    ) -> bool:
        duration = self.lease_duration if lease_duration is None else lease_duration
        acquired = self.queue.acquire_lease(event_id, owner_id, duration, now)
        if acquired:
            logger.info("Lease acquired id=%s owner=%s", event_id, owner_id)
        else:
            logger.debug("Lease not acquired id=%s owner=%s", event_id, owner_id)
        return acquired

    def _require_lease(self, event_id: int, owner_id: str, now: datetime) -> QueueEntry:
        entry = self.queue.get_entry(event_id)
        if entry is None:
            raise NotFound("not_found:queue_entry", str(event_id))
        if not entry.held_by(owner_id, now):
            raise LeaseContention(
                "lease_contention:not_held",
                f"event {event_id} lease is held by {entry.lease_owner or 'nobody'}",
            )
        return entry

    def start_attempt(
        self,
        event_id: int,
        owner_id: str,
        now: datetime,
        *,
        worker_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> int:
        self._require_lease(event_id, owner_id, now)
        run_id = self.runs.append_run(event_id, worker_id or owner_id, RunKind.START, payload)
        logger.info("Attempt started id=%s owner=%s", event_id, owner_id)
        return run_id

    def heartbeat(
        self,
        event_id: int,
        owner_id: str,
        now: datetime,
        *,
        worker_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Record liveness and push the lease expiry forward by the configured duration."""

        self._require_lease(event_id, owner_id, now)
        if not self.queue.renew_lease(event_id, owner_id, self.lease_duration, now):
            raise LeaseContention("lease_contention:renew_failed", str(event_id))
        return self.runs.append_run(event_id, worker_id or owner_id, RunKind.HEARTBEAT, payload)

    def record_error(
        self,
        event_id: int,
        owner_id: str,
        now: datetime,
        *,
        worker_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> int:
        self._require_lease(event_id, owner_id, now)
        return self.runs.append_run(event_id, worker_id or owner_id, RunKind.ERROR, payload)

    def finish_attempt(
        self,
        event_id: int,
        owner_id: str,
        now: datetime,
        payload: dict[str, Any] | None = None,
        *,
        worker_id: str | None = None,
    ) -> int:
        self._require_lease(event_id, owner_id, now)
        run_id = self.runs.append_run(event_id, worker_id or owner_id, RunKind.END, payload)
        logger.info("Attempt finished id=%s owner=%s", event_id, owner_id)
        return run_id

    def complete_event(
        self, event_id: int, outcome: EventStatus | str, now: datetime
    ) -> TaskEvent:
        """Mark the event terminal, then retire its queue entry.

        Re-running a completion that already reached the ledger (for example
        after a crash between the two steps) is accepted when the stored
        outcome matches, and finishes the queue removal.
        """

        status = EventStatus(outcome)
        try:
            self.ledger.mark_terminal(event_id, status, now)
        except InvalidTransition:
            if not status.is_terminal or self.ledger.get_status(event_id) is not status:
                raise
            logger.info("Completion retry id=%s status=%s", event_id, status.value)
        self.queue.remove(event_id)
        logger.info("Event retired id=%s status=%s", event_id, status.value)
        return self.ledger.get_event(event_id)

    def retry_event(self, event_id: int, owner_id: str, now: datetime) -> TaskEvent:
        """Give back a lease after a failed attempt, or fail the event once attempts run out."""

        self._require_lease(event_id, owner_id, now)
        event = self.ledger.get_event(event_id)
        if self.policy.exhausted(event.attempt_no):
            logger.info("Attempts exhausted id=%s attempt_no=%s", event_id, event.attempt_no)
            return self.complete_event(event_id, EventStatus.FAILED, now)
        with self.db.transaction():
            if not self.queue.release_lease(event_id, owner_id):
                raise LeaseContention("lease_contention:not_held", str(event_id))
            attempt_no = self.ledger.increment_attempt(event_id)
        logger.info("Event re-queued id=%s attempt_no=%s", event_id, attempt_no)
        return self.ledger.get_event(event_id)

    def reclaim_expired(self, now: datetime, actor: str = "reclaimer") -> dict[str, int]:
        """Release every expired lease, closing abandoned attempts and applying the policy.

        Entries whose event is already terminal (a completion interrupted
        before queue removal) are swept instead of re-queued.
        """

        released = 0
        failed = 0
        swept = 0
        for entry in self.queue.list_expired(now):
            event_id = entry.task_event_id
            with self.db.transaction():
                if not self.queue.release_expired(event_id, now):
                    continue
                if self.ledger.get_event(event_id).is_terminal:
                    self.queue.remove(event_id)
                    swept += 1
                    logger.warning("Stale queue entry swept id=%s", event_id)
                    continue
                if self.runs.has_open_attempt(event_id):
                    closing = {
                        "ok": False,
                        "reason": "lease_expired",
                        "lease_owner": entry.lease_owner,
                    }
                    self.runs.append_run(event_id, actor, RunKind.END, closing)
                if self.policy.bump_on_reclaim:
                    event = self.ledger.get_event(event_id)
                    if self.policy.exhausted(event.attempt_no):
                        self.complete_event(event_id, EventStatus.FAILED, now)
                        failed += 1
                    else:
                        self.ledger.increment_attempt(event_id)
            released += 1
            logger.warning(
                "Expired lease reclaimed id=%s previous_owner=%s", event_id, entry.lease_owner
            )
        return {"released": released, "failed": failed, "swept": swept}

    def reconcile(self) -> list[int]:
        """Remove queue entries left behind by a completion interrupted after the ledger write."""

        swept = self.queue.list_stale()
        for event_id in swept:
            self.queue.remove(event_id)
            logger.warning("Stale queue entry swept id=%s", event_id)
        return swept

    def describe(self, event_id: int) -> dict[str, Any]:
        event = self.ledger.get_event(event_id)
        entry = self.queue.get_entry(event_id)
        return {
            "event": event.model_dump(mode="json"),
            "queue": entry.model_dump(mode="json") if entry else None,
            "runs": [run.model_dump(mode="json") for run in self.runs.list_runs(event_id)],
        }
