"""Single-pass worker loop: lease eligible events, run their agent handler, record the attempt."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from agent_foundry.control_plane.models.records import EventStatus, TaskEvent
from agent_foundry.control_plane.orchestration.coordinator import LifecycleCoordinator
from agent_foundry.shared.clock import utc_now

logger = logging.getLogger(__name__)

EventHandler = Callable[[TaskEvent], dict[str, Any] | None]


class EventWorker:
    def __init__(
        self,
        *,
        coordinator: LifecycleCoordinator,
        worker_id: str,
        handlers: dict[str, EventHandler],
        lease_duration: timedelta | int | float | None = None,
    ) -> None:
        if not worker_id.strip():
            raise ValueError("missing_worker_id")
        self.coordinator = coordinator
        self.worker_id = worker_id.strip()
        self.handlers = dict(handlers)
        self.lease_duration = lease_duration

    def run_once(self, now: datetime | None = None, limit: int = 8) -> dict[str, int]:
        now = now or utc_now()
        counts = {"claimed": 0, "succeeded": 0, "failed": 0, "retried": 0, "contended": 0}
        for entry in self.coordinator.queue.list_eligible(limit=limit):
            event_id = entry.task_event_id
            if not self.coordinator.acquire(event_id, self.worker_id, now, self.lease_duration):
                counts["contended"] += 1
                continue
            counts["claimed"] += 1
            counts[self._execute(event_id, now)] += 1
        return counts

    def _execute(self, event_id: int, now: datetime) -> str:
        coordinator = self.coordinator
        event = coordinator.ledger.get_event(event_id)
        coordinator.start_attempt(
            event_id,
            self.worker_id,
            now,
            payload={"agent_name": event.agent_name, "attempt_no": event.attempt_no},
        )
        handler = self.handlers.get(event.agent_name)
        if handler is None:
            logger.warning("No handler for agent=%s event_id=%s", event.agent_name, event_id)
            coordinator.finish_attempt(
                event_id, self.worker_id, now, {"ok": False, "reason": "unknown_agent"}
            )
            coordinator.complete_event(event_id, EventStatus.FAILED, now)
            return "failed"

        try:
            result = handler(event)
        except Exception as exc:
            logger.exception("Handler failed agent=%s event_id=%s", event.agent_name, event_id)
            coordinator.record_error(
                event_id,
                self.worker_id,
                now,
                payload={"error": type(exc).__name__, "message": str(exc)},
            )
            coordinator.finish_attempt(
                event_id, self.worker_id, now, {"ok": False, "reason": "handler_error"}
            )
            updated = coordinator.retry_event(event_id, self.worker_id, now)
            return "failed" if updated.is_terminal else "retried"

        coordinator.finish_attempt(event_id, self.worker_id, now, {**(result or {}), "ok": True})
        coordinator.complete_event(event_id, EventStatus.SUCCEEDED, now)
        return "succeeded"
