"""Pydantic records for issues, tasks, task events, queue entries, and run history."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agent_foundry.shared.clock import from_iso, to_iso


class EventStatus(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not EventStatus.PENDING


class RunKind(StrEnum):
    START = "start"
    END = "end"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


def dump_document(payload: dict[str, Any] | None) -> str:
    if payload is None:
        return "{}"
    if not isinstance(payload, dict):
        raise ValueError("payload_must_be_an_object")
    return json.dumps(payload, sort_keys=True)


def load_document(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    value = json.loads(raw)
    # Rows written outside the public API may hold a bare JSON value.
    return value if isinstance(value, dict) else {"value": value}


def _optional_ts(raw: str | None) -> datetime | None:
    return from_iso(raw) if raw else None


class Issue(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Issue:
        return cls(
            id=str(row["id"]),
            name=str(row["name"]),
            context=load_document(row["context_json"]),
        )


class Task(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: int = Field(ge=1)
    issue_id: str = Field(min_length=1)
    name: str = Field(min_length=1)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Task:
        return cls(id=int(row["id"]), issue_id=str(row["issue_id"]), name=str(row["name"]))


class TaskEvent(BaseModel):
    """The schedulable unit; ``(task_id, event_seq)`` is unique in the store."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: int = Field(ge=1)
    task_id: int = Field(ge=1)
    agent_name: str = Field(min_length=1)
    event_seq: int = Field(ge=0)
    attempt_no: int = Field(default=0, ge=0)
    status: EventStatus = EventStatus.PENDING
    finished_at: datetime | None = None

    @model_validator(mode="after")
    def _check_finished_at(self) -> TaskEvent:
        if self.status.is_terminal and self.finished_at is None:
            raise ValueError("terminal_event_requires_finished_at")
        if not self.status.is_terminal and self.finished_at is not None:
            raise ValueError("pending_event_cannot_have_finished_at")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> TaskEvent:
        return cls(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            agent_name=str(row["agent_name"]),
            event_seq=int(row["event_seq"]),
            attempt_no=int(row["attempt_no"]),
            status=EventStatus(str(row["status"])),
            finished_at=_optional_ts(row["finished_at"]),
        )


class QueueEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    task_event_id: int = Field(ge=1)
    lease_owner: str | None = None
    lease_expires: datetime | None = None

    @model_validator(mode="after")
    def _check_lease_pair(self) -> QueueEntry:
        if (self.lease_owner is None) != (self.lease_expires is None):
            raise ValueError("lease_owner_and_expiry_must_be_set_together")
        return self

    @property
    def leased(self) -> bool:
        return self.lease_owner is not None

    def is_expired(self, now: datetime) -> bool:
        if self.lease_expires is None:
            return False
        return to_iso(now) > to_iso(self.lease_expires)

    def held_by(self, owner_id: str, now: datetime) -> bool:
        return self.lease_owner == owner_id and not self.is_expired(now)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> QueueEntry:
        owner = row["lease_owner"]
        return cls(
            task_event_id=int(row["task_event_id"]),
            lease_owner=str(owner) if owner is not None else None,
            lease_expires=_optional_ts(row["lease_expires"]),
        )


class RunRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: int = Field(ge=1)
    task_event_id: int = Field(ge=1)
    run_seq: int = Field(ge=1)
    worker_name: str = Field(min_length=1)
    kind: RunKind
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RunRecord:
        return cls(
            id=int(row["id"]),
            task_event_id=int(row["task_event_id"]),
            run_seq=int(row["run_seq"]),
            worker_name=str(row["worker_name"]),
            kind=RunKind(str(row["kind"])),
            data=load_document(row["data_json"]),
        )
