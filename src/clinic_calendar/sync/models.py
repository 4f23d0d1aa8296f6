from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..integrations.google_calendar import EventPayload


@dataclass(slots=True)
class Client:
    """Clinic client as stored by the client collaborator."""

    id: str
    name: str
    email: str | None = None
    address: Any = None


@dataclass(slots=True)
class Appointment:
    """Appointment row as stored by the appointment collaborator."""

    id: str
    user_id: str
    client_id: str | None
    scheduled_datetime: str
    duration_minutes: int | None = None
    notes: str | None = None
    calendar_synced: bool = False
    google_event_id: str | None = None
    status: str = "scheduled"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class SyncRecord:
    """Outcome of syncing one appointment within a batch."""

    appointment_id: str
    success: bool
    event_id: str | None = None
    error: str | None = None
    payload: EventPayload | None = None


@dataclass(slots=True)
class SyncBatchResult:
    records: list[SyncRecord] = field(default_factory=list)

    @property
    def synced_count(self) -> int:
        return sum(1 for record in self.records if record.success)

    @property
    def failed_count(self) -> int:
        return len(self.records) - self.synced_count

    @property
    def total_processed(self) -> int:
        return len(self.records)


@dataclass(frozen=True, slots=True)
class SyncLogEntry:
    """Append-only record of one sync attempt."""

    user_id: str
    appointment_id: str
    success: bool
    recorded_at: datetime
    event_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class SyncStatusSnapshot:
    events_in_sync: int
    events_out_of_sync: int
    total_events: int
    history: list[SyncLogEntry]
    last_sync_check: datetime


@dataclass(frozen=True, slots=True)
class TimeSlot:
    """Free interval offered for booking."""

    start: datetime
    end: datetime


def serialize_address(address: Any) -> str:
    if address is None:
        return ""
    if isinstance(address, str):
        return address
    return json.dumps(address, ensure_ascii=False)
