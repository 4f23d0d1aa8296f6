"""Appointment, client and sync-log repositories."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, Protocol

from .models import Appointment, Client, SyncLogEntry

logger = logging.getLogger(__name__)


class AppointmentStoreError(Exception):
    """Raised when an appointment cannot be read or updated."""


class AppointmentNotFound(AppointmentStoreError, LookupError):
    """Raised when no appointment exists with the requested id."""


class ClientStoreError(Exception):
    """Raised when a client record cannot be read."""


class AppointmentStore(Protocol):
    def get(self, appointment_id: str) -> Appointment: ...

    def list_unsynced(self, user_id: str) -> list[Appointment]: ...

    def list_for_user(self, user_id: str) -> list[Appointment]: ...

    def mark_synced(self, appointment_id: str, event_id: str) -> None: ...


class ClientStore(Protocol):
    def get_by_id(self, client_id: str) -> Client | None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryAppointmentStore:
    def __init__(
        self,
        appointments: Iterable[Appointment] = (),
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._appointments: dict[str, Appointment] = {}
        for appointment in appointments:
            self.add(appointment)

    def add(self, appointment: Appointment) -> None:
        now = self._clock()
        if appointment.created_at is None:
            appointment.created_at = now
        if appointment.updated_at is None:
            appointment.updated_at = now
        with self._lock:
            self._appointments[appointment.id] = appointment

    def get(self, appointment_id: str) -> Appointment:
        with self._lock:
            try:
                return self._appointments[appointment_id]
            except KeyError as exc:
                raise AppointmentNotFound(f"Appointment '{appointment_id}' was not found.") from exc

    def list_for_user(self, user_id: str) -> list[Appointment]:
        with self._lock:
            owned = [apt for apt in self._appointments.values() if apt.user_id == user_id]
        return sorted(owned, key=lambda apt: apt.scheduled_datetime)

    def list_unsynced(self, user_id: str) -> list[Appointment]:
        return [apt for apt in self.list_for_user(user_id) if not apt.calendar_synced]

    def mark_synced(self, appointment_id: str, event_id: str) -> None:
        appointment = self.get(appointment_id)
        with self._lock:
            appointment.calendar_synced = True
            appointment.google_event_id = event_id
            appointment.updated_at = self._clock()
        logger.debug("Appointment %s marked synced with event %s", appointment_id, event_id)


class InMemoryClientStore:
    def __init__(self, clients: Iterable[Client] = ()) -> None:
        self._clients = {client.id: client for client in clients}

    def add(self, client: Client) -> None:
        self._clients[client.id] = client

    def get_by_id(self, client_id: str) -> Client | None:
        return self._clients.get(client_id)


class SyncLog:
    """Append-only log of sync attempts."""

    def __init__(self) -> None:
        self._entries: list[SyncLogEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: SyncLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self, user_id: str) -> list[SyncLogEntry]:
        with self._lock:
            return [entry for entry in self._entries if entry.user_id == user_id]

    def recent_successes(self, user_id: str, limit: int) -> list[SyncLogEntry]:
        successes = [entry for entry in self.entries(user_id) if entry.success]
        successes.sort(key=lambda entry: entry.recorded_at, reverse=True)
        return successes[:limit]
