from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Sequence, TypeVar

from ..integrations.google_calendar import (
    CalendarEvent,
    CalendarSyncError,
    EventPayload,
    GoogleCalendarClient,
    GoogleOAuthClient,
    NotConnected,
    Unauthorized,
    parse_datetime,
)
from ..integrations.token_store import Credential, CredentialNotFound, TokenStore, TokenStoreError
from .availability import DEFAULT_WORKING_HOURS, find_free_slots, localize, resolve_zone
from .models import (
    Appointment,
    Client,
    SyncBatchResult,
    SyncLogEntry,
    SyncRecord,
    SyncStatusSnapshot,
    TimeSlot,
    serialize_address,
)
from .stores import (
    AppointmentNotFound,
    AppointmentStore,
    AppointmentStoreError,
    ClientStore,
    ClientStoreError,
    SyncLog,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_CLIENT_NAME = "Cliente"
SUMMARY_PREFIX = "Agendamento"
DEFAULT_DURATION_MINUTES = 60
HISTORY_LIMIT = 10

T = TypeVar("T")


class CalendarSyncService:
    """Pushes a user's unsynced appointments to their Google Calendar."""

    def __init__(
        self,
        calendar_client: GoogleCalendarClient,
        oauth_client: GoogleOAuthClient,
        token_store: TokenStore,
        appointments: AppointmentStore,
        clients: ClientStore,
        *,
        sync_log: SyncLog | None = None,
        default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
        time_zone: str | None = None,
        clock: Callable[[], datetime] | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self._calendar = calendar_client
        self._oauth = oauth_client
        self._token_store = token_store
        self._appointments = appointments
        self._clients = clients
        self._sync_log = sync_log if sync_log is not None else SyncLog()
        self._default_duration = default_duration_minutes
        self._time_zone = time_zone
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger_instance or logger

    # Batch sync --------------------------------------------------------------------
    def sync_all(self, user_id: str) -> SyncBatchResult:
        appointments = self._appointments.list_unsynced(user_id)
        self._logger.info("Found %s unsynced appointments for user %s", len(appointments), user_id)

        result = SyncBatchResult()
        for appointment in appointments:
            result.records.append(self._sync_appointment(user_id, appointment))

        self._logger.info(
            "Sync finished for user %s: %s synced, %s failed",
            user_id,
            result.synced_count,
            result.failed_count,
        )
        return result

    def sync_appointment(self, user_id: str, appointment_id: str) -> SyncRecord:
        """Sync a single appointment, skipping the provider when already synced."""

        appointment = self._appointments.get(appointment_id)
        if appointment.user_id != user_id:
            raise AppointmentNotFound(f"Appointment '{appointment_id}' was not found.")
        if appointment.calendar_synced:
            self._logger.info(
                "Appointment %s already synced as event %s", appointment_id, appointment.google_event_id
            )
            return SyncRecord(
                appointment_id=appointment.id, success=True, event_id=appointment.google_event_id
            )
        return self._sync_appointment(user_id, appointment)

    def build_event_payload(self, appointment: Appointment, client: Client | None) -> EventPayload:
        name = client.name if client and client.name else PLACEHOLDER_CLIENT_NAME
        start = parse_datetime(appointment.scheduled_datetime)
        duration = appointment.duration_minutes
        if duration is None:
            duration = self._default_duration
        elif duration <= 0:
            raise ValueError(f"Appointment {appointment.id} has a non-positive duration: {duration} minutes")
        end = start + timedelta(minutes=duration)
        return EventPayload(
            summary=f"{SUMMARY_PREFIX} - {name}",
            description=appointment.notes or "",
            start_datetime=appointment.scheduled_datetime,
            end_datetime=end.isoformat(),
            attendees=[client.email] if client and client.email else [],
            location=serialize_address(client.address) if client else "",
            time_zone=self._time_zone,
        )

    def _find_client(self, appointment: Appointment) -> Client | None:
        client: Client | None = None
        if appointment.client_id:
            try:
                client = self._clients.get_by_id(appointment.client_id)
            except (LookupError, ClientStoreError) as exc:
                self._logger.warning("Client lookup failed for appointment %s: %s", appointment.id, exc)
        if client is None:
            self._logger.warning(
                "Client %s not found for appointment %s; using placeholder name",
                appointment.client_id,
                appointment.id,
            )
        return client

    def _sync_appointment(self, user_id: str, appointment: Appointment) -> SyncRecord:
        client = self._find_client(appointment)

        payload: EventPayload | None = None
        event_id: str | None = None
        try:
            payload = self.build_event_payload(appointment, client)
            event_id = self._with_credential(
                user_id, lambda credential: self._calendar.create_event(credential, payload)
            )
            self._appointments.mark_synced(appointment.id, event_id)
        except (CalendarSyncError, TokenStoreError, AppointmentStoreError, ValueError) as exc:
            self._logger.error("Failed to sync appointment %s: %s", appointment.id, exc)
            self._sync_log.append(
                SyncLogEntry(
                    user_id=user_id,
                    appointment_id=appointment.id,
                    success=False,
                    recorded_at=self._clock(),
                    event_id=event_id,
                    error=str(exc),
                )
            )
            return SyncRecord(
                appointment_id=appointment.id,
                success=False,
                event_id=event_id,
                error=str(exc),
                payload=payload,
            )

        self._sync_log.append(
            SyncLogEntry(
                user_id=user_id,
                appointment_id=appointment.id,
                success=True,
                recorded_at=self._clock(),
                event_id=event_id,
            )
        )
        self._logger.debug("Appointment %s synced as event %s", appointment.id, event_id)
        return SyncRecord(appointment_id=appointment.id, success=True, event_id=event_id, payload=payload)

    # Status ------------------------------------------------------------------------
    def get_sync_status(self, user_id: str) -> SyncStatusSnapshot:
        appointments = self._appointments.list_for_user(user_id)
        synced = sum(1 for appointment in appointments if appointment.calendar_synced)
        return SyncStatusSnapshot(
            events_in_sync=synced,
            events_out_of_sync=len(appointments) - synced,
            total_events=len(appointments),
            history=self._sync_log.recent_successes(user_id, HISTORY_LIMIT),
            last_sync_check=self._clock(),
        )

    # Single-event operations -------------------------------------------------------
    def list_events(self, user_id: str, **filters: Any) -> list[CalendarEvent]:
        return self._with_credential(
            user_id, lambda credential: self._calendar.list_events(credential, **filters)
        )

    def get_event(self, user_id: str, event_id: str) -> CalendarEvent:
        return self._with_credential(
            user_id, lambda credential: self._calendar.get_event(credential, event_id)
        )

    def create_event(self, user_id: str, payload: EventPayload) -> str:
        if payload.time_zone is None and self._time_zone:
            payload.time_zone = self._time_zone
        return self._with_credential(
            user_id, lambda credential: self._calendar.create_event(credential, payload)
        )

    def update_appointment_event(self, user_id: str, event_id: str, changes: Mapping[str, Any]) -> None:
        self._with_credential(
            user_id, lambda credential: self._calendar.update_event(credential, event_id, changes)
        )

    def delete_appointment_event(self, user_id: str, event_id: str) -> None:
        self._with_credential(
            user_id, lambda credential: self._calendar.delete_event(credential, event_id)
        )

    # Availability ------------------------------------------------------------------
    def check_availability(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        *,
        time_zone: str | None = None,
    ) -> bool:
        zone_name = self._zone_name(time_zone)
        zone = resolve_zone(zone_name)
        busy = self._with_credential(
            user_id,
            lambda credential: self._calendar.query_busy(
                credential, localize(start, zone), localize(end, zone), time_zone=zone_name
            ),
        )
        return not busy

    def find_available_slots(
        self,
        user_id: str,
        duration_minutes: int,
        time_min: datetime,
        time_max: datetime,
        *,
        working_hours: Sequence[str] = DEFAULT_WORKING_HOURS,
        time_zone: str | None = None,
    ) -> list[TimeSlot]:
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        zone_name = self._zone_name(time_zone)
        zone = resolve_zone(zone_name)
        window_start = localize(time_min, zone)
        window_end = localize(time_max, zone)
        busy = self._with_credential(
            user_id,
            lambda credential: self._calendar.query_busy(
                credential, window_start, window_end, time_zone=zone_name
            ),
        )
        slots = find_free_slots(
            busy,
            duration_minutes=duration_minutes,
            time_min=window_start,
            time_max=window_end,
            time_zone=zone_name,
            working_hours=working_hours,
        )
        self._logger.info(
            "Found %s free %s-minute slots for user %s", len(slots), duration_minutes, user_id
        )
        return slots

    def _zone_name(self, time_zone: str | None) -> str:
        return time_zone or self._time_zone or self._calendar.config.time_zone

    # Connection --------------------------------------------------------------------
    def connection(self, user_id: str) -> Credential | None:
        try:
            credential = self._token_store.get(user_id)
        except CredentialNotFound:
            return None
        return credential if credential.is_connected else None

    def disconnect(self, user_id: str) -> bool:
        removed = self._token_store.delete(user_id)
        self._logger.info("Google Calendar disconnected for user %s (removed=%s)", user_id, removed)
        return removed

    # Internal helpers -------------------------------------------------------------
    def _with_credential(self, user_id: str, operation: Callable[[Credential], T]) -> T:
        credential = self._load_credential(user_id)
        renewed = False
        if credential.is_expired(now=self._clock()):
            self._logger.info("Access token for user %s expired; renewing", user_id)
            credential = self._renew(credential)
            renewed = True

        try:
            return operation(credential)
        except Unauthorized:
            if renewed or not credential.refresh_token:
                raise
            self._logger.warning("Google rejected the access token for user %s; renewing", user_id)
            credential = self._renew(credential)
        return operation(credential)

    def _load_credential(self, user_id: str) -> Credential:
        try:
            credential = self._token_store.get(user_id)
        except CredentialNotFound as exc:
            raise NotConnected(f"Google Calendar is not connected for user '{user_id}'") from exc
        if not credential.is_connected:
            raise NotConnected(f"Google Calendar is not connected for user '{user_id}'")
        return credential

    def _renew(self, credential: Credential) -> Credential:
        refreshed = self._oauth.refresh_credential(credential)
        self._token_store.put(refreshed.user_id, refreshed)
        return refreshed
