"""REST API for the Google Calendar connection and appointment sync."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, TypeVar
from urllib.parse import urlencode

import requests
from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from ..integrations.google_calendar import (
    AuthorizationError,
    CalendarEvent,
    EventPayload,
    GoogleCalendarClient,
    GoogleOAuthClient,
    NotConnected,
    RemoteError,
    Unauthorized,
)
from ..integrations.token_store import TokenStore, TokenStoreError
from ..settings import Settings, get_settings
from ..sync.models import SyncLogEntry, SyncRecord, TimeSlot
from ..sync.service import CalendarSyncService
from ..sync.stores import (
    AppointmentNotFound,
    AppointmentStore,
    ClientStore,
    InMemoryAppointmentStore,
    InMemoryClientStore,
    SyncLog,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserRequest(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId")


class EventChanges(_CamelModel):
    """Partial event update; only supplied fields are sent to Google."""

    summary: Optional[str] = None
    description: Optional[str] = None
    start_datetime: Optional[str] = Field(default=None, alias="startDateTime")
    end_datetime: Optional[str] = Field(default=None, alias="endDateTime")
    attendees: Optional[List[str]] = None
    location: Optional[str] = None
    time_zone: Optional[str] = Field(default=None, alias="timeZone")


class EventUpdateRequest(UserRequest):
    event_data: Optional[EventChanges] = Field(default=None, alias="eventData")


class AuthUrlResponse(_CamelModel):
    auth_url: str = Field(alias="authUrl")


class SyncResultItem(_CamelModel):
    appointment_id: str = Field(alias="appointmentId")
    success: bool
    event_id: Optional[str] = Field(default=None, alias="eventId")
    error: Optional[str] = None


class SyncResponse(_CamelModel):
    results: List[SyncResultItem]
    synced_count: int = Field(alias="syncedCount")
    total_processed: int = Field(alias="totalProcessed")
    failed_count: int = Field(alias="failedCount")
    message: Optional[str] = None


class SyncHistoryItem(_CamelModel):
    id: str
    appointment_id: str = Field(alias="appointmentId")
    event_id: Optional[str] = Field(default=None, alias="eventId")
    type: str = "sync_to_google"
    status: str = "completed"
    completed_at: datetime = Field(alias="completedAt")


class SyncStatusResponse(_CamelModel):
    events_in_sync: int = Field(alias="eventsInSync")
    events_out_of_sync: int = Field(alias="eventsOutOfSync")
    total_events: int = Field(alias="totalEvents")
    history: List[SyncHistoryItem]
    last_sync_check: datetime = Field(alias="lastSyncCheck")


class ConnectionResponse(_CamelModel):
    connected: bool
    calendar_id: Optional[str] = Field(default=None, alias="calendarId")


class MessageResponse(_CamelModel):
    success: bool
    message: Optional[str] = None


class EventResponse(_CamelModel):
    id: str
    summary: str
    description: str
    start: str
    end: str
    location: str
    attendees: List[str]
    html_link: str = Field(alias="htmlLink")


class EventsResponse(_CamelModel):
    events: List[EventResponse]


class NewEvent(_CamelModel):
    summary: str
    start_datetime: str = Field(alias="startDateTime")
    end_datetime: str = Field(alias="endDateTime")
    description: str = ""
    attendees: List[str] = Field(default_factory=list)
    location: str = ""
    time_zone: Optional[str] = Field(default=None, alias="timeZone")


class EventCreateRequest(UserRequest):
    event_data: Optional[NewEvent] = Field(default=None, alias="eventData")


class EventCreatedResponse(_CamelModel):
    success: bool
    event_id: str = Field(alias="eventId")


class AvailabilityResponse(_CamelModel):
    available: bool


class SlotResponse(_CamelModel):
    start: datetime
    end: datetime


class SlotsResponse(_CamelModel):
    slots: List[SlotResponse]


def _serialize_record(record: SyncRecord) -> SyncResultItem:
    return SyncResultItem(
        appointment_id=record.appointment_id,
        success=record.success,
        event_id=record.event_id,
        error=record.error,
    )


def _serialize_history(entry: SyncLogEntry) -> SyncHistoryItem:
    return SyncHistoryItem(
        id=f"sync-{entry.appointment_id}",
        appointment_id=entry.appointment_id,
        event_id=entry.event_id,
        completed_at=entry.recorded_at,
    )


def _serialize_event(event: CalendarEvent) -> EventResponse:
    return EventResponse(
        id=event.id,
        summary=event.summary,
        description=event.description,
        start=event.start,
        end=event.end,
        location=event.location,
        attendees=event.attendees,
        html_link=event.html_link,
    )


def _serialize_slot(slot: TimeSlot) -> SlotResponse:
    return SlotResponse(start=slot.start, end=slot.end)


def _require_user_id(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="userId is required.",
        )
    return user_id


def _call_calendar(operation: Callable[[], T]) -> T:
    try:
        return operation()
    except NotConnected as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except (Unauthorized, AuthorizationError) as exc:
        logger.warning("Google Calendar authorization failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired. Reconnect your account.",
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except (RemoteError, TokenStoreError) as exc:
        logger.error("Google Calendar request failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Google Calendar request failed.",
        )


def create_app(
    settings: Optional[Settings] = None,
    *,
    token_store: Optional[TokenStore] = None,
    appointments: Optional[AppointmentStore] = None,
    clients: Optional[ClientStore] = None,
    sync_log: Optional[SyncLog] = None,
    session: Optional[requests.Session] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("clinic_calendar").setLevel(settings.log_level)

    config = settings.google_config()
    if token_store is None:
        token_store = settings.build_token_store()
    if appointments is None:
        appointments = InMemoryAppointmentStore()
    if clients is None:
        clients = InMemoryClientStore()

    oauth = GoogleOAuthClient(config, token_store, session=session)
    service = CalendarSyncService(
        GoogleCalendarClient(config, session=session),
        oauth,
        token_store,
        appointments,
        clients,
        sync_log=sync_log,
        default_duration_minutes=settings.default_duration_minutes,
        time_zone=settings.calendar_time_zone,
    )

    app = FastAPI(title="Clinic Calendar Sync API")
    app.state.sync_service = service

    def settings_redirect(**flags: str) -> RedirectResponse:
        target = f"{settings.app_url.rstrip('/')}{settings.calendar_settings_path}"
        return RedirectResponse(f"{target}?{urlencode(flags)}", status_code=status.HTTP_302_FOUND)

    @app.post("/api/calendar/auth", response_model=AuthUrlResponse)
    def begin_authorization(user_id: Optional[str] = Query(default=None, alias="userId")) -> AuthUrlResponse:
        if not config.is_configured:
            logger.error("Google OAuth is not configured")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Google OAuth is not configured.",
            )
        return AuthUrlResponse(auth_url=oauth.build_authorization_url(state=user_id))

    @app.get("/api/calendar/callback")
    def complete_authorization(
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ) -> RedirectResponse:
        if error:
            logger.error("Google OAuth returned an error: %s", error)
            return settings_redirect(error="oauth_error")
        if not code or not state:
            logger.error("OAuth callback is missing code or state")
            return settings_redirect(error="missing_params")

        try:
            oauth.exchange_code_for_credential(code, config.redirect_uri, user_id=state)
        except AuthorizationError as exc:
            logger.error("Google Calendar connection failed for user %s: %s", state, exc)
            return settings_redirect(error="connection_failed")
        return settings_redirect(success="google_connected")

    @app.post("/api/calendar/sync", response_model=SyncResponse, response_model_exclude_none=True)
    def run_sync(payload: Optional[UserRequest] = None) -> SyncResponse:
        user_id = _require_user_id(payload.user_id if payload else None)
        try:
            result = service.sync_all(user_id)
        except Exception as exc:
            logger.exception("Sync batch failed for user %s: %s", user_id, exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Internal server error.",
            )
        return SyncResponse(
            results=[_serialize_record(record) for record in result.records],
            synced_count=result.synced_count,
            total_processed=result.total_processed,
            failed_count=result.failed_count,
            message=None if result.records else "No appointments to sync.",
        )

    @app.post(
        "/api/calendar/sync/{appointment_id}",
        response_model=SyncResultItem,
        response_model_exclude_none=True,
    )
    def sync_one(appointment_id: str, payload: Optional[UserRequest] = None) -> SyncResultItem:
        user_id = _require_user_id(payload.user_id if payload else None)
        try:
            record = service.sync_appointment(user_id, appointment_id)
        except AppointmentNotFound as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        return _serialize_record(record)

    @app.get("/api/calendar/sync/status", response_model=SyncStatusResponse)
    def get_sync_status(user_id: Optional[str] = Query(default=None, alias="userId")) -> SyncStatusResponse:
        snapshot = service.get_sync_status(_require_user_id(user_id))
        return SyncStatusResponse(
            events_in_sync=snapshot.events_in_sync,
            events_out_of_sync=snapshot.events_out_of_sync,
            total_events=snapshot.total_events,
            history=[_serialize_history(entry) for entry in snapshot.history],
            last_sync_check=snapshot.last_sync_check,
        )

    @app.get("/api/calendar/connection", response_model=ConnectionResponse)
    def get_connection(user_id: Optional[str] = Query(default=None, alias="userId")) -> ConnectionResponse:
        credential = service.connection(_require_user_id(user_id))
        if credential is None:
            return ConnectionResponse(connected=False)
        return ConnectionResponse(connected=True, calendar_id=credential.calendar_id)

    @app.post("/api/calendar/disconnect", response_model=MessageResponse)
    def disconnect(payload: Optional[UserRequest] = None) -> MessageResponse:
        user_id = _require_user_id(payload.user_id if payload else None)
        service.disconnect(user_id)
        return MessageResponse(success=True, message="Google Calendar disconnected.")

    @app.get("/api/calendar/events", response_model=EventsResponse)
    def list_events(
        user_id: Optional[str] = Query(default=None, alias="userId"),
        time_min: Optional[str] = Query(default=None, alias="timeMin"),
        time_max: Optional[str] = Query(default=None, alias="timeMax"),
        max_results: int = Query(default=100, alias="maxResults", gt=0),
    ) -> EventsResponse:
        owner = _require_user_id(user_id)
        events = _call_calendar(
            lambda: service.list_events(
                owner, time_min=time_min, time_max=time_max, max_results=max_results
            )
        )
        return EventsResponse(events=[_serialize_event(event) for event in events])

    @app.post("/api/calendar/events", response_model=EventCreatedResponse)
    def create_event(payload: EventCreateRequest) -> EventCreatedResponse:
        owner = _require_user_id(payload.user_id)
        if payload.event_data is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="eventData is required.",
            )
        data = payload.event_data
        event = EventPayload(
            summary=data.summary,
            start_datetime=data.start_datetime,
            end_datetime=data.end_datetime,
            description=data.description,
            attendees=list(data.attendees),
            location=data.location,
            time_zone=data.time_zone,
        )
        event_id = _call_calendar(lambda: service.create_event(owner, event))
        return EventCreatedResponse(success=True, event_id=event_id)

    @app.get("/api/calendar/events/{event_id}", response_model=EventResponse)
    def get_event(event_id: str, user_id: Optional[str] = Query(default=None, alias="userId")) -> EventResponse:
        owner = _require_user_id(user_id)
        return _serialize_event(_call_calendar(lambda: service.get_event(owner, event_id)))

    @app.get("/api/calendar/availability", response_model=AvailabilityResponse)
    def check_availability(
        start: datetime,
        end: datetime,
        user_id: Optional[str] = Query(default=None, alias="userId"),
        time_zone: Optional[str] = Query(default=None, alias="timeZone"),
    ) -> AvailabilityResponse:
        owner = _require_user_id(user_id)
        available = _call_calendar(
            lambda: service.check_availability(owner, start, end, time_zone=time_zone)
        )
        return AvailabilityResponse(available=available)

    @app.get("/api/calendar/availability/slots", response_model=SlotsResponse)
    def find_slots(
        duration: int = Query(gt=0),
        time_min: datetime = Query(alias="timeMin"),
        time_max: datetime = Query(alias="timeMax"),
        user_id: Optional[str] = Query(default=None, alias="userId"),
        work_start: str = Query(default="09:00", alias="workStart"),
        work_end: str = Query(default="18:00", alias="workEnd"),
        time_zone: Optional[str] = Query(default=None, alias="timeZone"),
    ) -> SlotsResponse:
        owner = _require_user_id(user_id)
        slots = _call_calendar(
            lambda: service.find_available_slots(
                owner,
                duration,
                time_min,
                time_max,
                working_hours=(work_start, work_end),
                time_zone=time_zone,
            )
        )
        return SlotsResponse(slots=[_serialize_slot(slot) for slot in slots])

    @app.patch("/api/calendar/events/{event_id}", response_model=MessageResponse)
    def update_event(event_id: str, payload: EventUpdateRequest) -> MessageResponse:
        owner = _require_user_id(payload.user_id)
        if payload.event_data is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="eventData is required.",
            )
        changes: dict[str, Any] = payload.event_data.model_dump(exclude_unset=True)
        _call_calendar(lambda: service.update_appointment_event(owner, event_id, changes))
        return MessageResponse(success=True)

    @app.delete("/api/calendar/events/{event_id}", response_model=MessageResponse)
    def delete_event(event_id: str, user_id: Optional[str] = Query(default=None, alias="userId")) -> MessageResponse:
        owner = _require_user_id(user_id)
        _call_calendar(lambda: service.delete_appointment_event(owner, event_id))
        return MessageResponse(success=True)

    return app


app = create_app()
