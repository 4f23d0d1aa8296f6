from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import quote, urlencode

import requests

from .token_store import Credential, TokenStore, TokenStoreError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"  # noqa: S105 - endpoint URL
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)

EVENT_FIELDS = frozenset(
    {
        "summary",
        "description",
        "start_datetime",
        "end_datetime",
        "attendees",
        "location",
        "time_zone",
    }
)


class CalendarSyncError(Exception):
    """Base error for Google Calendar integration issues."""


class AuthorizationError(CalendarSyncError):
    """Raised when the OAuth flow cannot produce a usable credential."""


class ExchangeFailed(AuthorizationError):
    """Raised when the token endpoint rejects an authorization code."""


class CalendarLookupFailed(AuthorizationError):
    """Raised when the user's primary calendar cannot be determined."""


class PersistFailed(AuthorizationError):
    """Raised when a freshly obtained credential cannot be stored."""


class TokenRefreshFailed(AuthorizationError):
    """Raised when an access token cannot be renewed."""


class NotConnected(CalendarSyncError):
    """Raised when a user has no usable credential."""


class Unauthorized(CalendarSyncError):
    """Raised when Google rejects the access token."""


class RemoteError(CalendarSyncError):
    """Raised for any other failed call to Google Calendar."""


@dataclass(slots=True)
class GoogleCalendarConfig:
    """Configuration required to interact with Google OAuth and Calendar."""

    client_id: str
    client_secret: str
    redirect_uri: str
    auth_endpoint: str = GOOGLE_AUTH_ENDPOINT
    token_endpoint: str = GOOGLE_TOKEN_ENDPOINT
    api_base_url: str = GOOGLE_CALENDAR_API
    scopes: tuple[str, ...] = GOOGLE_CALENDAR_SCOPES
    time_zone: str = "America/Sao_Paulo"
    request_timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


@dataclass(slots=True)
class EventPayload:
    """Normalized representation of an appointment sent to Google Calendar."""

    summary: str
    start_datetime: str
    end_datetime: str
    description: str = ""
    attendees: list[str] = field(default_factory=list)
    location: str = ""
    time_zone: str | None = None

    def to_google_body(self, default_time_zone: str) -> dict[str, Any]:
        return build_event_body(
            {
                "summary": self.summary,
                "description": self.description,
                "start_datetime": self.start_datetime,
                "end_datetime": self.end_datetime,
                "attendees": self.attendees,
                "location": self.location,
                "time_zone": self.time_zone,
            },
            default_time_zone,
        )


@dataclass(slots=True)
class CalendarEvent:
    """Event as returned by Google Calendar."""

    id: str
    summary: str
    start: str
    end: str
    description: str = ""
    location: str = ""
    attendees: list[str] = field(default_factory=list)
    html_link: str = ""


@dataclass(frozen=True, slots=True)
class BusyPeriod:
    """Interval reported as busy by the free/busy query."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


_TIMESTAMP_PATTERN = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2})?)"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>Z|[+-]\d{2}(?::?\d{2})?)?$"
)


def parse_datetime(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as emitted by Google or Postgres.

    Accepts a trailing ``Z``, hour-only offsets such as ``+00`` and
    fractional seconds of any precision.
    """

    match = _TIMESTAMP_PATTERN.match(value.strip())
    if match is None:
        return datetime.fromisoformat(value)

    normalized = match["base"]
    if match["fraction"]:
        normalized += "." + match["fraction"][:6].ljust(6, "0")
    offset = match["offset"]
    if offset == "Z":
        normalized += "+00:00"
    elif offset:
        digits = offset[1:].replace(":", "")
        normalized += f"{offset[0]}{digits[:2]}:{digits[2:4] or '00'}"
    return datetime.fromisoformat(normalized)


def build_event_body(changes: Mapping[str, Any], default_time_zone: str) -> dict[str, Any]:
    """Translate event fields into a Google Calendar request body.

    Only the keys present in ``changes`` are emitted, so the same helper
    serves full inserts and partial patches.
    """

    unknown = set(changes) - EVENT_FIELDS
    if unknown:
        raise ValueError(f"Unknown event fields: {', '.join(sorted(unknown))}")

    time_zone = changes.get("time_zone") or default_time_zone
    body: dict[str, Any] = {}
    if changes.get("summary"):
        body["summary"] = changes["summary"]
    for key in ("description", "location"):
        if changes.get(key) is not None:
            body[key] = changes[key]
    if changes.get("start_datetime"):
        body["start"] = {"dateTime": changes["start_datetime"], "timeZone": time_zone}
    if changes.get("end_datetime"):
        body["end"] = {"dateTime": changes["end_datetime"], "timeZone": time_zone}
    if changes.get("attendees") is not None:
        body["attendees"] = [{"email": email} for email in changes["attendees"]]
    return body


Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GoogleOAuthClient:
    """Runs the authorization-code flow and renews access tokens."""

    def __init__(
        self,
        config: GoogleCalendarConfig,
        token_store: TokenStore,
        *,
        session: requests.Session | None = None,
        clock: Clock | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._token_store = token_store
        self._session = session or requests.Session()
        self._clock = clock or _utcnow
        self._logger = logger_instance or logger

    def build_authorization_url(
        self, scopes: Iterable[str] | None = None, *, state: str | None = None
    ) -> str:
        requested = sorted(set(scopes if scopes is not None else self.config.scopes))
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(requested),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{self.config.auth_endpoint}?{urlencode(params, quote_via=quote)}"

    def exchange_code_for_credential(
        self,
        authorization_code: str,
        redirect_uri: str | None = None,
        *,
        user_id: str,
    ) -> Credential:
        payload = {
            "grant_type": "authorization_code",
            "code": authorization_code,
            "redirect_uri": redirect_uri or self.config.redirect_uri,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        token_payload = self._post_token(payload, ExchangeFailed, "exchange authorization code")
        access_token = token_payload.get("access_token")
        if not access_token:
            raise ExchangeFailed("Token response did not contain an access token")

        calendar_id = self._lookup_primary_calendar(access_token)
        credential = Credential(
            user_id=user_id,
            access_token=access_token,
            refresh_token=token_payload.get("refresh_token"),
            calendar_id=calendar_id,
            expires_at=self._expires_at(token_payload),
        )
        try:
            self._token_store.put(user_id, credential)
        except TokenStoreError as exc:
            self._logger.exception("Unable to store credential for user %s: %s", user_id, exc)
            raise PersistFailed("Failed to save Google Calendar credential") from exc

        self._logger.info("Connected Google Calendar %s for user %s", calendar_id, user_id)
        return credential

    def refresh_credential(self, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise TokenRefreshFailed("No refresh token available")

        payload = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        token_payload = self._post_token(payload, TokenRefreshFailed, "refresh access token")
        access_token = token_payload.get("access_token")
        if not access_token:
            raise TokenRefreshFailed("Refresh response did not contain an access token")

        refreshed = replace(
            credential,
            access_token=access_token,
            refresh_token=token_payload.get("refresh_token") or credential.refresh_token,
            expires_at=self._expires_at(token_payload),
        )
        self._logger.debug(
            "Refreshed access token for user %s expiring at %s",
            credential.user_id,
            refreshed.expires_at,
        )
        return refreshed

    # Internal helpers -------------------------------------------------------------
    def _post_token(
        self,
        payload: dict[str, str],
        error_type: type[AuthorizationError],
        action: str,
    ) -> dict[str, Any]:
        try:
            response = self._session.request(
                "POST",
                self.config.token_endpoint,
                data=payload,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            self._logger.exception("Failed to %s: %s", action, exc)
            raise error_type(f"Failed to {action}") from exc

        if not response.ok:
            self._logger.error("Failed to %s: token endpoint returned %s", action, response.status_code)
            raise error_type(f"Failed to {action}: token endpoint returned {response.status_code}")
        return _read_json(response)

    def _lookup_primary_calendar(self, access_token: str) -> str:
        try:
            response = self._session.request(
                "GET",
                f"{self.config.api_base_url}/users/me/calendarList",
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            self._logger.exception("Calendar list request failed: %s", exc)
            raise CalendarLookupFailed("Failed to list calendars") from exc

        if not response.ok:
            self._logger.error("Calendar list request returned %s", response.status_code)
            raise CalendarLookupFailed(f"Calendar list request returned {response.status_code}")

        for item in _read_json(response).get("items", []):
            if item.get("primary") is True and item.get("id"):
                return item["id"]
        raise CalendarLookupFailed("Primary calendar not found")

    def _expires_at(self, token_payload: Mapping[str, Any]) -> datetime | None:
        expires_in = token_payload.get("expires_in")
        if isinstance(expires_in, (int, float)):
            return self._clock() + timedelta(seconds=float(expires_in))
        return None


class GoogleCalendarClient:
    """Client for event operations on a user's Google Calendar."""

    def __init__(
        self,
        config: GoogleCalendarConfig,
        *,
        session: requests.Session | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._session = session or requests.Session()
        self._logger = logger_instance or logger

    # Calendar operations -----------------------------------------------------------
    def create_event(self, credential: Credential, payload: EventPayload) -> str:
        response = self._request(
            "POST",
            credential,
            "/events",
            params={"sendUpdates": "all"},
            json=payload.to_google_body(self.config.time_zone),
        )
        event_id = _read_json(response).get("id")
        if not event_id:
            raise RemoteError("Google Calendar did not return an event id")
        self._logger.info(
            "Created event %s (%s - %s)", event_id, payload.start_datetime, payload.end_datetime
        )
        return event_id

    def update_event(self, credential: Credential, event_id: str, changes: Mapping[str, Any]) -> None:
        body = build_event_body(changes, self.config.time_zone)
        self._request(
            "PATCH",
            credential,
            f"/events/{quote(event_id, safe='')}",
            params={"sendUpdates": "all"},
            json=body,
        )
        self._logger.info("Updated event %s (%s)", event_id, ", ".join(sorted(body)))

    def delete_event(self, credential: Credential, event_id: str) -> None:
        self._request(
            "DELETE",
            credential,
            f"/events/{quote(event_id, safe='')}",
            params={"sendUpdates": "all"},
        )
        self._logger.info("Deleted event %s", event_id)

    def get_event(self, credential: Credential, event_id: str) -> CalendarEvent:
        response = self._request("GET", credential, f"/events/{quote(event_id, safe='')}")
        try:
            return _parse_event(_read_json(response))
        except KeyError as exc:
            raise RemoteError(f"Google Calendar returned a malformed event: missing {exc}") from exc

    def query_busy(
        self,
        credential: Credential,
        time_min: datetime,
        time_max: datetime,
        *,
        time_zone: str | None = None,
    ) -> list[BusyPeriod]:
        """Return the busy periods of the user's calendar inside the window."""

        if time_max <= time_min:
            raise ValueError("time_max must be after time_min")

        calendar_id = credential.calendar_id or ""
        response = self._request(
            "POST",
            credential,
            "/freeBusy",
            json={
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "timeZone": time_zone or self.config.time_zone,
                "items": [{"id": calendar_id}],
            },
            scoped=False,
        )
        calendars = _read_json(response).get("calendars")
        entry = calendars.get(calendar_id) if isinstance(calendars, dict) else None
        if not isinstance(entry, dict):
            raise RemoteError("Free/busy response did not include the requested calendar")
        if entry.get("errors"):
            raise RemoteError(f"Free/busy query failed: {entry['errors']}")

        periods: list[BusyPeriod] = []
        for window in entry.get("busy", []):
            try:
                periods.append(
                    BusyPeriod(start=parse_datetime(window["start"]), end=parse_datetime(window["end"]))
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise RemoteError(f"Free/busy response contained an invalid window: {window}") from exc
        self._logger.debug("Free/busy query returned %s busy periods", len(periods))
        return periods

    def list_events(
        self,
        credential: Credential,
        *,
        time_min: str | None = None,
        time_max: str | None = None,
        max_results: int = 100,
    ) -> list[CalendarEvent]:
        params: dict[str, Any] = {
            "timeMin": time_min or _utcnow().isoformat(),
            "maxResults": max_results,
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if time_max:
            params["timeMax"] = time_max
        response = self._request("GET", credential, "/events", params=params)

        events: list[CalendarEvent] = []
        for raw in _read_json(response).get("items", []):
            try:
                events.append(_parse_event(raw))
            except KeyError as exc:
                self._logger.warning("Unable to parse event %s: %s", raw.get("id"), exc)
        self._logger.info("Loaded %s events from Google Calendar", len(events))
        return events

    # Internal helpers -------------------------------------------------------------
    def _request(
        self,
        method: str,
        credential: Credential,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Mapping[str, Any] | None = None,
        scoped: bool = True,
    ) -> requests.Response:
        if not credential.is_connected:
            raise NotConnected(f"Google Calendar is not connected for user '{credential.user_id}'")

        if scoped:
            calendar_id = quote(credential.calendar_id or "", safe="")
            url = f"{self.config.api_base_url}/calendars/{calendar_id}{path}"
        else:
            url = f"{self.config.api_base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                headers={"Authorization": credential.authorization_header()},
                params=params,
                json=json,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            self._logger.exception("%s %s failed: %s", method, path, exc)
            raise RemoteError("Google Calendar request failed") from exc

        if response.status_code == 401:
            raise Unauthorized("Google rejected the access token")
        if not response.ok:
            self._logger.error("%s %s returned %s: %s", method, path, response.status_code, response.text)
            raise RemoteError(f"Google Calendar returned {response.status_code}")
        return response


def _read_json(response: requests.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _parse_event(raw: Mapping[str, Any]) -> CalendarEvent:
    start = raw["start"]
    end = raw["end"]
    return CalendarEvent(
        id=raw["id"],
        summary=raw.get("summary", ""),
        start=start.get("dateTime") or start.get("date", ""),
        end=end.get("dateTime") or end.get("date", ""),
        description=raw.get("description", ""),
        location=raw.get("location", ""),
        attendees=[attendee.get("email", "") for attendee in raw.get("attendees", [])],
        html_link=raw.get("htmlLink", ""),
    )
