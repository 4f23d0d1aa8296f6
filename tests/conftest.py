from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import requests

from clinic_calendar.integrations.google_calendar import (
    GOOGLE_CALENDAR_API,
    GOOGLE_TOKEN_ENDPOINT,
    GoogleCalendarClient,
    GoogleCalendarConfig,
    GoogleOAuthClient,
)
from clinic_calendar.integrations.token_store import Credential, InMemoryTokenStore

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = "" if payload is None else str(payload)

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeGoogle:
    """In-process stand-in for the Google token and Calendar endpoints."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.rejected_codes: set[str] = set()
        self.token_payload: dict[str, Any] = {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "expires_in": 3600,
            "token_type": "Bearer",
        }
        self.calendar_list: list[dict[str, Any]] = [
            {"id": "secondary@group.calendar.google.com", "primary": False},
            {"id": "doctor@example.com", "primary": True},
        ]
        self.calendar_list_status = 200
        self.refresh_status = 200
        self.refresh_count = 0
        self.revoked_tokens: set[str] = set()
        self.failing_summaries: set[str] = set()
        self.unreachable = False
        self.events: dict[str, dict[str, Any]] = {}
        self.busy: list[dict[str, str]] = []
        self.busy_queries: list[dict[str, Any]] = []
        self._next_event = 0

    # requests.Session API ------------------------------------------------------------
    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.unreachable:
            raise requests.ConnectionError("network unreachable")
        if url == GOOGLE_TOKEN_ENDPOINT:
            return self._token(kwargs["data"])

        token = kwargs.get("headers", {}).get("Authorization", "").removeprefix("Bearer ")
        if token in self.revoked_tokens:
            return FakeResponse(401, {"error": {"code": 401, "message": "Invalid Credentials"}})
        if url == f"{GOOGLE_CALENDAR_API}/users/me/calendarList":
            return FakeResponse(self.calendar_list_status, {"items": self.calendar_list})
        if url == f"{GOOGLE_CALENDAR_API}/freeBusy":
            return self._free_busy(kwargs["json"])
        if "/events" in url:
            return self._events(method, url, kwargs)
        return FakeResponse(404, {"error": "not found"})

    # Endpoint handlers --------------------------------------------------------------
    def token_calls(self) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["url"] == GOOGLE_TOKEN_ENDPOINT]

    def _token(self, data: dict[str, str]) -> FakeResponse:
        if data["grant_type"] == "authorization_code":
            if data["code"] in self.rejected_codes:
                return FakeResponse(400, {"error": "invalid_grant"})
            return FakeResponse(200, dict(self.token_payload))

        if self.refresh_status != 200:
            return FakeResponse(self.refresh_status, {"error": "invalid_grant"})
        self.refresh_count += 1
        return FakeResponse(
            200, {"access_token": f"refreshed-{self.refresh_count}", "expires_in": 3600}
        )

    def _free_busy(self, body: dict[str, Any]) -> FakeResponse:
        self.busy_queries.append(body)
        calendar_id = body["items"][0]["id"]
        return FakeResponse(200, {"calendars": {calendar_id: {"busy": list(self.busy)}}})

    def _events(self, method: str, url: str, kwargs: dict[str, Any]) -> FakeResponse:
        event_id = url.rsplit("/events/", 1)[1] if "/events/" in url else None
        if method == "POST":
            body = kwargs["json"]
            if body.get("summary") in self.failing_summaries:
                return FakeResponse(500, {"error": "backend error"})
            self._next_event += 1
            new_id = f"evt-{self._next_event}"
            self.events[new_id] = dict(body)
            return FakeResponse(200, {"id": new_id, **body})
        if method == "GET" and event_id is None:
            items = [{"id": key, **value} for key, value in self.events.items()]
            return FakeResponse(200, {"items": items})
        if event_id not in self.events:
            return FakeResponse(404, {"error": "not found"})
        if method == "GET":
            return FakeResponse(200, {"id": event_id, **self.events[event_id]})
        if method == "PATCH":
            self.events[event_id].update(kwargs["json"])
            return FakeResponse(200, {"id": event_id, **self.events[event_id]})
        if method == "DELETE":
            del self.events[event_id]
            return FakeResponse(204)
        return FakeResponse(405)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
def config() -> GoogleCalendarConfig:
    return GoogleCalendarConfig(
        client_id="client",
        client_secret="secret",
        redirect_uri="https://clinic.example.com/api/calendar/callback",
    )


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def oauth(config: GoogleCalendarConfig, token_store: InMemoryTokenStore, google: FakeGoogle) -> GoogleOAuthClient:
    return GoogleOAuthClient(config, token_store, session=google, clock=lambda: NOW)


@pytest.fixture
def calendar_client(config: GoogleCalendarConfig, google: FakeGoogle) -> GoogleCalendarClient:
    return GoogleCalendarClient(config, session=google)


@pytest.fixture
def credential() -> Credential:
    return Credential(
        user_id="user-1",
        access_token="access-1",
        refresh_token="refresh-1",
        calendar_id="doctor@example.com",
        expires_at=NOW + timedelta(hours=1),
    )
