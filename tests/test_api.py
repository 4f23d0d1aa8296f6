from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from clinic_calendar.api.main import create_app
from clinic_calendar.settings import Settings
from clinic_calendar.sync.models import Appointment, Client
from clinic_calendar.sync.stores import InMemoryAppointmentStore, InMemoryClientStore


def _settings(**overrides) -> Settings:
    values = {
        "google_client_id": "client",
        "google_client_secret": "secret",
        "google_redirect_uri": "https://clinic.example.com/api/calendar/callback",
        "app_url": "https://clinic.example.com",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def appointments() -> InMemoryAppointmentStore:
    return InMemoryAppointmentStore(
        [
            Appointment(
                id="a-1",
                user_id="user-1",
                client_id="client-1",
                scheduled_datetime="2024-05-10T14:00:00-03:00",
            ),
            Appointment(
                id="a-2",
                user_id="user-1",
                client_id="client-2",
                scheduled_datetime="2024-05-10T15:00:00-03:00",
                duration_minutes=30,
            ),
        ]
    )


@pytest.fixture
def api(token_store, appointments, google) -> TestClient:
    clients = InMemoryClientStore(
        [
            Client(id="client-1", name="Maria Souza", email="maria@example.com"),
            Client(id="client-2", name="Ana Lima"),
        ]
    )
    app = create_app(
        _settings(),
        token_store=token_store,
        appointments=appointments,
        clients=clients,
        session=google,
    )
    return TestClient(app)


def _redirect_query(response) -> dict[str, list[str]]:
    assert response.status_code == 302
    location = urlsplit(response.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == (
        "https://clinic.example.com/agendamentos/configuracao"
    )
    return parse_qs(location.query)


def _connect(api: TestClient) -> None:
    response = api.get(
        "/api/calendar/callback",
        params={"code": "good-code", "state": "user-1"},
        follow_redirects=False,
    )
    assert _redirect_query(response) == {"success": ["google_connected"]}


def test_begin_authorization_returns_url(api: TestClient) -> None:
    response = api.post("/api/calendar/auth", params={"userId": "user-1"})

    assert response.status_code == 200
    query = parse_qs(urlsplit(response.json()["authUrl"]).query)
    assert query["state"] == ["user-1"]
    assert query["access_type"] == ["offline"]


def test_begin_authorization_requires_configuration(token_store, google) -> None:
    app = create_app(_settings(google_client_secret=""), token_store=token_store, session=google)

    response = TestClient(app).post("/api/calendar/auth")

    assert response.status_code == 500


def test_callback_stores_credential(api: TestClient, token_store) -> None:
    _connect(api)

    assert token_store.get("user-1").calendar_id == "doctor@example.com"
    connection = api.get("/api/calendar/connection", params={"userId": "user-1"}).json()
    assert connection == {"connected": True, "calendarId": "doctor@example.com"}


def test_callback_reports_provider_error(api: TestClient) -> None:
    response = api.get(
        "/api/calendar/callback", params={"error": "access_denied"}, follow_redirects=False
    )

    assert _redirect_query(response) == {"error": ["oauth_error"]}


def test_callback_requires_code_and_state(api: TestClient) -> None:
    response = api.get("/api/calendar/callback", params={"code": "good-code"}, follow_redirects=False)

    assert _redirect_query(response) == {"error": ["missing_params"]}


def test_callback_collapses_exchange_failures(api: TestClient, google, token_store) -> None:
    google.rejected_codes.add("bad-code")

    response = api.get(
        "/api/calendar/callback",
        params={"code": "bad-code", "state": "user-1"},
        follow_redirects=False,
    )

    assert _redirect_query(response) == {"error": ["connection_failed"]}
    assert api.get("/api/calendar/connection", params={"userId": "user-1"}).json() == {
        "connected": False,
        "calendarId": None,
    }


def test_sync_requires_user_id(api: TestClient) -> None:
    assert api.post("/api/calendar/sync", json={}).status_code == 400
    assert api.post("/api/calendar/sync").status_code == 400


def test_sync_batch_and_status(api: TestClient, appointments) -> None:
    _connect(api)

    response = api.post("/api/calendar/sync", json={"userId": "user-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["syncedCount"] == 2
    assert body["totalProcessed"] == 2
    assert body["failedCount"] == 0
    assert body["results"] == [
        {"appointmentId": "a-1", "eventId": "evt-1", "success": True},
        {"appointmentId": "a-2", "eventId": "evt-2", "success": True},
    ]
    assert appointments.get("a-2").google_event_id == "evt-2"

    status_body = api.get("/api/calendar/sync/status", params={"userId": "user-1"}).json()
    assert status_body["eventsInSync"] == 2
    assert status_body["eventsOutOfSync"] == 0
    assert status_body["totalEvents"] == 2
    assert {item["appointmentId"] for item in status_body["history"]} == {"a-1", "a-2"}
    assert status_body["history"][0]["status"] == "completed"
    assert "lastSyncCheck" in status_body


def test_sync_with_nothing_pending(api: TestClient, appointments) -> None:
    _connect(api)
    api.post("/api/calendar/sync", json={"userId": "user-1"})

    body = api.post("/api/calendar/sync", json={"userId": "user-1"}).json()

    assert body["results"] == []
    assert body["syncedCount"] == 0
    assert body["message"] == "No appointments to sync."


def test_sync_reports_unexpected_failure(api: TestClient, appointments, monkeypatch) -> None:
    def explode(user_id: str):
        raise RuntimeError("database offline")

    monkeypatch.setattr(appointments, "list_unsynced", explode)

    response = api.post("/api/calendar/sync", json={"userId": "user-1"})

    assert response.status_code == 500


def test_sync_status_requires_user_id(api: TestClient) -> None:
    assert api.get("/api/calendar/sync/status").status_code == 400


def test_event_endpoints(api: TestClient, google) -> None:
    _connect(api)
    api.post("/api/calendar/sync", json={"userId": "user-1"})

    listed = api.get("/api/calendar/events", params={"userId": "user-1"}).json()["events"]
    assert [event["id"] for event in listed] == ["evt-1", "evt-2"]
    assert listed[0]["attendees"] == ["maria@example.com"]

    patched = api.patch(
        "/api/calendar/events/evt-1",
        json={"userId": "user-1", "eventData": {"startDateTime": "2024-05-10T16:00:00-03:00"}},
    )
    assert patched.status_code == 200
    assert google.calls[-1]["json"] == {
        "start": {"dateTime": "2024-05-10T16:00:00-03:00", "timeZone": "America/Sao_Paulo"}
    }

    deleted = api.delete("/api/calendar/events/evt-2", params={"userId": "user-1"})
    assert deleted.status_code == 200
    assert "evt-2" not in google.events


def test_event_endpoints_map_errors(api: TestClient, google) -> None:
    assert api.delete("/api/calendar/events/evt-1", params={"userId": "user-1"}).status_code == 400

    _connect(api)
    assert api.delete("/api/calendar/events/missing", params={"userId": "user-1"}).status_code == 502

    google.revoked_tokens.update({"access-1", "refreshed-1"})
    response = api.delete("/api/calendar/events/evt-1", params={"userId": "user-1"})
    assert response.status_code == 401


def test_disconnect(api: TestClient, token_store) -> None:
    _connect(api)

    response = api.post("/api/calendar/disconnect", json={"userId": "user-1"})

    assert response.json()["success"] is True
    assert api.get("/api/calendar/connection", params={"userId": "user-1"}).json()["connected"] is False
    assert api.post("/api/calendar/disconnect", json={}).status_code == 400


def test_sync_single_appointment(api: TestClient, appointments) -> None:
    _connect(api)

    response = api.post("/api/calendar/sync/a-2", json={"userId": "user-1"})

    assert response.status_code == 200
    assert response.json() == {"appointmentId": "a-2", "eventId": "evt-1", "success": True}
    assert appointments.get("a-1").calendar_synced is False
    assert api.post("/api/calendar/sync/missing", json={"userId": "user-1"}).status_code == 404
    assert api.post("/api/calendar/sync/a-1", json={}).status_code == 400


def test_sync_survives_failing_client_lookup(token_store, appointments, google) -> None:
    class BrokenClientStore:
        def get_by_id(self, client_id: str):
            raise LookupError(f"client row {client_id} not found")

    api = TestClient(
        create_app(
            _settings(),
            token_store=token_store,
            appointments=appointments,
            clients=BrokenClientStore(),
            session=google,
        )
    )
    _connect(api)

    body = api.post("/api/calendar/sync", json={"userId": "user-1"}).json()

    assert body["syncedCount"] == 2
    assert {event["summary"] for event in google.events.values()} == {"Agendamento - Cliente"}


def test_create_and_get_event(api: TestClient, google) -> None:
    _connect(api)

    created = api.post(
        "/api/calendar/events",
        json={
            "userId": "user-1",
            "eventData": {
                "summary": "Retorno",
                "startDateTime": "2024-05-12T10:00:00-03:00",
                "endDateTime": "2024-05-12T10:30:00-03:00",
                "attendees": ["maria@example.com"],
            },
        },
    )

    assert created.status_code == 200
    event_id = created.json()["eventId"]
    assert google.events[event_id]["attendees"] == [{"email": "maria@example.com"}]

    fetched = api.get(f"/api/calendar/events/{event_id}", params={"userId": "user-1"})
    assert fetched.status_code == 200
    assert fetched.json()["summary"] == "Retorno"
    assert api.get("/api/calendar/events/missing", params={"userId": "user-1"}).status_code == 502
    assert api.post("/api/calendar/events", json={"userId": "user-1"}).status_code == 400


def test_availability_endpoints(api: TestClient, google) -> None:
    _connect(api)
    google.busy = [{"start": "2024-05-10T10:00:00-03:00", "end": "2024-05-10T11:00:00-03:00"}]

    busy = api.get(
        "/api/calendar/availability",
        params={
            "userId": "user-1",
            "start": "2024-05-10T10:30:00-03:00",
            "end": "2024-05-10T11:30:00-03:00",
        },
    )
    assert busy.json() == {"available": False}

    slots = api.get(
        "/api/calendar/availability/slots",
        params={
            "userId": "user-1",
            "duration": 60,
            "timeMin": "2024-05-10T09:00:00-03:00",
            "timeMax": "2024-05-10T12:00:00-03:00",
        },
    )
    assert slots.status_code == 200
    starts = [slot["start"] for slot in slots.json()["slots"]]
    assert starts == ["2024-05-10T09:00:00-03:00", "2024-05-10T11:00:00-03:00"]


def test_availability_endpoints_validate_input(api: TestClient) -> None:
    params = {"timeMin": "2024-05-10T09:00:00-03:00", "timeMax": "2024-05-10T12:00:00-03:00"}

    assert api.get("/api/calendar/availability/slots", params={**params, "duration": 30}).status_code == 400
    assert (
        api.get("/api/calendar/availability/slots", params={**params, "userId": "user-1", "duration": 0}).status_code
        == 422
    )
    _connect(api)
    invalid_hours = {**params, "userId": "user-1", "duration": 30, "workStart": "18:00", "workEnd": "09:00"}
    assert api.get("/api/calendar/availability/slots", params=invalid_hours).status_code == 400
