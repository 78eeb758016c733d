"""HTTP tests for the FastAPI app."""
import asyncio
import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

import config
import main
import realtime
from conftest import at
from ledger import MemoryLedger
from services import QueueService

PASSCODE = "test-pass"


@pytest.fixture
def api_service(clock):
    return QueueService(MemoryLedger(), clock)


@pytest.fixture
def client(api_service, monkeypatch):
    """Test client around an in-memory service; lifespan is not run."""
    monkeypatch.setattr(config, "ADMIN_PASS", PASSCODE)
    monkeypatch.setattr(realtime, "REDIS_URL", None)
    return TestClient(main.create_app(api_service))


def book(client, mobile="9998887777", session="morning", name="Asha"):
    return client.post(
        "/bookings",
        json={"mobile": mobile, "patient_name": name, "session": session, "confirmed_human": True},
    )


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["redis"] == "unavailable"


def test_session_overview(client):
    data = client.get("/sessions/morning").json()
    assert data["is_open"] is True
    assert data["state"] == "open"
    assert data["next_queue_number"] == 1
    assert data["session"]["start_time"] == "10:00:00"


def test_unknown_session(client):
    response = client.get("/sessions/night")
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


def test_booking_flow(client):
    first = book(client)
    assert first.status_code == 201
    body = first.json()
    assert body["queue_number"] == 1
    assert body["estimated_time"] == "2026-10-19T10:00:00"
    assert body["position"] == 1

    second = book(client, mobile="9998886666").json()
    assert second["estimated_time"] == "2026-10-19T10:10:00"

    fetched = client.get(f"/bookings/{second['id']}").json()
    assert fetched["waiting_ahead"] == 1

    mine = client.get("/bookings", params={"mobile": "999 888 7777"}).json()
    assert mine["id"] == body["id"]


def test_booking_requires_human_confirmation(client):
    response = client.post(
        "/bookings", json={"mobile": "9998887777", "session": "morning"}
    )
    assert response.status_code == 422
    assert response.json()["message"] == "Please confirm you are not a robot."


def test_invalid_mobile(client):
    response = book(client, mobile="12ab")
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


def test_already_booked(client):
    book(client)
    response = book(client)
    assert response.status_code == 409
    assert response.json()["error"] == "already_booked"


def test_country_code_spelling_is_the_same_patient(client):
    assert book(client, mobile="9998887777").status_code == 201
    response = book(client, mobile="+91 99988 87777")
    assert response.status_code == 409
    assert response.json()["error"] == "already_booked"


def test_window_closed(client, clock):
    clock.set(at(8, 0))
    response = book(client)
    assert response.status_code == 403
    assert response.json()["reason"] == "not_yet_open"


def test_rate_limited(client, monkeypatch):
    monkeypatch.setattr(main, "check_rate_limit", lambda *args, **kwargs: False)
    assert book(client).status_code == 429


def test_unknown_booking(client):
    assert client.get("/bookings/missing").status_code == 404
    assert client.get("/bookings", params={"mobile": "9998887777"}).status_code == 404


def test_public_queue_masks_mobiles(client):
    book(client)
    bookings = client.get("/queue/morning").json()["bookings"]
    assert bookings[0]["mobile"] == "******7777"


def test_staff_endpoints_require_passcode(client):
    assert client.get("/admin/board", params={"passcode": "wrong"}).status_code == 401
    assert client.post("/admin/new-day", params={"passcode": "wrong"}).status_code == 401


def test_admin_actions(client):
    booking = book(client).json()
    other = book(client, mobile="9998886666").json()

    board = client.post(
        "/admin/action",
        json={"passcode": PASSCODE, "action": "consulted", "booking_id": booking["id"]},
    ).json()
    morning = {b["queue_number"]: b for b in board["morning"]}
    assert morning[1]["status"] == "consulted"
    assert morning[2]["estimated_time"] == "2026-10-19T10:00:00"

    again = client.post(
        "/admin/action",
        json={"passcode": PASSCODE, "action": "no_show", "booking_id": booking["id"]},
    )
    assert again.status_code == 409

    bad = client.post(
        "/admin/action",
        json={"passcode": PASSCODE, "action": "delete", "booking_id": other["id"]},
    )
    assert bad.status_code == 400

    stats = client.get("/admin/stats", params={"passcode": PASSCODE}).json()
    assert stats["total_bookings"] == 2
    assert stats["patients_consulted"] == 1


def test_availability_and_session_controls(client):
    response = client.post("/admin/availability", json={"passcode": PASSCODE, "available": False})
    assert response.json()["doctor_available"] is False
    assert book(client).json()["reason"] == "unavailable"

    client.post("/admin/availability", json={"passcode": PASSCODE, "available": True})
    closed = client.post("/admin/sessions/morning/close", params={"passcode": PASSCODE}).json()
    assert closed["morning"]["bookings_closed"] is True
    assert book(client).json()["reason"] == "closed"

    client.post("/admin/sessions/morning/reopen", params={"passcode": PASSCODE})
    assert book(client).status_code == 201


def test_settings_patch_and_new_day(client):
    response = client.patch(
        "/admin/settings",
        params={"passcode": PASSCODE},
        json={"minutes_per_patient": 15, "evening": {"booking_open_time": "17:30"}},
    )
    data = response.json()
    assert data["minutes_per_patient"] == 15
    assert data["evening"]["booking_open_time"] == "17:30:00"
    assert data["evening"]["start_time"] == "17:00:00"

    invalid = client.patch(
        "/admin/settings", params={"passcode": PASSCODE}, json={"minutes_per_patient": 0}
    )
    assert invalid.status_code == 422

    client.post("/admin/sessions/evening/close", params={"passcode": PASSCODE})
    reset = client.post("/admin/new-day", params={"passcode": PASSCODE}).json()
    assert reset["evening"]["bookings_closed"] is False


def read_events(response):
    return [json.loads(line[len("data: "):]) for line in response.iter_lines() if line.startswith("data: ")]


def test_event_stream_sends_fresh_snapshot_after_a_booking(client, api_service):
    feed = api_service.feed

    def book_once_listening():
        deadline = time.monotonic() + 5
        while feed.subscriber_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        api_service.create_booking("9998887777", "Asha", "morning")

    booker = threading.Thread(target=book_once_listening, daemon=True)
    booker.start()
    with client.stream("GET", "/events", params={"limit": 2}) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = read_events(response)
    booker.join(timeout=5)

    assert [e["type"] for e in events] == ["snapshot", "booking_created"]
    morning = events[1]["data"]["morning"]
    assert [b["queue_number"] for b in morning] == [1]
    assert morning[0]["mobile"] == "******7777"
    assert feed.subscriber_count == 0


def test_event_stream_rejects_non_positive_limit(client, api_service):
    response = client.get("/events", params={"limit": 0})
    assert response.status_code == 422
    assert api_service.feed.subscriber_count == 0


def test_unstarted_event_stream_holds_no_subscription(api_service):
    stream = main.queue_event_stream(api_service, request=None)
    assert api_service.feed.subscriber_count == 0
    asyncio.run(stream.aclose())
    assert api_service.feed.subscriber_count == 0
