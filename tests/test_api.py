from __future__ import annotations

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from openreserve import api, database
from openreserve.models import Event, EventStatus, Reservation, ReservationStatus

API = "/api/v1"


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client, email: str, password: str) -> str:
    response = client.post(f"{API}/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["access_token"]


def _register(client, email: str) -> str:
    response = client.post(
        f"{API}/auth/register",
        json={"name": email.split("@")[0], "email": email, "password": "secret123"},
    )
    assert response.status_code == 201, response.text
    return response.json()["access_token"]


@pytest.fixture()
def admin_token(client):
    # The lifespan bootstraps the configured admin account.
    return _login(client, "admin@event.com", "Admin123!")


def _create_published_event(client, admin_token: str, *, max_capacity: int = 1) -> dict:
    payload = {
        "title": "Launch Party",
        "description": "All welcome",
        "date": (date.today() + timedelta(days=5)).isoformat(),
        "time": "18:00",
        "location": "HQ",
        "max_capacity": max_capacity,
    }
    created = client.post(f"{API}/events", json=payload, headers=_auth(admin_token))
    assert created.status_code == 201, created.text
    event = created.json()["event"]
    assert event["status"] == "DRAFT"
    published = client.patch(
        f"{API}/events/{event['id']}/publish", headers=_auth(admin_token)
    )
    assert published.status_code == 200
    return published.json()["event"]


def test_register_login_and_me(client):
    token = _register(client, "newbie@example.com")

    me = client.get(f"{API}/auth/me", headers=_auth(token))

    assert me.status_code == 200
    body = me.json()
    assert body["user"]["email"] == "newbie@example.com"
    assert body["user"]["role"] == "Participant"
    assert "auth_time" in body["session"]


def test_register_duplicate_email(client):
    _register(client, "twice@example.com")
    response = client.post(
        f"{API}/auth/register",
        json={"email": "twice@example.com", "password": "secret123"},
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Conflict", "message": "Email already registered"}


def test_register_validates_password_length(client):
    response = client.post(
        f"{API}/auth/register", json={"email": "short@example.com", "password": "123"}
    )
    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"


def test_bad_credentials_and_missing_token(client):
    response = client.post(
        f"{API}/auth/login", json={"email": "admin@event.com", "password": "wrong"}
    )
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid credentials"

    anonymous = client.get(f"{API}/auth/me")
    assert anonymous.status_code == 401
    assert anonymous.json()["error"] == "Unauthenticated"


def test_refresh_returns_new_token(client):
    token = _register(client, "refresh@example.com")
    response = client.post(f"{API}/auth/refresh", headers=_auth(token))
    assert response.status_code == 200
    assert response.json()["token_type"] == "bearer"


def test_participant_cannot_create_events(client):
    token = _register(client, "nope@example.com")
    response = client.post(
        f"{API}/events",
        json={
            "title": "x",
            "date": date.today().isoformat(),
            "time": "10:00",
            "location": "y",
            "max_capacity": 1,
        },
        headers=_auth(token),
    )
    assert response.status_code == 403


def test_event_capacity_must_be_positive(client, admin_token):
    response = client.post(
        f"{API}/events",
        json={
            "title": "Zero",
            "date": date.today().isoformat(),
            "time": "10:00",
            "location": "Nowhere",
            "max_capacity": 0,
        },
        headers=_auth(admin_token),
    )
    assert response.status_code == 422


def test_public_listing_hides_drafts(client, admin_token):
    published = _create_published_event(client, admin_token)
    draft = client.post(
        f"{API}/events",
        json={
            "title": "Secret",
            "date": date.today().isoformat(),
            "time": "09:00",
            "location": "Back room",
            "max_capacity": 3,
        },
        headers=_auth(admin_token),
    ).json()["event"]

    listing = client.get(f"{API}/events")
    assert listing.status_code == 200
    assert [e["id"] for e in listing.json()["events"]] == [published["id"]]

    assert client.get(f"{API}/events/{draft['id']}").status_code == 404
    assert (
        client.get(f"{API}/events/{draft['id']}", headers=_auth(admin_token)).status_code
        == 200
    )
    admin_listing = client.get(f"{API}/events/admin", headers=_auth(admin_token))
    assert admin_listing.json()["pagination"]["total_events"] == 2


def test_full_reservation_flow(client, admin_token):
    event = _create_published_event(client, admin_token, max_capacity=1)
    first = _register(client, "first@example.com")
    second = _register(client, "second@example.com")

    first_res = client.post(
        f"{API}/reservations", json={"event_id": event["id"]}, headers=_auth(first)
    )
    assert first_res.status_code == 201
    reservation_id = first_res.json()["reservation"]["id"]
    assert first_res.json()["reservation"]["status"] == "PENDING"

    duplicate = client.post(
        f"{API}/reservations", json={"event_id": event["id"]}, headers=_auth(first)
    )
    assert duplicate.status_code == 400
    assert duplicate.json()["error"] == "Conflict"

    second_id = client.post(
        f"{API}/reservations", json={"event_id": event["id"]}, headers=_auth(second)
    ).json()["reservation"]["id"]

    confirmed = client.patch(
        f"{API}/reservations/{reservation_id}/confirm", headers=_auth(admin_token)
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["reservation"]["status"] == "CONFIRMED"

    full = client.patch(
        f"{API}/reservations/{second_id}", json={"status": "CONFIRMED"}, headers=_auth(admin_token)
    )
    assert full.status_code == 400
    assert full.json() == {"error": "InvalidState", "message": "Event is full"}

    stats = client.get(f"{API}/events/{event['id']}/stats").json()["stats"]
    assert stats["confirmed_count"] == 1
    assert stats["fill_rate"] == 100

    mine = client.get(f"{API}/reservations/my", headers=_auth(first)).json()
    assert [r["id"] for r in mine["reservations"]] == [reservation_id]
    assert client.get(f"{API}/reservations/{reservation_id}", headers=_auth(second)).status_code == 404

    canceled = client.patch(
        f"{API}/reservations/{reservation_id}/cancel", headers=_auth(first)
    )
    assert canceled.json()["reservation"]["canceled_by"] == "PARTICIPANT"

    retry = client.patch(
        f"{API}/reservations/{second_id}/confirm", headers=_auth(admin_token)
    )
    assert retry.status_code == 200


def test_participant_endpoints_require_admin(client, admin_token):
    event = _create_published_event(client, admin_token)
    token = _register(client, "pax@example.com")
    reservation_id = client.post(
        f"{API}/reservations", json={"event_id": event["id"]}, headers=_auth(token)
    ).json()["reservation"]["id"]

    for method, path in [
        ("get", f"{API}/reservations"),
        ("patch", f"{API}/reservations/{reservation_id}/confirm"),
        ("patch", f"{API}/reservations/{reservation_id}/cancel-admin"),
        ("delete", f"{API}/reservations/{reservation_id}"),
        ("get", f"{API}/events/dashboard/stats"),
    ]:
        response = getattr(client, method)(path, headers=_auth(token))
        assert response.status_code == 403, path


def test_admin_cannot_reserve(client, admin_token):
    event = _create_published_event(client, admin_token)
    response = client.post(
        f"{API}/reservations", json={"event_id": event["id"]}, headers=_auth(admin_token)
    )
    assert response.status_code == 403


def test_delete_event_removes_reservations(client, admin_token):
    event = _create_published_event(client, admin_token, max_capacity=3)
    for email in ("a@example.com", "b@example.com"):
        token = _register(client, email)
        client.post(
            f"{API}/reservations", json={"event_id": event["id"]}, headers=_auth(token)
        )

    response = client.delete(f"{API}/events/{event['id']}", headers=_auth(admin_token))
    assert response.status_code == 204

    session = database.SessionLocal()
    assert session.get(Event, event["id"]) is None
    assert session.query(Reservation).filter_by(event_id=event["id"]).count() == 0
    session.close()


def test_dashboard_stats(client, admin_token):
    event = _create_published_event(client, admin_token, max_capacity=4)
    token = _register(client, "dash@example.com")
    reservation_id = client.post(
        f"{API}/reservations", json={"event_id": event["id"]}, headers=_auth(token)
    ).json()["reservation"]["id"]
    client.patch(f"{API}/reservations/{reservation_id}/confirm", headers=_auth(admin_token))

    response = client.get(f"{API}/events/dashboard/stats", headers=_auth(admin_token))

    assert response.status_code == 200
    stats = response.json()["stats"]
    assert stats["total_events"] == 1
    assert stats["confirmed_reservations"] == 1
    assert stats["average_fill_rate"] == 25
    assert stats["recent_reservations"][0]["participant"]["email"] == "dash@example.com"


def test_ticket_generation_and_download(client, admin_token):
    event = _create_published_event(client, admin_token)
    owner = _register(client, "owner@example.com")
    other = _register(client, "other@example.com")
    reservation_id = client.post(
        f"{API}/reservations", json={"event_id": event["id"]}, headers=_auth(owner)
    ).json()["reservation"]["id"]

    early = client.post(f"{API}/tickets/generate/{reservation_id}", headers=_auth(owner))
    assert early.status_code == 400

    client.patch(f"{API}/reservations/{reservation_id}/confirm", headers=_auth(admin_token))
    generated = client.post(f"{API}/tickets/generate/{reservation_id}", headers=_auth(owner))
    assert generated.status_code == 201
    ticket = generated.json()["ticket"]

    download = client.get(ticket["download_url"], headers=_auth(owner))
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/pdf"
    assert download.headers["content-disposition"].startswith("attachment")
    assert download.content.startswith(b"%PDF")

    view = client.get(ticket["view_url"], headers=_auth(admin_token))
    assert view.headers["content-disposition"].startswith("inline")

    assert client.get(ticket["download_url"], headers=_auth(other)).status_code == 403
    assert (
        client.get(f"{API}/tickets/download/not-a-ticket.pdf", headers=_auth(owner)).status_code
        == 404
    )


def test_update_event_capacity_guard(client, admin_token):
    event = _create_published_event(client, admin_token, max_capacity=2)
    token = _register(client, "guard@example.com")
    reservation_id = client.post(
        f"{API}/reservations", json={"event_id": event["id"]}, headers=_auth(token)
    ).json()["reservation"]["id"]
    client.patch(f"{API}/reservations/{reservation_id}/confirm", headers=_auth(admin_token))

    ok = client.patch(
        f"{API}/events/{event['id']}", json={"max_capacity": 1}, headers=_auth(admin_token)
    )
    assert ok.status_code == 200
    assert ok.json()["event"]["fill_rate"] == 100

    cancel = client.patch(f"{API}/events/{event['id']}/cancel", headers=_auth(admin_token))
    assert cancel.json()["event"]["status"] == EventStatus.CANCELED.value
    session = database.SessionLocal()
    reservation = session.get(Reservation, reservation_id)
    assert reservation.status == ReservationStatus.CONFIRMED
    session.close()
