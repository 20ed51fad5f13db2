"""Shared pytest fixtures for OpenReserve."""

from __future__ import annotations

import sys
from dataclasses import replace
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from openreserve import (
    api,
    auth,
    config,
    database,
    events,
    maintenance,
    seed,
    storage,
    tickets,
)
from openreserve.auth import Caller, hash_password
from openreserve.crud import create_user
from openreserve.models import Base, Event, EventStatus, Role

TEST_PASSWORD = "secret123"
SETTINGS_MODULES = (api, auth, events, seed, storage, tickets)


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    storage.get_session = database.get_session
    maintenance.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield
    database.SessionLocal.remove()


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path):
    """Cheap bcrypt, no scheduler, and ticket files under tmp_path."""

    patched = replace(
        config.settings,
        bcrypt_rounds=4,
        enable_scheduler=False,
        jwt_secret="",
        tickets_dir=tmp_path / "tickets",
        ticket_background=None,
        admin_email="admin@event.com",
        admin_password="Admin123!",
    )
    for module in SETTINGS_MODULES:
        monkeypatch.setattr(module, "settings", patched)
    return patched


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def make_user(session):
    counter = {"n": 0}

    def _make_user(role: Role = Role.PARTICIPANT, *, email: str | None = None, name=None):
        counter["n"] += 1
        user = create_user(
            session,
            name=name or f"User {counter['n']}",
            email=email or f"user{counter['n']}@example.com",
            password_hash=hash_password(TEST_PASSWORD),
            role=role,
        )
        session.commit()
        return user

    return _make_user


def caller_for(user) -> Caller:
    now = datetime.now(UTC)
    return Caller(
        user_id=user.id,
        email=user.email,
        role=Role(user.role),
        auth_time=now,
        expires_at=now + timedelta(hours=1),
    )


@pytest.fixture()
def as_caller():
    return caller_for


@pytest.fixture()
def admin(make_user):
    return make_user(Role.ADMIN, email="organizer@example.com", name="Organizer")


@pytest.fixture()
def make_event(session, admin):
    def _make_event(
        *,
        max_capacity: int = 2,
        status: EventStatus = EventStatus.PUBLISHED,
        title: str = "Capacity Test",
        creator=None,
        on: date | None = None,
    ) -> Event:
        event = Event(
            title=title,
            description="A test event",
            date=on or date.today() + timedelta(days=7),
            time="18:30",
            location="Main Hall",
            max_capacity=max_capacity,
            confirmed_count=0,
            status=status.value,
            creator_id=(creator or admin).id,
        )
        session.add(event)
        session.commit()
        return event

    return _make_event
