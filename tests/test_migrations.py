from __future__ import annotations

import types

import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import IntegrityError

from openreserve import storage, database
from openreserve.models import Base


def _patch_db(monkeypatch: pytest.MonkeyPatch, engine: Engine, db_path) -> None:
    monkeypatch.setattr(storage, "engine", engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "DATABASE_URL", str(engine.url))
    fake_settings = types.SimpleNamespace(database_path=db_path)
    monkeypatch.setattr(storage, "settings", fake_settings)


def _get_version(engine: Engine) -> str | None:
    with engine.connect() as conn:
        if not inspect(conn).has_table("alembic_version"):
            return None
        return conn.execute(text("select version_num from alembic_version")).scalar()


def test_upgrade_database_stamps_existing_db(monkeypatch, tmp_path):
    db_path = tmp_path / "existing.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)  # existing schema without Alembic tracking
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Stamped existing database to Alembic head" in actions
    assert _get_version(engine) == "0001_initial"


def test_upgrade_database_creates_fresh_schema(monkeypatch, tmp_path):
    db_path = tmp_path / "fresh.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Ran Alembic upgrade to head (fresh database)" in actions
    assert _get_version(engine) == "0001_initial"
    inspector = inspect(engine)
    for table in ("users", "events", "reservations", "meta"):
        assert inspector.has_table(table)
    index_names = {index["name"] for index in inspector.get_indexes("reservations")}
    assert "uq_reservations_active_participant" in index_names


def test_upgrade_database_makes_backup(monkeypatch, tmp_path):
    db_path = tmp_path / "backup.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=True)

    assert any(action.startswith("Backup created") for action in actions)
    assert (tmp_path / "backup.sqlite.bak").exists()


def test_migrated_schema_enforces_active_uniqueness(monkeypatch, tmp_path):
    db_path = tmp_path / "constraints.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)
    storage.upgrade_database(make_backup=False)

    insert_reservation = text(
        "insert into reservations (id, event_id, participant_id, status, created_at, updated_at) "
        "values (:id, 'e1', 'u1', :status, '2024-01-01', '2024-01-01')"
    )
    with engine.begin() as conn:
        conn.execute(insert_reservation, {"id": "r1", "status": "CANCELED"})
        conn.execute(insert_reservation, {"id": "r2", "status": "PENDING"})
    with pytest.raises(IntegrityError):
        with engine.begin() as conn:
            conn.execute(insert_reservation, {"id": "r3", "status": "CONFIRMED"})


def test_alembic_config_keeps_percent_encoded_url(monkeypatch):
    url = URL.create(
        "postgresql",
        username="reserve",
        password="p@ss%word",
        host="db",
        database="openreserve",
    )
    monkeypatch.setattr(storage, "engine", types.SimpleNamespace(url=url))

    config = storage._alembic_config()

    rendered = url.render_as_string(hide_password=False)
    assert "%40" in rendered
    assert config.get_main_option("sqlalchemy.url") == rendered
