"""Database initialization, schema upgrades, and bootstrap records."""

from __future__ import annotations

import logging
import secrets
import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from .auth import hash_password
from .config import settings
from .crud import create_user, get_user_by_email
from .database import engine, get_session
from .models import Meta, Role, User
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


def init_db() -> None:
    upgrade_database(make_backup=False)
    ensure_signing_key()
    ensure_admin_account()


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"

    config = Config()
    config.set_main_option("script_location", str(script_location))
    # Config is a ConfigParser; percent-encoded URL parts must be escaped.
    config.set_main_option(
        "sqlalchemy.url",
        engine.url.render_as_string(hide_password=False).replace("%", "%%"),
    )
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions; empty if already up-to-date.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and engine.dialect.name == "sqlite" and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("events")
    config = _alembic_config()

    if not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables created outside Alembic: baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    return actions


def ensure_signing_key() -> str:
    with get_session() as session:
        existing = session.get(Meta, settings.signing_key_meta_key)
        if existing:
            return existing.value
        key = secrets.token_urlsafe(48)
        session.merge(
            Meta(key=settings.signing_key_meta_key, value=key, updated_at=utcnow())
        )
        logger.info("Generated a new token signing key")
        return key


def rotate_signing_key() -> str:
    """Replace the stored signing key; every issued token stops verifying."""
    key = secrets.token_urlsafe(48)
    with get_session() as session:
        session.merge(
            Meta(key=settings.signing_key_meta_key, value=key, updated_at=utcnow())
        )
    logger.warning("Token signing key rotated; existing sessions are invalidated")
    return key


def fetch_signing_key() -> str:
    with get_session() as session:
        meta = session.get(Meta, settings.signing_key_meta_key)
        if not meta:
            return ensure_signing_key()
        return meta.value


def signing_key(session: Session | None = None) -> str:
    """Key used to sign and verify session tokens.

    A configured ``jwt_secret`` wins; otherwise the generated key stored in
    the meta table is used, read through ``session`` when one is given.
    """
    if settings.jwt_secret:
        return settings.jwt_secret
    if session is not None:
        meta = session.get(Meta, settings.signing_key_meta_key)
        if meta:
            return meta.value
    return fetch_signing_key()


def create_admin(*, name: str, email: str, password: str) -> tuple[User, bool]:
    """Create an admin account, or promote an existing one. Returns (user, created)."""
    with get_session() as session:
        user = get_user_by_email(session, email)
        if user:
            if user.role != Role.ADMIN:
                user.role = Role.ADMIN.value
                user.updated_at = utcnow()
                session.add(user)
                logger.info("Promoted %s to admin", user.email)
            return user, False
        user = create_user(
            session,
            name=name,
            email=email,
            password_hash=hash_password(password),
            role=Role.ADMIN,
        )
        logger.info("Created admin account %s", user.email)
        return user, True


def ensure_admin_account() -> User | None:
    """Create the configured bootstrap admin when no admin exists yet."""
    with get_session() as session:
        has_admin = (
            session.query(User.id).filter(User.role == Role.ADMIN.value).first()
            is not None
        )
    if has_admin or not settings.admin_email:
        return None
    user, _ = create_admin(
        name=settings.admin_name,
        email=settings.admin_email,
        password=settings.admin_password,
    )
    return user
