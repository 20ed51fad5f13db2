"""Accounts, password hashing, and signed session tokens.

A request's identity is carried by a short-lived bearer token. The token is
decoded into a :class:`Caller`, which is passed explicitly to the services
that need to know who is acting. Tokens can be renewed while they are still
valid, but never beyond ``session_max_age_hours`` after the original login.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import bcrypt
import jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .crud import create_user, get_user, get_user_by_email
from .errors import Conflict, Unauthenticated
from .models import Role, User
from .utils import normalize_email

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class Caller:
    """The authenticated identity behind a request."""

    user_id: str
    email: str
    role: Role
    auth_time: datetime
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_participant(self) -> bool:
        return self.role == Role.PARTICIPANT


@dataclass(frozen=True)
class SessionToken:
    access_token: str
    expires_at: datetime
    token_type: str = "bearer"

    def as_payload(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
        }


def _aware_now() -> datetime:
    return datetime.now(UTC)


def hash_password(plain_password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(plain_password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except ValueError:
        return False


def register_participant(
    session: Session, *, name: str | None, email: str, password: str
) -> User:
    """Create a participant account; registration never yields an admin."""
    if get_user_by_email(session, email):
        raise Conflict("Email already registered")
    try:
        user = create_user(
            session,
            name=name or "",
            email=email,
            password_hash=hash_password(password),
            role=Role.PARTICIPANT,
        )
    except IntegrityError as exc:
        raise Conflict("Email already registered") from exc
    logger.info("Registered participant %s", user.email)
    return user


def authenticate(session: Session, *, email: str, password: str) -> User:
    user = get_user_by_email(session, email)
    if not user or not verify_password(password, user.password_hash):
        logger.warning("Rejected login for %s", normalize_email(email))
        raise Unauthenticated("Invalid credentials")
    return user


def issue_token(
    user: User, *, secret: str, auth_time: datetime | None = None
) -> SessionToken:
    """Sign a token for ``user``; ``auth_time`` is kept across renewals."""
    now = _aware_now()
    auth_time = auth_time or now
    expires_at = min(now + settings.token_lifetime, auth_time + settings.session_max_age)
    claims = {
        "sub": user.id,
        "email": user.email,
        "role": Role(user.role).value,
        "iat": now,
        "exp": expires_at,
        "auth_time": int(auth_time.timestamp()),
    }
    token = jwt.encode(claims, secret, algorithm=settings.jwt_algorithm)
    return SessionToken(access_token=token, expires_at=expires_at)


def decode_token(token: str | None, *, secret: str) -> Caller:
    if not token:
        raise Unauthenticated("Missing bearer token")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp", "auth_time"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise Unauthenticated("Session expired; please log in again") from exc
    except jwt.PyJWTError as exc:
        raise Unauthenticated("Invalid token") from exc
    try:
        role = Role(claims.get("role"))
    except ValueError as exc:
        raise Unauthenticated("Invalid token") from exc
    return Caller(
        user_id=str(claims["sub"]),
        email=str(claims.get("email") or ""),
        role=role,
        auth_time=datetime.fromtimestamp(int(claims["auth_time"]), UTC),
        expires_at=datetime.fromtimestamp(int(claims["exp"]), UTC),
    )


def resolve_caller(session: Session, token: str | None, *, secret: str) -> Caller:
    """Decode ``token`` and re-read the account so role changes apply at once."""
    caller = decode_token(token, secret=secret)
    user = get_user(session, caller.user_id)
    if not user:
        raise Unauthenticated("Account no longer exists")
    return Caller(
        user_id=user.id,
        email=user.email,
        role=Role(user.role),
        auth_time=caller.auth_time,
        expires_at=caller.expires_at,
    )


def refresh_token(session: Session, caller: Caller, *, secret: str) -> SessionToken:
    if _aware_now() - caller.auth_time >= settings.session_max_age:
        raise Unauthenticated("Session expired; please log in again")
    user = get_user(session, caller.user_id)
    if not user:
        raise Unauthenticated("Account no longer exists")
    return issue_token(user, secret=secret, auth_time=caller.auth_time)
