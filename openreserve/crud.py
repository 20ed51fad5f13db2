"""CRUD helpers for users, events, and reservations."""

from __future__ import annotations

from typing import Iterable, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, selectinload

from .models import (
    ACTIVE_RESERVATION_STATUSES,
    Event,
    Reservation,
    ReservationStatus,
    Role,
    User,
)
from .utils import normalize_email


def get_user(session: Session, user_id: str | None) -> User | None:
    if not user_id:
        return None
    return session.get(User, user_id)


def get_user_by_email(session: Session, email: str | None) -> User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    stmt = select(User).where(User.email == normalized)
    return session.scalars(stmt).first()


def create_user(
    session: Session,
    *,
    name: str,
    email: str,
    password_hash: str,
    role: Role = Role.PARTICIPANT,
) -> User:
    """Create and persist a new account."""
    user = User(
        name=(name or "").strip() or normalize_email(email).split("@")[0],
        email=normalize_email(email),
        password_hash=password_hash,
        role=Role(role).value,
    )
    session.add(user)
    session.flush()
    return user


def get_event(session: Session, event_id: str | None) -> Event | None:
    if not event_id:
        return None
    return session.get(Event, event_id)


def recent_events(session: Session, *, limit: int = 5) -> Sequence[Event]:
    stmt = select(Event).order_by(Event.created_at.desc()).limit(limit)
    return session.scalars(stmt).all()


def _build_pagination(*, page: int, per_page: int, total_events: int) -> dict:
    total_pages = (
        max(1, (total_events + per_page - 1) // per_page) if total_events else 1
    )
    page = max(1, min(page, total_pages)) if total_events else 1
    return {
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "total_events": total_events,
        "has_prev": page > 1,
        "has_next": page < total_pages and total_events > 0,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < total_pages and total_events > 0 else None,
    }


def paginate_events(
    session: Session,
    *,
    filters: Iterable | None,
    order_by,
    per_page: int,
    page: int,
) -> tuple[Sequence[Event], dict]:
    filters = list(filters or [])
    count_stmt = select(func.count()).select_from(Event)
    for condition in filters:
        count_stmt = count_stmt.where(condition)
    total_events = session.scalar(count_stmt) or 0
    pagination = _build_pagination(
        page=page, per_page=per_page, total_events=total_events
    )
    offset = (pagination["page"] - 1) * per_page if total_events else 0

    stmt = select(Event)
    if isinstance(order_by, (list, tuple)):
        stmt = stmt.order_by(*order_by)
    else:
        stmt = stmt.order_by(order_by)
    for condition in filters:
        stmt = stmt.where(condition)
    stmt = stmt.offset(offset).limit(per_page)
    return session.scalars(stmt).all(), pagination


def get_reservation(session: Session, reservation_id: str | None) -> Reservation | None:
    if not reservation_id:
        return None
    return session.get(Reservation, reservation_id)


def list_reservations(session: Session) -> Sequence[Reservation]:
    stmt = (
        select(Reservation)
        .options(
            selectinload(Reservation.event), selectinload(Reservation.participant)
        )
        .order_by(Reservation.created_at.desc())
    )
    return session.scalars(stmt).all()


def list_reservations_for_participant(
    session: Session, participant_id: str
) -> Sequence[Reservation]:
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.event))
        .where(Reservation.participant_id == participant_id)
        .order_by(Reservation.created_at.desc())
    )
    return session.scalars(stmt).all()


def recent_reservations(session: Session, *, limit: int = 5) -> Sequence[Reservation]:
    stmt = (
        select(Reservation)
        .options(
            selectinload(Reservation.event), selectinload(Reservation.participant)
        )
        .order_by(Reservation.created_at.desc())
        .limit(limit)
    )
    return session.scalars(stmt).all()


def find_active_reservation(
    session: Session, *, event_id: str, participant_id: str
) -> Reservation | None:
    stmt = select(Reservation).where(
        Reservation.event_id == event_id,
        Reservation.participant_id == participant_id,
        Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
    )
    return session.scalars(stmt).first()


def reservation_status_counts(
    session: Session, event_id: str | None = None
) -> dict[str, int]:
    """Return reservation counts per status, optionally for a single event."""
    stmt = select(Reservation.status, func.count()).group_by(Reservation.status)
    if event_id is not None:
        stmt = stmt.where(Reservation.event_id == event_id)

    counts = {status.value: 0 for status in ReservationStatus}
    for status, count in session.execute(stmt).all():
        counts[status] = count
    return counts


def count_confirmed(session: Session, event_id: str) -> int:
    stmt = select(func.count()).select_from(Reservation).where(
        Reservation.event_id == event_id,
        Reservation.status == ReservationStatus.CONFIRMED.value,
    )
    return session.scalar(stmt) or 0


def delete_reservations_for_event(session: Session, event_id: str) -> int:
    """Bulk-delete every reservation referencing an event."""
    result = session.execute(
        delete(Reservation)
        .where(Reservation.event_id == event_id)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0
