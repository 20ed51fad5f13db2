"""Fill-rate and dashboard statistics."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .crud import (
    count_confirmed,
    recent_events,
    recent_reservations,
    reservation_status_counts,
)
from .models import Event, EventStatus, Reservation, ReservationStatus
from .utils import percentage, utctoday

RECENT_LIMIT = 5


def fill_rate(confirmed: int, max_capacity: int) -> int:
    return percentage(confirmed, max_capacity)


def event_stats(session: Session, event: Event) -> dict:
    counts = reservation_status_counts(session, event.id)
    confirmed = count_confirmed(session, event.id)
    return {
        "event_id": event.id,
        "max_capacity": event.max_capacity,
        "confirmed_count": confirmed,
        "available_spots": max(event.max_capacity - confirmed, 0),
        "pending_count": counts[ReservationStatus.PENDING.value],
        "refused_count": counts[ReservationStatus.REFUSED.value],
        "canceled_count": counts[ReservationStatus.CANCELED.value],
        "total_reservations": sum(counts.values()),
        "fill_rate": fill_rate(confirmed, event.max_capacity),
    }


def average_fill_rate(session: Session) -> int:
    """Aggregate fill rate over published events: Σconfirmed / Σcapacity."""
    published = Event.status == EventStatus.PUBLISHED.value
    total_capacity = session.scalar(
        select(func.coalesce(func.sum(Event.max_capacity), 0)).where(published)
    )
    total_confirmed = session.scalar(
        select(func.count(Reservation.id))
        .join(Event, Reservation.event_id == Event.id)
        .where(published, Reservation.status == ReservationStatus.CONFIRMED.value)
    )
    return percentage(int(total_confirmed or 0), int(total_capacity or 0))


def dashboard_stats(session: Session) -> dict:
    counts = reservation_status_counts(session)
    total_events = session.scalar(select(func.count()).select_from(Event)) or 0
    upcoming_events = (
        session.scalar(
            select(func.count())
            .select_from(Event)
            .where(
                Event.status == EventStatus.PUBLISHED.value,
                Event.date >= utctoday(),
            )
        )
        or 0
    )
    return {
        "total_events": total_events,
        "upcoming_events": upcoming_events,
        "total_reservations": sum(counts.values()),
        "confirmed_reservations": counts[ReservationStatus.CONFIRMED.value],
        "pending_reservations": counts[ReservationStatus.PENDING.value],
        "refused_reservations": counts[ReservationStatus.REFUSED.value],
        "canceled_reservations": counts[ReservationStatus.CANCELED.value],
        "average_fill_rate": average_fill_rate(session),
        "recent_events": list(recent_events(session, limit=RECENT_LIMIT)),
        "recent_reservations": list(recent_reservations(session, limit=RECENT_LIMIT)),
    }
