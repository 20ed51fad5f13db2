"""Event catalog: creation, status transitions, and cascading deletion."""

from __future__ import annotations

import logging
from datetime import date
from sqlalchemy import update
from sqlalchemy.orm import Session

from .auth import Caller
from .config import settings
from .crud import (
    delete_reservations_for_event,
    get_event,
    paginate_events,
)
from .errors import Forbidden, InvalidState, NotFound
from .models import Event, EventStatus
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

EDITABLE_FIELDS = ("title", "description", "date", "time", "location")


def _require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise Forbidden("Only admins can manage events")


def _validate_capacity(max_capacity: int) -> int:
    try:
        value = int(max_capacity)
    except (TypeError, ValueError) as exc:
        raise InvalidState("max_capacity must be a positive integer") from exc
    if value < 1:
        raise InvalidState("max_capacity must be a positive integer")
    return value


def create_event(
    session: Session,
    *,
    caller: Caller,
    title: str,
    description: str,
    date: date,
    time: str,
    location: str,
    max_capacity: int,
) -> Event:
    """Create a DRAFT event owned by ``caller``."""
    _require_admin(caller)
    event = Event(
        title=title,
        description=description or "",
        date=date,
        time=time,
        location=location,
        max_capacity=_validate_capacity(max_capacity),
        confirmed_count=0,
        status=EventStatus.DRAFT.value,
        creator_id=caller.user_id,
    )
    session.add(event)
    session.flush()
    logger.info("Event %s (%s) created by %s", event.id, event.title, caller.email)
    return event


def list_published_events(
    session: Session,
    *,
    page: int = 1,
    per_page: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
):
    filters = [Event.status == EventStatus.PUBLISHED.value]
    if date_from:
        filters.append(Event.date >= date_from)
    if date_to:
        filters.append(Event.date <= date_to)
    return paginate_events(
        session,
        filters=filters,
        order_by=(Event.date.asc(), Event.time.asc()),
        per_page=per_page or settings.events_per_page,
        page=page,
    )


def list_admin_events(
    session: Session, caller: Caller, *, page: int = 1, per_page: int | None = None
):
    """Events created by ``caller`` in any status, newest event date first."""
    _require_admin(caller)
    return paginate_events(
        session,
        filters=[Event.creator_id == caller.user_id],
        order_by=(Event.date.desc(), Event.time.desc()),
        per_page=per_page or settings.admin_events_per_page,
        page=page,
    )


def get_public_event(session: Session, event_id: str) -> Event:
    """Fetch an event through the public path; unpublished events stay hidden."""
    event = get_event(session, event_id)
    if not event or not event.is_published:
        raise NotFound("Event not found")
    return event


def get_admin_event(session: Session, event_id: str, caller: Caller) -> Event:
    event = get_event(session, event_id)
    if not event:
        raise NotFound("Event not found")
    if not caller.is_admin or event.creator_id != caller.user_id:
        raise Forbidden("Access denied")
    return event


def get_event_for_caller(
    session: Session, event_id: str, caller: Caller | None
) -> Event:
    """Public lookup that also lets the creator see their unpublished events."""
    event = get_event(session, event_id)
    if event and (
        event.is_published
        or (caller is not None and caller.is_admin and event.creator_id == caller.user_id)
    ):
        return event
    raise NotFound("Event not found")


def update_event(
    session: Session,
    event_id: str,
    caller: Caller,
    *,
    changes: dict,
) -> Event:
    """Apply a partial update; capacity can never drop below confirmed seats."""
    event = get_admin_event(session, event_id, caller)
    for field in EDITABLE_FIELDS:
        if field in changes and changes[field] is not None:
            setattr(event, field, changes[field])

    if changes.get("max_capacity") is not None:
        new_capacity = _validate_capacity(changes["max_capacity"])
        session.flush()
        result = session.execute(
            update(Event)
            .where(Event.id == event.id, Event.confirmed_count <= new_capacity)
            .values(max_capacity=new_capacity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidState(
                "max_capacity cannot be lower than the number of confirmed reservations"
            )
        session.refresh(event)

    event.updated_at = utcnow()
    session.add(event)
    session.flush()
    return event


def publish_event(session: Session, event_id: str, caller: Caller) -> Event:
    event = get_admin_event(session, event_id, caller)
    if event.status == EventStatus.CANCELED:
        raise InvalidState("A canceled event cannot be published")
    if event.status != EventStatus.PUBLISHED:
        event.status = EventStatus.PUBLISHED.value
        event.updated_at = utcnow()
        session.add(event)
        session.flush()
        logger.info("Event %s (%s) published", event.id, event.title)
    return event


def cancel_event(session: Session, event_id: str, caller: Caller) -> Event:
    event = get_admin_event(session, event_id, caller)
    if event.status != EventStatus.CANCELED:
        event.status = EventStatus.CANCELED.value
        event.updated_at = utcnow()
        session.add(event)
        session.flush()
        logger.info("Event %s (%s) canceled", event.id, event.title)
    return event


def delete_event(session: Session, event_id: str, caller: Caller) -> int:
    """Delete an event and all of its reservations in the current transaction.

    Returns the number of reservations removed with the event. Nothing is
    committed here; a failure part-way leaves the caller's transaction to roll
    back both deletes together.
    """
    event = get_admin_event(session, event_id, caller)
    removed = delete_reservations_for_event(session, event.id)
    session.expire(event, ["reservations"])
    session.delete(event)
    session.flush()
    logger.info(
        "Event %s (%s) deleted with %d reservation(s)", event_id, event.title, removed
    )
    return removed
