"""Reservation lifecycle: creation, admin decisions, and cancellation.

Status machine::

    PENDING ──► CONFIRMED ◄──► REFUSED ──► CONFIRMED (re-approval)
       │            │
       └──► CANCELED ◄┘          (CANCELED is terminal)

Every move into CONFIRMED takes a seat on the event's ``confirmed_count``
with a single conditional UPDATE, so two requests racing for the last seat
serialize on the event row and only one of them can win. Moves out of
CONFIRMED give the seat back. The reservation row is then written with a
compare-and-set on the status that was read, which keeps one reservation from
taking two seats. Nothing here commits; the request transaction does.
"""

from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import Caller
from .crud import (
    find_active_reservation,
    get_event,
    get_reservation,
    get_user,
    list_reservations,
    list_reservations_for_participant,
)
from .errors import Conflict, Forbidden, InvalidState, NotFound
from .models import (
    CanceledBy,
    Event,
    Reservation,
    ReservationStatus,
    Role,
)
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

ADMIN_DECISIONS = {ReservationStatus.CONFIRMED, ReservationStatus.REFUSED}


def _ensure_reservation(session: Session, reservation_id: str) -> Reservation:
    reservation = get_reservation(session, reservation_id)
    if not reservation:
        raise NotFound("Reservation not found")
    return reservation


def _expire_cached_event(session: Session, event_id: str) -> None:
    cached = session.identity_map.get(session.identity_key(Event, event_id))
    if cached is not None:
        session.expire(cached, ["confirmed_count", "updated_at"])


def _take_seat(session: Session, event_id: str) -> None:
    result = session.execute(
        update(Event)
        .where(Event.id == event_id, Event.confirmed_count < Event.max_capacity)
        .values(confirmed_count=Event.confirmed_count + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        if get_event(session, event_id) is None:
            raise NotFound("Associated event not found")
        logger.warning("Confirmation rejected: event %s is full", event_id)
        raise InvalidState("Event is full")
    _expire_cached_event(session, event_id)


def _release_seat(session: Session, event_id: str) -> None:
    result = session.execute(
        update(Event)
        .where(Event.id == event_id, Event.confirmed_count > 0)
        .values(confirmed_count=Event.confirmed_count - 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("No confirmed seat to release on event %s", event_id)
        return
    _expire_cached_event(session, event_id)


def _compare_and_set(
    session: Session,
    reservation: Reservation,
    *,
    expected: ReservationStatus,
    target: ReservationStatus,
    canceled_by: CanceledBy | None = None,
) -> Reservation:
    values = {"status": target.value, "updated_at": utcnow()}
    if canceled_by is not None:
        values["canceled_by"] = canceled_by.value
    result = session.execute(
        update(Reservation)
        .where(
            Reservation.id == reservation.id,
            Reservation.status == expected.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidState("Reservation was modified by another request")
    session.refresh(reservation)
    return reservation


def create_reservation(session: Session, *, event_id: str, caller: Caller) -> Reservation:
    """Queue a PENDING reservation for ``caller`` on a published event.

    Capacity is not checked here; it is enforced when an admin confirms.
    """
    user = get_user(session, caller.user_id)
    if not user:
        raise NotFound("User not found")
    if user.role != Role.PARTICIPANT:
        raise Forbidden("Admins are not allowed to make reservations")

    event = get_event(session, event_id)
    if not event:
        raise NotFound("Event not found")
    if not event.is_published:
        raise InvalidState("Event is not available for reservation")

    if find_active_reservation(session, event_id=event.id, participant_id=user.id):
        raise Conflict("You already have a reservation for this event")

    reservation = Reservation(
        event_id=event.id,
        participant_id=user.id,
        status=ReservationStatus.PENDING.value,
    )
    session.add(reservation)
    try:
        session.flush()
    except IntegrityError as exc:
        # Lost a race with a concurrent request for the same pair.
        raise Conflict("You already have a reservation for this event") from exc
    logger.info(
        "Reservation %s created for event %s by %s", reservation.id, event.id, user.email
    )
    return reservation


def _check_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    if target not in ADMIN_DECISIONS:
        raise InvalidState("Reservation status can only be set to CONFIRMED or REFUSED")
    if current == ReservationStatus.CANCELED:
        raise InvalidState("Cannot update a canceled reservation")
    if current == ReservationStatus.REFUSED and target != ReservationStatus.CONFIRMED:
        raise InvalidState("Cannot update a refused reservation")


def update_status(
    session: Session, reservation_id: str, new_status: ReservationStatus | str
) -> Reservation:
    """Admin decision on a reservation (confirm or refuse)."""
    try:
        target = ReservationStatus(new_status)
    except ValueError as exc:
        raise InvalidState(f"Unknown reservation status: {new_status}") from exc

    reservation = _ensure_reservation(session, reservation_id)
    current = ReservationStatus(reservation.status)
    _check_transition(current, target)
    if current == target:
        return reservation

    try:
        if target == ReservationStatus.CONFIRMED:
            _take_seat(session, reservation.event_id)
        elif current == ReservationStatus.CONFIRMED:
            _release_seat(session, reservation.event_id)
        _compare_and_set(session, reservation, expected=current, target=target)
    except IntegrityError as exc:
        # Re-approving a refused reservation while a newer one is active.
        raise Conflict("Participant already has an active reservation for this event") from exc

    logger.info(
        "Reservation %s moved %s -> %s", reservation.id, current.value, target.value
    )
    return reservation


def confirm_reservation(session: Session, reservation_id: str) -> Reservation:
    return update_status(session, reservation_id, ReservationStatus.CONFIRMED)


def refuse_reservation(session: Session, reservation_id: str) -> Reservation:
    return update_status(session, reservation_id, ReservationStatus.REFUSED)


def _cancel(
    session: Session, reservation: Reservation, *, canceled_by: CanceledBy
) -> Reservation:
    current = ReservationStatus(reservation.status)
    if current == ReservationStatus.CANCELED:
        raise InvalidState("Reservation is already canceled")
    if current == ReservationStatus.REFUSED:
        raise InvalidState("Cannot cancel a refused reservation")
    if current == ReservationStatus.CONFIRMED:
        _release_seat(session, reservation.event_id)
    _compare_and_set(
        session,
        reservation,
        expected=current,
        target=ReservationStatus.CANCELED,
        canceled_by=canceled_by,
    )
    logger.info(
        "Reservation %s canceled by %s (was %s)",
        reservation.id,
        canceled_by.value,
        current.value,
    )
    return reservation


def cancel_by_participant(
    session: Session, reservation_id: str, caller: Caller
) -> Reservation:
    reservation = _ensure_reservation(session, reservation_id)
    if reservation.participant_id != caller.user_id:
        raise Forbidden("You can only cancel your own reservations")
    return _cancel(session, reservation, canceled_by=CanceledBy.PARTICIPANT)


def cancel_by_admin(session: Session, reservation_id: str) -> Reservation:
    reservation = _ensure_reservation(session, reservation_id)
    return _cancel(session, reservation, canceled_by=CanceledBy.ADMIN)


def remove_reservation(session: Session, reservation_id: str) -> Reservation:
    """Physically delete a reservation, handing back its seat if it held one."""
    reservation = _ensure_reservation(session, reservation_id)
    current = ReservationStatus(reservation.status)
    if current == ReservationStatus.CONFIRMED:
        _release_seat(session, reservation.event_id)
    result = session.execute(
        delete(Reservation)
        .where(
            Reservation.id == reservation.id,
            Reservation.status == current.value,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidState("Reservation was modified by another request")
    session.expunge(reservation)
    logger.info("Reservation %s removed (was %s)", reservation_id, current.value)
    return reservation


def get_reservation_for_caller(
    session: Session, reservation_id: str, caller: Caller
) -> Reservation:
    """Admins see every reservation; participants only their own."""
    reservation = get_reservation(session, reservation_id)
    if not reservation or (
        not caller.is_admin and reservation.participant_id != caller.user_id
    ):
        raise NotFound("Reservation not found")
    return reservation


def list_all_reservations(session: Session, caller: Caller) -> Sequence[Reservation]:
    if not caller.is_admin:
        raise Forbidden("Only admins can list every reservation")
    return list_reservations(session)


def list_my_reservations(session: Session, caller: Caller) -> Sequence[Reservation]:
    return list_reservations_for_participant(session, caller.user_id)
