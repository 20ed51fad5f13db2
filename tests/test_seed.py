from __future__ import annotations

from sqlalchemy import func, select

from openreserve import seed
from openreserve.models import Event, Reservation, ReservationStatus, Role, User


def test_seed_keeps_seat_counters_consistent(session, monkeypatch):
    monkeypatch.setattr(seed, "init_db", lambda: None)

    stats = seed.seed_fake_data(
        event_count=4,
        participant_count=6,
        max_reservations_per_event=6,
        draft_percentage=0,
    )

    assert stats["events"] == 4
    assert stats["participants"] == 6
    session.expire_all()
    admins = session.scalar(
        select(func.count()).select_from(User).where(User.role == Role.ADMIN.value)
    )
    assert admins == 1
    for event in session.scalars(select(Event)).all():
        confirmed = session.scalar(
            select(func.count())
            .select_from(Reservation)
            .where(
                Reservation.event_id == event.id,
                Reservation.status == ReservationStatus.CONFIRMED.value,
            )
        )
        assert event.confirmed_count == confirmed <= event.max_capacity
