"""Development helpers for populating fake participants, events, and reservations."""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .auth import Caller, hash_password
from .config import settings
from .crud import create_user, get_user_by_email
from .database import get_session
from .errors import DomainError
from .events import create_event, publish_event
from .models import Event, Role, User
from .reservations import confirm_reservation, create_reservation, refuse_reservation
from .storage import create_admin, init_db
from .utils import utctoday

SEED_PARTICIPANT_PASSWORD = "Participant123!"

_event_types = [
    "Conference",
    "Workshop",
    "Meetup",
    "Hackathon",
    "Panel",
    "Networking Night",
    "Masterclass",
    "Bootcamp",
]
# Weighted so most seeded reservations stay pending for an admin to review.
_decisions = ["pending", "pending", "confirm", "confirm", "refuse"]


def _caller_for(user: User) -> Caller:
    now = datetime.now(UTC)
    return Caller(
        user_id=user.id,
        email=user.email,
        role=Role(user.role),
        auth_time=now,
        expires_at=now + settings.token_lifetime,
    )


def seed_fake_data(
    *,
    event_count: int | None = None,
    participant_count: int | None = None,
    max_reservations_per_event: int | None = None,
    draft_percentage: int = 20,
) -> dict[str, int]:
    """Populate the database with synthetic accounts, events, and reservations."""
    event_count = settings.seed_events if event_count is None else event_count
    participant_count = (
        settings.seed_participants if participant_count is None else participant_count
    )
    max_reservations_per_event = (
        settings.seed_reservations_per_event
        if max_reservations_per_event is None
        else max_reservations_per_event
    )
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if participant_count < 0:
        raise ValueError("participant_count must be >= 0")
    if max_reservations_per_event < 0:
        raise ValueError("max_reservations_per_event must be >= 0")
    if not 0 <= draft_percentage <= 100:
        raise ValueError("draft_percentage must be between 0 and 100")

    init_db()
    admin, _ = create_admin(
        name=settings.admin_name,
        email=settings.admin_email,
        password=settings.admin_password,
    )
    fake = Faker()
    stats = {"participants": 0, "events": 0, "reservations": 0, "confirmed": 0}

    with get_session() as session:
        admin_caller = _caller_for(admin)
        participants = _create_participants(session, fake, participant_count)
        stats["participants"] = len(participants)
        for _ in range(event_count):
            event = _create_event(session, fake, admin_caller)
            stats["events"] += 1
            if random.randint(1, 100) <= draft_percentage:
                continue
            publish_event(session, event.id, admin_caller)
            created, confirmed = _create_reservations(
                session, event, participants, max_reservations_per_event
            )
            stats["reservations"] += created
            stats["confirmed"] += confirmed

    return stats


def _create_participants(session: Session, fake: Faker, count: int) -> list[User]:
    password_hash = hash_password(SEED_PARTICIPANT_PASSWORD)
    participants: list[User] = []
    attempts = 0
    while len(participants) < count and attempts < count * 20:
        attempts += 1
        email = fake.unique.email()
        if get_user_by_email(session, email):
            continue
        participants.append(
            create_user(
                session,
                name=fake.name(),
                email=email,
                password_hash=password_hash,
                role=Role.PARTICIPANT,
            )
        )
    return participants


def _create_event(session: Session, fake: Faker, caller: Caller) -> Event:
    event_date = utctoday() + timedelta(days=random.randint(-7, 60))
    hour = random.randint(8, 20)
    return create_event(
        session,
        caller=caller,
        title=f"{fake.city()} {random.choice(_event_types)}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        date=event_date,
        time=f"{hour:02d}:{random.choice(['00', '15', '30', '45'])}",
        location=fake.address().replace("\n", ", "),
        max_capacity=random.randint(5, 50),
    )


def _create_reservations(
    session: Session, event: Event, participants: list[User], max_reservations: int
) -> tuple[int, int]:
    if max_reservations <= 0 or not participants:
        return 0, 0
    total = random.randint(0, min(max_reservations, len(participants)))
    created = confirmed = 0
    for participant in random.sample(participants, total):
        reservation = create_reservation(
            session, event_id=event.id, caller=_caller_for(participant)
        )
        created += 1
        decision = random.choice(_decisions)
        try:
            if decision == "confirm":
                confirm_reservation(session, reservation.id)
                confirmed += 1
            elif decision == "refuse":
                refuse_reservation(session, reservation.id)
        except DomainError:
            # Event filled up; leave the reservation pending.
            continue
    return created, confirmed
