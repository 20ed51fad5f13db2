"""SQLAlchemy models for OpenReserve."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Role(str, enum.Enum):
    ADMIN = "Admin"
    PARTICIPANT = "Participant"


class EventStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    CANCELED = "CANCELED"


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REFUSED = "REFUSED"
    CANCELED = "CANCELED"


class CanceledBy(str, enum.Enum):
    ADMIN = "ADMIN"
    PARTICIPANT = "PARTICIPANT"


ACTIVE_RESERVATION_STATUSES = (
    ReservationStatus.PENDING.value,
    ReservationStatus.CONFIRMED.value,
)
_ACTIVE_WHERE = text("status IN ('PENDING', 'CONFIRMED')")


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(128), nullable=False)
    role = Column(String(16), nullable=False, default=Role.PARTICIPANT.value)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    events = relationship("Event", back_populates="creator")
    reservations = relationship("Reservation", back_populates="participant")

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("max_capacity > 0", name="ck_events_capacity_positive"),
        CheckConstraint(
            "confirmed_count >= 0 AND confirmed_count <= max_capacity",
            name="ck_events_confirmed_within_capacity",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    date = Column(Date, nullable=False)
    time = Column(String(16), nullable=False)
    location = Column(String(255), nullable=False)
    max_capacity = Column(Integer, nullable=False)
    # Seat counter guarded by conditional updates; mirrors CONFIRMED reservations.
    confirmed_count = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default=EventStatus.DRAFT.value)
    creator_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    creator = relationship("User", back_populates="events")
    reservations = relationship(
        "Reservation",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_published(self) -> bool:
        return self.status == EventStatus.PUBLISHED

    @property
    def available_spots(self) -> int:
        return max(self.max_capacity - (self.confirmed_count or 0), 0)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            "uq_reservations_active_participant",
            "event_id",
            "participant_id",
            unique=True,
            sqlite_where=_ACTIVE_WHERE,
            postgresql_where=_ACTIVE_WHERE,
        ),
        Index("ix_reservations_event_status", "event_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    participant_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    status = Column(
        String(16), nullable=False, default=ReservationStatus.PENDING.value
    )
    canceled_by = Column(String(16), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="reservations")
    participant = relationship("User", back_populates="reservations")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RESERVATION_STATUSES
