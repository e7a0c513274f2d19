"""
shared/models/models.py
All SQLAlchemy ORM models for the mentorship marketplace.
Portable UUID primary keys; JSON columns become JSONB on PostgreSQL.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Enumerations ──────────────────────────────────────────────

class ActiveProfile(str, PyEnum):
    STUDENT = "STUDENT"
    EXPERT = "EXPERT"


class BookingStatus(str, PyEnum):
    PENDING = "PENDING"
    UPCOMING = "UPCOMING"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"
    MISSED = "MISSED"


# Bookings in these statuses occupy the expert's time slot
SLOT_HOLDING_STATUSES = (BookingStatus.PENDING, BookingStatus.UPCOMING, BookingStatus.COMPLETED)
ACTIVE_SLOT_CONDITION = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in SLOT_HOLDING_STATUSES)
)


class TransactionStatus(str, PyEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"


class PaymentProviderName(str, PyEnum):
    STRIPE = "STRIPE"


class NotificationType(str, PyEnum):
    BOOKING_REQUESTED = "BOOKING_REQUESTED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_CANCELLED_BY_EXPERT = "BOOKING_CANCELLED_BY_EXPERT"
    BOOKING_CANCELLED_BY_STUDENT = "BOOKING_CANCELLED_BY_STUDENT"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    BOOKING_MISSED = "BOOKING_MISSED"
    REFUND_REVIEW = "REFUND_REVIEW"
    PAYOUT_SENT = "PAYOUT_SENT"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """A marketplace account. The same person may switch between student and expert."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active_profile: Mapped[ActiveProfile] = mapped_column(
        Enum(ActiveProfile), nullable=False, default=ActiveProfile.STUDENT
    )
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # IANA name
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    expert_profile: Mapped[Optional["ExpertProfile"]] = relationship(
        back_populates="user", uselist=False
    )

    __table_args__ = (Index("ix_users_email", "email"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.active_profile})>"


class ExpertProfile(TimestampMixin, Base):
    """Expert's professional profile and Stripe Connect state."""
    __tablename__ = "expert_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    profession: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    stripe_account_id: Mapped[Optional[str]] = mapped_column(
        String(100), unique=True, nullable=True
    )
    is_onboard_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship(back_populates="expert_profile")

    __table_args__ = (Index("ix_expert_profiles_user_id", "user_id"),)

    @property
    def can_receive_payments(self) -> bool:
        return bool(self.stripe_account_id) and self.is_onboard_completed


class Booking(TimestampMixin, Base):
    """
    A paid consultation between a student and an expert.
    Status transitions: PENDING → UPCOMING | REFUNDED;
    UPCOMING → COMPLETED | REFUNDED | MISSED. Rows are never deleted.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    expert_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)

    # Schedule: one instant, shown in each party's civil time
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expert_date_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    student_date_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    session_duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    session_details: Mapped[dict] = mapped_column(JSONType, nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    meeting_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    meeting_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    student: Mapped["User"] = relationship(foreign_keys=[student_id])
    expert: Mapped["User"] = relationship(foreign_keys=[expert_id])
    transaction: Mapped[Optional["Transaction"]] = relationship(
        back_populates="booking", uselist=False
    )
    audit_logs: Mapped[List["BookingAuditLog"]] = relationship(back_populates="booking")

    __table_args__ = (
        Index("ix_bookings_student_id", "student_id"),
        Index("ix_bookings_expert_id", "expert_id"),
        Index("ix_bookings_status", "status"),
        # One live booking per expert and start time; REFUNDED and MISSED free the slot
        Index(
            "uq_bookings_expert_active_slot",
            "expert_id",
            "date",
            unique=True,
            postgresql_where=text(ACTIVE_SLOT_CONDITION),
            sqlite_where=text(ACTIVE_SLOT_CONDITION),
        ),
    )

    def is_participant(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.student_id, self.expert_id)

    def other_party(self, user_id: uuid.UUID) -> uuid.UUID:
        return self.expert_id if user_id == self.student_id else self.student_id


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )  # None for provider-driven transitions
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    booking: Mapped["Booking"] = relationship(back_populates="audit_logs")


class Transaction(TimestampMixin, Base):
    """Money movement for a booking. Exactly one per booking; amount is immutable."""
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )

    # Major units (dollars); minor units only at the Stripe boundary
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False
    )
    provider: Mapped[PaymentProviderName] = mapped_column(
        Enum(PaymentProviderName), default=PaymentProviderName.STRIPE, nullable=False
    )
    provider_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)

    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refund_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    refund_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Post-session settlement
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payout_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payout_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    payout_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    booking: Mapped["Booking"] = relationship(back_populates="transaction")

    __table_args__ = (
        Index("ix_transactions_provider_id", "provider_id"),
        Index("ix_transactions_payout_id", "payout_id"),
    )


class Notification(Base):
    """In-app notification. Pushed live to the recipient's channel after commit."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    sender_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_notifications_recipient_read", "recipient_id", "is_read"),)
