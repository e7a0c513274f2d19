"""
shared/repositories/bookings.py
Booking reads and guarded status writes.

Status changes go through ``transition``, a single
UPDATE ... WHERE id = :id AND status IN (:expected). Two callers
racing on one booking can never both succeed.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotFoundError
from shared.models.models import (
    SLOT_HOLDING_STATUSES,
    ActiveProfile,
    Booking,
    BookingAuditLog,
    BookingStatus,
)
from shared.schemas.schemas import MAX_SESSION_MINUTES


async def get_booking(db: AsyncSession, booking_id: UUID) -> Booking:
    """Fresh read of a booking; identity-map copies are overwritten."""
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


async def get_booking_by_meeting_id(db: AsyncSession, meeting_id: str) -> Optional[Booking]:
    result = await db.execute(select(Booking).where(Booking.meeting_id == meeting_id))
    return result.scalar_one_or_none()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def find_slot_conflict(
    db: AsyncSession, expert_id: UUID, start: datetime, duration_minutes: int
) -> Optional[Booking]:
    """First live booking of the expert whose session overlaps [start, start + duration)."""
    end = start + timedelta(minutes=duration_minutes)
    result = await db.execute(
        select(Booking)
        .where(
            Booking.expert_id == expert_id,
            Booking.status.in_(SLOT_HOLDING_STATUSES),
            Booking.date < end,
            Booking.date > start - timedelta(minutes=MAX_SESSION_MINUTES),
        )
        .order_by(Booking.date)
    )
    for booking in result.scalars():
        booking_end = _as_utc(booking.date) + timedelta(minutes=booking.session_duration)
        if booking_end > start:
            return booking
    return None


async def create_booking(db: AsyncSession, **fields) -> Booking:
    booking = Booking(status=BookingStatus.PENDING, **fields)
    db.add(booking)
    await db.flush()
    return booking


async def transition(
    db: AsyncSession,
    booking_id: UUID,
    expected: Iterable[BookingStatus],
    new_status: BookingStatus,
    **values,
) -> bool:
    """
    Move a booking to ``new_status`` only if it is currently in ``expected``.
    Extra column values are written in the same statement. Returns whether
    the row matched.
    """
    conditions = [Booking.id == booking_id, Booking.status.in_(list(expected))]
    if "meeting_link" in values:
        conditions.append(Booking.meeting_link.is_(None))
    result = await db.execute(
        update(Booking)
        .where(*conditions)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_meeting(db: AsyncSession, booking_id: UUID, meeting_id: str, meeting_link: str) -> None:
    await db.execute(
        update(Booking)
        .where(Booking.id == booking_id)
        .values(meeting_id=meeting_id, meeting_link=meeting_link)
        .execution_options(synchronize_session=False)
    )


async def log_status_change(
    db: AsyncSession,
    booking_id: UUID,
    from_status: Optional[BookingStatus],
    to_status: BookingStatus,
    changed_by_id: Optional[UUID] = None,
    reason: Optional[str] = None,
) -> None:
    """Append an immutable audit log entry for every status change."""
    db.add(
        BookingAuditLog(
            booking_id=booking_id,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            changed_by_id=changed_by_id,
            reason=reason,
        )
    )


async def list_for_user(
    db: AsyncSession,
    user_id: UUID,
    profile: ActiveProfile,
    status: Optional[BookingStatus] = None,
    page: int = 1,
    page_size: int = 10,
) -> tuple[Sequence[Booking], int]:
    """Bookings where the user takes part in their active profile's role."""
    owner = Booking.expert_id if profile == ActiveProfile.EXPERT else Booking.student_id
    conditions = [owner == user_id]
    if status:
        conditions.append(Booking.status == status)

    total = await db.scalar(select(func.count(Booking.id)).where(*conditions))
    result = await db.execute(
        select(Booking)
        .where(*conditions)
        .order_by(Booking.date.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return result.scalars().all(), total or 0
