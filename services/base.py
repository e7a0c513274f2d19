"""
services/base.py
Shared plumbing for the lifecycle components (ledger, orchestrator, refunds).
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.emitter import NotificationEmitter
from shared.models.models import BookingStatus
from shared.repositories import bookings as bookings_repo

logger = logging.getLogger(__name__)


class LifecycleService:
    """
    Base for components that mutate Booking/Transaction state.

    Each public operation is one unit of work: conditional status claims,
    the provider call and the notification rows either all commit together
    or all roll back. Provider calls happen after the claim and before the
    commit, so a provider failure leaves the prior status in place.
    """

    def __init__(self, db: AsyncSession, emitter: NotificationEmitter):
        self.db = db
        self.emitter = emitter

    @asynccontextmanager
    async def atomic(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            yield self.db
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            self.emitter.discard()
            raise

    async def record_transition(
        self,
        booking_id: UUID,
        from_status: Optional[BookingStatus],
        to_status: BookingStatus,
        actor_id: Optional[UUID] = None,
        reason: Optional[str] = None,
    ) -> None:
        await bookings_repo.log_status_change(
            self.db, booking_id, from_status, to_status, actor_id, reason
        )
        logger.info(
            f"Booking {booking_id}: {from_status.value if from_status else None} → {to_status.value}"
            + (f" by {actor_id}" if actor_id else "")
        )
