"""
shared/repositories/users.py
User and expert-profile lookups consumed by the booking lifecycle.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotFoundError
from shared.models.models import ExpertProfile, User


async def get_user(db: AsyncSession, user_id: UUID) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


async def get_expert_profile(db: AsyncSession, user_id: UUID) -> Optional[ExpertProfile]:
    result = await db.execute(select(ExpertProfile).where(ExpertProfile.user_id == user_id))
    return result.scalar_one_or_none()
