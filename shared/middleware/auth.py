"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
JWTs are issued by the login flow; this module only validates them.
"""

import uuid
from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.exceptions import AuthenticationError, PermissionDenied
from shared.models.models import ActiveProfile, User
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: str = payload["sub"]
        self.profile: ActiveProfile = ActiveProfile(payload["profile"])
        self.email: str = payload["email"]
        self.jti: Optional[str] = payload.get("jti")


async def decode_token(token: str, redis) -> TokenData:
    """Validate a raw token and check the Redis deny-list (logout)."""
    try:
        payload = verify_access_token(token)
    except JWTError:
        raise AuthenticationError("Invalid or expired token")

    jti = payload.get("jti")
    if jti and await RedisCache(redis).is_token_revoked(jti):
        raise AuthenticationError("Token has been revoked")

    try:
        return TokenData(payload)
    except (KeyError, ValueError):
        raise AuthenticationError("Invalid token claims")


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """Extract and validate JWT from Authorization header."""
    if not credentials:
        raise AuthenticationError("Authentication required")
    return await decode_token(credentials.credentials, redis)


async def load_active_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == _as_uuid(user_id)))
    user = result.scalar_one_or_none()

    if not user:
        raise AuthenticationError("User not found")
    if not user.is_active:
        raise PermissionDenied("User account is inactive")
    return user


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load full User object from database using JWT sub claim."""
    return await load_active_user(db, token_data.user_id)


class ProfileRequired:
    """Dependency factory restricting a route to an active profile."""

    def __init__(self, *profiles: ActiveProfile):
        self.profiles = profiles

    async def __call__(
        self,
        current_user: User = Depends(get_current_user),
    ) -> User:
        if current_user.active_profile not in self.profiles:
            raise PermissionDenied(
                f"Required profile: {[p.value for p in self.profiles]}",
            )
        return current_user


# Convenience profile dependencies
require_student = ProfileRequired(ActiveProfile.STUDENT)
require_expert = ProfileRequired(ActiveProfile.EXPERT)


def _as_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise AuthenticationError("Invalid token subject")
