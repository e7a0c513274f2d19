"""
shared/utils/security.py
JWT creation/verification and webhook signature helpers.
"""

import hashlib
import hmac
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings


# ── JWT ───────────────────────────────────────────────────────

def create_access_token(
    user_id: str,
    profile: str,
    email: str,
    extra: Optional[dict] = None,
) -> tuple[str, str]:
    """
    Create a signed JWT access token.
    Returns (token, jti); jti is used for deny-listing on logout.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": str(user_id),
        "profile": profile,
        "email": email,
        "jti": jti,
        "iat": now,
        "exp": expire,
        "type": "access",
        **(extra or {}),
    }

    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload


# ── Zoom Webhook Signature ────────────────────────────────────

def zoom_url_validation_token(plain_token: str, secret: Optional[str] = None) -> str:
    """Answer to Zoom's endpoint.url_validation challenge."""
    key = secret if secret is not None else settings.ZOOM_WEBHOOK_SECRET_TOKEN
    return hmac.new(key.encode(), plain_token.encode(), hashlib.sha256).hexdigest()


def verify_zoom_webhook_signature(
    payload_body: bytes,
    timestamp: str,
    signature: str,
    secret: Optional[str] = None,
    tolerance: Optional[int] = None,
) -> bool:
    """
    Zoom signs "v0:{timestamp}:{body}" with HMAC-SHA256 and sends "v0=<hex>".
    Requests whose timestamp (epoch seconds) is further than ``tolerance``
    from now are rejected as replays.
    """
    key = secret if secret is not None else settings.ZOOM_WEBHOOK_SECRET_TOKEN
    if not key or not timestamp or not signature:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    max_age = tolerance if tolerance is not None else settings.ZOOM_WEBHOOK_TOLERANCE_SECONDS
    if abs(time.time() - sent_at) > max_age:
        return False
    message = b"v0:" + timestamp.encode() + b":" + payload_body
    expected = "v0=" + hmac.new(key.encode(), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)
