"""
tests/conftest.py
Shared fixtures: SQLite database, ASGI client, users, bookings and
provider fakes (Stripe, Zoom, Redis, real-time publisher).
"""

import functools
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_mentorship.db"
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ZOOM_WEBHOOK_SECRET_TOKEN", "zoom_test_secret")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import AsyncSessionLocal, Base, engine
from config.redis_client import get_redis
from main import app
from services.meeting.provider import ZoomMeeting, ZoomMeetingProvider, get_meeting_provider
from services.notification.realtime import RealtimePublisher, get_realtime_publisher
from services.payment.provider import StripePaymentProvider, get_payment_provider
from shared.models.models import (
    ActiveProfile,
    Booking,
    BookingStatus,
    ExpertProfile,
    Transaction,
    TransactionStatus,
    User,
)
from shared.utils.resilience import circuit_breaker_manager
from shared.utils.security import create_access_token

SESSION_START = datetime(2030, 1, 15, 14, 0, tzinfo=timezone.utc)
MEETING_ID = "85012345678"
MEETING_URL = f"https://zoom.us/j/{MEETING_ID}"


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.active_profile.value, user.email)
    return {"Authorization": f"Bearer {token}"}


def make_intent(status: str = "requires_payment_method", intent_id: str = "pi_test_123"):
    return SimpleNamespace(id=intent_id, status=status, client_secret=f"{intent_id}_secret")


# ── Database ──────────────────────────────────────────────────

@pytest.fixture
async def db() -> AsyncSession:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def reset_breakers():
    yield
    circuit_breaker_manager.reset_all()


# ── Provider fakes ────────────────────────────────────────────

@pytest.fixture
def payment_provider():
    provider = MagicMock(spec=StripePaymentProvider)
    provider.create_payment_hold = AsyncMock(return_value=make_intent())
    provider.retrieve_intent = AsyncMock(return_value=make_intent())
    provider.attach_and_confirm = AsyncMock(return_value=make_intent(status="requires_capture"))
    provider.capture = AsyncMock(return_value=make_intent(status="succeeded"))
    provider.cancel_hold = AsyncMock(return_value=make_intent(status="canceled"))
    provider.refund = AsyncMock(return_value=SimpleNamespace(id="re_test_123", status="succeeded"))
    provider.payout = AsyncMock(
        return_value=SimpleNamespace(id="po_test_123", status="pending", currency="usd")
    )
    provider.get_balance = AsyncMock(
        return_value={
            "available": [{"amount": 4500, "currency": "usd"}],
            "pending": [{"amount": 0, "currency": "usd"}],
        }
    )
    provider.create_connected_account = AsyncMock(return_value=SimpleNamespace(id="acct_new_123"))
    provider.create_onboarding_link = AsyncMock(
        return_value=SimpleNamespace(url="https://connect.stripe.com/setup/e/acct_new_123")
    )
    provider.retrieve_account = AsyncMock(
        return_value=SimpleNamespace(details_submitted=True, charges_enabled=True)
    )
    # Real signature verification against STRIPE_WEBHOOK_SECRET
    provider.construct_event = MagicMock(
        side_effect=functools.partial(StripePaymentProvider.construct_event, provider)
    )
    return provider


@pytest.fixture
def meeting_provider():
    provider = MagicMock(spec=ZoomMeetingProvider)
    provider.create_meeting = AsyncMock(
        return_value=ZoomMeeting(id=MEETING_ID, join_url=MEETING_URL)
    )
    return provider


@pytest.fixture
def publisher():
    fake = MagicMock(spec=RealtimePublisher)
    fake.publish_to_user = AsyncMock(return_value=1)
    return fake


@pytest.fixture
def redis_mock():
    redis = AsyncMock()
    redis.exists.return_value = 0
    return redis


@pytest.fixture
async def client(db, payment_provider, meeting_provider, publisher, redis_mock):
    app.dependency_overrides[get_redis] = lambda: redis_mock
    app.dependency_overrides[get_payment_provider] = lambda: payment_provider
    app.dependency_overrides[get_meeting_provider] = lambda: meeting_provider
    app.dependency_overrides[get_realtime_publisher] = lambda: publisher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Users ─────────────────────────────────────────────────────

@pytest.fixture
async def student(db: AsyncSession) -> User:
    user = User(
        id=uuid.uuid4(),
        email="student@example.com",
        name="Sam Student",
        active_profile=ActiveProfile.STUDENT,
        timezone="America/New_York",
        is_active=True,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def expert(db: AsyncSession) -> User:
    user = User(
        id=uuid.uuid4(),
        email="expert@example.com",
        name="Erin Expert",
        active_profile=ActiveProfile.EXPERT,
        timezone="Europe/London",
        is_active=True,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def outsider(db: AsyncSession) -> User:
    user = User(
        id=uuid.uuid4(),
        email="outsider@example.com",
        name="Olly Outsider",
        active_profile=ActiveProfile.STUDENT,
        is_active=True,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def expert_profile(db: AsyncSession, expert: User) -> ExpertProfile:
    profile = ExpertProfile(
        id=uuid.uuid4(),
        user_id=expert.id,
        profession="Staff Engineer",
        hourly_rate=Decimal("50.00"),
        stripe_account_id="acct_expert_123",
        is_onboard_completed=True,
    )
    db.add(profile)
    await db.commit()
    return profile


# ── Bookings ──────────────────────────────────────────────────

async def make_booking(
    db: AsyncSession,
    student: User,
    expert: User,
    status: BookingStatus = BookingStatus.PENDING,
    transaction_status: Optional[TransactionStatus] = TransactionStatus.PENDING,
    provider_id: str = "pi_fixture_123",
    meeting_id: Optional[str] = None,
    **transaction_fields,
) -> Booking:
    booking = Booking(
        id=uuid.uuid4(),
        student_id=student.id,
        expert_id=expert.id,
        date=SESSION_START,
        expert_date_time=datetime(2030, 1, 15, 14, 0),
        student_date_time=datetime(2030, 1, 15, 9, 0),
        session_duration=60,
        session_details={"topic": "System design review", "meeting_type": "video", "agenda": None},
        status=status,
        meeting_id=meeting_id,
        meeting_link=f"https://zoom.us/j/{meeting_id}" if meeting_id else None,
    )
    db.add(booking)
    await db.flush()

    if transaction_status is not None:
        db.add(
            Transaction(
                id=uuid.uuid4(),
                booking_id=booking.id,
                amount=Decimal("50.00"),
                currency="usd",
                status=transaction_status,
                provider_id=provider_id,
                **transaction_fields,
            )
        )
    await db.commit()
    return booking


@pytest.fixture
async def pending_booking(db, student, expert, expert_profile) -> Booking:
    """Booked, hold opened, not yet paid."""
    return await make_booking(db, student, expert)


@pytest.fixture
async def paid_booking(db, student, expert, expert_profile) -> Booking:
    """Paid and waiting for the expert's decision."""
    return await make_booking(
        db, student, expert, transaction_status=TransactionStatus.COMPLETED
    )


@pytest.fixture
async def upcoming_booking(db, student, expert, expert_profile) -> Booking:
    return await make_booking(
        db,
        student,
        expert,
        status=BookingStatus.UPCOMING,
        transaction_status=TransactionStatus.COMPLETED,
        meeting_id=MEETING_ID,
    )


@pytest.fixture
async def completed_booking(db, student, expert, expert_profile) -> Booking:
    return await make_booking(
        db,
        student,
        expert,
        status=BookingStatus.COMPLETED,
        transaction_status=TransactionStatus.COMPLETED,
        meeting_id=MEETING_ID,
    )
