"""
tests/test_bookings.py
Booking ledger lifecycle:
create → (payment) → accept/reject → complete/cancel
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient
from jose import jwt
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import AsyncSessionLocal
from config.settings import settings
from shared.exceptions import ProviderUnavailableError
from shared.models.models import (
    ActiveProfile,
    Booking,
    BookingAuditLog,
    BookingStatus,
    ExpertProfile,
    Notification,
    NotificationType,
    Transaction,
    TransactionStatus,
    User,
)
from shared.repositories import bookings as bookings_repo
from shared.schemas.schemas import build_meta
from tests.conftest import MEETING_URL, auth_headers, make_booking


def booking_payload(expert: User, **overrides) -> dict:
    payload = {
        "expert_id": str(expert.id),
        "date": "2030-01-15",
        "time": "14:00",
        "session_duration": 60,
        "session_details": {"topic": "System design review", "agenda": "Sharding strategy"},
        "amount": "50.00",
    }
    payload.update(overrides)
    return payload


async def count_rows(db: AsyncSession, model) -> int:
    return await db.scalar(select(func.count()).select_from(model))


# ── Booking Creation ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_booking_success(
    client: AsyncClient,
    db: AsyncSession,
    student: User,
    expert: User,
    expert_profile: ExpertProfile,
    payment_provider,
):
    """Student books an onboarded expert: PENDING booking, PENDING transaction, hold opened."""
    response = await client.post(
        "/bookings", json=booking_payload(expert), headers=auth_headers(student)
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["payment_intent_id"] == "pi_test_123"
    assert data["client_secret"] == "pi_test_123_secret"
    assert Decimal(data["amount"]) == Decimal("50.00")

    hold = payment_provider.create_payment_hold.await_args.kwargs
    assert hold["amount_minor"] == 5000
    assert hold["destination_account"] == "acct_expert_123"
    assert hold["metadata"]["booking_id"] == data["booking_id"]

    booking = await db.get(Booking, uuid.UUID(data["booking_id"]))
    assert booking.status == BookingStatus.PENDING
    # Same instant in each party's civil time
    assert booking.expert_date_time == datetime(2030, 1, 15, 14, 0)
    assert booking.student_date_time == datetime(2030, 1, 15, 9, 0)

    transaction = await db.get(Transaction, uuid.UUID(data["transaction_id"]))
    assert transaction.status == TransactionStatus.PENDING
    assert transaction.amount == Decimal("50.00")
    assert transaction.provider_id == "pi_test_123"


@pytest.mark.asyncio
async def test_create_booking_writes_audit_entry(
    client: AsyncClient, db: AsyncSession, student: User, expert: User, expert_profile: ExpertProfile
):
    response = await client.post(
        "/bookings", json=booking_payload(expert), headers=auth_headers(student)
    )
    assert response.status_code == 201

    entry = (await db.execute(select(BookingAuditLog))).scalar_one()
    assert entry.from_status is None
    assert entry.to_status == "PENDING"
    assert entry.changed_by_id == student.id


@pytest.mark.asyncio
async def test_create_booking_expert_not_onboarded(
    client: AsyncClient,
    db: AsyncSession,
    student: User,
    expert: User,
    expert_profile: ExpertProfile,
    payment_provider,
):
    """No booking or transaction row is written for an expert without payment setup."""
    expert_profile.is_onboard_completed = False
    await db.commit()

    response = await client.post(
        "/bookings", json=booking_payload(expert), headers=auth_headers(student)
    )
    assert response.status_code == 400
    assert response.json()["error"] == "NotOnboardedError"
    assert await count_rows(db, Booking) == 0
    assert await count_rows(db, Transaction) == 0
    payment_provider.create_payment_hold.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_booking_amount_mismatch(
    client: AsyncClient, student: User, expert: User, expert_profile: ExpertProfile
):
    response = await client.post(
        "/bookings", json=booking_payload(expert, amount="40.00"), headers=auth_headers(student)
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "ValidationError"
    assert body["details"]["expected"] == "50.00"


@pytest.mark.asyncio
async def test_create_booking_missing_fields(
    client: AsyncClient, student: User, expert: User, expert_profile: ExpertProfile
):
    payload = booking_payload(expert)
    del payload["session_details"]
    response = await client.post("/bookings", json=payload, headers=auth_headers(student))
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_create_booking_invalid_time(
    client: AsyncClient, student: User, expert: User, expert_profile: ExpertProfile
):
    response = await client.post(
        "/bookings", json=booking_payload(expert, time="25:99"), headers=auth_headers(student)
    )
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_create_booking_unknown_expert(client: AsyncClient, student: User):
    payload = booking_payload(student, expert_id=str(uuid.uuid4()))
    response = await client.post("/bookings", json=payload, headers=auth_headers(student))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_expert_profile_cannot_create_booking(
    client: AsyncClient, expert: User, expert_profile: ExpertProfile
):
    response = await client.post(
        "/bookings", json=booking_payload(expert), headers=auth_headers(expert)
    )
    assert response.status_code == 403
    assert response.json()["error"] == "PermissionError"


@pytest.mark.asyncio
async def test_create_booking_provider_down_leaves_no_rows(
    client: AsyncClient,
    db: AsyncSession,
    student: User,
    expert: User,
    expert_profile: ExpertProfile,
    payment_provider,
):
    payment_provider.create_payment_hold.side_effect = ProviderUnavailableError(
        "Payment provider is unavailable, please retry"
    )
    response = await client.post(
        "/bookings", json=booking_payload(expert), headers=auth_headers(student)
    )
    assert response.status_code == 502
    assert await count_rows(db, Booking) == 0
    assert await count_rows(db, Transaction) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("time", ["14:00", "14:30", "01:30 PM"])
async def test_create_booking_taken_slot_conflicts(
    client: AsyncClient,
    db: AsyncSession,
    student: User,
    expert: User,
    payment_provider,
    upcoming_booking: Booking,
    time: str,
):
    """The 14:00-15:00 session blocks any request overlapping it."""
    response = await client.post(
        "/bookings", json=booking_payload(expert, time=time), headers=auth_headers(student)
    )
    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "ConflictError"
    assert body["message"] == "This time slot is already booked"
    assert await count_rows(db, Booking) == 1
    payment_provider.create_payment_hold.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_booking_adjacent_slot_allowed(
    client: AsyncClient, student: User, expert: User, upcoming_booking: Booking
):
    response = await client.post(
        "/bookings", json=booking_payload(expert, time="15:00"), headers=auth_headers(student)
    )
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_refunded_booking_frees_slot(
    client: AsyncClient, db: AsyncSession, student: User, expert: User, expert_profile: ExpertProfile
):
    await make_booking(
        db, student, expert, status=BookingStatus.REFUNDED, transaction_status=TransactionStatus.REFUNDED
    )
    response = await client.post(
        "/bookings", json=booking_payload(expert), headers=auth_headers(student)
    )
    assert response.status_code == 201
    assert await count_rows(db, Booking) == 2


@pytest.mark.asyncio
async def test_unique_index_rejects_second_live_booking(
    db: AsyncSession, student: User, expert: User, pending_booking: Booking
):
    """Two concurrent creates that both pass the overlap check still cannot both land."""
    with pytest.raises(IntegrityError):
        await make_booking(db, student, expert)
    await db.rollback()


# ── Accept / Reject ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_accept_booking(
    client: AsyncClient,
    db: AsyncSession,
    student: User,
    expert: User,
    paid_booking: Booking,
    meeting_provider,
    publisher,
):
    """Expert accepts: UPCOMING, meeting scheduled, student notified, prompt disabled."""
    prompt = Notification(
        id=uuid.uuid4(),
        type=NotificationType.BOOKING_REQUESTED,
        sender_id=student.id,
        recipient_id=expert.id,
        title="New session request",
        message="Sam Student booked a 60-minute session.",
        meta=build_meta(
            NotificationType.BOOKING_REQUESTED,
            booking_id=paid_booking.id,
            texts=["Decline", "Accept"],
        ),
    )
    db.add(prompt)
    await db.commit()

    response = await client.patch(
        f"/bookings/{paid_booking.id}/accept?notification_id={prompt.id}",
        headers=auth_headers(expert),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "UPCOMING"
    assert data["meeting_link"] == MEETING_URL

    meeting = meeting_provider.create_meeting.await_args.kwargs
    assert meeting["topic"] == "Session with Sam Student"
    assert meeting["duration_minutes"] == 60
    assert meeting["timezone"] == "Europe/London"

    recipient_id, event_type, payload = publisher.publish_to_user.await_args.args
    assert recipient_id == student.id
    assert event_type == "notification"
    assert payload["type"] == "BOOKING_CONFIRMED"

    await db.refresh(prompt)
    assert prompt.meta["disabled"] is True
    assert prompt.meta["texts"] == ["Decline", "Accepted"]


@pytest.mark.asyncio
async def test_double_accept_conflicts(
    client: AsyncClient, expert: User, paid_booking: Booking, meeting_provider
):
    first = await client.patch(f"/bookings/{paid_booking.id}/accept", headers=auth_headers(expert))
    assert first.status_code == 200

    second = await client.patch(f"/bookings/{paid_booking.id}/accept", headers=auth_headers(expert))
    assert second.status_code == 409
    assert second.json()["error"] == "ConflictError"
    assert meeting_provider.create_meeting.await_count == 1


@pytest.mark.asyncio
async def test_conditional_transition_admits_one_winner(pending_booking: Booking):
    """Two sessions racing on one PENDING booking: only the first claim matches."""
    async with AsyncSessionLocal() as first, AsyncSessionLocal() as second:
        first_won = await bookings_repo.transition(
            first, pending_booking.id, [BookingStatus.PENDING], BookingStatus.UPCOMING
        )
        await first.commit()
        second_won = await bookings_repo.transition(
            second, pending_booking.id, [BookingStatus.PENDING], BookingStatus.REFUNDED
        )
        await second.commit()

    assert first_won is True
    assert second_won is False


@pytest.mark.asyncio
async def test_accept_requires_payment(
    client: AsyncClient, db: AsyncSession, expert: User, pending_booking: Booking, meeting_provider
):
    response = await client.patch(
        f"/bookings/{pending_booking.id}/accept", headers=auth_headers(expert)
    )
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidStateError"
    meeting_provider.create_meeting.assert_not_awaited()

    await db.refresh(pending_booking)
    assert pending_booking.status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_accept_by_other_expert_forbidden(
    client: AsyncClient, db: AsyncSession, paid_booking: Booking
):
    other = User(
        id=uuid.uuid4(),
        email="other.expert@example.com",
        name="Other Expert",
        active_profile=ActiveProfile.EXPERT,
    )
    db.add(other)
    await db.commit()

    response = await client.patch(f"/bookings/{paid_booking.id}/accept", headers=auth_headers(other))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_accept_meeting_failure_keeps_pending(
    client: AsyncClient,
    db: AsyncSession,
    expert: User,
    paid_booking: Booking,
    meeting_provider,
    publisher,
):
    meeting_provider.create_meeting.side_effect = ProviderUnavailableError(
        "Could not create the meeting, please retry"
    )
    response = await client.patch(f"/bookings/{paid_booking.id}/accept", headers=auth_headers(expert))
    assert response.status_code == 502
    assert response.json()["error"] == "ProviderUnavailableError"

    await db.refresh(paid_booking)
    assert paid_booking.status == BookingStatus.PENDING
    assert paid_booking.meeting_link is None
    assert await count_rows(db, Notification) == 0
    publisher.publish_to_user.assert_not_awaited()


@pytest.mark.asyncio
async def test_reject_paid_booking_refunds(
    client: AsyncClient,
    db: AsyncSession,
    student: User,
    expert: User,
    paid_booking: Booking,
    payment_provider,
):
    response = await client.patch(f"/bookings/{paid_booking.id}/reject", headers=auth_headers(expert))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "REFUNDED"
    assert data["refund_reason"] == "Declined by expert"

    payment_provider.refund.assert_awaited_once()
    assert payment_provider.refund.await_args.args == ("pi_fixture_123",)
    assert payment_provider.refund.await_args.kwargs["reverse_transfer"] is True

    transaction = (await db.execute(select(Transaction))).scalar_one()
    assert payment_provider.refund.await_args.kwargs["idempotency_key"] == f"refund_{transaction.id}"
    await db.refresh(transaction)
    assert transaction.status == TransactionStatus.REFUNDED
    assert transaction.refund_id == "re_test_123"

    notification = (await db.execute(select(Notification))).scalar_one()
    assert notification.type == NotificationType.BOOKING_CANCELLED_BY_EXPERT
    assert notification.recipient_id == student.id


@pytest.mark.asyncio
async def test_reject_unpaid_booking_releases_hold(
    client: AsyncClient, db: AsyncSession, expert: User, pending_booking: Booking, payment_provider
):
    response = await client.patch(
        f"/bookings/{pending_booking.id}/reject", headers=auth_headers(expert)
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "REFUNDED"
    transaction = (await db.execute(select(Transaction))).scalar_one()
    payment_provider.cancel_hold.assert_awaited_once_with(
        "pi_fixture_123", idempotency_key=f"cancel_{transaction.id}"
    )
    payment_provider.refund.assert_not_awaited()


@pytest.mark.asyncio
async def test_respond_requires_onboarding(
    client: AsyncClient,
    db: AsyncSession,
    expert: User,
    expert_profile: ExpertProfile,
    paid_booking: Booking,
):
    expert_profile.stripe_account_id = None
    await db.commit()

    response = await client.patch(f"/bookings/{paid_booking.id}/accept", headers=auth_headers(expert))
    assert response.status_code == 400
    assert response.json()["error"] == "NotOnboardedError"


# ── Completion ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_mark_completed(
    client: AsyncClient, db: AsyncSession, student: User, expert: User, upcoming_booking: Booking
):
    response = await client.post(
        f"/bookings/{upcoming_booking.id}/complete", headers=auth_headers(student)
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "COMPLETED"

    notification = (await db.execute(select(Notification))).scalar_one()
    assert notification.type == NotificationType.BOOKING_COMPLETED
    assert notification.recipient_id == expert.id

    again = await client.post(
        f"/bookings/{upcoming_booking.id}/complete", headers=auth_headers(expert)
    )
    assert again.status_code == 409
    assert again.json()["error"] == "InvalidStateError"


@pytest.mark.asyncio
async def test_complete_pending_booking_is_invalid(
    client: AsyncClient, db: AsyncSession, student: User, pending_booking: Booking
):
    response = await client.post(
        f"/bookings/{pending_booking.id}/complete", headers=auth_headers(student)
    )
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidStateError"

    await db.refresh(pending_booking)
    assert pending_booking.status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_outsider_cannot_complete(
    client: AsyncClient, outsider: User, upcoming_booking: Booking
):
    response = await client.post(
        f"/bookings/{upcoming_booking.id}/complete", headers=auth_headers(outsider)
    )
    assert response.status_code == 403


# ── Cancellation ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_pending_booking(
    client: AsyncClient,
    db: AsyncSession,
    student: User,
    expert: User,
    pending_booking: Booking,
    payment_provider,
    publisher,
):
    """Cancel before capture: hold released, REFUNDED with the reason, expert notified."""
    response = await client.post(
        f"/bookings/{pending_booking.id}/cancel",
        json={"reason": "Schedule conflict"},
        headers=auth_headers(student),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "REFUNDED"
    assert data["refund_reason"] == "Schedule conflict"

    transaction = (await db.execute(select(Transaction))).scalar_one()
    payment_provider.cancel_hold.assert_awaited_once_with(
        "pi_fixture_123", idempotency_key=f"cancel_{transaction.id}"
    )
    await db.refresh(transaction)
    assert transaction.status == TransactionStatus.REFUNDED
    assert transaction.refund_reason == "Schedule conflict"
    assert transaction.refund_date is not None

    recipient_id, _, payload = publisher.publish_to_user.await_args.args
    assert recipient_id == expert.id
    assert payload["type"] == "BOOKING_CANCELLED_BY_STUDENT"


@pytest.mark.asyncio
async def test_cancel_upcoming_booking_by_expert_refunds(
    client: AsyncClient, db: AsyncSession, student: User, expert: User, upcoming_booking: Booking, payment_provider
):
    response = await client.post(
        f"/bookings/{upcoming_booking.id}/cancel",
        json={"reason": "Unwell today"},
        headers=auth_headers(expert),
    )
    assert response.status_code == 200
    payment_provider.refund.assert_awaited_once()

    notification = (await db.execute(select(Notification))).scalar_one()
    assert notification.type == NotificationType.BOOKING_CANCELLED_BY_EXPERT
    assert notification.recipient_id == student.id


@pytest.mark.asyncio
async def test_cancel_completed_booking_is_invalid(
    client: AsyncClient, student: User, completed_booking: Booking
):
    response = await client.post(
        f"/bookings/{completed_booking.id}/cancel",
        json={"reason": "Too late"},
        headers=auth_headers(student),
    )
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidStateError"


# ── Reads ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_bookings_by_active_profile(
    client: AsyncClient, student: User, expert: User, pending_booking: Booking
):
    as_student = await client.get("/bookings", headers=auth_headers(student))
    assert as_student.status_code == 200
    assert as_student.json()["data"]["total"] == 1

    as_expert = await client.get("/bookings", headers=auth_headers(expert))
    assert as_expert.json()["data"]["items"][0]["id"] == str(pending_booking.id)

    filtered = await client.get("/bookings?status=UPCOMING", headers=auth_headers(student))
    assert filtered.json()["data"]["total"] == 0


@pytest.mark.asyncio
async def test_get_booking_participants_only(
    client: AsyncClient, student: User, outsider: User, pending_booking: Booking
):
    own = await client.get(f"/bookings/{pending_booking.id}", headers=auth_headers(student))
    assert own.status_code == 200
    assert own.json()["data"]["status"] == "PENDING"

    other = await client.get(f"/bookings/{pending_booking.id}", headers=auth_headers(outsider))
    assert other.status_code == 403

    missing = await client.get(f"/bookings/{uuid.uuid4()}", headers=auth_headers(student))
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_unauthenticated_returns_401(client: AsyncClient, pending_booking: Booking):
    response = await client.get(f"/bookings/{pending_booking.id}")
    assert response.status_code == 401
    assert response.json()["error"] == "AuthenticationError"


@pytest.mark.asyncio
async def test_revoked_token_returns_401(
    client: AsyncClient, redis_mock, student: User, pending_booking: Booking
):
    redis_mock.exists.return_value = 1
    response = await client.get(f"/bookings/{pending_booking.id}", headers=auth_headers(student))
    assert response.status_code == 401
    assert response.json()["message"] == "Token has been revoked"
    assert redis_mock.exists.await_args.args[0].startswith("jwt_revoked:")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "claims",
    [
        {"profile": "ADMIN"},
        {"profile": None},
        {"email": None},
        {"sub": None},
    ],
)
async def test_malformed_claims_return_401(
    client: AsyncClient, student: User, pending_booking: Booking, claims: dict
):
    payload = {
        "sub": str(student.id),
        "profile": student.active_profile.value,
        "email": student.email,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    payload.update(claims)
    payload = {key: value for key, value in payload.items() if value is not None}
    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    response = await client.get(
        f"/bookings/{pending_booking.id}", headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token claims"
