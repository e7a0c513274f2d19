"""
shared/repositories/transactions.py
Transaction reads and guarded writes. Status never regresses:
PENDING → COMPLETED → REFUNDED, or PENDING → REFUNDED for a voided hold.
"""

from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotFoundError
from shared.models.models import PaymentProviderName, Transaction, TransactionStatus


async def get_transaction(db: AsyncSession, transaction_id: UUID) -> Transaction:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.id == transaction_id)
        .execution_options(populate_existing=True)
    )
    transaction = result.scalar_one_or_none()
    if not transaction:
        raise NotFoundError("Transaction not found")
    return transaction


async def get_for_booking(db: AsyncSession, booking_id: UUID) -> Optional[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_by_provider_id(db: AsyncSession, provider_id: str) -> Optional[Transaction]:
    result = await db.execute(select(Transaction).where(Transaction.provider_id == provider_id))
    return result.scalar_one_or_none()


async def get_by_payout_id(db: AsyncSession, payout_id: str) -> Optional[Transaction]:
    result = await db.execute(select(Transaction).where(Transaction.payout_id == payout_id))
    return result.scalar_one_or_none()


async def create_transaction(
    db: AsyncSession, booking_id: UUID, amount: Decimal, currency: str
) -> Transaction:
    transaction = Transaction(
        booking_id=booking_id,
        amount=amount,
        currency=currency,
        provider=PaymentProviderName.STRIPE,
        status=TransactionStatus.PENDING,
    )
    db.add(transaction)
    await db.flush()
    return transaction


async def transition(
    db: AsyncSession,
    transaction_id: UUID,
    expected: Iterable[TransactionStatus],
    new_status: TransactionStatus,
    **values,
) -> bool:
    """Conditional status write; returns whether the row matched."""
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id, Transaction.status.in_(list(expected)))
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def update_where_null(
    db: AsyncSession,
    transaction_id: UUID,
    guard_column: str,
    **values,
) -> bool:
    """
    Write ``values`` only while ``guard_column`` is still NULL.
    Used to claim one-shot steps (settlement, refund confirmation).
    """
    column = getattr(Transaction, guard_column)
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id, column.is_(None))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_fields(db: AsyncSession, transaction_id: UUID, **values) -> None:
    await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def update_payout_status(db: AsyncSession, transaction_id: UUID, payout_status: str) -> bool:
    """Returns True only when the stored payout status actually changed."""
    result = await db.execute(
        update(Transaction)
        .where(
            Transaction.id == transaction_id,
            or_(Transaction.payout_status.is_(None), Transaction.payout_status != payout_status),
        )
        .values(payout_status=payout_status)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
