"""Data access for credit batches.

Pure persistence plus the invariants that must hold at the storage boundary:
no negative remaining balance, no decrement of an expired batch, no second
expiry. All methods run inside a transaction owned by the caller.
"""
import enum
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import ColumnElement, and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_ledger.exceptions import InvariantViolationError
from credit_ledger.models.credit_batch import BatchType, CreditBatch
from credit_ledger.utils.money import ZERO, positive_credits, to_credits


class BatchStatus(str, enum.Enum):
    """Filters accepted by :meth:`BatchStore.list_batches`."""

    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    ALL = "all"


def spendable_clause(now: datetime) -> ColumnElement[bool]:
    # Past-expiry batches are unspendable even before the sweep flags them
    return and_(
        CreditBatch.is_expired.is_(False),
        CreditBatch.credits_remaining > 0,
        CreditBatch.expiry_date > now,
    )


def due_for_expiry_clause(now: datetime) -> ColumnElement[bool]:
    return and_(
        CreditBatch.is_expired.is_(False),
        CreditBatch.credits_remaining > 0,
        CreditBatch.expiry_date <= now,
    )


FIFO_ORDER = (CreditBatch.purchase_date.asc(), CreditBatch.id.asc())


class BatchStore:
    """Repository for the ``credit_batches`` table."""

    def __init__(self, db: AsyncSession):
        """Initialize batch store with database session."""
        self.db = db

    async def create_batch(
        self,
        user_id: str,
        amount: Decimal,
        expiry_days: int,
        batch_type: BatchType = BatchType.PURCHASE,
        metadata: Optional[dict[str, Any]] = None,
        purchase_date: Optional[datetime] = None,
        package_ref: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> CreditBatch:
        """
        Insert a new batch with its full amount remaining.

        Args:
            user_id: Owner of the credits
            amount: Credits granted (must be positive)
            expiry_days: Validity window counted from ``purchase_date``
            batch_type: Provenance of the grant
            metadata: Free-form provenance data
            purchase_date: Creation timestamp and FIFO key
            package_ref: Credit package that was bought, if any
            payment_reference: Payment or grant reference the batch came from

        Returns:
            The flushed batch
        """
        credits = positive_credits(amount, "credits_purchased")
        if expiry_days <= 0:
            raise InvariantViolationError(f"expiry_days must be positive, got {expiry_days}")
        if purchase_date is None:
            raise InvariantViolationError("purchase_date is required")

        batch = CreditBatch(
            user_id=user_id,
            credits_purchased=credits,
            credits_remaining=credits,
            credits_used=ZERO,
            purchase_date=purchase_date,
            expiry_date=purchase_date + timedelta(days=expiry_days),
            is_expired=False,
            batch_type=batch_type,
            package_ref=package_ref,
            payment_reference=payment_reference,
            extra_metadata=metadata or {},
        )
        self.db.add(batch)
        await self.db.flush()
        return batch

    async def list_batches(
        self,
        user_id: str,
        status: BatchStatus,
        now: datetime,
        limit: int = 50,
        warning_days: int = 7,
    ) -> list[CreditBatch]:
        """
        List a user's batches by lifecycle state.

        ``active`` and ``expiring_soon`` are FIFO-ordered (next to be spent first);
        ``expired`` is newest expiry first; ``all`` is FIFO order.
        """
        query = select(CreditBatch).where(CreditBatch.user_id == user_id)

        if status == BatchStatus.ACTIVE:
            query = query.where(spendable_clause(now)).order_by(*FIFO_ORDER)
        elif status == BatchStatus.EXPIRING_SOON:
            query = query.where(
                spendable_clause(now),
                CreditBatch.expiry_date <= now + timedelta(days=warning_days),
            ).order_by(*FIFO_ORDER)
        elif status == BatchStatus.EXPIRED:
            query = query.where(CreditBatch.is_expired.is_(True)).order_by(
                CreditBatch.expired_at.desc(), CreditBatch.id.desc()
            )
        else:
            query = query.order_by(*FIFO_ORDER)

        result = await self.db.execute(query.limit(limit))
        return list(result.scalars().all())

    async def select_for_update(self, user_id: str, now: datetime) -> list[CreditBatch]:
        """
        Lock and return every spendable batch of a user, oldest first.

        Only the deduction engine calls this, inside its own transaction.
        """
        result = await self.db.execute(
            select(CreditBatch)
            .where(CreditBatch.user_id == user_id, spendable_clause(now))
            .order_by(*FIFO_ORDER)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def select_due_for_expiry(self, user_id: str, now: datetime, limit: int) -> list[CreditBatch]:
        """Lock up to ``limit`` batches of a user that are past expiry and not yet flagged."""
        result = await self.db.execute(
            select(CreditBatch)
            .where(CreditBatch.user_id == user_id, due_for_expiry_clause(now))
            .order_by(*FIFO_ORDER)
            .limit(limit)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def users_with_due_batches(self, now: datetime) -> list[str]:
        """User ids owning at least one batch the sweep should retire. No locks taken."""
        result = await self.db.execute(
            select(CreditBatch.user_id).where(due_for_expiry_clause(now)).distinct().order_by(CreditBatch.user_id)
        )
        return list(result.scalars().all())

    def decrement(self, batch: CreditBatch, amount: Decimal) -> None:
        """
        Spend ``amount`` from a locked batch.

        Raises:
            InvariantViolationError: If the batch is expired or would go negative
        """
        if batch.is_expired:
            raise InvariantViolationError(f"Batch {batch.batch_id} is expired and cannot be decremented")
        if amount <= ZERO:
            raise InvariantViolationError(f"Decrement of batch {batch.batch_id} must be positive, got {amount}")
        remaining = to_credits(batch.credits_remaining)
        if amount > remaining:
            raise InvariantViolationError(
                f"Batch {batch.batch_id} has {remaining} remaining, cannot decrement {amount}"
            )

        batch.credits_remaining = remaining - amount
        batch.credits_used = to_credits(batch.credits_used) + amount

    def mark_expired(self, batch: CreditBatch, now: datetime) -> Decimal:
        """
        Flag a locked batch expired and return its frozen remaining balance.

        ``credits_remaining`` is kept for audit; the aggregate absorbs it.
        """
        if batch.is_expired:
            raise InvariantViolationError(f"Batch {batch.batch_id} is already expired")
        batch.is_expired = True
        batch.expired_at = now
        return to_credits(batch.credits_remaining)

    async def find_by_payment_reference(
        self, payment_reference: str, batch_types: Optional[Sequence[BatchType]] = None
    ) -> list[CreditBatch]:
        """
        Batches created from one payment, in creation order.

        A reference is unique per batch type, so a refund may reuse the
        reference of the purchase it refunds. Pass ``batch_types`` to look
        only at the grants being deduplicated.
        """
        query = select(CreditBatch).where(CreditBatch.payment_reference == payment_reference)
        if batch_types is not None:
            query = query.where(CreditBatch.batch_type.in_(list(batch_types)))
        result = await self.db.execute(query.order_by(CreditBatch.id))
        return list(result.scalars().all())

    async def get_by_batch_ids(self, batch_ids: Sequence[UUID]) -> list[CreditBatch]:
        """Fetch batches by their public ids."""
        if not batch_ids:
            return []
        result = await self.db.execute(
            select(CreditBatch).where(CreditBatch.batch_id.in_(list(batch_ids))).order_by(CreditBatch.id)
        )
        return list(result.scalars().all())

    async def sum_spendable(self, user_id: str, now: datetime) -> Decimal:
        """Credits a deduction could take right now."""
        result = await self.db.execute(
            select(func.sum(CreditBatch.credits_remaining)).where(
                CreditBatch.user_id == user_id, spendable_clause(now)
            )
        )
        return to_credits(result.scalar())

    async def sum_pending_expiry(self, user_id: str, now: datetime) -> Decimal:
        """Credits in past-expiry batches the sweep has not retired yet."""
        result = await self.db.execute(
            select(func.sum(CreditBatch.credits_remaining)).where(
                CreditBatch.user_id == user_id, due_for_expiry_clause(now)
            )
        )
        return to_credits(result.scalar())

    async def sum_unexpired(self, user_id: str) -> Decimal:
        """Σ credits_remaining over batches not flagged expired, the batch-side truth."""
        result = await self.db.execute(
            select(func.sum(CreditBatch.credits_remaining)).where(
                CreditBatch.user_id == user_id,
                CreditBatch.is_expired.is_(False),
            )
        )
        return to_credits(result.scalar())
