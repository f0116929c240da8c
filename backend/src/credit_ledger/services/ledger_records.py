"""Data access for the aggregate row and the append-only transaction log."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_ledger.exceptions import InvariantViolationError
from credit_ledger.models.credit_transaction import CreditTransaction, TransactionType
from credit_ledger.models.user_credit_aggregate import UserCreditAggregate
from credit_ledger.utils.money import ZERO, to_credits


class AggregateStore:
    """Repository for ``user_credit_aggregates``. Counters only ever move by deltas."""

    def __init__(self, db: AsyncSession):
        """Initialize aggregate store with database session."""
        self.db = db

    async def ensure(self, user_id: str) -> None:
        """Create the user's aggregate row on first grant."""
        existing = await self.db.scalar(
            select(UserCreditAggregate.id).where(UserCreditAggregate.user_id == user_id)
        )
        if existing is not None:
            return

        try:
            async with self.db.begin_nested():
                self.db.add(
                    UserCreditAggregate(
                        user_id=user_id,
                        total_credits=ZERO,
                        used_credits=ZERO,
                        expired_credits=ZERO,
                    )
                )
        except IntegrityError:
            # A concurrent first grant created it; the savepoint rollback keeps our transaction usable
            return

    async def get(self, user_id: str) -> Optional[UserCreditAggregate]:
        """Current aggregate row, refreshed from the database."""
        result = await self.db.execute(
            select(UserCreditAggregate)
            .where(UserCreditAggregate.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lock(self, user_id: str) -> Optional[UserCreditAggregate]:
        """Aggregate row under a row lock, used to serialize alert deduplication per user."""
        result = await self.db.execute(
            select(UserCreditAggregate)
            .where(UserCreditAggregate.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def available(self, user_id: str) -> Decimal:
        """Stored ``available_credits`` (total − used − expired)."""
        value = await self.db.scalar(
            select(UserCreditAggregate.available_credits).where(UserCreditAggregate.user_id == user_id)
        )
        return to_credits(value)

    async def apply_delta(
        self,
        user_id: str,
        now: datetime,
        total: Decimal = ZERO,
        used: Decimal = ZERO,
        expired: Decimal = ZERO,
    ) -> Decimal:
        """
        Move the counters in the caller's transaction.

        The matching ``last_*_at`` timestamp is touched for every counter that moves.

        Returns:
            Available credits after the change

        Raises:
            InvariantViolationError: If the row does not exist
        """
        values: dict[str, Any] = {}
        if total:
            values["total_credits"] = UserCreditAggregate.total_credits + total
            values["last_purchase_at"] = now
        if used:
            values["used_credits"] = UserCreditAggregate.used_credits + used
            values["last_usage_at"] = now
        if expired:
            values["expired_credits"] = UserCreditAggregate.expired_credits + expired
            values["last_expiry_at"] = now
        if not values:
            return await self.available(user_id)

        result = await self.db.execute(
            update(UserCreditAggregate)
            .where(UserCreditAggregate.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvariantViolationError(f"No credit aggregate row for user {user_id}")
        return await self.available(user_id)


class TransactionLog:
    """Repository for ``credit_transactions``. Insert and read only."""

    def __init__(self, db: AsyncSession):
        """Initialize transaction log with database session."""
        self.db = db

    async def record(
        self,
        user_id: str,
        type: TransactionType,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        idempotency_key: str,
        now: datetime,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> CreditTransaction:
        """Append a ledger entry."""
        entry = CreditTransaction(
            user_id=user_id,
            type=type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            idempotency_key=idempotency_key,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            extra_metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def find(self, idempotency_key: str) -> Optional[CreditTransaction]:
        """Entry previously written under ``idempotency_key``, if any."""
        result = await self.db.execute(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        page_size: int = 20,
        type: Optional[TransactionType] = None,
    ) -> tuple[list[CreditTransaction], int]:
        """
        Paginated history, newest first.

        Returns:
            Tuple of (entries, total count)
        """
        conditions = [CreditTransaction.user_id == user_id]
        if type is not None:
            conditions.append(CreditTransaction.type == type)

        total = await self.db.scalar(select(func.count(CreditTransaction.id)).where(*conditions))

        result = await self.db.execute(
            select(CreditTransaction)
            .where(*conditions)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), int(total or 0)
