"""Read side of the ledger: balances, listings, statistics and reconciliation."""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

import structlog
from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.config import Settings
from credit_ledger.exceptions import InvariantViolationError
from credit_ledger.models.base import utcnow
from credit_ledger.models.credit_batch import CreditBatch
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.models.user_credit_aggregate import UserCreditAggregate
from credit_ledger.schemas.credit import CreditBalance
from credit_ledger.schemas.credit import CreditBatch as CreditBatchSchema
from credit_ledger.schemas.credit import CreditTransaction as CreditTransactionSchema
from credit_ledger.schemas.credit import CreditTransactionList, ExpirationStats, ExpirationSummary, Reconciliation
from credit_ledger.services.batch_store import BatchStatus, BatchStore, due_for_expiry_clause, spendable_clause
from credit_ledger.services.ledger_records import TransactionLog
from credit_ledger.transactions import run_in_transaction
from credit_ledger.utils.money import CENT, ZERO, positive_credits, to_credits

logger = structlog.get_logger(__name__)

# Recently expired batches shown in an expiration summary
RECENT_EXPIRED_LIMIT = 10


class BalanceAggregator:
    """
    Balance reads backed by the aggregate row.

    ``available_credits`` is a generated column over the three counters, and
    every mutator moves the counters in the same transaction as its batch
    change, so the stored view cannot drift from the batches. Batches past
    expiry that the sweeper has not flagged yet are reported as
    ``pending_expiry``: they are already unspendable and count as expired.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize balance aggregator with its storage handle."""
        self.session_factory = session_factory
        self.settings = settings
        self._clock = clock

    async def get_balance(self, user_id: str) -> CreditBalance:
        """
        Current balance of a user.

        Read in one statement so the counters and the pending-expiry sum come
        from the same snapshot. Users without a ledger account get zeros.
        """
        now = self._clock()

        async def operation(db: AsyncSession) -> CreditBalance:
            pending = (
                select(func.coalesce(func.sum(CreditBatch.credits_remaining), 0))
                .where(CreditBatch.user_id == user_id, due_for_expiry_clause(now))
                .scalar_subquery()
            )
            row = (
                await db.execute(
                    select(UserCreditAggregate, pending.label("pending_expiry")).where(
                        UserCreditAggregate.user_id == user_id
                    )
                )
            ).one_or_none()
            if row is None:
                return CreditBalance(user_id=user_id)

            aggregate = row[0]
            pending_expiry = to_credits(row.pending_expiry)
            return CreditBalance(
                user_id=user_id,
                total=to_credits(aggregate.total_credits),
                used=to_credits(aggregate.used_credits),
                expired=to_credits(aggregate.expired_credits) + pending_expiry,
                available=to_credits(aggregate.available_credits) - pending_expiry,
                pending_expiry=pending_expiry,
                last_purchase_at=aggregate.last_purchase_at,
                last_usage_at=aggregate.last_usage_at,
                last_expiry_at=aggregate.last_expiry_at,
            )

        return await run_in_transaction(
            self.session_factory, operation, name="credit_balance", settings=self.settings
        )

    async def check_sufficient(self, user_id: str, amount: Decimal) -> bool:
        """
        Whether ``amount`` credits are spendable right now.

        Advisory only: the answer can be stale by the time the caller deducts.
        ``DeductionEngine.deduct`` re-validates under lock.
        """
        credits = positive_credits(amount)
        balance = await self.get_balance(user_id)
        return balance.available >= credits

    async def list_batches(
        self,
        user_id: str,
        status: BatchStatus = BatchStatus.ACTIVE,
        limit: int = 50,
    ) -> list[CreditBatchSchema]:
        """A user's batches filtered by lifecycle state."""
        now = self._clock()
        batches = await run_in_transaction(
            self.session_factory,
            lambda db: BatchStore(db).list_batches(
                user_id, status, now, limit=limit, warning_days=self.settings.expiry_warning_days
            ),
            name="credit_batch_list",
            settings=self.settings,
        )
        return [CreditBatchSchema.model_validate(batch) for batch in batches]

    async def list_transactions(
        self,
        user_id: str,
        page: int = 1,
        page_size: int = 20,
        type: Optional[TransactionType] = None,
    ) -> CreditTransactionList:
        """Paginated ledger history, newest first."""
        items, total = await run_in_transaction(
            self.session_factory,
            lambda db: TransactionLog(db).list_for_user(user_id, page=page, page_size=page_size, type=type),
            name="credit_transaction_list",
            settings=self.settings,
        )
        return CreditTransactionList(
            items=[CreditTransactionSchema.model_validate(item) for item in items],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def get_expiration_summary(self, user_id: str) -> ExpirationSummary:
        """Active, expiring-soon and recently expired batches of a user."""
        now = self._clock()
        warning_days = self.settings.expiry_warning_days

        async def operation(db: AsyncSession) -> ExpirationSummary:
            store = BatchStore(db)
            active = await store.list_batches(user_id, BatchStatus.ACTIVE, now, limit=1000)
            expiring = await store.list_batches(
                user_id, BatchStatus.EXPIRING_SOON, now, limit=1000, warning_days=warning_days
            )
            expired = await store.list_batches(user_id, BatchStatus.EXPIRED, now, limit=RECENT_EXPIRED_LIMIT)

            return ExpirationSummary(
                user_id=user_id,
                active_batches=len(active),
                total_active_credits=sum((to_credits(b.credits_remaining) for b in active), ZERO),
                expiring_soon_batches=len(expiring),
                credits_expiring_soon=sum((to_credits(b.credits_remaining) for b in expiring), ZERO),
                recent_expired_batches=len(expired),
                batches_active=[CreditBatchSchema.model_validate(b) for b in active],
                batches_expiring_soon=[CreditBatchSchema.model_validate(b) for b in expiring],
                batches_recently_expired=[CreditBatchSchema.model_validate(b) for b in expired],
            )

        return await run_in_transaction(
            self.session_factory, operation, name="credit_expiration_summary", settings=self.settings
        )

    async def get_expiration_stats(self, days: int = 30) -> ExpirationStats:
        """
        System-wide expiration statistics.

        Args:
            days: Trailing window for expired batches

        Returns:
            ExpirationStats; ``expiration_rate`` is the percentage of credits
            expired in the window against expired plus still-active credits
        """
        now = self._clock()
        since = now - timedelta(days=days)
        horizon = now + timedelta(days=self.settings.expiry_warning_days)

        expired_in_window = and_(CreditBatch.is_expired.is_(True), CreditBatch.expired_at >= since)
        active = spendable_clause(now)
        expiring_soon = and_(active, CreditBatch.expiry_date <= horizon)

        def count_where(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        def credits_where(condition):
            return func.coalesce(func.sum(case((condition, CreditBatch.credits_remaining), else_=0)), 0)

        async def operation(db: AsyncSession):
            return (
                await db.execute(
                    select(
                        count_where(expired_in_window).label("batches_expired"),
                        credits_where(expired_in_window).label("credits_expired"),
                        count_where(expiring_soon).label("batches_expiring_soon"),
                        credits_where(expiring_soon).label("credits_expiring_soon"),
                        count_where(active).label("active_batches"),
                        credits_where(active).label("active_credits"),
                    )
                )
            ).one()

        row = await run_in_transaction(
            self.session_factory, operation, name="credit_expiration_stats", settings=self.settings
        )

        credits_expired = to_credits(row.credits_expired)
        active_credits = to_credits(row.active_credits)
        denominator = credits_expired + active_credits
        rate = (credits_expired / denominator * 100).quantize(CENT) if denominator > ZERO else ZERO

        return ExpirationStats(
            period_days=days,
            batches_expired=int(row.batches_expired),
            credits_expired=credits_expired,
            batches_expiring_soon=int(row.batches_expiring_soon),
            credits_expiring_soon=to_credits(row.credits_expiring_soon),
            active_batches=int(row.active_batches),
            active_credits=active_credits,
            expiration_rate=rate,
        )

    async def reconcile(self, user_id: str) -> Reconciliation:
        """
        Compare the aggregate with the batches it summarizes.

        ``available_credits`` must equal the sum of ``credits_remaining`` over
        batches not yet flagged expired.
        """

        async def operation(db: AsyncSession) -> Reconciliation:
            aggregate_available = to_credits(
                await db.scalar(
                    select(UserCreditAggregate.available_credits).where(UserCreditAggregate.user_id == user_id)
                )
            )
            batch_remaining = await BatchStore(db).sum_unexpired(user_id)
            return _reconciliation(user_id, aggregate_available, batch_remaining)

        return await run_in_transaction(
            self.session_factory, operation, name="credit_reconcile", settings=self.settings
        )

    async def assert_consistent(self, user_id: str) -> Reconciliation:
        """
        Reconcile one user and fail loudly on drift.

        Raises:
            InvariantViolationError: If the aggregate disagrees with the batches
        """
        report = await self.reconcile(user_id)
        if not report.is_consistent:
            raise InvariantViolationError(
                f"Credit aggregate for user {user_id} drifted by {report.drift} "
                f"(aggregate {report.aggregate_available}, batches {report.batch_remaining})"
            )
        return report

    async def reconcile_all(self) -> list[Reconciliation]:
        """Every user whose aggregate disagrees with their batches."""

        async def operation(db: AsyncSession):
            remaining = (
                select(
                    CreditBatch.user_id.label("user_id"),
                    func.sum(CreditBatch.credits_remaining).label("batch_remaining"),
                )
                .where(CreditBatch.is_expired.is_(False))
                .group_by(CreditBatch.user_id)
                .subquery()
            )
            result = await db.execute(
                select(
                    UserCreditAggregate.user_id,
                    UserCreditAggregate.available_credits,
                    func.coalesce(remaining.c.batch_remaining, 0).label("batch_remaining"),
                )
                .outerjoin(remaining, remaining.c.user_id == UserCreditAggregate.user_id)
                .order_by(UserCreditAggregate.user_id)
            )
            return list(result.all())

        rows = await run_in_transaction(
            self.session_factory, operation, name="credit_reconcile_all", settings=self.settings
        )

        drifted = []
        for row in rows:
            report = _reconciliation(row.user_id, to_credits(row.available_credits), to_credits(row.batch_remaining))
            if not report.is_consistent:
                logger.error(
                    "credit_aggregate_drift",
                    user_id=report.user_id,
                    aggregate_available=str(report.aggregate_available),
                    batch_remaining=str(report.batch_remaining),
                    drift=str(report.drift),
                )
                drifted.append(report)

        logger.info("credit_reconciliation_completed", users_checked=len(rows), users_drifted=len(drifted))
        return drifted


def _reconciliation(user_id: str, aggregate_available: Decimal, batch_remaining: Decimal) -> Reconciliation:
    drift = aggregate_available - batch_remaining
    return Reconciliation(
        user_id=user_id,
        aggregate_available=aggregate_available,
        batch_remaining=batch_remaining,
        drift=drift,
        is_consistent=drift == ZERO,
    )
