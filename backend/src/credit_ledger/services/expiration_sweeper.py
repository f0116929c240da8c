"""Retires past-expiry credit batches on a schedule."""
from datetime import datetime
from decimal import Decimal
from typing import Callable
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.config import Settings
from credit_ledger.exceptions import InvariantViolationError, TransientStorageError
from credit_ledger.metrics import batches_expired_total, credits_expired_total
from credit_ledger.models.base import utcnow
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.schemas.credit import SweepResult
from credit_ledger.services.batch_store import BatchStore
from credit_ledger.services.ledger_records import AggregateStore, TransactionLog
from credit_ledger.transactions import run_in_transaction
from credit_ledger.utils.money import ZERO

logger = structlog.get_logger(__name__)


class ExpirationSweeper:
    """
    Flags past-expiry batches expired and moves their remainder into the aggregate.

    Work is committed per user in chunks of ``settings.sweep_chunk_size`` so
    lock hold time stays bounded. A batch is selected only while it is
    unflagged, which makes the sweep safe to re-run and to interrupt: whatever
    already committed is skipped next time, never counted twice.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize sweeper with its storage handle."""
        self.session_factory = session_factory
        self.settings = settings
        self._clock = clock

    async def sweep(self) -> SweepResult:
        """
        Expire every batch with ``expiry_date <= now`` and credits left.

        Users whose chunks keep failing after retries are reported in
        ``failed_user_ids`` and left for the next run; other users are still
        swept.

        Returns:
            SweepResult with the batches expired by this run only

        Raises:
            InvariantViolationError: If stored data breaks a ledger invariant
        """
        now = self._clock()
        result = SweepResult()

        user_ids = await run_in_transaction(
            self.session_factory,
            lambda db: BatchStore(db).users_with_due_batches(now),
            name="credit_expiration_scan",
            settings=self.settings,
        )
        logger.info("credit_expiration_started", users_due=len(user_ids), as_of=now.isoformat())

        for user_id in user_ids:
            try:
                await self._sweep_user(user_id, now, result)
            except TransientStorageError as e:
                result.failed_user_ids.append(user_id)
                logger.error("credit_expiration_user_failed", user_id=user_id, error=str(e))
            except InvariantViolationError as e:
                logger.error("credit_expiration_aborted", user_id=user_id, error=str(e))
                raise

        logger.info(
            "credit_expiration_completed",
            expired_batch_count=result.expired_batch_count,
            total_credits_expired=str(result.total_credits_expired),
            affected_users=len(result.affected_user_ids),
            failed_users=len(result.failed_user_ids),
        )
        return result

    async def _sweep_user(self, user_id: str, now: datetime, result: SweepResult) -> None:
        chunk_size = self.settings.sweep_chunk_size

        while True:
            expired = await run_in_transaction(
                self.session_factory,
                lambda db: self._expire_chunk(db, user_id, now, chunk_size),
                name="credit_expiration",
                settings=self.settings,
            )
            if not expired:
                return

            credits = sum((amount for _, amount in expired), ZERO)
            result.expired_batch_count += len(expired)
            result.total_credits_expired += credits
            result.expired_batch_ids.extend(batch_id for batch_id, _ in expired)
            if user_id not in result.affected_user_ids:
                result.affected_user_ids.append(user_id)

            batches_expired_total.inc(len(expired))
            credits_expired_total.inc(float(credits))
            for batch_id, amount in expired:
                logger.info(
                    "credit_batch_expired",
                    user_id=user_id,
                    batch_id=str(batch_id),
                    credits_expired=str(amount),
                )

            if len(expired) < chunk_size:
                return

    async def _expire_chunk(
        self, db: AsyncSession, user_id: str, now: datetime, limit: int
    ) -> list[tuple[UUID, Decimal]]:
        batches = BatchStore(db)
        due = await batches.select_due_for_expiry(user_id, now, limit)
        if not due:
            return []

        expired = [(batch.batch_id, batches.mark_expired(batch, now)) for batch in due]
        await db.flush()

        total = sum((amount for _, amount in expired), ZERO)
        aggregates = AggregateStore(db)
        balance_before = await aggregates.available(user_id)
        balance_after = await aggregates.apply_delta(user_id, now, expired=total)

        await TransactionLog(db).record(
            user_id=user_id,
            type=TransactionType.EXPIRY,
            amount=-total,
            balance_before=balance_before,
            balance_after=balance_after,
            # A batch expires once, so its id keys the chunk that retired it
            idempotency_key=f"expiry:{due[0].batch_id}",
            now=now,
            description=f"Expired {len(expired)} credit batch(es)",
            reference_type="system_job",
            reference_id="credit_expiration",
            metadata={
                "expired_batches": [
                    {"batch_id": str(batch_id), "credits_expired": str(amount)} for batch_id, amount in expired
                ],
            },
        )
        return expired
