"""FIFO deduction of credits across a user's batches."""
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.config import Settings
from credit_ledger.exceptions import InsufficientCreditsError, InvalidAmountError, InvariantViolationError
from credit_ledger.metrics import credits_deducted_total, deductions_rejected_total
from credit_ledger.models.base import utcnow
from credit_ledger.models.credit_transaction import CreditTransaction, TransactionType
from credit_ledger.schemas.credit import BatchDeduction, DeductionResult
from credit_ledger.services.batch_store import BatchStore
from credit_ledger.services.ledger_records import AggregateStore, TransactionLog
from credit_ledger.transactions import run_in_transaction
from credit_ledger.utils.money import ZERO, positive_credits, to_credits

if TYPE_CHECKING:
    from credit_ledger.services.notification_trigger import NotificationTrigger

logger = structlog.get_logger(__name__)


def usage_key(operation_type: str, operation_ref: str) -> str:
    """Idempotency key of a deduction."""
    return f"usage:{operation_type}:{operation_ref}"


class DeductionEngine:
    """
    Spends credits oldest batch first under row locks.

    Callers normally check ``BalanceAggregator.check_sufficient`` before a
    billable action and deduct afterwards. That pair is two separate calls and
    therefore racy (another request can spend or the sweep can expire credits
    in between), so :meth:`deduct` re-validates against the locked batch set
    and refuses rather than over-spend. The pre-check is an optimisation for
    the caller, not the guard.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        notifier: Optional["NotificationTrigger"] = None,
    ):
        """Initialize deduction engine with its storage handle and optional alert hook."""
        self.session_factory = session_factory
        self.settings = settings
        self._clock = clock
        self.notifier = notifier

    async def deduct(
        self,
        user_id: str,
        amount: Decimal,
        operation_type: str,
        operation_ref: str,
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
        transaction_type: TransactionType = TransactionType.USAGE,
    ) -> DeductionResult:
        """
        Deduct ``amount`` credits, oldest non-expired batch first.

        All-or-nothing: if the locked batches cannot cover the full amount the
        transaction rolls back and nothing is spent. A repeated
        ``(operation_type, operation_ref)`` returns the original result.

        Args:
            user_id: Account to charge
            amount: Credits to deduct
            operation_type: Billable action (call, workflow_run, ...)
            operation_ref: Caller-supplied idempotency key for the action
            description: Audit description
            metadata: Extra audit data
            transaction_type: Ledger entry type (usage, or adjustment for admin debits)

        Returns:
            DeductionResult with the per-batch breakdown

        Raises:
            InsufficientCreditsError: If the spendable balance is too small
            InvalidAmountError: If amount is not positive
            TransientStorageError: If storage kept failing after retries
        """
        try:
            credits = positive_credits(amount)
        except InvalidAmountError:
            deductions_rejected_total.labels(reason="invalid_amount").inc()
            raise
        if not operation_ref:
            raise InvalidAmountError("operation_ref is required for deductions")

        key = usage_key(operation_type, operation_ref)

        async def operation(db: AsyncSession) -> DeductionResult:
            batches = BatchStore(db)
            now = self._clock()

            # Lock first: a concurrent deduction with the same key has then committed or rolled back
            locked = await batches.select_for_update(user_id, now)

            log = TransactionLog(db)
            prior = await log.find(key)
            if prior is not None:
                return self._replay(prior, user_id)

            remaining = credits
            affected: list[BatchDeduction] = []
            for batch in locked:
                if remaining <= ZERO:
                    break
                take = min(remaining, to_credits(batch.credits_remaining))
                batches.decrement(batch, take)
                affected.append(
                    BatchDeduction(
                        batch_id=batch.batch_id,
                        credits_deducted=take,
                        credits_remaining=to_credits(batch.credits_remaining),
                        purchase_date=batch.purchase_date,
                    )
                )
                remaining -= take

            if remaining > ZERO:
                # Rolls back the decrements above
                raise InsufficientCreditsError(user_id, credits, credits - remaining)

            await db.flush()

            aggregates = AggregateStore(db)
            balance_before = await aggregates.available(user_id)
            balance_after = await aggregates.apply_delta(user_id, now, used=credits)

            entry = await log.record(
                user_id=user_id,
                type=transaction_type,
                amount=-credits,
                balance_before=balance_before,
                balance_after=balance_after,
                idempotency_key=key,
                now=now,
                description=description,
                reference_type=operation_type,
                reference_id=operation_ref,
                metadata={
                    **(metadata or {}),
                    "deduction_method": "FIFO",
                    "batches_affected": [item.model_dump(mode="json") for item in affected],
                },
            )
            return DeductionResult(
                user_id=user_id,
                credits_deducted=credits,
                batches_affected=affected,
                transaction_id=entry.transaction_id,
                balance_before=balance_before,
                balance_after=balance_after,
            )

        try:
            result = await run_in_transaction(
                self.session_factory, operation, name="credit_deduction", settings=self.settings
            )
        except InsufficientCreditsError as e:
            deductions_rejected_total.labels(reason="insufficient_credits").inc()
            logger.info(
                "credit_deduction_rejected",
                user_id=user_id,
                operation_type=operation_type,
                operation_ref=operation_ref,
                requested=str(e.requested),
                available=str(e.available),
            )
            raise
        except IntegrityError:
            # Same key committed by a request that did not contend for our batch locks
            result = await self._load_prior(key, user_id)

        if result.duplicate:
            logger.info(
                "credit_deduction_replayed",
                user_id=user_id,
                operation_type=operation_type,
                operation_ref=operation_ref,
            )
            return result

        credits_deducted_total.labels(operation_type=operation_type).inc(float(credits))
        logger.info(
            "credits_deducted",
            user_id=user_id,
            operation_type=operation_type,
            operation_ref=operation_ref,
            credits=str(credits),
            batches_affected=len(result.batches_affected),
            balance_after=str(result.balance_after),
        )

        await self._notify_low_balance(user_id)
        return result

    async def _notify_low_balance(self, user_id: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.check_low_balance(user_id)
        except Exception as e:
            # The deduction is committed; a missed alert must not surface as a failed charge
            logger.warning("low_balance_check_failed", user_id=user_id, error=str(e))

    async def _load_prior(self, key: str, user_id: str) -> DeductionResult:
        async def operation(db: AsyncSession) -> DeductionResult:
            prior = await TransactionLog(db).find(key)
            if prior is None:
                raise InvariantViolationError(f"Deduction key {key} collided but no entry exists")
            return self._replay(prior, user_id)

        return await run_in_transaction(
            self.session_factory, operation, name="credit_deduction_lookup", settings=self.settings
        )

    @staticmethod
    def _replay(prior: CreditTransaction, user_id: str) -> DeductionResult:
        if prior.user_id != user_id:
            raise InvariantViolationError(
                f"Operation key {prior.idempotency_key} already charged another user"
            )
        metadata = prior.extra_metadata or {}
        return DeductionResult(
            user_id=user_id,
            credits_deducted=-to_credits(prior.amount),
            batches_affected=[BatchDeduction.model_validate(item) for item in metadata.get("batches_affected", [])],
            transaction_id=prior.transaction_id,
            balance_before=to_credits(prior.balance_before),
            balance_after=to_credits(prior.balance_after),
            duplicate=True,
        )
