"""Wires the ledger components around one session factory."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.config import Settings
from credit_ledger.exceptions import InvalidAmountError
from credit_ledger.models.base import utcnow
from credit_ledger.models.credit_batch import BatchType
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.schemas.credit import DeductionResult, PurchaseResult
from credit_ledger.services.balance_aggregator import BalanceAggregator
from credit_ledger.services.deduction_engine import DeductionEngine
from credit_ledger.services.expiration_sweeper import ExpirationSweeper
from credit_ledger.services.notification_trigger import NotificationTrigger
from credit_ledger.services.purchase_processor import PurchaseProcessor
from credit_ledger.utils.money import ZERO, to_credits


@dataclass
class CreditLedger:
    """The ledger components sharing one storage handle, settings and clock."""

    balances: BalanceAggregator
    purchases: PurchaseProcessor
    deductions: DeductionEngine
    sweeper: ExpirationSweeper
    notifications: NotificationTrigger

    async def adjust_credits(
        self, user_id: str, amount: Decimal, admin_ref: str, reason: str
    ) -> Union[PurchaseResult, DeductionResult]:
        """
        Manual balance correction.

        Positive amounts grant a new ``adjustment`` batch; negative amounts are
        FIFO deductions with operation type ``adjustment``. Both are idempotent
        on ``admin_ref``.

        Raises:
            InvalidAmountError: If amount is zero
            InsufficientCreditsError: If a negative adjustment exceeds the balance
        """
        credits = to_credits(amount)
        if credits == ZERO:
            raise InvalidAmountError("Adjustment amount cannot be zero")

        metadata = {"reason": reason, "admin_ref": admin_ref}
        if credits > ZERO:
            return await self.purchases.grant_credits(
                user_id=user_id,
                amount=credits,
                batch_type=BatchType.ADJUSTMENT,
                reference=admin_ref,
                description=reason,
                metadata=metadata,
            )
        return await self.deductions.deduct(
            user_id=user_id,
            amount=-credits,
            operation_type="adjustment",
            operation_ref=admin_ref,
            description=reason,
            metadata=metadata,
            transaction_type=TransactionType.ADJUSTMENT,
        )


def build_ledger(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: Callable[[], datetime] = utcnow,
) -> CreditLedger:
    """Build every component around ``session_factory``."""
    notifications = NotificationTrigger(session_factory, settings, clock)
    return CreditLedger(
        balances=BalanceAggregator(session_factory, settings, clock),
        purchases=PurchaseProcessor(session_factory, settings, clock),
        deductions=DeductionEngine(session_factory, settings, clock, notifier=notifications),
        sweeper=ExpirationSweeper(session_factory, settings, clock),
        notifications=notifications,
    )
