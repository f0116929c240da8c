"""Turns confirmed payments and admin grants into new credit batches."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.config import Settings
from credit_ledger.exceptions import DuplicatePurchaseReferenceError, InvalidAmountError, InvariantViolationError
from credit_ledger.metrics import credits_granted_total, duplicate_purchases_total
from credit_ledger.models.base import utcnow
from credit_ledger.models.credit_batch import BatchType, CreditBatch
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.schemas.credit import CreditBatch as CreditBatchSchema
from credit_ledger.schemas.credit import PurchaseResult
from credit_ledger.services.batch_store import BatchStore
from credit_ledger.services.ledger_records import AggregateStore, TransactionLog
from credit_ledger.transactions import run_in_transaction
from credit_ledger.utils.money import ZERO, positive_credits, to_credits

logger = structlog.get_logger(__name__)

# One pending grant: (type, amount, metadata)
Grant = tuple[BatchType, Decimal, dict[str, Any]]


class PurchaseProcessor:
    """
    Creates batches for confirmed payments, idempotent per payment reference.

    The payment webhook should already check its own allocation flag before
    calling; the reference is still treated as a natural key here so that a
    retried webhook is a no-op instead of a double grant.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize purchase processor with its storage handle."""
        self.session_factory = session_factory
        self.settings = settings
        self._clock = clock

    async def process_purchase(
        self,
        user_id: str,
        credits_amount: Decimal,
        payment_reference: str,
        bonus_credits: Decimal = ZERO,
        package_ref: Optional[str] = None,
        expiry_days: Optional[int] = None,
    ) -> PurchaseResult:
        """
        Allocate purchased credits as a main batch plus an optional bonus batch.

        Both batches share one purchase date and therefore one expiry date.

        Args:
            user_id: Buyer
            credits_amount: Credits paid for
            payment_reference: Payment gateway reference, the dedup key
            bonus_credits: Extra credits granted with the package
            package_ref: Package that was bought
            expiry_days: Validity window (defaults to settings.credit_expiry_days)

        Returns:
            PurchaseResult; ``duplicate`` is True when the reference was already allocated

        Raises:
            InvalidAmountError: If both amounts are zero, either is negative, or
                expiry_days is not positive
        """
        main = to_credits(credits_amount)
        bonus = to_credits(bonus_credits)
        if main < ZERO or bonus < ZERO:
            raise InvalidAmountError("Purchase amounts cannot be negative")
        if main + bonus <= ZERO:
            raise InvalidAmountError("Purchase must grant at least some credits")

        grants: list[Grant] = []
        if main > ZERO:
            grants.append((BatchType.PURCHASE, main, {"purchase_type": "main_credits"}))
        if bonus > ZERO:
            grants.append((BatchType.BONUS, bonus, {"purchase_type": "bonus_credits"}))

        return await self._allocate(
            user_id=user_id,
            grants=grants,
            reference=payment_reference,
            package_ref=package_ref,
            expiry_days=expiry_days,
            description=f"Credit purchase {package_ref or ''}".strip(),
            reference_type="payment",
        )

    async def grant_credits(
        self,
        user_id: str,
        amount: Decimal,
        batch_type: BatchType,
        reference: str,
        expiry_days: Optional[int] = None,
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> PurchaseResult:
        """
        Grant credits outside the payment flow (bonus, adjustment, refund).

        ``reference`` plays the role of the payment reference: repeating it is a no-op.
        """
        if batch_type == BatchType.PURCHASE:
            raise InvalidAmountError("Purchases must go through process_purchase")
        credits = positive_credits(amount)
        return await self._allocate(
            user_id=user_id,
            grants=[(batch_type, credits, dict(metadata or {}))],
            reference=reference,
            package_ref=None,
            expiry_days=expiry_days,
            description=description or f"{batch_type.value.title()} credits",
            reference_type=batch_type.value,
        )

    async def _allocate(
        self,
        user_id: str,
        grants: list[Grant],
        reference: str,
        package_ref: Optional[str],
        expiry_days: Optional[int],
        description: str,
        reference_type: str,
    ) -> PurchaseResult:
        days = self.settings.credit_expiry_days if expiry_days is None else expiry_days
        if days <= 0:
            raise InvalidAmountError(f"expiry_days must be positive, got {days}")
        batch_types = [batch_type for batch_type, _, _ in grants]

        async def operation(db: AsyncSession) -> tuple[list[CreditBatch], bool]:
            batches = BatchStore(db)
            existing = await batches.find_by_payment_reference(reference, batch_types)
            if existing:
                self._check_owner(existing, user_id, reference)
                return existing, True

            aggregates = AggregateStore(db)
            log = TransactionLog(db)
            now = self._clock()
            await aggregates.ensure(user_id)
            balance = await aggregates.available(user_id)

            created: list[CreditBatch] = []
            for batch_type, amount, metadata in grants:
                metadata = {**metadata, "package_ref": package_ref}
                if created:
                    metadata["related_to"] = str(created[0].batch_id)
                try:
                    batch = await batches.create_batch(
                        user_id=user_id,
                        amount=amount,
                        expiry_days=days,
                        batch_type=batch_type,
                        metadata=metadata,
                        purchase_date=now,
                        package_ref=package_ref,
                        payment_reference=reference,
                    )
                    balance_after = await aggregates.apply_delta(user_id, now, total=amount)
                    await log.record(
                        user_id=user_id,
                        type=TransactionType(batch_type.value),
                        amount=amount,
                        balance_before=balance,
                        balance_after=balance_after,
                        idempotency_key=f"purchase:{reference}:{batch_type.value}",
                        now=now,
                        description=description,
                        reference_type=reference_type,
                        reference_id=reference,
                        metadata={"batch_id": str(batch.batch_id), "package_ref": package_ref},
                    )
                except IntegrityError as e:
                    raise DuplicatePurchaseReferenceError(reference) from e
                created.append(batch)
                balance = balance_after
            return created, False

        try:
            batches, duplicate = await run_in_transaction(
                self.session_factory, operation, name="credit_purchase", settings=self.settings
            )
        except DuplicatePurchaseReferenceError:
            # Lost a race with a concurrent delivery of the same payment
            batches = await self._load_existing(reference, user_id, batch_types)
            duplicate = True

        return self._result(user_id, reference, batches, duplicate)

    async def _load_existing(
        self, reference: str, user_id: str, batch_types: list[BatchType]
    ) -> list[CreditBatch]:
        async def operation(db: AsyncSession) -> list[CreditBatch]:
            existing = await BatchStore(db).find_by_payment_reference(reference, batch_types)
            if not existing:
                raise InvariantViolationError(
                    f"Reference {reference} collided on insert but no batches exist for it"
                )
            self._check_owner(existing, user_id, reference)
            return existing

        return await run_in_transaction(
            self.session_factory, operation, name="credit_purchase_lookup", settings=self.settings
        )

    @staticmethod
    def _check_owner(batches: list[CreditBatch], user_id: str, reference: str) -> None:
        owners = {batch.user_id for batch in batches}
        if owners != {user_id}:
            raise InvariantViolationError(
                f"Reference {reference} is already allocated to another user"
            )

    def _result(
        self, user_id: str, reference: str, batches: list[CreditBatch], duplicate: bool
    ) -> PurchaseResult:
        total = sum((to_credits(b.credits_purchased) for b in batches), ZERO)

        if duplicate:
            duplicate_purchases_total.inc()
            logger.info(
                "credit_purchase_duplicate",
                user_id=user_id,
                payment_reference=reference,
                existing_batches=len(batches),
            )
        else:
            for batch in batches:
                credits_granted_total.labels(batch_type=batch.batch_type.value).inc(
                    float(batch.credits_purchased)
                )
            logger.info(
                "credits_allocated",
                user_id=user_id,
                payment_reference=reference,
                total_credits=str(total),
                batch_ids=[str(b.batch_id) for b in batches],
            )

        return PurchaseResult(
            user_id=user_id,
            payment_reference=reference,
            batches=[CreditBatchSchema.model_validate(b) for b in batches],
            total_credits=total,
            expiry_date=batches[0].expiry_date if batches else None,
            duplicate=duplicate,
        )
