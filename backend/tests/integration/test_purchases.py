"""Integration tests for purchase allocation and other credit grants."""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from credit_ledger.exceptions import InvalidAmountError, InvariantViolationError
from credit_ledger.models.credit_batch import BatchType, CreditBatch
from credit_ledger.models.credit_transaction import CreditTransaction, TransactionType
from credit_ledger.services.batch_store import BatchStatus
from utils.clock import START
from utils.factories import PurchaseFactory, payment_reference, user_id


@pytest.mark.asyncio
async def test_purchase_creates_main_and_bonus_batches_with_shared_expiry(ledger) -> None:
    """A package with bonus credits yields two batches expiring together."""
    data = PurchaseFactory.create({"credits_amount": Decimal("100"), "bonus_credits": Decimal("50")})

    result = await ledger.purchases.process_purchase(**data)

    assert result.duplicate is False
    assert result.total_credits == Decimal("150.00")
    assert [b.batch_type for b in result.batches] == [BatchType.PURCHASE, BatchType.BONUS]
    main, bonus = result.batches
    assert main.credits_purchased == Decimal("100.00")
    assert main.credits_remaining == Decimal("100.00")
    assert bonus.credits_purchased == Decimal("50.00")
    assert main.purchase_date == bonus.purchase_date == START
    assert main.expiry_date == bonus.expiry_date == START + timedelta(days=30)
    assert result.expiry_date == START + timedelta(days=30)
    assert bonus.extra_metadata["related_to"] == str(main.batch_id)

    balance = await ledger.balances.get_balance(data["user_id"])
    assert balance.total == Decimal("150.00")
    assert balance.available == Decimal("150.00")
    assert balance.last_purchase_at == START


@pytest.mark.asyncio
async def test_purchase_without_bonus_creates_single_batch(ledger) -> None:
    """Zero bonus credits do not produce an empty bonus batch."""
    data = PurchaseFactory.create({"credits_amount": Decimal("75")})

    result = await ledger.purchases.process_purchase(**data)

    assert len(result.batches) == 1
    assert result.batches[0].batch_type == BatchType.PURCHASE


@pytest.mark.asyncio
async def test_purchase_honours_custom_expiry_days(ledger) -> None:
    """expiry_days overrides the configured validity window."""
    data = PurchaseFactory.create({"expiry_days": 90})

    result = await ledger.purchases.process_purchase(**data)

    assert result.batches[0].expiry_date == START + timedelta(days=90)


@pytest.mark.asyncio
async def test_repeated_payment_reference_grants_once(ledger, session_factory) -> None:
    """A retried webhook returns the original allocation instead of granting again."""
    data = PurchaseFactory.create({"credits_amount": Decimal("100"), "bonus_credits": Decimal("20")})

    first = await ledger.purchases.process_purchase(**data)
    second = await ledger.purchases.process_purchase(**data)

    assert second.duplicate is True
    assert [b.batch_id for b in second.batches] == [b.batch_id for b in first.batches]

    async with session_factory() as session:
        count = await session.scalar(
            select(func.count(CreditBatch.id)).where(CreditBatch.payment_reference == data["payment_reference"])
        )
    assert count == 2

    balance = await ledger.balances.get_balance(data["user_id"])
    assert balance.total == Decimal("120.00")


@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_payment_grant_once(ledger) -> None:
    """Two webhook deliveries racing on one reference produce one set of batches."""
    data = PurchaseFactory.create({"credits_amount": Decimal("100")})

    results = await asyncio.gather(
        ledger.purchases.process_purchase(**data),
        ledger.purchases.process_purchase(**data),
    )

    assert sorted(r.duplicate for r in results) == [False, True]
    assert results[0].batches[0].batch_id == results[1].batches[0].batch_id

    batches = await ledger.balances.list_batches(data["user_id"], BatchStatus.ALL)
    assert len(batches) == 1
    balance = await ledger.balances.get_balance(data["user_id"])
    assert balance.total == Decimal("100.00")


@pytest.mark.asyncio
async def test_payment_reference_of_another_user_is_rejected(ledger) -> None:
    """A reference already allocated to someone else is a data-integrity error."""
    data = PurchaseFactory.create()
    await ledger.purchases.process_purchase(**data)

    with pytest.raises(InvariantViolationError):
        await ledger.purchases.process_purchase(**{**data, "user_id": user_id()})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "credits_amount, bonus_credits",
    [
        (Decimal("0"), Decimal("0")),
        (Decimal("-5"), Decimal("0")),
        (Decimal("10"), Decimal("-1")),
    ],
)
async def test_purchase_rejects_invalid_amounts(ledger, credits_amount, bonus_credits) -> None:
    """Nothing is allocated for empty or negative purchases."""
    data = PurchaseFactory.create({"credits_amount": credits_amount, "bonus_credits": bonus_credits})

    with pytest.raises(InvalidAmountError):
        await ledger.purchases.process_purchase(**data)

    balance = await ledger.balances.get_balance(data["user_id"])
    assert balance.total == Decimal("0")


@pytest.mark.asyncio
async def test_purchase_writes_one_ledger_entry_per_batch(ledger, session_factory) -> None:
    """Each batch gets a positive ledger entry with balance snapshots."""
    data = PurchaseFactory.create({"credits_amount": Decimal("100"), "bonus_credits": Decimal("25")})
    await ledger.purchases.process_purchase(**data)

    async with session_factory() as session:
        result = await session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == data["user_id"])
            .order_by(CreditTransaction.balance_before)
        )
        entries = list(result.scalars().all())

    assert [e.type for e in entries] == [TransactionType.PURCHASE, TransactionType.BONUS]
    assert [Decimal(e.amount) for e in entries] == [Decimal("100.00"), Decimal("25.00")]
    assert Decimal(entries[0].balance_before) == Decimal("0.00")
    assert Decimal(entries[0].balance_after) == Decimal("100.00")
    assert Decimal(entries[1].balance_after) == Decimal("125.00")
    assert entries[0].idempotency_key == f"purchase:{data['payment_reference']}:purchase"


@pytest.mark.asyncio
async def test_grant_credits_creates_typed_batch_idempotently(ledger) -> None:
    """Refunds and bonuses outside purchases are deduplicated on their reference."""
    user = user_id()
    reference = payment_reference()

    first = await ledger.purchases.grant_credits(
        user_id=user, amount=Decimal("15"), batch_type=BatchType.REFUND, reference=reference
    )
    second = await ledger.purchases.grant_credits(
        user_id=user, amount=Decimal("15"), batch_type=BatchType.REFUND, reference=reference
    )

    assert first.batches[0].batch_type == BatchType.REFUND
    assert second.duplicate is True
    balance = await ledger.balances.get_balance(user)
    assert balance.total == Decimal("15.00")


@pytest.mark.asyncio
async def test_grant_credits_refuses_purchase_type(ledger) -> None:
    """Purchases only enter through process_purchase."""
    with pytest.raises(InvalidAmountError):
        await ledger.purchases.grant_credits(
            user_id=user_id(), amount=Decimal("5"), batch_type=BatchType.PURCHASE, reference=payment_reference()
        )


@pytest.mark.asyncio
async def test_refund_may_reuse_the_payment_reference_it_refunds(ledger) -> None:
    """A refund keyed on the original payment is a new grant, not a replay of the purchase."""
    data = PurchaseFactory.create({"credits_amount": Decimal("100")})
    await ledger.purchases.process_purchase(**data)

    refund = await ledger.purchases.grant_credits(
        user_id=data["user_id"],
        amount=Decimal("25"),
        batch_type=BatchType.REFUND,
        reference=data["payment_reference"],
    )
    replay = await ledger.purchases.grant_credits(
        user_id=data["user_id"],
        amount=Decimal("25"),
        batch_type=BatchType.REFUND,
        reference=data["payment_reference"],
    )

    assert refund.duplicate is False
    assert [b.batch_type for b in refund.batches] == [BatchType.REFUND]
    assert replay.duplicate is True
    assert [b.batch_id for b in replay.batches] == [refund.batches[0].batch_id]
    balance = await ledger.balances.get_balance(data["user_id"])
    assert balance.total == Decimal("125.00")


@pytest.mark.asyncio
async def test_repeated_purchase_ignores_refund_on_same_reference(ledger) -> None:
    """Replaying the payment returns only its own batches."""
    data = PurchaseFactory.create({"credits_amount": Decimal("40"), "bonus_credits": Decimal("10")})
    first = await ledger.purchases.process_purchase(**data)
    await ledger.purchases.grant_credits(
        user_id=data["user_id"], amount=Decimal("5"), batch_type=BatchType.REFUND, reference=data["payment_reference"]
    )

    again = await ledger.purchases.process_purchase(**data)

    assert again.duplicate is True
    assert [b.batch_id for b in again.batches] == [b.batch_id for b in first.batches]
    assert again.total_credits == Decimal("50.00")


@pytest.mark.asyncio
async def test_zero_expiry_days_is_rejected(ledger) -> None:
    """An explicit zero validity window is an error, not the default."""
    with pytest.raises(InvalidAmountError):
        await ledger.purchases.process_purchase(**PurchaseFactory.create({"expiry_days": 0}))
    with pytest.raises(InvalidAmountError):
        await ledger.purchases.grant_credits(
            user_id=user_id(),
            amount=Decimal("5"),
            batch_type=BatchType.BONUS,
            reference=payment_reference(),
            expiry_days=-1,
        )
