"""Integration tests for FIFO credit deduction."""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from credit_ledger.exceptions import InsufficientCreditsError, InvalidAmountError
from credit_ledger.models.credit_transaction import CreditTransaction, TransactionType
from credit_ledger.services.batch_store import BatchStatus
from utils.factories import DeductionFactory, PurchaseFactory, operation_ref, user_id


async def _buy(ledger, user: str, amount: str, bonus: str = "0"):
    return await ledger.purchases.process_purchase(
        **PurchaseFactory.create(
            {"user_id": user, "credits_amount": Decimal(amount), "bonus_credits": Decimal(bonus)}
        )
    )


async def _deduct(ledger, user: str, amount: str, **overrides):
    data = DeductionFactory.create({"amount": Decimal(amount), **overrides})
    return await ledger.deductions.deduct(user_id=user, **data)


async def _batches(ledger, user: str):
    return {b.batch_id: b for b in await ledger.balances.list_batches(user, BatchStatus.ALL)}


@pytest.mark.asyncio
async def test_purchase_with_bonus_then_deduct_spans_batches_fifo(ledger) -> None:
    """100 purchased + 50 bonus, deduct 120: first batch exhausted, 30 left in the bonus."""
    user = user_id()
    purchase = await _buy(ledger, user, "100", bonus="50")
    batch_a, batch_b = purchase.batches

    result = await _deduct(ledger, user, "120")

    assert result.credits_deducted == Decimal("120.00")
    assert [(d.batch_id, d.credits_deducted) for d in result.batches_affected] == [
        (batch_a.batch_id, Decimal("100.00")),
        (batch_b.batch_id, Decimal("20.00")),
    ]

    batches = await _batches(ledger, user)
    assert batches[batch_a.batch_id].credits_remaining == Decimal("0.00")
    assert batches[batch_a.batch_id].credits_used == Decimal("100.00")
    assert batches[batch_b.batch_id].credits_remaining == Decimal("30.00")
    assert batches[batch_b.batch_id].credits_used == Decimal("20.00")

    balance = await ledger.balances.get_balance(user)
    assert balance.available == Decimal("30.00")
    assert balance.used == Decimal("120.00")


@pytest.mark.asyncio
async def test_small_deduction_touches_only_oldest_batch(ledger, clock) -> None:
    """A deduction smaller than the oldest batch leaves newer batches untouched."""
    user = user_id()
    first = await _buy(ledger, user, "40")
    clock.advance(hours=1)
    second = await _buy(ledger, user, "40")
    clock.advance(hours=1)
    third = await _buy(ledger, user, "40")

    result = await _deduct(ledger, user, "25")

    assert [d.batch_id for d in result.batches_affected] == [first.batches[0].batch_id]
    batches = await _batches(ledger, user)
    assert batches[first.batches[0].batch_id].credits_remaining == Decimal("15.00")
    assert batches[second.batches[0].batch_id].credits_remaining == Decimal("40.00")
    assert batches[third.batches[0].batch_id].credits_remaining == Decimal("40.00")


@pytest.mark.asyncio
async def test_spanning_deduction_exhausts_oldest_before_touching_next(ledger, clock) -> None:
    """Batch 1 reaches zero before batch 2 is decremented; batch 3 is untouched."""
    user = user_id()
    first = await _buy(ledger, user, "40")
    clock.advance(days=1)
    second = await _buy(ledger, user, "40")
    clock.advance(days=1)
    third = await _buy(ledger, user, "40")

    await _deduct(ledger, user, "55")

    batches = await _batches(ledger, user)
    assert batches[first.batches[0].batch_id].credits_remaining == Decimal("0.00")
    assert batches[second.batches[0].batch_id].credits_remaining == Decimal("25.00")
    assert batches[third.batches[0].batch_id].credits_remaining == Decimal("40.00")


@pytest.mark.asyncio
async def test_insufficient_credits_rolls_back_every_batch(ledger) -> None:
    """A deduction that cannot be covered leaves no partial decrement behind."""
    user = user_id()
    await _buy(ledger, user, "30", bonus="20")

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await _deduct(ledger, user, "60")

    assert exc_info.value.requested == Decimal("60.00")
    assert exc_info.value.available == Decimal("50.00")

    batches = await _batches(ledger, user)
    assert all(b.credits_remaining == b.credits_purchased for b in batches.values())
    balance = await ledger.balances.get_balance(user)
    assert balance.available == Decimal("50.00")
    assert balance.used == Decimal("0.00")


@pytest.mark.asyncio
async def test_deduction_for_unknown_user_is_insufficient(ledger) -> None:
    """Users without a ledger account have nothing to spend."""
    with pytest.raises(InsufficientCreditsError):
        await _deduct(ledger, user_id(), "1")


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0", "-10", "NaN"])
async def test_deduction_rejects_invalid_amounts(ledger, amount) -> None:
    """Zero, negative and non-numeric amounts never reach storage."""
    user = user_id()
    await _buy(ledger, user, "10")

    with pytest.raises(InvalidAmountError):
        await ledger.deductions.deduct(
            user_id=user, amount=amount, operation_type="call", operation_ref=operation_ref()
        )


@pytest.mark.asyncio
async def test_repeated_operation_ref_deducts_once(ledger) -> None:
    """A retried request with the same operation key returns the original result."""
    user = user_id()
    await _buy(ledger, user, "100")
    ref = operation_ref()

    first = await _deduct(ledger, user, "30", operation_type="call", operation_ref=ref)
    second = await _deduct(ledger, user, "30", operation_type="call", operation_ref=ref)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.transaction_id == first.transaction_id
    assert second.credits_deducted == Decimal("30.00")
    assert [d.batch_id for d in second.batches_affected] == [d.batch_id for d in first.batches_affected]

    balance = await ledger.balances.get_balance(user)
    assert balance.available == Decimal("70.00")


@pytest.mark.asyncio
async def test_same_ref_with_different_operation_type_is_a_new_deduction(ledger) -> None:
    """The idempotency key is scoped by operation type."""
    user = user_id()
    await _buy(ledger, user, "100")
    ref = operation_ref()

    await _deduct(ledger, user, "10", operation_type="call", operation_ref=ref)
    await _deduct(ledger, user, "10", operation_type="workflow_run", operation_ref=ref)

    balance = await ledger.balances.get_balance(user)
    assert balance.used == Decimal("20.00")


@pytest.mark.asyncio
async def test_deduction_records_usage_entry_with_batch_breakdown(ledger, session_factory) -> None:
    """The ledger entry is negative, FIFO-tagged and lists each affected batch."""
    user = user_id()
    purchase = await _buy(ledger, user, "10", bonus="10")
    ref = operation_ref()

    result = await _deduct(ledger, user, "15", operation_type="call", operation_ref=ref)

    async with session_factory() as session:
        entry = await session.scalar(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == f"usage:call:{ref}")
        )

    assert entry.transaction_id == result.transaction_id
    assert entry.type == TransactionType.USAGE
    assert Decimal(entry.amount) == Decimal("-15.00")
    assert Decimal(entry.balance_before) == Decimal("20.00")
    assert Decimal(entry.balance_after) == Decimal("5.00")
    assert entry.reference_type == "call"
    assert entry.reference_id == ref
    assert entry.extra_metadata["deduction_method"] == "FIFO"
    assert [item["batch_id"] for item in entry.extra_metadata["batches_affected"]] == [
        str(b.batch_id) for b in purchase.batches
    ]


@pytest.mark.asyncio
async def test_concurrent_deductions_never_double_spend(ledger) -> None:
    """N concurrent deductions of A against exactly N*A credits spend everything, once."""
    user = user_id()
    await _buy(ledger, user, "60", bonus="40")
    n, amount = 10, "10"

    results = await asyncio.gather(*(_deduct(ledger, user, amount) for _ in range(n)))

    assert sum(r.credits_deducted for r in results) == Decimal("100.00")
    balance = await ledger.balances.get_balance(user)
    assert balance.available == Decimal("0.00")
    assert balance.used == Decimal("100.00")


@pytest.mark.asyncio
async def test_concurrent_overdraw_only_succeeds_up_to_balance(ledger) -> None:
    """With room for three deductions, exactly three of five concurrent ones succeed."""
    user = user_id()
    await _buy(ledger, user, "30")

    results = await asyncio.gather(*(_deduct(ledger, user, "10") for _ in range(5)), return_exceptions=True)

    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(succeeded) == 3
    assert len(rejected) == 2
    balance = await ledger.balances.get_balance(user)
    assert balance.available == Decimal("0.00")
    assert balance.used == Decimal("30.00")


@pytest.mark.asyncio
async def test_deduction_raises_low_balance_alert(ledger) -> None:
    """Dropping to the threshold after a deduction creates a low_credits alert."""
    user = user_id()
    await _buy(ledger, user, "50")

    await _deduct(ledger, user, "45")

    alerts = await ledger.notifications.list_alerts(user)
    assert [a.alert_type.value for a in alerts] == ["low_credits"]
    assert Decimal(alerts[0].current_value) == Decimal("5.00")


@pytest.mark.asyncio
async def test_alert_failure_does_not_fail_committed_deduction(ledger) -> None:
    """A broken notifier is logged; the deduction stays committed."""
    user = user_id()
    await _buy(ledger, user, "20")

    class BrokenNotifier:
        async def check_low_balance(self, user_id):
            raise RuntimeError("notifier down")

    ledger.deductions.notifier = BrokenNotifier()
    result = await _deduct(ledger, user, "15")

    assert result.credits_deducted == Decimal("15.00")
    balance = await ledger.balances.get_balance(user)
    assert balance.available == Decimal("5.00")
