"""Integration tests for storage-boundary invariants of credit batches."""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from credit_ledger.exceptions import InvalidAmountError, InvariantViolationError
from credit_ledger.models.credit_batch import BatchType
from credit_ledger.services.batch_store import BatchStore
from utils.clock import START
from utils.factories import payment_reference, user_id


async def _create(session, user: str, amount: str = "10", **overrides):
    values = {"expiry_days": 30, "purchase_date": START}
    values.update(overrides)
    return await BatchStore(session).create_batch(user, Decimal(amount), **values)


@pytest.mark.asyncio
async def test_create_batch_sets_expiry_and_full_remaining(session_factory) -> None:
    """A new batch starts with everything remaining and expires after its window."""
    async with session_factory() as session:
        async with session.begin():
            batch = await _create(session, user_id(), "12.5", expiry_days=14, batch_type=BatchType.BONUS)

    assert batch.credits_remaining == Decimal("12.50")
    assert batch.credits_used == Decimal("0.00")
    assert batch.expiry_date == START + timedelta(days=14)
    assert batch.is_expired is False


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0", "-1"])
async def test_create_batch_rejects_non_positive_amount(session_factory, amount) -> None:
    """Empty grants are refused before reaching the table."""
    async with session_factory() as session:
        async with session.begin():
            with pytest.raises(InvalidAmountError):
                await _create(session, user_id(), amount)


@pytest.mark.asyncio
async def test_decrement_cannot_go_negative(session_factory) -> None:
    """Overdrawing a batch is an invariant violation, never clamped."""
    async with session_factory() as session:
        async with session.begin():
            batch = await _create(session, user_id(), "10")
            store = BatchStore(session)
            with pytest.raises(InvariantViolationError):
                store.decrement(batch, Decimal("10.01"))
            assert batch.credits_remaining == Decimal("10.00")


@pytest.mark.asyncio
async def test_decrement_of_expired_batch_is_refused(session_factory) -> None:
    """Expired batches are frozen."""
    async with session_factory() as session:
        async with session.begin():
            batch = await _create(session, user_id(), "10")
            store = BatchStore(session)
            store.mark_expired(batch, START + timedelta(days=31))
            with pytest.raises(InvariantViolationError):
                store.decrement(batch, Decimal("1"))


@pytest.mark.asyncio
async def test_mark_expired_twice_is_refused(session_factory) -> None:
    """A batch expires exactly once."""
    async with session_factory() as session:
        async with session.begin():
            batch = await _create(session, user_id(), "10")
            store = BatchStore(session)
            assert store.mark_expired(batch, START) == Decimal("10.00")
            with pytest.raises(InvariantViolationError):
                store.mark_expired(batch, START)


@pytest.mark.asyncio
async def test_select_for_update_orders_oldest_first_and_skips_unspendable(session_factory) -> None:
    """Locked batches come back FIFO, without expired, empty or past-due ones."""
    user = user_id()
    async with session_factory() as session:
        async with session.begin():
            store = BatchStore(session)
            newest = await _create(session, user, purchase_date=START + timedelta(hours=2))
            oldest = await _create(session, user, purchase_date=START)
            same_instant = await _create(session, user, purchase_date=START)
            past_due = await _create(session, user, expiry_days=1, purchase_date=START - timedelta(days=5))
            empty = await _create(session, user, "5", purchase_date=START)
            store.decrement(empty, Decimal("5"))
            await session.flush()

            locked = await store.select_for_update(user, START + timedelta(hours=3))

    assert [b.batch_id for b in locked] == [oldest.batch_id, same_instant.batch_id, newest.batch_id]
    assert past_due.batch_id not in {b.batch_id for b in locked}


@pytest.mark.asyncio
async def test_payment_reference_unique_per_batch_type(session_factory) -> None:
    """One payment can produce at most one batch of each type."""
    user = user_id()
    reference = payment_reference()
    async with session_factory() as session:
        async with session.begin():
            await _create(session, user, payment_reference=reference)
            await _create(session, user, payment_reference=reference, batch_type=BatchType.BONUS)

    with pytest.raises(IntegrityError):
        async with session_factory() as session:
            async with session.begin():
                await _create(session, user, payment_reference=reference)
