"""Integration tests for the credit expiration worker jobs."""
from decimal import Decimal

import pytest
from sqlalchemy import update

from credit_ledger.models.user_credit_aggregate import UserCreditAggregate
from credit_ledger.workers.credit_expiration import WorkerSettings, reconcile_balances, run_credit_expiration
from utils.factories import PurchaseFactory, user_id


@pytest.mark.asyncio
async def test_expiration_job_runs_the_whole_pipeline(ledger, clock) -> None:
    """Sweep, expiry notice, low-balance check and warnings run in one job."""
    expiring_user, warned_user = user_id(), user_id()
    await ledger.purchases.process_purchase(
        **PurchaseFactory.create({"user_id": expiring_user, "credits_amount": Decimal("30"), "expiry_days": 1})
    )
    await ledger.purchases.process_purchase(
        **PurchaseFactory.create({"user_id": warned_user, "credits_amount": Decimal("80"), "expiry_days": 5})
    )
    clock.advance(days=2)

    results = await run_credit_expiration({"ledger": ledger, "job_id": "test"})

    assert results["errors"] == []
    assert results["sweep"]["expired_batch_count"] == 1
    assert results["sweep"]["affected_user_ids"] == [expiring_user]
    assert results["notifications_sent"] == 1
    assert results["low_balance_alerts"] == 1
    assert results["warnings_sent"] == 1
    assert results["stats"]["batches_expired"] == 1

    alert_types = {a.alert_type.value for a in await ledger.notifications.list_alerts(expiring_user)}
    assert alert_types == {"credits_expired", "no_credits"}


@pytest.mark.asyncio
async def test_expiration_job_with_nothing_due(ledger) -> None:
    """An idle run reports zeros and no errors."""
    results = await run_credit_expiration({"ledger": ledger})

    assert results["sweep"]["expired_batch_count"] == 0
    assert results["notifications_sent"] == 0
    assert results["low_balance_alerts"] == 0
    assert results["errors"] == []


@pytest.mark.asyncio
async def test_reconcile_job_reports_drift(ledger, session_factory) -> None:
    """Only drifted users are reported."""
    healthy, drifted = user_id(), user_id()
    for user in (healthy, drifted):
        await ledger.purchases.process_purchase(
            **PurchaseFactory.create({"user_id": user, "credits_amount": Decimal("20")})
        )
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(UserCreditAggregate)
                .where(UserCreditAggregate.user_id == drifted)
                .values(expired_credits=Decimal("1"))
            )

    results = await reconcile_balances({"ledger": ledger})

    assert results["users_drifted"] == 1
    assert results["reports"][0]["user_id"] == drifted


def test_worker_schedules_both_jobs() -> None:
    """Expiration at midnight and reconciliation at 04:00 UTC."""
    names = {job.coroutine.__name__: job for job in WorkerSettings.cron_jobs}

    assert names["run_credit_expiration"].hour == {0}
    assert names["reconcile_balances"].hour == {4}
