"""
Background worker for credit expiration.

Daily pipeline:
1. Sweep batches past their expiry date
2. Notify users whose credits were retired
3. Check low balances for the users the sweep touched
4. Warn users whose credits expire soon
5. Log system-wide expiration statistics

A second daily job reconciles every aggregate against its batches.

Usage (with ARQ):
    arq credit_ledger.workers.credit_expiration.WorkerSettings
"""
from datetime import datetime, timezone

import structlog
from arq import cron
from arq.connections import RedisSettings

from credit_ledger.config import settings
from credit_ledger.database import create_engine, create_session_factory
from credit_ledger.exceptions import LedgerError
from credit_ledger.factory import CreditLedger, build_ledger
from credit_ledger.middleware.logging import setup_logging

logger = structlog.get_logger(__name__)


async def on_startup(ctx: dict) -> None:
    """Build the worker's engine and ledger."""
    setup_logging(settings)
    engine = create_engine(settings)
    ctx["engine"] = engine
    ctx["ledger"] = build_ledger(create_session_factory(engine), settings)
    logger.info("credit_worker_started", env=settings.app_env)


async def on_shutdown(ctx: dict) -> None:
    """Dispose the connection pool."""
    await ctx["engine"].dispose()
    logger.info("credit_worker_stopped")


async def run_credit_expiration(ctx: dict) -> dict:
    """
    Expire credits, then raise the alerts that follow from it.

    Alerting failures are logged and reported but do not fail the job: the
    sweep has already committed and the next run only picks up new work.

    Args:
        ctx: ARQ context (contains the ledger built in on_startup)

    Returns:
        Dict with results of every step
    """
    ledger: CreditLedger = ctx["ledger"]
    started_at = datetime.now(timezone.utc)
    logger.info("credit_expiration_job_started", job_id=ctx.get("job_id"))

    sweep = await ledger.sweeper.sweep()
    results: dict = {
        "started_at": started_at.isoformat(),
        "sweep": sweep.model_dump(mode="json"),
        "errors": [],
    }

    try:
        notified = await ledger.notifications.send_expiration_notifications(sweep.expired_batch_ids)
        results["notifications_sent"] = notified.notifications_sent
    except LedgerError as e:
        logger.error("credit_expiration_notifications_failed", error=str(e))
        results["errors"].append({"step": "expiration_notifications", "error": str(e)})

    low_balance_alerts = 0
    for user_id in sweep.affected_user_ids:
        try:
            if await ledger.notifications.check_low_balance(user_id) is not None:
                low_balance_alerts += 1
        except LedgerError as e:
            logger.error("low_balance_check_failed", user_id=user_id, error=str(e))
            results["errors"].append({"step": "low_balance", "user_id": user_id, "error": str(e)})
    results["low_balance_alerts"] = low_balance_alerts

    try:
        warnings = await ledger.notifications.send_expiration_warnings()
        results["warnings_sent"] = warnings.warnings_sent
    except LedgerError as e:
        logger.error("credit_expiration_warnings_failed", error=str(e))
        results["errors"].append({"step": "expiration_warnings", "error": str(e)})

    stats = await ledger.balances.get_expiration_stats()
    results["stats"] = stats.model_dump(mode="json")
    results["completed_at"] = datetime.now(timezone.utc).isoformat()

    logger.info(
        "credit_expiration_job_completed",
        expired_batches=sweep.expired_batch_count,
        credits_expired=str(sweep.total_credits_expired),
        failed_users=len(sweep.failed_user_ids),
        notifications_sent=results.get("notifications_sent", 0),
        warnings_sent=results.get("warnings_sent", 0),
        low_balance_alerts=low_balance_alerts,
        expiration_rate=str(stats.expiration_rate),
        errors=len(results["errors"]),
    )
    return results


async def reconcile_balances(ctx: dict) -> dict:
    """
    Compare every aggregate with its batches and report drift.

    Args:
        ctx: ARQ context

    Returns:
        Dict with the users whose aggregate drifted
    """
    ledger: CreditLedger = ctx["ledger"]
    drifted = await ledger.balances.reconcile_all()
    return {
        "users_drifted": len(drifted),
        "reports": [report.model_dump(mode="json") for report in drifted],
    }


class WorkerSettings:
    """
    ARQ worker settings for credit expiration.

    Schedule:
    - Expiration pipeline: Daily at 00:00 UTC
    - Reconciliation: Daily at 04:00 UTC

    Usage:
        arq credit_ledger.workers.credit_expiration.WorkerSettings
    """

    functions = [run_credit_expiration, reconcile_balances]

    cron_jobs = [
        cron(run_credit_expiration, hour={0}, minute={0}, timeout=3600, unique=True),
        cron(reconcile_balances, hour={4}, minute={0}, timeout=1800, unique=True),
    ]

    on_startup = on_startup
    on_shutdown = on_shutdown

    redis_settings = RedisSettings.from_dsn(settings.arq_redis_url)

    # Job retention
    keep_result = 86400  # Keep results for 24 hours

    # Worker configuration
    max_jobs = 10
    job_timeout = 3600
