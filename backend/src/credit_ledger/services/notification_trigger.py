"""
Credit alert records: expiring, expired and low-balance.

Alerts are data only. Delivery (email, push, in-app) belongs to an external
collaborator that reads pending alerts and calls :meth:`mark_alert_sent`.
"""
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.config import Settings
from credit_ledger.exceptions import AlertNotFoundError, BatchNotFoundError, InvalidAmountError, LedgerError
from credit_ledger.metrics import credit_alerts_total
from credit_ledger.models.base import utcnow
from credit_ledger.models.credit_alert import AlertType, CreditAlert
from credit_ledger.models.credit_batch import CreditBatch
from credit_ledger.models.user_credit_aggregate import UserCreditAggregate
from credit_ledger.schemas.credit import AlertSummary, NotificationResult, WarningResult
from credit_ledger.services.batch_store import BatchStore, due_for_expiry_clause, spendable_clause
from credit_ledger.services.ledger_records import AggregateStore
from credit_ledger.transactions import run_in_transaction
from credit_ledger.utils.money import ZERO, to_credits

logger = structlog.get_logger(__name__)


class NotificationTrigger:
    """Creates alert records with a per-user, per-type cooldown."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize notification trigger with its storage handle."""
        self.session_factory = session_factory
        self.settings = settings
        self._clock = clock

    async def send_expiration_warnings(self, lead_days: Optional[int] = None) -> WarningResult:
        """
        Warn users whose spendable credits expire within ``lead_days``.

        Args:
            lead_days: Warning horizon (defaults to settings.expiry_warning_days)

        Returns:
            WarningResult listing the alerts created by this run

        Raises:
            InvalidAmountError: If lead_days is not positive
        """
        days = self.settings.expiry_warning_days if lead_days is None else lead_days
        if days <= 0:
            raise InvalidAmountError(f"lead_days must be positive, got {days}")
        now = self._clock()
        horizon = now + timedelta(days=days)

        async def scan(db: AsyncSession) -> list[Any]:
            result = await db.execute(
                select(
                    CreditBatch.user_id,
                    func.count(CreditBatch.id).label("expiring_batches"),
                    func.sum(CreditBatch.credits_remaining).label("expiring_credits"),
                    func.min(CreditBatch.expiry_date).label("earliest_expiry"),
                )
                .where(spendable_clause(now), CreditBatch.expiry_date <= horizon)
                .group_by(CreditBatch.user_id)
                .order_by(CreditBatch.user_id)
            )
            return list(result.all())

        rows = await run_in_transaction(
            self.session_factory, scan, name="credit_expiring_scan", settings=self.settings
        )

        result = WarningResult()
        for row in rows:
            credits = to_credits(row.expiring_credits)
            summary = await self._raise_for_user(
                user_id=row.user_id,
                alert_type=AlertType.CREDITS_EXPIRING,
                current_value=credits,
                threshold_value=Decimal(days),
                message=(
                    f"You have {credits} credits expiring on {row.earliest_expiry:%Y-%m-%d}. "
                    "Purchase more credits to avoid service interruption."
                ),
                metadata={
                    "expiring_credits": str(credits),
                    "expiring_batches": row.expiring_batches,
                    "earliest_expiry": row.earliest_expiry.isoformat(),
                    "warning_type": "expiration_warning",
                },
            )
            if summary is not None:
                result.users.append(summary)

        result.warnings_sent = len(result.users)
        logger.info("credit_expiration_warnings_sent", warnings_sent=result.warnings_sent, lead_days=days)
        return result

    async def send_expiration_notifications(self, expired_batch_ids: list[UUID]) -> NotificationResult:
        """
        Tell each affected user how many credits the sweep retired.

        Args:
            expired_batch_ids: Batch ids reported by ``ExpirationSweeper.sweep``

        Returns:
            NotificationResult listing the alerts created

        Raises:
            BatchNotFoundError: If any id does not name a stored batch
        """
        result = NotificationResult()
        if not expired_batch_ids:
            return result

        batches = await run_in_transaction(
            self.session_factory,
            lambda db: BatchStore(db).get_by_batch_ids(expired_batch_ids),
            name="credit_expired_lookup",
            settings=self.settings,
        )

        missing = set(expired_batch_ids) - {batch.batch_id for batch in batches}
        if missing:
            raise BatchNotFoundError(f"Unknown batch ids: {', '.join(sorted(str(batch_id) for batch_id in missing))}")

        per_user: dict[str, list[CreditBatch]] = defaultdict(list)
        for batch in batches:
            if batch.is_expired:
                per_user[batch.user_id].append(batch)

        now = self._clock()
        for user_id, expired in per_user.items():
            credits = sum((to_credits(b.credits_remaining) for b in expired), ZERO)
            summary = await self._raise_for_user(
                user_id=user_id,
                alert_type=AlertType.CREDITS_EXPIRED,
                current_value=credits,
                message=f"{credits} of your credits have expired. Purchase new credits to continue using the service.",
                metadata={
                    "expired_credits": str(credits),
                    "expired_batches": len(expired),
                    "expiry_date": now.isoformat(),
                    "notification_type": "expiration_notification",
                },
            )
            if summary is not None:
                result.users.append(summary)

        result.notifications_sent = len(result.users)
        logger.info("credit_expiration_notifications_sent", notifications_sent=result.notifications_sent)
        return result

    async def check_low_balance(
        self, user_id: str, threshold: Optional[Decimal] = None
    ) -> Optional[AlertSummary]:
        """
        Raise ``no_credits`` or ``low_credits`` if the spendable balance is at or below threshold.

        Returns:
            The alert created, or None when the balance is healthy, the user
            has no ledger account or the cooldown suppressed it
        """
        limit = to_credits(threshold if threshold is not None else self.settings.low_credit_threshold)

        async def operation(db: AsyncSession) -> Optional[CreditAlert]:
            aggregate = await AggregateStore(db).lock(user_id)
            if aggregate is None:
                return None
            now = self._clock()
            pending = await BatchStore(db).sum_pending_expiry(user_id, now)
            available = to_credits(aggregate.available_credits) - pending

            if available <= ZERO:
                alert_type = AlertType.NO_CREDITS
                message = "You have run out of credits. Purchase credits to continue using the service."
            elif available <= limit:
                alert_type = AlertType.LOW_CREDITS
                message = f"Your credit balance is low: {available} credits remaining."
            else:
                return None

            return await self._create_alert_once(
                db,
                user_id=user_id,
                alert_type=alert_type,
                now=now,
                current_value=available,
                threshold_value=limit,
                message=message,
                metadata={"available_credits": str(available), "pending_expiry": str(pending)},
            )

        alert = await run_in_transaction(
            self.session_factory, operation, name="credit_low_balance_alert", settings=self.settings
        )
        return self._summarize(alert)

    async def send_low_balance_alerts(self, threshold: Optional[Decimal] = None) -> NotificationResult:
        """Scan every ledger account and raise low-balance alerts where due."""
        limit = to_credits(threshold if threshold is not None else self.settings.low_credit_threshold)
        now = self._clock()

        async def scan(db: AsyncSession) -> list[str]:
            pending_users = select(CreditBatch.user_id).where(due_for_expiry_clause(now))
            result = await db.execute(
                select(UserCreditAggregate.user_id)
                .where(
                    or_(
                        UserCreditAggregate.available_credits <= limit,
                        UserCreditAggregate.user_id.in_(pending_users),
                    )
                )
                .order_by(UserCreditAggregate.user_id)
            )
            return list(result.scalars().all())

        user_ids = await run_in_transaction(
            self.session_factory, scan, name="credit_low_balance_scan", settings=self.settings
        )

        result = NotificationResult()
        for user_id in user_ids:
            try:
                summary = await self.check_low_balance(user_id, limit)
            except LedgerError as e:
                logger.error("credit_alert_failed", user_id=user_id, alert_type="low_balance", error=str(e))
                continue
            if summary is not None:
                result.users.append(summary)

        result.notifications_sent = len(result.users)
        logger.info("credit_low_balance_alerts_sent", notifications_sent=result.notifications_sent)
        return result

    async def list_alerts(
        self, user_id: str, limit: int = 10, alert_type: Optional[AlertType] = None
    ) -> list[CreditAlert]:
        """A user's alerts, newest first."""

        async def operation(db: AsyncSession) -> list[CreditAlert]:
            query = select(CreditAlert).where(CreditAlert.user_id == user_id)
            if alert_type is not None:
                query = query.where(CreditAlert.alert_type == alert_type)
            result = await db.execute(
                query.order_by(CreditAlert.created_at.desc(), CreditAlert.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

        return await run_in_transaction(
            self.session_factory, operation, name="credit_alert_list", settings=self.settings
        )

    async def mark_alert_sent(self, alert_id: UUID, email: bool = False, push: bool = False) -> CreditAlert:
        """
        Record delivery of an alert by the external notifier.

        Raises:
            AlertNotFoundError: If no alert has this id
        """

        async def operation(db: AsyncSession) -> CreditAlert:
            alert = await db.scalar(
                select(CreditAlert).where(CreditAlert.alert_id == alert_id).with_for_update()
            )
            if alert is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            now = self._clock()
            alert.is_sent = True
            alert.sent_at = alert.sent_at or now
            alert.email_sent = alert.email_sent or email
            alert.push_sent = alert.push_sent or push
            alert.updated_at = now
            await db.flush()
            return alert

        alert = await run_in_transaction(
            self.session_factory, operation, name="credit_alert_mark_sent", settings=self.settings
        )
        logger.info("credit_alert_marked_sent", alert_id=str(alert_id), email=email, push=push)
        return alert

    async def _raise_for_user(self, user_id: str, **fields: Any) -> Optional[AlertSummary]:
        async def operation(db: AsyncSession) -> Optional[CreditAlert]:
            return await self._create_alert_once(db, user_id=user_id, now=self._clock(), **fields)

        try:
            alert = await run_in_transaction(
                self.session_factory, operation, name="credit_alert", settings=self.settings
            )
        except LedgerError as e:
            # One user's failure must not stop the scan for everyone else
            logger.error(
                "credit_alert_failed",
                user_id=user_id,
                alert_type=fields["alert_type"].value,
                error=str(e),
            )
            return None
        return self._summarize(alert)

    async def _create_alert_once(
        self,
        db: AsyncSession,
        user_id: str,
        alert_type: AlertType,
        now: datetime,
        current_value: Decimal,
        message: str,
        threshold_value: Optional[Decimal] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[CreditAlert]:
        # The aggregate row lock serializes concurrent scans for one user
        if await AggregateStore(db).lock(user_id) is None:
            return None

        cooldown_start = now - timedelta(hours=self.settings.alert_cooldown_hours)
        recent = await db.scalar(
            select(CreditAlert.id)
            .where(
                CreditAlert.user_id == user_id,
                CreditAlert.alert_type == alert_type,
                CreditAlert.created_at > cooldown_start,
            )
            .limit(1)
        )
        if recent is not None:
            logger.info("credit_alert_suppressed", user_id=user_id, alert_type=alert_type.value)
            return None

        alert = CreditAlert(
            user_id=user_id,
            alert_type=alert_type,
            threshold_value=threshold_value,
            current_value=current_value,
            message=message,
            is_sent=False,
            email_sent=False,
            push_sent=False,
            extra_metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        db.add(alert)
        await db.flush()
        return alert

    @staticmethod
    def _summarize(alert: Optional[CreditAlert]) -> Optional[AlertSummary]:
        if alert is None:
            return None
        credit_alerts_total.labels(alert_type=alert.alert_type.value).inc()
        logger.info(
            "credit_alert_created",
            user_id=alert.user_id,
            alert_type=alert.alert_type.value,
            alert_id=str(alert.alert_id),
            current_value=str(alert.current_value),
        )
        return AlertSummary(
            user_id=alert.user_id,
            alert_id=alert.alert_id,
            alert_type=alert.alert_type,
            current_value=alert.current_value,
        )
