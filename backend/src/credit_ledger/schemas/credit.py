"""Pydantic schemas for ledger operations and read models."""
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from credit_ledger.models.credit_alert import AlertType
from credit_ledger.models.credit_batch import BatchType
from credit_ledger.models.credit_transaction import TransactionType


class CreditBatch(BaseModel):
    """Schema for returning credit batch data."""

    batch_id: UUID
    user_id: str
    credits_purchased: Decimal
    credits_remaining: Decimal
    credits_used: Decimal
    purchase_date: datetime
    expiry_date: datetime
    is_expired: bool
    expired_at: datetime | None = None
    batch_type: BatchType
    package_ref: str | None = None
    payment_reference: str | None = None
    extra_metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class CreditBalance(BaseModel):
    """
    Read view of one user's credits.

    ``expired`` includes ``pending_expiry``: credits in batches past their
    expiry date that the sweeper has not retired yet. They are already
    unspendable, so ``total == used + expired + available`` holds at all times.
    """

    user_id: str
    total: Decimal = Decimal("0")
    used: Decimal = Decimal("0")
    expired: Decimal = Decimal("0")
    available: Decimal = Decimal("0")
    pending_expiry: Decimal = Decimal("0")
    last_purchase_at: datetime | None = None
    last_usage_at: datetime | None = None
    last_expiry_at: datetime | None = None


class DeductionCreate(BaseModel):
    """Schema for a credit deduction request."""

    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Credits to deduct")
    operation_type: str = Field(..., min_length=1, description="Billable action, e.g. call, workflow_run")
    operation_ref: str = Field(..., min_length=1, description="Idempotency key of the billed operation")
    description: str = Field(default="", description="Free-form description for the audit log")
    extra_metadata: dict[str, Any] = Field(default_factory=dict)


class BatchDeduction(BaseModel):
    """Portion of a deduction taken from one batch."""

    batch_id: UUID
    credits_deducted: Decimal
    credits_remaining: Decimal
    purchase_date: datetime


class DeductionResult(BaseModel):
    """Outcome of a FIFO deduction."""

    user_id: str
    credits_deducted: Decimal
    batches_affected: list[BatchDeduction]
    transaction_id: UUID
    balance_before: Decimal
    balance_after: Decimal
    duplicate: bool = False


class PurchaseCreate(BaseModel):
    """Schema for allocating credits after a confirmed payment."""

    user_id: str = Field(..., min_length=1, max_length=64)
    credits_amount: Decimal = Field(..., ge=0, decimal_places=2)
    bonus_credits: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    package_ref: str | None = Field(default=None, description="Credit package that was bought")
    payment_reference: str = Field(..., min_length=1, description="Payment gateway reference, the dedup key")
    expiry_days: int | None = Field(default=None, gt=0, description="Override of the default validity window")


class PurchaseResult(BaseModel):
    """Outcome of a purchase allocation."""

    user_id: str
    payment_reference: str
    batches: list[CreditBatch]
    total_credits: Decimal
    expiry_date: datetime | None
    duplicate: bool = False


class SweepResult(BaseModel):
    """Outcome of one expiration sweep."""

    expired_batch_count: int = 0
    total_credits_expired: Decimal = Decimal("0")
    expired_batch_ids: list[UUID] = Field(default_factory=list)
    affected_user_ids: list[str] = Field(default_factory=list)
    failed_user_ids: list[str] = Field(default_factory=list)


class AlertSummary(BaseModel):
    """One alert raised for one user."""

    user_id: str
    alert_id: UUID
    alert_type: AlertType
    current_value: Decimal | None = None


class WarningResult(BaseModel):
    """Outcome of an expiring-credits warning scan."""

    warnings_sent: int = 0
    users: list[AlertSummary] = Field(default_factory=list)


class NotificationResult(BaseModel):
    """Outcome of expired-credits notifications."""

    notifications_sent: int = 0
    users: list[AlertSummary] = Field(default_factory=list)


class CreditAlert(BaseModel):
    """Schema for returning credit alert data."""

    alert_id: UUID
    user_id: str
    alert_type: AlertType
    threshold_value: Decimal | None = None
    current_value: Decimal | None = None
    message: str
    is_sent: bool
    sent_at: datetime | None = None
    created_at: datetime
    extra_metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class CreditTransaction(BaseModel):
    """Schema for returning ledger entries."""

    transaction_id: UUID
    user_id: str
    type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    extra_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreditTransactionList(BaseModel):
    """Schema for paginated transaction history."""

    items: list[CreditTransaction]
    total: int
    page: int
    page_size: int


class ExpirationSummary(BaseModel):
    """Per-user view of what is active, about to expire and recently expired."""

    user_id: str
    active_batches: int
    total_active_credits: Decimal
    expiring_soon_batches: int
    credits_expiring_soon: Decimal
    recent_expired_batches: int
    batches_active: list[CreditBatch]
    batches_expiring_soon: list[CreditBatch]
    batches_recently_expired: list[CreditBatch]


class ExpirationStats(BaseModel):
    """System-wide expiration statistics for a trailing window."""

    period_days: int
    batches_expired: int
    credits_expired: Decimal
    batches_expiring_soon: int
    credits_expiring_soon: Decimal
    active_batches: int
    active_credits: Decimal
    expiration_rate: Decimal


class Reconciliation(BaseModel):
    """Comparison of the aggregate row against the batch table for one user."""

    user_id: str
    aggregate_available: Decimal
    batch_remaining: Decimal
    drift: Decimal
    is_consistent: bool


class AdjustmentCreate(BaseModel):
    """Schema for a manual balance correction. Negative amounts deduct."""

    amount: Decimal = Field(..., decimal_places=2, description="Signed credit amount")
    admin_ref: str = Field(..., min_length=1, description="Idempotency key of the adjustment")
    reason: str = Field(..., min_length=1, description="Why the balance is being corrected")


class AlertDelivery(BaseModel):
    """Delivery channels confirmed by the external notifier."""

    email: bool = False
    push: bool = False


class SufficiencyCheck(BaseModel):
    """Answer to a pre-deduction balance check. Advisory only."""

    user_id: str
    amount: Decimal
    sufficient: bool
