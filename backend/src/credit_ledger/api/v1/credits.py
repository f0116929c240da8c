"""Credit ledger API endpoints."""
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from credit_ledger.api.deps import get_ledger
from credit_ledger.factory import CreditLedger
from credit_ledger.models.credit_alert import AlertType
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.schemas.credit import (
    AdjustmentCreate,
    AlertDelivery,
    CreditAlert,
    CreditBalance,
    CreditBatch,
    CreditTransactionList,
    DeductionCreate,
    DeductionResult,
    ExpirationStats,
    ExpirationSummary,
    PurchaseCreate,
    PurchaseResult,
    SufficiencyCheck,
)
from credit_ledger.services.batch_store import BatchStatus

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/stats/expiration", response_model=ExpirationStats)
async def get_expiration_stats(
    days: int = Query(30, ge=1, le=365, description="Trailing window for expired batches"),
    ledger: CreditLedger = Depends(get_ledger),
) -> ExpirationStats:
    """System-wide expiration statistics."""
    return await ledger.balances.get_expiration_stats(days)


@router.post("/purchases", response_model=PurchaseResult, status_code=status.HTTP_201_CREATED)
async def allocate_purchase(
    purchase: PurchaseCreate,
    response: Response,
    ledger: CreditLedger = Depends(get_ledger),
) -> PurchaseResult:
    """
    Allocate credits for a confirmed payment.

    Called by the payment webhook. Repeating a payment reference returns the
    original allocation with 200 instead of granting again.
    """
    result = await ledger.purchases.process_purchase(
        user_id=purchase.user_id,
        credits_amount=purchase.credits_amount,
        payment_reference=purchase.payment_reference,
        bonus_credits=purchase.bonus_credits,
        package_ref=purchase.package_ref,
        expiry_days=purchase.expiry_days,
    )
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return result


@router.post("/alerts/{alert_id}/sent", response_model=CreditAlert)
async def mark_alert_sent(
    alert_id: UUID,
    delivery: AlertDelivery,
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditAlert:
    """Record that the external notifier delivered an alert."""
    alert = await ledger.notifications.mark_alert_sent(alert_id, email=delivery.email, push=delivery.push)
    return CreditAlert.model_validate(alert)


@router.get("/{user_id}/balance", response_model=CreditBalance)
async def get_balance(user_id: str, ledger: CreditLedger = Depends(get_ledger)) -> CreditBalance:
    """Current balance; past-expiry credits count as expired even before the sweep."""
    return await ledger.balances.get_balance(user_id)


@router.get("/{user_id}/sufficient", response_model=SufficiencyCheck)
async def check_sufficient(
    user_id: str,
    amount: Decimal = Query(..., gt=0, decimal_places=2),
    ledger: CreditLedger = Depends(get_ledger),
) -> SufficiencyCheck:
    """
    Pre-check before a billable action.

    Advisory: the deduction itself re-validates under lock and may still
    return 402 if credits were spent or expired in between.
    """
    sufficient = await ledger.balances.check_sufficient(user_id, amount)
    return SufficiencyCheck(user_id=user_id, amount=amount, sufficient=sufficient)


@router.get("/{user_id}/batches", response_model=list[CreditBatch])
async def list_batches(
    user_id: str,
    batch_status: BatchStatus = Query(BatchStatus.ACTIVE, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    ledger: CreditLedger = Depends(get_ledger),
) -> list[CreditBatch]:
    """List a user's batches by lifecycle state."""
    return await ledger.balances.list_batches(user_id, batch_status, limit=limit)


@router.get("/{user_id}/transactions", response_model=CreditTransactionList)
async def list_transactions(
    user_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    transaction_type: Optional[TransactionType] = Query(None, alias="type"),
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditTransactionList:
    """Paginated ledger history, newest first."""
    return await ledger.balances.list_transactions(user_id, page=page, page_size=page_size, type=transaction_type)


@router.get("/{user_id}/alerts", response_model=list[CreditAlert])
async def list_alerts(
    user_id: str,
    limit: int = Query(10, ge=1, le=100),
    alert_type: Optional[AlertType] = Query(None),
    ledger: CreditLedger = Depends(get_ledger),
) -> list[CreditAlert]:
    """A user's credit alerts, newest first."""
    alerts = await ledger.notifications.list_alerts(user_id, limit=limit, alert_type=alert_type)
    return [CreditAlert.model_validate(alert) for alert in alerts]


@router.get("/{user_id}/expiration-summary", response_model=ExpirationSummary)
async def get_expiration_summary(user_id: str, ledger: CreditLedger = Depends(get_ledger)) -> ExpirationSummary:
    """Active, expiring-soon and recently expired batches of a user."""
    return await ledger.balances.get_expiration_summary(user_id)


@router.post("/{user_id}/deductions", response_model=DeductionResult, status_code=status.HTTP_201_CREATED)
async def deduct_credits(
    user_id: str,
    deduction: DeductionCreate,
    response: Response,
    ledger: CreditLedger = Depends(get_ledger),
) -> DeductionResult:
    """
    Deduct credits oldest batch first.

    ``operation_ref`` is the idempotency key: a retried request returns the
    original deduction with 200. Insufficient credits return 402 and nothing
    is deducted.
    """
    result = await ledger.deductions.deduct(
        user_id=user_id,
        amount=deduction.amount,
        operation_type=deduction.operation_type,
        operation_ref=deduction.operation_ref,
        description=deduction.description,
        metadata=deduction.extra_metadata,
    )
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return result


@router.post(
    "/{user_id}/adjustments",
    response_model=Union[PurchaseResult, DeductionResult],
    status_code=status.HTTP_201_CREATED,
)
async def adjust_credits(
    user_id: str,
    adjustment: AdjustmentCreate,
    response: Response,
    ledger: CreditLedger = Depends(get_ledger),
) -> Union[PurchaseResult, DeductionResult]:
    """Manual correction: positive amounts grant an adjustment batch, negative amounts deduct."""
    result = await ledger.adjust_credits(
        user_id=user_id,
        amount=adjustment.amount,
        admin_ref=adjustment.admin_ref,
        reason=adjustment.reason,
    )
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return result
