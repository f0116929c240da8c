"""SQLAlchemy ORM models for the credit ledger."""
# Import all models here to ensure they are registered with Alembic

from credit_ledger.models.base import Base
from credit_ledger.models.credit_batch import BatchType, CreditBatch
from credit_ledger.models.user_credit_aggregate import UserCreditAggregate
from credit_ledger.models.credit_transaction import CreditTransaction, TransactionType
from credit_ledger.models.credit_alert import AlertType, CreditAlert

__all__ = [
    "Base",
    "BatchType",
    "CreditBatch",
    "UserCreditAggregate",
    "CreditTransaction",
    "TransactionType",
    "AlertType",
    "CreditAlert",
]
