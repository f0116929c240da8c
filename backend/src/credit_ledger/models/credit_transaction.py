"""Append-only audit record of every balance change."""
import enum

from uuid import uuid4

from sqlalchemy import BigInteger, Column, Enum as SQLEnum, Integer, String, Text, Uuid

from credit_ledger.models.base import Base, CreditAmount, JSONType


class TransactionType(enum.Enum):
    """Kind of balance change."""

    PURCHASE = "purchase"
    BONUS = "bonus"
    USAGE = "usage"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"
    EXPIRY = "expiry"


class CreditTransaction(Base):
    """
    Immutable ledger entry.

    ``amount`` is signed: grants are positive, usage and expiry negative.
    Balance snapshots are the aggregate's available credits around the change.
    The unique ``idempotency_key`` is what makes a retried request a no-op.
    """

    __tablename__ = "credit_transactions"

    # Insertion order breaks ties between entries written at the same instant
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    transaction_id = Column(Uuid, nullable=False, unique=True, default=uuid4, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(
        SQLEnum(TransactionType, name="credit_transaction_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True,
    )
    amount = Column(CreditAmount, nullable=False)
    balance_before = Column(CreditAmount, nullable=False)
    balance_after = Column(CreditAmount, nullable=False)
    description = Column(Text, nullable=True)
    reference_type = Column(String, nullable=True)  # operation type, payment, system_job
    reference_id = Column(String, nullable=True, index=True)
    idempotency_key = Column(String, nullable=False, unique=True, index=True)
    extra_metadata = Column(JSONType, nullable=False, default=dict)

    def __repr__(self) -> str:
        """String representation."""
        return f"<CreditTransaction(transaction_id={self.transaction_id}, user_id={self.user_id}, type={self.type}, amount={self.amount})>"
