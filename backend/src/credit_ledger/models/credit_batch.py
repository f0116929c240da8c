"""Credit batch model: one discrete grant of credits with its own expiry."""
import enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)

from credit_ledger.models.base import Base, CreditAmount, JSONType, utcnow


class BatchType(enum.Enum):
    """Provenance of a batch. Informational only, FIFO ignores it."""

    PURCHASE = "purchase"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"


class CreditBatch(Base):
    """
    A grant of credits consumed oldest-first.

    Created only by the purchase processor, decremented only by the deduction
    engine, flagged expired only by the sweeper. Never deleted.
    """

    __tablename__ = "credit_batches"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_credit_batches_remaining_non_negative"),
        CheckConstraint("credits_remaining <= credits_purchased", name="ck_credit_batches_remaining_le_purchased"),
        CheckConstraint("credits_used >= 0", name="ck_credit_batches_used_non_negative"),
        UniqueConstraint("payment_reference", "batch_type", name="uq_credit_batches_payment_reference_type"),
        # FIFO scan: active batches of one user by age
        Index("ix_credit_batches_user_fifo", "user_id", "is_expired", "purchase_date", "id"),
        # Sweep scan: due batches across all users
        Index("ix_credit_batches_expiry_scan", "is_expired", "expiry_date"),
    )

    # Integer surrogate key doubles as insertion order for FIFO tie-breaks
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    batch_id = Column(Uuid, nullable=False, unique=True, default=uuid4, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    credits_purchased = Column(CreditAmount, nullable=False)
    credits_remaining = Column(CreditAmount, nullable=False)
    credits_used = Column(CreditAmount, nullable=False, default=0)
    purchase_date = Column(DateTime, nullable=False, default=utcnow)
    expiry_date = Column(DateTime, nullable=False)
    is_expired = Column(Boolean, nullable=False, default=False)
    expired_at = Column(DateTime, nullable=True)
    batch_type = Column(
        SQLEnum(BatchType, name="credit_batch_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=BatchType.PURCHASE,
    )
    package_ref = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True, index=True)
    extra_metadata = Column(JSONType, nullable=False, default=dict)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<CreditBatch(batch_id={self.batch_id}, user_id={self.user_id}, "
            f"remaining={self.credits_remaining}/{self.credits_purchased}, expired={self.is_expired})>"
        )
