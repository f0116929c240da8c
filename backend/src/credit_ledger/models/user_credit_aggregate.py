"""Per-user credit totals, a materialized view over the batch table."""
from sqlalchemy import Column, Computed, DateTime, String

from credit_ledger.models.base import Base, CreditAmount


class UserCreditAggregate(Base):
    """
    Lifetime counters for one user.

    ``available_credits`` is a generated column so it can never disagree with
    the three counters. The counters themselves move in the same transaction
    as the batch mutation that causes them.
    """

    __tablename__ = "user_credit_aggregates"

    user_id = Column(String(64), nullable=False, unique=True, index=True)
    total_credits = Column(CreditAmount, nullable=False, default=0)
    used_credits = Column(CreditAmount, nullable=False, default=0)
    expired_credits = Column(CreditAmount, nullable=False, default=0)
    available_credits = Column(
        CreditAmount,
        Computed("total_credits - used_credits - expired_credits", persisted=True),
    )
    last_purchase_at = Column(DateTime, nullable=True)
    last_usage_at = Column(DateTime, nullable=True)
    last_expiry_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<UserCreditAggregate(user_id={self.user_id}, total={self.total_credits}, "
            f"used={self.used_credits}, expired={self.expired_credits})>"
        )
