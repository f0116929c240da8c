"""Alert records raised by the notification trigger."""
import enum
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text, Uuid

from credit_ledger.models.base import Base, CreditAmount, JSONType


class AlertType(enum.Enum):
    """Alert categories. Delivery is handled outside the ledger."""

    CREDITS_EXPIRING = "credits_expiring"
    CREDITS_EXPIRED = "credits_expired"
    LOW_CREDITS = "low_credits"
    NO_CREDITS = "no_credits"


class CreditAlert(Base):
    """Notification record, deduplicated per user and type by ``created_at``."""

    __tablename__ = "credit_alerts"
    __table_args__ = (
        Index("ix_credit_alerts_user_type_created", "user_id", "alert_type", "created_at"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    alert_id = Column(Uuid, nullable=False, unique=True, default=uuid4, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    alert_type = Column(
        SQLEnum(AlertType, name="credit_alert_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    threshold_value = Column(CreditAmount, nullable=True)
    current_value = Column(CreditAmount, nullable=True)
    message = Column(Text, nullable=False)
    is_sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime, nullable=True)
    email_sent = Column(Boolean, nullable=False, default=False)
    push_sent = Column(Boolean, nullable=False, default=False)
    extra_metadata = Column(JSONType, nullable=False, default=dict)

    def __repr__(self) -> str:
        """String representation."""
        return f"<CreditAlert(alert_id={self.alert_id}, user_id={self.user_id}, alert_type={self.alert_type})>"
