"""
Payment ledger.

Append-only: rows change status but are never deleted. Idempotency is keyed
by gateway identifiers (order_id for one-time orders, invoice_id for
recurring invoices, payment_id for captured payments) because a direct
verification callback and a webhook can race for the same payment.
"""

import enum

from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, Index, JSON
from sqlalchemy.orm import relationship

from coursegate.db_base import Base
from coursegate.models.base import TimestampMixin, generate_uuid


class PaymentType(str, enum.Enum):
    TRIAL = "trial"
    RECURRING = "recurring"
    ONE_TIME = "one_time"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String(255), ForeignKey("subscription_plans.id"), nullable=True)
    subscription_id = Column(
        String(255),
        ForeignKey("user_subscriptions.id"),
        nullable=True,
        index=True,
    )

    # Gateway identifiers
    order_id = Column(String(255), nullable=True, unique=True)
    invoice_id = Column(String(255), nullable=True, unique=True)
    payment_id = Column(String(255), nullable=True, unique=True)
    gateway_subscription_id = Column(String(255), nullable=True, index=True)

    amount = Column(Integer, nullable=False, comment="Minor units")
    currency = Column(String(3), nullable=False, default="INR")
    payment_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method = Column(String(50), nullable=True)

    is_webhook_processed = Column(Boolean, nullable=False, default=False)
    event_type = Column(String(100), nullable=True, comment="Last gateway event applied")
    extra_metadata = Column("metadata", JSON, nullable=True)

    subscription = relationship("Subscription", back_populates="payments")

    __table_args__ = (
        Index("ix_payments_status_type", "status", "payment_type"),
    )

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID.value

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, type={self.payment_type}, status={self.status}, "
            f"order_id={self.order_id}, invoice_id={self.invoice_id})>"
        )
