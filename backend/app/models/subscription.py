from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    TRIAL_ACTIVE = "trial_active"
    ACTIVE = "active"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    TRIAL_EXPIRED = "trial_expired"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    customer_id = Column(
        UUIDType,
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    plan_id = Column(
        UUIDType,
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    billing_cycle = Column(String(20), nullable=False)
    status = Column(
        String(20), nullable=False, default=SubscriptionStatus.PENDING.value, index=True
    )
    status_reason = Column(String(500), nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    auto_renew = Column(Boolean, nullable=False, default=True)

    start_date = Column(DateTime(timezone=True), nullable=False)
    next_billing_date = Column(DateTime(timezone=True), nullable=False, index=True)
    trial_start_date = Column(DateTime(timezone=True), nullable=True)
    trial_end_date = Column(DateTime(timezone=True), nullable=True)
    paused_date = Column(DateTime(timezone=True), nullable=True)
    pause_reason = Column(String(500), nullable=True)
    resumed_date = Column(DateTime(timezone=True), nullable=True)
    cancelled_date = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    suspended_date = Column(DateTime(timezone=True), nullable=True)
    expired_date = Column(DateTime(timezone=True), nullable=True)

    last_billing_date = Column(DateTime(timezone=True), nullable=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    last_payment_failed_date = Column(DateTime(timezone=True), nullable=True)
    last_payment_error = Column(String(500), nullable=True)
    failed_payment_attempts = Column(Integer, nullable=False, default=0)

    remote_customer_id = Column(String(255), nullable=True)
    remote_subscription_id = Column(String(255), nullable=True, index=True)
    remote_price_id = Column(String(255), nullable=True)
    payment_method_id = Column(String(255), nullable=True)
    remote_sync_pending = Column(Boolean, nullable=False, default=False, index=True)
    remote_sync_error = Column(String(1000), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}
