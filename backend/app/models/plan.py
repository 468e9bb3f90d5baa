from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    func,
)

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    __table_args__ = (
        # Gateway prices always hang off a gateway product.
        CheckConstraint(
            "remote_product_id IS NOT NULL OR ("
            "remote_monthly_price_id IS NULL AND "
            "remote_quarterly_price_id IS NULL AND "
            "remote_annual_price_id IS NULL)",
            name="ck_plan_prices_require_product",
        ),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    billing_cycle = Column(String(20), nullable=False, default=BillingCycle.MONTHLY.value)
    is_active = Column(Boolean, nullable=False, default=True)
    trial_allowed = Column(Boolean, nullable=False, default=False)
    trial_duration_days = Column(Integer, nullable=False, default=0)
    remote_product_id = Column(String(255), nullable=True)
    remote_monthly_price_id = Column(String(255), nullable=True)
    remote_quarterly_price_id = Column(String(255), nullable=True)
    remote_annual_price_id = Column(String(255), nullable=True)
    remote_synced_price = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def price_id_for(self, cycle: str) -> str | None:
        return {
            BillingCycle.MONTHLY.value: self.remote_monthly_price_id,
            BillingCycle.QUARTERLY.value: self.remote_quarterly_price_id,
            BillingCycle.ANNUAL.value: self.remote_annual_price_id,
        }.get(cycle)
