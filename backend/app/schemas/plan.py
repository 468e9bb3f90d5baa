from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.plan import BillingCycle


class PlanCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(..., ge=0, decimal_places=2)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    is_active: bool = True
    trial_allowed: bool = False
    trial_duration_days: int = Field(default=0, ge=0)


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    is_active: bool | None = None
    trial_allowed: bool | None = None
    trial_duration_days: int | None = Field(default=None, ge=0)


class PlanResponse(BaseModel):
    id: UUID
    name: str
    description: str | None
    price: Decimal
    currency: str
    billing_cycle: BillingCycle
    is_active: bool
    trial_allowed: bool
    trial_duration_days: int
    remote_product_id: str | None
    remote_monthly_price_id: str | None
    remote_quarterly_price_id: str | None
    remote_annual_price_id: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SyncValidationResponse(BaseModel):
    """Outcome of a read-only drift check against the gateway."""

    is_synchronized: bool
    issues: list[str]
    recommendations: list[str]
