from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.plan import BillingCycle
from app.models.subscription import SubscriptionStatus


class SubscriptionCreate(BaseModel):
    customer_id: UUID
    plan_id: UUID
    billing_cycle: BillingCycle | None = Field(
        default=None,
        description="Billing cycle for the subscription. Defaults to the plan's cycle.",
    )
    payment_method_id: str | None = Field(default=None, max_length=255)
    auto_renew: bool = True


class SubscriptionResponse(BaseModel):
    id: UUID
    customer_id: UUID
    plan_id: UUID
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    status_reason: str | None
    price: Decimal
    currency: str
    auto_renew: bool
    start_date: datetime
    next_billing_date: datetime
    trial_start_date: datetime | None
    trial_end_date: datetime | None
    paused_date: datetime | None
    pause_reason: str | None
    resumed_date: datetime | None
    cancelled_date: datetime | None
    cancellation_reason: str | None
    suspended_date: datetime | None
    expired_date: datetime | None
    last_billing_date: datetime | None
    failed_payment_attempts: int
    remote_customer_id: str | None
    remote_subscription_id: str | None
    remote_price_id: str | None
    remote_sync_pending: bool
    remote_sync_error: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TransitionRequest(BaseModel):
    """Body for lifecycle actions (pause, cancel, resume, ...)."""

    reason: str | None = Field(default=None, max_length=500)
    actor_id: str | None = Field(default=None, max_length=255)


class StatusChangeRequest(TransitionRequest):
    status: SubscriptionStatus


class StatusHistoryResponse(BaseModel):
    id: UUID
    subscription_id: UUID
    from_status: SubscriptionStatus | None
    to_status: SubscriptionStatus
    reason: str | None
    changed_by: str | None
    changed_at: datetime

    model_config = {"from_attributes": True}


class ChangePlanRequest(BaseModel):
    new_plan_id: UUID
    actor_id: str | None = Field(default=None, max_length=255)


class ProrationResponse(BaseModel):
    """Charge (positive) or credit (negative) for switching plans now."""

    subscription_id: UUID
    new_plan_id: UUID
    amount: Decimal
    days_remaining: int
    cycle_days: int
