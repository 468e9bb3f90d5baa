"""Subscription creation and plan changes."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.database import unit_of_work
from app.core.errors import (
    InvalidTransition,
    NotFound,
    PersistenceFailure,
    RemoteSyncFailure,
    ValidationFailure,
)
from app.models.plan import SubscriptionPlan
from app.models.shared import generate_uuid
from app.models.subscription import Subscription, SubscriptionStatus
from app.repositories.customer_repository import CustomerRepository
from app.repositories.plan_repository import PlanRepository
from app.repositories.status_history_repository import StatusHistoryRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.subscription import SubscriptionCreate
from app.services import notification_service as notices
from app.services.audit_service import RESOURCE_SUBSCRIPTION, AuditService
from app.services.billing_dates import (
    calculate_prorated_amount,
    days_in_cycle,
    days_remaining,
    first_billing_date,
    tier_price,
)
from app.services.gateway_sync import GatewaySyncService
from app.services.notification_service import NotificationService
from app.services.payment_gateway import PaymentGatewayBase, get_payment_gateway
from app.services.subscription_state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

_PLAN_CHANGE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL_ACTIVE.value)


@dataclass
class ProrationQuote:
    subscription_id: UUID
    new_plan_id: UUID
    amount: Decimal
    days_remaining: int
    cycle_days: int


@dataclass
class PlanChangeResult:
    subscription: Subscription
    proration: ProrationQuote
    remote_error: str | None = None


class SubscriptionService:
    def __init__(self, db: Session, gateway: PaymentGatewayBase | None = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.sync = GatewaySyncService(db, self.gateway)
        self.state_machine = SubscriptionStateMachine(db, sync=self.sync)
        self.subscriptions = SubscriptionRepository(db)
        self.plans = PlanRepository(db)
        self.customers = CustomerRepository(db)
        self.history = StatusHistoryRepository(db)

    def _active_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = self.plans.get_by_id(plan_id)
        if plan is None:
            raise NotFound(f"Plan {plan_id} not found")
        if not plan.is_active:
            raise ValidationFailure(f"Plan {plan_id} is not active")
        return plan

    def create_subscription(
        self,
        data: SubscriptionCreate,
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Open a gateway subscription, then mirror it locally.

        Nothing is stored locally unless the gateway subscription was created.
        """
        now = now or datetime.now(UTC)
        plan = self._active_plan(data.plan_id)
        customer = self.customers.get_by_id(data.customer_id)
        if customer is None:
            raise NotFound(f"Customer {data.customer_id} not found")
        if self.subscriptions.find_live(customer.id, plan.id) is not None:  # type: ignore[arg-type]
            raise ValidationFailure("Customer already has a live subscription to this plan")

        cycle = data.billing_cycle.value if data.billing_cycle else str(plan.billing_cycle)

        remote_customer_id = self.sync.ensure_remote_customer(customer)
        if data.payment_method_id and not self.gateway.validate_payment_method(
            data.payment_method_id
        ):
            raise ValidationFailure("Payment method is not valid")
        if not plan.price_id_for(cycle):
            self.sync.synchronize_plan(plan.id)  # type: ignore[arg-type]
        price_id = self.sync.resolve_price_id(plan, cycle)
        remote_subscription_id = self.gateway.create_subscription(
            remote_customer_id, price_id, data.payment_method_id
        )

        trial_days = int(plan.trial_duration_days) if plan.trial_allowed else 0
        status = SubscriptionStatus.TRIAL_ACTIVE if trial_days > 0 else SubscriptionStatus.ACTIVE
        subscription = Subscription(
            id=generate_uuid(),
            customer_id=customer.id,
            plan_id=plan.id,
            billing_cycle=cycle,
            status=status.value,
            status_reason="Subscription created",
            price=tier_price(Decimal(plan.price), cycle),
            currency=plan.currency,
            auto_renew=data.auto_renew,
            start_date=now,
            next_billing_date=first_billing_date(now, cycle, trial_days),
            trial_start_date=now if trial_days else None,
            trial_end_date=now + timedelta(days=trial_days) if trial_days else None,
            remote_customer_id=remote_customer_id,
            remote_subscription_id=remote_subscription_id,
            remote_price_id=price_id,
            payment_method_id=data.payment_method_id,
        )
        try:
            with unit_of_work(self.db):
                self.subscriptions.add(subscription)
                self.history.append(
                    subscription_id=subscription.id,  # type: ignore[arg-type]
                    from_status=None,
                    to_status=status.value,
                    reason="Subscription created",
                    changed_by=actor_id,
                    changed_at=now,
                )
        except PersistenceFailure:
            logger.error(
                "Local save failed after creating gateway subscription %s, cancelling it",
                remote_subscription_id,
            )
            try:
                self.gateway.cancel_subscription(remote_subscription_id)
            except RemoteSyncFailure as e:
                logger.error(
                    "Orphaned gateway subscription %s could not be cancelled: %s",
                    remote_subscription_id,
                    e,
                )
            raise

        self.db.refresh(subscription)
        logger.info(
            "Created subscription %s (%s) for customer %s on plan %s",
            subscription.id,
            status.value,
            customer.id,
            plan.id,
        )
        try:
            NotificationService(self.db).notify_subscription_event(
                subscription, notices.EVENT_CREATED
            )
        except Exception:
            self.db.rollback()
            logger.exception("Notification failed for subscription %s", subscription.id)
        try:
            AuditService(self.db).log_create(
                RESOURCE_SUBSCRIPTION,
                subscription.id,  # type: ignore[arg-type]
                actor_id=actor_id,
                data={"plan_id": str(plan.id), "status": status.value, "billing_cycle": cycle},
            )
        except Exception:
            self.db.rollback()
            logger.exception("Audit logging failed for subscription %s", subscription.id)
        return subscription

    def quote_plan_change(
        self, subscription_id: UUID, new_plan_id: UUID, now: datetime | None = None
    ) -> ProrationQuote:
        """Proration for switching plans at ``now`` without changing anything."""
        now = now or datetime.now(UTC)
        subscription = self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")
        new_plan = self.plans.get_by_id(new_plan_id)
        if new_plan is None:
            raise NotFound(f"Plan {new_plan_id} not found")

        cycle = str(subscription.billing_cycle)
        left = days_remaining(subscription.next_billing_date, now)  # type: ignore[arg-type]
        cycle_days = days_in_cycle(cycle)
        amount = calculate_prorated_amount(
            Decimal(subscription.price),
            tier_price(Decimal(new_plan.price), cycle),
            left,
            cycle_days,
        )
        return ProrationQuote(
            subscription_id=subscription.id,  # type: ignore[arg-type]
            new_plan_id=new_plan.id,  # type: ignore[arg-type]
            amount=amount,
            days_remaining=max(left, 0),
            cycle_days=cycle_days,
        )

    def change_plan(
        self,
        subscription_id: UUID,
        new_plan_id: UUID,
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> PlanChangeResult:
        now = now or datetime.now(UTC)
        quote = self.quote_plan_change(subscription_id, new_plan_id, now)
        new_plan = self._active_plan(new_plan_id)

        with unit_of_work(self.db):
            subscription = self.subscriptions.get_for_update(subscription_id)
            if subscription is None:
                raise NotFound(f"Subscription {subscription_id} not found")
            if subscription.status not in _PLAN_CHANGE_STATUSES:
                raise InvalidTransition(
                    f"Cannot change plan of a {subscription.status} subscription"
                )
            if subscription.plan_id == new_plan.id:
                raise ValidationFailure("Subscription is already on this plan")
            old_plan_id = subscription.plan_id
            cycle = str(subscription.billing_cycle)
            subscription.plan_id = new_plan.id  # type: ignore[assignment]
            subscription.price = tier_price(Decimal(new_plan.price), cycle)  # type: ignore[assignment]
            subscription.remote_price_id = new_plan.price_id_for(cycle)  # type: ignore[assignment]
        self.db.refresh(subscription)
        logger.info(
            "Subscription %s moved from plan %s to %s (proration %s)",
            subscription.id,
            old_plan_id,
            new_plan.id,
            quote.amount,
        )

        result = PlanChangeResult(subscription=subscription, proration=quote)
        if subscription.remote_subscription_id:
            try:
                if not subscription.remote_price_id:
                    self.sync.synchronize_plan(new_plan.id)  # type: ignore[arg-type]
                    price_id = self.sync.resolve_price_id(new_plan, cycle)
                    with unit_of_work(self.db):
                        subscription.remote_price_id = price_id  # type: ignore[assignment]
                self.gateway.update_subscription(
                    str(subscription.remote_subscription_id),
                    str(subscription.remote_price_id),
                )
            except (RemoteSyncFailure, ValidationFailure) as e:
                result.remote_error = e.message
                logger.warning(
                    "Gateway plan change failed for subscription %s: %s. "
                    "Proceeding with local plan change only",
                    subscription.id,
                    e.message,
                )
                self.state_machine.flag_drift(subscription, e.message)

        try:
            AuditService(self.db).log_action(
                RESOURCE_SUBSCRIPTION,
                subscription.id,  # type: ignore[arg-type]
                action="plan_changed",
                outcome="drifted" if result.remote_error else "success",
                actor_id=actor_id,
                details={
                    "plan_id": {"old": str(old_plan_id), "new": str(new_plan.id)},
                    "proration": str(quote.amount),
                },
            )
        except Exception:
            self.db.rollback()
            logger.exception("Audit logging failed for subscription %s", subscription.id)
        return result
