"""Synchronization between local plans/subscriptions and the payment gateway.

Local records are the source of truth for what should exist remotely. This
module creates missing gateway resources, detects drift between the two sides
and repairs it by tearing down broken remote state and rebuilding it.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.database import unit_of_work
from app.core.errors import (
    NotFound,
    RemoteSyncFailure,
    UnsupportedStatus,
    ValidationFailure,
)
from app.models.customer import Customer
from app.models.plan import BillingCycle, SubscriptionPlan
from app.models.subscription import Subscription, SubscriptionStatus
from app.repositories.customer_repository import CustomerRepository
from app.repositories.plan_repository import PlanRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.services.batch_result import BatchResult
from app.services.billing_dates import tier_price
from app.services.payment_gateway import PaymentGatewayBase, get_payment_gateway

logger = logging.getLogger(__name__)

# (gateway interval unit, interval count) per local billing cycle
PRICE_INTERVALS = {
    BillingCycle.MONTHLY.value: ("month", 1),
    BillingCycle.QUARTERLY.value: ("month", 3),
    BillingCycle.ANNUAL.value: ("year", 1),
}

PRICE_ID_FIELDS = {
    BillingCycle.MONTHLY.value: "remote_monthly_price_id",
    BillingCycle.QUARTERLY.value: "remote_quarterly_price_id",
    BillingCycle.ANNUAL.value: "remote_annual_price_id",
}

# Local statuses that have a direct gateway counterpart operation.
REMOTE_STATUS_OPERATIONS = {
    SubscriptionStatus.ACTIVE.value: "resume_subscription",
    SubscriptionStatus.PAUSED.value: "pause_subscription",
    SubscriptionStatus.CANCELLED.value: "cancel_subscription",
}

_ENDED_STATUSES = {
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.EXPIRED.value,
    SubscriptionStatus.TRIAL_EXPIRED.value,
}


@dataclass
class SyncValidationResult:
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def is_synchronized(self) -> bool:
        return not self.issues


class GatewaySyncService:
    """Keeps gateway products, prices, customers and subscriptions in step."""

    def __init__(self, db: Session, gateway: PaymentGatewayBase | None = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.plans = PlanRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.customers = CustomerRepository(db)

    # -- plans ---------------------------------------------------------------

    def _get_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = self.plans.get_by_id(plan_id)
        if plan is None:
            raise NotFound(f"Plan {plan_id} not found")
        return plan

    def synchronize_plan(self, plan_id: UUID) -> SubscriptionPlan:
        """Create or update the gateway product and price tiers for a plan."""
        plan = self._get_plan(plan_id)
        if not plan.remote_product_id:
            logger.info("Creating gateway product for plan %s", plan.id)
            self._create_remote_plan(plan)
            return plan

        self.gateway.update_product(
            str(plan.remote_product_id), str(plan.name), plan.description  # type: ignore[arg-type]
        )
        price_changed = (
            plan.remote_synced_price is not None
            and Decimal(plan.remote_synced_price) != Decimal(plan.price)
        )
        self._ensure_prices(plan, recreate=price_changed)
        logger.info("Synchronized plan %s with gateway product %s", plan.id, plan.remote_product_id)
        return plan

    def _create_remote_plan(self, plan: SubscriptionPlan) -> None:
        product_id = self.gateway.create_product(str(plan.name), plan.description)  # type: ignore[arg-type]
        # Record the product before creating prices so a partial failure
        # leaves a resumable state behind.
        self.plans.set_remote_ids(plan, remote_product_id=product_id)
        self._ensure_prices(plan, recreate=True)

    def _ensure_prices(self, plan: SubscriptionPlan, recreate: bool) -> None:
        """Create missing price tiers, or all of them when ``recreate`` is set.

        Gateway prices are immutable, so a price change means new price
        objects followed by deactivating the old ones.
        """
        created: dict[str, str] = {}
        replaced: list[str] = []
        try:
            for cycle, (unit, count) in PRICE_INTERVALS.items():
                id_field = PRICE_ID_FIELDS[cycle]
                current = getattr(plan, id_field)
                if current and not recreate:
                    continue
                created[id_field] = self.gateway.create_price(
                    str(plan.remote_product_id),
                    tier_price(Decimal(plan.price), cycle),
                    str(plan.currency),
                    unit,
                    count,
                )
                if current:
                    replaced.append(current)
        except RemoteSyncFailure:
            if created:
                logger.warning(
                    "Partial price sync for plan %s, keeping %d created price(s)",
                    plan.id,
                    len(created),
                )
                self.plans.set_remote_ids(plan, **created)
            raise

        if created:
            remote_fields: dict[str, object] = dict(created)
            remote_fields["remote_synced_price"] = plan.price
            self.plans.set_remote_ids(plan, **remote_fields)

        for old_price_id in replaced:
            try:
                self.gateway.deactivate_price(old_price_id)
            except RemoteSyncFailure as e:
                logger.warning("Could not deactivate old price %s: %s", old_price_id, e)

    def synchronize_plan_deletion(self, plan_id: UUID) -> bool:
        """Deactivate all gateway prices of a plan and delete its product."""
        plan = self._get_plan(plan_id)
        price_ids = [
            getattr(plan, f) for f in PRICE_ID_FIELDS.values() if getattr(plan, f)
        ]
        if not plan.remote_product_id and not price_ids:
            logger.info("Plan %s has no gateway resources, nothing to delete", plan.id)
            return True

        for price_id in price_ids:
            self.gateway.deactivate_price(price_id)
        if plan.remote_product_id:
            self.gateway.delete_product(str(plan.remote_product_id))

        self.plans.set_remote_ids(plan, **self._cleared_plan_fields())
        logger.info("Removed gateway resources for plan %s", plan.id)
        return True

    @staticmethod
    def _cleared_plan_fields() -> dict[str, object]:
        fields: dict[str, object] = {f: None for f in PRICE_ID_FIELDS.values()}
        fields["remote_product_id"] = None
        fields["remote_synced_price"] = None
        return fields

    def validate_plan_synchronization(self, plan_id: UUID) -> SyncValidationResult:
        plan = self._get_plan(plan_id)
        result = SyncValidationResult()
        if not plan.remote_product_id:
            result.issues.append("Plan has no remote product ID")
        for cycle, id_field in PRICE_ID_FIELDS.items():
            if not getattr(plan, id_field):
                result.issues.append(f"Missing remote {cycle} price ID")
        if (
            plan.remote_product_id
            and plan.remote_synced_price is not None
            and Decimal(plan.remote_synced_price) != Decimal(plan.price)
        ):
            result.issues.append(
                f"Remote prices were created for {plan.remote_synced_price} "
                f"but the plan price is {plan.price}"
            )

        if result.is_synchronized:
            result.recommendations.append("Plan is fully synchronized")
        elif not plan.remote_product_id:
            result.recommendations.append(
                "Run plan synchronization to create the remote product and prices"
            )
        else:
            result.recommendations.append(
                "Run plan synchronization to create missing or outdated prices"
            )
            result.recommendations.append(
                "Run plan repair if the remote product is missing or broken"
            )
        return result

    def repair_plan_synchronization(self, plan_id: UUID) -> SubscriptionPlan:
        """Tear down whatever the gateway holds for a plan and rebuild it."""
        plan = self._get_plan(plan_id)
        for id_field in PRICE_ID_FIELDS.values():
            price_id = getattr(plan, id_field)
            if not price_id:
                continue
            try:
                self.gateway.deactivate_price(price_id)
            except RemoteSyncFailure as e:
                logger.warning("Repair: could not deactivate price %s: %s", price_id, e)
        if plan.remote_product_id:
            try:
                self.gateway.delete_product(str(plan.remote_product_id))
            except RemoteSyncFailure as e:
                logger.warning(
                    "Repair: could not delete product %s: %s", plan.remote_product_id, e
                )

        self.plans.set_remote_ids(plan, **self._cleared_plan_fields())
        self._create_remote_plan(plan)
        logger.info("Repaired gateway resources for plan %s", plan.id)
        return plan

    def resolve_price_id(self, plan: SubscriptionPlan, billing_cycle: str) -> str:
        if billing_cycle not in PRICE_ID_FIELDS:
            raise ValidationFailure(f"Unknown billing cycle: {billing_cycle}")
        price_id = plan.price_id_for(billing_cycle)
        if not price_id:
            raise ValidationFailure(
                f"Plan {plan.id} has no remote price for the {billing_cycle} cycle"
            )
        return price_id

    # -- customers -----------------------------------------------------------

    def synchronize_customer(self, customer_id: UUID) -> str:
        customer = self.customers.get_by_id(customer_id)
        if customer is None:
            raise NotFound(f"Customer {customer_id} not found")
        return self.ensure_remote_customer(customer)

    def ensure_remote_customer(self, customer: Customer) -> str:
        if customer.remote_customer_id:
            return str(customer.remote_customer_id)
        remote_id = self.gateway.create_customer(customer.email, str(customer.name))  # type: ignore[arg-type]
        self.customers.set_remote_customer_id(customer, remote_id)
        logger.info("Created gateway customer %s for customer %s", remote_id, customer.id)
        return remote_id

    # -- subscriptions -------------------------------------------------------

    def _save(self, subscription: Subscription) -> None:
        with unit_of_work(self.db):
            self.db.add(subscription)
        self.db.refresh(subscription)

    def _get_subscription(self, subscription_id: UUID) -> Subscription:
        subscription = self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")
        return subscription

    def synchronize_subscription_status(self, subscription_id: UUID, new_status: str) -> bool:
        """Apply a local status to the gateway subscription.

        Returns False when the subscription has no gateway counterpart.
        """
        subscription = self._get_subscription(subscription_id)
        return self.push_status(subscription, new_status)

    def push_status(self, subscription: Subscription, new_status: str) -> bool:
        status = new_status.value if isinstance(new_status, SubscriptionStatus) else new_status
        operation = REMOTE_STATUS_OPERATIONS.get(status)
        if operation is None:
            raise UnsupportedStatus(f"Status '{status}' has no gateway counterpart")
        if not subscription.remote_subscription_id:
            logger.info(
                "Subscription %s has no gateway subscription, skipping status sync",
                subscription.id,
            )
            return False
        result = getattr(self.gateway, operation)(str(subscription.remote_subscription_id))
        return bool(result)

    def create_remote_subscription(self, subscription: Subscription) -> str:
        """Create a gateway subscription for an existing local subscription.

        Only sets attributes on ``subscription``; the caller persists them.
        """
        customer = self.customers.get_by_id(subscription.customer_id)  # type: ignore[arg-type]
        if customer is None:
            raise NotFound(f"Customer {subscription.customer_id} not found")
        plan = self._get_plan(subscription.plan_id)  # type: ignore[arg-type]

        remote_customer_id = self.ensure_remote_customer(customer)
        if not plan.price_id_for(str(subscription.billing_cycle)):
            self.synchronize_plan(plan.id)  # type: ignore[arg-type]
        price_id = self.resolve_price_id(plan, str(subscription.billing_cycle))
        remote_id = self.gateway.create_subscription(
            remote_customer_id,
            price_id,
            subscription.payment_method_id,  # type: ignore[arg-type]
        )
        subscription.remote_customer_id = remote_customer_id  # type: ignore[assignment]
        subscription.remote_price_id = price_id  # type: ignore[assignment]
        subscription.remote_subscription_id = remote_id  # type: ignore[assignment]
        return remote_id

    def validate_subscription_synchronization(self, subscription_id: UUID) -> SyncValidationResult:
        subscription = self._get_subscription(subscription_id)
        result = SyncValidationResult()
        if not subscription.remote_customer_id:
            result.issues.append("Subscription has no remote customer ID")
        if not subscription.remote_price_id:
            result.issues.append("Subscription has no remote price ID")
        if not subscription.remote_subscription_id:
            result.issues.append("Subscription has no remote subscription ID")
        if subscription.remote_sync_pending:
            result.issues.append(
                f"Local changes pending remote synchronization: {subscription.remote_sync_error}"
            )

        if subscription.remote_subscription_id:
            try:
                remote = self.gateway.get_subscription(str(subscription.remote_subscription_id))
            except RemoteSyncFailure as e:
                result.issues.append(f"Unable to retrieve remote subscription: {e.message}")
            else:
                locally_ended = subscription.status in _ENDED_STATUSES
                remotely_ended = remote.status in ("canceled", "incomplete_expired")
                if locally_ended and not remotely_ended:
                    result.issues.append(
                        f"Subscription is {subscription.status} locally "
                        f"but {remote.status} at the gateway"
                    )
                elif remotely_ended and not locally_ended:
                    result.issues.append(
                        f"Subscription is cancelled at the gateway but {subscription.status} locally"
                    )

        if result.is_synchronized:
            result.recommendations.append("Subscription is fully synchronized")
        else:
            result.recommendations.append(
                "Run subscription repair to rebuild the remote subscription"
            )
        return result

    def repair_subscription_synchronization(self, subscription_id: UUID) -> Subscription:
        """Rebuild the gateway side of a subscription from the local record."""
        subscription = self._get_subscription(subscription_id)
        old_remote_id = subscription.remote_subscription_id

        if subscription.status in _ENDED_STATUSES:
            if old_remote_id:
                self.gateway.cancel_subscription(str(old_remote_id))
        else:
            if old_remote_id:
                try:
                    self.gateway.cancel_subscription(str(old_remote_id))
                except RemoteSyncFailure as e:
                    logger.warning(
                        "Repair: could not cancel stale gateway subscription %s: %s",
                        old_remote_id,
                        e,
                    )
            new_remote_id = self.create_remote_subscription(subscription)
            self._save(subscription)
            if subscription.status == SubscriptionStatus.PAUSED.value:
                self.gateway.pause_subscription(new_remote_id)

        subscription.remote_sync_pending = False  # type: ignore[assignment]
        subscription.remote_sync_error = None  # type: ignore[assignment]
        self._save(subscription)
        logger.info(
            "Repaired gateway state of subscription %s (remote %s -> %s)",
            subscription.id,
            old_remote_id,
            subscription.remote_subscription_id,
        )
        return subscription

    def reconcile_drifted_subscriptions(self, limit: int = 100) -> BatchResult:
        """Repair every subscription flagged as out of step with the gateway."""
        result = BatchResult(operation="reconcile_drift")
        drifted_ids = [s.id for s in self.subscriptions.get_drifted(limit=limit)]
        for subscription_id in drifted_ids:
            try:
                self.repair_subscription_synchronization(subscription_id)
                result.record_success()
            except Exception as e:
                self.db.rollback()
                logger.exception("Drift repair failed for subscription %s", subscription_id)
                result.record_failure(subscription_id, str(e))
        logger.info(
            "Drift reconciliation finished: %d repaired, %d failed",
            result.processed,
            result.failed,
        )
        return result
