"""Scheduled billing sweeps: charges, renewals, expirations and dunning.

Each sweep collects subscription ids first and then handles every
subscription on its own, so one failing subscription is reported in the
batch result instead of aborting the sweep.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import unit_of_work
from app.core.errors import InvalidTransition, NotFound, RemoteSyncFailure
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription, SubscriptionStatus
from app.repositories.subscription_repository import SubscriptionRepository
from app.services import notification_service as notices
from app.services.batch_result import BatchResult
from app.services.billing_dates import (
    add_cycle,
    calculate_prorated_amount,
    days_in_cycle,
    days_remaining,
    ensure_utc,
    next_billing_date,
    tier_price,
)
from app.services.gateway_sync import GatewaySyncService
from app.services.notification_service import NotificationService
from app.services.payment_gateway import PaymentGatewayBase, PaymentResult, get_payment_gateway
from app.services.subscription_state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

S = SubscriptionStatus


@dataclass
class BillingOutcome:
    subscription_id: UUID
    action: str  # charged, synced, payment_failed, skipped
    next_billing_date: datetime | None = None
    error: str | None = None


@dataclass
class AutomationStatus:
    due_for_billing: int
    due_for_renewal: int
    past_due_active: int
    trials_ending: int
    payment_failed: int
    drifted: int
    renewal_lookahead_days: int


def charge_idempotency_key(subscription: Subscription, attempt: int = 0) -> str:
    period = ensure_utc(subscription.next_billing_date).date().isoformat()  # type: ignore[arg-type]
    key = f"charge:{subscription.id}:{period}"
    return f"{key}:retry{attempt}" if attempt else key


class BillingAutomationService:
    def __init__(self, db: Session, gateway: PaymentGatewayBase | None = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.sync = GatewaySyncService(db, self.gateway)
        self.state_machine = SubscriptionStateMachine(db, sync=self.sync)
        self.subscriptions = SubscriptionRepository(db)

    # -- helpers -------------------------------------------------------------

    def _get(self, subscription_id: UUID) -> Subscription:
        subscription = self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")
        return subscription

    def _run_batch(
        self,
        operation: str,
        subscription_ids: list[UUID],
        handler: Callable[[UUID], Any],
    ) -> BatchResult:
        result = BatchResult(operation=operation)
        for subscription_id in subscription_ids:
            try:
                handler(subscription_id)
                result.record_success()
            except Exception as e:
                self.db.rollback()
                logger.exception("%s failed for subscription %s", operation, subscription_id)
                result.record_failure(subscription_id, str(e))
        logger.info(
            "%s finished: %d processed, %d failed",
            operation,
            result.processed,
            result.failed,
        )
        return result

    def _charge(self, subscription: Subscription, attempt: int = 0) -> PaymentResult:
        """Charge the period starting at the subscription's billing date.

        The idempotency key names that period, so a charge repeated after a
        failed local write is not taken twice by the gateway.
        """
        payer = subscription.payment_method_id or subscription.remote_customer_id
        if not payer:
            return PaymentResult(status="failed", error_message="No payment method on file")
        return self.gateway.process_payment(
            str(payer),
            Decimal(subscription.price),
            str(subscription.currency),
            idempotency_key=charge_idempotency_key(subscription, attempt),
        )

    def _notify(self, subscription: Subscription, event: str) -> None:
        try:
            NotificationService(self.db).notify_subscription_event(subscription, event)
        except Exception:
            self.db.rollback()
            logger.exception("Notification failed for subscription %s", subscription.id)

    # -- billing dates -------------------------------------------------------

    def calculate_next_billing_date(
        self, subscription: Subscription, now: datetime | None = None
    ) -> datetime:
        """Next charge date, taken from the gateway when the subscription is linked.

        The gateway performs the actual charges, so its period end wins. Local
        cycle arithmetic is only the fallback.
        """
        now = now or datetime.now(UTC)
        if subscription.remote_subscription_id:
            try:
                remote = self.gateway.get_subscription(str(subscription.remote_subscription_id))
                if remote.current_period_end is not None:
                    return remote.current_period_end
                logger.warning(
                    "Gateway subscription %s has no period end, using local dates",
                    subscription.remote_subscription_id,
                )
            except RemoteSyncFailure as e:
                logger.warning(
                    "Could not read billing date for subscription %s from gateway: %s",
                    subscription.id,
                    e,
                )
        return next_billing_date(
            subscription.next_billing_date,  # type: ignore[arg-type]
            str(subscription.billing_cycle),
            now,
        )

    def calculate_prorated_amount(
        self,
        subscription: Subscription,
        new_plan: SubscriptionPlan,
        now: datetime | None = None,
    ) -> Decimal:
        now = now or datetime.now(UTC)
        cycle = str(subscription.billing_cycle)
        return calculate_prorated_amount(
            Decimal(subscription.price),
            tier_price(Decimal(new_plan.price), cycle),
            days_remaining(subscription.next_billing_date, now),  # type: ignore[arg-type]
            days_in_cycle(cycle),
        )

    def _advance(self, subscription: Subscription, next_date: datetime, now: datetime) -> None:
        with unit_of_work(self.db):
            subscription.next_billing_date = next_date  # type: ignore[assignment]
            subscription.last_billing_date = now  # type: ignore[assignment]
        self.db.refresh(subscription)

    # -- recurring billing ---------------------------------------------------

    def get_due_for_billing(self, now: datetime | None = None) -> list[Subscription]:
        return self.subscriptions.get_due_for_billing(now or datetime.now(UTC))

    def bill_subscription(self, subscription_id: UUID, now: datetime | None = None) -> BillingOutcome:
        """Bill one subscription whose billing date has passed."""
        now = now or datetime.now(UTC)
        subscription = self._get(subscription_id)
        if subscription.status != S.ACTIVE.value or ensure_utc(
            subscription.next_billing_date  # type: ignore[arg-type]
        ) > ensure_utc(now):
            return BillingOutcome(subscription_id=subscription_id, action="skipped")

        if subscription.remote_subscription_id:
            # Charged by the gateway; only mirror the new period.
            next_date = self.calculate_next_billing_date(subscription, now)
            if ensure_utc(next_date) <= ensure_utc(subscription.next_billing_date):  # type: ignore[arg-type]
                next_date = next_billing_date(
                    subscription.next_billing_date,  # type: ignore[arg-type]
                    str(subscription.billing_cycle),
                    now,
                )
            self._advance(subscription, next_date, now)
            return BillingOutcome(
                subscription_id=subscription_id, action="synced", next_billing_date=next_date
            )

        payment = self._charge(subscription)
        if payment.succeeded:
            next_date = add_cycle(
                subscription.next_billing_date,  # type: ignore[arg-type]
                str(subscription.billing_cycle),
            )
            self.state_machine.record_payment(
                subscription_id, succeeded=True, now=now, next_billing_date=next_date
            )
            self._notify(subscription, notices.EVENT_PAYMENT_SUCCEEDED)
            return BillingOutcome(
                subscription_id=subscription_id, action="charged", next_billing_date=next_date
            )

        self.state_machine.mark_payment_failed(subscription_id, payment.error_message, now=now)
        return BillingOutcome(
            subscription_id=subscription_id, action="payment_failed", error=payment.error_message
        )

    def process_recurring_billing(self, now: datetime | None = None) -> BatchResult:
        now = now or datetime.now(UTC)
        due_ids = [s.id for s in self.get_due_for_billing(now)]
        return self._run_batch(
            "recurring_billing", due_ids, lambda sid: self.bill_subscription(sid, now)
        )

    # -- renewals ------------------------------------------------------------

    def renew_subscription(self, subscription_id: UUID, now: datetime | None = None) -> Subscription:
        """Extend a subscription by one billing cycle.

        Subscriptions billed locally are charged first; gateway-linked ones
        are charged by the gateway. An expired subscription is brought back to
        Active as part of the renewal.
        """
        now = now or datetime.now(UTC)
        subscription = self._get(subscription_id)
        if subscription.status not in (S.ACTIVE.value, S.EXPIRED.value):
            raise InvalidTransition(
                f"Only active or expired subscriptions can be renewed, "
                f"subscription is {subscription.status}"
            )

        if not subscription.remote_subscription_id:
            payment = self._charge(subscription)
            if not payment.succeeded:
                if subscription.status == S.ACTIVE.value:
                    self.state_machine.mark_payment_failed(
                        subscription_id, payment.error_message, now=now
                    )
                raise RemoteSyncFailure(f"Renewal payment failed: {payment.error_message}")

        cycle = str(subscription.billing_cycle)
        if subscription.status == S.EXPIRED.value:
            next_date = add_cycle(now, cycle)
            result = self.state_machine.request_transition(
                subscription_id,
                S.ACTIVE,
                "Subscription renewed",
                now=now,
                field_updates={"next_billing_date": next_date, "last_billing_date": now},
            )
            if subscription.remote_subscription_id:
                # Expiry cancelled the gateway subscription.
                self.state_machine.replace_remote_subscription(result)
        else:
            current = subscription.next_billing_date
            next_date = add_cycle(current, cycle)  # type: ignore[arg-type]
            if subscription.remote_subscription_id:
                remote_date = self.calculate_next_billing_date(subscription, now)
                if ensure_utc(remote_date) > ensure_utc(current):  # type: ignore[arg-type]
                    next_date = remote_date
            self._advance(subscription, next_date, now)

        subscription = self._get(subscription_id)
        logger.info("Renewed subscription %s until %s", subscription.id, next_date)
        self._notify(subscription, notices.EVENT_RENEWED)
        return subscription

    def process_automated_renewals(self, now: datetime | None = None) -> BatchResult:
        now = now or datetime.now(UTC)
        until = now + timedelta(days=settings.RENEWAL_LOOKAHEAD_DAYS)
        renewal_ids = [s.id for s in self.subscriptions.get_due_for_renewal(now, until)]
        return self._run_batch(
            "automated_renewals", renewal_ids, lambda sid: self.renew_subscription(sid, now)
        )

    # -- expirations ---------------------------------------------------------

    def process_expired_subscriptions(self, now: datetime | None = None) -> BatchResult:
        """Expire active subscriptions that reached their billing date without renewal."""
        now = now or datetime.now(UTC)
        expired_ids = [s.id for s in self.subscriptions.get_past_due_without_renewal(now)]
        return self._run_batch(
            "expirations",
            expired_ids,
            lambda sid: self.state_machine.expire(sid, "Automated expiration", now=now),
        )

    def _end_trial(self, subscription_id: UUID, now: datetime) -> None:
        subscription = self._get(subscription_id)
        if subscription.remote_subscription_id or subscription.payment_method_id:
            self.state_machine.activate(subscription_id, "Trial converted", now=now)
        else:
            self.state_machine.expire_trial(subscription_id, now=now)

    def process_trial_expirations(self, now: datetime | None = None) -> BatchResult:
        now = now or datetime.now(UTC)
        trial_ids = [s.id for s in self.subscriptions.get_trials_ending(now)]
        return self._run_batch("trial_expirations", trial_ids, lambda sid: self._end_trial(sid, now))

    # -- dunning -------------------------------------------------------------

    def _retry_payment(self, subscription_id: UUID, now: datetime) -> None:
        subscription = self._get(subscription_id)
        if int(subscription.failed_payment_attempts) >= settings.PAYMENT_RETRY_LIMIT:
            self.state_machine.suspend(
                subscription_id, "Payment retry limit reached", now=now
            )
            return
        if subscription.remote_subscription_id:
            # The gateway runs its own retries and reports them by webhook.
            return

        payment = self._charge(subscription, attempt=int(subscription.failed_payment_attempts))
        if payment.succeeded:
            self.state_machine.mark_payment_succeeded(
                subscription_id,
                now=now,
                next_billing_date=next_billing_date(
                    subscription.next_billing_date,  # type: ignore[arg-type]
                    str(subscription.billing_cycle),
                    now,
                ),
            )
        else:
            self.state_machine.record_payment(
                subscription_id, succeeded=False, error=payment.error_message, now=now
            )

    def process_failed_payment_retries(self, now: datetime | None = None) -> BatchResult:
        now = now or datetime.now(UTC)
        failed_ids = [s.id for s in self.subscriptions.get_by_status(S.PAYMENT_FAILED.value)]
        return self._run_batch(
            "payment_retries", failed_ids, lambda sid: self._retry_payment(sid, now)
        )

    # -- reporting -----------------------------------------------------------

    def get_automation_status(self, now: datetime | None = None) -> AutomationStatus:
        now = now or datetime.now(UTC)
        until = now + timedelta(days=settings.RENEWAL_LOOKAHEAD_DAYS)
        return AutomationStatus(
            due_for_billing=len(self.subscriptions.get_due_for_billing(now)),
            due_for_renewal=len(self.subscriptions.get_due_for_renewal(now, until)),
            past_due_active=len(self.subscriptions.get_past_due_without_renewal(now)),
            trials_ending=len(self.subscriptions.get_trials_ending(now)),
            payment_failed=self.subscriptions.count(
                Subscription.status == S.PAYMENT_FAILED.value
            ),
            drifted=self.subscriptions.count(Subscription.remote_sync_pending.is_(True)),
            renewal_lookahead_days=settings.RENEWAL_LOOKAHEAD_DAYS,
        )
