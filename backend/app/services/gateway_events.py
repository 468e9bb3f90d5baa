"""Apply verified gateway events to local subscriptions.

Each event passes the idempotency ledger first. The gateway is the origin of
these changes, so transitions run without pushing anything back to it.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from app.core.database import unit_of_work
from app.core.errors import AlreadyInState, BillingError, NotFound
from app.models.subscription import Subscription, SubscriptionStatus
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.gateway_event import GatewayEventPayload
from app.services.billing_dates import ensure_utc
from app.services.payment_gateway import PaymentGatewayBase
from app.services.subscription_state_machine import SubscriptionStateMachine
from app.services.webhook_idempotency import WebhookIdempotencyService

logger = logging.getLogger(__name__)

S = SubscriptionStatus


@dataclass
class EventOutcome:
    event_id: str
    processed: bool
    skipped: bool
    reason: str


def _period_end(data: dict[str, Any]) -> datetime | None:
    value = data.get("current_period_end")
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    return ensure_utc(datetime.fromisoformat(str(value)))


def _payment_error(data: dict[str, Any]) -> str:
    last_error = data.get("last_payment_error") or {}
    return str(data.get("error") or last_error.get("message") or "Payment failed at gateway")


class GatewayEventProcessor:
    def __init__(self, db: Session, gateway: PaymentGatewayBase | None = None):
        self.db = db
        self.ledger = WebhookIdempotencyService(db)
        self.state_machine = SubscriptionStateMachine(db, gateway)
        self.subscriptions = SubscriptionRepository(db)
        self._handlers: dict[str, Callable[[Subscription, dict[str, Any], datetime], str]] = {
            "invoice.payment_succeeded": self._payment_succeeded,
            "invoice.payment_failed": self._payment_failed,
            "customer.subscription.paused": self._paused,
            "customer.subscription.resumed": self._resumed,
            "customer.subscription.deleted": self._deleted,
            "customer.subscription.updated": self._updated,
            "customer.subscription.trial_will_end": self._trial_will_end,
        }

    def process(self, payload: GatewayEventPayload, now: datetime | None = None) -> EventOutcome:
        now = now or datetime.now(UTC)
        check = self.ledger.check_idempotency(payload.event_id, payload.event_type, now)
        if not check.should_process:
            return EventOutcome(
                event_id=payload.event_id, processed=False, skipped=True, reason=check.reason
            )

        started = time.monotonic()
        try:
            detail = self._dispatch(payload, now)
        except AlreadyInState as e:
            # Duplicate or late delivery of a change we already mirror.
            detail = e.message
        except BillingError as e:
            self.ledger.mark_as_failed(payload.event_id, e.message, now=now)
            logger.warning("Gateway event %s failed: %s", payload.event_id, e.message)
            return EventOutcome(
                event_id=payload.event_id, processed=False, skipped=False, reason=e.message
            )
        except Exception as e:
            self.db.rollback()
            self.ledger.mark_as_failed(payload.event_id, str(e) or e.__class__.__name__, now=now)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        self.ledger.mark_as_processed(
            payload.event_id,
            duration_ms,
            {"event_type": payload.event_type, "subject_id": payload.subject_id, "result": detail},
            now=now,
        )
        return EventOutcome(event_id=payload.event_id, processed=True, skipped=False, reason=detail)

    def _dispatch(self, payload: GatewayEventPayload, now: datetime) -> str:
        handler = self._handlers.get(payload.event_type)
        if handler is None:
            logger.info("Ignoring unhandled gateway event type %s", payload.event_type)
            return "ignored"
        if not payload.subject_id:
            raise NotFound(f"Event {payload.event_id} does not reference a subscription")
        subscription = self.subscriptions.get_by_remote_subscription_id(payload.subject_id)
        if subscription is None:
            raise NotFound(f"No subscription linked to gateway subscription {payload.subject_id}")
        return handler(subscription, payload.data, now)

    def _payment_succeeded(self, subscription: Subscription, data: dict[str, Any], now: datetime) -> str:
        period_end = _period_end(data)
        if subscription.status == S.ACTIVE.value:
            self.state_machine.record_payment(
                subscription.id,  # type: ignore[arg-type]
                succeeded=True,
                now=now,
                next_billing_date=period_end,
            )
            return "payment recorded"
        self.state_machine.mark_payment_succeeded(
            subscription.id,  # type: ignore[arg-type]
            now=now,
            next_billing_date=period_end,
            sync_remote=False,
        )
        return "subscription activated"

    def _payment_failed(self, subscription: Subscription, data: dict[str, Any], now: datetime) -> str:
        error = _payment_error(data)
        if subscription.status == S.PAYMENT_FAILED.value:
            self.state_machine.record_payment(
                subscription.id, succeeded=False, error=error, now=now  # type: ignore[arg-type]
            )
            return "failed attempt recorded"
        self.state_machine.mark_payment_failed(
            subscription.id, error, now=now, sync_remote=False  # type: ignore[arg-type]
        )
        return "subscription marked payment failed"

    def _paused(self, subscription: Subscription, data: dict[str, Any], now: datetime) -> str:
        self.state_machine.pause(
            subscription.id, "Paused at gateway", now=now, sync_remote=False  # type: ignore[arg-type]
        )
        return "subscription paused"

    def _resumed(self, subscription: Subscription, data: dict[str, Any], now: datetime) -> str:
        self.state_machine.resume(
            subscription.id, "Resumed at gateway", now=now, sync_remote=False  # type: ignore[arg-type]
        )
        return "subscription resumed"

    def _deleted(self, subscription: Subscription, data: dict[str, Any], now: datetime) -> str:
        self.state_machine.cancel(
            subscription.id, "Cancelled at gateway", now=now, sync_remote=False  # type: ignore[arg-type]
        )
        return "subscription cancelled"

    def _updated(self, subscription: Subscription, data: dict[str, Any], now: datetime) -> str:
        period_end = _period_end(data)
        if period_end is None:
            return "no billing period change"
        if period_end < ensure_utc(subscription.start_date):  # type: ignore[arg-type]
            logger.warning(
                "Ignoring period end %s before start of subscription %s",
                period_end,
                subscription.id,
            )
            return "period end ignored"
        with unit_of_work(self.db):
            subscription.next_billing_date = period_end  # type: ignore[assignment]
        return "billing date updated"

    def _trial_will_end(self, subscription: Subscription, data: dict[str, Any], now: datetime) -> str:
        logger.info("Trial of subscription %s ends soon", subscription.id)
        return "acknowledged"
