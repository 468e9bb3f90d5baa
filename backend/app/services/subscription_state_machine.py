"""Subscription status state machine.

This is the only code that writes ``Subscription.status``. Every transition:

1. locks the subscription row (and relies on the version column for
   backends without row locks),
2. validates the move against ``ALLOWED_TRANSITIONS``,
3. applies the status-specific field changes,
4. appends exactly one history row,

and commits steps 3 and 4 together. Gateway calls, notifications and audit
entries happen only after that commit. A gateway failure flags the
subscription as drifted instead of failing the transition.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.database import unit_of_work
from app.core.errors import (
    AlreadyInState,
    BillingError,
    InvalidTransition,
    NotFound,
    RemoteSyncFailure,
    ValidationFailure,
)
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_status_history import SubscriptionStatusHistory
from app.repositories.status_history_repository import StatusHistoryRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.services import notification_service as notices
from app.services.audit_service import RESOURCE_SUBSCRIPTION, AuditService
from app.services.billing_dates import add_cycle, ensure_utc
from app.services.gateway_sync import GatewaySyncService
from app.services.notification_service import NotificationService
from app.services.payment_gateway import PaymentGatewayBase

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.PENDING: frozenset({S.ACTIVE, S.TRIAL_ACTIVE, S.CANCELLED}),
    S.TRIAL_ACTIVE: frozenset({S.ACTIVE, S.TRIAL_EXPIRED, S.CANCELLED}),
    S.TRIAL_EXPIRED: frozenset({S.ACTIVE, S.CANCELLED}),
    S.ACTIVE: frozenset({S.PAUSED, S.SUSPENDED, S.CANCELLED, S.EXPIRED, S.PAYMENT_FAILED}),
    S.PAUSED: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.SUSPENDED: frozenset({S.ACTIVE, S.CANCELLED}),
    S.PAYMENT_FAILED: frozenset({S.ACTIVE, S.CANCELLED, S.SUSPENDED}),
    S.EXPIRED: frozenset({S.ACTIVE}),
    # Terminal. Coming back goes through reactivate(), not the table.
    S.CANCELLED: frozenset(),
}

REACTIVATABLE_STATUSES = frozenset({S.CANCELLED, S.EXPIRED})

_RESUMABLE_STATUSES = frozenset({S.PAUSED, S.SUSPENDED})


def can_transition(from_status: SubscriptionStatus | str, to_status: SubscriptionStatus | str) -> bool:
    return S(to_status) in ALLOWED_TRANSITIONS[S(from_status)]


def allowed_targets(status: SubscriptionStatus | str) -> list[SubscriptionStatus]:
    return sorted(ALLOWED_TRANSITIONS[S(status)], key=lambda s: s.value)


@dataclass
class TransitionResult:
    subscription: Subscription
    from_status: SubscriptionStatus
    to_status: SubscriptionStatus
    remote_synced: bool | None = None  # None when no gateway call was needed
    remote_error: str | None = None

    @property
    def drifted(self) -> bool:
        return self.remote_error is not None


class SubscriptionStateMachine:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayBase | None = None,
        sync: GatewaySyncService | None = None,
    ):
        self.db = db
        self.subscriptions = SubscriptionRepository(db)
        self.history = StatusHistoryRepository(db)
        self.sync = sync or GatewaySyncService(db, gateway)

    # -- core transition -----------------------------------------------------

    def request_transition(
        self,
        subscription_id: UUID,
        target: SubscriptionStatus | str,
        reason: str | None = None,
        actor_id: str | None = None,
        now: datetime | None = None,
        sync_remote: bool = True,
        field_updates: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Move a subscription to ``target``.

        Raises NotFound, AlreadyInState or InvalidTransition before anything
        is written, and PersistenceFailure (after rolling back) if the status
        change and its history row cannot be committed together.
        """
        target = S(target)
        now = now or datetime.now(UTC)

        with unit_of_work(self.db):
            subscription = self.subscriptions.get_for_update(subscription_id)
            if subscription is None:
                raise NotFound(f"Subscription {subscription_id} not found")

            current = S(subscription.status)
            if current == target:
                raise AlreadyInState(f"Subscription is already in {target.value} status")
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(
                    f"Cannot transition from {current.value} to {target.value}"
                )

            self._apply_status_fields(subscription, current, target, reason, now)
            for key, value in (field_updates or {}).items():
                # Callables see the locked row, so derived counters never lose an update.
                setattr(subscription, key, value(subscription) if callable(value) else value)
            self.history.append(
                subscription_id=subscription.id,  # type: ignore[arg-type]
                from_status=current.value,
                to_status=target.value,
                reason=reason,
                changed_by=actor_id,
                changed_at=now,
            )

        self.db.refresh(subscription)
        logger.info(
            "Subscription %s transitioned %s -> %s (%s)",
            subscription.id,
            current.value,
            target.value,
            reason,
        )

        result = TransitionResult(subscription=subscription, from_status=current, to_status=target)
        if sync_remote:
            self._sync_remote(result)
        self._inform_collaborators(result, reason, actor_id)
        return result

    def _apply_status_fields(
        self,
        subscription: Subscription,
        current: SubscriptionStatus,
        target: SubscriptionStatus,
        reason: str | None,
        now: datetime,
    ) -> None:
        subscription.status = target.value  # type: ignore[assignment]
        subscription.status_reason = reason  # type: ignore[assignment]

        if target == S.ACTIVE:
            if current in _RESUMABLE_STATUSES:
                subscription.resumed_date = now  # type: ignore[assignment]
            if current == S.PAYMENT_FAILED:
                subscription.failed_payment_attempts = 0  # type: ignore[assignment]
                subscription.last_payment_error = None  # type: ignore[assignment]
            subscription.pause_reason = None  # type: ignore[assignment]
            subscription.cancellation_reason = None  # type: ignore[assignment]
        elif target == S.TRIAL_ACTIVE:
            if subscription.trial_start_date is None:
                subscription.trial_start_date = now  # type: ignore[assignment]
        elif target == S.PAUSED:
            subscription.paused_date = now  # type: ignore[assignment]
            subscription.pause_reason = reason  # type: ignore[assignment]
        elif target == S.CANCELLED:
            subscription.cancelled_date = now  # type: ignore[assignment]
            subscription.cancellation_reason = reason  # type: ignore[assignment]
            subscription.pause_reason = None  # type: ignore[assignment]
            subscription.auto_renew = False  # type: ignore[assignment]
        elif target == S.SUSPENDED:
            subscription.suspended_date = now  # type: ignore[assignment]
        elif target == S.EXPIRED:
            subscription.expired_date = now  # type: ignore[assignment]
            subscription.pause_reason = None  # type: ignore[assignment]
        elif target == S.PAYMENT_FAILED:
            subscription.last_payment_failed_date = now  # type: ignore[assignment]

    def _remote_status_for(self, result: TransitionResult) -> SubscriptionStatus | None:
        if result.to_status in (S.PAUSED, S.CANCELLED):
            return result.to_status
        if result.to_status in (S.EXPIRED, S.TRIAL_EXPIRED):
            # The gateway keeps charging until its subscription is cancelled.
            return S.CANCELLED
        if result.to_status == S.ACTIVE and result.from_status == S.PAUSED:
            return S.ACTIVE
        return None

    def _sync_remote(self, result: TransitionResult) -> None:
        remote_status = self._remote_status_for(result)
        subscription = result.subscription
        if remote_status is None or not subscription.remote_subscription_id:
            return
        try:
            result.remote_synced = self.sync.push_status(subscription, remote_status.value)
        except RemoteSyncFailure as e:
            result.remote_synced = False
            result.remote_error = e.message
        except Exception as e:
            logger.exception("Unexpected gateway error for subscription %s", subscription.id)
            result.remote_synced = False
            result.remote_error = str(e) or e.__class__.__name__

        if result.remote_error is not None:
            logger.warning(
                "Gateway sync of %s -> %s failed for subscription %s (remote %s): %s. "
                "Proceeding with local change only",
                result.from_status.value,
                result.to_status.value,
                subscription.id,
                subscription.remote_subscription_id,
                result.remote_error,
            )
            self.flag_drift(subscription, result.remote_error)

    def flag_drift(self, subscription: Subscription, error: str) -> None:
        try:
            with unit_of_work(self.db):
                subscription.remote_sync_pending = True  # type: ignore[assignment]
                subscription.remote_sync_error = error[:1000]  # type: ignore[assignment]
            self.db.refresh(subscription)
        except BillingError:
            self.db.rollback()
            logger.error("Could not record gateway drift for subscription %s", subscription.id)

    _NOTICES = {
        S.PAUSED: notices.EVENT_PAUSED,
        S.CANCELLED: notices.EVENT_CANCELLED,
        S.EXPIRED: notices.EVENT_EXPIRED,
        S.SUSPENDED: notices.EVENT_SUSPENDED,
        S.PAYMENT_FAILED: notices.EVENT_PAYMENT_FAILED,
        S.TRIAL_EXPIRED: notices.EVENT_TRIAL_ENDED,
    }

    def _notice_for(self, result: TransitionResult) -> str | None:
        if result.to_status == S.ACTIVE:
            if result.from_status in _RESUMABLE_STATUSES:
                return notices.EVENT_RESUMED
            if result.from_status == S.PAYMENT_FAILED:
                return notices.EVENT_PAYMENT_SUCCEEDED
            if result.from_status in REACTIVATABLE_STATUSES:
                return notices.EVENT_REACTIVATED
            return None
        return self._NOTICES.get(result.to_status)

    def _inform_collaborators(
        self,
        result: TransitionResult,
        reason: str | None,
        actor_id: str | None,
        action: str = "status_changed",
    ) -> None:
        """Notify and audit. Failures here never fail the transition."""
        subscription = result.subscription
        event = self._notice_for(result)
        if event is not None:
            try:
                NotificationService(self.db).notify_subscription_event(subscription, event, reason)
            except Exception:
                self.db.rollback()
                logger.exception("Notification failed for subscription %s", subscription.id)
        try:
            AuditService(self.db).log_status_change(
                RESOURCE_SUBSCRIPTION,
                subscription.id,  # type: ignore[arg-type]
                old_status=result.from_status.value,
                new_status=result.to_status.value,
                actor_id=actor_id,
                reason=reason,
                action=action,
            )
        except Exception:
            self.db.rollback()
            logger.exception("Audit logging failed for subscription %s", subscription.id)

    # -- reactivation --------------------------------------------------------

    def reactivate(
        self,
        subscription_id: UUID,
        reason: str | None = None,
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Bring a cancelled or expired subscription back to Active.

        Starts a fresh billing cycle from ``now`` and, if the subscription was
        linked to the gateway, opens a new gateway subscription for it.
        """
        reason = reason or "Subscription reactivated"
        now = now or datetime.now(UTC)

        with unit_of_work(self.db):
            subscription = self.subscriptions.get_for_update(subscription_id)
            if subscription is None:
                raise NotFound(f"Subscription {subscription_id} not found")
            current = S(subscription.status)
            if current not in REACTIVATABLE_STATUSES:
                raise InvalidTransition(
                    f"Only cancelled or expired subscriptions can be reactivated, "
                    f"subscription is {current.value}"
                )

            subscription.status = S.ACTIVE.value  # type: ignore[assignment]
            subscription.status_reason = reason  # type: ignore[assignment]
            subscription.cancellation_reason = None  # type: ignore[assignment]
            subscription.pause_reason = None  # type: ignore[assignment]
            subscription.resumed_date = now  # type: ignore[assignment]
            subscription.auto_renew = True  # type: ignore[assignment]
            subscription.failed_payment_attempts = 0  # type: ignore[assignment]
            subscription.next_billing_date = add_cycle(  # type: ignore[assignment]
                now, str(subscription.billing_cycle)
            )
            was_linked = bool(subscription.remote_subscription_id)
            self.history.append(
                subscription_id=subscription.id,  # type: ignore[arg-type]
                from_status=current.value,
                to_status=S.ACTIVE.value,
                reason=reason,
                changed_by=actor_id,
                changed_at=now,
                metadata={"operation": "reactivation"},
            )

        self.db.refresh(subscription)
        logger.info("Subscription %s reactivated from %s", subscription.id, current.value)
        result = TransitionResult(subscription=subscription, from_status=current, to_status=S.ACTIVE)

        if was_linked:
            self.replace_remote_subscription(result)

        self._inform_collaborators(result, reason, actor_id, action="reactivated")
        return result

    def replace_remote_subscription(self, result: TransitionResult) -> None:
        """Swap the gateway subscription of a revived subscription for a new one.

        The previous gateway subscription is cancelled first (best effort) so
        the customer is never billed twice. Failures flag drift and leave the
        local status as it is.
        """
        subscription = result.subscription
        old_remote_id = subscription.remote_subscription_id
        if old_remote_id:
            try:
                self.sync.gateway.cancel_subscription(str(old_remote_id))
            except RemoteSyncFailure as e:
                # Usually already cancelled when the subscription ended.
                logger.info("Previous gateway subscription %s not cancelled: %s", old_remote_id, e)

        try:
            new_remote_id = self.sync.create_remote_subscription(subscription)
        except (RemoteSyncFailure, NotFound, ValidationFailure) as e:
            self.db.rollback()
            result.remote_synced = False
            result.remote_error = e.message
            logger.warning(
                "Could not open a gateway subscription for %s: %s. "
                "Proceeding with local change only",
                subscription.id,
                e.message,
            )
            self.flag_drift(subscription, e.message)
            return

        try:
            self._save_remote_link(subscription)
        except BillingError as e:
            self.db.rollback()
            logger.error(
                "Could not store gateway subscription %s for %s: %s. Cancelling it",
                new_remote_id,
                subscription.id,
                e.message,
            )
            try:
                self.sync.gateway.cancel_subscription(new_remote_id)
            except RemoteSyncFailure as cancel_error:
                logger.error(
                    "Orphaned gateway subscription %s could not be cancelled: %s",
                    new_remote_id,
                    cancel_error,
                )
            result.remote_synced = False
            result.remote_error = e.message
            self.flag_drift(subscription, e.message)
            return
        result.remote_synced = True

    def _save_remote_link(self, subscription: Subscription) -> None:
        with unit_of_work(self.db):
            subscription.remote_sync_pending = False  # type: ignore[assignment]
            subscription.remote_sync_error = None  # type: ignore[assignment]
            self.db.add(subscription)
        self.db.refresh(subscription)

    # -- lifecycle helpers ---------------------------------------------------

    def activate(self, subscription_id: UUID, reason: str | None = None, **kwargs: Any) -> TransitionResult:
        return self.request_transition(
            subscription_id, S.ACTIVE, reason or "Subscription activated", **kwargs
        )

    def start_trial(self, subscription_id: UUID, reason: str | None = None, **kwargs: Any) -> TransitionResult:
        return self.request_transition(
            subscription_id, S.TRIAL_ACTIVE, reason or "Trial started", **kwargs
        )

    def pause(self, subscription_id: UUID, reason: str | None = None, **kwargs: Any) -> TransitionResult:
        return self.request_transition(
            subscription_id, S.PAUSED, reason or "Subscription paused", **kwargs
        )

    def resume(self, subscription_id: UUID, reason: str | None = None, **kwargs: Any) -> TransitionResult:
        subscription = self._get(subscription_id)
        if S(subscription.status) not in _RESUMABLE_STATUSES:
            raise InvalidTransition(
                f"Only paused or suspended subscriptions can be resumed, "
                f"subscription is {subscription.status}"
            )
        return self.request_transition(
            subscription_id, S.ACTIVE, reason or "Subscription resumed", **kwargs
        )

    def cancel(self, subscription_id: UUID, reason: str | None = None, **kwargs: Any) -> TransitionResult:
        return self.request_transition(
            subscription_id, S.CANCELLED, reason or "Subscription cancelled", **kwargs
        )

    def suspend(self, subscription_id: UUID, reason: str | None = None, **kwargs: Any) -> TransitionResult:
        return self.request_transition(
            subscription_id, S.SUSPENDED, reason or "Subscription suspended", **kwargs
        )

    def expire(self, subscription_id: UUID, reason: str | None = None, **kwargs: Any) -> TransitionResult:
        return self.request_transition(
            subscription_id, S.EXPIRED, reason or "Subscription expired", **kwargs
        )

    def expire_trial(self, subscription_id: UUID, reason: str | None = None, **kwargs: Any) -> TransitionResult:
        return self.request_transition(
            subscription_id, S.TRIAL_EXPIRED, reason or "Trial period ended", **kwargs
        )

    def mark_payment_failed(
        self,
        subscription_id: UUID,
        error: str | None = None,
        now: datetime | None = None,
        **kwargs: Any,
    ) -> TransitionResult:
        return self.request_transition(
            subscription_id,
            S.PAYMENT_FAILED,
            kwargs.pop("reason", None) or "Payment failed",
            now=now,
            field_updates={
                "failed_payment_attempts": lambda s: int(s.failed_payment_attempts) + 1,
                "last_payment_error": (error or "Payment failed")[:500],
            },
            **kwargs,
        )

    def mark_payment_succeeded(
        self,
        subscription_id: UUID,
        now: datetime | None = None,
        next_billing_date: datetime | None = None,
        **kwargs: Any,
    ) -> TransitionResult:
        """Return a subscription to Active after a successful charge."""
        now = now or datetime.now(UTC)
        updates: dict[str, Any] = {"last_payment_date": now, "last_billing_date": now}
        if next_billing_date is not None:
            updates["next_billing_date"] = next_billing_date
        return self.request_transition(
            subscription_id,
            S.ACTIVE,
            kwargs.pop("reason", None) or "Payment succeeded",
            now=now,
            field_updates=updates,
            **kwargs,
        )

    def record_payment(
        self,
        subscription_id: UUID,
        succeeded: bool,
        error: str | None = None,
        now: datetime | None = None,
        next_billing_date: datetime | None = None,
    ) -> Subscription:
        """Update payment bookkeeping without changing status."""
        now = now or datetime.now(UTC)
        with unit_of_work(self.db):
            subscription = self.subscriptions.get_for_update(subscription_id)
            if subscription is None:
                raise NotFound(f"Subscription {subscription_id} not found")
            if succeeded:
                subscription.last_payment_date = now  # type: ignore[assignment]
                subscription.last_billing_date = now  # type: ignore[assignment]
                subscription.failed_payment_attempts = 0  # type: ignore[assignment]
                subscription.last_payment_error = None  # type: ignore[assignment]
            else:
                subscription.failed_payment_attempts = (  # type: ignore[assignment]
                    int(subscription.failed_payment_attempts) + 1
                )
                subscription.last_payment_failed_date = now  # type: ignore[assignment]
                subscription.last_payment_error = (error or "Payment failed")[:500]  # type: ignore[assignment]
            if next_billing_date is not None:
                if ensure_utc(next_billing_date) < ensure_utc(subscription.start_date):  # type: ignore[arg-type]
                    raise InvalidTransition("Next billing date cannot precede the start date")
                subscription.next_billing_date = next_billing_date  # type: ignore[assignment]
        self.db.refresh(subscription)
        return subscription

    # -- queries -------------------------------------------------------------

    def _get(self, subscription_id: UUID) -> Subscription:
        subscription = self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")
        return subscription

    def get_status_history(self, subscription_id: UUID) -> list[SubscriptionStatusHistory]:
        self._get(subscription_id)
        return self.history.get_by_subscription(subscription_id)

    def valid_transitions(self, subscription_id: UUID) -> list[SubscriptionStatus]:
        return allowed_targets(self._get(subscription_id).status)  # type: ignore[arg-type]
