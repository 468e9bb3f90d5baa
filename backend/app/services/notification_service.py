"""Service for queueing subscription lifecycle notifications.

Only the notice itself is stored here; delivery channels read the
notifications table.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from app.models.notification import Notification
from app.models.subscription import Subscription
from app.repositories.notification_repository import NotificationRepository

CATEGORY_SUBSCRIPTION = "subscription"
CATEGORY_PAYMENT = "payment"

EVENT_CREATED = "created"
EVENT_CANCELLED = "cancelled"
EVENT_PAUSED = "paused"
EVENT_RESUMED = "resumed"
EVENT_EXPIRED = "expired"
EVENT_SUSPENDED = "suspended"
EVENT_REACTIVATED = "reactivated"
EVENT_RENEWED = "renewed"
EVENT_TRIAL_ENDED = "trial_ended"
EVENT_PAYMENT_FAILED = "payment_failed"
EVENT_PAYMENT_SUCCEEDED = "payment_succeeded"

_TITLES = {
    EVENT_CREATED: ("Subscription created", CATEGORY_SUBSCRIPTION),
    EVENT_CANCELLED: ("Subscription cancelled", CATEGORY_SUBSCRIPTION),
    EVENT_PAUSED: ("Subscription paused", CATEGORY_SUBSCRIPTION),
    EVENT_RESUMED: ("Subscription resumed", CATEGORY_SUBSCRIPTION),
    EVENT_EXPIRED: ("Subscription expired", CATEGORY_SUBSCRIPTION),
    EVENT_SUSPENDED: ("Subscription suspended", CATEGORY_SUBSCRIPTION),
    EVENT_REACTIVATED: ("Subscription reactivated", CATEGORY_SUBSCRIPTION),
    EVENT_RENEWED: ("Subscription renewed", CATEGORY_SUBSCRIPTION),
    EVENT_TRIAL_ENDED: ("Trial ended", CATEGORY_SUBSCRIPTION),
    EVENT_PAYMENT_FAILED: ("Payment failed", CATEGORY_PAYMENT),
    EVENT_PAYMENT_SUCCEEDED: ("Payment received", CATEGORY_PAYMENT),
}


class NotificationService:
    """Service for creating notifications from subscription events."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = NotificationRepository(db)

    def notify_subscription_event(
        self,
        subscription: Subscription,
        event: str,
        detail: str | None = None,
    ) -> Notification:
        if event not in _TITLES:
            raise ValueError(f"Unknown subscription event: {event}")
        title, category = _TITLES[event]
        message = f"{title} for subscription {subscription.id}."
        if detail:
            message += f" {detail}"
        return self.repo.create(
            category=category,
            title=title,
            message=message[:1000],
            customer_id=subscription.customer_id,  # type: ignore[arg-type]
            resource_type="subscription",
            resource_id=subscription.id,  # type: ignore[arg-type]
        )
