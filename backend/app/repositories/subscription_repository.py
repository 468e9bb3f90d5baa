from datetime import datetime
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.subscription import Subscription, SubscriptionStatus

# Statuses in which a customer still holds the plan.
LIVE_STATUSES = (
    SubscriptionStatus.PENDING.value,
    SubscriptionStatus.TRIAL_ACTIVE.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAUSED.value,
    SubscriptionStatus.PAYMENT_FAILED.value,
    SubscriptionStatus.SUSPENDED.value,
)


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        status: str | None = None,
        customer_id: UUID | None = None,
    ) -> list[Subscription]:
        query = self.db.query(Subscription)
        if status is not None:
            query = query.filter(Subscription.status == status)
        if customer_id is not None:
            query = query.filter(Subscription.customer_id == customer_id)
        return query.order_by(Subscription.created_at.desc()).offset(skip).limit(limit).all()

    def get_by_id(self, subscription_id: UUID) -> Subscription | None:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_for_update(self, subscription_id: UUID) -> Subscription | None:
        """Load a subscription with a row lock, discarding any cached state."""
        return (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_by_remote_subscription_id(self, remote_subscription_id: str) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(Subscription.remote_subscription_id == remote_subscription_id)
            .first()
        )

    def find_live(self, customer_id: UUID, plan_id: UUID) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.customer_id == customer_id,
                Subscription.plan_id == plan_id,
                Subscription.status.in_(LIVE_STATUSES),
            )
            .first()
        )

    def get_due_for_billing(self, now: datetime) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.auto_renew.is_(True),
                Subscription.next_billing_date <= now,
            )
            .order_by(Subscription.next_billing_date)
            .all()
        )

    def get_due_for_renewal(self, now: datetime, until: datetime) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.auto_renew.is_(True),
                Subscription.next_billing_date > now,
                Subscription.next_billing_date <= until,
            )
            .order_by(Subscription.next_billing_date)
            .all()
        )

    def get_past_due_without_renewal(self, now: datetime) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.auto_renew.is_(False),
                Subscription.next_billing_date <= now,
            )
            .all()
        )

    def get_trials_ending(self, now: datetime) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.TRIAL_ACTIVE.value,
                Subscription.trial_end_date <= now,
            )
            .all()
        )

    def get_by_status(self, status: str) -> list[Subscription]:
        return self.db.query(Subscription).filter(Subscription.status == status).all()

    def get_drifted(self, limit: int = 100) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.remote_sync_pending.is_(True))
            .limit(limit)
            .all()
        )

    def count(self, *criteria) -> int:  # type: ignore[no-untyped-def]
        return self.db.query(func.count(Subscription.id)).filter(*criteria).scalar() or 0

    def add(self, subscription: Subscription) -> Subscription:
        """Stage a new subscription in the current transaction."""
        self.db.add(subscription)
        return subscription
