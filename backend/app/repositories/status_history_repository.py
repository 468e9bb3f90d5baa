"""Append-only access to subscription status history."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.subscription_status_history import SubscriptionStatusHistory


class StatusHistoryRepository:
    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        *,
        subscription_id: UUID,
        from_status: str | None,
        to_status: str,
        reason: str | None,
        changed_by: str | None,
        changed_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> SubscriptionStatusHistory:
        """Stage a history row; the caller's unit of work commits it."""
        entry = SubscriptionStatusHistory(
            subscription_id=subscription_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            changed_by=changed_by,
            changed_at=changed_at,
            metadata_=metadata,
        )
        self.db.add(entry)
        return entry

    def get_by_subscription(self, subscription_id: UUID) -> list[SubscriptionStatusHistory]:
        return (
            self.db.query(SubscriptionStatusHistory)
            .filter(SubscriptionStatusHistory.subscription_id == subscription_id)
            .order_by(SubscriptionStatusHistory.changed_at, SubscriptionStatusHistory.id)
            .all()
        )
