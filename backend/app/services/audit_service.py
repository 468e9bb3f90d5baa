"""Audit service for recording actions taken on billing resources."""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.repositories.audit_log_repository import AuditLogRepository

RESOURCE_SUBSCRIPTION = "subscription"
RESOURCE_PLAN = "subscription_plan"


class AuditService:
    """Service for recording audit trail entries."""

    def __init__(self, db: Session):
        self.repo = AuditLogRepository(db)

    @staticmethod
    def _actor(actor_id: str | None) -> str:
        return "user" if actor_id else "system"

    def log_create(
        self,
        resource_type: str,
        resource_id: UUID,
        actor_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Log a resource creation event."""
        self.repo.create(
            resource_type=resource_type,
            resource_id=resource_id,
            action="created",
            changes=data or {},
            actor_type=self._actor(actor_id),
            actor_id=actor_id,
        )

    def log_status_change(
        self,
        resource_type: str,
        resource_id: UUID,
        old_status: str | None,
        new_status: str,
        actor_id: str | None = None,
        reason: str | None = None,
        action: str = "status_changed",
    ) -> None:
        """Log a status change event."""
        self.repo.create(
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            changes={"status": {"old": old_status, "new": new_status}},
            actor_type=self._actor(actor_id),
            actor_id=actor_id,
            metadata={"reason": reason} if reason else None,
        )

    def log_action(
        self,
        resource_type: str,
        resource_id: UUID,
        action: str,
        outcome: str = "success",
        actor_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log an operation such as a sync, repair or plan change."""
        self.repo.create(
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            outcome=outcome,
            changes=details or {},
            actor_type=self._actor(actor_id),
            actor_id=actor_id,
        )
