"""Append-only trail of subscription status changes."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class SubscriptionStatusHistory(Base):
    __tablename__ = "subscription_status_history"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    subscription_id = Column(
        UUIDType,
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    reason = Column(String(500), nullable=True)
    changed_by = Column(String(255), nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=False, index=True)
    metadata_ = Column("metadata", JSON, nullable=True)
