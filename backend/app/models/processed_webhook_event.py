"""Ledger of gateway events seen by the webhook endpoint."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    __table_args__ = (UniqueConstraint("event_id", name="uq_processed_webhook_event_id"),)

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    received_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    is_success = Column(Boolean, nullable=False, default=False)
    is_permanently_failed = Column(Boolean, nullable=False, default=False)
    error_message = Column(String(2000), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    processing_duration_ms = Column(Integer, nullable=True)
    metadata_ = Column("metadata", Text, nullable=True)

    @property
    def should_retry(self) -> bool:
        return not self.is_success and self.retry_count < self.max_retries
