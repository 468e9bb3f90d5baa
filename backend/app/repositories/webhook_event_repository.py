"""Repository for the processed gateway event ledger."""

from datetime import datetime

from sqlalchemy.orm import Session

from app.models.processed_webhook_event import ProcessedWebhookEvent


class WebhookEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_event_id(self, event_id: str) -> ProcessedWebhookEvent | None:
        return (
            self.db.query(ProcessedWebhookEvent)
            .filter(ProcessedWebhookEvent.event_id == event_id)
            .first()
        )

    def insert(
        self,
        *,
        event_id: str,
        event_type: str,
        received_at: datetime,
        max_retries: int,
    ) -> ProcessedWebhookEvent:
        """Insert a ledger row.

        Raises IntegrityError when another delivery already inserted the same
        event id; the caller rolls back and re-reads.
        """
        event = ProcessedWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            received_at=received_at,
            last_attempt_at=received_at,
            max_retries=max_retries,
        )
        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)
        return event

    def save(self, event: ProcessedWebhookEvent) -> ProcessedWebhookEvent:
        self.db.commit()
        self.db.refresh(event)
        return event

    def get_received_since(self, cutoff: datetime) -> list[ProcessedWebhookEvent]:
        return (
            self.db.query(ProcessedWebhookEvent)
            .filter(ProcessedWebhookEvent.received_at >= cutoff)
            .all()
        )
