"""Idempotency ledger for inbound gateway events.

Every gateway event id gets exactly one ledger row. The row is created on
first sighting through a unique index, so concurrent deliveries of the same
event race on the insert rather than on a read-then-write.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.processed_webhook_event import ProcessedWebhookEvent
from app.repositories.webhook_event_repository import WebhookEventRepository

logger = logging.getLogger(__name__)

REASON_NEW = "New event"
REASON_ALREADY_PROCESSED = "Already processed successfully"
REASON_PERMANENTLY_FAILED = "Permanently failed"
REASON_RETRY = "Retry attempt"
REASON_IN_FLIGHT = "Concurrent delivery in progress"
REASON_UNEXPECTED = "Unexpected state"
REASON_CHECK_FAILED = "Idempotency check failed - allowing processing"


@dataclass
class IdempotencyCheckResult:
    should_process: bool
    is_new_event: bool
    reason: str
    retry_count: int = 0


@dataclass
class ProcessingStats:
    window_hours: int
    total_events: int = 0
    successful_events: int = 0
    failed_events: int = 0
    permanently_failed_events: int = 0
    retryable_events: int = 0
    average_processing_ms: float | None = None
    events_by_type: dict[str, int] = field(default_factory=dict)


class WebhookIdempotencyService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = WebhookEventRepository(db)

    def check_idempotency(
        self, event_id: str, event_type: str, now: datetime | None = None
    ) -> IdempotencyCheckResult:
        """Decide whether an event delivery should be processed.

        Lookup or insert errors fail open: a broken ledger must not block
        legitimate gateway traffic.
        """
        now = now or datetime.now(UTC)
        try:
            existing = self.repo.get_by_event_id(event_id)
            if existing is None:
                return self._record_first_sighting(event_id, event_type, now)
            return self._evaluate(existing, now)
        except Exception as e:
            self.db.rollback()
            logger.exception("Idempotency check failed for event %s: %s", event_id, e)
            return IdempotencyCheckResult(
                should_process=True, is_new_event=True, reason=REASON_CHECK_FAILED
            )

    def _record_first_sighting(
        self, event_id: str, event_type: str, now: datetime
    ) -> IdempotencyCheckResult:
        try:
            self.repo.insert(
                event_id=event_id,
                event_type=event_type,
                received_at=now,
                max_retries=settings.WEBHOOK_MAX_RETRIES,
            )
        except IntegrityError:
            # Another delivery of the same event won the insert.
            self.db.rollback()
            winner = self.repo.get_by_event_id(event_id)
            if winner is not None and winner.is_success:
                return IdempotencyCheckResult(
                    should_process=False,
                    is_new_event=False,
                    reason=REASON_ALREADY_PROCESSED,
                )
            logger.info("Event %s is already being processed by another delivery", event_id)
            return IdempotencyCheckResult(
                should_process=False, is_new_event=False, reason=REASON_IN_FLIGHT
            )

        logger.info("Recorded new gateway event %s (%s)", event_id, event_type)
        return IdempotencyCheckResult(should_process=True, is_new_event=True, reason=REASON_NEW)

    def _evaluate(self, event: ProcessedWebhookEvent, now: datetime) -> IdempotencyCheckResult:
        retry_count = int(event.retry_count)
        if event.is_success:
            logger.info("Event %s already processed successfully - skipping", event.event_id)
            return IdempotencyCheckResult(
                should_process=False,
                is_new_event=False,
                reason=REASON_ALREADY_PROCESSED,
                retry_count=retry_count,
            )

        if event.is_permanently_failed or retry_count >= event.max_retries:
            logger.warning(
                "Event %s permanently failed after %d attempts - skipping",
                event.event_id,
                retry_count,
            )
            return IdempotencyCheckResult(
                should_process=False,
                is_new_event=False,
                reason=REASON_PERMANENTLY_FAILED,
                retry_count=retry_count,
            )

        if event.should_retry:
            logger.info(
                "Event %s retry attempt %d/%d",
                event.event_id,
                retry_count + 1,
                event.max_retries,
            )
            event.last_attempt_at = now  # type: ignore[assignment]
            self.repo.save(event)
            return IdempotencyCheckResult(
                should_process=True,
                is_new_event=False,
                reason=REASON_RETRY,
                retry_count=retry_count,
            )

        return IdempotencyCheckResult(  # pragma: no cover
            should_process=True,
            is_new_event=False,
            reason=REASON_UNEXPECTED,
            retry_count=retry_count,
        )

    def mark_as_processed(
        self,
        event_id: str,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Record a successful processing attempt. Never raises."""
        try:
            event = self.repo.get_by_event_id(event_id)
            if event is None:
                logger.warning("Cannot mark unknown event %s as processed", event_id)
                return
            if event.is_success:
                logger.info("Event %s already marked as processed", event_id)
                return
            event.is_success = True  # type: ignore[assignment]
            event.is_permanently_failed = False  # type: ignore[assignment]
            event.processed_at = now or datetime.now(UTC)  # type: ignore[assignment]
            event.processing_duration_ms = duration_ms  # type: ignore[assignment]
            event.error_message = None  # type: ignore[assignment]
            if metadata is not None:
                event.metadata_ = (  # type: ignore[assignment]
                    metadata if isinstance(metadata, str) else json.dumps(metadata, default=str)
                )
            self.repo.save(event)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to mark event %s as processed", event_id)

    def mark_as_failed(
        self,
        event_id: str,
        error: str,
        max_retries: int | None = None,
        now: datetime | None = None,
    ) -> None:
        """Record a failed processing attempt. Never raises."""
        try:
            event = self.repo.get_by_event_id(event_id)
            if event is None:
                logger.warning("Cannot mark unknown event %s as failed", event_id)
                return
            if event.is_success:
                logger.warning("Ignoring failure for already processed event %s", event_id)
                return
            if max_retries is not None:
                event.max_retries = max_retries  # type: ignore[assignment]
            event.retry_count = min(  # type: ignore[assignment]
                int(event.retry_count) + 1, int(event.max_retries)
            )
            event.error_message = error[:2000]  # type: ignore[assignment]
            event.last_attempt_at = now or datetime.now(UTC)  # type: ignore[assignment]
            if event.retry_count >= event.max_retries:
                event.is_permanently_failed = True  # type: ignore[assignment]
                logger.error(
                    "Event %s permanently failed after %d attempts: %s",
                    event_id,
                    event.retry_count,
                    error,
                )
            else:
                logger.warning(
                    "Event %s failed (attempt %d/%d): %s",
                    event_id,
                    event.retry_count,
                    event.max_retries,
                    error,
                )
            self.repo.save(event)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to mark event %s as failed", event_id)

    def get_event(self, event_id: str) -> ProcessedWebhookEvent | None:
        return self.repo.get_by_event_id(event_id)

    def get_processing_stats(self, hours: int = 24, now: datetime | None = None) -> ProcessingStats:
        now = now or datetime.now(UTC)
        events = self.repo.get_received_since(now - timedelta(hours=hours))
        stats = ProcessingStats(window_hours=hours, total_events=len(events))
        durations = []
        for event in events:
            if event.is_success:
                stats.successful_events += 1
                if event.processing_duration_ms is not None:
                    durations.append(int(event.processing_duration_ms))
            else:
                stats.failed_events += 1
                if event.is_permanently_failed:
                    stats.permanently_failed_events += 1
                elif event.should_retry:
                    stats.retryable_events += 1
        if durations:
            stats.average_processing_ms = sum(durations) / len(durations)
        stats.events_by_type = dict(Counter(str(e.event_type) for e in events))
        return stats
