"""Tests for the gateway event idempotency ledger."""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.models.processed_webhook_event import ProcessedWebhookEvent
from app.repositories.webhook_event_repository import WebhookEventRepository
from app.services.webhook_idempotency import (
    REASON_ALREADY_PROCESSED,
    REASON_CHECK_FAILED,
    REASON_IN_FLIGHT,
    REASON_NEW,
    REASON_PERMANENTLY_FAILED,
    REASON_RETRY,
    WebhookIdempotencyService,
)
from tests.conftest import NOW


@pytest.fixture
def service(db_session):
    return WebhookIdempotencyService(db_session)


class TestProcessedWebhookEventModel:
    def test_should_retry(self):
        event = ProcessedWebhookEvent(is_success=False, retry_count=1, max_retries=3)
        assert event.should_retry

    def test_no_retry_after_success(self):
        event = ProcessedWebhookEvent(is_success=True, retry_count=0, max_retries=3)
        assert not event.should_retry

    def test_no_retry_at_ceiling(self):
        event = ProcessedWebhookEvent(is_success=False, retry_count=3, max_retries=3)
        assert not event.should_retry


class TestCheckIdempotency:
    def test_first_delivery_is_processed(self, service, db_session):
        result = service.check_idempotency("evt_1", "invoice.payment_failed", NOW)
        assert result.should_process
        assert result.is_new_event
        assert result.reason == REASON_NEW
        assert db_session.query(ProcessedWebhookEvent).count() == 1

    def test_duplicate_after_success_is_skipped(self, service):
        service.check_idempotency("evt_1", "invoice.payment_failed", NOW)
        service.mark_as_processed("evt_1", duration_ms=12, now=NOW)

        result = service.check_idempotency("evt_1", "invoice.payment_failed", NOW)
        assert not result.should_process
        assert result.reason == REASON_ALREADY_PROCESSED

    def test_failed_event_is_retried(self, service):
        service.check_idempotency("evt_1", "invoice.payment_failed", NOW)
        service.mark_as_failed("evt_1", "handler crashed", now=NOW)

        result = service.check_idempotency("evt_1", "invoice.payment_failed", NOW)
        assert result.should_process
        assert not result.is_new_event
        assert result.reason == REASON_RETRY
        assert result.retry_count == 1

    def test_retry_ceiling(self, service):
        for attempt in range(3):
            result = service.check_idempotency("evt_1", "invoice.payment_failed", NOW)
            assert result.should_process, f"attempt {attempt} should run"
            service.mark_as_failed("evt_1", f"failure {attempt}", now=NOW)

        event = service.get_event("evt_1")
        assert event.is_permanently_failed
        assert event.retry_count == 3

        result = service.check_idempotency("evt_1", "invoice.payment_failed", NOW)
        assert not result.should_process
        assert result.reason == REASON_PERMANENTLY_FAILED

    def test_concurrent_first_delivery_loses_insert(self, service, db_session):
        WebhookIdempotencyService(db_session).check_idempotency("evt_1", "t", NOW)

        original = WebhookEventRepository.get_by_event_id
        calls = {"n": 0}

        def racing_lookup(repo, event_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None  # the rival's row is not visible yet
            return original(repo, event_id)

        with patch.object(WebhookEventRepository, "get_by_event_id", racing_lookup):
            result = service.check_idempotency("evt_1", "t", NOW)

        assert not result.should_process
        assert result.reason == REASON_IN_FLIGHT
        assert db_session.query(ProcessedWebhookEvent).count() == 1

    def test_fails_open_when_ledger_unavailable(self, service):
        with patch.object(
            WebhookEventRepository, "get_by_event_id", side_effect=SQLAlchemyError("db down")
        ):
            result = service.check_idempotency("evt_1", "t", NOW)
        assert result.should_process
        assert result.reason == REASON_CHECK_FAILED

    def test_fails_open_on_unexpected_error(self, service, db_session):
        with patch.object(
            WebhookEventRepository, "get_by_event_id", side_effect=RuntimeError("driver blew up")
        ):
            result = service.check_idempotency("evt_1", "t", NOW)
        assert result.should_process
        assert result.reason == REASON_CHECK_FAILED
        # The session stays usable after the failed check.
        assert db_session.query(ProcessedWebhookEvent).count() == 0


class TestMarking:
    def test_mark_as_processed_records_metadata(self, service):
        service.check_idempotency("evt_1", "t", NOW)
        service.mark_as_processed("evt_1", duration_ms=40, metadata={"result": "ok"}, now=NOW)

        event = service.get_event("evt_1")
        assert event.is_success
        assert event.processing_duration_ms == 40
        assert json.loads(event.metadata_) == {"result": "ok"}

    def test_success_is_not_overwritten_by_failure(self, service):
        service.check_idempotency("evt_1", "t", NOW)
        service.mark_as_processed("evt_1", now=NOW)
        service.mark_as_failed("evt_1", "late failure", now=NOW)

        event = service.get_event("evt_1")
        assert event.is_success
        assert event.error_message is None
        assert event.retry_count == 0

    def test_error_message_truncated(self, service):
        service.check_idempotency("evt_1", "t", NOW)
        service.mark_as_failed("evt_1", "x" * 5000, now=NOW)
        assert len(service.get_event("evt_1").error_message) == 2000

    def test_max_retries_override(self, service):
        service.check_idempotency("evt_1", "t", NOW)
        service.mark_as_failed("evt_1", "fatal", max_retries=1, now=NOW)
        assert service.get_event("evt_1").is_permanently_failed

    def test_unknown_event_ids_are_ignored(self, service, db_session):
        service.mark_as_processed("missing", now=NOW)
        service.mark_as_failed("missing", "error", now=NOW)
        assert db_session.query(ProcessedWebhookEvent).count() == 0

    def test_marking_never_raises(self, service):
        with patch.object(
            WebhookEventRepository, "get_by_event_id", side_effect=SQLAlchemyError("db down")
        ):
            service.mark_as_processed("evt_1", now=NOW)
            service.mark_as_failed("evt_1", "error", now=NOW)


class TestProcessingStats:
    def test_stats_window(self, service):
        service.check_idempotency("evt_ok", "invoice.payment_succeeded", NOW)
        service.mark_as_processed("evt_ok", duration_ms=10, now=NOW)
        service.check_idempotency("evt_retry", "invoice.payment_failed", NOW)
        service.mark_as_failed("evt_retry", "boom", now=NOW)
        service.check_idempotency("evt_dead", "invoice.payment_failed", NOW)
        service.mark_as_failed("evt_dead", "boom", max_retries=1, now=NOW)
        service.check_idempotency("evt_old", "invoice.payment_failed", NOW - timedelta(days=3))

        stats = service.get_processing_stats(hours=24, now=NOW)

        assert stats.total_events == 3
        assert stats.successful_events == 1
        assert stats.failed_events == 2
        assert stats.permanently_failed_events == 1
        assert stats.retryable_events == 1
        assert stats.average_processing_ms == 10
        assert stats.events_by_type == {
            "invoice.payment_succeeded": 1,
            "invoice.payment_failed": 2,
        }
