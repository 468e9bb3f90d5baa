import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar
from uuid import UUID

from arq import cron
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal
from app.services.batch_result import BatchResult
from app.services.billing_automation import BillingAutomationService
from app.services.gateway_sync import GatewaySyncService
from app.tasks import billing_job_id, redis_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _with_session(work: Callable[[Session], T]) -> T:
    db = SessionLocal()
    try:
        return work(db)
    finally:
        db.close()


async def _in_thread(work: Callable[[Session], T]) -> T:
    """Run blocking database and gateway work off the event loop.

    Each call gets its own session, so concurrent jobs never share one.
    """
    return await asyncio.to_thread(_with_session, work)


async def process_automated_renewals_task(ctx: dict[str, Any]) -> int:
    """Background task: renew auto-renewing subscriptions due within the lookahead window.

    Runs hourly.
    """
    result: BatchResult = await _in_thread(
        lambda db: BillingAutomationService(db).process_automated_renewals(datetime.now(UTC))
    )
    if result.failed:
        logger.warning("Renewal sweep: %d of %d failed", result.failed, result.total)
    return result.processed


async def process_recurring_billing_task(ctx: dict[str, Any]) -> int:
    """Background task: queue one billing job per subscription that is due.

    The worker's ``max_jobs`` bounds how many of those run at once, which
    keeps gateway traffic under its rate limits.
    """
    due = await _in_thread(
        lambda db: [
            (str(s.id), s.next_billing_date.date().isoformat())
            for s in BillingAutomationService(db).get_due_for_billing(datetime.now(UTC))
        ]
    )
    redis = ctx["redis"]
    queued = 0
    for subscription_id, due_date in due:
        job = await redis.enqueue_job(
            "bill_subscription_task",
            subscription_id,
            _job_id=billing_job_id(subscription_id, due_date),
        )
        if job is not None:
            queued += 1
    if queued:
        logger.info("Queued %d subscriptions for billing", queued)
    return queued


async def bill_subscription_task(ctx: dict[str, Any], subscription_id: str) -> str:
    """Background task: bill a single subscription."""
    outcome = await _in_thread(
        lambda db: BillingAutomationService(db).bill_subscription(
            UUID(subscription_id), datetime.now(UTC)
        )
    )
    logger.info("Billing subscription %s: %s", subscription_id, outcome.action)
    return outcome.action


async def process_expired_subscriptions_task(ctx: dict[str, Any]) -> int:
    result: BatchResult = await _in_thread(
        lambda db: BillingAutomationService(db).process_expired_subscriptions(datetime.now(UTC))
    )
    if result.processed:
        logger.info("Expired %d subscriptions", result.processed)
    return result.processed


async def process_trial_expirations_task(ctx: dict[str, Any]) -> int:
    result: BatchResult = await _in_thread(
        lambda db: BillingAutomationService(db).process_trial_expirations(datetime.now(UTC))
    )
    if result.processed:
        logger.info("Processed %d trial expirations", result.processed)
    return result.processed


async def process_failed_payment_retries_task(ctx: dict[str, Any]) -> int:
    """Background task: retry locally billed charges and suspend after the retry limit.

    Runs daily.
    """
    result: BatchResult = await _in_thread(
        lambda db: BillingAutomationService(db).process_failed_payment_retries(datetime.now(UTC))
    )
    return result.processed


async def reconcile_drift_task(ctx: dict[str, Any]) -> int:
    """Background task: repair subscriptions whose gateway state fell behind."""
    result: BatchResult = await _in_thread(
        lambda db: GatewaySyncService(db).reconcile_drifted_subscriptions()
    )
    return result.processed


class WorkerSettings:
    functions = [
        process_automated_renewals_task,
        process_recurring_billing_task,
        bill_subscription_task,
        process_expired_subscriptions_task,
        process_trial_expirations_task,
        process_failed_payment_retries_task,
        reconcile_drift_task,
    ]
    # Renewals run before billing, and expirations last, so a subscription
    # is only expired once renewal and billing have had their chance.
    cron_jobs = [
        cron(process_automated_renewals_task, minute={0}),
        cron(process_trial_expirations_task, minute={5}),
        cron(process_recurring_billing_task, minute={10}),
        cron(process_expired_subscriptions_task, minute={40}),
        cron(reconcile_drift_task, minute={15, 45}),
        cron(process_failed_payment_retries_task, hour={6}, minute={0}),
    ]
    redis_settings = redis_settings
    max_jobs = settings.BILLING_MAX_CONCURRENCY
    job_timeout = settings.BILLING_JOB_TIMEOUT_SECONDS
