from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from app.core.config import settings

# Redis connection settings
redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)


async def get_redis_pool() -> ArqRedis:
    """Get or create Redis pool for arq"""
    return await create_pool(redis_settings)


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job | None:
    """Enqueue a task to the arq worker.

    Returns None when a job with the same ``_job_id`` is already queued.
    """
    pool = await get_redis_pool()
    try:
        return await pool.enqueue_job(task_name, *args, **kwargs)
    finally:
        await pool.close()


def billing_job_id(subscription_id: str, due: str) -> str:
    """Job id that lets a subscription be queued for billing once per due date."""
    return f"bill:{subscription_id}:{due}"


async def enqueue_subscription_billing(subscription_id: str, due: str) -> Job | None:
    return await enqueue_task(
        "bill_subscription_task", subscription_id, _job_id=billing_job_id(subscription_id, due)
    )


async def enqueue_drift_reconciliation() -> Job | None:
    return await enqueue_task("reconcile_drift_task")
