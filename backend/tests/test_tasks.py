"""Tests for background task enqueueing."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.tasks import (
    billing_job_id,
    enqueue_drift_reconciliation,
    enqueue_subscription_billing,
    enqueue_task,
    get_redis_pool,
)


@pytest.fixture
def mock_pool():
    pool = MagicMock()
    pool.enqueue_job = AsyncMock(return_value=MagicMock(job_id="job-123"))
    pool.close = AsyncMock()
    return pool


class TestTasks:
    @pytest.mark.asyncio
    async def test_get_redis_pool(self):
        mock_pool = MagicMock()
        with patch("app.tasks.create_pool", new_callable=AsyncMock) as mock_create:
            mock_create.return_value = mock_pool
            assert await get_redis_pool() == mock_pool
            mock_create.assert_called_once()

    @pytest.mark.asyncio
    async def test_enqueue_task_closes_pool(self, mock_pool):
        with patch("app.tasks.get_redis_pool", new_callable=AsyncMock, return_value=mock_pool):
            job = await enqueue_task("my_task", "arg1", kwarg1="value1")

        assert job.job_id == "job-123"
        mock_pool.enqueue_job.assert_called_once_with("my_task", "arg1", kwarg1="value1")
        mock_pool.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_enqueue_task_closes_pool_on_error(self, mock_pool):
        mock_pool.enqueue_job.side_effect = ConnectionError("redis down")
        with (
            patch("app.tasks.get_redis_pool", new_callable=AsyncMock, return_value=mock_pool),
            pytest.raises(ConnectionError),
        ):
            await enqueue_task("my_task")
        mock_pool.close.assert_called_once()

    def test_billing_job_id_is_stable_per_due_date(self):
        assert billing_job_id("abc", "2026-03-15") == "bill:abc:2026-03-15"
        assert billing_job_id("abc", "2026-03-15") != billing_job_id("abc", "2026-04-15")

    @pytest.mark.asyncio
    async def test_enqueue_subscription_billing_dedupes(self, mock_pool):
        with patch("app.tasks.get_redis_pool", new_callable=AsyncMock, return_value=mock_pool):
            await enqueue_subscription_billing("abc", "2026-03-15")
        mock_pool.enqueue_job.assert_called_once_with(
            "bill_subscription_task", "abc", _job_id="bill:abc:2026-03-15"
        )

    @pytest.mark.asyncio
    async def test_enqueue_drift_reconciliation(self, mock_pool):
        with patch("app.tasks.get_redis_pool", new_callable=AsyncMock, return_value=mock_pool):
            await enqueue_drift_reconciliation()
        mock_pool.enqueue_job.assert_called_once_with("reconcile_drift_task")
