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


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job:
    """
    Enqueue a task to the arq worker.

    Args:
        task_name: Name of the task function
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task

    Returns:
        Job object from arq
    """
    pool = await get_redis_pool()
    try:
        job = await pool.enqueue_job(task_name, *args, **kwargs)
        return job  # type: ignore[return-value]
    finally:
        await pool.close()


async def enqueue_retry_sweep() -> Job:
    """Run the payment retry sweep now instead of waiting for the cron."""
    return await enqueue_task("process_due_failures_task", trigger="manual")


async def enqueue_dunning_sweep() -> Job:
    return await enqueue_task("process_due_communications_task", trigger="manual")


async def enqueue_grace_period_check() -> Job:
    return await enqueue_task("process_expired_grace_periods_task", trigger="manual")


async def enqueue_daily_metrics(metrics_date: str) -> Job:
    """Regenerate recovery metrics for an ISO date, e.g. after a backfill."""
    return await enqueue_task("generate_daily_metrics_task", metrics_date, trigger="manual")
