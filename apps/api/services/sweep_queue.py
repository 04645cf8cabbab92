"""Durable storage sweep queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


SWEEP_QUEUE_NAME = "sweep_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_sweep_queue() -> Queue:
    """Return the configured storage sweep queue."""
    return Queue(
        name=SWEEP_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def sweep_job_id(now: Optional[datetime] = None) -> str:
    """One job id per hour so duplicate schedule ticks collapse."""
    current = now or datetime.now(timezone.utc)
    return f"sweep:{current.strftime('%Y%m%d%H')}"


def enqueue_storage_sweep_job(now: Optional[datetime] = None) -> Job:
    """Enqueue a storage sweep run with retry/timeouts for durability."""
    queue = get_sweep_queue()
    job_id = sweep_job_id(now)
    if Job.exists(job_id, connection=queue.connection):
        return Job.fetch(job_id, connection=queue.connection)
    return queue.enqueue(
        "services.converter.process_storage_sweep_job",
        job_id=job_id,
        retry=Retry(max=3, interval=[60, 300, 900]),
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )
