"""Pipeline job dispatch: in-process asyncio tasks or a Redis/RQ queue."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from redis import Redis
from rq import Queue
from rq.job import Job

from config import settings

logger = logging.getLogger(__name__)

PIPELINE_QUEUE_NAME = "pipeline_jobs"
PIPELINE_JOB_TIMEOUT_SECONDS = 7200
DISPATCH_MODES = ("inline", "rq")

# Strong references so running pipelines are not garbage collected mid-flight.
_inline_tasks: Set[asyncio.Task] = set()


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_pipeline_queue() -> Queue:
    return Queue(
        name=PIPELINE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=PIPELINE_JOB_TIMEOUT_SECONDS,
    )


def enqueue_pipeline_job(execution_id: str) -> Job:
    """Enqueue one execution. No RQ retry: a re-run would repeat paid provider calls."""
    queue = get_pipeline_queue()
    return queue.enqueue(
        "services.pipeline.process_execution_job",
        execution_id,
        job_id=f"pipeline:{execution_id}",
        job_timeout=PIPELINE_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )


def _start_inline(execution_id: str) -> str:
    from services.pipeline import process_execution_async

    task = asyncio.get_running_loop().create_task(
        process_execution_async(execution_id),
        name=f"pipeline:{execution_id}",
    )
    _inline_tasks.add(task)
    task.add_done_callback(_inline_tasks.discard)
    return f"inline:{execution_id}"


def active_inline_tasks() -> int:
    return sum(1 for task in _inline_tasks if not task.done())


def dispatch_execution(execution_id: str, mode: Optional[str] = None) -> str:
    """Start background processing for an execution and return a job reference."""
    dispatch_mode = (mode or settings.PIPELINE_DISPATCH_MODE or "inline").strip().lower()
    if dispatch_mode not in DISPATCH_MODES:
        raise ValueError(f"Unknown pipeline dispatch mode: {dispatch_mode}")
    if dispatch_mode == "rq":
        job = enqueue_pipeline_job(execution_id)
        logger.info("Enqueued pipeline execution %s as %s", execution_id, job.id)
        return job.id
    job_id = _start_inline(execution_id)
    logger.info("Started inline pipeline task for %s", execution_id)
    return job_id
