# backend/queue_client.py
"""
RQ dispatcher for generation jobs.

One queue per job type (generation:sitemap, generation:schema). Each queue
is served by a single worker process, which gives one global slot per job
type with FIFO order across shops.
"""
from typing import Dict, Optional

from redis import Redis
from rq import Callback, Queue

from backend.core.config import settings

QUEUE_PREFIX = "generation"
WORKER_FUNCTION = "backend.workers.generation_worker.run_generation_job"
FAILURE_CALLBACK = "backend.workers.generation_worker.on_job_failure"


def queue_name(job_type: str) -> str:
    return f"{QUEUE_PREFIX}:{job_type}"


def rq_job_id(shop: str, job_type: str, version: int) -> str:
    """RQ ids allow letters, digits, dashes and underscores only."""
    return f"{job_type}-{shop.replace('.', '_')}-v{version}"


class RQDispatcher:
    """JobDispatcher backed by Redis + RQ."""

    def __init__(self, redis_url: Optional[str] = None, connection: Optional[Redis] = None):
        self.connection = connection or Redis.from_url(redis_url or settings.REDIS_URL)
        self._queues: Dict[str, Queue] = {}

    def queue_for(self, job_type: str) -> Queue:
        if job_type not in self._queues:
            self._queues[job_type] = Queue(queue_name(job_type), connection=self.connection)
        return self._queues[job_type]

    def dispatch(self, shop: str, job_type: str, version: int) -> str:
        """
        Enqueue the worker call for a claimed slot version.

        Returns:
            RQ job id
        """
        job = self.queue_for(job_type).enqueue(
            WORKER_FUNCTION,
            shop,
            job_type,
            version,
            job_id=rq_job_id(shop, job_type, version),
            job_timeout=settings.JOB_RQ_TIMEOUT,
            result_ttl=3600,  # Keep result for 1 hour
            failure_ttl=86400,
            on_failure=Callback(FAILURE_CALLBACK),
        )
        return job.id
