"""Generation job worker.

Usage:
    python -m backend.workers.generation_worker --type sitemap
    python -m backend.workers.generation_worker --type schema --burst

Run exactly one process per job type: the single worker is the global slot
for that type, and jobs from all shops are served FIFO.
"""
from __future__ import annotations

import argparse
import logging
from typing import Any, Dict, Optional

from redis import Redis
from rq import Queue, Worker

from backend.core.config import settings
from backend.core.logging import configure_logging
from backend.features.generation.backend import Generator, get_generator
from backend.features.jobs import tracker
from backend.features.jobs.content_store import record_generation
from backend.features.jobs.queue import JOB_FEATURES
from backend.queue_client import queue_name


logger = logging.getLogger("aiseo")


def run_generation_job(
    shop: str,
    job_type: str,
    version: int,
    *,
    generator: Optional[Generator] = None,
) -> Dict[str, Any]:
    """
    Run one claimed job version through processing to a terminal state.

    A pickup whose version no longer matches the slot (superseded, or the
    shop was uninstalled) is skipped without touching state. Generation
    errors are recorded on the job and re-raised so RQ keeps the failure; so
    is an abort (SystemExit, KeyboardInterrupt) raised while generating.
    """
    started = tracker.mark_processing(shop, job_type, version)
    if started is None:
        return {"skipped": True, "shop": shop, "jobType": job_type, "version": version}

    job = tracker.get_job(shop, job_type) or {}
    options = {"forceBasicSeo": bool(job.get("force_basic_seo"))}
    generate = generator or get_generator(job_type)

    try:
        summary = generate(shop, job_type, options)
    except Exception as e:
        tracker.mark_failed(
            shop, job_type, started,
            code=tracker.GENERATION_FAILED,
            message=str(e) or e.__class__.__name__,
        )
        logger.error(
            "[worker] generation failed",
            exc_info=True,
            extra={"shop": shop, "job_type": job_type, "version": started},
        )
        raise
    except BaseException as e:
        # Shutdown or SystemExit inside the work horse
        tracker.mark_failed(
            shop, job_type, started,
            code=tracker.WORKER_ABORTED,
            message=f"Worker stopped: {e.__class__.__name__}",
        )
        logger.error(
            "[worker] generation aborted",
            extra={"shop": shop, "job_type": job_type, "version": started, "error_code": tracker.WORKER_ABORTED},
        )
        raise

    summary = summary or {}
    record_generation(shop, job_type, summary=summary)
    finished = tracker.mark_completed(shop, job_type, started, summary=summary)
    logger.info(
        "[worker] generation completed",
        extra={"shop": shop, "job_type": job_type, "version": finished, "event_type": "job.completed"},
    )
    return {"skipped": False, "shop": shop, "jobType": job_type, "version": finished, "summary": summary}


def on_job_failure(job, connection, exc_type, exc_value, traceback) -> None:
    """
    RQ failure callback for generation jobs.

    Fails the claimed slot version when the job ended without recording an
    outcome (the work horse died or timed out). A slot the job already moved
    to a terminal state is left alone.
    """
    shop, job_type, version = job.args[:3]
    failed = tracker.fail_claim(
        shop, job_type, version,
        code=tracker.WORKER_ABORTED,
        message=f"Worker stopped: {getattr(exc_type, '__name__', exc_type)}",
    )
    if failed is not None:
        logger.warning(
            "[worker] job failed outside the worker",
            extra={"shop": shop, "job_type": job_type, "version": failed},
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Generation job worker")
    parser.add_argument("--type", dest="job_type", required=True, choices=sorted(JOB_FEATURES))
    parser.add_argument("--burst", action="store_true", help="Drain the queue and exit")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    connection = Redis.from_url(settings.REDIS_URL)
    queue = Queue(queue_name(args.job_type), connection=connection)
    worker = Worker([queue], connection=connection)
    logger.info(f"[worker] listening on {queue.name}")
    worker.work(burst=args.burst)


if __name__ == "__main__":
    main()
