"""
backend/features/jobs/tracker.py

Generation job state per (shop, job_type) slot.

Lifecycle: idle (no row) -> queued -> processing -> completed | failed.
A terminal row is reused by the next enqueue. Every transition is a
conditional UPDATE guarded by status and version, and bumps the version, so
a slot never regresses and stale workers cannot overwrite newer state.

Status reads also reconcile a failure against the content store: a failed
job whose content was generated after the failure is reported as completed.
A processing job whose worker died without recording an outcome is reported
as failed once it is older than JOB_STALE_AFTER_SECONDS, and the next enqueue
takes the slot over.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.core.config import settings
from backend.core.database import content_records, generation_jobs, session_scope, shops
from backend.core.errors import JobInProgressError, NotFoundError
from backend.core.timeutils import as_utc, iso, utc_now


logger = logging.getLogger("aiseo")

IDLE = "idle"
QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

LIVE_STATUSES = (QUEUED, PROCESSING)
TERMINAL_STATUSES = (COMPLETED, FAILED)

GENERATION_FAILED = "GENERATION_FAILED"
DISPATCH_FAILED = "DISPATCH_FAILED"
WORKER_ABORTED = "WORKER_ABORTED"
WORKER_LOST = "WORKER_LOST"

_MESSAGES = {
    IDLE: "No generation has been started",
    QUEUED: "Waiting in queue",
    PROCESSING: "Generation in progress",
    COMPLETED: "Generation completed",
    FAILED: "Generation failed",
}


@dataclass(frozen=True)
class JobStatusView:
    shop: str
    job_type: str
    status: str
    message: str
    version: int = 0
    queue_position: Optional[int] = None
    estimated_seconds: Optional[int] = None
    generated_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    result_summary: Optional[Dict[str, Any]] = None
    reconciled: bool = False

    @property
    def in_progress(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shop": self.shop,
            "jobType": self.job_type,
            "status": self.status,
            "message": self.message,
            "version": self.version,
            "queuePosition": self.queue_position,
            "estimatedSeconds": self.estimated_seconds,
            "generatedAt": iso(self.generated_at),
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "resultSummary": self.result_summary,
            "reconciled": self.reconciled,
        }


def _stale_cutoff(current: datetime) -> datetime:
    return current - timedelta(seconds=settings.JOB_STALE_AFTER_SECONDS)


def _reclaim(session: Session, shop: str, job_type: str, condition, values: Dict[str, Any]) -> Optional[int]:
    result = session.execute(
        update(generation_jobs)
        .where(generation_jobs.c.shop == shop, generation_jobs.c.job_type == job_type, condition)
        .values(version=generation_jobs.c.version + 1, **values)
    )
    if result.rowcount != 1:
        return None
    return session.execute(
        select(generation_jobs.c.version).where(
            generation_jobs.c.shop == shop, generation_jobs.c.job_type == job_type
        )
    ).scalar_one()


def claim_slot(
    session: Session,
    shop: str,
    job_type: str,
    *,
    tokens_debited: int = 0,
    force_basic_seo: bool = False,
    now: Optional[datetime] = None,
) -> int:
    """Move the slot to queued inside the caller's transaction.

    A terminal slot is reused. So is a processing slot whose worker died:
    once it has been processing for JOB_STALE_AFTER_SECONDS it is taken over.

    Returns the new version.

    Raises:
        JobInProgressError: the slot already holds a queued or processing job
    """
    current = now or utc_now()
    values = dict(
        status=QUEUED,
        enqueued_at=current,
        started_at=None,
        completed_at=None,
        failed_at=None,
        tokens_debited=tokens_debited,
        force_basic_seo=force_basic_seo,
        result_summary=None,
        error_code=None,
        error_message=None,
    )
    version = _reclaim(session, shop, job_type, generation_jobs.c.status.in_(TERMINAL_STATUSES), values)
    if version is None:
        abandoned = and_(
            generation_jobs.c.status == PROCESSING,
            generation_jobs.c.started_at < _stale_cutoff(current),
        )
        version = _reclaim(session, shop, job_type, abandoned, values)
        if version is not None:
            logger.warning(
                "[jobs] abandoned job taken over",
                extra={"shop": shop, "job_type": job_type, "version": version},
            )
    if version is not None:
        return version

    live = session.execute(
        select(generation_jobs.c.status, generation_jobs.c.version).where(
            generation_jobs.c.shop == shop, generation_jobs.c.job_type == job_type
        )
    ).fetchone()
    if live is not None:
        raise JobInProgressError(
            f"A {job_type} job is already {live.status} for {shop}",
            payload={"status": live.status, "version": live.version},
        )

    try:
        with session.begin_nested():
            session.execute(
                insert(generation_jobs).values(shop=shop, job_type=job_type, version=1, **values)
            )
    except IntegrityError:
        raise JobInProgressError(f"A {job_type} job is already in progress for {shop}")
    return 1


def get_job(shop: str, job_type: str, *, session: Optional[Session] = None) -> Optional[Dict[str, Any]]:
    with session_scope(session) as db:
        row = db.execute(
            select(generation_jobs).where(
                generation_jobs.c.shop == shop, generation_jobs.c.job_type == job_type
            )
        ).fetchone()
    return dict(row._mapping) if row else None


def _transition(
    session: Session,
    shop: str,
    job_type: str,
    version: int,
    from_statuses,
    values: Dict[str, Any],
) -> Optional[int]:
    result = session.execute(
        update(generation_jobs)
        .where(
            generation_jobs.c.shop == shop,
            generation_jobs.c.job_type == job_type,
            generation_jobs.c.version == version,
            generation_jobs.c.status.in_(from_statuses),
        )
        .values(version=generation_jobs.c.version + 1, **values)
    )
    if result.rowcount != 1:
        return None
    return version + 1


def mark_processing(
    shop: str,
    job_type: str,
    version: int,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Optional[int]:
    """queued -> processing. Returns the new version, or None if the slot moved on."""
    with session_scope(session) as db:
        new_version = _transition(
            db, shop, job_type, version, (QUEUED,),
            {"status": PROCESSING, "started_at": now or utc_now()},
        )
    if new_version is None:
        logger.warning(
            "[jobs] stale pickup ignored",
            extra={"shop": shop, "job_type": job_type, "version": version},
        )
    else:
        logger.info("[jobs] processing", extra={"shop": shop, "job_type": job_type, "version": new_version})
    return new_version


def mark_completed(
    shop: str,
    job_type: str,
    version: int,
    *,
    summary: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Optional[int]:
    """processing -> completed."""
    with session_scope(session) as db:
        new_version = _transition(
            db, shop, job_type, version, (PROCESSING,),
            {"status": COMPLETED, "completed_at": now or utc_now(), "result_summary": summary or {}},
        )
    if new_version is not None:
        logger.info("[jobs] completed", extra={"shop": shop, "job_type": job_type, "version": new_version})
    return new_version


def mark_failed(
    shop: str,
    job_type: str,
    version: int,
    *,
    code: str = GENERATION_FAILED,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Optional[int]:
    """queued|processing -> failed.

    Queued jobs fail only when they never reached a worker (dispatch failure).
    """
    with session_scope(session) as db:
        new_version = _transition(
            db, shop, job_type, version, LIVE_STATUSES,
            {
                "status": FAILED,
                "failed_at": now or utc_now(),
                "error_code": code,
                "error_message": (message or _MESSAGES[FAILED])[:2000],
            },
        )
    if new_version is not None:
        logger.warning(
            "[jobs] failed",
            extra={"shop": shop, "job_type": job_type, "version": new_version, "error_code": code},
        )
    return new_version


def fail_claim(
    shop: str,
    job_type: str,
    claimed_version: int,
    *,
    code: str = WORKER_ABORTED,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """Fail a claim from outside the worker, whichever live state it reached.

    A claim at version N is queued at N or processing at N + 1. A slot that
    already moved past the claim is left alone and None is returned.
    """
    for version in (claimed_version + 1, claimed_version):
        failed = mark_failed(shop, job_type, version, code=code, message=message, now=now)
        if failed is not None:
            return failed
    return None


def _queue_position(session: Session, job_type: str, shop: str, enqueued_at: datetime) -> int:
    ahead = session.execute(
        select(func.count())
        .select_from(generation_jobs)
        .where(
            generation_jobs.c.job_type == job_type,
            generation_jobs.c.status == QUEUED,
            or_(
                generation_jobs.c.enqueued_at < enqueued_at,
                and_(generation_jobs.c.enqueued_at == enqueued_at, generation_jobs.c.shop < shop),
            ),
        )
    ).scalar_one()
    return int(ahead) + 1


def get_status(
    shop: str,
    job_type: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> JobStatusView:
    """Read the slot, its content record and its queue position in one transaction.

    Never mutates state.

    Raises:
        NotFoundError: shop is not installed
    """
    joined = shops.outerjoin(
        generation_jobs,
        and_(generation_jobs.c.shop == shops.c.shop, generation_jobs.c.job_type == job_type),
    ).outerjoin(
        content_records,
        and_(content_records.c.shop == shops.c.shop, content_records.c.job_type == job_type),
    )
    query = (
        select(
            generation_jobs.c.status,
            generation_jobs.c.version,
            generation_jobs.c.enqueued_at,
            generation_jobs.c.started_at,
            generation_jobs.c.failed_at,
            generation_jobs.c.result_summary,
            generation_jobs.c.error_code,
            generation_jobs.c.error_message,
            content_records.c.generated_at,
            content_records.c.summary.label("content_summary"),
        )
        .select_from(joined)
        .where(shops.c.shop == shop)
    )

    with session_scope(session) as db:
        row = db.execute(query).fetchone()
        if row is None:
            raise NotFoundError(f"Shop not installed: {shop}", code="shop_not_found")
        position = None
        if row.status == QUEUED:
            position = _queue_position(db, job_type, shop, row.enqueued_at)

    generated_at = as_utc(row.generated_at)
    content_summary = row.content_summary or None

    if row.status is None:
        return JobStatusView(
            shop=shop,
            job_type=job_type,
            status=IDLE,
            message=_MESSAGES[IDLE],
            generated_at=generated_at,
            result_summary=content_summary,
        )

    status = row.status
    error_code = row.error_code
    error_message = row.error_message
    summary = row.result_summary or content_summary
    reconciled = False
    estimated = None

    if status == QUEUED:
        estimated = position * settings.JOB_SECONDS_PER_SLOT
    elif status == PROCESSING:
        started_at = as_utc(row.started_at)
        if started_at is not None and started_at < _stale_cutoff(now or utc_now()):
            status = FAILED
            error_code = WORKER_LOST
            error_message = "The worker stopped before finishing this job"
        else:
            position = 0
            estimated = settings.JOB_SECONDS_PER_SLOT // 2
    elif status == FAILED:
        failed_at = as_utc(row.failed_at)
        if generated_at is not None and failed_at is not None and generated_at > failed_at:
            status = COMPLETED
            error_code = None
            error_message = None
            summary = content_summary
            reconciled = True
            logger.info(
                "[jobs] failure superseded by newer content",
                extra={"shop": shop, "job_type": job_type, "version": row.version},
            )

    return JobStatusView(
        shop=shop,
        job_type=job_type,
        status=status,
        message=error_message if status == FAILED and error_message else _MESSAGES[status],
        version=row.version,
        queue_position=position,
        estimated_seconds=estimated,
        generated_at=generated_at,
        error_code=error_code,
        error_message=error_message,
        result_summary=summary,
        reconciled=reconciled,
    )
