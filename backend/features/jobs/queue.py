"""
backend/features/jobs/queue.py

Entitlement-gated job enqueue.

Flow:
1. Entitlement check (402 for plan/trial/token denials; content
   preconditions come back as a non-queued result)
2. One transaction: claim the (shop, job_type) slot and debit the tokens.
   A failed debit rolls the claim back, so no job is ever queued unpaid.
3. After commit, hand the job to the worker queue. If that fails, the job
   is marked failed and the debit is refunded.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Protocol
import logging

from backend.core.database import get_db_session
from backend.core.errors import InsufficientFundsError, JobDispatchError, ValidationError
from backend.core.timeutils import utc_now
from backend.features.entitlements.service import (
    EntitlementReason,
    FeatureEntitlementDecision,
    check_entitlement,
    entitlement_error_payload,
    raise_for_decision,
)
from backend.features.jobs import tracker
from backend.features.plans.feature_table import Feature
from backend.features.shops.service import require_shop
from backend.features.tokens import ledger


logger = logging.getLogger("aiseo")

JOB_FEATURES: Dict[str, Feature] = {
    "sitemap": Feature.AI_SITEMAP,
    "schema": Feature.SCHEMA_DATA,
}


class JobDispatcher(Protocol):
    """Hands a claimed job to the worker pool."""

    def dispatch(self, shop: str, job_type: str, version: int) -> str:
        """Return the worker-side job id."""
        ...


@dataclass(frozen=True)
class EnqueueResult:
    queued: bool
    job_type: str
    status: str
    version: int = 0
    queue_position: Optional[int] = None
    estimated_seconds: Optional[int] = None
    tokens_debited: int = 0
    error_code: Optional[str] = None
    message: Optional[str] = None
    can_proceed_anyway: bool = False
    decision: Optional[FeatureEntitlementDecision] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "queued": self.queued,
            "jobType": self.job_type,
            "status": self.status,
            "version": self.version,
            "queue": {"position": self.queue_position, "estimatedTime": self.estimated_seconds},
            "tokensDebited": self.tokens_debited,
        }
        if not self.queued:
            body.update(
                error=self.error_code,
                errorMessage=self.message,
                canProceedAnyway=self.can_proceed_anyway,
            )
        return body


def parse_job_type(value: Optional[str]) -> str:
    job_type = (value or "").strip().lower()
    if job_type not in JOB_FEATURES:
        raise ValidationError(f"Unknown job type: {value!r}", code="invalid_job_type")
    return job_type


def job_reference(job_type: str, version: int) -> str:
    """Ledger reference tying a debit (and its refund) to one slot version."""
    return f"job:{job_type}:v{version}"


def enqueue_job(
    shop: str,
    job_type: str,
    *,
    dispatcher: JobDispatcher,
    force_basic_seo: bool = False,
    now: Optional[datetime] = None,
) -> EnqueueResult:
    """
    Queue a generation job for ``shop``.

    Raises:
        NotFoundError: shop not installed
        EntitlementDeniedError: plan, trial or token denial (402)
        JobInProgressError: the slot already holds a live job (409)
        InsufficientFundsError: balance dropped below the cost since the check (402)
        JobDispatchError: the worker queue rejected the job (refunded)
    """
    job_type = parse_job_type(job_type)
    require_shop(shop)
    current = now or utc_now()

    decision = check_entitlement(
        shop, JOB_FEATURES[job_type], force_basic_seo=force_basic_seo, now=current
    )
    raise_for_decision(decision)
    if not decision.allowed:
        view = tracker.get_status(shop, job_type)
        return EnqueueResult(
            queued=False,
            job_type=job_type,
            status=view.status,
            version=view.version,
            error_code=decision.error_code,
            message=decision.message,
            can_proceed_anyway=decision.can_proceed_anyway,
            decision=decision,
        )

    tokens = decision.tokens_required
    try:
        with get_db_session() as session:
            version = tracker.claim_slot(
                session,
                shop,
                job_type,
                tokens_debited=tokens,
                force_basic_seo=force_basic_seo,
                now=current,
            )
            if tokens > 0:
                ledger.debit(
                    shop,
                    tokens,
                    reason=f"generation_{job_type}",
                    reference=job_reference(job_type, version),
                    metadata={"workload": decision.workload_size},
                    session=session,
                )
    except InsufficientFundsError as e:
        # The balance dropped after the check; answer with the same 402 body a denial gets
        denied = replace(
            decision,
            allowed=False,
            reason=EntitlementReason.DENIED_TOKENS,
            tokens_available=e.available,
        )
        raise InsufficientFundsError(
            shop, required=e.required, available=e.available, payload=entitlement_error_payload(denied)
        ) from e

    logger.info(
        "[jobs] queued",
        extra={"shop": shop, "job_type": job_type, "version": version, "tokens": tokens},
    )

    try:
        dispatcher.dispatch(shop, job_type, version)
    except Exception as e:
        logger.error(
            "[jobs] dispatch failed",
            exc_info=True,
            extra={"shop": shop, "job_type": job_type, "version": version},
        )
        with get_db_session() as session:
            tracker.mark_failed(
                shop, job_type, version,
                code=tracker.DISPATCH_FAILED,
                message=f"Could not queue job: {e}",
                session=session,
            )
            if tokens > 0:
                ledger.refund(shop, tokens, reference=job_reference(job_type, version), session=session)
        raise JobDispatchError("Could not queue the generation job. Tokens were refunded.") from e

    view = tracker.get_status(shop, job_type)
    return EnqueueResult(
        queued=True,
        job_type=job_type,
        status=view.status,
        version=view.version,
        queue_position=view.queue_position,
        estimated_seconds=view.estimated_seconds,
        tokens_debited=tokens,
        decision=decision,
    )
