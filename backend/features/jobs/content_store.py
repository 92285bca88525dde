"""
Content completion records.

The generated content itself lives elsewhere; this table only keeps the last
successful generation time and a small summary per (shop, job_type). It is
written independently of generation_jobs, which is why status reads reconcile
the two.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import insert, update
from sqlalchemy.orm import Session

from backend.core.database import content_records, session_scope
from backend.core.timeutils import utc_now


def record_generation(
    shop: str,
    job_type: str,
    *,
    summary: Optional[Dict[str, Any]] = None,
    generated_at: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> datetime:
    """Upsert the last successful generation for a slot."""
    stamp = generated_at or utc_now()
    with session_scope(session) as db:
        result = db.execute(
            update(content_records)
            .where(content_records.c.shop == shop, content_records.c.job_type == job_type)
            .values(generated_at=stamp, summary=summary or {})
        )
        if result.rowcount == 0:
            db.execute(
                insert(content_records).values(
                    shop=shop, job_type=job_type, generated_at=stamp, summary=summary or {}
                )
            )
    return stamp

