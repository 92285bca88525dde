"""
Generation job routes.

- GET  /api/schema/status, /api/sitemap/info: job status for the polling client
- POST /api/schema/generate-all, /api/sitemap/generate: entitlement-gated enqueue

Generate answers 202 when queued, 402 for plan/trial/token denials, 409 when
a job is already queued or processing, and 200 with an error code when the
content precondition is not met.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.api.dependencies import get_dispatcher, shop_param
from backend.features.jobs.queue import JobDispatcher, enqueue_job
from backend.features.jobs.tracker import JobStatusView, get_status


class GenerateRequest(BaseModel):
    forceBasicSeo: bool = False


# job type -> (route prefix, status path, generate path, summary key, count key)
_ROUTES = {
    "schema": ("/schema", "/status", "/generate-all", "schema", "schemaCount"),
    "sitemap": ("/sitemap", "/info", "/generate", "sitemap", "productCount"),
}


def status_body(view: JobStatusView, summary_key: str, count_key: str) -> Dict[str, Any]:
    summary = view.result_summary or {}
    body: Dict[str, Any] = {
        "inProgress": view.in_progress,
        "status": view.status,
        "message": view.message,
        "version": view.version,
        "reconciled": view.reconciled,
        "queue": {"position": view.queue_position, "estimatedTime": view.estimated_seconds},
        summary_key: {
            "generatedAt": view.to_dict()["generatedAt"],
            count_key: summary.get(count_key),
        },
    }
    if view.error_code:
        body["error"] = view.error_code
        body["errorMessage"] = view.error_message
    return body


def build_router(job_type: str) -> APIRouter:
    prefix, status_path, generate_path, summary_key, count_key = _ROUTES[job_type]
    router = APIRouter(prefix=prefix, tags=[f"{job_type}-jobs"])

    @router.get(status_path)
    def job_status(shop: str = Depends(shop_param)):
        """Pure read; safe to poll at any rate."""
        return status_body(get_status(shop, job_type), summary_key, count_key)

    @router.post(generate_path)
    def generate(
        request: Optional[GenerateRequest] = None,
        shop: str = Depends(shop_param),
        dispatcher: JobDispatcher = Depends(get_dispatcher),
    ):
        force = bool(request and request.forceBasicSeo)
        result = enqueue_job(shop, job_type, dispatcher=dispatcher, force_basic_seo=force)
        body = result.to_dict()
        if result.queued:
            return JSONResponse(status_code=202, content=body)
        return body

    return router


schema_router = build_router("schema")
sitemap_router = build_router("sitemap")
