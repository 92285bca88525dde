"""Error normalization and handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from backend.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        # Flat fields merged into the response body next to "error"
        self.payload = payload or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class JobInProgressError(ConflictError):
    """Raised when a (shop, job_type) slot already holds a live job."""
    code = "job_in_progress"


class PaymentRequiredError(AppError):
    code = "payment_required"
    status_code = 402


class EntitlementDeniedError(PaymentRequiredError):
    """Raised when plan, trial or token checks deny a feature.

    The decision's 402 payload is carried in ``payload``.
    """
    code = "entitlement_denied"

    def __init__(self, message: str, *, decision=None, payload: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, payload=payload, **kwargs)
        self.decision = decision


class InsufficientFundsError(PaymentRequiredError):
    """Raised when a debit finds less than the required balance.

    Callers holding the entitlement decision pass its full 402 payload.
    """
    code = "INSUFFICIENT_TOKENS"

    def __init__(
        self,
        shop: str,
        required: int,
        available: int,
        *,
        payload: Optional[Dict[str, Any]] = None,
        **kwargs,
    ):
        message = f"Insufficient tokens: required {required}, available {available}"
        body = {
            "requiresPurchase": True,
            "tokensRequired": required,
            "tokensAvailable": available,
            "tokensNeeded": max(0, required - available),
        }
        body.update(payload or {})
        super().__init__(message, payload=body, **kwargs)
        self.shop = shop
        self.required = required
        self.available = available


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class JobDispatchError(AppError):
    """The job was claimed and paid for but could not be handed to a worker."""
    code = "DISPATCH_FAILED"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, extra: Optional[Dict[str, Any]] = None) -> dict:
    body = dict(extra or {})
    body.update({
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    })
    return body


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.payload)
    logger = logging.getLogger("aiseo")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("aiseo")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("aiseo")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
