"""Tests for normalized error responses."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.core.errors import (
    AppError,
    InsufficientFundsError,
    app_error_handler,
    unhandled_exception_handler,
)
from backend.core.middleware.request_id import RequestIdMiddleware
from backend.main import app


def test_validation_error_has_standard_shape():
    client = TestClient(app)
    resp = client.get("/api/billing/tokens/balance", params={"shop": "not a shop"})
    assert resp.status_code == 400
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "invalid_shop"
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_not_found_error_normalized():
    client = TestClient(app)
    resp = client.get("/api/billing/info", params={"shop": "ghost.myshopify.com"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["error"]["code"] == "subscription_not_found"
    assert body["error"]["request_id"] == resp.headers.get("x-request-id")


def test_unknown_route_uses_http_handler():
    client = TestClient(app)
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def _small_app():
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(AppError, app_error_handler)
    test_app.add_exception_handler(Exception, unhandled_exception_handler)

    @test_app.get("/broke")
    async def broke():
        raise RuntimeError("secret internals")

    @test_app.get("/poor")
    async def poor():
        raise InsufficientFundsError("demo.myshopify.com", required=500, available=120)

    return test_app


def test_payment_payload_is_flattened():
    client = TestClient(_small_app())
    resp = client.get("/poor")
    assert resp.status_code == 402
    body = resp.json()
    assert body["error"]["code"] == "INSUFFICIENT_TOKENS"
    assert body["requiresPurchase"] is True
    assert body["tokensNeeded"] == 380


def test_unhandled_error_hides_details():
    client = TestClient(_small_app(), raise_server_exceptions=False)
    resp = client.get("/broke", headers={"X-Request-Id": "rid-500"})
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal_error"
    assert body["error"]["message"] == "Unexpected error"
    assert resp.headers.get("x-request-id")
    assert "secret internals" not in resp.text
