"""Tests for normalized error responses."""

from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from metered.core.errors import (
    BatchNotFoundError,
    InsufficientTokensError,
    PersistenceError,
    PlanRestrictedError,
    RateLimitedError,
    install_error_handlers,
)


def _client():
    app = FastAPI()
    install_error_handlers(app)

    @app.get("/billing")
    async def billing():
        raise InsufficientTokensError("Not enough tokens.", recommended_plan="pro")

    @app.get("/restricted")
    async def restricted():
        raise PlanRestrictedError("Basic images only.", recommended_plan="starter")

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("Slow down.", retry_after_seconds=42)

    @app.get("/missing")
    async def missing():
        raise BatchNotFoundError("Batch b1 not found")

    @app.get("/db")
    async def db():
        raise PersistenceError("connection refused by 10.0.0.5")

    @app.get("/http")
    async def http():
        raise HTTPException(status_code=404, detail="nope")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return TestClient(app, raise_server_exceptions=False)


def test_billing_error_carries_recommended_plan():
    resp = _client().get("/billing")

    assert resp.status_code == 402
    body = resp.json()
    assert body["error"]["code"] == "insufficient_tokens"
    assert body["error"]["recommended_plan"] == "pro"
    assert body["error"]["request_id"] == resp.headers.get("x-request-id")
    assert body["detail"] == "Not enough tokens."


def test_rate_limit_sets_retry_after():
    resp = _client().get("/limited")

    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "42"
    assert resp.json()["error"]["retry_after_seconds"] == 42


def test_not_found_code():
    resp = _client().get("/missing")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "batch_not_found"


def test_infrastructure_errors_are_generic():
    resp = _client().get("/db")

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "persistence_error"
    assert "10.0.0.5" not in body["error"]["message"]


def test_http_exception_normalized():
    resp = _client().get("/http")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_unhandled_exception_normalized():
    resp = _client().get("/boom")

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"
    assert resp.headers.get("x-request-id")


def test_plan_restriction_is_forbidden():
    resp = _client().get("/restricted")

    assert resp.status_code == 403
    body = resp.json()
    assert body["error"]["code"] == "plan_restricted"
    assert body["error"]["recommended_plan"] == "starter"
