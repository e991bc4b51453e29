"""Tests for structured error responses with request_id."""
from __future__ import annotations

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from pydantic import BaseModel

from bookkeeper.errors import (
    ConcurrentModificationError,
    NotFoundError,
    PaymentProcessorError,
    ValidationError,
    register_error_handlers,
)


class _Body(BaseModel):
    amount: int


@pytest.fixture
def app_with_errors() -> FastAPI:
    app = FastAPI()
    register_error_handlers(app)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id")
        if request_id:
            request.state.request_id = request_id
        return await call_next(request)

    @app.get("/invalid")
    def invalid():
        raise ValidationError("Checkout session is not open")

    @app.get("/missing")
    def missing():
        raise NotFoundError("Invoice not found", details={"invoice_id": "inv_1"})

    @app.get("/conflict")
    def conflict():
        raise ConcurrentModificationError("Invoice was modified concurrently")

    @app.get("/processor")
    def processor():
        raise PaymentProcessorError("Stripe is not configured for test mode")

    @app.post("/body")
    def body(payload: _Body):
        return {"amount": payload.amount}

    @app.get("/crash")
    def crash():
        raise RuntimeError("boom")

    return app


@pytest.fixture
def client(app_with_errors: FastAPI) -> TestClient:
    return TestClient(app_with_errors, raise_server_exceptions=False)


class TestErrorResponses:
    def test_validation_error_envelope(self, client: TestClient) -> None:
        resp = client.get("/invalid")
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["message"] == "Checkout session is not open"
        assert body["details"] is None
        assert body["request_id"] == "unknown"

    def test_not_found_carries_details(self, client: TestClient) -> None:
        resp = client.get("/missing")
        assert resp.status_code == 404
        body = resp.json()
        assert body["code"] == "not_found"
        assert body["details"] == {"invoice_id": "inv_1"}

    def test_concurrent_modification_is_conflict(self, client: TestClient) -> None:
        resp = client.get("/conflict")
        assert resp.status_code == 409
        assert resp.json()["code"] == "concurrent_modification"

    def test_processor_error_is_bad_gateway(self, client: TestClient) -> None:
        resp = client.get("/processor")
        assert resp.status_code == 502
        assert resp.json()["code"] == "payment_processor_error"

    def test_request_validation_error(self, client: TestClient) -> None:
        resp = client.post("/body", json={"amount": "lots"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["message"] == "Validation error"
        assert isinstance(body["details"], list)

    def test_unhandled_exception_does_not_leak(self, client: TestClient) -> None:
        resp = client.get("/crash")
        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "internal_error"
        assert body["message"] == "Internal server error"
        # Should NOT leak exception details
        assert body["details"] is None

    def test_request_id_propagated_from_header(self, client: TestClient) -> None:
        custom_id = "test-request-id-12345"
        resp = client.get("/invalid", headers={"X-Request-Id": custom_id})
        assert resp.json()["request_id"] == custom_id


def test_domain_errors_keep_builtin_bases() -> None:
    assert isinstance(ValidationError("x"), ValueError)
    assert isinstance(NotFoundError("x"), LookupError)


def test_envelope_renders_code_and_details() -> None:
    exc = NotFoundError("Invoice not found", details={"invoice_id": "inv_1"})
    assert exc.envelope("req-9") == {
        "code": "not_found",
        "message": "Invoice not found",
        "details": {"invoice_id": "inv_1"},
        "request_id": "req-9",
    }
