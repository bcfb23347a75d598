"""Tests for the error envelope format.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <any>},
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tourpass.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from tourpass.api.schemas import Envelope, ErrorBody
from tourpass.service.errors import ConflictError, RateLimitedError
from tourpass.storage.errors import ConstraintViolation


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def _conflict():
        raise ConflictError("email already registered", detail={"field": "email"})

    @app.get("/constraint")
    async def _constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/limited")
    async def _limited():
        raise RateLimitedError("slow down")

    @app.get("/boom")
    async def _boom():
        raise RuntimeError("unexpected")

    @app.get("/items/{item_id}")
    async def _item(item_id: int):
        return {"item_id": item_id}

    return TestClient(app, raise_server_exceptions=False)


class TestErrorBody:
    """ErrorBody only accepts the stable error codes."""

    def test_known_code(self):
        body = ErrorBody(code="unauthorized", message="invalid token")
        assert body.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_envelope_generates_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id

    def test_status_codes_map_to_stable_codes(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _error_code_for_status(429) == "rate_limited"
        assert _error_code_for_status(418) == "server_error"


class TestHandlers:
    """Exceptions raised by routes come back as envelopes."""

    def _assert_envelope(self, response, status_code, code):
        assert response.status_code == status_code
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["request_id"]
        return body

    def test_service_error(self, client):
        body = self._assert_envelope(client.get("/conflict"), 409, "conflict")
        assert body["error"]["details"] == {"field": "email"}

    def test_constraint_violation(self, client):
        self._assert_envelope(client.get("/constraint"), 409, "conflict")

    def test_rate_limited(self, client):
        self._assert_envelope(client.get("/limited"), 429, "rate_limited")

    def test_request_validation_is_400(self, client):
        body = self._assert_envelope(client.get("/items/not-a-number"), 400, "validation_error")
        assert body["error"]["details"]["errors"]
        assert "input" not in body["error"]["details"]["errors"][0]

    def test_unknown_route(self, client):
        self._assert_envelope(client.get("/missing"), 404, "not_found")

    def test_unhandled_exception_is_server_error(self, client):
        body = self._assert_envelope(client.get("/boom"), 500, "server_error")
        assert "unexpected" not in body["error"]["message"]
