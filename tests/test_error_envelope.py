"""Error responses share one envelope shape:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from ojekkampus import app as app_module
from ojekkampus.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from ojekkampus.api.schemas import Envelope, ErrorBody


@pytest.fixture
def client():
    return TestClient(app_module.app, raise_server_exceptions=False)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid refresh token")
        assert error.details is None

    def test_details_accept_lists(self):
        error = ErrorBody(
            code="validation_error",
            message="invalid request",
            details=[{"field": "phone_number", "message": "invalid phone number"}],
        )
        assert len(error.details) == 1

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_timeout_code_allowed(self):
        assert ErrorBody(code="timeout", message="login timed out").code == "timeout"


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok", data={})
        second = Envelope(status="ok", data={})
        assert first.request_id != second.request_id

    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="fine")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (504, "timeout"),
            (418, "server_error"),
        ],
    )
    def test_code_for_status(self, status, code):
        assert _error_code_for_status(status) == code

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")

    def test_error_response_shape(self):
        response = _error_response(409, "email already registered", headers={"X-Test": "1"})
        body = json.loads(response.body)
        assert response.status_code == 409
        assert response.headers["X-Test"] == "1"
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "email already registered",
            "details": None,
        }
        assert body["request_id"]


class TestHandlers:
    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/nope")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_wrong_method_uses_envelope(self, client):
        response = client.get("/api/auth/login")
        assert response.status_code == 405
        assert response.json()["status"] == "error"

    def test_non_json_body(self, client):
        response = client.post(
            "/api/auth/login",
            content=b"phone=1",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid request"

    def test_unhandled_exception_is_generic(self, client, monkeypatch):
        from ojekkampus.service.runtime import get_runtime

        def explode(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(get_runtime().store, "get_user_by_phone", explode)
        response = client.post(
            "/api/auth/login", json={"phone_number": "081234567890", "password": "rahasia123"}
        )

        assert response.status_code == 500
        error = response.json()["error"]
        assert error == {"code": "server_error", "message": "internal server error", "details": None}

    def test_service_timeout_maps_to_504(self, client, monkeypatch):
        from ojekkampus.service.errors import ServiceTimeoutError
        from ojekkampus.service.runtime import get_runtime

        async def slow_login(*args, **kwargs):
            raise ServiceTimeoutError(
                "login timed out", detail={"operation": "login", "timeout": 5.0}
            )

        monkeypatch.setattr(get_runtime().sessions, "login", slow_login)
        response = client.post(
            "/api/auth/login", json={"phone_number": "081234567890", "password": "rahasia123"}
        )

        assert response.status_code == 504
        error = response.json()["error"]
        assert error["code"] == "timeout"
        assert error["details"] == {"operation": "login", "timeout": 5.0}
