"""
Tests for restbridge Pydantic models and the structured error shape.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from pydantic import ValidationError

from restbridge.errors import (
    ErrorCode,
    NotFoundError,
    RateLimitError,
    StructuredError,
)
from restbridge.models import (
    ApiRequest,
    ApiResponse,
    BatchError,
    BatchRequest,
    BatchResponse,
    BatchResult,
    Credential,
    PaginatedResult,
)

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestApiRequest:
    """Tests for ApiRequest."""

    def test_defaults(self):
        request = ApiRequest(path="/users/me/profile")
        assert request.method == "GET"
        assert request.cost is None
        assert request.is_write is False

    def test_method_normalized(self):
        assert ApiRequest(method=" post ", path="/x").method == "POST"

    @pytest.mark.parametrize("method,write", [
        ("GET", False),
        ("HEAD", False),
        ("POST", True),
        ("PATCH", True),
        ("DELETE", True),
    ])
    def test_write_inferred_from_method(self, method, write):
        assert ApiRequest(method=method, path="/x").is_write is write

    def test_explicit_write_flag(self):
        assert ApiRequest(method="POST", path="/x", write=False).is_write is False

    def test_cost_must_be_positive(self):
        with pytest.raises(ValidationError):
            ApiRequest(path="/x", cost=0)


class TestApiResponse:
    def test_header_lookup_case_insensitive(self):
        response = ApiResponse(status_code=200, headers={"content-type": "application/json"})
        assert response.header("Content-Type") == "application/json"
        assert response.header("X-Missing", "none") == "none"
        assert response.ok is True


class TestCredential:
    """Tests for Credential."""

    def test_naive_expiry_treated_as_utc(self):
        credential = Credential(access_token="t", expires_at=datetime(2025, 1, 1))
        assert credential.expires_at.tzinfo is timezone.utc

    def test_expires_within(self):
        credential = Credential(access_token="t", expires_at=NOW + timedelta(seconds=60))
        assert credential.expires_within(timedelta(seconds=300), NOW) is True
        assert credential.expires_within(timedelta(seconds=30), NOW) is False

    def test_no_expiry(self):
        credential = Credential(access_token="t")
        assert credential.expires_within(timedelta(days=365), NOW) is False
        assert credential.can_refresh is False

    def test_from_token_response(self):
        credential = Credential.from_token_response(
            {"access_token": "a1", "expires_in": 3599, "scope": "s1 s2", "refresh_token": "r1"},
            now=NOW,
        )
        assert credential.access_token == "a1"
        assert credential.expires_at == NOW + timedelta(seconds=3599)
        assert credential.scopes == {"s1", "s2"}
        assert credential.can_refresh

    def test_from_token_response_keeps_previous(self):
        previous = Credential(access_token="old", refresh_token="r0", scopes={"s"})
        credential = Credential.from_token_response({"access_token": "new"}, now=NOW, previous=previous)
        assert credential.refresh_token == "r0"
        assert credential.scopes == {"s"}
        assert credential.expires_at is None

    def test_json_roundtrip(self):
        credential = Credential(
            access_token="a",
            refresh_token="r",
            expires_at=NOW,
            scopes={"https://www.googleapis.com/auth/drive"},
        )
        assert Credential.model_validate_json(credential.model_dump_json()) == credential


class TestBatchModels:
    """Tests for batch request/result models."""

    def test_request_from_wire(self):
        request = BatchRequest.model_validate({"id": "a", "method": "patch", "path": "/x", "body": {"k": 1}})
        assert request.method == "PATCH"
        assert request.body == {"k": 1}

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            BatchRequest(id="  ", path="/x")

    def test_missing_path_rejected(self):
        with pytest.raises(ValidationError):
            BatchRequest.model_validate({"id": "a"})

    @pytest.mark.parametrize("n_results,n_errors,status", [
        (0, 0, "success"),
        (2, 0, "success"),
        (1, 1, "partial"),
        (0, 2, "error"),
    ])
    def test_status_from_outcomes(self, n_results, n_errors, status):
        results = [BatchResponse(id=f"r{i}", status=200) for i in range(n_results)]
        errors = [BatchError(id=f"e{i}", status=500, message="boom") for i in range(n_errors)]
        assert BatchResult.from_outcomes(results, errors).status == status

    def test_result_wire_shape(self):
        result = BatchResult.from_outcomes(
            [BatchResponse(id="a", status=200, body={"x": 1})],
            [BatchError(id="b", status=404, message="Not Found")],
        )
        assert json.loads(json.dumps(result.to_dict())) == {
            "status": "partial",
            "results": [{"id": "a", "status": 200, "body": {"x": 1}}],
            "errors": [{"id": "b", "status": 404, "message": "Not Found"}],
        }


class TestPaginatedResult:
    def test_to_dict_drops_missing_tokens(self):
        result = PaginatedResult(items=[1], total_fetched=1)
        assert result.to_dict() == {"items": [1], "total_fetched": 1}


class TestStructuredError:
    """Tests for StructuredError."""

    def test_wire_shape(self):
        error = StructuredError.from_exception(
            RateLimitError("Too many requests", status_code=429, retry_after=29.2),
            "gmail",
        )
        assert error.to_dict() == {
            "status": "error",
            "error_code": "rate_limit_exceeded",
            "domain": "gmail",
            "message": "Too many requests",
            "retry_after_seconds": 30,
        }
        assert error.ok is False

    def test_not_found(self):
        error = StructuredError.from_exception(NotFoundError("gone", status_code=404), "drive")
        assert error.error_code is ErrorCode.NOT_FOUND
        assert "actionable_fix" not in error.to_dict()

    def test_network_error_has_fix(self):
        error = StructuredError.from_exception(httpx.ConnectError("refused"), "calendar")
        assert error.error_code is ErrorCode.NETWORK_ERROR
        assert "ConnectError" in error.message
        assert error.actionable_fix

    def test_unexpected_exception(self):
        error = StructuredError.from_exception(KeyError("boom"), "docs")
        assert error.error_code is ErrorCode.SERVER_ERROR

    def test_to_json(self):
        error = StructuredError.invalid_request("sheets", "bad range")
        assert json.loads(error.to_json())["error_code"] == "invalid_request"
