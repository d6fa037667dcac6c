"""
Tests for response_utils module.
"""

import json
from decimal import Decimal

import pytest

from shared.response_utils import (
    decimal_default,
    error_response,
    get_cors_headers,
    get_origin,
    preflight_response,
    success_response,
)


class TestGetCorsHeaders:
    """Tests for get_cors_headers function."""

    def test_returns_cors_headers_for_allowed_prod_origin(self):
        headers = get_cors_headers("https://dayoftimeline.app")

        assert headers["Access-Control-Allow-Origin"] == "https://dayoftimeline.app"
        assert "POST" in headers["Access-Control-Allow-Methods"]
        assert "X-Admin-Token" in headers["Access-Control-Allow-Headers"]
        assert headers["Access-Control-Allow-Credentials"] == "true"

    def test_returns_empty_dict_for_disallowed_origin(self):
        assert get_cors_headers("https://evil.example.com") == {}

    def test_returns_empty_dict_for_none_origin(self):
        assert get_cors_headers(None) == {}


class TestGetOrigin:

    @pytest.mark.parametrize("header", ["origin", "Origin"])
    def test_reads_origin_header(self, header):
        assert get_origin({"headers": {header: "https://dayoftimeline.app"}}) == "https://dayoftimeline.app"

    def test_handles_missing_headers(self):
        assert get_origin({"headers": None}) is None


class TestDecimalDefault:
    """Tests for decimal_default JSON serializer."""

    def test_converts_integer_decimal_to_int(self):
        result = decimal_default(Decimal("1702592000"))

        assert result == 1702592000
        assert isinstance(result, int)

    def test_converts_float_decimal_to_float(self):
        result = decimal_default(Decimal("0.5"))

        assert result == 0.5
        assert isinstance(result, float)

    def test_raises_type_error_for_non_decimal(self):
        with pytest.raises(TypeError):
            decimal_default(object())


class TestErrorResponse:
    """Tests for error_response function."""

    def test_creates_error_with_code_and_message(self):
        response = error_response(400, "invalid_request", "Missing required parameter price_id")

        assert response["statusCode"] == 400
        assert response["headers"]["Content-Type"] == "application/json"
        body = json.loads(response["body"])
        assert body == {"error": {"code": "invalid_request", "message": "Missing required parameter price_id"}}

    def test_includes_details(self):
        response = error_response(400, "invalid_request", "Bad", details={"field": "mode"})

        assert json.loads(response["body"])["error"]["details"] == {"field": "mode"}

    def test_includes_custom_headers(self):
        response = error_response(500, "temporary_error", "Retry", headers={"Retry-After": "5"})

        assert response["headers"]["Retry-After"] == "5"

    def test_includes_cors_headers_for_allowed_origin(self):
        response = error_response(401, "unauthorized", "Login", origin="https://dayoftimeline.app")

        assert response["headers"]["Access-Control-Allow-Origin"] == "https://dayoftimeline.app"


class TestSuccessResponse:
    """Tests for success_response function."""

    def test_creates_success_with_data(self):
        response = success_response({"received": True})

        assert response["statusCode"] == 200
        assert json.loads(response["body"]) == {"received": True}

    def test_serializes_dynamo_decimals(self):
        response = success_response({"current_period_end": Decimal("1702592000")})

        assert json.loads(response["body"]) == {"current_period_end": 1702592000}

    def test_uses_custom_status_code(self):
        assert success_response({}, status_code=201)["statusCode"] == 201

    def test_includes_cors_headers_for_allowed_origin(self):
        response = success_response({}, origin="https://www.dayoftimeline.app")

        assert response["headers"]["Access-Control-Allow-Origin"] == "https://www.dayoftimeline.app"


class TestPreflightResponse:

    def test_returns_204_with_cors(self):
        response = preflight_response("https://dayoftimeline.app")

        assert response["statusCode"] == 204
        assert response["body"] == ""
        assert response["headers"]["Access-Control-Allow-Origin"] == "https://dayoftimeline.app"

    def test_disallowed_origin_has_no_cors(self):
        assert preflight_response("https://evil.example.com")["headers"] == {}
