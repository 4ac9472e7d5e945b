"""
Tests for response utilities.
"""

import json
from decimal import Decimal

import pytest

from shared.errors import InvalidSignatureError, MalformedEventError
from shared.response_utils import decimal_default, error_response, json_response, received_response


class TestDecimalDefault:
    def test_converts_integer_decimal_to_int(self):
        assert decimal_default(Decimal("500")) == 500
        assert isinstance(decimal_default(Decimal("500")), int)

    def test_converts_float_decimal_to_float(self):
        assert decimal_default(Decimal("4.99")) == pytest.approx(4.99)

    def test_raises_type_error_for_non_decimal(self):
        with pytest.raises(TypeError):
            decimal_default(object())


class TestJsonResponse:
    def test_creates_basic_json_response(self):
        response = json_response(200, {"ok": True})

        assert response["statusCode"] == 200
        assert response["headers"]["Content-Type"] == "application/json"
        assert json.loads(response["body"]) == {"ok": True}

    def test_includes_additional_headers(self):
        response = json_response(200, {}, headers={"X-Request-Id": "req-1"})
        assert response["headers"]["X-Request-Id"] == "req-1"

    def test_serializes_decimals_in_body(self):
        response = json_response(200, {"amount": Decimal("500")})
        assert json.loads(response["body"]) == {"amount": 500}


class TestErrorResponse:
    def test_creates_error_with_code_and_message(self):
        response = error_response(500, "processing_failed", "Processing failed")

        assert response["statusCode"] == 500
        assert json.loads(response["body"]) == {
            "error": {"code": "processing_failed", "message": "Processing failed"}
        }

    def test_includes_details(self):
        response = error_response(400, "invalid_webhook_payload", "Invalid", details={"field": "type"})
        assert json.loads(response["body"])["error"]["details"] == {"field": "type"}


class TestReceivedResponse:
    def test_acknowledges_delivery(self):
        response = received_response()
        assert response["statusCode"] == 200
        assert json.loads(response["body"]) == {"received": True}

    def test_includes_extra_fields(self):
        assert json.loads(received_response(duplicate=True)["body"]) == {"received": True, "duplicate": True}


class TestWebhookErrorResponses:
    def test_invalid_signature(self):
        response = InvalidSignatureError().to_response()
        assert response["statusCode"] == 400
        assert json.loads(response["body"])["error"] == {"code": "invalid_signature", "message": "Invalid signature"}

    def test_malformed_event(self):
        response = MalformedEventError("Event has no type").to_response()
        assert response["statusCode"] == 400
        assert json.loads(response["body"])["error"]["code"] == "invalid_webhook_payload"
