"""Unit tests for Square webhook signature validation."""

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException, Request

from api.middleware.signature_validation import (
    SQUARE_SIGNATURE_HEADER,
    compute_square_signature,
    validate_square_signature,
)

SIGNATURE_KEY = "test_signature_key"
NOTIFICATION_URL = "https://example.com/webhooks/square"


def make_request(body: bytes, signature: str | None) -> MagicMock:
    request = AsyncMock(spec=Request)
    request.body = AsyncMock(return_value=body)
    request.headers = {SQUARE_SIGNATURE_HEADER: signature} if signature else {}
    request.url = NOTIFICATION_URL
    return request


@pytest.fixture
def mock_settings():
    with patch("api.middleware.signature_validation.get_settings") as mock:
        mock.return_value.SQUARE_WEBHOOK_SIGNATURE_KEY = SIGNATURE_KEY
        mock.return_value.SQUARE_WEBHOOK_NOTIFICATION_URL = NOTIFICATION_URL
        yield mock.return_value


class TestComputeSquareSignature:
    def test_matches_hmac_of_url_and_body(self):
        body = b'{"type":"payment.updated"}'
        expected = base64.b64encode(
            hmac.new(SIGNATURE_KEY.encode(), NOTIFICATION_URL.encode() + body, hashlib.sha256).digest()
        ).decode()

        assert compute_square_signature(SIGNATURE_KEY, NOTIFICATION_URL, body) == expected

    def test_url_is_part_of_signature(self):
        body = b"{}"

        assert compute_square_signature(SIGNATURE_KEY, NOTIFICATION_URL, body) != (
            compute_square_signature(SIGNATURE_KEY, "https://other.example.com/hook", body)
        )


class TestSquareSignatureValidation:
    """Tests for Square signature validation."""

    @pytest.mark.asyncio
    async def test_valid_signature_passes(self, mock_settings):
        """Test that a valid signature returns the parsed payload."""
        payload = {"event_id": "evt-1", "type": "payment.updated", "data": {}}
        body = json.dumps(payload).encode()
        signature = compute_square_signature(SIGNATURE_KEY, NOTIFICATION_URL, body)

        result = await validate_square_signature(make_request(body, signature))

        assert result == payload

    @pytest.mark.asyncio
    async def test_invalid_signature_returns_401(self, mock_settings):
        body = b'{"event_id":"evt-1","type":"payment.updated"}'

        with pytest.raises(HTTPException) as exc_info:
            await validate_square_signature(make_request(body, "d3Jvbmc="))

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_tampered_body_returns_401(self, mock_settings):
        body = b'{"event_id":"evt-1","type":"payment.updated"}'
        signature = compute_square_signature(SIGNATURE_KEY, NOTIFICATION_URL, body)

        with pytest.raises(HTTPException) as exc_info:
            await validate_square_signature(make_request(body + b" ", signature))

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_header_returns_401(self, mock_settings):
        with pytest.raises(HTTPException) as exc_info:
            await validate_square_signature(make_request(b"{}", None))

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_key_rejects_everything(self, mock_settings):
        mock_settings.SQUARE_WEBHOOK_SIGNATURE_KEY = ""
        body = b"{}"
        signature = compute_square_signature("", NOTIFICATION_URL, body)

        with pytest.raises(HTTPException) as exc_info:
            await validate_square_signature(make_request(body, signature))

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_request_url_used_when_not_configured(self, mock_settings):
        mock_settings.SQUARE_WEBHOOK_NOTIFICATION_URL = ""
        body = b'{"event_id":"evt-1","type":"payment.updated"}'
        signature = compute_square_signature(SIGNATURE_KEY, NOTIFICATION_URL, body)

        result = await validate_square_signature(make_request(body, signature))

        assert result["event_id"] == "evt-1"

    @pytest.mark.asyncio
    async def test_invalid_json_returns_400(self, mock_settings):
        body = b"not json"
        signature = compute_square_signature(SIGNATURE_KEY, NOTIFICATION_URL, body)

        with pytest.raises(HTTPException) as exc_info:
            await validate_square_signature(make_request(body, signature))

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_non_object_json_returns_400(self, mock_settings):
        body = b"[1, 2]"
        signature = compute_square_signature(SIGNATURE_KEY, NOTIFICATION_URL, body)

        with pytest.raises(HTTPException) as exc_info:
            await validate_square_signature(make_request(body, signature))

        assert exc_info.value.status_code == 400
