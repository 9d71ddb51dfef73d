"""Middleware for Square webhook signature validation."""

import base64
import hashlib
import hmac
import json
import logging
from typing import Any, cast

from fastapi import HTTPException, Request

from shared.config import get_settings

logger = logging.getLogger(__name__)

SQUARE_SIGNATURE_HEADER = "x-square-hmacsha256-signature"


def compute_square_signature(signature_key: str, notification_url: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of notification URL + raw body, as Square signs it."""
    digest = hmac.new(
        signature_key.encode("utf-8"),
        notification_url.encode("utf-8") + body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


async def validate_square_signature(request: Request) -> dict[str, Any]:
    """
    Validate Square webhook signature and parse the JSON body.

    Args:
        request: FastAPI request object

    Returns:
        Parsed event payload

    Raises:
        HTTPException: 401 if signature verification fails, 400 if body is not JSON
    """
    settings = get_settings()
    body = await request.body()

    signature_header: str | None = request.headers.get(SQUARE_SIGNATURE_HEADER)

    if not settings.SQUARE_WEBHOOK_SIGNATURE_KEY:
        logger.error("Square webhook received but SQUARE_WEBHOOK_SIGNATURE_KEY is not set")
        raise HTTPException(status_code=401, detail="Invalid Square signature")

    if not signature_header:
        logger.warning("Square webhook received without signature header")
        raise HTTPException(status_code=401, detail="Invalid Square signature")

    notification_url = settings.SQUARE_WEBHOOK_NOTIFICATION_URL or str(request.url)
    expected = compute_square_signature(
        settings.SQUARE_WEBHOOK_SIGNATURE_KEY, notification_url, body
    )

    if not hmac.compare_digest(expected, signature_header):
        logger.warning("Square signature verification failed")
        raise HTTPException(status_code=401, detail="Invalid Square signature")

    try:
        payload = json.loads(body)
    except ValueError as e:
        logger.warning(f"Square webhook body is not valid JSON: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON body") from e

    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    logger.debug(f"Square signature validated: event_type={payload.get('type')}")
    return cast(dict[str, Any], payload)
