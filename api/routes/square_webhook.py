"""Square webhook route handler."""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.middleware.signature_validation import validate_square_signature
from api.models.square_webhook import SquareWebhookEvent
from shared.config import get_settings
from sync.services.components import get_event_processor
from sync.services.inbound_event_processor import InboundEventProcessor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/square")
async def receive_square_webhook(
    payload: dict[str, Any] = Depends(validate_square_signature),
    processor: InboundEventProcessor = Depends(get_event_processor),
) -> JSONResponse:
    """
    Receive Square webhook events and queue them for processing.

    Processing happens off the request path, so this only acknowledges
    receipt. When the event is dropped (rate limited or queue full) the
    response is 429 so Square redelivers it later.

    Returns:
        200 {"status": "received"} when queued
        429 {"status": "deferred"} when dropped
    """
    event = SquareWebhookEvent.model_validate(payload)

    accepted = await processor.handle_event(event.model_dump())
    if not accepted:
        return JSONResponse(
            status_code=429,
            content={"status": "deferred"},
            headers={"Retry-After": str(get_settings().RATE_LIMIT_WINDOW_SECONDS)},
        )

    logger.info(
        f"Square event queued: type={event.type}, event_id={event.event_id}",
        extra={"event_id": event.event_id, "event_type": event.type},
    )
    return JSONResponse(status_code=200, content={"status": "received"})
