"""Pydantic models for Square webhook payloads."""

from typing import Any

from pydantic import BaseModel, field_validator


class SquareWebhookEvent(BaseModel):
    """
    Square webhook event envelope.

    data.object holds the resource, e.g. {"payment": {...}} for payment.*
    events and {"invoice": {...}} for invoice.* events.
    """

    event_id: str
    type: str
    data: dict[str, Any] = {}
    merchant_id: str | None = None
    created_at: str | None = None

    @field_validator("event_id", "type")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v
