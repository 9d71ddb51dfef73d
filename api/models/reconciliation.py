"""Pydantic models for the reconciliation operational routes."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, model_validator


class ReconciliationRunRequest(BaseModel):
    """Manual run options. Omitted dates fall back to the default window."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    dry_run: bool = False

    @model_validator(mode="after")
    def validate_range(self) -> "ReconciliationRunRequest":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ReconciliationRunResponse(BaseModel):
    status: str
    dry_run: bool
    start_date: datetime | None = None
    end_date: datetime | None = None


class ReconciliationStatusResponse(BaseModel):
    configured: bool
    is_running: bool
    last_run: dict[str, Any]
    rate_limits: dict[str, dict[str, Any]]
