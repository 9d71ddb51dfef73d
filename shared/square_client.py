"""
Square client for customers, bookings, payments and invoices.

Thin request wrappers around the Square REST API. No caching, retries or
business rules live here:
- Every mutating call takes a caller-supplied idempotency key, so the caller
  decides what counts as one logical attempt
- Non-2xx responses raise SquareAPIError (SquareNotFoundError for 404)
- httpx transport errors propagate unchanged for the retry helper to classify
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, cast
from uuid import uuid4

import httpx

from shared.config import Settings, get_settings
from shared.square_errors import (
    SquareAPIError,
    SquareConfigurationError,
    SquareNotFoundError,
)

logger = logging.getLogger(__name__)

SQUARE_BASE_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}

# Square rejects booking searches spanning more than 31 days
MAX_BOOKING_WINDOW_DAYS = 31


def generate_idempotency_key() -> str:
    """Fresh key for one logical attempt. Reuse it for retries of that attempt."""
    return uuid4().hex


def to_rfc3339(value: datetime) -> str:
    """Format a datetime as the UTC RFC 3339 string Square expects."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_rfc3339(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class SquareClient:
    """
    Client for the Square v2 REST API.

    Args:
        access_token: Square access token
        location_id: Location used for bookings, payments and invoices
        environment: "sandbox" or "production"
        api_version: Value of the Square-Version header
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        access_token: str,
        location_id: str,
        environment: str = "sandbox",
        api_version: str = "2024-10-17",
        timeout: float = 10.0,
        currency: str = "CAD",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token
        self.location_id = location_id
        self.environment = environment
        self.base_url = SQUARE_BASE_URLS.get(environment, SQUARE_BASE_URLS["sandbox"])
        self.timeout = timeout
        self.currency = currency
        self._transport = transport

        self.headers = {
            "Authorization": f"Bearer {access_token}",
            "Square-Version": api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        logger.info(
            f"SquareClient initialized: {self.base_url}, configured={self.is_configured}"
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SquareClient":
        settings = settings or get_settings()
        return cls(
            access_token=settings.SQUARE_ACCESS_TOKEN,
            location_id=settings.SQUARE_LOCATION_ID,
            environment=settings.SQUARE_ENVIRONMENT,
            api_version=settings.SQUARE_API_VERSION,
            timeout=settings.SQUARE_REQUEST_TIMEOUT_SECONDS,
            currency=settings.SQUARE_CURRENCY,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token.strip() and self.location_id.strip())

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Issue one request and return the decoded JSON body.

        Raises:
            SquareConfigurationError: Credentials missing
            SquareNotFoundError: 404 response
            SquareAPIError: Any other non-2xx response
            httpx.HTTPError: Transport failures (timeouts, refused connections)
        """
        if not self.is_configured:
            raise SquareConfigurationError(
                "Square is not configured (SQUARE_ACCESS_TOKEN / SQUARE_LOCATION_ID)"
            )

        if params:
            params = {k: v for k, v in params.items() if v is not None}

        async with httpx.AsyncClient(
            base_url=self.base_url, transport=self._transport
        ) as client:
            try:
                response = await client.request(
                    method,
                    path,
                    json=json,
                    params=params,
                    headers=self.headers,
                    timeout=self.timeout,
                )
            except httpx.HTTPError as e:
                logger.error(f"Square {method} {path} transport error: {e}")
                raise

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if response.is_success:
            return cast(dict[str, Any], body)

        errors = body.get("errors", []) if isinstance(body, dict) else []
        message = "; ".join(
            e.get("detail") or e.get("code") or "error" for e in errors
        ) or f"HTTP {response.status_code}"

        error_class = SquareNotFoundError if response.status_code == 404 else SquareAPIError
        logger.warning(f"Square {method} {path} failed: status={response.status_code}, {message}")
        raise error_class(message, status_code=response.status_code, errors=errors)

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_customer(
        self,
        idempotency_key: str,
        given_name: str,
        family_name: str = "",
        email: str | None = None,
        phone: str | None = None,
        reference_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "idempotency_key": idempotency_key,
            "given_name": given_name,
            "family_name": family_name,
        }
        if email:
            body["email_address"] = email
        if phone:
            body["phone_number"] = phone
        if reference_id:
            body["reference_id"] = reference_id

        data = await self._request("POST", "/v2/customers", json=body)
        return cast(dict[str, Any], data["customer"])

    async def get_customer(self, customer_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/v2/customers/{customer_id}")
        return cast(dict[str, Any], data["customer"])

    async def list_customers(
        self, cursor: str | None = None, limit: int = 100
    ) -> tuple[list[dict[str, Any]], str | None]:
        data = await self._request(
            "GET", "/v2/customers", params={"cursor": cursor, "limit": limit}
        )
        return data.get("customers", []), data.get("cursor")

    # =========================================================================
    # Bookings (no in-place update: cancel + create instead)
    # =========================================================================

    async def create_booking(
        self,
        idempotency_key: str,
        customer_id: str,
        start_at: datetime,
        duration_minutes: int,
        team_member_id: str,
        seller_note: str | None = None,
        service_variation_id: str | None = None,
        service_variation_version: int | None = None,
    ) -> dict[str, Any]:
        segment: dict[str, Any] = {
            "duration_minutes": duration_minutes,
            "team_member_id": team_member_id,
        }
        if service_variation_id:
            segment["service_variation_id"] = service_variation_id
            segment["service_variation_version"] = service_variation_version

        booking: dict[str, Any] = {
            "location_id": self.location_id,
            "customer_id": customer_id,
            "start_at": to_rfc3339(start_at),
            "appointment_segments": [segment],
        }
        if seller_note:
            booking["seller_note"] = seller_note

        data = await self._request(
            "POST",
            "/v2/bookings",
            json={"idempotency_key": idempotency_key, "booking": booking},
        )
        return cast(dict[str, Any], data["booking"])

    async def get_booking(self, booking_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/v2/bookings/{booking_id}")
        return cast(dict[str, Any], data["booking"])

    async def cancel_booking(
        self, booking_id: str, version: int | None, idempotency_key: str
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"idempotency_key": idempotency_key}
        if version is not None:
            body["booking_version"] = version

        data = await self._request("POST", f"/v2/bookings/{booking_id}/cancel", json=body)
        return cast(dict[str, Any], data["booking"])

    async def list_bookings(
        self,
        start_at_min: datetime,
        start_at_max: datetime,
        cursor: str | None = None,
        limit: int = 100,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """
        List bookings starting inside [start_at_min, start_at_max].

        Raises:
            ValueError: Window longer than Square's 31-day limit
        """
        if start_at_max - start_at_min > timedelta(days=MAX_BOOKING_WINDOW_DAYS):
            raise ValueError(
                f"Booking window exceeds {MAX_BOOKING_WINDOW_DAYS} days: "
                f"{start_at_min.isoformat()} -> {start_at_max.isoformat()}"
            )

        data = await self._request(
            "GET",
            "/v2/bookings",
            params={
                "start_at_min": to_rfc3339(start_at_min),
                "start_at_max": to_rfc3339(start_at_max),
                "location_id": self.location_id,
                "cursor": cursor,
                "limit": limit,
            },
        )
        return data.get("bookings", []), data.get("cursor")

    # =========================================================================
    # Payments
    # =========================================================================

    async def create_payment(
        self,
        idempotency_key: str,
        source_id: str,
        amount_cents: int,
        customer_id: str | None = None,
        reference_id: str | None = None,
        note: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "idempotency_key": idempotency_key,
            "source_id": source_id,
            "amount_money": {"amount": amount_cents, "currency": self.currency},
            "location_id": self.location_id,
            "autocomplete": True,
        }
        if customer_id:
            body["customer_id"] = customer_id
        if reference_id:
            body["reference_id"] = reference_id
        if note:
            body["note"] = note

        data = await self._request("POST", "/v2/payments", json=body)
        return cast(dict[str, Any], data["payment"])

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/v2/payments/{payment_id}")
        return cast(dict[str, Any], data["payment"])

    async def list_payments(
        self,
        begin_time: datetime | None = None,
        end_time: datetime | None = None,
        cursor: str | None = None,
        limit: int = 100,
    ) -> tuple[list[dict[str, Any]], str | None]:
        data = await self._request(
            "GET",
            "/v2/payments",
            params={
                "begin_time": to_rfc3339(begin_time) if begin_time else None,
                "end_time": to_rfc3339(end_time) if end_time else None,
                "location_id": self.location_id,
                "cursor": cursor,
                "limit": limit,
            },
        )
        return data.get("payments", []), data.get("cursor")

    # =========================================================================
    # Invoices
    # =========================================================================

    async def create_invoice(
        self,
        idempotency_key: str,
        order_id: str,
        customer_id: str,
        due_date: str,
        title: str | None = None,
    ) -> dict[str, Any]:
        invoice: dict[str, Any] = {
            "location_id": self.location_id,
            "order_id": order_id,
            "primary_recipient": {"customer_id": customer_id},
            "payment_requests": [{"request_type": "BALANCE", "due_date": due_date}],
            "delivery_method": "EMAIL",
            "accepted_payment_methods": {"card": True},
        }
        if title:
            invoice["title"] = title

        data = await self._request(
            "POST",
            "/v2/invoices",
            json={"idempotency_key": idempotency_key, "invoice": invoice},
        )
        return cast(dict[str, Any], data["invoice"])

    async def publish_invoice(
        self, invoice_id: str, version: int, idempotency_key: str
    ) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"/v2/invoices/{invoice_id}/publish",
            json={"version": version, "idempotency_key": idempotency_key},
        )
        return cast(dict[str, Any], data["invoice"])

    async def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/v2/invoices/{invoice_id}")
        return cast(dict[str, Any], data["invoice"])

    async def update_invoice(
        self,
        invoice_id: str,
        version: int,
        fields: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]:
        data = await self._request(
            "PUT",
            f"/v2/invoices/{invoice_id}",
            json={
                "invoice": {**fields, "version": version},
                "idempotency_key": idempotency_key,
            },
        )
        return cast(dict[str, Any], data["invoice"])

    async def cancel_invoice(self, invoice_id: str, version: int) -> dict[str, Any]:
        data = await self._request(
            "POST", f"/v2/invoices/{invoice_id}/cancel", json={"version": version}
        )
        return cast(dict[str, Any], data["invoice"])

    async def send_invoice(self, invoice_id: str, idempotency_key: str) -> dict[str, Any]:
        """
        Deliver an invoice to its recipient.

        Square sends invoices on publish, so a DRAFT invoice is published.
        Already-published invoices are returned unchanged.
        """
        invoice = await self.get_invoice(invoice_id)
        if invoice.get("status") == "DRAFT":
            await self.publish_invoice(invoice_id, invoice["version"], idempotency_key)
            invoice = await self.get_invoice(invoice_id)
        return invoice
