"""
Error taxonomy for the Square sync engine.

- Configuration errors: missing credentials, raised before any network call
- Validation errors: bad input to the engine itself, never retried
- Not found: a normal outcome for cancels and lookups
- API errors: Square answered with a structured `errors` list
- Rate-limit denials: "try later", served from cache where possible

Square's error payloads arrive in several shapes. `extract_error_message`
reduces any of them to a `(message, details)` pair for logs and audit records.
"""

from collections.abc import Mapping
from typing import Any

UNKNOWN_ERROR_MESSAGE = "Unknown Square API error"


class SquareError(Exception):
    """Base class for all sync engine errors."""

    pass


class SquareConfigurationError(SquareError):
    """Square credentials are missing or invalid."""

    pass


class SyncValidationError(SquareError):
    """Local data cannot be mirrored as-is (e.g. customer without email)."""

    pass


class SquareAPIError(SquareError):
    """
    Square returned a non-2xx response.

    Attributes:
        status_code: HTTP status code of the response
        errors: Square error objects, each with category/code/detail
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        errors: list[dict[str, Any]] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.errors = errors or []

    @property
    def codes(self) -> list[str]:
        return [e.get("code", "") for e in self.errors]


class SquareNotFoundError(SquareAPIError):
    """The requested Square resource does not exist (404)."""

    pass


class RateLimitExceededError(SquareError):
    """A rate-limit bucket denied the call. Callers should try later."""

    def __init__(self, bucket: str, identity: str = "global"):
        super().__init__(f"Rate limit exceeded for {bucket}:{identity}, try later")
        self.bucket = bucket
        self.identity = identity


class RateLimitedNoDataError(RateLimitExceededError):
    """Cache read was throttled and no stale entry exists to fall back on."""

    def __init__(self, key: str, bucket: str, identity: str = "global"):
        super().__init__(bucket, identity)
        self.key = key
        self.args = (f"Rate limited and no cached data for {key}",)


def is_not_found(error: BaseException) -> bool:
    """
    True for 404-equivalent errors.

    Square API errors count only by status or NOT_FOUND code. The message
    check applies to other exception types.
    """
    if isinstance(error, SquareNotFoundError):
        return True
    if isinstance(error, SquareAPIError):
        return error.status_code == 404 or "NOT_FOUND" in error.codes
    return "not found" in str(error).lower()


def extract_error_message(error: Any) -> tuple[str, Any]:
    """
    Reduce a Square error of any shape to `(message, details)`.

    Shapes:
        - Typed error: an exception; details are its Square `errors` list
          when present, otherwise the message itself
        - Message-bearing mapping: `{"message": ..., "errors": [...]}`
        - Anything else: fixed placeholder message, repr as details
    """
    if isinstance(error, BaseException):
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        errors = getattr(error, "errors", None)
        return str(message), errors if errors else str(message)

    if isinstance(error, Mapping) and error.get("message"):
        message = str(error["message"])
        return message, error.get("errors") or message

    return UNKNOWN_ERROR_MESSAGE, repr(error)
