"""Error taxonomy and provider error classification."""

from __future__ import annotations

from typing import Any


class HypermapsError(Exception):
    """Base class for every error surfaced by hypermaps."""

    user_message = "An unexpected error occurred. Please try again."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)


class ValidationError(HypermapsError):
    """A persisted-entity payload did not match its schema."""

    user_message = "Invalid payload."

    def __init__(self, message: str | None = None, issues: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.issues = issues or []

    @classmethod
    def from_pydantic(cls, exc: Any) -> ValidationError:
        issues = [
            {
                "path": [str(part) for part in err["loc"]],
                "message": err["msg"],
                "code": err["type"],
            }
            for err in exc.errors()
        ]
        return cls(f"Invalid payload ({len(issues)} issue(s))", issues)


class StoreError(HypermapsError):
    """A store operation failed."""

    user_message = "The message store is unavailable."


class EntityNotFound(StoreError):
    user_message = "Not found."


class InvalidTransitionError(HypermapsError):
    """A session received an event its current state does not accept."""


class RetryLimitError(HypermapsError):
    user_message = "Maximum retry attempts reached. Please try again later."


class GenerationError(HypermapsError):
    """The assistant response could not be generated."""


class AuthenticationError(GenerationError):
    user_message = "Authentication error. Please check your API configuration."


class RateLimitError(GenerationError):
    user_message = "Rate limit exceeded. Please wait a moment and try again."


class ModelUnavailableError(GenerationError):
    user_message = "AI model is currently unavailable. Please try again later."


class NetworkError(GenerationError):
    user_message = "Network error. Please check your connection and try again."


class GenerationEmptyError(GenerationError):
    user_message = "The assistant returned an empty response. Please try again."


class UnknownError(GenerationError):
    user_message = "An unexpected error occurred. Please try again."


class PersistenceError(HypermapsError):
    """The response was generated but could not be saved."""

    user_message = (
        "The response was generated but could not be saved. "
        "Please resend your prompt."
    )


# Checked in order; the first matching needle wins.
_PATTERNS: list[tuple[tuple[str, ...], type[GenerationError]]] = [
    (("api key", "authentication", "unauthorized", "invalid key"), AuthenticationError),
    (("rate limit", "too many requests", "quota"), RateLimitError),
    (("model",), ModelUnavailableError),
    (("network", "fetch", "connection", "timed out", "timeout"), NetworkError),
]

_STATUS_CODES: dict[int, type[GenerationError]] = {
    401: AuthenticationError,
    403: AuthenticationError,
    429: RateLimitError,
    503: ModelUnavailableError,
}


def classify_error(text: str, status_code: int | None = None) -> GenerationError:
    """Map provider error text (and optionally an HTTP status) to an error.

    Providers don't guarantee structured error codes, so this is best-effort
    substring matching.
    """
    if status_code in _STATUS_CODES:
        return _STATUS_CODES[status_code](text)

    lowered = text.lower()
    for needles, error_cls in _PATTERNS:
        if any(needle in lowered for needle in needles):
            return error_cls(text)
    return UnknownError(text)
