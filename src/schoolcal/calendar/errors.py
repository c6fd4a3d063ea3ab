"""Error taxonomy for the calendar aggregation core.

Only ``ConfigNotFoundError`` (during ``initialize``) and per-call argument
errors ever reach the caller of the read operations; every other failure is
contained to the source that raised it.
"""

from __future__ import annotations

import re
from typing import Any


class CalendarError(RuntimeError):
    """Base error raised by the calendar core."""


class ConfigNotFoundError(CalendarError):
    """Raised when no school configuration matches the logging-in user."""


class CalendarConfigError(CalendarError):
    """Raised when a school configuration cannot back the requested Google mode."""


class NotAuthenticatedError(CalendarError):
    """Raised when Google sign-in is required but absent or was rejected."""


class SourceFetchError(CalendarError):
    """Raised when one event source fails to fetch or parse its payload."""

    def __init__(
        self,
        message: str,
        *,
        source: str,
        status_code: int | None = None,
    ) -> None:
        self.source = source
        self.status_code = status_code
        self.message = message
        super().__init__(f"{source} fetch failed: {message}")


class GoogleCalendarRequestError(SourceFetchError):
    """Raised when a Google Calendar API request returns a non-success status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        super().__init__(
            f"Google Calendar API request failed ({status_code}): {message}",
            source="google",
            status_code=status_code,
        )
        self.message = message


class InvalidArgumentError(CalendarError, ValueError):
    """Raised for malformed date ranges, months or day counts."""


class RateLimitExceededError(CalendarError):
    """Raised when a user exceeds the sign-in attempt budget."""


class CalendarNotInitializedError(CalendarError):
    """Raised when a read operation is called before ``initialize``."""


_CREDENTIAL_KEYS = r"client_secret|refresh_token|access_token|api_key|authCode|token|key"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values (tokens, API keys, auth codes) from *message*."""
    redacted = message
    # key=value style pairs, including query strings
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_CREDENTIAL_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


def sanitize_error_message(exc: BaseException) -> str:
    """Return a redacted, whitespace-normalized message capped at 200 chars."""
    redacted = redact_credential_values(str(exc))
    return " ".join(redacted.split())[:200]


def build_source_error(exc: BaseException, *, source: str) -> dict[str, Any]:
    """Build a structured, log-safe description of a source failure."""
    return {
        "status": "error",
        "error": sanitize_error_message(exc),
        "error_type": type(exc).__name__,
        "source": source,
        "status_code": getattr(exc, "status_code", None),
    }
