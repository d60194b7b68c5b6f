"""Failure taxonomy and classification for calendar synchronization.

This module defines:
- the engine's exception hierarchy (``CalendarSyncError`` and subclasses)
- the tagged union of failure origins fed to the classifier
- ``ClassifiedError``: an immutable, user-facing description of a failure
- ``ErrorClassifier``: maps failures onto the taxonomy, first match wins
- ``recovery_steps()``: ordered human remediation steps per taxonomy code
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator

from calsync.core.state import StateStoreError, StorageQuotaExceededError

logger = logging.getLogger(__name__)

NETWORK_RETRY_AFTER_SECONDS = 30
TOKEN_EXPIRED_RETRY_AFTER_SECONDS = 5
RATE_LIMIT_RETRY_AFTER_SECONDS = 60
SERVER_ERROR_RETRY_AFTER_SECONDS = 120
STORAGE_RETRY_AFTER_SECONDS = 10

SERVER_ERROR_STATUS_CODES = frozenset({500, 502, 503, 504})

_RATE_LIMIT_MARKERS = ("rate limit", "quota")
_TOKEN_EXPIRED_MARKERS = ("invalid_token", "token_expired")
_AUTH_MARKERS = ("unauthorized", "authentication")


class ErrorKind(StrEnum):
    """Stable taxonomy codes surfaced to callers."""

    NETWORK_ERROR = "NETWORK_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    RATE_LIMIT = "RATE_LIMIT"
    NO_CALENDAR_ACCESS = "NO_CALENDAR_ACCESS"
    SERVER_ERROR = "SERVER_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# ---------------------------------------------------------------------------
# Exceptions raised by the provider-facing helpers
# ---------------------------------------------------------------------------


class CalendarSyncError(RuntimeError):
    """Base error raised by the calendar provider helpers."""


class CalendarTransportError(CalendarSyncError):
    """Raised when a request never produced an HTTP response."""


class CalendarRequestError(CalendarSyncError):
    """Raised when the provider answers with a non-success status."""

    def __init__(self, *, status_code: int, message: str, body: Any = None) -> None:
        self.status_code = status_code
        self.message = message
        self.body = body
        super().__init__(f"Calendar request failed ({status_code}): {message}")


class CalendarResponseError(CalendarSyncError):
    """Raised when a success response does not carry the expected payload."""


class RetryExhaustedError(CalendarSyncError):
    """Raised by ``retry_with_policy`` once the retry policy gives up."""

    def __init__(self, error: ClassifiedError, attempts: int) -> None:
        self.error = error
        self.attempts = attempts
        super().__init__(f"Gave up after {attempts} attempt(s): {error.code} {error.raw_message}")


# ---------------------------------------------------------------------------
# Failure origins (tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransportFailure:
    """No response reached the client (DNS, connect, timeout, offline)."""

    message: str
    offline: bool = False
    kind: Literal["transport"] = field(default="transport", init=False)


@dataclass(frozen=True)
class HttpStatusFailure:
    """The provider answered with an HTTP error status."""

    status_code: int
    message: str = ""
    kind: Literal["http_status"] = field(default="http_status", init=False)


@dataclass(frozen=True)
class MessageFailure:
    """An application-level failure known only by its message text."""

    message: str
    kind: Literal["message"] = field(default="message", init=False)


@dataclass(frozen=True)
class StorageFailure:
    """Local persistence failed."""

    message: str
    capacity_exceeded: bool = False
    kind: Literal["storage"] = field(default="storage", init=False)


Failure = TransportFailure | HttpStatusFailure | MessageFailure | StorageFailure

# Synthetic condition used when the connection probe reports no integration.
INTEGRATION_REQUIRED = HttpStatusFailure(
    status_code=401,
    message="Calendar integration is required",
)


def failure_from_exception(exc: BaseException) -> Failure:
    """Map an exception onto the failure union."""
    if isinstance(exc, CalendarRequestError):
        return HttpStatusFailure(status_code=exc.status_code, message=exc.message)
    if isinstance(exc, CalendarTransportError | httpx.TransportError):
        return TransportFailure(message=str(exc) or type(exc).__name__)
    if isinstance(exc, StorageQuotaExceededError):
        return StorageFailure(message=str(exc), capacity_exceeded=True)
    if isinstance(exc, StateStoreError):
        return StorageFailure(message=str(exc))
    if isinstance(exc, httpx.HTTPStatusError):
        return HttpStatusFailure(status_code=exc.response.status_code, message=str(exc))
    return MessageFailure(message=str(exc) or type(exc).__name__)


# ---------------------------------------------------------------------------
# ClassifiedError
# ---------------------------------------------------------------------------


class ClassifiedError(BaseModel):
    """A raw failure normalized into the taxonomy. Immutable."""

    model_config = ConfigDict(frozen=True)

    code: ErrorKind
    raw_message: str
    user_message: str = Field(min_length=1)
    recoverable: bool
    retry_after_seconds: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _retry_after_requires_recoverable(self) -> ClassifiedError:
        if self.retry_after_seconds is not None and not self.recoverable:
            raise ValueError("retry_after_seconds is only allowed on recoverable errors")
        return self

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe dict used for persisted log entries."""
        return self.model_dump(mode="json")


@dataclass(frozen=True)
class _KindTemplate:
    raw_message: str
    user_message: str
    recoverable: bool
    retry_after_seconds: int | None = None


ERROR_TEMPLATES: dict[ErrorKind, _KindTemplate] = {
    ErrorKind.NETWORK_ERROR: _KindTemplate(
        raw_message="Network connection failed",
        user_message=(
            "There is a problem with your internet connection. "
            "Cached calendar data is shown while offline."
        ),
        recoverable=True,
        retry_after_seconds=NETWORK_RETRY_AFTER_SECONDS,
    ),
    ErrorKind.AUTH_ERROR: _KindTemplate(
        raw_message="Authentication failed",
        user_message=(
            "Access to your calendar is required. "
            "Please authorize the calendar integration again."
        ),
        recoverable=True,
    ),
    ErrorKind.TOKEN_EXPIRED: _KindTemplate(
        raw_message="Access token expired",
        user_message="Calendar access has expired. Refreshing it automatically...",
        recoverable=True,
        retry_after_seconds=TOKEN_EXPIRED_RETRY_AFTER_SECONDS,
    ),
    ErrorKind.RATE_LIMIT: _KindTemplate(
        raw_message="API rate limit exceeded",
        user_message="The calendar API usage limit was reached. Please wait a moment.",
        recoverable=True,
        retry_after_seconds=RATE_LIMIT_RETRY_AFTER_SECONDS,
    ),
    ErrorKind.NO_CALENDAR_ACCESS: _KindTemplate(
        raw_message="No accessible calendar found",
        user_message=(
            "Calendar access has not been granted. "
            "Please set up the calendar integration."
        ),
        recoverable=True,
    ),
    ErrorKind.SERVER_ERROR: _KindTemplate(
        raw_message="Server internal error",
        user_message="The server ran into an error. Please try again in a little while.",
        recoverable=True,
        retry_after_seconds=SERVER_ERROR_RETRY_AFTER_SECONDS,
    ),
    ErrorKind.STORAGE_ERROR: _KindTemplate(
        raw_message="Local storage operation failed",
        user_message="Saving data failed. Please check the local storage.",
        recoverable=True,
        retry_after_seconds=STORAGE_RETRY_AFTER_SECONDS,
    ),
    ErrorKind.UNKNOWN_ERROR: _KindTemplate(
        raw_message="Unknown error occurred",
        user_message="An unexpected error occurred. Please contact support.",
        recoverable=False,
    ),
}

STORAGE_CAPACITY_USER_MESSAGE = (
    "Local storage is full. Please delete data you no longer need."
)

RECOVERY_STEPS: dict[ErrorKind, tuple[str, ...]] = {
    ErrorKind.NETWORK_ERROR: (
        "Check your internet connection",
        "Reload the application",
        "Cached calendar data is used while offline",
    ),
    ErrorKind.AUTH_ERROR: (
        "Choose 'Connect calendar'",
        "Sign in to your calendar account again",
        "Allow calendar access",
    ),
    ErrorKind.TOKEN_EXPIRED: (
        "Choose 'Connect calendar'",
        "Sign in to your calendar account again",
        "Allow calendar access",
    ),
    ErrorKind.RATE_LIMIT: (
        "Wait a moment (about 1 minute)",
        "Reload the application",
        "Contact support if the problem continues",
    ),
    ErrorKind.NO_CALENDAR_ACCESS: (
        "Check the calendar access permissions",
        "Set up the calendar integration again",
        "Make sure a calendar exists in your calendar account",
    ),
    ErrorKind.STORAGE_ERROR: (
        "Check the local storage",
        "Delete files and caches you no longer need",
        "Restart the application",
    ),
    ErrorKind.SERVER_ERROR: (
        "Wait a moment (about 2 minutes)",
        "Reload the application",
        "Contact support if the problem continues",
    ),
    ErrorKind.UNKNOWN_ERROR: (
        "Reload the application",
        "Contact support if the problem continues",
    ),
}


def recovery_steps(code: ErrorKind | str) -> list[str]:
    """Return the ordered remediation steps for *code*."""
    try:
        kind = ErrorKind(code)
    except ValueError:
        kind = ErrorKind.UNKNOWN_ERROR
    return list(RECOVERY_STEPS[kind])


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class Connectivity(Protocol):
    """Answers whether the host currently has network connectivity."""

    def is_online(self) -> bool: ...


class StaticConnectivity:
    """Connectivity oracle whose answer is set by the host application."""

    def __init__(self, online: bool = True) -> None:
        self._online = online

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        self._online = online


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)


def _build(
    kind: ErrorKind,
    details: dict[str, Any],
    *,
    user_message: str | None = None,
) -> ClassifiedError:
    template = ERROR_TEMPLATES[kind]
    return ClassifiedError(
        code=kind,
        raw_message=template.raw_message,
        user_message=user_message or template.user_message,
        recoverable=template.recoverable,
        retry_after_seconds=template.retry_after_seconds,
        details=details,
    )


class ErrorClassifier:
    """Maps failures onto ``ErrorKind`` codes.

    The first matching rule wins:

    1. transport failure                       -> NETWORK_ERROR
    2-6. HTTP 401 / 403 / 404 / 429 / 5xx      -> status-specific kinds
    7-10. message markers (token, auth, rate limit, missing calendar)
    11. connectivity oracle reports offline    -> NETWORK_ERROR (offline)
    12. storage failure                        -> STORAGE_ERROR
    13. anything else                          -> UNKNOWN_ERROR (not recoverable)
    """

    def __init__(self, connectivity: Connectivity | None = None) -> None:
        self._connectivity = connectivity

    def classify(self, failure: Failure | BaseException) -> ClassifiedError:
        if isinstance(failure, BaseException):
            failure = failure_from_exception(failure)

        if isinstance(failure, TransportFailure):
            details: dict[str, Any] = {"original_error": failure.message}
            if failure.offline:
                details["offline"] = True
            return _build(ErrorKind.NETWORK_ERROR, details)

        if isinstance(failure, HttpStatusFailure):
            by_status = self._classify_status(failure)
            if by_status is not None:
                return by_status

        if isinstance(failure, HttpStatusFailure | MessageFailure):
            by_message = self._classify_message(failure.message)
            if by_message is not None:
                return by_message

        if self._connectivity is not None and not self._connectivity.is_online():
            return _build(
                ErrorKind.NETWORK_ERROR,
                {"offline": True, "original_error": failure.message},
            )

        if isinstance(failure, StorageFailure):
            details = {"original_error": failure.message}
            if failure.capacity_exceeded:
                return _build(
                    ErrorKind.STORAGE_ERROR,
                    {**details, "capacity_exceeded": True},
                    user_message=STORAGE_CAPACITY_USER_MESSAGE,
                )
            return _build(ErrorKind.STORAGE_ERROR, details)

        details = {"original_error": failure.message}
        if isinstance(failure, HttpStatusFailure):
            details["status"] = failure.status_code
        return _build(ErrorKind.UNKNOWN_ERROR, details)

    @staticmethod
    def _classify_status(failure: HttpStatusFailure) -> ClassifiedError | None:
        status = failure.status_code
        details = {"status": status, "response": failure.message}
        if status == 401:
            return _build(ErrorKind.AUTH_ERROR, details)
        if status == 403:
            if _contains_any(failure.message.lower(), _RATE_LIMIT_MARKERS):
                return _build(ErrorKind.RATE_LIMIT, details)
            return _build(ErrorKind.NO_CALENDAR_ACCESS, details)
        if status == 404:
            return _build(ErrorKind.NO_CALENDAR_ACCESS, details)
        if status == 429:
            return _build(ErrorKind.RATE_LIMIT, details)
        if status in SERVER_ERROR_STATUS_CODES:
            return _build(ErrorKind.SERVER_ERROR, details)
        return None

    @staticmethod
    def _classify_message(message: str) -> ClassifiedError | None:
        text = message.lower()
        details = {"original_error": message}
        if _contains_any(text, _TOKEN_EXPIRED_MARKERS):
            return _build(ErrorKind.TOKEN_EXPIRED, details)
        if _contains_any(text, _AUTH_MARKERS):
            return _build(ErrorKind.AUTH_ERROR, details)
        if _contains_any(text, _RATE_LIMIT_MARKERS):
            return _build(ErrorKind.RATE_LIMIT, details)
        if "calendar" in text and "not found" in text:
            return _build(ErrorKind.NO_CALENDAR_ACCESS, details)
        return None
