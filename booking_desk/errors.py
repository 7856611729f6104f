"""Exceptions raised by the calendar provider and the booking actions."""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class CalendarError(Exception):
    """Base class for calendar provider failures."""


class GoogleAuthConfigError(CalendarError):
    def __init__(self, message: str, missing_env: List[str]):
        super().__init__(message)
        self.missing_env = missing_env


class GoogleAuthError(CalendarError):
    def __init__(
        self, message: str, status: int, response_body: Optional[Any] = None
    ):
        super().__init__(message)
        self.status = status
        self.response_body = response_body


class GoogleCalendarConfigError(CalendarError):
    pass


class GoogleApiError(CalendarError):
    def __init__(
        self, message: str, status: int, response_body: Optional[Any] = None
    ):
        super().__init__(message)
        self.status = status
        self.response_body = response_body


class SigningConfigError(RuntimeError):
    """Raised when links must be signed but no signing secret is configured."""


class BookingStatus(str, Enum):
    INVALID = "invalid"
    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    UNKNOWN_MEETING_TYPE = "unknown_meeting_type"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"
    GOOGLE_ERROR = "google_error"
    ERROR = "error"


class BookingError(Exception):
    """A failed guest action, carrying its status and HTTP code."""

    def __init__(
        self,
        status: BookingStatus,
        message: str,
        http_status: int = 400,
        **extra: Any,
    ):
        super().__init__(message)
        self.status = status
        self.message = message
        self.http_status = http_status
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "message": self.message, **self.extra}

    def __repr__(self) -> str:
        return f"BookingError({self.status.value!r}, {self.message!r}, {self.http_status})"


def classify_calendar_error(
    error: Exception, fallback_message: str = "Unexpected error."
) -> BookingError:
    """Map a calendar provider exception onto a BookingError."""
    if isinstance(error, BookingError):
        return error

    if isinstance(error, GoogleApiError):
        if error.status in (404, 410):
            return BookingError(
                BookingStatus.NOT_FOUND,
                "We could not find an active event for this booking.",
                410,
            )
        if error.status == 409:
            return BookingError(BookingStatus.UNAVAILABLE, str(error), 409)
        return BookingError(
            BookingStatus.GOOGLE_ERROR, str(error), 502, providerStatus=error.status
        )

    if isinstance(error, GoogleAuthError):
        return BookingError(
            BookingStatus.GOOGLE_ERROR, str(error), 502, providerStatus=error.status
        )

    if isinstance(error, (GoogleAuthConfigError, GoogleCalendarConfigError)):
        return BookingError(BookingStatus.GOOGLE_ERROR, str(error), 500)

    if isinstance(error, SigningConfigError):
        return BookingError(BookingStatus.ERROR, str(error), 500)

    logger.error(f"Unclassified error during booking action: {error!r}", exc_info=error)
    return BookingError(BookingStatus.ERROR, fallback_message, 500)
