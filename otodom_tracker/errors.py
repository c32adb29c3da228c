"""Failure taxonomy, error classification and retry backoff."""

from enum import Enum
from typing import Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout


class ErrorType(str, Enum):
    COOKIE_NOT_ACCEPTED = "cookie_not_accepted"
    NO_LISTINGS_FOUND = "no_listings_found"
    BOT_DETECTED = "bot_detected"
    BROWSER_CRASHED = "browser_crashed"
    TIMEOUT_AT_PAGE_LOAD = "timeout_at_page_load"
    NAVIGATION_ERROR = "navigation_error"
    SESSION_CLOSED_UNEXPECTEDLY = "session_closed_unexpectedly"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    CONNECTION_ERROR = "connection_error"
    UNKNOWN_ERROR = "unknown_error"


RETRIABLE_ERRORS = frozenset(
    {
        ErrorType.CONNECTION_ERROR,
        ErrorType.TIMEOUT_AT_PAGE_LOAD,
        ErrorType.NAVIGATION_ERROR,
        ErrorType.BROWSER_CRASHED,
        ErrorType.SESSION_CLOSED_UNEXPECTEDLY,
        ErrorType.MEMORY_LIMIT_EXCEEDED,
    }
)

# Errors after which the browser session can no longer be trusted.
SESSION_FATAL_ERRORS = frozenset(
    {
        ErrorType.BROWSER_CRASHED,
        ErrorType.SESSION_CLOSED_UNEXPECTEDLY,
        ErrorType.MEMORY_LIMIT_EXCEEDED,
        ErrorType.TIMEOUT_AT_PAGE_LOAD,
    }
)

BACKOFF_FACTORS: Dict[ErrorType, float] = {
    ErrorType.BOT_DETECTED: 5,
    ErrorType.MEMORY_LIMIT_EXCEEDED: 3,
    ErrorType.CONNECTION_ERROR: 2,
    ErrorType.BROWSER_CRASHED: 4,
    ErrorType.SESSION_CLOSED_UNEXPECTEDLY: 4,
}

# Ordered: the first group with a matching substring wins.
_MESSAGE_RULES = (
    (ErrorType.SESSION_CLOSED_UNEXPECTEDLY, ("target page, context or browser has been closed", "has been closed")),
    (ErrorType.BROWSER_CRASHED, ("browser crashed", "browser has disconnected", "was disconnected")),
    (ErrorType.MEMORY_LIMIT_EXCEEDED, ("memory limit", "memory usage critical")),
    (ErrorType.TIMEOUT_AT_PAGE_LOAD, ("timeout",)),
    (ErrorType.CONNECTION_ERROR, ("net::", "err_connection", "err_internet", "err_name")),
    (ErrorType.NAVIGATION_ERROR, ("navigation", "goto", "reload", "err_aborted")),
)


class ScrapeError(Exception):
    """Base class for failures raised by the scraping pipeline."""

    error_type = ErrorType.UNKNOWN_ERROR


class BotDetectedError(ScrapeError):
    """Raised when the target served a block or CAPTCHA page."""

    error_type = ErrorType.BOT_DETECTED


class BrowserLaunchError(ScrapeError):
    """Raised when no candidate browser engine could be launched."""

    error_type = ErrorType.BROWSER_CRASHED


class MemoryLimitExceededError(ScrapeError):
    """Raised when browser memory crosses the critical threshold mid-task."""

    error_type = ErrorType.MEMORY_LIMIT_EXCEEDED


class TaskTimeoutError(ScrapeError):
    """Raised when a task exceeds its wall-clock budget."""

    error_type = ErrorType.TIMEOUT_AT_PAGE_LOAD


class NavigationFailedError(ScrapeError):
    """Raised when every search URL candidate failed to load."""

    error_type = ErrorType.NAVIGATION_ERROR


def classify_error(error: Optional[BaseException]) -> ErrorType:
    """Map a raised error onto the closed failure taxonomy."""
    if error is None:
        return ErrorType.UNKNOWN_ERROR
    if isinstance(error, ScrapeError):
        return error.error_type
    if isinstance(error, PlaywrightTimeout):
        return ErrorType.TIMEOUT_AT_PAGE_LOAD
    if isinstance(error, (ConnectionError, OSError)) and not isinstance(error, PlaywrightError):
        if isinstance(error, TimeoutError):
            return ErrorType.TIMEOUT_AT_PAGE_LOAD
        return ErrorType.CONNECTION_ERROR
    return classify_message(str(error))


def classify_message(message: str) -> ErrorType:
    lowered = (message or "").lower()
    for error_type, needles in _MESSAGE_RULES:
        if any(needle in lowered for needle in needles):
            return error_type
    return ErrorType.UNKNOWN_ERROR


def is_retriable(error_type: ErrorType) -> bool:
    return ErrorType(error_type) in RETRIABLE_ERRORS


def retry_delay_seconds(
    retry_count: int,
    error_type: ErrorType,
    base_seconds: float = 3.0,
    multiplier: float = 3.0,
    max_seconds: float = 90.0,
) -> float:
    """Backoff before a retried task becomes eligible again.

    Grows geometrically with ``retry_count`` and is scaled by how hostile the
    failure kind is, capped at ``max_seconds``.
    """
    factor = BACKOFF_FACTORS.get(ErrorType(error_type), 1)
    delay = base_seconds * (multiplier ** max(retry_count, 0)) * factor
    return float(min(delay, max_seconds))
