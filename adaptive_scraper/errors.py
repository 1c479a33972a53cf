"""
Exceptions raised by the adaptive extraction core.

Failures of a single strategy attempt are communicated with these classes and
mapped onto an ``ErrorClass`` tag before they reach the learning store.
"""

import builtins
from typing import Any

from .models import ErrorClass


class AdaptiveScraperError(Exception):
    """Base exception for all adaptive scraper errors."""

    error_class = ErrorClass.UNKNOWN

    def __init__(self: "AdaptiveScraperError", message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Error message
            details: Optional dictionary with diagnostic context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self: "AdaptiveScraperError") -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class PageTimeoutError(AdaptiveScraperError, builtins.TimeoutError):
    """A page interaction did not complete within its timeout."""

    error_class = ErrorClass.TIMEOUT


class NavigationError(AdaptiveScraperError):
    """The page could not be navigated to or reloaded."""

    error_class = ErrorClass.NAVIGATION


class ElementNotFoundError(AdaptiveScraperError):
    """A strategy found nothing on the page."""

    error_class = ErrorClass.ELEMENT_NOT_FOUND


class BotDetectedError(AdaptiveScraperError):
    """The page shows a block or challenge instead of content."""

    error_class = ErrorClass.BOT_DETECTION

    def __init__(self: "BotDetectedError", message: str, signature: str | None = None, **details: Any) -> None:
        super().__init__(message, {"signature": signature, **details})
        self.signature = signature


class ValidationError(AdaptiveScraperError):
    """A value was extracted but rejected by field validation."""

    error_class = ErrorClass.VALIDATION


class PersistenceError(AdaptiveScraperError):
    """The learning store backend could not be read or written."""


def classify_error(error: BaseException) -> ErrorClass:
    """Map an exception raised during an attempt onto its error class."""
    if isinstance(error, AdaptiveScraperError):
        return error.error_class
    if isinstance(error, builtins.TimeoutError):
        return ErrorClass.TIMEOUT
    return ErrorClass.UNKNOWN
