# app/core/resolver/errors.py
"""
Typed errors and the single error classifier.

Every strategy set and the orchestrator's top-level handler classify
failures through classify_error(), so categories stay consistent from the
extractor up to the HTTP status code.
"""
from __future__ import annotations

from typing import Optional

from app.core.resolver.domain import ErrorCategory


class ResolverError(Exception):
    """
    Base class for all resolver errors.

    A subclass that sets category is classified by it alone; with
    category None the message and stderr text decide.
    """

    category: Optional[ErrorCategory] = None

    def __init__(self, message: str = "Resolver error"):
        self.message = message
        super().__init__(message)


class InvalidUrlError(ResolverError):
    """Input is not a supported post/reel/story URL."""

    category = ErrorCategory.INVALID_URL


class ToolInvocationError(ResolverError):
    """
    External tool run failed (non-zero exit or unusable output).

    Attributes:
        stderr: Captured standard error (may be empty).
        exit_code: Process exit status, None if the process never finished.
    """

    def __init__(self, message: str, stderr: str = "", exit_code: Optional[int] = None):
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(message)


class ToolTimeoutError(ToolInvocationError):
    """External tool exceeded its timeout and was killed."""

    category = ErrorCategory.TIMEOUT


class ToolNotFoundError(ToolInvocationError):
    """External tool binary is not installed / not on PATH."""

    category = ErrorCategory.UNKNOWN


class ToolOutputLimitError(ToolInvocationError):
    """External tool produced more output than the configured ceiling."""

    category = ErrorCategory.UNKNOWN


# ============================================================================
# CLASSIFICATION
# ============================================================================

# Checked in order; first match wins.
_CATEGORY_MARKERS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.RATE_LIMIT, ("rate-limit", "rate limit", "429", "too many requests")),
    (ErrorCategory.AUTHENTICATION, ("login required", "authentication", "authorization", "not logged in")),
    (ErrorCategory.NOT_FOUND, ("not found", "404", "not available", "does not exist")),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out")),
]


def classify_error(*texts: Optional[str]) -> ErrorCategory:
    """
    Map raw error text to a category.

    Case-insensitive substring inspection of the combined texts
    (usually the error message and captured stderr).
    """
    combined = " ".join(t for t in texts if t).lower()
    if not combined:
        return ErrorCategory.UNKNOWN

    for category, markers in _CATEGORY_MARKERS:
        if any(marker in combined for marker in markers):
            return category

    return ErrorCategory.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Classify an exception by its own category, then by its text."""
    if isinstance(exc, ResolverError) and exc.category is not None:
        return exc.category
    stderr = getattr(exc, "stderr", None)
    return classify_error(str(exc), stderr if isinstance(stderr, str) else None)


# ============================================================================
# USER-FACING MAPPING
# ============================================================================

STATUS_HINTS: dict[ErrorCategory, int] = {
    ErrorCategory.INVALID_URL: 400,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.AUTHENTICATION: 403,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.TIMEOUT: 408,
    ErrorCategory.UNKNOWN: 500,
}

USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.INVALID_URL: "Invalid URL. Please provide a valid post, reel, or story URL.",
    ErrorCategory.RATE_LIMIT: "Rate limit reached. Please wait a few minutes before trying again.",
    ErrorCategory.AUTHENTICATION: "Authentication required. This content may be private or require login.",
    ErrorCategory.NOT_FOUND: "Content not found or has been deleted.",
    ErrorCategory.TIMEOUT: "Request timed out. The platform may be slow, please try again.",
    ErrorCategory.UNKNOWN: "Download failed. Please try again later.",
}


def status_hint_for(category: ErrorCategory) -> int:
    return STATUS_HINTS.get(category, 500)


def user_message_for(category: ErrorCategory) -> str:
    return USER_MESSAGES.get(category, USER_MESSAGES[ErrorCategory.UNKNOWN])


def truncate(text: Optional[str], limit: int = 200) -> Optional[str]:
    """Bound raw tool output before it goes into metadata or logs."""
    if text is None:
        return None
    return text if len(text) <= limit else text[:limit]
