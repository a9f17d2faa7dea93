"""
Error message sanitization for API responses.

Storage errors can carry table names, file paths or recipient addresses; only
short domain messages (e.g. "Merchant not found") are passed through.
"""

from __future__ import annotations

import re

from campaignpath.errors import CampaignPathError, ErrorKind
from campaignpath.observability.logging import get_logger

logger = get_logger(__name__)

SENSITIVE_PATTERNS = [
    # File paths
    r"/[^\s]+\.(py|db)",
    r"[A-Za-z]:\\[^\s]+",
    # Stack trace indicators
    r"Traceback \(most recent call last\)",
    r"File \".*\"",
    # Database errors
    r"sqlite3?\.",
    r"UNIQUE constraint",
    r"FOREIGN KEY constraint",
    r"CHECK constraint",
    r"no such (table|column)",
    r"database is locked",
    # Recipient addresses
    r"[\w.+-]+@[\w-]+\.[\w.-]+",
    # Internal module names
    r"campaignpath\.[a-z_.]+",
]

GENERIC_MESSAGES = {
    400: "Invalid request. Please check your input and try again.",
    404: "Resource not found.",
    409: "Request conflicts with work already in progress.",
    422: "Invalid data format.",
    500: "An internal error occurred. Please try again later.",
}


def sanitize_error_message(message: str, status_code: int = 500) -> str:
    """
    Sanitize an error message to prevent information leakage.

    Client errors (4xx) keep short single-line messages; everything else
    falls back to a generic message.
    """
    if not message:
        return GENERIC_MESSAGES.get(status_code, "An error occurred.")

    for pattern in SENSITIVE_PATTERNS:
        if re.search(pattern, message, re.IGNORECASE):
            logger.warning("Sanitized sensitive error pattern: %s", pattern)
            return GENERIC_MESSAGES.get(status_code, "An error occurred.")

    if 400 <= status_code < 500 and len(message) < 120 and "\n" not in message:
        return message

    return GENERIC_MESSAGES.get(status_code, "An error occurred.")


def describe_error(error: BaseException) -> tuple[int, str]:
    """
    Map an exception to (status_code, safe detail) for HTTP responses.

    Side Effects:
        - Logs the full error at error level for 5xx, info for 4xx
    """
    kind = error.kind if isinstance(error, CampaignPathError) else ErrorKind.INTERNAL
    status_code = kind.http_status
    if status_code >= 500:
        logger.error("Request failed (%s): %s", type(error).__name__, error)
    else:
        logger.info("Request rejected (%s): %s", kind.value, error)
    return status_code, sanitize_error_message(str(error), status_code)
