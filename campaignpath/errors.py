"""
Module: errors
Purpose: Error taxonomy shared by the path engine, the analysis queue and the API.

Expected data conditions (unknown merchant, unparseable sender) are reported
through result dataclasses carrying an ErrorKind; the exception classes below
are raised where a Future or the HTTP boundary needs them.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Category of a failed core operation.

    Extends str so API payloads serialize the raw value.
    """

    NOT_FOUND = "not_found"
    INVALID_DOMAIN = "invalid_domain"
    CONFLICT = "conflict"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_DOMAIN: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


class CampaignPathError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(CampaignPathError):
    """Referenced merchant, campaign or project does not exist."""

    kind = ErrorKind.NOT_FOUND


class InvalidDomainError(CampaignPathError):
    """Sender address has no resolvable registrable domain."""

    kind = ErrorKind.INVALID_DOMAIN


class ConflictError(CampaignPathError):
    """Analysis requested for a project that is already running or queued."""

    kind = ErrorKind.CONFLICT


class InternalError(CampaignPathError):
    """Storage-layer or unexpected failure."""

    kind = ErrorKind.INTERNAL


class AnalysisTimeoutError(InternalError):
    """A queued analysis ran past its deadline and was rolled back."""


class AnalysisCancelledError(InternalError):
    """A queued analysis was withdrawn before it started."""


def error_for(kind: ErrorKind, message: str) -> CampaignPathError:
    """Build the exception matching an ErrorKind (used by result.unwrap())."""
    exc_type: type[CampaignPathError] = {
        ErrorKind.NOT_FOUND: NotFoundError,
        ErrorKind.INVALID_DOMAIN: InvalidDomainError,
        ErrorKind.CONFLICT: ConflictError,
        ErrorKind.INTERNAL: InternalError,
    }[kind]
    return exc_type(message)
