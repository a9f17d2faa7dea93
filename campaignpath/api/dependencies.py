"""Shared FastAPI dependencies and error mapping for the routers."""

from __future__ import annotations

from fastapi import HTTPException, Request

from campaignpath.errors import ErrorKind
from campaignpath.projects.queue import AnalysisQueue
from campaignpath.utils.error_sanitizer import describe_error, sanitize_error_message


def get_analysis_queue(request: Request) -> AnalysisQueue:
    """The queue owned by the app created in create_app()."""
    return request.app.state.analysis_queue


def http_error(error: Exception) -> HTTPException:
    """Map an engine exception to an HTTPException with a sanitized detail."""
    status_code, detail = describe_error(error)
    return HTTPException(status_code=status_code, detail=detail)


def result_error(kind: ErrorKind | None, reason: str | None) -> HTTPException:
    """Map a failed result object (success=False) to an HTTPException."""
    status_code = (kind or ErrorKind.INTERNAL).http_status
    return HTTPException(
        status_code=status_code, detail=sanitize_error_message(reason or "", status_code)
    )
