"""Health check endpoints.

- /health - Service status plus analysis queue state
- /health/db - Database connection pool health and schema check
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends

from campaignpath.api.dependencies import get_analysis_queue
from campaignpath.config import APP_VERSION
from campaignpath.observability.telemetry import get_counters, get_latency_stats
from campaignpath.projects.queue import AnalysisQueue
from campaignpath.utils.timestamps import utc_now_iso

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    queue: AnalysisQueue = Depends(get_analysis_queue),
) -> dict[str, Any]:
    """Service status, version and analysis queue state."""
    return {
        "status": "healthy",
        "service": "Campaign Path API",
        "version": APP_VERSION,
        "timestamp": utc_now_iso(),
        "analysis_queue": asdict(queue.get_status()),
        "counters": get_counters("analysis."),
        "analysis_latency": get_latency_stats("analysis.project.latency"),
    }


@router.get("/health/db")
async def database_health() -> dict[str, Any]:
    """
    Database health check endpoint.

    Alerts if pool usage exceeds 80% or the schema is incomplete.
    """
    from campaignpath.infrastructure.database import get_pool_stats, validate_schema

    stats = get_pool_stats()
    usage_percent = stats["usage_percent"]
    try:
        schema_ok = validate_schema()
    except (ValueError, FileNotFoundError):
        schema_ok = False

    degraded = usage_percent > 80 or not schema_ok
    warning = None
    if not schema_ok:
        warning = "Schema incomplete"
    elif usage_percent > 80:
        warning = "Pool usage high"

    return {
        "status": "degraded" if degraded else "healthy",
        "pool": stats,
        "schema_ok": schema_ok,
        "warning": warning,
    }
