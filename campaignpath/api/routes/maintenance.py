"""
Maintenance endpoints: per-worker deletion, path cleanups and data statistics.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from campaignpath import maintenance
from campaignpath.api.dependencies import http_error, result_error
from campaignpath.config import PENDING_DATA_RETENTION_DAYS
from campaignpath.errors import CampaignPathError
from campaignpath.observability.logging import get_logger

router = APIRouter(prefix="/api/maintenance", tags=["maintenance"])
logger = get_logger(__name__)


class CleanupOldCustomersRequest(BaseModel):
    merchant_id: str
    worker_names: list[str] | None = None


@router.get("/stats")
async def data_statistics(worker_name: str | None = Query(None)) -> dict[str, Any]:
    return asdict(maintenance.get_data_statistics(worker_name))


@router.get("/orphaned-workers")
async def orphaned_workers() -> list[dict[str, Any]]:
    return [asdict(worker) for worker in maintenance.get_orphaned_workers()]


@router.delete("/orphaned-workers/{worker_name}")
async def delete_orphaned_worker(worker_name: str) -> dict[str, Any]:
    """Remove a worker's events across all merchants."""
    try:
        result = maintenance.delete_orphaned_worker_data(worker_name)
    except CampaignPathError as e:
        raise http_error(e) from None
    logger.info(
        "Deleted data of worker %s: %d emails, %d merchants removed",
        worker_name,
        result.emails_deleted,
        result.merchants_deleted,
    )
    return asdict(result)


@router.delete("/merchants/{merchant_id}/workers/{worker_name}")
async def delete_merchant_worker_data(merchant_id: str, worker_name: str) -> dict[str, Any]:
    try:
        result = maintenance.delete_merchant_data(merchant_id, worker_name)
    except CampaignPathError as e:
        raise http_error(e) from None
    if not result.success:
        raise result_error(result.error_kind, result.reason)
    return asdict(result)


@router.post("/cleanup/old-customers")
async def cleanup_old_customers(request: CleanupOldCustomersRequest) -> dict[str, Any]:
    """Drop journeys of users not classified as new (events are kept)."""
    workers = [name.strip() for name in request.worker_names or [] if name.strip()] or None
    return asdict(maintenance.cleanup_old_customer_paths(request.merchant_id, workers))


@router.post("/cleanup/ignored")
async def cleanup_ignored() -> dict[str, Any]:
    return asdict(maintenance.cleanup_ignored_merchant_data())


@router.post("/cleanup/pending")
async def cleanup_pending(
    days: int = Query(PENDING_DATA_RETENTION_DAYS, ge=0, le=3650),
) -> dict[str, Any]:
    try:
        return asdict(maintenance.cleanup_old_pending_data(days))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
