"""
Campaign path endpoints: email tracking, merchants, campaigns and the
merchant-level journey analytics.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from campaignpath.api.dependencies import http_error, result_error
from campaignpath.campaigns.repository import CampaignRepository, MerchantRepository
from campaignpath.campaigns.types import MAX_TAG, MIN_TAG, Campaign, Merchant, MerchantAnalysisStatus
from campaignpath.config import (
    API_LIST_LIMIT_DEFAULT,
    API_LIST_LIMIT_MAX,
    BRANCH_MAIN_PATH_THRESHOLD,
    BRANCH_MIN_PATH_LENGTH,
    DEFAULT_WORKER_NAME,
)
from campaignpath.errors import CampaignPathError
from campaignpath.observability.logging import get_logger
from campaignpath.paths import graph
from campaignpath.paths.builder import (
    get_recipient_path,
    rebuild_paths,
    track_event,
    track_event_selective,
)
from campaignpath.paths.classification import (
    detect_root_candidates,
    get_campaign_coverage,
    get_path_analysis,
    get_root_campaigns,
    get_user_type_stats,
    recalculate_all_new_users,
    set_root_campaign,
)
from campaignpath.paths.types import PathRebuildOptions
from campaignpath.utils.error_sanitizer import sanitize_error_message

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])
logger = get_logger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================


class TrackEmailRequest(BaseModel):
    """One delivered email as reported by a worker instance."""

    sender: str = Field(min_length=1)
    subject: str
    recipient: str = Field(min_length=1)
    received_at: str | None = None
    worker_name: str = DEFAULT_WORKER_NAME
    skip_ignored: bool = False

    @field_validator("recipient")
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("recipient must not be blank")
        return v.strip()


class TrackEmailResponse(BaseModel):
    status: str
    merchant_id: str | None
    campaign_id: str | None
    is_new_merchant: bool
    is_new_campaign: bool
    path_entry_created: bool
    sequence_order: int | None
    reason: str | None = None


class MerchantResponse(BaseModel):
    id: str
    domain: str
    display_name: str | None
    note: str | None
    analysis_status: str
    total_campaigns: int
    total_emails: int
    created_at: str
    updated_at: str

    @classmethod
    def from_merchant(cls, merchant: Merchant) -> MerchantResponse:
        return cls(
            id=merchant.id,
            domain=merchant.domain,
            display_name=merchant.display_name,
            note=merchant.note,
            analysis_status=merchant.analysis_status.value,
            total_campaigns=merchant.total_campaigns,
            total_emails=merchant.total_emails,
            created_at=merchant.created_at,
            updated_at=merchant.updated_at,
        )


class CampaignResponse(BaseModel):
    id: str
    merchant_id: str
    subject: str
    total_emails: int
    unique_recipients: int
    is_root: bool
    is_root_candidate: bool
    root_candidate_reason: str | None
    tag: int
    tag_note: str | None
    is_valuable: bool
    first_seen_at: str
    last_seen_at: str

    @classmethod
    def from_campaign(cls, campaign: Campaign) -> CampaignResponse:
        return cls(
            id=campaign.id,
            merchant_id=campaign.merchant_id,
            subject=campaign.subject,
            total_emails=campaign.total_emails,
            unique_recipients=campaign.unique_recipients,
            is_root=campaign.is_root,
            is_root_candidate=campaign.is_root_candidate,
            root_candidate_reason=campaign.root_candidate_reason,
            tag=campaign.tag,
            tag_note=campaign.tag_note,
            is_valuable=campaign.is_valuable,
            first_seen_at=campaign.first_seen_at,
            last_seen_at=campaign.last_seen_at,
        )


class MerchantStatusRequest(BaseModel):
    status: MerchantAnalysisStatus


class RebuildPathsRequest(BaseModel):
    worker_names: list[str] | None = None


class SetRootRequest(BaseModel):
    is_root: bool


class SetTagRequest(BaseModel):
    tag: int = Field(ge=MIN_TAG, le=MAX_TAG)
    note: str | None = None


# ============================================================================
# Helpers
# ============================================================================


def parse_workers(workers: str | None) -> list[str] | None:
    """Comma-separated worker names; None or blank means every worker."""
    if not workers:
        return None
    names = [name.strip() for name in workers.split(",") if name.strip()]
    return names or None


def _require_merchant(merchant_id: str) -> Merchant:
    merchant = MerchantRepository.get_by_id(merchant_id)
    if merchant is None:
        raise HTTPException(status_code=404, detail="Merchant not found")
    return merchant


WorkersQuery = Query(None, description="Comma-separated worker names (default: all workers)")


# ============================================================================
# Tracking
# ============================================================================


@router.post("/track", response_model=TrackEmailResponse)
async def track_email(request: TrackEmailRequest) -> TrackEmailResponse:
    """
    Record one delivered email.

    With skip_ignored, emails of ignored merchants are only counted.
    """
    try:
        track = track_event_selective if request.skip_ignored else track_event
        result = track(
            request.sender,
            request.subject,
            request.recipient,
            request.received_at,
            request.worker_name,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=sanitize_error_message(str(e), 400)) from None
    except CampaignPathError as e:
        raise http_error(e) from None

    if not result.success:
        raise result_error(result.error_kind, result.reason)

    return TrackEmailResponse(
        status=result.status.value,
        merchant_id=result.merchant_id,
        campaign_id=result.campaign_id,
        is_new_merchant=result.is_new_merchant,
        is_new_campaign=result.is_new_campaign,
        path_entry_created=result.path_entry_created,
        sequence_order=result.sequence_order,
        reason=result.reason,
    )


# ============================================================================
# Merchants
# ============================================================================


@router.get("/merchants", response_model=list[MerchantResponse])
async def list_merchants(
    status: MerchantAnalysisStatus | None = Query(None),
    worker_name: str | None = Query(None),
    limit: int = Query(API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
    offset: int = Query(0, ge=0),
) -> list[MerchantResponse]:
    merchants = MerchantRepository.list_merchants(status, worker_name, limit, offset)
    return [MerchantResponse.from_merchant(m) for m in merchants]


@router.get("/merchants/by-worker")
async def list_merchants_by_worker(worker_name: str | None = Query(None)) -> list[dict[str, Any]]:
    """Campaign and email counts of each merchant per worker instance."""
    return [asdict(summary) for summary in MerchantRepository.list_by_worker(worker_name)]


@router.get("/merchants/{merchant_id}", response_model=MerchantResponse)
async def get_merchant(merchant_id: str) -> MerchantResponse:
    return MerchantResponse.from_merchant(_require_merchant(merchant_id))


@router.put("/merchants/{merchant_id}/status", response_model=MerchantResponse)
async def update_merchant_status(
    merchant_id: str, request: MerchantStatusRequest
) -> MerchantResponse:
    merchant = MerchantRepository.set_analysis_status(merchant_id, request.status)
    if merchant is None:
        raise HTTPException(status_code=404, detail="Merchant not found")
    return MerchantResponse.from_merchant(merchant)


@router.get("/merchants/{merchant_id}/campaigns", response_model=list[CampaignResponse])
async def list_campaigns(
    merchant_id: str, workers: str | None = WorkersQuery
) -> list[CampaignResponse]:
    _require_merchant(merchant_id)
    campaigns = CampaignRepository.list_for_merchant(merchant_id, parse_workers(workers))
    return [CampaignResponse.from_campaign(c) for c in campaigns]


# ============================================================================
# Journey analytics
# ============================================================================


@router.get("/merchants/{merchant_id}/levels")
async def get_levels(merchant_id: str) -> dict[str, Any]:
    """Campaign popularity per journey position."""
    _require_merchant(merchant_id)
    return asdict(graph.get_levels(merchant_id))


@router.get("/merchants/{merchant_id}/flow")
async def get_flow(
    merchant_id: str, start_campaign_id: str | None = Query(None)
) -> dict[str, Any]:
    """Flow graph of journeys, optionally cut at a starting campaign."""
    _require_merchant(merchant_id)
    return asdict(graph.get_flow(merchant_id, start_campaign_id))


@router.get("/merchants/{merchant_id}/transitions")
async def get_transitions(
    merchant_id: str, workers: str | None = WorkersQuery
) -> list[dict[str, Any]]:
    _require_merchant(merchant_id)
    return [asdict(t) for t in graph.get_transitions(merchant_id, parse_workers(workers))]


@router.get("/merchants/{merchant_id}/branches")
async def get_branches(
    merchant_id: str,
    min_path_length: int = Query(BRANCH_MIN_PATH_LENGTH, ge=1),
    main_path_threshold: float = Query(BRANCH_MAIN_PATH_THRESHOLD, ge=0, le=100),
) -> dict[str, Any]:
    _require_merchant(merchant_id)
    return asdict(graph.get_branch_analysis(merchant_id, min_path_length, main_path_threshold))


@router.get("/merchants/{merchant_id}/valuable")
async def get_valuable_analysis(
    merchant_id: str, workers: str | None = WorkersQuery
) -> list[dict[str, Any]]:
    _require_merchant(merchant_id)
    analysis = graph.get_valuable_campaigns_analysis(merchant_id, parse_workers(workers))
    return [asdict(item) for item in analysis]


@router.get("/merchants/{merchant_id}/path-analysis")
async def path_analysis(merchant_id: str, workers: str | None = WorkersQuery) -> dict[str, Any]:
    _require_merchant(merchant_id)
    return asdict(get_path_analysis(merchant_id, parse_workers(workers)))


@router.get("/merchants/{merchant_id}/user-stats")
async def user_stats(merchant_id: str, workers: str | None = WorkersQuery) -> dict[str, Any]:
    _require_merchant(merchant_id)
    return asdict(get_user_type_stats(merchant_id, parse_workers(workers)))


@router.get("/merchants/{merchant_id}/coverage")
async def campaign_coverage(
    merchant_id: str, workers: str | None = WorkersQuery
) -> list[dict[str, Any]]:
    _require_merchant(merchant_id)
    return [asdict(c) for c in get_campaign_coverage(merchant_id, parse_workers(workers))]


@router.get("/merchants/{merchant_id}/roots")
async def root_campaigns(
    merchant_id: str, workers: str | None = WorkersQuery
) -> list[dict[str, Any]]:
    _require_merchant(merchant_id)
    return [asdict(r) for r in get_root_campaigns(merchant_id, parse_workers(workers))]


@router.get("/merchants/{merchant_id}/recipients/{recipient}/path")
async def recipient_path(merchant_id: str, recipient: str) -> dict[str, Any]:
    _require_merchant(merchant_id)
    return asdict(get_recipient_path(merchant_id, recipient))


# ============================================================================
# Maintenance of derived state
# ============================================================================


@router.post("/merchants/{merchant_id}/rebuild-paths")
async def rebuild_merchant_paths(
    merchant_id: str, request: RebuildPathsRequest | None = None
) -> dict[str, Any]:
    """Recompute journeys from the event store, optionally from some workers only."""
    options = PathRebuildOptions.for_workers(request.worker_names if request else None)
    try:
        result = rebuild_paths(merchant_id, options)
    except CampaignPathError as e:
        raise http_error(e) from None
    if not result.success:
        raise result_error(result.error_kind, result.reason)
    logger.info(
        "Rebuilt paths for merchant %s: %d entries", merchant_id, result.paths_created
    )
    return asdict(result)


@router.post("/merchants/{merchant_id}/detect-roots")
async def detect_roots(merchant_id: str) -> dict[str, Any]:
    _require_merchant(merchant_id)
    return {"merchant_id": merchant_id, "candidates_flagged": detect_root_candidates(merchant_id)}


@router.post("/merchants/{merchant_id}/recalculate-users")
async def recalculate_users(merchant_id: str) -> dict[str, Any]:
    _require_merchant(merchant_id)
    try:
        result = recalculate_all_new_users(merchant_id)
    except CampaignPathError as e:
        raise http_error(e) from None
    return {**asdict(result), "old_users": result.old_users}


# ============================================================================
# Campaigns
# ============================================================================


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(campaign_id: str) -> CampaignResponse:
    campaign = CampaignRepository.get_by_id(campaign_id)
    if campaign is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return CampaignResponse.from_campaign(campaign)


@router.put("/{campaign_id}/root")
async def update_root(campaign_id: str, request: SetRootRequest) -> dict[str, Any]:
    """Confirm or withdraw a root campaign; the merchant's users are reclassified."""
    result = set_root_campaign(campaign_id, request.is_root)
    if not result.success:
        raise result_error(result.error_kind, result.reason)
    return asdict(result)


@router.put("/{campaign_id}/tag", response_model=CampaignResponse)
async def update_tag(campaign_id: str, request: SetTagRequest) -> CampaignResponse:
    try:
        campaign = CampaignRepository.set_tag(campaign_id, request.tag, request.note)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=sanitize_error_message(str(e), 400)) from None
    if campaign is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return CampaignResponse.from_campaign(campaign)
