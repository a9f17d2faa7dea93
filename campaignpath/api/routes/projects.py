"""
Analysis project endpoints.

Provides project CRUD, project-level roots and tags, cached analysis results
and the analysis trigger, which streams progress as Server-Sent Events.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from campaignpath.api.dependencies import get_analysis_queue, http_error
from campaignpath.campaigns.types import MAX_TAG, MIN_TAG
from campaignpath.config import API_LIST_LIMIT_DEFAULT, API_LIST_LIMIT_MAX
from campaignpath.errors import CampaignPathError
from campaignpath.observability.logging import get_logger
from campaignpath.observability.telemetry import counter
from campaignpath.projects.progress import ProgressChannel
from campaignpath.projects.queue import AnalysisQueue
from campaignpath.projects.repository import ProjectRepository
from campaignpath.projects.types import AnalysisProject, ProjectStatus
from campaignpath.utils.error_sanitizer import sanitize_error_message

router = APIRouter(prefix="/api/projects", tags=["projects"])
logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ============================================================================
# Request/Response Models
# ============================================================================


def _clean_worker_names(v: list[str] | None) -> list[str] | None:
    if v is None:
        return None
    return [name.strip() for name in v if name and name.strip()]


class CreateProjectRequest(BaseModel):
    merchant_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=200)
    worker_names: list[str] = Field(default_factory=list)
    note: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must not be blank")
        return v.strip()

    @field_validator("worker_names")
    @classmethod
    def validate_workers(cls, v: list[str]) -> list[str]:
        return _clean_worker_names(v) or []


class UpdateProjectRequest(BaseModel):
    """Fields to change; an explicit "note": null clears the note."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    status: ProjectStatus | None = None
    worker_names: list[str] | None = None
    note: str | None = None

    @field_validator("worker_names")
    @classmethod
    def validate_workers(cls, v: list[str] | None) -> list[str] | None:
        return _clean_worker_names(v)


class ProjectResponse(BaseModel):
    id: str
    name: str
    merchant_id: str
    worker_names: list[str]
    status: str
    note: str | None
    last_analysis_time: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_project(cls, project: AnalysisProject) -> ProjectResponse:
        return cls(
            id=project.id,
            name=project.name,
            merchant_id=project.merchant_id,
            worker_names=project.worker_names,
            status=project.status.value,
            note=project.note,
            last_analysis_time=project.last_analysis_time,
            created_at=project.created_at,
            updated_at=project.updated_at,
        )


class SetProjectRootRequest(BaseModel):
    is_confirmed: bool = True


class SetProjectTagRequest(BaseModel):
    tag: int = Field(ge=MIN_TAG, le=MAX_TAG)
    note: str | None = None


def _require_project(project_id: str) -> AnalysisProject:
    project = ProjectRepository.get_by_id(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


# ============================================================================
# Queue
# ============================================================================


@router.get("/queue/status")
async def queue_status(queue: AnalysisQueue = Depends(get_analysis_queue)) -> dict[str, Any]:
    return asdict(queue.get_status())


@router.post("/queue/clear")
async def clear_queue(queue: AnalysisQueue = Depends(get_analysis_queue)) -> dict[str, Any]:
    """Withdraw every analysis that has not started yet."""
    return {"cleared": queue.clear_queue()}


# ============================================================================
# Project CRUD
# ============================================================================


@router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(request: CreateProjectRequest) -> ProjectResponse:
    try:
        project = ProjectRepository.create(
            merchant_id=request.merchant_id,
            name=request.name,
            worker_names=request.worker_names,
            note=request.note,
        )
    except CampaignPathError as e:
        raise http_error(e) from None
    return ProjectResponse.from_project(project)


@router.get("", response_model=list[ProjectResponse])
async def list_projects(
    status: ProjectStatus | None = Query(None),
    merchant_id: str | None = Query(None),
    limit: int = Query(API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
    offset: int = Query(0, ge=0),
) -> list[ProjectResponse]:
    projects = ProjectRepository.list_projects(status, merchant_id, limit, offset)
    return [ProjectResponse.from_project(p) for p in projects]


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: str) -> ProjectResponse:
    return ProjectResponse.from_project(_require_project(project_id))


@router.put("/{project_id}", response_model=ProjectResponse)
async def update_project(project_id: str, request: UpdateProjectRequest) -> ProjectResponse:
    changes: dict[str, Any] = {
        "name": request.name,
        "status": request.status,
        "worker_names": request.worker_names,
    }
    if "note" in request.model_fields_set:
        changes["note"] = request.note

    project = ProjectRepository.update(project_id, **changes)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return ProjectResponse.from_project(project)


@router.delete("/{project_id}", status_code=204)
async def delete_project(project_id: str) -> Response:
    if not ProjectRepository.delete(project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    return Response(status_code=204)


# ============================================================================
# Project roots and tags
# ============================================================================


@router.get("/{project_id}/roots")
async def list_project_roots(project_id: str) -> list[dict[str, Any]]:
    _require_project(project_id)
    return [asdict(root) for root in ProjectRepository.get_root_campaigns(project_id)]


@router.put("/{project_id}/roots/{campaign_id}")
async def set_project_root(
    project_id: str, campaign_id: str, request: SetProjectRootRequest | None = None
) -> dict[str, Any]:
    is_confirmed = request.is_confirmed if request else True
    try:
        root = ProjectRepository.set_root_campaign(project_id, campaign_id, is_confirmed)
    except CampaignPathError as e:
        raise http_error(e) from None
    return asdict(root)


@router.delete("/{project_id}/roots/{campaign_id}", status_code=204)
async def remove_project_root(project_id: str, campaign_id: str) -> Response:
    if not ProjectRepository.remove_root_campaign(project_id, campaign_id):
        raise HTTPException(status_code=404, detail="Project root not found")
    return Response(status_code=204)


@router.get("/{project_id}/tags")
async def list_project_tags(project_id: str) -> list[dict[str, Any]]:
    _require_project(project_id)
    return [
        {**asdict(tag), "is_valuable": tag.is_valuable}
        for tag in ProjectRepository.list_campaign_tags(project_id)
    ]


@router.put("/{project_id}/tags/{campaign_id}")
async def set_project_tag(
    project_id: str, campaign_id: str, request: SetProjectTagRequest
) -> dict[str, Any]:
    try:
        tag = ProjectRepository.set_campaign_tag(project_id, campaign_id, request.tag, request.note)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=sanitize_error_message(str(e), 400)) from None
    except CampaignPathError as e:
        raise http_error(e) from None
    return {**asdict(tag), "is_valuable": tag.is_valuable}


@router.delete("/{project_id}/tags/{campaign_id}", status_code=204)
async def remove_project_tag(project_id: str, campaign_id: str) -> Response:
    if not ProjectRepository.remove_campaign_tag(project_id, campaign_id):
        raise HTTPException(status_code=404, detail="Project tag not found")
    return Response(status_code=204)


@router.get("/{project_id}/campaigns")
async def list_project_campaigns(project_id: str) -> list[dict[str, Any]]:
    """Campaigns in the project's worker scope with effective tags."""
    try:
        campaigns = ProjectRepository.list_campaigns_with_tags(project_id)
    except CampaignPathError as e:
        raise http_error(e) from None
    return [{**asdict(c), "is_valuable": c.is_valuable} for c in campaigns]


# ============================================================================
# Cached results
# ============================================================================


@router.get("/{project_id}/edges")
async def project_edges(project_id: str) -> list[dict[str, Any]]:
    _require_project(project_id)
    return [asdict(edge) for edge in ProjectRepository.get_path_edges(project_id)]


@router.get("/{project_id}/stats")
async def project_stats(project_id: str) -> dict[str, Any]:
    stats = ProjectRepository.get_user_stats(project_id)
    if stats is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return asdict(stats)


@router.get("/{project_id}/valuable-stats")
async def project_valuable_stats(project_id: str) -> dict[str, Any]:
    try:
        stats = ProjectRepository.calculate_valuable_stats(project_id)
    except CampaignPathError as e:
        raise http_error(e) from None
    return asdict(stats)


# ============================================================================
# Analysis
# ============================================================================


@router.post("/{project_id}/analyze")
async def analyze_project(
    project_id: str, queue: AnalysisQueue = Depends(get_analysis_queue)
) -> StreamingResponse:
    """
    Queue a project analysis and stream its progress.

    Events: "progress" (repeated), then exactly one of "complete" or "error".
    A project that is already running or queued is refused with 409 before
    the stream starts.
    """
    _require_project(project_id)
    channel = ProgressChannel(project_id)
    try:
        future = queue.enqueue(project_id, channel)
    except CampaignPathError as e:
        raise http_error(e) from None
    channel.attach(future)

    counter("api.analysis_streams")
    logger.info("Streaming analysis progress for project %s", project_id)
    return StreamingResponse(channel.events(), media_type="text/event-stream", headers=SSE_HEADERS)
