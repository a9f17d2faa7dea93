"""
Module: types
Purpose: Analysis project records, cached-result views and queue/progress types.
Dependencies: campaignpath.campaigns.types (tag helpers only)

An analysis project scopes path analysis to one merchant and a chosen set of
worker instances, with its own confirmed roots and campaign tags.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from campaignpath.campaigns.types import HIGH_VALUE_TAG, is_valuable_tag
from campaignpath.config import DEFAULT_WORKER_NAME


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


def decode_worker_names(raw: str | None) -> list[str]:
    """worker_names column is a JSON list; anything unreadable means the default worker."""
    if not raw:
        return [DEFAULT_WORKER_NAME]
    try:
        names = json.loads(raw)
    except json.JSONDecodeError:
        return [DEFAULT_WORKER_NAME]
    if not isinstance(names, list):
        return [DEFAULT_WORKER_NAME]
    return [str(name) for name in names if name] or [DEFAULT_WORKER_NAME]


def encode_worker_names(names: list[str] | None) -> str:
    cleaned = sorted({name.strip() for name in (names or []) if name and name.strip()})
    return json.dumps(cleaned or [DEFAULT_WORKER_NAME])


@dataclass
class AnalysisProject:
    id: str
    name: str
    merchant_id: str
    worker_names: list[str]
    status: ProjectStatus
    created_at: str
    updated_at: str
    note: str | None = None
    last_analysis_time: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row | dict[str, Any]) -> AnalysisProject:
        return cls(
            id=row["id"],
            name=row["name"],
            merchant_id=row["merchant_id"],
            worker_names=decode_worker_names(row["worker_names"]),
            status=ProjectStatus(row["status"] or "active"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            note=row["note"],
            last_analysis_time=row["last_analysis_time"],
        )


@dataclass
class ProjectRootCampaign:
    campaign_id: str
    subject: str
    is_confirmed: bool
    created_at: str


@dataclass
class ProjectCampaignTag:
    project_id: str
    campaign_id: str
    tag: int
    created_at: str
    updated_at: str
    tag_note: str | None = None

    @property
    def is_valuable(self) -> bool:
        return is_valuable_tag(self.tag)

    @classmethod
    def from_row(cls, row: sqlite3.Row | dict[str, Any]) -> ProjectCampaignTag:
        return cls(
            project_id=row["project_id"],
            campaign_id=row["campaign_id"],
            tag=row["tag"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            tag_note=row["tag_note"],
        )


@dataclass
class ProjectCampaign:
    """A campaign in a project's worker scope, with project-level overrides applied."""

    campaign_id: str
    subject: str
    total_emails: int
    unique_recipients: int
    campaign_tag: int
    effective_tag: int
    has_project_tag: bool
    is_project_root: bool
    project_tag: int | None = None
    tag_note: str | None = None

    @property
    def is_valuable(self) -> bool:
        return is_valuable_tag(self.effective_tag)


@dataclass
class ProjectEdge:
    from_campaign_id: str
    from_subject: str
    to_campaign_id: str
    to_subject: str
    user_count: int


@dataclass
class ProjectUserStats:
    total_recipients: int
    new_users: int
    old_users: int
    total_events: int
    total_edges: int
    last_analysis_time: str | None = None


@dataclass
class ValuableStats:
    valuable_campaign_count: int
    high_value_campaign_count: int
    valuable_user_reach: int
    valuable_conversion_rate: float

    @classmethod
    def from_tags(cls, effective_tags: list[int], reach: int, new_users: int) -> ValuableStats:
        rate = round(reach / new_users * 100, 2) if new_users else 0.0
        return cls(
            valuable_campaign_count=sum(1 for tag in effective_tags if is_valuable_tag(tag)),
            high_value_campaign_count=sum(1 for tag in effective_tags if tag == HIGH_VALUE_TAG),
            valuable_user_reach=reach,
            valuable_conversion_rate=rate,
        )


# ---------------------------------------------------------------------------
# Analysis run
# ---------------------------------------------------------------------------


class AnalysisPhase(str, Enum):
    INITIALIZING = "initializing"
    BUILDING_PATHS = "building_paths"
    CLASSIFYING_USERS = "classifying_users"
    BUILDING_EDGES = "building_edges"
    COMPLETE = "complete"


@dataclass(frozen=True)
class AnalysisProgress:
    phase: AnalysisPhase
    progress: int  # 0-100
    message: str
    processed: int | None = None
    total: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


@dataclass
class AnalysisResult:
    project_id: str
    total_recipients: int
    new_users: int
    old_users: int
    events_created: int
    edges_created: int
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QueueStatus:
    is_processing: bool
    current_project_id: str | None
    queue_length: int
    queued_project_ids: list[str] = field(default_factory=list)
