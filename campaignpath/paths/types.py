"""
Module: types
Purpose: Result and view types for path building, graph analytics and
classification.
Dependencies: campaignpath.errors (ErrorKind only)

Expected conditions (unparseable sender, unknown merchant, ignored merchant)
come back as result objects with success=False and an ErrorKind, so callers
have to branch on them instead of catching exceptions.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from campaignpath.errors import CampaignPathError, ErrorKind, error_for

# ---------------------------------------------------------------------------
# Path building
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PathEntry:
    """A campaign's first appearance in one recipient's journey."""

    recipient: str
    campaign_id: str
    sequence_order: int
    first_received_at: str


@dataclass(frozen=True)
class PathRebuildOptions:
    """Scope of a rebuild. None or empty worker_names means every worker."""

    worker_names: frozenset[str] | None = None

    @classmethod
    def for_workers(cls, worker_names: Iterable[str] | None) -> PathRebuildOptions:
        names = frozenset(name for name in (worker_names or ()) if name)
        return cls(worker_names=names or None)


class TrackStatus(str, Enum):
    """Outcome of tracking one email."""

    TRACKED = "tracked"
    SKIPPED = "skipped"
    REJECTED = "rejected"


@dataclass
class TrackResult:
    """Result of track_event / track_event_selective."""

    success: bool
    status: TrackStatus
    merchant_id: str | None = None
    campaign_id: str | None = None
    is_new_merchant: bool = False
    is_new_campaign: bool = False
    path_entry_created: bool = False
    sequence_order: int | None = None
    error_kind: ErrorKind | None = None
    reason: str | None = None

    @classmethod
    def tracked(
        cls,
        merchant_id: str,
        campaign_id: str,
        is_new_merchant: bool,
        is_new_campaign: bool,
        entry: PathEntry | None,
    ) -> TrackResult:
        return cls(
            success=True,
            status=TrackStatus.TRACKED,
            merchant_id=merchant_id,
            campaign_id=campaign_id,
            is_new_merchant=is_new_merchant,
            is_new_campaign=is_new_campaign,
            path_entry_created=entry is not None,
            sequence_order=entry.sequence_order if entry else None,
        )

    @classmethod
    def skipped(cls, merchant_id: str, reason: str) -> TrackResult:
        return cls(
            success=True, status=TrackStatus.SKIPPED, merchant_id=merchant_id, reason=reason
        )

    @classmethod
    def rejected(cls, kind: ErrorKind, reason: str) -> TrackResult:
        return cls(success=False, status=TrackStatus.REJECTED, error_kind=kind, reason=reason)


@dataclass
class PathRebuildResult:
    success: bool
    merchant_id: str
    paths_deleted: int = 0
    paths_created: int = 0
    recipients_processed: int = 0
    new_users: int = 0
    error_kind: ErrorKind | None = None
    reason: str | None = None

    @classmethod
    def completed(
        cls,
        merchant_id: str,
        paths_deleted: int,
        paths_created: int,
        recipients_processed: int,
        new_users: int,
    ) -> PathRebuildResult:
        return cls(
            success=True,
            merchant_id=merchant_id,
            paths_deleted=paths_deleted,
            paths_created=paths_created,
            recipients_processed=recipients_processed,
            new_users=new_users,
        )

    @classmethod
    def not_found(cls, merchant_id: str) -> PathRebuildResult:
        return cls(
            success=False,
            merchant_id=merchant_id,
            error_kind=ErrorKind.NOT_FOUND,
            reason="Merchant not found",
        )

    def unwrap(self) -> PathRebuildResult:
        """Return self, or raise the matching CampaignPathError on failure."""
        if not self.success:
            raise error_for(self.error_kind or ErrorKind.INTERNAL, self.reason or "Rebuild failed")
        return self


@dataclass
class RecipientPathStep:
    campaign_id: str
    subject: str
    sequence_order: int
    first_received_at: str
    tag: int
    is_valuable: bool
    is_root: bool
    is_new_user: bool | None


@dataclass
class RecipientPath:
    merchant_id: str
    recipient: str
    steps: list[RecipientPathStep] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Graph analytics
# ---------------------------------------------------------------------------


@dataclass
class LevelCampaign:
    campaign_id: str
    subject: str
    recipient_count: int
    percentage: float
    is_root: bool = False
    is_valuable: bool = False


@dataclass
class Level:
    level: int
    campaigns: list[LevelCampaign] = field(default_factory=list)


@dataclass
class LevelsResult:
    merchant_id: str
    total_recipients: int
    levels: list[Level] = field(default_factory=list)


@dataclass
class FlowNode:
    id: str  # "<campaign_id>:<level>"
    campaign_id: str
    subject: str
    level: int
    user_count: int
    percentage: float
    is_root: bool = False
    is_valuable: bool = False


@dataclass
class FlowEdge:
    id: str  # "<from node id>-><to node id>"
    from_node: str
    to_node: str
    from_campaign_id: str
    to_campaign_id: str
    user_count: int
    percentage: float


@dataclass
class FlowResult:
    merchant_id: str
    start_campaign_id: str | None
    baseline_recipients: int
    nodes: list[FlowNode] = field(default_factory=list)
    edges: list[FlowEdge] = field(default_factory=list)


@dataclass
class Transition:
    from_campaign_id: str
    from_subject: str
    to_campaign_id: str
    to_subject: str
    user_count: int
    transition_ratio: float
    to_is_valuable: bool = False


@dataclass
class Branch:
    campaign_ids: list[str]
    subjects: list[str]
    user_count: int
    percentage: float
    has_valuable: bool = False

    @property
    def length(self) -> int:
        return len(self.campaign_ids)


@dataclass
class BranchAnalysis:
    merchant_id: str
    total_recipients: int
    min_path_length: int
    main_path_threshold: float
    main_paths: list[Branch] = field(default_factory=list)
    secondary_paths: list[Branch] = field(default_factory=list)
    valuable_paths: list[Branch] = field(default_factory=list)


@dataclass
class CampaignNeighbor:
    campaign_id: str
    subject: str
    user_count: int


@dataclass
class ValuableCampaignAnalysis:
    campaign_id: str
    subject: str
    tag: int
    dag_level: int
    recipient_count: int
    percentage: float
    predecessors: list[CampaignNeighbor] = field(default_factory=list)
    successors: list[CampaignNeighbor] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass
class ClassificationResult:
    merchant_id: str
    recipients_processed: int
    new_users: int
    root_campaigns: int

    @property
    def old_users(self) -> int:
        return self.recipients_processed - self.new_users


@dataclass
class RootCampaign:
    campaign_id: str
    subject: str
    is_root: bool
    is_root_candidate: bool
    new_user_count: int
    root_candidate_reason: str | None = None


@dataclass
class UserTypeStats:
    total_recipients: int
    new_users: int
    old_users: int

    @classmethod
    def from_counts(cls, total: int, new: int) -> UserTypeStats:
        return cls(total_recipients=total, new_users=new, old_users=total - new)


@dataclass
class CampaignCoverage:
    campaign_id: str
    subject: str
    tag: int
    is_valuable: bool
    is_root: bool
    level: int
    new_user_count: int
    old_user_count: int
    total_user_count: int
    new_user_coverage: float
    old_user_coverage: float


@dataclass
class PathAnalysis:
    merchant_id: str
    root_campaigns: list[RootCampaign]
    user_stats: UserTypeStats
    level_stats: list[CampaignCoverage]
    transitions: list[Transition]
    valuable_analysis: list[ValuableCampaignAnalysis]
    old_user_stats: list[CampaignCoverage]


@dataclass
class SetRootResult:
    success: bool
    campaign_id: str
    is_root: bool = False
    classification: ClassificationResult | None = None
    error_kind: ErrorKind | None = None
    reason: str | None = None

    @classmethod
    def updated(
        cls, campaign_id: str, is_root: bool, classification: ClassificationResult
    ) -> SetRootResult:
        return cls(
            success=True,
            campaign_id=campaign_id,
            is_root=is_root,
            classification=classification,
        )

    @classmethod
    def not_found(cls, campaign_id: str) -> SetRootResult:
        return cls(
            success=False,
            campaign_id=campaign_id,
            error_kind=ErrorKind.NOT_FOUND,
            reason="Campaign not found",
        )

    def unwrap(self) -> SetRootResult:
        if not self.success:
            error: CampaignPathError = error_for(
                self.error_kind or ErrorKind.INTERNAL, self.reason or "Update failed"
            )
            raise error
        return self
