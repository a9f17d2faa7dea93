"""
Graph analytics over recipient paths.

The compute_* functions are pure: they take loaded paths (recipient -> ordered
campaign ids) plus the merchant's campaign index and never touch storage, so
the project orchestrator can run them on in-memory scoped paths too. The get_*
wrappers load merchant-global paths and delegate.

Levels are raw path positions: a campaign at level 3 is the third distinct
campaign that recipient received, not a depth in a campaign graph.
"""

from __future__ import annotations

from collections import Counter, defaultdict, deque
from collections.abc import Collection, Iterable, Mapping, Sequence

from campaignpath.campaigns.types import Campaign
from campaignpath.config import (
    BRANCH_MAIN_PATH_LIMIT,
    BRANCH_MAIN_PATH_THRESHOLD,
    BRANCH_MIN_PATH_LENGTH,
    BRANCH_SECONDARY_MIN_PERCENTAGE,
    BRANCH_SECONDARY_PATH_LIMIT,
    BRANCH_VALUABLE_PATH_LIMIT,
    VALUABLE_NEIGHBOR_LIMIT,
)
from campaignpath.infrastructure.database import get_db_connection
from campaignpath.observability.logging import get_logger
from campaignpath.observability.telemetry import time_block
from campaignpath.paths.repository import PathRepository
from campaignpath.paths.types import (
    Branch,
    BranchAnalysis,
    CampaignNeighbor,
    FlowEdge,
    FlowNode,
    FlowResult,
    Level,
    LevelCampaign,
    LevelsResult,
    Transition,
    ValuableCampaignAnalysis,
)

logger = get_logger(__name__)

Paths = Mapping[str, Sequence[str]]


def _percentage(count: int, total: int) -> float:
    return count / total * 100 if total else 0.0


def _subject(campaigns: Mapping[str, Campaign], campaign_id: str) -> str:
    campaign = campaigns.get(campaign_id)
    return campaign.subject if campaign else ""


def _is_valuable(campaigns: Mapping[str, Campaign], campaign_id: str) -> bool:
    campaign = campaigns.get(campaign_id)
    return bool(campaign and campaign.is_valuable)


def _is_root(campaigns: Mapping[str, Campaign], campaign_id: str) -> bool:
    campaign = campaigns.get(campaign_id)
    return bool(campaign and campaign.is_root)


# ---------------------------------------------------------------------------
# Pure computations
# ---------------------------------------------------------------------------


def compute_levels(
    merchant_id: str, paths: Paths, campaigns: Mapping[str, Campaign]
) -> LevelsResult:
    """Recipients per (position, campaign), as a share of all recipients with a path."""
    total = sum(1 for path in paths.values() if path)
    counts: dict[int, Counter[str]] = defaultdict(Counter)
    for path in paths.values():
        for position, campaign_id in enumerate(path, start=1):
            counts[position][campaign_id] += 1

    levels: list[Level] = []
    for position in sorted(counts):
        ranked = sorted(counts[position].items(), key=lambda item: (-item[1], item[0]))
        levels.append(
            Level(
                level=position,
                campaigns=[
                    LevelCampaign(
                        campaign_id=campaign_id,
                        subject=_subject(campaigns, campaign_id),
                        recipient_count=count,
                        percentage=_percentage(count, total),
                        is_root=_is_root(campaigns, campaign_id),
                        is_valuable=_is_valuable(campaigns, campaign_id),
                    )
                    for campaign_id, count in ranked
                ],
            )
        )
    return LevelsResult(merchant_id=merchant_id, total_recipients=total, levels=levels)


def compute_flow(
    merchant_id: str,
    paths: Paths,
    campaigns: Mapping[str, Campaign],
    start_campaign_id: str | None = None,
) -> FlowResult:
    """
    Flow graph of journeys, optionally starting at one campaign.

    Each baseline path is cut at the start campaign and re-indexed from level 1,
    so node and edge percentages are shares of the recipients who reached it.
    """
    sliced: list[Sequence[str]] = []
    for path in paths.values():
        if not path:
            continue
        if start_campaign_id is None:
            sliced.append(path)
        elif start_campaign_id in path:
            sliced.append(path[path.index(start_campaign_id) :])

    baseline = len(sliced)
    node_counts: Counter[tuple[str, int]] = Counter()
    edge_counts: Counter[tuple[str, int, str]] = Counter()
    for path in sliced:
        for level, campaign_id in enumerate(path, start=1):
            node_counts[(campaign_id, level)] += 1
            if level < len(path):
                edge_counts[(campaign_id, level, path[level])] += 1

    nodes = [
        FlowNode(
            id=f"{campaign_id}:{level}",
            campaign_id=campaign_id,
            subject=_subject(campaigns, campaign_id),
            level=level,
            user_count=count,
            percentage=_percentage(count, baseline),
            is_root=_is_root(campaigns, campaign_id),
            is_valuable=_is_valuable(campaigns, campaign_id),
        )
        for (campaign_id, level), count in node_counts.items()
    ]
    nodes.sort(key=lambda n: (n.level, -n.user_count, n.campaign_id))

    edges = []
    for (from_id, level, to_id), count in edge_counts.items():
        from_node = f"{from_id}:{level}"
        to_node = f"{to_id}:{level + 1}"
        edges.append(
            FlowEdge(
                id=f"{from_node}->{to_node}",
                from_node=from_node,
                to_node=to_node,
                from_campaign_id=from_id,
                to_campaign_id=to_id,
                user_count=count,
                percentage=_percentage(count, baseline),
            )
        )
    edges.sort(key=lambda e: (-e.user_count, e.id))

    return FlowResult(
        merchant_id=merchant_id,
        start_campaign_id=start_campaign_id,
        baseline_recipients=baseline,
        nodes=nodes,
        edges=edges,
    )


def count_transitions(paths: Paths) -> Counter[tuple[str, str]]:
    """Distinct recipients per consecutive (from, to) campaign pair."""
    pairs: Counter[tuple[str, str]] = Counter()
    for path in paths.values():
        # A campaign appears once per path, so each pair is counted once per recipient
        for from_id, to_id in zip(path, path[1:], strict=False):
            pairs[(from_id, to_id)] += 1
    return pairs


def compute_transitions(paths: Paths, campaigns: Mapping[str, Campaign]) -> list[Transition]:
    total = sum(1 for path in paths.values() if path)
    transitions = [
        Transition(
            from_campaign_id=from_id,
            from_subject=_subject(campaigns, from_id),
            to_campaign_id=to_id,
            to_subject=_subject(campaigns, to_id),
            user_count=count,
            transition_ratio=_percentage(count, total),
            to_is_valuable=_is_valuable(campaigns, to_id),
        )
        for (from_id, to_id), count in count_transitions(paths).items()
    ]
    transitions.sort(key=lambda t: (-t.user_count, t.from_campaign_id, t.to_campaign_id))
    return transitions


def compute_branches(
    merchant_id: str,
    paths: Paths,
    campaigns: Mapping[str, Campaign],
    min_path_length: int = BRANCH_MIN_PATH_LENGTH,
    main_path_threshold: float = BRANCH_MAIN_PATH_THRESHOLD,
) -> BranchAnalysis:
    """
    Group recipients by their full journey.

    Percentages are shares of all recipients, including those whose journey is
    shorter than min_path_length.
    """
    total = sum(1 for path in paths.values() if path)
    journeys: Counter[tuple[str, ...]] = Counter(
        tuple(path) for path in paths.values() if len(path) >= min_path_length
    )

    branches = [
        Branch(
            campaign_ids=list(journey),
            subjects=[_subject(campaigns, cid) for cid in journey],
            user_count=count,
            percentage=_percentage(count, total),
            has_valuable=any(_is_valuable(campaigns, cid) for cid in journey),
        )
        for journey, count in journeys.items()
    ]
    branches.sort(key=lambda b: (-b.user_count, b.campaign_ids))

    main_paths = [b for b in branches if b.percentage >= main_path_threshold]
    secondary_paths = [
        b
        for b in branches
        if BRANCH_SECONDARY_MIN_PERCENTAGE <= b.percentage < main_path_threshold
    ]
    valuable_paths = [b for b in branches if b.has_valuable]

    return BranchAnalysis(
        merchant_id=merchant_id,
        total_recipients=total,
        min_path_length=min_path_length,
        main_path_threshold=main_path_threshold,
        main_paths=main_paths[:BRANCH_MAIN_PATH_LIMIT],
        secondary_paths=secondary_paths[:BRANCH_SECONDARY_PATH_LIMIT],
        valuable_paths=valuable_paths[:BRANCH_VALUABLE_PATH_LIMIT],
    )


def calculate_dag_levels(
    transitions: Iterable[Transition | tuple[str, str]],
    roots: Collection[str] | None = None,
) -> dict[str, int]:
    """
    Topological level of every campaign in a transition graph.

    Starts from the given roots (or, when none of them appear in the graph,
    from campaigns without incoming transitions) at level 1; every other
    campaign sits one below its deepest predecessor. Campaigns that are never
    reached, including those on cycles, get level 1.
    """
    successors: dict[str, set[str]] = defaultdict(set)
    nodes: set[str] = set()
    for item in transitions:
        if isinstance(item, Transition):
            from_id, to_id = item.from_campaign_id, item.to_campaign_id
        else:
            from_id, to_id = item
        nodes.update((from_id, to_id))
        if from_id != to_id:
            successors[from_id].add(to_id)

    seeds = {node for node in (roots or ()) if node in nodes}
    if not seeds:
        has_incoming = {to_id for targets in successors.values() for to_id in targets}
        seeds = nodes - has_incoming

    in_degree: Counter[str] = Counter()
    for from_id, targets in successors.items():
        for to_id in targets:
            if to_id not in seeds:
                in_degree[to_id] += 1

    levels: dict[str, int] = {node: 1 for node in seeds}
    finalized: set[str] = set()
    queue = deque(sorted(seeds))
    while queue:
        current = queue.popleft()
        finalized.add(current)
        for to_id in sorted(successors.get(current, ())):
            if to_id in seeds:
                continue
            levels[to_id] = max(levels.get(to_id, 1), levels[current] + 1)
            in_degree[to_id] -= 1
            if in_degree[to_id] == 0:
                queue.append(to_id)

    return {node: levels[node] if node in finalized else 1 for node in nodes}


def compute_valuable_analysis(
    paths: Paths,
    campaigns: Mapping[str, Campaign],
    transitions: Sequence[Transition],
    dag_levels: Mapping[str, int] | None = None,
    is_valuable: Mapping[str, bool] | None = None,
) -> list[ValuableCampaignAnalysis]:
    """
    Where valuable campaigns sit in the journey graph.

    Args:
        is_valuable: Override of the campaign tags (project-level tags)
    """
    total = sum(1 for path in paths.values() if path)
    levels = dag_levels if dag_levels is not None else calculate_dag_levels(transitions)
    reach: Counter[str] = Counter(cid for path in paths.values() for cid in path)

    def valuable(campaign: Campaign) -> bool:
        if is_valuable is not None and campaign.id in is_valuable:
            return is_valuable[campaign.id]
        return campaign.is_valuable

    results = []
    for campaign in campaigns.values():
        if not valuable(campaign):
            continue
        predecessors = [
            CampaignNeighbor(t.from_campaign_id, t.from_subject, t.user_count)
            for t in transitions
            if t.to_campaign_id == campaign.id
        ]
        successors = [
            CampaignNeighbor(t.to_campaign_id, t.to_subject, t.user_count)
            for t in transitions
            if t.from_campaign_id == campaign.id
        ]
        results.append(
            ValuableCampaignAnalysis(
                campaign_id=campaign.id,
                subject=campaign.subject,
                tag=campaign.tag,
                dag_level=levels.get(campaign.id, 1),
                recipient_count=reach[campaign.id],
                percentage=_percentage(reach[campaign.id], total),
                predecessors=predecessors[:VALUABLE_NEIGHBOR_LIMIT],
                successors=successors[:VALUABLE_NEIGHBOR_LIMIT],
            )
        )

    results.sort(key=lambda v: (-v.recipient_count, v.dag_level, v.campaign_id))
    return results


# ---------------------------------------------------------------------------
# Merchant-level wrappers
# ---------------------------------------------------------------------------


def _load(
    merchant_id: str,
    worker_names: Collection[str] | None = None,
    new_users_only: bool = False,
) -> tuple[dict[str, list[str]], dict[str, Campaign]]:
    with get_db_connection() as conn:
        paths = PathRepository.load_paths(conn, merchant_id, worker_names, new_users_only)
        campaigns = PathRepository.load_campaigns(conn, merchant_id)
    return paths, campaigns


def get_levels(merchant_id: str) -> LevelsResult:
    with time_block("graph.levels.latency"):
        paths, campaigns = _load(merchant_id)
        return compute_levels(merchant_id, paths, campaigns)


def get_flow(merchant_id: str, start_campaign_id: str | None = None) -> FlowResult:
    with time_block("graph.flow.latency"):
        paths, campaigns = _load(merchant_id)
        result = compute_flow(merchant_id, paths, campaigns, start_campaign_id)
    logger.debug(
        "Flow for merchant %s from %s: %d baseline recipients, %d nodes",
        merchant_id,
        start_campaign_id or "<all>",
        result.baseline_recipients,
        len(result.nodes),
    )
    return result


def get_transitions(
    merchant_id: str, worker_names: Collection[str] | None = None
) -> list[Transition]:
    paths, campaigns = _load(merchant_id, worker_names)
    return compute_transitions(paths, campaigns)


def get_branch_analysis(
    merchant_id: str,
    min_path_length: int = BRANCH_MIN_PATH_LENGTH,
    main_path_threshold: float = BRANCH_MAIN_PATH_THRESHOLD,
) -> BranchAnalysis:
    with time_block("graph.branches.latency"):
        paths, campaigns = _load(merchant_id)
        return compute_branches(
            merchant_id, paths, campaigns, min_path_length, main_path_threshold
        )


def get_valuable_campaigns_analysis(
    merchant_id: str, worker_names: Collection[str] | None = None
) -> list[ValuableCampaignAnalysis]:
    paths, campaigns = _load(merchant_id, worker_names)
    transitions = compute_transitions(paths, campaigns)
    return compute_valuable_analysis(paths, campaigns, transitions)
