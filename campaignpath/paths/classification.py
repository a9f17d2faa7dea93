"""
Root campaigns and new-vs-old user classification.

A recipient is a new user when the first campaign of their journey is a
confirmed root (a signup / welcome style campaign). Only the first entry
decides: a root received later in the journey does not make a new user.

Candidates found by keyword detection are suggestions for a human to confirm;
detection never sets is_root.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Collection, Mapping, Sequence
from dataclasses import replace
from typing import Protocol

from campaignpath.config import ROOT_CAMPAIGN_KEYWORDS
from campaignpath.errors import InternalError
from campaignpath.infrastructure.database import (
    db_transaction,
    get_db_connection,
    is_lock_error,
    retry_on_db_lock,
)
from campaignpath.infrastructure.sql import worker_filter
from campaignpath.observability.logging import get_logger
from campaignpath.observability.telemetry import counter, log_event
from campaignpath.paths.graph import (
    calculate_dag_levels,
    compute_transitions,
    get_valuable_campaigns_analysis,
)
from campaignpath.paths.repository import PathRepository, worker_recipient_clause
from campaignpath.paths.types import (
    CampaignCoverage,
    ClassificationResult,
    PathAnalysis,
    RootCampaign,
    SetRootResult,
    Transition,
    UserTypeStats,
)
from campaignpath.utils.timestamps import utc_now_iso

logger = get_logger(__name__)


def classify_first_entries(
    paths: Mapping[str, Sequence[str]], roots: Collection[str]
) -> dict[str, str]:
    """
    New users of a set of journeys.

    Returns:
        recipient -> the confirmed root their journey starts with
    """
    return {
        recipient: path[0] for recipient, path in paths.items() if path and path[0] in roots
    }


def match_root_keyword(subject: str) -> str | None:
    """First root keyword contained in the subject (case-insensitive)."""
    lowered = subject.lower()
    for keyword in ROOT_CAMPAIGN_KEYWORDS:
        if keyword in lowered:
            return keyword
    return None


class UserClassifier(Protocol):
    """Strategy that recomputes recipient_paths.is_new_user for one merchant."""

    def reclassify(self, conn: sqlite3.Connection, merchant_id: str) -> ClassificationResult: ...


class FullSweepClassifier:
    """
    Reset every flag of the merchant, then mark recipients whose first entry is
    a confirmed root. Idempotent; cost is linear in the merchant's path entries.
    """

    def reclassify(self, conn: sqlite3.Connection, merchant_id: str) -> ClassificationResult:
        conn.execute(
            """
            UPDATE recipient_paths SET is_new_user = 0, first_root_campaign_id = NULL
            WHERE merchant_id = ?
            """,
            (merchant_id,),
        )
        roots = {
            row["id"]
            for row in conn.execute(
                "SELECT id FROM campaigns WHERE merchant_id = ? AND is_root = 1", (merchant_id,)
            )
        }
        # SQLite returns the row holding MIN() for the bare columns
        first_entries = {
            row["recipient"]: [row["campaign_id"]]
            for row in conn.execute(
                """
                SELECT recipient, campaign_id, MIN(sequence_order) AS first_seq
                FROM recipient_paths WHERE merchant_id = ?
                GROUP BY recipient
                """,
                (merchant_id,),
            )
        }

        new_users = classify_first_entries(first_entries, roots)
        conn.executemany(
            """
            UPDATE recipient_paths SET is_new_user = 1, first_root_campaign_id = ?
            WHERE merchant_id = ? AND recipient = ?
            """,
            [(root_id, merchant_id, recipient) for recipient, root_id in new_users.items()],
        )

        return ClassificationResult(
            merchant_id=merchant_id,
            recipients_processed=len(first_entries),
            new_users=len(new_users),
            root_campaigns=len(roots),
        )


@retry_on_db_lock()
def recalculate_all_new_users(
    merchant_id: str, classifier: UserClassifier | None = None
) -> ClassificationResult:
    """
    Rerun user classification for a merchant in its own transaction.

    Side Effects:
        - Rewrites recipient_paths.is_new_user / first_root_campaign_id
    """
    classifier = classifier or FullSweepClassifier()
    try:
        with db_transaction() as conn:
            result = classifier.reclassify(conn, merchant_id)
    except sqlite3.Error as e:
        if is_lock_error(e):
            raise
        logger.error("Failed to reclassify users for merchant %s: %s", merchant_id, e)
        raise InternalError("Failed to recalculate new users") from e

    log_event(
        "classification.recalculated",
        merchant_id=merchant_id,
        recipients=result.recipients_processed,
        new_users=result.new_users,
    )
    return result


@retry_on_db_lock()
def set_root_campaign(
    campaign_id: str, is_root: bool, classifier: UserClassifier | None = None
) -> SetRootResult:
    """
    Confirm or withdraw a campaign as root, then reclassify its merchant.

    Side Effects:
        - Updates campaigns.is_root
        - Rewrites the merchant's recipient_paths classification
    """
    classifier = classifier or FullSweepClassifier()
    try:
        with db_transaction() as conn:
            row = conn.execute(
                "SELECT merchant_id FROM campaigns WHERE id = ?", (campaign_id,)
            ).fetchone()
            if row is None:
                return SetRootResult.not_found(campaign_id)

            conn.execute(
                "UPDATE campaigns SET is_root = ?, updated_at = ? WHERE id = ?",
                (1 if is_root else 0, utc_now_iso(), campaign_id),
            )
            classification = classifier.reclassify(conn, row["merchant_id"])
    except sqlite3.Error as e:
        if is_lock_error(e):
            raise
        logger.error("Failed to set root=%s on campaign %s: %s", is_root, campaign_id, e)
        raise InternalError("Failed to update root campaign") from e

    counter("classification.root_changed")
    logger.info(
        "Campaign %s root=%s; merchant %s now has %d new users",
        campaign_id,
        is_root,
        classification.merchant_id,
        classification.new_users,
    )
    return SetRootResult.updated(campaign_id, is_root, classification)


@retry_on_db_lock()
def detect_root_candidates(merchant_id: str) -> int:
    """
    Flag non-root campaigns whose subject contains a root keyword.

    Returns:
        Number of campaigns flagged

    Side Effects:
        - Sets campaigns.is_root_candidate / root_candidate_reason
    """
    flagged = 0
    now = utc_now_iso()
    try:
        with db_transaction() as conn:
            rows = conn.execute(
                "SELECT id, subject FROM campaigns WHERE merchant_id = ? AND is_root = 0",
                (merchant_id,),
            ).fetchall()
            for row in rows:
                keyword = match_root_keyword(row["subject"])
                if keyword is None:
                    continue
                conn.execute(
                    """
                    UPDATE campaigns
                    SET is_root_candidate = 1, root_candidate_reason = ?, updated_at = ?
                    WHERE id = ? AND is_root = 0
                    """,
                    (f"keyword match: {keyword}", now, row["id"]),
                )
                flagged += 1
    except sqlite3.Error as e:
        if is_lock_error(e):
            raise
        logger.error("Failed to detect root candidates for merchant %s: %s", merchant_id, e)
        raise InternalError("Failed to detect root candidates") from e

    logger.info("Detected %d root candidates for merchant %s", flagged, merchant_id)
    return flagged


def get_root_campaigns(
    merchant_id: str, worker_names: Collection[str] | None = None
) -> list[RootCampaign]:
    """Confirmed roots first, then candidates; each by new users attributed to it."""
    campaign_sql, campaign_params = worker_filter("ce.worker_name", worker_names)
    campaign_scope = (
        f"AND c.id IN (SELECT ce.campaign_id FROM campaign_emails ce WHERE 1 = 1 {campaign_sql})"
        if campaign_sql
        else ""
    )
    with get_db_connection() as conn:
        rows = conn.execute(
            f"""
            SELECT c.id, c.subject, c.is_root, c.is_root_candidate, c.root_candidate_reason,
                   COUNT(DISTINCT rp.recipient) AS new_user_count
            FROM campaigns c
            LEFT JOIN recipient_paths rp
                ON rp.first_root_campaign_id = c.id AND rp.merchant_id = c.merchant_id
            WHERE c.merchant_id = ? AND (c.is_root = 1 OR c.is_root_candidate = 1)
            {campaign_scope}
            GROUP BY c.id
            ORDER BY c.is_root DESC, new_user_count DESC, c.subject ASC
            """,
            [merchant_id, *campaign_params],
        ).fetchall()

    return [
        RootCampaign(
            campaign_id=row["id"],
            subject=row["subject"],
            is_root=bool(row["is_root"]),
            is_root_candidate=bool(row["is_root_candidate"]),
            new_user_count=row["new_user_count"],
            root_candidate_reason=row["root_candidate_reason"],
        )
        for row in rows
    ]


def _user_type_stats(
    conn: sqlite3.Connection, merchant_id: str, worker_names: Collection[str] | None
) -> UserTypeStats:
    clause, worker_params = worker_recipient_clause(worker_names)
    params: list[object] = [merchant_id]
    if clause:
        params.extend([merchant_id, *worker_params])
    row = conn.execute(
        f"""
        SELECT COUNT(*) AS total, COALESCE(SUM(is_new), 0) AS new_users
        FROM (
            SELECT rp.recipient, MAX(COALESCE(rp.is_new_user, 0)) AS is_new
            FROM recipient_paths rp
            WHERE rp.merchant_id = ? {clause}
            GROUP BY rp.recipient
        )
        """,
        params,
    ).fetchone()
    return UserTypeStats.from_counts(int(row["total"]), int(row["new_users"]))


def get_user_type_stats(
    merchant_id: str, worker_names: Collection[str] | None = None
) -> UserTypeStats:
    """Distinct recipients split into new and old users (new + old == total)."""
    with get_db_connection() as conn:
        return _user_type_stats(conn, merchant_id, worker_names)


def get_campaign_coverage(
    merchant_id: str, worker_names: Collection[str] | None = None
) -> list[CampaignCoverage]:
    """
    Per campaign: how many new and old users received it, as a share of all
    new / old users, plus its level in the journey graph.
    """
    clause, worker_params = worker_recipient_clause(worker_names)
    params: list[object] = [merchant_id]
    if clause:
        params.extend([merchant_id, *worker_params])

    with get_db_connection() as conn:
        stats = _user_type_stats(conn, merchant_id, worker_names)
        rows = conn.execute(
            f"""
            SELECT c.id, c.subject, c.tag, c.is_root,
                   COUNT(DISTINCT CASE WHEN rp.is_new_user = 1 THEN rp.recipient END)
                       AS new_user_count,
                   COUNT(DISTINCT CASE WHEN COALESCE(rp.is_new_user, 0) = 0
                                       THEN rp.recipient END) AS old_user_count,
                   COUNT(DISTINCT rp.recipient) AS total_user_count
            FROM campaigns c
            JOIN recipient_paths rp
                ON rp.campaign_id = c.id AND rp.merchant_id = c.merchant_id
            WHERE c.merchant_id = ? {clause}
            GROUP BY c.id
            ORDER BY total_user_count DESC, c.subject ASC
            """,
            params,
        ).fetchall()
        paths = PathRepository.load_paths(conn, merchant_id, worker_names)
        campaigns = PathRepository.load_campaigns(conn, merchant_id)

    levels = calculate_dag_levels(compute_transitions(paths, campaigns))
    coverage = []
    for row in rows:
        campaign = campaigns[row["id"]]
        coverage.append(
            CampaignCoverage(
                campaign_id=row["id"],
                subject=row["subject"],
                tag=row["tag"] or 0,
                is_valuable=campaign.is_valuable,
                is_root=bool(row["is_root"]),
                level=levels.get(row["id"], 1),
                new_user_count=row["new_user_count"],
                old_user_count=row["old_user_count"],
                total_user_count=row["total_user_count"],
                new_user_coverage=(
                    row["new_user_count"] / stats.new_users * 100 if stats.new_users else 0.0
                ),
                old_user_coverage=(
                    row["old_user_count"] / stats.old_users * 100 if stats.old_users else 0.0
                ),
            )
        )
    return coverage


def get_new_user_transitions(
    merchant_id: str, worker_names: Collection[str] | None = None
) -> list[Transition]:
    """Transitions over new-user journeys only; ratios are shares of new users."""
    with get_db_connection() as conn:
        paths = PathRepository.load_paths(conn, merchant_id, worker_names, new_users_only=True)
        campaigns = PathRepository.load_campaigns(conn, merchant_id)
    return compute_transitions(paths, campaigns)


def get_path_analysis(
    merchant_id: str, worker_names: Collection[str] | None = None
) -> PathAnalysis:
    """
    Combined new-user journey report.

    level_stats only lists campaigns new users received, leveled by a walk over
    new-user transitions that starts at the confirmed roots.
    """
    root_campaigns = get_root_campaigns(merchant_id, worker_names)
    user_stats = get_user_type_stats(merchant_id, worker_names)
    coverage = get_campaign_coverage(merchant_id, worker_names)
    transitions = get_new_user_transitions(merchant_id, worker_names)

    confirmed_roots = {root.campaign_id for root in root_campaigns if root.is_root}
    new_user_levels = calculate_dag_levels(transitions, roots=confirmed_roots)

    level_stats = [
        replace(item, level=new_user_levels.get(item.campaign_id, 1))
        for item in coverage
        if item.new_user_count > 0
    ]
    level_stats.sort(key=lambda item: (item.level, -item.new_user_coverage, item.campaign_id))

    old_user_stats = sorted(
        (item for item in coverage if item.old_user_count > 0),
        key=lambda item: (-item.old_user_count, item.campaign_id),
    )

    return PathAnalysis(
        merchant_id=merchant_id,
        root_campaigns=root_campaigns,
        user_stats=user_stats,
        level_stats=level_stats,
        transitions=transitions,
        valuable_analysis=get_valuable_campaigns_analysis(merchant_id, worker_names),
        old_user_stats=old_user_stats,
    )
