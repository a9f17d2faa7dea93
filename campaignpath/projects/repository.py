"""
Analysis Project Repository - CRUD for projects, project-level roots and tags,
and the cached results written by the orchestrator.

Project roots and tags override merchant-wide campaign settings for one
project only; nothing here writes campaigns.is_root or campaigns.tag.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Iterable

from campaignpath.campaigns.types import MAX_TAG, MIN_TAG
from campaignpath.errors import NotFoundError
from campaignpath.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from campaignpath.infrastructure.sql import placeholders, worker_filter
from campaignpath.observability.logging import get_logger
from campaignpath.projects.types import (
    AnalysisProject,
    ProjectCampaign,
    ProjectCampaignTag,
    ProjectEdge,
    ProjectRootCampaign,
    ProjectStatus,
    ProjectUserStats,
    ValuableStats,
    encode_worker_names,
)
from campaignpath.utils.timestamps import utc_now_iso

logger = get_logger(__name__)

_UNSET = object()


def _validate_tag(tag: int) -> None:
    if not MIN_TAG <= tag <= MAX_TAG:
        raise ValueError(f"Invalid tag value {tag}, must be {MIN_TAG}-{MAX_TAG}")


def _require_project(conn: sqlite3.Connection, project_id: str) -> sqlite3.Row:
    row = conn.execute("SELECT * FROM analysis_projects WHERE id = ?", (project_id,)).fetchone()
    if row is None:
        raise NotFoundError("Project not found")
    return row


def _require_campaign(conn: sqlite3.Connection, project: sqlite3.Row, campaign_id: str) -> None:
    row = conn.execute(
        "SELECT 1 FROM campaigns WHERE id = ? AND merchant_id = ?",
        (campaign_id, project["merchant_id"]),
    ).fetchone()
    if row is None:
        raise NotFoundError("Campaign not found")


class ProjectRepository:
    """
    Repository for analysis projects.

    Lookups return None for unknown ids; writes that reference a missing
    project, merchant or campaign raise NotFoundError.
    """

    @staticmethod
    @retry_on_db_lock()
    def create(
        merchant_id: str,
        name: str,
        worker_names: list[str] | None = None,
        note: str | None = None,
    ) -> AnalysisProject:
        """
        Create a project for an existing merchant.

        Raises:
            NotFoundError: If the merchant does not exist

        Side Effects:
            - Inserts row into analysis_projects
        """
        project_id = str(uuid.uuid4())
        now = utc_now_iso()
        with db_transaction() as conn:
            exists = conn.execute("SELECT 1 FROM merchants WHERE id = ?", (merchant_id,)).fetchone()
            if not exists:
                raise NotFoundError("Merchant not found")

            conn.execute(
                """
                INSERT INTO analysis_projects (
                    id, name, merchant_id, worker_names, status, note, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 'active', ?, ?, ?)
                """,
                (project_id, name, merchant_id, encode_worker_names(worker_names), note, now, now),
            )
            row = conn.execute(
                "SELECT * FROM analysis_projects WHERE id = ?", (project_id,)
            ).fetchone()

        logger.info("Created analysis project %s for merchant %s", project_id, merchant_id)
        return AnalysisProject.from_row(row)

    @staticmethod
    def get_by_id(project_id: str) -> AnalysisProject | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM analysis_projects WHERE id = ?", (project_id,)
            ).fetchone()
        return AnalysisProject.from_row(row) if row else None

    @staticmethod
    def list_projects(
        status: ProjectStatus | None = None,
        merchant_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AnalysisProject]:
        """Projects, most recently updated first."""
        conditions: list[str] = []
        params: list[object] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if merchant_id:
            conditions.append("merchant_id = ?")
            params.append(merchant_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM analysis_projects {where}
                ORDER BY updated_at DESC LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()
        return [AnalysisProject.from_row(row) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def update(
        project_id: str,
        name: str | None = None,
        status: ProjectStatus | None = None,
        worker_names: list[str] | None = None,
        note: object = _UNSET,
    ) -> AnalysisProject | None:
        """
        Update the given fields. note=None clears the note; omit it to keep it.

        Side Effects:
            - Updates analysis_projects row and updated_at
        """
        assignments: list[str] = []
        params: list[object] = []
        if name is not None:
            assignments.append("name = ?")
            params.append(name)
        if status is not None:
            assignments.append("status = ?")
            params.append(status.value)
        if worker_names is not None:
            assignments.append("worker_names = ?")
            params.append(encode_worker_names(worker_names))
        if note is not _UNSET:
            assignments.append("note = ?")
            params.append(note)
        assignments.append("updated_at = ?")
        params.append(utc_now_iso())

        with db_transaction() as conn:
            cursor = conn.execute(
                f"UPDATE analysis_projects SET {', '.join(assignments)} WHERE id = ?",
                (*params, project_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM analysis_projects WHERE id = ?", (project_id,)
            ).fetchone()

        logger.info("Updated analysis project %s", project_id)
        return AnalysisProject.from_row(row)

    @staticmethod
    @retry_on_db_lock()
    def delete(project_id: str) -> bool:
        """
        Delete a project and (by cascade) its roots, tags and cached results.

        Returns:
            True if the project existed
        """
        with db_transaction() as conn:
            cursor = conn.execute("DELETE FROM analysis_projects WHERE id = ?", (project_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info("Deleted analysis project %s", project_id)
        return deleted

    # ------------------------------------------------------------------
    # Project roots
    # ------------------------------------------------------------------

    @staticmethod
    @retry_on_db_lock()
    def set_root_campaign(
        project_id: str, campaign_id: str, is_confirmed: bool = True
    ) -> ProjectRootCampaign:
        """
        Mark a campaign as (confirmed or candidate) root for this project only.

        Raises:
            NotFoundError: If the project or campaign does not exist
        """
        with db_transaction() as conn:
            project = _require_project(conn, project_id)
            _require_campaign(conn, project, campaign_id)
            conn.execute(
                """
                INSERT INTO project_root_campaigns (project_id, campaign_id, is_confirmed, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(project_id, campaign_id) DO UPDATE SET is_confirmed = excluded.is_confirmed
                """,
                (project_id, campaign_id, 1 if is_confirmed else 0, utc_now_iso()),
            )
            row = conn.execute(
                """
                SELECT prc.campaign_id, c.subject, prc.is_confirmed, prc.created_at
                FROM project_root_campaigns prc
                JOIN campaigns c ON prc.campaign_id = c.id
                WHERE prc.project_id = ? AND prc.campaign_id = ?
                """,
                (project_id, campaign_id),
            ).fetchone()

        return ProjectRootCampaign(
            campaign_id=row["campaign_id"],
            subject=row["subject"],
            is_confirmed=bool(row["is_confirmed"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def get_root_campaigns(project_id: str) -> list[ProjectRootCampaign]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT prc.campaign_id, c.subject, prc.is_confirmed, prc.created_at
                FROM project_root_campaigns prc
                JOIN campaigns c ON prc.campaign_id = c.id
                WHERE prc.project_id = ?
                ORDER BY prc.is_confirmed DESC, prc.created_at ASC
                """,
                (project_id,),
            ).fetchall()
        return [
            ProjectRootCampaign(
                campaign_id=row["campaign_id"],
                subject=row["subject"],
                is_confirmed=bool(row["is_confirmed"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    @staticmethod
    def confirmed_root_ids(conn: sqlite3.Connection, project_id: str) -> set[str]:
        rows = conn.execute(
            """
            SELECT campaign_id FROM project_root_campaigns
            WHERE project_id = ? AND is_confirmed = 1
            """,
            (project_id,),
        )
        return {row["campaign_id"] for row in rows}

    @staticmethod
    @retry_on_db_lock()
    def remove_root_campaign(project_id: str, campaign_id: str) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM project_root_campaigns WHERE project_id = ? AND campaign_id = ?",
                (project_id, campaign_id),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Project tags
    # ------------------------------------------------------------------

    @staticmethod
    @retry_on_db_lock()
    def set_campaign_tag(
        project_id: str, campaign_id: str, tag: int, note: str | None = None
    ) -> ProjectCampaignTag:
        """
        Set the project-level 0-4 tag of a campaign.

        Raises:
            ValueError: If tag is outside 0-4
            NotFoundError: If the project or campaign does not exist
        """
        _validate_tag(tag)
        now = utc_now_iso()
        with db_transaction() as conn:
            project = _require_project(conn, project_id)
            _require_campaign(conn, project, campaign_id)
            conn.execute(
                """
                INSERT INTO project_campaign_tags
                    (project_id, campaign_id, tag, tag_note, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id, campaign_id) DO UPDATE SET
                    tag = excluded.tag,
                    tag_note = excluded.tag_note,
                    updated_at = excluded.updated_at
                """,
                (project_id, campaign_id, tag, note, now, now),
            )
            row = conn.execute(
                "SELECT * FROM project_campaign_tags WHERE project_id = ? AND campaign_id = ?",
                (project_id, campaign_id),
            ).fetchone()
        return ProjectCampaignTag.from_row(row)

    @staticmethod
    def get_campaign_tag(project_id: str, campaign_id: str) -> ProjectCampaignTag | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM project_campaign_tags WHERE project_id = ? AND campaign_id = ?",
                (project_id, campaign_id),
            ).fetchone()
        return ProjectCampaignTag.from_row(row) if row else None

    @staticmethod
    def list_campaign_tags(project_id: str) -> list[ProjectCampaignTag]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM project_campaign_tags WHERE project_id = ?
                ORDER BY tag DESC, updated_at DESC
                """,
                (project_id,),
            ).fetchall()
        return [ProjectCampaignTag.from_row(row) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def remove_campaign_tag(project_id: str, campaign_id: str) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM project_campaign_tags WHERE project_id = ? AND campaign_id = ?",
                (project_id, campaign_id),
            )
            return cursor.rowcount > 0

    @staticmethod
    def get_effective_tag(project_id: str, campaign_id: str) -> int | None:
        """Project tag if set, else the campaign's own tag; None for unknown campaigns."""
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(pct.tag, c.tag, 0) AS effective_tag
                FROM campaigns c
                LEFT JOIN project_campaign_tags pct
                    ON pct.campaign_id = c.id AND pct.project_id = ?
                WHERE c.id = ?
                """,
                (project_id, campaign_id),
            ).fetchone()
        return row["effective_tag"] if row else None

    @staticmethod
    def list_campaigns_with_tags(project_id: str) -> list[ProjectCampaign]:
        """
        Campaigns delivered by the project's workers, with effective tags.

        Raises:
            NotFoundError: If the project does not exist
        """
        project = ProjectRepository.get_by_id(project_id)
        if project is None:
            raise NotFoundError("Project not found")

        worker_sql, worker_params = worker_filter("ce.worker_name", project.worker_names)
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT c.id, c.subject, c.total_emails, c.unique_recipients, c.tag,
                       pct.tag AS project_tag, COALESCE(pct.tag_note, c.tag_note) AS tag_note,
                       COALESCE(prc.is_confirmed, 0) AS is_project_root
                FROM campaigns c
                LEFT JOIN project_campaign_tags pct
                    ON pct.campaign_id = c.id AND pct.project_id = ?
                LEFT JOIN project_root_campaigns prc
                    ON prc.campaign_id = c.id AND prc.project_id = ?
                WHERE c.merchant_id = ? AND c.id IN (
                    SELECT ce.campaign_id FROM campaign_emails ce WHERE 1 = 1 {worker_sql}
                )
                ORDER BY c.total_emails DESC, c.subject ASC
                """,
                [project_id, project_id, project.merchant_id, *worker_params],
            ).fetchall()

        return [
            ProjectCampaign(
                campaign_id=row["id"],
                subject=row["subject"],
                total_emails=row["total_emails"],
                unique_recipients=row["unique_recipients"],
                campaign_tag=row["tag"] or 0,
                effective_tag=(
                    row["project_tag"] if row["project_tag"] is not None else (row["tag"] or 0)
                ),
                has_project_tag=row["project_tag"] is not None,
                is_project_root=bool(row["is_project_root"]),
                project_tag=row["project_tag"],
                tag_note=row["tag_note"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Cached analysis results
    # ------------------------------------------------------------------

    @staticmethod
    def replace_results(
        conn: sqlite3.Connection,
        project_id: str,
        new_users: dict[str, str],
        events: Iterable[tuple[str, str, int, str]],
        edges: dict[tuple[str, str], int],
    ) -> int:
        """
        Swap in a fresh analysis run.

        Args:
            new_users: recipient -> first root campaign id
            events: (recipient, campaign_id, seq, received_at) rows
            edges: (from_campaign_id, to_campaign_id) -> distinct user count

        Returns:
            Number of project_user_events rows written

        Side Effects:
            - Replaces project_new_users, project_user_events, project_path_edges
            - Stamps analysis_projects.last_analysis_time (caller commits)
        """
        now = utc_now_iso()
        for table in ("project_new_users", "project_user_events", "project_path_edges"):
            conn.execute(f"DELETE FROM {table} WHERE project_id = ?", (project_id,))

        conn.executemany(
            """
            INSERT INTO project_new_users (project_id, recipient, first_root_campaign_id, created_at)
            VALUES (?, ?, ?, ?)
            """,
            [(project_id, recipient, root, now) for recipient, root in new_users.items()],
        )
        event_rows = [(project_id, *event) for event in events]
        conn.executemany(
            """
            INSERT INTO project_user_events (project_id, recipient, campaign_id, seq, received_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            event_rows,
        )
        conn.executemany(
            """
            INSERT INTO project_path_edges
                (project_id, from_campaign_id, to_campaign_id, user_count, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [(project_id, src, dst, count, now) for (src, dst), count in edges.items()],
        )
        conn.execute(
            "UPDATE analysis_projects SET last_analysis_time = ?, updated_at = ? WHERE id = ?",
            (now, now, project_id),
        )
        return len(event_rows)

    @staticmethod
    def get_path_edges(project_id: str) -> list[ProjectEdge]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT e.from_campaign_id, e.to_campaign_id, e.user_count,
                       COALESCE(cf.subject, '') AS from_subject,
                       COALESCE(ct.subject, '') AS to_subject
                FROM project_path_edges e
                LEFT JOIN campaigns cf ON e.from_campaign_id = cf.id
                LEFT JOIN campaigns ct ON e.to_campaign_id = ct.id
                WHERE e.project_id = ?
                ORDER BY e.user_count DESC, e.from_campaign_id ASC, e.to_campaign_id ASC
                """,
                (project_id,),
            ).fetchall()
        return [
            ProjectEdge(
                from_campaign_id=row["from_campaign_id"],
                from_subject=row["from_subject"],
                to_campaign_id=row["to_campaign_id"],
                to_subject=row["to_subject"],
                user_count=row["user_count"],
            )
            for row in rows
        ]

    @staticmethod
    def get_user_stats(project_id: str) -> ProjectUserStats | None:
        """Counts from the last analysis run; None for unknown projects."""
        with get_db_connection() as conn:
            project = conn.execute(
                "SELECT last_analysis_time FROM analysis_projects WHERE id = ?", (project_id,)
            ).fetchone()
            if project is None:
                return None
            row = conn.execute(
                """
                SELECT
                    (SELECT COUNT(DISTINCT recipient) FROM project_user_events
                     WHERE project_id = :pid) AS total_recipients,
                    (SELECT COUNT(*) FROM project_new_users WHERE project_id = :pid) AS new_users,
                    (SELECT COUNT(*) FROM project_user_events WHERE project_id = :pid)
                        AS total_events,
                    (SELECT COUNT(*) FROM project_path_edges WHERE project_id = :pid)
                        AS total_edges
                """,
                {"pid": project_id},
            ).fetchone()

        return ProjectUserStats(
            total_recipients=row["total_recipients"],
            new_users=row["new_users"],
            old_users=row["total_recipients"] - row["new_users"],
            total_events=row["total_events"],
            total_edges=row["total_edges"],
            last_analysis_time=project["last_analysis_time"],
        )

    @staticmethod
    def calculate_valuable_stats(project_id: str) -> ValuableStats:
        """
        How far the project's new users get into valuable campaigns.

        Raises:
            NotFoundError: If the project does not exist
        """
        campaigns = ProjectRepository.list_campaigns_with_tags(project_id)
        valuable_ids = [c.campaign_id for c in campaigns if c.is_valuable]

        with get_db_connection() as conn:
            new_users = conn.execute(
                "SELECT COUNT(*) FROM project_new_users WHERE project_id = ?", (project_id,)
            ).fetchone()[0]
            reach = 0
            if valuable_ids:
                reach = conn.execute(
                    f"""
                    SELECT COUNT(DISTINCT pue.recipient) FROM project_user_events pue
                    JOIN project_new_users pnu
                      ON pnu.project_id = pue.project_id AND pnu.recipient = pue.recipient
                    WHERE pue.project_id = ?
                      AND pue.campaign_id IN ({placeholders(len(valuable_ids))})
                    """,
                    [project_id, *valuable_ids],
                ).fetchone()[0]

        return ValuableStats.from_tags([c.effective_tag for c in campaigns], reach, new_users)
