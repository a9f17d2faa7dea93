"""
Merchant / Campaign repositories and the email Event Store.

Write helpers take an open connection so callers can compose them inside one
db_transaction(); read helpers open their own pooled connection.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Collection
from datetime import datetime, timedelta

from campaignpath.campaigns.types import (
    MAX_TAG,
    MIN_TAG,
    Campaign,
    EmailEvent,
    Merchant,
    MerchantAnalysisStatus,
    MerchantWorkerSummary,
)
from campaignpath.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from campaignpath.infrastructure.sql import worker_filter
from campaignpath.observability.logging import get_logger
from campaignpath.utils.domain import calculate_subject_hash, normalize_subject
from campaignpath.utils.timestamps import utc_now, utc_now_iso

logger = get_logger(__name__)


class MerchantRepository:
    """Merchants keyed by registrable sender domain."""

    @staticmethod
    def get_by_id(merchant_id: str) -> Merchant | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM merchants WHERE id = ?", (merchant_id,)).fetchone()
        return Merchant.from_row(row) if row else None

    @staticmethod
    def get_by_domain(domain: str) -> Merchant | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM merchants WHERE domain = ?", (domain.lower(),)
            ).fetchone()
        return Merchant.from_row(row) if row else None

    @staticmethod
    def get_or_create(conn: sqlite3.Connection, domain: str) -> tuple[Merchant, bool]:
        """
        Resolve a merchant by domain, creating it on first sight.

        Returns:
            (merchant, is_new)

        Side Effects:
            - Inserts into merchants when the domain is unknown (caller commits)
        """
        row = conn.execute("SELECT * FROM merchants WHERE domain = ?", (domain,)).fetchone()
        if row:
            return Merchant.from_row(row), False

        now = utc_now_iso()
        merchant_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO merchants (id, domain, analysis_status, total_campaigns,
                                   total_emails, created_at, updated_at)
            VALUES (?, ?, 'pending', 0, 0, ?, ?)
            """,
            (merchant_id, domain, now, now),
        )
        logger.info("Created merchant %s for domain %s", merchant_id, domain)
        row = conn.execute("SELECT * FROM merchants WHERE id = ?", (merchant_id,)).fetchone()
        return Merchant.from_row(row), True

    @staticmethod
    def list_merchants(
        analysis_status: MerchantAnalysisStatus | None = None,
        worker_name: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Merchant]:
        """
        List merchants, most emails first.

        With worker_name, only merchants that worker has delivered emails for.
        """
        conditions: list[str] = []
        params: list[object] = []
        if analysis_status is not None:
            conditions.append("m.analysis_status = ?")
            params.append(analysis_status.value)
        if worker_name:
            conditions.append(
                """m.id IN (
                    SELECT c.merchant_id FROM campaigns c
                    JOIN campaign_emails ce ON ce.campaign_id = c.id
                    WHERE ce.worker_name = ?
                )"""
            )
            params.append(worker_name)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])
        with get_db_connection() as conn:
            rows = conn.execute(
                f"SELECT m.* FROM merchants m {where} "
                "ORDER BY m.total_emails DESC, m.domain ASC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [Merchant.from_row(row) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def set_analysis_status(merchant_id: str, status: MerchantAnalysisStatus) -> Merchant | None:
        """
        Mark a merchant pending / active / ignored.

        Side Effects:
            - Updates merchants.analysis_status and updated_at
        """
        with db_transaction() as conn:
            cursor = conn.execute(
                "UPDATE merchants SET analysis_status = ?, updated_at = ? WHERE id = ?",
                (status.value, utc_now_iso(), merchant_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM merchants WHERE id = ?", (merchant_id,)).fetchone()

        logger.info("Merchant %s analysis status set to %s", merchant_id, status.value)
        return Merchant.from_row(row)

    @staticmethod
    def refresh_counters(conn: sqlite3.Connection, merchant_id: str) -> None:
        """
        Recompute total_emails / total_campaigns from surviving events.

        Side Effects:
            - Updates merchants row (caller commits)
        """
        totals = conn.execute(
            """
            SELECT COUNT(ce.id) AS emails, COUNT(DISTINCT ce.campaign_id) AS campaigns
            FROM campaign_emails ce
            JOIN campaigns c ON ce.campaign_id = c.id
            WHERE c.merchant_id = ?
            """,
            (merchant_id,),
        ).fetchone()
        conn.execute(
            """
            UPDATE merchants SET total_emails = ?, total_campaigns = ?, updated_at = ?
            WHERE id = ?
            """,
            (totals["emails"], totals["campaigns"], utc_now_iso(), merchant_id),
        )

    @staticmethod
    def list_by_worker(worker_name: str | None = None) -> list[MerchantWorkerSummary]:
        """Per (merchant, worker) campaign and email counts."""
        where = "WHERE ce.worker_name = ?" if worker_name else ""
        params = [worker_name] if worker_name else []
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT m.id, m.domain, m.display_name, ce.worker_name,
                       COUNT(DISTINCT c.id) AS total_campaigns,
                       COUNT(ce.id) AS total_emails
                FROM merchants m
                JOIN campaigns c ON m.id = c.merchant_id
                JOIN campaign_emails ce ON c.id = ce.campaign_id
                {where}
                GROUP BY m.id, ce.worker_name
                ORDER BY ce.worker_name ASC, total_emails DESC
                """,
                params,
            ).fetchall()

        return [
            MerchantWorkerSummary(
                merchant_id=row["id"],
                domain=row["domain"],
                display_name=row["display_name"],
                worker_name=row["worker_name"],
                total_campaigns=row["total_campaigns"],
                total_emails=row["total_emails"],
            )
            for row in rows
        ]


class CampaignRepository:
    """Campaigns grouped by (merchant, normalized subject hash)."""

    @staticmethod
    def get_by_id(campaign_id: str) -> Campaign | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,)).fetchone()
        return Campaign.from_row(row) if row else None

    @staticmethod
    def list_for_merchant(
        merchant_id: str, worker_names: Collection[str] | None = None
    ) -> list[Campaign]:
        """
        Campaigns of a merchant, most emails first.

        With worker_names, only campaigns those workers have delivered.
        """
        worker_sql, worker_params = worker_filter("ce.worker_name", worker_names)
        with get_db_connection() as conn:
            if worker_sql:
                rows = conn.execute(
                    f"""
                    SELECT c.* FROM campaigns c
                    WHERE c.merchant_id = ? AND c.id IN (
                        SELECT ce.campaign_id FROM campaign_emails ce
                        WHERE 1 = 1 {worker_sql}
                    )
                    ORDER BY c.total_emails DESC, c.created_at ASC
                    """,
                    [merchant_id, *worker_params],
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM campaigns WHERE merchant_id = ?
                    ORDER BY total_emails DESC, created_at ASC
                    """,
                    (merchant_id,),
                ).fetchall()
        return [Campaign.from_row(row) for row in rows]

    @staticmethod
    def get_or_create(
        conn: sqlite3.Connection, merchant_id: str, subject: str, received_at: str
    ) -> tuple[Campaign, bool]:
        """
        Resolve the campaign for a subject, creating it on first sight.

        Widens first_seen_at / last_seen_at to cover received_at.

        Returns:
            (campaign, is_new)

        Side Effects:
            - Inserts or updates the campaigns row (caller commits)
        """
        subject_hash = calculate_subject_hash(subject)
        now = utc_now_iso()
        row = conn.execute(
            "SELECT * FROM campaigns WHERE merchant_id = ? AND subject_hash = ?",
            (merchant_id, subject_hash),
        ).fetchone()

        if row:
            conn.execute(
                """
                UPDATE campaigns
                SET first_seen_at = MIN(first_seen_at, ?),
                    last_seen_at = MAX(last_seen_at, ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (received_at, received_at, now, row["id"]),
            )
            row = conn.execute("SELECT * FROM campaigns WHERE id = ?", (row["id"],)).fetchone()
            return Campaign.from_row(row), False

        campaign_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO campaigns (
                id, merchant_id, subject, subject_hash, total_emails, unique_recipients,
                first_seen_at, last_seen_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 0, 0, ?, ?, ?, ?)
            """,
            (
                campaign_id,
                merchant_id,
                normalize_subject(subject),
                subject_hash,
                received_at,
                received_at,
                now,
                now,
            ),
        )
        conn.execute(
            "UPDATE merchants SET total_campaigns = total_campaigns + 1, updated_at = ? WHERE id = ?",
            (now, merchant_id),
        )
        logger.debug("Created campaign %s for merchant %s", campaign_id, merchant_id)
        row = conn.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,)).fetchone()
        return Campaign.from_row(row), True

    @staticmethod
    @retry_on_db_lock()
    def set_tag(campaign_id: str, tag: int, note: str | None = None) -> Campaign | None:
        """
        Set the merchant-wide 0-4 tag (1 and 2 mark the campaign valuable).

        Raises:
            ValueError: If tag is outside 0-4

        Side Effects:
            - Updates campaigns.tag / tag_note
        """
        if not MIN_TAG <= tag <= MAX_TAG:
            raise ValueError(f"Invalid tag value {tag}, must be {MIN_TAG}-{MAX_TAG}")

        with db_transaction() as conn:
            cursor = conn.execute(
                "UPDATE campaigns SET tag = ?, tag_note = ?, updated_at = ? WHERE id = ?",
                (tag, note, utc_now_iso(), campaign_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,)).fetchone()
        return Campaign.from_row(row)

    @staticmethod
    def refresh_counters(conn: sqlite3.Connection, campaign_id: str) -> None:
        """
        Recompute total_emails / unique_recipients from surviving events.

        Side Effects:
            - Updates campaigns row (caller commits)
        """
        totals = conn.execute(
            """
            SELECT COUNT(*) AS emails, COUNT(DISTINCT recipient) AS recipients
            FROM campaign_emails WHERE campaign_id = ?
            """,
            (campaign_id,),
        ).fetchone()
        conn.execute(
            """
            UPDATE campaigns SET total_emails = ?, unique_recipients = ?, updated_at = ?
            WHERE id = ?
            """,
            (totals["emails"], totals["recipients"], utc_now_iso(), campaign_id),
        )


class EventStore:
    """Append-only log of delivered emails (campaign_emails)."""

    @staticmethod
    def append(
        conn: sqlite3.Connection,
        campaign_id: str,
        recipient: str,
        received_at: str,
        worker_name: str,
    ) -> int:
        """
        Record one delivered email.

        Side Effects:
            - Inserts into campaign_emails (caller commits)
        """
        cursor = conn.execute(
            """
            INSERT INTO campaign_emails (campaign_id, recipient, received_at, worker_name)
            VALUES (?, ?, ?, ?)
            """,
            (campaign_id, recipient, received_at, worker_name),
        )
        return int(cursor.lastrowid or 0)

    @staticmethod
    def list_for_merchant(
        conn: sqlite3.Connection,
        merchant_id: str,
        worker_names: Collection[str] | None = None,
    ) -> list[EmailEvent]:
        """All events of a merchant, optionally worker-scoped, ordered by (received_at, id)."""
        worker_sql, worker_params = worker_filter("ce.worker_name", worker_names)
        rows = conn.execute(
            f"""
            SELECT ce.id, ce.campaign_id, ce.recipient, ce.received_at, ce.worker_name
            FROM campaign_emails ce
            JOIN campaigns c ON ce.campaign_id = c.id
            WHERE c.merchant_id = ? {worker_sql}
            ORDER BY ce.received_at ASC, ce.id ASC
            """,
            [merchant_id, *worker_params],
        ).fetchall()
        return [EmailEvent.from_row(row) for row in rows]

    @staticmethod
    def count_for_merchant(
        conn: sqlite3.Connection,
        merchant_id: str,
        worker_names: Collection[str] | None = None,
    ) -> int:
        worker_sql, worker_params = worker_filter("ce.worker_name", worker_names)
        row = conn.execute(
            f"""
            SELECT COUNT(*) FROM campaign_emails ce
            JOIN campaigns c ON ce.campaign_id = c.id
            WHERE c.merchant_id = ? {worker_sql}
            """,
            [merchant_id, *worker_params],
        ).fetchone()
        return int(row[0])


def pending_cutoff(days: int) -> str:
    """ISO timestamp `days` days ago, comparable with created_at columns."""
    cutoff: datetime = utc_now() - timedelta(days=days)
    return cutoff.isoformat(timespec="microseconds")
