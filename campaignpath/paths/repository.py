"""
Storage for recipient_paths (derived per-recipient campaign journeys).

All helpers take an open connection: path writes always happen inside a
larger transaction (tracking, rebuild, deletion), and the analytics loaders
share one connection per request.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Collection, Iterable

from campaignpath.campaigns.types import Campaign
from campaignpath.infrastructure.sql import placeholders, worker_filter
from campaignpath.paths.types import PathEntry

# SQLite's default host-parameter limit is 999 on older builds
_CHUNK_SIZE = 500


def _chunks(items: list[str], size: int = _CHUNK_SIZE) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def worker_recipient_clause(worker_names: Collection[str] | None) -> tuple[str, list[str]]:
    """
    Restrict recipient_paths rows to recipients with at least one event from
    the given workers. Expects the merchant id as the first bound parameter
    of the fragment.
    """
    worker_sql, worker_params = worker_filter("ce.worker_name", worker_names)
    if not worker_sql:
        return "", []
    clause = f"""
        AND rp.recipient IN (
            SELECT ce.recipient FROM campaign_emails ce
            JOIN campaigns c ON ce.campaign_id = c.id
            WHERE c.merchant_id = ? {worker_sql}
        )
    """
    return clause, worker_params


class PathRepository:
    """recipient_paths reads and writes."""

    @staticmethod
    def load_paths(
        conn: sqlite3.Connection,
        merchant_id: str,
        worker_names: Collection[str] | None = None,
        new_users_only: bool = False,
    ) -> dict[str, list[str]]:
        """
        Ordered campaign ids per recipient.

        Args:
            worker_names: Only recipients with events from these workers
            new_users_only: Only recipients classified as new users
        """
        clause, worker_params = worker_recipient_clause(worker_names)
        params: list[object] = [merchant_id]
        if clause:
            params.extend([merchant_id, *worker_params])
        new_user_sql = " AND rp.is_new_user = 1" if new_users_only else ""

        rows = conn.execute(
            f"""
            SELECT rp.recipient, rp.campaign_id
            FROM recipient_paths rp
            WHERE rp.merchant_id = ? {clause} {new_user_sql}
            ORDER BY rp.recipient ASC, rp.sequence_order ASC
            """,
            params,
        ).fetchall()

        paths: dict[str, list[str]] = {}
        for row in rows:
            paths.setdefault(row["recipient"], []).append(row["campaign_id"])
        return paths

    @staticmethod
    def load_campaigns(conn: sqlite3.Connection, merchant_id: str) -> dict[str, Campaign]:
        rows = conn.execute("SELECT * FROM campaigns WHERE merchant_id = ?", (merchant_id,))
        return {row["id"]: Campaign.from_row(row) for row in rows}

    @staticmethod
    def get_entry(
        conn: sqlite3.Connection, merchant_id: str, recipient: str, campaign_id: str
    ) -> sqlite3.Row | None:
        return conn.execute(
            """
            SELECT * FROM recipient_paths
            WHERE merchant_id = ? AND recipient = ? AND campaign_id = ?
            """,
            (merchant_id, recipient, campaign_id),
        ).fetchone()

    @staticmethod
    def append_if_absent(
        conn: sqlite3.Connection,
        merchant_id: str,
        recipient: str,
        campaign: Campaign,
        received_at: str,
    ) -> PathEntry | None:
        """
        Append campaign to the recipient's journey unless already present.

        The new entry inherits the recipient's classification: a first entry on
        a confirmed root makes a new user, later entries copy the flag of the
        first one.

        Returns:
            The created entry, or None when the campaign was already in the path

        Side Effects:
            - Inserts into recipient_paths (caller commits)
        """
        if PathRepository.get_entry(conn, merchant_id, recipient, campaign.id):
            return None

        first = conn.execute(
            """
            SELECT is_new_user, first_root_campaign_id, sequence_order
            FROM recipient_paths
            WHERE merchant_id = ? AND recipient = ?
            ORDER BY sequence_order ASC LIMIT 1
            """,
            (merchant_id, recipient),
        ).fetchone()
        max_seq = conn.execute(
            "SELECT MAX(sequence_order) FROM recipient_paths WHERE merchant_id = ? AND recipient = ?",
            (merchant_id, recipient),
        ).fetchone()[0]
        sequence_order = (max_seq or 0) + 1

        if first is None:
            is_new_user = 1 if campaign.is_root else 0
            first_root = campaign.id if campaign.is_root else None
        else:
            is_new_user = first["is_new_user"]
            first_root = first["first_root_campaign_id"]

        conn.execute(
            """
            INSERT INTO recipient_paths (
                merchant_id, recipient, campaign_id, sequence_order,
                first_received_at, is_new_user, first_root_campaign_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                merchant_id,
                recipient,
                campaign.id,
                sequence_order,
                received_at,
                is_new_user,
                first_root,
            ),
        )
        return PathEntry(
            recipient=recipient,
            campaign_id=campaign.id,
            sequence_order=sequence_order,
            first_received_at=received_at,
        )

    @staticmethod
    def insert_entries(
        conn: sqlite3.Connection, merchant_id: str, entries: Iterable[PathEntry]
    ) -> int:
        """Bulk insert derived entries; classification columns stay NULL."""
        rows = [
            (merchant_id, e.recipient, e.campaign_id, e.sequence_order, e.first_received_at)
            for e in entries
        ]
        conn.executemany(
            """
            INSERT INTO recipient_paths (
                merchant_id, recipient, campaign_id, sequence_order, first_received_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            rows,
        )
        return len(rows)

    @staticmethod
    def delete_for_merchant(conn: sqlite3.Connection, merchant_id: str) -> int:
        cursor = conn.execute("DELETE FROM recipient_paths WHERE merchant_id = ?", (merchant_id,))
        return cursor.rowcount

    @staticmethod
    def delete_for_recipients(
        conn: sqlite3.Connection, merchant_id: str, recipients: Collection[str]
    ) -> int:
        """Delete every path entry of the given recipients; events are untouched."""
        deleted = 0
        for chunk in _chunks(sorted(set(recipients))):
            cursor = conn.execute(
                f"""
                DELETE FROM recipient_paths
                WHERE merchant_id = ? AND recipient IN ({placeholders(len(chunk))})
                """,
                [merchant_id, *chunk],
            )
            deleted += cursor.rowcount
        return deleted

    @staticmethod
    def count_recipients(
        conn: sqlite3.Connection,
        merchant_id: str,
        worker_names: Collection[str] | None = None,
    ) -> int:
        clause, worker_params = worker_recipient_clause(worker_names)
        params: list[object] = [merchant_id]
        if clause:
            params.extend([merchant_id, *worker_params])
        row = conn.execute(
            f"""
            SELECT COUNT(DISTINCT rp.recipient) FROM recipient_paths rp
            WHERE rp.merchant_id = ? {clause}
            """,
            params,
        ).fetchone()
        return int(row[0])
