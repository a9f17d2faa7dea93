"""
Deletion and consistency maintenance.

Every email event is tagged with the worker instance that delivered it. Removing
one worker's data must leave other workers' numbers unchanged: events are only
ever deleted per worker, derived counters are recomputed from the surviving
events, and a merchant disappears only when no events of any worker remain.

The cleanups only prune derived recipient_paths; events are never touched, so
a later rebuild_paths can always restore what a cleanup removed.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Collection
from dataclasses import dataclass, field

from campaignpath.campaigns.repository import (
    CampaignRepository,
    EventStore,
    MerchantRepository,
    pending_cutoff,
)
from campaignpath.campaigns.types import MerchantAnalysisStatus
from campaignpath.config import PENDING_DATA_RETENTION_DAYS
from campaignpath.errors import ErrorKind, InternalError
from campaignpath.infrastructure.database import (
    db_transaction,
    get_db_connection,
    is_lock_error,
    retry_on_db_lock,
)
from campaignpath.infrastructure.sql import placeholders, worker_filter
from campaignpath.observability.logging import get_logger
from campaignpath.observability.telemetry import counter, log_event, time_block
from campaignpath.paths.repository import PathRepository, worker_recipient_clause

logger = get_logger(__name__)

_CHUNK_SIZE = 500


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class DeleteMerchantDataResult:
    success: bool
    merchant_id: str
    worker_name: str
    emails_deleted: int = 0
    paths_deleted: int = 0
    campaigns_affected: int = 0
    merchant_deleted: bool = False
    error_kind: ErrorKind | None = None
    reason: str | None = None

    @classmethod
    def not_found(cls, merchant_id: str, worker_name: str) -> DeleteMerchantDataResult:
        return cls(
            success=False,
            merchant_id=merchant_id,
            worker_name=worker_name,
            error_kind=ErrorKind.NOT_FOUND,
            reason="Merchant not found",
        )


@dataclass
class CleanupResult:
    paths_deleted: int
    merchants_affected: int
    recipients_affected: int = 0


@dataclass
class DataStatistics:
    total_merchants: int
    pending_merchants: int
    active_merchants: int
    ignored_merchants: int
    total_campaigns: int
    total_emails: int
    total_paths: int
    worker_name: str | None = None


@dataclass
class WorkerDataSummary:
    worker_name: str
    email_count: int
    merchant_count: int


@dataclass
class DeleteWorkerDataResult:
    worker_name: str
    emails_deleted: int = 0
    paths_deleted: int = 0
    merchants_affected: int = 0
    merchants_deleted: int = 0
    deleted_merchant_ids: list[str] = field(default_factory=list)


@dataclass
class _WorkerDeletion:
    emails_deleted: int
    paths_deleted: int
    campaigns_affected: int
    merchant_deleted: bool


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


def _prune_recipient_paths(
    conn: sqlite3.Connection, merchant_id: str, recipients: Collection[str]
) -> int:
    """Delete the path entries of a recipient set; their events stay."""
    if not recipients:
        return 0
    return PathRepository.delete_for_recipients(conn, merchant_id, recipients)


def _recipients_with_events(
    conn: sqlite3.Connection, merchant_id: str, recipients: Collection[str]
) -> set[str]:
    remaining: set[str] = set()
    ordered = sorted(recipients)
    for start in range(0, len(ordered), _CHUNK_SIZE):
        chunk = ordered[start : start + _CHUNK_SIZE]
        rows = conn.execute(
            f"""
            SELECT DISTINCT ce.recipient FROM campaign_emails ce
            JOIN campaigns c ON ce.campaign_id = c.id
            WHERE c.merchant_id = ? AND ce.recipient IN ({placeholders(len(chunk))})
            """,
            [merchant_id, *chunk],
        )
        remaining.update(row["recipient"] for row in rows)
    return remaining


def _delete_worker_data(
    conn: sqlite3.Connection, merchant_id: str, worker_name: str
) -> _WorkerDeletion:
    rows = conn.execute(
        """
        SELECT DISTINCT ce.campaign_id, ce.recipient FROM campaign_emails ce
        JOIN campaigns c ON ce.campaign_id = c.id
        WHERE c.merchant_id = ? AND ce.worker_name = ?
        """,
        (merchant_id, worker_name),
    ).fetchall()
    campaign_ids = {row["campaign_id"] for row in rows}
    recipients = {row["recipient"] for row in rows}

    cursor = conn.execute(
        """
        DELETE FROM campaign_emails
        WHERE worker_name = ?
          AND campaign_id IN (SELECT id FROM campaigns WHERE merchant_id = ?)
        """,
        (worker_name, merchant_id),
    )
    emails_deleted = cursor.rowcount

    orphaned = recipients - _recipients_with_events(conn, merchant_id, recipients)
    paths_deleted = _prune_recipient_paths(conn, merchant_id, orphaned)

    for campaign_id in campaign_ids:
        CampaignRepository.refresh_counters(conn, campaign_id)

    merchant_deleted = False
    if EventStore.count_for_merchant(conn, merchant_id) == 0:
        paths_deleted += PathRepository.delete_for_merchant(conn, merchant_id)
        conn.execute("DELETE FROM campaigns WHERE merchant_id = ?", (merchant_id,))
        conn.execute("DELETE FROM merchants WHERE id = ?", (merchant_id,))
        merchant_deleted = True
    else:
        MerchantRepository.refresh_counters(conn, merchant_id)

    return _WorkerDeletion(
        emails_deleted=emails_deleted,
        paths_deleted=paths_deleted,
        campaigns_affected=len(campaign_ids),
        merchant_deleted=merchant_deleted,
    )


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@retry_on_db_lock()
def delete_merchant_data(merchant_id: str, worker_name: str) -> DeleteMerchantDataResult:
    """
    Remove one worker's data for a merchant.

    Side Effects:
        - Deletes the worker's campaign_emails rows for the merchant
        - Deletes path entries of recipients left without any event
        - Recomputes campaign and merchant counters
        - Deletes the merchant (and its campaigns, paths and projects) when no
          events remain
    """
    try:
        with time_block("maintenance.delete_merchant_data.latency"), db_transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM merchants WHERE id = ?", (merchant_id,)
            ).fetchone()
            if not exists:
                return DeleteMerchantDataResult.not_found(merchant_id, worker_name)
            deletion = _delete_worker_data(conn, merchant_id, worker_name)
    except sqlite3.Error as e:
        if is_lock_error(e):
            raise
        logger.error("Failed to delete worker %s data for merchant %s: %s", worker_name, merchant_id, e)
        raise InternalError("Failed to delete merchant data") from e

    counter("maintenance.delete_merchant_data")
    log_event(
        "maintenance.merchant_data_deleted",
        merchant_id=merchant_id,
        worker_name=worker_name,
        emails_deleted=deletion.emails_deleted,
        paths_deleted=deletion.paths_deleted,
        merchant_deleted=deletion.merchant_deleted,
    )
    return DeleteMerchantDataResult(
        success=True,
        merchant_id=merchant_id,
        worker_name=worker_name,
        emails_deleted=deletion.emails_deleted,
        paths_deleted=deletion.paths_deleted,
        campaigns_affected=deletion.campaigns_affected,
        merchant_deleted=deletion.merchant_deleted,
    )


@retry_on_db_lock()
def cleanup_old_customer_paths(
    merchant_id: str, worker_names: Collection[str] | None = None
) -> CleanupResult:
    """
    Drop the journeys of old users (recipients not classified as new).

    With worker_names, only old users with events from those workers.
    """
    clause, worker_params = worker_recipient_clause(worker_names)
    params: list[object] = [merchant_id]
    if clause:
        params.extend([merchant_id, *worker_params])

    with db_transaction() as conn:
        rows = conn.execute(
            f"""
            SELECT rp.recipient FROM recipient_paths rp
            WHERE rp.merchant_id = ? {clause}
            GROUP BY rp.recipient
            HAVING MAX(COALESCE(rp.is_new_user, 0)) = 0
            """,
            params,
        ).fetchall()
        recipients = {row["recipient"] for row in rows}
        deleted = _prune_recipient_paths(conn, merchant_id, recipients)

    logger.info(
        "Pruned %d path entries of %d old users for merchant %s",
        deleted,
        len(recipients),
        merchant_id,
    )
    return CleanupResult(
        paths_deleted=deleted,
        merchants_affected=1 if deleted else 0,
        recipients_affected=len(recipients),
    )


def _prune_merchants(conn: sqlite3.Connection, merchant_ids: list[str]) -> CleanupResult:
    deleted = 0
    affected = 0
    for merchant_id in merchant_ids:
        removed = PathRepository.delete_for_merchant(conn, merchant_id)
        if removed:
            affected += 1
            deleted += removed
    return CleanupResult(paths_deleted=deleted, merchants_affected=affected)


@retry_on_db_lock()
def cleanup_ignored_merchant_data() -> CleanupResult:
    """Drop every journey of merchants marked ignored."""
    with db_transaction() as conn:
        merchant_ids = [
            row["id"]
            for row in conn.execute(
                "SELECT id FROM merchants WHERE analysis_status = ?",
                (MerchantAnalysisStatus.IGNORED.value,),
            )
        ]
        result = _prune_merchants(conn, merchant_ids)

    logger.info(
        "Pruned %d path entries of %d ignored merchants",
        result.paths_deleted,
        result.merchants_affected,
    )
    return result


@retry_on_db_lock()
def cleanup_old_pending_data(days: int = PENDING_DATA_RETENTION_DAYS) -> CleanupResult:
    """
    Drop every journey of merchants still pending after `days` days.

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError("days must be >= 0")

    cutoff = pending_cutoff(days)
    with db_transaction() as conn:
        merchant_ids = [
            row["id"]
            for row in conn.execute(
                "SELECT id FROM merchants WHERE analysis_status = ? AND created_at < ?",
                (MerchantAnalysisStatus.PENDING.value, cutoff),
            )
        ]
        result = _prune_merchants(conn, merchant_ids)

    logger.info(
        "Pruned %d path entries of %d merchants pending since before %s",
        result.paths_deleted,
        result.merchants_affected,
        cutoff,
    )
    return result


def get_data_statistics(worker_name: str | None = None) -> DataStatistics:
    """Merchant counts by status plus campaign, email and path totals."""
    with get_db_connection() as conn:
        if worker_name:
            scope = """
                SELECT DISTINCT c.merchant_id FROM campaigns c
                JOIN campaign_emails ce ON ce.campaign_id = c.id
                WHERE ce.worker_name = ?
            """
            merchants = conn.execute(
                f"""
                SELECT analysis_status, COUNT(*) AS n FROM merchants
                WHERE id IN ({scope}) GROUP BY analysis_status
                """,
                (worker_name,),
            ).fetchall()
            totals = conn.execute(
                f"""
                SELECT
                    (SELECT COUNT(DISTINCT ce.campaign_id) FROM campaign_emails ce
                     WHERE ce.worker_name = :worker) AS campaigns,
                    (SELECT COUNT(*) FROM campaign_emails ce
                     WHERE ce.worker_name = :worker) AS emails,
                    (SELECT COUNT(*) FROM recipient_paths
                     WHERE merchant_id IN ({scope.replace("?", ":worker")})) AS paths
                """,
                {"worker": worker_name},
            ).fetchone()
        else:
            merchants = conn.execute(
                "SELECT analysis_status, COUNT(*) AS n FROM merchants GROUP BY analysis_status"
            ).fetchall()
            totals = conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM campaigns) AS campaigns,
                    (SELECT COUNT(*) FROM campaign_emails) AS emails,
                    (SELECT COUNT(*) FROM recipient_paths) AS paths
                """
            ).fetchone()

    by_status = {row["analysis_status"]: row["n"] for row in merchants}
    return DataStatistics(
        total_merchants=sum(by_status.values()),
        pending_merchants=by_status.get(MerchantAnalysisStatus.PENDING.value, 0),
        active_merchants=by_status.get(MerchantAnalysisStatus.ACTIVE.value, 0),
        ignored_merchants=by_status.get(MerchantAnalysisStatus.IGNORED.value, 0),
        total_campaigns=totals["campaigns"],
        total_emails=totals["emails"],
        total_paths=totals["paths"],
        worker_name=worker_name,
    )


def get_orphaned_workers() -> list[WorkerDataSummary]:
    """Every worker name found in the event store, with its footprint."""
    with get_db_connection() as conn:
        rows = conn.execute(
            """
            SELECT ce.worker_name, COUNT(ce.id) AS email_count,
                   COUNT(DISTINCT c.merchant_id) AS merchant_count
            FROM campaign_emails ce
            JOIN campaigns c ON ce.campaign_id = c.id
            GROUP BY ce.worker_name
            ORDER BY email_count DESC, ce.worker_name ASC
            """
        ).fetchall()
    return [
        WorkerDataSummary(
            worker_name=row["worker_name"],
            email_count=row["email_count"],
            merchant_count=row["merchant_count"],
        )
        for row in rows
    ]


@retry_on_db_lock()
def delete_orphaned_worker_data(worker_name: str) -> DeleteWorkerDataResult:
    """
    Remove a worker's data across every merchant it touched, with the same
    per-merchant semantics as delete_merchant_data.
    """
    result = DeleteWorkerDataResult(worker_name=worker_name)
    worker_sql, worker_params = worker_filter("ce.worker_name", [worker_name])
    with time_block("maintenance.delete_worker_data.latency"), db_transaction() as conn:
        merchant_ids = [
            row["merchant_id"]
            for row in conn.execute(
                f"""
                SELECT DISTINCT c.merchant_id FROM campaigns c
                JOIN campaign_emails ce ON ce.campaign_id = c.id
                WHERE 1 = 1 {worker_sql}
                ORDER BY c.merchant_id
                """,
                worker_params,
            )
        ]
        for merchant_id in merchant_ids:
            deletion = _delete_worker_data(conn, merchant_id, worker_name)
            result.emails_deleted += deletion.emails_deleted
            result.paths_deleted += deletion.paths_deleted
            if deletion.merchant_deleted:
                result.merchants_deleted += 1
                result.deleted_merchant_ids.append(merchant_id)
        result.merchants_affected = len(merchant_ids)

    counter("maintenance.delete_worker_data")
    log_event(
        "maintenance.worker_data_deleted",
        worker_name=worker_name,
        emails_deleted=result.emails_deleted,
        merchants_affected=result.merchants_affected,
        merchants_deleted=result.merchants_deleted,
    )
    return result
