"""
Path Builder: records delivered emails and maintains recipient journeys.

A journey is the ordered list of distinct campaigns a recipient received from
one merchant. Online tracking appends a campaign at the end of the journey the
first time the recipient gets it; a rebuild replays the event store in
received_at order through derive_paths. Both apply the same rule, so a rebuild
of in-order traffic reproduces exactly what tracking built.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime

from campaignpath.campaigns.repository import CampaignRepository, EventStore, MerchantRepository
from campaignpath.campaigns.types import EmailEvent, MerchantAnalysisStatus, is_valuable_tag
from campaignpath.config import DEFAULT_WORKER_NAME
from campaignpath.errors import ErrorKind, InternalError
from campaignpath.infrastructure.database import (
    db_transaction,
    get_db_connection,
    is_lock_error,
    retry_on_db_lock,
)
from campaignpath.observability.logging import get_logger
from campaignpath.observability.telemetry import counter, log_event, time_block
from campaignpath.paths.classification import FullSweepClassifier, UserClassifier
from campaignpath.paths.repository import PathRepository
from campaignpath.paths.types import (
    PathEntry,
    PathRebuildOptions,
    PathRebuildResult,
    RecipientPath,
    RecipientPathStep,
    TrackResult,
    TrackStatus,
)
from campaignpath.utils.domain import extract_domain
from campaignpath.utils.timestamps import to_utc_iso, utc_now_iso

logger = get_logger(__name__)


def normalize_recipient(recipient: str) -> str:
    return recipient.strip().lower()


def normalize_worker_name(worker_name: str | None) -> str:
    return (worker_name or "").strip() or DEFAULT_WORKER_NAME


def derive_paths(events: Iterable[EmailEvent]) -> dict[str, list[PathEntry]]:
    """
    Derive every recipient's journey from raw events.

    Events are ordered by (received_at, id); each campaign keeps only its first
    event. Sequence numbers start at 1 and have no gaps.

    Returns:
        recipient -> entries ordered by sequence_order
    """
    by_recipient: dict[str, list[EmailEvent]] = {}
    for event in events:
        by_recipient.setdefault(event.recipient, []).append(event)

    paths: dict[str, list[PathEntry]] = {}
    for recipient in sorted(by_recipient):
        entries: list[PathEntry] = []
        seen: set[str] = set()
        for event in sorted(by_recipient[recipient], key=lambda e: (e.received_at, e.id)):
            if event.campaign_id in seen:
                continue
            seen.add(event.campaign_id)
            entries.append(
                PathEntry(
                    recipient=recipient,
                    campaign_id=event.campaign_id,
                    sequence_order=len(entries) + 1,
                    first_received_at=event.received_at,
                )
            )
        paths[recipient] = entries
    return paths


def _record_event(
    conn: sqlite3.Connection,
    domain: str,
    subject: str,
    recipient: str,
    received_at: str,
    worker_name: str,
) -> TrackResult:
    merchant, is_new_merchant = MerchantRepository.get_or_create(conn, domain)
    campaign, is_new_campaign = CampaignRepository.get_or_create(
        conn, merchant.id, subject, received_at
    )
    EventStore.append(conn, campaign.id, recipient, received_at, worker_name)

    now = utc_now_iso()
    conn.execute(
        "UPDATE campaigns SET total_emails = total_emails + 1, updated_at = ? WHERE id = ?",
        (now, campaign.id),
    )
    conn.execute(
        "UPDATE merchants SET total_emails = total_emails + 1, updated_at = ? WHERE id = ?",
        (now, merchant.id),
    )

    entry = PathRepository.append_if_absent(conn, merchant.id, recipient, campaign, received_at)
    if entry is not None:
        conn.execute(
            "UPDATE campaigns SET unique_recipients = unique_recipients + 1 WHERE id = ?",
            (campaign.id,),
        )

    return TrackResult.tracked(
        merchant_id=merchant.id,
        campaign_id=campaign.id,
        is_new_merchant=is_new_merchant,
        is_new_campaign=is_new_campaign,
        entry=entry,
    )


def _prepare(
    sender: str, recipient: str, received_at: datetime | str | None
) -> tuple[str | None, str, str]:
    recipient = normalize_recipient(recipient)
    if not recipient:
        raise ValueError("recipient must not be empty")
    return extract_domain(sender), recipient, to_utc_iso(received_at)


@retry_on_db_lock()
def _track_in_transaction(
    domain: str,
    subject: str,
    recipient: str,
    received_at: str,
    worker_name: str,
    skip_ignored: bool,
) -> TrackResult:
    with time_block("paths.track.latency"), db_transaction() as conn:
        if skip_ignored:
            row = conn.execute(
                "SELECT id, analysis_status FROM merchants WHERE domain = ?", (domain,)
            ).fetchone()
            if row is not None and row["analysis_status"] == MerchantAnalysisStatus.IGNORED.value:
                conn.execute(
                    """
                    UPDATE merchants SET total_emails = total_emails + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (utc_now_iso(), row["id"]),
                )
                return TrackResult.skipped(row["id"], "Merchant is ignored")

        return _record_event(conn, domain, subject, recipient, received_at, worker_name)


def _track(
    sender: str,
    subject: str,
    recipient: str,
    received_at: datetime | str | None,
    worker_name: str | None,
    skip_ignored: bool,
) -> TrackResult:
    domain, recipient, received = _prepare(sender, recipient, received_at)
    if domain is None:
        counter("paths.track_rejected")
        return TrackResult.rejected(ErrorKind.INVALID_DOMAIN, "Sender has no valid domain")

    try:
        result = _track_in_transaction(
            domain,
            subject,
            recipient,
            received,
            normalize_worker_name(worker_name),
            skip_ignored,
        )
    except sqlite3.Error as e:
        logger.error("Failed to track email for domain %s: %s", domain, e)
        raise InternalError("Failed to track email") from e

    if result.status == TrackStatus.SKIPPED:
        counter("paths.track_skipped")
    else:
        counter("paths.tracked")
        if result.path_entry_created:
            counter("paths.entries_created")
    return result


def track_event(
    sender: str,
    subject: str,
    recipient: str,
    received_at: datetime | str | None = None,
    worker_name: str | None = DEFAULT_WORKER_NAME,
) -> TrackResult:
    """
    Record one delivered email and extend the recipient's journey.

    Repeated emails of a campaign are counted but never add a second path
    entry or move first_received_at.

    Raises:
        ValueError: If recipient is empty or received_at is not ISO-8601
        InternalError: On storage failure (the whole event is rolled back)

    Side Effects:
        - Creates merchant / campaign rows on first sight
        - Appends to campaign_emails
        - May append to recipient_paths
    """
    return _track(sender, subject, recipient, received_at, worker_name, skip_ignored=False)


def track_event_selective(
    sender: str,
    subject: str,
    recipient: str,
    received_at: datetime | str | None = None,
    worker_name: str | None = DEFAULT_WORKER_NAME,
    skip_ignored: bool = True,
) -> TrackResult:
    """
    Like track_event, but emails of ignored merchants only bump the merchant's
    total_emails and are otherwise dropped.

    Side Effects:
        - Same as track_event, or only merchants.total_emails when skipped
    """
    return _track(sender, subject, recipient, received_at, worker_name, skip_ignored)


@retry_on_db_lock()
def rebuild_paths(
    merchant_id: str,
    options: PathRebuildOptions | None = None,
    classifier: UserClassifier | None = None,
) -> PathRebuildResult:
    """
    Recompute a merchant's journeys from the event store.

    With options.worker_names, only those workers' events shape the journeys.
    Classification is rerun in the same transaction.

    Side Effects:
        - Replaces every recipient_paths row of the merchant
        - Rewrites the merchant's new-user flags
    """
    options = options or PathRebuildOptions()
    classifier = classifier or FullSweepClassifier()

    try:
        with time_block("paths.rebuild.latency"), db_transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM merchants WHERE id = ?", (merchant_id,)
            ).fetchone()
            if not exists:
                return PathRebuildResult.not_found(merchant_id)

            deleted = PathRepository.delete_for_merchant(conn, merchant_id)
            events = EventStore.list_for_merchant(conn, merchant_id, options.worker_names)
            paths = derive_paths(events)
            created = PathRepository.insert_entries(
                conn, merchant_id, (entry for entries in paths.values() for entry in entries)
            )
            classification = classifier.reclassify(conn, merchant_id)
    except sqlite3.Error as e:
        if is_lock_error(e):
            raise
        logger.error("Failed to rebuild paths for merchant %s: %s", merchant_id, e)
        raise InternalError("Failed to rebuild recipient paths") from e

    counter("paths.rebuild")
    log_event(
        "paths.rebuilt",
        merchant_id=merchant_id,
        workers=sorted(options.worker_names) if options.worker_names else "all",
        deleted=deleted,
        created=created,
        recipients=len(paths),
    )
    return PathRebuildResult.completed(
        merchant_id=merchant_id,
        paths_deleted=deleted,
        paths_created=created,
        recipients_processed=len(paths),
        new_users=classification.new_users,
    )


def get_recipient_path(merchant_id: str, recipient: str) -> RecipientPath:
    """One recipient's journey with campaign details (empty when unknown)."""
    recipient = normalize_recipient(recipient)
    with get_db_connection() as conn:
        rows = conn.execute(
            """
            SELECT rp.campaign_id, rp.sequence_order, rp.first_received_at, rp.is_new_user,
                   c.subject, c.tag, c.is_root
            FROM recipient_paths rp
            JOIN campaigns c ON rp.campaign_id = c.id
            WHERE rp.merchant_id = ? AND rp.recipient = ?
            ORDER BY rp.sequence_order ASC
            """,
            (merchant_id, recipient),
        ).fetchall()

    steps = [
        RecipientPathStep(
            campaign_id=row["campaign_id"],
            subject=row["subject"],
            sequence_order=row["sequence_order"],
            first_received_at=row["first_received_at"],
            tag=row["tag"] or 0,
            is_valuable=is_valuable_tag(row["tag"]),
            is_root=bool(row["is_root"]),
            is_new_user=None if row["is_new_user"] is None else bool(row["is_new_user"]),
        )
        for row in rows
    ]
    return RecipientPath(merchant_id=merchant_id, recipient=recipient, steps=steps)
