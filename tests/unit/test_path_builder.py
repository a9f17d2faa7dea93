"""
Tests for online path tracking and rebuilds.

Validates:
1. Journeys are 1-based, contiguous and free of duplicate campaigns
2. Repeated emails are counted but never extend a journey
3. A rebuild reproduces exactly what in-order tracking built
4. Ignored merchants and unusable senders are handled without raising
"""

from __future__ import annotations

import sqlite3

import pytest

from campaignpath.campaigns.repository import CampaignRepository, MerchantRepository
from campaignpath.campaigns.types import EmailEvent, MerchantAnalysisStatus
from campaignpath.errors import ErrorKind, InternalError, NotFoundError
from campaignpath.infrastructure.database import get_db_connection
from campaignpath.paths.builder import (
    derive_paths,
    get_recipient_path,
    rebuild_paths,
    track_event,
    track_event_selective,
)
from campaignpath.paths.repository import PathRepository
from campaignpath.paths.types import PathRebuildOptions, TrackStatus


def _path_rows(merchant_id: str) -> list[tuple[str, str, int, str]]:
    with get_db_connection() as conn:
        rows = conn.execute(
            """
            SELECT recipient, campaign_id, sequence_order, first_received_at
            FROM recipient_paths WHERE merchant_id = ?
            ORDER BY recipient, sequence_order
            """,
            (merchant_id,),
        ).fetchall()
    return [tuple(row) for row in rows]


class TestDerivePaths:
    def test_orders_by_time_then_id_and_dedupes(self):
        events = [
            EmailEvent(3, "c2", "a@x.com", "2024-01-02", "w1"),
            EmailEvent(1, "c1", "a@x.com", "2024-01-01", "w1"),
            EmailEvent(2, "c1", "a@x.com", "2024-01-03", "w2"),
            EmailEvent(5, "c3", "a@x.com", "2024-01-02", "w1"),
            EmailEvent(4, "c1", "b@x.com", "2024-01-05", "w1"),
        ]

        paths = derive_paths(events)

        assert [e.campaign_id for e in paths["a@x.com"]] == ["c1", "c2", "c3"]
        assert [e.sequence_order for e in paths["a@x.com"]] == [1, 2, 3]
        # First event wins, later duplicates are ignored
        assert paths["a@x.com"][0].first_received_at == "2024-01-01"
        assert [e.campaign_id for e in paths["b@x.com"]] == ["c1"]

    def test_empty_input(self):
        assert derive_paths([]) == {}


class TestTrackEvent:
    def test_first_email_creates_merchant_campaign_and_entry(self, track):
        result = track("shop.com", "Welcome", "alice@example.com")

        assert result.success
        assert result.status == TrackStatus.TRACKED
        assert result.is_new_merchant
        assert result.is_new_campaign
        assert result.path_entry_created
        assert result.sequence_order == 1

        merchant = MerchantRepository.get_by_id(result.merchant_id)
        assert merchant.domain == "shop.com"
        assert merchant.analysis_status == MerchantAnalysisStatus.PENDING
        assert merchant.total_campaigns == 1
        assert merchant.total_emails == 1

    def test_subdomains_share_one_merchant(self, track):
        first = track("shop.com", "Welcome", "alice@example.com")
        second = track_event("promo@mail.shop.com", "Sale", "alice@example.com")

        assert second.merchant_id == first.merchant_id
        assert not second.is_new_merchant
        assert second.sequence_order == 2

    def test_repeat_email_is_counted_but_not_appended(self, track):
        first = track("shop.com", "Weekly", "alice@example.com", day=1)
        again = track("shop.com", "Weekly", "alice@example.com", day=8)

        assert again.success
        assert not again.path_entry_created
        assert again.sequence_order is None
        campaign = CampaignRepository.get_by_id(first.campaign_id)
        assert campaign.total_emails == 2
        assert campaign.unique_recipients == 1
        # first_received_at keeps the first delivery
        assert _path_rows(first.merchant_id)[0][3].startswith("2024-01-01")

    def test_sequence_is_contiguous_per_recipient(self, track):
        for day, subject in enumerate(["A", "B", "A", "C", "B", "D"], start=1):
            result = track("shop.com", subject, "alice@example.com", day=day)

        rows = _path_rows(result.merchant_id)
        assert [row[2] for row in rows] == [1, 2, 3, 4]
        assert len({row[1] for row in rows}) == 4

    def test_recipient_is_normalized(self, track):
        track("shop.com", "Welcome", "Alice@Example.com ")
        result = track("shop.com", "Sale", "alice@example.com", day=2)

        assert result.sequence_order == 2
        path = get_recipient_path(result.merchant_id, "ALICE@example.com")
        assert [step.subject for step in path.steps] == ["Welcome", "Sale"]

    def test_invalid_sender_is_rejected(self):
        result = track_event("not-an-address", "Hello", "alice@example.com")

        assert not result.success
        assert result.status == TrackStatus.REJECTED
        assert result.error_kind == ErrorKind.INVALID_DOMAIN
        assert result.merchant_id is None

    def test_empty_recipient_raises(self):
        with pytest.raises(ValueError):
            track_event("news@shop.com", "Hello", "   ")


class TestTrackSelective:
    def test_ignored_merchant_only_counts(self, track):
        first = track("shop.com", "Welcome", "alice@example.com")
        MerchantRepository.set_analysis_status(first.merchant_id, MerchantAnalysisStatus.IGNORED)

        result = track_event_selective(
            "news@shop.com", "Sale", "bob@example.com", "2024-01-02T00:00:00Z"
        )

        assert result.success
        assert result.status == TrackStatus.SKIPPED
        assert result.merchant_id == first.merchant_id
        merchant = MerchantRepository.get_by_id(first.merchant_id)
        assert merchant.total_emails == 2
        assert merchant.total_campaigns == 1
        assert len(_path_rows(first.merchant_id)) == 1

    def test_active_merchant_is_tracked(self, track):
        first = track("shop.com", "Welcome", "alice@example.com")
        result = track_event_selective("news@shop.com", "Sale", "alice@example.com")

        assert result.status == TrackStatus.TRACKED
        assert result.merchant_id == first.merchant_id

    def test_skip_disabled_tracks_ignored_merchant(self, track):
        first = track("shop.com", "Welcome", "alice@example.com")
        MerchantRepository.set_analysis_status(first.merchant_id, MerchantAnalysisStatus.IGNORED)

        result = track_event_selective(
            "news@shop.com", "Sale", "alice@example.com", skip_ignored=False
        )

        assert result.status == TrackStatus.TRACKED
        assert result.path_entry_created


class TestRebuildPaths:
    def test_rebuild_matches_tracking(self, welcome_funnel):
        before = _path_rows(welcome_funnel)

        result = rebuild_paths(welcome_funnel)

        assert result.success
        assert result.paths_deleted == len(before)
        assert result.paths_created == len(before)
        assert result.recipients_processed == 3
        assert _path_rows(welcome_funnel) == before

    def test_rebuild_reorders_out_of_order_arrivals(self, track):
        # Sale arrives first online, but was delivered after Welcome
        track("shop.com", "Sale", "alice@example.com", day=5)
        result = track("shop.com", "Welcome", "alice@example.com", day=1)
        assert result.sequence_order == 2

        rebuild_paths(result.merchant_id)

        path = get_recipient_path(result.merchant_id, "alice@example.com")
        assert [step.subject for step in path.steps] == ["Welcome", "Sale"]
        assert [step.sequence_order for step in path.steps] == [1, 2]

    def test_rebuild_with_worker_scope(self, track):
        track("shop.com", "Welcome", "alice@example.com", day=1, worker="eu")
        track("shop.com", "Sale", "alice@example.com", day=2, worker="us")
        result = track("shop.com", "Welcome", "bob@example.com", day=1, worker="us")

        rebuilt = rebuild_paths(result.merchant_id, PathRebuildOptions.for_workers(["us"]))

        assert rebuilt.recipients_processed == 2
        path = get_recipient_path(result.merchant_id, "alice@example.com")
        assert [step.subject for step in path.steps] == ["Sale"]

    def test_rebuild_reclassifies(self, welcome_funnel):
        with get_db_connection() as conn:
            welcome = next(
                c for c in PathRepository.load_campaigns(conn, welcome_funnel).values()
                if c.subject == "Welcome"
            )
            conn.execute("UPDATE campaigns SET is_root = 1 WHERE id = ?", (welcome.id,))
            conn.commit()

        result = rebuild_paths(welcome_funnel)

        assert result.new_users == 2

    def test_storage_failure_rolls_back_and_raises_internal(self, welcome_funnel):
        class BrokenClassifier:
            def reclassify(self, conn, merchant_id):
                raise sqlite3.IntegrityError("constraint failed")

        before = _path_rows(welcome_funnel)

        with pytest.raises(InternalError):
            rebuild_paths(welcome_funnel, classifier=BrokenClassifier())

        assert _path_rows(welcome_funnel) == before

    def test_unknown_merchant(self):
        result = rebuild_paths("missing")

        assert not result.success
        assert result.error_kind == ErrorKind.NOT_FOUND
        with pytest.raises(NotFoundError):
            result.unwrap()


class TestRecipientPath:
    def test_unknown_recipient_has_empty_path(self, welcome_funnel):
        path = get_recipient_path(welcome_funnel, "nobody@example.com")
        assert path.steps == []

    def test_steps_carry_campaign_details(self, welcome_funnel):
        path = get_recipient_path(welcome_funnel, "alice@example.com")

        assert [step.subject for step in path.steps] == ["Welcome", "Sale", "Checkout"]
        assert all(step.is_new_user is False for step in path.steps)
        assert not any(step.is_valuable for step in path.steps)
