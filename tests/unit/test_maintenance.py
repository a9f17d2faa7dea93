"""
Tests for per-worker deletion, path cleanups and data statistics.

Validates:
1. Deleting one worker's data leaves other workers' numbers unchanged
2. A merchant disappears only when no events of any worker remain
3. Cleanups prune derived paths only, so a rebuild restores them
"""

from __future__ import annotations

import pytest

from campaignpath.campaigns.repository import CampaignRepository, MerchantRepository
from campaignpath.campaigns.types import MerchantAnalysisStatus
from campaignpath.errors import ErrorKind
from campaignpath.maintenance import (
    cleanup_ignored_merchant_data,
    cleanup_old_customer_paths,
    cleanup_old_pending_data,
    delete_merchant_data,
    delete_orphaned_worker_data,
    get_data_statistics,
    get_orphaned_workers,
)
from campaignpath.paths.builder import get_recipient_path, rebuild_paths
from campaignpath.paths.classification import get_user_type_stats, set_root_campaign


@pytest.fixture
def two_workers(track) -> str:
    """shop.com seen by worker "eu" (alice, bob) and worker "us" (bob, carol)."""
    result = track("shop.com", "Welcome", "alice@example.com", day=1, worker="eu")
    track("shop.com", "Sale", "alice@example.com", day=2, worker="eu")
    track("shop.com", "Welcome", "bob@example.com", day=1, worker="eu")
    track("shop.com", "Sale", "bob@example.com", day=2, worker="us")
    track("shop.com", "Sale", "carol@example.com", day=2, worker="us")
    return result.merchant_id


class TestDeleteMerchantData:
    def test_other_worker_numbers_unchanged(self, two_workers):
        us_before = get_user_type_stats(two_workers, ["us"])

        result = delete_merchant_data(two_workers, "eu")

        assert result.success
        assert result.emails_deleted == 3
        assert not result.merchant_deleted
        assert get_user_type_stats(two_workers, ["us"]) == us_before

        merchant = MerchantRepository.get_by_id(two_workers)
        assert merchant.total_emails == 2
        assert merchant.total_campaigns == 1

    def test_recipients_without_events_lose_their_paths(self, two_workers):
        result = delete_merchant_data(two_workers, "eu")

        # alice only had eu events; bob still has a us event
        assert get_recipient_path(two_workers, "alice@example.com").steps == []
        assert get_recipient_path(two_workers, "bob@example.com").steps != []
        assert result.paths_deleted == 2

    def test_campaign_counters_are_recomputed(self, two_workers):
        delete_merchant_data(two_workers, "eu")

        campaigns = {c.subject: c for c in CampaignRepository.list_for_merchant(two_workers)}
        assert campaigns["Sale"].total_emails == 2
        assert campaigns["Sale"].unique_recipients == 2
        assert campaigns["Welcome"].total_emails == 0

    def test_last_worker_removes_merchant(self, two_workers):
        delete_merchant_data(two_workers, "eu")
        result = delete_merchant_data(two_workers, "us")

        assert result.merchant_deleted
        assert MerchantRepository.get_by_id(two_workers) is None
        assert CampaignRepository.list_for_merchant(two_workers) == []

    def test_unknown_merchant(self):
        result = delete_merchant_data("missing", "eu")

        assert not result.success
        assert result.error_kind == ErrorKind.NOT_FOUND

    def test_unknown_worker_is_a_no_op(self, two_workers):
        result = delete_merchant_data(two_workers, "apac")

        assert result.success
        assert result.emails_deleted == 0
        assert MerchantRepository.get_by_id(two_workers).total_emails == 5


class TestOrphanedWorkers:
    def test_lists_every_worker(self, two_workers, track):
        track("other.com", "Hello", "dave@example.com", worker="us")

        workers = {w.worker_name: w for w in get_orphaned_workers()}

        assert workers["eu"].email_count == 3
        assert workers["eu"].merchant_count == 1
        assert workers["us"].email_count == 3
        assert workers["us"].merchant_count == 2

    def test_delete_across_merchants(self, two_workers, track):
        other = track("other.com", "Hello", "dave@example.com", worker="us")

        result = delete_orphaned_worker_data("us")

        assert result.emails_deleted == 3
        assert result.merchants_affected == 2
        assert result.deleted_merchant_ids == [other.merchant_id]
        assert MerchantRepository.get_by_id(two_workers) is not None
        assert [w.worker_name for w in get_orphaned_workers()] == ["eu"]


class TestCleanups:
    def test_old_customer_cleanup_keeps_new_users(self, welcome_funnel):
        welcome = next(
            c.id
            for c in CampaignRepository.list_for_merchant(welcome_funnel)
            if c.subject == "Welcome"
        )
        set_root_campaign(welcome, True)

        result = cleanup_old_customer_paths(welcome_funnel)

        assert result.recipients_affected == 1
        assert result.paths_deleted == 2
        assert get_recipient_path(welcome_funnel, "carol@example.com").steps == []
        assert len(get_recipient_path(welcome_funnel, "alice@example.com").steps) == 3

    def test_rebuild_restores_pruned_paths(self, welcome_funnel):
        cleanup_old_customer_paths(welcome_funnel)

        rebuild_paths(welcome_funnel)

        assert len(get_recipient_path(welcome_funnel, "carol@example.com").steps) == 2

    def test_ignored_merchants(self, welcome_funnel, track):
        other = track("other.com", "Hello", "dave@example.com")
        MerchantRepository.set_analysis_status(welcome_funnel, MerchantAnalysisStatus.IGNORED)

        result = cleanup_ignored_merchant_data()

        assert result.merchants_affected == 1
        assert result.paths_deleted == 7
        assert get_recipient_path(other.merchant_id, "dave@example.com").steps != []
        # events survive
        assert MerchantRepository.get_by_id(welcome_funnel).total_emails == 7

    def test_pending_cleanup_respects_age(self, welcome_funnel):
        assert cleanup_old_pending_data(30).merchants_affected == 0

        result = cleanup_old_pending_data(0)

        assert result.merchants_affected == 1
        assert get_recipient_path(welcome_funnel, "alice@example.com").steps == []

    def test_pending_cleanup_rejects_negative_days(self):
        with pytest.raises(ValueError):
            cleanup_old_pending_data(-1)


class TestStatistics:
    def test_global_and_worker_statistics(self, two_workers, track):
        track("other.com", "Hello", "dave@example.com", worker="us")
        MerchantRepository.set_analysis_status(two_workers, MerchantAnalysisStatus.ACTIVE)

        stats = get_data_statistics()
        eu = get_data_statistics("eu")

        assert stats.total_merchants == 2
        assert stats.active_merchants == 1
        assert stats.pending_merchants == 1
        assert stats.total_emails == 6
        assert stats.total_campaigns == 3
        assert eu.total_merchants == 1
        assert eu.total_emails == 3
        assert eu.worker_name == "eu"
