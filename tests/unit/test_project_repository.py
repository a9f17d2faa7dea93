"""Tests for analysis project storage: CRUD, project roots and project tags."""

from __future__ import annotations

import pytest

from campaignpath.campaigns.repository import CampaignRepository
from campaignpath.errors import NotFoundError
from campaignpath.projects.orchestrator import AnalysisOrchestrator
from campaignpath.projects.repository import ProjectRepository
from campaignpath.projects.types import ProjectStatus, ValuableStats


@pytest.fixture
def campaign_ids(welcome_funnel) -> dict[str, str]:
    return {c.subject: c.id for c in CampaignRepository.list_for_merchant(welcome_funnel)}


class TestProjectCrud:
    def test_create_and_get(self, welcome_funnel):
        project = ProjectRepository.create(welcome_funnel, "Onboarding", note="Q1")

        loaded = ProjectRepository.get_by_id(project.id)
        assert loaded.name == "Onboarding"
        assert loaded.worker_names == ["global"]
        assert loaded.status == ProjectStatus.ACTIVE
        assert loaded.note == "Q1"
        assert loaded.last_analysis_time is None

    def test_create_requires_merchant(self):
        with pytest.raises(NotFoundError):
            ProjectRepository.create("missing", "Nope")

    def test_update_keeps_unset_fields(self, welcome_funnel):
        project = ProjectRepository.create(welcome_funnel, "Onboarding", ["eu"], note="keep")

        updated = ProjectRepository.update(project.id, name="Renamed")

        assert updated.name == "Renamed"
        assert updated.worker_names == ["eu"]
        assert updated.note == "keep"

    def test_update_can_clear_note(self, welcome_funnel):
        project = ProjectRepository.create(welcome_funnel, "Onboarding", note="old")

        updated = ProjectRepository.update(project.id, note=None)

        assert updated.note is None

    def test_list_filters(self, welcome_funnel):
        first = ProjectRepository.create(welcome_funnel, "A")
        ProjectRepository.create(welcome_funnel, "B")
        ProjectRepository.update(first.id, status=ProjectStatus.ARCHIVED)

        active = ProjectRepository.list_projects(status=ProjectStatus.ACTIVE)

        assert [p.name for p in active] == ["B"]
        assert len(ProjectRepository.list_projects(merchant_id=welcome_funnel)) == 2

    def test_delete(self, welcome_funnel):
        project = ProjectRepository.create(welcome_funnel, "Onboarding")

        assert ProjectRepository.delete(project.id)
        assert not ProjectRepository.delete(project.id)
        assert ProjectRepository.get_by_id(project.id) is None
        assert ProjectRepository.update(project.id, name="x") is None


class TestProjectRoots:
    def test_roots_are_project_local(self, welcome_funnel, campaign_ids):
        project = ProjectRepository.create(welcome_funnel, "Onboarding")

        root = ProjectRepository.set_root_campaign(project.id, campaign_ids["Welcome"])

        assert root.is_confirmed
        assert root.subject == "Welcome"
        assert not CampaignRepository.get_by_id(campaign_ids["Welcome"]).is_root

    def test_upsert_and_remove(self, welcome_funnel, campaign_ids):
        project = ProjectRepository.create(welcome_funnel, "Onboarding")
        ProjectRepository.set_root_campaign(project.id, campaign_ids["Welcome"], False)
        ProjectRepository.set_root_campaign(project.id, campaign_ids["Welcome"], True)

        roots = ProjectRepository.get_root_campaigns(project.id)
        assert [(r.subject, r.is_confirmed) for r in roots] == [("Welcome", True)]

        assert ProjectRepository.remove_root_campaign(project.id, campaign_ids["Welcome"])
        assert ProjectRepository.get_root_campaigns(project.id) == []

    def test_campaign_of_other_merchant_is_rejected(self, welcome_funnel, track):
        other = track("other.com", "Hello", "dave@example.com")
        project = ProjectRepository.create(welcome_funnel, "Onboarding")

        with pytest.raises(NotFoundError):
            ProjectRepository.set_root_campaign(project.id, other.campaign_id)


class TestProjectTags:
    def test_project_tag_overrides_campaign_tag(self, welcome_funnel, campaign_ids):
        CampaignRepository.set_tag(campaign_ids["Sale"], 1)
        project = ProjectRepository.create(welcome_funnel, "Onboarding")

        ProjectRepository.set_campaign_tag(project.id, campaign_ids["Sale"], 0, "not here")
        ProjectRepository.set_campaign_tag(project.id, campaign_ids["Checkout"], 2)

        assert ProjectRepository.get_effective_tag(project.id, campaign_ids["Sale"]) == 0
        assert ProjectRepository.get_effective_tag(project.id, campaign_ids["Checkout"]) == 2
        campaigns = {c.subject: c for c in ProjectRepository.list_campaigns_with_tags(project.id)}
        assert campaigns["Sale"].campaign_tag == 1
        assert not campaigns["Sale"].is_valuable
        assert campaigns["Checkout"].is_valuable
        assert not campaigns["Welcome"].has_project_tag

    def test_removing_tag_falls_back(self, welcome_funnel, campaign_ids):
        CampaignRepository.set_tag(campaign_ids["Sale"], 1)
        project = ProjectRepository.create(welcome_funnel, "Onboarding")
        ProjectRepository.set_campaign_tag(project.id, campaign_ids["Sale"], 3)

        assert ProjectRepository.remove_campaign_tag(project.id, campaign_ids["Sale"])

        assert ProjectRepository.get_effective_tag(project.id, campaign_ids["Sale"]) == 1

    def test_invalid_tag(self, welcome_funnel, campaign_ids):
        project = ProjectRepository.create(welcome_funnel, "Onboarding")
        with pytest.raises(ValueError):
            ProjectRepository.set_campaign_tag(project.id, campaign_ids["Sale"], 5)


class TestValuableStats:
    def test_conversion_rate_of_new_users(self, welcome_funnel, campaign_ids):
        project = ProjectRepository.create(welcome_funnel, "Onboarding")
        ProjectRepository.set_root_campaign(project.id, campaign_ids["Welcome"])
        ProjectRepository.set_campaign_tag(project.id, campaign_ids["Checkout"], 2)
        AnalysisOrchestrator().analyze_project(project.id)

        stats = ProjectRepository.calculate_valuable_stats(project.id)

        assert stats.valuable_campaign_count == 1
        assert stats.high_value_campaign_count == 1
        # New users alice and bob; only alice received Checkout (carol is old)
        assert stats.valuable_user_reach == 1
        assert stats.valuable_conversion_rate == 50.0

    def test_old_users_do_not_count_toward_reach(self, track):
        merchant_id = track("shop.com", "Welcome", "alice@example.com", day=1).merchant_id
        track("shop.com", "Checkout", "alice@example.com", day=2)
        for recipient in ("bob@example.com", "carol@example.com", "dave@example.com"):
            track("shop.com", "Checkout", recipient, day=2)
        ids = {c.subject: c.id for c in CampaignRepository.list_for_merchant(merchant_id)}
        project = ProjectRepository.create(merchant_id, "Onboarding")
        ProjectRepository.set_root_campaign(project.id, ids["Welcome"])
        ProjectRepository.set_campaign_tag(project.id, ids["Checkout"], 2)
        AnalysisOrchestrator().analyze_project(project.id)

        stats = ProjectRepository.calculate_valuable_stats(project.id)

        assert stats.valuable_user_reach == 1
        assert stats.valuable_conversion_rate == 100.0
        assert stats.valuable_conversion_rate <= 100

    def test_no_new_users_means_no_reach(self, welcome_funnel, campaign_ids):
        project = ProjectRepository.create(welcome_funnel, "No roots")
        ProjectRepository.set_campaign_tag(project.id, campaign_ids["Checkout"], 1)
        AnalysisOrchestrator().analyze_project(project.id)

        stats = ProjectRepository.calculate_valuable_stats(project.id)

        assert stats.valuable_user_reach == 0
        assert stats.valuable_conversion_rate == 0.0

    def test_rate_is_rounded(self):
        stats = ValuableStats.from_tags([1, 2, 0], reach=1, new_users=3)
        assert stats.valuable_conversion_rate == 33.33
        assert ValuableStats.from_tags([], reach=0, new_users=0).valuable_conversion_rate == 0.0
