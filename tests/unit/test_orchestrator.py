"""
Tests for project analysis runs.

Validates:
1. Projects only see their own workers' events and their own roots
2. Runs never modify merchant-global paths or classification
3. Progress is monotonic and ends with a single COMPLETE report
"""

from __future__ import annotations

import pytest

from campaignpath.campaigns.repository import CampaignRepository
from campaignpath.errors import NotFoundError
from campaignpath.paths.builder import get_recipient_path
from campaignpath.paths.classification import get_user_type_stats
from campaignpath.projects.orchestrator import AnalysisOrchestrator
from campaignpath.projects.repository import ProjectRepository
from campaignpath.projects.types import AnalysisPhase


def _edges(project_id: str) -> dict[tuple[str, str], int]:
    return {
        (e.from_subject, e.to_subject): e.user_count
        for e in ProjectRepository.get_path_edges(project_id)
    }


@pytest.fixture
def shop(track) -> dict[str, str]:
    """
    shop.com as seen by two workers:

    - eu: alice Welcome -> Sale -> Buy, bob Welcome -> Sale
    - us: carol Sale -> Buy, bob Buy
    """
    result = track("shop.com", "Welcome", "alice@example.com", day=1, worker="eu")
    track("shop.com", "Sale", "alice@example.com", day=2, worker="eu")
    track("shop.com", "Buy", "alice@example.com", day=3, worker="eu")
    track("shop.com", "Welcome", "bob@example.com", day=1, worker="eu")
    track("shop.com", "Sale", "bob@example.com", day=2, worker="eu")
    track("shop.com", "Sale", "carol@example.com", day=2, worker="us")
    track("shop.com", "Buy", "carol@example.com", day=4, worker="us")
    track("shop.com", "Buy", "bob@example.com", day=5, worker="us")

    ids = {c.subject: c.id for c in CampaignRepository.list_for_merchant(result.merchant_id)}
    ids["merchant"] = result.merchant_id
    return ids


def test_scoped_analysis(shop):
    project = ProjectRepository.create(shop["merchant"], "EU onboarding", ["eu"])
    ProjectRepository.set_root_campaign(project.id, shop["Welcome"])

    result = AnalysisOrchestrator().analyze_project(project.id)

    assert result.total_recipients == 2
    assert result.new_users == 2
    assert result.old_users == 0
    assert result.events_created == 5
    assert result.edges_created == 2

    edges = _edges(project.id)
    assert edges == {("Welcome", "Sale"): 2, ("Sale", "Buy"): 1}

    stats = ProjectRepository.get_user_stats(project.id)
    assert (stats.total_recipients, stats.new_users, stats.old_users) == (2, 2, 0)
    assert stats.last_analysis_time is not None


def test_all_workers_project(shop):
    project = ProjectRepository.create(shop["merchant"], "Everything", ["eu", "us"])
    ProjectRepository.set_root_campaign(project.id, shop["Welcome"])

    result = AnalysisOrchestrator().analyze_project(project.id)

    assert result.total_recipients == 3
    assert result.new_users == 2
    assert result.old_users == 1
    # bob's late Buy from "us" extends his journey
    edges = _edges(project.id)
    assert edges[("Sale", "Buy")] == 2


def test_projects_do_not_affect_each_other_or_merchant(shop):
    welcome_project = ProjectRepository.create(shop["merchant"], "Welcome root", ["eu", "us"])
    sale_project = ProjectRepository.create(shop["merchant"], "Sale root", ["eu", "us"])
    ProjectRepository.set_root_campaign(welcome_project.id, shop["Welcome"])
    ProjectRepository.set_root_campaign(sale_project.id, shop["Sale"])
    merchant_before = get_user_type_stats(shop["merchant"])
    alice_before = get_recipient_path(shop["merchant"], "alice@example.com")

    orchestrator = AnalysisOrchestrator()
    first = orchestrator.analyze_project(welcome_project.id)
    second = orchestrator.analyze_project(sale_project.id)

    assert first.new_users == 2
    assert second.new_users == 1
    assert ProjectRepository.get_user_stats(welcome_project.id).new_users == 2
    assert get_user_type_stats(shop["merchant"]) == merchant_before
    assert get_recipient_path(shop["merchant"], "alice@example.com") == alice_before


def test_unconfirmed_root_is_ignored(shop):
    project = ProjectRepository.create(shop["merchant"], "Candidate only", ["eu"])
    ProjectRepository.set_root_campaign(project.id, shop["Welcome"], is_confirmed=False)

    result = AnalysisOrchestrator().analyze_project(project.id)

    assert result.new_users == 0
    assert result.edges_created == 0


def test_rerun_replaces_results(shop):
    project = ProjectRepository.create(shop["merchant"], "EU", ["eu"])
    ProjectRepository.set_root_campaign(project.id, shop["Welcome"])
    orchestrator = AnalysisOrchestrator()
    orchestrator.analyze_project(project.id)

    ProjectRepository.remove_root_campaign(project.id, shop["Welcome"])
    result = orchestrator.analyze_project(project.id)

    assert result.new_users == 0
    assert ProjectRepository.get_path_edges(project.id) == []
    assert ProjectRepository.get_user_stats(project.id).total_events == 5


def test_progress_is_monotonic(shop):
    project = ProjectRepository.create(shop["merchant"], "EU", ["eu"])
    reports = []

    AnalysisOrchestrator(progress_batch=1).analyze_project(project.id, reports.append)

    values = [r.progress for r in reports]
    assert values == sorted(values)
    assert reports[0].phase == AnalysisPhase.INITIALIZING
    assert reports[-1].phase == AnalysisPhase.COMPLETE
    assert reports[-1].progress == 100
    assert sum(1 for r in reports if r.phase == AnalysisPhase.COMPLETE) == 1


def test_failing_progress_rolls_back(shop):
    project = ProjectRepository.create(shop["merchant"], "EU", ["eu"])
    ProjectRepository.set_root_campaign(project.id, shop["Welcome"])

    def explode(progress):
        if progress.phase == AnalysisPhase.BUILDING_EDGES:
            raise RuntimeError("stop")

    with pytest.raises(RuntimeError):
        AnalysisOrchestrator().analyze_project(project.id, explode)

    stats = ProjectRepository.get_user_stats(project.id)
    assert stats.total_events == 0
    assert stats.last_analysis_time is None


def test_unknown_project():
    with pytest.raises(NotFoundError):
        AnalysisOrchestrator().analyze_project("missing")
