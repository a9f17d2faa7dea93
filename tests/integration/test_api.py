"""
End-to-end API tests through FastAPI's TestClient.

Each test builds its own app on the per-test database; analyses run on a real
AnalysisQueue worker thread.
"""

from __future__ import annotations

import json
import threading

import pytest
from fastapi.testclient import TestClient

from campaignpath.api.app import create_app
from campaignpath.projects.orchestrator import AnalysisOrchestrator
from campaignpath.projects.queue import AnalysisQueue

EMAILS = [
    ("news@shop.com", "Welcome aboard", "alice@example.com", "2024-01-01T09:00:00Z"),
    ("news@shop.com", "Welcome aboard", "bob@example.com", "2024-01-01T09:00:00Z"),
    ("news@shop.com", "Spring sale", "alice@example.com", "2024-01-02T09:00:00Z"),
    ("news@shop.com", "Spring sale", "bob@example.com", "2024-01-02T09:00:00Z"),
    ("news@shop.com", "Spring sale", "carol@example.com", "2024-01-02T09:00:00Z"),
    ("news@shop.com", "Order confirmed", "alice@example.com", "2024-01-03T09:00:00Z"),
]


def parse_sse(body: str) -> list[tuple[str, dict]]:
    """(event, data) pairs of a Server-Sent Events body; comments are skipped."""
    events = []
    for frame in body.strip().split("\n\n"):
        name, data = None, None
        for line in frame.splitlines():
            if line.startswith("event: "):
                name = line[len("event: ") :]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: ") :])
        if name is not None:
            events.append((name, data))
    return events


@pytest.fixture
def client():
    queue = AnalysisQueue(AnalysisOrchestrator().analyze_project)
    with TestClient(create_app(queue=queue)) as test_client:
        yield test_client
    queue.shutdown(timeout=5)


@pytest.fixture
def merchant_id(client) -> str:
    for sender, subject, recipient, received_at in EMAILS:
        response = client.post(
            "/api/campaigns/track",
            json={
                "sender": sender,
                "subject": subject,
                "recipient": recipient,
                "received_at": received_at,
            },
        )
        assert response.status_code == 200
    return response.json()["merchant_id"]


def _campaign_id(client, merchant_id: str, subject: str) -> str:
    campaigns = client.get(f"/api/campaigns/merchants/{merchant_id}/campaigns").json()
    return next(c["id"] for c in campaigns if c["subject"] == subject)


class TestHealth:
    def test_health(self, client):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["analysis_queue"]["is_processing"] is False

    def test_database_health(self, client):
        data = client.get("/health/db").json()

        assert data["schema_ok"] is True
        assert data["status"] == "healthy"


class TestTracking:
    def test_track_response(self, client):
        response = client.post(
            "/api/campaigns/track",
            json={"sender": "Shop <hi@mail.shop.com>", "subject": "Hi", "recipient": "a@x.com"},
        )

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "tracked"
        assert data["is_new_merchant"] is True
        assert data["sequence_order"] == 1

    def test_invalid_sender_is_400(self, client):
        response = client.post(
            "/api/campaigns/track",
            json={"sender": "nobody", "subject": "Hi", "recipient": "a@x.com"},
        )
        assert response.status_code == 400

    def test_bad_timestamp_is_400(self, client):
        response = client.post(
            "/api/campaigns/track",
            json={
                "sender": "hi@shop.com",
                "subject": "Hi",
                "recipient": "a@x.com",
                "received_at": "last tuesday",
            },
        )
        assert response.status_code == 400

    def test_validation_errors_do_not_leak(self, client):
        response = client.post("/api/campaigns/track", json={"subject": "Hi"})

        assert response.status_code == 422
        data = response.json()
        assert "sender" in data["invalid_fields"]
        assert "Invalid request format" in data["detail"]


class TestMerchantAnalytics:
    def test_merchant_listing_and_status(self, client, merchant_id):
        merchants = client.get("/api/campaigns/merchants").json()
        assert [m["domain"] for m in merchants] == ["shop.com"]

        response = client.put(
            f"/api/campaigns/merchants/{merchant_id}/status", json={"status": "active"}
        )
        assert response.json()["analysis_status"] == "active"

        active = client.get("/api/campaigns/merchants", params={"status": "active"}).json()
        assert len(active) == 1

    def test_unknown_merchant_is_404(self, client):
        assert client.get("/api/campaigns/merchants/missing/levels").status_code == 404

    def test_root_confirmation_drives_user_stats(self, client, merchant_id):
        welcome = _campaign_id(client, merchant_id, "Welcome aboard")

        candidates = client.post(f"/api/campaigns/merchants/{merchant_id}/detect-roots").json()
        assert candidates["candidates_flagged"] == 1

        response = client.put(f"/api/campaigns/{welcome}/root", json={"is_root": True})
        assert response.status_code == 200

        stats = client.get(f"/api/campaigns/merchants/{merchant_id}/user-stats").json()
        assert stats == {"total_recipients": 3, "new_users": 2, "old_users": 1}

        analysis = client.get(f"/api/campaigns/merchants/{merchant_id}/path-analysis").json()
        assert analysis["level_stats"][0]["subject"] == "Welcome aboard"

    def test_flow_and_levels(self, client, merchant_id):
        flow = client.get(f"/api/campaigns/merchants/{merchant_id}/flow").json()
        levels = client.get(f"/api/campaigns/merchants/{merchant_id}/levels").json()

        assert flow["baseline_recipients"] == 3
        assert levels["levels"][0]["campaigns"][0]["subject"] == "Welcome aboard"

    def test_tagging(self, client, merchant_id):
        order = _campaign_id(client, merchant_id, "Order confirmed")

        response = client.put(f"/api/campaigns/{order}/tag", json={"tag": 2})
        assert response.json()["is_valuable"] is True
        assert client.put(f"/api/campaigns/{order}/tag", json={"tag": 9}).status_code == 422

        valuable = client.get(f"/api/campaigns/merchants/{merchant_id}/valuable").json()
        assert [v["subject"] for v in valuable] == ["Order confirmed"]

    def test_rebuild_and_recipient_path(self, client, merchant_id):
        response = client.post(f"/api/campaigns/merchants/{merchant_id}/rebuild-paths")
        assert response.json()["paths_created"] == 6

        path = client.get(
            f"/api/campaigns/merchants/{merchant_id}/recipients/alice@example.com/path"
        ).json()
        assert [s["sequence_order"] for s in path["steps"]] == [1, 2, 3]


class TestProjects:
    def test_project_crud(self, client, merchant_id):
        created = client.post(
            "/api/projects", json={"merchant_id": merchant_id, "name": " Onboarding "}
        )
        assert created.status_code == 201
        project = created.json()
        assert project["name"] == "Onboarding"
        assert project["worker_names"] == ["global"]

        updated = client.put(f"/api/projects/{project['id']}", json={"note": "Q1"}).json()
        assert updated["note"] == "Q1"
        assert updated["name"] == "Onboarding"

        assert client.delete(f"/api/projects/{project['id']}").status_code == 204
        assert client.get(f"/api/projects/{project['id']}").status_code == 404

    def test_project_for_unknown_merchant(self, client):
        response = client.post("/api/projects", json={"merchant_id": "missing", "name": "x"})
        assert response.status_code == 404

    def test_analysis_stream(self, client, merchant_id):
        project_id = client.post(
            "/api/projects", json={"merchant_id": merchant_id, "name": "Onboarding"}
        ).json()["id"]
        welcome = _campaign_id(client, merchant_id, "Welcome aboard")
        client.put(f"/api/projects/{project_id}/roots/{welcome}", json={"is_confirmed": True})

        response = client.post(f"/api/projects/{project_id}/analyze")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(response.text)
        names = [name for name, _ in events]
        assert names[-1] == "complete"
        assert set(names[:-1]) == {"progress"}
        progress = [data["progress"] for name, data in events if name == "progress"]
        assert progress == sorted(progress)
        result = events[-1][1]
        assert (result["total_recipients"], result["new_users"], result["old_users"]) == (3, 2, 1)

        stats = client.get(f"/api/projects/{project_id}/stats").json()
        assert stats["new_users"] == 2
        edges = client.get(f"/api/projects/{project_id}/edges").json()
        assert {(e["from_subject"], e["to_subject"]) for e in edges} == {
            ("Welcome aboard", "Spring sale"),
            ("Spring sale", "Order confirmed"),
        }

    def test_analysis_of_unknown_project(self, client):
        assert client.post("/api/projects/missing/analyze").status_code == 404

    def test_project_tags(self, client, merchant_id):
        project_id = client.post(
            "/api/projects", json={"merchant_id": merchant_id, "name": "Tags"}
        ).json()["id"]
        order = _campaign_id(client, merchant_id, "Order confirmed")

        tag = client.put(f"/api/projects/{project_id}/tags/{order}", json={"tag": 1}).json()
        assert tag["is_valuable"] is True

        campaigns = client.get(f"/api/projects/{project_id}/campaigns").json()
        order_row = next(c for c in campaigns if c["campaign_id"] == order)
        assert order_row["effective_tag"] == 1
        assert order_row["has_project_tag"] is True


class _HeldAnalysis:
    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Event()

    def __call__(self, project_id, on_progress):
        self.started.set()
        assert self.release.wait(5)
        return AnalysisOrchestrator().analyze_project(project_id, on_progress)


def test_duplicate_analysis_is_409(merchant_id):
    held = _HeldAnalysis()
    queue = AnalysisQueue(held)
    try:
        with TestClient(create_app(queue=queue)) as client:
            project_id = client.post(
                "/api/projects", json={"merchant_id": merchant_id, "name": "Busy"}
            ).json()["id"]
            running = queue.enqueue(project_id)
            assert held.started.wait(5)

            response = client.post(f"/api/projects/{project_id}/analyze")
            status = client.get("/api/projects/queue/status").json()

            assert response.status_code == 409
            assert status["current_project_id"] == project_id
            held.release.set()
            assert running.result(timeout=5).project_id == project_id
    finally:
        held.release.set()
        queue.shutdown(timeout=5)


class TestMaintenanceApi:
    def test_worker_deletion(self, client, merchant_id):
        stats = client.get("/api/maintenance/stats").json()
        assert stats["total_emails"] == 6

        workers = client.get("/api/maintenance/orphaned-workers").json()
        assert [w["worker_name"] for w in workers] == ["global"]

        response = client.delete(f"/api/maintenance/merchants/{merchant_id}/workers/global")
        assert response.json()["merchant_deleted"] is True
        assert client.get(f"/api/campaigns/merchants/{merchant_id}").status_code == 404

    def test_unknown_merchant_deletion_is_404(self, client):
        response = client.delete("/api/maintenance/merchants/missing/workers/global")
        assert response.status_code == 404

    def test_pending_cleanup_rejects_negative_days(self, client):
        response = client.post("/api/maintenance/cleanup/pending", params={"days": -1})
        assert response.status_code == 422
