"""Tests for the single-flight analysis queue (fake analyses, no database work)."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future

import pytest

from campaignpath.errors import (
    AnalysisCancelledError,
    AnalysisTimeoutError,
    ConflictError,
    InternalError,
)
from campaignpath.observability.telemetry import get_counters
from campaignpath.projects.queue import AnalysisQueue
from campaignpath.projects.types import AnalysisPhase, AnalysisProgress, AnalysisResult


def _result(project_id: str) -> AnalysisResult:
    return AnalysisResult(
        project_id=project_id,
        total_recipients=0,
        new_users=0,
        old_users=0,
        events_created=0,
        edges_created=0,
        duration_ms=0,
    )


class BlockingAnalysis:
    """Fake analyze_fn whose jobs wait until released."""

    def __init__(self):
        self.started: list[str] = []
        self.release = threading.Event()
        self.first_started = threading.Event()

    def __call__(self, project_id, on_progress):
        self.started.append(project_id)
        self.first_started.set()
        on_progress(AnalysisProgress(AnalysisPhase.INITIALIZING, 0, "start"))
        assert self.release.wait(5)
        return _result(project_id)


@pytest.fixture
def blocking():
    analysis = BlockingAnalysis()
    queue = AnalysisQueue(analysis, job_timeout=0)
    yield analysis, queue
    analysis.release.set()
    queue.shutdown(timeout=5)


def test_runs_jobs_in_fifo_order(blocking):
    analysis, queue = blocking
    futures = [queue.enqueue(pid) for pid in ("p1", "p2", "p3")]
    assert analysis.first_started.wait(5)

    analysis.release.set()

    results = [f.result(timeout=5) for f in futures]
    assert [r.project_id for r in results] == ["p1", "p2", "p3"]
    assert analysis.started == ["p1", "p2", "p3"]
    assert get_counters("analysis.queue.")["analysis.queue.completed"] == 3


def test_duplicate_project_is_refused(blocking):
    analysis, queue = blocking
    queue.enqueue("p1")
    assert analysis.first_started.wait(5)
    queue.enqueue("p2")

    with pytest.raises(ConflictError):
        queue.enqueue("p1")
    with pytest.raises(ConflictError):
        queue.enqueue("p2")

    status = queue.get_status()
    assert status.is_processing
    assert status.current_project_id == "p1"
    assert status.queued_project_ids == ["p2"]


def test_project_can_be_requeued_after_completion(blocking):
    analysis, queue = blocking
    analysis.release.set()

    queue.enqueue("p1").result(timeout=5)

    assert queue.enqueue("p1").result(timeout=5).project_id == "p1"


def test_clear_queue_fails_waiting_jobs_only(blocking):
    analysis, queue = blocking
    running = queue.enqueue("p1")
    assert analysis.first_started.wait(5)
    waiting = [queue.enqueue("p2"), queue.enqueue("p3")]

    assert queue.clear_queue() == 2

    for future in waiting:
        with pytest.raises(AnalysisCancelledError):
            future.result(timeout=5)
    analysis.release.set()
    assert running.result(timeout=5).project_id == "p1"
    assert queue.get_status().queue_length == 0


def test_progress_reaches_sink(blocking):
    analysis, queue = blocking
    seen: list[AnalysisProgress] = []
    analysis.release.set()

    queue.enqueue("p1", seen.append).result(timeout=5)

    assert [p.phase for p in seen] == [AnalysisPhase.INITIALIZING]


def test_failure_is_delivered_and_queue_continues():
    def analyze(project_id, on_progress):
        if project_id == "bad":
            raise InternalError("boom")
        return _result(project_id)

    queue = AnalysisQueue(analyze, job_timeout=0)
    try:
        bad = queue.enqueue("bad")
        good = queue.enqueue("good")

        with pytest.raises(InternalError):
            bad.result(timeout=5)
        assert good.result(timeout=5).project_id == "good"
    finally:
        queue.shutdown(timeout=5)


def test_deadline_is_checked_on_progress():
    def slow(project_id, on_progress):
        time.sleep(0.2)
        on_progress(AnalysisProgress(AnalysisPhase.BUILDING_PATHS, 10, "late"))
        return _result(project_id)

    queue = AnalysisQueue(slow, job_timeout=0.05)
    try:
        with pytest.raises(AnalysisTimeoutError):
            queue.enqueue("p1").result(timeout=5)
        assert get_counters("analysis.queue.")["analysis.queue.timeout"] == 1
    finally:
        queue.shutdown(timeout=5)


def test_completion_report_is_never_timed_out():
    def slow(project_id, on_progress):
        time.sleep(0.2)
        on_progress(AnalysisProgress(AnalysisPhase.COMPLETE, 100, "done"))
        return _result(project_id)

    queue = AnalysisQueue(slow, job_timeout=0.05)
    try:
        assert queue.enqueue("p1").result(timeout=5).project_id == "p1"
    finally:
        queue.shutdown(timeout=5)


def test_enqueue_after_shutdown():
    queue = AnalysisQueue(lambda pid, _progress: _result(pid), job_timeout=0)
    queue.shutdown(timeout=5)

    with pytest.raises(InternalError):
        queue.enqueue("p1")


def test_cancelled_future_is_skipped(blocking):
    analysis, queue = blocking
    queue.enqueue("p1")
    assert analysis.first_started.wait(5)
    waiting: Future[AnalysisResult] = queue.enqueue("p2")

    assert waiting.cancel()
    analysis.release.set()
    queue.enqueue("p3").result(timeout=5)

    assert analysis.started == ["p1", "p3"]
