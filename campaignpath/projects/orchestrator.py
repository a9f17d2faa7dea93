"""
Project analysis: scoped path build, classification and edge graph.

Journeys are derived in memory from the events of the project's workers, so a
project run never touches the merchant-global recipient_paths. Results replace
the project's cached tables in one transaction: a run that fails or times out
leaves the previous results in place.
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable

from campaignpath.campaigns.repository import EventStore
from campaignpath.config import ANALYSIS_PROGRESS_BATCH
from campaignpath.errors import InternalError, NotFoundError
from campaignpath.infrastructure.database import db_transaction
from campaignpath.observability.logging import get_logger
from campaignpath.observability.telemetry import counter, log_event, time_block
from campaignpath.paths.builder import derive_paths
from campaignpath.paths.classification import classify_first_entries
from campaignpath.paths.graph import count_transitions
from campaignpath.projects.repository import ProjectRepository
from campaignpath.projects.types import (
    AnalysisPhase,
    AnalysisProgress,
    AnalysisProject,
    AnalysisResult,
)

logger = get_logger(__name__)

ProgressCallback = Callable[[AnalysisProgress], None]


def _scaled(start: int, end: int, done: int, total: int) -> int:
    if total <= 0:
        return end
    return start + (end - start) * done // total


class AnalysisOrchestrator:
    """Runs one project analysis end to end."""

    def __init__(self, progress_batch: int = ANALYSIS_PROGRESS_BATCH):
        self.progress_batch = max(1, progress_batch)

    def analyze_project(
        self, project_id: str, on_progress: ProgressCallback | None = None
    ) -> AnalysisResult:
        """
        Recompute a project's new users, event streams and path edges.

        on_progress is called at every phase boundary and every progress_batch
        recipients; an exception raised by it aborts the run and rolls back.

        Raises:
            NotFoundError: If the project does not exist
            InternalError: On storage failure

        Side Effects:
            - Replaces project_new_users, project_user_events, project_path_edges
            - Stamps analysis_projects.last_analysis_time
        """
        report = on_progress or (lambda _progress: None)
        started = time.perf_counter()
        report(AnalysisProgress(AnalysisPhase.INITIALIZING, 0, "Loading project"))

        try:
            with time_block("analysis.project.latency"), db_transaction() as conn:
                result = self._run(conn, project_id, report, started)
        except sqlite3.Error as e:
            logger.error("Analysis of project %s failed in storage: %s", project_id, e)
            counter("analysis.project.failed")
            raise InternalError("Project analysis failed") from e

        counter("analysis.project.completed")
        log_event(
            "analysis.project.completed",
            project_id=project_id,
            recipients=result.total_recipients,
            new_users=result.new_users,
            edges=result.edges_created,
            duration_ms=result.duration_ms,
        )
        report(
            AnalysisProgress(
                AnalysisPhase.COMPLETE,
                100,
                f"Analysis complete: {result.new_users} new users, "
                f"{result.edges_created} edges",
            )
        )
        return result

    def _run(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        report: ProgressCallback,
        started: float,
    ) -> AnalysisResult:
        row = conn.execute("SELECT * FROM analysis_projects WHERE id = ?", (project_id,)).fetchone()
        if row is None:
            raise NotFoundError("Project not found")
        project = AnalysisProject.from_row(row)
        roots = ProjectRepository.confirmed_root_ids(conn, project_id)
        if not roots:
            logger.info("Project %s has no confirmed roots; every user will be old", project_id)

        # Phase 1: journeys of the project's workers only
        report(AnalysisProgress(AnalysisPhase.BUILDING_PATHS, 5, "Loading events"))
        events = EventStore.list_for_merchant(conn, project.merchant_id, project.worker_names)
        paths = derive_paths(events)
        total = len(paths)

        journeys: dict[str, list[str]] = {}
        event_rows: list[tuple[str, str, int, str]] = []
        for done, (recipient, entries) in enumerate(paths.items(), start=1):
            journeys[recipient] = [entry.campaign_id for entry in entries]
            event_rows.extend(
                (recipient, entry.campaign_id, entry.sequence_order, entry.first_received_at)
                for entry in entries
            )
            if done % self.progress_batch == 0:
                report(
                    AnalysisProgress(
                        AnalysisPhase.BUILDING_PATHS,
                        _scaled(5, 40, done, total),
                        "Building paths",
                        processed=done,
                        total=total,
                    )
                )

        # Phase 2: first-entry rule against the project's roots
        report(
            AnalysisProgress(
                AnalysisPhase.CLASSIFYING_USERS, 40, "Classifying users", processed=0, total=total
            )
        )
        recipients = list(journeys)
        new_users: dict[str, str] = {}
        for start in range(0, total, self.progress_batch):
            batch = recipients[start : start + self.progress_batch]
            new_users.update(classify_first_entries({r: journeys[r] for r in batch}, roots))
            done = start + len(batch)
            report(
                AnalysisProgress(
                    AnalysisPhase.CLASSIFYING_USERS,
                    _scaled(40, 70, done, total),
                    "Classifying users",
                    processed=done,
                    total=total,
                )
            )

        # Phase 3: edges from new-user journeys
        report(AnalysisProgress(AnalysisPhase.BUILDING_EDGES, 70, "Building path edges"))
        edges = count_transitions({recipient: journeys[recipient] for recipient in new_users})

        report(AnalysisProgress(AnalysisPhase.BUILDING_EDGES, 90, "Saving results"))
        events_created = ProjectRepository.replace_results(
            conn, project_id, new_users, event_rows, dict(edges)
        )

        return AnalysisResult(
            project_id=project_id,
            total_recipients=total,
            new_users=len(new_users),
            old_users=total - len(new_users),
            events_created=events_created,
            edges_created=len(edges),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
