"""
Single-flight analysis queue.

One daemon worker thread runs project analyses strictly one at a time in FIFO
order. A project can be running or queued at most once; a second request for
it is refused with ConflictError instead of being merged.

Timeouts are cooperative: each progress report checks the job's deadline and,
once it has passed, raises AnalysisTimeoutError inside the analysis. The
orchestrator's transaction then rolls back and the queue moves on. A running
job cannot be interrupted in any other way.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass

from campaignpath.config import ANALYSIS_JOB_TIMEOUT_SECONDS
from campaignpath.errors import AnalysisCancelledError, AnalysisTimeoutError, ConflictError, InternalError
from campaignpath.observability.logging import get_logger
from campaignpath.observability.telemetry import counter
from campaignpath.projects.types import AnalysisPhase, AnalysisProgress, AnalysisResult, QueueStatus

logger = get_logger(__name__)

ProgressSink = Callable[[AnalysisProgress], None]
AnalyzeFn = Callable[[str, ProgressSink], AnalysisResult]


@dataclass
class _Job:
    project_id: str
    future: Future[AnalysisResult]
    progress_sink: ProgressSink | None


class AnalysisQueue:
    """
    FIFO of project analyses with a single worker.

    Args:
        analyze_fn: Called as analyze_fn(project_id, on_progress) on the worker
        job_timeout: Seconds per job; 0 or less disables the deadline
    """

    def __init__(
        self, analyze_fn: AnalyzeFn, job_timeout: float = ANALYSIS_JOB_TIMEOUT_SECONDS
    ):
        self._analyze_fn = analyze_fn
        self._job_timeout = job_timeout
        self._cond = threading.Condition()
        self._pending: deque[_Job] = deque()
        self._current: _Job | None = None
        self._stopped = False
        self._worker = threading.Thread(
            target=self._worker_loop, name="analysis-queue", daemon=True
        )
        self._worker.start()

    def enqueue(
        self, project_id: str, progress_sink: ProgressSink | None = None
    ) -> Future[AnalysisResult]:
        """
        Queue an analysis.

        Returns:
            Future resolved with the AnalysisResult, or failed with the error

        Raises:
            ConflictError: If the project is already running or queued
            InternalError: If the queue has been shut down
        """
        with self._cond:
            if self._stopped:
                raise InternalError("Analysis queue is shut down")
            if self._is_scheduled(project_id):
                counter("analysis.queue.conflict")
                raise ConflictError(
                    f"Analysis for project {project_id} is already in progress or queued"
                )

            job = _Job(project_id=project_id, future=Future(), progress_sink=progress_sink)
            self._pending.append(job)
            position = len(self._pending)
            self._cond.notify()

        counter("analysis.queue.enqueued")
        logger.info("Queued analysis for project %s (position %d)", project_id, position)
        return job.future

    def get_status(self) -> QueueStatus:
        with self._cond:
            return QueueStatus(
                is_processing=self._current is not None,
                current_project_id=self._current.project_id if self._current else None,
                queue_length=len(self._pending),
                queued_project_ids=[job.project_id for job in self._pending],
            )

    def clear_queue(self) -> int:
        """
        Withdraw every job that has not started; the running job continues.

        Returns:
            Number of jobs withdrawn
        """
        with self._cond:
            withdrawn = list(self._pending)
            self._pending.clear()

        for job in withdrawn:
            # Futures the caller already cancelled need no notification
            if job.future.set_running_or_notify_cancel():
                job.future.set_exception(
                    AnalysisCancelledError("Analysis was removed from the queue")
                )
        if withdrawn:
            counter("analysis.queue.cleared", len(withdrawn))
            logger.info("Cleared %d queued analyses", len(withdrawn))
        return len(withdrawn)

    def shutdown(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop accepting work, withdraw queued jobs and stop after the current one."""
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        self.clear_queue()
        if wait:
            self._worker.join(timeout)

    def _is_scheduled(self, project_id: str) -> bool:
        if self._current is not None and self._current.project_id == project_id:
            return True
        return any(job.project_id == project_id for job in self._pending)

    def _progress_reporter(self, job: _Job) -> ProgressSink:
        deadline = time.monotonic() + self._job_timeout if self._job_timeout > 0 else None

        def report(progress: AnalysisProgress) -> None:
            # Completion is reported after commit, so it is never cut off
            if (
                deadline is not None
                and progress.phase != AnalysisPhase.COMPLETE
                and time.monotonic() > deadline
            ):
                counter("analysis.queue.timeout")
                raise AnalysisTimeoutError(
                    f"Analysis of project {job.project_id} exceeded {self._job_timeout:g}s"
                )
            if job.progress_sink is not None:
                job.progress_sink(progress)

        return report

    def _next_job(self) -> _Job | None:
        with self._cond:
            while not self._pending and not self._stopped:
                self._cond.wait()
            if self._stopped:
                return None
            job = self._pending.popleft()
            self._current = job
            return job

    def _worker_loop(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                return
            if not job.future.set_running_or_notify_cancel():
                with self._cond:
                    self._current = None
                continue

            logger.info("Starting analysis for project %s", job.project_id)
            result: AnalysisResult | None = None
            error: BaseException | None = None
            try:
                result = self._analyze_fn(job.project_id, self._progress_reporter(job))
            except Exception as e:  # noqa: BLE001 - delivered through the future
                error = e

            # Free the slot before resolving so callers can re-enqueue immediately
            with self._cond:
                self._current = None

            if error is not None:
                counter("analysis.queue.failed")
                logger.error("Analysis for project %s failed: %s", job.project_id, error)
                job.future.set_exception(error)
            else:
                counter("analysis.queue.completed")
                job.future.set_result(result)  # type: ignore[arg-type]
