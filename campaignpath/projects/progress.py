"""
Progress transport for queued analyses.

A ProgressChannel is handed to the queue as the job's progress sink and then
drained by exactly one listener (the SSE response). Events keep their order:
any number of "progress" events followed by one terminal "complete" or
"error" event.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from concurrent.futures import Future
from queue import Empty, Queue
from typing import Any

from campaignpath.config import ANALYSIS_STREAM_KEEPALIVE_SECONDS
from campaignpath.errors import AnalysisCancelledError, CampaignPathError, ErrorKind
from campaignpath.projects.types import AnalysisProgress, AnalysisResult
from campaignpath.utils.error_sanitizer import describe_error

TERMINAL_EVENTS = frozenset({"complete", "error"})
KEEPALIVE_SECONDS = ANALYSIS_STREAM_KEEPALIVE_SECONDS


def format_sse(event: str, data: dict[str, Any]) -> str:
    """Frame one Server-Sent Event."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


class ProgressChannel:
    """Thread-safe sink turning analysis progress into ordered named events."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        self._events: Queue[tuple[str, dict[str, Any]]] = Queue()

    def __call__(self, progress: AnalysisProgress) -> None:
        self.progress(progress)

    def progress(self, progress: AnalysisProgress) -> None:
        self._events.put(("progress", {"project_id": self.project_id, **progress.to_dict()}))

    def complete(self, result: AnalysisResult) -> None:
        self._events.put(("complete", result.to_dict()))

    def error(self, error: BaseException) -> None:
        kind = error.kind if isinstance(error, CampaignPathError) else ErrorKind.INTERNAL
        _status, detail = describe_error(error)
        self._events.put(
            ("error", {"project_id": self.project_id, "kind": kind.value, "error": detail})
        )

    def attach(self, future: Future[AnalysisResult]) -> None:
        """Emit the terminal event when the queued job's future resolves."""
        future.add_done_callback(self._on_done)

    def _on_done(self, future: Future[AnalysisResult]) -> None:
        if future.cancelled():
            self.error(AnalysisCancelledError("Analysis was cancelled"))
            return
        error = future.exception()
        if error is not None:
            self.error(error)
        else:
            self.complete(future.result())

    def events(self, keepalive: float | None = KEEPALIVE_SECONDS) -> Iterator[str]:
        """
        SSE frames until the terminal event.

        While nothing happens (e.g. the job waits in the queue) a comment frame
        is sent every `keepalive` seconds so proxies keep the stream open.
        """
        while True:
            try:
                name, data = self._events.get(timeout=keepalive)
            except Empty:
                yield ": keepalive\n\n"
                continue
            yield format_sse(name, data)
            if name in TERMINAL_EVENTS:
                return
