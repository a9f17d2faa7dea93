"""
Pytest configuration for the campaign path tests

Every test gets its own SQLite file under tmp_path, so tests never share state
and never touch the packaged data directory.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest

from campaignpath.infrastructure.database import init_database, reset_pool
from campaignpath.observability.telemetry import reset_telemetry
from campaignpath.paths.builder import track_event
from campaignpath.paths.types import TrackResult


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch) -> Iterator[str]:
    """Fresh schema in a temporary database file for each test."""
    db_path = tmp_path / "campaignpath.db"
    monkeypatch.setenv("CAMPAIGNPATH_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    reset_telemetry()
    yield str(db_path)
    reset_pool()


@pytest.fixture
def track() -> Callable[..., TrackResult]:
    """
    Shorthand for track_event with a per-call day offset.

    track("shop.com", "Welcome", "a@x.com", day=1) records an email from
    news@shop.com received on 2024-01-<day> (hour optional).
    """

    def _track(
        domain: str,
        subject: str,
        recipient: str,
        day: int = 1,
        hour: int = 0,
        worker: str = "global",
    ) -> TrackResult:
        return track_event(
            f"news@{domain}",
            subject,
            recipient,
            received_at=f"2024-01-{day:02d}T{hour:02d}:00:00Z",
            worker_name=worker,
        )

    return _track


@pytest.fixture
def welcome_funnel(track) -> str:
    """
    Merchant shop.com with three recipients:

    - alice: Welcome -> Sale -> Checkout
    - bob:   Welcome -> Sale
    - carol: Sale -> Checkout   (joined before tracking started)

    Returns:
        merchant_id
    """
    result = track("shop.com", "Welcome", "alice@example.com", day=1)
    track("shop.com", "Welcome", "bob@example.com", day=1)
    track("shop.com", "Sale", "carol@example.com", day=2)
    track("shop.com", "Sale", "alice@example.com", day=2)
    track("shop.com", "Sale", "bob@example.com", day=2)
    track("shop.com", "Checkout", "alice@example.com", day=3)
    track("shop.com", "Checkout", "carol@example.com", day=3)
    assert result.merchant_id is not None
    return result.merchant_id
