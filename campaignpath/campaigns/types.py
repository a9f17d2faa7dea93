"""
Module: types
Purpose: Merchant, campaign and email-event records.
Dependencies: none (leaf module)

Rows come back from sqlite3 as sqlite3.Row; every record has a from_row
constructor so repositories never hand raw rows to callers.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any

VALUABLE_TAGS: frozenset[int] = frozenset({1, 2})
HIGH_VALUE_TAG = 2
MIN_TAG = 0
MAX_TAG = 4


def is_valuable_tag(tag: int | None) -> bool:
    return (tag or 0) in VALUABLE_TAGS


class MerchantAnalysisStatus(str, Enum):
    """Whether a merchant's campaigns are being analyzed."""

    PENDING = "pending"
    ACTIVE = "active"
    IGNORED = "ignored"


@dataclass
class Merchant:
    id: str
    domain: str
    analysis_status: MerchantAnalysisStatus
    total_campaigns: int
    total_emails: int
    created_at: str
    updated_at: str
    display_name: str | None = None
    note: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row | dict[str, Any]) -> Merchant:
        return cls(
            id=row["id"],
            domain=row["domain"],
            analysis_status=MerchantAnalysisStatus(row["analysis_status"] or "pending"),
            total_campaigns=row["total_campaigns"],
            total_emails=row["total_emails"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            display_name=row["display_name"],
            note=row["note"],
        )


@dataclass
class Campaign:
    id: str
    merchant_id: str
    subject: str
    subject_hash: str
    total_emails: int
    unique_recipients: int
    is_root: bool
    is_root_candidate: bool
    tag: int
    first_seen_at: str
    last_seen_at: str
    created_at: str
    updated_at: str
    root_candidate_reason: str | None = None
    tag_note: str | None = None

    @property
    def is_valuable(self) -> bool:
        return is_valuable_tag(self.tag)

    @classmethod
    def from_row(cls, row: sqlite3.Row | dict[str, Any]) -> Campaign:
        return cls(
            id=row["id"],
            merchant_id=row["merchant_id"],
            subject=row["subject"],
            subject_hash=row["subject_hash"],
            total_emails=row["total_emails"],
            unique_recipients=row["unique_recipients"],
            is_root=bool(row["is_root"]),
            is_root_candidate=bool(row["is_root_candidate"]),
            tag=row["tag"] or 0,
            first_seen_at=row["first_seen_at"],
            last_seen_at=row["last_seen_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            root_candidate_reason=row["root_candidate_reason"],
            tag_note=row["tag_note"],
        )


@dataclass(frozen=True)
class EmailEvent:
    """One delivered email; immutable ground truth for every derived view."""

    id: int
    campaign_id: str
    recipient: str
    received_at: str
    worker_name: str

    @classmethod
    def from_row(cls, row: sqlite3.Row | dict[str, Any]) -> EmailEvent:
        return cls(
            id=row["id"],
            campaign_id=row["campaign_id"],
            recipient=row["recipient"],
            received_at=row["received_at"],
            worker_name=row["worker_name"],
        )


@dataclass
class MerchantWorkerSummary:
    """Campaign/email counts of one merchant as seen by one worker instance."""

    merchant_id: str
    domain: str
    worker_name: str
    total_campaigns: int
    total_emails: int
    display_name: str | None = None
