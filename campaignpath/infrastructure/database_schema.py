"""
Database schema initialization for the campaign path engine.

Event store (campaign_emails) is the ground truth; recipient_paths and all
project_* result tables are derived and can be regenerated from it.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from campaignpath.observability.logging import get_logger

logger = get_logger(__name__)

EXPECTED_TABLES: tuple[str, ...] = (
    "merchants",
    "campaigns",
    "campaign_emails",
    "recipient_paths",
    "analysis_projects",
    "project_root_campaigns",
    "project_campaign_tags",
    "project_new_users",
    "project_user_events",
    "project_path_edges",
)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Args:
        db_path: Path to the database file

    Side Effects:
    - Creates the parent directory if needed
    - Creates tables and indexes if they don't exist
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS merchants (
                id TEXT PRIMARY KEY,
                domain TEXT NOT NULL UNIQUE,
                display_name TEXT,
                note TEXT,
                analysis_status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (analysis_status IN ('pending', 'active', 'ignored')),
                total_campaigns INTEGER NOT NULL DEFAULT 0,
                total_emails INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS campaigns (
                id TEXT PRIMARY KEY,
                merchant_id TEXT NOT NULL REFERENCES merchants(id) ON DELETE CASCADE,
                subject TEXT NOT NULL,
                subject_hash TEXT NOT NULL,
                total_emails INTEGER NOT NULL DEFAULT 0,
                unique_recipients INTEGER NOT NULL DEFAULT 0,
                is_root INTEGER NOT NULL DEFAULT 0,
                is_root_candidate INTEGER NOT NULL DEFAULT 0,
                root_candidate_reason TEXT,
                tag INTEGER NOT NULL DEFAULT 0 CHECK (tag BETWEEN 0 AND 4),
                tag_note TEXT,
                first_seen_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(merchant_id, subject_hash)
            );

            CREATE TABLE IF NOT EXISTS campaign_emails (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                campaign_id TEXT NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
                recipient TEXT NOT NULL,
                received_at TEXT NOT NULL,
                worker_name TEXT NOT NULL DEFAULT 'global'
            );

            CREATE TABLE IF NOT EXISTS recipient_paths (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                merchant_id TEXT NOT NULL REFERENCES merchants(id) ON DELETE CASCADE,
                recipient TEXT NOT NULL,
                campaign_id TEXT NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
                sequence_order INTEGER NOT NULL,
                first_received_at TEXT NOT NULL,
                is_new_user INTEGER,
                first_root_campaign_id TEXT,
                UNIQUE(merchant_id, recipient, campaign_id)
            );

            CREATE TABLE IF NOT EXISTS analysis_projects (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                merchant_id TEXT NOT NULL REFERENCES merchants(id) ON DELETE CASCADE,
                worker_names TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'completed', 'archived')),
                note TEXT,
                last_analysis_time TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS project_root_campaigns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL REFERENCES analysis_projects(id) ON DELETE CASCADE,
                campaign_id TEXT NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
                is_confirmed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE(project_id, campaign_id)
            );

            CREATE TABLE IF NOT EXISTS project_campaign_tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL REFERENCES analysis_projects(id) ON DELETE CASCADE,
                campaign_id TEXT NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
                tag INTEGER NOT NULL DEFAULT 0 CHECK (tag BETWEEN 0 AND 4),
                tag_note TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(project_id, campaign_id)
            );

            CREATE TABLE IF NOT EXISTS project_new_users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL REFERENCES analysis_projects(id) ON DELETE CASCADE,
                recipient TEXT NOT NULL,
                first_root_campaign_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(project_id, recipient)
            );

            CREATE TABLE IF NOT EXISTS project_user_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL REFERENCES analysis_projects(id) ON DELETE CASCADE,
                recipient TEXT NOT NULL,
                campaign_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                received_at TEXT NOT NULL,
                UNIQUE(project_id, recipient, campaign_id)
            );

            CREATE TABLE IF NOT EXISTS project_path_edges (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL REFERENCES analysis_projects(id) ON DELETE CASCADE,
                from_campaign_id TEXT NOT NULL,
                to_campaign_id TEXT NOT NULL,
                user_count INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                UNIQUE(project_id, from_campaign_id, to_campaign_id)
            );

            CREATE INDEX IF NOT EXISTS idx_campaigns_merchant ON campaigns(merchant_id);
            CREATE INDEX IF NOT EXISTS idx_emails_campaign ON campaign_emails(campaign_id);
            CREATE INDEX IF NOT EXISTS idx_emails_worker ON campaign_emails(worker_name);
            CREATE INDEX IF NOT EXISTS idx_emails_recipient ON campaign_emails(recipient);
            CREATE INDEX IF NOT EXISTS idx_emails_received ON campaign_emails(received_at);
            CREATE INDEX IF NOT EXISTS idx_paths_merchant_recipient
                ON recipient_paths(merchant_id, recipient, sequence_order);
            CREATE INDEX IF NOT EXISTS idx_paths_first_root ON recipient_paths(first_root_campaign_id);
            CREATE INDEX IF NOT EXISTS idx_projects_merchant ON analysis_projects(merchant_id);
            CREATE INDEX IF NOT EXISTS idx_project_events
                ON project_user_events(project_id, recipient, seq);
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database schema initialized at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Check that every expected table exists.

    Raises:
        ValueError: If tables are missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    present = {row[0] for row in rows}
    missing = [table for table in EXPECTED_TABLES if table not in present]
    if missing:
        raise ValueError(f"Missing tables: {', '.join(missing)}")
    return True
