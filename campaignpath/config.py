"""Centralized configuration for the campaign path engine.

Typed constants for database, analysis queue, graph analytics, maintenance and
API settings. Environment variable overrides use safe defaults so the app
starts without extra env configuration.
"""

from __future__ import annotations

import os

# --- App ---
APP_VERSION: str = "1.0.0"
DEFAULT_WORKER_NAME: str = "global"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("CAMPAIGNPATH_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("CAMPAIGNPATH_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("CAMPAIGNPATH_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("CAMPAIGNPATH_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("CAMPAIGNPATH_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("CAMPAIGNPATH_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("CAMPAIGNPATH_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("CAMPAIGNPATH_DB_RETRY_JITTER", "0.1"))

# --- Analysis Queue ---
# 0 disables the per-job deadline
ANALYSIS_JOB_TIMEOUT_SECONDS: float = float(os.getenv("CAMPAIGNPATH_ANALYSIS_TIMEOUT", "600"))
ANALYSIS_PROGRESS_BATCH: int = int(os.getenv("CAMPAIGNPATH_ANALYSIS_PROGRESS_BATCH", "500"))

# --- Graph Analytics ---
BRANCH_MIN_PATH_LENGTH: int = 2
BRANCH_MAIN_PATH_THRESHOLD: float = 5.0
BRANCH_SECONDARY_MIN_PERCENTAGE: float = 1.0
BRANCH_MAIN_PATH_LIMIT: int = 10
BRANCH_SECONDARY_PATH_LIMIT: int = 20
BRANCH_VALUABLE_PATH_LIMIT: int = 20
VALUABLE_NEIGHBOR_LIMIT: int = 5

# --- Root Detection ---
ROOT_CAMPAIGN_KEYWORDS: tuple[str, ...] = (
    "welcome",
    "onboarding",
    "confirm",
    "verify",
    "activate",
    "get started",
    "first",
    "欢迎",
    "确认",
    "验证",
    "激活",
    "开始",
)

# --- Maintenance ---
PENDING_DATA_RETENTION_DAYS: int = int(os.getenv("CAMPAIGNPATH_PENDING_RETENTION_DAYS", "30"))

# --- API ---
API_LIST_LIMIT_DEFAULT: int = 100
API_LIST_LIMIT_MAX: int = 500
ANALYSIS_STREAM_KEEPALIVE_SECONDS: float = float(
    os.getenv("CAMPAIGNPATH_STREAM_KEEPALIVE", "15")
)

# --- Server ---
API_HOST: str = os.getenv("CAMPAIGNPATH_HOST", "127.0.0.1")
API_PORT: int = int(os.getenv("CAMPAIGNPATH_PORT", "8000"))
# Comma-separated; dashboards served from another origin must be listed here
CORS_ALLOWED_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.getenv(
        "CAMPAIGNPATH_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
    ).split(",")
    if origin.strip()
]
