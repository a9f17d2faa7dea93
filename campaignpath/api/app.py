"""FastAPI server for campaign path analysis"""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from campaignpath.api.routes.campaigns import router as campaigns_router
from campaignpath.api.routes.health import router as health_router
from campaignpath.api.routes.maintenance import router as maintenance_router
from campaignpath.api.routes.projects import router as projects_router
from campaignpath.config import API_HOST, API_PORT, APP_VERSION, CORS_ALLOWED_ORIGINS
from campaignpath.errors import CampaignPathError
from campaignpath.infrastructure.database import init_database
from campaignpath.observability.logging import configure_logging, get_logger
from campaignpath.observability.telemetry import counter, log_event
from campaignpath.projects.orchestrator import AnalysisOrchestrator
from campaignpath.projects.queue import AnalysisQueue
from campaignpath.utils.error_sanitizer import describe_error

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Custom validation error handler that prevents leaking internal validation logic.

    Side Effects:
        - Logs validation errors (path only, no query string)
        - Increments validation error counter for monitoring
    """
    logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


async def engine_exception_handler(request: Request, exc: CampaignPathError) -> JSONResponse:
    """Engine errors that escaped a route map to their ErrorKind status."""
    status_code, detail = describe_error(exc)
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _init_database() -> None:
    try:
        logger.info("Initializing database schema...")
        init_database()
        logger.info("Database initialization complete")
    except sqlite3.Error as e:
        logger.critical("Database schema error: %s", e)
        logger.critical("Database may be corrupted or locked by another process")
        raise RuntimeError(f"Database initialization failed: {e}") from e
    except OSError as e:
        logger.critical("Database file could not be created: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e


def create_app(queue: AnalysisQueue | None = None) -> FastAPI:
    """
    Build the API app (composition root).

    Args:
        queue: Analysis queue to serve; by default a queue running the project
            orchestrator is created and shut down with the app

    Side Effects:
        - Initializes the database schema (idempotent)
        - Starts the analysis queue worker thread when no queue is given
    """
    configure_logging()
    _init_database()

    owns_queue = queue is None
    analysis_queue = queue or AnalysisQueue(AnalysisOrchestrator().analyze_project)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        if owns_queue:
            analysis_queue.shutdown(wait=False)

    app = FastAPI(title="Campaign Path API", version=APP_VERSION, lifespan=lifespan)
    app.state.analysis_queue = analysis_queue

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(CampaignPathError, engine_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )

    app.include_router(health_router)
    app.include_router(campaigns_router)
    app.include_router(projects_router)
    app.include_router(maintenance_router)

    log_event("api.startup", service="campaignpath", version=APP_VERSION)
    return app


def main() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run("campaignpath.api.app:create_app", factory=True, host=API_HOST, port=API_PORT)
