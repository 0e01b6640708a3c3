"""FastAPI application entry point for the Relay backend.

This module initializes the FastAPI application with all middleware,
routers, exception handlers and lifecycle hooks configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import register_exception_handlers, router, webhook_router, websocket_router
from api.routes import set_session_manager
from config import settings
from events import get_event_bus
from models.database import SessionArchive
from session_manager import SessionManager

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the session manager with its SQLite archive, restores archived
    sessions, and on shutdown cancels background work and closes clients.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        worker_model=settings.worker_model,
        supervisor_model=settings.supervisor_model,
    )

    session_manager = SessionManager(
        get_event_bus(),
        archive=SessionArchive(settings.database_path),
    )
    try:
        await session_manager.start()
    except Exception as e:
        # Keep the API available even if the archive cannot be opened.
        logger.warning("session_archive_init_failed", error=str(e))
        session_manager.archive = None

    set_session_manager(session_manager)
    app.state.session_manager = session_manager
    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.session_manager.cleanup_all()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Relay",
    description="Agentic build, deploy, evaluate and feedback pipeline: a worker "
    "model publishes code, the hosting platform deploys it, and a supervisor "
    "model scores the live result against a design until it is faithful.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(router, tags=["pipeline"])
app.include_router(webhook_router, tags=["webhooks"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "Relay API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
