# backend/app/main.py
from __future__ import annotations

"""
FastAPI application setup.

This module depends on:
- app.config.get_settings for configuration
- app.db.session.Base and engine for DB initialization
- app.api.api_router for route registration
- app.services.report_formats.run_startup_checks (when enabled)
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import api_router
from app.config import get_settings
from app.db.session import Base, SessionLocal, engine
from app.services.report_formats import run_startup_checks
from app.services.report_formats.errors import FeedSyncError
from app.services.telemetry import shutdown_telemetry

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
)


# ---- CORS ----

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(o) for o in settings.allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---- Routes ----

app.include_router(api_router, prefix="/api")


# ---- Lifecycle ----


@app.on_event("startup")
def on_startup() -> None:
    """
    Initialize database schema on startup, then optionally bring the
    report formats in line with the feed.

    A broken feed is logged and the API still starts; the sync can be
    rerun through POST /api/report_formats/sync or the Celery task.
    """
    Base.metadata.create_all(bind=engine)

    if not get_settings().run_startup_checks:
        return
    db = SessionLocal()
    try:
        run_startup_checks(db)
    except FeedSyncError as exc:
        logger.error("Report format startup checks failed: %s", exc)
    finally:
        db.close()


@app.on_event("shutdown")
def on_shutdown() -> None:
    shutdown_telemetry()


# ---- Healthcheck ----


@app.get("/health", tags=["health"])
def health() -> dict:
    return {"status": "ok"}
