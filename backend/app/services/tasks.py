# backend/app/services/tasks.py
from __future__ import annotations

"""
Celery tasks for report formats.

Currently provides:
- sync_report_formats_task: startup integrity checks (trash sweep, id
  migrations, duplicate repair) followed by the feed sync
- verify_report_format_task: refresh the trust of one format
"""

import logging

from celery import Task

from app.db.session import SessionLocal
from app.services.celery_app import celery_app
from app.services.report_formats import (
    Principal,
    ReportFormatRegistry,
    RoleAccessOracle,
    run_startup_checks,
)
from app.services.telemetry import log_report_format_event

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="app.services.tasks.sync_report_formats_task")
def sync_report_formats_task(self: Task) -> dict:
    db = SessionLocal()
    try:
        result = run_startup_checks(db)
    finally:
        db.close()
    log_report_format_event(
        "report_formats_synced",
        value=len(result.created) + len(result.updated) + len(result.removed),
    )
    return {
        "created": result.created,
        "updated": result.updated,
        "unchanged": result.unchanged,
        "removed": result.removed,
    }


@celery_app.task(bind=True, name="app.services.tasks.verify_report_format_task")
def verify_report_format_task(
    self: Task, format_id: str, user_id: str | None = None, roles: list[str] | None = None
) -> int:
    """Refresh trust for `format_id`; returns the TrustState value."""
    principal = Principal.user(user_id, roles or ()) if user_id else Principal.system()
    db = SessionLocal()
    try:
        registry = ReportFormatRegistry(db, oracle=RoleAccessOracle())
        trust = registry.trust.verify_report_format(principal, registry.oracle, format_id)
    finally:
        db.close()
    logger.info("Verified report format %s: %s", format_id, trust.name)
    log_report_format_event(
        "report_format_verified", format_id, user_id=user_id, roles=roles or (), value=trust.name
    )
    return trust.value
