# backend/app/services/celery_app.py
from __future__ import annotations

"""
Celery application for background report format work.

    celery_app = Celery(...)

It is used by:
- app.services.tasks (feed sync, trust refresh, startup checks)
- the worker entrypoint:
  `celery -A app.services.celery_app.celery_app worker -Q report_formats`
"""

from celery import Celery

from app.config import get_settings

settings = get_settings()

celery_app = Celery(
    "report_format_tasks",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.services.tasks"],
)

celery_app.conf.task_routes = {
    "app.services.tasks.*": {"queue": "report_formats"},
}
