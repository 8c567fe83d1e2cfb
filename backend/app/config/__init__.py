# backend/app/config/__init__.py
from __future__ import annotations

"""
Settings for the report format manager: directories, gpgv, database, Celery.
"""

from .settings import Settings, get_settings  # noqa: F401
