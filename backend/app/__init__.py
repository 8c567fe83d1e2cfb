# backend/app/__init__.py
from __future__ import annotations

"""
Report format manager backend.

HTTP routes live in app/api, the report format registry, trust checks,
feed sync and generation pipeline in app/services/report_formats.
"""
