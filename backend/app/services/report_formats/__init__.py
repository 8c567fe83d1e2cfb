from __future__ import annotations

"""
Report format management.

- registry: import, copy, modify, trash, restore and delete of formats
- trust: canonical signable form and trust refresh
- signatures: gpgv invocation and signature lookup on disk
- assets: bundle directories (user, predefined, trash)
- feed: reconciliation of predefined formats with the feed directory
- migrations: startup integrity checks and one-time id migrations
- pipeline: applying a format (and its dependencies) to a report
"""

from app.services.report_formats.assets import AssetStore
from app.services.report_formats.context import AccessOracle, Principal, RoleAccessOracle
from app.services.report_formats.errors import ErrorKind, ReportFormatError
from app.services.report_formats.feed import FeedSync, FeedSyncResult
from app.services.report_formats.migrations import run_startup_checks
from app.services.report_formats.pipeline import GenerationPipeline
from app.services.report_formats.registry import NewParam, ReportFormatRegistry
from app.services.report_formats.signatures import SignatureStore, SignatureVerifier
from app.services.report_formats.trust import TrustEngine, canonical_string

__all__ = [
    "AccessOracle",
    "AssetStore",
    "ErrorKind",
    "FeedSync",
    "FeedSyncResult",
    "GenerationPipeline",
    "NewParam",
    "Principal",
    "ReportFormatError",
    "ReportFormatRegistry",
    "RoleAccessOracle",
    "SignatureStore",
    "SignatureVerifier",
    "TrustEngine",
    "canonical_string",
    "run_startup_checks",
]
