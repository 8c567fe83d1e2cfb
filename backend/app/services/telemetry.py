"""Statsig event logging for report format operations.

Events are keyed by the calling user (or "system") and tagged with the
report format id. Without `statsig_server_secret` every call is a no-op.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable

from statsig import StatsigOptions, StatsigServer

from app.config import get_settings

logger = logging.getLogger(__name__)

SYSTEM_USER_ID = "system"


class ReportFormatTelemetry:
    def __init__(self, client: Any | None = None):
        self._client = client

    @classmethod
    def from_settings(cls, secret_key: str | None, environment: str) -> "ReportFormatTelemetry":
        if not secret_key:
            return cls()
        try:
            server = StatsigServer(secret_key, options=StatsigOptions(environment={"tier": environment}))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Statsig initialization failed, report format events disabled: %s", exc)
            return cls()
        return cls(server)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def record(
        self,
        event_name: str,
        *,
        format_id: str | None = None,
        user_id: str | None = None,
        roles: Iterable[str] = (),
        value: float | int | str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not self._client:
            return

        user: dict[str, Any] = {"userID": user_id or SYSTEM_USER_ID}
        if roles:
            user["custom"] = {"roles": sorted(roles)}
        details = {key: str(item) for key, item in (metadata or {}).items()}
        if format_id is not None:
            details["format_id"] = format_id

        try:
            self._client.log_event(user, event_name, value=value, metadata=details or None)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Statsig event %s for %s failed: %s", event_name, format_id, exc)

    def shutdown(self) -> None:
        if not self._client:
            return
        try:
            self._client.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Statsig shutdown failed: %s", exc)


_telemetry: ReportFormatTelemetry | None = None


def get_telemetry() -> ReportFormatTelemetry:
    global _telemetry
    if _telemetry is None:
        settings = get_settings()
        _telemetry = ReportFormatTelemetry.from_settings(
            settings.statsig_server_secret, settings.environment
        )
    return _telemetry


def set_telemetry(telemetry: ReportFormatTelemetry | None) -> None:
    """Swap the process-wide recorder; None rebuilds it from settings."""
    global _telemetry
    _telemetry = telemetry


def log_report_format_event(
    event_name: str,
    format_id: str | None = None,
    *,
    user_id: str | None = None,
    roles: Iterable[str] = (),
    value: float | int | str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    get_telemetry().record(
        event_name,
        format_id=format_id,
        user_id=user_id,
        roles=roles,
        value=value,
        metadata=metadata,
    )


def shutdown_telemetry() -> None:
    get_telemetry().shutdown()
