from __future__ import annotations

"""backend/app/config/settings.py

Application configuration using environment-driven settings.

This module centralizes:
- database connection URL
- Celery / Redis configuration
- CORS configuration
- on-disk locations for report format bundles, trash and signatures
- signature verifier (gpgv) and keyring locations
- the unprivileged account used to run generator scripts
"""
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  app_name: str = "report-format-manager"
  environment: str = "development"

  # Database
  database_url: str = "sqlite:///./report_formats.db"

  # Celery / Redis
  celery_broker_url: str = "redis://redis:6379/1"
  celery_result_backend: str = "redis://redis:6379/2"

  # CORS
  allowed_origins: List[AnyHttpUrl] = [
      "http://localhost:3000",
      "http://127.0.0.1:3000",
  ]

  # Statsig (telemetry is disabled when unset)
  statsig_server_secret: str | None = None

  # Mutable state: user bundles, trash bundles, private signature links
  state_dir: str = "/var/lib/report-formats"

  # Predefined (feed) report formats, one directory per format id
  predefined_dir: str = "/usr/share/report-formats/report_formats"

  # Feed signatures, one <id>.asc per predefined format
  feed_signatures_dir: str = "/var/lib/report-formats/feed/report_formats"

  # <sysconf_dir>/gnupg holds the trusted keyring
  sysconf_dir: str = "/etc/report-formats"
  gpgv_binary: str = "gpgv"
  gpgv_timeout_seconds: int = 60

  # Generator scripts run as this account when we are root
  unprivileged_user: str = "nobody"

  # Base for sub-report scratch directories; None uses the system default
  scratch_dir: str | None = None

  # Run integrity checks and the feed sync when the API starts
  run_startup_checks: bool = False

  model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

  @property
  def gpg_home(self) -> Path:
    return Path(self.sysconf_dir) / "gnupg"

  @property
  def trusted_keyring(self) -> Path:
    return self.gpg_home / "pubring.gpg"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Return a cached Settings instance."""
  return Settings()
