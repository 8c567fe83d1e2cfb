import os
import sys
import tempfile
from pathlib import Path

_SESSION_ROOT = Path(tempfile.mkdtemp(prefix="report-formats-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_SESSION_ROOT / 'app.db'}"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ.pop("STATSIG_SERVER_SECRET", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

sys.path.append(str(Path(__file__).resolve().parents[2]))

from app.config import get_settings
from app.db.session import Base, get_db
from app.services.report_formats import (
    AssetStore,
    GenerationPipeline,
    Principal,
    ReportFormatRegistry,
    RoleAccessOracle,
    SignatureStore,
    SignatureVerifier,
)
from app.services.tools.base import LocalCommandRunner

# gpgv stand-in: a signature "verifies" when it is byte-identical to the
# signed data, contains BAD for a bad signature, anything else is unknown.
FAKE_GPGV = """#!/bin/sh
if cmp -s "$7" "$8"; then exit 0; fi
if grep -q BAD "$7"; then exit 1; fi
exit 2
"""

# Generator stand-in: echoes the report XML and the files manifest.
FAKE_GENERATE = """#!/bin/sh
cat "$1"
printf '%s' "$2"
"""

USER = Principal.user("alice", ["User"])
OTHER_USER = Principal.user("bob", ["User"])
ADMIN = Principal.user("root-admin", ["Admin"])
SYSTEM = Principal.system()


def write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    path.chmod(0o755)
    return path


def write_feed_format(
    feed_dir: Path,
    format_id: str,
    name: str = "Feed Format",
    *,
    extension: str = "txt",
    content_type: str = "text/plain",
    params_xml: str = "",
    generate: str = FAKE_GENERATE,
) -> Path:
    """Lay out one predefined format directory with its manifest."""
    directory = feed_dir / format_id
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "report_format.xml").write_text(
        f'<report_format id="{format_id}">'
        f"<name>{name}</name>"
        "<summary>Summary</summary>"
        "<description>Description</description>"
        f"<extension>{extension}</extension>"
        f"<content_type>{content_type}</content_type>"
        f"{params_xml}"
        "</report_format>"
    )
    write_script(directory / "generate", generate)
    return directory


@pytest.fixture(autouse=True)
def settings_env(tmp_path, monkeypatch):
    """Point every configured directory at a fresh temporary tree."""
    dirs = {
        "STATE_DIR": tmp_path / "state",
        "PREDEFINED_DIR": tmp_path / "predefined",
        "FEED_SIGNATURES_DIR": tmp_path / "feed-signatures",
        "SYSCONF_DIR": tmp_path / "etc",
        "SCRATCH_DIR": tmp_path / "scratch",
    }
    for key, path in dirs.items():
        path.mkdir(parents=True)
        monkeypatch.setenv(key, str(path))
    gpgv = write_script(tmp_path / "bin" / "gpgv", FAKE_GPGV)
    monkeypatch.setenv("GPGV_BINARY", str(gpgv))
    monkeypatch.setenv("RUN_STARTUP_CHECKS", "false")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def assets(settings_env):
    return AssetStore.from_settings(settings_env)


@pytest.fixture
def verifier(settings_env):
    return SignatureVerifier.from_settings(settings_env)


@pytest.fixture
def signatures(settings_env, assets):
    return SignatureStore.from_settings(settings_env, assets)


@pytest.fixture
def registry(db, assets, signatures, verifier):
    return ReportFormatRegistry(
        db,
        oracle=RoleAccessOracle(),
        assets=assets,
        signatures=signatures,
        verifier=verifier,
    )


@pytest.fixture
def pipeline(db, assets, settings_env):
    return GenerationPipeline(
        db,
        oracle=RoleAccessOracle(),
        assets=assets,
        runner=LocalCommandRunner(),
        scratch_dir=settings_env.scratch_dir,
    )


@pytest.fixture
def client(session_factory):
    from app.api import report_formats
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_get_pipeline():
        session = session_factory()
        try:
            yield GenerationPipeline(session, runner=LocalCommandRunner())
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[report_formats.get_pipeline] = override_get_pipeline
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def headers_for(principal: Principal) -> dict:
    return {
        "X-User-Id": principal.user_id,
        "X-User-Roles": ",".join(sorted(principal.roles)),
    }
