from __future__ import annotations

"""backend/app/services/report_formats/migrations.py

Startup integrity checks for report formats.

- trash consistency: trash rows without a trash directory tree are
  dropped, and trash directories without a trash row are removed
- legacy id migrations: feed formats that changed ids long ago are
  renamed once; applied versions are recorded in schema_migrations
- duplicate repair: when several active rows share one id, the oldest
  keeps it and the others get fresh ids (and their directories follow)
- finally the feed sync brings the predefined formats up to date

These run from the command line, a Celery task, or API startup when
`run_startup_checks` is enabled.
"""

import errno
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app import models
from app.db.session import transaction
from app.models import LOCATION_TRASH
from app.services.report_formats.assets import AssetStore
from app.services.report_formats.feed import FeedSync, FeedSyncResult
from app.services.report_formats.repository import AlertRepo, ReportFormatRepo, ResourceRefs, make_uuid

logger = logging.getLogger(__name__)

# Oldest first; each step may rename an id produced by an earlier one.
LEGACY_UUIDS_2011: Tuple[Tuple[str, str], ...] = (
    ("a0704abb-2120-489f-959f-251c9f4ffebd", "5ceff8ba-1f62-11e1-ab9f-406186ea4fc5"),
    ("b993b6f5-f9fb-4e6e-9c94-dd46c00e058d", "6c248850-1f62-11e1-b082-406186ea4fc5"),
    ("929884c6-c2c4-41e7-befb-2f6aa163b458", "77bd6c4a-1f62-11e1-abf0-406186ea4fc5"),
    ("9f1ab17b-aaaa-411a-8c57-12df446f5588", "7fcc3a1a-1f62-11e1-86bf-406186ea4fc5"),
    ("f5c2a364-47d2-4700-b21d-0a7693daddab", "9ca6fe72-1f62-11e1-9e7c-406186ea4fc5"),
    ("1a60a67e-97d0-4cbf-bc77-f71b08e7043d", "a0b5bfb2-1f62-11e1-85db-406186ea4fc5"),
    ("19f6f1b3-7128-4433-888c-ccc764fe6ed5", "a3810a62-1f62-11e1-9219-406186ea4fc5"),
    ("d5da9f67-8551-4e51-807b-b6a873d70e34", "a994b278-1f62-11e1-96ac-406186ea4fc5"),
)

LEGACY_UUIDS_2012: Tuple[Tuple[str, str], ...] = (
    ("7fcc3a1a-1f62-11e1-86bf-406186ea4fc5", "a684c02c-b531-11e1-bdc2-406186ea4fc5"),
    ("a0b5bfb2-1f62-11e1-85db-406186ea4fc5", "c402cc3e-b531-11e1-9163-406186ea4fc5"),
)

# Alert method names dropped along with a vanished trash tree
_TRASH_ALERT_METHOD_NAMES = ("notice_attach_format", "notice_report_format")


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[Session, AssetStore], None]


def update_report_format_uuid(db: Session, assets: AssetStore, old: str, new: str) -> None:
    """Rename one format id everywhere: row, predefined dir and alert references."""
    now = datetime.utcnow()
    for report_format in ReportFormatRepo(db).all_with_uuid(old):
        report_format.uuid = new
        report_format.modification_time = now
    ResourceRefs(db).move_owner_uuid(old, new)
    AlertRepo(db).rewrite_references(old, new)
    db.flush()

    old_dir = assets.predefined_format_dir(old)
    if old_dir.exists():
        new_dir = assets.predefined_format_dir(new)
        if new_dir.exists():
            shutil.rmtree(old_dir)
        else:
            assets.move_bundle(old_dir, new_dir)


def _pairs_migration(pairs: Sequence[Tuple[str, str]]) -> Callable[[Session, AssetStore], None]:
    def apply(db: Session, assets: AssetStore) -> None:
        for old, new in pairs:
            update_report_format_uuid(db, assets, old, new)

    return apply


MIGRATIONS: List[Migration] = [
    Migration(1, "report format uuids 2011", _pairs_migration(LEGACY_UUIDS_2011)),
    Migration(2, "report format uuids 2012", _pairs_migration(LEGACY_UUIDS_2012)),
]


def apply_migrations(db: Session, assets: AssetStore, migrations: Sequence[Migration] = MIGRATIONS) -> List[int]:
    """Apply pending migrations in version order; returns applied versions."""
    applied: List[int] = []
    done = {row.version for row in db.query(models.SchemaMigration).all()}
    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in done:
            continue
        with transaction(db):
            migration.apply(db, assets)
            db.add(models.SchemaMigration(version=migration.version, name=migration.name))
        logger.info("Applied migration %s: %s", migration.version, migration.name)
        applied.append(migration.version)
    return applied


def make_report_format_uuids_unique(db: Session, assets: AssetStore) -> int:
    """Give every duplicate of an id (all but the oldest row) a fresh id."""
    repaired = 0
    with transaction(db):
        duplicated = [
            uuid
            for (uuid,) in db.query(models.ReportFormat.uuid)
            .group_by(models.ReportFormat.uuid)
            .having(func.count(models.ReportFormat.id) > 1)
            .all()
        ]
        repo = ReportFormatRepo(db)
        for uuid in duplicated:
            canonical, *duplicates = repo.all_with_uuid(uuid)
            for duplicate in duplicates:
                new_uuid = make_uuid()
                if duplicate.owner is None:
                    # Owner-less duplicates share one directory; only the id changes.
                    duplicate.uuid = new_uuid
                    repaired += 1
                    continue
                old_dir = assets.user_dir(duplicate.owner, uuid)
                new_dir = assets.user_dir(duplicate.owner, new_uuid)

                if canonical.owner is not None and canonical.owner == duplicate.owner:
                    try:
                        shutil.copytree(old_dir, new_dir, symlinks=True)
                        logger.debug("Copied %s to %s", old_dir, new_dir)
                    except OSError as exc:
                        logger.warning("Copy of %s to %s failed: %s", old_dir, new_dir, exc)
                else:
                    try:
                        new_dir.parent.mkdir(parents=True, exist_ok=True)
                        os.rename(old_dir, new_dir)
                        logger.debug("Moved %s to %s", old_dir, new_dir)
                    except OSError as exc:
                        logger.warning("Rename of %s to %s failed: %s", old_dir, new_dir, exc)
                        if exc.errno != errno.ENOENT:
                            raise

                duplicate.uuid = new_uuid
                repaired += 1
        db.flush()
    if repaired:
        logger.info("Gave %d report format(s) new ids to keep ids unique", repaired)
    return repaired


def check_db_trash_report_formats(db: Session, assets: AssetStore) -> int:
    """Drop every trash row when the trash tree is gone entirely."""
    try:
        os.lstat(assets.trash_root)
        return 0
    except FileNotFoundError:
        pass

    refs = ResourceRefs(db)
    count = 0
    with transaction(db):
        for trash in ReportFormatRepo(db).list_trash(everyone=True):
            for row in (
                db.query(models.AlertMethodDataTrash)
                .filter(
                    models.AlertMethodDataTrash.data == trash.original_uuid,
                    models.AlertMethodDataTrash.name.in_(_TRASH_ALERT_METHOD_NAMES),
                )
                .all()
            ):
                db.delete(row)
            refs.orphan(trash.uuid, LOCATION_TRASH)
            db.delete(trash)
            count += 1
        db.flush()
    if count:
        logger.warning(
            "Trash report format directory was missing. Removed all %d trash report formats.",
            count,
        )
    return count


def check_db_report_formats_trash(db: Session, assets: AssetStore | None = None) -> List[str]:
    """Remove numeric trash directories that no trash row owns."""
    assets = assets or AssetStore.from_settings()
    removed: List[str] = []
    for entry in assets.trash_dir_names():
        if not entry.isdigit():
            continue
        if db.get(models.ReportFormatTrash, int(entry)) is not None:
            continue
        path = assets.trash_dir(entry)
        try:
            assets.remove_bundle(path)
        except OSError as exc:
            logger.warning("Failed to remove %s from %s: %s", entry, assets.trash_root, exc)
            raise
        removed.append(entry)
    if removed:
        logger.info("Removed %d orphaned trash report format dir(s)", len(removed))
    return removed


def check_db_report_formats(
    db: Session, assets: AssetStore | None = None, feed_dir: Path | None = None
) -> FeedSyncResult:
    """Trash sweep, legacy ids, duplicate repair, then the feed sync."""
    assets = assets or AssetStore.from_settings()
    check_db_trash_report_formats(db, assets)
    apply_migrations(db, assets)
    make_report_format_uuids_unique(db, assets)
    return FeedSync(db, assets=assets).reconcile_all(feed_dir)


def run_startup_checks(db: Session, assets: AssetStore | None = None) -> FeedSyncResult:
    assets = assets or AssetStore.from_settings()
    try:
        return check_db_report_formats(db, assets)
    finally:
        check_db_report_formats_trash(db, assets)
