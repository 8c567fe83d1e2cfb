import pytest

from app import models
from app.models import LOCATION_TABLE, LOCATION_TRASH
from app.services.report_formats.migrations import (
    Migration,
    apply_migrations,
    check_db_report_formats_trash,
    check_db_trash_report_formats,
    make_report_format_uuids_unique,
    run_startup_checks,
)
from app.services.report_formats.errors import FeedSyncError
from app.services.report_formats.repository import RESOURCE_TYPE

from .conftest import write_feed_format

OLD_TXT = "19f6f1b3-7128-4433-888c-ccc764fe6ed5"
NEW_TXT = "a3810a62-1f62-11e1-9219-406186ea4fc5"
OLD_ITG = "9f1ab17b-aaaa-411a-8c57-12df446f5588"
NEW_ITG = "a684c02c-b531-11e1-bdc2-406186ea4fc5"


def _add_format(db, uuid, owner=None, name="Format"):
    row = models.ReportFormat(uuid=uuid, owner=owner, name=name)
    db.add(row)
    db.commit()
    return row


def _add_trash(db, uuid, name="Trashed"):
    row = models.ReportFormatTrash(uuid=uuid, original_uuid=f"orig-{uuid}", name=name, owner="alice")
    db.add(row)
    db.commit()
    return row


def test_legacy_ids_are_renamed_once(db, assets):
    _add_format(db, OLD_TXT, name="TXT")
    _add_format(db, OLD_ITG, name="ITG")
    alert = models.Alert(uuid="alert-1", name="Mail", owner="alice")
    alert.method_data.append(models.AlertMethodData(name="send_report_format", data=OLD_TXT))
    db.add(alert)
    db.add(
        models.Permission(
            name="get_report_formats",
            resource_type=RESOURCE_TYPE,
            resource_uuid=OLD_TXT,
            resource_location=LOCATION_TABLE,
            subject_type="role",
            subject_id="User",
        )
    )
    db.commit()
    legacy_dir = assets.predefined_format_dir(OLD_TXT)
    assets.write_bundle(legacy_dir, [("generate", b"x")])

    assert apply_migrations(db, assets) == [1, 2]

    assert {row.uuid for row in db.query(models.ReportFormat).all()} == {NEW_TXT, NEW_ITG}
    assert db.query(models.AlertMethodData).one().data == NEW_TXT
    assert db.query(models.Permission).one().resource_uuid == NEW_TXT
    assert not legacy_dir.exists()
    assert (assets.predefined_format_dir(NEW_TXT) / "generate").read_bytes() == b"x"
    assert {row.version for row in db.query(models.SchemaMigration).all()} == {1, 2}

    assert apply_migrations(db, assets) == []


def test_failed_migration_is_not_recorded(db, assets):
    def broken(db, assets):
        db.add(models.ReportFormat(uuid="half-done", name="Half"))
        db.flush()
        raise RuntimeError("boom")

    migrations = [Migration(1, "ok", lambda db, assets: None), Migration(2, "broken", broken)]
    with pytest.raises(RuntimeError):
        apply_migrations(db, assets, migrations)

    assert [row.version for row in db.query(models.SchemaMigration).all()] == [1]
    assert db.query(models.ReportFormat).filter_by(uuid="half-done").count() == 0


def test_duplicate_ids_get_fresh_ones(db, assets):
    first = _add_format(db, "dup", owner="alice", name="First")
    same_owner = _add_format(db, "dup", owner="alice", name="Second")
    other_owner = _add_format(db, "dup", owner="bob", name="Third")
    assets.write_bundle(assets.user_dir("alice", "dup"), [("generate", b"a")])
    assets.write_bundle(assets.user_dir("bob", "dup"), [("generate", b"b")])

    assert make_report_format_uuids_unique(db, assets) == 2

    db.expire_all()
    assert first.uuid == "dup"
    assert len({first.uuid, same_owner.uuid, other_owner.uuid}) == 3
    # Same owner: the canonical dir stays, the duplicate gets a copy.
    assert (assets.user_dir("alice", "dup") / "generate").read_bytes() == b"a"
    assert (assets.user_dir("alice", same_owner.uuid) / "generate").read_bytes() == b"a"
    # Other owner: the dir is moved.
    assert not assets.user_dir("bob", "dup").exists()
    assert (assets.user_dir("bob", other_owner.uuid) / "generate").read_bytes() == b"b"


def test_ownerless_duplicates_get_fresh_ids(db, assets):
    _add_format(db, "dup")
    _add_format(db, "dup")

    assert make_report_format_uuids_unique(db, assets) == 1

    ids = [row.uuid for row in db.query(models.ReportFormat).order_by(models.ReportFormat.id)]
    assert ids[0] == "dup"
    assert len(set(ids)) == 2


def test_unique_ids_are_left_alone(db, assets):
    _add_format(db, "one", owner="alice")
    _add_format(db, "two", owner="alice")
    assert make_report_format_uuids_unique(db, assets) == 0


def test_missing_trash_tree_drops_trash_rows(db, assets):
    trash = _add_trash(db, "t-1")
    db.add(
        models.Permission(
            name="get_report_formats",
            resource_type=RESOURCE_TYPE,
            resource_uuid="t-1",
            resource_location=LOCATION_TRASH,
            subject_type="user",
            subject_id="bob",
        )
    )
    alert = models.AlertTrash(uuid="alert-1", name="Old", owner="alice")
    alert.method_data.append(
        models.AlertMethodDataTrash(name="notice_attach_format", data=trash.original_uuid)
    )
    db.add(alert)
    db.commit()
    assert not assets.trash_root.exists()

    assert check_db_trash_report_formats(db, assets) == 1

    assert db.query(models.ReportFormatTrash).count() == 0
    assert db.query(models.AlertMethodDataTrash).count() == 0
    assert db.query(models.Permission).one().resource_uuid is None


def test_existing_trash_tree_keeps_trash_rows(db, assets):
    _add_trash(db, "t-1")
    assets.trash_root.mkdir(parents=True)
    assert check_db_trash_report_formats(db, assets) == 0
    assert db.query(models.ReportFormatTrash).count() == 1


def test_orphaned_trash_dirs_are_removed(db, assets):
    trash = _add_trash(db, "t-1")
    assets.write_bundle(assets.trash_dir(trash.id), [("generate", b"x")])
    assets.write_bundle(assets.trash_dir(trash.id + 41), [("generate", b"x")])
    assets.write_bundle(assets.trash_root / "keep-me", [])

    assert check_db_report_formats_trash(db, assets) == [str(trash.id + 41)]

    assert assets.trash_dir(trash.id).exists()
    assert not assets.trash_dir(trash.id + 41).exists()
    assert (assets.trash_root / "keep-me").exists()


def test_run_startup_checks(db, assets):
    write_feed_format(assets.predefined_dir, "feed-1", "CSV")
    assets.write_bundle(assets.trash_dir(99), [])

    result = run_startup_checks(db, assets)

    assert result.created == ["feed-1"]
    assert not assets.trash_dir(99).exists()
    assert {row.version for row in db.query(models.SchemaMigration).all()} == {1, 2}


def test_trash_sweep_runs_when_feed_sync_fails(db, assets):
    (assets.predefined_dir / "no-manifest").mkdir(parents=True)
    assets.write_bundle(assets.trash_dir(99), [])

    with pytest.raises(FeedSyncError):
        run_startup_checks(db, assets)

    assert not assets.trash_dir(99).exists()
