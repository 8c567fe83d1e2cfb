import base64
import errno
import os
import stat

import pytest

from app.services.report_formats.assets import EmptyFileName, decode_file_content


def test_layout(assets, settings_env):
    assert assets.user_dir("alice", "f1") == assets.state_dir / "report_formats" / "alice" / "f1"
    assert assets.trash_dir(7) == assets.state_dir / "report_formats_trash" / "7"
    assert assets.format_dir("f1", None, False) == assets.state_dir / "report_formats_global" / "f1"
    assert assets.format_dir("f1", "alice", True) == assets.predefined_dir / "f1"
    assert assets.private_signature_path("f1").name == "f1.asc"


def test_write_bundle_modes(assets):
    directory = assets.user_dir("alice", "f1")
    assets.write_bundle(directory, [("generate", b"#!/bin/sh\n"), ("style.xsl", b"<x/>")])

    assert stat.S_IMODE(directory.stat().st_mode) == 0o755
    assert stat.S_IMODE((directory / "generate").stat().st_mode) == 0o755
    assert stat.S_IMODE((directory / "style.xsl").stat().st_mode) == 0o644
    assert sorted(assets.read_bundle(directory)) == [("generate", b"#!/bin/sh\n"), ("style.xsl", b"<x/>")]


def test_write_bundle_rejects_empty_name(assets):
    with pytest.raises(EmptyFileName):
        assets.write_bundle(assets.user_dir("alice", "f1"), [("", b"x")])


def test_read_bundle_skips_manifest(assets):
    directory = assets.predefined_format_dir("f1")
    assets.write_bundle(directory, [("report_format.xml", b"<report_format/>"), ("generate", b"")])
    assert assets.read_bundle(directory) == [("generate", b"")]


def test_move_bundle_falls_back_to_copy_across_devices(assets, monkeypatch):
    source = assets.user_dir("alice", "f1")
    assets.write_bundle(source, [("generate", b"x")])
    destination = assets.trash_dir(1)

    def cross_device(src, dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(os, "rename", cross_device)
    assets.move_bundle(source, destination)

    assert not source.exists()
    assert (destination / "generate").read_bytes() == b"x"


def test_move_bundle_propagates_other_errors(assets):
    with pytest.raises(OSError):
        assets.move_bundle(assets.user_dir("alice", "missing"), assets.trash_dir(1))


def test_copy_and_remove_bundle(assets):
    source = assets.user_dir("alice", "f1")
    assets.write_bundle(source, [("generate", b"x")])
    copy = assets.user_dir("bob", "f2")
    assets.copy_bundle(source, copy)
    assert (copy / "generate").read_bytes() == b"x"

    assets.remove_bundle(copy)
    assert not copy.exists()
    assets.remove_bundle(copy)


def test_trash_dir_names(assets):
    assert assets.trash_dir_names() == []
    assets.write_bundle(assets.trash_dir(3), [])
    assets.write_bundle(assets.trash_dir(12), [])
    assert assets.trash_dir_names() == ["12", "3"]


def test_decode_file_content():
    assert decode_file_content(base64.b64encode(b"hello").decode()) == b"hello"
    assert decode_file_content("") == b""
    assert decode_file_content("not base64!") == b"not base64!"
