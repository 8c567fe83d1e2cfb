from __future__ import annotations

"""
On-disk storage for report format bundles.

Each report format has a directory holding its files plus a `generate`
executable. A bundle lives in exactly one of four trees, mirroring the
location of its registry row. Only feed formats live under the predefined
directory, since the feed sync expects a manifest in every directory there:

    <predefined_dir>/<format_id>/                  - predefined (feed) formats
    <state_dir>/report_formats_global/<format_id>/  - other owner-less formats
    <state_dir>/report_formats/<owner>/<format_id>/ - user formats
    <state_dir>/report_formats_trash/<trash_id>/    - trashed formats

Private signature links live next to them:

    <state_dir>/signatures/report_formats/<format_id>.asc

None of these operations take part in the database transaction; callers
order them after the relational checks and undo them on failure.
"""

import base64
import binascii
import errno
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Tuple

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)

GENERATE_SCRIPT = "generate"
MANIFEST_FILE = "report_format.xml"

DIR_MODE = 0o755
SCRIPT_MODE = 0o755
FILE_MODE = 0o644


class EmptyFileName(ValueError):
    """A bundle file was submitted without a name."""


def decode_file_content(content: str | None) -> bytes:
    """Decode base64 file content; empty or missing content is empty."""
    if not content:
        return b""
    try:
        return base64.b64decode(content)
    except (binascii.Error, ValueError):
        # Not base64: take it as literal text.
        return content.encode("utf-8")


@dataclass
class AssetStore:
    """
    Filesystem layout for report format bundles.

    All paths are derived from the configured roots, so tests can point
    a store at temporary directories.
    """

    state_dir: Path
    predefined_dir: Path

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AssetStore":
        settings = settings or get_settings()
        return cls(
            state_dir=Path(settings.state_dir),
            predefined_dir=Path(settings.predefined_dir),
        )

    # ---- Layout ----

    @property
    def users_root(self) -> Path:
        return self.state_dir / "report_formats"

    @property
    def global_root(self) -> Path:
        return self.state_dir / "report_formats_global"

    @property
    def trash_root(self) -> Path:
        return self.state_dir / "report_formats_trash"

    @property
    def private_signatures_dir(self) -> Path:
        return self.state_dir / "signatures" / "report_formats"

    def user_dir(self, owner: str, format_id: str) -> Path:
        return self.users_root / owner / format_id

    def predefined_format_dir(self, format_id: str) -> Path:
        return self.predefined_dir / format_id

    def global_format_dir(self, format_id: str) -> Path:
        return self.global_root / format_id

    def trash_dir(self, trash_id: int | str) -> Path:
        return self.trash_root / str(trash_id)

    def format_dir(self, format_id: str, owner: str | None, predefined: bool) -> Path:
        """Directory of an active bundle."""
        if predefined:
            return self.predefined_format_dir(format_id)
        if owner is None:
            return self.global_format_dir(format_id)
        return self.user_dir(owner, format_id)

    def private_signature_path(self, format_id: str) -> Path:
        return self.private_signatures_dir / f"{format_id}.asc"

    # ---- Bundle operations ----

    def write_bundle(self, directory: Path, files: Iterable[Tuple[str, bytes]]) -> None:
        """
        Replace `directory` with a fresh directory holding `files`.

        Raises EmptyFileName (leaving the partial directory behind for the
        caller to remove) when a file has no name.
        """
        if directory.exists():
            shutil.rmtree(directory)
        directory.mkdir(parents=True, mode=DIR_MODE)
        os.chmod(directory, DIR_MODE)

        for name, content in files:
            if not name:
                raise EmptyFileName("report format file name is empty")
            path = directory / name
            path.write_bytes(content)
            os.chmod(path, SCRIPT_MODE if name == GENERATE_SCRIPT else FILE_MODE)

    def read_bundle(self, directory: Path) -> list[Tuple[str, bytes]]:
        """Regular files of a bundle, minus the feed manifest, as (name, bytes)."""
        if not directory.is_dir():
            return []
        files = []
        for path in directory.iterdir():
            if path.is_file() and path.name != MANIFEST_FILE:
                files.append((path.name, path.read_bytes()))
        return files

    def copy_bundle(self, source: Path, destination: Path) -> None:
        """Recursively copy `source` into a fresh `destination`."""
        if destination.exists():
            shutil.rmtree(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, destination, symlinks=True)
        os.chmod(destination, DIR_MODE)
        logger.debug("Copied report format dir %s to %s", source, destination)

    def move_bundle(self, source: Path, destination: Path) -> None:
        """
        Move a bundle, falling back to copy and remove when the two trees
        are on different filesystems.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.exists():
            shutil.rmtree(destination)
        try:
            os.rename(source, destination)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise
            logger.debug("Cross-device move of %s, copying instead", source)
            shutil.copytree(source, destination, symlinks=True)
            shutil.rmtree(source)
        logger.debug("Moved report format dir %s to %s", source, destination)

    def remove_bundle(self, directory: Path) -> None:
        if not directory.exists() and not directory.is_symlink():
            return
        if directory.is_dir() and not directory.is_symlink():
            shutil.rmtree(directory)
        else:
            directory.unlink()

    def remove_bundle_quietly(self, directory: Path) -> None:
        """Compensating remove: failures are logged, never raised."""
        try:
            self.remove_bundle(directory)
        except OSError as exc:
            logger.warning("Failed to remove report format dir %s: %s", directory, exc)

    # ---- Private signature links ----

    def link_private_signature(self, format_id: str, target: Path) -> Path:
        """Point <format_id>.asc at `target`, replacing any existing link."""
        link = self.private_signature_path(format_id)
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.is_symlink() or link.exists():
            link.unlink()
        os.symlink(target, link)
        return link

    def remove_private_signature(self, format_id: str) -> None:
        link = self.private_signature_path(format_id)
        try:
            link.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Failed to remove signature link %s: %s", link, exc)

    def trash_dir_names(self) -> list[str]:
        if not self.trash_root.is_dir():
            return []
        return sorted(entry.name for entry in self.trash_root.iterdir())
