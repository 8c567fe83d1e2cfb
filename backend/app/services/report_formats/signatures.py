from __future__ import annotations

"""backend/app/services/report_formats/signatures.py

Detached signature verification and lookup.

SignatureVerifier runs gpgv against the trusted keyring:

    gpgv --homedir <sysconf>/gnupg --quiet --keyring <sysconf>/gnupg/pubring.gpg \
         -- <signature-file> <payload-file>

Exit status 0 means trusted, 1 means the signature did not verify, any
other status is inconclusive. Only a failure to start gpgv is an error.

Signatures for a format id are looked up in the feed first and then in
the private signatures directory, where a re-imported format keeps a
symlink to the signature of the feed format it was created from.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from app.config import Settings, get_settings
from app.models import TrustState
from app.services.diagnostics.error_classifier import classify_command_failure
from app.services.report_formats.assets import AssetStore
from app.services.report_formats.errors import SignatureToolError
from app.services.tools.base import run_command

logger = logging.getLogger(__name__)


@dataclass
class FoundSignature:
    content: bytes
    path: Path
    # Feed identity of the signed format when found through a private link.
    linked_uuid: str | None = None


class SignatureVerifier:
    """Classify a payload/signature pair as trusted, untrusted or unknown."""

    def __init__(
        self,
        *,
        binary: str = "gpgv",
        gpg_home: Path,
        keyring: Path,
        timeout: int | None = 60,
    ) -> None:
        self.binary = binary
        self.gpg_home = gpg_home
        self.keyring = keyring
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SignatureVerifier":
        settings = settings or get_settings()
        return cls(
            binary=settings.gpgv_binary,
            gpg_home=settings.gpg_home,
            keyring=settings.trusted_keyring,
            timeout=settings.gpgv_timeout_seconds,
        )

    def command(self, signature_file: str, payload_file: str) -> list[str]:
        return [
            self.binary,
            "--homedir",
            str(self.gpg_home),
            "--quiet",
            "--keyring",
            str(self.keyring),
            "--",
            signature_file,
            payload_file,
        ]

    def verify(self, payload: bytes, signature: bytes) -> TrustState:
        payload_fd, payload_file = tempfile.mkstemp(prefix="rf-payload-")
        signature_fd, signature_file = tempfile.mkstemp(prefix="rf-signature-")
        try:
            with os.fdopen(payload_fd, "wb") as handle:
                handle.write(payload)
            with os.fdopen(signature_fd, "wb") as handle:
                handle.write(signature)

            result = run_command(
                self.command(signature_file, payload_file),
                timeout=self.timeout,
                workdir=tempfile.gettempdir(),
            )
        finally:
            for path in (payload_file, signature_file):
                try:
                    os.remove(path)
                except OSError:
                    logger.debug("Temporary file %s already gone", path)

        if not result.spawned:
            logger.warning("Failed to run %s: %s", self.binary, result.error)
            raise SignatureToolError(f"failed to run {self.binary}: {result.error}")

        if result.success:
            return TrustState.YES
        if result.return_code == 1:
            logger.info("Signature did not verify (%s)", classify_command_failure("gpgv", result))
            return TrustState.NO

        logger.info(
            "Signature check inconclusive (%s, exit %s)",
            classify_command_failure("gpgv", result),
            result.return_code,
        )
        return TrustState.UNKNOWN


class SignatureStore:
    """Where feed and private signatures for a format id live."""

    def __init__(self, feed_dir: Path, assets: AssetStore) -> None:
        self.feed_dir = feed_dir
        self.assets = assets

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, assets: AssetStore | None = None
    ) -> "SignatureStore":
        settings = settings or get_settings()
        return cls(
            Path(settings.feed_signatures_dir),
            assets or AssetStore.from_settings(settings),
        )

    def feed_path(self, format_id: str) -> Path:
        return self.feed_dir / f"{format_id}.asc"

    def find(self, format_id: str, *, include_private: bool = True) -> FoundSignature | None:
        """
        Look for `<format_id>.asc` in the feed, then (optionally) in the
        private signatures directory.

        A private hit resolves its link target; the target's basename up to
        the first "." is the feed identity the signature belongs to.
        """
        if not format_id:
            return None

        feed = self.feed_path(format_id)
        try:
            return FoundSignature(content=feed.read_bytes(), path=feed)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.debug("Failed to read %s: %s", feed, exc)
            return None

        if not include_private:
            return None

        private = self.assets.private_signature_path(format_id)
        try:
            content = private.read_bytes()
        except OSError:
            return None
        real = Path(os.path.realpath(private))
        return FoundSignature(
            content=content,
            path=private,
            linked_uuid=real.name.split(".", 1)[0],
        )

    def share(self, old_uuid: str, new_uuid: str) -> None:
        """
        Let `new_uuid` use the signature of `old_uuid`.

        Used when an imported format keeps a feed format's signature but has
        to take a fresh id; the link target is the feed file when there is
        one, otherwise whatever the old id's private link points at.
        """
        feed = self.feed_path(old_uuid)
        private = self.assets.private_signature_path(old_uuid)
        if feed.exists():
            target = Path(os.path.realpath(feed))
        elif private.is_symlink():
            target = Path(os.readlink(private))
        else:
            target = feed
        self.assets.link_private_signature(new_uuid, target)
        logger.debug("Linked signature of %s to %s", new_uuid, target)

    def remove_link(self, format_id: str) -> None:
        self.assets.remove_private_signature(format_id)
