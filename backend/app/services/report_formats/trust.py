from __future__ import annotations

"""backend/app/services/report_formats/trust.py

Canonical signable form of a report format, and trust refresh.

The canonical string is what feed signers sign and what gpgv checks:

    <feed uuid or id><extension><content type><predefined 0|1>
    for each file, sorted by name (byte order): <name><content>
    for each param: <name><type name>[<min>][<max>]<regex><fallback><option values...>
    "\\n"

min and max appear only when the param is explicitly bounded. The exact
bytes must match between signing and verification, so nothing here may
depend on locale or dictionary ordering.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Sequence, Tuple

from sqlalchemy.orm import Session

from app import models
from app.db.session import transaction
from app.models import TrustState
from app.services.report_formats.assets import AssetStore
from app.services.report_formats.context import AccessOracle, Principal
from app.services.report_formats.errors import ReportFormatError, VerifyResult
from app.services.report_formats.params import (
    PARAM_MAX_ABSENT,
    PARAM_MIN_ABSENT,
    ParamType,
)
from app.services.report_formats.signatures import SignatureStore, SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass
class CanonicalParam:
    name: str
    type_name: str
    type_min: int = PARAM_MIN_ABSENT
    type_max: int = PARAM_MAX_ABSENT
    fallback: str = ""
    options: List[str] = field(default_factory=list)
    type_regex: str = ""

    @classmethod
    def from_row(cls, param) -> "CanonicalParam":
        try:
            type_name = ParamType(param.type).type_name
        except ValueError:
            type_name = "error"
        return cls(
            name=param.name,
            type_name=type_name,
            type_min=param.type_min,
            type_max=param.type_max,
            fallback=param.fallback or "",
            options=[option.value for option in param.options if option.value is not None],
            type_regex=param.type_regex or "",
        )


def canonical_string(
    uuid: str,
    extension: str,
    content_type: str,
    predefined: bool,
    files: Iterable[Tuple[str, bytes]],
    params: Sequence[CanonicalParam],
) -> bytes:
    parts: List[bytes] = [
        f"{uuid}{extension or ''}{content_type or ''}{int(bool(predefined))}".encode("utf-8")
    ]

    for name, content in sorted(files, key=lambda item: item[0].encode("utf-8")):
        parts.append(name.encode("utf-8"))
        parts.append(content)

    for param in params:
        text = f"{param.name}{param.type_name}"
        if param.type_min > PARAM_MIN_ABSENT:
            text += str(param.type_min)
        if param.type_max < PARAM_MAX_ABSENT:
            text += str(param.type_max)
        text += f"{param.type_regex}{param.fallback}"
        text += "".join(param.options)
        parts.append(text.encode("utf-8"))

    parts.append(b"\n")
    return b"".join(parts)


class TrustEngine:
    """Builds canonical strings and turns signatures into trust states."""

    def __init__(
        self,
        db: Session,
        *,
        assets: AssetStore,
        signatures: SignatureStore,
        verifier: SignatureVerifier,
    ) -> None:
        self.db = db
        self.assets = assets
        self.signatures = signatures
        self.verifier = verifier

    def check_import(
        self,
        uuid: str,
        extension: str,
        content_type: str,
        predefined: bool,
        files: Iterable[Tuple[str, bytes]],
        params: Sequence[CanonicalParam],
        signature: bytes | None,
    ) -> TrustState:
        """
        Trust of a bundle that is about to be imported.

        A signature found for `uuid` on disk takes precedence over the one
        submitted with the bundle. With neither, the bundle is UNKNOWN.
        """
        found = self.signatures.find(uuid)
        if found is None and not signature:
            return TrustState.UNKNOWN

        payload = canonical_string(
            (found.linked_uuid if found else None) or uuid,
            extension,
            content_type,
            predefined,
            files,
            params,
        )
        return self.verifier.verify(payload, found.content if found else signature)

    def canonical_for(self, report_format: models.ReportFormat, linked_uuid: str | None) -> bytes:
        directory = self.assets.format_dir(
            report_format.uuid, report_format.owner, report_format.predefined
        )
        return canonical_string(
            linked_uuid or report_format.uuid,
            report_format.extension,
            report_format.content_type,
            report_format.predefined,
            self.assets.read_bundle(directory),
            [CanonicalParam.from_row(param) for param in report_format.params],
        )

    def verify_internal(self, report_format: models.ReportFormat) -> TrustState:
        """
        Recompute the trust of a stored format and persist it.

        The feed (or private link) signature is preferred over the signature
        stored on the row. Without any signature the trust is UNKNOWN; the
        state and timestamp are stored either way.
        """
        found = self.signatures.find(report_format.uuid)
        stored = (report_format.signature or "").encode("utf-8")

        trust = TrustState.UNKNOWN
        if found is not None or stored:
            payload = self.canonical_for(report_format, found.linked_uuid if found else None)
            trust = self.verifier.verify(payload, found.content if found else stored)
        else:
            logger.debug("No signature for report format %s", report_format.uuid)

        now = datetime.utcnow()
        report_format.trust = trust.value
        report_format.trust_time = now
        report_format.modification_time = now
        self.db.flush()
        return trust

    def verify_report_format(
        self, principal: Principal, oracle: AccessOracle, format_id: str
    ) -> TrustState:
        with transaction(self.db):
            if not oracle.user_may(principal, "verify_report_format"):
                logger.warning("verify_report_format denied for %s", principal.user_id)
                raise ReportFormatError(VerifyResult.PERMISSION_DENIED)

            report_format = (
                self.db.query(models.ReportFormat)
                .filter(models.ReportFormat.uuid == format_id)
                .first()
            )
            if report_format is None or not oracle.may_access(
                principal, "verify_report_format", report_format.owner
            ):
                logger.warning("verify_report_format: %s not found", format_id)
                raise ReportFormatError(VerifyResult.NOT_FOUND)

            trust = self.verify_internal(report_format)
            logger.info("Report format %s trust is now %s", format_id, trust.name)
            return trust
