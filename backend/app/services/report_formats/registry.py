from __future__ import annotations

"""backend/app/services/report_formats/registry.py

Lifecycle of report formats: import, copy, modify, delete to trash,
restore, ultimate delete and trash emptying.

Responsibilities:
- run every public operation in one database transaction
- keep the bundle directory where the registry row is (table or trash)
- touch the filesystem only after all relational checks have passed, and
  undo partial writes when a later step fails
- refuse to destroy formats that alerts still reference

Each failure branch logs one line and raises ReportFormatError carrying
the operation's result code.
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, NoReturn, Sequence, Tuple

from sqlalchemy.orm import Session

from app import models
from app.db.session import transaction
from app.models import LOCATION_TABLE, LOCATION_TRASH, REPORT_FORMAT_FLAG_ACTIVE, TrustState
from app.services.report_formats.assets import AssetStore, EmptyFileName
from app.services.report_formats.context import AccessOracle, Principal, RoleAccessOracle
from app.services.report_formats.errors import (
    AssetError,
    CopyResult,
    CreateResult,
    DeleteResult,
    ModifyResult,
    ReportFormatError,
    RestoreResult,
)
from app.services.report_formats.params import (
    PARAM_MAX_ABSENT,
    PARAM_MIN_ABSENT,
    ParamType,
    parse_c_integer,
    validate_param,
)
from app.services.report_formats.repository import (
    AlertRepo,
    ParamRepo,
    ReportFormatRepo,
    ResourceRefs,
    make_uuid,
)
from app.services.report_formats.signatures import SignatureStore, SignatureVerifier
from app.services.report_formats.trust import CanonicalParam, TrustEngine

logger = logging.getLogger(__name__)


@dataclass
class NewParam:
    """A param as submitted with an imported bundle; bounds are raw text."""

    name: str
    type: str | None
    value: str = ""
    fallback: str | None = None
    type_min: str | None = None
    type_max: str | None = None
    options: List[str] = field(default_factory=list)

    def bounds(self) -> Tuple[int, int]:
        type_min = parse_c_integer(self.type_min) if self.type_min is not None else PARAM_MIN_ABSENT
        type_max = parse_c_integer(self.type_max) if self.type_max is not None else PARAM_MAX_ABSENT
        return type_min, type_max

    def bounds_explicitly_absent(self) -> bool:
        """True when a supplied bound is the value reserved for "no bound"."""
        type_min, type_max = self.bounds()
        return (self.type_min is not None and type_min == PARAM_MIN_ABSENT) or (
            self.type_max is not None and type_max == PARAM_MAX_ABSENT
        )

    def canonical(self) -> CanonicalParam:
        type_min, type_max = self.bounds()
        return CanonicalParam(
            name=self.name,
            type_name=self.type or "",
            type_min=type_min,
            type_max=type_max,
            fallback=self.fallback or "",
            options=list(self.options),
        )


def decode_param_value(value_64: str | None) -> str:
    """Param values travel base64 encoded; empty means the empty string."""
    if not value_64:
        return ""
    try:
        return base64.b64decode(value_64).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise ReportFormatError(ModifyResult.PARAM_VALUE_INVALID, "param value is not valid base64")


def _fail(result, message: str, *args) -> NoReturn:
    logger.warning(message, *args)
    raise ReportFormatError(result, message % args if args else message)


class ReportFormatRegistry:
    def __init__(
        self,
        db: Session,
        *,
        oracle: AccessOracle | None = None,
        assets: AssetStore | None = None,
        signatures: SignatureStore | None = None,
        verifier: SignatureVerifier | None = None,
    ) -> None:
        self.db = db
        self.oracle = oracle or RoleAccessOracle()
        self.assets = assets or AssetStore.from_settings()
        self.signatures = signatures or SignatureStore.from_settings(assets=self.assets)
        self.verifier = verifier or SignatureVerifier.from_settings()
        self.trust = TrustEngine(
            db, assets=self.assets, signatures=self.signatures, verifier=self.verifier
        )
        self.formats = ReportFormatRepo(db)
        self.params = ParamRepo(db)
        self.alerts = AlertRepo(db)
        self.refs = ResourceRefs(db)

    # ---- Lookup helpers ----

    def _find(self, principal: Principal, format_id: str, permission: str) -> models.ReportFormat | None:
        report_format = self.formats.get(format_id)
        if report_format is None:
            return None
        if not self.oracle.may_access(principal, permission, report_format.owner):
            return None
        return report_format

    def _find_trash(self, principal: Principal, trash_id: str) -> models.ReportFormatTrash | None:
        trash = self.formats.get_trash(trash_id)
        if trash is None:
            return None
        if not self.oracle.can_everything(principal) and trash.owner != principal.user_id:
            return None
        return trash

    def _dir_of(self, report_format: models.ReportFormat) -> Path:
        return self.assets.format_dir(
            report_format.uuid, report_format.owner, report_format.predefined
        )

    # ---- Create ----

    def create(
        self,
        principal: Principal,
        *,
        uuid: str,
        name: str,
        content_type: str = "",
        extension: str = "",
        summary: str = "",
        description: str = "",
        global_: bool = False,
        files: Sequence[Tuple[str, bytes]] = (),
        params: Sequence[NewParam] = (),
        signature: str | None = None,
    ) -> models.ReportFormat:
        """Import a bundle; returns the new (inactive) format row."""
        for param in params:
            if param.bounds_explicitly_absent():
                _fail(CreateResult.BOUNDS_INVALID, "Param %s: bound out of range", param.name)

        # Signature first, before anything is written.
        trust = self.trust.check_import(
            uuid,
            extension,
            content_type,
            global_,
            files,
            [param.canonical() for param in params],
            signature.encode("utf-8") if signature else None,
        )

        with transaction(self.db):
            if not self.oracle.user_may(principal, "create_report_format"):
                _fail(CreateResult.PERMISSION_DENIED, "create_report_format denied for %s", principal.user_id)
            if global_ and not self.oracle.can_everything(principal):
                _fail(CreateResult.PERMISSION_DENIED, "Global report format denied for %s", principal.user_id)

            format_id = uuid
            if self.formats.uuid_taken(uuid):
                format_id = make_uuid()
                try:
                    self.signatures.share(uuid, format_id)
                except OSError as exc:
                    logger.warning("Failed to link signature of %s: %s", uuid, exc)
                    raise AssetError(CreateResult.ERROR, str(exc))
                logger.info("Report format %s exists, importing as %s", uuid, format_id)

            owner = None if global_ else principal.user_id
            unique_name = self.formats.unique_name(name, owner)
            directory = self.assets.format_dir(format_id, owner, False)

            try:
                try:
                    self.assets.write_bundle(directory, files)
                except EmptyFileName:
                    _fail(CreateResult.EMPTY_FILENAME, "Report format %s has a file without a name", uuid)
                except OSError as exc:
                    logger.warning("Failed to write report format dir %s: %s", directory, exc)
                    raise AssetError(CreateResult.ERROR, str(exc))

                now = datetime.utcnow()
                report_format = models.ReportFormat(
                    uuid=format_id,
                    owner=owner,
                    name=unique_name,
                    summary=summary or "",
                    description=description or "",
                    extension=extension or "",
                    content_type=content_type or "",
                    signature=signature or "",
                    trust=trust.value,
                    trust_time=now,
                    flags=0,
                    predefined=False,
                    creation_time=now,
                    modification_time=now,
                )
                self.db.add(report_format)
                self.db.flush()

                self._add_params(report_format, params)
            except BaseException:
                self.assets.remove_bundle_quietly(directory)
                if format_id != uuid:
                    self.signatures.remove_link(format_id)
                raise

        logger.info("Created report format %s (%s)", report_format.uuid, report_format.name)
        return report_format

    def _add_params(self, report_format: models.ReportFormat, params: Sequence[NewParam]) -> None:
        for declared in params:
            if declared.type is None:
                _fail(CreateResult.TYPE_MISSING, "Param %s has no type", declared.name)
            param_type = ParamType.from_name(declared.type)
            if param_type is None:
                _fail(CreateResult.UNKNOWN_PARAM_TYPE, "Param %s has bogus type %s", declared.name, declared.type)

            type_min, type_max = declared.bounds()
            if declared.bounds_explicitly_absent():
                _fail(CreateResult.BOUNDS_INVALID, "Param %s: bound out of range", declared.name)
            if declared.fallback is None:
                _fail(CreateResult.PARAM_DEFAULT_MISSING, "Param %s has no default", declared.name)
            if self.params.get(report_format, declared.name) is not None:
                _fail(CreateResult.DUPLICATE_PARAM_NAME, "Duplicate param name %s", declared.name)

            param = self.params.add(
                report_format,
                name=declared.name,
                type=int(param_type),
                value=declared.value or "",
                type_min=type_min,
                type_max=type_max,
                fallback=declared.fallback,
                options=declared.options,
            )

            if not validate_param(param, param.value):
                _fail(CreateResult.PARAM_VALUE_INVALID, "Param %s: invalid value", declared.name)
            if not validate_param(param, param.fallback):
                _fail(CreateResult.PARAM_DEFAULT_INVALID, "Param %s: invalid default", declared.name)

    # ---- Copy ----

    def copy(
        self, principal: Principal, source_id: str, name: str | None = None
    ) -> models.ReportFormat:
        with transaction(self.db):
            if not self.oracle.user_may(principal, "create_report_format"):
                _fail(CopyResult.PERMISSION_DENIED, "create_report_format denied for %s", principal.user_id)

            source = self._find(principal, source_id, "get_report_formats")
            if source is None:
                _fail(CopyResult.SOURCE_NOT_FOUND, "Report format %s not found for copy", source_id)

            owner = principal.user_id
            if name:
                if self.formats.name_exists(name, owner):
                    _fail(CopyResult.EXISTS, "Report format named %s exists", name)
                new_name = name
            else:
                new_name = self.formats.unique_name(source.name, owner)

            source_dir = self._dir_of(source)
            if not source_dir.exists():
                _fail(CopyResult.ERROR, "Report format directory %s not found", source_dir)

            now = datetime.utcnow()
            copy = models.ReportFormat(
                uuid=make_uuid(),
                owner=owner,
                name=new_name,
                summary=source.summary,
                description=source.description,
                extension=source.extension,
                content_type=source.content_type,
                signature=source.signature,
                trust=source.trust,
                trust_time=source.trust_time,
                flags=source.flags,
                predefined=False,
                creation_time=now,
                modification_time=now,
            )
            if source.predefined:
                copy.trust = TrustState.YES.value
                copy.trust_time = now
            self.db.add(copy)
            self.db.flush()
            self.params.copy_all(source, copy)

            copy_dir = self.assets.format_dir(copy.uuid, owner, False)
            try:
                self.assets.copy_bundle(source_dir, copy_dir)
            except OSError as exc:
                self.assets.remove_bundle_quietly(copy_dir)
                logger.warning("Failed to copy %s to %s: %s", source_dir, copy_dir, exc)
                raise AssetError(CopyResult.ERROR, str(exc))

        logger.info("Copied report format %s to %s", source_id, copy.uuid)
        return copy

    # ---- Modify ----

    def modify(
        self,
        principal: Principal,
        format_id: str | None,
        *,
        name: str | None = None,
        summary: str | None = None,
        active: bool | None = None,
        param_name: str | None = None,
        param_value: str | None = None,
        predefined: str | None = None,
    ) -> models.ReportFormat:
        if not format_id:
            _fail(ModifyResult.ID_REQUIRED, "modify_report_format requires an id")
        if predefined is not None and predefined not in ("0", "1"):
            _fail(ModifyResult.BAD_PREDEFINED_FLAG, "Bad predefined flag %r", predefined)

        with transaction(self.db):
            if not self.oracle.user_may(principal, "modify_report_format"):
                _fail(ModifyResult.PERMISSION_DENIED, "modify_report_format denied for %s", principal.user_id)

            report_format = self._find(principal, format_id, "modify_report_format")
            if report_format is None:
                _fail(ModifyResult.NOT_FOUND, "Report format %s not found", format_id)

            # Predefined formats only change from the system context.
            if report_format.predefined and not principal.is_system:
                _fail(ModifyResult.PERMISSION_DENIED, "Report format %s is predefined", format_id)

            before = (report_format.name, report_format.summary, report_format.flags, report_format.predefined)
            if name is not None:
                report_format.name = name
            if summary is not None:
                report_format.summary = summary
            if active is not None:
                if active:
                    report_format.flags = (report_format.flags or 0) | REPORT_FORMAT_FLAG_ACTIVE
                else:
                    report_format.flags = (report_format.flags or 0) & ~REPORT_FORMAT_FLAG_ACTIVE
            if predefined is not None:
                report_format.predefined = predefined == "1"
            if (report_format.name, report_format.summary, report_format.flags, report_format.predefined) != before:
                report_format.modification_time = datetime.utcnow()

            if param_name:
                self._set_param(report_format, param_name, param_value)

            self.db.flush()
        return report_format

    def _set_param(self, report_format: models.ReportFormat, name: str, value_64: str | None) -> None:
        param = self.params.get(report_format, name)
        if param is None:
            _fail(ModifyResult.PARAM_NOT_FOUND, "Report format %s has no param %s", report_format.uuid, name)
        value = decode_param_value(value_64)
        if not validate_param(param, value):
            _fail(ModifyResult.PARAM_VALUE_INVALID, "Param %s: invalid value", name)
        param.value = value

    def set_report_format_param(
        self, principal: Principal, format_id: str, name: str, value_64: str | None
    ) -> None:
        with transaction(self.db):
            report_format = self._find(principal, format_id, "modify_report_format")
            if report_format is None:
                _fail(ModifyResult.NOT_FOUND, "Report format %s not found", format_id)
            self._set_param(report_format, name, value_64)
            self.db.flush()

    # ---- Delete ----

    def delete(self, principal: Principal, format_id: str, ultimate: bool = False) -> None:
        with transaction(self.db):
            if not self.oracle.user_may(principal, "delete_report_format"):
                _fail(DeleteResult.PERMISSION_DENIED, "delete_report_format denied for %s", principal.user_id)

            report_format = self._find(principal, format_id, "delete_report_format")
            if report_format is None:
                self._delete_from_trash(principal, format_id, ultimate)
                return

            if report_format.predefined:
                _fail(DeleteResult.PREDEFINED, "Report format %s is predefined", format_id)

            if self.alerts.any_in_use(report_format.uuid):
                _fail(DeleteResult.IN_USE, "Report format %s is in use by an alert", format_id)

            directory = self._dir_of(report_format)

            if ultimate:
                self.refs.orphan(report_format.uuid, LOCATION_TABLE)
                self.formats.delete(report_format)
                try:
                    self.assets.remove_bundle(directory)
                except OSError as exc:
                    logger.warning("Failed to remove %s: %s", directory, exc)
                    raise AssetError(DeleteResult.ERROR, str(exc))
                logger.info("Deleted report format %s", format_id)
                return

            trash = self.formats.trash_to_row(report_format)
            self.refs.to_trash(report_format.uuid, trash.uuid)
            self.formats.delete(report_format)

            # The directory moves last so failed SQL leaves it in place.
            try:
                self.assets.move_bundle(directory, self.assets.trash_dir(trash.id))
            except OSError as exc:
                logger.warning("Failed to move %s to trash: %s", directory, exc)
                raise AssetError(DeleteResult.ERROR, str(exc))
            logger.info("Moved report format %s to trash as %s", format_id, trash.uuid)

    def _delete_from_trash(self, principal: Principal, trash_id: str, ultimate: bool) -> None:
        trash = self._find_trash(principal, trash_id)
        if trash is None:
            _fail(DeleteResult.NOT_FOUND, "Report format %s not found", trash_id)

        if not ultimate:
            logger.debug("Report format %s is already in the trash", trash_id)
            return

        if self.alerts.trash_in_use(trash.original_uuid):
            _fail(DeleteResult.IN_USE, "Trashed report format %s is in use by an alert", trash_id)

        row_id = trash.id
        original_uuid = trash.original_uuid
        self.refs.orphan(trash.uuid, LOCATION_TRASH)
        self.formats.delete_trash(trash)

        directory = self.assets.trash_dir(row_id)
        try:
            self.assets.remove_bundle(directory)
        except OSError as exc:
            logger.warning("Failed to remove %s: %s", directory, exc)
            raise AssetError(DeleteResult.ERROR, str(exc))
        self.signatures.remove_link(original_uuid)
        logger.info("Purged report format %s from trash", trash_id)

    # ---- Restore ----

    def restore(self, principal: Principal, trash_id: str) -> models.ReportFormat:
        with transaction(self.db):
            trash = self._find_trash(principal, trash_id)
            if trash is None:
                _fail(RestoreResult.NOT_FOUND, "Trashed report format %s not found", trash_id)

            if self.formats.name_exists(trash.name, trash.owner):
                _fail(RestoreResult.NAME_EXISTS, "Report format named %s exists", trash.name)
            if self.formats.get(trash.original_uuid) is not None:
                _fail(RestoreResult.UUID_EXISTS, "Report format %s exists", trash.original_uuid)

            row_id = trash.id
            report_format = self.formats.restore_row(trash)
            self.refs.to_table(trash.uuid, report_format.uuid)
            self.formats.delete_trash(trash)

            try:
                self.assets.move_bundle(self.assets.trash_dir(row_id), self._dir_of(report_format))
            except OSError as exc:
                logger.warning("Failed to move trash dir %s back: %s", row_id, exc)
                raise AssetError(RestoreResult.ERROR, str(exc))

        logger.info("Restored report format %s", report_format.uuid)
        return report_format

    # ---- Trash and user housekeeping ----

    def empty_trashcan(self, principal: Principal) -> int:
        """Purge the principal's trash, keeping formats a trashed alert still uses."""
        with transaction(self.db):
            trashed = self.formats.list_trash(principal.user_id)
            row_ids = []
            for trash in trashed:
                if self.alerts.trash_in_use(trash.original_uuid):
                    logger.warning(
                        "Keeping trashed report format %s: in use by a trashed alert", trash.uuid
                    )
                    continue
                row_ids.append(trash.id)
                self.refs.orphan(trash.uuid, LOCATION_TRASH)
                self.formats.delete_trash(trash)

            for row_id in row_ids:
                directory = self.assets.trash_dir(row_id)
                try:
                    self.assets.remove_bundle(directory)
                except OSError as exc:
                    logger.warning("Failed to remove trash dir %s: %s", directory, exc)
                    raise AssetError(DeleteResult.ERROR, str(exc))
        return len(row_ids)

    def inherit(self, user: str, inheritor: str) -> None:
        """Hand every format of `user` (table and trash) to `inheritor`."""
        with transaction(self.db):
            moves = []
            for report_format in self.formats.owned_by(user):
                report_format.owner = inheritor
                moves.append(report_format.uuid)
            for trash in self.formats.list_trash(user):
                trash.owner = inheritor
            self.db.flush()

            for format_id in moves:
                source = self.assets.user_dir(user, format_id)
                if source.exists():
                    try:
                        self.assets.move_bundle(source, self.assets.user_dir(inheritor, format_id))
                    except OSError as exc:
                        logger.warning("Failed to move %s to %s: %s", source, inheritor, exc)
                        raise AssetError(ModifyResult.ERROR, str(exc))

    def delete_user(self, user: str) -> None:
        """Drop every format of `user`, with its params and directories."""
        with transaction(self.db):
            trash_ids = []
            for report_format in self.formats.owned_by(user):
                self.formats.delete(report_format)
            for trash in self.formats.list_trash(user):
                trash_ids.append(trash.id)
                self.formats.delete_trash(trash)

        self.assets.remove_bundle_quietly(self.assets.users_root / user)
        for row_id in trash_ids:
            self.assets.remove_bundle_quietly(self.assets.trash_dir(row_id))

    # ---- Read side ----

    def lookup(self, principal: Principal, name: str) -> models.ReportFormat | None:
        """First active format called `name`: own first, then global, then others."""

        def rank(report_format: models.ReportFormat) -> int:
            if report_format.owner is not None and report_format.owner == principal.user_id:
                return 0
            if report_format.owner is None:
                return 1
            return 2

        candidates = [rf for rf in self.formats.active_by_name(name) if rf.active]
        for report_format in sorted(candidates, key=rank):
            if self.oracle.may_access(principal, "get_report_formats", report_format.owner):
                return report_format
        return None

    def list(self, principal: Principal, trash: bool = False) -> list:
        if trash:
            return self.formats.list_trash(
                principal.user_id, everyone=self.oracle.can_everything(principal)
            )
        return [
            report_format
            for report_format in self.formats.list_active()
            if self.oracle.may_access(principal, "get_report_formats", report_format.owner)
        ]

    def get(self, principal: Principal, format_id: str) -> models.ReportFormat | None:
        return self._find(principal, format_id, "get_report_formats")

    def alerts_for(self, principal: Principal, format_id: str) -> List[models.Alert]:
        if self.get(principal, format_id) is None:
            return []
        return self.alerts.alerts_for(format_id)
