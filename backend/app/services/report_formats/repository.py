from __future__ import annotations

"""backend/app/services/report_formats/repository.py

Typed data access for report formats and their params.

The registry, feed sync and migrations go through these repositories
instead of issuing ad hoc queries. Results are always materialized lists,
so callers can iterate, decide and write without holding a live cursor.
"""

import logging
import uuid as uuid_lib
from typing import Iterable, List, Sequence

from sqlalchemy import false, or_
from sqlalchemy.orm import Session

from app import models
from app.models import LOCATION_TABLE, LOCATION_TRASH

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "report_format"

# alert_method_data names whose data is a report format id
ALERT_FORMAT_METHOD_NAMES = (
    "notice_attach_format",
    "notice_report_format",
    "scp_report_format",
    "send_report_format",
    "smb_report_format",
    "verinice_server_report_format",
)


def make_uuid() -> str:
    return str(uuid_lib.uuid4())


class ReportFormatRepo:
    """Report format rows, active and trashed."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---- Active table ----

    def get(self, format_id: str) -> models.ReportFormat | None:
        return (
            self.db.query(models.ReportFormat)
            .filter(models.ReportFormat.uuid == format_id)
            .order_by(models.ReportFormat.id)
            .first()
        )

    def all_with_uuid(self, format_id: str) -> List[models.ReportFormat]:
        return (
            self.db.query(models.ReportFormat)
            .filter(models.ReportFormat.uuid == format_id)
            .order_by(models.ReportFormat.id)
            .all()
        )

    def list_active(self, owner_filter: Sequence[str | None] | None = None) -> List[models.ReportFormat]:
        query = self.db.query(models.ReportFormat)
        if owner_filter is not None:
            owners = [owner for owner in owner_filter if owner is not None]
            conditions = [models.ReportFormat.owner.in_(owners)] if owners else []
            if None in owner_filter:
                conditions.append(models.ReportFormat.owner.is_(None))
            query = query.filter(or_(*conditions)) if conditions else query.filter(false())
        return query.order_by(models.ReportFormat.name, models.ReportFormat.id).all()

    def owned_by(self, owner: str) -> List[models.ReportFormat]:
        return (
            self.db.query(models.ReportFormat)
            .filter(models.ReportFormat.owner == owner)
            .order_by(models.ReportFormat.id)
            .all()
        )

    def predefined(self) -> List[models.ReportFormat]:
        return (
            self.db.query(models.ReportFormat)
            .filter(models.ReportFormat.predefined.is_(True))
            .order_by(models.ReportFormat.id)
            .all()
        )

    def active_by_name(self, name: str) -> List[models.ReportFormat]:
        return (
            self.db.query(models.ReportFormat)
            .filter(models.ReportFormat.name == name)
            .order_by(models.ReportFormat.id)
            .all()
        )

    def uuid_taken(self, format_id: str) -> bool:
        """An active row or a trashed row that would restore to this id."""
        if self.get(format_id) is not None:
            return True
        return (
            self.db.query(models.ReportFormatTrash)
            .filter(models.ReportFormatTrash.original_uuid == format_id)
            .first()
            is not None
        )

    def name_exists(self, name: str, owner: str | None) -> bool:
        query = self.db.query(models.ReportFormat).filter(models.ReportFormat.name == name)
        if owner is None:
            query = query.filter(models.ReportFormat.owner.is_(None))
        else:
            query = query.filter(models.ReportFormat.owner == owner)
        return query.first() is not None

    def unique_name(self, name: str, owner: str | None) -> str:
        """`name`, or `name 2`, `name 3`, ... whichever is free for `owner`."""
        candidate = name
        number = 1
        while self.name_exists(candidate, owner):
            number += 1
            candidate = f"{name} {number}"
        return candidate

    def delete(self, report_format: models.ReportFormat) -> None:
        self.db.delete(report_format)
        self.db.flush()

    # ---- Trash table ----

    def get_trash(self, trash_id: str) -> models.ReportFormatTrash | None:
        return (
            self.db.query(models.ReportFormatTrash)
            .filter(models.ReportFormatTrash.uuid == trash_id)
            .first()
        )

    def trash_by_row_id(self, row_id: int) -> models.ReportFormatTrash | None:
        return self.db.get(models.ReportFormatTrash, row_id)

    def list_trash(self, owner: str | None = None, *, everyone: bool = False) -> List[models.ReportFormatTrash]:
        query = self.db.query(models.ReportFormatTrash)
        if not everyone:
            if owner is None:
                query = query.filter(models.ReportFormatTrash.owner.is_(None))
            else:
                query = query.filter(models.ReportFormatTrash.owner == owner)
        return query.order_by(models.ReportFormatTrash.id).all()

    def trash_to_row(self, report_format: models.ReportFormat) -> models.ReportFormatTrash:
        """Copy an active format, params and options into the trash tables."""
        trash = models.ReportFormatTrash(
            uuid=make_uuid(),
            original_uuid=report_format.uuid,
            **_format_fields(report_format),
        )
        for param in report_format.params:
            trash_param = models.ReportFormatParamTrash(**_param_fields(param))
            trash_param.options = [
                models.ReportFormatParamOptionTrash(value=option.value)
                for option in param.options
            ]
            trash.params.append(trash_param)
        self.db.add(trash)
        self.db.flush()
        return trash

    def restore_row(self, trash: models.ReportFormatTrash) -> models.ReportFormat:
        """Copy a trashed format back under its original id."""
        report_format = models.ReportFormat(
            uuid=trash.original_uuid,
            **_format_fields(trash),
        )
        for trash_param in trash.params:
            param = models.ReportFormatParam(**_param_fields(trash_param))
            param.options = [
                models.ReportFormatParamOption(value=option.value)
                for option in trash_param.options
            ]
            report_format.params.append(param)
        self.db.add(report_format)
        self.db.flush()
        return report_format

    def delete_trash(self, trash: models.ReportFormatTrash) -> None:
        self.db.delete(trash)
        self.db.flush()


class ParamRepo:
    """Params and options of one report format."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, report_format: models.ReportFormat, name: str) -> models.ReportFormatParam | None:
        return (
            self.db.query(models.ReportFormatParam)
            .filter(
                models.ReportFormatParam.report_format_id == report_format.id,
                models.ReportFormatParam.name == name,
            )
            .first()
        )

    def add(
        self,
        report_format: models.ReportFormat,
        *,
        name: str,
        type: int,
        value: str,
        type_min: int,
        type_max: int,
        fallback: str,
        options: Iterable[str] = (),
    ) -> models.ReportFormatParam:
        param = models.ReportFormatParam(
            name=name,
            type=type,
            value=value,
            type_min=type_min,
            type_max=type_max,
            type_regex="",
            fallback=fallback,
        )
        param.options = [models.ReportFormatParamOption(value=option) for option in options]
        report_format.params.append(param)
        self.db.flush()
        return param

    def replace_options(self, param: models.ReportFormatParam, options: Iterable[str]) -> None:
        param.options = [models.ReportFormatParamOption(value=option) for option in options]
        self.db.flush()

    def copy_all(self, source: models.ReportFormat, target: models.ReportFormat) -> None:
        for param in source.params:
            copy = models.ReportFormatParam(**_param_fields(param))
            copy.options = [
                models.ReportFormatParamOption(value=option.value) for option in param.options
            ]
            target.params.append(copy)
        self.db.flush()

    def delete(self, param: models.ReportFormatParam) -> None:
        report_format = param.report_format
        if report_format is not None and param in report_format.params:
            # delete-orphan cascade removes the row and its options
            report_format.params.remove(param)
        else:
            self.db.delete(param)
        self.db.flush()


class AlertRepo:
    """Alert configuration referencing report formats."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def in_use(self, format_id: str) -> bool:
        return (
            self.db.query(models.AlertMethodData)
            .filter(
                models.AlertMethodData.data == format_id,
                models.AlertMethodData.name.in_(ALERT_FORMAT_METHOD_NAMES),
            )
            .first()
            is not None
        )

    def trash_in_use(self, format_id: str) -> bool:
        return (
            self.db.query(models.AlertMethodDataTrash)
            .filter(
                models.AlertMethodDataTrash.data == format_id,
                models.AlertMethodDataTrash.name.in_(ALERT_FORMAT_METHOD_NAMES),
            )
            .first()
            is not None
        )

    def any_in_use(self, format_id: str) -> bool:
        return self.in_use(format_id) or self.trash_in_use(format_id)

    def alerts_for(self, format_id: str) -> List[models.Alert]:
        return (
            self.db.query(models.Alert)
            .join(models.AlertMethodData)
            .filter(models.AlertMethodData.data == format_id)
            .order_by(models.Alert.name)
            .distinct()
            .all()
        )

    def rewrite_references(self, old_id: str, new_id: str) -> int:
        rows = (
            self.db.query(models.AlertMethodData)
            .filter(models.AlertMethodData.data == old_id)
            .all()
        )
        for row in rows:
            row.data = new_id
        self.db.flush()
        return len(rows)


class ResourceRefs:
    """Permissions and tags that point at a report format."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _permissions(self, resource_uuid: str, location: str):
        return self.db.query(models.Permission).filter(
            models.Permission.resource_type == RESOURCE_TYPE,
            models.Permission.resource_uuid == resource_uuid,
            models.Permission.resource_location == location,
        )

    def _tags(self, resource_uuid: str, location: str):
        return self.db.query(models.Tag).filter(
            models.Tag.resource_type == RESOURCE_TYPE,
            models.Tag.resource_uuid == resource_uuid,
            models.Tag.resource_location == location,
        )

    def set_locations(
        self, old_uuid: str, old_location: str, new_uuid: str, new_location: str
    ) -> None:
        for row in [*self._permissions(old_uuid, old_location).all(), *self._tags(old_uuid, old_location).all()]:
            row.resource_uuid = new_uuid
            row.resource_location = new_location
        self.db.flush()

    def to_trash(self, format_id: str, trash_id: str) -> None:
        self.set_locations(format_id, LOCATION_TABLE, trash_id, LOCATION_TRASH)

    def to_table(self, trash_id: str, format_id: str) -> None:
        self.set_locations(trash_id, LOCATION_TRASH, format_id, LOCATION_TABLE)

    def orphan(self, resource_uuid: str, location: str) -> None:
        """Permissions survive as orphans; tags just lose the resource."""
        for permission in self._permissions(resource_uuid, location).all():
            permission.resource_uuid = None
        for tag in self._tags(resource_uuid, location).all():
            self.db.delete(tag)
        self.db.flush()

    def grant_roles(self, format_id: str, permission: str, roles: Iterable[str]) -> None:
        for role in roles:
            exists = (
                self._permissions(format_id, LOCATION_TABLE)
                .filter(
                    models.Permission.name == permission,
                    models.Permission.subject_type == "role",
                    models.Permission.subject_id == role,
                )
                .first()
            )
            if exists is None:
                self.db.add(
                    models.Permission(
                        name=permission,
                        resource_type=RESOURCE_TYPE,
                        resource_uuid=format_id,
                        resource_location=LOCATION_TABLE,
                        subject_type="role",
                        subject_id=role,
                    )
                )
        self.db.flush()

    def move_owner_uuid(self, old_uuid: str, new_uuid: str) -> None:
        """Follow a format whose id changes while it stays in the table."""
        self.set_locations(old_uuid, LOCATION_TABLE, new_uuid, LOCATION_TABLE)


def _format_fields(row) -> dict:
    return {
        "owner": row.owner,
        "name": row.name,
        "summary": row.summary,
        "description": row.description,
        "extension": row.extension,
        "content_type": row.content_type,
        "signature": row.signature,
        "trust": row.trust,
        "trust_time": row.trust_time,
        "flags": row.flags,
        "predefined": row.predefined,
        "creation_time": row.creation_time,
        "modification_time": row.modification_time,
    }


def _param_fields(param) -> dict:
    return {
        "name": param.name,
        "type": param.type,
        "value": param.value,
        "type_min": param.type_min,
        "type_max": param.type_max,
        "type_regex": param.type_regex,
        "fallback": param.fallback,
    }
