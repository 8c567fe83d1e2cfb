from __future__ import annotations

"""backend/app/services/report_formats/feed.py

Reconcile predefined report formats with the feed directory.

Every subdirectory of the predefined directory is one format, described by
its `report_format.xml`:

    <report_format id="...">
      <name>CSV Results</name>
      <summary>...</summary>
      <description>...</description>
      <extension>csv</extension>
      <content_type>text/csv</content_type>
      <param>
        <name>Rows</name>
        <type>integer<min>0</min><max>100</max></type>
        <value>10</value>
        <default>10</default>
      </param>
      <param>
        <name>Embedded</name>
        <type>report_format_list</type>
        <value><report_format id="..."/></value>
        <default>...</default>
      </param>
    </report_format>

A pass snapshots the known predefined formats and params, creates or
updates every format found on disk, and then deletes whatever the pass
did not confirm. The modification time of a format changes only when one
of its fields or params really changed, so repeated syncs of an unchanged
feed are no-ops. A malformed manifest aborts the whole pass.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Tuple

from sqlalchemy.orm import Session

from app import models
from app.db.session import transaction
from app.models import REPORT_FORMAT_FLAG_ACTIVE, TrustState
from app.services.report_formats.assets import MANIFEST_FILE, AssetStore
from app.services.report_formats.context import FEED_READER_ROLES
from app.services.report_formats.errors import FeedSyncError
from app.services.report_formats.params import (
    PARAM_MAX_ABSENT,
    PARAM_MIN_ABSENT,
    ParamType,
    parse_bound,
)
from app.services.report_formats.repository import AlertRepo, ParamRepo, ReportFormatRepo, ResourceRefs

logger = logging.getLogger(__name__)

# Fallback named in the warning when a removed format is still used by alerts
TXT_REPORT_FORMAT_ID = "a3810a62-1f62-11e1-9219-406186ea4fc5"

_FORMAT_FIELDS = ("owner", "name", "summary", "description", "extension", "content_type", "trust", "flags")
_PARAM_FIELDS = ("type", "value", "type_min", "type_max", "fallback")


@dataclass
class FeedParam:
    name: str
    type: ParamType
    value: str
    fallback: str
    type_min: int = PARAM_MIN_ABSENT
    type_max: int = PARAM_MAX_ABSENT
    options: List[str] | None = None


@dataclass
class FeedManifest:
    uuid: str
    name: str
    summary: str
    description: str
    extension: str
    content_type: str
    params: List[FeedParam] = field(default_factory=list)


@dataclass
class FeedSyncResult:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


def _required_text(element: ET.Element, tag: str, config_path: Path) -> str:
    child = element.find(tag)
    if child is None:
        logger.warning("Missing %s in '%s'", tag, config_path)
        raise FeedSyncError(f"missing {tag} in {config_path}")
    return (child.text or "").strip()


def _parse_param(param: ET.Element, config_path: Path) -> FeedParam:
    name = _required_text(param, "name", config_path)
    fallback = _required_text(param, "default", config_path)

    type_element = param.find("type")
    if type_element is None:
        logger.warning("Param missing type in '%s'", config_path)
        raise FeedSyncError(f"param {name} missing type in {config_path}")
    param_type = ParamType.from_name(type_element.text)
    if param_type is None:
        logger.warning("Error in param type in '%s'", config_path)
        raise FeedSyncError(f"param {name} has bad type in {config_path}")

    value_element = param.find("value")
    if value_element is None:
        logger.warning("Param missing value in '%s'", config_path)
        raise FeedSyncError(f"param {name} missing value in {config_path}")

    if param_type == ParamType.REPORT_FORMAT_LIST:
        reference = value_element.find("report_format")
        if reference is None:
            logger.warning("Param missing report format in '%s'", config_path)
            raise FeedSyncError(f"param {name} missing report_format in {config_path}")
        value = reference.get("id")
        if value is None:
            logger.warning("Report format missing id in '%s'", config_path)
            raise FeedSyncError(f"param {name} report_format missing id in {config_path}")
        return FeedParam(name=name, type=param_type, value=value.strip(), fallback=fallback)

    bounds = {}
    for tag, absent in (("min", PARAM_MIN_ABSENT), ("max", PARAM_MAX_ABSENT)):
        bound = type_element.find(tag)
        if bound is None or not (bound.text or "").strip():
            bounds[tag] = absent
            continue
        number = parse_bound(bound.text)
        if number is None:
            logger.warning("Failed to parse %s in '%s'", tag, config_path)
            raise FeedSyncError(f"param {name} has bad {tag} in {config_path}")
        bounds[tag] = number

    options = None
    if param_type == ParamType.SELECTION:
        options_element = type_element.find("options")
        if options_element is None:
            logger.warning("Selection missing options in '%s'", config_path)
            raise FeedSyncError(f"param {name} missing options in {config_path}")
        options = [(option.text or "") for option in options_element]

    return FeedParam(
        name=name,
        type=param_type,
        value=(value_element.text or "").strip(),
        fallback=fallback,
        type_min=bounds["min"],
        type_max=bounds["max"],
        options=options,
    )


def parse_manifest(uuid: str, config_path: Path) -> FeedManifest:
    try:
        root = ET.parse(config_path).getroot()
    except OSError as exc:
        logger.warning("Failed to read '%s': %s", config_path, exc)
        raise FeedSyncError(f"failed to read {config_path}") from exc
    except ET.ParseError as exc:
        logger.warning("Failed to parse '%s': %s", config_path, exc)
        raise FeedSyncError(f"failed to parse {config_path}") from exc

    return FeedManifest(
        uuid=uuid,
        name=_required_text(root, "name", config_path),
        summary=_required_text(root, "summary", config_path),
        description=_required_text(root, "description", config_path),
        extension=_required_text(root, "extension", config_path),
        content_type=_required_text(root, "content_type", config_path),
        params=[_parse_param(param, config_path) for param in root.findall("param")],
    )


class FeedSync:
    def __init__(self, db: Session, *, assets: AssetStore | None = None) -> None:
        self.db = db
        self.assets = assets or AssetStore.from_settings()
        self.formats = ReportFormatRepo(db)
        self.params = ParamRepo(db)
        self.alerts = AlertRepo(db)
        self.refs = ResourceRefs(db)
        # Scratch snapshot of the previous pass: uuid -> fields, row id -> name -> fields
        self._format_check: Dict[str, Dict[str, object]] = {}
        self._param_check: Dict[int, Dict[str, Dict[str, object]]] = {}

    def _snapshot(self) -> None:
        self._format_check = {}
        self._param_check = {}
        for report_format in self.formats.predefined():
            self._format_check[report_format.uuid] = {
                name: getattr(report_format, name) for name in _FORMAT_FIELDS
            }
            self._param_check[report_format.id] = {
                param.name: {name: getattr(param, name) for name in _PARAM_FIELDS}
                for param in report_format.params
            }

    def reconcile_all(self, feed_dir: Path | None = None) -> FeedSyncResult:
        """Make the predefined formats match the feed directory."""
        feed_dir = Path(feed_dir) if feed_dir is not None else self.assets.predefined_dir
        result = FeedSyncResult()

        if not feed_dir.is_dir():
            logger.warning("Failed to open directory '%s'", feed_dir)
            raise FeedSyncError(f"feed directory {feed_dir} missing")

        with transaction(self.db):
            self._snapshot()
            try:
                for entry in sorted(feed_dir.iterdir()):
                    if not entry.is_dir():
                        continue
                    created, changed = self.check_report_format(entry.name, feed_dir)
                    if created:
                        result.created.append(entry.name)
                    elif changed:
                        result.updated.append(entry.name)
                    else:
                        result.unchanged.append(entry.name)

                for uuid in list(self._format_check):
                    report_format = self.formats.get(uuid)
                    if report_format is None:
                        continue
                    if self.alerts.any_in_use(uuid):
                        logger.warning(
                            "Removing old report format %s (%s) which is in use by an alert. "
                            "Alert will fallback to TXT report format (%s), if TXT exists.",
                            report_format.name,
                            uuid,
                            TXT_REPORT_FORMAT_ID,
                        )
                    self.formats.delete(report_format)
                    result.removed.append(uuid)
            finally:
                self._format_check = {}
                self._param_check = {}

        logger.info(
            "Feed sync: %d created, %d updated, %d unchanged, %d removed",
            len(result.created),
            len(result.updated),
            len(result.unchanged),
            len(result.removed),
        )
        return result

    def check_report_format(self, uuid: str, feed_dir: Path | None = None) -> Tuple[bool, bool]:
        """
        Create or update one predefined format from its manifest.

        Returns (created, changed). Must run inside a reconcile pass.
        """
        feed_dir = feed_dir or self.assets.predefined_dir
        manifest = parse_manifest(uuid, feed_dir / uuid / MANIFEST_FILE)

        now = datetime.utcnow()
        report_format = self.formats.get(uuid)
        created = report_format is None
        changed = False

        if created:
            report_format = models.ReportFormat(
                uuid=uuid,
                owner=None,
                creation_time=now,
                modification_time=now,
            )
            self.db.add(report_format)

        report_format.owner = None
        report_format.name = manifest.name
        report_format.summary = manifest.summary
        report_format.description = manifest.description
        report_format.extension = manifest.extension
        report_format.content_type = manifest.content_type
        report_format.signature = ""
        report_format.trust = TrustState.YES.value
        report_format.flags = REPORT_FORMAT_FLAG_ACTIVE
        report_format.predefined = True
        self.db.flush()

        previous = self._format_check.get(uuid)
        if previous is not None and any(
            getattr(report_format, name) != value for name, value in previous.items()
        ):
            changed = True

        self.refs.grant_roles(uuid, "get_report_formats", FEED_READER_ROLES)

        if self._add_params(report_format, manifest):
            changed = True

        if previous is None or changed:
            report_format.trust_time = now
        if changed and not created:
            report_format.modification_time = now
        self._format_check.pop(uuid, None)
        self.db.flush()
        return created, changed

    def _add_params(self, report_format: models.ReportFormat, manifest: FeedManifest) -> bool:
        changed = False
        previous_params = self._param_check.get(report_format.id, {})

        for declared in manifest.params:
            param = self.params.get(report_format, declared.name)
            if param is not None:
                param.type = int(declared.type)
                param.value = declared.value
                param.type_min = declared.type_min
                param.type_max = declared.type_max
                param.type_regex = ""
                param.fallback = declared.fallback
                previous = previous_params.get(declared.name)
                if previous is not None and any(
                    getattr(param, name) != value for name, value in previous.items()
                ):
                    changed = True
                self.params.replace_options(param, declared.options or [])
            else:
                self.params.add(
                    report_format,
                    name=declared.name,
                    type=int(declared.type),
                    value=declared.value,
                    type_min=declared.type_min,
                    type_max=declared.type_max,
                    fallback=declared.fallback,
                    options=declared.options or [],
                )
                changed = True
            previous_params.pop(declared.name, None)

        # Params the manifest no longer declares.
        for name in list(previous_params):
            param = self.params.get(report_format, name)
            if param is not None:
                self.params.delete(param)
                changed = True
        self._param_check.pop(report_format.id, None)
        return changed
