from __future__ import annotations

"""backend/app/services/report_formats/pipeline.py

Apply a report format to a report.

Steps for one format:
- guard against dependency cycles (a format already on the stack is skipped)
- resolve the format; it must be readable by the principal and active
- render every report_format_list dependency into its own scratch
  directory, recursively; a dependency that fails is left out
- build the files manifest handed to the generator
- complete the report XML with the format's current param values
- run `generate <report xml> <files manifest>` from the bundle directory,
  stdout into a fresh output file in `xml_dir`

The generator's exit status is not checked; only a failure to start it
counts. Dependencies run one after another. No timeout is applied here,
callers that need one wrap `apply`.
"""

import logging
import os
import shutil
import stat
import tempfile
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List
from xml.sax.saxutils import escape

from sqlalchemy.orm import Session

from app import models
from app.config import get_settings
from app.services.diagnostics.error_classifier import classify_command_failure
from app.services.report_formats.assets import GENERATE_SCRIPT, AssetStore
from app.services.report_formats.context import AccessOracle, Principal, RoleAccessOracle
from app.services.report_formats.params import ParamType, split_report_format_list
from app.services.report_formats.repository import ReportFormatRepo
from app.services.tools.base import CommandRunnerProtocol, get_command_runner

logger = logging.getLogger(__name__)


def build_files_manifest(basedir: str | Path, outputs: Dict[str, Path], formats: Dict[str, models.ReportFormat]) -> str:
    """`<files><basedir>..</basedir><file id=..>path</file>...</files>`"""
    root = ET.Element("files")
    ET.SubElement(root, "basedir").text = str(basedir)
    for format_id, path in outputs.items():
        report_format = formats.get(format_id)
        element = ET.SubElement(root, "file", id=format_id)
        if report_format is not None:
            element.set("content_type", report_format.content_type or "")
            element.set("report_format_name", report_format.name or "")
        element.text = str(path)
    return ET.tostring(root, encoding="unicode")


def write_report_xml_end(xml_start: str | Path, xml_file: str | Path, report_format: models.ReportFormat) -> None:
    """Copy the report start to `xml_file` and close it with the format params."""
    shutil.copyfile(xml_start, xml_file)
    with open(xml_file, "a", encoding="utf-8") as out:
        out.write("<report_format>")
        for param in report_format.params:
            out.write(
                f"<param><name>{escape(param.name)}</name>"
                f"<value>{escape(param.value or '')}</value></param>"
            )
        out.write("</report_format>")
        out.write("</report>")


class GenerationPipeline:
    def __init__(
        self,
        db: Session,
        *,
        oracle: AccessOracle | None = None,
        assets: AssetStore | None = None,
        runner: CommandRunnerProtocol | None = None,
        scratch_dir: str | Path | None = None,
    ) -> None:
        self.db = db
        self.oracle = oracle or RoleAccessOracle()
        self.assets = assets or AssetStore.from_settings()
        self.runner = runner or get_command_runner()
        if scratch_dir is None:
            scratch_dir = get_settings().scratch_dir
        self.scratch_dir = str(scratch_dir) if scratch_dir is not None else None
        self.formats = ReportFormatRepo(db)

    def _find(self, principal: Principal, format_id: str) -> models.ReportFormat | None:
        report_format = self.formats.get(format_id)
        if report_format is None or not self.oracle.may_access(
            principal, "get_report_formats", report_format.owner
        ):
            logger.info("Report format '%s' not found", format_id)
            return None
        if not report_format.active:
            logger.info("Report format '%s' is not active", format_id)
            return None
        return report_format

    def _script_for(self, report_format: models.ReportFormat) -> Path | None:
        directory = self.assets.format_dir(
            report_format.uuid, report_format.owner, report_format.predefined
        )
        script = directory / GENERATE_SCRIPT
        try:
            info = script.stat()
        except OSError:
            logger.warning("Generate script %s missing", script)
            return None
        if not stat.S_ISREG(info.st_mode) or not os.access(script, os.X_OK):
            logger.warning("Generate script %s is not an executable file", script)
            return None
        return script

    def apply(
        self,
        principal: Principal,
        format_id: str,
        xml_start: str | Path,
        xml_file: str | Path,
        xml_dir: str | Path,
        stack: List[str] | None = None,
    ) -> str | None:
        """Generate the report for `format_id`; returns the output path or None.

        `stack` holds the formats currently being applied further up the
        recursion. The caller owns the returned file.
        """
        stack = stack if stack is not None else []
        if format_id in stack:
            logger.info("Recursion loop for report format '%s'", format_id)
            return None

        report_format = self._find(principal, format_id)
        if report_format is None:
            return None

        dependencies: List[str] = []
        for param in report_format.params:
            if param.type == ParamType.REPORT_FORMAT_LIST:
                for dependency in split_report_format_list(param.value):
                    if dependency not in dependencies:
                        dependencies.append(dependency)

        temp_dirs: List[str] = []
        outputs: Dict[str, Path] = {}
        dependency_formats: Dict[str, models.ReportFormat] = {}
        output_file: str | None = None
        try:
            if dependencies:
                stack.append(format_id)
                try:
                    for dependency in dependencies:
                        try:
                            subreport_dir = tempfile.mkdtemp(prefix="report_format_", dir=self.scratch_dir)
                        except OSError as exc:
                            logger.warning("mkdtemp failed: %s", exc)
                            break
                        temp_dirs.append(subreport_dir)
                        subreport = self.apply(
                            principal,
                            dependency,
                            xml_start,
                            os.path.join(subreport_dir, "report.xml"),
                            subreport_dir,
                            stack,
                        )
                        if subreport is None:
                            logger.info("Dependency '%s' of '%s' left out", dependency, format_id)
                            continue
                        outputs[dependency] = Path(subreport)
                        found = self.formats.get(dependency)
                        if found is not None:
                            dependency_formats[dependency] = found
                finally:
                    stack.remove(format_id)

            files_xml = build_files_manifest(xml_dir, outputs, dependency_formats)

            try:
                fd, output_file = tempfile.mkstemp(
                    prefix=f"{format_id}-", suffix=f".{report_format.extension}", dir=str(xml_dir)
                )
                os.close(fd)
            except OSError as exc:
                logger.warning("Failed to create output file in %s: %s", xml_dir, exc)
                return None

            try:
                write_report_xml_end(xml_start, xml_file, report_format)
            except OSError as exc:
                logger.warning("Failed to complete report XML %s: %s", xml_file, exc)
                self._discard(output_file)
                return None

            script = self._script_for(report_format)
            if script is None:
                self._discard(output_file)
                return None

            result = self.runner.run(
                [str(script), str(xml_file), files_xml],
                workdir=script.parent,
                stdout_path=output_file,
                handover_paths=[xml_dir, xml_file],
            )
            if not result.spawned:
                logger.warning(
                    "Generator for '%s' failed to run (%s): %s",
                    format_id,
                    classify_command_failure(GENERATE_SCRIPT, result),
                    result.error,
                )
                self._discard(output_file)
                return None
            if not result.success:
                # Exit status is not part of the generator contract.
                logger.debug(
                    "Generator for '%s' exited with %s (%s)",
                    format_id,
                    result.return_code,
                    classify_command_failure(GENERATE_SCRIPT, result),
                )
            return output_file
        finally:
            for directory in temp_dirs:
                shutil.rmtree(directory, ignore_errors=True)

    @staticmethod
    def _discard(path: str | None) -> None:
        if path is None:
            return
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
