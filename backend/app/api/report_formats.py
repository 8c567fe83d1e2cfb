from __future__ import annotations

"""HTTP routes for report formats.

The caller is identified by the `X-User-Id` header, with a comma-separated
`X-User-Roles` header; requests without a user are rejected. Registry
failures come back as

    {"detail": {"code": <legacy result code>, "kind": "<error kind>", "message": "..."}}

with the status code derived from the error kind.
"""

import logging
import shutil
import tempfile
from pathlib import Path

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from app import schemas
from app.config import get_settings
from app.db.session import get_db
from app.services.report_formats import (
    ErrorKind,
    GenerationPipeline,
    NewParam,
    Principal,
    ReportFormatError,
    ReportFormatRegistry,
    RoleAccessOracle,
    run_startup_checks,
)
from app.services.report_formats.assets import decode_file_content
from app.services.report_formats.errors import FeedSyncError
from app.services.telemetry import log_report_format_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/report_formats", tags=["report_formats"])

_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.INTEGRITY_CONFLICT: 409,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.IO_FAILURE: 500,
    ErrorKind.TOOL_FAILURE: 500,
    ErrorKind.INTERNAL: 500,
}


def _http_error(exc: ReportFormatError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_BY_KIND.get(exc.kind, 500),
        detail={"code": exc.code, "kind": exc.kind.value, "message": str(exc)},
    )


def _record(principal: Principal, event_name: str, format_id: str, **kwargs) -> None:
    log_report_format_event(
        event_name, format_id, user_id=principal.user_id, roles=principal.roles, **kwargs
    )


def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Principal:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    roles = [role.strip() for role in (x_user_roles or "").split(",") if role.strip()]
    return Principal.user(x_user_id, roles)


def get_registry(db: Session = Depends(get_db)) -> ReportFormatRegistry:
    return ReportFormatRegistry(db, oracle=RoleAccessOracle())


def get_pipeline(db: Session = Depends(get_db)) -> GenerationPipeline:
    return GenerationPipeline(db, oracle=RoleAccessOracle())


# ---- Read ----


@router.get("", response_model=list[schemas.ReportFormatRead])
def list_report_formats(
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> list[schemas.ReportFormatRead]:
    return registry.list(principal)


@router.get("/trash", response_model=list[schemas.ReportFormatTrashRead])
def list_trash(
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> list[schemas.ReportFormatTrashRead]:
    return registry.list(principal, trash=True)


@router.get("/{format_id}", response_model=schemas.ReportFormatDetail)
def get_report_format(
    format_id: str,
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> schemas.ReportFormatDetail:
    report_format = registry.get(principal, format_id)
    if report_format is None:
        raise HTTPException(status_code=404, detail="Report format not found")
    return report_format


@router.get("/{format_id}/alerts", response_model=list[schemas.AlertRef])
def report_format_alerts(
    format_id: str,
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> list[schemas.AlertRef]:
    if registry.get(principal, format_id) is None:
        raise HTTPException(status_code=404, detail="Report format not found")
    return registry.alerts_for(principal, format_id)


# ---- Lifecycle ----


@router.post("", response_model=schemas.ReportFormatDetail)
def import_report_format(
    payload: schemas.ReportFormatImport,
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> schemas.ReportFormatDetail:
    try:
        report_format = registry.create(
            principal,
            uuid=payload.id,
            name=payload.name,
            content_type=payload.content_type,
            extension=payload.extension,
            summary=payload.summary,
            description=payload.description,
            global_=payload.global_,
            files=[(item.name, decode_file_content(item.content)) for item in payload.files],
            params=[
                NewParam(
                    name=param.name,
                    type=param.type,
                    value=param.value,
                    fallback=param.default,
                    type_min=param.min,
                    type_max=param.max,
                    options=list(param.options),
                )
                for param in payload.params
            ],
            signature=payload.signature,
        )
    except ReportFormatError as exc:
        raise _http_error(exc) from exc

    _record(principal, "report_format_created", report_format.uuid)
    return report_format


@router.post("/copy", response_model=schemas.ReportFormatDetail)
def copy_report_format(
    payload: schemas.ReportFormatCopy,
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> schemas.ReportFormatDetail:
    try:
        report_format = registry.copy(principal, payload.source_id, payload.name)
    except ReportFormatError as exc:
        raise _http_error(exc) from exc
    _record(principal, "report_format_copied", report_format.uuid, metadata={"source_id": payload.source_id})
    return report_format


@router.patch("/{format_id}", response_model=schemas.ReportFormatDetail)
def modify_report_format(
    format_id: str,
    payload: schemas.ReportFormatModify,
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> schemas.ReportFormatDetail:
    try:
        return registry.modify(
            principal,
            format_id,
            name=payload.name,
            summary=payload.summary,
            active=payload.active,
            param_name=payload.param_name,
            param_value=payload.param_value,
            predefined=payload.predefined,
        )
    except ReportFormatError as exc:
        raise _http_error(exc) from exc


@router.delete("/trash", response_model=schemas.EmptyTrashResponse)
def empty_trashcan(
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> schemas.EmptyTrashResponse:
    try:
        removed = registry.empty_trashcan(principal)
    except ReportFormatError as exc:
        raise _http_error(exc) from exc
    return schemas.EmptyTrashResponse(removed=removed)


@router.delete("/{format_id}")
def delete_report_format(
    format_id: str,
    ultimate: bool = Query(default=False),
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> dict:
    try:
        registry.delete(principal, format_id, ultimate=ultimate)
    except ReportFormatError as exc:
        raise _http_error(exc) from exc
    _record(principal, "report_format_deleted", format_id, metadata={"ultimate": ultimate})
    return {"id": format_id, "ultimate": ultimate}


@router.post("/trash/{trash_id}/restore", response_model=schemas.ReportFormatRead)
def restore_report_format(
    trash_id: str,
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> schemas.ReportFormatRead:
    try:
        return registry.restore(principal, trash_id)
    except ReportFormatError as exc:
        raise _http_error(exc) from exc


# ---- Trust ----


@router.post("/{format_id}/verify", response_model=schemas.VerifyResponse)
def verify_report_format(
    format_id: str,
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> schemas.VerifyResponse:
    """Refresh trust via Celery, or inline when no worker can be reached."""
    if registry.get(principal, format_id) is None:
        raise HTTPException(status_code=404, detail="Report format not found")

    try:
        from app.services.tasks import verify_report_format_task

        async_result = verify_report_format_task.delay(
            format_id, principal.user_id, sorted(principal.roles)
        )
        return schemas.VerifyResponse(
            format_id=format_id, execution_mode="celery", task_id=async_result.id
        )
    except Exception as exc:  # noqa: BLE001
        logger.info("Celery dispatch failed, verifying %s inline: %s", format_id, exc)

    try:
        trust = registry.trust.verify_report_format(principal, registry.oracle, format_id)
    except ReportFormatError as exc:
        raise _http_error(exc) from exc
    _record(principal, "report_format_verified", format_id, value=trust.name)
    return schemas.VerifyResponse(format_id=format_id, execution_mode="inline", trust=trust)


@router.post("/sync", response_model=schemas.FeedSyncRead)
def sync_report_formats(
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
) -> schemas.FeedSyncRead:
    """Run the integrity checks and the feed sync now; admin only."""
    if not registry.oracle.can_everything(principal):
        raise HTTPException(status_code=403, detail="Feed sync requires the Admin role")
    try:
        result = run_startup_checks(registry.db, registry.assets)
    except FeedSyncError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return result


# ---- Generation ----


@router.post("/{format_id}/apply")
def apply_report_format(
    format_id: str,
    payload: schemas.ApplyRequest,
    principal: Principal = Depends(get_principal),
    registry: ReportFormatRegistry = Depends(get_registry),
    pipeline: GenerationPipeline = Depends(get_pipeline),
) -> FileResponse:
    report_format = registry.get(principal, format_id)
    if report_format is None:
        raise HTTPException(status_code=404, detail="Report format not found")

    work_dir = Path(tempfile.mkdtemp(prefix="report_", dir=get_settings().scratch_dir))
    xml_start = work_dir / "report_start.xml"
    xml_start.write_text(payload.xml_start, encoding="utf-8")

    output = pipeline.apply(principal, format_id, xml_start, work_dir / "report.xml", work_dir)
    if output is None:
        shutil.rmtree(work_dir, ignore_errors=True)
        raise HTTPException(status_code=500, detail="Report format could not be applied")

    _record(principal, "report_format_applied", format_id)
    return FileResponse(
        output,
        media_type=report_format.content_type or "application/octet-stream",
        filename=Path(output).name,
        background=BackgroundTask(shutil.rmtree, work_dir, ignore_errors=True),
    )
