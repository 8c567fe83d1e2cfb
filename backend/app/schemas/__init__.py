# backend/app/schemas/__init__.py
from __future__ import annotations

"""
Pydantic schemas for request/response models.

This module is the API contract layer and depends on:
- app.models.TrustState

It is used by:
- API routes
- Celery tasks that return structured results
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from app.models import TrustState


# ---------- Import Schemas ----------


class ReportFormatFile(BaseModel):
    name: str
    # base64; content that does not decode is stored as literal text
    content: str = ""


class ReportFormatParamCreate(BaseModel):
    name: str
    type: Optional[str] = None
    value: str = ""
    default: Optional[str] = None
    min: Optional[str] = None
    max: Optional[str] = None
    options: List[str] = Field(default_factory=list)


class ReportFormatImport(BaseModel):
    """
    A report format bundle as exported by another installation or a feed.

    `id` is the format's feed identity. When a format with that id already
    exists the import gets a fresh id and shares the original signature.
    """

    id: str
    name: str
    content_type: str = ""
    extension: str = ""
    summary: str = ""
    description: str = ""
    # Owner-less format, visible to everyone; admin only
    global_: bool = Field(default=False, alias="global")
    files: List[ReportFormatFile] = Field(default_factory=list)
    params: List[ReportFormatParamCreate] = Field(default_factory=list)
    signature: Optional[str] = None

    model_config = {"populate_by_name": True}


class ReportFormatCopy(BaseModel):
    source_id: str
    name: Optional[str] = None


class ReportFormatModify(BaseModel):
    name: Optional[str] = None
    summary: Optional[str] = None
    active: Optional[bool] = None
    param_name: Optional[str] = None
    # base64 encoded, like the import file contents
    param_value: Optional[str] = None
    predefined: Optional[str] = None

    @model_validator(mode="after")
    def ensure_param_pair(self) -> "ReportFormatModify":
        if self.param_value is not None and not self.param_name:
            raise ValueError("param_value requires param_name")
        return self


# ---------- Read Schemas ----------


class ReportFormatOptionRead(BaseModel):
    value: Optional[str]

    class Config:
        from_attributes = True


class ReportFormatParamRead(BaseModel):
    name: str
    type: int
    value: str
    fallback: str
    type_min: int
    type_max: int
    options: List[ReportFormatOptionRead] = Field(default_factory=list)

    class Config:
        from_attributes = True


class ReportFormatRead(BaseModel):
    uuid: str
    owner: Optional[str]
    name: str
    summary: str
    description: str
    extension: str
    content_type: str
    trust: TrustState
    trust_time: Optional[datetime]
    active: bool
    predefined: bool
    creation_time: datetime
    modification_time: datetime

    class Config:
        from_attributes = True


class ReportFormatDetail(ReportFormatRead):
    params: List[ReportFormatParamRead] = Field(default_factory=list)


class ReportFormatTrashRead(ReportFormatRead):
    original_uuid: str


class AlertRef(BaseModel):
    uuid: str
    name: str
    owner: Optional[str]

    class Config:
        from_attributes = True


class VerifyResponse(BaseModel):
    format_id: str
    execution_mode: str
    trust: Optional[TrustState] = None
    task_id: Optional[str] = None


class EmptyTrashResponse(BaseModel):
    removed: int


# ---------- Generation Schemas ----------


class ApplyRequest(BaseModel):
    """Render a report: `xml_start` is the report XML up to its closing part."""

    xml_start: str


# ---------- Feed Schemas ----------


class FeedSyncRead(BaseModel):
    created: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)

    class Config:
        from_attributes = True
