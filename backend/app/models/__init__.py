# backend/app/models/__init__.py
from __future__ import annotations

"""
Core ORM models for the report format manager.

This module depends on:
- app.db.session.Base for the declarative base

It is used by:
- app.schemas (for type references)
- API routes (for querying)
- the report format services (registry, trust, feed sync, pipeline)

Models:
- ReportFormat / ReportFormatTrash: format records, active and trashed
- ReportFormatParam / ReportFormatParamTrash: declared parameters
- ReportFormatParamOption / ReportFormatParamOptionTrash: selection options
- Alert / AlertMethodData (+ trash): alert configuration referencing formats
- Permission, Tag: resource references that follow a format into the trash
- SchemaMigration: one-time startup migrations that have been applied
"""

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.db.session import Base


class TrustState(int, enum.Enum):
    YES = 1
    NO = 2
    UNKNOWN = 3


# flags bit for an active report format
REPORT_FORMAT_FLAG_ACTIVE = 1

# resource_location values for permissions and tags
LOCATION_TABLE = "table"
LOCATION_TRASH = "trash"


class _ReportFormatColumns:
    """Columns shared by the active and the trash report format tables."""

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(64), nullable=False, index=True)
    owner = Column(String, nullable=True, index=True)  # None => global / predefined
    name = Column(String, nullable=False)
    summary = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    extension = Column(String, nullable=False, default="")
    content_type = Column(String, nullable=False, default="")
    signature = Column(Text, nullable=False, default="")
    trust = Column(Integer, nullable=False, default=TrustState.UNKNOWN.value)
    trust_time = Column(DateTime, nullable=True)
    flags = Column(Integer, nullable=False, default=0)
    predefined = Column(Boolean, nullable=False, default=False)
    creation_time = Column(DateTime, default=datetime.utcnow, nullable=False)
    modification_time = Column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def active(self) -> bool:
        return bool((self.flags or 0) & REPORT_FORMAT_FLAG_ACTIVE)

    @property
    def trust_state(self) -> TrustState:
        return TrustState(self.trust)


class _ParamColumns:
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    type = Column(Integer, nullable=False)
    value = Column(Text, nullable=False, default="")
    type_min = Column(BigInteger, nullable=False)
    type_max = Column(BigInteger, nullable=False)
    type_regex = Column(String, nullable=False, default="")
    fallback = Column(Text, nullable=False, default="")


class ReportFormat(_ReportFormatColumns, Base):
    __tablename__ = "report_formats"

    params = relationship(
        "ReportFormatParam",
        back_populates="report_format",
        cascade="all, delete-orphan",
        order_by="ReportFormatParam.id",
    )


class ReportFormatTrash(_ReportFormatColumns, Base):
    """
    A trashed report format.

    `uuid` is minted afresh on every trash insertion so repeated deletes of
    the same feed format never collide; `original_uuid` is the id the format
    had (and gets back on restore) in the active table.
    """

    __tablename__ = "report_formats_trash"

    original_uuid = Column(String(64), nullable=False, index=True)

    params = relationship(
        "ReportFormatParamTrash",
        back_populates="report_format",
        cascade="all, delete-orphan",
        order_by="ReportFormatParamTrash.id",
    )


class ReportFormatParam(_ParamColumns, Base):
    __tablename__ = "report_format_params"

    report_format_id = Column(
        Integer, ForeignKey("report_formats.id", ondelete="CASCADE"), nullable=False
    )

    report_format = relationship("ReportFormat", back_populates="params")
    options = relationship(
        "ReportFormatParamOption",
        back_populates="param",
        cascade="all, delete-orphan",
        order_by="ReportFormatParamOption.id",
    )


class ReportFormatParamTrash(_ParamColumns, Base):
    __tablename__ = "report_format_params_trash"

    report_format_id = Column(
        Integer, ForeignKey("report_formats_trash.id", ondelete="CASCADE"), nullable=False
    )

    report_format = relationship("ReportFormatTrash", back_populates="params")
    options = relationship(
        "ReportFormatParamOptionTrash",
        back_populates="param",
        cascade="all, delete-orphan",
        order_by="ReportFormatParamOptionTrash.id",
    )


class ReportFormatParamOption(Base):
    __tablename__ = "report_format_param_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    param_id = Column(
        Integer, ForeignKey("report_format_params.id", ondelete="CASCADE"), nullable=False
    )
    value = Column(Text, nullable=False)

    param = relationship("ReportFormatParam", back_populates="options")


class ReportFormatParamOptionTrash(Base):
    __tablename__ = "report_format_param_options_trash"

    id = Column(Integer, primary_key=True, autoincrement=True)
    param_id = Column(
        Integer, ForeignKey("report_format_params_trash.id", ondelete="CASCADE"), nullable=False
    )
    value = Column(Text, nullable=False)

    param = relationship("ReportFormatParamTrash", back_populates="options")


class Alert(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    owner = Column(String, nullable=True)

    method_data = relationship(
        "AlertMethodData",
        back_populates="alert",
        cascade="all, delete-orphan",
    )


class AlertMethodData(Base):
    """Name/value configuration of an alert's delivery method."""

    __tablename__ = "alert_method_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(Integer, ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    data = Column(Text, nullable=True)

    alert = relationship("Alert", back_populates="method_data")


class AlertTrash(Base):
    __tablename__ = "alerts_trash"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    owner = Column(String, nullable=True)

    method_data = relationship(
        "AlertMethodDataTrash",
        back_populates="alert",
        cascade="all, delete-orphan",
    )


class AlertMethodDataTrash(Base):
    __tablename__ = "alert_method_data_trash"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(
        Integer, ForeignKey("alerts_trash.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String, nullable=False)
    data = Column(Text, nullable=True)

    alert = relationship("AlertTrash", back_populates="method_data")


class Permission(Base):
    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    resource_type = Column(String, nullable=False)
    resource_uuid = Column(String(64), nullable=True, index=True)  # None => orphaned
    resource_location = Column(String, nullable=False, default=LOCATION_TABLE)
    subject_type = Column(String, nullable=False)  # "user" or "role"
    subject_id = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    value = Column(Text, nullable=True)
    resource_type = Column(String, nullable=False)
    resource_uuid = Column(String(64), nullable=False, index=True)
    resource_location = Column(String, nullable=False, default=LOCATION_TABLE)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    applied_at = Column(DateTime, default=datetime.utcnow, nullable=False)
