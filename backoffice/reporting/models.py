from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.core.database import Base
from backoffice.crm.models import utcnow


class SharingState(StrEnum):
    PRIVATE = "private"
    SHARED = "shared"
    PUBLIC = "public"
    REVOKED = "revoked"


# Forward-only; revoked may re-enter shared or private.
SHARING_TRANSITIONS: dict[SharingState, frozenset[SharingState]] = {
    SharingState.PRIVATE: frozenset({SharingState.SHARED, SharingState.PUBLIC}),
    SharingState.SHARED: frozenset({SharingState.SHARED, SharingState.PUBLIC, SharingState.REVOKED}),
    SharingState.PUBLIC: frozenset({SharingState.PUBLIC, SharingState.REVOKED}),
    SharingState.REVOKED: frozenset({SharingState.SHARED, SharingState.PRIVATE}),
}


class GranteeType(StrEnum):
    USER = "user"
    ROLE = "role"


class SavedReport(Base):
    __tablename__ = "saved_reports"
    __table_args__ = (
        Index("ix_saved_reports_owner_user_id", "owner_user_id"),
        Index("ix_saved_reports_entity", "entity"),
        Index("ix_saved_reports_deleted_at", "deleted_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    entity: Mapped[str] = mapped_column(String(64), nullable=False)
    definition: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    sharing_state: Mapped[str] = mapped_column(String(16), nullable=False, default=SharingState.PRIVATE.value)
    public_token: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    public_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    shares: Mapped[list[SavedReportShare]] = relationship(
        back_populates="report",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="SavedReportShare.created_at",
    )


class SavedReportShare(Base):
    __tablename__ = "saved_report_shares"
    __table_args__ = (
        UniqueConstraint("saved_report_id", "grantee_type", "grantee_id", name="uq_saved_report_shares_grantee"),
        Index("ix_saved_report_shares_grantee", "grantee_type", "grantee_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    saved_report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("saved_reports.id", ondelete="CASCADE"),
        nullable=False,
    )
    grantee_type: Mapped[str] = mapped_column(String(16), nullable=False)
    grantee_id: Mapped[str] = mapped_column(String(128), nullable=False)
    can_edit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    report: Mapped[SavedReport] = relationship(back_populates="shares")


class ScheduleFrequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduledRunStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ScheduledReport(Base):
    __tablename__ = "scheduled_reports"
    __table_args__ = (
        Index("ix_scheduled_reports_owner_user_id", "owner_user_id"),
        Index("ix_scheduled_reports_due", "is_active", "next_run_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    saved_report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("saved_reports.id", ondelete="CASCADE"),
        nullable=False,
    )
    owner_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    owner_roles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    data_scope: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    recipients: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    format: Mapped[str] = mapped_column(String(8), nullable=False, default="csv")
    frequency: Mapped[str] = mapped_column(String(16), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    hour: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    minute: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    runs: Mapped[list[ScheduledReportRun]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="ScheduledReportRun.started_at",
    )


class ScheduledReportRun(Base):
    __tablename__ = "scheduled_report_runs"
    __table_args__ = (Index("ix_scheduled_report_runs_schedule", "scheduled_report_id", "started_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    scheduled_report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("scheduled_reports.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ScheduledRunStatus.RUNNING.value)
    trigger: Mapped[str] = mapped_column(String(16), nullable=False, default="schedule")
    recipients: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    rows_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_format: Mapped[str | None] = mapped_column(String(8), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    schedule: Mapped[ScheduledReport] = relationship(back_populates="runs")


class CustomReportTemplate(Base):
    __tablename__ = "report_templates"
    __table_args__ = (Index("ix_report_templates_category", "category"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    entity: Mapped[str] = mapped_column(String(64), nullable=False)
    definition: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    parameters: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
