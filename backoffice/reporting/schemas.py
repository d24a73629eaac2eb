from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class FilterClauseIn(BaseModel):
    field: str = Field(min_length=1)
    operator: str = Field(min_length=1)
    value: Any = None


class SortIn(BaseModel):
    field: str = Field(min_length=1)
    direction: str = "asc"


class AggregationIn(BaseModel):
    field: str = Field(min_length=1)
    function: str = Field(min_length=1)
    alias: str | None = None


class ReportDefinitionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(default=None, max_length=255)
    entity: str | None = None
    fields: list[str] = Field(default_factory=list)
    filters: list[FilterClauseIn] = Field(default_factory=list)
    group_by: list[str] = Field(default_factory=list, alias="groupBy")
    aggregations: list[AggregationIn] = Field(default_factory=list)
    sort: list[SortIn] = Field(default_factory=list)
    limit: int | None = None
    offset: int | None = None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExportRequest(BaseModel):
    definition: ReportDefinitionIn
    format: str | None = None


class ReportColumnRead(BaseModel):
    key: str
    label: str
    type: str
    aggregate: str | None = None


class ReportResultRead(BaseModel):
    data: list[dict[str, Any]]
    total: int
    columns: list[ReportColumnRead]
    limit: int
    offset: int
    generated_at: datetime


class FieldDefinitionRead(BaseModel):
    id: str
    label: str
    type: str
    entity: str
    filterable: bool
    sortable: bool
    aggregatable: bool
    options: list[str] | None = None
    masked: bool = False


class EntityRead(BaseModel):
    name: str
    label: str
    field_count: int


class ShareGrantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    grantee_type: Literal["user", "role"]
    grantee_id: str
    can_edit: bool
    expires_at: datetime | None
    created_at: datetime


class SavedReportCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    definition: ReportDefinitionIn


class SavedReportUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    definition: ReportDefinitionIn | None = None


class SavedReportRead(BaseModel):
    id: UUID
    owner_user_id: str
    name: str
    description: str | None
    entity: str
    definition: dict[str, Any]
    is_public: bool
    sharing_state: str
    public_token: str | None = None
    public_token_expires_at: datetime | None = None
    shares: list[ShareGrantRead] = Field(default_factory=list)
    can_edit: bool = False
    created_at: datetime
    updated_at: datetime


class ShareRequest(BaseModel):
    user_ids: list[str] = Field(default_factory=list)
    role_names: list[str] = Field(default_factory=list)
    can_edit: bool = False
    expires_at: datetime | None = None


class UnshareRequest(BaseModel):
    user_ids: list[str] = Field(default_factory=list)
    role_names: list[str] = Field(default_factory=list)


class PublicLinkRequest(BaseModel):
    expires_in_days: int | None = Field(default=None, ge=1, le=365)


class PublicLinkRead(BaseModel):
    token: str
    path: str
    expires_at: datetime | None


class PublicReportRead(BaseModel):
    id: UUID
    name: str
    description: str | None
    entity: str
    definition: dict[str, Any]


class SavedReportRunRequest(BaseModel):
    limit: int | None = None
    offset: int | None = None


class TemplateParameterRead(BaseModel):
    name: str
    label: str
    type: str
    required: bool
    default: Any = None
    description: str | None = None


class ReportTemplateRead(BaseModel):
    id: str
    name: str
    description: str
    category: str
    tags: list[str]
    entity: str
    definition: dict[str, Any]
    parameters: list[TemplateParameterRead]
    is_system: bool = True
    created_by: str | None = None


class TemplateInstantiateRequest(BaseModel):
    parameters: dict[str, Any] = Field(default_factory=dict)


class TemplateParameterIn(BaseModel):
    name: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    label: str = Field(min_length=1, max_length=255)
    type: Literal["string", "number", "date", "boolean", "enum"] = "string"
    required: bool = False
    default: Any = None
    description: str | None = None


class ReportTemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    category: str = Field(min_length=1, max_length=64)
    tags: list[str] = Field(default_factory=list)
    definition: ReportDefinitionIn
    parameters: list[TemplateParameterIn] = Field(default_factory=list)


class AuditRead(BaseModel):
    id: str
    actor_user_id: str
    entity_type: str
    entity_id: str
    action: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    correlation_id: str | None
    occurred_at: str


ScheduleFrequencyIn = Literal["daily", "weekly", "monthly"]
ScheduleFormatIn = Literal["csv", "xlsx"]


class ScheduledReportCreate(BaseModel):
    saved_report_id: UUID
    name: str | None = Field(default=None, min_length=1, max_length=255)
    recipients: list[EmailStr] = Field(default_factory=list, max_length=50)
    format: ScheduleFormatIn = "csv"
    frequency: ScheduleFrequencyIn
    timezone: str = Field(default="UTC", min_length=1, max_length=64)
    hour: int = Field(default=9, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    day_of_month: int | None = Field(default=None, ge=1, le=28)
    is_active: bool = True


class ScheduledReportUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    recipients: list[EmailStr] | None = Field(default=None, max_length=50)
    format: ScheduleFormatIn | None = None
    frequency: ScheduleFrequencyIn | None = None
    timezone: str | None = Field(default=None, min_length=1, max_length=64)
    hour: int | None = Field(default=None, ge=0, le=23)
    minute: int | None = Field(default=None, ge=0, le=59)
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    day_of_month: int | None = Field(default=None, ge=1, le=28)
    is_active: bool | None = None


class ScheduledReportToggle(BaseModel):
    is_active: bool | None = None


class ScheduledReportRead(BaseModel):
    id: UUID
    saved_report_id: UUID
    owner_user_id: str
    name: str
    recipients: list[str]
    format: str
    frequency: str
    timezone: str
    hour: int
    minute: int
    day_of_week: int | None
    day_of_month: int | None
    is_active: bool
    next_run_at: datetime
    last_run_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


class ScheduledReportRunRead(BaseModel):
    id: UUID
    scheduled_report_id: UUID
    status: str
    trigger: str
    recipients: list[str]
    rows_count: int | None
    file_format: str | None
    file_name: str | None
    error_message: str | None
    metadata: dict[str, Any]
    started_at: datetime
    completed_at: datetime | None


class ScheduleProcessRead(BaseModel):
    claimed: int
    succeeded: int
    failed: int
