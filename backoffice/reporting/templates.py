from __future__ import annotations

import copy
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from sqlalchemy.orm import Session

from backoffice import audit
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError
from backoffice.platform.security.policies import ResourceAction
from backoffice.platform.security.scope import is_admin_bypass
from backoffice.reporting.errors import (
    ReportNotFoundError,
    ReportValidationError,
    UnsupportedOperationError,
    ValidationIssue,
)
from backoffice.reporting.models import CustomReportTemplate
from backoffice.reporting.repository import ReportTemplateRepository
from backoffice.reporting.schemas import (
    ReportDefinitionIn,
    ReportTemplateCreate,
    ReportTemplateRead,
    TemplateParameterRead,
)
from backoffice.reporting.service import ReportService


logger = logging.getLogger("backoffice.reports")

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
AUDIT_ENTITY_TYPE = "reports.templates"


@dataclass(frozen=True, slots=True)
class TemplateParameter:
    name: str
    label: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: str | None = None


@dataclass(frozen=True, slots=True)
class ReportTemplate:
    id: str
    name: str
    description: str
    category: str
    entity: str
    definition: Mapping[str, Any]
    parameters: tuple[TemplateParameter, ...] = ()
    tags: tuple[str, ...] = field(default_factory=tuple)
    is_system: bool = True
    created_by: str | None = None

    def as_read(self) -> ReportTemplateRead:
        return ReportTemplateRead(
            id=self.id,
            name=self.name,
            description=self.description,
            category=self.category,
            tags=list(self.tags),
            entity=self.entity,
            definition=copy.deepcopy(dict(self.definition)),
            parameters=[
                TemplateParameterRead(
                    name=item.name,
                    label=item.label,
                    type=item.type,
                    required=item.required,
                    default=item.default,
                    description=item.description,
                )
                for item in self.parameters
            ],
            is_system=self.is_system,
            created_by=self.created_by,
        )

    @classmethod
    def from_record(cls, record: CustomReportTemplate) -> ReportTemplate:
        return cls(
            id=str(record.id),
            name=record.name,
            description=record.description,
            category=record.category,
            entity=record.entity,
            definition=copy.deepcopy(record.definition),
            parameters=tuple(TemplateParameter(**item) for item in record.parameters),
            tags=tuple(record.tags),
            is_system=False,
            created_by=record.created_by,
        )


class TemplateRegistry:
    """Built-in report definitions with ``{{name}}`` placeholders in filter values."""

    def __init__(self, templates: Iterable[ReportTemplate]) -> None:
        registry: dict[str, ReportTemplate] = {}
        for template in templates:
            if template.id in registry:
                raise ValueError(f"duplicate report template '{template.id}'")
            registry[template.id] = template
        self._templates: Mapping[str, ReportTemplate] = MappingProxyType(registry)

    def list_templates(self, category: str | None = None) -> list[ReportTemplate]:
        return [
            template
            for template in self._templates.values()
            if category is None or template.category == category
        ]

    def find(self, template_id: str) -> ReportTemplate | None:
        return self._templates.get(template_id)

    def get_template(self, template_id: str) -> ReportTemplate:
        template = self.find(template_id)
        if template is None:
            raise ReportNotFoundError("Report template not found")
        return template

    def instantiate(self, template_id: str, parameters: Mapping[str, Any] | None = None) -> ReportDefinitionIn:
        return instantiate_template(self.get_template(template_id), parameters)


def instantiate_template(template: ReportTemplate, parameters: Mapping[str, Any] | None = None) -> ReportDefinitionIn:
    """Substitute parameter values into a template.

    A filter whose whole value is a placeholder for an unset optional parameter is
    left out of the resulting definition.
    """

    supplied = dict(parameters or {})
    declared = {item.name: item for item in template.parameters}

    issues: list[ValidationIssue] = []
    for name in supplied:
        if name not in declared:
            issues.append(ValidationIssue(name, "unknown_parameter", f"Unknown template parameter '{name}'"))

    values: dict[str, Any] = {}
    for item in template.parameters:
        value = supplied.get(item.name, item.default)
        if isinstance(value, str) and not value.strip():
            value = None
        if value is None and item.required:
            issues.append(ValidationIssue(item.name, "required", f"Parameter '{item.name}' is required"))
            continue
        values[item.name] = value
    if issues:
        raise ReportValidationError(issues)

    document = copy.deepcopy(dict(template.definition))
    filters: list[dict[str, Any]] = []
    for clause in document.get("filters", []):
        whole = _whole_placeholder(clause.get("value"))
        if whole is not None and values.get(whole) is None:
            continue
        clause["value"] = _substitute(clause.get("value"), values)
        filters.append(clause)
    document["filters"] = filters
    document.setdefault("name", template.name)
    return ReportDefinitionIn.model_validate(document)


def placeholders_in(value: Any) -> set[str]:
    if isinstance(value, list):
        return set().union(*(placeholders_in(item) for item in value)) if value else set()
    if not isinstance(value, str):
        return set()
    return set(_PLACEHOLDER_RE.findall(value))


@dataclass(slots=True)
class TemplateService:
    """System templates from the registry plus user-defined templates stored in the database.

    System templates are read-only. A custom template may be deleted by its creator or an
    administrator.
    """

    registry: TemplateRegistry
    repository: ReportTemplateRepository
    report_service: ReportService

    def list_templates(self, session: Session, category: str | None = None) -> list[ReportTemplate]:
        custom = [ReportTemplate.from_record(record) for record in self.repository.list_records(session, category)]
        return [*self.registry.list_templates(category), *custom]

    def get_template(self, session: Session, template_id: str) -> ReportTemplate:
        template = self.registry.find(template_id)
        if template is not None:
            return template
        record = self.repository.get_record(session, template_id)
        if record is None:
            raise ReportNotFoundError("Report template not found")
        return ReportTemplate.from_record(record)

    def instantiate(
        self,
        session: Session,
        ctx: AuthContext,
        template_id: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> ReportDefinitionIn:
        definition = instantiate_template(self.get_template(session, template_id), parameters)
        self.report_service.validate_definition(ctx, definition)
        return definition

    def create(self, session: Session, ctx: AuthContext, dto: ReportTemplateCreate) -> ReportTemplate:
        self.repository.require_action(ctx, ResourceAction.CREATE)
        definition = dto.definition.model_copy(deep=True)
        self._check_placeholders(definition, dto)

        concrete = definition.model_copy(deep=True)
        concrete.filters = [item for item in concrete.filters if not placeholders_in(item.value)]
        validated, _ = self.report_service.validate_definition(ctx, concrete)

        record = CustomReportTemplate(
            name=dto.name,
            description=dto.description,
            category=dto.category,
            tags=[tag.strip() for tag in dto.tags if tag.strip()],
            entity=validated.entity.name,
            definition=definition.to_document(),
            parameters=[item.model_dump() for item in dto.parameters],
            created_by=ctx.user_id,
        )
        session.add(record)
        session.flush()
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=AUDIT_ENTITY_TYPE,
            entity_id=str(record.id),
            action="report_template.created",
            before=None,
            after={"name": record.name, "entity": record.entity, "category": record.category},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        logger.info(
            "report_template.created",
            extra={"template_id": str(record.id), "entity": record.entity, "user_id": ctx.user_id},
        )
        return ReportTemplate.from_record(record)

    def delete(self, session: Session, ctx: AuthContext, template_id: str) -> None:
        self.repository.require_action(ctx, ResourceAction.DELETE)
        if self.registry.find(template_id) is not None:
            raise UnsupportedOperationError("System templates cannot be deleted", details={"template_id": template_id})
        record = self.repository.get_record(session, template_id)
        if record is None:
            raise ReportNotFoundError("Report template not found")
        if record.created_by != ctx.user_id and not is_admin_bypass(ctx):
            raise AuthorizationError("Only the creator can delete this report template")

        before = {"name": record.name, "entity": record.entity, "category": record.category}
        session.delete(record)
        session.flush()
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=AUDIT_ENTITY_TYPE,
            entity_id=template_id,
            action="report_template.deleted",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
        )
        session.commit()

    @staticmethod
    def _check_placeholders(definition: ReportDefinitionIn, dto: ReportTemplateCreate) -> None:
        declared: set[str] = set()
        issues: list[ValidationIssue] = []
        for item in dto.parameters:
            if item.name in declared:
                issues.append(ValidationIssue(item.name, "duplicate_parameter", f"Parameter '{item.name}' is declared twice"))
            declared.add(item.name)
        for clause in definition.filters:
            for name in sorted(placeholders_in(clause.value) - declared):
                issues.append(
                    ValidationIssue(clause.field, "undeclared_parameter", f"Placeholder '{{{{{name}}}}}' has no declared parameter")
                )
        if issues:
            raise ReportValidationError(issues)


def _whole_placeholder(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    match = _PLACEHOLDER_RE.fullmatch(value.strip())
    return match.group(1) if match else None


def _substitute(value: Any, values: Mapping[str, Any]) -> Any:
    if isinstance(value, list):
        return [_substitute(item, values) for item in value]
    if not isinstance(value, str):
        return value
    whole = _whole_placeholder(value)
    if whole is not None:
        return values.get(whole)
    return _PLACEHOLDER_RE.sub(lambda match: _render(values.get(match.group(1))), value)


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


_START_DATE = TemplateParameter("start_date", "Start Date", "date", required=True, description="First day included")
_END_DATE = TemplateParameter("end_date", "End Date", "date", description="Last day included; open-ended when empty")

SYSTEM_TEMPLATES: tuple[ReportTemplate, ...] = (
    ReportTemplate(
        id="monthly-donor-summary",
        name="Monthly Donor Summary",
        description="Completed donations per donor for a date range, largest givers first.",
        category="fundraising",
        entity="donations",
        tags=("donations", "donors", "monthly"),
        definition={
            "entity": "donations",
            "fields": ["donor_last_name", "donor_first_name", "amount"],
            "groupBy": ["donor_last_name", "donor_first_name"],
            "aggregations": [{"field": "id", "function": "count", "alias": "donation_count"}],
            "filters": [
                {"field": "donation_date", "operator": "gte", "value": "{{start_date}}"},
                {"field": "donation_date", "operator": "lte", "value": "{{end_date}}"},
                {"field": "payment_status", "operator": "eq", "value": "completed"},
            ],
            "sort": [{"field": "amount", "direction": "desc"}],
        },
        parameters=(_START_DATE, _END_DATE),
    ),
    ReportTemplate(
        id="event-schedule",
        name="Event Schedule",
        description="Upcoming events with type, status and capacity.",
        category="events",
        entity="events",
        tags=("events", "capacity"),
        definition={
            "entity": "events",
            "fields": ["name", "event_type", "status", "capacity", "start_date", "location_name"],
            "filters": [
                {"field": "start_date", "operator": "gte", "value": "{{start_date}}"},
                {"field": "status", "operator": "in", "value": "{{statuses}}"},
            ],
            "sort": [{"field": "start_date", "direction": "asc"}],
        },
        parameters=(
            _START_DATE,
            TemplateParameter("statuses", "Statuses", "enum", default="planned,active", description="Comma-separated"),
        ),
    ),
    ReportTemplate(
        id="volunteer-hours-summary",
        name="Volunteer Hours Summary",
        description="Volunteers ranked by logged hours.",
        category="volunteers",
        entity="volunteers",
        tags=("volunteers", "hours"),
        definition={
            "entity": "volunteers",
            "fields": ["last_name", "first_name", "volunteer_status", "total_hours"],
            "filters": [
                {"field": "volunteer_status", "operator": "eq", "value": "{{status}}"},
                {"field": "total_hours", "operator": "gte", "value": "{{min_hours}}"},
            ],
            "sort": [{"field": "total_hours", "direction": "desc"}],
        },
        parameters=(
            TemplateParameter("status", "Volunteer Status", "enum", default="active"),
            TemplateParameter("min_hours", "Minimum Hours", "number"),
        ),
    ),
    ReportTemplate(
        id="active-accounts-by-type",
        name="Active Accounts by Type",
        description="Count of active accounts per account type.",
        category="constituents",
        entity="accounts",
        tags=("accounts",),
        definition={
            "entity": "accounts",
            "fields": ["account_type"],
            "groupBy": ["account_type"],
            "aggregations": [{"field": "id", "function": "count", "alias": "account_count"}],
            "filters": [{"field": "is_active", "operator": "eq", "value": True}],
            "sort": [{"field": "account_count", "direction": "desc"}],
        },
    ),
    ReportTemplate(
        id="expenses-by-category",
        name="Expense Report by Category",
        description="Approved and paid expenses totalled per category for a date range.",
        category="finance",
        entity="expenses",
        tags=("expenses", "finance"),
        definition={
            "entity": "expenses",
            "fields": ["category", "amount"],
            "groupBy": ["category"],
            "aggregations": [{"field": "id", "function": "count", "alias": "expense_count"}],
            "filters": [
                {"field": "expense_date", "operator": "gte", "value": "{{start_date}}"},
                {"field": "expense_date", "operator": "lte", "value": "{{end_date}}"},
                {"field": "status", "operator": "in", "value": "{{statuses}}"},
            ],
            "sort": [{"field": "amount", "direction": "desc"}],
        },
        parameters=(
            _START_DATE,
            _END_DATE,
            TemplateParameter("statuses", "Statuses", "enum", default="approved,paid", description="Comma-separated"),
        ),
    ),
    ReportTemplate(
        id="grant-status-overview",
        name="Grant Status Overview",
        description="Grant count and awarded amount per status.",
        category="finance",
        entity="grants",
        tags=("grants", "finance"),
        definition={
            "entity": "grants",
            "fields": ["status", "amount"],
            "groupBy": ["status"],
            "aggregations": [{"field": "id", "function": "count", "alias": "grant_count"}],
            "filters": [{"field": "award_date", "operator": "gte", "value": "{{awarded_after}}"}],
            "sort": [{"field": "status", "direction": "asc"}],
        },
        parameters=(TemplateParameter("awarded_after", "Awarded After", "date"),),
    ),
)


def build_template_registry() -> TemplateRegistry:
    return TemplateRegistry(SYSTEM_TEMPLATES)
