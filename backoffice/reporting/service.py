from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.metrics import observe_report_export_rejected, observe_report_query, observe_report_run
from backoffice.otel import mark_span_error, report_span
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.policies import FieldDecision, ResourceAction
from backoffice.platform.security.scope import record_scope_restriction
from backoffice.reporting.catalog import FieldCatalog
from backoffice.reporting.errors import ExportTooLargeError, ReportError, ReportExecutionError
from backoffice.reporting.formatter import (
    EXPORT_FORMATS,
    ExportArtifact,
    OutputFormat,
    ResultFormatter,
    parse_format,
    report_columns,
)
from backoffice.reporting.query import BuiltQuery, QueryBuilder
from backoffice.reporting.repository import ReportRepository
from backoffice.reporting.schemas import (
    EntityRead,
    FieldDefinitionRead,
    ReportColumnRead,
    ReportDefinitionIn,
    ReportResultRead,
)
from backoffice.reporting.scope import CombinedFilter, merge
from backoffice.reporting.validator import ReportDefinitionValidator, ValidatedReportDefinition


logger = logging.getLogger("backoffice.reports")


@dataclass(slots=True)
class _QueryResult:
    rows: list[dict[str, Any]]
    total: int
    built: BuiltQuery
    combined: CombinedFilter
    duration: float


@dataclass(slots=True)
class ReportService:
    """Runs ad-hoc report definitions for an authorized caller.

    One count query and one page query are issued per request. The caller's data scope is
    always merged into the WHERE clause before the statement is built.
    """

    catalog: FieldCatalog
    validator: ReportDefinitionValidator
    builder: QueryBuilder
    formatter: ResultFormatter
    repository: ReportRepository
    max_limit: int = 1000
    export_max_rows: int = 10000
    statement_timeout_ms: int = 15000

    def list_entities(self, ctx: AuthContext) -> list[EntityRead]:
        return [
            EntityRead(name=entity.name, label=entity.label, field_count=len(entity.fields))
            for entity in self.catalog.entities()
            if self.repository.policy.is_resource_allowed(self.repository.resource_name(entity.name), ResourceAction.READ, ctx)
        ]

    def list_fields(self, ctx: AuthContext, entity_name: str) -> list[FieldDefinitionRead]:
        entity = self.catalog.get_entity(entity_name)
        self.repository.require_action(ctx, ResourceAction.READ, suffix=entity.name)
        decisions = self.repository.field_decisions([item.id for item in entity.fields], ctx, suffix=entity.name)

        fields: list[FieldDefinitionRead] = []
        for item in entity.fields:
            decision = decisions.get(item.id, FieldDecision.ALLOW)
            if decision == FieldDecision.DENY:
                continue
            fields.append(FieldDefinitionRead(**item.as_public(), masked=decision == FieldDecision.MASK))
        return fields

    def validate_definition(
        self,
        ctx: AuthContext,
        definition: ReportDefinitionIn,
        *,
        action: ResourceAction = ResourceAction.READ,
    ) -> tuple[ValidatedReportDefinition, dict[str, FieldDecision]]:
        access: dict[str, FieldDecision] = {}
        if definition.entity:
            entity = self.catalog.get_entity(definition.entity)
            self.repository.require_action(ctx, ResourceAction.READ, suffix=entity.name)
            if action != ResourceAction.READ:
                self.repository.require_action(ctx, action, suffix=entity.name)
            access = self.repository.field_decisions([item.id for item in entity.fields], ctx, suffix=entity.name)
        validated = self.validator.validate(definition, field_access=access)
        return validated, access

    def generate(self, session: Session, ctx: AuthContext, definition: ReportDefinitionIn) -> ReportResultRead:
        validated, access = self.validate_definition(ctx, definition)
        entity = validated.entity.name
        output_format = OutputFormat.JSON.value

        result = self._run(session, ctx, validated, output_format=output_format, limit_ceiling=self.max_limit)
        columns = report_columns(validated, result.built.plan)
        rows = self._secure_rows(ctx, validated, access, result.rows)
        payload = self.formatter.to_payload(rows, columns, total=result.total)

        observe_report_run(entity, output_format, "success")
        logger.info(
            "report.generated",
            extra={
                "entity": entity,
                "format": output_format,
                "row_count": len(rows),
                "total": result.total,
                "limit": result.built.limit,
                "offset": result.built.offset,
                "scoped": result.combined.is_scoped,
                "duration_ms": round(result.duration * 1000, 2),
                "user_id": ctx.user_id,
            },
        )
        return ReportResultRead(
            data=payload["data"],
            total=payload["total"],
            columns=[ReportColumnRead(**item) for item in payload["columns"]],
            limit=result.built.limit,
            offset=result.built.offset,
            generated_at=datetime.now(timezone.utc),
        )

    def export(
        self,
        session: Session,
        ctx: AuthContext,
        definition: ReportDefinitionIn,
        requested_format: str | None,
    ) -> ExportArtifact:
        output_format = parse_format(requested_format, allowed=EXPORT_FORMATS)
        validated, access = self.validate_definition(ctx, definition, action=ResourceAction.EXPORT)
        entity = validated.entity.name

        result = self._run(
            session,
            ctx,
            validated,
            output_format=output_format,
            limit_ceiling=self.export_max_rows,
            check_export_size=True,
        )
        columns = report_columns(validated, result.built.plan)
        rows = self._secure_rows(ctx, validated, access, result.rows)
        artifact = self.formatter.export(rows, columns, output_format, name=validated.name or validated.entity.label)

        observe_report_run(entity, output_format, "success")
        logger.info(
            "report.exported",
            extra={
                "entity": entity,
                "format": output_format,
                "row_count": artifact.row_count,
                "total": result.total,
                "scoped": result.combined.is_scoped,
                "duration_ms": round(result.duration * 1000, 2),
                "user_id": ctx.user_id,
            },
        )
        return artifact

    def _run(
        self,
        session: Session,
        ctx: AuthContext,
        validated: ValidatedReportDefinition,
        *,
        output_format: str,
        limit_ceiling: int,
        check_export_size: bool = False,
    ) -> _QueryResult:
        entity = validated.entity.name
        combined = merge(ctx.data_scope, validated.filters, entity=validated.entity)
        for restriction in combined.restrictions:
            record_scope_restriction(
                entity=entity,
                dimension=restriction.dimension.value,
                ctx=ctx,
                matches_nothing=restriction.matches_nothing,
            )

        dialect = session.get_bind().dialect
        built = self.builder.build(validated, combined, limit_ceiling=limit_ceiling, dialect=dialect)

        with report_span(
            "report.query",
            **{
                "report.entity": entity,
                "report.format": output_format,
                "report.scoped": combined.is_scoped,
                "report.grouped": validated.grouped,
                "report.limit": built.limit,
                "report.offset": built.offset,
            },
        ) as span:
            started = perf_counter()
            try:
                self._apply_statement_timeout(session)
                total = int(session.execute(built.count_statement).scalar_one())
                if check_export_size:
                    self._ensure_export_size(entity, validated, built, total)
                rows = [dict(row) for row in session.execute(built.statement).mappings().all()]
            except ReportError as exc:
                mark_span_error(span, exc.code)
                observe_report_run(entity, output_format, "rejected")
                raise
            except SQLAlchemyError as exc:
                mark_span_error(span, ReportExecutionError.code)
                observe_report_run(entity, output_format, "failed")
                logger.error(
                    "report.query_failed",
                    extra={
                        "entity": entity,
                        "format": output_format,
                        "error_code": ReportExecutionError.code,
                        "error": str(exc)[:500],
                        "user_id": ctx.user_id,
                    },
                )
                raise ReportExecutionError() from exc
            duration = perf_counter() - started
            span.set_attribute("report.row_count", len(rows))
            span.set_attribute("report.total", total)

        observe_report_query(entity, duration, output_format, len(rows))
        return _QueryResult(rows=rows, total=total, built=built, combined=combined, duration=duration)

    def _ensure_export_size(
        self,
        entity: str,
        validated: ValidatedReportDefinition,
        built: BuiltQuery,
        total: int,
    ) -> None:
        remaining = max(0, total - built.offset)
        requested = remaining if validated.limit is None else min(validated.limit, remaining)
        try:
            self.formatter.ensure_exportable(requested)
        except ExportTooLargeError:
            observe_report_export_rejected(entity, "too_large")
            raise

    def _apply_statement_timeout(self, session: Session) -> None:
        if self.statement_timeout_ms <= 0 or session.get_bind().dialect.name != "postgresql":
            return
        session.execute(select(func.set_config("statement_timeout", str(self.statement_timeout_ms), True)))

    def _secure_rows(
        self,
        ctx: AuthContext,
        validated: ValidatedReportDefinition,
        access: dict[str, FieldDecision],
        rows: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        decisions = {item.id: access[item.id] for item in validated.fields if item.id in access}
        return self.repository.apply_read_security_many(rows, ctx, decisions, suffix=validated.entity.name)
