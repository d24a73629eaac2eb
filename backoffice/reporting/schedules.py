from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from backoffice import audit
from backoffice.context import get_correlation_id
from backoffice.metrics import observe_scheduled_report_run
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError, MissingPermissionError
from backoffice.platform.security.policies import ResourceAction
from backoffice.platform.security.scope import DataScopeFilter, is_admin_bypass
from backoffice.reporting.errors import ReportError, ReportNotFoundError, ReportValidationError, ValidationIssue
from backoffice.reporting.models import ScheduledReport, ScheduledReportRun, ScheduledRunStatus, ScheduleFrequency
from backoffice.reporting.repository import ScheduledReportRepository
from backoffice.reporting.saved_reports import SavedReportService
from backoffice.reporting.schemas import (
    ScheduledReportCreate,
    ScheduledReportRead,
    ScheduledReportRunRead,
    ScheduledReportToggle,
    ScheduledReportUpdate,
    ScheduleProcessRead,
)


logger = logging.getLogger("backoffice.reports")

AUDIT_ENTITY_TYPE = "reports.scheduled"
DEFAULT_WEEKDAY = 1
DEFAULT_MONTH_DAY = 1
_SCHEDULE_FIELDS = ("frequency", "timezone", "hour", "minute", "day_of_week", "day_of_month", "is_active")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise ReportValidationError([ValidationIssue("timezone", "invalid", "Invalid timezone")]) from exc


def compute_next_run_at(
    *,
    frequency: str,
    tz_name: str,
    hour: int,
    minute: int,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    now: datetime | None = None,
) -> datetime:
    """Next wall-clock occurrence strictly after ``now`` in the schedule's timezone, as UTC.

    ``day_of_week`` counts from Sunday (0) to Saturday (6). ``day_of_month`` is clamped to
    1..28 so that every month has the day.
    """

    tz = resolve_timezone(tz_name)
    local_now = (now or utcnow()).astimezone(tz).replace(tzinfo=None)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if frequency == ScheduleFrequency.WEEKLY:
        target = DEFAULT_WEEKDAY if day_of_week is None else day_of_week
        current = (local_now.weekday() + 1) % 7
        candidate += timedelta(days=(target - current) % 7)
        if candidate <= local_now:
            candidate += timedelta(days=7)
    elif frequency == ScheduleFrequency.MONTHLY:
        day = max(1, min(28, DEFAULT_MONTH_DAY if day_of_month is None else day_of_month))
        candidate = candidate.replace(day=day)
        if candidate <= local_now:
            candidate = _add_month(candidate)
    else:
        if candidate <= local_now:
            candidate += timedelta(days=1)

    return candidate.replace(tzinfo=tz).astimezone(timezone.utc)


def _add_month(value: datetime) -> datetime:
    first = date(value.year + value.month // 12, value.month % 12 + 1, 1)
    return value.replace(year=first.year, month=first.month)


@dataclass(slots=True)
class ScheduledReportService:
    """Recurring exports of saved reports and their run history.

    Scheduled runs execute as the schedule owner with the roles and data scope captured
    when the schedule was last saved. A manual run uses the caller's context. Delivery of the
    produced file is not performed here; the run record carries the recipients.
    """

    saved_reports: SavedReportService
    repository: ScheduledReportRepository
    batch_size: int = 10
    stale_after_minutes: int = 15
    run_history_limit: int = 20

    def list_schedules(self, session: Session, ctx: AuthContext) -> list[ScheduledReportRead]:
        self.repository.require_action(ctx, ResourceAction.READ)
        schedules = self.repository.list_for_owner(session, None if is_admin_bypass(ctx) else ctx.user_id)
        return [self._to_read(item) for item in schedules]

    def get(self, session: Session, ctx: AuthContext, schedule_id: uuid.UUID) -> ScheduledReportRead:
        self.repository.require_action(ctx, ResourceAction.READ)
        return self._to_read(self._load_owned(session, ctx, schedule_id))

    def create(self, session: Session, ctx: AuthContext, dto: ScheduledReportCreate) -> ScheduledReportRead:
        self.repository.require_action(ctx, ResourceAction.CREATE)
        report = self.saved_reports.load_visible(session, ctx, dto.saved_report_id)
        self._check_schedule(dto.frequency, dto.day_of_week, dto.day_of_month)

        schedule = ScheduledReport(
            saved_report_id=report.id,
            owner_user_id=ctx.user_id,
            owner_roles=list(ctx.roles),
            data_scope=ctx.data_scope.as_dict() if ctx.data_scope is not None else None,
            name=dto.name or report.name,
            recipients=[str(item) for item in dto.recipients],
            format=dto.format,
            frequency=dto.frequency,
            timezone=dto.timezone,
            hour=dto.hour,
            minute=dto.minute,
            day_of_week=dto.day_of_week,
            day_of_month=dto.day_of_month,
            is_active=dto.is_active,
            next_run_at=self._next_run(dto.frequency, dto.timezone, dto.hour, dto.minute, dto.day_of_week, dto.day_of_month),
        )
        session.add(schedule)
        session.flush()
        self._audit(ctx, schedule, "scheduled_report.created", before=None, after=self._snapshot(schedule))
        session.commit()
        logger.info(
            "scheduled_report.created",
            extra={
                "scheduled_report_id": str(schedule.id),
                "saved_report_id": str(report.id),
                "frequency": schedule.frequency,
                "user_id": ctx.user_id,
            },
        )
        return self._to_read(schedule)

    def update(
        self,
        session: Session,
        ctx: AuthContext,
        schedule_id: uuid.UUID,
        dto: ScheduledReportUpdate,
    ) -> ScheduledReportRead:
        self.repository.require_action(ctx, ResourceAction.UPDATE)
        schedule = self._load_owned(session, ctx, schedule_id)
        changes = dto.model_dump(exclude_unset=True)

        frequency = changes.get("frequency") or schedule.frequency
        tz_name = changes.get("timezone") or schedule.timezone
        hour = schedule.hour if changes.get("hour") is None else changes["hour"]
        minute = schedule.minute if changes.get("minute") is None else changes["minute"]
        day_of_week = changes.get("day_of_week", schedule.day_of_week if frequency == ScheduleFrequency.WEEKLY else None)
        day_of_month = changes.get("day_of_month", schedule.day_of_month if frequency == ScheduleFrequency.MONTHLY else None)
        self._check_schedule(frequency, day_of_week, day_of_month)
        refresh = any(name in changes for name in _SCHEDULE_FIELDS)
        next_run_at = self._next_run(frequency, tz_name, hour, minute, day_of_week, day_of_month) if refresh else None

        before = self._snapshot(schedule)
        if changes.get("name") is not None:
            schedule.name = changes["name"]
        if changes.get("recipients") is not None:
            schedule.recipients = [str(item) for item in dto.recipients or []]
        if changes.get("format") is not None:
            schedule.format = changes["format"]
        if changes.get("is_active") is not None:
            schedule.is_active = changes["is_active"]
        schedule.frequency = frequency
        schedule.timezone = tz_name
        schedule.hour = hour
        schedule.minute = minute
        schedule.day_of_week = day_of_week
        schedule.day_of_month = day_of_month
        if next_run_at is not None:
            schedule.next_run_at = next_run_at
        if schedule.owner_user_id == ctx.user_id:
            schedule.owner_roles = list(ctx.roles)
            schedule.data_scope = ctx.data_scope.as_dict() if ctx.data_scope is not None else None
        schedule.updated_at = utcnow()
        session.flush()
        self._audit(ctx, schedule, "scheduled_report.updated", before=before, after=self._snapshot(schedule))
        session.commit()
        return self._to_read(schedule)

    def toggle(
        self,
        session: Session,
        ctx: AuthContext,
        schedule_id: uuid.UUID,
        dto: ScheduledReportToggle,
    ) -> ScheduledReportRead:
        self.repository.require_action(ctx, ResourceAction.UPDATE)
        schedule = self._load_owned(session, ctx, schedule_id)

        before = self._snapshot(schedule)
        schedule.is_active = (not schedule.is_active) if dto.is_active is None else dto.is_active
        if schedule.is_active:
            schedule.next_run_at = self._next_run(
                schedule.frequency,
                schedule.timezone,
                schedule.hour,
                schedule.minute,
                schedule.day_of_week,
                schedule.day_of_month,
            )
        schedule.updated_at = utcnow()
        session.flush()
        self._audit(ctx, schedule, "scheduled_report.toggled", before=before, after=self._snapshot(schedule))
        session.commit()
        return self._to_read(schedule)

    def delete(self, session: Session, ctx: AuthContext, schedule_id: uuid.UUID) -> None:
        self.repository.require_action(ctx, ResourceAction.DELETE)
        schedule = self._load_owned(session, ctx, schedule_id)

        before = self._snapshot(schedule)
        session.delete(schedule)
        session.flush()
        self._audit(ctx, schedule, "scheduled_report.deleted", before=before, after=None)
        session.commit()

    def list_runs(
        self,
        session: Session,
        ctx: AuthContext,
        schedule_id: uuid.UUID,
        *,
        limit: int | None = None,
    ) -> list[ScheduledReportRunRead]:
        self.repository.require_action(ctx, ResourceAction.READ)
        schedule = self._load_owned(session, ctx, schedule_id)
        size = max(1, min(limit or self.run_history_limit, 100))
        return [self._run_to_read(run) for run in self.repository.list_runs(session, schedule.id, size)]

    def run_now(self, session: Session, ctx: AuthContext, schedule_id: uuid.UUID) -> ScheduledReportRunRead:
        self.repository.require_action(ctx, ResourceAction.UPDATE)
        schedule = self._load_owned(session, ctx, schedule_id)
        return self._run_to_read(self._execute(session, schedule, ctx, trigger="manual"))

    def claim_due(self, session: Session, *, now: datetime | None = None) -> list[ScheduledReport]:
        """Mark up to ``batch_size`` due schedules as processing and return them.

        A schedule whose processing mark is older than ``stale_after_minutes`` is claimable
        again.
        """

        moment = now or utcnow()
        claimed = self.repository.lock_due(
            session,
            now=moment,
            stale_before=moment - timedelta(minutes=self.stale_after_minutes),
            limit=self.batch_size,
        )
        for schedule in claimed:
            schedule.processing_started_at = moment
            schedule.updated_at = moment
        session.commit()
        return claimed

    def process_due(self, session: Session, ctx: AuthContext, *, now: datetime | None = None) -> ScheduleProcessRead:
        if not is_admin_bypass(ctx):
            raise MissingPermissionError(self.repository.resource, "process")

        claimed = self.claim_due(session, now=now)
        succeeded = 0
        failed = 0
        for schedule in claimed:
            run = self._execute(session, schedule, self._owner_context(schedule), trigger="schedule")
            if run.status == ScheduledRunStatus.FAILED.value:
                failed += 1
            else:
                succeeded += 1
        logger.info(
            "scheduled_report.processed",
            extra={"claimed": len(claimed), "succeeded": succeeded, "failed": failed, "user_id": ctx.user_id},
        )
        return ScheduleProcessRead(claimed=len(claimed), succeeded=succeeded, failed=failed)

    def _execute(self, session: Session, schedule: ScheduledReport, run_ctx: AuthContext, *, trigger: str) -> ScheduledReportRun:
        run = ScheduledReportRun(
            scheduled_report_id=schedule.id,
            status=ScheduledRunStatus.RUNNING.value,
            trigger=trigger,
            recipients=list(schedule.recipients),
            run_metadata={},
        )
        session.add(run)
        session.commit()
        run_id = run.id
        schedule_id = schedule.id

        try:
            artifact = self.saved_reports.export(session, run_ctx, schedule.saved_report_id, schedule.format)
        except (ReportError, AuthorizationError) as exc:
            session.rollback()
            run = session.get(ScheduledReportRun, run_id)
            schedule = session.get(ScheduledReport, schedule_id)
            message = exc.message if isinstance(exc, ReportError) else str(exc)
            run.status = ScheduledRunStatus.FAILED.value
            run.error_message = message
            run.completed_at = utcnow()
            run.run_metadata = {"manual": trigger == "manual", "error_code": getattr(exc, "code", "FORBIDDEN")}
            schedule.processing_started_at = None
            schedule.last_error = message
            schedule.updated_at = utcnow()
            session.commit()
            observe_scheduled_report_run(trigger, run.status)
            logger.warning(
                "scheduled_report.run_failed",
                extra={
                    "scheduled_report_id": str(schedule_id),
                    "error_code": getattr(exc, "code", "FORBIDDEN"),
                    "error": message[:500],
                    "user_id": run_ctx.user_id,
                },
            )
            return run

        finished = utcnow()
        run.status = (ScheduledRunStatus.SUCCESS if schedule.recipients else ScheduledRunStatus.SKIPPED).value
        run.rows_count = artifact.row_count
        run.file_format = schedule.format
        run.file_name = artifact.filename
        run.completed_at = finished
        run.run_metadata = {"manual": trigger == "manual", "recipients_count": len(schedule.recipients)}
        schedule.processing_started_at = None
        schedule.last_run_at = finished
        schedule.last_error = None
        schedule.next_run_at = self._next_run(
            schedule.frequency,
            schedule.timezone,
            schedule.hour,
            schedule.minute,
            schedule.day_of_week,
            schedule.day_of_month,
            now=finished,
        )
        schedule.updated_at = finished
        session.commit()
        observe_scheduled_report_run(trigger, run.status)
        logger.info(
            "scheduled_report.run",
            extra={
                "scheduled_report_id": str(schedule_id),
                "trigger": trigger,
                "format": run.file_format,
                "row_count": run.rows_count,
                "user_id": run_ctx.user_id,
            },
        )
        return run

    @staticmethod
    def _owner_context(schedule: ScheduledReport) -> AuthContext:
        roles = [str(item) for item in schedule.owner_roles or []]
        normalized = {item.lower() for item in roles}
        return AuthContext(
            user_id=schedule.owner_user_id,
            correlation_id=get_correlation_id(),
            is_super_admin="admin" in normalized or "system.admin" in normalized,
            roles=roles,
            permissions=roles,
            data_scope=DataScopeFilter.from_dict(schedule.data_scope),
        )

    def _load_owned(self, session: Session, ctx: AuthContext, schedule_id: uuid.UUID) -> ScheduledReport:
        schedule = self.repository.get(session, schedule_id)
        if schedule is None or (schedule.owner_user_id != ctx.user_id and not is_admin_bypass(ctx)):
            raise ReportNotFoundError("Scheduled report not found")
        return schedule

    @staticmethod
    def _check_schedule(frequency: str, day_of_week: int | None, day_of_month: int | None) -> None:
        issues: list[ValidationIssue] = []
        if day_of_week is not None and frequency != ScheduleFrequency.WEEKLY:
            issues.append(ValidationIssue("day_of_week", "not_applicable", "day_of_week applies to weekly schedules only"))
        if day_of_month is not None and frequency != ScheduleFrequency.MONTHLY:
            issues.append(
                ValidationIssue("day_of_month", "not_applicable", "day_of_month applies to monthly schedules only")
            )
        if issues:
            raise ReportValidationError(issues)

    @staticmethod
    def _next_run(
        frequency: str,
        tz_name: str,
        hour: int,
        minute: int,
        day_of_week: int | None,
        day_of_month: int | None,
        *,
        now: datetime | None = None,
    ) -> datetime:
        return compute_next_run_at(
            frequency=frequency,
            tz_name=tz_name,
            hour=hour,
            minute=minute,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
            now=now,
        )

    @staticmethod
    def _to_read(schedule: ScheduledReport) -> ScheduledReportRead:
        return ScheduledReportRead(
            id=schedule.id,
            saved_report_id=schedule.saved_report_id,
            owner_user_id=schedule.owner_user_id,
            name=schedule.name,
            recipients=list(schedule.recipients or []),
            format=schedule.format,
            frequency=schedule.frequency,
            timezone=schedule.timezone,
            hour=schedule.hour,
            minute=schedule.minute,
            day_of_week=schedule.day_of_week,
            day_of_month=schedule.day_of_month,
            is_active=schedule.is_active,
            next_run_at=_as_utc(schedule.next_run_at),
            last_run_at=_as_utc(schedule.last_run_at),
            last_error=schedule.last_error,
            created_at=_as_utc(schedule.created_at),
            updated_at=_as_utc(schedule.updated_at),
        )

    @staticmethod
    def _run_to_read(run: ScheduledReportRun) -> ScheduledReportRunRead:
        return ScheduledReportRunRead(
            id=run.id,
            scheduled_report_id=run.scheduled_report_id,
            status=run.status,
            trigger=run.trigger,
            recipients=list(run.recipients or []),
            rows_count=run.rows_count,
            file_format=run.file_format,
            file_name=run.file_name,
            error_message=run.error_message,
            metadata=dict(run.run_metadata or {}),
            started_at=_as_utc(run.started_at),
            completed_at=_as_utc(run.completed_at),
        )

    @staticmethod
    def _snapshot(schedule: ScheduledReport) -> dict[str, Any]:
        return {
            "name": schedule.name,
            "saved_report_id": str(schedule.saved_report_id),
            "frequency": schedule.frequency,
            "format": schedule.format,
            "is_active": schedule.is_active,
            "recipients": list(schedule.recipients or []),
        }

    @staticmethod
    def _audit(
        ctx: AuthContext,
        schedule: ScheduledReport,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=AUDIT_ENTITY_TYPE,
            entity_id=str(schedule.id),
            action=action,
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
        )
