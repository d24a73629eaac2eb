from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from backoffice.platform.security.repository import BaseRepository
from backoffice.reporting.models import (
    CustomReportTemplate,
    GranteeType,
    SavedReport,
    SavedReportShare,
    ScheduledReport,
    ScheduledReportRun,
)


class ReportRepository(BaseRepository):
    resource = "reports"


class SavedReportRepository(BaseRepository):
    resource = "reports.saved"

    def get(self, session: Session, report_id: uuid.UUID) -> SavedReport | None:
        return session.scalar(
            select(SavedReport).where(and_(SavedReport.id == report_id, SavedReport.deleted_at.is_(None)))
        )

    def get_by_public_token(self, session: Session, token: str) -> SavedReport | None:
        return session.scalar(
            select(SavedReport).where(
                and_(
                    SavedReport.public_token == token,
                    SavedReport.is_public.is_(True),
                    SavedReport.deleted_at.is_(None),
                )
            )
        )

    def list_candidates(
        self,
        session: Session,
        *,
        user_id: str,
        roles: Iterable[str],
        entity: str | None = None,
        include_all: bool = False,
    ) -> list[SavedReport]:
        """Reports the caller owns, public reports and reports with a grant naming the caller.

        Grant expiry is checked by the caller.
        """

        stmt = select(SavedReport).where(SavedReport.deleted_at.is_(None))
        if not include_all:
            granted = select(SavedReportShare.saved_report_id).where(
                or_(
                    and_(SavedReportShare.grantee_type == GranteeType.USER.value, SavedReportShare.grantee_id == user_id),
                    and_(
                        SavedReportShare.grantee_type == GranteeType.ROLE.value,
                        SavedReportShare.grantee_id.in_(list(roles)),
                    ),
                )
            )
            stmt = stmt.where(
                or_(
                    SavedReport.owner_user_id == user_id,
                    SavedReport.is_public.is_(True),
                    SavedReport.id.in_(granted),
                )
            )
        if entity is not None:
            stmt = stmt.where(SavedReport.entity == entity)
        return list(session.scalars(stmt.order_by(SavedReport.updated_at.desc(), SavedReport.id.asc())).all())

    def find_share(
        self,
        report: SavedReport,
        grantee_type: GranteeType,
        grantee_id: str,
    ) -> SavedReportShare | None:
        for share in report.shares:
            if share.grantee_type == grantee_type.value and share.grantee_id == grantee_id:
                return share
        return None

    def add_share(
        self,
        session: Session,
        report: SavedReport,
        *,
        grantee_type: GranteeType,
        grantee_id: str,
        can_edit: bool,
        expires_at: datetime | None,
        created_by: str,
    ) -> SavedReportShare:
        share = self.find_share(report, grantee_type, grantee_id)
        if share is None:
            share = SavedReportShare(
                grantee_type=grantee_type.value,
                grantee_id=grantee_id,
                created_by=created_by,
            )
            report.shares.append(share)
        share.can_edit = can_edit
        share.expires_at = expires_at
        session.flush()
        return share


class ReportTemplateRepository(BaseRepository):
    resource = "reports.templates"

    def list_records(self, session: Session, category: str | None = None) -> list[CustomReportTemplate]:
        stmt = select(CustomReportTemplate)
        if category is not None:
            stmt = stmt.where(CustomReportTemplate.category == category)
        return list(session.scalars(stmt.order_by(CustomReportTemplate.created_at.asc(), CustomReportTemplate.id.asc())).all())

    def get_record(self, session: Session, template_id: str) -> CustomReportTemplate | None:
        try:
            record_id = uuid.UUID(template_id)
        except ValueError:
            return None
        return session.get(CustomReportTemplate, record_id)


class ScheduledReportRepository(BaseRepository):
    resource = "reports.scheduled"

    def get(self, session: Session, schedule_id: uuid.UUID) -> ScheduledReport | None:
        return session.get(ScheduledReport, schedule_id)

    def list_for_owner(self, session: Session, owner_user_id: str | None) -> list[ScheduledReport]:
        stmt = select(ScheduledReport)
        if owner_user_id is not None:
            stmt = stmt.where(ScheduledReport.owner_user_id == owner_user_id)
        return list(session.scalars(stmt.order_by(ScheduledReport.created_at.desc(), ScheduledReport.id.asc())).all())

    def list_runs(self, session: Session, schedule_id: uuid.UUID, limit: int) -> list[ScheduledReportRun]:
        stmt = (
            select(ScheduledReportRun)
            .where(ScheduledReportRun.scheduled_report_id == schedule_id)
            .order_by(ScheduledReportRun.started_at.desc(), ScheduledReportRun.id.asc())
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    def lock_due(
        self,
        session: Session,
        *,
        now: datetime,
        stale_before: datetime,
        limit: int,
    ) -> list[ScheduledReport]:
        stmt = (
            select(ScheduledReport)
            .where(
                and_(
                    ScheduledReport.is_active.is_(True),
                    ScheduledReport.next_run_at <= now,
                    or_(
                        ScheduledReport.processing_started_at.is_(None),
                        ScheduledReport.processing_started_at < stale_before,
                    ),
                )
            )
            .order_by(ScheduledReport.next_run_at.asc(), ScheduledReport.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(session.scalars(stmt).all())
