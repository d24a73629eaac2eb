from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from backoffice import audit
from backoffice.metrics import observe_saved_report_transition
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError
from backoffice.platform.security.policies import ResourceAction
from backoffice.platform.security.scope import is_admin_bypass
from backoffice.reporting.errors import (
    ReportNotFoundError,
    ReportValidationError,
    SharingTransitionError,
    ValidationIssue,
)
from backoffice.reporting.formatter import ExportArtifact
from backoffice.reporting.models import SHARING_TRANSITIONS, GranteeType, SavedReport, SavedReportShare, SharingState
from backoffice.reporting.repository import SavedReportRepository
from backoffice.reporting.schemas import (
    AuditRead,
    PublicLinkRead,
    PublicLinkRequest,
    PublicReportRead,
    ReportDefinitionIn,
    ReportResultRead,
    SavedReportCreate,
    SavedReportRead,
    SavedReportRunRequest,
    SavedReportUpdate,
    ShareGrantRead,
    ShareRequest,
    UnshareRequest,
)
from backoffice.reporting.service import ReportService


logger = logging.getLogger("backoffice.reports")

AUDIT_ENTITY_TYPE = "reports.saved"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_active(share: SavedReportShare, now: datetime) -> bool:
    expires_at = _as_utc(share.expires_at)
    return expires_at is None or expires_at > now


@dataclass(slots=True)
class SavedReportService:
    """Persistence and sharing lifecycle of saved report definitions.

    Visibility: owner, public reports and active grants naming the caller or one of the
    caller's roles. Only the owner changes sharing or deletes; editors change content.
    """

    report_service: ReportService
    repository: SavedReportRepository
    public_token_bytes: int = 24

    def create(self, session: Session, ctx: AuthContext, dto: SavedReportCreate) -> SavedReportRead:
        self.repository.require_action(ctx, ResourceAction.CREATE)
        validated, _ = self.report_service.validate_definition(ctx, dto.definition)

        report = SavedReport(
            owner_user_id=ctx.user_id,
            name=dto.name,
            description=dto.description,
            entity=validated.entity.name,
            definition=dto.definition.to_document(),
            is_public=False,
            sharing_state=SharingState.PRIVATE.value,
        )
        session.add(report)
        session.flush()
        self._audit(ctx, report, "saved_report.created", before=None, after=self._snapshot(report))
        session.commit()
        logger.info(
            "saved_report.created",
            extra={"saved_report_id": str(report.id), "entity": report.entity, "user_id": ctx.user_id},
        )
        return self._to_read(report, ctx)

    def list_reports(self, session: Session, ctx: AuthContext, *, entity: str | None = None) -> list[SavedReportRead]:
        self.repository.require_action(ctx, ResourceAction.READ)
        now = utcnow()
        candidates = self.repository.list_candidates(
            session,
            user_id=ctx.user_id,
            roles=ctx.roles,
            entity=entity,
            include_all=is_admin_bypass(ctx),
        )
        return [self._to_read(report, ctx) for report in candidates if self._can_view(report, ctx, now)]

    def get(self, session: Session, ctx: AuthContext, report_id: uuid.UUID) -> SavedReportRead:
        self.repository.require_action(ctx, ResourceAction.READ)
        return self._to_read(self.load_visible(session, ctx, report_id), ctx)

    def update(self, session: Session, ctx: AuthContext, report_id: uuid.UUID, dto: SavedReportUpdate) -> SavedReportRead:
        self.repository.require_action(ctx, ResourceAction.UPDATE)
        report = self.load_visible(session, ctx, report_id)
        if not self._can_edit(report, ctx, utcnow()):
            raise AuthorizationError("Only the owner or an editor can update this saved report")

        before = self._snapshot(report)
        changes = dto.model_dump(exclude_unset=True, exclude={"definition"})
        if "name" in changes and changes["name"] is not None:
            report.name = changes["name"]
        if "description" in changes:
            report.description = changes["description"]
        if dto.definition is not None:
            validated, _ = self.report_service.validate_definition(ctx, dto.definition)
            report.entity = validated.entity.name
            report.definition = dto.definition.to_document()
        report.updated_at = utcnow()
        session.flush()
        self._audit(ctx, report, "saved_report.updated", before=before, after=self._snapshot(report))
        session.commit()
        return self._to_read(report, ctx)

    def delete(self, session: Session, ctx: AuthContext, report_id: uuid.UUID, *, hard: bool = False) -> None:
        self.repository.require_action(ctx, ResourceAction.DELETE)
        report = self.load_visible(session, ctx, report_id)
        self._require_owner(report, ctx, "delete")

        before = self._snapshot(report)
        if hard:
            session.delete(report)
            action = "saved_report.hard_deleted"
        else:
            report.deleted_at = utcnow()
            report.public_token = None
            report.is_public = False
            action = "saved_report.deleted"
        session.flush()
        self._audit(ctx, report, action, before=before, after=None)
        session.commit()
        logger.info("saved_report.deleted", extra={"saved_report_id": str(report_id), "user_id": ctx.user_id})

    def share(self, session: Session, ctx: AuthContext, report_id: uuid.UUID, dto: ShareRequest) -> SavedReportRead:
        report = self.load_visible(session, ctx, report_id)
        self._require_owner(report, ctx, "share")
        grantees = self._grantees(dto.user_ids, dto.role_names)
        if not grantees:
            raise ReportValidationError(
                [ValidationIssue("user_ids", "required", "At least one user or role must be named to share a report")]
            )

        current = SharingState(report.sharing_state)
        target = SharingState.PUBLIC if current == SharingState.PUBLIC else SharingState.SHARED
        before = self._snapshot(report)
        self._transition(report, target)
        expires_at = _as_utc(dto.expires_at)
        for grantee_type, grantee_id in grantees:
            self.repository.add_share(
                session,
                report,
                grantee_type=grantee_type,
                grantee_id=grantee_id,
                can_edit=dto.can_edit,
                expires_at=expires_at,
                created_by=ctx.user_id,
            )
        report.updated_at = utcnow()
        session.flush()
        self._audit(ctx, report, "saved_report.shared", before=before, after=self._snapshot(report))
        session.commit()
        logger.info(
            "saved_report.shared",
            extra={"saved_report_id": str(report.id), "sharing_state": report.sharing_state, "user_id": ctx.user_id},
        )
        return self._to_read(report, ctx)

    def unshare(self, session: Session, ctx: AuthContext, report_id: uuid.UUID, dto: UnshareRequest) -> SavedReportRead:
        report = self.load_visible(session, ctx, report_id)
        self._require_owner(report, ctx, "unshare")

        before = self._snapshot(report)
        for grantee_type, grantee_id in self._grantees(dto.user_ids, dto.role_names):
            share = self.repository.find_share(report, grantee_type, grantee_id)
            if share is not None:
                report.shares.remove(share)
        if report.sharing_state == SharingState.SHARED.value and not report.shares and report.public_token is None:
            self._transition(report, SharingState.REVOKED)
        report.updated_at = utcnow()
        session.flush()
        self._audit(ctx, report, "saved_report.unshared", before=before, after=self._snapshot(report))
        session.commit()
        return self._to_read(report, ctx)

    def publish(self, session: Session, ctx: AuthContext, report_id: uuid.UUID, dto: PublicLinkRequest) -> PublicLinkRead:
        """Create or rotate the public link; any previous token stops resolving."""

        report = self.load_visible(session, ctx, report_id)
        self._require_owner(report, ctx, "publish")

        before = self._snapshot(report)
        self._transition(report, SharingState.PUBLIC)
        report.is_public = True
        report.public_token = secrets.token_urlsafe(self.public_token_bytes)
        report.public_token_expires_at = (
            utcnow() + timedelta(days=dto.expires_in_days) if dto.expires_in_days is not None else None
        )
        report.updated_at = utcnow()
        session.flush()
        self._audit(ctx, report, "saved_report.published", before=before, after=self._snapshot(report))
        session.commit()
        logger.info(
            "saved_report.published",
            extra={"saved_report_id": str(report.id), "sharing_state": report.sharing_state, "user_id": ctx.user_id},
        )
        return PublicLinkRead(
            token=report.public_token,
            path=f"/reports/public/{report.public_token}",
            expires_at=_as_utc(report.public_token_expires_at),
        )

    def revoke(self, session: Session, ctx: AuthContext, report_id: uuid.UUID) -> SavedReportRead:
        report = self.load_visible(session, ctx, report_id)
        self._require_owner(report, ctx, "revoke")

        before = self._snapshot(report)
        self._transition(report, SharingState.REVOKED)
        report.is_public = False
        report.public_token = None
        report.public_token_expires_at = None
        report.shares.clear()
        report.updated_at = utcnow()
        session.flush()
        self._audit(ctx, report, "saved_report.revoked", before=before, after=self._snapshot(report))
        session.commit()
        logger.info(
            "saved_report.revoked",
            extra={"saved_report_id": str(report.id), "sharing_state": report.sharing_state, "user_id": ctx.user_id},
        )
        return self._to_read(report, ctx)

    def make_private(self, session: Session, ctx: AuthContext, report_id: uuid.UUID) -> SavedReportRead:
        """Return a revoked report to the owner-only state."""

        report = self.load_visible(session, ctx, report_id)
        self._require_owner(report, ctx, "make private")

        before = self._snapshot(report)
        self._transition(report, SharingState.PRIVATE)
        report.updated_at = utcnow()
        session.flush()
        self._audit(ctx, report, "saved_report.made_private", before=before, after=self._snapshot(report))
        session.commit()
        return self._to_read(report, ctx)

    def get_by_public_token(self, session: Session, token: str) -> PublicReportRead:
        report = self.repository.get_by_public_token(session, token)
        if report is None:
            raise ReportNotFoundError()
        expires_at = _as_utc(report.public_token_expires_at)
        if expires_at is not None and expires_at <= utcnow():
            raise ReportNotFoundError()
        return PublicReportRead(
            id=report.id,
            name=report.name,
            description=report.description,
            entity=report.entity,
            definition=report.definition,
        )

    def run(
        self,
        session: Session,
        ctx: AuthContext,
        report_id: uuid.UUID,
        dto: SavedReportRunRequest | None = None,
    ) -> ReportResultRead:
        report = self.load_visible(session, ctx, report_id)
        return self.report_service.generate(session, ctx, self._definition(report, dto))

    def export(
        self,
        session: Session,
        ctx: AuthContext,
        report_id: uuid.UUID,
        requested_format: str | None,
    ) -> ExportArtifact:
        report = self.load_visible(session, ctx, report_id)
        definition = self._definition(report, None)
        if not definition.name:
            definition.name = report.name
        return self.report_service.export(session, ctx, definition, requested_format)

    def audit_trail(self, session: Session, ctx: AuthContext, report_id: uuid.UUID) -> list[AuditRead]:
        report = self.load_visible(session, ctx, report_id)
        self._require_owner(report, ctx, "read the audit trail of")
        return [AuditRead(**entry) for entry in audit.entries_for(AUDIT_ENTITY_TYPE, str(report.id))]

    def load_visible(self, session: Session, ctx: AuthContext, report_id: uuid.UUID) -> SavedReport:
        report = self.repository.get(session, report_id)
        if report is None or not self._can_view(report, ctx, utcnow()):
            raise ReportNotFoundError()
        return report

    def _can_view(self, report: SavedReport, ctx: AuthContext, now: datetime) -> bool:
        if report.owner_user_id == ctx.user_id or report.is_public or is_admin_bypass(ctx):
            return True
        return any(self._grant_applies(share, ctx) and _is_active(share, now) for share in report.shares)

    def _can_edit(self, report: SavedReport, ctx: AuthContext, now: datetime) -> bool:
        if report.owner_user_id == ctx.user_id or is_admin_bypass(ctx):
            return True
        return any(
            share.can_edit and self._grant_applies(share, ctx) and _is_active(share, now) for share in report.shares
        )

    @staticmethod
    def _grant_applies(share: SavedReportShare, ctx: AuthContext) -> bool:
        if share.grantee_type == GranteeType.USER.value:
            return share.grantee_id == ctx.user_id
        return share.grantee_id in ctx.roles

    def _require_owner(self, report: SavedReport, ctx: AuthContext, operation: str) -> None:
        if report.owner_user_id != ctx.user_id and not is_admin_bypass(ctx):
            raise AuthorizationError(f"Only the owner can {operation} this saved report")

    def _transition(self, report: SavedReport, target: SharingState) -> None:
        current = SharingState(report.sharing_state)
        if target not in SHARING_TRANSITIONS[current]:
            raise SharingTransitionError(current.value, target.value)
        if current != target:
            observe_saved_report_transition(current.value, target.value)
        report.sharing_state = target.value

    @staticmethod
    def _grantees(user_ids: list[str], role_names: list[str]) -> list[tuple[GranteeType, str]]:
        grantees: list[tuple[GranteeType, str]] = []
        for grantee_type, values in ((GranteeType.USER, user_ids), (GranteeType.ROLE, role_names)):
            for raw in values:
                value = raw.strip()
                if value and (grantee_type, value) not in grantees:
                    grantees.append((grantee_type, value))
        return grantees

    @staticmethod
    def _definition(report: SavedReport, dto: SavedReportRunRequest | None) -> ReportDefinitionIn:
        definition = ReportDefinitionIn.model_validate(report.definition)
        if dto is not None:
            if dto.limit is not None:
                definition.limit = dto.limit
            if dto.offset is not None:
                definition.offset = dto.offset
        return definition

    def _to_read(self, report: SavedReport, ctx: AuthContext) -> SavedReportRead:
        is_owner = report.owner_user_id == ctx.user_id or is_admin_bypass(ctx)
        return SavedReportRead(
            id=report.id,
            owner_user_id=report.owner_user_id,
            name=report.name,
            description=report.description,
            entity=report.entity,
            definition=report.definition,
            is_public=report.is_public,
            sharing_state=report.sharing_state,
            public_token=report.public_token if is_owner else None,
            public_token_expires_at=_as_utc(report.public_token_expires_at),
            shares=[ShareGrantRead.model_validate(share) for share in report.shares] if is_owner else [],
            can_edit=self._can_edit(report, ctx, utcnow()),
            created_at=_as_utc(report.created_at),
            updated_at=_as_utc(report.updated_at),
        )

    @staticmethod
    def _snapshot(report: SavedReport) -> dict[str, Any]:
        return {
            "name": report.name,
            "entity": report.entity,
            "is_public": report.is_public,
            "sharing_state": report.sharing_state,
            "shares": [
                {"grantee_type": share.grantee_type, "grantee_id": share.grantee_id, "can_edit": share.can_edit}
                for share in report.shares
            ],
        }

    @staticmethod
    def _audit(
        ctx: AuthContext,
        report: SavedReport,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=AUDIT_ENTITY_TYPE,
            entity_id=str(report.id),
            action=action,
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
        )
