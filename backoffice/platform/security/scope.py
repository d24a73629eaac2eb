from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from backoffice import audit
from backoffice.metrics import observe_report_scope

if TYPE_CHECKING:
    from backoffice.platform.security.context import AuthContext


OWN_RECORDS_PERMISSION = "reports.scope.own"

SCOPE_HEADERS = {
    "account": "x-scope-account-ids",
    "contact": "x-scope-contact-ids",
    "created_by": "x-scope-created-by",
    "account_type": "x-scope-account-types",
}


class ScopeDimension(StrEnum):
    ACCOUNT = "account"
    CONTACT = "contact"
    CREATED_BY = "created_by"
    ACCOUNT_TYPE = "account_type"


@dataclass(frozen=True, slots=True)
class DataScopeFilter:
    """Row restriction granted to a caller.

    ``None`` on a dimension means the caller is not restricted on it. An empty tuple is
    an explicit grant of nothing and matches no rows.
    """

    account_ids: tuple[str, ...] | None = None
    contact_ids: tuple[str, ...] | None = None
    created_by_user_ids: tuple[str, ...] | None = None
    account_types: tuple[str, ...] | None = None

    def dimensions(self) -> dict[ScopeDimension, tuple[str, ...]]:
        candidates = {
            ScopeDimension.ACCOUNT: self.account_ids,
            ScopeDimension.CONTACT: self.contact_ids,
            ScopeDimension.CREATED_BY: self.created_by_user_ids,
            ScopeDimension.ACCOUNT_TYPE: self.account_types,
        }
        return {dimension: values for dimension, values in candidates.items() if values is not None}

    @property
    def is_unrestricted(self) -> bool:
        return not self.dimensions()

    def as_dict(self) -> dict[str, list[str] | None]:
        return {
            "account_ids": list(self.account_ids) if self.account_ids is not None else None,
            "contact_ids": list(self.contact_ids) if self.contact_ids is not None else None,
            "created_by_user_ids": list(self.created_by_user_ids) if self.created_by_user_ids is not None else None,
            "account_types": list(self.account_types) if self.account_types is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, list[str] | None] | None) -> DataScopeFilter | None:
        if payload is None:
            return None

        def _values(key: str) -> tuple[str, ...] | None:
            raw = payload.get(key)
            return tuple(str(item) for item in raw) if raw is not None else None

        scope = cls(
            account_ids=_values("account_ids"),
            contact_ids=_values("contact_ids"),
            created_by_user_ids=_values("created_by_user_ids"),
            account_types=_values("account_types"),
        )
        return None if scope.is_unrestricted else scope


def is_admin_bypass(ctx: AuthContext) -> bool:
    if ctx.is_super_admin:
        return True
    role_set = {item.lower() for item in ctx.roles}
    permission_set = {item.lower() for item in ctx.permissions}
    return "admin" in role_set or "admin" in permission_set or "system.admin" in permission_set


def _parse_scope_header(raw: str | None) -> tuple[str, ...] | None:
    if raw is None:
        return None
    values: list[str] = []
    for item in raw.split(","):
        value = item.strip()
        if value and value not in values:
            values.append(value)
    return tuple(values)


def resolve_data_scope(
    *,
    user_id: str,
    roles: list[str],
    permissions: list[str],
    headers: Mapping[str, str],
    is_super_admin: bool = False,
) -> DataScopeFilter | None:
    """Build the caller's data scope from identity headers and role grants.

    Super admins are never scoped. A caller holding ``reports.scope.own`` is limited to
    rows they created; a creator header can only narrow that grant.
    """

    if is_super_admin:
        return None

    created_by = _parse_scope_header(headers.get(SCOPE_HEADERS["created_by"]))
    grants = {item.lower() for item in [*roles, *permissions]}
    if OWN_RECORDS_PERMISSION in grants:
        if created_by is None:
            created_by = (user_id,)
        else:
            created_by = tuple(value for value in created_by if value == user_id)

    scope = DataScopeFilter(
        account_ids=_parse_scope_header(headers.get(SCOPE_HEADERS["account"])),
        contact_ids=_parse_scope_header(headers.get(SCOPE_HEADERS["contact"])),
        created_by_user_ids=created_by,
        account_types=_parse_scope_header(headers.get(SCOPE_HEADERS["account_type"])),
    )
    if scope.is_unrestricted:
        return None
    return scope


def record_scope_restriction(
    *,
    entity: str,
    dimension: str,
    ctx: AuthContext,
    matches_nothing: bool,
) -> None:
    observe_report_scope(entity, dimension, empty=matches_nothing)
    if not matches_nothing:
        return

    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.scope",
        entity_id=entity,
        action="scope.empty",
        before=None,
        after={
            "resource": f"reports.{entity}",
            "dimension": dimension,
            "scope": ctx.data_scope.as_dict() if ctx.data_scope is not None else None,
            "user_id": ctx.user_id,
        },
        correlation_id=ctx.correlation_id,
    )
