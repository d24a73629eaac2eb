from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Protocol

from backoffice.platform.security.context import AuthContext


class ResourceAction(StrEnum):
    READ = "read"
    EXPORT = "export"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class FieldAction(StrEnum):
    READ = "field.read"
    MASK = "field.mask"


class FieldDecision(StrEnum):
    ALLOW = "ALLOW"
    MASK = "MASK"
    DENY = "DENY"


class PolicyBackend(Protocol):
    """Pluggable policy backend interface for report permissions and field policy."""

    def is_resource_allowed(self, resource: str, action: ResourceAction, ctx: AuthContext) -> bool:
        ...

    def evaluate_field_read(self, resource: str, field: str, ctx: AuthContext) -> FieldDecision:
        ...


class InMemoryPolicyBackend:
    """Role + direct-permission policy backend with wildcard support.

    Grants look like ``reports.contacts.read``, ``reports.*`` or
    ``reports.contacts.field.mask:email``. A mask grant wins over a read grant for the
    same field so that a role can be narrowed without removing its wildcard.
    """

    def __init__(self, role_permissions: Mapping[str, Iterable[str]] | None = None, *, default_allow: bool = True) -> None:
        self._role_permissions = {role: set(grants) for role, grants in (role_permissions or {}).items()}
        self._default_allow = default_allow

    def is_resource_allowed(self, resource: str, action: ResourceAction, ctx: AuthContext) -> bool:
        if self._default_allow:
            return True
        required = f"{resource}.{action.value}"
        return self._has_permission(required, ctx)

    def evaluate_field_read(self, resource: str, field: str, ctx: AuthContext) -> FieldDecision:
        mask_permission = f"{resource}.{FieldAction.MASK.value}:{field}"
        if self._has_permission(mask_permission, ctx, wildcard=False):
            return FieldDecision.MASK
        if self._default_allow:
            return FieldDecision.ALLOW

        allow_permission = f"{resource}.{FieldAction.READ.value}:{field}"
        if self._has_permission(allow_permission, ctx):
            return FieldDecision.ALLOW
        return FieldDecision.DENY

    def _grants_for(self, ctx: AuthContext) -> set[str]:
        grants = set(ctx.permissions)
        for role in ctx.roles:
            grants.update(self._role_permissions.get(role, set()))
        return grants

    def _has_permission(self, required: str, ctx: AuthContext, *, wildcard: bool = True) -> bool:
        grants = self._grants_for(ctx)
        if not wildcard:
            return required in grants
        return any(self._matches(grant, required) for grant in grants)

    @staticmethod
    def _matches(grant: str, required: str) -> bool:
        if grant in {"*", required}:
            return True

        if grant.endswith(".*"):
            return required.startswith(grant[:-1])

        if ":" in grant and grant.endswith(":*"):
            return required.startswith(grant[:-1])

        return False
