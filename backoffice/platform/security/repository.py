from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import MissingPermissionError
from backoffice.platform.security.fls import apply_fls_read_many, evaluate_field_reads
from backoffice.platform.security.policies import FieldDecision, PolicyBackend, ResourceAction


class BaseRepository:
    resource = ""

    def __init__(self, policy: PolicyBackend) -> None:
        self.policy = policy

    def resource_name(self, suffix: str | None = None) -> str:
        return f"{self.resource}.{suffix}" if suffix else self.resource

    def require_action(self, ctx: AuthContext, action: ResourceAction, *, suffix: str | None = None) -> None:
        resource = self.resource_name(suffix)
        if not self.policy.is_resource_allowed(resource, action, ctx):
            raise MissingPermissionError(resource, action.value)

    def field_decisions(
        self,
        field_names: Iterable[str],
        ctx: AuthContext,
        *,
        suffix: str | None = None,
    ) -> dict[str, FieldDecision]:
        return evaluate_field_reads(self.policy, self.resource_name(suffix), field_names, ctx)

    def apply_read_security_many(
        self,
        records: list[dict[str, Any]],
        ctx: AuthContext,
        decisions: dict[str, FieldDecision],
        *,
        suffix: str | None = None,
    ) -> list[dict[str, Any]]:
        return apply_fls_read_many(self.resource_name(suffix), records, ctx, decisions)
