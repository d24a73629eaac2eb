from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from backoffice import audit
from backoffice.metrics import observe_fls_field_counts
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.policies import FieldDecision, PolicyBackend


MASKED_FIELD_VALUE = "***"


def evaluate_field_reads(
    policy: PolicyBackend,
    resource: str,
    field_names: Iterable[str],
    ctx: AuthContext,
) -> dict[str, FieldDecision]:
    """Evaluate read policy once per field, caching decisions on the context."""

    cache: dict[str, FieldDecision] = ctx._cache.setdefault(f"fls.{resource}", {})
    decisions: dict[str, FieldDecision] = {}
    for field_name in field_names:
        decision = cache.get(field_name)
        if decision is None:
            decision = policy.evaluate_field_read(resource, field_name, ctx)
            cache[field_name] = decision
        decisions[field_name] = decision
    return decisions


def apply_fls_read(
    resource: str,
    record: dict[str, Any],
    decisions: Mapping[str, FieldDecision],
) -> dict[str, Any]:
    """Apply field-level read decisions to a single record.

    Keys without a decision are aggregate outputs and pass through unchanged.
    """

    output: dict[str, Any] = {}
    for field_name, value in record.items():
        decision = decisions.get(field_name, FieldDecision.ALLOW)
        if decision == FieldDecision.ALLOW:
            output[field_name] = value
        elif decision == FieldDecision.MASK:
            output[field_name] = MASKED_FIELD_VALUE if value is not None else None
    return output


def apply_fls_read_many(
    resource: str,
    records: Iterable[dict[str, Any]],
    ctx: AuthContext,
    decisions: Mapping[str, FieldDecision],
) -> list[dict[str, Any]]:
    """Apply field-level read decisions to a sequence of records."""

    output = [apply_fls_read(resource, record, decisions) for record in records]
    masked_fields = sorted(name for name, decision in decisions.items() if decision == FieldDecision.MASK)
    denied_fields = sorted(name for name, decision in decisions.items() if decision == FieldDecision.DENY)
    _emit_fls_observability(
        resource=resource,
        operation="read",
        ctx=ctx,
        masked_fields=masked_fields,
        denied_fields=denied_fields,
    )
    return output


def _emit_fls_observability(
    *,
    resource: str,
    operation: str,
    ctx: AuthContext,
    masked_fields: list[str],
    denied_fields: list[str],
) -> None:
    masked_count = len(masked_fields)
    denied_count = len(denied_fields)
    if masked_count == 0 and denied_count == 0:
        return

    observe_fls_field_counts(resource=resource, operation=operation, masked_count=masked_count, denied_count=denied_count)
    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.fls",
        entity_id=resource,
        action=f"fls.{operation}",
        before=None,
        after={
            "resource": resource,
            "role_names": ctx.roles,
            "masked_fields": masked_fields,
            "denied_fields": denied_fields,
            "masked_count": masked_count,
            "denied_count": denied_count,
        },
        correlation_id=ctx.correlation_id,
    )
