from __future__ import annotations

from collections.abc import Generator

import pytest

from backoffice import audit
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import MissingPermissionError
from backoffice.platform.security.fls import MASKED_FIELD_VALUE, apply_fls_read, apply_fls_read_many, evaluate_field_reads
from backoffice.platform.security.policies import FieldDecision, InMemoryPolicyBackend, ResourceAction
from backoffice.reporting.repository import ReportRepository


@pytest.fixture(autouse=True)
def clear_audit() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()


def test_evaluate_field_reads_allow_mask_deny() -> None:
    policy = InMemoryPolicyBackend(default_allow=False)
    ctx = AuthContext(
        user_id="user-1",
        permissions=[
            "reports.contacts.field.read:first_name",
            "reports.contacts.field.read:email",
            "reports.contacts.field.mask:email",
        ],
    )

    decisions = evaluate_field_reads(policy, "reports.contacts", ["first_name", "email", "phone"], ctx)

    assert decisions == {
        "first_name": FieldDecision.ALLOW,
        "email": FieldDecision.MASK,
        "phone": FieldDecision.DENY,
    }


def test_apply_fls_read_masks_and_drops_fields() -> None:
    decisions = {"first_name": FieldDecision.ALLOW, "email": FieldDecision.MASK, "phone": FieldDecision.DENY}

    output = apply_fls_read(
        "reports.contacts",
        {"first_name": "Ada", "email": "ada@example.com", "phone": "555-0100", "gifts": 3},
        decisions,
    )

    assert output == {"first_name": "Ada", "email": MASKED_FIELD_VALUE, "gifts": 3}


def test_masked_null_stays_null() -> None:
    output = apply_fls_read("reports.contacts", {"email": None}, {"email": FieldDecision.MASK})

    assert output == {"email": None}


def test_apply_fls_read_many_records_audit_once() -> None:
    ctx = AuthContext(user_id="user-2", correlation_id="fls-corr-1")
    decisions = {"first_name": FieldDecision.ALLOW, "email": FieldDecision.MASK}

    output = apply_fls_read_many(
        "reports.contacts",
        [{"first_name": "Ada", "email": "ada@example.com"}, {"first_name": "Grace", "email": "grace@example.com"}],
        ctx,
        decisions,
    )

    assert [row["email"] for row in output] == [MASKED_FIELD_VALUE, MASKED_FIELD_VALUE]
    entries = [entry for entry in audit.audit_entries if entry["action"] == "fls.read"]
    assert len(entries) == 1
    assert entries[0]["entity_type"] == "security.fls"
    assert entries[0]["entity_id"] == "reports.contacts"
    assert entries[0]["correlation_id"] == "fls-corr-1"


def test_unrestricted_read_records_no_audit() -> None:
    ctx = AuthContext(user_id="user-2")

    apply_fls_read_many("reports.contacts", [{"first_name": "Ada"}], ctx, {"first_name": FieldDecision.ALLOW})

    assert audit.audit_entries == []


def test_role_grants_and_wildcards() -> None:
    policy = InMemoryPolicyBackend(
        {
            "fundraising": ["reports.donations.*"],
            "volunteer-lead": ["reports.volunteers.read", "reports.volunteers.field.read:*"],
        },
        default_allow=False,
    )
    fundraiser = AuthContext(user_id="user-3", roles=["fundraising"])
    lead = AuthContext(user_id="user-4", roles=["volunteer-lead"])

    assert policy.is_resource_allowed("reports.donations", ResourceAction.EXPORT, fundraiser)
    assert not policy.is_resource_allowed("reports.contacts", ResourceAction.READ, fundraiser)
    assert policy.evaluate_field_read("reports.donations", "amount", fundraiser) == FieldDecision.ALLOW
    assert policy.evaluate_field_read("reports.volunteers", "email", lead) == FieldDecision.ALLOW
    assert not policy.is_resource_allowed("reports.volunteers", ResourceAction.EXPORT, lead)


def test_mask_grant_is_not_a_wildcard() -> None:
    policy = InMemoryPolicyBackend({"staff": ["reports.contacts.field.mask:*"]})
    ctx = AuthContext(user_id="user-5", roles=["staff"])

    assert policy.evaluate_field_read("reports.contacts", "email", ctx) == FieldDecision.ALLOW


def test_field_decisions_are_cached_per_context() -> None:
    policy = InMemoryPolicyBackend(default_allow=True)
    ctx = AuthContext(user_id="user-6")

    evaluate_field_reads(policy, "reports.contacts", ["email"], ctx)

    assert ctx._cache["fls.reports.contacts"] == {"email": FieldDecision.ALLOW}


def test_report_repository_requires_resource_action() -> None:
    repository = ReportRepository(InMemoryPolicyBackend({"viewer": ["reports.contacts.read"]}, default_allow=False))
    ctx = AuthContext(user_id="user-7", roles=["viewer"])

    repository.require_action(ctx, ResourceAction.READ, suffix="contacts")
    with pytest.raises(MissingPermissionError) as exc_info:
        repository.require_action(ctx, ResourceAction.EXPORT, suffix="contacts")

    assert str(exc_info.value) == "Missing permission: reports.contacts.export"
    assert exc_info.value.resource == "reports.contacts"
