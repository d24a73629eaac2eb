from __future__ import annotations

import uuid
from datetime import date
from typing import Any

import pytest

from backoffice.platform.security.errors import ForbiddenFieldError
from backoffice.platform.security.policies import FieldDecision
from backoffice.reporting.catalog import build_field_catalog
from backoffice.reporting.errors import ReportValidationError, UnknownEntityError
from backoffice.reporting.schemas import ReportDefinitionIn
from backoffice.reporting.validator import AggregateFunction, Operator, ReportDefinitionValidator, SortDirection


@pytest.fixture()
def validator() -> ReportDefinitionValidator:
    return ReportDefinitionValidator(build_field_catalog())


def _definition(**overrides: Any) -> ReportDefinitionIn:
    payload: dict[str, Any] = {"entity": "contacts", "fields": ["first_name", "last_name"]}
    payload.update(overrides)
    return ReportDefinitionIn.model_validate(payload)


def _issues(validator: ReportDefinitionValidator, definition: ReportDefinitionIn) -> list[tuple[str | None, str]]:
    with pytest.raises(ReportValidationError) as exc_info:
        validator.validate(definition)
    return [(issue.field, issue.code) for issue in exc_info.value.issues]


def test_valid_definition_resolves_fields_in_request_order(validator: ReportDefinitionValidator) -> None:
    validated = validator.validate(_definition(fields=["last_name", "email", "first_name"]))

    assert validated.entity.name == "contacts"
    assert [item.id for item in validated.fields] == ["last_name", "email", "first_name"]
    assert validated.offset == 0
    assert validated.limit is None
    assert not validated.grouped


def test_missing_entity_is_required(validator: ReportDefinitionValidator) -> None:
    with pytest.raises(ReportValidationError) as exc_info:
        validator.validate(ReportDefinitionIn.model_validate({"fields": ["first_name"]}))

    assert exc_info.value.message == "Entity is required"


def test_unknown_entity_raises_invalid_entity_type(validator: ReportDefinitionValidator) -> None:
    with pytest.raises(UnknownEntityError) as exc_info:
        validator.validate(_definition(entity="meetings"))

    assert exc_info.value.message == "Invalid entity type"


def test_empty_field_list_is_rejected(validator: ReportDefinitionValidator) -> None:
    with pytest.raises(ReportValidationError) as exc_info:
        validator.validate(_definition(fields=[]))

    assert exc_info.value.message == "At least one field must be selected"
    assert exc_info.value.details == [
        {"field": "fields", "code": "required", "message": "At least one field must be selected"}
    ]


@pytest.mark.parametrize(
    ("section", "overrides"),
    [
        ("fields", {"fields": ["first_name", "nickname"]}),
        ("filters", {"filters": [{"field": "nickname", "operator": "eq", "value": "x"}]}),
        ("groupBy", {"groupBy": ["nickname"]}),
        ("aggregations", {"aggregations": [{"field": "nickname", "function": "count"}]}),
        ("sort", {"sort": [{"field": "nickname", "direction": "asc"}]}),
    ],
)
def test_unknown_field_is_named_in_every_section(
    validator: ReportDefinitionValidator,
    section: str,
    overrides: dict[str, Any],
) -> None:
    issues = _issues(validator, _definition(**overrides))
    assert ("nickname", "unknown_field") in issues


def test_field_from_another_entity_is_unknown(validator: ReportDefinitionValidator) -> None:
    issues = _issues(validator, _definition(fields=["amount"]))
    assert issues == [("amount", "unknown_field")]


@pytest.mark.parametrize(
    ("entity", "field", "operator", "value"),
    [
        ("donations", "amount", "contains", "10"),
        ("donations", "donation_date", "contains", "2026"),
        ("donations", "donation_date", "in", ["2026-01-01"]),
        ("contacts", "first_name", "gt", "M"),
        ("contacts", "first_name", "between", ["A", "M"]),
        ("contacts", "is_active", "in", [True]),
        ("contacts", "is_active", "gt", True),
        ("contacts", "preferred_contact_method", "contains", "mail"),
        ("contacts", "id", "contains", "abc"),
    ],
)
def test_operator_incompatible_with_field_type(
    validator: ReportDefinitionValidator,
    entity: str,
    field: str,
    operator: str,
    value: Any,
) -> None:
    definition = _definition(entity=entity, fields=[field], filters=[{"field": field, "operator": operator, "value": value}])
    assert _issues(validator, definition) == [(field, "unsupported_operator")]


def test_unknown_operator_is_rejected(validator: ReportDefinitionValidator) -> None:
    definition = _definition(filters=[{"field": "first_name", "operator": "like", "value": "A%"}])
    assert _issues(validator, definition) == [("first_name", "invalid_operator")]


@pytest.mark.parametrize(
    ("entity", "field", "operator", "value"),
    [
        ("donations", "amount", "between", [10]),
        ("donations", "amount", "between", [10, 20, 30]),
        ("donations", "amount", "between", [50, 10]),
        ("donations", "amount", "eq", "ten"),
        ("donations", "amount", "eq", None),
        ("donations", "amount", "eq", [1, 2]),
        ("donations", "amount", "in", []),
        ("donations", "donation_date", "gte", "not-a-date"),
        ("donations", "payment_status", "eq", "paid-ish"),
        ("contacts", "is_active", "eq", "maybe"),
        ("contacts", "email", "contains", "   "),
        ("contacts", "id", "eq", "not-a-uuid"),
        ("donations", "amount", "gt", "1e999999999"),
        ("donations", "amount", "gt", "-1e999999999"),
        ("donations", "amount", "gt", "1e-999999999"),
        ("donations", "amount", "eq", 10**40),
        ("donations", "amount", "eq", 1e300),
        ("donations", "amount", "between", ["0", "9" * 50]),
    ],
)
def test_invalid_filter_values(
    validator: ReportDefinitionValidator,
    entity: str,
    field: str,
    operator: str,
    value: Any,
) -> None:
    definition = _definition(entity=entity, fields=[field], filters=[{"field": field, "operator": operator, "value": value}])
    assert _issues(validator, definition) == [(field, "invalid_value")]


def test_in_list_is_capped() -> None:
    validator = ReportDefinitionValidator(build_field_catalog())
    definition = _definition(filters=[{"field": "first_name", "operator": "in", "value": [str(i) for i in range(1001)]}])
    assert _issues(validator, definition) == [("first_name", "invalid_value")]


def test_filter_values_are_coerced(validator: ReportDefinitionValidator) -> None:
    account_id = uuid.uuid4()
    validated = validator.validate(
        _definition(
            entity="donations",
            fields=["amount"],
            filters=[
                {"field": "amount", "operator": "between", "value": "10, 250.50"},
                {"field": "donation_date", "operator": "gte", "value": "2026-01-01T08:30:00Z"},
                {"field": "is_recurring", "operator": "eq", "value": "yes"},
                {"field": "payment_status", "operator": "in", "value": "completed,pending,completed"},
                {"field": "id", "operator": "neq", "value": str(account_id)},
                {"field": "campaign_name", "operator": "CONTAINS", "value": "Spring"},
            ],
        )
    )

    by_field = {item.field.id: item for item in validated.filters}
    assert by_field["amount"].value == (10, 250.5)
    assert by_field["donation_date"].value == date(2026, 1, 1)
    assert by_field["is_recurring"].value is True
    assert by_field["payment_status"].value == ("completed", "pending")
    assert by_field["id"].value == account_id
    assert by_field["campaign_name"].operator == Operator.CONTAINS


def test_all_problems_are_reported_together(validator: ReportDefinitionValidator) -> None:
    definition = _definition(
        fields=["first_name", "nickname"],
        filters=[{"field": "is_active", "operator": "eq", "value": "maybe"}],
        sort=[{"field": "first_name", "direction": "sideways"}],
        limit=0,
        offset=-1,
    )

    issues = _issues(validator, definition)
    assert issues == [
        ("nickname", "unknown_field"),
        ("is_active", "invalid_value"),
        ("first_name", "invalid_direction"),
        ("limit", "invalid_limit"),
        ("offset", "invalid_offset"),
    ]


def test_duplicate_selected_field_is_rejected(validator: ReportDefinitionValidator) -> None:
    assert _issues(validator, _definition(fields=["email", "email"])) == [("email", "duplicate_field")]


def test_unsortable_and_unfilterable_usage(validator: ReportDefinitionValidator) -> None:
    definition = _definition(entity="cases", fields=["title"], sort=[{"field": "outcome", "direction": "asc"}])
    assert _issues(validator, definition) == [("outcome", "not_sortable")]


@pytest.mark.parametrize(
    ("field", "function", "code"),
    [
        ("campaign_name", "sum", "not_aggregatable"),
        ("campaign_name", "avg", "not_aggregatable"),
        ("campaign_name", "max", "not_aggregatable"),
        ("amount", "median", "invalid_aggregation"),
    ],
)
def test_aggregation_rules(validator: ReportDefinitionValidator, field: str, function: str, code: str) -> None:
    definition = _definition(
        entity="donations",
        fields=["payment_status"],
        groupBy=["payment_status"],
        aggregations=[{"field": field, "function": function}],
    )
    assert _issues(validator, definition) == [(field, code)]


def test_aggregation_alias_defaults_and_sorting(validator: ReportDefinitionValidator) -> None:
    validated = validator.validate(
        _definition(
            entity="donations",
            fields=["payment_status"],
            group_by=["payment_status"],
            aggregations=[
                {"field": "amount", "function": "sum"},
                {"field": "id", "function": "count", "alias": "gifts"},
                {"field": "donation_date", "function": "max"},
            ],
            sort=[{"field": "gifts", "direction": "DESC"}],
        )
    )

    assert validated.grouped
    assert [item.alias for item in validated.aggregations] == ["sum_amount", "gifts", "max_donation_date"]
    assert validated.aggregations[1].function == AggregateFunction.COUNT
    assert validated.aggregations[0].label == "Sum of Amount"
    assert validated.sort[0].aggregation is validated.aggregations[1]
    assert validated.sort[0].direction == SortDirection.DESC


@pytest.mark.parametrize("alias", ["amount", "payment_status", "bad alias", "1st"])
def test_aggregation_alias_must_be_free_identifier(validator: ReportDefinitionValidator, alias: str) -> None:
    definition = _definition(
        entity="donations",
        fields=["payment_status"],
        groupBy=["payment_status"],
        aggregations=[{"field": "amount", "function": "sum", "alias": alias}],
    )
    issues = _issues(validator, definition)
    assert len(issues) == 1
    assert issues[0][1] in {"alias_conflict", "invalid_alias"}


def test_denied_field_raises_forbidden(validator: ReportDefinitionValidator) -> None:
    access = {"email": FieldDecision.DENY, "phone": FieldDecision.DENY}
    definition = _definition(
        fields=["first_name", "email"],
        filters=[{"field": "phone", "operator": "eq", "value": "555"}],
    )

    with pytest.raises(ForbiddenFieldError) as exc_info:
        validator.validate(definition, field_access=access)

    assert exc_info.value.fields == ["email", "phone"]
    assert exc_info.value.resource == "reports.contacts"


def test_masked_field_may_be_selected_but_not_filtered(validator: ReportDefinitionValidator) -> None:
    access = {"email": FieldDecision.MASK}

    validated = validator.validate(_definition(fields=["first_name", "email"]), field_access=access)
    assert validated.masked_fields == frozenset({"email"})

    with pytest.raises(ReportValidationError) as exc_info:
        validator.validate(
            _definition(fields=["email"], filters=[{"field": "email", "operator": "contains", "value": "@"}]),
            field_access=access,
        )
    assert [(issue.field, issue.code) for issue in exc_info.value.issues] == [("email", "masked_field")]


def test_masked_field_cannot_appear_in_grouped_report(validator: ReportDefinitionValidator) -> None:
    access = {"email": FieldDecision.MASK}
    definition = _definition(
        fields=["email", "account_type"],
        groupBy=["account_type"],
    )

    with pytest.raises(ReportValidationError) as exc_info:
        validator.validate(definition, field_access=access)
    assert [(issue.field, issue.code) for issue in exc_info.value.issues] == [("email", "masked_field")]


def test_validation_is_deterministic(validator: ReportDefinitionValidator) -> None:
    definition = _definition(filters=[{"field": "first_name", "operator": "in", "value": ["Ada", "Grace"]}])
    assert validator.validate(definition) == validator.validate(definition)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("0E-999999999", 0),
        ("1e3", 1000),
        ("-2.5e2", -250),
        ("0.0001", 0.0001),
        ("9" * 38, int("9" * 38)),
    ],
)
def test_numbers_within_range_are_accepted(validator: ReportDefinitionValidator, value: str, expected: Any) -> None:
    validated = validator.validate(
        _definition(entity="donations", fields=["amount"], filters=[{"field": "amount", "operator": "gte", "value": value}])
    )

    assert validated.filters[0].value == expected
