from __future__ import annotations

import uuid
from typing import Any

import pytest

from backoffice.platform.security.scope import DataScopeFilter
from backoffice.reporting.catalog import ColumnRef, build_field_catalog
from backoffice.reporting.errors import UnsupportedOperationError
from backoffice.reporting.query import BuiltQuery, QueryBuilder, compile_statement
from backoffice.reporting.schemas import ReportDefinitionIn
from backoffice.reporting.scope import merge
from backoffice.reporting.validator import AggregateFunction, ReportDefinitionValidator


CEILING = 1000


@pytest.fixture()
def validator() -> ReportDefinitionValidator:
    return ReportDefinitionValidator(build_field_catalog())


def _build(
    validator: ReportDefinitionValidator,
    payload: dict[str, Any],
    scope: DataScopeFilter | None = None,
    *,
    ceiling: int = CEILING,
) -> BuiltQuery:
    validated = validator.validate(ReportDefinitionIn.model_validate(payload))
    combined = merge(scope, validated.filters, entity=validated.entity)
    return QueryBuilder().build(validated, combined, limit_ceiling=ceiling)


def test_plain_select_orders_by_primary_key(validator: ReportDefinitionValidator) -> None:
    built = _build(validator, {"entity": "contacts", "fields": ["first_name", "last_name"]})

    assert "FROM contacts" in built.sql
    assert "JOIN" not in built.sql
    assert "ORDER BY contacts.id ASC" in built.sql
    assert built.limit == CEILING
    assert built.offset == 0
    assert [item.key for item in built.plan.selections] == ["first_name", "last_name"]


@pytest.mark.parametrize(
    ("requested", "expected"),
    [(None, CEILING), (10, 10), (CEILING, CEILING), (5000, CEILING), (10**9, CEILING)],
)
def test_limit_is_clamped_to_ceiling(validator: ReportDefinitionValidator, requested: int | None, expected: int) -> None:
    payload: dict[str, Any] = {"entity": "contacts", "fields": ["first_name"], "offset": 20}
    if requested is not None:
        payload["limit"] = requested

    built = _build(validator, payload)
    assert built.limit == expected
    assert built.offset == 20


def test_user_values_travel_as_bind_parameters(validator: ReportDefinitionValidator) -> None:
    hostile = "Robert'); DROP TABLE contacts;--"
    built = _build(
        validator,
        {
            "entity": "contacts",
            "fields": ["first_name"],
            "filters": [
                {"field": "first_name", "operator": "eq", "value": hostile},
                {"field": "department", "operator": "contains", "value": "O'Brien"},
            ],
        },
    )

    assert hostile not in built.sql
    assert "O'Brien" not in built.sql
    assert "DROP TABLE" not in built.sql
    assert hostile in built.params.values()
    assert any(isinstance(value, str) and "O'Brien" in value for value in built.params.values())


def test_contains_is_case_insensitive_and_escapes_wildcards(validator: ReportDefinitionValidator) -> None:
    built = _build(
        validator,
        {
            "entity": "donations",
            "fields": ["campaign_name"],
            "filters": [{"field": "campaign_name", "operator": "contains", "value": "100%_match"}],
        },
    )

    assert "lower(donations.campaign_name) LIKE" in built.sql
    assert "ESCAPE '/'" in built.sql
    assert "100/%/_match" in built.params.values()


def test_operators_render_expected_predicates(validator: ReportDefinitionValidator) -> None:
    built = _build(
        validator,
        {
            "entity": "donations",
            "fields": ["amount"],
            "filters": [
                {"field": "payment_method", "operator": "neq", "value": "cash"},
                {"field": "amount", "operator": "between", "value": [10, 500]},
                {"field": "payment_status", "operator": "in", "value": ["completed", "pending"]},
                {"field": "donation_date", "operator": "lt", "value": "2026-06-01"},
            ],
        },
    )

    assert "donations.payment_method IS DISTINCT FROM" in built.sql
    assert "donations.amount BETWEEN" in built.sql
    assert "donations.payment_status IN (" in built.sql
    assert "POSTCOMPILE" not in built.sql
    assert "donations.donation_date <" in built.sql
    assert " AND " in built.sql


def test_timestamp_filters_compare_the_day(validator: ReportDefinitionValidator) -> None:
    built = _build(
        validator,
        {
            "entity": "contacts",
            "fields": ["first_name"],
            "filters": [{"field": "created_at", "operator": "gte", "value": "2026-03-01"}],
        },
    )
    assert "date(contacts.created_at) >=" in built.sql


def test_joins_are_deduplicated_per_related_entity(validator: ReportDefinitionValidator) -> None:
    built = _build(
        validator,
        {
            "entity": "donations",
            "fields": ["account_name", "donor_first_name", "donor_last_name", "amount"],
            "filters": [{"field": "account_name", "operator": "contains", "value": "Fund"}],
            "sort": [{"field": "donor_last_name", "direction": "asc"}],
        },
    )

    assert built.plan.joins == ("account", "contact")
    assert built.sql.count("JOIN accounts AS account") == 1
    assert built.sql.count("JOIN contacts AS contact") == 1
    assert "LEFT OUTER JOIN" in built.sql


def test_nested_joins_follow_dependency_order(validator: ReportDefinitionValidator) -> None:
    built = _build(validator, {"entity": "volunteers", "fields": ["account_name", "total_hours"]})

    assert built.plan.joins == ("contact", "account")
    assert "account.id = contact.account_id" in built.sql


def test_scope_columns_add_their_join(validator: ReportDefinitionValidator) -> None:
    built = _build(
        validator,
        {"entity": "donations", "fields": ["amount"]},
        DataScopeFilter(account_types=("organization",)),
    )

    assert built.plan.joins == ("account",)
    assert "account.account_type IN (" in built.sql
    assert "organization" in str(built.params.values())


def test_scope_restriction_is_anded_with_user_filters(validator: ReportDefinitionValidator) -> None:
    allowed = uuid.uuid4()
    built = _build(
        validator,
        {
            "entity": "contacts",
            "fields": ["first_name"],
            "filters": [{"field": "last_name", "operator": "eq", "value": "Lovelace"}],
        },
        DataScopeFilter(account_ids=(str(allowed),)),
    )

    where = built.sql.split("WHERE", 1)[1]
    assert "contacts.last_name =" in where
    assert "contacts.account_id IN (" in where
    assert " AND " in where
    assert " OR " not in where


def test_empty_scope_renders_match_nothing(validator: ReportDefinitionValidator) -> None:
    built = _build(
        validator,
        {"entity": "contacts", "fields": ["first_name"]},
        DataScopeFilter(account_ids=()),
    )
    assert "WHERE false" in built.sql


def test_grouped_report_wraps_aggregatable_fields(validator: ReportDefinitionValidator) -> None:
    built = _build(
        validator,
        {
            "entity": "donations",
            "fields": ["payment_status", "amount"],
            "groupBy": ["payment_status"],
            "aggregations": [{"field": "id", "function": "count", "alias": "gifts"}],
            "sort": [{"field": "gifts", "direction": "desc"}],
        },
    )

    selections = {item.key: item.aggregate for item in built.plan.selections}
    assert selections == {"payment_status": None, "amount": AggregateFunction.SUM, "gifts": AggregateFunction.COUNT}
    assert "sum(donations.amount) AS amount" in built.sql
    assert "count(donations.id) AS gifts" in built.sql
    assert "GROUP BY donations.payment_status" in built.sql
    assert "ORDER BY count(donations.id) DESC, donations.payment_status ASC" in built.sql


def test_non_aggregatable_fields_are_forced_into_group_by(validator: ReportDefinitionValidator) -> None:
    built = _build(
        validator,
        {
            "entity": "donations",
            "fields": ["payment_status", "campaign_name", "amount"],
            "groupBy": ["payment_status"],
        },
    )

    assert built.plan.group_by == (ColumnRef("payment_status"), ColumnRef("campaign_name"))
    assert "GROUP BY donations.payment_status, donations.campaign_name" in built.sql


def test_grouped_sort_on_ungrouped_column_is_unsupported(validator: ReportDefinitionValidator) -> None:
    with pytest.raises(UnsupportedOperationError) as exc_info:
        _build(
            validator,
            {
                "entity": "donations",
                "fields": ["payment_status"],
                "groupBy": ["payment_status"],
                "sort": [{"field": "donation_date", "direction": "asc"}],
            },
        )

    assert exc_info.value.details == {"field": "donation_date"}


def test_user_sort_keeps_primary_key_tie_breaker(validator: ReportDefinitionValidator) -> None:
    built = _build(
        validator,
        {
            "entity": "contacts",
            "fields": ["first_name"],
            "sort": [{"field": "last_name", "direction": "desc"}],
        },
    )
    assert "ORDER BY contacts.last_name DESC, contacts.id ASC" in built.sql


def test_count_statement_is_not_paginated(validator: ReportDefinitionValidator) -> None:
    built = _build(validator, {"entity": "contacts", "fields": ["first_name"], "limit": 5, "offset": 10})
    sql, _ = compile_statement(built.count_statement)

    assert "count(*)" in sql
    assert "LIMIT" not in sql
    assert "OFFSET" not in sql


def test_build_is_deterministic(validator: ReportDefinitionValidator) -> None:
    payload = {
        "entity": "donations",
        "fields": ["donor_last_name", "amount"],
        "filters": [{"field": "amount", "operator": "gte", "value": 25}],
    }
    scope = DataScopeFilter(created_by_user_ids=("user-2", "user-1"))

    first = _build(validator, payload, scope)
    second = _build(validator, payload, scope)
    assert first.sql == second.sql
    assert first.params == second.params
