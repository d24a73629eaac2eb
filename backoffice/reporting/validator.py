from __future__ import annotations

import math
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from backoffice.platform.security.errors import ForbiddenFieldError
from backoffice.platform.security.policies import FieldDecision
from backoffice.reporting.catalog import EntityDefinition, FieldCatalog, FieldDefinition, FieldType
from backoffice.reporting.errors import ReportValidationError, ValidationIssue
from backoffice.reporting.schemas import ReportDefinitionIn


class Operator(StrEnum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    IN = "in"
    BETWEEN = "between"


class AggregateFunction(StrEnum):
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"


class SortDirection(StrEnum):
    ASC = "asc"
    DESC = "desc"


_COMPARISONS = {Operator.EQ, Operator.NEQ, Operator.GT, Operator.LT, Operator.GTE, Operator.LTE}

OPERATORS_BY_TYPE: Mapping[FieldType, frozenset[Operator]] = {
    FieldType.STRING: frozenset({Operator.EQ, Operator.NEQ, Operator.CONTAINS, Operator.IN}),
    FieldType.ENUM: frozenset({Operator.EQ, Operator.NEQ, Operator.IN}),
    FieldType.NUMBER: frozenset(_COMPARISONS | {Operator.IN, Operator.BETWEEN}),
    FieldType.DATE: frozenset(_COMPARISONS | {Operator.BETWEEN}),
    FieldType.BOOLEAN: frozenset({Operator.EQ, Operator.NEQ}),
}
UUID_OPERATORS = frozenset({Operator.EQ, Operator.NEQ, Operator.IN})

MAX_IN_VALUES = 1000
MAX_NUMBER_EXPONENT = 38
_NUMBER_BOUND = 10**MAX_NUMBER_EXPONENT
_ALIAS_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
_TRUE_VALUES = {"true", "1", "yes"}
_FALSE_VALUES = {"false", "0", "no"}


def allowed_operators(definition: FieldDefinition) -> frozenset[Operator]:
    if definition.is_uuid:
        return UUID_OPERATORS
    return OPERATORS_BY_TYPE[definition.type]


@dataclass(frozen=True, slots=True)
class ValidatedFilter:
    field: FieldDefinition
    operator: Operator
    value: Any


@dataclass(frozen=True, slots=True)
class ValidatedAggregation:
    field: FieldDefinition
    function: AggregateFunction
    alias: str

    @property
    def label(self) -> str:
        return f"{self.function.value.capitalize()} of {self.field.label}"


@dataclass(frozen=True, slots=True)
class ValidatedSort:
    key: str
    direction: SortDirection
    field: FieldDefinition | None = None
    aggregation: ValidatedAggregation | None = None


@dataclass(frozen=True, slots=True)
class ValidatedReportDefinition:
    entity: EntityDefinition
    fields: tuple[FieldDefinition, ...]
    filters: tuple[ValidatedFilter, ...] = ()
    group_by: tuple[FieldDefinition, ...] = ()
    aggregations: tuple[ValidatedAggregation, ...] = ()
    sort: tuple[ValidatedSort, ...] = ()
    limit: int | None = None
    offset: int = 0
    name: str | None = None
    masked_fields: frozenset[str] = field(default_factory=frozenset)

    @property
    def grouped(self) -> bool:
        return bool(self.group_by or self.aggregations)


class _ValueProblem(ValueError):
    pass


@dataclass(slots=True)
class ReportDefinitionValidator:
    """Checks a client report definition against the field catalog.

    All problems are collected and raised together as one ``ReportValidationError``.
    References to fields the caller may not read raise ``ForbiddenFieldError`` before
    anything else is reported.
    """

    catalog: FieldCatalog

    def validate(
        self,
        definition: ReportDefinitionIn,
        *,
        field_access: Mapping[str, FieldDecision] | None = None,
    ) -> ValidatedReportDefinition:
        if not definition.entity:
            raise ReportValidationError([ValidationIssue("entity", "required", "Entity is required")])

        entity = self.catalog.get_entity(definition.entity)
        access = field_access or {}
        state = _ValidationState(entity=entity, access=access)

        if not definition.fields:
            state.issue("fields", "required", "At least one field must be selected")

        selected = self._resolve_selection(state, definition)
        group_by = self._resolve_group_by(state, definition)
        aggregations = self._resolve_aggregations(state, definition)
        grouped = bool(group_by or aggregations)
        if grouped:
            for item in selected:
                if item.id in state.masked:
                    state.issue(item.id, "masked_field", f"Field '{item.id}' is masked and cannot be used in a grouped report")
        filters = self._resolve_filters(state, definition)
        sort = self._resolve_sort(state, definition, aggregations)

        if definition.limit is not None and definition.limit < 1:
            state.issue("limit", "invalid_limit", "limit must be at least 1")
        if definition.offset is not None and definition.offset < 0:
            state.issue("offset", "invalid_offset", "offset must not be negative")

        if state.denied:
            raise ForbiddenFieldError(f"reports.{entity.name}", state.denied)
        if state.issues:
            raise ReportValidationError(state.issues)

        return ValidatedReportDefinition(
            entity=entity,
            fields=tuple(selected),
            filters=tuple(filters),
            group_by=tuple(group_by),
            aggregations=tuple(aggregations),
            sort=tuple(sort),
            limit=definition.limit,
            offset=definition.offset or 0,
            name=definition.name,
            masked_fields=frozenset(item.id for item in selected if item.id in state.masked),
        )

    def _resolve_selection(self, state: _ValidationState, definition: ReportDefinitionIn) -> list[FieldDefinition]:
        selected: list[FieldDefinition] = []
        seen: set[str] = set()
        for field_id in definition.fields:
            resolved = state.resolve(field_id, "fields", allow_masked=True)
            if resolved is None:
                continue
            if resolved.id in seen:
                state.issue(field_id, "duplicate_field", f"Field '{field_id}' is selected more than once")
                continue
            seen.add(resolved.id)
            selected.append(resolved)
        return selected

    def _resolve_group_by(self, state: _ValidationState, definition: ReportDefinitionIn) -> list[FieldDefinition]:
        group_by: list[FieldDefinition] = []
        for field_id in definition.group_by:
            resolved = state.resolve(field_id, "groupBy")
            if resolved is None:
                continue
            if resolved in group_by:
                state.issue(field_id, "duplicate_field", f"Field '{field_id}' is grouped more than once")
                continue
            group_by.append(resolved)
        return group_by

    def _resolve_aggregations(self, state: _ValidationState, definition: ReportDefinitionIn) -> list[ValidatedAggregation]:
        aggregations: list[ValidatedAggregation] = []
        output_keys = set(definition.fields) | set(definition.group_by)
        for item in definition.aggregations:
            resolved = state.resolve(item.field, "aggregations")
            try:
                function = AggregateFunction(item.function.lower())
            except ValueError:
                state.issue(item.field, "invalid_aggregation", f"Unknown aggregation function '{item.function}'")
                continue
            if resolved is None:
                continue

            if function in {AggregateFunction.SUM, AggregateFunction.AVG} and not resolved.aggregatable:
                state.issue(item.field, "not_aggregatable", f"Field '{item.field}' cannot be aggregated with {function.value}")
                continue
            if function in {AggregateFunction.MIN, AggregateFunction.MAX} and resolved.type not in {FieldType.NUMBER, FieldType.DATE}:
                state.issue(item.field, "not_aggregatable", f"Field '{item.field}' cannot be aggregated with {function.value}")
                continue

            alias = item.alias or f"{function.value}_{resolved.id}"
            if not _ALIAS_RE.match(alias):
                state.issue(alias, "invalid_alias", f"Aggregation alias '{alias}' must be a plain identifier")
                continue
            if alias in output_keys or state.entity.field_map().get(alias) is not None:
                state.issue(alias, "alias_conflict", f"Aggregation alias '{alias}' collides with a field")
                continue
            output_keys.add(alias)
            aggregations.append(ValidatedAggregation(field=resolved, function=function, alias=alias))
        return aggregations

    def _resolve_filters(self, state: _ValidationState, definition: ReportDefinitionIn) -> list[ValidatedFilter]:
        filters: list[ValidatedFilter] = []
        for clause in definition.filters:
            resolved = state.resolve(clause.field, "filters")
            if resolved is None:
                continue
            if not resolved.filterable:
                state.issue(clause.field, "not_filterable", f"Field '{clause.field}' cannot be filtered")
                continue
            try:
                operator = Operator(clause.operator.lower())
            except ValueError:
                state.issue(clause.field, "invalid_operator", f"Unknown operator '{clause.operator}'")
                continue
            if operator not in allowed_operators(resolved):
                state.issue(
                    clause.field,
                    "unsupported_operator",
                    f"Operator '{operator.value}' is not supported for {resolved.type.value} field '{clause.field}'",
                )
                continue
            try:
                value = coerce_filter_value(resolved, operator, clause.value)
            except _ValueProblem as exc:
                state.issue(clause.field, "invalid_value", f"Invalid value for '{clause.field}' ({operator.value}): {exc}")
                continue
            filters.append(ValidatedFilter(field=resolved, operator=operator, value=value))
        return filters

    def _resolve_sort(
        self,
        state: _ValidationState,
        definition: ReportDefinitionIn,
        aggregations: list[ValidatedAggregation],
    ) -> list[ValidatedSort]:
        by_alias = {item.alias: item for item in aggregations}
        sort: list[ValidatedSort] = []
        for item in definition.sort:
            try:
                direction = SortDirection(item.direction.lower())
            except ValueError:
                state.issue(item.field, "invalid_direction", f"Sort direction must be 'asc' or 'desc', got '{item.direction}'")
                continue
            aggregation = by_alias.get(item.field)
            if aggregation is not None:
                sort.append(ValidatedSort(key=item.field, direction=direction, aggregation=aggregation))
                continue
            resolved = state.resolve(item.field, "sort")
            if resolved is None:
                continue
            if not resolved.sortable:
                state.issue(item.field, "not_sortable", f"Field '{item.field}' cannot be sorted")
                continue
            sort.append(ValidatedSort(key=resolved.id, direction=direction, field=resolved))
        return sort


@dataclass(slots=True)
class _ValidationState:
    entity: EntityDefinition
    access: Mapping[str, FieldDecision]
    issues: list[ValidationIssue] = field(default_factory=list)
    denied: list[str] = field(default_factory=list)
    masked: set[str] = field(default_factory=set)

    def issue(self, field_name: str | None, code: str, message: str) -> None:
        self.issues.append(ValidationIssue(field_name, code, message))

    def resolve(self, field_id: str, section: str, *, allow_masked: bool = False) -> FieldDefinition | None:
        resolved = self.entity.field_map().get(field_id)
        if resolved is None:
            self.issue(field_id, "unknown_field", f"Unknown field '{field_id}' for entity '{self.entity.name}'")
            return None
        decision = self.access.get(field_id, FieldDecision.ALLOW)
        if decision == FieldDecision.DENY:
            if field_id not in self.denied:
                self.denied.append(field_id)
            return None
        if decision == FieldDecision.MASK:
            self.masked.add(field_id)
            if not allow_masked:
                self.issue(field_id, "masked_field", f"Field '{field_id}' is masked and cannot be used in {section}")
                return None
        return resolved


def coerce_filter_value(definition: FieldDefinition, operator: Operator, raw: Any) -> Any:
    if operator == Operator.CONTAINS:
        if not isinstance(raw, str) or not raw.strip():
            raise _ValueProblem("a non-empty text value is required")
        return raw

    if operator == Operator.IN:
        items = _as_list(raw)
        if not items:
            raise _ValueProblem("at least one value is required")
        if len(items) > MAX_IN_VALUES:
            raise _ValueProblem(f"at most {MAX_IN_VALUES} values are accepted")
        values: list[Any] = []
        for item in items:
            coerced = _coerce_scalar(definition, item)
            if coerced not in values:
                values.append(coerced)
        return tuple(values)

    if operator == Operator.BETWEEN:
        items = _as_list(raw)
        if len(items) != 2:
            raise _ValueProblem("exactly two values are required")
        low, high = (_coerce_scalar(definition, item) for item in items)
        if low > high:
            raise _ValueProblem("the lower bound must not exceed the upper bound")
        return (low, high)

    if isinstance(raw, (list, tuple, dict)):
        raise _ValueProblem("a single value is required")
    return _coerce_scalar(definition, raw)


def _as_list(raw: Any) -> list[Any]:
    if isinstance(raw, (list, tuple)):
        return list(raw)
    if isinstance(raw, str):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return []


def _coerce_scalar(definition: FieldDefinition, raw: Any) -> Any:
    if raw is None or (isinstance(raw, str) and not raw.strip() and definition.type != FieldType.STRING):
        raise _ValueProblem("a value is required")
    if isinstance(raw, (list, tuple, dict)):
        raise _ValueProblem("nested values are not supported")

    if definition.is_uuid:
        try:
            return raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw).strip())
        except ValueError as exc:
            raise _ValueProblem("a UUID is required") from exc

    if definition.type == FieldType.STRING:
        if isinstance(raw, bool):
            raise _ValueProblem("a text value is required")
        return str(raw)

    if definition.type == FieldType.ENUM:
        value = str(raw)
        if value not in definition.options:
            raise _ValueProblem(f"must be one of: {', '.join(definition.options)}")
        return value

    if definition.type == FieldType.NUMBER:
        return _coerce_number(raw)

    if definition.type == FieldType.DATE:
        return _coerce_date(raw)

    return _coerce_boolean(raw)


def _coerce_number(raw: Any) -> int | float:
    if isinstance(raw, bool):
        raise _ValueProblem("a number is required")
    if isinstance(raw, int):
        if abs(raw) >= _NUMBER_BOUND:
            raise _ValueProblem("the number is out of range")
        return raw
    if isinstance(raw, float):
        if not math.isfinite(raw):
            raise _ValueProblem("a finite number is required")
        if abs(raw) >= _NUMBER_BOUND:
            raise _ValueProblem("the number is out of range")
        return int(raw) if raw.is_integer() else raw
    try:
        parsed = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise _ValueProblem("a number is required") from exc
    if not parsed.is_finite():
        raise _ValueProblem("a finite number is required")
    if parsed.is_zero():
        return 0
    # bounded before any int() or float() conversion
    if not -MAX_NUMBER_EXPONENT <= parsed.adjusted() < MAX_NUMBER_EXPONENT:
        raise _ValueProblem("the number is out of range")
    if parsed == parsed.to_integral_value():
        return int(parsed)
    return float(parsed)


def _coerce_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str):
        raise _ValueProblem("an ISO-8601 date is required")
    text = raw.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError as exc:
        raise _ValueProblem("an ISO-8601 date is required") from exc


def _coerce_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int) and raw in {0, 1}:
        return bool(raw)
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise _ValueProblem("true or false is required")
