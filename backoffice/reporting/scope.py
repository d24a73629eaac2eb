from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from backoffice.platform.security.scope import DataScopeFilter, ScopeDimension
from backoffice.reporting.catalog import ColumnRef, EntityDefinition
from backoffice.reporting.validator import Operator, ValidatedFilter


_UUID_DIMENSIONS = {ScopeDimension.ACCOUNT, ScopeDimension.CONTACT}


@dataclass(frozen=True, slots=True)
class Predicate:
    source: ColumnRef
    operator: Operator
    value: Any
    truncate_to_date: bool = False


@dataclass(frozen=True, slots=True)
class MatchNothing:
    reason: str


PredicateNode = Predicate | MatchNothing


@dataclass(frozen=True, slots=True)
class ScopeRestriction:
    dimension: ScopeDimension
    node: PredicateNode

    @property
    def matches_nothing(self) -> bool:
        return isinstance(self.node, MatchNothing)


@dataclass(frozen=True, slots=True)
class CombinedFilter:
    """User filters and scope restrictions; every node is ANDed together."""

    filters: tuple[Predicate, ...] = ()
    restrictions: tuple[ScopeRestriction, ...] = ()

    @property
    def predicates(self) -> tuple[PredicateNode, ...]:
        return self.filters + tuple(item.node for item in self.restrictions)

    @property
    def is_scoped(self) -> bool:
        return bool(self.restrictions)


def filter_predicate(clause: ValidatedFilter) -> Predicate:
    return Predicate(
        source=clause.field.source,
        operator=clause.operator,
        value=clause.value,
        truncate_to_date=clause.field.is_timestamp,
    )


def merge(
    scope: DataScopeFilter | None,
    report_filters: Iterable[ValidatedFilter],
    *,
    entity: EntityDefinition,
) -> CombinedFilter:
    """AND the caller's data scope into the report filters.

    A present but empty scope dimension, or one the entity has no column for, matches
    nothing. Values that cannot match the column type are dropped first.
    """

    filters = tuple(filter_predicate(clause) for clause in report_filters)
    if scope is None or scope.is_unrestricted:
        return CombinedFilter(filters=filters)

    restrictions: list[ScopeRestriction] = []
    for dimension, raw_values in scope.dimensions().items():
        column = entity.scope_columns.get(dimension)
        if column is None:
            node: PredicateNode = MatchNothing(f"{entity.name} has no {dimension.value} column")
        else:
            values = _scope_values(dimension, raw_values)
            if values:
                node = Predicate(source=column, operator=Operator.IN, value=values)
            else:
                node = MatchNothing(f"empty {dimension.value} scope")
        restrictions.append(ScopeRestriction(dimension=dimension, node=node))
    return CombinedFilter(filters=filters, restrictions=tuple(restrictions))


def _scope_values(dimension: ScopeDimension, raw_values: tuple[str, ...]) -> tuple[Any, ...]:
    if dimension not in _UUID_DIMENSIONS:
        return tuple(sorted(set(raw_values)))

    parsed: set[uuid.UUID] = set()
    for raw in raw_values:
        try:
            parsed.add(uuid.UUID(raw))
        except ValueError:
            continue
    return tuple(sorted(parsed))
