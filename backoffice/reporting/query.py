from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Date, Select, and_, false, func, select, type_coerce
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Dialect
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.selectable import FromClause

from backoffice.reporting.catalog import ColumnRef, EntityDefinition
from backoffice.reporting.errors import UnsupportedOperationError
from backoffice.reporting.scope import CombinedFilter, MatchNothing, Predicate, PredicateNode
from backoffice.reporting.validator import (
    AggregateFunction,
    Operator,
    SortDirection,
    ValidatedReportDefinition,
)


_AGGREGATES = {
    AggregateFunction.SUM: func.sum,
    AggregateFunction.AVG: func.avg,
    AggregateFunction.COUNT: func.count,
    AggregateFunction.MIN: func.min,
    AggregateFunction.MAX: func.max,
}


@dataclass(frozen=True, slots=True)
class SelectItem:
    key: str
    source: ColumnRef
    aggregate: AggregateFunction | None = None


@dataclass(frozen=True, slots=True)
class OrderItem:
    direction: SortDirection
    source: ColumnRef | None = None
    select_key: str | None = None


@dataclass(frozen=True, slots=True)
class QueryPlan:
    entity: EntityDefinition
    selections: tuple[SelectItem, ...]
    joins: tuple[str, ...]
    predicates: tuple[PredicateNode, ...]
    group_by: tuple[ColumnRef, ...]
    order_by: tuple[OrderItem, ...]
    limit: int
    offset: int


@dataclass(frozen=True, slots=True)
class BuiltQuery:
    plan: QueryPlan
    statement: Select[Any]
    count_statement: Select[Any]
    sql: str
    params: dict[str, Any]

    @property
    def limit(self) -> int:
        return self.plan.limit

    @property
    def offset(self) -> int:
        return self.plan.offset


def compile_statement(statement: Select[Any], dialect: Dialect | None = None) -> tuple[str, dict[str, Any]]:
    compiled = statement.compile(
        dialect=dialect or postgresql.dialect(),
        compile_kwargs={"render_postcompile": True},
    )
    return str(compiled), dict(compiled.params)


class QueryBuilder:
    """Turns a validated report definition into a parameterized SELECT.

    The definition is first planned into a ``QueryPlan`` and the plan is rendered once
    through SQLAlchemy Core, so every user-supplied value travels as a bind parameter.
    """

    def build(
        self,
        validated: ValidatedReportDefinition,
        combined: CombinedFilter,
        *,
        limit_ceiling: int,
        dialect: Dialect | None = None,
    ) -> BuiltQuery:
        plan = self.plan(validated, combined, limit_ceiling=limit_ceiling)
        statement, count_statement = self.render(plan)
        sql, params = compile_statement(statement, dialect)
        return BuiltQuery(plan=plan, statement=statement, count_statement=count_statement, sql=sql, params=params)

    def plan(self, validated: ValidatedReportDefinition, combined: CombinedFilter, *, limit_ceiling: int) -> QueryPlan:
        entity = validated.entity
        primary_key = ColumnRef(entity.primary_key)
        selections: list[SelectItem] = []
        group_keys: list[ColumnRef] = []
        order: list[OrderItem] = []

        if validated.grouped:
            group_field_ids = [item.id for item in validated.group_by]
            group_keys = [item.source for item in validated.group_by]
            for item in validated.fields:
                if item.id in group_field_ids:
                    selections.append(SelectItem(key=item.id, source=item.source))
                elif item.aggregatable:
                    selections.append(SelectItem(key=item.id, source=item.source, aggregate=AggregateFunction.SUM))
                else:
                    group_field_ids.append(item.id)
                    group_keys.append(item.source)
                    selections.append(SelectItem(key=item.id, source=item.source))
            selected = {item.key for item in selections}
            for item in validated.group_by:
                if item.id not in selected:
                    selections.append(SelectItem(key=item.id, source=item.source))
            for aggregation in validated.aggregations:
                selections.append(
                    SelectItem(key=aggregation.alias, source=aggregation.field.source, aggregate=aggregation.function)
                )

            aggregated_keys = {item.key for item in selections if item.aggregate is not None}
            for sort in validated.sort:
                if sort.aggregation is not None or sort.key in aggregated_keys:
                    order.append(OrderItem(direction=sort.direction, select_key=sort.key))
                elif sort.field is not None and sort.field.source in group_keys:
                    order.append(OrderItem(direction=sort.direction, source=sort.field.source))
                else:
                    raise UnsupportedOperationError(
                        f"Cannot sort a grouped report by '{sort.key}'; sort by a grouped or aggregated field",
                        details={"field": sort.key},
                    )
            tie_breakers = group_keys
        else:
            selections = [SelectItem(key=item.id, source=item.source) for item in validated.fields]
            for sort in validated.sort:
                if sort.field is None:
                    raise UnsupportedOperationError(
                        f"Cannot sort by aggregate '{sort.key}' without grouping",
                        details={"field": sort.key},
                    )
                order.append(OrderItem(direction=sort.direction, source=sort.field.source))
            tie_breakers = [primary_key]

        ordered_sources = {item.source for item in order if item.source is not None}
        for source in tie_breakers:
            if source not in ordered_sources:
                order.append(OrderItem(direction=SortDirection.ASC, source=source))
                ordered_sources.add(source)

        predicates = combined.predicates
        refs: list[ColumnRef] = [item.source for item in selections]
        refs += [node.source for node in predicates if isinstance(node, Predicate)]
        refs += group_keys
        refs += [item.source for item in order if item.source is not None]

        requested = validated.limit if validated.limit is not None else limit_ceiling
        return QueryPlan(
            entity=entity,
            selections=tuple(selections),
            joins=_ordered_joins(entity, refs),
            predicates=predicates,
            group_by=tuple(group_keys),
            order_by=tuple(order),
            limit=max(1, min(requested, limit_ceiling)),
            offset=validated.offset,
        )

    def render(self, plan: QueryPlan) -> tuple[Select[Any], Select[Any]]:
        entity = plan.entity
        tables: dict[str | None, FromClause] = {None: entity.table}
        from_clause: FromClause = entity.table
        for key in plan.joins:
            join = entity.joins[key]
            target = join.table.alias(key)
            local = tables[join.local.join]
            from_clause = from_clause.outerjoin(target, target.c[join.remote_column] == local.c[join.local.column])
            tables[key] = target

        def column(ref: ColumnRef) -> ColumnElement[Any]:
            return tables[ref.join].c[ref.column]

        expressions: dict[str, ColumnElement[Any]] = {}
        for item in plan.selections:
            expression = column(item.source)
            if item.aggregate is not None:
                expression = _AGGREGATES[item.aggregate](expression)
            expressions[item.key] = expression

        unpaged = select(*(expression.label(key) for key, expression in expressions.items())).select_from(from_clause)
        if plan.predicates:
            unpaged = unpaged.where(and_(*(_render_predicate(node, column) for node in plan.predicates)))
        if plan.group_by:
            unpaged = unpaged.group_by(*(column(ref) for ref in plan.group_by))

        ordering: list[ColumnElement[Any]] = []
        for item in plan.order_by:
            expression = column(item.source) if item.source is not None else expressions[item.select_key or ""]
            ordering.append(expression.desc() if item.direction == SortDirection.DESC else expression.asc())

        statement = unpaged.order_by(*ordering).limit(plan.limit).offset(plan.offset)
        count_statement = select(func.count()).select_from(unpaged.subquery("report_rows"))
        return statement, count_statement


def _ordered_joins(entity: EntityDefinition, refs: list[ColumnRef]) -> tuple[str, ...]:
    ordered: list[str] = []

    def visit(key: str) -> None:
        if key in ordered:
            return
        dependency = entity.joins[key].local.join
        if dependency is not None:
            visit(dependency)
        ordered.append(key)

    for ref in refs:
        if ref.join is not None:
            visit(ref.join)
    return tuple(ordered)


def _render_predicate(node: PredicateNode, column: Any) -> ColumnElement[bool]:
    if isinstance(node, MatchNothing):
        return false()

    target = column(node.source)
    if node.truncate_to_date:
        target = type_coerce(func.date(target), Date())

    value = node.value
    if node.operator == Operator.EQ:
        return target == value
    if node.operator == Operator.NEQ:
        return target.is_distinct_from(value)
    if node.operator == Operator.GT:
        return target > value
    if node.operator == Operator.GTE:
        return target >= value
    if node.operator == Operator.LT:
        return target < value
    if node.operator == Operator.LTE:
        return target <= value
    if node.operator == Operator.CONTAINS:
        return target.icontains(value, autoescape=True)
    if node.operator == Operator.IN:
        return target.in_(value)
    if node.operator == Operator.BETWEEN:
        low, high = value
        return target.between(low, high)
    raise UnsupportedOperationError(f"Operator '{node.operator}' cannot be rendered")
