"""
Query Plan types for NL2SQL generation.

A QueryPlan is the dialect-neutral structure of one SELECT statement. Plans
are built by the pattern library, the AI plan generator or the fallback
heuristics, repaired by the validator, narrowed by the permission engine and
finally compiled by the SQL builder.

The pydantic models at the bottom of this module define the exact JSON shape
the structured-generation service must emit; ``QueryPlanModel.to_plan()``
converts a validated reply into the dataclasses used everywhere else.
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

AGGREGATIONS = ("COUNT", "SUM", "AVG", "MAX", "MIN")
JOIN_TYPES = ("INNER", "LEFT", "RIGHT", "FULL")
OPERATORS = (
    "=", "!=", "<>", "<", ">", "<=", ">=",
    "LIKE", "NOT LIKE", "IN", "NOT IN",
    "IS NULL", "IS NOT NULL", "BETWEEN", "EXISTS", "NOT EXISTS",
)
COMPARISON_OPERATORS = ("=", "!=", "<>", "<", ">", "<=", ">=")
VISUALIZATIONS = ("table", "pie", "bar", "line", "scatter", "heatmap", "funnel")
DATE_PARTS = ("year", "month", "day")

TENANT_COLUMN = "tenantId"


@dataclass
class PlanColumn:
    """A selected column, optionally aggregated or reduced to a date part."""

    table: str
    column: str
    alias: Optional[str] = None
    aggregation: Optional[str] = None
    expression: Optional[str] = None
    date_part: Optional[str] = None

    @property
    def is_aggregated(self) -> bool:
        return self.aggregation is not None


@dataclass
class JoinCondition:
    """Equality between two columns."""

    left_table: str
    left_column: str
    right_table: str
    right_column: str


@dataclass
class PlanJoin:
    """A join of ``table`` onto the plan."""

    type: str
    table: str
    on: JoinCondition


@dataclass
class PlanCondition:
    """
    A WHERE predicate.

    ``value`` is used by single-operand operators and BETWEEN (a two-item
    list), ``values`` by IN / NOT IN, and ``subquery`` by IN / NOT IN /
    EXISTS / NOT EXISTS. Subqueries are structured plans; a raw string here
    is rejected before compilation.
    """

    table: str
    column: str
    operator: str
    value: Any = None
    values: Optional[list] = None
    subquery: Optional[Union["QueryPlan", str]] = None

    def is_tenant_scope(self, tenant_id: Optional[str] = None) -> bool:
        if self.column != TENANT_COLUMN or self.operator != "=":
            return False
        return tenant_id is None or self.value == tenant_id


@dataclass
class GroupByItem:
    """A GROUP BY entry."""

    table: str
    column: str
    expression: Optional[str] = None
    date_part: Optional[str] = None


@dataclass
class HavingCondition:
    """A HAVING predicate over an aggregate, e.g. ``SUM(amount) > :p``."""

    aggregation: str
    operator: str
    value: Any
    table: Optional[str] = None
    column: str = "*"


@dataclass
class OrderByItem:
    """An ORDER BY entry. ``table`` is None when ordering by a select alias."""

    table: Optional[str]
    column: str
    direction: str = "ASC"


@dataclass
class CommonTableExpression:
    """A named sub-plan compiled into a WITH clause."""

    name: str
    query: Union["QueryPlan", str]


@dataclass
class QueryPlan:
    """Abstract, dialect-neutral structure of one SQL statement."""

    primary_table: str
    columns: list[PlanColumn] = field(default_factory=list)
    joins: list[PlanJoin] = field(default_factory=list)
    conditions: list[PlanCondition] = field(default_factory=list)
    group_by: list[GroupByItem] = field(default_factory=list)
    having: list[HavingCondition] = field(default_factory=list)
    order_by: list[OrderByItem] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    ctes: list[CommonTableExpression] = field(default_factory=list)
    visualization: Optional[str] = None

    def has_aggregation(self) -> bool:
        return any(col.is_aggregated for col in self.columns)

    def non_aggregated_columns(self) -> list[PlanColumn]:
        return [
            col for col in self.columns
            if not col.is_aggregated and col.column != "*"
        ]

    def tables(self) -> list[str]:
        """The primary table followed by every joined table."""
        names = [self.primary_table]
        for join in self.joins:
            if join.table not in names:
                names.append(join.table)
        return names

    def has_tenant_condition(self, tenant_id: Optional[str] = None) -> bool:
        return any(c.is_tenant_scope(tenant_id) for c in self.conditions)

    def copy(self) -> "QueryPlan":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """Convert to the camelCase JSON shape used by the generation service."""
        result: dict[str, Any] = {
            "primaryTable": self.primary_table,
            "columns": [_drop_none({
                "table": c.table,
                "column": c.column,
                "alias": c.alias,
                "aggregation": c.aggregation,
                "expression": c.expression,
                "datePart": c.date_part,
            }) for c in self.columns],
        }
        if self.joins:
            result["joins"] = [{
                "type": j.type,
                "table": j.table,
                "on": {
                    "leftTable": j.on.left_table,
                    "leftColumn": j.on.left_column,
                    "rightTable": j.on.right_table,
                    "rightColumn": j.on.right_column,
                },
            } for j in self.joins]
        if self.conditions:
            result["conditions"] = [_drop_none({
                "table": c.table,
                "column": c.column,
                "operator": c.operator,
                "value": c.value,
                "values": c.values,
                "subquery": (
                    c.subquery.to_dict() if isinstance(c.subquery, QueryPlan) else c.subquery
                ),
            }) for c in self.conditions]
        if self.group_by:
            result["groupBy"] = [_drop_none({
                "table": g.table,
                "column": g.column,
                "expression": g.expression,
                "datePart": g.date_part,
            }) for g in self.group_by]
        if self.having:
            result["having"] = [_drop_none({
                "aggregation": h.aggregation,
                "table": h.table,
                "column": h.column,
                "operator": h.operator,
                "value": h.value,
            }) for h in self.having]
        if self.order_by:
            result["orderBy"] = [_drop_none({
                "table": o.table,
                "column": o.column,
                "direction": o.direction,
            }) for o in self.order_by]
        if self.ctes:
            result["ctes"] = [{
                "name": cte.name,
                "query": cte.query.to_dict() if isinstance(cte.query, QueryPlan) else cte.query,
            } for cte in self.ctes]
        if self.limit is not None:
            result["limit"] = self.limit
        if self.offset is not None:
            result["offset"] = self.offset
        if self.visualization:
            result["visualization"] = self.visualization
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "QueryPlan":
        """Parse the camelCase JSON shape (raises pydantic.ValidationError)."""
        return QueryPlanModel.model_validate(data).to_plan()


@dataclass
class QueryContext:
    """Who is asking, and on behalf of which tenant."""

    tenant_id: str
    caller_id: str
    caller_role: str
    department: Optional[str] = None


def _drop_none(values: dict) -> dict:
    return {k: v for k, v in values.items() if v is not None}


# ---------------------------------------------------------------------------
# Structured-generation contract
# ---------------------------------------------------------------------------

_HAVING_PATTERN = re.compile(
    r"^\s*(COUNT|SUM|AVG|MAX|MIN)\s*\(\s*(?:([A-Za-z_]\w*)\.)?(\*|[A-Za-z_]\w*)\s*\)\s*$",
    re.IGNORECASE,
)


class _PlanModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ColumnModel(_PlanModel):
    table: str
    column: str
    alias: Optional[str] = None
    aggregation: Optional[Literal["COUNT", "SUM", "AVG", "MAX", "MIN"]] = None
    expression: Optional[str] = None
    date_part: Optional[Literal["year", "month", "day"]] = Field(None, alias="datePart")

    @field_validator("aggregation", mode="before")
    @classmethod
    def _upper_aggregation(cls, value):
        return value.upper() if isinstance(value, str) else value


class JoinOnModel(_PlanModel):
    left_table: str = Field(alias="leftTable")
    left_column: str = Field(alias="leftColumn")
    right_table: str = Field(alias="rightTable")
    right_column: str = Field(alias="rightColumn")


class JoinModel(_PlanModel):
    type: Literal["INNER", "LEFT", "RIGHT", "FULL"] = "LEFT"
    table: str
    on: JoinOnModel

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, value):
        return value.upper() if isinstance(value, str) else value


class ConditionModel(_PlanModel):
    table: str
    column: str
    operator: Literal[
        "=", "!=", "<>", "<", ">", "<=", ">=",
        "LIKE", "NOT LIKE", "IN", "NOT IN",
        "IS NULL", "IS NOT NULL", "BETWEEN", "EXISTS", "NOT EXISTS",
    ]
    value: Any = None
    values: Optional[list[Any]] = None
    subquery: Optional[Union["QueryPlanModel", str]] = None

    @field_validator("operator", mode="before")
    @classmethod
    def _upper_operator(cls, value):
        return " ".join(value.upper().split()) if isinstance(value, str) else value


class GroupByModel(_PlanModel):
    table: str
    column: str
    expression: Optional[str] = None
    date_part: Optional[Literal["year", "month", "day"]] = Field(None, alias="datePart")


class HavingModel(_PlanModel):
    aggregation: str
    operator: Literal["=", "!=", "<>", "<", ">", "<=", ">="]
    value: Any
    table: Optional[str] = None
    column: Optional[str] = None

    @field_validator("aggregation")
    @classmethod
    def _check_aggregation(cls, value: str) -> str:
        if value.upper() in AGGREGATIONS or _HAVING_PATTERN.match(value):
            return value
        raise ValueError(f"Unsupported HAVING aggregation: {value}")

    def to_condition(self) -> HavingCondition:
        match = _HAVING_PATTERN.match(self.aggregation)
        if match:
            function, table, column = match.groups()
            return HavingCondition(
                aggregation=function.upper(),
                operator=self.operator,
                value=self.value,
                table=table or self.table,
                column=column,
            )
        return HavingCondition(
            aggregation=self.aggregation.upper(),
            operator=self.operator,
            value=self.value,
            table=self.table,
            column=self.column or "*",
        )


class OrderByModel(_PlanModel):
    table: Optional[str] = None
    column: str
    direction: Literal["ASC", "DESC"] = "ASC"

    @field_validator("direction", mode="before")
    @classmethod
    def _upper_direction(cls, value):
        return value.upper() if isinstance(value, str) else value


class CTEModel(_PlanModel):
    name: str
    query: Union["QueryPlanModel", str]


class QueryPlanModel(_PlanModel):
    """The exact plan shape the structured-generation service must return."""

    primary_table: str = Field(alias="primaryTable")
    columns: list[ColumnModel] = Field(default_factory=list)
    joins: list[JoinModel] = Field(default_factory=list)
    conditions: list[ConditionModel] = Field(default_factory=list)
    group_by: list[GroupByModel] = Field(default_factory=list, alias="groupBy")
    having: list[HavingModel] = Field(default_factory=list)
    order_by: list[OrderByModel] = Field(default_factory=list, alias="orderBy")
    limit: Optional[int] = Field(None, ge=0)
    offset: Optional[int] = Field(None, ge=0)
    ctes: list[CTEModel] = Field(default_factory=list)
    visualization: Optional[Literal[
        "table", "pie", "bar", "line", "scatter", "heatmap", "funnel"
    ]] = None

    @field_validator("joins", "conditions", "group_by", "having", "order_by", "ctes", "columns", mode="before")
    @classmethod
    def _none_to_list(cls, value):
        return [] if value is None else value

    def to_plan(self) -> QueryPlan:
        return QueryPlan(
            primary_table=self.primary_table,
            columns=[
                PlanColumn(
                    table=c.table,
                    column=c.column,
                    alias=c.alias,
                    aggregation=c.aggregation,
                    expression=c.expression,
                    date_part=c.date_part,
                )
                for c in self.columns
            ],
            joins=[
                PlanJoin(
                    type=j.type,
                    table=j.table,
                    on=JoinCondition(
                        left_table=j.on.left_table,
                        left_column=j.on.left_column,
                        right_table=j.on.right_table,
                        right_column=j.on.right_column,
                    ),
                )
                for j in self.joins
            ],
            conditions=[
                PlanCondition(
                    table=c.table,
                    column=c.column,
                    operator=c.operator,
                    value=c.value,
                    values=c.values,
                    subquery=(
                        c.subquery.to_plan()
                        if isinstance(c.subquery, QueryPlanModel)
                        else c.subquery
                    ),
                )
                for c in self.conditions
            ],
            group_by=[
                GroupByItem(
                    table=g.table,
                    column=g.column,
                    expression=g.expression,
                    date_part=g.date_part,
                )
                for g in self.group_by
            ],
            having=[h.to_condition() for h in self.having],
            order_by=[
                OrderByItem(table=o.table, column=o.column, direction=o.direction)
                for o in self.order_by
            ],
            limit=self.limit,
            offset=self.offset,
            ctes=[
                CommonTableExpression(
                    name=cte.name,
                    query=cte.query.to_plan() if isinstance(cte.query, QueryPlanModel) else cte.query,
                )
                for cte in self.ctes
            ],
            visualization=self.visualization,
        )


ConditionModel.model_rebuild()
CTEModel.model_rebuild()
QueryPlanModel.model_rebuild()
