"""
Dialect-aware SQL Builder.

Compiles a validated, permission-filtered QueryPlan into parameterized SQL
for one relational engine. Only schema-derived identifiers are quoted and
concatenated into the SQL text; every value travels as a parameter.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..data_sources.schema_types import DatabaseType
from .dialects import SQLDialect, get_dialect
from .errors import SQLAssemblyError
from .query_plan import (
    AGGREGATIONS,
    COMPARISON_OPERATORS,
    DATE_PARTS,
    JOIN_TYPES,
    GroupByItem,
    PlanColumn,
    PlanCondition,
    QueryPlan,
)

logger = logging.getLogger(__name__)

TABLE_ALIASES = {
    "deals": "d",
    "accounts": "a",
    "contacts": "c",
    "activities": "act",
    "users": "u",
}

SINGLE_VALUE_OPERATORS = COMPARISON_OPERATORS + ("LIKE", "NOT LIKE")


@dataclass
class SQLResult:
    """Parameterized SQL ready for execution."""

    sql: str
    parameters: list[Any] = field(default_factory=list)
    visualization: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "sql": self.sql,
            "parameters": self.parameters,
            "visualization": self.visualization,
        }


class SQLBuilder:
    """
    Turns a QueryPlan into SQL text plus an ordered parameter list.

    Building is a pure function of the plan and the dialect: the same plan
    always yields identical SQL and parameter order.
    """

    def __init__(self, dialect: Union[SQLDialect, DatabaseType, str, None] = None):
        if isinstance(dialect, SQLDialect):
            self.dialect = dialect
        else:
            self.dialect = get_dialect(dialect)

    def build(self, plan: QueryPlan) -> SQLResult:
        """
        Compile a plan.

        Args:
            plan: Validated and permission-filtered query plan

        Returns:
            SQLResult with SQL, parameters and visualization hint

        Raises:
            SQLAssemblyError: If the plan carries raw SQL fragments,
                unknown aggregations or operators, or untraceable identifiers
        """
        parameters: list[Any] = []
        sql = self._compile(plan, parameters)

        logger.debug(f"Generated SQL: {sql}")
        logger.debug(f"Parameters: {parameters}")

        return SQLResult(sql=sql, parameters=parameters, visualization=plan.visualization)

    def build_fragment(self, plan: QueryPlan, parameters: list) -> str:
        """Compile a nested statement, continuing an existing parameter list."""
        return self._compile(plan, parameters)

    def _compile(self, plan: QueryPlan, parameters: list) -> str:
        aliases = self.create_table_aliases(plan)

        cte_clause = self._build_cte_clause(plan, parameters)
        parts = [
            self._build_select_clause(plan, aliases),
            self._build_from_clause(plan, aliases),
            *self._build_join_clauses(plan, aliases),
            self._build_where_clause(plan, aliases, parameters),
            self._build_group_by_clause(plan, aliases),
            self._build_having_clause(plan, aliases, parameters),
            self._build_order_by_clause(plan, aliases),
            self.dialect.limit_clause(plan.limit, plan.offset),
        ]
        main_query = "\n".join(part for part in parts if part)
        return f"{cte_clause}\n{main_query}" if cte_clause else main_query

    def create_table_aliases(self, plan: QueryPlan) -> dict[str, str]:
        """Collision-free aliases: domain prefix, then initials, then positional."""
        aliases: dict[str, str] = {}
        used: set[str] = set()

        for position, table in enumerate(plan.tables(), start=1):
            candidates = [
                TABLE_ALIASES.get(table),
                "".join(part[0] for part in table.split("_") if part).lower(),
            ]
            alias = next((c for c in candidates if c and c not in used), None)
            if alias is None:
                alias = f"t{position}"
                while alias in used:
                    position += 1
                    alias = f"t{position}"
            aliases[table] = alias
            used.add(alias)

        return aliases

    def _build_cte_clause(self, plan: QueryPlan, parameters: list) -> str:
        if not plan.ctes:
            return ""
        if not self.dialect.supports_cte():
            raise SQLAssemblyError(
                f"Dialect {self.dialect.database_type.value} does not support CTEs"
            )

        ctes = []
        for cte in plan.ctes:
            if not isinstance(cte.query, QueryPlan):
                raise SQLAssemblyError(
                    f"CTE '{cte.name}' carries raw SQL instead of a structured plan"
                )
            body = self._compile(cte.query, parameters)
            ctes.append(f"{self.dialect.quote_identifier(cte.name)} AS ({body})")
        return f"WITH {', '.join(ctes)}"

    def _build_select_clause(self, plan: QueryPlan, aliases: dict[str, str]) -> str:
        if not plan.columns:
            return "SELECT *"

        columns = []
        for col in plan.columns:
            rendered = self._render_column(col, aliases)
            if col.alias:
                rendered += f" AS {self.dialect.quote_identifier(col.alias)}"
            columns.append(rendered)
        return f"SELECT {', '.join(columns)}"

    def _render_column(self, col: PlanColumn, aliases: dict[str, str]) -> str:
        if col.expression:
            raise SQLAssemblyError(
                f"Raw expression reached the SQL builder: {col.expression}",
                details={"table": col.table, "column": col.column},
            )

        if col.column == "*":
            target = "*" if col.aggregation else f"{self._alias(col.table, aliases)}.*"
        else:
            target = self._date_part(
                self._qualified(col.table, col.column, aliases), col.date_part
            )

        if col.aggregation:
            if col.aggregation not in AGGREGATIONS:
                raise SQLAssemblyError(f"Unknown aggregation: {col.aggregation}")
            return f"{col.aggregation}({target})"
        return target

    def _build_from_clause(self, plan: QueryPlan, aliases: dict[str, str]) -> str:
        table = self.dialect.quote_identifier(plan.primary_table)
        return f"FROM {table} AS {self._alias(plan.primary_table, aliases)}"

    def _build_join_clauses(self, plan: QueryPlan, aliases: dict[str, str]) -> list[str]:
        clauses = []
        for join in plan.joins:
            if join.type not in JOIN_TYPES:
                raise SQLAssemblyError(f"Unknown join type: {join.type}")
            left = self._qualified(join.on.left_table, join.on.left_column, aliases)
            right = self._qualified(join.on.right_table, join.on.right_column, aliases)
            clauses.append(
                f"{join.type} JOIN {self.dialect.quote_identifier(join.table)} "
                f"AS {self._alias(join.table, aliases)} ON {left} = {right}"
            )
        return clauses

    def _build_where_clause(
        self, plan: QueryPlan, aliases: dict[str, str], parameters: list
    ) -> str:
        if not plan.conditions:
            return ""
        predicates = [
            self._render_condition(cond, aliases, parameters) for cond in plan.conditions
        ]
        return f"WHERE {' AND '.join(predicates)}"

    def _render_condition(
        self, cond: PlanCondition, aliases: dict[str, str], parameters: list
    ) -> str:
        operator = cond.operator

        if operator in ("EXISTS", "NOT EXISTS"):
            if cond.subquery is None:
                return "1=1"
            return f"{operator} ({self._compile_subquery(cond, parameters)})"

        column = self._qualified(cond.table, cond.column, aliases)

        if operator in ("IS NULL", "IS NOT NULL"):
            return f"{column} {operator}"

        if operator in ("IN", "NOT IN"):
            if cond.subquery is not None:
                return f"{column} {operator} ({self._compile_subquery(cond, parameters)})"
            values = _in_values(cond)
            if not values:
                return "1=0"
            placeholders = ", ".join(self._bind(value, parameters) for value in values)
            return f"{column} {operator} ({placeholders})"

        if operator == "BETWEEN":
            bounds = cond.value if cond.values is None else cond.values
            if not isinstance(bounds, (list, tuple)) or len(bounds) != 2:
                return "1=1"
            low = self._bind(bounds[0], parameters)
            high = self._bind(bounds[1], parameters)
            return f"{column} BETWEEN {low} AND {high}"

        if operator in SINGLE_VALUE_OPERATORS:
            return f"{column} {operator} {self._bind(cond.value, parameters)}"

        raise SQLAssemblyError(f"Unknown condition operator: {operator}")

    def _compile_subquery(self, cond: PlanCondition, parameters: list) -> str:
        if not isinstance(cond.subquery, QueryPlan):
            raise SQLAssemblyError(
                f"Condition on {cond.table}.{cond.column} carries a raw SQL subquery",
                details={"operator": cond.operator},
            )
        return self._compile(cond.subquery, parameters)

    def _build_group_by_clause(self, plan: QueryPlan, aliases: dict[str, str]) -> str:
        items = plan.group_by
        if not items and plan.has_aggregation():
            # Derived from the select list when the plan omits it
            items = [
                GroupByItem(
                    table=col.table,
                    column=col.column,
                    expression=col.expression,
                    date_part=col.date_part,
                )
                for col in plan.non_aggregated_columns()
            ]
        if not items:
            return ""

        rendered = []
        for item in items:
            if item.expression:
                raise SQLAssemblyError(
                    f"Raw GROUP BY expression reached the SQL builder: {item.expression}"
                )
            rendered.append(
                self._date_part(self._qualified(item.table, item.column, aliases), item.date_part)
            )
        return f"GROUP BY {', '.join(rendered)}"

    def _build_having_clause(
        self, plan: QueryPlan, aliases: dict[str, str], parameters: list
    ) -> str:
        if not plan.having:
            return ""

        predicates = []
        for having in plan.having:
            if having.aggregation not in AGGREGATIONS:
                raise SQLAssemblyError(f"Unknown HAVING aggregation: {having.aggregation}")
            if having.operator not in COMPARISON_OPERATORS:
                raise SQLAssemblyError(f"Unknown HAVING operator: {having.operator}")
            if having.column == "*":
                target = "*"
            else:
                target = self._qualified(having.table or plan.primary_table, having.column, aliases)
            predicates.append(
                f"{having.aggregation}({target}) {having.operator} "
                f"{self._bind(having.value, parameters)}"
            )
        return f"HAVING {' AND '.join(predicates)}"

    def _build_order_by_clause(self, plan: QueryPlan, aliases: dict[str, str]) -> str:
        if not plan.order_by:
            paginated = plan.limit is not None or bool(plan.offset)
            if paginated and self.dialect.requires_order_for_offset():
                return "ORDER BY (SELECT NULL)"
            return ""

        items = []
        for order in plan.order_by:
            direction = order.direction.upper()
            if direction not in ("ASC", "DESC"):
                raise SQLAssemblyError(f"Unknown sort direction: {order.direction}")
            if order.table is None:
                target = self.dialect.quote_identifier(order.column)
            else:
                target = self._qualified(order.table, order.column, aliases)
            items.append(f"{target} {direction}")
        return f"ORDER BY {', '.join(items)}"

    def _bind(self, value: Any, parameters: list) -> str:
        if isinstance(value, (QueryPlan, dict)):
            raise SQLAssemblyError(f"Cannot bind a structured value as a parameter: {value!r}")
        parameters.append(value)
        return self.dialect.placeholder(len(parameters))

    def _alias(self, table: str, aliases: dict[str, str]) -> str:
        if table not in aliases:
            raise SQLAssemblyError(
                f"Table '{table}' is not part of the plan",
                details={"known_tables": list(aliases)},
            )
        return self.dialect.quote_identifier(aliases[table])

    def _qualified(self, table: str, column: str, aliases: dict[str, str]) -> str:
        return f"{self._alias(table, aliases)}.{self.dialect.quote_identifier(column)}"

    def _date_part(self, column_sql: str, date_part: Optional[str]) -> str:
        if date_part is None:
            return column_sql
        if date_part not in DATE_PARTS:
            raise SQLAssemblyError(f"Unknown date part: {date_part}")
        return self.dialect.date_function(date_part, column_sql)


def _in_values(cond: PlanCondition) -> list:
    if cond.values is not None:
        return list(cond.values)
    if isinstance(cond.value, (list, tuple)):
        return list(cond.value)
    if cond.value is None:
        return []
    return [cond.value]
