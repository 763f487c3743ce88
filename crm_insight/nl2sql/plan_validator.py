"""
Query Plan Validator & Corrector.

Checks a QueryPlan against one schema registry snapshot and repairs what it
can: table and column names are resolved through the business glossary,
missing GROUP BY entries and joins are added, raw SQL expressions are
normalized, irreparable references are dropped and the tenant condition is
enforced. Every change is recorded as a Correction so that validating an
already-valid plan yields none.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from ..data_sources.schema_registry import SchemaRegistry
from ..data_sources.schema_types import DatabaseSchema, TableSchema
from .errors import PlanValidationError
from .glossary import BusinessGlossary
from .query_plan import (
    AGGREGATIONS,
    COMPARISON_OPERATORS,
    JOIN_TYPES,
    OPERATORS,
    TENANT_COLUMN,
    VISUALIZATIONS,
    CommonTableExpression,
    GroupByItem,
    JoinCondition,
    PlanCondition,
    PlanJoin,
    QueryPlan,
)

logger = logging.getLogger(__name__)

_QUALIFIED = r"(?:([A-Za-z_]\w*)\.)?([A-Za-z_]\w*)"

# Recognised date expressions -> date part (None means "the bare column")
_DATE_EXPRESSIONS = [
    (re.compile(rf"^\s*(?i:(YEAR|MONTH|DAY))\s*\(\s*{_QUALIFIED}\s*\)\s*$"), None),
    (re.compile(rf"^\s*(?i:EXTRACT)\s*\(\s*(?i:(YEAR|MONTH|DAY))\s+(?i:FROM)\s+{_QUALIFIED}\s*\)\s*$"), None),
    (re.compile(rf"^\s*(?i:DATEPART)\s*\(\s*(?i:(year|month|day))\s*,\s*{_QUALIFIED}\s*\)\s*$"), None),
    (
        re.compile(rf"^\s*(?i:strftime)\s*\(\s*'%([Ymd])'\s*,\s*{_QUALIFIED}\s*\)\s*$"),
        {"Y": "year", "m": "month", "d": "day"},
    ),
    (re.compile(rf"^\s*(?i:DATE)\s*\(()\s*{_QUALIFIED}\s*\)\s*$"), None),
]


@dataclass
class ValidatorConfig:
    """Configuration for plan validation."""

    default_limit: int = 1000
    max_limit: int = 10000
    tenant_column: str = TENANT_COLUMN
    auto_join: bool = True


@dataclass
class Correction:
    """One change applied to a plan."""

    field: str
    from_value: Any
    to_value: Any
    description: str

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "from": self.from_value,
            "to": self.to_value,
            "description": self.description,
        }


@dataclass
class ValidationResult:
    """Outcome of validating a plan."""

    valid: bool = True
    corrections: list[Correction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "valid": self.valid,
            "corrections": [c.to_dict() for c in self.corrections],
            "warnings": self.warnings,
            "errors": self.errors,
        }


@dataclass
class ValidationReport:
    """A corrected plan together with what was done to it."""

    plan: QueryPlan
    validation: ValidationResult

    def to_dict(self) -> dict:
        return {"plan": self.plan.to_dict(), "validation": self.validation.to_dict()}


class _Scope:
    """Tables a single (sub-)plan may reference."""

    def __init__(self, schema: DatabaseSchema, ctes: dict[str, set[str]]):
        self.schema = schema
        self.ctes = ctes

    def find_table(self, name: str) -> Optional[str]:
        if not name:
            return None
        found = self.schema.find_table(name)
        if found:
            return found
        for cte_name in self.ctes:
            if cte_name.lower() == name.lower():
                return cte_name
        return None

    def find_column(self, table: str, column: str) -> Optional[str]:
        if table in self.ctes:
            for name in self.ctes[table]:
                if name.lower() == column.lower():
                    return name
            return None
        table_schema = self.schema.get_table(table)
        return table_schema.find_column(column) if table_schema else None

    def table_schema(self, table: str) -> Optional[TableSchema]:
        return self.schema.get_table(table)


class PlanValidator:
    """
    Validates and corrects query plans against the schema registry.

    The registry snapshot is read once at the start of each validation, so a
    concurrent refresh never changes the schema mid-request.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        glossary: Optional[BusinessGlossary] = None,
        config: Optional[ValidatorConfig] = None,
    ):
        self.registry = registry
        self.glossary = glossary or BusinessGlossary()
        self.config = config or ValidatorConfig()

    def validate(
        self,
        plan: QueryPlan,
        tenant_id: str,
        schema: Optional[DatabaseSchema] = None,
    ) -> ValidationReport:
        """
        Validate and correct a plan.

        Args:
            plan: The raw plan (left untouched; a corrected copy is returned)
            tenant_id: Tenant the plan must be scoped to
            schema: Registry snapshot to validate against (read from the
                registry when omitted)

        Returns:
            ValidationReport with the corrected plan and all corrections

        Raises:
            PlanValidationError: If no registry table can serve as primary table
        """
        schema = schema or self.registry.get_schema()
        corrected = plan.copy()
        result = ValidationResult()

        self._validate_plan(corrected, schema, tenant_id, result, prefix="", nested=False)

        result.valid = not result.errors
        if result.errors:
            logger.error(f"Query plan validation failed: {', '.join(result.errors)}")
        if result.corrections:
            logger.info(
                f"Applied {len(result.corrections)} corrections to query plan: "
                + "; ".join(c.description for c in result.corrections)
            )

        return ValidationReport(plan=corrected, validation=result)

    def _validate_plan(
        self,
        plan: QueryPlan,
        schema: DatabaseSchema,
        tenant_id: str,
        result: ValidationResult,
        prefix: str,
        nested: bool,
    ) -> None:
        ctes = self._validate_ctes(plan, schema, tenant_id, result, prefix)
        scope = _Scope(schema, ctes)

        self._validate_primary_table(plan, scope, result, prefix)
        self._validate_joins(plan, scope, result, prefix)
        self._validate_columns(plan, scope, result, prefix)
        self._validate_conditions(plan, scope, tenant_id, result, prefix)
        self._validate_group_by(plan, scope, result, prefix)
        self._ensure_group_by_consistency(plan, result, prefix)
        self._validate_having(plan, scope, result, prefix)
        self._validate_order_by(plan, scope, result, prefix)
        self._ensure_tenant_condition(plan, scope, tenant_id, result, prefix)
        if not nested:
            self._validate_limit(plan, result, prefix)
            self._validate_visualization(plan, result, prefix)

    def _validate_ctes(
        self,
        plan: QueryPlan,
        schema: DatabaseSchema,
        tenant_id: str,
        result: ValidationResult,
        prefix: str,
    ) -> dict[str, set[str]]:
        ctes: dict[str, set[str]] = {}
        kept: list[CommonTableExpression] = []

        for i, cte in enumerate(plan.ctes):
            path = f"{prefix}ctes[{i}]"
            if not isinstance(cte.query, QueryPlan):
                self._correct(
                    result, path, cte.name, None,
                    f"Dropped CTE '{cte.name}' with a raw SQL body",
                )
                continue
            if not re.fullmatch(r"[A-Za-z_]\w*", cte.name) or schema.find_table(cte.name):
                self._correct(
                    result, path, cte.name, None,
                    f"Dropped CTE with unusable name '{cte.name}'",
                )
                continue
            self._validate_plan(cte.query, schema, tenant_id, result, f"{path}.query.", nested=True)
            ctes[cte.name] = {col.alias or col.column for col in cte.query.columns}
            kept.append(cte)

        plan.ctes = kept
        return ctes

    def _validate_primary_table(
        self, plan: QueryPlan, scope: _Scope, result: ValidationResult, prefix: str
    ) -> None:
        found = scope.find_table(plan.primary_table)
        if found is None:
            candidate = self.glossary.find_table_by_business_name(plan.primary_table)
            if candidate:
                found = scope.schema.find_table(candidate)

        if found is None:
            raise PlanValidationError(
                f"Table '{plan.primary_table}' does not exist",
                details={"available_tables": list(scope.schema.tables)},
            )

        if found != plan.primary_table:
            self._correct(
                result, f"{prefix}primary_table", plan.primary_table, found,
                f"Corrected table name from '{plan.primary_table}' to '{found}'",
            )
            self._rename_table_references(plan, plan.primary_table, found)
            plan.primary_table = found

    def _validate_joins(
        self, plan: QueryPlan, scope: _Scope, result: ValidationResult, prefix: str
    ) -> None:
        kept: list[PlanJoin] = []
        joined = {plan.primary_table}

        for i, join in enumerate(plan.joins):
            path = f"{prefix}joins[{i}]"
            table = self._resolve_table(join.table, scope)
            if table is None or table in joined:
                reason = "does not exist" if table is None else "is already part of the plan"
                self._correct(
                    result, path, join.table, None,
                    f"Dropped join on '{join.table}': table {reason}",
                )
                continue
            if table != join.table:
                self._correct(
                    result, f"{path}.table", join.table, table,
                    f"Corrected join table from '{join.table}' to '{table}'",
                )
                self._rename_table_references(plan, join.table, table)
                join.table = table

            join_type = join.type.upper() if join.type else ""
            if join_type not in JOIN_TYPES:
                self._correct(
                    result, f"{path}.type", join.type, "LEFT",
                    f"Replaced unknown join type '{join.type}' with LEFT",
                )
                join_type = "LEFT"
            elif join_type != join.type:
                self._correct(result, f"{path}.type", join.type, join_type, "Normalized join type")
            join.type = join_type

            visible = joined | {table}
            if not self._repair_join_condition(join, visible, scope, result, path):
                self._correct(
                    result, path, table, None,
                    f"Dropped join on '{table}': join columns could not be resolved",
                )
                continue

            joined.add(table)
            kept.append(join)

        plan.joins = kept

    def _repair_join_condition(
        self,
        join: PlanJoin,
        visible: set[str],
        scope: _Scope,
        result: ValidationResult,
        path: str,
    ) -> bool:
        on = join.on
        left_table = self._resolve_table(on.left_table, scope)
        right_table = self._resolve_table(on.right_table, scope)

        if left_table in visible and right_table in visible and left_table != right_table:
            left_column = self._resolve_column(left_table, on.left_column, scope)
            right_column = self._resolve_column(right_table, on.right_column, scope)
            if left_column and right_column:
                repaired = JoinCondition(left_table, left_column, right_table, right_column)
                if repaired != on:
                    self._correct(
                        result, f"{path}.on", _join_text(on), _join_text(repaired),
                        "Resolved join columns through the schema and glossary",
                    )
                    join.on = repaired
                return True

        for other in sorted(visible - {join.table}):
            derived = self._join_from_foreign_keys(other, join.table, scope)
            if derived:
                self._correct(
                    result, f"{path}.on", _join_text(on), _join_text(derived),
                    f"Derived join condition for '{join.table}' from foreign keys",
                )
                join.on = derived
                return True
        return False

    def _join_from_foreign_keys(
        self, existing: str, new_table: str, scope: _Scope
    ) -> Optional[JoinCondition]:
        fk = scope.schema.find_foreign_key(existing, new_table)
        if fk:
            return JoinCondition(existing, fk.column_name, new_table, fk.referenced_column)
        fk = scope.schema.find_foreign_key(new_table, existing)
        if fk:
            return JoinCondition(existing, fk.referenced_column, new_table, fk.column_name)
        return None

    def _ensure_joined(
        self, plan: QueryPlan, table: str, scope: _Scope, result: ValidationResult, prefix: str
    ) -> bool:
        """Make ``table`` part of the plan, adding a LEFT JOIN via foreign keys if possible."""
        if table in plan.tables() or not self.config.auto_join:
            return table in plan.tables()

        for existing in plan.tables():
            derived = self._join_from_foreign_keys(existing, table, scope)
            if derived:
                plan.joins.append(PlanJoin(type="LEFT", table=table, on=derived))
                self._correct(
                    result, f"{prefix}joins", None, _join_text(derived),
                    f"Added LEFT JOIN on '{table}' for a referenced column",
                )
                return True
        return False

    def _validate_columns(
        self, plan: QueryPlan, scope: _Scope, result: ValidationResult, prefix: str
    ) -> None:
        kept = []
        for i, col in enumerate(plan.columns):
            path = f"{prefix}columns[{i}]"

            if col.aggregation is not None:
                aggregation = col.aggregation.upper()
                if aggregation not in AGGREGATIONS:
                    self._correct(
                        result, path, f"{col.aggregation}({col.column})", None,
                        f"Dropped column with unsupported aggregation '{col.aggregation}'",
                    )
                    continue
                if aggregation != col.aggregation:
                    self._correct(result, f"{path}.aggregation", col.aggregation, aggregation,
                                  "Normalized aggregation name")
                    col.aggregation = aggregation

            if col.expression:
                if not self._normalize_expression(col, plan, scope, result, path):
                    continue

            table = self._resolve_reference_table(col.table, plan, scope, result, path, prefix)
            if table is None:
                self._correct(
                    result, path, f"{col.table}.{col.column}", None,
                    f"Dropped column '{col.column}': table '{col.table}' is not available",
                )
                continue
            col.table = table

            if col.column == "*":
                if col.aggregation not in (None, "COUNT"):
                    self._correct(
                        result, path, f"{col.aggregation}(*)", None,
                        f"Dropped {col.aggregation}(*): only COUNT accepts '*'",
                    )
                    continue
                kept.append(col)
                continue

            column = self._resolve_column(table, col.column, scope)
            if column is None:
                self._correct(
                    result, path, f"{table}.{col.column}", None,
                    f"Dropped column '{col.column}': not found in table '{table}'",
                )
                continue
            if column != col.column:
                self._correct(
                    result, f"{path}.column", col.column, column,
                    f"Corrected column name from '{col.column}' to '{column}'",
                )
                col.column = column

            self._check_column_semantics(col.table, col.column, col.aggregation, col.date_part, scope, result)
            kept.append(col)

        # A bare star cannot be grouped, so it never survives beside an aggregate
        if any(col.is_aggregated for col in kept):
            for col in [c for c in kept if c.column == "*" and not c.is_aggregated]:
                kept.remove(col)
                self._correct(
                    result, f"{prefix}columns", f"{col.table}.*", None,
                    "Dropped '*' column beside an aggregate",
                )

        plan.columns = kept

    def _check_column_semantics(
        self,
        table: str,
        column: str,
        aggregation: Optional[str],
        date_part: Optional[str],
        scope: _Scope,
        result: ValidationResult,
    ) -> None:
        table_schema = scope.table_schema(table)
        column_schema = table_schema.columns.get(column) if table_schema else None

        if aggregation in ("SUM", "AVG"):
            metadata = self.glossary.get_column_metadata(table, column)
            if metadata is not None and not metadata.aggregatable:
                result.warnings.append(
                    f"Column '{column}' may not be suitable for {aggregation} aggregation"
                )
            elif column_schema is not None and not column_schema.is_numeric:
                result.warnings.append(f"{aggregation} over non-numeric column '{table}.{column}'")

        if date_part and column_schema is not None and not column_schema.is_temporal:
            result.warnings.append(f"Date part '{date_part}' applied to non-date column '{table}.{column}'")

    def _normalize_expression(
        self, item, plan: QueryPlan, scope: _Scope, result: ValidationResult, path: str
    ) -> bool:
        """Turn a recognised raw expression into a structured column; False if dropped."""
        parsed = _parse_date_expression(item.expression)
        if parsed is None:
            self._correct(
                result, path, item.expression, None,
                f"Dropped unsupported raw SQL expression '{item.expression}'",
            )
            if isinstance(item, GroupByItem):
                return False
            if item.alias is None and item.column:
                # Keep the plain column if one was named alongside the expression
                item.expression = None
                return True
            return False

        date_part, table_hint, column = parsed
        table = self._resolve_table(table_hint, scope) if table_hint else None
        if table and table in plan.tables():
            item.table = table
        self._correct(
            result, f"{path}.expression", item.expression,
            f"{date_part}({column})" if date_part else column,
            f"Normalized raw expression '{item.expression}'",
        )
        item.expression = None
        item.column = column
        item.date_part = date_part
        return True

    def _validate_conditions(
        self,
        plan: QueryPlan,
        scope: _Scope,
        tenant_id: str,
        result: ValidationResult,
        prefix: str,
    ) -> None:
        kept = []
        for i, cond in enumerate(plan.conditions):
            path = f"{prefix}conditions[{i}]"

            operator = " ".join((cond.operator or "").upper().split())
            if operator not in OPERATORS:
                self._correct(
                    result, path, cond.operator, None,
                    f"Dropped condition with unsupported operator '{cond.operator}'",
                )
                continue
            if operator != cond.operator:
                self._correct(result, f"{path}.operator", cond.operator, operator, "Normalized operator")
                cond.operator = operator

            if cond.subquery is not None and not isinstance(cond.subquery, QueryPlan):
                self._correct(
                    result, path, cond.subquery, None,
                    f"Dropped condition on '{cond.column}' with a raw SQL subquery",
                )
                continue

            if isinstance(cond.value, dict) or any(isinstance(v, dict) for v in cond.values or []):
                self._correct(
                    result, path, cond.value, None,
                    f"Dropped condition on '{cond.column}' with a structured value",
                )
                continue

            if operator in ("EXISTS", "NOT EXISTS"):
                if cond.subquery is None:
                    result.warnings.append(f"{operator} condition without a subquery is ignored")
                else:
                    self._validate_plan(cond.subquery, scope.schema, tenant_id, result,
                                        f"{path}.subquery.", nested=True)
                kept.append(cond)
                continue

            table = self._resolve_reference_table(cond.table, plan, scope, result, path, prefix)
            column = self._resolve_column(table, cond.column, scope) if table else None
            if column is None:
                self._correct(
                    result, path, f"{cond.table}.{cond.column}", None,
                    f"Dropped condition on unknown column '{cond.table}.{cond.column}'",
                )
                continue
            cond.table = table
            if column != cond.column:
                self._correct(
                    result, f"{path}.column", cond.column, column,
                    f"Corrected condition column from '{cond.column}' to '{column}'",
                )
                cond.column = column

            if (
                operator in ("=", "!=", "<>")
                and cond.value is None
                and cond.values is None
                and column != self.config.tenant_column
            ):
                null_operator = "IS NULL" if operator == "=" else "IS NOT NULL"
                self._correct(
                    result, f"{path}.operator", operator, null_operator,
                    f"Comparison with NULL rewritten as {null_operator}",
                )
                cond.operator = operator = null_operator

            if operator in ("IN", "NOT IN"):
                if cond.subquery is not None:
                    self._validate_plan(cond.subquery, scope.schema, tenant_id, result,
                                        f"{path}.subquery.", nested=True)
                elif cond.values is None and cond.value is not None:
                    values = list(cond.value) if isinstance(cond.value, (list, tuple)) else [cond.value]
                    self._correct(
                        result, f"{path}.values", cond.value, values,
                        f"Moved {operator} operand into the value list",
                    )
                    cond.values = values
                    cond.value = None

            kept.append(cond)

        plan.conditions = kept

    def _validate_group_by(
        self, plan: QueryPlan, scope: _Scope, result: ValidationResult, prefix: str
    ) -> None:
        kept = []
        for i, item in enumerate(plan.group_by):
            path = f"{prefix}group_by[{i}]"
            if item.expression and not self._normalize_expression(item, plan, scope, result, path):
                continue

            table = self._resolve_reference_table(item.table, plan, scope, result, path, prefix)
            column = self._resolve_column(table, item.column, scope) if table else None
            if column is None:
                self._correct(
                    result, path, f"{item.table}.{item.column}", None,
                    f"Dropped GROUP BY on unknown column '{item.table}.{item.column}'",
                )
                continue
            item.table = table
            if column != item.column:
                self._correct(
                    result, f"{path}.column", item.column, column,
                    f"Corrected GROUP BY column from '{item.column}' to '{column}'",
                )
                item.column = column

            if any(_same_group(item, other) for other in kept):
                self._correct(result, path, f"{table}.{column}", None, "Dropped duplicate GROUP BY entry")
                continue
            kept.append(item)

        plan.group_by = kept

    def _ensure_group_by_consistency(self, plan: QueryPlan, result: ValidationResult, prefix: str) -> None:
        if not plan.has_aggregation():
            return

        missing = [
            col for col in plan.non_aggregated_columns()
            if not any(
                g.table == col.table and g.column == col.column and g.date_part == col.date_part
                for g in plan.group_by
            )
        ]
        for col in missing:
            plan.group_by.append(
                GroupByItem(table=col.table, column=col.column, date_part=col.date_part)
            )
            self._correct(
                result, f"{prefix}group_by", None, f"{col.table}.{col.column}",
                f"Added missing GROUP BY column: {col.column}",
            )

    def _validate_having(
        self, plan: QueryPlan, scope: _Scope, result: ValidationResult, prefix: str
    ) -> None:
        kept = []
        for i, having in enumerate(plan.having):
            path = f"{prefix}having[{i}]"
            aggregation = (having.aggregation or "").upper()
            if aggregation not in AGGREGATIONS or having.operator not in COMPARISON_OPERATORS:
                self._correct(
                    result, path, having.aggregation, None,
                    f"Dropped HAVING condition with unsupported '{having.aggregation} {having.operator}'",
                )
                continue
            having.aggregation = aggregation

            if having.column != "*":
                table = self._resolve_reference_table(
                    having.table or plan.primary_table, plan, scope, result, path, prefix
                )
                column = self._resolve_column(table, having.column, scope) if table else None
                if column is None:
                    self._correct(
                        result, path, f"{aggregation}({having.column})", None,
                        f"Dropped HAVING condition on unknown column '{having.column}'",
                    )
                    continue
                if column != having.column:
                    self._correct(result, f"{path}.column", having.column, column,
                                  f"Corrected HAVING column from '{having.column}' to '{column}'")
                having.table = table
                having.column = column
            kept.append(having)

        plan.having = kept

    def _validate_order_by(
        self, plan: QueryPlan, scope: _Scope, result: ValidationResult, prefix: str
    ) -> None:
        aliases = {col.alias: col for col in plan.columns if col.alias}
        aggregated = plan.has_aggregation()
        kept = []

        for i, order in enumerate(plan.order_by):
            path = f"{prefix}order_by[{i}]"
            direction = (order.direction or "ASC").upper()
            if direction not in ("ASC", "DESC"):
                direction = "ASC"
            if direction != order.direction:
                self._correct(result, f"{path}.direction", order.direction, direction, "Normalized sort direction")
                order.direction = direction

            original_table = order.table
            if order.table is None:
                if order.column in aliases:
                    kept.append(order)
                    continue
                order.table = plan.primary_table

            table = self._resolve_table(order.table, scope)
            column = self._resolve_column(table, order.column, scope) if table in plan.tables() else None

            if column is not None and aggregated:
                alias = self._aggregate_alias_for(plan, table, column)
                grouped = any(
                    g.table == table and g.column == column and g.date_part is None
                    for g in plan.group_by
                )
                if not grouped:
                    if alias:
                        self._correct(result, path, f"{table}.{column}", alias,
                                      f"Ordering by aggregate alias '{alias}'")
                        order.table, order.column = None, alias
                        kept.append(order)
                    else:
                        self._correct(result, path, f"{table}.{column}", None,
                                      f"Dropped ORDER BY on ungrouped column '{column}'")
                    continue

            if column is None:
                if order.column in aliases:
                    self._correct(result, f"{path}.table", order.table, None,
                                  f"ORDER BY '{order.column}' refers to a select alias")
                    order.table = None
                    kept.append(order)
                else:
                    self._correct(result, path, f"{order.table}.{order.column}", None,
                                  f"Dropped ORDER BY on unknown column '{order.column}'")
                continue

            if table != original_table or column != order.column:
                self._correct(result, path, f"{original_table}.{order.column}", f"{table}.{column}",
                              "Corrected ORDER BY reference")
                order.table, order.column = table, column
            kept.append(order)

        plan.order_by = kept

    @staticmethod
    def _aggregate_alias_for(plan: QueryPlan, table: str, column: str) -> Optional[str]:
        for col in plan.columns:
            if col.is_aggregated and col.alias and col.table == table and col.column == column:
                return col.alias
        return None

    def _ensure_tenant_condition(
        self,
        plan: QueryPlan,
        scope: _Scope,
        tenant_id: str,
        result: ValidationResult,
        prefix: str,
    ) -> None:
        tenant_column = self.config.tenant_column
        for i, cond in enumerate(plan.conditions):
            if cond.column == tenant_column and cond.operator == "=" and cond.value != tenant_id:
                self._correct(
                    result, f"{prefix}conditions[{i}].value", cond.value, tenant_id,
                    "Replaced foreign tenant identifier with the caller's tenant",
                )
                cond.value = tenant_id

        if plan.primary_table in scope.ctes:
            # The CTE body carries its own tenant condition
            return

        if not scope.find_column(plan.primary_table, tenant_column):
            result.errors.append(
                f"Table '{plan.primary_table}' has no '{tenant_column}' column for tenant scoping"
            )

        if any(
            c.column == tenant_column and c.operator == "=" and c.table == plan.primary_table
            for c in plan.conditions
        ):
            return

        plan.conditions.append(
            PlanCondition(table=plan.primary_table, column=tenant_column, operator="=", value=tenant_id)
        )
        self._correct(
            result, f"{prefix}conditions", None, f"{plan.primary_table}.{tenant_column}",
            "Added tenant filter for data isolation",
        )

    def _validate_limit(self, plan: QueryPlan, result: ValidationResult, prefix: str) -> None:
        if plan.limit is None and not plan.has_aggregation():
            self._correct(
                result, f"{prefix}limit", None, self.config.default_limit,
                f"Added LIMIT {self.config.default_limit} for performance",
            )
            plan.limit = self.config.default_limit
        elif plan.limit is not None and plan.limit > self.config.max_limit:
            self._correct(
                result, f"{prefix}limit", plan.limit, self.config.max_limit,
                f"Capped LIMIT at {self.config.max_limit}",
            )
            plan.limit = self.config.max_limit

    def _validate_visualization(self, plan: QueryPlan, result: ValidationResult, prefix: str) -> None:
        if plan.visualization is not None and plan.visualization not in VISUALIZATIONS:
            self._correct(
                result, f"{prefix}visualization", plan.visualization, None,
                f"Dropped unknown visualization '{plan.visualization}'",
            )
            plan.visualization = None

    def _resolve_reference_table(
        self,
        table: Optional[str],
        plan: QueryPlan,
        scope: _Scope,
        result: ValidationResult,
        path: str,
        prefix: str,
    ) -> Optional[str]:
        """Resolve a referenced table and make sure it is joined into the plan."""
        if not table:
            self._correct(result, f"{path}.table", table, plan.primary_table,
                          "Defaulted missing table to the primary table")
            return plan.primary_table

        resolved = self._resolve_table(table, scope)
        if resolved is None:
            return None
        if resolved != table:
            self._correct(result, f"{path}.table", table, resolved,
                          f"Corrected table name from '{table}' to '{resolved}'")
        if not self._ensure_joined(plan, resolved, scope, result, prefix):
            return None
        return resolved

    def _resolve_table(self, table: Optional[str], scope: _Scope) -> Optional[str]:
        if not table:
            return None
        found = scope.find_table(table)
        if found:
            return found
        candidate = self.glossary.find_table_by_business_name(table)
        return scope.find_table(candidate) if candidate else None

    def _resolve_column(self, table: Optional[str], column: str, scope: _Scope) -> Optional[str]:
        if not table or not column:
            return None
        found = scope.find_column(table, column)
        if found:
            return found
        synonym = self.glossary.find_column_by_synonym(table, column)
        return scope.find_column(table, synonym) if synonym else None

    @staticmethod
    def _rename_table_references(plan: QueryPlan, old: str, new: str) -> None:
        for item in [*plan.columns, *plan.conditions, *plan.group_by, *plan.order_by]:
            if item.table == old:
                item.table = new
        for having in plan.having:
            if having.table == old:
                having.table = new
        for join in plan.joins:
            if join.on.left_table == old:
                join.on.left_table = new
            if join.on.right_table == old:
                join.on.right_table = new

    @staticmethod
    def _correct(result: ValidationResult, field_name: str, from_value, to_value, description: str) -> None:
        result.corrections.append(
            Correction(field=field_name, from_value=from_value, to_value=to_value, description=description)
        )


def _parse_date_expression(expression: str) -> Optional[tuple[Optional[str], Optional[str], str]]:
    """Parse ``YEAR(x)``-style expressions into (date part, table, column)."""
    for pattern, part_map in _DATE_EXPRESSIONS:
        match = pattern.match(expression)
        if not match:
            continue
        raw_part, table, column = match.groups()
        if not raw_part:
            return None, table, column
        part = part_map[raw_part] if part_map else raw_part.lower()
        return part, table, column
    return None


def _same_group(a: GroupByItem, b: GroupByItem) -> bool:
    return a.table == b.table and a.column == b.column and a.date_part == b.date_part


def _join_text(on: JoinCondition) -> str:
    return f"{on.left_table}.{on.left_column} = {on.right_table}.{on.right_column}"
