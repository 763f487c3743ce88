"""
Role-based data access rules for NL2SQL queries.

Rules are derived fresh for every request from the caller's identity. The
role title is resolved once into a RoleCategory when the identity is
provisioned, and the decision table dispatches on that category:

- C_LEVEL: unrestricted
- DIRECTOR: department scoped
- MANAGER / SALES_MANAGER: team scoped
- INDIVIDUAL: own records only
- ADMIN / UNKNOWN: own records on deals and accounts, sensitive fields hidden

Rules are applied either to a QueryPlan (the pipeline path) or textually to
an existing SQL statement.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import sqlparse
import yaml
from sqlparse import tokens as T

from ..data_sources.schema_types import DatabaseSchema, DatabaseType
from ..nl2sql.dialects import SQLDialect, get_dialect
from ..nl2sql.errors import PermissionDeniedError
from ..nl2sql.query_plan import (
    TENANT_COLUMN,
    PlanColumn,
    PlanCondition,
    QueryContext,
    QueryPlan,
)
from ..nl2sql.sql_builder import SQLBuilder

logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = Path(__file__).parent / "config" / "access_rules.yaml"

ALL_TABLES = "*"
FILTER_OPERATORS = ("equals", "in", "not_in", "contains")

_PLAN_OPERATORS = {
    "equals": "=",
    "in": "IN",
    "not_in": "NOT IN",
    "contains": "LIKE",
}

# Top-level keywords that end a WHERE clause
_CLAUSES_AFTER_WHERE = (
    "GROUP BY", "HAVING", "ORDER BY", "LIMIT", "OFFSET", "FETCH",
    "UNION", "UNION ALL", "EXCEPT", "INTERSECT",
)
_JOIN_KEYWORD = re.compile(r"\bJOIN$")
_VP_PATTERN = re.compile(r"\b(?:vp|svp|evp|vice president)\b")
_C_LEVEL_PATTERN = re.compile(r"\bchief\b.*\bofficer\b")


class RoleCategory(str, Enum):
    """Access tier of a caller, resolved once from the role title."""

    C_LEVEL = "c_level"
    DIRECTOR = "director"
    MANAGER = "manager"
    SALES_MANAGER = "sales_manager"
    INDIVIDUAL = "individual"
    ADMIN = "admin"
    UNKNOWN = "unknown"


@dataclass
class AccessRulesConfig:
    """Allow-lists loaded from the access rules YAML file."""

    c_level_roles: list[str] = field(default_factory=lambda: ["CEO", "CFO", "COO", "CTO"])
    unrestricted_field_roles: list[str] = field(default_factory=list)
    sensitive_fields: list[str] = field(default_factory=list)
    department_tables: dict[str, list[str]] = field(default_factory=dict)
    role_tables: dict[str, list[str]] = field(default_factory=dict)
    default_tables: list[str] = field(default_factory=lambda: ["deals", "accounts"])
    restricted_fields_by_role: dict[str, list[str]] = field(default_factory=dict)
    default_restricted_fields: list[str] = field(default_factory=list)
    individual_tables: list[str] = field(default_factory=list)
    individual_restricted_fields: list[str] = field(default_factory=list)
    write_roles: list[str] = field(default_factory=list)
    delete_roles: list[str] = field(default_factory=list)

    @classmethod
    def load(cls, config_path: Union[str, Path, None] = None) -> "AccessRulesConfig":
        """Load the allow-lists from YAML (the packaged file by default)."""
        path = Path(config_path) if config_path else DEFAULT_RULES_PATH
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load access rules config: {e}")
            raise

        known = cls.__dataclass_fields__
        return cls(**{key: value for key, value in data.items() if key in known})

    def lookup(self, mapping: dict[str, list[str]], key: Optional[str]) -> Optional[list[str]]:
        """Case-insensitive lookup of a role or department key."""
        if not key:
            return None
        wanted = key.strip().lower()
        for name, values in mapping.items():
            if name.lower() == wanted:
                return list(values)
        return None

    def role_in(self, roles: list[str], role_title: Optional[str]) -> bool:
        if not role_title:
            return False
        wanted = role_title.strip().lower()
        return any(role.lower() == wanted for role in roles)


def resolve_role_category(
    role_title: Optional[str],
    seniority: Optional[str] = None,
    config: Optional[AccessRulesConfig] = None,
) -> RoleCategory:
    """
    Map a free-text role title (plus optional seniority) onto a RoleCategory.

    Precedence follows the decision table: C-level, director/VP, manager,
    individual contributor. Anything else is UNKNOWN and gets the most
    restrictive rules.
    """
    config = config or AccessRulesConfig()
    title = " ".join((role_title or "").lower().split())
    level = (seniority or "").strip().lower()

    if config.role_in(config.c_level_roles, title) or _C_LEVEL_PATTERN.search(title):
        return RoleCategory.C_LEVEL
    if "director" in title or _VP_PATTERN.search(title) or level == "director":
        return RoleCategory.DIRECTOR
    if "manager" in title or level == "manager":
        if "sales" in title:
            return RoleCategory.SALES_MANAGER
        return RoleCategory.MANAGER
    if title in ("sales rep", "sales representative", "account executive"):
        return RoleCategory.INDIVIDUAL
    if level in ("individual", "junior"):
        return RoleCategory.INDIVIDUAL
    if title in ("admin", "administrator", "system administrator"):
        return RoleCategory.ADMIN

    return RoleCategory.UNKNOWN


@dataclass
class CallerIdentity:
    """A caller as provisioned by the identity collaborator."""

    caller_id: str
    tenant_id: str
    role_title: str
    role_category: RoleCategory
    department: Optional[str] = None
    seniority: Optional[str] = None

    @classmethod
    def provision(
        cls,
        caller_id: str,
        tenant_id: str,
        role_title: str,
        department: Optional[str] = None,
        seniority: Optional[str] = None,
        config: Optional[AccessRulesConfig] = None,
    ) -> "CallerIdentity":
        """Build an identity, resolving the role category once."""
        return cls(
            caller_id=caller_id,
            tenant_id=tenant_id,
            role_title=role_title,
            role_category=resolve_role_category(role_title, seniority, config),
            department=department,
            seniority=seniority,
        )

    @classmethod
    def from_context(
        cls, context: QueryContext, config: Optional[AccessRulesConfig] = None
    ) -> "CallerIdentity":
        return cls.provision(
            caller_id=context.caller_id,
            tenant_id=context.tenant_id,
            role_title=context.caller_role,
            department=context.department,
            config=config,
        )


class IdentityProvider(ABC):
    """Resolves a caller id into a provisioned identity."""

    @abstractmethod
    def get_identity(self, caller_id: str) -> CallerIdentity:
        """
        Look up a caller.

        Raises:
            PermissionDeniedError: If the caller is unknown
        """


class StaticIdentityProvider(IdentityProvider):
    """In-memory identities, keyed by caller id."""

    def __init__(self, identities: Optional[list[CallerIdentity]] = None):
        self._identities = {i.caller_id: i for i in identities or []}

    def add(self, identity: CallerIdentity) -> None:
        self._identities[identity.caller_id] = identity

    def get_identity(self, caller_id: str) -> CallerIdentity:
        identity = self._identities.get(caller_id)
        if identity is None:
            raise PermissionDeniedError(
                f"Unknown caller: {caller_id}", details={"caller_id": caller_id}
            )
        return identity


@dataclass
class DataFilter:
    """
    A row filter injected into every query touching ``table``.

    ``table`` may be ``"*"`` to target every referenced table. The ``in``
    and ``not_in`` operators take either a list in ``value`` or a structured
    ``subquery`` plan.
    """

    table: str
    field: str
    operator: str
    value: Any = None
    subquery: Optional[QueryPlan] = None

    def applies_to(self, table: str) -> bool:
        return self.table == ALL_TABLES or self.table == table

    def to_dict(self) -> dict:
        result = {
            "table": self.table,
            "field": self.field,
            "operator": self.operator,
            "value": self.value,
        }
        if self.subquery is not None:
            result["subquery"] = self.subquery.to_dict()
        return result


@dataclass
class DataAccessRules:
    """What a caller may read, derived per request."""

    can_view_all_data: bool = False
    can_view_department_data: bool = False
    can_view_team_data: bool = False
    can_view_own_data_only: bool = True
    allowed_tables: list[str] = field(default_factory=list)
    restricted_fields: list[str] = field(default_factory=list)
    data_filters: list[DataFilter] = field(default_factory=list)

    def allows_table(self, table: str) -> bool:
        return ALL_TABLES in self.allowed_tables or table in self.allowed_tables

    def restricts(self, field_name: str, sensitive_fields: Optional[list[str]] = None) -> bool:
        """Whether ``field_name`` is hidden. ``"*"`` hides every sensitive field."""
        if field_name in self.restricted_fields:
            return True
        return ALL_TABLES in self.restricted_fields and field_name in (sensitive_fields or [])

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "can_view_all_data": self.can_view_all_data,
            "can_view_department_data": self.can_view_department_data,
            "can_view_team_data": self.can_view_team_data,
            "can_view_own_data_only": self.can_view_own_data_only,
            "allowed_tables": self.allowed_tables,
            "restricted_fields": self.restricted_fields,
            "data_filters": [f.to_dict() for f in self.data_filters],
        }


@dataclass
class FilteredQuery:
    """SQL text with access filters injected."""

    sql: str
    parameters: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {"sql": self.sql, "parameters": self.parameters}


class PermissionEngine:
    """
    Derives data access rules and applies them to plans and SQL.

    All methods are pure functions of their inputs and the loaded
    allow-lists; nothing is cached between callers.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        config: Optional[AccessRulesConfig] = None,
        config_path: Optional[str] = None,
    ):
        """
        Initialize the permission engine.

        Args:
            identity_provider: Resolves caller ids into identities
            config: Optional pre-loaded allow-lists
            config_path: Path to an access rules YAML file
        """
        self.identity_provider = identity_provider
        self.config = config or AccessRulesConfig.load(config_path)
        self._decision_table = {
            RoleCategory.C_LEVEL: self._c_level_rules,
            RoleCategory.DIRECTOR: self._director_rules,
            RoleCategory.MANAGER: self._manager_rules,
            RoleCategory.SALES_MANAGER: self._manager_rules,
            RoleCategory.INDIVIDUAL: self._individual_rules,
            RoleCategory.ADMIN: self._default_rules,
            RoleCategory.UNKNOWN: self._default_rules,
        }

    def get_data_access_rules(self, caller_id: str) -> DataAccessRules:
        """
        Derive the access rules of a caller.

        Args:
            caller_id: Caller to look up through the identity provider

        Returns:
            DataAccessRules for this request

        Raises:
            PermissionDeniedError: If the caller is unknown
        """
        return self.rules_for_identity(self.identity_provider.get_identity(caller_id))

    def rules_for_identity(self, identity: CallerIdentity) -> DataAccessRules:
        rules = self._decision_table[identity.role_category](identity)
        logger.info(
            f"Access rules for {identity.caller_id} ({identity.role_category.value}): "
            f"{len(rules.allowed_tables)} tables, {len(rules.data_filters)} filters"
        )
        return rules

    def can_user_access(self, caller_id: str, resource: str, action: str) -> bool:
        """
        Check a coarse action against a resource.

        Reads need table access. Writes and deletes depend only on the
        caller's role being in the allow-list for that action.
        """
        try:
            identity = self.identity_provider.get_identity(caller_id)
        except PermissionDeniedError:
            logger.warning(f"Access check for unknown caller {caller_id}")
            return False

        action = action.lower()
        if action == "read":
            return self.rules_for_identity(identity).allows_table(resource)
        if action == "write":
            return self.config.role_in(self.config.write_roles, identity.role_title)
        if action == "delete":
            return self.config.role_in(self.config.delete_roles, identity.role_title)

        logger.warning(f"Unknown action '{action}' requested on {resource}")
        return False

    def check_plan_access(self, plan: QueryPlan, rules: DataAccessRules) -> None:
        """
        Verify every table and field referenced by a plan.

        Raises:
            PermissionDeniedError: On a disallowed table or restricted field
        """
        denied_tables = sorted({
            table for table in _plan_tables(plan) if not rules.allows_table(table)
        })
        if denied_tables:
            raise PermissionDeniedError(
                f"Access denied to tables: {', '.join(denied_tables)}",
                details={"tables": denied_tables, "allowed_tables": rules.allowed_tables},
            )

        denied_fields = sorted({
            f"{table}.{column}"
            for table, column in _plan_fields(plan)
            if rules.restricts(column, self.config.sensitive_fields)
        })
        if denied_fields:
            raise PermissionDeniedError(
                f"Access denied to restricted fields: {', '.join(denied_fields)}",
                details={"fields": denied_fields},
            )

    def apply_rules_to_plan(
        self,
        plan: QueryPlan,
        rules: DataAccessRules,
        schema: Optional[DatabaseSchema] = None,
    ) -> QueryPlan:
        """
        Narrow a plan to the rows and columns the caller may see.

        Every data filter whose table takes part in the plan becomes a
        condition, in nested plans too. A ``SELECT *`` is expanded into the
        explicit non-restricted columns when fields are restricted.

        Args:
            plan: Validated plan
            rules: Rules of the caller
            schema: Registry snapshot, used to skip filters on tables that
                lack the filtered field and to expand ``*``

        Returns:
            A filtered copy of the plan
        """
        filtered = plan.copy()
        self._apply_to_plan(filtered, rules, schema)
        return filtered

    def _apply_to_plan(
        self, plan: QueryPlan, rules: DataAccessRules, schema: Optional[DatabaseSchema]
    ) -> None:
        for cte in plan.ctes:
            if isinstance(cte.query, QueryPlan):
                self._apply_to_plan(cte.query, rules, schema)
        for cond in plan.conditions:
            if isinstance(cond.subquery, QueryPlan):
                self._apply_to_plan(cond.subquery, rules, schema)

        if rules.restricted_fields:
            self._expand_star_columns(plan, rules, schema)

        cte_names = {cte.name for cte in plan.ctes}
        for data_filter in rules.data_filters:
            for table in plan.tables():
                if table in cte_names:
                    continue
                if not data_filter.applies_to(table):
                    continue
                if schema is not None and not schema.has_column(table, data_filter.field):
                    if data_filter.table != ALL_TABLES:
                        logger.warning(
                            f"Filter on {table}.{data_filter.field} skipped: "
                            f"column not in schema"
                        )
                    continue
                plan.conditions.append(_filter_to_condition(data_filter, table))

    def _expand_star_columns(
        self, plan: QueryPlan, rules: DataAccessRules, schema: Optional[DatabaseSchema]
    ) -> None:
        star_tables = [
            col.table for col in plan.columns if col.column == "*" and not col.is_aggregated
        ]
        if not plan.columns:
            cte_names = {cte.name for cte in plan.ctes}
            star_tables = [t for t in plan.tables() if t not in cte_names]
        if not star_tables:
            return

        expanded: list[PlanColumn] = []
        for table in star_tables:
            table_schema = schema.get_table(table) if schema else None
            if table_schema is None:
                raise PermissionDeniedError(
                    f"Cannot select all columns of '{table}' while fields are restricted",
                    details={"table": table, "restricted_fields": rules.restricted_fields},
                )
            expanded.extend(
                PlanColumn(table=table, column=name)
                for name in table_schema.columns
                if not rules.restricts(name, self.config.sensitive_fields)
            )

        kept = [col for col in plan.columns if col.column != "*" or col.is_aggregated]
        plan.columns = expanded + kept

    def apply_filters_to_query(
        self,
        sql: str,
        filters: list[DataFilter],
        dialect: Union[SQLDialect, DatabaseType, str, None] = None,
        parameters: Optional[list[Any]] = None,
    ) -> FilteredQuery:
        """
        Inject access filters into an existing SELECT statement.

        An existing WHERE body is wrapped in parentheses and the filters are
        ANDed after it; otherwise a WHERE clause is inserted before
        GROUP BY / HAVING / ORDER BY / LIMIT. Filter values are bound as
        parameters, never inlined.

        Args:
            sql: SQL statement
            filters: Filters to inject
            dialect: Dialect of ``sql`` (placeholders and quoting)
            parameters: Parameters already bound by ``sql``

        Returns:
            FilteredQuery with the new SQL and parameter list
        """
        dialect = dialect if isinstance(dialect, SQLDialect) else get_dialect(dialect)
        parameters = list(parameters or [])
        if not filters:
            return FilteredQuery(sql=sql, parameters=parameters)

        statement = sqlparse.parse(sql)[0]
        references = _table_references(statement)
        builder = SQLBuilder(dialect)

        bound = list(parameters)
        predicates = []
        for data_filter in filters:
            for table, reference in references.items():
                if not data_filter.applies_to(table):
                    continue
                column = (
                    f"{dialect.quote_identifier(reference)}."
                    f"{dialect.quote_identifier(data_filter.field)}"
                )
                predicates.append(_render_filter(data_filter, column, dialect, builder, bound))

        if not predicates:
            logger.debug("No access filter matched the tables of the query")
            return FilteredQuery(sql=sql, parameters=parameters)

        where_span, tail = _locate_where(statement, len(sql))
        combined = " AND ".join(predicates)
        end = tail if tail is not None else len(sql)

        if where_span is not None:
            body = sql[where_span[1]:end].strip()
            clause = f"WHERE ({body}) AND {combined}"
            head = sql[:where_span[0]]
        else:
            clause = f"WHERE {combined}"
            head = sql[:end].rstrip() + "\n"

        new_sql = head + clause
        if tail is not None:
            new_sql += "\n" + sql[tail:]

        added = bound[len(parameters):]
        if dialect.placeholder(1) == dialect.placeholder(2):
            # Positional placeholders: new values follow those bound before the insertion point
            position = _count_positional_placeholders(statement, end)
            parameters[position:position] = added
        else:
            parameters.extend(added)

        logger.debug(f"Filtered SQL: {new_sql}")
        return FilteredQuery(sql=new_sql, parameters=parameters)

    def restricted_fields_for_role(self, role_title: str) -> list[str]:
        if self.config.role_in(self.config.unrestricted_field_roles, role_title):
            return []
        fields = self.config.lookup(self.config.restricted_fields_by_role, role_title)
        return fields if fields is not None else list(self.config.default_restricted_fields)

    def _c_level_rules(self, identity: CallerIdentity) -> DataAccessRules:
        return DataAccessRules(
            can_view_all_data=True,
            can_view_department_data=True,
            can_view_team_data=True,
            can_view_own_data_only=False,
            allowed_tables=[ALL_TABLES],
        )

    def _director_rules(self, identity: CallerIdentity) -> DataAccessRules:
        if not identity.department:
            logger.warning(f"Director {identity.caller_id} has no department, using default rules")
            return self._default_rules(identity)

        tables = self.config.lookup(self.config.department_tables, identity.department)
        return DataAccessRules(
            can_view_department_data=True,
            can_view_team_data=True,
            can_view_own_data_only=False,
            allowed_tables=tables if tables is not None else list(self.config.default_tables),
            restricted_fields=self.restricted_fields_for_role(identity.role_title),
            data_filters=[
                DataFilter("users", "department", "equals", identity.department),
                DataFilter("deals", "ownerDepartment", "equals", identity.department),
            ],
        )

    def _manager_rules(self, identity: CallerIdentity) -> DataAccessRules:
        if not identity.department:
            logger.warning(f"Manager {identity.caller_id} has no department, using default rules")
            return self._default_rules(identity)

        tables = self.config.lookup(self.config.role_tables, identity.role_title)
        filters = [DataFilter("users", "department", "equals", identity.department)]
        if identity.role_category is RoleCategory.SALES_MANAGER:
            filters.append(
                DataFilter("deals", "teamId", "in", subquery=_managed_teams_plan(identity))
            )

        return DataAccessRules(
            can_view_team_data=True,
            can_view_own_data_only=False,
            allowed_tables=tables if tables is not None else list(self.config.default_tables),
            restricted_fields=self.restricted_fields_for_role(identity.role_title),
            data_filters=filters,
        )

    def _individual_rules(self, identity: CallerIdentity) -> DataAccessRules:
        return DataAccessRules(
            can_view_own_data_only=True,
            allowed_tables=list(self.config.individual_tables),
            restricted_fields=list(self.config.individual_restricted_fields),
            data_filters=[
                DataFilter("deals", "ownerId", "equals", identity.caller_id),
                DataFilter("activities", "createdBy", "equals", identity.caller_id),
            ],
        )

    def _default_rules(self, identity: CallerIdentity) -> DataAccessRules:
        return DataAccessRules(
            can_view_own_data_only=True,
            allowed_tables=list(self.config.default_tables),
            restricted_fields=[ALL_TABLES],
            data_filters=[DataFilter(ALL_TABLES, "ownerId", "equals", identity.caller_id)],
        )


def _managed_teams_plan(identity: CallerIdentity) -> QueryPlan:
    """Teams managed by the caller, within the caller's tenant."""
    return QueryPlan(
        primary_table="user_teams",
        columns=[PlanColumn(table="user_teams", column="teamId")],
        conditions=[
            PlanCondition("user_teams", "managerId", "=", identity.caller_id),
            PlanCondition("user_teams", TENANT_COLUMN, "=", identity.tenant_id),
        ],
    )


def _filter_to_condition(data_filter: DataFilter, table: str) -> PlanCondition:
    if data_filter.operator not in _PLAN_OPERATORS:
        raise PermissionDeniedError(f"Unknown filter operator: {data_filter.operator}")

    operator = _PLAN_OPERATORS[data_filter.operator]
    if data_filter.subquery is not None:
        return PlanCondition(
            table, data_filter.field, operator, subquery=data_filter.subquery.copy()
        )
    if operator in ("IN", "NOT IN"):
        return PlanCondition(table, data_filter.field, operator, values=list(data_filter.value or []))
    if operator == "LIKE":
        return PlanCondition(table, data_filter.field, operator, value=f"%{data_filter.value}%")
    return PlanCondition(table, data_filter.field, operator, value=data_filter.value)


def _render_filter(
    data_filter: DataFilter,
    column: str,
    dialect: SQLDialect,
    builder: SQLBuilder,
    parameters: list,
) -> str:
    def bind(value: Any) -> str:
        parameters.append(value)
        return dialect.placeholder(len(parameters))

    operator = data_filter.operator
    if operator == "equals":
        return f"{column} = {bind(data_filter.value)}"
    if operator == "contains":
        return f"{column} LIKE {bind(f'%{data_filter.value}%')}"
    if operator in ("in", "not_in"):
        keyword = "IN" if operator == "in" else "NOT IN"
        if data_filter.subquery is not None:
            return f"{column} {keyword} ({builder.build_fragment(data_filter.subquery, parameters)})"
        values = list(data_filter.value or [])
        if not values:
            return "1=0"
        return f"{column} {keyword} ({', '.join(bind(v) for v in values)})"

    raise PermissionDeniedError(f"Unknown filter operator: {operator}")


def _plan_tables(plan: QueryPlan) -> list[str]:
    """Registry tables read by a plan and its nested plans (CTE names excluded)."""
    cte_names = {cte.name for cte in plan.ctes}
    tables = [t for t in plan.tables() if t not in cte_names]
    for nested in _nested_plans(plan):
        tables.extend(_plan_tables(nested))
    return tables


def _plan_fields(plan: QueryPlan) -> list[tuple[str, str]]:
    fields = [(c.table, c.column) for c in plan.columns if c.column != "*"]
    fields += [(c.table, c.column) for c in plan.conditions if c.column]
    fields += [(g.table, g.column) for g in plan.group_by]
    fields += [(h.table or plan.primary_table, h.column) for h in plan.having if h.column != "*"]
    fields += [(o.table, o.column) for o in plan.order_by if o.table is not None]
    for join in plan.joins:
        fields.append((join.on.left_table, join.on.left_column))
        fields.append((join.on.right_table, join.on.right_column))
    for nested in _nested_plans(plan):
        fields.extend(_plan_fields(nested))
    return fields


def _nested_plans(plan: QueryPlan) -> list[QueryPlan]:
    nested = [cte.query for cte in plan.ctes if isinstance(cte.query, QueryPlan)]
    nested += [c.subquery for c in plan.conditions if isinstance(c.subquery, QueryPlan)]
    return nested


def _unquote(name: str) -> str:
    return name.strip().strip('[]"`')


def _table_references(statement) -> dict[str, str]:
    """Map each top-level FROM/JOIN table to the name used to reference it."""
    references: dict[str, str] = {}
    expect_table = False

    for token in statement.tokens:
        if token.is_whitespace:
            continue
        if token.ttype in T.Keyword:
            keyword = " ".join(token.normalized.split())
            expect_table = keyword == "FROM" or bool(_JOIN_KEYWORD.search(keyword))
            continue
        if not expect_table:
            continue

        identifiers = (
            list(token.get_identifiers())
            if isinstance(token, sqlparse.sql.IdentifierList)
            else [token]
        )
        for identifier in identifiers:
            if isinstance(identifier, sqlparse.sql.Identifier):
                name = identifier.get_real_name()
                if name:
                    alias = identifier.get_alias()
                    references[_unquote(name)] = _unquote(alias or name)
            elif identifier.ttype in T.Name:
                references[_unquote(identifier.value)] = _unquote(identifier.value)
        expect_table = False

    return references


def _locate_where(statement, sql_length: int) -> tuple[Optional[tuple[int, int]], Optional[int]]:
    """
    Find the top-level WHERE keyword span and the offset of the clause that
    follows the WHERE position (GROUP BY, ORDER BY, LIMIT, a trailing ';').
    """
    depth = 0
    offset = 0
    where_span = None
    tail = None

    for token in statement.flatten():
        value = token.value
        if token.ttype in T.Punctuation:
            if value == "(":
                depth += 1
            elif value == ")":
                depth -= 1
            elif value == ";" and depth == 0 and tail is None:
                tail = offset
        elif depth == 0 and token.is_keyword and tail is None:
            keyword = " ".join(token.normalized.split())
            if keyword == "WHERE" and where_span is None:
                where_span = (offset, offset + len(value))
            elif keyword in _CLAUSES_AFTER_WHERE:
                tail = offset
        offset += len(value)

    return where_span, tail


def _count_positional_placeholders(statement, end: int) -> int:
    count = 0
    offset = 0
    for token in statement.flatten():
        if offset >= end:
            break
        if token.ttype in T.Name.Placeholder and token.value == "?":
            count += 1
        offset += len(token.value)
    return count
