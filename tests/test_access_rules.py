"""
Unit tests for role-based data access rules.

Tests role resolution, the decision table, plan checks and filtering, and
textual filter injection into existing SQL.
"""

import pytest

from crm_insight.data_sources import DatabaseType
from crm_insight.nl2sql.errors import PermissionDeniedError
from crm_insight.nl2sql.query_plan import (
    CommonTableExpression,
    JoinCondition,
    PlanColumn,
    PlanCondition,
    PlanJoin,
    QueryContext,
    QueryPlan,
)
from crm_insight.nl2sql.sql_builder import SQLBuilder
from crm_insight.security.access_rules import (
    AccessRulesConfig,
    CallerIdentity,
    DataAccessRules,
    DataFilter,
    PermissionEngine,
    RoleCategory,
    StaticIdentityProvider,
    resolve_role_category,
)


def deals_plan(tenant_id, *columns):
    return QueryPlan(
        primary_table="deals",
        columns=[PlanColumn("deals", c) for c in columns] or [PlanColumn("deals", "name")],
        conditions=[PlanCondition("deals", "tenantId", "=", tenant_id)],
        limit=100,
    )


class TestRoleResolution:
    """Tests for mapping role titles onto categories."""

    @pytest.mark.parametrize(
        "role_title, seniority, expected",
        [
            ("CEO", None, RoleCategory.C_LEVEL),
            ("cfo", None, RoleCategory.C_LEVEL),
            ("Chief Revenue Officer", None, RoleCategory.C_LEVEL),
            ("Sales Director", None, RoleCategory.DIRECTOR),
            ("VP of Sales", None, RoleCategory.DIRECTOR),
            ("Head of Growth", "director", RoleCategory.DIRECTOR),
            ("Sales Manager", None, RoleCategory.SALES_MANAGER),
            ("Marketing Manager", None, RoleCategory.MANAGER),
            ("Team Lead", "Manager", RoleCategory.MANAGER),
            ("Sales Rep", None, RoleCategory.INDIVIDUAL),
            ("Account Executive", None, RoleCategory.INDIVIDUAL),
            ("Analyst", "junior", RoleCategory.INDIVIDUAL),
            ("Admin", None, RoleCategory.ADMIN),
            ("Intern", None, RoleCategory.UNKNOWN),
            (None, None, RoleCategory.UNKNOWN),
        ],
    )
    def test_resolve_role_category(self, role_title, seniority, expected):
        """Test the precedence of the role decision table."""
        assert resolve_role_category(role_title, seniority) == expected

    def test_category_resolved_once_at_provisioning(self):
        """Test that the identity carries its category."""
        identity = CallerIdentity.provision("u1", "t1", "Sales Manager", department="Sales")
        assert identity.role_category is RoleCategory.SALES_MANAGER

    def test_from_context(self, rep_context):
        """Test that a request context provisions an identity."""
        identity = CallerIdentity.from_context(rep_context)
        assert identity.caller_id == "user-rep"
        assert identity.role_category is RoleCategory.INDIVIDUAL
        assert identity.department == "Sales"


class TestDecisionTable:
    """Tests for the rules derived per role category."""

    def test_c_level_is_unrestricted(self, permission_engine):
        """Test that C-level callers see everything."""
        rules = permission_engine.get_data_access_rules("user-ceo")

        assert rules.can_view_all_data
        assert rules.allowed_tables == ["*"]
        assert rules.data_filters == []
        assert rules.allows_table("anything")

    def test_director_is_department_scoped(self, permission_engine):
        """Test that directors are limited to their department."""
        rules = permission_engine.get_data_access_rules("user-director")

        assert rules.can_view_department_data
        assert "users" in rules.allowed_tables
        assert rules.restricted_fields == ["passwordHash", "credentialsEncrypted"]
        assert [(f.table, f.field, f.value) for f in rules.data_filters] == [
            ("users", "department", "Sales"),
            ("deals", "ownerDepartment", "Sales"),
        ]

    def test_sales_manager_gets_team_filter(self, permission_engine, tenant_id):
        """Test that sales managers are limited to the teams they manage."""
        rules = permission_engine.get_data_access_rules("user-manager")

        assert rules.can_view_team_data
        assert "salary" in rules.restricted_fields
        team_filter = rules.data_filters[-1]
        assert (team_filter.table, team_filter.field, team_filter.operator) == ("deals", "teamId", "in")
        assert team_filter.subquery.primary_table == "user_teams"
        assert team_filter.subquery.has_tenant_condition(tenant_id)

    def test_other_manager_has_no_team_filter(self, permission_engine):
        """Test that non-sales managers only get the department filter."""
        rules = permission_engine.get_data_access_rules("user-mktg")

        assert [f.field for f in rules.data_filters] == ["department"]
        assert "campaigns" in rules.allowed_tables

    def test_individual_sees_own_records(self, permission_engine):
        """Test that individual contributors are limited to their own rows."""
        rules = permission_engine.get_data_access_rules("user-rep")

        assert rules.can_view_own_data_only
        assert "users" not in rules.allowed_tables
        assert [(f.table, f.field, f.value) for f in rules.data_filters] == [
            ("deals", "ownerId", "user-rep"),
            ("activities", "createdBy", "user-rep"),
        ]

    @pytest.mark.parametrize("caller_id", ["user-admin", "user-intern"])
    def test_default_rules_are_most_restrictive(self, permission_engine, caller_id):
        """Test that unknown roles read only their own deals and accounts."""
        rules = permission_engine.get_data_access_rules(caller_id)

        assert rules.allowed_tables == ["deals", "accounts"]
        assert rules.restricted_fields == ["*"]
        assert rules.data_filters[0].table == "*"
        assert rules.data_filters[0].value == caller_id

    def test_director_without_department_falls_back(self, access_config, tenant_id):
        """Test that a director without a department gets the default rules."""
        provider = StaticIdentityProvider(
            [CallerIdentity.provision("user-x", tenant_id, "Sales Director")]
        )

        rules = PermissionEngine(provider, config=access_config).get_data_access_rules("user-x")

        assert rules.allowed_tables == ["deals", "accounts"]

    def test_unknown_caller_raises(self, permission_engine):
        """Test that rules for an unknown caller are refused."""
        with pytest.raises(PermissionDeniedError):
            permission_engine.get_data_access_rules("nobody")

    def test_star_restriction_hides_sensitive_fields(self, permission_engine, access_config):
        """Test that "*" restricts every sensitive field and nothing else."""
        rules = permission_engine.get_data_access_rules("user-intern")

        assert rules.restricts("salary", access_config.sensitive_fields)
        assert not rules.restricts("amount", access_config.sensitive_fields)


class TestCanUserAccess:
    """Tests for coarse action checks."""

    @pytest.mark.parametrize(
        "caller_id, resource, action, expected",
        [
            ("user-rep", "deals", "read", True),
            ("user-rep", "users", "read", False),
            ("user-ceo", "payments", "read", True),
            ("user-ceo", "deals", "write", True),
            ("user-manager", "deals", "write", True),
            ("user-rep", "deals", "write", False),
            ("user-admin", "deals", "delete", True),
            ("user-manager", "deals", "delete", False),
            ("user-ceo", "deals", "share", False),
            ("nobody", "deals", "read", False),
        ],
    )
    def test_can_user_access(self, permission_engine, caller_id, resource, action, expected):
        """Test reads against tables and writes against role allow-lists."""
        assert permission_engine.can_user_access(caller_id, resource, action) is expected


class TestCheckPlanAccess:
    """Tests for plan-level permission checks."""

    def test_allowed_plan_passes(self, permission_engine, tenant_id):
        """Test that a plan within the rules is accepted."""
        rules = permission_engine.get_data_access_rules("user-rep")
        permission_engine.check_plan_access(deals_plan(tenant_id, "name", "amount"), rules)

    def test_disallowed_table(self, permission_engine, tenant_id):
        """Test that a disallowed table raises with the table names."""
        rules = permission_engine.get_data_access_rules("user-rep")
        plan = QueryPlan(primary_table="users", columns=[PlanColumn("users", "email")])

        with pytest.raises(PermissionDeniedError) as exc_info:
            permission_engine.check_plan_access(plan, rules)
        assert exc_info.value.details["tables"] == ["users"]

    def test_restricted_field(self, permission_engine):
        """Test that a restricted field raises even on an allowed table."""
        rules = permission_engine.get_data_access_rules("user-manager")
        plan = QueryPlan(primary_table="users", columns=[PlanColumn("users", "salary")])

        with pytest.raises(PermissionDeniedError) as exc_info:
            permission_engine.check_plan_access(plan, rules)
        assert exc_info.value.details["fields"] == ["users.salary"]

    def test_nested_plan_tables_are_checked(self, permission_engine, tenant_id):
        """Test that subqueries cannot reach disallowed tables."""
        rules = permission_engine.get_data_access_rules("user-rep")
        plan = deals_plan(tenant_id)
        plan.conditions.append(PlanCondition(
            "deals", "ownerId", "IN",
            subquery=QueryPlan(primary_table="users", columns=[PlanColumn("users", "id")]),
        ))

        with pytest.raises(PermissionDeniedError):
            permission_engine.check_plan_access(plan, rules)

    def test_cte_names_are_not_tables(self, permission_engine, tenant_id):
        """Test that CTE names are not checked against the allow-list."""
        rules = permission_engine.get_data_access_rules("user-rep")
        plan = QueryPlan(
            primary_table="mine",
            columns=[PlanColumn("mine", "name")],
            ctes=[CommonTableExpression("mine", deals_plan(tenant_id))],
        )

        permission_engine.check_plan_access(plan, rules)


class TestApplyRulesToPlan:
    """Tests for narrowing plans to permitted rows and columns."""

    def test_individual_filter_added(self, permission_engine, schema, tenant_id):
        """Test that a rep's plan only reads the rep's deals."""
        rules = permission_engine.get_data_access_rules("user-rep")
        plan = deals_plan(tenant_id, "name", "amount")

        filtered = permission_engine.apply_rules_to_plan(plan, rules, schema)

        assert PlanCondition("deals", "ownerId", "=", "user-rep") in filtered.conditions
        assert len(plan.conditions) == 1

    def test_filters_only_touch_plan_tables(self, permission_engine, schema, tenant_id):
        """Test that filters for absent tables are not applied."""
        rules = permission_engine.get_data_access_rules("user-director")

        filtered = permission_engine.apply_rules_to_plan(deals_plan(tenant_id), rules, schema)

        added = [(c.table, c.column) for c in filtered.conditions[1:]]
        assert added == [("deals", "ownerDepartment")]

    def test_wildcard_filter_skips_tables_without_field(self, permission_engine, schema, tenant_id):
        """Test that "*" filters only apply where the field exists."""
        rules = permission_engine.get_data_access_rules("user-intern")
        plan = deals_plan(tenant_id, "name")
        plan.joins.append(PlanJoin("LEFT", "activities", JoinCondition("deals", "id", "activities", "dealId")))

        filtered = permission_engine.apply_rules_to_plan(plan, rules, schema)

        added = [(c.table, c.column) for c in filtered.conditions[1:]]
        assert added == [("deals", "ownerId")]

    def test_sales_manager_team_subquery_compiles(self, permission_engine, schema, tenant_id):
        """Test that the team filter becomes a parameterized subquery."""
        rules = permission_engine.get_data_access_rules("user-manager")

        filtered = permission_engine.apply_rules_to_plan(deals_plan(tenant_id), rules, schema)
        result = SQLBuilder(DatabaseType.POSTGRES).build(filtered)

        assert '"d"."teamId" IN (SELECT "ut"."teamId"' in result.sql
        assert '"ut"."managerId" = $2 AND "ut"."tenantId" = $3)' in result.sql
        assert result.parameters == [tenant_id, "user-manager", tenant_id]

    def test_star_expanded_without_restricted_fields(self, permission_engine, schema, tenant_id):
        """Test that SELECT * becomes an explicit, permitted column list."""
        rules = permission_engine.get_data_access_rules("user-director")
        plan = QueryPlan(
            primary_table="users",
            columns=[PlanColumn("users", "*")],
            conditions=[PlanCondition("users", "tenantId", "=", tenant_id)],
        )

        filtered = permission_engine.apply_rules_to_plan(plan, rules, schema)

        columns = [c.column for c in filtered.columns]
        assert "email" in columns
        assert "passwordHash" not in columns
        assert "*" not in columns

    def test_star_without_schema_is_refused(self, permission_engine, tenant_id):
        """Test that restricted fields cannot be hidden without a schema."""
        rules = permission_engine.get_data_access_rules("user-intern")
        plan = QueryPlan(primary_table="deals", conditions=[PlanCondition("deals", "tenantId", "=", tenant_id)])

        with pytest.raises(PermissionDeniedError):
            permission_engine.apply_rules_to_plan(plan, rules)

    def test_nested_plans_are_filtered(self, permission_engine, schema, tenant_id):
        """Test that subqueries receive the filters of their own tables."""
        rules = permission_engine.get_data_access_rules("user-rep")
        activities = QueryPlan(
            primary_table="activities",
            columns=[PlanColumn("activities", "dealId")],
            conditions=[PlanCondition("activities", "tenantId", "=", tenant_id)],
        )
        plan = deals_plan(tenant_id)
        plan.conditions.append(PlanCondition("deals", "id", "IN", subquery=activities))

        filtered = permission_engine.apply_rules_to_plan(plan, rules, schema)

        nested = filtered.conditions[1].subquery
        assert PlanCondition("activities", "createdBy", "=", "user-rep") in nested.conditions


class TestApplyFiltersToQuery:
    """Tests for textual filter injection."""

    def test_inserts_where_before_order_by(self, permission_engine):
        """Test that a WHERE clause is added ahead of ORDER BY and LIMIT."""
        sql = "SELECT d.name, d.amount FROM deals d ORDER BY d.amount DESC LIMIT 10"
        filters = [DataFilter("deals", "ownerId", "equals", "user-rep")]

        result = permission_engine.apply_filters_to_query(sql, filters, DatabaseType.POSTGRES)

        assert result.sql == (
            "SELECT d.name, d.amount FROM deals d\n"
            'WHERE "d"."ownerId" = $1\n'
            "ORDER BY d.amount DESC LIMIT 10"
        )
        assert result.parameters == ["user-rep"]

    def test_wraps_existing_where(self, permission_engine):
        """Test that an existing condition is parenthesized before ANDing."""
        sql = "SELECT * FROM deals WHERE stage = ? OR amount > ?"
        filters = [DataFilter("deals", "ownerId", "equals", "user-rep")]

        result = permission_engine.apply_filters_to_query(
            sql, filters, DatabaseType.SQLITE, parameters=["Closed Won", 1000]
        )

        assert result.sql == (
            'SELECT * FROM deals WHERE (stage = ? OR amount > ?) AND "deals"."ownerId" = ?'
        )
        assert result.parameters == ["Closed Won", 1000, "user-rep"]

    def test_positional_parameters_keep_text_order(self, permission_engine):
        """Test that new values are bound before placeholders after the WHERE."""
        sql = "SELECT d.id FROM deals d WHERE d.amount > ? ORDER BY d.amount LIMIT ?"
        filters = [DataFilter("deals", "ownerId", "equals", "user-rep")]

        result = permission_engine.apply_filters_to_query(
            sql, filters, DatabaseType.SQLITE, parameters=[1000, 5]
        )

        assert result.sql == (
            'SELECT d.id FROM deals d WHERE (d.amount > ?) AND "d"."ownerId" = ?\n'
            "ORDER BY d.amount LIMIT ?"
        )
        assert result.parameters == [1000, "user-rep", 5]

    def test_wildcard_filter_uses_aliases(self, permission_engine):
        """Test that "*" filters target every referenced table by its alias."""
        sql = "SELECT d.name, a.name FROM deals d LEFT JOIN accounts a ON d.accountId = a.id"
        filters = [DataFilter("*", "ownerId", "equals", "user-intern")]

        result = permission_engine.apply_filters_to_query(sql, filters, DatabaseType.POSTGRES)

        assert result.sql.endswith('WHERE "d"."ownerId" = $1 AND "a"."ownerId" = $2')
        assert result.parameters == ["user-intern", "user-intern"]

    def test_group_by_query(self, permission_engine):
        """Test that the WHERE goes before GROUP BY."""
        sql = "SELECT stage, COUNT(*) FROM deals GROUP BY stage"
        filters = [DataFilter("deals", "ownerDepartment", "contains", "Sales")]

        result = permission_engine.apply_filters_to_query(sql, filters, DatabaseType.MYSQL)

        assert result.sql == (
            "SELECT stage, COUNT(*) FROM deals\n"
            "WHERE `deals`.`ownerDepartment` LIKE ?\n"
            "GROUP BY stage"
        )
        assert result.parameters == ["%Sales%"]

    @pytest.mark.parametrize("operator", ["in", "not_in"])
    def test_empty_list_filter_matches_nothing(self, permission_engine, operator):
        """Test that an empty value list compiles to 1=0 for both list operators."""
        sql = "SELECT * FROM deals"
        filters = [DataFilter("deals", "teamId", operator, [])]

        result = permission_engine.apply_filters_to_query(sql, filters, DatabaseType.POSTGRES)

        assert result.sql == "SELECT * FROM deals\nWHERE 1=0"
        assert result.parameters == []

    @pytest.mark.parametrize("operator", ["in", "not_in"])
    def test_empty_list_filter_agrees_with_plan_path(self, permission_engine, tenant_id, operator):
        """Test that query text and plans compile an empty value list the same way."""
        data_filter = DataFilter("deals", "teamId", operator, [])
        rules = DataAccessRules(allowed_tables=["deals"], data_filters=[data_filter])

        filtered = permission_engine.apply_rules_to_plan(deals_plan(tenant_id), rules)
        plan_sql = SQLBuilder(DatabaseType.POSTGRES).build(filtered).sql
        text_sql = permission_engine.apply_filters_to_query(
            "SELECT * FROM deals", [data_filter], DatabaseType.POSTGRES
        ).sql

        assert "AND 1=0\nLIMIT" in plan_sql
        assert text_sql.endswith("WHERE 1=0")

    def test_subquery_filter(self, permission_engine, tenant_id):
        """Test that a team subquery is compiled with bound parameters."""
        rules = permission_engine.get_data_access_rules("user-manager")
        sql = "SELECT d.name FROM deals d"

        result = permission_engine.apply_filters_to_query(
            sql, [rules.data_filters[-1]], DatabaseType.POSTGRES
        )

        assert '"d"."teamId" IN (SELECT "ut"."teamId"' in result.sql
        assert result.parameters == ["user-manager", tenant_id]

    def test_unrelated_filters_leave_sql_untouched(self, permission_engine):
        """Test that filters for other tables change nothing."""
        sql = "SELECT * FROM accounts"
        filters = [DataFilter("activities", "createdBy", "equals", "user-rep")]

        result = permission_engine.apply_filters_to_query(sql, filters, DatabaseType.POSTGRES)

        assert result.sql == sql
        assert result.parameters == []


class TestAccessRulesConfig:
    """Tests for loading allow-lists."""

    def test_packaged_config(self, access_config):
        """Test the packaged allow-lists."""
        assert "CEO" in access_config.c_level_roles
        assert access_config.lookup(access_config.department_tables, "sales")[0] == "deals"
        assert access_config.default_tables == ["deals", "accounts"]

    def test_unknown_keys_are_ignored(self, tmp_path):
        """Test that extra YAML keys do not break loading."""
        path = tmp_path / "rules.yaml"
        path.write_text("c_level_roles: [Founder]\nunknown_section: true\n")

        config = AccessRulesConfig.load(path)

        assert resolve_role_category("Founder", config=config) is RoleCategory.C_LEVEL

    def test_missing_file_raises(self, tmp_path):
        """Test that a missing rules file is an error."""
        with pytest.raises(OSError):
            AccessRulesConfig.load(tmp_path / "missing.yaml")


def test_pipeline_context_identity(rep_context):
    """Test that a QueryContext maps onto the caller identity fields."""
    assert isinstance(rep_context, QueryContext)
    assert CallerIdentity.from_context(rep_context).tenant_id == rep_context.tenant_id
