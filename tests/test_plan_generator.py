"""
Unit tests for the query plan generator.

Tests structured generation, response parsing, retries, and the
deterministic fallback plan.
"""

import json
from unittest.mock import Mock, patch

import pytest
from openai import OpenAIError

from crm_insight.nl2sql.errors import GenerationError, PlanValidationError
from crm_insight.nl2sql.plan_generator import (
    AIPlanGenerator,
    GeneratedPlan,
    NL2SQLConfig,
)
from crm_insight.nl2sql.query_plan import (
    GroupByItem,
    PlanColumn,
    PlanCondition,
    QueryPlan,
)


@pytest.fixture
def make_generator(registry, glossary):
    """Factory for generators with a patched environment."""

    def _make(client=None, **overrides):
        with patch("crm_insight.nl2sql.plan_generator.EnvHelper") as env:
            env.return_value.is_openai_configured.return_value = False
            env.return_value.AZURE_OPENAI_MODEL = "gpt-4o"
            config = NL2SQLConfig(**{"temperature": 0.0, "max_tokens": 1024, **overrides})
            return AIPlanGenerator(registry, glossary=glossary, config=config, openai_client=client)

    return _make


@pytest.fixture
def generator(make_generator, mock_openai_client):
    """Create a generator with mocked OpenAI client."""
    return make_generator(mock_openai_client)


class TestStructuredGeneration:
    """Tests for plans produced by the model."""

    def test_plan_query_uses_model_plan(self, generator, ceo_context, today):
        """Test that a valid reply becomes the plan."""
        result = generator.plan_query("Show deals with account names", ceo_context, today)

        assert isinstance(result, GeneratedPlan)
        assert result.source == AIPlanGenerator.SOURCE_AI
        assert result.plan.primary_table == "deals"
        assert [j.table for j in result.plan.joins] == ["accounts"]
        assert result.tokens_used == 150
        assert result.model_used == "gpt-4o"
        assert result.original_question == "Show deals with account names"

    def test_listing_defaults_to_table_chart(self, generator, ceo_context):
        """Test that a plain listing is shown as a table."""
        result = generator.plan_query("Show deals with account names", ceo_context)

        assert result.plan.visualization == "table"

    def test_request_shape(self, generator, mock_openai_client, ceo_context, tenant_id):
        """Test that the model is asked for a JSON object with the tenant in the prompt."""
        generator.plan_query("Show deals with account names", ceo_context)

        _, kwargs = mock_openai_client.chat.completions.create.call_args
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["temperature"] == 0.0
        assert kwargs["max_tokens"] == 1024
        assert kwargs["response_format"] == {"type": "json_object"}
        system, user = kwargs["messages"]
        assert system["role"] == "system"
        assert tenant_id in system["content"]
        assert "### Table: deals" in system["content"]
        assert "Show deals with account names" in user["content"]
        assert "Detected intent" in user["content"]

    def test_missing_tenant_condition_is_injected(
        self, make_generator, openai_client_factory, ceo_context, tenant_id
    ):
        """Test that a reply without a tenant condition is scoped anyway."""
        client = openai_client_factory(json.dumps({
            "primaryTable": "accounts",
            "columns": [{"table": "accounts", "column": "name"}],
        }))

        result = make_generator(client).plan_query("List accounts", ceo_context)

        assert result.plan.has_tenant_condition(tenant_id)

    def test_no_client_raises(self, make_generator, ceo_context):
        """Test that direct generation without a client is an error."""
        with pytest.raises(GenerationError):
            make_generator().generate("Show deals", ceo_context)


class TestResponseParsing:
    """Tests for parsing model replies."""

    def test_code_fences_are_stripped(self, generator, deals_with_accounts_plan):
        """Test that a fenced JSON reply is accepted."""
        content = f"```json\n{json.dumps(deals_with_accounts_plan)}\n```"

        plan = generator._parse_response({"content": content})

        assert plan.primary_table == "deals"
        assert plan.limit == 100

    def test_plan_wrapper(self, generator, deals_with_accounts_plan):
        """Test that a reply wrapping the plan in a "plan" key is unwrapped."""
        content = json.dumps({"plan": deals_with_accounts_plan, "explanation": "joined"})

        plan = generator._parse_response({"content": content})

        assert plan.joins[0].on.left_column == "accountId"

    def test_lowercase_keywords_are_normalized(self, generator):
        """Test that operators, directions and aggregations are upper-cased."""
        content = json.dumps({
            "primaryTable": "deals",
            "columns": [{"table": "deals", "column": "amount", "aggregation": "sum"}],
            "conditions": [{"table": "deals", "column": "stage", "operator": "not in", "values": ["Lost"]}],
            "orderBy": [{"table": "deals", "column": "amount", "direction": "desc"}],
        })

        plan = generator._parse_response({"content": content})

        assert plan.columns[0].aggregation == "SUM"
        assert plan.conditions[0].operator == "NOT IN"
        assert plan.order_by[0].direction == "DESC"

    def test_nested_subquery_is_structured(self, generator):
        """Test that subqueries are parsed into nested plans."""
        content = json.dumps({
            "primaryTable": "accounts",
            "conditions": [{
                "table": "accounts",
                "column": "id",
                "operator": "IN",
                "subquery": {
                    "primaryTable": "deals",
                    "columns": [{"table": "deals", "column": "accountId"}],
                },
            }],
        })

        plan = generator._parse_response({"content": content})

        assert isinstance(plan.conditions[0].subquery, QueryPlan)
        assert plan.conditions[0].subquery.primary_table == "deals"

    @pytest.mark.parametrize(
        "content",
        [
            "SELECT * FROM deals",
            "[1, 2, 3]",
            json.dumps({"columns": []}),
            json.dumps({"primaryTable": "deals", "limit": -1}),
            "",
        ],
    )
    def test_invalid_replies_raise(self, generator, content):
        """Test that malformed replies raise GenerationError."""
        with pytest.raises(GenerationError):
            generator._parse_response({"content": content})


class TestRetry:
    """Tests for retry behavior."""

    def test_retries_with_feedback(self, make_generator, openai_client_factory, deals_with_accounts_plan, ceo_context):
        """Test that a failed attempt is retried with its error as feedback."""
        success = openai_client_factory(json.dumps(deals_with_accounts_plan))
        client = Mock()
        client.chat.completions.create.side_effect = [
            OpenAIError("Temporary error"),
            success.chat.completions.create.return_value,
        ]
        generator = make_generator(client, max_retries=3)

        result = generator.generate_with_retry("Show deals with account names", ceo_context)

        assert result.source == AIPlanGenerator.SOURCE_AI
        assert client.chat.completions.create.call_count == 2
        _, kwargs = client.chat.completions.create.call_args
        assert "Previous attempt was invalid" in kwargs["messages"][1]["content"]

    def test_raises_after_max_retries(self, make_generator, ceo_context):
        """Test that error is raised after max retries exceeded."""
        client = Mock()
        client.chat.completions.create.side_effect = OpenAIError("Persistent error")
        generator = make_generator(client, max_retries=2)

        with pytest.raises(GenerationError):
            generator.generate_with_retry("Test", ceo_context)
        assert client.chat.completions.create.call_count == 2


class TestFallback:
    """Tests for the deterministic fallback plan."""

    def test_failed_generation_falls_back(self, make_generator, openai_client_factory, ceo_context, tenant_id):
        """Test that an invalid reply degrades to the fallback plan."""
        generator = make_generator(openai_client_factory("not json at all"))

        result = generator.plan_query("Show sales by stage", ceo_context)

        assert result.source == AIPlanGenerator.SOURCE_FALLBACK
        assert result.error is not None
        assert result.plan.has_tenant_condition(tenant_id)

    def test_sales_by_stage_without_client(self, make_generator, ceo_context):
        """Test that a grouped question becomes a count per group."""
        result = make_generator().plan_query("Show sales by stage", ceo_context)

        plan = result.plan
        assert plan.primary_table == "deals"
        assert [(c.column, c.aggregation) for c in plan.columns] == [("stage", None), ("*", "COUNT")]
        assert [g.column for g in plan.group_by] == ["stage"]
        assert plan.visualization == "bar"

    def test_top_n(self, make_generator, ceo_context):
        """Test that a ranking question orders and limits the fallback plan."""
        result = make_generator().plan_query("Top 10 deals by amount", ceo_context)

        assert result.plan.limit == 10
        assert result.plan.order_by[0].column == "amount"
        assert result.plan.order_by[0].direction == "DESC"

    @pytest.mark.parametrize("question", ["List deals for the desktop team", "Deals that stopped moving"])
    def test_top_inside_a_word_adds_no_limit(self, make_generator, ceo_context, question):
        """Test that only the standalone word "top" limits the fallback plan."""
        plan = make_generator().generate_fallback_plan(question, ceo_context)

        assert plan.limit is None

    def test_count(self, make_generator, ceo_context):
        """Test that a count question targets the named table."""
        plan = make_generator().generate_fallback_plan("How many contacts are there?", ceo_context)

        assert plan.primary_table == "contacts"
        assert plan.columns[0].aggregation == "COUNT"
        assert plan.columns[0].alias == "count"

    def test_total(self, make_generator, ceo_context):
        """Test that a total question sums the first numeric column."""
        plan = make_generator().generate_fallback_plan("Total of deals", ceo_context)

        assert plan.columns[0].aggregation == "SUM"
        assert plan.columns[0].alias.startswith("total_")

    def test_empty_schema_raises(self, glossary, ceo_context):
        """Test that an empty registry leaves no table to fall back on."""
        registry = Mock()
        registry.get_schema.return_value = Mock(tables={})
        with patch("crm_insight.nl2sql.plan_generator.EnvHelper") as env:
            env.return_value.is_openai_configured.return_value = False
            generator = AIPlanGenerator(registry, glossary=glossary, config=NL2SQLConfig())

        with pytest.raises(PlanValidationError):
            generator.generate_fallback_plan("Anything", ceo_context)


class TestPatternPath:
    """Tests for the optional pattern fast path."""

    def test_pattern_skips_model(self, make_generator, mock_openai_client, ceo_context):
        """Test that a matching pattern answers without a model call."""
        generator = make_generator(mock_openai_client, use_pattern_library=True)

        result = generator.plan_query("Show sales by stage", ceo_context)

        assert result.source == AIPlanGenerator.SOURCE_PATTERN
        assert result.plan.columns[1].aggregation == "SUM"
        mock_openai_client.chat.completions.create.assert_not_called()

    def test_pattern_library_off_by_default(self, make_generator, mock_openai_client, ceo_context):
        """Test that the model is used when patterns are disabled."""
        generator = make_generator(mock_openai_client)

        generator.plan_query("Show sales by stage", ceo_context)

        mock_openai_client.chat.completions.create.assert_called_once()


class TestPlanHelpers:
    """Tests for tenant injection, forced grouping and plan explanation."""

    def test_inject_replaces_foreign_tenant(self, tenant_id):
        """Test that a foreign tenant condition is replaced."""
        plan = QueryPlan(
            primary_table="deals",
            conditions=[
                PlanCondition("deals", "tenantId", "=", "tenant-globex"),
                PlanCondition("deals", "stage", "=", "Closed Won"),
            ],
        )

        AIPlanGenerator.inject_tenant_condition(plan, tenant_id)

        assert plan.has_tenant_condition(tenant_id)
        assert not plan.has_tenant_condition("tenant-globex")
        assert len(plan.conditions) == 2

    def test_inject_keeps_existing(self, tenant_id):
        """Test that a correct tenant condition is left alone."""
        plan = QueryPlan(
            primary_table="deals",
            conditions=[PlanCondition("deals", "tenantId", "=", tenant_id)],
        )

        AIPlanGenerator.inject_tenant_condition(plan, tenant_id)

        assert len(plan.conditions) == 1

    @pytest.mark.parametrize(
        "question, expected",
        [
            ("Show sales by stage", True),
            ("Deals for each owner", True),
            ("Revenue per month", True),
            ("Distribution of leads", True),
            ("Count of deals by region", True),
            ("Top 10 deals by amount", False),
            ("List all accounts", False),
        ],
    )
    def test_should_force_group_by(self, question, expected):
        """Test the grouping indicators."""
        assert AIPlanGenerator.should_force_group_by(question) is expected

    def test_add_group_by_to_aggregated_plan(self, generator):
        """Test that the dimension is selected and grouped."""
        plan = QueryPlan(
            primary_table="deals",
            columns=[PlanColumn("deals", "amount", alias="total", aggregation="SUM")],
        )

        generator.add_group_by_to_plan(plan, "Total amount by stage")

        assert plan.columns[0] == PlanColumn("deals", "stage")
        assert plan.group_by == [GroupByItem("deals", "stage")]

    def test_add_group_by_by_month(self, generator):
        """Test that a month dimension groups by the close month."""
        plan = QueryPlan(
            primary_table="deals",
            columns=[PlanColumn("deals", "amount", aggregation="SUM")],
        )

        generator.add_group_by_to_plan(plan, "Revenue by month")

        assert plan.group_by[0].date_part == "month"
        assert plan.columns[0].column == "closeDate"

    def test_add_group_by_without_dimension(self, generator):
        """Test that a question without a dimension leaves the plan alone."""
        plan = QueryPlan(primary_table="deals", columns=[PlanColumn("deals", "amount")])

        generator.add_group_by_to_plan(plan, "Distribution of deals")

        assert plan.group_by == []
        assert len(plan.columns) == 1

    def test_explain_plan(self):
        """Test the human readable plan description."""
        plan = QueryPlan(
            primary_table="deals",
            columns=[
                PlanColumn("deals", "stage"),
                PlanColumn("deals", "*", alias="count", aggregation="COUNT"),
            ],
            conditions=[PlanCondition("deals", "tenantId", "=", "tenant-acme")],
            group_by=[GroupByItem("deals", "stage")],
            limit=10,
            visualization="bar",
        )

        explanation = AIPlanGenerator.explain_plan(plan)

        assert explanation.splitlines() == [
            "Query will select from table: deals",
            "Selecting columns: deals.stage, COUNT(deals.*) as count",
            "Filtering where: deals.tenantId = tenant-acme",
            "Grouping by: deals.stage",
            "Limiting to 10 rows",
            "Results will be displayed as: bar chart",
        ]


class TestGeneratedPlan:
    """Tests for GeneratedPlan dataclass."""

    def test_to_dict(self, generator, ceo_context):
        """Test GeneratedPlan serialization."""
        result = generator.plan_query("Show deals with account names", ceo_context)

        d = result.to_dict()

        assert d["source"] == "ai"
        assert d["plan"]["primaryTable"] == "deals"
        assert d["tokens_used"] == 150
        assert d["error"] is None
        assert "intent" in d
