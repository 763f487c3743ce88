"""
Unit tests for the NL2SQL prompt builder.
"""

import pytest

from crm_insight.nl2sql.prompt_builder import PromptBuilder, PromptConfig


@pytest.fixture
def prompt_builder(glossary):
    """Create a prompt builder over the packaged glossary."""
    return PromptBuilder(glossary=glossary)


class TestSystemPrompt:
    """Tests for system prompt assembly."""

    def test_includes_schema_and_tenant(self, prompt_builder, tenant_id):
        """Test that the schema and tenant condition are rendered."""
        prompt = prompt_builder.build_system_prompt(
            schema_context="### Table: deals", tenant_id=tenant_id
        )

        assert "### Table: deals" in prompt
        assert f'"column": "tenantId", "operator": "=", "value": "{tenant_id}"' in prompt
        assert "### Business Terms:" in prompt

    def test_examples_are_tenant_scoped(self, prompt_builder, tenant_id):
        """Test that every few-shot plan carries the tenant condition."""
        prompt = prompt_builder.build_system_prompt("schema", tenant_id)

        assert "## Examples:" in prompt
        assert prompt.count("### Example ") == 4
        assert prompt.count(f'"value": "{tenant_id}"') >= 4

    def test_examples_can_be_disabled(self, glossary, tenant_id):
        """Test that examples are omitted when disabled."""
        builder = PromptBuilder(config=PromptConfig(include_examples=False), glossary=glossary)

        assert "## Examples:" not in builder.build_system_prompt("schema", tenant_id)

    def test_explicit_business_context(self, prompt_builder, tenant_id):
        """Test that a caller-provided business context is used verbatim."""
        prompt = prompt_builder.build_system_prompt("schema", tenant_id, business_context="Fiscal year starts in July")

        assert "Fiscal year starts in July" in prompt
        assert "### Business Terms:" not in prompt

    def test_add_example(self, glossary, tenant_id):
        """Test that added examples are rendered."""
        builder = PromptBuilder(config=PromptConfig(max_examples=10), glossary=glossary)
        builder.add_example(
            "How many accounts per industry",
            {"primaryTable": "accounts", "columns": [{"table": "accounts", "column": "industry"}]},
            "Counts accounts by industry",
        )

        prompt = builder.build_system_prompt("schema", tenant_id)

        assert "How many accounts per industry" in prompt
        assert "### Example 5:" in prompt

    def test_custom_template_requires_placeholders(self, prompt_builder):
        """Test that a template without the tenant placeholder is rejected."""
        with pytest.raises(ValueError):
            prompt_builder.set_custom_system_prompt("Schema: {schema_context} {business_context}")

    def test_custom_template(self, prompt_builder):
        """Test that a valid custom template is used."""
        prompt_builder.set_custom_system_prompt(
            "Tenant {tenant_id}\n{business_context}\n{schema_context}"
        )

        prompt = prompt_builder.build_system_prompt("SCHEMA", "t-1")

        assert prompt.startswith("Tenant t-1\n")
        assert "SCHEMA" in prompt


class TestUserPrompt:
    """Tests for user prompt assembly."""

    def test_group_by_hint(self, prompt_builder):
        """Test that grouped questions name the dimension."""
        prompt = prompt_builder.build_user_prompt("Show sales by stage")

        assert "GROUP BY stage]" in prompt
        assert "Note: 'sales' refers to deals" in prompt

    def test_additional_context(self, prompt_builder):
        """Test that additional context gets its own section."""
        prompt = prompt_builder.build_user_prompt("List accounts", "Detected intent: list")

        assert "## Additional Context:\nDetected intent: list" in prompt

    @pytest.mark.parametrize(
        "question, expected",
        [
            ("List deals order by amount", "List deals order by amount"),
            (
                "Revenue by industry",
                "Revenue by industry [IMPORTANT: This query needs GROUP BY for the dimension mentioned]",
            ),
            (
                "Deals for each owner",
                "Deals for each owner [IMPORTANT: This requires SELECT owner, aggregations... GROUP BY owner]",
            ),
        ],
    )
    def test_enhance_question_for_group_by(self, prompt_builder, question, expected):
        """Test that ORDER BY is not mistaken for a grouping."""
        assert prompt_builder.enhance_question_for_group_by(question) == expected


class TestFormatSchema:
    """Tests for schema rendering."""

    def test_business_names_and_foreign_keys(self, prompt_builder, schema):
        """Test that tables carry business names and relationships."""
        text = prompt_builder.format_schema(schema)

        assert "### Table: deals (Sales Opportunities)" in text
        assert "  - accountId -> accounts.id" in text
        assert "[PK, NOT NULL]" in text

    def test_table_limit(self, glossary, schema):
        """Test that only the configured number of tables is rendered."""
        builder = PromptBuilder(config=PromptConfig(max_schema_tables=2), glossary=glossary)

        text = builder.format_schema(schema)

        assert text.count("### Table:") == 2
