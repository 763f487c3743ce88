"""
Prompt Builder for NL2SQL plan generation.

This module provides templates and utilities for building prompts
that include the live schema, the business glossary, and instructions
for the LLM to emit a structured query plan (never raw SQL).
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..data_sources.schema_types import DatabaseSchema
from .glossary import BusinessGlossary
from .query_plan import TENANT_COLUMN

logger = logging.getLogger(__name__)


@dataclass
class PromptConfig:
    """Configuration for prompt building."""

    include_examples: bool = True
    include_business_context: bool = True
    max_schema_tables: int = 20
    max_examples: int = 4


# Default system prompt template
DEFAULT_SYSTEM_PROMPT = """You are an expert SQL architect for a multi-tenant CRM.
Your task is to convert natural language questions into structured query plans.
You never write SQL: the plan is compiled into parameterized SQL later.

## Important Rules:
1. ALWAYS include the condition {{"table": <primary table>, "column": "{tenant_column}", "operator": "=", "value": "{tenant_id}"}}
2. Use only tables and columns listed in the schema below
3. Use joins when the question mentions several entities ("deals with account names"),
   asks for a field of another table ("revenue by industry") or says "with",
   "including", "and their". Join along the foreign keys, LEFT JOIN for optional relationships
4. Use GROUP BY when the question says "by <column>", "for each", "per", "grouped by",
   "distribution" or "breakdown". With GROUP BY, every non-aggregated column MUST be in groupBy
5. Aggregations: COUNT, SUM, AVG, MAX, MIN. COUNT over all rows uses column "*"
6. Group or select by a date part with "datePart": "year" | "month" | "day", never an expression
7. Subqueries and CTE queries are nested plans with the same shape, never SQL strings
8. Add "limit" for "top N" questions, with an orderBy on the ranking metric

## Output Format:
Respond with a single JSON object with these keys:
primaryTable, columns[{{table, column, alias?, aggregation?, datePart?}}],
joins[{{type, table, on: {{leftTable, leftColumn, rightTable, rightColumn}}}}],
conditions[{{table, column, operator, value? | values? | subquery?}}],
groupBy[{{table, column, datePart?}}], having[{{aggregation, table?, column, operator, value}}],
orderBy[{{table, column, direction}}], limit?, offset?, ctes[{{name, query}}],
visualization? (table | pie | bar | line | scatter | heatmap | funnel)

## Business Context:
{business_context}

## Database Schema:
{schema_context}
"""

# Few-shot examples for better generation
FEW_SHOT_EXAMPLES = [
    {
        "question": "Show deals with account names",
        "plan": {
            "primaryTable": "deals",
            "columns": [
                {"table": "deals", "column": "id"},
                {"table": "deals", "column": "name"},
                {"table": "deals", "column": "amount"},
                {"table": "accounts", "column": "name", "alias": "account_name"},
            ],
            "joins": [{
                "type": "LEFT",
                "table": "accounts",
                "on": {
                    "leftTable": "deals",
                    "leftColumn": "accountId",
                    "rightTable": "accounts",
                    "rightColumn": "id",
                },
            }],
        },
        "explanation": "Joins each deal to its account through deals.accountId",
    },
    {
        "question": "Show sales by stage",
        "plan": {
            "primaryTable": "deals",
            "columns": [
                {"table": "deals", "column": "stage"},
                {"table": "deals", "column": "*", "aggregation": "COUNT", "alias": "deal_count"},
                {"table": "deals", "column": "amount", "aggregation": "SUM", "alias": "total_amount"},
            ],
            "groupBy": [{"table": "deals", "column": "stage"}],
        },
        "explanation": "Counts and sums deals for each pipeline stage",
    },
    {
        "question": "Revenue by account industry for won deals",
        "plan": {
            "primaryTable": "deals",
            "columns": [
                {"table": "accounts", "column": "industry"},
                {"table": "deals", "column": "amount", "aggregation": "SUM", "alias": "total_revenue"},
            ],
            "joins": [{
                "type": "INNER",
                "table": "accounts",
                "on": {
                    "leftTable": "deals",
                    "leftColumn": "accountId",
                    "rightTable": "accounts",
                    "rightColumn": "id",
                },
            }],
            "conditions": [
                {"table": "deals", "column": "stage", "operator": "=", "value": "Closed Won"},
            ],
            "groupBy": [{"table": "accounts", "column": "industry"}],
        },
        "explanation": "Sums won deal amounts per industry of the owning account",
    },
    {
        "question": "Monthly revenue trend",
        "plan": {
            "primaryTable": "deals",
            "columns": [
                {"table": "deals", "column": "closeDate", "datePart": "month", "alias": "period"},
                {"table": "deals", "column": "amount", "aggregation": "SUM", "alias": "revenue"},
            ],
            "groupBy": [{"table": "deals", "column": "closeDate", "datePart": "month"}],
            "orderBy": [{"column": "period", "direction": "ASC"}],
            "visualization": "line",
        },
        "explanation": "Groups closed amounts by close month",
    },
]

GROUP_BY_HINT_PATTERN = re.compile(
    r"\b(?:by|for each|each|per)\s+(stage|month|owner|status|type|category)\b",
    re.IGNORECASE,
)
NEEDS_GROUP_BY_PATTERN = re.compile(
    r"(?<!order)\s+by\s+|\bfor each\b|\beach\s+|\bper\s+|\bdistribution\b|\bbreakdown\b",
    re.IGNORECASE,
)


class PromptBuilder:
    """
    Builds prompts for query plan generation with context injection.

    This class assembles prompts that include:
    - System instructions for the LLM
    - The live database schema
    - Business glossary for term translation
    - Few-shot plan examples for better accuracy
    """

    def __init__(
        self,
        config: Optional[PromptConfig] = None,
        glossary: Optional[BusinessGlossary] = None,
        system_prompt_template: Optional[str] = None,
    ):
        """
        Initialize the prompt builder.

        Args:
            config: Optional prompt configuration
            glossary: Business glossary (the packaged one by default)
            system_prompt_template: Optional custom system prompt template
        """
        self.config = config or PromptConfig()
        self.glossary = glossary or BusinessGlossary()
        self.system_prompt_template = system_prompt_template or DEFAULT_SYSTEM_PROMPT
        self.examples = list(FEW_SHOT_EXAMPLES)

        logger.info(
            f"PromptBuilder initialized with {len(self.glossary.all_terms())} "
            f"business terms"
        )

    def build_system_prompt(
        self,
        schema_context: str,
        tenant_id: str,
        business_context: Optional[str] = None,
    ) -> str:
        """
        Build the system prompt with schema and business context.

        Args:
            schema_context: Database schema description
            tenant_id: Tenant every plan must be scoped to
            business_context: Optional business glossary context

        Returns:
            Complete system prompt string
        """
        if business_context is None:
            business_context = (
                self._format_business_context()
                if self.config.include_business_context
                else "No specific business context available."
            )

        prompt = self.system_prompt_template.format(
            schema_context=schema_context,
            business_context=business_context,
            tenant_id=tenant_id,
            tenant_column=TENANT_COLUMN,
        )

        # Add few-shot examples if enabled
        if self.config.include_examples:
            examples_text = self._format_examples(tenant_id)
            prompt += f"\n\n## Examples:\n{examples_text}"

        return prompt

    def build_user_prompt(
        self,
        question: str,
        additional_context: Optional[str] = None,
    ) -> str:
        """
        Build the user prompt with the question.

        Args:
            question: The natural language question
            additional_context: Optional additional context

        Returns:
            User prompt string
        """
        processed_question = self._expand_terms(self.enhance_question_for_group_by(question))

        parts = [f"## Question:\n{processed_question}"]

        if additional_context:
            parts.append(f"\n## Additional Context:\n{additional_context}")

        parts.append(
            "\n## Instructions:\n"
            "Generate a query plan that answers this question. "
            "Respond with a single JSON object in the plan format."
        )

        return "\n".join(parts)

    def format_schema(self, schema: DatabaseSchema) -> str:
        """Render a registry snapshot, annotated with business names."""
        lines = []
        for table_name, table in list(schema.tables.items())[: self.config.max_schema_tables]:
            metadata = self.glossary.get_table_metadata(table_name)
            header = f"### Table: {table_name}"
            if metadata:
                header += f" ({metadata.business_name})"
            lines.append(header)
            if metadata and metadata.description:
                lines.append(f"Description: {metadata.description}")

            lines.append("Columns:")
            for column_name, column in table.columns.items():
                flags = ["PK"] if column.is_primary_key else []
                flags.append("NULL" if column.nullable else "NOT NULL")
                line = f"  - {column_name} ({column.type}) [{', '.join(flags)}]"
                column_meta = self.glossary.get_column_metadata(table_name, column_name)
                if column_meta and column_meta.description:
                    line += f" -- {column_meta.description}"
                lines.append(line)

            if table.foreign_keys:
                lines.append("Foreign Keys:")
                for fk in table.foreign_keys:
                    lines.append(
                        f"  - {fk.column_name} -> {fk.referenced_table}.{fk.referenced_column}"
                    )
            lines.append("")

        return "\n".join(lines).rstrip()

    def enhance_question_for_group_by(self, question: str) -> str:
        """Make an implied grouping explicit for the model."""
        if not NEEDS_GROUP_BY_PATTERN.search(question):
            return question

        dimension = GROUP_BY_HINT_PATTERN.search(question)
        if dimension:
            column = dimension.group(1).lower()
            return (
                f"{question} [IMPORTANT: This requires SELECT {column}, aggregations... "
                f"GROUP BY {column}]"
            )
        return f"{question} [IMPORTANT: This query needs GROUP BY for the dimension mentioned]"

    def _format_business_context(self) -> str:
        """Format business glossary as context string."""
        terms = self.glossary.format_for_prompt()
        return f"### Business Terms:\n{terms}" if terms else "No specific business context available."

    def _format_examples(self, tenant_id: str) -> str:
        """Format few-shot examples for the prompt."""
        examples_to_use = self.examples[: self.config.max_examples]

        parts = []
        for i, example in enumerate(examples_to_use, 1):
            plan = dict(example["plan"])
            tenant_condition = {
                "table": plan["primaryTable"],
                "column": TENANT_COLUMN,
                "operator": "=",
                "value": tenant_id,
            }
            plan["conditions"] = [tenant_condition] + list(plan.get("conditions", []))

            parts.append(f"### Example {i}:")
            parts.append(f"Question: {example['question']}")
            parts.append(f"Plan:\n```json\n{json.dumps(plan, indent=2)}\n```")
            parts.append(f"Explanation: {example['explanation']}\n")

        return "\n".join(parts)

    def _expand_terms(self, question: str) -> str:
        """Append glossary hints for business terms found in the question."""
        hints = []
        for mapping in self.glossary.find_terms_in_text(question):
            target = mapping.table + (f".{mapping.column}" if mapping.column else "")
            hint = f"Note: '{mapping.term}' refers to {target}"
            if mapping.sql_expression:
                hint += f" ({mapping.sql_expression})"
            hints.append(hint)

        if hints:
            return question + "\n\n" + "\n".join(hints)
        return question

    def add_example(
        self,
        question: str,
        plan: dict,
        explanation: str,
    ) -> None:
        """Add a new few-shot example."""
        self.examples.append({
            "question": question,
            "plan": plan,
            "explanation": explanation,
        })
        logger.info(f"Added new example: {question[:50]}...")

    def set_custom_system_prompt(self, template: str) -> None:
        """Set a custom system prompt template."""
        # Validate template has required placeholders
        required = ["{schema_context}", "{business_context}", "{tenant_id}"]
        for placeholder in required:
            if placeholder not in template:
                raise ValueError(
                    f"Template must contain {placeholder} placeholder"
                )

        self.system_prompt_template = template
        logger.info("Custom system prompt template set")
