"""
Query plan generator using Azure OpenAI structured output.

This module turns a natural language question into a QueryPlan. The
pattern library can serve common phrasings without a model call; everything
else goes to the structured-generation service, whose reply is validated
against the plan shape. Any generation failure degrades to a deterministic
heuristic plan so a request never stalls on the external service.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from openai import AzureOpenAI, OpenAIError
from pydantic import ValidationError

from ..data_sources.schema_registry import SchemaRegistry
from ..helpers.env_helper import EnvHelper
from ..helpers.visualization_helper import (
    detect_visualization,
    suggest_visualization_for_plan,
)
from .errors import GenerationError, PlanValidationError
from .glossary import BusinessGlossary
from .intent_extractor import IntentExtractor, QueryIntent
from .prompt_builder import PromptBuilder
from .query_patterns import DIMENSION_MAP, QueryPatternLibrary
from .query_plan import (
    TENANT_COLUMN,
    GroupByItem,
    OrderByItem,
    PlanColumn,
    PlanCondition,
    QueryContext,
    QueryPlan,
    QueryPlanModel,
)

logger = logging.getLogger(__name__)

GROUP_BY_INDICATORS = [
    r"\bby (?:stage|owner|month|category|type|status)\b",
    r"\bfor each\b",
    r"\bgroup(?:ed)? by\b",
    r"\bper\s",
    r"\bdistribution\b",
    r"\bbreakdown\b",
    r"\b(?:count|sum|average|total)\b.*\b(?:by|for each|per)\b",
]
FORCED_DIMENSION_PATTERN = re.compile(
    r"\b(?:by|for each)\s+(stage|owner|status|type|month|category)\b", re.IGNORECASE
)
TOP_N_PATTERN = re.compile(r"\btop (\d+)")


@dataclass
class NL2SQLConfig:
    """Configuration for query plan generation."""

    model: str = "gpt-4o"
    temperature: float = 0.1
    max_tokens: int = 2048
    timeout: float = 30.0
    max_retries: int = 2
    use_pattern_library: bool = False

    @classmethod
    def from_env(cls, env_helper: EnvHelper) -> "NL2SQLConfig":
        return cls(
            model=env_helper.AZURE_OPENAI_MODEL,
            timeout=env_helper.NL2SQL_TIMEOUT_SECONDS,
            use_pattern_library=env_helper.NL2SQL_USE_PATTERNS,
        )


@dataclass
class GeneratedPlan:
    """Result of query plan generation."""

    plan: QueryPlan
    intent: QueryIntent
    source: str
    original_question: str = ""
    generation_time_ms: float = 0.0
    model_used: str = ""
    tokens_used: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "plan": self.plan.to_dict(),
            "intent": self.intent.to_dict(),
            "source": self.source,
            "original_question": self.original_question,
            "generation_time_ms": self.generation_time_ms,
            "model_used": self.model_used,
            "tokens_used": self.tokens_used,
            "error": self.error,
        }


class AIPlanGenerator:
    """
    Generates query plans from natural language.

    This class handles:
    - Intent extraction
    - The optional pattern fast path
    - Structured plan generation with Azure OpenAI
    - Tenant injection and forced GROUP BY
    - The heuristic fallback plan
    """

    SOURCE_PATTERN = "pattern"
    SOURCE_AI = "ai"
    SOURCE_FALLBACK = "fallback"

    def __init__(
        self,
        registry: SchemaRegistry,
        glossary: Optional[BusinessGlossary] = None,
        config: Optional[NL2SQLConfig] = None,
        openai_client: Optional[AzureOpenAI] = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ):
        """
        Initialize the plan generator.

        Args:
            registry: Schema registry rendered into the prompt
            glossary: Business glossary (the packaged one by default)
            config: Optional configuration for generation
            openai_client: Optional pre-configured OpenAI client
            prompt_builder: Optional prompt builder
        """
        self.env_helper = EnvHelper()
        self.config = config or NL2SQLConfig.from_env(self.env_helper)
        self.registry = registry
        self.glossary = glossary or BusinessGlossary()
        self.prompt_builder = prompt_builder or PromptBuilder(glossary=self.glossary)
        self.intent_extractor = IntentExtractor(self.glossary)
        self.pattern_library = QueryPatternLibrary(self.glossary)

        if openai_client:
            self.client = openai_client
        elif self.env_helper.is_openai_configured():
            self.client = self._create_openai_client()
        else:
            logger.warning("Azure OpenAI is not configured, plans will use the fallback heuristics")
            self.client = None

        logger.info(
            f"AIPlanGenerator initialized with model: {self.config.model}, "
            f"pattern library {'on' if self.config.use_pattern_library else 'off'}"
        )

    def _create_openai_client(self) -> AzureOpenAI:
        """Create Azure OpenAI client from environment configuration."""
        return AzureOpenAI(
            api_key=self.env_helper.AZURE_OPENAI_API_KEY,
            api_version=self.env_helper.AZURE_OPENAI_API_VERSION,
            azure_endpoint=self.env_helper.AZURE_OPENAI_ENDPOINT,
            timeout=self.config.timeout,
            max_retries=0,
        )

    def plan_query(
        self,
        question: str,
        context: QueryContext,
        today: Optional[date] = None,
    ) -> GeneratedPlan:
        """
        Build a tenant-scoped plan for a question.

        Args:
            question: The natural language question
            context: Requesting tenant and caller
            today: Reference date for relative time ranges

        Returns:
            GeneratedPlan with the raw (unvalidated) plan and its source
        """
        start_time = datetime.now()
        logger.info(f"Planning query: {question[:80]}")

        intent = self.intent_extractor.extract(question, today=today)
        result = None

        if self.config.use_pattern_library:
            pattern_plan = self.pattern_library.build_query_plan(question, context)
            if pattern_plan is not None:
                result = GeneratedPlan(
                    plan=pattern_plan, intent=intent, source=self.SOURCE_PATTERN
                )

        if result is None:
            try:
                result = self.generate_with_retry(question, context, intent)
            except GenerationError as e:
                logger.warning(f"Plan generation failed, using fallback plan: {e}")
                result = GeneratedPlan(
                    plan=self.generate_fallback_plan(question, context, intent),
                    intent=intent,
                    source=self.SOURCE_FALLBACK,
                    error=e.message,
                )

        plan = result.plan
        self.inject_tenant_condition(plan, context.tenant_id)

        if self.should_force_group_by(question) and not plan.group_by:
            self.add_group_by_to_plan(plan, question)

        plan.visualization = (
            detect_visualization(question)
            or plan.visualization
            or suggest_visualization_for_plan(plan)
        )

        result.original_question = question
        result.generation_time_ms = (datetime.now() - start_time).total_seconds() * 1000
        logger.info(
            f"Query plan ({result.source}) generated for {plan.primary_table} with "
            f"{len(plan.columns)} columns in {result.generation_time_ms:.0f}ms"
        )
        return result

    def generate(
        self,
        question: str,
        context: QueryContext,
        intent: Optional[QueryIntent] = None,
        validation_feedback: Optional[str] = None,
    ) -> GeneratedPlan:
        """
        Ask the structured-generation service for a plan.

        Raises:
            GenerationError: On service errors, timeouts or a reply that
                does not match the plan shape
        """
        if self.client is None:
            raise GenerationError("Azure OpenAI client is not configured")

        schema_context = self.prompt_builder.format_schema(self.registry.get_schema())
        system_prompt = self.prompt_builder.build_system_prompt(
            schema_context=schema_context,
            tenant_id=context.tenant_id,
        )

        additional_context = None
        if intent is not None:
            additional_context = f"Detected intent:\n{json.dumps(intent.to_dict(), default=str)}"
        if validation_feedback:
            additional_context = (
                f"{additional_context or ''}\n"
                f"Note: Previous attempt was invalid. Error: {validation_feedback}"
            ).strip()

        user_prompt = self.prompt_builder.build_user_prompt(question, additional_context)
        response = self._call_openai(system_prompt, user_prompt)
        plan = self._parse_response(response)

        return GeneratedPlan(
            plan=plan,
            intent=intent or self.intent_extractor.extract(question),
            source=self.SOURCE_AI,
            model_used=response.get("model", self.config.model),
            tokens_used=response.get("tokens", 0),
        )

    def generate_with_retry(
        self,
        question: str,
        context: QueryContext,
        intent: Optional[QueryIntent] = None,
    ) -> GeneratedPlan:
        """
        Generate a plan, retrying with the previous error as feedback.

        Raises:
            GenerationError: When every attempt failed
        """
        last_error = None

        for attempt in range(self.config.max_retries):
            try:
                return self.generate(
                    question,
                    context,
                    intent=intent,
                    validation_feedback=last_error.message if last_error else None,
                )
            except GenerationError as e:
                last_error = e
                logger.warning(f"Plan generation attempt {attempt + 1} failed: {e}")

        raise GenerationError(
            f"Failed to generate plan after {self.config.max_retries} attempts: {last_error}",
            details=last_error.details if last_error else None,
        )

    def _call_openai(self, system_prompt: str, user_prompt: str) -> dict:
        """Call Azure OpenAI API for plan generation."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

        try:
            response = self.client.chat.completions.create(
                model=self.env_helper.AZURE_OPENAI_MODEL or self.config.model,
                messages=messages,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                response_format={"type": "json_object"},
                timeout=self.config.timeout,
            )
        except OpenAIError as e:
            raise GenerationError(f"Structured generation call failed: {e}") from e

        return {
            "content": response.choices[0].message.content,
            "model": response.model,
            "tokens": response.usage.total_tokens if response.usage else 0,
        }

    def _parse_response(self, response: dict) -> QueryPlan:
        """Parse the OpenAI response into a QueryPlan."""
        content = (response.get("content") or "").strip()
        content = re.sub(r"^```(?:json)?\s*|\s*```$", "", content)

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise GenerationError(
                f"Response is not valid JSON: {content[:100]}", details={"error": str(e)}
            ) from e

        if not isinstance(parsed, dict):
            raise GenerationError("Response is not a JSON object")

        # Some replies wrap the plan in a top-level key
        if "primaryTable" not in parsed and isinstance(parsed.get("plan"), dict):
            parsed = parsed["plan"]

        try:
            return QueryPlanModel.model_validate(parsed).to_plan()
        except ValidationError as e:
            raise GenerationError(
                "Response does not match the query plan shape",
                details={"errors": [err["msg"] for err in e.errors()]},
            ) from e

    def generate_fallback_plan(
        self,
        question: str,
        context: QueryContext,
        intent: Optional[QueryIntent] = None,
    ) -> QueryPlan:
        """
        Deterministic plan used when generation fails.

        Raises:
            PlanValidationError: If the schema registry has no tables
        """
        schema = self.registry.get_schema()
        if not schema.tables:
            raise PlanValidationError("No suitable table found for query")

        lowered = question.lower()
        primary_table = next(
            (
                name for name in schema.tables
                if name.lower() in lowered or name.replace("_", " ").lower() in lowered
            ),
            next(iter(schema.tables)),
        )
        table = schema.tables[primary_table]

        plan = QueryPlan(
            primary_table=primary_table,
            conditions=[
                PlanCondition(primary_table, TENANT_COLUMN, "=", context.tenant_id)
            ],
        )

        numeric_columns = table.numeric_columns()
        if "count" in lowered or "how many" in lowered:
            plan.columns.append(
                PlanColumn(table=primary_table, column="*", aggregation="COUNT", alias="count")
            )
        elif ("sum" in lowered or "total" in lowered) and numeric_columns:
            column = numeric_columns[0]
            plan.columns.append(
                PlanColumn(
                    table=primary_table, column=column, aggregation="SUM", alias=f"total_{column}"
                )
            )
        else:
            plan.columns = [PlanColumn(table=primary_table, column=name) for name in table.columns]

        if re.search(r"\btop\b", lowered):
            match = TOP_N_PATTERN.search(lowered)
            plan.limit = int(match.group(1)) if match else 10

        if intent is not None and intent.order_by is not None and not plan.has_aggregation():
            order_column = table.find_column(intent.order_by.column)
            if order_column:
                plan.order_by = [
                    OrderByItem(primary_table, order_column, intent.order_by.direction)
                ]

        logger.info(f"Fallback plan built on {primary_table}")
        return plan

    @staticmethod
    def inject_tenant_condition(plan: QueryPlan, tenant_id: str) -> None:
        """Replace any tenant condition on the plan with the caller's tenant."""
        if plan.has_tenant_condition(tenant_id):
            return
        plan.conditions = [c for c in plan.conditions if c.column != TENANT_COLUMN]
        plan.conditions.append(
            PlanCondition(plan.primary_table, TENANT_COLUMN, "=", tenant_id)
        )

    @staticmethod
    def should_force_group_by(question: str) -> bool:
        lowered = question.lower()
        return any(re.search(indicator, lowered) for indicator in GROUP_BY_INDICATORS)

    def add_group_by_to_plan(self, plan: QueryPlan, question: str) -> None:
        """Group by the dimension named in the question, selecting it if needed."""
        match = FORCED_DIMENSION_PATTERN.search(question)
        if not match:
            return

        word = match.group(1).lower()
        table, column, date_part = DIMENSION_MAP.get(word, (plan.primary_table, word, None))
        if table not in plan.tables():
            table = plan.primary_table
            column = self.glossary.find_column_by_synonym(table, word) or column

        dimension = PlanColumn(table=table, column=column, date_part=date_part)
        has_column = any(
            c.table == table and c.column == column and not c.is_aggregated
            for c in plan.columns
        )
        if not plan.has_aggregation():
            # Grouping a plain listing only makes sense as a count per group
            plan.columns = [
                dimension,
                PlanColumn(table=plan.primary_table, column="*", aggregation="COUNT", alias="count"),
            ]
        elif not has_column:
            plan.columns.insert(0, dimension)
        plan.group_by = [GroupByItem(table=table, column=column, date_part=date_part)]
        logger.info(f"Forced GROUP BY on {table}.{column}")

    @staticmethod
    def explain_plan(plan: QueryPlan) -> str:
        """Human readable description of a plan, for logs and debugging."""
        lines = [f"Query will select from table: {plan.primary_table}"]

        if plan.ctes:
            lines.append(f"Using common table expressions: {', '.join(c.name for c in plan.ctes)}")

        if plan.columns:
            described = []
            for col in plan.columns:
                target = f"{col.table}.{col.column}"
                if col.date_part:
                    target = f"{col.date_part}({target})"
                if col.aggregation:
                    target = f"{col.aggregation}({target})"
                if col.alias:
                    target += f" as {col.alias}"
                described.append(target)
            lines.append(f"Selecting columns: {', '.join(described)}")

        for join in plan.joins:
            lines.append(
                f"{join.type} JOIN {join.table} ON {join.on.left_table}.{join.on.left_column} "
                f"= {join.on.right_table}.{join.on.right_column}"
            )

        if plan.conditions:
            described = []
            for cond in plan.conditions:
                if isinstance(cond.subquery, QueryPlan):
                    operand = f"(subquery on {cond.subquery.primary_table})"
                elif cond.operator in ("IN", "NOT IN"):
                    operand = f"({', '.join(str(v) for v in cond.values or [])})"
                else:
                    operand = "" if cond.value is None else str(cond.value)
                described.append(f"{cond.table}.{cond.column} {cond.operator} {operand}".strip())
            lines.append(f"Filtering where: {' AND '.join(described)}")

        if plan.group_by:
            lines.append(f"Grouping by: {', '.join(f'{g.table}.{g.column}' for g in plan.group_by)}")

        if plan.having:
            lines.append(
                "Having: " + " AND ".join(
                    f"{h.aggregation}({h.column}) {h.operator} {h.value}" for h in plan.having
                )
            )

        if plan.order_by:
            lines.append(
                "Ordering by: " + ", ".join(
                    f"{o.table + '.' if o.table else ''}{o.column} {o.direction}"
                    for o in plan.order_by
                )
            )

        if plan.limit is not None:
            lines.append(f"Limiting to {plan.limit} rows")

        if plan.visualization:
            lines.append(f"Results will be displayed as: {plan.visualization} chart")

        return "\n".join(lines)
