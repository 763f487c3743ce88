"""
End-to-end query planning pipeline.

text + context -> plan generation -> validation and correction ->
permission check and filtering -> dialect-aware SQL.

Each run is independent and reads one schema registry snapshot. Callers
get either a complete result or a structured NL2SQLError, never partially
built SQL.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from ..data_sources.schema_registry import SchemaRegistry
from ..data_sources.schema_types import DatabaseType
from ..security.access_rules import (
    CallerIdentity,
    DataAccessRules,
    IdentityProvider,
    PermissionEngine,
    StaticIdentityProvider,
)
from .errors import PermissionDeniedError, PlanValidationError
from .glossary import BusinessGlossary
from .intent_extractor import QueryIntent
from .plan_generator import AIPlanGenerator
from .plan_validator import PlanValidator, ValidationResult, ValidatorConfig
from .query_plan import QueryContext, QueryPlan
from .sql_builder import SQLBuilder, SQLResult

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """Configuration for the query pipeline."""

    database_type: Optional[DatabaseType] = None
    enforce_permissions: bool = True
    validator: Optional[ValidatorConfig] = None


@dataclass
class PipelineResult:
    """Everything produced for one question."""

    result: SQLResult
    validation: ValidationResult
    intent: QueryIntent
    plan: QueryPlan
    source: str = ""
    explanation: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            **self.result.to_dict(),
            "validation": self.validation.to_dict(),
            "intent": self.intent.to_dict(),
            "plan": self.plan.to_dict(),
            "source": self.source,
            "explanation": self.explanation,
        }


class QueryPipeline:
    """
    Wires the planning stages together.

    Without an identity provider the caller identity is provisioned from the
    QueryContext of each request.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        generator: Optional[AIPlanGenerator] = None,
        glossary: Optional[BusinessGlossary] = None,
        identity_provider: Optional[IdentityProvider] = None,
        permission_engine: Optional[PermissionEngine] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.registry = registry
        self.config = config or PipelineConfig()
        self.glossary = glossary or BusinessGlossary()
        self.generator = generator or AIPlanGenerator(registry, glossary=self.glossary)
        self.validator = PlanValidator(registry, self.glossary, self.config.validator)
        self.identity_provider = identity_provider
        self.permission_engine = permission_engine or PermissionEngine(
            identity_provider or StaticIdentityProvider()
        )

    def run(
        self,
        question: str,
        context: QueryContext,
        today: Optional[date] = None,
    ) -> PipelineResult:
        """
        Turn a question into parameterized SQL for the caller.

        Args:
            question: The natural language question
            context: Requesting tenant, caller and role
            today: Reference date for relative time ranges

        Returns:
            PipelineResult with SQL, validation report, intent and final plan

        Raises:
            PlanValidationError: If the plan cannot be repaired
            PermissionDeniedError: If the caller may not read what the plan needs
            SQLAssemblyError: If the plan cannot be compiled safely
        """
        schema = self.registry.get_schema()

        generated = self.generator.plan_query(question, context, today=today)

        report = self.validator.validate(generated.plan, context.tenant_id, schema=schema)
        if not report.validation.valid:
            raise PlanValidationError(
                f"Query plan is invalid: {'; '.join(report.validation.errors)}",
                details=report.validation.to_dict(),
            )

        plan = report.plan
        if self.config.enforce_permissions:
            rules = self.access_rules_for(context)
            self.permission_engine.check_plan_access(plan, rules)
            plan = self.permission_engine.apply_rules_to_plan(plan, rules, schema)
            logger.info(f"Applied {len(rules.data_filters)} access filters for {context.caller_id}")

        builder = SQLBuilder(self.config.database_type or schema.database_type)
        result = builder.build(plan)
        logger.info(
            f"Built {builder.dialect.database_type.value} SQL with "
            f"{len(result.parameters)} parameters"
        )

        return PipelineResult(
            result=result,
            validation=report.validation,
            intent=generated.intent,
            plan=plan,
            source=generated.source,
            explanation=self.generator.explain_plan(plan),
        )

    def access_rules_for(self, context: QueryContext) -> DataAccessRules:
        """
        Derive the access rules of the requesting caller.

        Raises:
            PermissionDeniedError: If the caller is unknown or belongs to
                another tenant
        """
        if self.identity_provider is None:
            identity = CallerIdentity.from_context(context, self.permission_engine.config)
        else:
            identity = self.identity_provider.get_identity(context.caller_id)
            if identity.tenant_id != context.tenant_id:
                raise PermissionDeniedError(
                    "Caller does not belong to the requested tenant",
                    details={"caller_id": context.caller_id},
                )
        return self.permission_engine.rules_for_identity(identity)
