import json
from datetime import date
from typing import Any, Dict
from unittest.mock import Mock

import pytest

from crm_insight.data_sources import SchemaRegistry, StaticSchemaIntrospector
from crm_insight.nl2sql.glossary import BusinessGlossary
from crm_insight.nl2sql.query_plan import QueryContext
from crm_insight.security.access_rules import (
    AccessRulesConfig,
    CallerIdentity,
    PermissionEngine,
    StaticIdentityProvider,
)

TENANT_ID = "tenant-acme"
OTHER_TENANT_ID = "tenant-globex"


# =============================================================================
# Schema Registry Fixtures
# =============================================================================


@pytest.fixture
def registry() -> SchemaRegistry:
    """Registry backed by the packaged static CRM schema."""
    return SchemaRegistry(StaticSchemaIntrospector())


@pytest.fixture
def schema(registry):
    """A schema snapshot from the static registry."""
    return registry.get_schema()


@pytest.fixture
def glossary() -> BusinessGlossary:
    """The packaged business glossary."""
    return BusinessGlossary()


@pytest.fixture
def today() -> date:
    """Fixed reference date for relative time ranges."""
    return date(2024, 5, 15)


# =============================================================================
# Caller Fixtures
# =============================================================================


@pytest.fixture
def tenant_id() -> str:
    """Tenant of every test caller but one."""
    return TENANT_ID


@pytest.fixture
def ceo_context() -> QueryContext:
    """Context of a C-level caller."""
    return QueryContext(tenant_id=TENANT_ID, caller_id="user-ceo", caller_role="CEO")


@pytest.fixture
def rep_context() -> QueryContext:
    """Context of an individual sales rep."""
    return QueryContext(
        tenant_id=TENANT_ID, caller_id="user-rep", caller_role="Sales Rep", department="Sales"
    )


@pytest.fixture
def identities():
    """Provisioned identities for every role tier."""
    return [
        CallerIdentity.provision("user-ceo", TENANT_ID, "CEO"),
        CallerIdentity.provision("user-director", TENANT_ID, "Sales Director", department="Sales"),
        CallerIdentity.provision("user-manager", TENANT_ID, "Sales Manager", department="Sales"),
        CallerIdentity.provision("user-mktg", TENANT_ID, "Marketing Manager", department="Marketing"),
        CallerIdentity.provision("user-rep", TENANT_ID, "Sales Rep", department="Sales"),
        CallerIdentity.provision("user-admin", TENANT_ID, "Admin"),
        CallerIdentity.provision("user-intern", TENANT_ID, "Intern"),
        CallerIdentity.provision("user-foreign", OTHER_TENANT_ID, "CEO"),
    ]


@pytest.fixture
def identity_provider(identities) -> StaticIdentityProvider:
    """Identity provider knowing every test caller."""
    return StaticIdentityProvider(identities)


@pytest.fixture
def access_config() -> AccessRulesConfig:
    """The packaged access rules allow-lists."""
    return AccessRulesConfig.load()


@pytest.fixture
def permission_engine(identity_provider, access_config) -> PermissionEngine:
    """Permission engine over the test identities."""
    return PermissionEngine(identity_provider, config=access_config)


# =============================================================================
# GPT/LLM Mock Fixtures
# =============================================================================


@pytest.fixture
def deals_with_accounts_plan() -> Dict[str, Any]:
    """Plan returned by the model for "Show deals with account names"."""
    return {
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
        "conditions": [
            {"table": "deals", "column": "tenantId", "operator": "=", "value": TENANT_ID},
        ],
        "limit": 100,
    }


def make_openai_client(content: str, model: str = "gpt-4o", tokens: int = 150) -> Mock:
    """Create a mock Azure OpenAI client answering every call with ``content``."""
    client = Mock()

    mock_choice = Mock()
    mock_choice.message.content = content

    mock_usage = Mock()
    mock_usage.total_tokens = tokens

    mock_response = Mock()
    mock_response.choices = [mock_choice]
    mock_response.model = model
    mock_response.usage = mock_usage

    client.chat.completions.create.return_value = mock_response
    return client


@pytest.fixture
def openai_client_factory():
    """Factory for mock clients with a custom reply."""
    return make_openai_client


@pytest.fixture
def mock_openai_client(deals_with_accounts_plan):
    """Create a mock Azure OpenAI client returning the deals/accounts plan."""
    return make_openai_client(json.dumps(deals_with_accounts_plan))
