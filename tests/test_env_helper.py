"""
Unit tests for environment configuration.
"""

import logging

import pytest

from crm_insight.helpers.env_helper import EnvHelper
from crm_insight.nl2sql.plan_generator import NL2SQLConfig

ENV_VARS = [
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_MODEL",
    "NL2SQL_USE_PATTERNS",
    "NL2SQL_TIMEOUT_SECONDS",
    "SCHEMA_REFRESH_SECONDS",
    "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear every setting and return the path of an empty .env file."""
    for name in ENV_VARS:
        # Registered first so values loaded from .env files are undone too
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    env_file = tmp_path / ".env"
    env_file.write_text("")
    return str(env_file)


class TestEnvHelper:
    """Tests for reading settings."""

    def test_defaults(self, clean_env):
        """Test the defaults without any variables set."""
        env = EnvHelper(clean_env)

        assert env.AZURE_OPENAI_MODEL == "gpt-4o"
        assert env.NL2SQL_USE_PATTERNS is False
        assert env.NL2SQL_TIMEOUT_SECONDS == 30.0
        assert env.SCHEMA_REFRESH_SECONDS == 300.0
        assert not env.is_openai_configured()

    def test_openai_configured(self, clean_env, monkeypatch):
        """Test that endpoint and key together enable the client."""
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://example.openai.azure.com")
        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "secret")

        assert EnvHelper(clean_env).is_openai_configured()

    @pytest.mark.parametrize(
        "value, expected",
        [("true", True), ("1", True), ("YES", True), ("on", True), ("false", False), ("0", False)],
    )
    def test_pattern_toggle(self, clean_env, monkeypatch, value, expected):
        """Test boolean parsing of the pattern toggle."""
        monkeypatch.setenv("NL2SQL_USE_PATTERNS", value)

        assert EnvHelper(clean_env).NL2SQL_USE_PATTERNS is expected

    def test_invalid_float_uses_default(self, clean_env, monkeypatch):
        """Test that an unparseable number falls back to the default."""
        monkeypatch.setenv("NL2SQL_TIMEOUT_SECONDS", "soon")

        assert EnvHelper(clean_env).NL2SQL_TIMEOUT_SECONDS == 30.0

    def test_env_file_is_loaded(self, clean_env, monkeypatch):
        """Test that values from the .env file are read."""
        with open(clean_env, "w") as f:
            f.write("NL2SQL_TIMEOUT_SECONDS=12.5\n")

        env = EnvHelper(clean_env)

        assert env.NL2SQL_TIMEOUT_SECONDS == 12.5

    def test_generator_config_from_env(self, clean_env, monkeypatch):
        """Test that the generator configuration follows the environment."""
        monkeypatch.setenv("AZURE_OPENAI_MODEL", "gpt-4o-mini")
        monkeypatch.setenv("NL2SQL_USE_PATTERNS", "true")

        config = NL2SQLConfig.from_env(EnvHelper(clean_env))

        assert config.model == "gpt-4o-mini"
        assert config.use_pattern_library is True


class TestConfigureLogging:
    """Tests for log level configuration."""

    def test_sets_package_level(self, clean_env, monkeypatch):
        """Test that LOG_LEVEL applies to the package logger."""
        monkeypatch.setenv("LOG_LEVEL", "debug")

        EnvHelper(clean_env).configure_logging()

        assert logging.getLogger("crm_insight").level == logging.DEBUG

    def test_unknown_level_uses_info(self, clean_env, monkeypatch):
        """Test that an unknown level falls back to INFO."""
        monkeypatch.setenv("LOG_LEVEL", "chatty")

        EnvHelper(clean_env).configure_logging()

        assert logging.getLogger("crm_insight").level == logging.INFO
