"""Environment configuration for the CRM insight services."""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("1", "true", "yes", "on")


class EnvHelper:
    """
    Reads settings from the environment, after loading a local ``.env`` file.

    Attributes are read once at construction; create a new instance to pick
    up changed variables.
    """

    def __init__(self, env_file: Optional[str] = None):
        load_dotenv(env_file, override=False)

        # Azure OpenAI
        self.AZURE_OPENAI_ENDPOINT = os.getenv("AZURE_OPENAI_ENDPOINT", "")
        self.AZURE_OPENAI_API_KEY = os.getenv("AZURE_OPENAI_API_KEY", "")
        self.AZURE_OPENAI_API_VERSION = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01")
        self.AZURE_OPENAI_MODEL = os.getenv("AZURE_OPENAI_MODEL", "gpt-4o")

        # NL2SQL
        self.NL2SQL_USE_PATTERNS = self._get_bool("NL2SQL_USE_PATTERNS", False)
        self.NL2SQL_TIMEOUT_SECONDS = self._get_float("NL2SQL_TIMEOUT_SECONDS", 30.0)

        # Schema registry
        self.DATABASE_TYPE = os.getenv("DATABASE_TYPE", "postgresql")
        self.SCHEMA_REFRESH_SECONDS = self._get_float("SCHEMA_REFRESH_SECONDS", 300.0)

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    def is_openai_configured(self) -> bool:
        return bool(self.AZURE_OPENAI_ENDPOINT and self.AZURE_OPENAI_API_KEY)

    def configure_logging(self) -> None:
        """Apply LOG_LEVEL to the package logger."""
        level = logging.getLevelName(self.LOG_LEVEL)
        if not isinstance(level, int):
            logger.warning(f"Unknown LOG_LEVEL '{self.LOG_LEVEL}', using INFO")
            level = logging.INFO
        logging.getLogger("crm_insight").setLevel(level)

    @staticmethod
    def _get_bool(name: str, default: bool) -> bool:
        value = os.getenv(name)
        if value is None:
            return default
        return value.strip().lower() in _TRUE_VALUES

    @staticmethod
    def _get_float(name: str, default: float) -> float:
        value = os.getenv(name)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Invalid value for {name}: '{value}', using {default}")
            return default
