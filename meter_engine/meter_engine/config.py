"""Metering engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class UsageSinkType(str, Enum):
    FILE = "file"
    BIGQUERY = "bigquery"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with METER_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="METER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Quota store
    database_url: str = "sqlite+aiosqlite:///.meterbridge/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    cas_max_attempts: int = 5

    # Billing units
    billing_unit: int = 1000
    attachment_unit_cost: int = 1000
    lookup_key_separator: str = ","
    billing_exempt_ids: list[str] = ["DONT_CHARGE_ME"]

    # Admission policy
    reject_precharge_over_remaining: bool = True
    revert_precharge_on_failure: bool = False

    # Pending runs (None = never expire)
    pending_run_max_age_seconds: int | None = None

    # Schedules
    minute_reset_cron: str = "* * * * *"
    day_reset_cron: str = "0 0 * * *"
    run_sweep_cron: str = "*/5 * * * *"
    billing_flush_cron: str = "*/30 * * * *"

    # Run-status collaborator (OpenAI Assistants API)
    openai_api_key: SecretStr = SecretStr("")
    openai_base_url: str = "https://api.openai.com/v1"
    openai_timeout: float = 10.0

    # Billing collaborator
    stripe_secret_key: SecretStr = SecretStr("")

    # Usage sink
    usage_sink: UsageSinkType = UsageSinkType.FILE
    usage_sink_path: Path = Path(".meterbridge/usage.jsonl")
    bigquery_url: str = ""
    bigquery_token: SecretStr = SecretStr("")
    bigquery_table: str = "usage"

    structured_logging: bool = False

    @field_validator("billing_unit", "attachment_unit_cost", "cas_max_attempts")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("lookup_key_separator")
    @classmethod
    def separator_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("lookup_key_separator must not be empty")
        return v

    def is_bigquery_configured(self) -> bool:
        return bool(self.bigquery_url) and bool(self.bigquery_token.get_secret_value())


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
