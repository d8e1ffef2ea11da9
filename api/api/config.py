"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_HOST=0.0.0.0``) or through a ``.env`` file in the
    working directory.  Engine settings (store, billing, schedules) use the
    ``METER_`` prefix and live in :mod:`meter_engine.config`.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Run the periodic jobs inside the API process.  Disable when a
    # separate worker (``meterbridge jobs run``) drives them instead.
    scheduler_enabled: bool = True

    # Emit single-line JSON logs instead of plain text.
    structured_logging: bool = False


def load_api_settings(**overrides: object) -> APISettings:
    """Load API settings from environment, with optional overrides for testing."""
    return APISettings(**overrides)  # type: ignore[arg-type]
