"""callrouter configuration loaded from environment variables."""

from __future__ import annotations

import json
from pydantic_settings import BaseSettings
from pydantic import Field, AliasChoices


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./callrouter.db",
        alias="DATABASE_URL",
    )
    auto_create_schema: bool = Field(default=True, alias="AUTO_CREATE_SCHEMA")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    cors_origins: str = Field(default='["http://localhost:8081"]', alias="CORS_ORIGINS")
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    strict_startup_validation: bool = Field(default=False, alias="STRICT_STARTUP_VALIDATION")

    # Inbound telephony webhooks
    webhook_shared_secret: str = Field(default="", alias="WEBHOOK_SHARED_SECRET")

    # Outbound telephony gateway (calls are only logged when unset)
    telephony_gateway_url: str = Field(default="", alias="TELEPHONY_GATEWAY_URL")
    telephony_api_key: str = Field(default="", alias="TELEPHONY_API_KEY")
    telephony_timeout_seconds: float = Field(default=10.0, alias="TELEPHONY_TIMEOUT_SECONDS")

    # Escalation timing
    claim_window_seconds: int = Field(default=90, alias="CLAIM_WINDOW_SECONDS")
    ring_grace_seconds: int = Field(default=15, alias="RING_GRACE_SECONDS")
    sweep_interval_seconds: int = Field(
        default=15,
        validation_alias=AliasChoices("SWEEP_INTERVAL_SECONDS", "SWEEP_INTERVAL"),
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"production", "prod"}

    @property
    def cors_origins_list(self) -> list[str]:
        raw = (self.cors_origins or "").strip()
        if not raw:
            return []

        # Supports JSON list format and comma-separated format.
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(origin).strip() for origin in parsed if str(origin).strip()]
            except json.JSONDecodeError:
                pass

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
