from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./localdeals.db"
    database_echo: bool = False
    secret_key: str = "change-me"

    # Application URLs
    frontend_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:8000"

    # Stripe configuration (integrated deposit tier)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_deposit_currency: str = "usd"

    # Generic deposit webhook (vendor processors posting HMAC-signed payloads)
    deposit_webhook_secret: str = ""

    # Internal API security
    observability_api_key: str = ""

    # Redemption proof tokens
    redemption_code_length: int = Field(default=8, ge=6, le=16)
    token_generation_max_attempts: int = 5

    # Points ledger and credit conversion
    points_min_redeem: int = 500
    points_redeem_unit: int = 100
    points_per_dollar: int = 100
    points_per_confirmed_claim: int = 100
    points_expiry_days: int | None = None
    points_recent_entries_limit: int = 50
    points_recent_redemptions_limit: int = 20

    @field_validator("points_expiry_days", mode="before")
    @classmethod
    def _parse_expiry_days(cls, value: object) -> int | None:
        if value in (None, "", "0", 0, "none", "None"):
            return None
        return int(value)  # type: ignore[arg-type]

    # Deposit event reconciliation
    deposit_event_max_attempts: int = 5
    deposit_event_retry_base_seconds: int = 30
    deposit_event_received_grace_seconds: int = 300
    deposit_replay_worker_enabled: bool = False
    deposit_replay_interval_seconds: int = 60
    deposit_replay_batch_size: int = 25

    allowed_identity_roles: list[str] = Field(default_factory=lambda: ["customer", "vendor", "admin"])

    @field_validator("allowed_identity_roles", mode="before")
    @classmethod
    def _parse_roles(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
