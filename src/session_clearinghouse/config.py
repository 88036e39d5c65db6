"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a setting has the wrong shape, the app fails fast with a
clear error message.

Usage:
    from session_clearinghouse.config import get_settings
    settings = get_settings()
    print(settings.quality_threshold)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Session Clearinghouse."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Ledger Store ---
    ledger_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    ledger_namespace: str = "clearinghouse:"

    # --- Payment Rail ---
    payment_rail: Literal["simulated", "agentkit"] = "simulated"
    payment_timeout_seconds: float = 30.0
    custodian_identity: str = "0x" + "A" * 40
    # USDC on Base Sepolia
    settlement_token_address: str = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    settlement_decimals: int = 6

    # --- Coinbase AgentKit ---
    cdp_api_key_id: str = ""
    cdp_api_key_secret: str = ""
    cdp_wallet_secret: str = ""
    cdp_network_id: str = "base-sepolia"

    # --- Quality Oracle ---
    quality_oracle: Literal["mock", "semantic"] = "mock"
    quality_threshold: float = Field(default=70.0, ge=0.0, le=100.0)
    oracle_timeout_seconds: float = 60.0

    # --- LLM / LiteLLM ---
    # Supports any LiteLLM-compatible model string.
    # For Gemini: set GEMINI_API_KEY and use "gemini/gemini-2.0-flash"
    # For OpenAI: set OPENAI_API_KEY and use "gpt-4o"
    openai_api_key: str = ""
    gemini_api_key: str = ""
    litellm_model: str = "gemini/gemini-2.0-flash"
    litellm_fallback_models: str = "gemini/gemini-1.5-flash"
    litellm_max_tokens: int = 1024
    litellm_temperature: float = 0.0

    # --- Settlement Policy ---
    # Where the non-refunded share of a partial refund goes.
    partial_refund_remainder: Literal["custodian", "payee"] = "custodian"
    auto_open_dispute_on_quality_failure: bool = False

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def litellm_fallback_model_list(self) -> list[str]:
        """Parse comma-separated fallback models into a list."""
        if not self.litellm_fallback_models:
            return []
        return [m.strip() for m in self.litellm_fallback_models.split(",") if m.strip()]

    @property
    def settlement_quantum(self) -> Decimal:
        """Smallest representable token amount, e.g. Decimal('0.000001')."""
        return Decimal(1).scaleb(-self.settlement_decimals)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
