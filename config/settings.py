"""
Faktory agent configuration loaded from environment / .env file.

All secrets and tunables live here so the rest of the codebase never
touches ``os.environ`` directly.
"""

from __future__ import annotations

import re

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")

# Contracts the agent cannot run without, by settings field.
_REQUIRED_CONTRACTS: dict[str, str] = {
    "invoice_nft_address": "InvoiceNFT contract",
    "yield_vault_address": "YieldVault contract",
    "agent_router_address": "AgentRouter contract",
}


class Settings(BaseSettings):
    """Single source of truth for every configurable knob in the agent."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -- Ledger (Mantle RPC + contracts) --------------------------------------
    mantle_rpc_url: str = "https://rpc.sepolia.mantle.xyz"
    agent_private_key: SecretStr = SecretStr("")
    invoice_nft_address: str = _ZERO_ADDRESS
    yield_vault_address: str = _ZERO_ADDRESS
    agent_router_address: str = _ZERO_ADDRESS
    pyth_oracle_address: str = ""
    ledger_request_timeout: float = Field(
        default=15.0,
        description="Per-request timeout for JSON-RPC calls (seconds).",
    )

    # -- AI / LLM -------------------------------------------------------------
    anthropic_api_key: SecretStr = SecretStr("")
    narrative_model: str = "claude-3-haiku-20240307"
    narrative_max_tokens: int = 300
    narrative_timeout_secs: float = Field(
        default=30.0,
        description="Upper bound on a single explanation call before falling back to templates.",
    )
    narrative_max_calls: int = Field(
        default=10,
        description="Max LLM explanation calls per rolling window.",
    )
    narrative_window_secs: float = Field(
        default=60.0,
        description="Rolling window for the LLM call limit (seconds).",
    )

    # -- Market data providers ------------------------------------------------
    price_source: str = Field(
        default="ledger",
        description="Where prices come from: 'ledger' (on-chain oracle), 'http' (CoinGecko) or 'none'.",
    )
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: SecretStr = SecretStr("")
    eth_price_feed_id: str = (
        "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace"
    )
    mnt_price_feed_id: str = Field(
        default="",
        description="Pyth feed id for MNT/USD. Empty disables the secondary asset.",
    )

    # -- Infrastructure -------------------------------------------------------
    redis_url: str = "redis://localhost:6379/0"
    api_enabled: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8080, ge=1, le=65535)

    # -- Logging --------------------------------------------------------------
    log_level: str = "INFO"

    # -- Agent behaviour ------------------------------------------------------
    min_confidence: int = Field(
        default=70,
        description="Minimum optimizer confidence before a strategy change is acted on.",
    )
    analysis_interval_ms: int = Field(
        default=30_000,
        description="Milliseconds between scheduled analysis cycles.",
    )
    max_concurrent_analyses: int = Field(
        default=5,
        description="Upper bound on invoices analysed concurrently within a cycle.",
    )
    auto_execute: bool | None = Field(
        default=None,
        description="Route actionable decisions to the ledger. Defaults to True when a key is set.",
    )
    analysis_cooldown_secs: float = Field(
        default=300.0,
        description="Per-invoice cooldown between analyses (seconds).",
    )

    # -- Execution resilience -------------------------------------------------
    retry_max_attempts: int = Field(
        default=3,
        description="Max attempts for a ledger write classified as transient.",
    )
    retry_base_delay: float = Field(
        default=1.0,
        description="Initial retry delay in seconds; doubles per attempt.",
    )
    retry_max_delay: float = Field(
        default=10.0,
        description="Cap on a single retry delay in seconds.",
    )
    circuit_breaker_threshold: int = Field(
        default=3,
        description="Consecutive cycle failures before the breaker opens.",
    )
    circuit_breaker_reset_secs: float = Field(
        default=60.0,
        description="How long the breaker stays open before auto-closing.",
    )

    # -- Market monitor -------------------------------------------------------
    market_retention_hours: float = Field(
        default=4.0,
        description="Price samples older than this are discarded on every update.",
    )
    market_crash_pct: float = Field(
        default=10.0,
        description="Drop applied by the market_crash demo scenario.",
    )
    market_rally_pct: float = Field(
        default=8.0,
        description="Rise applied by the market_rally demo scenario.",
    )

    # -- Regime classifier ----------------------------------------------------
    regime_history_size: int = 288
    regime_lookback: int = Field(
        default=20,
        description="Observations used for each raw regime reading.",
    )
    regime_min_observations: int = Field(
        default=10,
        description="Observations required before the classifier leaves neutral.",
    )
    regime_confirmations: int = Field(
        default=3,
        description="Consecutive identical readings required to switch regime.",
    )
    regime_trend_change_pct: float = Field(
        default=2.0,
        description="Mean window price change (%) marking a bull/bear reading.",
    )
    regime_trend_slope_pct: float = Field(
        default=0.5,
        description="Half-window average price trend (%) confirming direction.",
    )
    regime_volatile_ratio: float = Field(
        default=0.5,
        description="Share of high/extreme readings that marks a volatile regime.",
    )
    regime_bull_max_volatile_ratio: float = Field(
        default=0.3,
        description="Bull readings require the high-volatility share below this.",
    )
    bull_upgrade_confidence: int = Field(
        default=80,
        description="Confidence needed for a bull regime to lift Conservative to Aggressive.",
    )

    @field_validator("mantle_rpc_url")
    @classmethod
    def _rpc_url_is_http(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("MANTLE_RPC_URL must be a valid HTTP(S) URL")
        return v

    @field_validator(
        "invoice_nft_address", "yield_vault_address", "agent_router_address",
        "pyth_oracle_address",
    )
    @classmethod
    def _address_format(cls, v: str) -> str:
        v = v.strip()
        if v and not _ADDRESS_RE.fullmatch(v):
            raise ValueError(f"expected a 0x-prefixed 20-byte hex address, got {v!r}")
        return v

    def validate_environment(self) -> tuple[list[str], list[str]]:
        """Startup check. Returns ``(errors, warnings)``; any error is fatal."""
        errors: list[str] = []
        warnings: list[str] = []
        for name, description in _REQUIRED_CONTRACTS.items():
            value = getattr(self, name)
            if not value or value == _ZERO_ADDRESS:
                errors.append(f"{name.upper()} ({description}) is required but not set")

        key = self.agent_private_key.get_secret_value()
        if not key:
            warnings.append("AGENT_PRIVATE_KEY (Agent wallet key) not set, running read-only")
        elif not key.startswith("0x"):
            warnings.append("AGENT_PRIVATE_KEY should start with 0x")
        if not self.anthropic_api_key.get_secret_value():
            warnings.append("ANTHROPIC_API_KEY (Claude AI API key) not set, using template explanations")
        return errors, warnings

    @property
    def has_signer(self) -> bool:
        return bool(self.agent_private_key.get_secret_value())

    @property
    def effective_auto_execute(self) -> bool:
        if self.auto_execute is None:
            return self.has_signer
        return self.auto_execute


# Module-level singleton — import ``settings`` everywhere.
settings = Settings()
