"""Configuration surface for the facilitator and its governance pipeline.

Environment variable names match the facilitator's deployment conventions
(``SOLANA_RPC_URL``, ``MAX_SETTLEMENT_AMOUNT``, ``ALLOWED_TOKENS``, ...).
List values are comma-separated.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_RATE_LIMIT_PER_MINUTE = 60
DEFAULT_BLOCKHASH_MAX_AGE_SECONDS = 60


class CircuitBreakerSettings(BaseSettings):
    """Thresholds for the settlement circuit breaker and velocity tracker."""

    model_config = SettingsConfigDict(env_prefix="CIRCUIT_BREAKER_", extra="ignore")

    # State machine
    failure_threshold: int = Field(default=5, gt=0)
    reset_timeout_seconds: float = Field(default=60.0, gt=0)
    half_open_max_calls: int = Field(default=3, gt=0)
    success_threshold: int = Field(default=2, gt=0)

    # Velocity windows
    max_settlements_per_hour: int = Field(default=100, gt=0)
    max_settlements_per_day: int = Field(default=500, gt=0)
    max_value_per_hour_base_units: int = Field(default=10_000_000, ge=0)  # 10 USDC
    max_same_recipient_per_minute: int = Field(default=5, gt=0)
    max_same_recipient_per_hour: int = Field(default=20, gt=0)
    max_global_settlements_per_minute: int = Field(default=30, gt=0)


class GovernanceConfig(BaseSettings):
    """Governance policy applied to every verify and settle request.

    An unset or empty allowlist allows everything.
    """

    model_config = SettingsConfigDict(extra="ignore")

    max_settlement_amount: Optional[str] = None
    allowed_tokens: Annotated[Optional[List[str]], NoDecode] = None
    allowed_recipients: Annotated[Optional[List[str]], NoDecode] = None
    rate_limit_per_minute: int = Field(default=DEFAULT_RATE_LIMIT_PER_MINUTE, gt=0)

    # On-chain governance
    delegation_check_enabled: bool = False
    budget_enforce_enabled: bool = False

    # Compliance and adversarial defense
    ofac_enabled: bool = False
    ofac_fail_closed: bool = True
    ofac_blocklist_path: Optional[str] = None
    circuit_breaker_enabled: bool = False
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    blockhash_validation_enabled: bool = False
    blockhash_max_age_seconds: int = Field(default=DEFAULT_BLOCKHASH_MAX_AGE_SECONDS, gt=0)

    # Settlement pipeline
    simulate_before_submit: bool = False
    gas_alert_threshold_sol: float = Field(default=0.1, gt=0)

    @field_validator("allowed_tokens", "allowed_recipients", mode="before")
    @classmethod
    def parse_address_list(cls, v):
        """Parse comma-separated addresses from env var."""
        if isinstance(v, str):
            return [a.strip() for a in v.split(",") if a.strip()]
        return v

    @field_validator("max_settlement_amount", mode="before")
    @classmethod
    def validate_max_settlement_amount(cls, v):
        if v is None or v == "":
            return None
        v = str(v).strip()
        if not v.isdigit():
            raise ValueError("MAX_SETTLEMENT_AMOUNT must be a non-negative integer in base units")
        return v


class FacilitatorSettings(BaseSettings):
    """Top-level facilitator configuration."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    solana_rpc_url: str = "https://api.devnet.solana.com"
    solana_network: Literal["devnet", "mainnet-beta", "testnet"] = "devnet"
    rpc_timeout_seconds: float = Field(default=10.0, gt=0)
    fee_payer_address: str = ""

    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_json: bool = True

    governance: GovernanceConfig = Field(default_factory=GovernanceConfig)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            v = v.lower()
            return "warning" if v == "warn" else v
        return v

    @field_validator("solana_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("SOLANA_RPC_URL must be a valid http(s) URL")
        return v


@lru_cache
def load_settings(env_file: str | None = None) -> FacilitatorSettings:
    """Load FacilitatorSettings once per process to keep components consistent."""
    env_path = Path(env_file) if env_file else None
    return FacilitatorSettings(_env_file=env_path)


__all__ = [
    "CircuitBreakerSettings",
    "GovernanceConfig",
    "FacilitatorSettings",
    "load_settings",
    "DEFAULT_RATE_LIMIT_PER_MINUTE",
    "DEFAULT_BLOCKHASH_MAX_AGE_SECONDS",
]
