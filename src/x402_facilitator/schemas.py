"""Typed x402 payloads exchanged with the facilitator."""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MAX_TIMEOUT_SECONDS = 300
MAX_TIMEOUT_SECONDS_LIMIT = 86_400


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")


class PaymentRequirements(_WireModel):
    """What the resource server asks the payer to pay. Immutable once issued."""

    scheme: str
    network: str
    asset: str = Field(description="Token mint address")
    amount: str = Field(pattern=r"^\d+$", description="Amount in base units")
    pay_to: str = Field(alias="payTo")
    max_timeout_seconds: Optional[float] = Field(
        default=None,
        alias="maxTimeoutSeconds",
        ge=0,
        le=MAX_TIMEOUT_SECONDS_LIMIT,
        allow_inf_nan=False,
    )
    extra: Dict[str, Any] = Field(default_factory=dict)

    @property
    def amount_base_units(self) -> int:
        return int(self.amount)


class PaymentPayload(_WireModel):
    """The payer's signed response to a set of requirements. Untrusted."""

    x402_version: Optional[int] = Field(default=None, alias="x402Version")
    resource: Optional[Dict[str, Any]] = None
    accepted: Optional[Dict[str, Any]] = None
    payload: Dict[str, Any]

    @property
    def transaction(self) -> Optional[str]:
        """Base64-encoded transaction for the Solana exact scheme, if present."""
        tx = self.payload.get("transaction")
        return tx if isinstance(tx, str) and tx else None


class VerifyResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    invalid_reason: Optional[str] = Field(default=None, alias="invalidReason")
    payer: Optional[str] = None


class SettleResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    network: str
    transaction: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = Field(default=None, alias="errorReason")


__all__ = [
    "DEFAULT_MAX_TIMEOUT_SECONDS",
    "MAX_TIMEOUT_SECONDS_LIMIT",
    "PaymentRequirements",
    "PaymentPayload",
    "VerifyResponse",
    "SettleResponse",
]
