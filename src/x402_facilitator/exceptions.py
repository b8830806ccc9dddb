"""Exception hierarchy for the x402 facilitator.

Governance components report outcomes through typed result objects rather than
exceptions. The classes below cover the remaining cases:

- construction-time misconfiguration (e.g. a fail-closed sanctions list that
  cannot be loaded)
- malformed transaction bytes inside the decoder
- settlement failures raised by a payment scheme and caught by the engine

All exceptions have:
- error_code: Machine-readable error code (e.g., "SANCTIONS_LIST_ERROR")
- http_status: Status code an HTTP layer should map the error to
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Optional


class FacilitatorError(Exception):
    """Base exception for all facilitator errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "FACILITATOR_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(FacilitatorError):
    """Invalid or inconsistent facilitator configuration."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


class SanctionsListError(ConfigurationError):
    """Sanctions blocklist could not be loaded."""

    error_code = "SANCTIONS_LIST_ERROR"

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if source:
            details["source"] = source
        super().__init__(message, details=details)


class TransactionParseError(FacilitatorError):
    """Raw transaction bytes could not be decoded."""

    error_code = "INVALID_TRANSACTION"
    http_status = 400

    def __init__(
        self,
        message: str,
        offset: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if offset is not None:
            details["offset"] = offset
        super().__init__(message, details=details)
        self.offset = offset


class SettlementError(FacilitatorError):
    """A payment could not be settled on-chain."""

    error_code = "SETTLEMENT_FAILED"
    http_status = 400

    def __init__(
        self,
        message: str,
        reason: str = "settlement_failed",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["reason"] = reason
        super().__init__(message, details=details)
        self.reason = reason


class VerificationError(FacilitatorError):
    """A payment payload does not satisfy its requirements."""

    error_code = "VERIFICATION_FAILED"
    http_status = 400

    def __init__(
        self,
        message: str,
        reason: str = "invalid_payload",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["reason"] = reason
        super().__init__(message, details=details)
        self.reason = reason


__all__ = [
    "FacilitatorError",
    "ConfigurationError",
    "SanctionsListError",
    "TransactionParseError",
    "SettlementError",
    "VerificationError",
]
