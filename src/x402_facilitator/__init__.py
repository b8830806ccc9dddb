"""Governance and settlement verification for x402 payments on Solana."""

from .audit import (
    AuditLogEntry,
    ConsoleAuditLogger,
    InMemoryAuditLogger,
    LoggingAuditLogger,
)
from .config import FacilitatorSettings, GovernanceConfig, load_settings
from .exceptions import (
    ConfigurationError,
    FacilitatorError,
    SanctionsListError,
    SettlementError,
    TransactionParseError,
    VerificationError,
)
from .facilitator import Facilitator, HookAbort, SettleContext, VerifyContext
from .factory import FacilitatorApp, create_facilitator
from .governance import GovernanceOrchestrator
from .replay import ReplayGuard
from .schemas import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse
from .solana.scheme import SolanaExactScheme, TransactionSigner

__version__ = "0.1.0"

__all__ = [
    # Engine
    "Facilitator",
    "FacilitatorApp",
    "HookAbort",
    "SettleContext",
    "VerifyContext",
    "create_facilitator",
    # Governance
    "GovernanceOrchestrator",
    "ReplayGuard",
    # Scheme
    "SolanaExactScheme",
    "TransactionSigner",
    # Wire types
    "PaymentPayload",
    "PaymentRequirements",
    "SettleResponse",
    "VerifyResponse",
    # Config
    "FacilitatorSettings",
    "GovernanceConfig",
    "load_settings",
    # Audit
    "AuditLogEntry",
    "ConsoleAuditLogger",
    "InMemoryAuditLogger",
    "LoggingAuditLogger",
    # Errors
    "ConfigurationError",
    "FacilitatorError",
    "SanctionsListError",
    "SettlementError",
    "TransactionParseError",
    "VerificationError",
]
