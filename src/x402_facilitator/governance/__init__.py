"""Governance checks applied before a payment is verified or settled."""
from .budget import BudgetCheckResult, BudgetEnforcer, BudgetStatus
from .checks import (
    GovernanceCheckResult,
    RateCounter,
    check_amount_cap,
    check_rate_limit,
    check_recipient_allowlist,
    check_token_allowlist,
)
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    VelocityCheckResult,
    VelocityConfig,
    VelocityTracker,
)
from .delegation import DelegationCheckResult, DelegationStatus, validate_delegation
from .orchestrator import GovernanceOrchestrator
from .sanctions import SanctionsScreener, SanctionsScreeningResult, ScreeningStatus

__all__ = [
    "BudgetCheckResult",
    "BudgetEnforcer",
    "BudgetStatus",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "DelegationCheckResult",
    "DelegationStatus",
    "GovernanceCheckResult",
    "GovernanceOrchestrator",
    "RateCounter",
    "SanctionsScreener",
    "SanctionsScreeningResult",
    "ScreeningStatus",
    "VelocityCheckResult",
    "VelocityConfig",
    "VelocityTracker",
    "check_amount_cap",
    "check_rate_limit",
    "check_recipient_allowlist",
    "check_token_allowlist",
    "validate_delegation",
]
