"""Governance orchestration over the facilitator lifecycle.

Checks run as explicit ordered pipelines and stop at the first rejection:

verify
    token allowlist, recipient allowlist, amount cap, sanctions
settle
    replay, policy (allowlists and cap again), rate limit, transaction
    decode, circuit breaker (state and velocity), delegation, budget,
    blockhash freshness, sanctions

Replay, policy and rate limit are local, so a replayed payload is rejected
before any ledger call. Components behind a disabled flag are left out of the
pipeline and recorded as ``skip`` in the audit entry.

State only changes after a confirmed settlement: the replay guard, rate
counter, budget and velocity tracker are updated in the after-settle hook,
never in before-settle or on failure. A cancelled settle only returns the
circuit breaker probe slot it may have taken.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from ..audit import (
    AuditAction,
    AuditLogEntry,
    AuditLogger,
    AuditStatus,
    SKIP,
    safe_log,
)
from ..config import GovernanceConfig
from ..exceptions import ConfigurationError, TransactionParseError
from ..facilitator import (
    Facilitator,
    HookAbort,
    SettleContext,
    VerifyContext,
    is_infrastructure_failure,
)
from ..replay import ReplayGuard, replay_ttl_for
from ..settlement.blockhash import validate_blockhash_freshness
from ..settlement.simulate import find_payment_transfer
from ..settlement.transaction import ParsedTransfer, decode_transaction_base64, extract_transfers
from ..solana.client import LedgerReader
from .budget import BudgetEnforcer, BudgetStatus, budget_key
from .checks import (
    RateCounter,
    check_amount_cap,
    check_rate_limit,
    check_recipient_allowlist,
    check_token_allowlist,
)
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, VelocityConfig, VelocityTracker
from .delegation import validate_delegation
from .sanctions import SanctionsScreener, ScreeningStatus

logger = logging.getLogger(__name__)

Context = Union[VerifyContext, SettleContext]
Step = Callable[[Context], Awaitable[Optional[str]]]
Pipeline = List[Tuple[str, Step]]

NO_TRANSFER_REASON = "No SPL TransferChecked instruction found in transaction"


class GovernanceOrchestrator:
    """Wires governance components into a ``Facilitator``.

    Components are owned by the orchestrator for its lifetime and released by
    ``destroy()``. Any component not passed in is created from ``config``
    when its feature flag is on.

    Raises:
        ConfigurationError: A feature is enabled without what it needs.
        SanctionsListError: Sanctions screening is enabled fail-closed and the
            blocklist cannot be loaded.
    """

    def __init__(
        self,
        config: GovernanceConfig,
        *,
        replay_guard: Optional[ReplayGuard] = None,
        rate_counter: Optional[RateCounter] = None,
        ledger: Optional[LedgerReader] = None,
        budget_enforcer: Optional[BudgetEnforcer] = None,
        sanctions_screener: Optional[SanctionsScreener] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        velocity_tracker: Optional[VelocityTracker] = None,
        audit_logger: Optional[AuditLogger] = None,
        rpc_timeout: float = 10.0,
    ):
        self.config = config
        self.ledger = ledger
        self.rpc_timeout = rpc_timeout
        self.audit_logger = audit_logger
        self.replay_guard = replay_guard or ReplayGuard()
        self.rate_counter = rate_counter or RateCounter()

        if config.delegation_check_enabled and ledger is None:
            raise ConfigurationError("Delegation checks require a ledger reader")
        if config.blockhash_validation_enabled and ledger is None:
            raise ConfigurationError("Blockhash validation requires a ledger reader")
        if config.budget_enforce_enabled and not config.delegation_check_enabled:
            raise ConfigurationError(
                "Budget enforcement requires delegation checks for the on-chain allowance"
            )

        self.budget_enforcer = budget_enforcer
        if config.budget_enforce_enabled and self.budget_enforcer is None:
            self.budget_enforcer = BudgetEnforcer()

        self.sanctions_screener = sanctions_screener
        if config.ofac_enabled and self.sanctions_screener is None:
            self.sanctions_screener = SanctionsScreener(
                config.ofac_blocklist_path, fail_closed=config.ofac_fail_closed
            )

        self.circuit_breaker = circuit_breaker
        self.velocity_tracker = velocity_tracker
        if config.circuit_breaker_enabled:
            if self.circuit_breaker is None:
                self.circuit_breaker = CircuitBreaker(
                    CircuitBreakerConfig.from_settings(config.circuit_breaker)
                )
            if self.velocity_tracker is None:
                self.velocity_tracker = VelocityTracker(
                    VelocityConfig.from_settings(config.circuit_breaker)
                )

        self.verify_pipeline: Pipeline = [
            ("token_allowlist", self._check_token),
            ("recipient_allowlist", self._check_recipient),
            ("amount_cap", self._check_amount),
        ]
        if config.ofac_enabled:
            self.verify_pipeline.append(("sanctions", self._screen_verify))

        self.settle_pipeline: Pipeline = [
            ("replay", self._check_replay),
            ("token_allowlist", self._check_token),
            ("recipient_allowlist", self._check_recipient),
            ("amount_cap", self._check_amount),
            ("rate_limit", self._check_rate),
            ("transaction", self._decode_transaction),
        ]
        if config.circuit_breaker_enabled:
            self.settle_pipeline.append(("circuit_breaker", self._check_circuit_breaker))
        if config.delegation_check_enabled:
            self.settle_pipeline.append(("delegation", self._check_delegation))
        if config.budget_enforce_enabled:
            self.settle_pipeline.append(("budget", self._check_budget))
        if config.blockhash_validation_enabled:
            self.settle_pipeline.append(("blockhash", self._check_blockhash))
        if config.ofac_enabled:
            self.settle_pipeline.append(("sanctions", self._screen_settle))

        self._destroyed = False

    def wire(self, facilitator: Facilitator) -> "GovernanceOrchestrator":
        facilitator.on_before_verify(self.before_verify)
        facilitator.on_after_verify(self.after_verify)
        facilitator.on_verify_failure(self.on_verify_failure)
        facilitator.on_before_settle(self.before_settle)
        facilitator.on_after_settle(self.after_settle)
        facilitator.on_settle_failure(self.on_settle_failure)
        facilitator.on_settle_cancelled(self.on_settle_cancelled)
        return self

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    async def _run(self, pipeline: Pipeline, ctx: Context) -> Optional[HookAbort]:
        for name, step in pipeline:
            reason = await step(ctx)
            if reason is not None:
                ctx.governance.failed_check = name
                logger.info("Governance check %s rejected: %s", name, reason)
                return HookAbort(reason)
        return None

    async def before_verify(self, ctx: VerifyContext) -> Optional[HookAbort]:
        return await self._run(self.verify_pipeline, ctx)

    async def before_settle(self, ctx: SettleContext) -> Optional[HookAbort]:
        return await self._run(self.settle_pipeline, ctx)

    # ------------------------------------------------------------------
    # Local checks
    # ------------------------------------------------------------------

    async def _check_token(self, ctx: Context) -> Optional[str]:
        return check_token_allowlist(ctx.requirements.asset, self.config.allowed_tokens).reason

    async def _check_recipient(self, ctx: Context) -> Optional[str]:
        return check_recipient_allowlist(ctx.requirements.pay_to, self.config.allowed_recipients).reason

    async def _check_amount(self, ctx: Context) -> Optional[str]:
        return check_amount_cap(ctx.requirements.amount, self.config.max_settlement_amount).reason

    async def _check_replay(self, ctx: SettleContext) -> Optional[str]:
        tx = ctx.payload.transaction
        if tx is None:
            return "Payment payload has no transaction"
        if not self.replay_guard.check(tx):
            return "Replay detected: payment payload was already settled"
        return None

    async def _check_rate(self, ctx: SettleContext) -> Optional[str]:
        return check_rate_limit(self.rate_counter.count(), self.config.rate_limit_per_minute).reason

    async def _decode_transaction(self, ctx: SettleContext) -> Optional[str]:
        try:
            decoded = decode_transaction_base64(ctx.payload.transaction)
        except TransactionParseError as e:
            return f"Malformed transaction: {e.message}"

        transfers = extract_transfers(decoded)
        transfer = find_payment_transfer(transfers, ctx.requirements.pay_to)
        if transfer is None and transfers:
            transfer = transfers[0]

        ctx.state["decoded"] = decoded
        ctx.state["transfer"] = transfer
        if transfer is not None:
            ctx.payer = transfer.authority
        return None

    # ------------------------------------------------------------------
    # Circuit breaker and ledger-backed checks
    # ------------------------------------------------------------------

    async def _check_circuit_breaker(self, ctx: SettleContext) -> Optional[str]:
        if not await self.circuit_breaker.allow_request():
            ctx.governance.circuit_breaker = "open"
            return "Circuit breaker open: settlement temporarily halted"
        ctx.state["breaker_admitted"] = True

        transfer: Optional[ParsedTransfer] = ctx.state.get("transfer")
        if transfer is None:
            ctx.governance.circuit_breaker = "error"
            return NO_TRANSFER_REASON

        velocity = self.velocity_tracker.check(transfer.authority, ctx.requirements.pay_to, transfer.amount)
        if velocity.tripped:
            ctx.governance.circuit_breaker = "tripped"
            return f"Circuit breaker tripped: {velocity.reason}"
        ctx.governance.circuit_breaker = self.circuit_breaker.state.value
        return None

    async def _check_delegation(self, ctx: SettleContext) -> Optional[str]:
        transfer: Optional[ParsedTransfer] = ctx.state.get("transfer")
        if transfer is None:
            ctx.governance.delegation = "error"
            return NO_TRANSFER_REASON

        result = await validate_delegation(
            self.ledger,
            payer=transfer.authority,
            source_token_account=transfer.source,
            amount=max(transfer.amount, ctx.requirements.amount_base_units),
            expected_mint=ctx.requirements.asset,
            timeout=self.rpc_timeout,
        )
        ctx.governance.delegation = result.status.value
        ctx.state["delegation"] = result
        if not result.is_active:
            return result.describe()
        return None

    async def _check_budget(self, ctx: SettleContext) -> Optional[str]:
        transfer: ParsedTransfer = ctx.state["transfer"]
        delegation = ctx.state["delegation"]
        key = budget_key(delegation.delegate, transfer.source)

        result = self.budget_enforcer.check(key, transfer.amount, delegation.delegated_amount or 0)
        ctx.governance.budget = result.status.value
        if result.status == BudgetStatus.ERROR:
            return "Budget check error: invalid payment or allowance amount"
        if not result.allowed:
            return (
                f"Budget exceeded: payment {result.payment_amount} is over remaining "
                f"{result.remaining_budget} (spent {result.total_spent} of {result.delegated_amount})"
            )
        ctx.state["budget_key"] = key
        return None

    async def _check_blockhash(self, ctx: SettleContext) -> Optional[str]:
        result = await validate_blockhash_freshness(
            self.ledger,
            ctx.state["decoded"].recent_blockhash,
            max_age_seconds=self.config.blockhash_max_age_seconds,
            timeout=self.rpc_timeout,
        )
        if not result.is_valid:
            ctx.governance.blockhash = "expired"
            return result.reason
        ctx.governance.blockhash = "valid" if result.reason is None else "fail_open"
        return None

    def _screen(self, ctx: Context, addresses: List[Optional[str]]) -> Optional[str]:
        unique = list(dict.fromkeys(a for a in addresses if a))
        result = self.sanctions_screener.screen(unique)
        ctx.governance.ofac = result.status.value
        if result.status == ScreeningStatus.FAIL:
            return (
                f"Sanctions screening failed: {result.matched_address} "
                f"is on the {result.matched_list} list"
            )
        if result.status == ScreeningStatus.ERROR:
            return f"Sanctions screening unavailable: {result.error_detail}"
        return None

    async def _screen_verify(self, ctx: VerifyContext) -> Optional[str]:
        payer = None
        tx = ctx.payload.transaction
        if tx is not None:
            try:
                transfers = extract_transfers(decode_transaction_base64(tx))
            except TransactionParseError:
                transfers = []
            match = find_payment_transfer(transfers, ctx.requirements.pay_to)
            payer = match.authority if match else None
        if payer:
            ctx.payer = payer
        return self._screen(ctx, [payer, ctx.requirements.pay_to])

    async def _screen_settle(self, ctx: SettleContext) -> Optional[str]:
        delegation = ctx.state.get("delegation")
        owner = delegation.owner if delegation is not None else None
        return self._screen(ctx, [ctx.payer, owner, ctx.requirements.pay_to])

    # ------------------------------------------------------------------
    # Outcome hooks
    # ------------------------------------------------------------------

    async def after_verify(self, ctx: VerifyContext) -> None:
        self._audit(ctx, AuditAction.VERIFY, AuditStatus.SUCCESS)

    async def on_verify_failure(self, ctx: VerifyContext) -> None:
        self._audit(ctx, AuditAction.VERIFY, AuditStatus.REJECTED)

    async def after_settle(self, ctx: SettleContext) -> None:
        # The transfer is on-chain: the audit entry is written even if a commit step raises.
        try:
            self._commit_settlement(ctx)
            if ctx.state.pop("breaker_admitted", False):
                await self.circuit_breaker.record_success()
        finally:
            self._audit(ctx, AuditAction.SETTLE, AuditStatus.SUCCESS)

    def _commit_settlement(self, ctx: SettleContext) -> None:
        requirements = ctx.requirements
        ttl = replay_ttl_for(requirements.max_timeout_seconds)
        if ctx.result.transaction:
            self.replay_guard.record(ctx.result.transaction, ttl)
        if ctx.payload.transaction:
            self.replay_guard.record(ctx.payload.transaction, ttl)
        self.rate_counter.increment()

        transfer: Optional[ParsedTransfer] = ctx.state.get("transfer")
        key = ctx.state.get("budget_key")
        if key is not None and transfer is not None:
            self.budget_enforcer.record(key, transfer.amount)
        if self.velocity_tracker is not None and transfer is not None:
            self.velocity_tracker.record(transfer.authority, requirements.pay_to, transfer.amount)

    async def on_settle_failure(self, ctx: SettleContext) -> None:
        if ctx.state.pop("breaker_admitted", False):
            if not ctx.aborted and is_infrastructure_failure(ctx.error):
                await self.circuit_breaker.record_failure()
            else:
                await self.circuit_breaker.release_probe()

        status = AuditStatus.REJECTED if ctx.aborted else AuditStatus.FAILED
        self._audit(ctx, AuditAction.SETTLE, status)

    async def on_settle_cancelled(self, ctx: SettleContext) -> None:
        """Give back a half-open probe slot; nothing else is committed."""
        if ctx.state.pop("breaker_admitted", False):
            await self.circuit_breaker.release_probe()

    def _audit(self, ctx: Context, action: AuditAction, status: AuditStatus) -> None:
        requirements = ctx.requirements
        governance = ctx.governance
        payer = ctx.payer or getattr(ctx.result, "payer", None) or ""
        lamports = governance.fee_payer_lamports
        entry = AuditLogEntry(
            action=action,
            status=status,
            payer_address=payer,
            recipient_address=requirements.pay_to,
            amount=requirements.amount,
            token_mint=requirements.asset,
            network=requirements.network,
            governance_result=governance.to_dict(),
            latency_ms=round(ctx.elapsed_ms, 3),
            tx_signature=getattr(ctx.result, "transaction", None),
            simulation_passed=None if governance.simulation == SKIP else governance.simulation == "pass",
            blockhash_valid=None if governance.blockhash == SKIP else governance.blockhash != "expired",
            gas_payer_balance=None if lamports is None else str(lamports),
            agent_id=payer or None,
            error_reason=ctx.error,
        )
        safe_log(self.audit_logger, entry)

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def destroy(self) -> None:
        """Release all owned state. Safe to call more than once."""
        if self._destroyed:
            return
        self._destroyed = True
        self.replay_guard.destroy()
        self.rate_counter.destroy()
        if self.budget_enforcer is not None:
            self.budget_enforcer.destroy()
        if self.sanctions_screener is not None:
            self.sanctions_screener.destroy()
        if self.velocity_tracker is not None:
            self.velocity_tracker.destroy()


__all__ = ["GovernanceOrchestrator", "NO_TRANSFER_REASON"]
