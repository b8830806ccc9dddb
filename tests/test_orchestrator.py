"""End-to-end tests for governance hooks around verify and settle."""

import asyncio
import json

import pytest

from solana_helpers import (
    AGENT,
    FEE_PAYER,
    MERCHANT_ATA,
    OWNER,
    SOURCE,
    address,
    build_transfer_tx,
    make_payload,
    make_requirements,
    token_account,
)
from x402_facilitator.audit import AuditAction, AuditStatus, InMemoryAuditLogger
from x402_facilitator.config import CircuitBreakerSettings, GovernanceConfig
from x402_facilitator.exceptions import ConfigurationError, SanctionsListError
from x402_facilitator.facilitator import Facilitator
from x402_facilitator.governance.circuit_breaker import CircuitState
from x402_facilitator.governance.orchestrator import GovernanceOrchestrator
from x402_facilitator.logging_config import payer_var
from x402_facilitator.schemas import MAX_TIMEOUT_SECONDS_LIMIT
from x402_facilitator.settlement.blockhash import EXPIRED_REASON
from x402_facilitator.settlement.gas import GasManager
from x402_facilitator.solana.scheme import SolanaExactScheme


def governed(ledger, **config):
    """Facilitator over ``ledger`` with governance wired in."""
    audit = InMemoryAuditLogger()
    scheme = SolanaExactScheme(ledger, network="devnet", confirm_interval_seconds=0)
    facilitator = Facilitator(scheme)
    governance = GovernanceOrchestrator(
        GovernanceConfig(**config), ledger=ledger, audit_logger=audit
    ).wire(facilitator)
    return facilitator, governance, audit


def second_payload(**kwargs):
    """A distinct transaction for the same requirements."""
    kwargs.setdefault("blockhash", address(201))
    return make_payload(build_transfer_tx(**kwargs))


class TestConstruction:
    def test_delegation_requires_ledger(self):
        with pytest.raises(ConfigurationError):
            GovernanceOrchestrator(GovernanceConfig(delegation_check_enabled=True))

    def test_blockhash_requires_ledger(self):
        with pytest.raises(ConfigurationError):
            GovernanceOrchestrator(GovernanceConfig(blockhash_validation_enabled=True))

    def test_budget_requires_delegation(self, ledger):
        with pytest.raises(ConfigurationError):
            GovernanceOrchestrator(GovernanceConfig(budget_enforce_enabled=True), ledger=ledger)

    def test_fail_closed_sanctions_without_list(self, tmp_path):
        config = GovernanceConfig(ofac_enabled=True, ofac_blocklist_path=str(tmp_path / "missing.json"))
        with pytest.raises(SanctionsListError):
            GovernanceOrchestrator(config)

    def test_pipeline_follows_flags(self, ledger):
        governance = GovernanceOrchestrator(
            GovernanceConfig(delegation_check_enabled=True, blockhash_validation_enabled=True),
            ledger=ledger,
        )
        assert [name for name, _ in governance.settle_pipeline] == [
            "replay",
            "token_allowlist",
            "recipient_allowlist",
            "amount_cap",
            "rate_limit",
            "transaction",
            "delegation",
            "blockhash",
        ]
        assert governance.budget_enforcer is None
        assert governance.circuit_breaker is None

    def test_destroy_is_idempotent(self, ledger):
        governance = GovernanceOrchestrator(GovernanceConfig(budget_enforce_enabled=True, delegation_check_enabled=True), ledger=ledger)
        governance.replay_guard.record("sig", 60)
        governance.destroy()
        governance.destroy()
        assert governance.replay_guard.size() == 0


class TestVerifyGovernance:
    @pytest.mark.asyncio
    async def test_valid_verify_is_audited(self, ledger, payload, requirements):
        facilitator, _, audit = governed(ledger)

        result = await facilitator.verify(payload, requirements)

        assert result.is_valid
        (entry,) = audit.entries
        assert entry.action == AuditAction.VERIFY
        assert entry.status == AuditStatus.SUCCESS
        assert entry.payer_address == AGENT

    @pytest.mark.asyncio
    async def test_token_not_allowed(self, ledger, payload, requirements):
        facilitator, _, audit = governed(ledger, allowed_tokens=[address(90)])

        result = await facilitator.verify(payload, requirements)

        assert not result.is_valid
        assert "is not in the allowlist" in result.invalid_reason
        (entry,) = audit.entries
        assert entry.status == AuditStatus.REJECTED
        assert entry.governance_result["failed_check"] == "token_allowlist"

    @pytest.mark.asyncio
    async def test_amount_over_cap(self, ledger, payload):
        facilitator, _, _ = governed(ledger, max_settlement_amount="999999")
        result = await facilitator.verify(payload, make_requirements(amount="1000000"))
        assert result.invalid_reason == "Amount 1000000 exceeds cap 999999"

    @pytest.mark.asyncio
    async def test_sanctioned_payer(self, ledger, payload, requirements, tmp_path):
        blocklist = tmp_path / "sdn.json"
        blocklist.write_text(json.dumps([AGENT]))
        facilitator, _, audit = governed(ledger, ofac_enabled=True, ofac_blocklist_path=str(blocklist))

        result = await facilitator.verify(payload, requirements)

        assert result.invalid_reason == f"Sanctions screening failed: {AGENT} is on the SDN list"
        assert audit.entries[0].governance_result["ofac"] == "fail"


class TestSettleGovernance:
    @pytest.mark.asyncio
    async def test_success_commits_state_and_audits(self, ledger, payload, requirements):
        facilitator, governance, audit = governed(ledger)

        result = await facilitator.settle(payload, requirements)

        assert result.success
        assert not governance.replay_guard.check(payload.transaction)
        assert not governance.replay_guard.check(result.transaction)
        assert governance.rate_counter.count() == 1

        (entry,) = audit.entries
        assert entry.action == AuditAction.SETTLE
        assert entry.status == AuditStatus.SUCCESS
        assert entry.tx_signature == result.transaction
        assert entry.payer_address == AGENT
        assert entry.recipient_address == MERCHANT_ATA
        assert entry.governance_result["delegation"] == "skip"
        assert entry.latency_ms >= 0

    @pytest.mark.asyncio
    async def test_replay_rejected_before_any_ledger_call(self, ledger, payload, requirements):
        facilitator, _, audit = governed(ledger, delegation_check_enabled=True, blockhash_validation_enabled=True)
        assert (await facilitator.settle(payload, requirements)).success
        calls_after_first = len(ledger.calls)

        result = await facilitator.settle(payload, requirements)

        assert not result.success
        assert "Replay" in result.error_reason
        assert len(ledger.calls) == calls_after_first
        assert audit.entries[-1].status == AuditStatus.REJECTED
        assert audit.entries[-1].governance_result["failed_check"] == "replay"

    @pytest.mark.asyncio
    async def test_missing_transaction(self, ledger, requirements):
        facilitator, _, _ = governed(ledger)
        result = await facilitator.settle(make_payload(None), requirements)
        assert result.error_reason == "Payment payload has no transaction"

    @pytest.mark.asyncio
    async def test_malformed_transaction(self, ledger, requirements):
        facilitator, _, _ = governed(ledger, delegation_check_enabled=True)
        result = await facilitator.settle(make_payload("AAAA"), requirements)
        assert result.error_reason.startswith("Malformed transaction:")
        assert ledger.calls == []

    @pytest.mark.asyncio
    async def test_rate_limit(self, ledger, payload, requirements):
        facilitator, _, _ = governed(ledger, rate_limit_per_minute=1)
        assert (await facilitator.settle(payload, requirements)).success

        result = await facilitator.settle(second_payload(), requirements)

        assert result.error_reason == "Rate limit exceeded: 1/1 per minute"

    @pytest.mark.asyncio
    async def test_failed_settlement_commits_nothing(self, ledger, payload, requirements):
        ledger.failing.add("send_raw_transaction")
        facilitator, governance, audit = governed(ledger)

        result = await facilitator.settle(payload, requirements)

        assert result.error_reason.startswith("submission_failed")
        assert governance.replay_guard.check(payload.transaction)
        assert governance.rate_counter.count() == 0
        assert audit.entries[-1].status == AuditStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_settlement_commits_nothing(self, ledger, payload, requirements):
        ledger.confirmations = [asyncio.CancelledError()]
        facilitator, governance, audit = governed(ledger)

        with pytest.raises(asyncio.CancelledError):
            await facilitator.settle(payload, requirements)

        assert governance.replay_guard.size() == 0
        assert governance.rate_counter.count() == 0
        assert audit.entries == []

    @pytest.mark.asyncio
    async def test_cancelled_half_open_attempt_returns_its_slot(self, ledger, payload, requirements):
        ledger.confirmations = [asyncio.CancelledError(), True]
        facilitator, governance, audit = governed(
            ledger,
            circuit_breaker_enabled=True,
            circuit_breaker=CircuitBreakerSettings(half_open_max_calls=1, success_threshold=1),
        )
        breaker = governance.circuit_breaker
        breaker.stats.state = CircuitState.HALF_OPEN

        with pytest.raises(asyncio.CancelledError):
            await facilitator.settle(payload, requirements)

        assert breaker.stats.half_open_calls == 0
        assert audit.entries == []

        result = await facilitator.settle(payload, requirements)

        assert result.success
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancel_during_governance_returns_half_open_slot(self, ledger, payload, requirements):
        facilitator, governance, _ = governed(
            ledger,
            delegation_check_enabled=True,
            circuit_breaker_enabled=True,
            circuit_breaker=CircuitBreakerSettings(half_open_max_calls=1),
        )
        governance.circuit_breaker.stats.state = CircuitState.HALF_OPEN

        async def cancelled_lookup(*args, **kwargs):
            raise asyncio.CancelledError()

        ledger.get_account_info = cancelled_lookup

        with pytest.raises(asyncio.CancelledError):
            await facilitator.settle(payload, requirements)

        assert governance.circuit_breaker.stats.half_open_calls == 0
        assert await governance.circuit_breaker.allow_request()

    @pytest.mark.asyncio
    async def test_confirmed_settlement_is_audited_when_commit_fails(self, ledger, payload, requirements):
        facilitator, governance, audit = governed(ledger)

        def broken_record(key, ttl_seconds):
            raise RuntimeError("replay store unavailable")

        governance.replay_guard.record = broken_record

        result = await facilitator.settle(payload, requirements)

        assert result.success
        assert len(audit.entries) == 1
        assert audit.entries[0].status == AuditStatus.SUCCESS
        assert audit.entries[0].tx_signature == ledger.signature

    @pytest.mark.asyncio
    async def test_longest_timeout_is_committed(self, ledger, payload):
        requirements = make_requirements(maxTimeoutSeconds=MAX_TIMEOUT_SECONDS_LIMIT)
        facilitator, governance, audit = governed(ledger)

        assert (await facilitator.settle(payload, requirements)).success

        assert not governance.replay_guard.check(payload.transaction)
        assert governance.rate_counter.count() == 1
        assert len(audit.entries) == 1

    @pytest.mark.asyncio
    async def test_payer_is_bound_to_log_context(self, ledger, payload, requirements):
        facilitator, _, _ = governed(ledger)
        seen = []
        facilitator.on_after_settle(lambda ctx: seen.append(payer_var.get()))

        assert (await facilitator.settle(payload, requirements)).success

        assert seen == [AGENT]
        assert payer_var.get() is None

    @pytest.mark.asyncio
    async def test_fee_payer_balance_is_audited(self, ledger, payload, requirements):
        audit = InMemoryAuditLogger()
        scheme = SolanaExactScheme(
            ledger,
            network="devnet",
            gas_manager=GasManager(ledger, FEE_PAYER),
            confirm_interval_seconds=0,
        )
        facilitator = Facilitator(scheme)
        GovernanceOrchestrator(GovernanceConfig(), ledger=ledger, audit_logger=audit).wire(facilitator)

        assert (await facilitator.settle(payload, requirements)).success

        assert audit.entries[0].gas_payer_balance == str(ledger.balance)
        assert "fee_payer_lamports" not in audit.entries[0].governance_result


class TestDelegationAndBudget:
    @pytest.mark.asyncio
    async def test_active_delegation_settles_and_records_spend(self, ledger, payload, requirements):
        facilitator, governance, audit = governed(
            ledger, delegation_check_enabled=True, budget_enforce_enabled=True
        )

        result = await facilitator.settle(payload, requirements)

        assert result.success
        assert governance.budget_enforcer.total_spent(f"{AGENT}:{SOURCE}") == 1_000_000
        record = audit.entries[-1].governance_result
        assert record["delegation"] == "active"
        assert record["budget"] == "within_cap"

    @pytest.mark.asyncio
    async def test_missing_delegation_is_rejected(self, ledger, payload, requirements):
        ledger.accounts[SOURCE] = token_account(delegate=None)
        facilitator, governance, audit = governed(ledger, delegation_check_enabled=True)

        result = await facilitator.settle(payload, requirements)

        assert result.error_reason.startswith("Delegation not_delegated")
        assert ledger.sent == []
        assert governance.replay_guard.size() == 0
        assert audit.entries[-1].governance_result["delegation"] == "not_delegated"

    @pytest.mark.asyncio
    async def test_insufficient_delegation(self, ledger, payload, requirements):
        ledger.accounts[SOURCE] = token_account(delegated_amount=500_000)
        facilitator, _, _ = governed(ledger, delegation_check_enabled=True)

        result = await facilitator.settle(payload, requirements)

        assert result.error_reason == "Delegation insufficient: delegated 500000, required 1000000"

    @pytest.mark.asyncio
    async def test_budget_exhausted_across_settlements(self, ledger, payload, requirements):
        ledger.accounts[SOURCE] = token_account(delegated_amount=1_500_000)
        facilitator, _, audit = governed(ledger, delegation_check_enabled=True, budget_enforce_enabled=True)
        assert (await facilitator.settle(payload, requirements)).success

        result = await facilitator.settle(second_payload(), requirements)

        assert result.error_reason.startswith("Budget exceeded: payment 1000000 is over remaining 500000")
        assert audit.entries[-1].governance_result["budget"] == "over_cap"
        assert audit.entries[-1].governance_result["failed_check"] == "budget"

    @pytest.mark.asyncio
    async def test_ledger_outage_denies_delegation(self, ledger, payload, requirements):
        ledger.failing.add("get_account_info")
        facilitator, _, _ = governed(ledger, delegation_check_enabled=True)

        result = await facilitator.settle(payload, requirements)

        assert result.error_reason.startswith("Delegation error")


class TestBlockhashAndSanctions:
    @pytest.mark.asyncio
    async def test_expired_blockhash(self, ledger, payload, requirements):
        ledger.blockhash_valid = False
        facilitator, _, audit = governed(ledger, blockhash_validation_enabled=True)

        result = await facilitator.settle(payload, requirements)

        assert result.error_reason == EXPIRED_REASON
        assert audit.entries[-1].blockhash_valid is False
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_blockhash_rpc_failure_fails_open(self, ledger, payload, requirements):
        ledger.failing.add("is_blockhash_valid")
        facilitator, _, audit = governed(ledger, blockhash_validation_enabled=True)

        result = await facilitator.settle(payload, requirements)

        assert result.success
        assert audit.entries[-1].governance_result["blockhash"] == "fail_open"

    @pytest.mark.asyncio
    async def test_sanctioned_token_account_owner(self, ledger, payload, requirements, tmp_path):
        blocklist = tmp_path / "sdn.json"
        blocklist.write_text(json.dumps([OWNER]))
        facilitator, _, _ = governed(
            ledger,
            delegation_check_enabled=True,
            ofac_enabled=True,
            ofac_blocklist_path=str(blocklist),
        )

        result = await facilitator.settle(payload, requirements)

        assert result.error_reason == f"Sanctions screening failed: {OWNER} is on the SDN list"
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_fail_open_sanctions_skips(self, ledger, payload, requirements, tmp_path):
        facilitator, _, audit = governed(
            ledger,
            ofac_enabled=True,
            ofac_fail_closed=False,
            ofac_blocklist_path=str(tmp_path / "missing.json"),
        )

        result = await facilitator.settle(payload, requirements)

        assert result.success
        assert audit.entries[-1].governance_result["ofac"] == "skip"


class TestCircuitBreakerGovernance:
    @pytest.mark.asyncio
    async def test_infrastructure_failures_open_breaker(self, ledger, payload, requirements):
        ledger.failing.add("send_raw_transaction")
        facilitator, governance, _ = governed(
            ledger,
            circuit_breaker_enabled=True,
            circuit_breaker=CircuitBreakerSettings(failure_threshold=2),
        )

        for _ in range(2):
            result = await facilitator.settle(payload, requirements)
            assert result.error_reason.startswith("submission_failed")

        assert governance.circuit_breaker.state == CircuitState.OPEN
        result = await facilitator.settle(payload, requirements)
        assert result.error_reason == "Circuit breaker open: settlement temporarily halted"

    @pytest.mark.asyncio
    async def test_policy_denials_do_not_trip_breaker(self, ledger, payload, requirements):
        ledger.blockhash_valid = False
        facilitator, governance, _ = governed(
            ledger,
            circuit_breaker_enabled=True,
            circuit_breaker=CircuitBreakerSettings(failure_threshold=1),
            blockhash_validation_enabled=True,
        )

        for _ in range(3):
            result = await facilitator.settle(payload, requirements)
            assert result.error_reason == EXPIRED_REASON

        assert governance.circuit_breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_velocity_trip_denies_settlement(self, ledger, payload, requirements):
        facilitator, governance, audit = governed(
            ledger,
            circuit_breaker_enabled=True,
            circuit_breaker=CircuitBreakerSettings(max_same_recipient_per_minute=1),
        )
        assert (await facilitator.settle(payload, requirements)).success

        result = await facilitator.settle(second_payload(), requirements)

        assert result.error_reason.startswith("Circuit breaker tripped: Same recipient")
        assert audit.entries[-1].governance_result["circuit_breaker"] == "tripped"
        assert governance.circuit_breaker.state == CircuitState.CLOSED
