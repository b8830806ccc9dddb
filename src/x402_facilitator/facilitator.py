"""Facilitator engine: verify and settle with lifecycle hooks.

The engine delegates the payment-specific work to a ``PaymentScheme`` and
exposes hook points around it:

    before-verify -> scheme.verify -> after-verify | on-verify-failure
    before-settle -> scheme.settle -> after-settle | on-settle-failure
                                   | on-settle-cancelled

Once a before-hook has identified the payer (``context.payer``), the rest of
the attempt logs with it bound.

A before-hook may return ``HookAbort(reason)`` to stop the lifecycle; the
failure hooks then run with ``context.aborted`` set. An exception raised by a
before-hook also aborts. Exceptions raised by after and failure hooks are
logged and do not change the outcome.

A cancelled settle runs only the on-settle-cancelled hooks, which give back
anything held for the attempt, then the cancellation propagates. No replay,
budget or audit state is committed for it.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from .audit import GovernanceRecord
from .exceptions import SettlementError, VerificationError
from .logging_config import LogContext, generate_request_id
from .schemas import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HookAbort:
    """Returned by a before-hook to stop verify or settle."""

    reason: str


class PaymentScheme(Protocol):
    scheme: str

    def supports(self, requirements: PaymentRequirements) -> bool: ...

    async def verify(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> VerifyResponse: ...

    async def settle(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        record: Optional[GovernanceRecord] = None,
    ) -> SettleResponse: ...


@dataclass
class VerifyContext:
    payload: PaymentPayload
    requirements: PaymentRequirements
    request_id: str
    started_at: float = field(default_factory=time.monotonic)
    result: Optional[VerifyResponse] = None
    payer: Optional[str] = None
    error: Optional[str] = None
    aborted: bool = False
    governance: GovernanceRecord = field(default_factory=GovernanceRecord)
    state: Dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


@dataclass
class SettleContext:
    """State carried through every hook of a single settle attempt."""

    payload: PaymentPayload
    requirements: PaymentRequirements
    request_id: str
    started_at: float = field(default_factory=time.monotonic)
    result: Optional[SettleResponse] = None
    payer: Optional[str] = None
    error: Optional[str] = None
    aborted: bool = False
    governance: GovernanceRecord = field(default_factory=GovernanceRecord)
    state: Dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


# Settle failure reasons that indicate the settlement path itself is unhealthy
# rather than a bad payment. Only these feed the circuit breaker.
INFRASTRUCTURE_FAILURE_REASONS = frozenset(
    {"submission_failed", "transaction_failed", "confirmation_timeout", "settlement_error"}
)


def is_infrastructure_failure(error_reason: Optional[str]) -> bool:
    if not error_reason:
        return False
    return error_reason.split(":", 1)[0].strip() in INFRASTRUCTURE_FAILURE_REASONS


HookResult = Optional[HookAbort]
Hook = Callable[[Any], Union[HookResult, Awaitable[HookResult]]]


async def _invoke(hook: Hook, ctx: Any) -> HookResult:
    result = hook(ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


class Facilitator:
    """Runs verify and settle for one payment scheme."""

    def __init__(self, scheme: PaymentScheme):
        self.scheme = scheme
        self._before_verify: List[Hook] = []
        self._after_verify: List[Hook] = []
        self._verify_failure: List[Hook] = []
        self._before_settle: List[Hook] = []
        self._after_settle: List[Hook] = []
        self._settle_failure: List[Hook] = []
        self._settle_cancelled: List[Hook] = []

    # -- registration ------------------------------------------------------

    def on_before_verify(self, hook: Hook) -> Hook:
        self._before_verify.append(hook)
        return hook

    def on_after_verify(self, hook: Hook) -> Hook:
        self._after_verify.append(hook)
        return hook

    def on_verify_failure(self, hook: Hook) -> Hook:
        self._verify_failure.append(hook)
        return hook

    def on_before_settle(self, hook: Hook) -> Hook:
        self._before_settle.append(hook)
        return hook

    def on_after_settle(self, hook: Hook) -> Hook:
        self._after_settle.append(hook)
        return hook

    def on_settle_failure(self, hook: Hook) -> Hook:
        self._settle_failure.append(hook)
        return hook

    def on_settle_cancelled(self, hook: Hook) -> Hook:
        self._settle_cancelled.append(hook)
        return hook

    # -- hook dispatch -----------------------------------------------------

    async def _run_before(self, hooks: List[Hook], ctx: Any) -> Optional[str]:
        for hook in hooks:
            try:
                result = await _invoke(hook, ctx)
            except Exception as e:
                logger.exception("Before-hook %s raised; aborting", getattr(hook, "__name__", hook))
                return f"Governance check error: {e}"
            if isinstance(result, HookAbort):
                return result.reason
        return None

    async def _run_after(self, hooks: List[Hook], ctx: Any) -> None:
        for hook in hooks:
            try:
                await _invoke(hook, ctx)
            except Exception:
                logger.exception("Hook %s raised; continuing", getattr(hook, "__name__", hook))

    # -- lifecycle -----------------------------------------------------------

    async def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        ctx = VerifyContext(payload=payload, requirements=requirements, request_id=generate_request_id())
        with LogContext(request_id=ctx.request_id, network=requirements.network):
            if not self.scheme.supports(requirements):
                reason = f"unsupported_scheme: {requirements.scheme} on {requirements.network}"
                ctx.aborted = True
                ctx.error = reason
                await self._run_after(self._verify_failure, ctx)
                return VerifyResponse(is_valid=False, invalid_reason=reason)

            abort_reason = await self._run_before(self._before_verify, ctx)
            if abort_reason is not None:
                logger.info("Verify aborted: %s", abort_reason)
                ctx.aborted = True
                ctx.error = abort_reason
                ctx.result = VerifyResponse(is_valid=False, invalid_reason=abort_reason)
                await self._run_after(self._verify_failure, ctx)
                return ctx.result

            try:
                ctx.result = await self.scheme.verify(payload, requirements)
            except VerificationError as e:
                ctx.result = VerifyResponse(is_valid=False, invalid_reason=e.message)
            except Exception as e:
                logger.exception("Scheme verify failed")
                ctx.result = VerifyResponse(is_valid=False, invalid_reason=f"verification_error: {e}")

            ctx.payer = ctx.payer or ctx.result.payer
            with LogContext(payer=ctx.payer):
                if ctx.result.is_valid:
                    await self._run_after(self._after_verify, ctx)
                else:
                    ctx.error = ctx.result.invalid_reason
                    await self._run_after(self._verify_failure, ctx)
            return ctx.result

    async def _settle_with_scheme(self, ctx: SettleContext) -> SettleResponse:
        network = ctx.requirements.network
        try:
            return await self.scheme.settle(ctx.payload, ctx.requirements, ctx.governance)
        except SettlementError as e:
            return SettleResponse(success=False, network=network, error_reason=f"{e.reason}: {e.message}")
        except Exception as e:
            logger.exception("Scheme settle failed")
            return SettleResponse(success=False, network=network, error_reason=f"settlement_error: {e}")

    async def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
        ctx = SettleContext(payload=payload, requirements=requirements, request_id=generate_request_id())
        with LogContext(request_id=ctx.request_id, network=requirements.network):
            if not self.scheme.supports(requirements):
                reason = f"unsupported_scheme: {requirements.scheme} on {requirements.network}"
                ctx.aborted = True
                ctx.error = reason
                await self._run_after(self._settle_failure, ctx)
                return SettleResponse(success=False, network=requirements.network, error_reason=reason)

            try:
                abort_reason = await self._run_before(self._before_settle, ctx)
                if abort_reason is None:
                    with LogContext(payer=ctx.payer):
                        ctx.result = await self._settle_with_scheme(ctx)
            except asyncio.CancelledError:
                logger.info("Settle cancelled")
                await self._run_after(self._settle_cancelled, ctx)
                raise

            if ctx.result is not None:
                ctx.payer = ctx.payer or ctx.result.payer
            with LogContext(payer=ctx.payer):
                if abort_reason is not None:
                    logger.info("Settle aborted: %s", abort_reason)
                    ctx.aborted = True
                    ctx.error = abort_reason
                    ctx.result = SettleResponse(
                        success=False, network=requirements.network, error_reason=abort_reason
                    )
                    await self._run_after(self._settle_failure, ctx)
                elif ctx.result.success:
                    logger.info("Settled %s", ctx.result.transaction)
                    await self._run_after(self._after_settle, ctx)
                else:
                    ctx.error = ctx.result.error_reason
                    await self._run_after(self._settle_failure, ctx)
            return ctx.result


__all__ = [
    "Facilitator",
    "HookAbort",
    "INFRASTRUCTURE_FAILURE_REASONS",
    "PaymentScheme",
    "SettleContext",
    "VerifyContext",
    "is_infrastructure_failure",
]
