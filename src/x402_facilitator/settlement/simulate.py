"""Verify-then-simulate for payment transactions.

The transfer graph is read from the transaction bytes and matched against the
requirements before the ledger dry-run is asked anything. A transaction whose
simulated effects succeed but which pays the wrong party is rejected here.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..exceptions import TransactionParseError
from ..schemas import PaymentRequirements
from ..solana.client import LedgerReader
from .transaction import ParsedTransfer, parse_transfer_instructions

logger = logging.getLogger(__name__)

DEFAULT_SIMULATION_TIMEOUT_SECONDS = 10.0
DEFAULT_UNITS_CONSUMED = 5000


@dataclass(frozen=True)
class SimulationRequirements:
    expected_recipient: str
    expected_amount: int
    expected_token_mint: str

    @classmethod
    def from_payment_requirements(cls, requirements: PaymentRequirements) -> "SimulationRequirements":
        return cls(
            expected_recipient=requirements.pay_to,
            expected_amount=requirements.amount_base_units,
            expected_token_mint=requirements.asset,
        )


@dataclass
class SimulationResult:
    success: bool
    error: Optional[str] = None
    recipient_verified: bool = False
    amount_verified: bool = False
    token_mint_verified: bool = False
    estimated_fee: int = 0
    logs: List[str] = field(default_factory=list)
    transfer: Optional[ParsedTransfer] = None


def find_payment_transfer(
    transfers: List[ParsedTransfer], recipient: str
) -> Optional[ParsedTransfer]:
    """First transfer whose destination is ``recipient``."""
    return next((t for t in transfers if t.destination == recipient), None)


def verify_transfers(
    transfers: List[ParsedTransfer], requirements: SimulationRequirements
) -> SimulationResult:
    """Match parsed transfers against requirements: recipient, then amount, then mint."""
    if not transfers:
        return SimulationResult(
            success=False,
            error="No SPL Transfer/TransferChecked instructions found in transaction",
        )

    match = find_payment_transfer(transfers, requirements.expected_recipient)
    recipient_verified = match is not None
    # Amount and mint are judged on the first transfer when none pays the recipient.
    candidate = match or transfers[0]
    amount_verified = candidate.amount >= requirements.expected_amount
    mint_verified = candidate.mint == requirements.expected_token_mint

    result = SimulationResult(
        success=False,
        recipient_verified=recipient_verified,
        amount_verified=amount_verified,
        token_mint_verified=mint_verified,
        transfer=match,
    )
    if not recipient_verified:
        result.error = (
            f"Transaction does not transfer to expected recipient {requirements.expected_recipient}"
        )
    elif not amount_verified:
        result.error = (
            f"Transfer amount {candidate.amount} does not meet required {requirements.expected_amount}"
        )
    elif not mint_verified:
        result.error = (
            f"Transfer mint {candidate.mint} does not match expected {requirements.expected_token_mint}"
        )
    else:
        result.success = True
    return result


async def simulate_and_verify(
    ledger: LedgerReader,
    tx_base64: str,
    requirements: SimulationRequirements,
    timeout: float = DEFAULT_SIMULATION_TIMEOUT_SECONDS,
) -> SimulationResult:
    """Parse, verify against ``requirements``, then dry-run on the ledger.

    Never raises. A failure names the dimension that failed.
    """
    try:
        transfers = parse_transfer_instructions(tx_base64)
    except TransactionParseError as e:
        return SimulationResult(success=False, error=f"Malformed transaction: {e.message}")

    verified = verify_transfers(transfers, requirements)
    if not verified.success:
        return verified

    try:
        value = await asyncio.wait_for(
            ledger.simulate_transaction(tx_base64, commitment="confirmed"),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        verified.success = False
        verified.error = f"Simulation RPC error: timed out after {timeout}s"
        return verified
    except Exception as e:
        logger.warning("Simulation RPC call failed: %s", e)
        verified.success = False
        verified.error = f"Simulation RPC error: {e}"
        return verified

    value = value or {}
    verified.logs = list(value.get("logs") or [])
    if value.get("err"):
        verified.success = False
        verified.error = f"Simulation failed: {json.dumps(value['err'], default=str)}"
        return verified

    units = value.get("unitsConsumed")
    verified.estimated_fee = int(units) if units is not None else DEFAULT_UNITS_CONSUMED
    return verified


__all__ = [
    "SimulationRequirements",
    "SimulationResult",
    "find_payment_transfer",
    "simulate_and_verify",
    "verify_transfers",
]
