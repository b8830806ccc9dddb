"""x402 "exact" payment scheme for Solana.

The payer sends a partially signed transaction holding an SPL
``TransferChecked`` to ``payTo``. Verification decodes it locally and matches
the transfer against the requirements. Settlement optionally simulates it,
checks the fee payer can cover fees, co-signs as fee payer when a signer is
configured, submits, and waits for confirmation.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from typing import Optional, Protocol, runtime_checkable

import httpx

from ..audit import GovernanceRecord
from ..exceptions import TransactionParseError
from ..schemas import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse
from ..settlement.gas import GasManager
from ..settlement.simulate import (
    SimulationRequirements,
    simulate_and_verify,
    verify_transfers,
)
from ..settlement.transaction import DecodedTransaction, decode_transaction_base64, extract_transfers
from .client import SolanaClient, SolanaRPCError, SolanaTransactionError

logger = logging.getLogger(__name__)

SCHEME_EXACT = "exact"

# CAIP-2 identifiers (genesis hash prefix)
SOLANA_NETWORKS = {
    "mainnet-beta": "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp",
    "devnet": "solana:EtWTRABZaYq6iMfeYKouRu166VU2xqa1",
    "testnet": "solana:4uhcVJyU9pJkvQyS88uRDiswHXSCkY3z",
}


@runtime_checkable
class TransactionSigner(Protocol):
    """Fee payer key held outside this process (keystore, enclave, MPC)."""

    address: str

    async def sign_message(self, message: bytes) -> bytes: ...


class SolanaExactScheme:
    """Verifies and settles x402 "exact" payments on one Solana cluster."""

    scheme = SCHEME_EXACT

    def __init__(
        self,
        client: SolanaClient,
        network: str = "devnet",
        signer: Optional[TransactionSigner] = None,
        gas_manager: Optional[GasManager] = None,
        simulate_before_submit: bool = False,
        confirm_commitment: str = "confirmed",
        confirm_attempts: int = 30,
        confirm_interval_seconds: float = 1.0,
        rpc_timeout: float = 10.0,
    ):
        if network not in SOLANA_NETWORKS:
            raise ValueError(f"Unknown Solana network {network!r}")
        self.client = client
        self.network = network
        self.caip2 = SOLANA_NETWORKS[network]
        self.signer = signer
        self.gas_manager = gas_manager
        self.simulate_before_submit = simulate_before_submit
        self.confirm_commitment = confirm_commitment
        self.confirm_attempts = confirm_attempts
        self.confirm_interval_seconds = confirm_interval_seconds
        self.rpc_timeout = rpc_timeout

    @property
    def fee_payer(self) -> Optional[str]:
        return self.signer.address if self.signer else None

    def supports(self, requirements: PaymentRequirements) -> bool:
        return requirements.scheme == self.scheme and requirements.network in (self.caip2, self.network)

    def _check(self, payload: PaymentPayload, requirements: PaymentRequirements) -> tuple[Optional[DecodedTransaction], VerifyResponse]:
        tx = payload.transaction
        if tx is None:
            return None, VerifyResponse(is_valid=False, invalid_reason="invalid_payload: missing transaction")
        try:
            decoded = decode_transaction_base64(tx)
        except TransactionParseError as e:
            return None, VerifyResponse(is_valid=False, invalid_reason=f"invalid_transaction: {e.message}")

        matched = verify_transfers(
            extract_transfers(decoded), SimulationRequirements.from_payment_requirements(requirements)
        )
        payer = matched.transfer.authority if matched.transfer else None
        if not matched.success:
            return decoded, VerifyResponse(is_valid=False, invalid_reason=f"invalid_transfer: {matched.error}", payer=payer)

        if self.fee_payer:
            if decoded.fee_payer != self.fee_payer:
                return decoded, VerifyResponse(
                    is_valid=False,
                    invalid_reason=f"invalid_fee_payer: expected {self.fee_payer}, got {decoded.fee_payer}",
                    payer=payer,
                )
            if payer == self.fee_payer:
                return decoded, VerifyResponse(
                    is_valid=False,
                    invalid_reason="invalid_transfer: fee payer cannot be the transfer authority",
                    payer=payer,
                )
        return decoded, VerifyResponse(is_valid=True, payer=payer)

    async def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        _, result = self._check(payload, requirements)
        return result

    async def _wait_for_confirmation(self, signature: str) -> bool:
        for attempt in range(self.confirm_attempts):
            if await self.client.confirm_transaction(signature, self.confirm_commitment):
                return True
            if attempt + 1 < self.confirm_attempts:
                await asyncio.sleep(self.confirm_interval_seconds)
        return False

    async def settle(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        record: Optional[GovernanceRecord] = None,
    ) -> SettleResponse:
        network = requirements.network
        decoded, check = self._check(payload, requirements)
        if not check.is_valid:
            return SettleResponse(success=False, network=network, payer=check.payer, error_reason=check.invalid_reason)
        payer = check.payer
        tx = payload.transaction

        if self.simulate_before_submit:
            simulation = await simulate_and_verify(
                self.client,
                tx,
                SimulationRequirements.from_payment_requirements(requirements),
                timeout=self.rpc_timeout,
            )
            if record is not None:
                record.simulation = "pass" if simulation.success else "fail"
            if not simulation.success:
                return SettleResponse(
                    success=False, network=network, payer=payer, error_reason=f"simulation_failed: {simulation.error}"
                )

        if self.gas_manager is not None:
            lamports = await self.gas_manager.settlement_balance()
            if record is not None:
                record.fee_payer_lamports = lamports
            if not self.gas_manager.covers_settlement(lamports):
                return SettleResponse(
                    success=False,
                    network=network,
                    payer=payer,
                    error_reason=f"insufficient_fee_payer_balance: {self.gas_manager.fee_payer_address}",
                )

        if self.signer is not None:
            signature_bytes = await self.signer.sign_message(decoded.message_bytes)
            tx = base64.b64encode(decoded.with_signature(self.signer.address, signature_bytes)).decode("ascii")

        try:
            signature = await self.client.send_raw_transaction(tx)
        except (SolanaRPCError, httpx.HTTPError) as e:
            logger.warning("Transaction submission failed: %s", e)
            return SettleResponse(success=False, network=network, payer=payer, error_reason=f"submission_failed: {e}")

        try:
            confirmed = await self._wait_for_confirmation(signature)
        except SolanaTransactionError as e:
            return SettleResponse(
                success=False, network=network, transaction=signature, payer=payer, error_reason=f"transaction_failed: {e}"
            )
        if not confirmed:
            return SettleResponse(
                success=False,
                network=network,
                transaction=signature,
                payer=payer,
                error_reason=f"confirmation_timeout: {signature} not {self.confirm_commitment}",
            )

        logger.info("x402 Solana payment settled: payer=%s sig=%s", payer, signature)
        return SettleResponse(success=True, network=network, transaction=signature, payer=payer)


__all__ = [
    "SCHEME_EXACT",
    "SOLANA_NETWORKS",
    "SolanaExactScheme",
    "TransactionSigner",
]
