"""Solana JSON-RPC client and the ledger read interface the governance layer consumes."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

# SPL token programs
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"

# Solana mainnet token mint addresses
SOLANA_USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SOLANA_DEVNET_USDC_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"

LAMPORTS_PER_SOL = 1_000_000_000


@runtime_checkable
class LedgerReader(Protocol):
    """Read-only ledger capabilities used by governance checks.

    Each call takes a commitment level and returns the RPC ``value`` payload.
    Implementations raise on transport or RPC failure; callers decide whether
    that fails open or closed.
    """

    async def get_account_info(
        self, address: str, encoding: str = "jsonParsed", commitment: Optional[str] = None
    ) -> Optional[dict[str, Any]]: ...

    async def is_blockhash_valid(self, blockhash: str, commitment: str = "processed") -> bool: ...

    async def get_balance(self, address: str, commitment: Optional[str] = None) -> int: ...

    async def simulate_transaction(
        self, tx_base64: str, commitment: str = "confirmed"
    ) -> dict[str, Any]: ...


@dataclass
class SolanaConfig:
    """Solana connection configuration."""
    rpc_url: str
    commitment: str = "confirmed"
    timeout: float = 30.0


def get_solana_config() -> SolanaConfig:
    """Build Solana config from environment variables."""
    return SolanaConfig(
        rpc_url=os.getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com"),
    )


class SolanaClient:
    """Async Solana JSON-RPC client.

    Uses raw httpx instead of solana-py to minimize dependencies.
    All Solana RPC methods are called via JSON-RPC 2.0.
    """

    def __init__(
        self,
        config: SolanaConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or get_solana_config()
        self._client = http_client or httpx.AsyncClient(timeout=self.config.timeout)
        self._request_id = 0

    async def _rpc(self, method: str, params: list[Any] | None = None) -> Any:
        """Make a JSON-RPC call to Solana."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        resp = await self._client.post(self.config.rpc_url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if "error" in data:
            raise SolanaRPCError(data["error"].get("message", "Unknown RPC error"), data["error"])
        return data.get("result")

    async def get_account_info(
        self, address: str, encoding: str = "jsonParsed", commitment: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Fetch an account. Returns None if it does not exist."""
        result = await self._rpc(
            "getAccountInfo",
            [address, {"encoding": encoding, "commitment": commitment or self.config.commitment}],
        )
        return (result or {}).get("value")

    async def is_blockhash_valid(self, blockhash: str, commitment: str = "processed") -> bool:
        result = await self._rpc("isBlockhashValid", [blockhash, {"commitment": commitment}])
        return bool(result["value"])

    async def get_balance(self, address: str, commitment: Optional[str] = None) -> int:
        """Get SOL balance in lamports."""
        result = await self._rpc(
            "getBalance", [address, {"commitment": commitment or self.config.commitment}]
        )
        return int(result["value"])

    async def simulate_transaction(
        self, tx_base64: str, commitment: str = "confirmed"
    ) -> dict[str, Any]:
        """Dry-run a transaction. Returns ``{err, logs, unitsConsumed, ...}``."""
        result = await self._rpc(
            "simulateTransaction",
            [
                tx_base64,
                {"encoding": "base64", "commitment": commitment, "sigVerify": False},
            ],
        )
        return result["value"]

    async def send_raw_transaction(self, signed_tx_base64: str) -> str:
        """Send a signed transaction. Returns transaction signature."""
        result = await self._rpc(
            "sendTransaction",
            [
                signed_tx_base64,
                {"encoding": "base64", "skipPreflight": False},
            ],
        )
        logger.info("Solana tx sent: %s", result)
        return result

    async def confirm_transaction(
        self, signature: str, commitment: str | None = None
    ) -> bool:
        """Confirm a transaction has reached the desired commitment level."""
        result = await self._rpc(
            "getSignatureStatuses", [[signature]]
        )
        statuses = result.get("value", [])
        if not statuses or statuses[0] is None:
            return False
        status = statuses[0]
        if status.get("err"):
            raise SolanaTransactionError(f"Transaction failed: {status['err']}", signature)
        target = commitment or self.config.commitment
        # confirmed and finalized both satisfy "confirmed"
        confirmation = status.get("confirmationStatus", "")
        if target == "finalized":
            return confirmation == "finalized"
        return confirmation in ("confirmed", "finalized")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


class SolanaRPCError(Exception):
    """Solana RPC error."""
    def __init__(self, message: str, error_data: dict[str, Any] | None = None):
        super().__init__(message)
        self.error_data = error_data or {}


class SolanaTransactionError(Exception):
    """Solana transaction execution error."""
    def __init__(self, message: str, signature: str | None = None):
        super().__init__(message)
        self.signature = signature


__all__ = [
    "LAMPORTS_PER_SOL",
    "LedgerReader",
    "SOLANA_DEVNET_USDC_MINT",
    "SOLANA_USDC_MINT",
    "SolanaClient",
    "SolanaConfig",
    "SolanaRPCError",
    "SolanaTransactionError",
    "TOKEN_2022_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
    "get_solana_config",
]
