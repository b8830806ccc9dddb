"""Solana integration: JSON-RPC client and the ledger read interface."""
from .client import (
    LedgerReader,
    SolanaClient,
    SolanaConfig,
    SolanaRPCError,
    SolanaTransactionError,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)

__all__ = [
    "LedgerReader",
    "SolanaClient",
    "SolanaConfig",
    "SolanaRPCError",
    "SolanaTransactionError",
    "TOKEN_2022_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
]
