"""Blockhash freshness check ahead of submission.

Transactions built by an agent can go stale before the facilitator sees them.
Rejecting an expired blockhash early saves a doomed submission. The check
fails open: submission itself rejects a truly expired transaction.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ..config import DEFAULT_BLOCKHASH_MAX_AGE_SECONDS
from ..solana.client import LedgerReader

logger = logging.getLogger(__name__)

DEFAULT_BLOCKHASH_TIMEOUT_SECONDS = 5.0

EXPIRED_REASON = (
    "Transaction blockhash expired. Agent must rebuild the transaction with a fresh blockhash."
)
FAIL_OPEN_REASON = "Blockhash validation RPC call failed (fail-open: allowing)"


@dataclass(frozen=True)
class BlockhashValidationResult:
    is_valid: bool
    max_age: int
    reason: Optional[str] = None


async def validate_blockhash_freshness(
    ledger: LedgerReader,
    blockhash: str,
    max_age_seconds: int = DEFAULT_BLOCKHASH_MAX_AGE_SECONDS,
    timeout: float = DEFAULT_BLOCKHASH_TIMEOUT_SECONDS,
) -> BlockhashValidationResult:
    try:
        valid = await asyncio.wait_for(
            ledger.is_blockhash_valid(blockhash, commitment="processed"),
            timeout=timeout,
        )
    except Exception as e:
        # asyncio.TimeoutError included
        logger.warning("Blockhash validation failed open for %s: %r", blockhash, e)
        return BlockhashValidationResult(is_valid=True, max_age=max_age_seconds, reason=FAIL_OPEN_REASON)

    if not valid:
        return BlockhashValidationResult(is_valid=False, max_age=max_age_seconds, reason=EXPIRED_REASON)
    return BlockhashValidationResult(is_valid=True, max_age=max_age_seconds)


__all__ = [
    "BlockhashValidationResult",
    "EXPIRED_REASON",
    "FAIL_OPEN_REASON",
    "validate_blockhash_freshness",
]
