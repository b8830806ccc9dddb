"""On-chain delegation validation for SPL token accounts.

Queries the source token account with ``jsonParsed`` encoding so that Token
Program and Token-2022 accounts are read the same way. The owning program is
taken from the account metadata, never assumed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..solana.client import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID, LedgerReader

logger = logging.getLogger(__name__)

DEFAULT_DELEGATION_TIMEOUT_SECONDS = 10.0

_PARSED_PROGRAM_NAMES = {
    "spl-token": TOKEN_PROGRAM_ID,
    "spl-token-2022": TOKEN_2022_PROGRAM_ID,
}


class DelegationStatus(str, Enum):
    ACTIVE = "active"
    INSUFFICIENT = "insufficient"
    INACTIVE = "inactive"
    NOT_DELEGATED = "not_delegated"
    ERROR = "error"


@dataclass
class DelegationCheckResult:
    """Classification of a token account's delegation against a payment."""

    status: DelegationStatus
    delegate: Optional[str] = None
    delegated_amount: Optional[int] = None
    required_amount: Optional[int] = None
    owner: Optional[str] = None
    token_mint: Optional[str] = None
    program_id: Optional[str] = None
    error_detail: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == DelegationStatus.ACTIVE

    def describe(self) -> str:
        """Human-readable summary for abort reasons."""
        if self.status == DelegationStatus.INSUFFICIENT:
            return (
                f"Delegation insufficient: delegated {self.delegated_amount}, "
                f"required {self.required_amount}"
            )
        if self.error_detail:
            return f"Delegation {self.status.value}: {self.error_detail}"
        return f"Delegation {self.status.value}"


def _detect_program(account: dict[str, Any]) -> Optional[str]:
    owner = account.get("owner")
    if owner in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
        return owner
    data = account.get("data")
    if isinstance(data, dict):
        return _PARSED_PROGRAM_NAMES.get(data.get("program"))
    return None


def _parse_amount(raw: Any) -> Optional[int]:
    if isinstance(raw, dict):
        raw = raw.get("amount")
    if isinstance(raw, str) and raw.isdigit():
        return int(raw)
    if isinstance(raw, int) and not isinstance(raw, bool) and raw >= 0:
        return raw
    return None


def classify_token_account(
    account: Optional[dict[str, Any]],
    payer: str,
    source_token_account: str,
    amount: int,
    expected_mint: str,
) -> DelegationCheckResult:
    """Classify a ``jsonParsed`` account value. Pure; never raises."""
    if not account:
        return DelegationCheckResult(
            status=DelegationStatus.ERROR,
            error_detail=f"Token account {source_token_account} not found",
        )

    program_id = _detect_program(account)
    if program_id is None:
        return DelegationCheckResult(
            status=DelegationStatus.ERROR,
            error_detail=f"Account owned by unknown program: {account.get('owner')}",
        )

    data = account.get("data")
    parsed = data.get("parsed") if isinstance(data, dict) else None
    if not isinstance(parsed, dict) or parsed.get("type") != "account":
        kind = parsed.get("type") if isinstance(parsed, dict) else None
        return DelegationCheckResult(
            status=DelegationStatus.ERROR,
            program_id=program_id,
            error_detail=f"Unexpected account type: {kind or 'unknown'}",
        )

    info = parsed.get("info") or {}
    owner = info.get("owner")
    token_mint = info.get("mint")
    common = dict(owner=owner, token_mint=token_mint, program_id=program_id)

    if token_mint != expected_mint:
        return DelegationCheckResult(
            status=DelegationStatus.ERROR,
            error_detail=f"Token mint mismatch: expected {expected_mint}, got {token_mint}",
            **common,
        )

    delegate = info.get("delegate")
    if not delegate:
        return DelegationCheckResult(
            status=DelegationStatus.NOT_DELEGATED,
            error_detail="Token account has no delegate",
            **common,
        )
    if delegate != payer:
        return DelegationCheckResult(
            status=DelegationStatus.NOT_DELEGATED,
            delegate=delegate,
            error_detail=f"Delegate {delegate} does not match payer {payer}",
            **common,
        )

    delegated_amount = _parse_amount(info.get("delegatedAmount"))
    if delegated_amount is None:
        delegated_amount = 0

    if info.get("state") == "frozen":
        return DelegationCheckResult(
            status=DelegationStatus.INACTIVE,
            delegate=delegate,
            delegated_amount=delegated_amount,
            required_amount=amount,
            error_detail="Token account is frozen",
            **common,
        )

    if delegated_amount < amount:
        return DelegationCheckResult(
            status=DelegationStatus.INSUFFICIENT,
            delegate=delegate,
            delegated_amount=delegated_amount,
            required_amount=amount,
            **common,
        )

    return DelegationCheckResult(
        status=DelegationStatus.ACTIVE,
        delegate=delegate,
        delegated_amount=delegated_amount,
        required_amount=amount,
        **common,
    )


async def validate_delegation(
    ledger: LedgerReader,
    payer: str,
    source_token_account: str,
    amount: int,
    expected_mint: str,
    timeout: float = DEFAULT_DELEGATION_TIMEOUT_SECONDS,
) -> DelegationCheckResult:
    """Check that ``payer`` is the active delegate of ``source_token_account``
    for at least ``amount`` base units of ``expected_mint``.

    Never raises; ledger failures and timeouts return ``ERROR``.
    """
    try:
        account = await asyncio.wait_for(
            ledger.get_account_info(source_token_account, encoding="jsonParsed"),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Delegation lookup timed out for %s after %.1fs", source_token_account, timeout)
        return DelegationCheckResult(
            status=DelegationStatus.ERROR,
            error_detail=f"Account lookup timed out after {timeout}s",
        )
    except Exception as e:
        logger.warning("Delegation lookup failed for %s: %s", source_token_account, e)
        return DelegationCheckResult(status=DelegationStatus.ERROR, error_detail=str(e))

    return classify_token_account(account, payer, source_token_account, amount, expected_mint)


__all__ = [
    "DelegationCheckResult",
    "DelegationStatus",
    "classify_token_account",
    "validate_delegation",
]
