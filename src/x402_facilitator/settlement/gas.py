"""Fee payer balance monitoring."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..solana.client import LAMPORTS_PER_SOL, LedgerReader

logger = logging.getLogger(__name__)

ESTIMATED_FEE_PER_SETTLEMENT = 10_000
MINIMUM_SETTLEMENT_FEE = 5_000
DEFAULT_BALANCE_TIMEOUT_SECONDS = 5.0


@dataclass
class GasManagerStatus:
    fee_payer_address: str
    balance_lamports: int
    balance_sol: Decimal
    alert_threshold_sol: float
    is_healthy: bool
    estimated_settlements_remaining: int
    error: Optional[str] = None


class GasManager:
    """Watches the fee payer's SOL balance.

    ``check_balance`` is advisory and only warns. The gate before submission
    (``settlement_balance`` then ``covers_settlement``, or
    ``can_afford_settlement`` in one call) fails open on RPC errors so an
    unreachable balance endpoint cannot deny correct payments.
    """

    def __init__(
        self,
        ledger: LedgerReader,
        fee_payer_address: str,
        alert_threshold_sol: float = 0.1,
        timeout: float = DEFAULT_BALANCE_TIMEOUT_SECONDS,
    ):
        self.ledger = ledger
        self.fee_payer_address = fee_payer_address
        self.alert_threshold_sol = alert_threshold_sol
        self.timeout = timeout

    async def _balance(self) -> int:
        return await asyncio.wait_for(
            self.ledger.get_balance(self.fee_payer_address, commitment="confirmed"),
            timeout=self.timeout,
        )

    async def check_balance(self) -> GasManagerStatus:
        try:
            lamports = await self._balance()
        except Exception as e:
            logger.error("Fee payer balance check failed for %s: %r", self.fee_payer_address, e)
            return GasManagerStatus(
                fee_payer_address=self.fee_payer_address,
                balance_lamports=0,
                balance_sol=Decimal(0),
                alert_threshold_sol=self.alert_threshold_sol,
                is_healthy=False,
                estimated_settlements_remaining=0,
                error=str(e) or type(e).__name__,
            )

        balance_sol = Decimal(lamports) / Decimal(LAMPORTS_PER_SOL)
        is_healthy = balance_sol >= Decimal(str(self.alert_threshold_sol))
        if not is_healthy:
            logger.warning(
                "Fee payer balance low: %s SOL (threshold: %s SOL)",
                f"{balance_sol:.6f}",
                self.alert_threshold_sol,
            )

        return GasManagerStatus(
            fee_payer_address=self.fee_payer_address,
            balance_lamports=lamports,
            balance_sol=balance_sol,
            alert_threshold_sol=self.alert_threshold_sol,
            is_healthy=is_healthy,
            estimated_settlements_remaining=lamports // ESTIMATED_FEE_PER_SETTLEMENT,
        )

    async def settlement_balance(self) -> Optional[int]:
        """Fee payer balance in lamports, or None when it cannot be read."""
        try:
            return await self._balance()
        except Exception as e:
            logger.warning("Fee payer balance unavailable, allowing settlement: %r", e)
            return None

    @staticmethod
    def covers_settlement(lamports: Optional[int]) -> bool:
        return lamports is None or lamports > MINIMUM_SETTLEMENT_FEE

    async def can_afford_settlement(self) -> bool:
        return self.covers_settlement(await self.settlement_balance())


__all__ = [
    "ESTIMATED_FEE_PER_SETTLEMENT",
    "GasManager",
    "GasManagerStatus",
    "MINIMUM_SETTLEMENT_FEE",
]
