"""Cumulative spend tracking per delegate and source token account.

The on-chain delegated amount is authoritative. Tracked spend only narrows
the remaining budget further, so a delegation partially revoked outside the
facilitator is honored at the lower on-chain figure.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum


class BudgetStatus(str, Enum):
    WITHIN_CAP = "within_cap"
    AT_CAP = "at_cap"
    OVER_CAP = "over_cap"
    ERROR = "error"


@dataclass(frozen=True)
class BudgetCheckResult:
    status: BudgetStatus
    total_spent: int
    remaining_budget: int
    payment_amount: int
    delegated_amount: int

    @property
    def allowed(self) -> bool:
        return self.status in (BudgetStatus.WITHIN_CAP, BudgetStatus.AT_CAP)


def budget_key(delegate: str, source_token_account: str) -> str:
    return f"{delegate}:{source_token_account}"


class BudgetEnforcer:
    """Thread-safe map of ``"{delegate}:{source_token_account}"`` to spent base units.

    ``record`` must only be called for settlements confirmed on-chain.
    """

    def __init__(self) -> None:
        self._spent: dict[str, int] = {}
        self._lock = threading.Lock()

    def check(self, key: str, payment_amount: int, delegated_amount: int) -> BudgetCheckResult:
        with self._lock:
            spent = self._spent.get(key, 0)

        if payment_amount < 0 or delegated_amount < 0:
            return BudgetCheckResult(
                status=BudgetStatus.ERROR,
                total_spent=spent,
                remaining_budget=0,
                payment_amount=payment_amount,
                delegated_amount=delegated_amount,
            )

        remaining = max(0, delegated_amount - spent)
        if payment_amount < remaining:
            status = BudgetStatus.WITHIN_CAP
        elif payment_amount == remaining:
            status = BudgetStatus.AT_CAP
        else:
            status = BudgetStatus.OVER_CAP

        return BudgetCheckResult(
            status=status,
            total_spent=spent,
            remaining_budget=remaining,
            payment_amount=payment_amount,
            delegated_amount=delegated_amount,
        )

    def record(self, key: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        with self._lock:
            self._spent[key] = self._spent.get(key, 0) + amount

    def reset(self, key: str) -> None:
        with self._lock:
            self._spent.pop(key, None)

    def total_spent(self, key: str) -> int:
        with self._lock:
            return self._spent.get(key, 0)

    def destroy(self) -> None:
        with self._lock:
            self._spent.clear()


__all__ = [
    "BudgetCheckResult",
    "BudgetEnforcer",
    "BudgetStatus",
    "budget_key",
]
