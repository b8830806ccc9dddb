"""
Sanctions screening against a static SDN blocklist.

The blocklist is a JSON file holding an array of base58 addresses. It is
loaded eagerly at construction and can be hot-reloaded with ``update_list``;
the swap is atomic and a failed reload keeps the previous list.

Screening with no list ever loaded:
- fail-closed (default): ``error``, settlement must be blocked
- fail-open: ``skip``, settlement proceeds with a logged warning
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from os import PathLike
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ..exceptions import SanctionsListError

logger = logging.getLogger(__name__)

PROVIDER_NAME = "static-sdn"
MATCHED_LIST = "SDN"

SanctionsSource = Union[str, PathLike]


class ScreeningStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIP = "skip"


@dataclass
class SanctionsScreeningResult:
    """Result of screening a batch of addresses."""

    status: ScreeningStatus
    screened_addresses: List[str] = field(default_factory=list)
    matched_address: Optional[str] = None
    matched_list: Optional[str] = None
    error_detail: Optional[str] = None

    @property
    def should_block(self) -> bool:
        return self.status in (ScreeningStatus.FAIL, ScreeningStatus.ERROR)


@dataclass
class AddressScreening:
    """Single-address screening result in compliance-provider form."""

    blocked: bool
    source: str = PROVIDER_NAME
    match_type: Optional[str] = None
    reason: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def load_blocklist(source: SanctionsSource) -> frozenset[str]:
    """Read a JSON array of addresses. Empty and non-string entries are ignored."""
    path = Path(source)
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise SanctionsListError(
            f"Cannot load sanctions blocklist from {path}: {e}", source=str(path)
        ) from e

    if not isinstance(document, list):
        raise SanctionsListError(
            "Sanctions blocklist must be a JSON array of addresses", source=str(path)
        )
    return frozenset(entry for entry in document if isinstance(entry, str) and entry)


class SanctionsScreener:
    """Screens payer and recipient addresses against the SDN blocklist.

    Args:
        source: Path to the JSON blocklist, loaded immediately if given.
        fail_closed: Whether an unloaded list blocks settlement.

    Raises:
        SanctionsListError: If ``source`` cannot be loaded in fail-closed mode.
    """

    provider_name = PROVIDER_NAME

    def __init__(self, source: Optional[SanctionsSource] = None, fail_closed: bool = True):
        self.fail_closed = fail_closed
        self._blocklist: frozenset[str] = frozenset()
        self._last_updated: Optional[datetime] = None
        self._lock = threading.Lock()

        if source is not None:
            try:
                self.update_list(source)
            except SanctionsListError:
                if fail_closed:
                    raise
                logger.warning(
                    "Sanctions blocklist unavailable at %s; screening disabled (fail-open)",
                    source,
                )

    def update_list(self, source: SanctionsSource) -> None:
        """Replace the blocklist with the contents of ``source``.

        Raises:
            SanctionsListError: The file is missing or malformed. The current
                list stays in effect.
        """
        addresses = load_blocklist(source)
        with self._lock:
            self._blocklist = addresses
            self._last_updated = datetime.now(timezone.utc)
        logger.info("Loaded sanctions blocklist: %d addresses from %s", len(addresses), source)

    def screen(self, addresses: Iterable[str]) -> SanctionsScreeningResult:
        """Screen ``addresses`` in order, stopping at the first match."""
        screened = [a for a in addresses if a]
        with self._lock:
            blocklist = self._blocklist
            loaded = self._last_updated is not None

        if not loaded:
            if self.fail_closed:
                return SanctionsScreeningResult(
                    status=ScreeningStatus.ERROR,
                    screened_addresses=screened,
                    error_detail="Sanctions blocklist not loaded (fail-closed mode)",
                )
            logger.warning("Sanctions screening skipped: blocklist not loaded (fail-open mode)")
            return SanctionsScreeningResult(
                status=ScreeningStatus.SKIP,
                screened_addresses=screened,
                error_detail="Sanctions blocklist not loaded (fail-open mode)",
            )

        for address in screened:
            if address in blocklist:
                logger.warning("Sanctions match: %s on %s list", address, MATCHED_LIST)
                return SanctionsScreeningResult(
                    status=ScreeningStatus.FAIL,
                    screened_addresses=screened,
                    matched_address=address,
                    matched_list=MATCHED_LIST,
                )

        return SanctionsScreeningResult(status=ScreeningStatus.PASS, screened_addresses=screened)

    def screen_address(self, address: str) -> AddressScreening:
        result = self.screen([address])
        if result.status == ScreeningStatus.FAIL:
            return AddressScreening(
                blocked=True,
                match_type="exact",
                reason=f"Address {address} found on {MATCHED_LIST} blocklist",
            )
        if result.status == ScreeningStatus.ERROR:
            return AddressScreening(blocked=True, reason=result.error_detail)
        return AddressScreening(blocked=False, reason=result.error_detail)

    def last_updated(self) -> Optional[datetime]:
        return self._last_updated

    def list_size(self) -> int:
        return len(self._blocklist)

    def destroy(self) -> None:
        with self._lock:
            self._blocklist = frozenset()
            self._last_updated = None


__all__ = [
    "AddressScreening",
    "SanctionsScreener",
    "SanctionsScreeningResult",
    "ScreeningStatus",
    "load_blocklist",
]
