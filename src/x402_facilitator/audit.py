"""
Structured audit trail for verify and settle decisions.

One entry is written per attempt, whatever the outcome. Entries are
write-once; sinks decide where they go:

- ConsoleAuditLogger: one JSON line per entry, for log aggregators
- LoggingAuditLogger: routed through the ``x402_facilitator.audit`` logger
- InMemoryAuditLogger: captured in a list, for tests

Audit writes never fail the governed operation. ``safe_log`` reports sink
errors through ``logging`` and swallows them.
"""
from __future__ import annotations

import json
import logging
import sys
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, TextIO, runtime_checkable

logger = logging.getLogger(__name__)

SKIP = "skip"


class AuditAction(str, Enum):
    VERIFY = "verify"
    SETTLE = "settle"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class GovernanceRecord:
    """Per-attempt outcome of each governance step. Steps not run stay ``skip``.

    ``fee_payer_lamports`` is the balance read by the gas gate, if it ran. It
    goes into the audit entry, not the governance result.
    """

    ofac: str = SKIP
    delegation: str = SKIP
    budget: str = SKIP
    circuit_breaker: str = SKIP
    blockhash: str = SKIP
    simulation: str = SKIP
    failed_check: Optional[str] = None
    fee_payer_lamports: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        del data["fee_payer_lamports"]
        return data


@dataclass(frozen=True)
class AuditLogEntry:
    """A single audit record."""

    action: AuditAction
    status: AuditStatus
    payer_address: str
    recipient_address: str
    amount: str
    token_mint: str
    network: str
    governance_result: Dict[str, Any]
    latency_ms: float
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    tx_signature: Optional[str] = None
    simulation_passed: Optional[bool] = None
    blockhash_valid: Optional[bool] = None
    gas_payer_balance: Optional[str] = None
    agent_id: Optional[str] = None
    error_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage/serialization."""
        data = asdict(self)
        data["action"] = self.action.value
        data["status"] = self.status.value
        return {k: v for k, v in data.items() if v is not None}


@runtime_checkable
class AuditLogger(Protocol):
    def log(self, entry: AuditLogEntry) -> None: ...


class ConsoleAuditLogger:
    """Writes each entry as one JSON line."""

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream
        self._lock = threading.Lock()

    def log(self, entry: AuditLogEntry) -> None:
        line = json.dumps(entry.to_dict(), default=str)
        stream = self._stream or sys.stdout
        with self._lock:
            stream.write(line + "\n")
            stream.flush()


class LoggingAuditLogger:
    """Emits entries as INFO records with the entry fields in ``extra``."""

    def __init__(self, audit_logger: Optional[logging.Logger] = None):
        self._logger = audit_logger or logger

    def log(self, entry: AuditLogEntry) -> None:
        level = logging.INFO if entry.status == AuditStatus.SUCCESS else logging.WARNING
        self._logger.log(
            level,
            "audit %s %s payer=%s amount=%s",
            entry.action.value,
            entry.status.value,
            entry.payer_address,
            entry.amount,
            extra={"audit": entry.to_dict()},
        )


class InMemoryAuditLogger:
    """Thread-safe, append-only capture of audit entries."""

    def __init__(self) -> None:
        self._entries: List[AuditLogEntry] = []
        self._lock = threading.Lock()

    def log(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> List[AuditLogEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def safe_log(audit_logger: Optional[AuditLogger], entry: AuditLogEntry) -> None:
    """Write ``entry`` to ``audit_logger``; sink failures are logged, not raised."""
    if audit_logger is None:
        return
    try:
        audit_logger.log(entry)
    except Exception:
        logger.exception(
            "Audit sink %s failed for %s %s entry",
            type(audit_logger).__name__,
            entry.action.value,
            entry.status.value,
        )


__all__ = [
    "AuditAction",
    "AuditLogEntry",
    "AuditLogger",
    "AuditStatus",
    "ConsoleAuditLogger",
    "GovernanceRecord",
    "InMemoryAuditLogger",
    "LoggingAuditLogger",
    "safe_log",
]
