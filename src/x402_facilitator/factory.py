"""Assemble a governed facilitator from settings."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .audit import AuditLogger, LoggingAuditLogger
from .config import FacilitatorSettings
from .facilitator import Facilitator
from .governance.orchestrator import GovernanceOrchestrator
from .settlement.gas import GasManager
from .solana.client import SolanaClient, SolanaConfig
from .solana.scheme import SolanaExactScheme, TransactionSigner

logger = logging.getLogger(__name__)


@dataclass
class FacilitatorApp:
    facilitator: Facilitator
    governance: GovernanceOrchestrator
    client: SolanaClient
    gas_manager: Optional[GasManager] = None

    async def close(self) -> None:
        """Release governance state and close the RPC client."""
        self.governance.destroy()
        await self.client.close()


def create_facilitator(
    settings: FacilitatorSettings,
    *,
    signer: Optional[TransactionSigner] = None,
    client: Optional[SolanaClient] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> FacilitatorApp:
    """Build the Solana exact scheme, the engine and its governance hooks.

    Raises:
        ConfigurationError: Governance flags are inconsistent.
        SanctionsListError: Fail-closed sanctions screening has no usable list.
    """
    governance_config = settings.governance
    client = client or SolanaClient(
        SolanaConfig(rpc_url=settings.solana_rpc_url, timeout=settings.rpc_timeout_seconds)
    )

    fee_payer = signer.address if signer is not None else settings.fee_payer_address
    gas_manager = None
    if fee_payer:
        gas_manager = GasManager(
            client,
            fee_payer,
            alert_threshold_sol=governance_config.gas_alert_threshold_sol,
            timeout=settings.rpc_timeout_seconds,
        )

    scheme = SolanaExactScheme(
        client,
        network=settings.solana_network,
        signer=signer,
        gas_manager=gas_manager,
        simulate_before_submit=governance_config.simulate_before_submit,
        rpc_timeout=settings.rpc_timeout_seconds,
    )
    facilitator = Facilitator(scheme)
    governance = GovernanceOrchestrator(
        governance_config,
        ledger=client,
        audit_logger=audit_logger or LoggingAuditLogger(),
        rpc_timeout=settings.rpc_timeout_seconds,
    ).wire(facilitator)

    logger.info(
        "Facilitator ready: network=%s fee_payer=%s pipeline=%s",
        settings.solana_network,
        fee_payer or "-",
        ",".join(name for name, _ in governance.settle_pipeline),
    )
    return FacilitatorApp(
        facilitator=facilitator, governance=governance, client=client, gas_manager=gas_manager
    )


__all__ = ["FacilitatorApp", "create_facilitator"]
