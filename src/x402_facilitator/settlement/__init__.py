"""Settlement-side checks: transaction decoding, simulation, blockhash and fee payer."""
from .blockhash import BlockhashValidationResult, validate_blockhash_freshness
from .gas import GasManager, GasManagerStatus
from .simulate import SimulationRequirements, SimulationResult, simulate_and_verify
from .transaction import (
    DecodedTransaction,
    ParsedTransfer,
    decode_transaction,
    decode_transaction_base64,
    parse_transfer_instructions,
)

__all__ = [
    "BlockhashValidationResult",
    "DecodedTransaction",
    "GasManager",
    "GasManagerStatus",
    "ParsedTransfer",
    "SimulationRequirements",
    "SimulationResult",
    "decode_transaction",
    "decode_transaction_base64",
    "parse_transfer_instructions",
    "simulate_and_verify",
    "validate_blockhash_freshness",
]
