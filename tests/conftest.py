"""
Pytest configuration for x402-facilitator tests.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Keep a developer's .env from changing test defaults
os.environ.setdefault("SOLANA_RPC_URL", "https://api.devnet.solana.com")

from solana_helpers import FakeLedger, build_transfer_tx, make_payload, make_requirements  # noqa: E402


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def ledger():
    """Fake ledger with an active 5 USDC delegation on the source account."""
    return FakeLedger()


@pytest.fixture
def requirements():
    """1 USDC exact payment on devnet."""
    return make_requirements()


@pytest.fixture
def transfer_tx():
    """Base64 transaction paying the requirements exactly."""
    return build_transfer_tx()


@pytest.fixture
def payload(transfer_tx):
    return make_payload(transfer_tx)
