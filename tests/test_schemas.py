"""Tests for x402 wire models."""

import json

import pytest
from pydantic import ValidationError

from solana_helpers import MERCHANT_ATA, MINT, make_requirements
from x402_facilitator.schemas import MAX_TIMEOUT_SECONDS_LIMIT, PaymentRequirements


def requirements_json(timeout: str) -> str:
    body = json.dumps(
        {"scheme": "exact", "network": "solana:devnet", "asset": MINT, "amount": "1", "payTo": MERCHANT_ATA}
    )
    return body[:-1] + f', "maxTimeoutSeconds": {timeout}}}'


class TestPaymentRequirements:
    def test_aliases_and_base_units(self):
        requirements = make_requirements(amount="2500")
        assert requirements.pay_to == MERCHANT_ATA
        assert requirements.amount_base_units == 2500
        assert requirements.max_timeout_seconds == 60

    @pytest.mark.parametrize("timeout", ["1e400", "Infinity", "NaN"])
    def test_non_finite_timeout_rejected(self, timeout):
        with pytest.raises(ValidationError):
            PaymentRequirements.model_validate_json(requirements_json(timeout))

    def test_timeout_above_limit_rejected(self):
        with pytest.raises(ValidationError):
            make_requirements(maxTimeoutSeconds=MAX_TIMEOUT_SECONDS_LIMIT + 1)

    def test_timeout_at_limit_accepted(self):
        requirements = make_requirements(maxTimeoutSeconds=MAX_TIMEOUT_SECONDS_LIMIT)
        assert requirements.max_timeout_seconds == MAX_TIMEOUT_SECONDS_LIMIT

    def test_non_numeric_amount_rejected(self):
        with pytest.raises(ValidationError):
            make_requirements(amount="1.5")
