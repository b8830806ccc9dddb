"""Tests for allowlist, amount-cap and rate-limit checks."""

from x402_facilitator.governance.checks import (
    RateCounter,
    check_amount_cap,
    check_rate_limit,
    check_recipient_allowlist,
    check_token_allowlist,
)


class TestAllowlists:
    def test_empty_allowlist_allows_everything(self):
        assert check_token_allowlist("MintA", None).allowed
        assert check_token_allowlist("MintA", []).allowed
        assert check_recipient_allowlist("Shop", None).allowed

    def test_token_not_listed(self):
        result = check_token_allowlist("MintB", ["MintA"])
        assert not result.allowed
        assert result.reason == "Token MintB is not in the allowlist"

    def test_recipient_listed(self):
        assert check_recipient_allowlist("Shop", ["Other", "Shop"]).allowed

    def test_recipient_not_listed(self):
        result = check_recipient_allowlist("Shop", ["Other"])
        assert not result.allowed
        assert "Shop" in result.reason


class TestAmountCap:
    def test_no_cap(self):
        assert check_amount_cap("999999999999", None).allowed

    def test_amount_equal_to_cap_is_allowed(self):
        assert check_amount_cap("1000000", "1000000").allowed

    def test_one_over_cap_is_rejected(self):
        result = check_amount_cap("1000001", "1000000")
        assert not result.allowed
        assert result.reason == "Amount 1000001 exceeds cap 1000000"

    def test_compares_as_integers_not_strings(self):
        # "9" > "10" lexically
        assert check_amount_cap("9", "10").allowed
        assert not check_amount_cap("100", "99").allowed

    def test_values_beyond_float_precision(self):
        cap = "18446744073709551615"
        assert check_amount_cap("18446744073709551615", cap).allowed
        assert not check_amount_cap("18446744073709551616", cap).allowed

    def test_invalid_amount_is_rejected_not_raised(self):
        for bad in ("-1", "1.5", "abc", "", None, True):
            result = check_amount_cap(bad, "100")
            assert not result.allowed, bad

    def test_invalid_cap_is_rejected(self):
        result = check_amount_cap("1", "ten")
        assert not result.allowed
        assert "Invalid amount cap" in result.reason

    def test_integer_inputs(self):
        assert check_amount_cap(5, 5).allowed
        assert not check_amount_cap(6, 5).allowed


class TestRateLimit:
    def test_below_limit(self):
        assert check_rate_limit(59, 60).allowed

    def test_at_limit_is_rejected(self):
        result = check_rate_limit(60, 60)
        assert not result.allowed
        assert result.reason == "Rate limit exceeded: 60/60 per minute"


class TestRateCounter:
    def test_counts_within_window(self):
        now = [0.0]
        counter = RateCounter(window_seconds=60, clock=lambda: now[0])
        counter.increment()
        now[0] = 30.0
        counter.increment()
        assert counter.count() == 2

        now[0] = 60.0
        assert counter.count() == 1

        now[0] = 90.0
        assert counter.count() == 0

    def test_destroy_clears(self):
        counter = RateCounter()
        counter.increment()
        counter.destroy()
        assert counter.count() == 0
