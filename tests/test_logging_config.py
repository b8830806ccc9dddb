"""Tests for structured logging and error serialization."""

import json
import logging

from x402_facilitator.exceptions import SanctionsListError, TransactionParseError
from x402_facilitator.logging_config import (
    LogContext,
    RequestContextFilter,
    StructuredFormatter,
    generate_request_id,
    request_id_var,
)


def make_record(msg="hello %s", args=("world",), **extra):
    record = logging.LogRecord("x402_facilitator.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredLogging:
    def test_formatter_emits_json_with_context(self):
        record = make_record(audit={"status": "success"})
        with LogContext(request_id="req_abc", network="solana:devnet"):
            RequestContextFilter().filter(record)

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["request_id"] == "req_abc"
        assert data["network"] == "solana:devnet"
        assert data["audit"] == {"status": "success"}
        assert "payer" not in data

    def test_log_context_restores_previous_values(self):
        with LogContext(request_id="outer"):
            with LogContext(request_id="inner"):
                assert request_id_var.get() == "inner"
            assert request_id_var.get() == "outer"
        assert request_id_var.get() is None

    def test_request_ids_are_unique(self):
        ids = {generate_request_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("req_") for i in ids)


class TestErrors:
    def test_transaction_parse_error_carries_offset(self):
        error = TransactionParseError("Unexpected end", offset=65)
        assert error.offset == 65
        assert error.to_dict() == {
            "error": "INVALID_TRANSACTION",
            "message": "Unexpected end",
            "details": {"offset": 65},
        }

    def test_sanctions_list_error(self):
        error = SanctionsListError("cannot load", source="/etc/sdn.json")
        assert error.error_code == "SANCTIONS_LIST_ERROR"
        assert error.details["source"] == "/etc/sdn.json"
