"""Tests for the Solana JSON-RPC client."""

import json

import httpx
import pytest

from x402_facilitator.solana.client import (
    LedgerReader,
    SolanaClient,
    SolanaConfig,
    SolanaRPCError,
    SolanaTransactionError,
)

RPC_URL = "https://rpc.test"


def make_client(results: dict, requests: list) -> SolanaClient:
    """Client whose transport answers each method from ``results``."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        answer = results[body["method"]]
        if isinstance(answer, dict) and "error" in answer:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **answer})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": answer})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SolanaClient(SolanaConfig(rpc_url=RPC_URL), http_client=http_client)


class TestSolanaClient:
    def test_satisfies_ledger_reader(self):
        client = SolanaClient(SolanaConfig(rpc_url=RPC_URL), http_client=httpx.AsyncClient())
        assert isinstance(client, LedgerReader)

    @pytest.mark.asyncio
    async def test_get_account_info_returns_value(self):
        requests = []
        client = make_client({"getAccountInfo": {"context": {"slot": 1}, "value": {"owner": "x"}}}, requests)

        value = await client.get_account_info("Addr", encoding="jsonParsed")

        assert value == {"owner": "x"}
        assert requests[0]["params"] == ["Addr", {"encoding": "jsonParsed", "commitment": "confirmed"}]

    @pytest.mark.asyncio
    async def test_missing_account_is_none(self):
        client = make_client({"getAccountInfo": {"context": {"slot": 1}, "value": None}}, [])
        assert await client.get_account_info("Addr") is None

    @pytest.mark.asyncio
    async def test_is_blockhash_valid_uses_processed(self):
        requests = []
        client = make_client({"isBlockhashValid": {"context": {"slot": 1}, "value": False}}, requests)

        assert await client.is_blockhash_valid("Hash") is False
        assert requests[0]["params"] == ["Hash", {"commitment": "processed"}]

    @pytest.mark.asyncio
    async def test_get_balance(self):
        client = make_client({"getBalance": {"context": {"slot": 1}, "value": 12345}}, [])
        assert await client.get_balance("Addr") == 12345

    @pytest.mark.asyncio
    async def test_simulate_transaction(self):
        requests = []
        value = {"err": None, "logs": [], "unitsConsumed": 300}
        client = make_client({"simulateTransaction": {"context": {"slot": 1}, "value": value}}, requests)

        assert await client.simulate_transaction("dHg=") == value
        options = requests[0]["params"][1]
        assert options["encoding"] == "base64"
        assert options["commitment"] == "confirmed"

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self):
        client = make_client({"sendTransaction": {"error": {"code": -32002, "message": "Blockhash not found"}}}, [])
        with pytest.raises(SolanaRPCError, match="Blockhash not found") as exc_info:
            await client.send_raw_transaction("dHg=")
        assert exc_info.value.error_data["code"] == -32002

    @pytest.mark.asyncio
    async def test_confirm_transaction(self):
        statuses = {"context": {"slot": 1}, "value": [{"confirmationStatus": "finalized", "err": None}]}
        client = make_client({"getSignatureStatuses": statuses}, [])
        assert await client.confirm_transaction("Sig", "confirmed")
        assert await client.confirm_transaction("Sig", "finalized")

    @pytest.mark.asyncio
    async def test_confirm_unknown_signature(self):
        client = make_client({"getSignatureStatuses": {"context": {"slot": 1}, "value": [None]}}, [])
        assert not await client.confirm_transaction("Sig")

    @pytest.mark.asyncio
    async def test_confirm_failed_transaction_raises(self):
        statuses = {"context": {"slot": 1}, "value": [{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, 1]}}]}
        client = make_client({"getSignatureStatuses": statuses}, [])
        with pytest.raises(SolanaTransactionError):
            await client.confirm_transaction("Sig")

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        def handler(request):
            return httpx.Response(503)

        client = SolanaClient(
            SolanaConfig(rpc_url=RPC_URL),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await client.get_balance("Addr")
        await client.close()
