"""
Tests for JSON-RPC receipt lookups.
"""

import json

import httpx
import pytest

from dca_keeper.providers.rpc import JsonRpcReceiptProvider, RpcError, receipt_succeeded


def make_provider(handler):
    return JsonRpcReceiptProvider(
        rpc_url="https://rpc.test",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestReceipts:
    @pytest.mark.asyncio
    async def test_get_receipt(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"status": "0x1"}})

        receipt = await make_provider(handler).get_receipt("0xabc")

        assert receipt == {"status": "0x1"}
        assert captured["body"]["method"] == "eth_getTransactionReceipt"
        assert captured["body"]["params"] == ["0xabc"]

    @pytest.mark.asyncio
    async def test_pending_receipt_is_none(self):
        provider = make_provider(lambda r: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": None}))
        assert await provider.get_receipt("0xabc") is None

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        provider = make_provider(
            lambda r: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"message": "bad hash"}})
        )
        with pytest.raises(RpcError, match="bad hash"):
            await provider.get_receipt("0xabc")

    @pytest.mark.asyncio
    async def test_http_error(self):
        provider = make_provider(lambda r: httpx.Response(502))
        with pytest.raises(RpcError):
            await provider.get_receipt("0xabc")

    @pytest.mark.asyncio
    async def test_health_check_reports_block(self):
        provider = make_provider(lambda r: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x10"}))
        health = await provider.health_check()
        assert health == {"status": "healthy", "block": 16}

    @pytest.mark.parametrize(
        "receipt,ok",
        [({"status": "0x1"}, True), ({"status": "0x0"}, False), ({"status": 1}, True), ({}, False)],
    )
    def test_receipt_succeeded(self, receipt, ok):
        assert receipt_succeeded(receipt) is ok
