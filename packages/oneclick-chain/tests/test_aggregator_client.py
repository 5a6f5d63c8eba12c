"""
Tests for the OKX cross-chain aggregator client.

Covers:
- Request signing
- Response code handling
- Quote, build and status parsing
"""
import base64
import hashlib
import hmac
import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from oneclick_chain.bridge.aggregator_client import OKXCrossChainClient
from oneclick_chain.config import AggregatorConfig
from oneclick_chain.exceptions import AggregatorUnavailable

CREDENTIALS = AggregatorConfig(
    api_key="api-key",
    secret_key="secret-key",
    passphrase="passphrase",
    project_id="project",
)


def _client(handler, config=CREDENTIALS):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OKXCrossChainClient(config, client=http)


def _ok(data):
    def handler(request):
        return httpx.Response(200, json={"code": "0", "msg": "", "data": data})
    return handler


class TestSigning:
    """Test HMAC request signing."""

    def test_sign(self):
        """Signature is base64 HMAC-SHA256 of timestamp, method, path and body."""
        client = _client(_ok([]))
        expected = base64.b64encode(hmac.new(
            b"secret-key",
            b"2024-01-01T00:00:00.000ZGET/api/v5/dex/cross-chain/supported/chain",
            hashlib.sha256,
        ).digest()).decode()

        assert client.sign("2024-01-01T00:00:00.000Z", "get", "/api/v5/dex/cross-chain/supported/chain") == expected

    @pytest.mark.asyncio
    async def test_headers(self):
        """Requests carry signed OK-ACCESS headers over the full request path."""
        captured = {}

        def handler(request):
            captured["headers"] = request.headers
            return httpx.Response(200, json={"code": "0", "data": [{"chainId": "195"}]})

        client = _client(handler)
        chains = await client.get_supported_chains()

        headers = captured["headers"]
        assert chains == [{"chainId": "195"}]
        assert headers["OK-ACCESS-KEY"] == "api-key"
        assert headers["OK-ACCESS-PASSPHRASE"] == "passphrase"
        assert headers["OK-ACCESS-PROJECT"] == "project"
        assert headers["OK-ACCESS-SIGN"] == client.sign(
            headers["OK-ACCESS-TIMESTAMP"], "GET", "/api/v5/dex/cross-chain/supported/chain"
        )


class TestErrors:
    """Test failure handling."""

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        """Should refuse to call without credentials."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"code": "0", "data": []})

        client = _client(handler, AggregatorConfig())

        assert not client.configured
        with pytest.raises(AggregatorUnavailable):
            await client.get_supported_chains()
        assert calls == []

    @pytest.mark.asyncio
    async def test_non_zero_code(self):
        """Any code other than "0" is an error."""
        def handler(request):
            return httpx.Response(200, json={"code": "51000", "msg": "Parameter error", "data": []})

        with pytest.raises(AggregatorUnavailable, match="Parameter error"):
            await _client(handler).get_supported_chains()

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(502)

        with pytest.raises(AggregatorUnavailable):
            await _client(handler).get_supported_chains()


class TestEndpoints:
    """Test quote, build and status parsing."""

    @pytest.mark.asyncio
    async def test_quote(self):
        captured = {}

        def handler(request):
            captured["params"] = dict(request.url.params)
            return _ok([{
                "fromTokenAmount": "1000000000000000000",
                "toTokenAmount": "990000000000000000",
                "bridgeId": "211",
                "estimatedTime": "180",
            }])(request)

        quote = await _client(handler).get_quote(
            11155111, 195, "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE",
            "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE", 10 ** 18, "0x" + "12" * 20,
        )

        assert quote.to_amount == 990000000000000000
        assert quote.bridge_id == "211"
        assert quote.estimated_time_seconds == 180
        assert captured["params"]["fromChainId"] == "11155111"
        assert captured["params"]["amount"] == str(10 ** 18)
        assert "receiveAddress" not in captured["params"]

    @pytest.mark.asyncio
    async def test_quote_with_receive_address(self):
        """Should send the recipient separately from the paying wallet."""
        captured = {}

        def handler(request):
            captured["params"] = dict(request.url.params)
            return _ok([{"toTokenAmount": "990000000000000000", "bridgeId": "211"}])(request)

        await _client(handler).get_quote(
            11155111, 195, "0xa", "0xb", 10 ** 18, "0x" + "12" * 20,
            receive_address="0x" + "34" * 20,
        )

        assert captured["params"]["userWalletAddress"] == "0x" + "12" * 20
        assert captured["params"]["receiveAddress"] == "0x" + "34" * 20

    @pytest.mark.asyncio
    async def test_quote_no_route(self):
        with pytest.raises(AggregatorUnavailable):
            await _client(_ok([])).get_quote(11155111, 195, "0xa", "0xb", 1, "0xc")

    @pytest.mark.asyncio
    async def test_build_transaction(self):
        """Should read the nested tx object and post a JSON body."""
        captured = {}

        def handler(request):
            captured["method"] = request.method
            captured["body"] = json.loads(request.content)
            return _ok([{"tx": {"to": "0x" + "ef" * 20, "data": "0xabcd", "value": "1000"}}])(request)

        built = await _client(handler).build_transaction(
            11155111, 195, "0xa", "0xb", 1000, "0x" + "12" * 20, "211",
            receive_address="0x" + "34" * 20,
        )

        assert captured["method"] == "POST"
        assert captured["body"]["bridgeId"] == "211"
        assert captured["body"]["userWalletAddress"] == "0x" + "12" * 20
        assert captured["body"]["receiveAddress"] == "0x" + "34" * 20
        assert built.to == "0x" + "ef" * 20
        assert built.data == "0xabcd"
        assert built.value == 1000

    @pytest.mark.asyncio
    async def test_build_transaction_malformed(self):
        with pytest.raises(AggregatorUnavailable):
            await _client(_ok([{"tx": {"data": "0x"}}])).build_transaction(1, 2, "0xa", "0xb", 1, "0xc", "1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,completed,failed", [
        ("SUCCESS", True, False),
        ("PENDING", False, False),
        ("REFUNDED", False, True),
    ])
    async def test_status(self, status, completed, failed):
        client = _client(_ok([{"status": status, "toTxHash": "0x" + "bb" * 32}]))

        result = await client.get_status("0x" + "aa" * 32, 11155111)

        assert result.is_completed is completed
        assert result.is_failed is failed
        assert result.dest_tx_hash == "0x" + "bb" * 32
