"""
Tests for the paymaster client.

Covers:
- Sponsorship success and policy context
- Typed sponsorship errors
- Policy validation and status queries
"""
import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from oneclick_chain.config import ENTRYPOINT_V06_ADDRESS
from oneclick_chain.erc4337.paymaster_client import PaymasterClient, PaymasterConfig
from oneclick_chain.exceptions import (
    InsufficientPaymasterFunds,
    PolicyRejected,
    SponsorshipUnknown,
)

from fakes import make_user_op

PAYMASTER_URL = "https://paymaster.example.org/rpc?apikey=secret"


def _client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PaymasterClient(PaymasterConfig(url=PAYMASTER_URL), client=http)


def _respond(result=None, error=None):
    def handler(request):
        body = {"jsonrpc": "2.0", "id": 1}
        if error is not None:
            body["error"] = error
        else:
            body["result"] = result
        return httpx.Response(200, json=body)
    return handler


class TestSponsorUserOperation:
    """Test pm_sponsorUserOperation."""

    @pytest.mark.asyncio
    async def test_success(self):
        """Should return the sponsorship fields."""
        client = _client(_respond({
            "paymasterAndData": "0x" + "99" * 40,
            "preVerificationGas": hex(60_000),
            "verificationGasLimit": hex(200_000),
            "callGasLimit": hex(300_000),
        }))

        result = await client.sponsor_user_operation(make_user_op(), ENTRYPOINT_V06_ADDRESS)

        assert result.paymaster_and_data == "0x" + "99" * 40
        assert result.pre_verification_gas == 60_000
        sponsored = result.apply(make_user_op())
        assert sponsored.verification_gas_limit == 200_000
        assert sponsored.call_gas_limit == 300_000

    @pytest.mark.asyncio
    async def test_missing_gas_defaults_to_operation(self):
        """Gas values the paymaster omits keep the operation's values."""
        client = _client(_respond({"paymasterAndData": "0xabcd"}))

        result = await client.sponsor_user_operation(make_user_op(), ENTRYPOINT_V06_ADDRESS)

        assert result.call_gas_limit == make_user_op().call_gas_limit

    @pytest.mark.asyncio
    async def test_policy_context(self):
        """Should send the sponsorship policy id in the context."""
        captured = {}

        def handler(request):
            captured.update(json.loads(request.content))
            return _respond({"paymasterAndData": "0xabcd"})(request)

        client = _client(handler)
        await client.sponsor_user_operation(make_user_op(signature="0x1234"), ENTRYPOINT_V06_ADDRESS, "sp_42")

        assert captured["method"] == "pm_sponsorUserOperation"
        op, entrypoint, context = captured["params"]
        assert entrypoint == ENTRYPOINT_V06_ADDRESS
        assert context == {"sponsorshipPolicyId": "sp_42"}
        assert op["signature"] == "0x"

    @pytest.mark.asyncio
    async def test_no_policy_sends_empty_context(self):
        captured = {}

        def handler(request):
            captured.update(json.loads(request.content))
            return _respond({"paymasterAndData": "0xabcd"})(request)

        await _client(handler).sponsor_user_operation(make_user_op(), ENTRYPOINT_V06_ADDRESS)

        assert captured["params"][2] == {}

    @pytest.mark.asyncio
    async def test_insufficient_funds(self):
        """Should raise InsufficientPaymasterFunds on a deposit error."""
        client = _client(_respond(error={"code": -32603, "message": "Insufficient deposit in paymaster"}))

        with pytest.raises(InsufficientPaymasterFunds):
            await client.sponsor_user_operation(make_user_op(), ENTRYPOINT_V06_ADDRESS)

    @pytest.mark.asyncio
    async def test_policy_rejected(self):
        client = _client(_respond(error={"code": -32602, "message": "Sponsorship policy not found"}))

        with pytest.raises(PolicyRejected):
            await client.sponsor_user_operation(make_user_op(), ENTRYPOINT_V06_ADDRESS, "sp_missing")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        """Unreachable paymaster is an unknown sponsorship failure."""
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(SponsorshipUnknown):
            await _client(handler).sponsor_user_operation(make_user_op(), ENTRYPOINT_V06_ADDRESS)

    @pytest.mark.asyncio
    async def test_invalid_payload(self):
        """A result without paymasterAndData is rejected."""
        with pytest.raises(SponsorshipUnknown):
            await _client(_respond({"foo": "bar"})).sponsor_user_operation(
                make_user_op(), ENTRYPOINT_V06_ADDRESS
            )


class TestPolicyQueries:
    """Test policy validation and status."""

    @pytest.mark.asyncio
    async def test_validate_policy(self):
        assert await _client(_respond({"valid": True})).validate_sponsorship_policy("sp_1")

    @pytest.mark.asyncio
    async def test_validate_policy_error(self):
        """Errors mean the policy is not usable."""
        client = _client(_respond(error={"message": "nope"}))

        assert await client.validate_sponsorship_policy("sp_1") is False

    @pytest.mark.asyncio
    async def test_status(self):
        client = _client(_respond({"active": True, "balance": "0x64", "policies": ["sp_1"]}))

        status = await client.get_sponsorship_status()

        assert status.active
        assert status.balance == 100
        assert status.policies == ["sp_1"]

    @pytest.mark.asyncio
    async def test_status_error(self):
        """Status errors return an inactive default."""
        def handler(request):
            return httpx.Response(500)

        status = await _client(handler).get_sponsorship_status()

        assert not status.active
        assert status.balance == 0
