"""
Tests for unsigned UserOperation assembly.
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from eth_abi import decode

from oneclick_chain.config import PipelineConfig, build_default_config
from oneclick_chain.erc4337.builder import OperationBuilder
from oneclick_chain.erc4337.user_operation import compute_user_op_hash
from oneclick_chain.exceptions import InvalidAddress, ValidationError

from fakes import ACCOUNT_ADDRESS, RECIPIENT_ADDRESS, make_user_op, sample_account

OKB = "0x0bc13595f7dabbf1d00fc5caa670d2374bd4aa9a"


def _builder(reader, config=None):
    network = build_default_config().get_network("sepolia")
    return OperationBuilder(network, reader, config=config or PipelineConfig())


def _inner_call(user_op):
    """Decode execute(address,uint256,bytes) calldata."""
    return decode(["address", "uint256", "bytes"], bytes.fromhex(user_op.call_data[10:]))


class TestBuild:
    """Test OperationBuilder.build."""

    @pytest.mark.asyncio
    async def test_undeployed_account(self, fake_reader):
        """First operation carries initCode and deployment verification gas."""
        builder = _builder(fake_reader)

        op = await builder.build(sample_account(deployed=False), RECIPIENT_ADDRESS, 10 ** 15)

        assert op.init_code != "0x"
        assert op.verification_gas_limit == 500_000
        assert op.paymaster_and_data == "0x"
        assert op.signature == "0x"

    @pytest.mark.asyncio
    async def test_init_code_stable(self, fake_reader):
        """Repeated builds for an undeployed account use the same initCode."""
        builder = _builder(fake_reader)
        account = sample_account(deployed=False)

        first = await builder.build(account, RECIPIENT_ADDRESS, 1)
        second = await builder.build(account, RECIPIENT_ADDRESS, 1)

        assert first.init_code == second.init_code

    @pytest.mark.asyncio
    async def test_deployed_account(self, fake_reader):
        """Deployed accounts get no initCode and the chain nonce."""
        fake_reader.code[ACCOUNT_ADDRESS.lower()] = "0x6080"
        fake_reader.nonces[ACCOUNT_ADDRESS.lower()] = 12
        builder = _builder(fake_reader)

        # cached state says undeployed; the builder must re-read the chain
        op = await builder.build(sample_account(deployed=False), RECIPIENT_ADDRESS, 0)

        assert op.init_code == "0x"
        assert op.nonce == 12
        assert op.verification_gas_limit == 150_000

    @pytest.mark.asyncio
    async def test_gas_seeds(self, fake_reader):
        """maxFee is twice the gas price and priority fee equals it."""
        fake_reader.gas_price = 3_000_000_000
        builder = _builder(fake_reader)

        op = await builder.build(sample_account(), RECIPIENT_ADDRESS, 0)

        assert op.max_fee_per_gas == 6_000_000_000
        assert op.max_priority_fee_per_gas == 3_000_000_000
        assert op.call_gas_limit == 200_000
        assert op.pre_verification_gas == 50_000

    @pytest.mark.asyncio
    async def test_gas_price_fallback(self, fake_reader):
        """Should use 1 gwei when the gas price cannot be read."""
        fake_reader.failing.add("get_gas_price")
        builder = _builder(fake_reader)

        op = await builder.build(sample_account(), RECIPIENT_ADDRESS, 0)

        assert op.max_priority_fee_per_gas == 1_000_000_000
        assert op.max_fee_per_gas == 2_000_000_000

    @pytest.mark.asyncio
    async def test_invalid_target_before_network(self, fake_reader):
        """Invalid targets are rejected before any chain read."""
        builder = _builder(fake_reader)

        with pytest.raises(InvalidAddress):
            await builder.build(sample_account(), "not-an-address", 0)
        assert fake_reader.calls == []

    @pytest.mark.asyncio
    async def test_negative_value(self, fake_reader):
        """Negative values are rejected."""
        builder = _builder(fake_reader)

        with pytest.raises(ValidationError):
            await builder.build(sample_account(), RECIPIENT_ADDRESS, -1)
        assert fake_reader.calls == []

    @pytest.mark.asyncio
    async def test_invalid_call_data(self, fake_reader):
        builder = _builder(fake_reader)

        with pytest.raises(ValidationError):
            await builder.build(sample_account(), RECIPIENT_ADDRESS, 0, "0xzz")


class TestTokenOperations:
    """Test ERC-20 helpers."""

    @pytest.mark.asyncio
    async def test_transfer(self, fake_reader):
        """Should wrap transfer(address,uint256) in execute."""
        builder = _builder(fake_reader)

        op = await builder.build_erc20_transfer(sample_account(), OKB, RECIPIENT_ADDRESS, 500)

        target, value, inner = _inner_call(op)
        assert target.lower() == OKB
        assert value == 0
        assert inner[:4].hex() == "a9059cbb"

    @pytest.mark.asyncio
    async def test_burn(self, fake_reader):
        """Should wrap burn(uint256) in execute."""
        builder = _builder(fake_reader)

        op = await builder.build_erc20_burn(sample_account(), OKB, 10 ** 18)

        _, _, inner = _inner_call(op)
        assert inner[:4].hex() == "42966c68"
        assert decode(["uint256"], inner[4:]) == (10 ** 18,)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amounts(self, fake_reader, amount):
        builder = _builder(fake_reader)

        with pytest.raises(ValidationError):
            await builder.build_erc20_burn(sample_account(), OKB, amount)


class TestChainId:
    """Test chain id resolution."""

    @pytest.mark.asyncio
    async def test_reads_once(self, fake_reader):
        """Chain id is read from the chain once."""
        builder = _builder(fake_reader)

        assert await builder.chain_id() == 11155111
        assert await builder.chain_id() == 11155111
        assert fake_reader.calls.count("get_chain_id") == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_config(self, fake_reader):
        """Unreachable chain falls back to the configured id."""
        fake_reader.failing.add("get_chain_id")

        assert await _builder(fake_reader).chain_id() == 11155111

    @pytest.mark.asyncio
    async def test_mismatch(self, fake_reader):
        """A node on the wrong chain is rejected."""
        fake_reader.chain_id = 1

        with pytest.raises(ValidationError, match="Chain id mismatch"):
            await _builder(fake_reader).chain_id()

    def test_compute_hash_defaults(self, fake_reader):
        """compute_hash defaults to the network's EntryPoint and chain id."""
        builder = _builder(fake_reader)
        op = make_user_op()

        assert builder.compute_hash(op) == compute_user_op_hash(
            op, "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789", 11155111
        )
