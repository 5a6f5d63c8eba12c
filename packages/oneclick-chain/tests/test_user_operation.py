"""
Tests for UserOperation encoding and hashing.
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from eth_abi import decode

from oneclick_chain.config import ENTRYPOINT_V06_ADDRESS
from oneclick_chain.erc4337.user_operation import UserOperation, compute_user_op_hash, parse_int

from fakes import SEPOLIA_CHAIN_ID, make_user_op


def _hash(op, entrypoint=ENTRYPOINT_V06_ADDRESS, chain_id=SEPOLIA_CHAIN_ID):
    return compute_user_op_hash(op, entrypoint, chain_id)


class TestUserOpHash:
    """Test the canonical user operation hash."""

    def test_deterministic(self):
        """Hashing the same operation twice gives the same hash."""
        assert _hash(make_user_op()) == _hash(make_user_op())
        assert len(_hash(make_user_op())) == 66

    @pytest.mark.parametrize("field,value", [
        ("sender", "0x" + "56" * 20),
        ("nonce", 1),
        ("init_code", "0x1234"),
        ("call_data", "0xabcd"),
        ("call_gas_limit", 100_001),
        ("verification_gas_limit", 150_001),
        ("pre_verification_gas", 50_001),
        ("max_fee_per_gas", 2_000_000_001),
        ("max_priority_fee_per_gas", 1_000_000_001),
        ("paymaster_and_data", "0x" + "99" * 20),
    ])
    def test_every_signed_field_changes_hash(self, field, value):
        """Changing any signed field changes the hash."""
        assert _hash(make_user_op(**{field: value})) != _hash(make_user_op())

    def test_signature_not_hashed(self):
        """The signature is not part of the hash."""
        assert _hash(make_user_op(signature="0x" + "11" * 65)) == _hash(make_user_op())

    def test_chain_and_entrypoint_bound(self):
        """The hash binds chain id and EntryPoint."""
        op = make_user_op()

        assert _hash(op, chain_id=195) != _hash(op)
        assert _hash(op, entrypoint="0x" + "77" * 20) != _hash(op)


class TestEncoding:
    """Test RPC and calldata encoding."""

    def test_to_rpc_hex_quantities(self):
        """Numeric fields are hex quantities."""
        rpc = make_user_op(nonce=5, call_gas_limit=300_000).to_rpc()

        assert rpc["nonce"] == "0x5"
        assert rpc["callGasLimit"] == hex(300_000)
        assert rpc["paymasterAndData"] == "0x"

    def test_from_rpc(self):
        """Should parse an RPC payload back into an operation."""
        op = make_user_op(nonce=9, init_code="0xabcd")

        assert UserOperation.from_rpc(op.to_rpc()) == op

    def test_encode_execute(self):
        """execute(address,uint256,bytes) calldata."""
        target = "0x" + "34" * 20
        data = UserOperation.encode_execute(target, 10, b"\x01\x02")

        assert data.startswith("0xb61d27f6")
        to, value, inner = decode(["address", "uint256", "bytes"], bytes.fromhex(data[10:]))
        assert to.lower() == target
        assert value == 10
        assert inner == b"\x01\x02"

    def test_with_fields_copies(self):
        """with_fields returns a new operation."""
        op = make_user_op()
        changed = op.with_fields(nonce=3)

        assert op.nonce == 0
        assert changed.nonce == 3

    @pytest.mark.parametrize("raw,expected", [(7, 7), ("0x10", 16), ("42", 42)])
    def test_parse_int(self, raw, expected):
        """Should accept ints, hex and decimal strings."""
        assert parse_int(raw) == expected

    def test_parse_int_rejects_none(self):
        with pytest.raises(ValueError):
            parse_int(None)
