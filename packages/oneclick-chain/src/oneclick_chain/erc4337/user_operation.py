"""UserOperation primitives for ERC-4337 (EntryPoint v0.6 layout)."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict

from eth_abi import encode
from web3 import Web3


def zero_hex() -> str:
    return "0x"


def _to_hex_int(value: int) -> str:
    return hex(max(0, int(value)))


def _hex_bytes(value: str) -> bytes:
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


def parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
    raise ValueError(f"Cannot parse integer field: {value!r}")


@dataclass
class UserOperation:
    sender: str
    nonce: int
    init_code: str
    call_data: str
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_and_data: str
    signature: str

    @staticmethod
    def encode_execute(to: str, value: int, data: bytes) -> str:
        """Encode the account's execute(address,uint256,bytes) calldata."""
        selector = Web3.keccak(text="execute(address,uint256,bytes)")[:4]
        encoded = encode(["address", "uint256", "bytes"], [to, value, data])
        return "0x" + (bytes(selector) + encoded).hex()

    def with_fields(self, **changes: Any) -> "UserOperation":
        return replace(self, **changes)

    def to_rpc(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "nonce": _to_hex_int(self.nonce),
            "initCode": self.init_code,
            "callData": self.call_data,
            "callGasLimit": _to_hex_int(self.call_gas_limit),
            "verificationGasLimit": _to_hex_int(self.verification_gas_limit),
            "preVerificationGas": _to_hex_int(self.pre_verification_gas),
            "maxFeePerGas": _to_hex_int(self.max_fee_per_gas),
            "maxPriorityFeePerGas": _to_hex_int(self.max_priority_fee_per_gas),
            "paymasterAndData": self.paymaster_and_data,
            "signature": self.signature,
        }

    @classmethod
    def from_rpc(cls, payload: Dict[str, Any]) -> "UserOperation":
        return cls(
            sender=payload["sender"],
            nonce=parse_int(payload["nonce"]),
            init_code=payload.get("initCode") or "0x",
            call_data=payload.get("callData") or "0x",
            call_gas_limit=parse_int(payload["callGasLimit"]),
            verification_gas_limit=parse_int(payload["verificationGasLimit"]),
            pre_verification_gas=parse_int(payload["preVerificationGas"]),
            max_fee_per_gas=parse_int(payload["maxFeePerGas"]),
            max_priority_fee_per_gas=parse_int(payload["maxPriorityFeePerGas"]),
            paymaster_and_data=payload.get("paymasterAndData") or "0x",
            signature=payload.get("signature") or "0x",
        )

    def pack(self) -> bytes:
        """ABI encoding hashed by EntryPoint v0.6 (signature excluded)."""
        return encode(
            [
                "address", "uint256", "bytes32", "bytes32",
                "uint256", "uint256", "uint256", "uint256", "uint256",
                "bytes32",
            ],
            [
                Web3.to_checksum_address(self.sender),
                self.nonce,
                Web3.keccak(_hex_bytes(self.init_code)),
                Web3.keccak(_hex_bytes(self.call_data)),
                self.call_gas_limit,
                self.verification_gas_limit,
                self.pre_verification_gas,
                self.max_fee_per_gas,
                self.max_priority_fee_per_gas,
                Web3.keccak(_hex_bytes(self.paymaster_and_data)),
            ],
        )


def compute_user_op_hash(user_op: UserOperation, entrypoint: str, chain_id: int) -> str:
    """Canonical user operation hash, identical to EntryPoint.getUserOpHash()."""
    inner = Web3.keccak(user_op.pack())
    outer = Web3.keccak(
        encode(
            ["bytes32", "address", "uint256"],
            [inner, Web3.to_checksum_address(entrypoint), chain_id],
        )
    )
    return "0x" + bytes(outer).hex()
