"""Deterministic smart-account address derivation (CREATE2)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from eth_abi import encode
from web3 import Web3

from ..chain_reader import ChainReader, encode_call
from ..config import NetworkConfig
from ..exceptions import (
    AddressMismatchError,
    ChainUnavailableError,
    ConfigurationError,
    InvalidAddress,
    ValidationError,
)
from ..logging_utils import OperationType, get_chain_logger
from .public_key import PublicKey

if TYPE_CHECKING:
    from .account import Identity

logger = logging.getLogger(__name__)


class AddressSource(str, Enum):
    FACTORY = "factory"
    LOCAL = "local"


@dataclass(frozen=True)
class DerivedAddress:
    address: str
    salt: bytes
    source: AddressSource


def _hex_to_bytes(value: str) -> bytes:
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


def checksum_address(address: str, field: str = "address") -> str:
    """Validate and checksum an EVM address."""
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidAddress(f"Invalid address: {address!r}", field=field)
    return Web3.to_checksum_address(address)


def derive_salt(email_or_handle: str, public_key: PublicKey, account_index: int = 0) -> bytes:
    """salt = keccak256(abi.encode(string email, bytes publicKey, uint256 index))."""
    if account_index < 0:
        raise ValidationError("Account index must be non-negative", field="account_index")
    encoded = encode(
        ["string", "bytes", "uint256"],
        [email_or_handle, public_key.raw, account_index],
    )
    return bytes(Web3.keccak(encoded))


def compute_create2_address(factory: str, salt: bytes, init_code_hash: bytes) -> str:
    """keccak256(0xff ++ factory ++ salt ++ initCodeHash)[12:], checksummed."""
    if len(salt) != 32 or len(init_code_hash) != 32:
        raise ValidationError("CREATE2 salt and init code hash must be 32 bytes")
    create2_input = b"\xff" + _hex_to_bytes(checksum_address(factory, "factory")) + salt + init_code_hash
    address_hash = Web3.keccak(create2_input)
    return Web3.to_checksum_address("0x" + bytes(address_hash[-20:]).hex())


def build_account_init_code(factory: str, public_key: PublicKey, salt: bytes) -> str:
    """initCode = factory ++ createAccount(bytes publicKey, bytes32 salt)."""
    calldata = encode_call(
        "createAccount(bytes,bytes32)", ["bytes", "bytes32"], [public_key.raw, salt]
    )
    return checksum_address(factory, "factory") + calldata[2:]


class AddressDeriver:
    """
    Computes where a user's smart account lives (or will live).

    The factory's getAddress is authoritative. When the chain cannot be
    reached the address is computed locally from the account creation code;
    both computations must agree, which reconcile() checks.
    """

    def __init__(self, network: NetworkConfig, chain_reader: ChainReader):
        self._network = network
        self._reader = chain_reader

    @property
    def factory_address(self) -> str:
        if not self._network.factory_address:
            raise ConfigurationError(f"No account factory configured for {self._network.name}")
        return checksum_address(self._network.factory_address, "factory")

    def local_address(self, public_key: PublicKey, salt: bytes) -> str:
        """CREATE2 address computed offline from the account creation code."""
        creation_code = self._network.account_creation_code
        if not creation_code:
            raise ConfigurationError(
                f"No account creation code configured for {self._network.name}; "
                "cannot compute the address without the factory"
            )
        init_code = _hex_to_bytes(creation_code) + encode(["bytes", "bytes32"], [public_key.raw, salt])
        return compute_create2_address(self.factory_address, salt, bytes(Web3.keccak(init_code)))

    async def derive_address(self, public_key: PublicKey, salt: bytes) -> DerivedAddress:
        async with get_chain_logger().operation_context(
            OperationType.ADDRESS_DERIVATION, self._network.name
        ) as ctx:
            try:
                address = await self._reader.get_factory_address(
                    self.factory_address, public_key.raw, salt
                )
                source = AddressSource.FACTORY
            except ChainUnavailableError as e:
                logger.warning(
                    f"Factory getAddress unavailable on {self._network.name}, "
                    f"computing locally: {e}"
                )
                address = self.local_address(public_key, salt)
                source = AddressSource.LOCAL
            ctx.metadata["source"] = source.value
            return DerivedAddress(address=address, salt=salt, source=source)

    async def reconcile(self, public_key: PublicKey, salt: bytes) -> str:
        """Require the factory and the local computation to agree."""
        factory_result = await self._reader.get_factory_address(
            self.factory_address, public_key.raw, salt
        )
        local_result = self.local_address(public_key, salt)
        if factory_result.lower() != local_result.lower():
            raise AddressMismatchError(factory_result, local_result)
        return factory_result

    async def derive_account_address(self, identity: "Identity", account_index: int = 0) -> DerivedAddress:
        salt = derive_salt(identity.email_or_handle, identity.public_key, account_index)
        return await self.derive_address(identity.public_key, salt)
