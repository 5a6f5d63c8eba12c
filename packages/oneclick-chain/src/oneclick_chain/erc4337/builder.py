"""Assembly of unsigned user operations."""

from __future__ import annotations

import logging
from typing import Optional, Union

from ..chain_reader import ChainReader, encode_call
from ..config import NetworkConfig, PipelineConfig
from ..exceptions import ChainUnavailableError, ValidationError
from ..logging_utils import OperationType, get_chain_logger
from .account import SmartAccount, SmartAccountService
from .address import checksum_address
from .user_operation import UserOperation, compute_user_op_hash, zero_hex

logger = logging.getLogger(__name__)


def _call_data_bytes(call_data: Union[str, bytes]) -> bytes:
    if isinstance(call_data, (bytes, bytearray)):
        return bytes(call_data)
    text = call_data[2:] if call_data.startswith(("0x", "0X")) else call_data
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise ValidationError(f"Call data is not valid hex: {e}", field="call_data") from e


class OperationBuilder:
    """
    Builds unsigned UserOperations for a smart account.

    The account is refreshed before every build so the nonce and the
    initCode decision reflect the chain, not a stale cache. Gas fields are
    seeded with conservative defaults; estimation and sponsorship refine
    them later in the pipeline.
    """

    def __init__(
        self,
        network: NetworkConfig,
        chain_reader: ChainReader,
        account_service: Optional[SmartAccountService] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self._network = network
        self._reader = chain_reader
        self._accounts = account_service or SmartAccountService(network, chain_reader)
        self._config = config or PipelineConfig()
        self._chain_id: Optional[int] = None

    @property
    def network(self) -> NetworkConfig:
        return self._network

    async def _gas_price(self) -> int:
        try:
            return await self._reader.get_gas_price()
        except ChainUnavailableError as e:
            logger.warning(
                f"Gas price unavailable on {self._network.name}, using "
                f"{self._config.fallback_gas_price_wei} wei: {e}"
            )
            return self._config.fallback_gas_price_wei

    async def build(
        self,
        account: SmartAccount,
        target: str,
        value: int,
        call_data: Union[str, bytes] = b"",
    ) -> UserOperation:
        """Build an unsigned operation that makes ``account`` call ``target``."""
        target = checksum_address(target, "target")
        if value < 0:
            raise ValidationError("Value must be non-negative", field="value")
        data = _call_data_bytes(call_data)

        async with get_chain_logger().operation_context(
            OperationType.OPERATION_BUILD, self._network.name, sender=account.address
        ):
            account = await self._accounts.refresh(account)
            gas_price = await self._gas_price()

            verification_gas = (
                self._config.default_verification_gas_limit
                if account.deployed
                else self._config.deployment_verification_gas_limit
            )
            return UserOperation(
                sender=account.address,
                nonce=account.current_nonce,
                init_code=self._accounts.init_code_for(account),
                call_data=UserOperation.encode_execute(target, value, data),
                call_gas_limit=self._config.default_call_gas_limit,
                verification_gas_limit=verification_gas,
                pre_verification_gas=self._config.default_pre_verification_gas,
                max_fee_per_gas=gas_price * 2,
                max_priority_fee_per_gas=gas_price,
                paymaster_and_data=zero_hex(),
                signature=zero_hex(),
            )

    async def build_erc20_transfer(
        self,
        account: SmartAccount,
        token: str,
        recipient: str,
        amount: int,
    ) -> UserOperation:
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive", field="amount")
        data = encode_call(
            "transfer(address,uint256)",
            ["address", "uint256"],
            [checksum_address(recipient, "recipient"), amount],
        )
        return await self.build(account, token, 0, data)

    async def build_erc20_burn(self, account: SmartAccount, token: str, amount: int) -> UserOperation:
        if amount <= 0:
            raise ValidationError("Burn amount must be positive", field="amount")
        data = encode_call("burn(uint256)", ["uint256"], [amount])
        return await self.build(account, token, 0, data)

    async def chain_id(self) -> int:
        """Chain id used for hashing. Read once, falling back to configuration."""
        if self._chain_id is None:
            try:
                reported = await self._reader.get_chain_id()
            except ChainUnavailableError:
                reported = self._network.chain_id
            if reported != self._network.chain_id:
                raise ValidationError(
                    f"Chain id mismatch for {self._network.name}: expected "
                    f"{self._network.chain_id}, got {reported}"
                )
            self._chain_id = reported
        return self._chain_id

    def compute_hash(
        self,
        user_op: UserOperation,
        entrypoint: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> str:
        return compute_user_op_hash(
            user_op,
            entrypoint or self._network.entrypoint_address,
            self._network.chain_id if chain_id is None else chain_id,
        )
