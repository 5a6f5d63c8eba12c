"""Gasless user operation pipeline.

build -> estimate -> sponsor -> hash -> sign -> submit -> poll

Each stage's failure is surfaced as its own typed error. The only stage
with a fallback is gas estimation (conservative static estimate) and,
when explicitly enabled, sponsorship (proceed unsponsored).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from ..chain_reader import ChainReader, JsonRpcChainReader
from ..config import NetworkConfig, OneClickChainConfig, PipelineConfig, get_config
from ..exceptions import ConfigurationError, SponsorshipError
from ..logging_utils import OperationType, get_chain_logger
from .account import SmartAccount, SmartAccountService
from .builder import OperationBuilder
from .bundler_client import (
    BundlerClient,
    BundlerConfig,
    GasEstimate,
    OperationHandle,
    ReceiptPollResult,
)
from .paymaster_client import PaymasterClient, PaymasterConfig, SponsorshipResult
from .signer import SignerGateway, sign_with_timeout
from .user_operation import UserOperation

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    user_op: UserOperation
    user_op_hash: str
    handle: OperationHandle
    gas_estimate: GasEstimate
    sponsorship: Optional[SponsorshipResult] = None
    poll_result: Optional[ReceiptPollResult] = None

    @property
    def sponsored(self) -> bool:
        return self.sponsorship is not None

    @property
    def transaction_hash(self) -> Optional[str]:
        if self.poll_result and self.poll_result.receipt:
            return self.poll_result.receipt.transaction_hash
        return None


class OperationPipeline:
    def __init__(
        self,
        network: NetworkConfig,
        builder: OperationBuilder,
        signer: SignerGateway,
        bundler: BundlerClient,
        paymaster: Optional[PaymasterClient] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self._network = network
        self._builder = builder
        self._signer = signer
        self._bundler = bundler
        self._paymaster = paymaster
        self._config = config or PipelineConfig()

    @property
    def network(self) -> NetworkConfig:
        return self._network

    @property
    def builder(self) -> OperationBuilder:
        return self._builder

    async def _sponsor(self, user_op: UserOperation) -> Optional[SponsorshipResult]:
        if self._paymaster is None:
            if self._config.allow_unsponsored:
                return None
            raise ConfigurationError(f"No paymaster configured for {self._network.name}")

        async with get_chain_logger().operation_context(
            OperationType.SPONSORSHIP, self._network.name, sender=user_op.sender
        ):
            try:
                return await self._paymaster.sponsor_user_operation(
                    user_op,
                    self._network.entrypoint_address,
                    self._config.sponsorship_policy_id,
                )
            except SponsorshipError as e:
                if not self._config.allow_unsponsored:
                    raise
                get_chain_logger().log_fallback("sponsorship", e.error_code, e.message)
                return None

    async def execute_operation(
        self,
        user_op: UserOperation,
        credential_ref: str,
        wait: bool = True,
    ) -> PipelineResult:
        """Estimate, sponsor, sign and submit an already-built operation."""
        estimate = await self._bundler.estimate_user_operation_gas(user_op)
        user_op = estimate.apply(user_op)

        sponsorship = await self._sponsor(user_op)
        if sponsorship is not None:
            user_op = sponsorship.apply(user_op)

        chain_id = await self._builder.chain_id()
        user_op_hash = self._builder.compute_hash(user_op, self._network.entrypoint_address, chain_id)

        async with get_chain_logger().operation_context(
            OperationType.SIGNING, self._network.name, user_op_hash=user_op_hash
        ):
            signature = await sign_with_timeout(
                self._signer, user_op_hash, credential_ref, self._config.signing_timeout_seconds
            )
        user_op = user_op.with_fields(signature=signature)

        handle = await self._bundler.send_user_operation(user_op)
        result = PipelineResult(
            user_op=user_op,
            user_op_hash=handle.user_op_hash,
            handle=handle,
            gas_estimate=estimate,
            sponsorship=sponsorship,
        )
        if wait:
            result.poll_result = await self.wait_for_receipt(handle)
        return result

    async def execute(
        self,
        account: SmartAccount,
        target: str,
        value: int,
        call_data: Union[str, bytes],
        credential_ref: str,
        wait: bool = True,
    ) -> PipelineResult:
        user_op = await self._builder.build(account, target, value, call_data)
        return await self.execute_operation(user_op, credential_ref, wait=wait)

    async def wait_for_receipt(
        self,
        handle: OperationHandle,
        timeout_seconds: Optional[float] = None,
    ) -> ReceiptPollResult:
        return await self._bundler.poll_receipt(
            handle,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=self._config.receipt_poll_interval_seconds,
        )


def build_pipeline(
    network_name: str,
    signer: SignerGateway,
    config: Optional[OneClickChainConfig] = None,
    chain_reader: Optional[ChainReader] = None,
) -> OperationPipeline:
    """Wire a pipeline for ``network_name`` from configuration."""
    config = config or get_config()
    network = config.get_network(network_name)
    reader = chain_reader or JsonRpcChainReader(network)
    pipeline_config = config.pipeline

    if not network.bundler_url:
        raise ConfigurationError(f"No bundler configured for {network_name}")
    bundler = BundlerClient(
        BundlerConfig(
            url=network.bundler_url,
            entrypoint=network.entrypoint_address,
            chain=network.name,
            timeout_seconds=pipeline_config.http_timeout_seconds,
            poll_interval_seconds=pipeline_config.receipt_poll_interval_seconds,
        ),
        chain_reader=reader,
        pipeline_config=pipeline_config,
    )
    paymaster = (
        PaymasterClient(
            PaymasterConfig(
                url=network.paymaster_url,
                timeout_seconds=pipeline_config.http_timeout_seconds,
            )
        )
        if network.paymaster_url
        else None
    )
    builder = OperationBuilder(
        network,
        reader,
        account_service=SmartAccountService(network, reader),
        config=pipeline_config,
    )
    return OperationPipeline(
        network=network,
        builder=builder,
        signer=signer,
        bundler=bundler,
        paymaster=paymaster,
        config=pipeline_config,
    )
