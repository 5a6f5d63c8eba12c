"""Smart account identity and cached on-chain state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from ..chain_reader import ChainReader
from ..config import NetworkConfig
from ..exceptions import ValidationError
from .address import AddressDeriver, build_account_init_code, derive_salt
from .public_key import PublicKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Who owns the account: a login handle plus the passkey public key."""

    email_or_handle: str
    public_key: PublicKey

    def __post_init__(self) -> None:
        if not self.email_or_handle:
            raise ValidationError("Identity requires an email or handle", field="email_or_handle")


@dataclass
class SmartAccount:
    """A passkey-controlled ERC-4337 account on one chain.

    ``deployed`` and ``current_nonce`` are cached observations; call
    SmartAccountService.refresh() to update them.
    """

    address: str
    identity: Identity
    account_index: int
    chain: str
    deployed: bool = False
    current_nonce: int = 0
    refreshed_at: Optional[datetime] = None

    @property
    def salt(self) -> bytes:
        return derive_salt(self.identity.email_or_handle, self.identity.public_key, self.account_index)


class SmartAccountService:
    def __init__(
        self,
        network: NetworkConfig,
        chain_reader: ChainReader,
        deriver: Optional[AddressDeriver] = None,
    ):
        self._network = network
        self._reader = chain_reader
        self._deriver = deriver or AddressDeriver(network, chain_reader)

    @property
    def network(self) -> NetworkConfig:
        return self._network

    async def load_account(self, identity: Identity, account_index: int = 0) -> SmartAccount:
        """Derive the account address and read its current state."""
        derived = await self._deriver.derive_account_address(identity, account_index)
        account = SmartAccount(
            address=derived.address,
            identity=identity,
            account_index=account_index,
            chain=self._network.name,
        )
        return await self.refresh(account)

    async def refresh(self, account: SmartAccount) -> SmartAccount:
        """Return a copy of ``account`` with deployment status and nonce re-read."""
        deployed = await self._reader.is_deployed(account.address)
        nonce = await self._reader.get_nonce(self._network.entrypoint_address, account.address, 0)
        logger.debug(
            f"Refreshed {account.address} on {self._network.name}: "
            f"deployed={deployed} nonce={nonce}"
        )
        return replace(
            account,
            deployed=deployed,
            current_nonce=nonce,
            refreshed_at=datetime.now(timezone.utc),
        )

    def init_code_for(self, account: SmartAccount) -> str:
        """initCode for the first operation of an undeployed account, "0x" otherwise."""
        if account.deployed:
            return "0x"
        return build_account_init_code(
            self._deriver.factory_address, account.identity.public_key, account.salt
        )
