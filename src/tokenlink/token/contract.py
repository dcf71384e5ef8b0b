"""
Token contract client.

Typed access to a deployed mintable token: fungible-token reads and
writes plus the access-control surface used for mint/burn roles.
"""

from typing import Optional

import structlog

from tokenlink.chain.interface import ChainClient, ConfirmedReceipt, ContractCall, TOKEN_ABI
from tokenlink.types import TokenDescriptor, bytes32_to_hex

logger = structlog.get_logger(__name__)


class TokenContract:
    """
    Client for one token contract on one network.

    Role identifiers are read from the contract once and cached.
    """

    def __init__(self, chain: ChainClient, address: str):
        self.chain = chain
        self.address = address
        self._roles: dict = {}
        self._decimals: Optional[int] = None

    def _call(self, function: str, *args) -> ContractCall:
        return ContractCall(self.address, TOKEN_ABI, function, tuple(args))

    async def describe(self) -> TokenDescriptor:
        """Build a descriptor for this token, reading its decimals."""
        return TokenDescriptor(
            address=self.address,
            network=self.chain.network_name,
            decimals=await self.decimals(),
        )

    # Reads

    async def decimals(self) -> int:
        if self._decimals is None:
            self._decimals = int(await self.chain.read(self._call("decimals")))
        return self._decimals

    async def total_supply(self) -> int:
        return int(await self.chain.read(self._call("totalSupply")))

    async def balance_of(self, account: str) -> int:
        return int(await self.chain.read(self._call("balanceOf", account)))

    async def allowance(self, owner: str, spender: str) -> int:
        return int(await self.chain.read(self._call("allowance", owner, spender)))

    async def role_id(self, role: str) -> str:
        """
        Get the bytes32 identifier of a role constant.

        Args:
            role: Name of the role getter, e.g. "MINTER_ROLE"
        """
        if role not in self._roles:
            self._roles[role] = bytes32_to_hex(await self.chain.read(self._call(role)))
        return self._roles[role]

    async def has_role(self, role: str, account: str) -> bool:
        role_id = await self.role_id(role)
        return bool(await self.chain.read(self._call("hasRole", bytes.fromhex(role_id[2:]), account)))

    # Writes

    async def approve(self, spender: str, amount: int) -> ConfirmedReceipt:
        receipt = await self.chain.submit(self._call("approve", spender, amount))
        logger.info(
            "allowance_granted",
            network=self.chain.network_name,
            token=self.address,
            spender=spender,
            amount=amount,
            tx_hash=receipt.tx_hash,
        )
        return receipt

    async def grant_role(self, role: str, account: str) -> ConfirmedReceipt:
        role_id = await self.role_id(role)
        return await self.chain.submit(
            self._call("grantRole", bytes.fromhex(role_id[2:]), account)
        )

