"""
Token Registry Gateway - typed client for the Interchain Token Service.

Wraps the protocol's token service (metadata registration, transfers,
manager lookup) and token factory (custom token registration, linking,
token id lookup). Every method is a single request/response; no state is
kept between calls.
"""

from dataclasses import dataclass
from typing import Dict

import structlog

from tokenlink.chain.interface import (
    ChainClient,
    ConfirmedReceipt,
    ContractCall,
    TOKEN_FACTORY_ABI,
    TOKEN_SERVICE_ABI,
)
from tokenlink.config import ManagerMode
from tokenlink.errors import ConfigurationError, InvariantViolationError, TransientNetworkError
from tokenlink.types import (
    LinkSalt,
    ManagerHandle,
    TokenDescriptor,
    TokenId,
    ZERO_ADDRESS,
    address_bytes,
    bytes32_to_hex,
    to_bytes32,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GatewayEndpoint:
    """Protocol contracts on one network, reached through one chain client."""
    chain: ChainClient
    token_service_address: str
    token_factory_address: str


class TokenRegistryGateway:
    """
    Client for the interchain token protocol across all configured networks.

    Usage:
        ```python
        gateway = TokenRegistryGateway({"ethereum-sepolia": endpoint, ...})
        token_id = await gateway.register_custom_token(salt, token, ManagerMode.LOCK_UNLOCK, minter)
        ```
    """

    def __init__(self, endpoints: Dict[str, GatewayEndpoint]):
        """
        Initialize the gateway.

        Args:
            endpoints: Protocol endpoint per network name
        """
        self.endpoints = endpoints

    def _endpoint(self, network: str) -> GatewayEndpoint:
        try:
            return self.endpoints[network]
        except KeyError:
            raise ConfigurationError(f"No protocol endpoint configured for network {network!r}")

    def _service_call(self, network: str, function: str, *args, value: int = 0) -> ContractCall:
        endpoint = self._endpoint(network)
        return ContractCall(endpoint.token_service_address, TOKEN_SERVICE_ABI, function, tuple(args), value)

    def _factory_call(self, network: str, function: str, *args, value: int = 0) -> ContractCall:
        endpoint = self._endpoint(network)
        return ContractCall(endpoint.token_factory_address, TOKEN_FACTORY_ABI, function, tuple(args), value)

    async def register_metadata(
        self,
        token: TokenDescriptor,
        min_gas_amount: int,
        value: int,
    ) -> ConfirmedReceipt:
        """
        Announce a token's metadata to the protocol on the token's network.

        A second registration of the same token is rejected by the contract
        and surfaces as RejectedTransactionError.
        """
        chain = self._endpoint(token.network).chain
        receipt = await chain.submit(
            self._service_call(token.network, "registerTokenMetadata", token.address, min_gas_amount, value=value)
        )
        logger.info(
            "metadata_registered",
            network=token.network,
            token=token.address,
            tx_hash=receipt.tx_hash,
        )
        return receipt

    async def register_custom_token(
        self,
        salt: LinkSalt,
        token: TokenDescriptor,
        manager_mode: ManagerMode,
        minter: str,
        value: int = 0,
    ) -> TokenId:
        """
        Register an existing token under a fresh salt on its own network.

        Returns:
            The token id derived from (minter, salt)

        Raises:
            RejectedTransactionError: If the salt was already used by this minter
            InvariantViolationError: If the id read after confirmation differs
                from the id computed before submission
        """
        expected = await self.resolve_token_id(minter, salt, network=token.network)

        chain = self._endpoint(token.network).chain
        receipt = await chain.submit(
            self._factory_call(
                token.network,
                "registerCustomToken",
                to_bytes32(salt),
                token.address,
                int(manager_mode),
                minter,
                value=value,
            )
        )

        token_id = await self.resolve_token_id(minter, salt, network=token.network)
        if token_id != expected:
            raise InvariantViolationError(
                f"Token id changed across registration: expected {expected}, got {token_id}"
            )

        logger.info(
            "custom_token_registered",
            network=token.network,
            token=token.address,
            manager_mode=manager_mode.name,
            token_id=token_id,
            tx_hash=receipt.tx_hash,
        )
        return token_id

    async def link_token(
        self,
        salt: LinkSalt,
        destination_network_name: str,
        destination_token: TokenDescriptor,
        manager_mode: ManagerMode,
        minter: str,
        gas_budget: int,
        network: str,
    ) -> ConfirmedReceipt:
        """
        Link the destination counterpart to the token registered under ``salt``.

        Submitted on ``network`` (where the salt was registered). The protocol
        relays the request and deploys a manager of ``manager_mode`` on the
        destination network, paid for by ``gas_budget``.
        """
        chain = self._endpoint(network).chain
        receipt = await chain.submit(
            self._factory_call(
                network,
                "linkToken",
                to_bytes32(salt),
                destination_network_name,
                address_bytes(destination_token.address),
                int(manager_mode),
                address_bytes(minter),
                gas_budget,
                value=gas_budget,
            )
        )
        logger.info(
            "token_linked",
            network=network,
            destination=destination_network_name,
            destination_token=destination_token.address,
            manager_mode=manager_mode.name,
            tx_hash=receipt.tx_hash,
        )
        return receipt

    async def resolve_token_id(self, minter: str, salt: LinkSalt, network: str) -> TokenId:
        """Compute the token id the factory derives for (minter, salt). Read-only."""
        chain = self._endpoint(network).chain
        raw = await chain.read(self._factory_call(network, "linkedTokenId", minter, to_bytes32(salt)))
        return bytes32_to_hex(raw)

    async def resolve_manager(
        self,
        token_id: TokenId,
        network: str,
        manager_mode: ManagerMode,
        require_deployed: bool = False,
    ) -> ManagerHandle:
        """
        Look up the token manager for a token id on one network.

        Args:
            token_id: Linked token id
            network: Network to query
            manager_mode: Mode the manager was registered with
            require_deployed: Require the manager contract to already exist

        Raises:
            TransientNetworkError: If ``require_deployed`` and the manager has
                not been deployed yet (the relay may still be in flight)
        """
        chain = self._endpoint(network).chain
        address = await chain.read(self._service_call(network, "tokenManagerAddress", to_bytes32(token_id)))
        if not address or address == ZERO_ADDRESS:
            raise TransientNetworkError(f"No token manager address for {token_id} on {network}")

        if require_deployed and not await chain.has_code(address):
            raise TransientNetworkError(
                f"Token manager {address} for {token_id} not yet deployed on {network}"
            )

        logger.info("manager_resolved", network=network, token_id=token_id, manager=address)
        return ManagerHandle(address=address, network=network, mode=manager_mode)

    async def is_registered(self, token_id: TokenId, network: str) -> bool:
        """Check whether a manager for ``token_id`` is already deployed on ``network``."""
        chain = self._endpoint(network).chain
        address = await chain.read(self._service_call(network, "tokenManagerAddress", to_bytes32(token_id)))
        if not address or address == ZERO_ADDRESS:
            return False
        return await chain.has_code(address)

    async def interchain_transfer(
        self,
        token_id: TokenId,
        source_network: str,
        destination_network: str,
        receiver: str,
        amount: int,
        gas_value: int,
    ) -> ConfirmedReceipt:
        """Send ``amount`` of a linked token to ``receiver`` on another network."""
        chain = self._endpoint(source_network).chain
        receipt = await chain.submit(
            self._service_call(
                source_network,
                "interchainTransfer",
                to_bytes32(token_id),
                destination_network,
                address_bytes(receiver),
                amount,
                b"",
                gas_value,
                value=gas_value,
            )
        )
        logger.info(
            "interchain_transfer_submitted",
            source=source_network,
            destination=destination_network,
            receiver=receiver,
            amount=amount,
            tx_hash=receipt.tx_hash,
        )
        return receipt
