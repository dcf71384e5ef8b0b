"""
Abstract interface for ledger access.

Defines the contract for chain access that all chain clients must implement.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class ContractCall:
    """
    A single contract function invocation.

    Attributes:
        address: Contract address
        abi: Name of the bundled ABI describing the contract
        function: Function name
        args: Positional arguments
        value: Native value (wei) attached to the call
    """
    address: str
    abi: str
    function: str
    args: Tuple[Any, ...] = ()
    value: int = 0

    @property
    def fingerprint(self) -> str:
        """Stable identity of the call, used to detect resubmission."""
        args = ",".join(_fingerprint_arg(a) for a in self.args)
        return f"{self.address.lower()}:{self.function}({args})+{self.value}"

    def describe(self) -> str:
        return f"{self.abi}.{self.function}"


def _fingerprint_arg(arg: Any) -> str:
    if isinstance(arg, (bytes, bytearray)):
        return "0x" + bytes(arg).hex()
    if isinstance(arg, str):
        return arg.lower()
    return str(arg)


@dataclass(frozen=True)
class ConfirmedReceipt:
    """Receipt of a transaction that reached the configured confirmation depth."""
    tx_hash: str
    block_number: int
    confirmations: int
    gas_used: int = 0
    status: int = 1


class ChainClient(ABC):
    """
    Abstract interface for one network, signing with one identity.

    Every ledger-mutating call blocks until it reaches the configured
    confirmation depth; reads never mutate state.
    """

    network_name: str

    @property
    @abstractmethod
    def address(self) -> str:
        """Address of the signing identity."""
        pass

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish connection to the RPC endpoint.

        Raises:
            TransientNetworkError: If the endpoint cannot be reached
            ConfigurationError: If the endpoint serves an unexpected chain
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection."""
        pass

    @abstractmethod
    async def submit(self, call: ContractCall) -> ConfirmedReceipt:
        """
        Sign, broadcast and wait for a state-changing call.

        Args:
            call: The contract call to submit

        Returns:
            Receipt once the confirmation depth is reached

        Raises:
            TransientNetworkError: On timeouts or connectivity loss
            RejectedTransactionError: If the ledger rejects or reverts the call
        """
        pass

    @abstractmethod
    async def read(self, call: ContractCall) -> Any:
        """
        Perform a non-mutating contract query.

        Raises:
            TransientNetworkError: On timeouts or connectivity loss
            RejectedTransactionError: If the call reverts
        """
        pass

    @abstractmethod
    async def has_code(self, address: str) -> bool:
        """Check whether a contract is deployed at an address."""
        pass

    @abstractmethod
    async def native_balance(self, address: Optional[str] = None) -> int:
        """Native coin balance in wei (of the signer when no address is given)."""
        pass


# Names of the ABIs bundled in tokenlink/chain/abi
TOKEN_SERVICE_ABI = "interchain_token_service"
TOKEN_FACTORY_ABI = "interchain_token_factory"
TOKEN_ABI = "mintable_token"
