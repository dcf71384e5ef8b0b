"""
Web3 adapter for chain access.

Provides ledger access to EVM networks over JSON-RPC, signing locally with
an eth_account key.
"""

import asyncio
import json
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.contract import AsyncContract
from web3.exceptions import ContractLogicError, ProviderConnectionError, TimeExhausted, Web3RPCError

from tokenlink.chain.interface import ChainClient, ConfirmedReceipt, ContractCall
from tokenlink.config import NetworkIdentity
from tokenlink.errors import ConfigurationError, RejectedTransactionError, TransientNetworkError

logger = structlog.get_logger(__name__)

ABI_DIR = Path(__file__).parent / "abi"

# Node errors that describe a race with our own pending transactions
# rather than a semantic rejection
_TRANSIENT_RPC_MESSAGES = (
    "nonce too low",
    "already known",
    "replacement transaction underpriced",
    "timeout",
    "rate limit",
    "too many requests",
)


@lru_cache(maxsize=None)
def load_abi(name: str) -> List[Dict[str, Any]]:
    """Load a bundled contract ABI by name."""
    path = ABI_DIR / f"{name}.json"
    if not path.exists():
        raise ConfigurationError(f"Unknown contract ABI: {name}")
    with open(path) as abi_file:
        return json.load(abi_file)


def _revert_reason(error: ContractLogicError) -> str:
    message = getattr(error, "message", None) or str(error)
    return message or "execution reverted"


class Web3ChainClient(ChainClient):
    """
    Web3 JSON-RPC chain client.

    Implements the ChainClient interface for one EVM network. Transactions
    that were broadcast but not yet confirmed are remembered by call
    fingerprint, so a retried submit waits on the original transaction
    instead of broadcasting a duplicate.
    """

    def __init__(
        self,
        identity: NetworkIdentity,
        confirmation_timeout_seconds: int = 120,
        poll_interval_seconds: float = 2.0,
    ):
        """
        Initialize the client.

        Args:
            identity: Network endpoint and signing key
            confirmation_timeout_seconds: Maximum time to wait for a receipt
                and for the confirmation depth
            poll_interval_seconds: Delay between receipt and block polls
        """
        self.identity = identity
        self.network_name = identity.name
        self.confirmations = identity.confirmations
        self.confirmation_timeout_seconds = confirmation_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

        self._account: LocalAccount = Account.from_key(identity.private_key.get_secret_value())
        self._w3: Optional[AsyncWeb3] = None
        self._contracts: Dict[tuple, AsyncContract] = {}
        self._pending: Dict[str, str] = {}
        self._submit_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self._account.address

    @contextmanager
    def _translate_errors(self, action: str, tx_hash: Optional[str] = None):
        """Map web3 and transport exceptions onto the linker error taxonomy."""
        try:
            yield
        except ContractLogicError as e:
            raise RejectedTransactionError(_revert_reason(e), tx_hash=tx_hash) from e
        except TimeExhausted as e:
            raise TransientNetworkError(
                f"{action} timed out on {self.network_name}", tx_hash=tx_hash
            ) from e
        except Web3RPCError as e:
            message = str(e)
            if any(marker in message.lower() for marker in _TRANSIENT_RPC_MESSAGES):
                raise TransientNetworkError(
                    f"{action} failed on {self.network_name}: {message}", tx_hash=tx_hash
                ) from e
            raise RejectedTransactionError(message, tx_hash=tx_hash) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ProviderConnectionError, OSError) as e:
            raise TransientNetworkError(
                f"{action} failed on {self.network_name}: {e}", tx_hash=tx_hash
            ) from e

    async def connect(self) -> None:
        """Create the provider and check the endpoint serves the expected chain."""
        if self._w3 is not None:
            return

        self._w3 = AsyncWeb3(
            AsyncHTTPProvider(
                self.identity.rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=30)},
            )
        )

        with self._translate_errors("connect"):
            chain_id = await self._w3.eth.chain_id

        if self.identity.chain_id is not None and chain_id != self.identity.chain_id:
            raise ConfigurationError(
                f"RPC endpoint for {self.network_name} serves chain {chain_id}, "
                f"expected {self.identity.chain_id}"
            )

        logger.info(
            "chain_connected",
            network=self.network_name,
            chain_id=chain_id,
            signer=self.address,
        )

    async def disconnect(self) -> None:
        """Close the provider session."""
        if self._w3:
            await self._w3.provider.disconnect()
            self._w3 = None
            self._contracts.clear()
            logger.info("chain_disconnected", network=self.network_name)

    def _contract(self, call: ContractCall) -> AsyncContract:
        if self._w3 is None:
            raise RuntimeError(f"Chain client for {self.network_name} not connected")
        key = (call.abi, call.address.lower())
        if key not in self._contracts:
            self._contracts[key] = self._w3.eth.contract(
                address=Web3.to_checksum_address(call.address),
                abi=load_abi(call.abi),
            )
        return self._contracts[key]

    def _function(self, call: ContractCall):
        contract = self._contract(call)
        return getattr(contract.functions, call.function)(*call.args)

    async def read(self, call: ContractCall) -> Any:
        """Run an eth_call against the latest block."""
        if self._w3 is None:
            await self.connect()

        with self._translate_errors(f"read {call.describe()}"):
            return await self._function(call).call({"from": self.address})

    async def submit(self, call: ContractCall) -> ConfirmedReceipt:
        """Sign and broadcast a call, then wait for the confirmation depth."""
        if self._w3 is None:
            await self.connect()

        async with self._submit_lock:
            tx_hash = self._pending.get(call.fingerprint)
            if tx_hash:
                logger.info(
                    "tx_resume_wait",
                    network=self.network_name,
                    call=call.describe(),
                    tx_hash=tx_hash,
                )
            else:
                tx_hash = await self._broadcast(call)
                self._pending[call.fingerprint] = tx_hash

        try:
            receipt = await self._await_confirmation(call, tx_hash)
        except RejectedTransactionError:
            self._pending.pop(call.fingerprint, None)
            raise

        self._pending.pop(call.fingerprint, None)
        return receipt

    async def _broadcast(self, call: ContractCall) -> str:
        # Gas estimation happens in build_transaction, so a call that would
        # revert is rejected here before anything is broadcast
        with self._translate_errors(f"submit {call.describe()}"):
            nonce = await self._w3.eth.get_transaction_count(self.address, "pending")
            tx = await self._function(call).build_transaction({
                "from": self.address,
                "value": call.value,
                "nonce": nonce,
            })
            signed = self._account.sign_transaction(tx)
            raw_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash = Web3.to_hex(raw_hash)
        logger.info(
            "tx_submitted",
            network=self.network_name,
            call=call.describe(),
            tx_hash=tx_hash,
            value=call.value,
        )
        return tx_hash

    async def _await_confirmation(self, call: ContractCall, tx_hash: str) -> ConfirmedReceipt:
        """Wait for the receipt and then for the configured confirmation depth."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirmation_timeout_seconds

        with self._translate_errors(f"confirm {call.describe()}", tx_hash=tx_hash):
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self.confirmation_timeout_seconds,
                poll_latency=self.poll_interval_seconds,
            )

        if receipt["status"] != 1:
            reason = await self._revert_reason_for(call, receipt["blockNumber"])
            logger.error(
                "tx_reverted",
                network=self.network_name,
                call=call.describe(),
                tx_hash=tx_hash,
                reason=reason,
            )
            raise RejectedTransactionError(reason, tx_hash=tx_hash)

        target_block = receipt["blockNumber"] + self.confirmations - 1
        while True:
            with self._translate_errors(f"confirm {call.describe()}", tx_hash=tx_hash):
                head = await self._w3.eth.block_number
            if head >= target_block:
                break
            if loop.time() > deadline:
                raise TransientNetworkError(
                    f"{call.describe()} not {self.confirmations} blocks deep on "
                    f"{self.network_name} after {self.confirmation_timeout_seconds}s",
                    tx_hash=tx_hash,
                )
            await asyncio.sleep(self.poll_interval_seconds)

        confirmed = ConfirmedReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            confirmations=head - receipt["blockNumber"] + 1,
            gas_used=receipt.get("gasUsed", 0),
            status=receipt["status"],
        )
        logger.info(
            "tx_confirmed",
            network=self.network_name,
            call=call.describe(),
            tx_hash=tx_hash,
            block=confirmed.block_number,
            confirmations=confirmed.confirmations,
        )
        return confirmed

    async def _revert_reason_for(self, call: ContractCall, block_number: int) -> str:
        """Replay a reverted call to recover its revert reason."""
        try:
            await self._function(call).call(
                {"from": self.address, "value": call.value},
                block_identifier=block_number,
            )
        except ContractLogicError as e:
            return _revert_reason(e)
        except (Web3RPCError, aiohttp.ClientError, asyncio.TimeoutError, ProviderConnectionError) as e:
            logger.debug("revert_replay_failed", network=self.network_name, error=str(e))
        return "execution reverted"

    async def has_code(self, address: str) -> bool:
        if self._w3 is None:
            await self.connect()

        with self._translate_errors("get_code"):
            code = await self._w3.eth.get_code(Web3.to_checksum_address(address))
        return len(code) > 0

    async def native_balance(self, address: Optional[str] = None) -> int:
        if self._w3 is None:
            await self.connect()

        with self._translate_errors("get_balance"):
            return await self._w3.eth.get_balance(
                Web3.to_checksum_address(address or self.address)
            )
