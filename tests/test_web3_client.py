"""
Tests for the web3 chain client.

The RPC side is replaced with a small stand-in for ``AsyncWeb3.eth`` so
confirmation depth, error mapping and resubmission can be checked offline.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from pydantic import SecretStr
from web3.exceptions import ContractLogicError, TimeExhausted

from tokenlink.chain.interface import ContractCall, TOKEN_ABI, TOKEN_FACTORY_ABI, TOKEN_SERVICE_ABI
from tokenlink.chain.web3_client import Web3ChainClient, load_abi
from tokenlink.config import NetworkIdentity
from tokenlink.errors import ConfigurationError, RejectedTransactionError, TransientNetworkError

from conftest import TEST_PRIVATE_KEY


TX_HASH = "0x" + "ab" * 32


class StubEth:
    """Stand-in for ``AsyncWeb3.eth`` with a scripted chain head."""

    def __init__(self, receipt, heads):
        self.receipt = receipt
        self._heads = iter(heads)
        self.head_reads = 0

    @property
    def block_number(self):
        async def head():
            self.head_reads += 1
            return next(self._heads)
        return head()

    async def wait_for_transaction_receipt(self, tx_hash, timeout, poll_latency):
        return self.receipt


@pytest.fixture
def identity():
    return NetworkIdentity(
        name="testnet",
        rpc_url="http://localhost:8545",
        chain_id=None,
        private_key=SecretStr(TEST_PRIVATE_KEY),
        confirmations=3,
    )


@pytest.fixture
def client(identity):
    return Web3ChainClient(identity, confirmation_timeout_seconds=5, poll_interval_seconds=0)


@pytest.fixture
def call():
    return ContractCall("0x" + "0a" * 20, TOKEN_ABI, "approve", ("0x" + "0b" * 20, 5))


def attach(client, eth):
    client._w3 = SimpleNamespace(eth=eth)


class TestAbis:
    """Tests for the bundled ABIs."""

    @pytest.mark.parametrize("name, functions", [
        (TOKEN_SERVICE_ABI, {"registerTokenMetadata", "interchainTransfer", "tokenManagerAddress"}),
        (TOKEN_FACTORY_ABI, {"registerCustomToken", "linkToken", "linkedTokenId"}),
        (TOKEN_ABI, {"approve", "balanceOf", "grantRole", "hasRole", "MINTER_ROLE", "BURNER_ROLE"}),
    ])
    def test_bundled_abis(self, name, functions):
        names = {entry.get("name") for entry in load_abi(name) if entry.get("type") == "function"}
        assert functions <= names

    def test_unknown_abi(self):
        with pytest.raises(ConfigurationError):
            load_abi("does_not_exist")


class TestContractCall:
    """Tests for call fingerprints."""

    def test_fingerprint_ignores_address_case(self):
        lower = ContractCall("0x" + "ab" * 20, TOKEN_ABI, "approve", ("0x" + "cd" * 20, 1))
        upper = ContractCall("0x" + "AB" * 20, TOKEN_ABI, "approve", ("0x" + "CD" * 20, 1))
        assert lower.fingerprint == upper.fingerprint

    def test_fingerprint_covers_args_and_value(self):
        base = ContractCall("0x" + "ab" * 20, TOKEN_SERVICE_ABI, "registerTokenMetadata", ("0x01", 1), value=2)
        assert base.fingerprint != ContractCall(base.address, base.abi, base.function, ("0x01", 2), 2).fingerprint
        assert base.fingerprint != ContractCall(base.address, base.abi, base.function, ("0x01", 1), 3).fingerprint

    def test_bytes_args(self):
        call = ContractCall("0x" + "ab" * 20, TOKEN_ABI, "grantRole", (b"\x01\x02", "0x" + "cd" * 20))
        assert "0x0102" in call.fingerprint


class TestConfirmation:
    """Tests for waiting on confirmation depth."""

    @pytest.mark.asyncio
    async def test_waits_for_depth(self, client, call):
        eth = StubEth({"status": 1, "blockNumber": 10, "gasUsed": 21000}, heads=[10, 11, 12, 13])
        attach(client, eth)

        receipt = await client._await_confirmation(call, TX_HASH)

        assert receipt.tx_hash == TX_HASH
        assert receipt.block_number == 10
        assert receipt.confirmations == 3
        assert receipt.gas_used == 21000
        assert eth.head_reads == 3

    @pytest.mark.asyncio
    async def test_reverted_receipt_is_rejected(self, client, call):
        attach(client, StubEth({"status": 0, "blockNumber": 10}, heads=[]))
        client._revert_reason_for = AsyncMock(return_value="ERC20: insufficient allowance")

        with pytest.raises(RejectedTransactionError, match="insufficient allowance") as exc_info:
            await client._await_confirmation(call, TX_HASH)

        assert exc_info.value.tx_hash == TX_HASH

    @pytest.mark.asyncio
    async def test_depth_timeout_is_transient(self, identity, call):
        client = Web3ChainClient(identity, confirmation_timeout_seconds=1, poll_interval_seconds=0.01)
        attach(client, StubEth({"status": 1, "blockNumber": 10}, heads=[10] * 1000))

        with pytest.raises(TransientNetworkError) as exc_info:
            await client._await_confirmation(call, TX_HASH)

        assert exc_info.value.tx_hash == TX_HASH


class TestSubmit:
    """Tests for broadcast deduplication."""

    @pytest.mark.asyncio
    async def test_retry_waits_on_pending_transaction(self, client, call):
        attach(client, StubEth({"status": 1, "blockNumber": 5}, heads=[5, 6, 7]))
        client._pending[call.fingerprint] = TX_HASH
        client._broadcast = AsyncMock()

        receipt = await client.submit(call)

        client._broadcast.assert_not_called()
        assert receipt.tx_hash == TX_HASH
        assert call.fingerprint not in client._pending

    @pytest.mark.asyncio
    async def test_transient_wait_keeps_pending_entry(self, client, call):
        attach(client, SimpleNamespace())
        client._broadcast = AsyncMock(return_value=TX_HASH)
        client._await_confirmation = AsyncMock(side_effect=TransientNetworkError("timeout", tx_hash=TX_HASH))

        with pytest.raises(TransientNetworkError):
            await client.submit(call)

        assert client._pending[call.fingerprint] == TX_HASH

    @pytest.mark.asyncio
    async def test_rejection_clears_pending_entry(self, client, call):
        attach(client, SimpleNamespace())
        client._broadcast = AsyncMock(return_value=TX_HASH)
        client._await_confirmation = AsyncMock(side_effect=RejectedTransactionError("reverted", tx_hash=TX_HASH))

        with pytest.raises(RejectedTransactionError):
            await client.submit(call)

        assert call.fingerprint not in client._pending


class TestErrorMapping:
    """Tests for mapping web3 exceptions onto linker errors."""

    def test_contract_logic_error_is_rejection(self, client):
        with pytest.raises(RejectedTransactionError):
            with client._translate_errors("submit"):
                raise ContractLogicError("execution reverted: TokenMetadataAlreadyRegistered")

    def test_time_exhausted_is_transient(self, client):
        with pytest.raises(TransientNetworkError) as exc_info:
            with client._translate_errors("confirm", tx_hash=TX_HASH):
                raise TimeExhausted("no receipt")
        assert exc_info.value.tx_hash == TX_HASH

    def test_connection_errors_are_transient(self, client):
        with pytest.raises(TransientNetworkError):
            with client._translate_errors("read"):
                raise asyncio.TimeoutError()
        with pytest.raises(TransientNetworkError):
            with client._translate_errors("read"):
                raise ConnectionResetError("reset by peer")

    def test_signer_address_from_key(self, client):
        assert client.address.startswith("0x")
        assert len(client.address) == 42
