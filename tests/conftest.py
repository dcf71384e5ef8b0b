"""
Pytest configuration and shared fixtures for the test suite.
"""

import asyncio
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest
from pydantic import SecretStr

from tokenlink.chain.interface import ChainClient, ConfirmedReceipt, ContractCall
from tokenlink.config import LinkerConfig, ManagerMode, NetworkSettings
from tokenlink.errors import RejectedTransactionError, TransientNetworkError
from tokenlink.retry import RetryPolicy


# ============================================================================
# Test Data
# ============================================================================

SIGNER = "0x" + "a1" * 20
RECEIVER = "0x" + "b2" * 20
OUTSIDER = "0x" + "c3" * 20

TOKEN_A = "0x" + "0a" * 20
TOKEN_B = "0x" + "0b" * 20

ORIGIN = "ethereum-sepolia"
DESTINATION = "base-sepolia"

UNIT = 10**18
INITIAL_SUPPLY = 10_000_000 * UNIT

TEST_PRIVATE_KEY = "0x" + "11" * 32

ADMIN_ROLE_ID = b"\x00" * 32


def role_id(name: str) -> bytes:
    return sha256(name.encode()).digest()


def derive_token_id(minter: str, salt: bytes) -> bytes:
    return sha256(bytes.fromhex(minter[2:].lower()) + salt).digest()


def manager_address_for(token_id: bytes) -> str:
    return "0x" + sha256(b"manager" + token_id).hexdigest()[:40]


def to_address(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value.lower()


# ============================================================================
# Fake Ledger
# ============================================================================

class FakeToken:
    """In-memory mintable token with role-based access control."""

    def __init__(self, address: str, admin: str, supply: int = 0, decimals: int = 18):
        self.address = address.lower()
        self.decimals = decimals
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}
        self.roles: Dict[bytes, Set[str]] = {
            ADMIN_ROLE_ID: {admin.lower()},
            role_id("MINTER_ROLE"): {admin.lower()},
            role_id("BURNER_ROLE"): {admin.lower()},
        }
        self.total_supply = 0
        if supply:
            self.mint(admin, supply)

    def balance(self, account: str) -> int:
        return self.balances.get(account.lower(), 0)

    def has_role(self, role: bytes, account: str) -> bool:
        return account.lower() in self.roles.get(role, set())

    def mint(self, to: str, amount: int) -> None:
        self.balances[to.lower()] = self.balance(to) + amount
        self.total_supply += amount

    def burn(self, account: str, amount: int) -> None:
        if self.balance(account) < amount:
            raise RejectedTransactionError("ERC20: burn amount exceeds balance")
        self.balances[account.lower()] = self.balance(account) - amount
        self.total_supply -= amount

    def move(self, sender: str, to: str, amount: int) -> None:
        if self.balance(sender) < amount:
            raise RejectedTransactionError("ERC20: transfer amount exceeds balance")
        self.balances[sender.lower()] = self.balance(sender) - amount
        self.balances[to.lower()] = self.balance(to) + amount

    def spend_allowance(self, owner: str, spender: str, amount: int) -> None:
        key = (owner.lower(), spender.lower())
        if self.allowances.get(key, 0) < amount:
            raise RejectedTransactionError("ERC20: insufficient allowance")
        self.allowances[key] -= amount


@dataclass
class FakeManager:
    address: str
    mode: ManagerMode
    token: str


class FakeInterchain:
    """Relays protocol messages between fake ledgers synchronously."""

    def __init__(self):
        self.ledgers: Dict[str, "FakeLedger"] = {}

    def add(self, ledger: "FakeLedger") -> None:
        self.ledgers[ledger.network_name] = ledger

    def deliver_link(self, destination: str, token_id: bytes, token: str, mode: ManagerMode) -> None:
        ledger = self.ledgers[destination]
        if token.lower() not in ledger.metadata_registered:
            raise RejectedTransactionError(f"token metadata not registered on {destination}")
        if token_id in ledger.managers:
            raise RejectedTransactionError("TokenManager already deployed")
        ledger.deploy_manager(token_id, token, mode)

    def check_delivery(self, destination: str, token_id: bytes, amount: int) -> FakeManager:
        ledger = self.ledgers.get(destination)
        if ledger is None or token_id not in ledger.managers:
            raise RejectedTransactionError(f"token not linked on {destination}")
        manager = ledger.managers[token_id]
        token = ledger.tokens[manager.token]
        if manager.mode.is_mint_burn:
            if not token.has_role(role_id("MINTER_ROLE"), manager.address):
                raise RejectedTransactionError("manager cannot mint on destination")
        elif token.balance(manager.address) < amount:
            raise RejectedTransactionError("insufficient escrow on destination")
        return manager

    def deliver_transfer(self, destination: str, token_id: bytes, receiver: str, amount: int) -> None:
        manager = self.check_delivery(destination, token_id, amount)
        token = self.ledgers[destination].tokens[manager.token]
        if manager.mode.is_mint_burn:
            token.mint(receiver, amount)
        else:
            token.move(manager.address, receiver, amount)


class FakeLedger(ChainClient):
    """
    In-memory ChainClient simulating the token service, the token factory and
    mintable tokens on one network.

    Every submit either applies fully or raises without changing state.
    """

    def __init__(
        self,
        network_name: str,
        interchain: FakeInterchain,
        signer: str = SIGNER,
        token_service: str = "0x" + "51" * 20,
        token_factory: str = "0x" + "fa" * 20,
    ):
        self.network_name = network_name
        self.interchain = interchain
        self.signer = signer.lower()
        self.token_service = token_service.lower()
        self.token_factory = token_factory.lower()

        self.tokens: Dict[str, FakeToken] = {}
        self.metadata_registered: Set[str] = set()
        self.salts_used: Set[Tuple[str, bytes]] = set()
        self.managers: Dict[bytes, FakeManager] = {}
        self.code: Set[str] = set()

        self.block = 0
        self.connected = False
        self.submitted: List[ContractCall] = []
        self.reads: List[ContractCall] = []

        self._failures: List[Tuple[str, Exception, bool]] = []
        self._pending: Dict[str, ConfirmedReceipt] = {}
        self.gate: Optional[asyncio.Event] = None
        self.waiting = False
        self.after_submit: Optional[Callable[[ContractCall], None]] = None

        interchain.add(self)

    # Test helpers

    def add_token(self, address: str, supply: int = 0, decimals: int = 18) -> FakeToken:
        token = FakeToken(address, self.signer, supply, decimals)
        self.tokens[token.address] = token
        self.code.add(token.address)
        return token

    def deploy_manager(self, token_id: bytes, token: str, mode: ManagerMode) -> FakeManager:
        manager = FakeManager(manager_address_for(token_id), mode, token.lower())
        self.managers[token_id] = manager
        self.code.add(manager.address)
        return manager

    def fail(self, function: str, error: Exception, after_commit: bool = False) -> None:
        """
        Raise ``error`` on the next submit or read of ``function``.

        With ``after_commit`` the call is applied first. A transient error
        raised after the commit leaves the transaction pending, and a resubmit
        of the same call waits on it instead of applying it again, as the web3
        client does.
        """
        self._failures.append((function, error, after_commit))

    def calls(self, function: str) -> List[ContractCall]:
        return [c for c in self.submitted if c.function == function]

    def _take_failure(self, function: str, after_commit: bool) -> Optional[Exception]:
        for index, (name, error, after) in enumerate(self._failures):
            if name == function and after == after_commit:
                del self._failures[index]
                return error
        return None

    # ChainClient

    @property
    def address(self) -> str:
        return self.signer

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def submit(self, call: ContractCall) -> ConfirmedReceipt:
        if self.gate is not None:
            self.waiting = True
            await self.gate.wait()
            self.waiting = False

        if call.fingerprint in self._pending:
            return self._pending.pop(call.fingerprint)

        self.submitted.append(call)

        error = self._take_failure(call.function, after_commit=False)
        if error is not None:
            raise error

        getattr(self, f"_tx_{call.function}")(call)
        self.block += 1
        receipt = ConfirmedReceipt(
            tx_hash="0x" + sha256(f"{self.network_name}:{self.block}".encode()).hexdigest(),
            block_number=self.block,
            confirmations=1,
        )

        if self.after_submit:
            self.after_submit(call)

        error = self._take_failure(call.function, after_commit=True)
        if error is not None:
            if isinstance(error, TransientNetworkError):
                error.tx_hash = receipt.tx_hash
                self._pending[call.fingerprint] = receipt
            raise error
        return receipt

    async def read(self, call: ContractCall) -> Any:
        self.reads.append(call)
        error = self._take_failure(call.function, after_commit=False)
        if error is not None:
            raise error
        return getattr(self, f"_view_{call.function}")(call)

    async def has_code(self, address: str) -> bool:
        return address.lower() in self.code

    async def native_balance(self, address: Optional[str] = None) -> int:
        return 10 * UNIT

    # Token service

    def _tx_registerTokenMetadata(self, call: ContractCall) -> None:
        token, gas_value = call.args
        if call.value < gas_value:
            raise RejectedTransactionError("insufficient value for gas")
        if token.lower() not in self.tokens:
            raise RejectedTransactionError("not a token")
        if token.lower() in self.metadata_registered:
            raise RejectedTransactionError("TokenMetadataAlreadyRegistered")
        self.metadata_registered.add(token.lower())

    def _view_tokenManagerAddress(self, call: ContractCall) -> str:
        (token_id,) = call.args
        return manager_address_for(token_id)

    def _tx_interchainTransfer(self, call: ContractCall) -> None:
        token_id, destination, receiver, amount, _metadata, gas_value = call.args
        if call.value != gas_value:
            raise RejectedTransactionError("value does not match gas value")
        manager = self.managers.get(token_id)
        if manager is None:
            raise RejectedTransactionError("TokenManagerDoesNotExist")
        token = self.tokens[manager.token]
        if token.balance(self.signer) < amount:
            raise RejectedTransactionError("ERC20: transfer amount exceeds balance")
        if token.allowances.get((self.signer, manager.address), 0) < amount:
            raise RejectedTransactionError("ERC20: insufficient allowance")
        if manager.mode.is_mint_burn and not token.has_role(role_id("BURNER_ROLE"), manager.address):
            raise RejectedTransactionError("manager cannot burn")

        self.interchain.check_delivery(destination, token_id, amount)

        token.spend_allowance(self.signer, manager.address, amount)
        if manager.mode.is_mint_burn:
            token.burn(self.signer, amount)
        else:
            token.move(self.signer, manager.address, amount)
        self.interchain.deliver_transfer(destination, token_id, to_address(receiver), amount)

    # Token factory

    def _view_linkedTokenId(self, call: ContractCall) -> bytes:
        deployer, salt = call.args
        return derive_token_id(deployer, salt)

    def _tx_registerCustomToken(self, call: ContractCall) -> None:
        salt, token, mode, operator = call.args
        key = (self.signer, salt)
        if key in self.salts_used:
            raise RejectedTransactionError("TokenAlreadyRegistered: salt already used")
        if token.lower() not in self.metadata_registered:
            raise RejectedTransactionError("token metadata not registered")
        self.salts_used.add(key)
        self.deploy_manager(derive_token_id(self.signer, salt), token, ManagerMode(mode))

    def _tx_linkToken(self, call: ContractCall) -> None:
        salt, destination, destination_token, mode, _params, gas_value = call.args
        if call.value != gas_value:
            raise RejectedTransactionError("value does not match gas value")
        token_id = derive_token_id(self.signer, salt)
        if token_id not in self.managers:
            raise RejectedTransactionError("NotRegistered")
        self.interchain.deliver_link(destination, token_id, to_address(destination_token), ManagerMode(mode))

    # Tokens

    def _token(self, call: ContractCall) -> FakeToken:
        return self.tokens[call.address.lower()]

    def _view_decimals(self, call):
        return self._token(call).decimals

    def _view_totalSupply(self, call):
        return self._token(call).total_supply

    def _view_balanceOf(self, call):
        return self._token(call).balance(call.args[0])

    def _view_allowance(self, call):
        owner, spender = call.args
        return self._token(call).allowances.get((owner.lower(), spender.lower()), 0)

    def _view_MINTER_ROLE(self, call):
        return role_id("MINTER_ROLE")

    def _view_BURNER_ROLE(self, call):
        return role_id("BURNER_ROLE")

    def _view_DEFAULT_ADMIN_ROLE(self, call):
        return ADMIN_ROLE_ID

    def _view_hasRole(self, call):
        role, account = call.args
        return self._token(call).has_role(role, account)

    def _tx_approve(self, call):
        spender, amount = call.args
        self._token(call).allowances[(self.signer, spender.lower())] = amount

    def _tx_grantRole(self, call):
        role, account = call.args
        token = self._token(call)
        if not token.has_role(ADMIN_ROLE_ID, self.signer):
            raise RejectedTransactionError("AccessControlUnauthorizedAccount")
        token.roles.setdefault(role, set()).add(account.lower())


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def interchain() -> FakeInterchain:
    return FakeInterchain()


@pytest.fixture
def origin_ledger(interchain) -> FakeLedger:
    """Origin network holding the full supply of token A."""
    ledger = FakeLedger(ORIGIN, interchain)
    ledger.add_token(TOKEN_A, supply=INITIAL_SUPPLY)
    return ledger


@pytest.fixture
def destination_ledger(interchain) -> FakeLedger:
    """Destination network with a freshly deployed, empty token B."""
    ledger = FakeLedger(DESTINATION, interchain)
    ledger.add_token(TOKEN_B)
    return ledger


def make_config(
    tmp_path,
    origin_mode: ManagerMode = ManagerMode.LOCK_UNLOCK,
    destination_mode: ManagerMode = ManagerMode.MINT_BURN,
    **overrides,
) -> LinkerConfig:
    values = dict(
        _env_file=None,
        private_key=SecretStr(TEST_PRIVATE_KEY),
        origin=NetworkSettings(
            name=ORIGIN,
            rpc_url="http://localhost:8545",
            token_address=TOKEN_A,
            manager_mode=origin_mode,
            token_service_address="0x" + "51" * 20,
            token_factory_address="0x" + "fa" * 20,
        ),
        destination=NetworkSettings(
            name=DESTINATION,
            rpc_url="http://localhost:8546",
            token_address=TOKEN_B,
            manager_mode=destination_mode,
            token_service_address="0x" + "51" * 20,
            token_factory_address="0x" + "fa" * 20,
        ),
        database_url=f"sqlite+aiosqlite:///{tmp_path}/checkpoints.db",
        receiver_address=RECEIVER,
        retry_max_attempts=3,
        retry_initial_delay_seconds=0,
        retry_max_delay_seconds=0,
    )
    values.update(overrides)
    return LinkerConfig(**values)


@pytest.fixture
def test_config(tmp_path) -> LinkerConfig:
    """Create a test configuration: lock-release on origin, mint-burn on destination."""
    return make_config(tmp_path)


@pytest.fixture
def no_delay_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0)
