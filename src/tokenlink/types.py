"""
Token link data types.

Contains the value types exchanged between the gateway, the role grantor,
the transfer coordinator and the workflow.
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from tokenlink.config import ManagerMode, require_address
from tokenlink.errors import ConfigurationError

# Hex-encoded 32-byte values ("0x" + 64 hex chars)
LinkSalt = str
TokenId = str

ZERO_ADDRESS = "0x" + "00" * 20


def new_link_salt() -> LinkSalt:
    """Generate a fresh random salt for a new token link."""
    return "0x" + secrets.token_hex(32)


def to_bytes32(value: str) -> bytes:
    """Decode a 0x-prefixed 32-byte hex string."""
    text = value[2:] if value.startswith("0x") else value
    raw = bytes.fromhex(text)
    if len(raw) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(raw)}")
    return raw


def bytes32_to_hex(value) -> str:
    """Normalize a bytes32 value returned by a contract call."""
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return "0x" + bytes(value).hex()


def address_bytes(address: str) -> bytes:
    """Encode an EVM address as raw bytes, as the protocol expects for remote addresses."""
    text = address[2:] if address.startswith("0x") else address
    return bytes.fromhex(text)


@dataclass(frozen=True)
class TokenDescriptor:
    """One deployed token contract on one network."""
    address: str
    network: str
    decimals: int = 18

    def to_base_units(self, amount: Decimal) -> int:
        """Convert a whole-token amount to base units."""
        return int(Decimal(amount) * (Decimal(10) ** self.decimals))

    def from_base_units(self, amount: int) -> Decimal:
        return Decimal(amount) / (Decimal(10) ** self.decimals)


@dataclass(frozen=True)
class ManagerHandle:
    """The protocol contract allowed to move value for a linked token on one network."""
    address: str
    network: str
    mode: ManagerMode

    def to_dict(self) -> dict:
        return {"address": self.address, "network": self.network, "mode": self.mode.name}

    @classmethod
    def from_dict(cls, data: dict) -> "ManagerHandle":
        return cls(
            address=data["address"],
            network=data["network"],
            mode=ManagerMode.parse(data["mode"]),
        )


@dataclass(frozen=True)
class TransferRequest:
    """
    One cross-chain value movement.

    Attributes:
        token_id: Linked token identifier
        source_network: Network the tokens leave
        destination_network: Network the tokens arrive on
        receiver: Receiver address on the destination network
        amount: Amount in base units
        gas_budget: Native value (wei) paid for cross-chain execution
    """
    token_id: TokenId
    source_network: str
    destination_network: str
    receiver: str
    amount: int
    gas_budget: int

    def __post_init__(self):
        if self.amount <= 0:
            raise ConfigurationError(f"Transfer amount must be positive, got {self.amount}")
        if self.gas_budget < 0:
            raise ConfigurationError("Transfer gas budget cannot be negative")
        if self.source_network == self.destination_network:
            raise ConfigurationError("Transfer source and destination must differ")
        require_address(self.receiver, "receiver")


@dataclass
class TransferReceipt:
    """Outcome of a submitted interchain transfer."""
    request: TransferRequest
    approval_tx_hash: Optional[str]
    transfer_tx_hash: str
    submitted_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "token_id": self.request.token_id,
            "source_network": self.request.source_network,
            "destination_network": self.request.destination_network,
            "receiver": self.request.receiver,
            "amount": str(self.request.amount),
            "approval_tx_hash": self.approval_tx_hash,
            "transfer_tx_hash": self.transfer_tx_hash,
            "submitted_at": self.submitted_at.isoformat(),
        }
