"""
Configuration management for the interchain token linker.

Supports configuration via environment variables and .env files. The
resulting LinkerConfig is frozen and passed explicitly to every component.
"""

from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from tokenlink.errors import ConfigurationError


# Axelar testnet deployments (same address on every supported chain)
DEFAULT_TOKEN_SERVICE_ADDRESS = "0xB5FB4BE02232B1bBA4dC8f81dc24C26980dE9e3C"
DEFAULT_TOKEN_FACTORY_ADDRESS = "0x83a93500d23Fbc3e82B410aD07A6a9F7A0670D66"

WEI_PER_ETHER = 10**18


def require_address(value, label: str) -> str:
    """
    Return ``value`` if it is a well-formed EVM address.

    Lower-case and checksummed forms are accepted; mixed case must carry a
    valid checksum.

    Raises:
        ConfigurationError: If ``value`` is not an address
    """
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ConfigurationError(f"{label} is not a valid address: {value!r}")
    return value


def _check_address(value: Optional[str], label: str) -> Optional[str]:
    # Empty means unset; presence is enforced by require_link_inputs
    if value:
        try:
            require_address(value, label)
        except ConfigurationError as e:
            raise ValueError(e.message) from e
    return value


class ManagerMode(IntEnum):
    """Token manager types understood by the Interchain Token Service."""
    NATIVE_INTEROP = 0
    MINT_BURN_FROM = 1
    LOCK_UNLOCK = 2
    LOCK_UNLOCK_FEE = 3
    MINT_BURN = 4

    @property
    def is_lock_release(self) -> bool:
        return self in (ManagerMode.LOCK_UNLOCK, ManagerMode.LOCK_UNLOCK_FEE)

    @property
    def is_mint_burn(self) -> bool:
        return self in (ManagerMode.MINT_BURN, ManagerMode.MINT_BURN_FROM)

    @classmethod
    def parse(cls, value) -> "ManagerMode":
        """Accept enum members, integers, or names like ``"mint_burn"``."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls(int(text))
            try:
                return cls[text.upper().replace("-", "_")]
            except KeyError:
                raise ValueError(f"Unknown manager mode: {value!r}")
        return cls(value)


class LinkSide(str, Enum):
    """The two ends of a token link."""
    ORIGIN = "origin"
    DESTINATION = "destination"

    @property
    def other(self) -> "LinkSide":
        return LinkSide.DESTINATION if self is LinkSide.ORIGIN else LinkSide.ORIGIN


class NetworkSettings(BaseModel):
    """
    Settings for one network participating in the link.

    Attributes:
        name: Chain name as known to the interchain protocol (e.g. "base-sepolia")
        rpc_url: JSON-RPC endpoint
        chain_id: Expected EVM chain id (checked on connect when set)
        token_address: Deployed token contract on this network
        manager_mode: Token manager type to register for this end of the link
        token_service_address: Interchain token service contract
        token_factory_address: Interchain token factory contract
        confirmations: Blocks to wait before a transaction counts as final
    """

    model_config = ConfigDict(frozen=True)

    name: str = ""
    rpc_url: str = ""
    chain_id: Optional[int] = None
    token_address: str = ""
    manager_mode: Optional[ManagerMode] = None
    token_service_address: str = DEFAULT_TOKEN_SERVICE_ADDRESS
    token_factory_address: str = DEFAULT_TOKEN_FACTORY_ADDRESS
    confirmations: int = Field(default=1, ge=1)

    @field_validator("manager_mode", mode="before")
    @classmethod
    def _parse_manager_mode(cls, value):
        if value is None or value == "":
            return None
        return ManagerMode.parse(value)

    @field_validator("token_address", "token_service_address", "token_factory_address")
    @classmethod
    def _validate_address(cls, value, info):
        return _check_address(value, info.field_name)


class NetworkIdentity(BaseModel):
    """One ledger endpoint together with the key that signs on it."""

    model_config = ConfigDict(frozen=True)

    name: str
    rpc_url: str
    chain_id: Optional[int]
    private_key: SecretStr
    confirmations: int = 1


class LinkerConfig(BaseSettings):
    """
    Configuration settings for the token linker.

    All settings can be configured via environment variables with the LINKER_
    prefix; per-network settings use a double underscore, for example
    ``LINKER_ORIGIN__RPC_URL``.
    """

    model_config = SettingsConfigDict(
        env_prefix="LINKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    # Signing
    private_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("LINKER_PRIVATE_KEY", "PRIVATE_KEY"),
        description="Hex private key used on both networks",
    )

    # Networks
    origin: NetworkSettings = Field(
        default_factory=lambda: NetworkSettings(
            name="ethereum-sepolia",
            rpc_url="https://ethereum-sepolia.publicnode.com",
            chain_id=11155111,
            manager_mode=ManagerMode.LOCK_UNLOCK,
        ),
        description="Network holding the pre-existing token supply",
    )
    destination: NetworkSettings = Field(
        default_factory=lambda: NetworkSettings(
            name="base-sepolia",
            rpc_url="https://sepolia.base.org",
            chain_id=84532,
            manager_mode=ManagerMode.MINT_BURN,
        ),
        description="Network receiving the linked token",
    )

    link_name: Optional[str] = Field(
        default=None,
        description="Checkpoint key; derived from the networks and tokens when unset",
    )

    # Protocol fees (wei)
    metadata_min_gas_amount: int = Field(default=WEI_PER_ETHER // 10_000, ge=0)
    metadata_value: int = Field(default=WEI_PER_ETHER // 1_000, ge=0)
    registration_value: int = Field(default=WEI_PER_ETHER // 1_000, ge=0)
    link_gas_value: int = Field(default=WEI_PER_ETHER // 1_000, ge=0)
    transfer_gas_value: int = Field(default=WEI_PER_ETHER // 1_000, ge=0)

    # Transfers
    receiver_address: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("LINKER_RECEIVER_ADDRESS", "RECEIVER_ADDRESS"),
    )
    transfer_amount: Optional[Decimal] = Field(
        default=None,
        description="Transfer amount in whole token units",
    )

    @field_validator("receiver_address")
    @classmethod
    def _validate_receiver(cls, value):
        return _check_address(value, "receiver_address")

    # Ledger interaction
    confirmation_timeout_seconds: int = Field(default=120, ge=1)
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    require_manager_code: bool = Field(
        default=True,
        description="Wait until manager contracts are deployed before resolving them",
    )

    # Retry settings
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_initial_delay_seconds: float = Field(default=2.0, ge=0)
    retry_max_delay_seconds: float = Field(default=60.0, ge=0)

    # Persistence
    database_url: str = Field(
        default="sqlite+aiosqlite:///tokenlink.db",
        description="SQLAlchemy database URL for checkpoint persistence",
    )

    # Logging settings
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    def network(self, side: LinkSide) -> NetworkSettings:
        """Get the settings for one end of the link."""
        return self.origin if side is LinkSide.ORIGIN else self.destination

    def identity(self, side: LinkSide) -> NetworkIdentity:
        """Build the signing identity for one end of the link."""
        if self.private_key is None:
            raise ConfigurationError("Missing private key (LINKER_PRIVATE_KEY)")
        settings = self.network(side)
        return NetworkIdentity(
            name=settings.name,
            rpc_url=settings.rpc_url,
            chain_id=settings.chain_id,
            private_key=self.private_key,
            confirmations=settings.confirmations,
        )

    @property
    def link_id(self) -> str:
        if self.link_name:
            return self.link_name
        return (
            f"{self.origin.name}:{self.origin.token_address.lower()}"
            f"->{self.destination.name}:{self.destination.token_address.lower()}"
        )

    def require_link_inputs(self) -> None:
        """
        Validate everything the linking workflow needs before any network call.

        Raises:
            ConfigurationError: If a required value is missing or the manager
                modes do not form one lock-release end and one mint-burn end
        """
        missing = []
        if self.private_key is None or not self.private_key.get_secret_value():
            missing.append("private_key")
        for side in LinkSide:
            settings = self.network(side)
            for field_name in ("name", "rpc_url", "token_address"):
                if not getattr(settings, field_name):
                    missing.append(f"{side.value}.{field_name}")
            if settings.manager_mode is None:
                missing.append(f"{side.value}.manager_mode")
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        if self.origin.name == self.destination.name:
            raise ConfigurationError("Origin and destination must be different networks")

        validate_manager_modes(self.origin.manager_mode, self.destination.manager_mode)

    def require_transfer_inputs(self) -> None:
        """Validate the inputs a transfer needs before any network call."""
        missing = []
        if self.private_key is None:
            missing.append("private_key")
        if not self.receiver_address:
            missing.append("receiver_address")
        if self.transfer_amount is None:
            missing.append("transfer_amount")
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
        if self.transfer_amount <= 0:
            raise ConfigurationError("transfer_amount must be greater than zero")


def validate_manager_modes(origin_mode: ManagerMode, destination_mode: ManagerMode) -> None:
    """
    Check that exactly one end of a link escrows supply and the other mints it.

    Raises:
        ConfigurationError: If both ends use the same manager family or a mode
            outside the lock-release / mint-burn families
    """
    modes = (origin_mode, destination_mode)
    lock_ends = sum(1 for mode in modes if mode.is_lock_release)
    mint_ends = sum(1 for mode in modes if mode.is_mint_burn)
    if lock_ends != 1 or mint_ends != 1:
        raise ConfigurationError(
            "Exactly one end of the link must use a lock-release manager and the "
            f"other a mint-burn manager (origin={origin_mode.name}, "
            f"destination={destination_mode.name})"
        )


def load_config(**overrides) -> LinkerConfig:
    """
    Load configuration from the environment, applying explicit overrides.

    Raises:
        ConfigurationError: If the settings fail validation
    """
    try:
        return LinkerConfig(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
