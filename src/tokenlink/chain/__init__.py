"""
Chain Integration Layer.

Provides abstracted access to EVM ledgers: transaction submission with
confirmation-depth waits, and read-only contract queries.
"""

from tokenlink.chain.interface import (
    ChainClient,
    ConfirmedReceipt,
    ContractCall,
    TOKEN_ABI,
    TOKEN_FACTORY_ABI,
    TOKEN_SERVICE_ABI,
)
from tokenlink.chain.web3_client import Web3ChainClient

__all__ = [
    "ChainClient",
    "ConfirmedReceipt",
    "ContractCall",
    "TOKEN_ABI",
    "TOKEN_FACTORY_ABI",
    "TOKEN_SERVICE_ABI",
    "Web3ChainClient",
]
