"""
Interchain Token Service integration.

Typed access to the protocol's token service and token factory, and the
approve-then-transfer sequence for moving linked tokens.
"""

from tokenlink.its.gateway import GatewayEndpoint, TokenRegistryGateway
from tokenlink.its.transfer import TransferCoordinator

__all__ = [
    "GatewayEndpoint",
    "TokenRegistryGateway",
    "TransferCoordinator",
]
