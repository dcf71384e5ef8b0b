"""
Role Grantor - hands mint and burn capability to a token manager.
"""

from typing import Awaitable, Callable, Iterable, List, Optional

import structlog

from tokenlink.errors import RejectedTransactionError
from tokenlink.token.contract import TokenContract

logger = structlog.get_logger(__name__)

MINTER_ROLE = "MINTER_ROLE"
BURNER_ROLE = "BURNER_ROLE"
DEFAULT_ADMIN_ROLE = "DEFAULT_ADMIN_ROLE"

# Grant order matters: a partially granted token always holds mint first
MINT_BURN_ROLES = (MINTER_ROLE, BURNER_ROLE)


class RoleGrantor:
    """
    Grants mint and burn capability on a token contract.

    Each grant is its own confirmed transaction. Callers that need to track
    progress grant-by-grant pass an ``on_granted`` callback, which runs after
    each grant is confirmed and before the next one is submitted.
    """

    async def grant_mint_burn(
        self,
        token: TokenContract,
        grantee: str,
        already_granted: Iterable[str] = (),
        on_granted: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> List[str]:
        """
        Grant MINTER_ROLE then BURNER_ROLE to ``grantee``.

        Args:
            token: Token contract, connected with the administrator's key
            grantee: Address receiving the roles (normally the token manager)
            already_granted: Roles recorded as granted by an earlier run
            on_granted: Awaited with the role name after each confirmed grant

        Returns:
            Roles granted by this call

        Raises:
            RejectedTransactionError: If the signer is not an administrator of
                the token, or the ledger rejects a grant
        """
        skip = set(already_granted)
        pending = [role for role in MINT_BURN_ROLES if role not in skip]
        if not pending:
            return []

        admin = token.chain.address
        if not await token.has_role(DEFAULT_ADMIN_ROLE, admin):
            raise RejectedTransactionError(
                f"{admin} is not an administrator of token {token.address} "
                f"on {token.chain.network_name}"
            )

        granted = []
        for role in pending:
            if await token.has_role(role, grantee):
                logger.info(
                    "role_already_held",
                    network=token.chain.network_name,
                    role=role,
                    grantee=grantee,
                )
            else:
                receipt = await token.grant_role(role, grantee)
                granted.append(role)
                logger.info(
                    "role_granted",
                    network=token.chain.network_name,
                    token=token.address,
                    role=role,
                    grantee=grantee,
                    tx_hash=receipt.tx_hash,
                )

            if on_granted:
                await on_granted(role)

        return granted
