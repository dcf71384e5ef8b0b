"""
Token contract access: balances, allowances and mint/burn roles.
"""

from tokenlink.token.contract import TokenContract
from tokenlink.token.roles import RoleGrantor, MINTER_ROLE, BURNER_ROLE, DEFAULT_ADMIN_ROLE

__all__ = [
    "TokenContract",
    "RoleGrantor",
    "MINTER_ROLE",
    "BURNER_ROLE",
    "DEFAULT_ADMIN_ROLE",
]
