"""
Role table for batch operations.

Admins manage roles and sale flags, operators execute batches, handlers
may act for participants. Blocked accounts cannot reserve or cancel.
"""

from __future__ import annotations

import logging
from enum import Flag, auto
from typing import Dict, List, Set

from ..address import normalize_address
from ..exceptions import UnauthorizedOperatorError

logger = logging.getLogger(__name__)


class Role(Flag):
    NONE = 0
    ADMIN = auto()
    OPERATOR = auto()
    HANDLER = auto()


class RoleTable:

    def __init__(self, admin: str) -> None:
        admin = normalize_address(admin)
        self._roles: Dict[str, Role] = {admin: Role.ADMIN | Role.OPERATOR}
        self._blocked: Set[str] = set()

    def grant(self, granter: str, account: str, role: Role) -> None:
        self.require(granter, Role.ADMIN)
        account = normalize_address(account)
        self._roles[account] = self._roles.get(account, Role.NONE) | role
        logger.info("Granted %s to %s", role, account)

    def revoke(self, granter: str, account: str, role: Role) -> None:
        self.require(granter, Role.ADMIN)
        account = normalize_address(account)
        remaining = self._roles.get(account, Role.NONE) & ~role
        if remaining == Role.NONE:
            self._roles.pop(account, None)
        else:
            self._roles[account] = remaining
        logger.info("Revoked %s from %s", role, account)

    def has(self, account: str, role: Role) -> bool:
        return role in self._roles.get(normalize_address(account), Role.NONE)

    def require(self, account: str, role: Role) -> None:
        if not self.has(account, role):
            raise UnauthorizedOperatorError(f"{account} lacks role {role.name}")

    def accounts_with(self, role: Role) -> List[str]:
        return sorted(a for a, r in self._roles.items() if role in r)

    # -- Participant blocking -----------------------------------------------

    def block(self, granter: str, account: str) -> None:
        self.require(granter, Role.ADMIN)
        self._blocked.add(normalize_address(account))

    def unblock(self, granter: str, account: str) -> None:
        self.require(granter, Role.ADMIN)
        self._blocked.discard(normalize_address(account))

    def is_blocked(self, account: str) -> bool:
        return normalize_address(account) in self._blocked

    def check_participant(self, account: str) -> str:
        """Return the normalized participant address, or raise if blocked."""
        account = normalize_address(account)
        if account in self._blocked:
            raise UnauthorizedOperatorError(f"{account} is blocked")
        return account
