"""
Round output computation.

When the last venue leg of a batch resolves, the coordinator asks a
Settlement for the round's total output: shares minted for a deposit
round, principal returned for a withdraw round. The output is spread over
the round's whole total_reserved by the claim resolver.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Protocol

from ..constants import PRICE_PRECISION, TOKEN_UNIT
from ..exceptions import InvalidAmountError
from .instructions import ExecutionLeg
from .ledger import Round, Side

if TYPE_CHECKING:
    from .coordinator import PendingExecution

logger = logging.getLogger(__name__)

_USD_PER_TOKEN_UNIT = PRICE_PRECISION // TOKEN_UNIT


class Settlement(Protocol):
    def settle(self, side: Side, rnd: Round, pending: "PendingExecution") -> int: ...


class FixedRateSettlement:
    """Output at a fixed rate: total_reserved * rate // TOKEN_UNIT."""

    def __init__(self, deposit_rate: int = TOKEN_UNIT, withdraw_rate: int = TOKEN_UNIT) -> None:
        if deposit_rate < 0 or withdraw_rate < 0:
            raise InvalidAmountError("Settlement rates must not be negative")
        self.deposit_rate = deposit_rate
        self.withdraw_rate = withdraw_rate

    def settle(self, side: Side, rnd: Round, pending: "PendingExecution") -> int:
        rate = self.deposit_rate if Side(side) == Side.DEPOSIT else self.withdraw_rate
        return rnd.total_reserved * rate // TOKEN_UNIT


class NavSettlement:
    """
    Output priced at the vault's net asset value per share.

    *nav_fn* returns the vault's NAV in principal units and *supply_fn* the
    share token supply, both read at settlement time. An empty vault
    issues shares 1:1.
    """

    def __init__(self, nav_fn: Callable[[], int], supply_fn: Callable[[], int]) -> None:
        self.nav_fn = nav_fn
        self.supply_fn = supply_fn

    def settle(self, side: Side, rnd: Round, pending: "PendingExecution") -> int:
        nav = self.nav_fn()
        supply = self.supply_fn()
        if nav < 0 or supply < 0:
            raise InvalidAmountError(f"Negative NAV {nav} or supply {supply}")

        if Side(side) == Side.DEPOSIT:
            if nav == 0 or supply == 0:
                return rnd.total_reserved
            return rnd.total_reserved * supply // nav

        if supply == 0:
            logger.warning("Withdraw round %d settled against zero share supply", rnd.number)
            return 0
        return rnd.total_reserved * nav // supply


class ExecutionSettlement:
    """
    Output derived from what the venue actually executed.

    Deposit rounds issue shares at *deposit_rate*, scaled down by the share
    of open-leg collateral the venue refused or cancelled. Withdraw rounds
    return the USD the executed close requests realized, converted to
    principal units; a withdraw batch with no close leg falls back to
    *withdraw_rate*.
    """

    def __init__(self, deposit_rate: int = TOKEN_UNIT, withdraw_rate: int = TOKEN_UNIT) -> None:
        if deposit_rate < 0 or withdraw_rate < 0:
            raise InvalidAmountError("Settlement rates must not be negative")
        self.deposit_rate = deposit_rate
        self.withdraw_rate = withdraw_rate

    def settle(self, side: Side, rnd: Round, pending: "PendingExecution") -> int:
        if Side(side) == Side.DEPOSIT:
            return self._deposit_output(rnd, pending)
        return self._withdraw_output(rnd, pending)

    def _deposit_output(self, rnd: Round, pending: "PendingExecution") -> int:
        output = rnd.total_reserved * self.deposit_rate // TOKEN_UNIT
        opens = [o for o in pending.outcomes if o.leg == ExecutionLeg.OPEN]
        requested = sum(o.amount for o in opens)
        if requested == 0:
            return output
        executed = sum(o.amount for o in opens if o.executed)
        if executed < requested:
            logger.warning(
                "Deposit round %d hedged %d of %d collateral",
                rnd.number, executed, requested,
            )
        return output * executed // requested

    def _withdraw_output(self, rnd: Round, pending: "PendingExecution") -> int:
        closes = [o for o in pending.outcomes if o.leg == ExecutionLeg.CLOSE]
        if not closes:
            return rnd.total_reserved * self.withdraw_rate // TOKEN_UNIT
        realized = sum(o.amount for o in closes if o.executed)
        return realized // _USD_PER_TOKEN_UNIT
