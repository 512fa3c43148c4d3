"""
Neutra Venue Adapter

Translates opaque per-asset instructions into venue position requests and
translates venue callbacks back into VenueOutcome confirmations for the
batch coordinator.

The venue must never execute a request synchronously on submission: the
coordinator registers each request id through on_submitted right after the
venue returns it, so an inline callback would be reported as unknown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from ..address import normalize_address
from ..constants import BASIS_POINTS_DIVISOR, PRICE_PRECISION, TOKEN_UNIT
from ..exceptions import InvalidInstructionError, NeutraException, VenueError
from .instructions import (
    AssetInstruction,
    ExecutionLeg,
    InstructionBlob,
    decode_instructions,
    leg_of,
)

logger = logging.getLogger(__name__)

_COLLATERAL_TO_USD = PRICE_PRECISION // TOKEN_UNIT


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VenueOutcome:
    """What the venue reports for one resolved request."""
    request_id: str
    leg: ExecutionLeg
    asset: str
    executed: bool
    size_delta: int = 0
    execution_price: int = 0
    amount: int = 0                  # collateral in (open) or USD paid out (close)
    reason: str = ""


ConfirmCallback = Callable[[str, VenueOutcome], Any]
SubmittedCallback = Callable[[str], Any]


class PositionVenue(Protocol):
    """Interface of an asynchronous position venue (see neutra.venue.PerpVenue)."""

    def create_increase_position(
        self,
        account: str,
        index_token: str,
        amount_in: int,
        size_delta: int,
        acceptable_price: int,
        callback: Optional[Callable[[Any], None]] = None,
    ) -> str: ...

    def create_decrease_position(
        self,
        account: str,
        index_token: str,
        collateral_delta: int,
        size_delta: int,
        acceptable_price: int,
        receiver: str,
        callback: Optional[Callable[[Any], None]] = None,
    ) -> str: ...

    def position_value(self, account: str) -> int: ...

    def has_market(self, token: str) -> bool: ...


# ---------------------------------------------------------------------------
# Venue Adapter
# ---------------------------------------------------------------------------

class VenueAdapter:
    """
    Submits the legs of a batch to a PositionVenue on behalf of *account*.

    Open instructions carry collateral in principal units; the hedge size is
    that collateral in USD scaled by *leverage_bps*. Close instructions carry
    the USD size to reduce and the receiver of the released funds.
    """

    def __init__(
        self,
        venue: PositionVenue,
        account: str,
        leverage_bps: int = BASIS_POINTS_DIVISOR,
    ) -> None:
        if leverage_bps <= 0:
            raise VenueError("Leverage must be positive")
        self.venue = venue
        self.account = normalize_address(account)
        self.leverage_bps = leverage_bps

    @staticmethod
    def classify(instructions: Sequence[InstructionBlob]) -> Dict[ExecutionLeg, List[InstructionBlob]]:
        """
        Split instructions into legs, keeping submission order within each leg.

        Every instruction is fully decoded so that a malformed batch is
        rejected before anything reaches the venue.
        """
        decode_instructions(instructions)
        legs: Dict[ExecutionLeg, List[InstructionBlob]] = {}
        for blob in instructions:
            legs.setdefault(leg_of(blob), []).append(blob)
        return legs

    def check_markets(self, instructions: Sequence[InstructionBlob]) -> None:
        """
        Reject a batch touching an asset the venue cannot trade, before
        anything is locked or submitted.

        Raises:
            VenueError: no market for one of the assets
        """
        for ins in decode_instructions(instructions):
            if not self.venue.has_market(ins.asset):
                raise VenueError(f"No market for index token {ins.asset}")

    def open_or_close_position(
        self,
        leg: ExecutionLeg,
        instructions: Sequence[InstructionBlob],
        on_confirm: ConfirmCallback,
        on_submitted: Optional[SubmittedCallback] = None,
    ) -> List[str]:
        """
        Submit one leg to the venue.

        *on_submitted* is called with each request id as soon as the venue
        accepts it, so a refusal partway through a leg leaves the accepted
        requests known to the caller.

        Returns:
            Venue request ids, one per instruction, in submission order
        """
        leg = ExecutionLeg(leg)
        decoded = decode_instructions(instructions)
        for ins in decoded:
            if ins.leg != leg:
                raise InvalidInstructionError(
                    f"{ins.leg.value} instruction for {ins.asset} submitted in the {leg.value} leg"
                )

        request_ids: List[str] = []
        for ins in decoded:
            callback = self._make_callback(ins, on_confirm)
            if leg == ExecutionLeg.OPEN:
                request_id = self.venue.create_increase_position(
                    self.account,
                    ins.asset,
                    ins.notional,
                    self.hedge_size(ins.notional),
                    ins.acceptable_price,
                    callback=callback,
                )
            else:
                request_id = self.venue.create_decrease_position(
                    self.account,
                    ins.asset,
                    0,
                    ins.notional,
                    ins.acceptable_price,
                    ins.receiver,
                    callback=callback,
                )
            request_ids.append(request_id)
            if on_submitted is not None:
                on_submitted(request_id)

        logger.info(
            "Submitted %d %s request(s) to venue for %s",
            len(request_ids), leg.value, self.account,
        )
        return request_ids

    def hedge_size(self, collateral: int) -> int:
        """USD short size opened for *collateral* principal units."""
        return collateral * _COLLATERAL_TO_USD * self.leverage_bps // BASIS_POINTS_DIVISOR

    def position_value(self) -> int:
        """Mark-to-market USD value of the hedges held for the vault."""
        return self.venue.position_value(self.account)

    def _make_callback(self, ins: AssetInstruction, on_confirm: ConfirmCallback) -> Callable[[Any], None]:
        def _callback(request: Any) -> None:
            outcome = VenueOutcome(
                request_id=request.key,
                leg=ins.leg,
                asset=ins.asset,
                executed=bool(request.executed),
                size_delta=request.size_delta,
                execution_price=request.execution_price,
                amount=request.collateral_delta if ins.leg == ExecutionLeg.OPEN else request.realized_amount,
                reason=getattr(request, "cancel_reason", ""),
            )
            try:
                on_confirm(request.key, outcome)
            except NeutraException as e:
                logger.error("Confirmation for request %s rejected: %s", request.key, e)

        return _callback
