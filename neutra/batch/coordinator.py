"""
Neutra Batch Coordinator

Drives one batching round per side through venue execution:

  IDLE --execute_batch--> EXECUTING (open leg)
       --open leg resolved, close leg queued--> AWAITING_CONFIRMATION
       --final leg resolved--> settle, confirm round, IDLE

  - Only operators may execute a batch
  - A side with a batch in flight rejects further batches, reservations
    and cancellations ("batch under execution")
  - Instructions are opaque to the coordinator; the venue adapter decodes
    and submits them, open (increase) requests before close (decrease)
  - Confirmations may arrive in any order; cancelled venue requests count
    down like executed ones and are recorded in failed_requests
  - Instructions the venue refuses at submission are recorded in
    rejected_instructions; once nothing is outstanding the round settles
  - There is no timeout: a venue that never confirms keeps the side locked
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..address import normalize_address
from ..constants import DEFAULT_DEPOSIT_LIMIT, MAX_INSTRUCTIONS_PER_BATCH, NO_ROUND, ZERO_ADDRESS
from ..exceptions import (
    InvalidAmountError,
    InvalidInstructionError,
    NeutraException,
    RoundLockedError,
    SaleClosedError,
    UnknownRequestError,
)
from .authorization import Role, RoleTable
from .instructions import ExecutionLeg, InstructionBlob, decode_instruction, to_hex
from .ledger import Reservation, RoundLedger, Side
from .settlement import Settlement
from .venue import VenueAdapter, VenueOutcome

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BatchState(str, Enum):
    IDLE = "idle"
    EXECUTING = "executing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class PendingExecution:
    """In-flight batch of one side."""
    initiator: str = ZERO_ADDRESS
    in_progress: bool = False
    outstanding_increase: int = 0
    outstanding_decrease: int = 0
    confirmed: bool = False            # open leg resolved, close leg outstanding
    leg: Optional[ExecutionLeg] = None
    round_number: int = NO_ROUND
    request_ids: List[str] = field(default_factory=list)
    queued_close: List[str] = field(default_factory=list)
    outcomes: List[VenueOutcome] = field(default_factory=list)
    failed_requests: List[str] = field(default_factory=list)
    rejected_instructions: List[str] = field(default_factory=list)

    @classmethod
    def idle(cls) -> "PendingExecution":
        return cls()

    @property
    def outstanding(self) -> int:
        return self.outstanding_increase + self.outstanding_decrease

    def as_tuple(self) -> tuple:
        """(initiator, in_progress, increases, decreases, confirmed)"""
        return (
            self.initiator,
            self.in_progress,
            self.outstanding_increase,
            self.outstanding_decrease,
            self.confirmed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initiator": self.initiator,
            "in_progress": self.in_progress,
            "outstanding_increase": self.outstanding_increase,
            "outstanding_decrease": self.outstanding_decrease,
            "confirmed": self.confirmed,
            "leg": self.leg.value if self.leg else None,
            "round_number": self.round_number,
            "request_ids": list(self.request_ids),
            "queued_close": list(self.queued_close),
            "outcomes": [
                {**asdict(o), "leg": o.leg.value} for o in self.outcomes
            ],
            "failed_requests": list(self.failed_requests),
            "rejected_instructions": list(self.rejected_instructions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingExecution":
        leg = data.get("leg")
        return cls(
            initiator=data.get("initiator") or ZERO_ADDRESS,
            in_progress=bool(data.get("in_progress", False)),
            outstanding_increase=int(data.get("outstanding_increase", 0)),
            outstanding_decrease=int(data.get("outstanding_decrease", 0)),
            confirmed=bool(data.get("confirmed", False)),
            leg=ExecutionLeg(leg) if leg else None,
            round_number=int(data.get("round_number", NO_ROUND)),
            request_ids=list(data.get("request_ids", [])),
            queued_close=list(data.get("queued_close", [])),
            outcomes=[
                VenueOutcome(**{**o, "leg": ExecutionLeg(o["leg"])})
                for o in data.get("outcomes", [])
            ],
            failed_requests=list(data.get("failed_requests", [])),
            rejected_instructions=list(data.get("rejected_instructions", [])),
        )


@dataclass
class CoordinatorConfig:
    """Admin-controlled switches. Sales start closed until an admin opens them."""
    deposit_sale: bool = False
    withdraw_sale: bool = False
    deposit_limit: Optional[int] = DEFAULT_DEPOSIT_LIMIT


# ---------------------------------------------------------------------------
# Batch Coordinator
# ---------------------------------------------------------------------------

class BatchCoordinator:
    """
    Operator-facing batch state machine on top of a RoundLedger.

    The ledger's lock serialises every transition, including venue
    confirmations arriving from a keeper thread.
    """

    def __init__(
        self,
        ledger: RoundLedger,
        venue: VenueAdapter,
        roles: RoleTable,
        settlement: Settlement,
        config: Optional[CoordinatorConfig] = None,
    ) -> None:
        self.ledger = ledger
        self.venue = venue
        self.roles = roles
        self.settlement = settlement
        self.config = config or CoordinatorConfig()
        self._pending: Dict[Side, PendingExecution] = {side: PendingExecution.idle() for side in Side}
        self._request_index: Dict[str, Side] = {}

    # -- Admin ------------------------------------------------------------------

    def set_sale(self, caller: str, deposit_open: bool, withdraw_open: bool) -> None:
        self.roles.require(caller, Role.ADMIN)
        self.config.deposit_sale = bool(deposit_open)
        self.config.withdraw_sale = bool(withdraw_open)
        logger.info("Sale flags set: deposit=%s withdraw=%s", deposit_open, withdraw_open)

    def set_deposit_limit(self, caller: str, limit: Optional[int]) -> None:
        self.roles.require(caller, Role.ADMIN)
        if limit is not None and limit < 0:
            raise InvalidAmountError("Deposit limit must not be negative")
        self.config.deposit_limit = limit
        logger.info("Deposit limit set to %s", limit)

    def sale_open(self, side: Side) -> bool:
        if Side(side) == Side.DEPOSIT:
            return self.config.deposit_sale
        return self.config.withdraw_sale

    # -- Participant entry points -------------------------------------------------

    def reserve_deposit(self, participant: str, amount: int) -> Reservation:
        participant = self._admit(participant, Side.DEPOSIT)
        return self.ledger.reserve(participant, Side.DEPOSIT, amount, self.config.deposit_limit)

    def cancel_deposit(self, participant: str, amount: int) -> Reservation:
        participant = self._admit(participant, Side.DEPOSIT)
        return self.ledger.cancel(participant, Side.DEPOSIT, amount)

    def reserve_withdraw(self, participant: str, amount: int) -> Reservation:
        participant = self._admit(participant, Side.WITHDRAW)
        return self.ledger.reserve(participant, Side.WITHDRAW, amount)

    def cancel_withdraw(self, participant: str, amount: int) -> Reservation:
        participant = self._admit(participant, Side.WITHDRAW)
        return self.ledger.cancel(participant, Side.WITHDRAW, amount)

    def _admit(self, participant: str, side: Side) -> str:
        if not self.sale_open(side):
            raise SaleClosedError(f"{side.value} sale is closed")
        return self.roles.check_participant(participant)

    # -- Execution --------------------------------------------------------------

    def execute_batch(
        self,
        operator: str,
        side: Side,
        instructions: Sequence[InstructionBlob],
        aggregate_amount: int,
    ) -> PendingExecution:
        """
        Lock the side's current round and submit its hedge to the venue.

        Raises:
            UnauthorizedOperatorError: caller is not an operator
            RoundLockedError: a batch is already in flight on this side
            InvalidInstructionError: no instructions, too many, or malformed
            InvalidAmountError: aggregate not within (0, total_reserved]
            VenueError: no venue market for an asset, or the venue refused
                the first submission (nothing is changed)

        When the venue refuses part of a leg after accepting some of it,
        the batch stays in flight on the accepted requests and the refused
        instructions are recorded as rejected.
        """
        self.roles.require(operator, Role.OPERATOR)
        operator = normalize_address(operator)
        side = Side(side)
        if not instructions:
            raise InvalidInstructionError("Batch needs at least one instruction")
        if len(instructions) > MAX_INSTRUCTIONS_PER_BATCH:
            raise InvalidInstructionError(
                f"Batch has {len(instructions)} instructions, max {MAX_INSTRUCTIONS_PER_BATCH}"
            )

        with self.ledger.lock:
            if self._pending[side].in_progress:
                raise RoundLockedError()

            legs = self.venue.classify(instructions)
            self.venue.check_markets(instructions)
            ledger_snapshot = self.ledger.snapshot()
            rnd = self.ledger.begin_execution(side, aggregate_amount)

            pending = PendingExecution(
                initiator=operator,
                in_progress=True,
                round_number=rnd.number,
                queued_close=[to_hex(b) for b in legs.get(ExecutionLeg.CLOSE, [])],
            )
            self._pending[side] = pending

            try:
                if ExecutionLeg.OPEN in legs:
                    self._submit(side, ExecutionLeg.OPEN, legs[ExecutionLeg.OPEN])
                else:
                    pending.queued_close = []
                    self._submit(side, ExecutionLeg.CLOSE, legs[ExecutionLeg.CLOSE])
            except NeutraException as e:
                if not pending.request_ids:
                    self.ledger.restore(ledger_snapshot)
                    self._pending[side] = PendingExecution.idle()
                    raise
                logger.error(
                    "Batch on %s round %d partly refused by venue, %d request(s) in flight: %s",
                    side.value, rnd.number, pending.outstanding, e,
                )

            logger.info(
                "Batch started on %s round %d by %s: %d open, %d close instruction(s)",
                side.value, rnd.number, operator,
                len(legs.get(ExecutionLeg.OPEN, [])), len(legs.get(ExecutionLeg.CLOSE, [])),
            )
            return copy.deepcopy(pending)

    def _submit(self, side: Side, leg: ExecutionLeg, instructions: Sequence[InstructionBlob]) -> None:
        """
        Submit one leg, registering every request the venue accepts.

        On a refusal the instructions not yet accepted are recorded as
        rejected (with a not-executed outcome each) and the error re-raised.
        """
        pending = self._pending[side]
        pending.leg = leg
        accepted: List[str] = []

        def _register(request_id: str) -> None:
            accepted.append(request_id)
            if leg == ExecutionLeg.OPEN:
                pending.outstanding_increase += 1
            else:
                pending.outstanding_decrease += 1
            pending.request_ids.append(request_id)
            self._request_index[request_id] = side

        try:
            self.venue.open_or_close_position(leg, instructions, self.on_confirm, on_submitted=_register)
        except NeutraException as e:
            for blob in instructions[len(accepted):]:
                ins = decode_instruction(blob)
                pending.rejected_instructions.append(to_hex(blob))
                pending.outcomes.append(VenueOutcome(
                    request_id="",
                    leg=leg,
                    asset=ins.asset,
                    executed=False,
                    amount=ins.notional if leg == ExecutionLeg.OPEN else 0,
                    reason=str(e),
                ))
            raise

    def on_confirm(self, request_id: str, outcome: VenueOutcome) -> BatchState:
        """
        Record the venue's answer for one request.

        Raises:
            UnknownRequestError: the request is not outstanding on any side
        """
        with self.ledger.lock:
            side = self._request_index.pop(request_id, None)
            if side is None:
                raise UnknownRequestError(f"Unknown venue request {request_id}")
            pending = self._pending[side]

            if pending.leg == ExecutionLeg.OPEN:
                pending.outstanding_increase -= 1
            else:
                pending.outstanding_decrease -= 1
            pending.outcomes.append(outcome)
            if not outcome.executed:
                pending.failed_requests.append(request_id)
                logger.warning(
                    "Venue request %s on %s round %d was not executed: %s",
                    request_id, side.value, pending.round_number, outcome.reason or "cancelled",
                )

            if pending.outstanding > 0:
                return self.state(side)

            if pending.leg == ExecutionLeg.OPEN and pending.queued_close:
                pending.confirmed = True
                queued, pending.queued_close = pending.queued_close, []
                try:
                    self._submit(side, ExecutionLeg.CLOSE, queued)
                except NeutraException as e:
                    logger.error(
                        "Close leg of %s round %d refused by venue: %s",
                        side.value, pending.round_number, e,
                    )
                if pending.outstanding > 0:
                    logger.info(
                        "Open leg of %s round %d resolved, close leg submitted",
                        side.value, pending.round_number,
                    )
                    return self.state(side)

            self._settle(side)
            return BatchState.IDLE

    def _settle(self, side: Side) -> None:
        pending = self._pending[side]
        rnd = self.ledger.get_round(side, pending.round_number)
        output = self.settlement.settle(side, rnd, pending)
        confirmed = self.ledger.confirm_execution(side, output)
        self._pending[side] = PendingExecution.idle()
        logger.info(
            "Batch on %s round %d settled: output %d, %d failed request(s)",
            side.value, confirmed.number, output, len(pending.failed_requests),
        )

    # -- Queries ----------------------------------------------------------------

    def state(self, side: Side) -> BatchState:
        pending = self._pending[Side(side)]
        if not pending.in_progress:
            return BatchState.IDLE
        if pending.confirmed:
            return BatchState.AWAITING_CONFIRMATION
        return BatchState.EXECUTING

    def pending_status(self, side: Side) -> PendingExecution:
        with self.ledger.lock:
            return copy.deepcopy(self._pending[Side(side)])

    def outstanding_requests(self) -> Dict[str, Side]:
        with self.ledger.lock:
            return dict(self._request_index)

    # -- Snapshot / restore -------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        with self.ledger.lock:
            return {
                "pending": copy.deepcopy(self._pending),
                "request_index": dict(self._request_index),
                "config": copy.copy(self.config),
            }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        with self.ledger.lock:
            self._pending = copy.deepcopy(snapshot["pending"])
            self._request_index = dict(snapshot["request_index"])
            self.config = copy.copy(snapshot["config"])

    def load_pending(self, pendings: Dict[Side, PendingExecution]) -> None:
        """Install persisted in-flight batches and re-index their outstanding requests."""
        with self.ledger.lock:
            self._request_index.clear()
            for side in Side:
                pending = pendings.get(side) or PendingExecution.idle()
                self._pending[side] = copy.deepcopy(pending)
                if not pending.in_progress:
                    continue
                resolved = {o.request_id for o in pending.outcomes}
                resolved.update(pending.failed_requests)
                for request_id in pending.request_ids:
                    if request_id not in resolved:
                        self._request_index[request_id] = side
