"""
Neutra Round Ledger

Sole authority over batching rounds and participant reservations.

Each side (deposit, withdraw) has an independent round counter starting at
1. Participants reserve into the current round; an operator locks the
round while the aggregate is executed on the venue; confirmation freezes
the round's output and advances the counter.

Invariants:
  - total_reserved of a round == Σ reservation amounts in that round
    (until the round is claimed down; claims never touch round totals)
  - total_output is zero until confirmation and is written exactly once
  - a participant holds a reservation in at most one round per side
  - the current round of a side is never confirmed

All mutations run under a single re-entrant lock so that callers on
different threads see one global ordering.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..address import normalize_address
from ..constants import FIRST_ROUND, NO_ROUND
from ..exceptions import (
    DepositLimitExceededError,
    InvalidAmountError,
    PendingClaimError,
    RoundLockedError,
    RoundNotExecutingError,
    StaleClaimError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Side(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class Round:
    """Aggregate state of one batching round on one side."""
    number: int
    total_reserved: int = 0
    executed_amount: int = 0           # amount actually sent to the venue
    total_output: int = 0              # shares minted / principal returned
    confirmed: bool = False
    is_executing: bool = False
    confirmed_at: float = 0.0

    @property
    def is_open(self) -> bool:
        return not self.confirmed and not self.is_executing


@dataclass
class Reservation:
    """A participant's outstanding intent on one side."""
    participant: str
    side: Side
    amount: int = 0
    round_number: int = NO_ROUND

    @property
    def is_active(self) -> bool:
        return self.amount > 0 and self.round_number != NO_ROUND


@dataclass
class _SideBook:
    current_round: int = FIRST_ROUND
    rounds: Dict[int, Round] = field(default_factory=dict)
    reservations: Dict[str, Reservation] = field(default_factory=dict)
    unclaimed_output: int = 0


def _require_positive(amount: Any, what: str = "Amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"{what} must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise InvalidAmountError(f"{what} must be positive")
    return amount


# ---------------------------------------------------------------------------
# Round Ledger
# ---------------------------------------------------------------------------

class RoundLedger:
    """
    Round and reservation bookkeeping for both sides.

    Read methods return copies; the ledger's own records can only be
    changed through reserve / cancel / begin_execution / confirm_execution /
    release.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._books: Dict[Side, _SideBook] = {side: _SideBook() for side in Side}
        for side in Side:
            self._open_round(self._books[side], FIRST_ROUND)

    @property
    def lock(self) -> threading.RLock:
        """Re-entrant lock guarding every ledger mutation."""
        return self._lock

    # -- Internal helpers -----------------------------------------------------

    @staticmethod
    def _open_round(book: _SideBook, number: int) -> Round:
        rnd = book.rounds.get(number)
        if rnd is None:
            rnd = Round(number=number)
            book.rounds[number] = rnd
        return rnd

    def _current(self, side: Side) -> Tuple[_SideBook, Round]:
        book = self._books[Side(side)]
        return book, self._open_round(book, book.current_round)

    # -- Participant operations ----------------------------------------------

    def reserve(
        self,
        participant: str,
        side: Side,
        amount: int,
        deposit_limit: Optional[int] = None,
    ) -> Reservation:
        """
        Add *amount* to the participant's reservation in the current round.

        Raises:
            InvalidAmountError: amount not a positive integer
            RoundLockedError: the current round is executing
            PendingClaimError: participant still holds a settled reservation
            DepositLimitExceededError: round total would pass deposit_limit
        """
        _require_positive(amount)
        participant = normalize_address(participant)
        side = Side(side)

        with self._lock:
            book, current = self._current(side)
            if current.is_executing:
                raise RoundLockedError()

            res = book.reservations.get(participant)
            if res is not None and res.round_number not in (NO_ROUND, book.current_round):
                raise PendingClaimError(
                    f"{participant} has an unclaimed {side.value} reservation "
                    f"in round {res.round_number}"
                )

            if (
                side == Side.DEPOSIT
                and deposit_limit is not None
                and current.total_reserved + amount > deposit_limit
            ):
                raise DepositLimitExceededError(
                    f"Deposit limit exceeded: {current.total_reserved + amount} > {deposit_limit}"
                )

            if res is None:
                res = Reservation(participant=participant, side=side)
                book.reservations[participant] = res
            res.amount += amount
            res.round_number = book.current_round
            current.total_reserved += amount

            logger.debug(
                "Reserved %s %d in round %d for %s (round total %d)",
                side.value, amount, current.number, participant, current.total_reserved,
            )
            return replace(res)

    def cancel(self, participant: str, side: Side, amount: int) -> Reservation:
        """
        Remove *amount* from the participant's reservation in the current round.

        Raises:
            InvalidAmountError: amount not positive, no reservation, or
                amount exceeds the reservation
            PendingClaimError: reservation already settled
            RoundLockedError: the round is executing
        """
        _require_positive(amount)
        participant = normalize_address(participant)
        side = Side(side)

        with self._lock:
            book = self._books[side]
            res = book.reservations.get(participant)
            if res is None or not res.is_active:
                raise InvalidAmountError(f"No active {side.value} reservation for {participant}")
            if res.round_number != book.current_round:
                raise PendingClaimError(
                    f"Round {res.round_number} is settled; claim instead of cancelling"
                )

            rnd = book.rounds[res.round_number]
            if rnd.is_executing:
                raise RoundLockedError()
            if amount > res.amount:
                raise InvalidAmountError(
                    f"Cancel amount {amount} exceeds reservation {res.amount}"
                )

            res.amount -= amount
            rnd.total_reserved -= amount
            if res.amount == 0:
                res.round_number = NO_ROUND
                del book.reservations[participant]

            logger.debug(
                "Cancelled %s %d in round %d for %s (round total %d)",
                side.value, amount, rnd.number, participant, rnd.total_reserved,
            )
            return replace(res)

    # -- Execution lifecycle ---------------------------------------------------

    def begin_execution(self, side: Side, aggregate_amount: int) -> Round:
        """
        Lock the current round for venue execution of *aggregate_amount*.

        The aggregate may be smaller than the round total (partial batch);
        settlement still spreads the output over the whole round.
        """
        _require_positive(aggregate_amount, "Aggregate amount")
        side = Side(side)

        with self._lock:
            _, current = self._current(side)
            if current.is_executing:
                raise RoundLockedError()
            if current.total_reserved == 0:
                raise InvalidAmountError(f"Round {current.number} has no reservations")
            if aggregate_amount > current.total_reserved:
                raise InvalidAmountError(
                    f"Aggregate {aggregate_amount} exceeds round total {current.total_reserved}"
                )

            current.is_executing = True
            current.executed_amount = aggregate_amount
            logger.info(
                "Executing %s round %d: %d of %d reserved",
                side.value, current.number, aggregate_amount, current.total_reserved,
            )
            return replace(current)

    def confirm_execution(self, side: Side, output_amount: int) -> Round:
        """Freeze the executing round's output and advance the round counter."""
        if isinstance(output_amount, bool) or not isinstance(output_amount, int) or output_amount < 0:
            raise InvalidAmountError("Output amount must be a non-negative integer")
        side = Side(side)

        with self._lock:
            book, current = self._current(side)
            if not current.is_executing:
                raise RoundNotExecutingError(
                    f"No {side.value} batch executing in round {current.number}"
                )

            current.total_output = output_amount
            current.confirmed = True
            current.is_executing = False
            current.confirmed_at = time.time()
            book.unclaimed_output += output_amount
            book.current_round += 1
            self._open_round(book, book.current_round)

            logger.info(
                "Confirmed %s round %d: output %d for %d reserved",
                side.value, current.number, output_amount, current.total_reserved,
            )
            return replace(current)

    # -- Claims ----------------------------------------------------------------

    def release(self, participant: str, side: Side, payout: int) -> Reservation:
        """
        Zero a settled reservation after its claim is paid out.

        Round totals are left untouched; only the side's unclaimed pool
        shrinks by *payout*.
        """
        participant = normalize_address(participant)
        side = Side(side)

        with self._lock:
            book = self._books[side]
            res = book.reservations.get(participant)
            if res is None or not res.is_active:
                return Reservation(participant=participant, side=side)

            rnd = book.rounds.get(res.round_number)
            if rnd is None or not rnd.confirmed:
                raise StaleClaimError(
                    f"Round {res.round_number} has not been confirmed yet"
                )
            if payout < 0 or payout > book.unclaimed_output:
                raise InvalidAmountError(
                    f"Payout {payout} outside unclaimed output {book.unclaimed_output}"
                )

            released = replace(res)
            book.unclaimed_output -= payout
            del book.reservations[participant]
            return released

    # -- Read views ------------------------------------------------------------

    def current_round(self, side: Side) -> int:
        return self._books[Side(side)].current_round

    def get_round(self, side: Side, number: int) -> Round:
        with self._lock:
            rnd = self._books[Side(side)].rounds.get(number)
            return replace(rnd) if rnd is not None else Round(number=number)

    def get_reservation(self, participant: str, side: Side) -> Reservation:
        participant = normalize_address(participant)
        side = Side(side)
        with self._lock:
            res = self._books[side].reservations.get(participant)
            if res is None:
                return Reservation(participant=participant, side=side)
            return replace(res)

    def reservations_in_round(self, side: Side, number: int) -> List[Reservation]:
        with self._lock:
            return [
                replace(r) for r in self._books[Side(side)].reservations.values()
                if r.round_number == number
            ]

    def rounds(self, side: Side) -> List[Round]:
        with self._lock:
            book = self._books[Side(side)]
            return [replace(book.rounds[n]) for n in sorted(book.rounds)]

    def unclaimed_output(self, side: Side) -> int:
        return self._books[Side(side)].unclaimed_output

    def is_locked(self, side: Side) -> bool:
        with self._lock:
            _, current = self._current(side)
            return current.is_executing

    # -- Snapshot / restore ----------------------------------------------------

    def snapshot(self) -> Dict[Side, _SideBook]:
        """Capture the full ledger state for a potential rollback."""
        with self._lock:
            return copy.deepcopy(self._books)

    def restore(self, snapshot: Dict[Side, _SideBook]) -> None:
        with self._lock:
            self._books = copy.deepcopy(snapshot)

    # -- Serialisation ---------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            result: Dict[str, Any] = {}
            for side, book in self._books.items():
                result[side.value] = {
                    "current_round": book.current_round,
                    "unclaimed_output": book.unclaimed_output,
                    "rounds": [asdict(book.rounds[n]) for n in sorted(book.rounds)],
                    "reservations": [
                        {
                            "participant": r.participant,
                            "amount": r.amount,
                            "round_number": r.round_number,
                        }
                        for r in sorted(book.reservations.values(), key=lambda r: r.participant)
                    ],
                }
            return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundLedger":
        ledger = cls()
        for side in Side:
            raw = data.get(side.value)
            if not raw:
                continue
            book = _SideBook(
                current_round=int(raw.get("current_round", FIRST_ROUND)),
                unclaimed_output=int(raw.get("unclaimed_output", 0)),
            )
            for r in raw.get("rounds", []):
                book.rounds[int(r["number"])] = Round(
                    number=int(r["number"]),
                    total_reserved=int(r.get("total_reserved", 0)),
                    executed_amount=int(r.get("executed_amount", 0)),
                    total_output=int(r.get("total_output", 0)),
                    confirmed=bool(r.get("confirmed", False)),
                    is_executing=bool(r.get("is_executing", False)),
                    confirmed_at=float(r.get("confirmed_at", 0.0)),
                )
            for r in raw.get("reservations", []):
                participant = normalize_address(r["participant"])
                book.reservations[participant] = Reservation(
                    participant=participant,
                    side=side,
                    amount=int(r["amount"]),
                    round_number=int(r["round_number"]),
                )
            cls._open_round(book, book.current_round)
            ledger._books[side] = book
        return ledger
