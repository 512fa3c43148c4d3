"""
Test suite for the Batch Coordinator

Covers:
  - Sale flags, deposit limit and blocked participants
  - Operator-only batch execution
  - Round lock while a batch is in flight ("batch under execution")
  - Open leg / close leg sequencing with keeper ticks
  - Confirmations in any order, unknown request ids
  - Cancelled venue requests counted and collected
  - Rollback when the venue refuses a submission
  - Snapshot / restore and reload of in-flight batches
"""

import logging

import pytest

from neutra.address import normalize_address
from neutra.batch import (
    BatchCoordinator,
    BatchState,
    CoordinatorConfig,
    ExecutionLeg,
    FixedRateSettlement,
    PendingExecution,
    Role,
    RoleTable,
    RoundLedger,
    Side,
    VenueAdapter,
    VenueOutcome,
    encode_close_instruction,
    encode_open_instruction,
)
from neutra.batch.instructions import to_hex
from neutra.constants import PRICE_PRECISION, TOKEN_UNIT, ZERO_ADDRESS
from neutra.exceptions import (
    DepositLimitExceededError,
    InvalidAmountError,
    InvalidInstructionError,
    RoundLockedError,
    SaleClosedError,
    UnauthorizedOperatorError,
    UnknownRequestError,
    VenueError,
)
from neutra.venue import PositionRequest, RequestKind, RequestStatus

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
ADMIN = "0x" + "ad" * 20
OPERATOR = "0x" + "0e" * 20
ESCROW = "0x" + "e5" * 20
ROUTER = "0x" + "70" * 20
WBTC = "0x" + "b7" * 20
WETH = "0x" + "e7" * 20
UNLISTED = "0x" + "99" * 20

K = 1_000 * TOKEN_UNIT
P = PRICE_PRECISION


class RecordingSettlement(FixedRateSettlement):
    """Fixed 1:1 settlement that remembers what it was asked to settle."""

    def __init__(self):
        super().__init__()
        self.calls = []

    def settle(self, side, rnd, pending):
        self.calls.append((side, rnd, pending))
        return super().settle(side, rnd, pending)


class ManualVenue:
    """PositionVenue whose requests resolve only when the test says so."""

    def __init__(self, accept_increases=None, refuse_decreases=False):
        self.requests = {}
        self._seq = 0
        self.accept_increases = accept_increases
        self.refuse_decreases = refuse_decreases

    def has_market(self, token):
        return True

    def _queue(self, kind, account, index_token, collateral_delta, size_delta,
               acceptable_price, receiver="", callback=None):
        if kind == RequestKind.INCREASE and self.accept_increases is not None:
            if self.accept_increases == 0:
                raise VenueError("Increase queue full")
            self.accept_increases -= 1
        if kind == RequestKind.DECREASE and self.refuse_decreases:
            raise VenueError("Decrease requests disabled")
        self._seq += 1
        key = f"req-{self._seq}"
        self.requests[key] = PositionRequest(
            key=key,
            kind=kind,
            account=account,
            index_token=index_token,
            collateral_delta=collateral_delta,
            size_delta=size_delta,
            acceptable_price=acceptable_price,
            receiver=receiver,
            callback=callback,
        )
        return key

    def create_increase_position(self, account, index_token, amount_in, size_delta,
                                 acceptable_price, callback=None):
        return self._queue(RequestKind.INCREASE, account, index_token, amount_in,
                           size_delta, acceptable_price, callback=callback)

    def create_decrease_position(self, account, index_token, collateral_delta, size_delta,
                                 acceptable_price, receiver, callback=None):
        return self._queue(RequestKind.DECREASE, account, index_token, collateral_delta,
                           size_delta, acceptable_price, receiver, callback)

    def position_value(self, account):
        return 0

    def resolve(self, key, executed=True):
        request = self.requests[key]
        request.status = RequestStatus.EXECUTED if executed else RequestStatus.CANCELLED
        request.execution_price = request.acceptable_price
        if not executed:
            request.cancel_reason = "mark price lower than limit"
        request.callback(request)


def coordinator_on(venue):
    """Coordinator on *venue*; returns (coordinator, venue, settlement)."""
    roles = RoleTable(ADMIN)
    roles.grant(ADMIN, OPERATOR, Role.OPERATOR)
    settlement = RecordingSettlement()
    coordinator = BatchCoordinator(
        RoundLedger(),
        VenueAdapter(venue, ESCROW),
        roles,
        settlement,
        CoordinatorConfig(deposit_sale=True, withdraw_sale=True),
    )
    return coordinator, venue, settlement


@pytest.fixture
def manual():
    return coordinator_on(ManualVenue())


def open_blob(asset=WETH, collateral=1_000, acceptable=1):
    return encode_open_instruction(asset, collateral * TOKEN_UNIT, acceptable * P)


def close_blob(asset=WETH, size=100, acceptable=10_000):
    return encode_close_instruction(asset, size * P, acceptable * P, ROUTER)


# ============================================================================
# Admission
# ============================================================================

class TestAdmission:

    def test_sales_start_closed(self, engine):
        coordinator = BatchCoordinator(
            engine.ledger, engine.adapter, engine.roles, engine.settlement,
        )
        with pytest.raises(SaleClosedError):
            coordinator.reserve_deposit(ALICE, K)
        with pytest.raises(SaleClosedError):
            coordinator.reserve_withdraw(ALICE, K)

        coordinator.set_sale(ADMIN, True, False)
        coordinator.reserve_deposit(ALICE, K)
        with pytest.raises(SaleClosedError):
            coordinator.reserve_withdraw(ALICE, K)

    def test_only_admin_sets_sale(self, engine):
        with pytest.raises(UnauthorizedOperatorError):
            engine.coordinator.set_sale(OPERATOR, False, False)
        assert engine.coordinator.sale_open(Side.DEPOSIT)

    def test_deposit_limit(self, engine):
        engine.coordinator.set_deposit_limit(ADMIN, 100 * K)
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        with pytest.raises(DepositLimitExceededError):
            engine.coordinator.reserve_deposit(BOB, 20 * K)

        engine.coordinator.set_deposit_limit(ADMIN, None)
        engine.coordinator.reserve_deposit(BOB, 20 * K)

    def test_deposit_limit_validation(self, engine):
        with pytest.raises(InvalidAmountError):
            engine.coordinator.set_deposit_limit(ADMIN, -1)
        with pytest.raises(UnauthorizedOperatorError):
            engine.coordinator.set_deposit_limit(ALICE, K)

    def test_blocked_participant(self, engine):
        engine.coordinator.reserve_deposit(ALICE, K)
        engine.roles.block(ADMIN, ALICE)
        assert engine.roles.is_blocked(ALICE)
        with pytest.raises(UnauthorizedOperatorError, match="blocked"):
            engine.coordinator.reserve_deposit(ALICE, K)
        with pytest.raises(UnauthorizedOperatorError):
            engine.coordinator.cancel_deposit(ALICE, K)

        engine.roles.unblock(ADMIN, ALICE)
        assert not engine.roles.is_blocked(ALICE)
        engine.coordinator.cancel_deposit(ALICE, K)


# ============================================================================
# Execution
# ============================================================================

class TestExecuteBatch:

    def test_only_operators_execute(self, engine):
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        engine.roles.grant(ADMIN, BOB, Role.HANDLER)
        assert engine.roles.accounts_with(Role.OPERATOR) == sorted(normalize_address(a) for a in (ADMIN, OPERATOR))

        for caller in (ALICE, BOB):
            with pytest.raises(UnauthorizedOperatorError):
                engine.coordinator.execute_batch(
                    caller, Side.DEPOSIT, engine.open_instructions(), 90 * K,
                )
        assert not engine.ledger.is_locked(Side.DEPOSIT)
        assert engine.coordinator.state(Side.DEPOSIT) == BatchState.IDLE

    def test_instruction_count_limits(self, engine):
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        with pytest.raises(InvalidInstructionError, match="at least one"):
            engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, [], 90 * K)
        with pytest.raises(InvalidInstructionError, match="max"):
            engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, [open_blob()] * 9, 90 * K)

    def test_malformed_instruction_changes_nothing(self, engine):
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        with pytest.raises(InvalidInstructionError):
            engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, [b"\x00" * 10], 90 * K)
        assert not engine.ledger.is_locked(Side.DEPOSIT)
        assert engine.venue.get_request_queue_lengths() == (0, 0, 0, 0)

    def test_execute_locks_round(self, engine):
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        engine.coordinator.reserve_deposit(BOB, 90 * K)

        pending = engine.coordinator.execute_batch(
            OPERATOR, Side.DEPOSIT, engine.open_instructions(), 162 * K,
        )

        assert pending.in_progress
        assert pending.initiator == normalize_address(OPERATOR)
        assert pending.leg == ExecutionLeg.OPEN
        assert pending.outstanding_increase == 2
        assert pending.outstanding_decrease == 0
        assert not pending.confirmed
        assert pending.round_number == 1
        assert len(pending.request_ids) == 2
        assert engine.coordinator.state(Side.DEPOSIT) == BatchState.EXECUTING
        assert engine.ledger.get_round(Side.DEPOSIT, 1).executed_amount == 162 * K

        with pytest.raises(RoundLockedError, match="batch under execution"):
            engine.coordinator.cancel_deposit(ALICE, 45 * K)
        with pytest.raises(RoundLockedError):
            engine.coordinator.reserve_deposit(ALICE, K)
        with pytest.raises(RoundLockedError):
            engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, engine.open_instructions(), K)

    def test_other_side_unaffected(self, engine):
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, engine.open_instructions(), 90 * K)
        res = engine.coordinator.reserve_withdraw(BOB, 5 * K)
        assert res.round_number == 1
        assert engine.coordinator.state(Side.WITHDRAW) == BatchState.IDLE

    def test_pending_status_idle(self, engine):
        pending = engine.coordinator.pending_status(Side.WITHDRAW)
        assert pending.as_tuple() == (ZERO_ADDRESS, False, 0, 0, False)

    def test_open_leg_settles_round(self, engine):
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        engine.coordinator.reserve_deposit(BOB, 90 * K)
        engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, engine.open_instructions(), 162 * K)

        assert engine.tick() == (2, 0)

        assert engine.coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        assert engine.ledger.current_round(Side.DEPOSIT) == 2
        rnd = engine.ledger.get_round(Side.DEPOSIT, 1)
        assert rnd.confirmed
        assert rnd.total_output == 180 * K
        assert engine.coordinator.outstanding_requests() == {}

        # the hedge is on the venue
        assert engine.adapter.position_value() == (6_300 + 11_700) * P

        # next deposit round is open
        res = engine.coordinator.reserve_deposit("0x" + "c4" * 20, K)
        assert res.round_number == 2

    def test_two_leg_batch(self, engine):
        # hedge to close later
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, engine.open_instructions(), 90 * K)
        engine.tick()

        engine.coordinator.reserve_withdraw(ALICE, 10 * K)
        engine.coordinator.reserve_withdraw(BOB, 10 * K)
        instructions = [
            engine.close_instruction(size=2_000),
            encode_open_instruction(WBTC, 700 * TOKEN_UNIT, 19_900 * P),
        ]
        pending = engine.coordinator.execute_batch(OPERATOR, Side.WITHDRAW, instructions, 20 * K)
        assert pending.leg == ExecutionLeg.OPEN
        assert pending.outstanding_increase == 1
        assert len(pending.queued_close) == 1

        # tick 1 resolves the open leg and submits the close leg
        engine.tick()
        pending = engine.coordinator.pending_status(Side.WITHDRAW)
        assert engine.coordinator.state(Side.WITHDRAW) == BatchState.AWAITING_CONFIRMATION
        assert pending.confirmed
        assert pending.leg == ExecutionLeg.CLOSE
        assert pending.outstanding_increase == 0
        assert pending.outstanding_decrease == 1
        assert pending.queued_close == []
        assert engine.ledger.is_locked(Side.WITHDRAW)
        with pytest.raises(RoundLockedError):
            engine.coordinator.cancel_withdraw(BOB, K)

        # tick 2 resolves the close leg
        engine.tick()
        assert engine.coordinator.state(Side.WITHDRAW) == BatchState.IDLE
        assert engine.ledger.current_round(Side.WITHDRAW) == 2
        assert engine.venue.payout_of(ROUTER) == 2_000 * P

    def test_close_only_batch(self, engine):
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, engine.open_instructions(), 90 * K)
        engine.tick()

        engine.coordinator.reserve_withdraw(BOB, 10 * K)
        pending = engine.coordinator.execute_batch(
            OPERATOR, Side.WITHDRAW, [engine.close_instruction(size=500)], 10 * K,
        )
        assert pending.leg == ExecutionLeg.CLOSE
        assert pending.outstanding_decrease == 1
        assert engine.coordinator.state(Side.WITHDRAW) == BatchState.EXECUTING

        engine.tick()
        assert engine.ledger.current_round(Side.WITHDRAW) == 2


# ============================================================================
# Confirmations
# ============================================================================

class TestConfirmations:

    def test_confirmations_in_any_order(self, manual):
        coordinator, venue, settlement = manual
        coordinator.reserve_deposit(ALICE, 30 * K)
        pending = coordinator.execute_batch(
            OPERATOR, Side.DEPOSIT, [open_blob(), open_blob(WBTC), open_blob()], 30 * K,
        )

        ids = pending.request_ids
        venue.resolve(ids[2])
        venue.resolve(ids[0])
        assert coordinator.pending_status(Side.DEPOSIT).outstanding_increase == 1
        assert coordinator.state(Side.DEPOSIT) == BatchState.EXECUTING

        venue.resolve(ids[1])
        assert coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        assert len(settlement.calls) == 1
        side, rnd, settled = settlement.calls[0]
        assert side == Side.DEPOSIT
        assert rnd.number == 1
        assert [o.request_id for o in settled.outcomes] == [ids[2], ids[0], ids[1]]

    def test_unknown_request_rejected(self, manual):
        coordinator, _, _ = manual
        outcome = VenueOutcome(request_id="req-404", leg=ExecutionLeg.OPEN, asset=WETH, executed=True)
        with pytest.raises(UnknownRequestError):
            coordinator.on_confirm("req-404", outcome)

    def test_duplicate_confirmation_rejected(self, manual, caplog):
        coordinator, venue, _ = manual
        coordinator.reserve_deposit(ALICE, 30 * K)
        pending = coordinator.execute_batch(
            OPERATOR, Side.DEPOSIT, [open_blob(), open_blob()], 30 * K,
        )
        venue.resolve(pending.request_ids[0])
        with caplog.at_level(logging.ERROR):
            venue.resolve(pending.request_ids[0])
        assert "rejected" in caplog.text
        assert coordinator.pending_status(Side.DEPOSIT).outstanding_increase == 1

    def test_failed_requests_counted(self, manual):
        coordinator, venue, settlement = manual
        coordinator.reserve_deposit(ALICE, 30 * K)
        pending = coordinator.execute_batch(
            OPERATOR, Side.DEPOSIT, [open_blob(), open_blob(), close_blob()], 30 * K,
        )
        first, second = pending.request_ids

        venue.resolve(first, executed=False)
        venue.resolve(second)

        status = coordinator.pending_status(Side.DEPOSIT)
        assert status.failed_requests == [first]
        assert status.confirmed
        assert status.outstanding_decrease == 1

        venue.resolve(status.request_ids[-1])
        assert coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        _, _, settled = settlement.calls[0]
        assert settled.failed_requests == [first]
        assert [o.executed for o in settled.outcomes] == [False, True, True]

    def test_all_requests_failing_still_settles(self, engine):
        engine.coordinator.reserve_deposit(ALICE, 10 * K)
        blob = encode_open_instruction(WETH, 10 * K, 1_600 * P)
        engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, [blob], 10 * K)
        engine.tick()
        assert engine.ledger.current_round(Side.DEPOSIT) == 2
        assert engine.venue.get_position(engine.escrow, WETH) is None


# ============================================================================
# Venue refusals and rollback
# ============================================================================

class TestRollback:

    def test_paused_venue_leaves_round_open(self, engine):
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        engine.venue.pause()

        with pytest.raises(VenueError):
            engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, engine.open_instructions(), 90 * K)

        assert not engine.ledger.is_locked(Side.DEPOSIT)
        assert engine.ledger.get_round(Side.DEPOSIT, 1).executed_amount == 0
        assert engine.coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        engine.coordinator.cancel_deposit(ALICE, 90 * K)

    @pytest.mark.parametrize("blob", [
        open_blob(UNLISTED, 10, 1),
        close_blob(UNLISTED),
    ], ids=["open", "close"])
    def test_unlisted_market_rejected_before_lock(self, engine, blob):
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        instructions = engine.open_instructions() + [blob]

        with pytest.raises(VenueError, match="No market"):
            engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, instructions, 90 * K)

        assert engine.venue.get_request_queue_lengths() == (0, 0, 0, 0)
        assert engine.coordinator.outstanding_requests() == {}
        assert engine.coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        assert not engine.ledger.is_locked(Side.DEPOSIT)

    def test_partial_refusal_keeps_accepted_requests(self, caplog):
        coordinator, venue, settlement = coordinator_on(ManualVenue(accept_increases=1))
        coordinator.reserve_deposit(ALICE, 30 * K)
        refused = open_blob(WBTC, 500)

        with caplog.at_level(logging.ERROR):
            pending = coordinator.execute_batch(
                OPERATOR, Side.DEPOSIT, [open_blob(), refused], 30 * K,
            )
        assert "partly refused" in caplog.text
        assert pending.request_ids == ["req-1"]
        assert pending.outstanding_increase == 1
        assert pending.rejected_instructions == [to_hex(refused)]
        assert coordinator.outstanding_requests() == {"req-1": Side.DEPOSIT}
        assert coordinator.state(Side.DEPOSIT) == BatchState.EXECUTING
        assert coordinator.ledger.is_locked(Side.DEPOSIT)

        venue.resolve("req-1")
        assert coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        assert coordinator.ledger.current_round(Side.DEPOSIT) == 2
        _, _, settled = settlement.calls[0]
        rejected, executed = settled.outcomes
        assert (rejected.request_id, rejected.executed, rejected.amount) == ("", False, 500 * TOKEN_UNIT)
        assert rejected.asset == normalize_address(WBTC)
        assert executed.request_id == "req-1" and executed.executed

    def test_refused_close_leg_is_recorded(self):
        coordinator, venue, settlement = coordinator_on(ManualVenue(refuse_decreases=True))
        coordinator.reserve_deposit(ALICE, 30 * K)
        pending = coordinator.execute_batch(
            OPERATOR, Side.DEPOSIT, [open_blob(), close_blob()], 30 * K,
        )
        assert pending.queued_close == [to_hex(close_blob())]

        venue.resolve(pending.request_ids[0])

        assert coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        assert not coordinator.ledger.is_locked(Side.DEPOSIT)
        _, rnd, settled = settlement.calls[0]
        assert rnd.number == 1
        assert settled.confirmed
        assert settled.rejected_instructions == [to_hex(close_blob())]
        assert [(o.leg, o.executed) for o in settled.outcomes] == [
            (ExecutionLeg.OPEN, True),
            (ExecutionLeg.CLOSE, False),
        ]

    def test_refused_close_leg_unlocks_side(self, engine, monkeypatch, caplog):
        def refuse(*args, **kwargs):
            raise VenueError("Decrease queue full")

        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        instructions = engine.open_instructions() + [engine.close_instruction()]
        engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, instructions, 90 * K)
        monkeypatch.setattr(engine.venue, "create_decrease_position", refuse)

        with caplog.at_level(logging.ERROR):
            for _ in range(3):
                engine.tick()
        assert "Close leg of deposit round 1 refused" in caplog.text

        assert engine.venue.get_request_queue_lengths() == (2, 2, 0, 0)
        assert engine.coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        assert engine.coordinator.outstanding_requests() == {}
        assert not engine.ledger.is_locked(Side.DEPOSIT)
        assert engine.ledger.current_round(Side.DEPOSIT) == 2
        assert engine.ledger.get_round(Side.DEPOSIT, 1).confirmed

        # the side accepts the next batch
        engine.coordinator.reserve_deposit(BOB, 10 * K)
        engine.coordinator.execute_batch(OPERATOR, Side.DEPOSIT, [open_blob(WETH, 10, 1_490)], 10 * K)
        assert engine.coordinator.state(Side.DEPOSIT) == BatchState.EXECUTING

    def test_snapshot_restore(self, manual):
        coordinator, venue, _ = manual
        coordinator.reserve_deposit(ALICE, 30 * K)
        snap_ledger = coordinator.ledger.snapshot()
        snap = coordinator.snapshot()

        coordinator.execute_batch(OPERATOR, Side.DEPOSIT, [open_blob()], 30 * K)
        coordinator.set_sale(ADMIN, False, False)

        coordinator.ledger.restore(snap_ledger)
        coordinator.restore(snap)
        assert coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        assert coordinator.outstanding_requests() == {}
        assert coordinator.sale_open(Side.DEPOSIT)

    def test_load_pending_reindexes_outstanding(self, manual):
        coordinator, venue, _ = manual
        coordinator.reserve_deposit(ALICE, 30 * K)
        pending = coordinator.execute_batch(
            OPERATOR, Side.DEPOSIT, [open_blob(), open_blob()], 30 * K,
        )
        venue.resolve(pending.request_ids[0])

        saved = {side: PendingExecution.from_dict(coordinator.pending_status(side).to_dict())
                 for side in Side}
        coordinator.load_pending(saved)

        assert coordinator.outstanding_requests() == {pending.request_ids[1]: Side.DEPOSIT}
        venue.resolve(pending.request_ids[1])
        assert coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        assert coordinator.ledger.current_round(Side.DEPOSIT) == 2
