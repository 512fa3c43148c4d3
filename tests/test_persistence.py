"""
Test suite for SQLite persistence of the batch engine

Covers:
  - Fresh database yields a fresh ledger and idle batches
  - Round counters, round totals, reservations, nonces survive a restart
  - Amounts beyond 64 bits stored losslessly
  - In-flight batches reload and keep accepting venue confirmations
  - A failed save is rolled back and leaves the previous state intact
"""

import pytest

from neutra.batch import (
    BatchState,
    ExecutionLeg,
    PendingExecution,
    RoundLedger,
    Side,
    VenueOutcome,
)
from neutra.constants import TOKEN_UNIT
from neutra.database_sqlite import BatchDatabase
from neutra.exceptions import PersistenceError

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
OPERATOR = "0x" + "0e" * 20

K = 1_000 * TOKEN_UNIT


def idle_pendings():
    return {side: PendingExecution.idle() for side in Side}


class TestBatchDatabase:

    @pytest.mark.asyncio
    async def test_empty_database(self, tmp_path):
        db = await BatchDatabase.create(str(tmp_path / "neutra.db"))
        try:
            ledger = await db.load_ledger()
            pendings = await db.load_pending()
            assert ledger.current_round(Side.DEPOSIT) == 1
            assert ledger.current_round(Side.WITHDRAW) == 1
            assert all(not p.in_progress for p in pendings.values())
            assert await db.load_nonces() == {}
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "neutra.db"
        db = await BatchDatabase.create(str(path), wal_mode=False)
        await db.close()
        assert path.exists()

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path):
        path = str(tmp_path / "neutra.db")
        ledger = RoundLedger()
        ledger.reserve(ALICE, Side.DEPOSIT, 90 * K)
        ledger.reserve(BOB, Side.DEPOSIT, 90 * K)
        ledger.begin_execution(Side.DEPOSIT, 162 * K)
        ledger.confirm_execution(Side.DEPOSIT, 10**40)
        ledger.reserve(BOB, Side.WITHDRAW, 7 * K)

        db = await BatchDatabase.create(path)
        await db.save_state(ledger, idle_pendings(), {ALICE: 3})
        await db.close()

        db = await BatchDatabase.create(path)
        try:
            restored = await db.load_ledger()
            nonces = await db.load_nonces()
        finally:
            await db.close()

        assert restored.to_dict() == ledger.to_dict()
        assert restored.current_round(Side.DEPOSIT) == 2
        assert restored.get_round(Side.DEPOSIT, 1).total_output == 10**40
        assert restored.get_round(Side.DEPOSIT, 1).executed_amount == 162 * K
        assert restored.unclaimed_output(Side.DEPOSIT) == 10**40
        assert restored.get_reservation(ALICE, Side.DEPOSIT).round_number == 1
        assert restored.get_reservation(BOB, Side.WITHDRAW).amount == 7 * K
        assert nonces == {ALICE: 3}

    @pytest.mark.asyncio
    async def test_nonces_untouched_when_not_given(self, tmp_path):
        db = await BatchDatabase.create(str(tmp_path / "neutra.db"))
        try:
            await db.save_state(RoundLedger(), idle_pendings(), {ALICE: 1})
            await db.save_state(RoundLedger(), idle_pendings())
            assert await db.load_nonces() == {ALICE: 1}
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_inflight_batch_reloads(self, tmp_path, engine, make_engine):
        path = str(tmp_path / "neutra.db")
        engine.coordinator.reserve_deposit(ALICE, 90 * K)
        pending = engine.coordinator.execute_batch(
            OPERATOR, Side.DEPOSIT, engine.open_instructions(), 90 * K,
        )

        db = await BatchDatabase.create(path)
        await db.save_state(
            engine.ledger, {side: engine.coordinator.pending_status(side) for side in Side},
        )
        await db.close()

        # restart: a new engine process picks up the stored state
        restarted = make_engine()
        db = await BatchDatabase.create(path)
        try:
            restarted.ledger.restore((await db.load_ledger()).snapshot())
            restarted.coordinator.load_pending(await db.load_pending())
        finally:
            await db.close()

        status = restarted.coordinator.pending_status(Side.DEPOSIT)
        assert status.request_ids == pending.request_ids
        assert status.outstanding_increase == 2
        assert restarted.ledger.is_locked(Side.DEPOSIT)
        assert set(restarted.coordinator.outstanding_requests()) == set(pending.request_ids)

        for request_id in reversed(pending.request_ids):
            restarted.coordinator.on_confirm(request_id, VenueOutcome(
                request_id=request_id,
                leg=ExecutionLeg.OPEN,
                asset=engine.weth,
                executed=True,
            ))

        assert restarted.coordinator.state(Side.DEPOSIT) == BatchState.IDLE
        assert restarted.ledger.current_round(Side.DEPOSIT) == 2

    @pytest.mark.asyncio
    async def test_failed_save_keeps_previous_state(self, tmp_path):
        path = str(tmp_path / "neutra.db")
        ledger = RoundLedger()
        ledger.reserve(ALICE, Side.DEPOSIT, 90 * K)

        db = await BatchDatabase.create(path)
        try:
            await db.save_state(ledger, idle_pendings(), {ALICE: 1})

            ledger.reserve(BOB, Side.DEPOSIT, 10 * K)
            broken = idle_pendings()
            broken[Side.DEPOSIT] = PendingExecution(in_progress=True, queued_close=[b"\x00"])

            with pytest.raises(PersistenceError):
                await db.save_state(ledger, broken, {ALICE: 2})

            restored = await db.load_ledger()
            assert restored.get_round(Side.DEPOSIT, 1).total_reserved == 90 * K
            assert not restored.get_reservation(BOB, Side.DEPOSIT).is_active
            assert await db.load_nonces() == {ALICE: 1}
            pendings = await db.load_pending()
            assert not pendings[Side.DEPOSIT].in_progress

            # the connection is usable after the rollback
            await db.save_state(ledger, idle_pendings(), {ALICE: 2})
            restored = await db.load_ledger()
            assert restored.get_round(Side.DEPOSIT, 1).total_reserved == 100 * K
        finally:
            await db.close()
