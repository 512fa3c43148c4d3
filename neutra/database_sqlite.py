"""
SQLite persistence for the batch engine.

Stores round counters, per-round totals, reservations, in-flight batches
and transaction nonces. Every save rewrites the whole state inside one
BEGIN IMMEDIATE ... COMMIT transaction, so a crash leaves either the old
or the new state on disk and never a mix of the two. Amounts are stored
as TEXT since they exceed SQLite's 64-bit integers.
"""
import json
import os
from typing import Dict, Optional

import aiosqlite

from .batch.coordinator import PendingExecution
from .batch.ledger import RoundLedger, Side
from .exceptions import PersistenceError
from .logger import get_logger

logger = get_logger(__name__)


class BatchDatabase:
    """aiosqlite-backed store for ledger and coordinator state"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.connection: Optional[aiosqlite.Connection] = None

    @staticmethod
    async def create(db_path: str, wal_mode: bool = True):
        """Open (creating if needed) the database and its schema"""
        self = BatchDatabase(db_path)

        # Ensure directory exists
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        # Autocommit mode; transactions are opened explicitly
        self.connection = await aiosqlite.connect(db_path, isolation_level=None)
        self.connection.row_factory = aiosqlite.Row

        if wal_mode:
            await self.connection.execute("PRAGMA journal_mode=WAL")
        await self.connection.execute("PRAGMA synchronous=NORMAL")

        await self._init_schema()

        logger.info(f"Batch database initialized: {db_path}")
        return self

    async def _init_schema(self):
        """Initialize database schema"""
        schema = """
        CREATE TABLE IF NOT EXISTS round_counters (
            side TEXT PRIMARY KEY,
            current_round INTEGER NOT NULL,
            unclaimed_output TEXT NOT NULL DEFAULT '0'
        );

        CREATE TABLE IF NOT EXISTS rounds (
            side TEXT NOT NULL,
            number INTEGER NOT NULL,
            total_reserved TEXT NOT NULL DEFAULT '0',
            executed_amount TEXT NOT NULL DEFAULT '0',
            total_output TEXT NOT NULL DEFAULT '0',
            confirmed BOOLEAN DEFAULT 0,
            is_executing BOOLEAN DEFAULT 0,
            confirmed_at REAL DEFAULT 0,
            PRIMARY KEY (side, number)
        );

        CREATE TABLE IF NOT EXISTS reservations (
            side TEXT NOT NULL,
            participant TEXT NOT NULL,
            amount TEXT NOT NULL,
            round_number INTEGER NOT NULL,
            PRIMARY KEY (side, participant)
        );

        CREATE TABLE IF NOT EXISTS pending_executions (
            side TEXT PRIMARY KEY,
            content TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS nonces (
            address TEXT PRIMARY KEY,
            nonce INTEGER NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_reservations_round ON reservations(side, round_number);
        """

        await self.connection.executescript(schema)

    async def close(self):
        """Close database connection"""
        if self.connection:
            await self.connection.close()
            self.connection = None
            logger.info(f"Batch database closed: {self.db_path}")

    # -- Writes ---------------------------------------------------------------

    async def save_state(
        self,
        ledger: RoundLedger,
        pendings: Dict[Side, PendingExecution],
        nonces: Optional[Dict[str, int]] = None,
    ):
        """
        Atomically replace the stored state.

        Raises:
            PersistenceError: the write failed and was rolled back
        """
        data = ledger.to_dict()
        conn = self.connection
        await conn.execute("BEGIN IMMEDIATE")
        try:
            await conn.execute("DELETE FROM round_counters")
            await conn.execute("DELETE FROM rounds")
            await conn.execute("DELETE FROM reservations")
            await conn.execute("DELETE FROM pending_executions")

            for side in Side:
                book = data[side.value]
                await conn.execute(
                    "INSERT INTO round_counters (side, current_round, unclaimed_output) VALUES (?, ?, ?)",
                    (side.value, book["current_round"], str(book["unclaimed_output"])),
                )
                await conn.executemany("""
                    INSERT INTO rounds (side, number, total_reserved, executed_amount,
                                        total_output, confirmed, is_executing, confirmed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    (
                        side.value, r["number"], str(r["total_reserved"]),
                        str(r["executed_amount"]), str(r["total_output"]),
                        r["confirmed"], r["is_executing"], r["confirmed_at"],
                    )
                    for r in book["rounds"]
                ])
                await conn.executemany(
                    "INSERT INTO reservations (side, participant, amount, round_number) VALUES (?, ?, ?, ?)",
                    [
                        (side.value, r["participant"], str(r["amount"]), r["round_number"])
                        for r in book["reservations"]
                    ],
                )

            for side, pending in pendings.items():
                await conn.execute(
                    "INSERT INTO pending_executions (side, content) VALUES (?, ?)",
                    (Side(side).value, json.dumps(pending.to_dict())),
                )

            if nonces is not None:
                await conn.execute("DELETE FROM nonces")
                await conn.executemany(
                    "INSERT INTO nonces (address, nonce) VALUES (?, ?)",
                    list(nonces.items()),
                )

            await conn.execute("COMMIT")
        except (aiosqlite.Error, TypeError, ValueError) as e:
            await conn.execute("ROLLBACK")
            raise PersistenceError(f"Saving batch state failed: {e}") from e

        logger.debug(
            f"Batch state saved: deposit round {data['deposit']['current_round']}, "
            f"withdraw round {data['withdraw']['current_round']}"
        )

    # -- Reads ----------------------------------------------------------------

    async def load_ledger(self) -> RoundLedger:
        """Rebuild the ledger; an empty database yields a fresh one."""
        data = {}
        cursor = await self.connection.execute("SELECT * FROM round_counters")
        for row in await cursor.fetchall():
            data[row["side"]] = {
                "current_round": row["current_round"],
                "unclaimed_output": row["unclaimed_output"],
                "rounds": [],
                "reservations": [],
            }

        cursor = await self.connection.execute("SELECT * FROM rounds ORDER BY side, number")
        for row in await cursor.fetchall():
            if row["side"] not in data:
                continue
            data[row["side"]]["rounds"].append({
                "number": row["number"],
                "total_reserved": row["total_reserved"],
                "executed_amount": row["executed_amount"],
                "total_output": row["total_output"],
                "confirmed": bool(row["confirmed"]),
                "is_executing": bool(row["is_executing"]),
                "confirmed_at": row["confirmed_at"],
            })

        cursor = await self.connection.execute("SELECT * FROM reservations ORDER BY side, participant")
        for row in await cursor.fetchall():
            if row["side"] not in data:
                continue
            data[row["side"]]["reservations"].append({
                "participant": row["participant"],
                "amount": row["amount"],
                "round_number": row["round_number"],
            })

        return RoundLedger.from_dict(data)

    async def load_pending(self) -> Dict[Side, PendingExecution]:
        """In-flight batches per side (idle when nothing was stored)."""
        pendings = {side: PendingExecution.idle() for side in Side}
        cursor = await self.connection.execute("SELECT side, content FROM pending_executions")
        for row in await cursor.fetchall():
            pendings[Side(row["side"])] = PendingExecution.from_dict(json.loads(row["content"]))
        return pendings

    async def load_nonces(self) -> Dict[str, int]:
        cursor = await self.connection.execute("SELECT address, nonce FROM nonces")
        return {row["address"]: row["nonce"] for row in await cursor.fetchall()}
