"""
Neutra Batch Engine runner

Wires a BatchStateManager from an EngineConfig and keeps it in step with
the SQLite store:

  - create() opens the configured database and reloads rounds,
    reservations, in-flight batches and nonces
  - process_block() applies a block of batch transactions and persists
    the result before returning its state root
  - checkpoint() persists state changed by venue confirmations that
    arrived between blocks

A block that fails is reverted in memory and nothing is written, so the
store always holds the state of the last successful block or checkpoint.
"""

from typing import Any, List, Optional, Tuple

from .batch.processor import process_batch_transactions
from .batch.settlement import ExecutionSettlement, Settlement
from .batch.state_manager import BatchStateManager
from .batch.transactions import BatchTransaction
from .batch.venue import PositionVenue
from .config import EngineConfig
from .database_sqlite import BatchDatabase
from .logger import get_logger

logger = get_logger(__name__)


class BatchEngine:
    """Persistent batch engine: state manager plus its database."""

    def __init__(self, state_manager: BatchStateManager, database: BatchDatabase):
        self.state_manager = state_manager
        self.database = database

    @staticmethod
    async def create(
        config: EngineConfig,
        venue: PositionVenue,
        share_token: Any,
        principal_token: Any,
        settlement: Optional[Settlement] = None,
    ) -> "BatchEngine":
        """Build the engine from *config*, restoring whatever the store holds."""
        config.validate()
        sqlite = config.database.sqlite
        database = await BatchDatabase.create(sqlite.path, sqlite.wal_mode)
        try:
            ledger = await database.load_ledger()
            pendings = await database.load_pending()
            nonces = await database.load_nonces()
        except Exception:
            await database.close()
            raise

        mgr = BatchStateManager.from_config(
            config,
            venue,
            settlement or ExecutionSettlement(),
            share_token,
            principal_token,
            ledger=ledger,
        )
        mgr.coordinator.load_pending(pendings)
        mgr.set_nonces(nonces)

        logger.info(
            f"Batch engine loaded from {sqlite.path}: deposit round "
            f"{ledger.current_round('deposit')}, withdraw round {ledger.current_round('withdraw')}"
        )
        return BatchEngine(mgr, database)

    async def process_block(
        self,
        block_height: int,
        block_timestamp: float,
        txs: List[BatchTransaction],
    ) -> Tuple[bool, str, str]:
        """
        Apply a block and persist it.

        Returns:
            Tuple of (success, error_message, state_root)
        """
        success, error, state_root = process_batch_transactions(
            block_height, block_timestamp, txs, self.state_manager,
        )
        if not success:
            logger.error(f"Block {block_height} not persisted: {error}")
            return success, error, state_root

        await self.checkpoint()
        return success, error, state_root

    async def checkpoint(self) -> None:
        """Write the current state to the store."""
        mgr = self.state_manager
        await self.database.save_state(mgr.ledger, mgr.pending(), mgr.nonces)

    async def close(self) -> None:
        await self.database.close()
