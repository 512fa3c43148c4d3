"""
Neutra Batch Block Processor

Applies an ordered group ("block") of batch transactions and commits to
the resulting state with a state root. Replaying the same transactions on
the same starting state yields the same root, which is how a replica or a
restarted node checks that it reached the expected state.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

from .state_manager import BatchStateManager
from .transactions import BatchTransaction

logger = logging.getLogger(__name__)


def process_batch_transactions(
    block_height: int,
    block_timestamp: float,
    txs: List[BatchTransaction],
    state_manager: BatchStateManager,
) -> Tuple[bool, str, str]:
    """
    Process all batch transactions of a block.

    A transaction that fails is rolled back on its own and the block goes
    on; an unexpected error reverts the whole block.

    Returns:
        Tuple of (success, error_message, state_root)
    """
    mgr = state_manager

    # Take snapshot for potential revert
    mgr.take_snapshot()
    mgr.begin_block(block_height, block_timestamp)

    failed_txs = []
    for i, tx in enumerate(txs):
        try:
            result = mgr.process_transaction(tx)
        except Exception as e:
            mgr.revert_block()
            return False, f"Critical batch error at tx {i}: {e}", ""
        if not result.success:
            failed_txs.append((i, tx.tx_hash(), result.error))
            logger.debug("Batch tx %d failed (non-critical): %s", i, result.error)

    state_root = mgr.finalize_block()

    if failed_txs:
        logger.info(
            "Block %d: %d/%d batch txs failed (non-critical)",
            block_height, len(failed_txs), len(txs),
        )

    return True, "", state_root


def validate_batch_state_root(
    block_height: int,
    block_timestamp: float,
    txs: List[BatchTransaction],
    expected_state_root: str,
    state_manager: BatchStateManager,
) -> Tuple[bool, str]:
    """
    Validate that replaying batch transactions produces the expected state root.

    Returns:
        Tuple of (is_valid, error_message)
    """
    success, error, computed_root = process_batch_transactions(
        block_height, block_timestamp, txs, state_manager,
    )

    if not success:
        return False, f"Batch processing failed: {error}"

    if computed_root != expected_state_root:
        return False, (
            f"Batch state root mismatch at block {block_height}: "
            f"expected {expected_state_root[:16]}..., "
            f"computed {computed_root[:16]}..."
        )

    return True, ""
