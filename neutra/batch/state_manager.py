"""
Neutra Batch State Manager

Single entry point for every participant, operator and admin action on
the batch engine. Actions arrive as BatchTransactions and are applied in
order, one at a time.

Responsibilities:
  - Owns the ledger, coordinator, resolver and role table
  - Processes BatchTransactions (validation, replay protection, dispatch)
  - Rolls a failed transaction back so it leaves no trace
  - Computes a state root over rounds, reservations, in-flight batches
    and nonces
  - Block-boundary lifecycle (begin_block, finalize_block, revert_block)

Venue callbacks are not transactions: they reach the coordinator directly
from the keeper and are not undone by revert_block().
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from ..address import normalize_address
from ..exceptions import InvalidAmountError, NeutraException
from .authorization import Role, RoleTable
from .coordinator import BatchCoordinator, CoordinatorConfig, PendingExecution
from .ledger import RoundLedger, Side
from .resolver import ClaimResolver
from .settlement import Settlement
from .transactions import BatchOpType, BatchTransaction
from .venue import PositionVenue, VenueAdapter

logger = logging.getLogger(__name__)


def _int_param(params: Dict[str, Any], key: str) -> int:
    """Integer amount from tx params: an int, or a decimal string for amounts past 2**53."""
    value = params[key]
    if isinstance(value, str) and value.isdigit():
        return int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(f"{key} must be an integer, got {value!r}")
    return value


# ---------------------------------------------------------------------------
# Transaction execution result
# ---------------------------------------------------------------------------

class BatchExecResult:
    """Result of executing a single batch transaction."""

    __slots__ = ("success", "data", "error")

    def __init__(
        self,
        success: bool = True,
        data: Optional[Dict[str, Any]] = None,
        error: str = "",
    ):
        self.success = success
        self.data = data or {}
        self.error = error


# ---------------------------------------------------------------------------
# Batch State Manager
# ---------------------------------------------------------------------------

class BatchStateManager:
    """
    Transactional front door of the batch engine.

    Usage:

        mgr = BatchStateManager(coordinator, resolver)
        mgr.begin_block(height, timestamp)
        for tx in txs:
            result = mgr.process_transaction(tx)
        state_root = mgr.finalize_block()
    """

    def __init__(self, coordinator: BatchCoordinator, resolver: ClaimResolver) -> None:
        self.coordinator = coordinator
        self.resolver = resolver
        self.ledger: RoundLedger = coordinator.ledger
        self.roles: RoleTable = coordinator.roles

        # Per-sender nonces for replay protection
        self._nonces: Dict[str, int] = {}

        # --- Block-level tracking ---
        self._current_block_height: int = 0
        self._current_block_timestamp: float = 0.0
        self._block_txs: List[BatchTransaction] = []
        self._block_results: List[BatchExecResult] = []

        # --- State snapshot for revert ---
        self._snapshot: Optional[Dict[str, Any]] = None

        # --- Counters ---
        self._total_txs: int = 0
        self._failed_txs: int = 0
        self._total_claimed: Dict[Side, int] = {side: 0 for side in Side}

    @classmethod
    def from_config(
        cls,
        config: Any,
        venue: PositionVenue,
        settlement: Settlement,
        share_token: Any,
        principal_token: Any,
        ledger: Optional[RoundLedger] = None,
    ) -> "BatchStateManager":
        """
        Wire a complete engine from an EngineConfig.

        The escrow account holds the venue positions; the configured admin
        grants the operator role to every configured operator.
        """
        ledger = ledger or RoundLedger()
        admin = config.batch.admin or config.engine.escrow_account
        roles = RoleTable(admin)
        for operator in config.batch.operators:
            roles.grant(admin, operator, Role.OPERATOR)

        adapter = VenueAdapter(venue, config.engine.escrow_account)
        coordinator = BatchCoordinator(
            ledger,
            adapter,
            roles,
            settlement,
            CoordinatorConfig(
                deposit_sale=config.batch.deposit_sale,
                withdraw_sale=config.batch.withdraw_sale,
                deposit_limit=config.batch.deposit_limit,
            ),
        )
        resolver = ClaimResolver(ledger, share_token, principal_token)
        return cls(coordinator, resolver)

    # =====================================================================
    #  Block lifecycle
    # =====================================================================

    def begin_block(self, block_height: int, block_timestamp: float) -> None:
        self._current_block_height = block_height
        self._current_block_timestamp = block_timestamp
        self._block_txs = []
        self._block_results = []

    def finalize_block(self) -> str:
        """
        Called after all transactions in a block are processed.

        Returns:
            The batch state root for this block.
        """
        state_root = self.compute_state_root()
        self._snapshot = None
        logger.debug(
            "Block %d finalized: %d batch txs, state_root=%s",
            self._current_block_height,
            len(self._block_txs),
            state_root[:16],
        )
        return state_root

    def revert_block(self) -> None:
        """Restore the state captured by the last take_snapshot()."""
        if self._snapshot is not None:
            self._restore_snapshot(self._snapshot)
            self._snapshot = None
            logger.warning(
                "Block %d reverted, batch state restored",
                self._current_block_height,
            )

    # =====================================================================
    #  Transaction processing
    # =====================================================================

    def process_transaction(self, tx: BatchTransaction) -> BatchExecResult:
        """
        Execute a single batch transaction.

        This is the ONLY entry point for batch state mutations apart from
        venue confirmations. A failed transaction is rolled back and does
        not consume its nonce.
        """
        # 1. Basic structural validation
        try:
            tx.validate_basic()
            sender = normalize_address(tx.sender)
        except (ValueError, NeutraException) as e:
            return self._record(tx, BatchExecResult(success=False, error=str(e)))

        # 2. Nonce check (replay protection)
        expected_nonce = self._nonces.get(sender, 0)
        if tx.nonce != expected_nonce:
            return self._record(tx, BatchExecResult(
                success=False,
                error=f"Invalid nonce: expected {expected_nonce}, got {tx.nonce}",
            ))

        # 3. Execute the operation against a rollback point
        rollback = self._capture()
        try:
            result = self._execute_op(tx)
        except (NeutraException, ValueError, TypeError, KeyError) as e:
            self._restore_snapshot(rollback)
            logger.error("Batch op %s from %s failed: %s", tx.op_type.name, sender, e)
            result = BatchExecResult(success=False, error=str(e))

        # 4. Update nonce on success
        if result.success:
            self._nonces[sender] = tx.nonce + 1

        return self._record(tx, result)

    def _record(self, tx: BatchTransaction, result: BatchExecResult) -> BatchExecResult:
        tx.success = result.success
        tx.result = result.data
        tx.error = result.error
        self._block_txs.append(tx)
        self._block_results.append(result)
        self._total_txs += 1
        if not result.success:
            self._failed_txs += 1
        return result

    def _execute_op(self, tx: BatchTransaction) -> BatchExecResult:
        """Dispatch to the appropriate handler."""
        handlers = {
            BatchOpType.RESERVE_DEPOSIT: self._op_reserve_deposit,
            BatchOpType.CANCEL_DEPOSIT: self._op_cancel_deposit,
            BatchOpType.RESERVE_WITHDRAW: self._op_reserve_withdraw,
            BatchOpType.CANCEL_WITHDRAW: self._op_cancel_withdraw,
            BatchOpType.EXECUTE_BATCH: self._op_execute_batch,
            BatchOpType.CLAIM_DEPOSIT: self._op_claim_deposit,
            BatchOpType.CLAIM_WITHDRAW: self._op_claim_withdraw,
            BatchOpType.SET_SALE: self._op_set_sale,
            BatchOpType.SET_DEPOSIT_LIMIT: self._op_set_deposit_limit,
        }
        handler = handlers.get(tx.op_type)
        if handler is None:
            return BatchExecResult(success=False, error=f"Unknown op type: {tx.op_type}")
        return handler(tx)

    # =====================================================================
    #  Operation handlers
    # =====================================================================

    @staticmethod
    def _reservation_data(res) -> Dict[str, Any]:
        return {"round": res.round_number, "reserved": str(res.amount)}

    def _op_reserve_deposit(self, tx: BatchTransaction) -> BatchExecResult:
        res = self.coordinator.reserve_deposit(tx.sender, _int_param(tx.params, "amount"))
        return BatchExecResult(data=self._reservation_data(res))

    def _op_cancel_deposit(self, tx: BatchTransaction) -> BatchExecResult:
        res = self.coordinator.cancel_deposit(tx.sender, _int_param(tx.params, "amount"))
        return BatchExecResult(data=self._reservation_data(res))

    def _op_reserve_withdraw(self, tx: BatchTransaction) -> BatchExecResult:
        res = self.coordinator.reserve_withdraw(tx.sender, _int_param(tx.params, "amount"))
        return BatchExecResult(data=self._reservation_data(res))

    def _op_cancel_withdraw(self, tx: BatchTransaction) -> BatchExecResult:
        res = self.coordinator.cancel_withdraw(tx.sender, _int_param(tx.params, "amount"))
        return BatchExecResult(data=self._reservation_data(res))

    def _op_execute_batch(self, tx: BatchTransaction) -> BatchExecResult:
        p = tx.params
        pending = self.coordinator.execute_batch(
            tx.sender,
            Side(p["side"]),
            list(p["instructions"]),
            _int_param(p, "aggregate_amount"),
        )
        return BatchExecResult(data={
            "round": pending.round_number,
            "request_ids": list(pending.request_ids),
        })

    def _op_claim_deposit(self, tx: BatchTransaction) -> BatchExecResult:
        payout = self.resolver.claim_deposit(tx.sender)
        self._total_claimed[Side.DEPOSIT] += payout
        return BatchExecResult(data={"payout": str(payout)})

    def _op_claim_withdraw(self, tx: BatchTransaction) -> BatchExecResult:
        payout = self.resolver.claim_withdraw(tx.sender)
        self._total_claimed[Side.WITHDRAW] += payout
        return BatchExecResult(data={"payout": str(payout)})

    def _op_set_sale(self, tx: BatchTransaction) -> BatchExecResult:
        p = tx.params
        self.coordinator.set_sale(tx.sender, bool(p["deposit"]), bool(p["withdraw"]))
        return BatchExecResult(data={"deposit": bool(p["deposit"]), "withdraw": bool(p["withdraw"])})

    def _op_set_deposit_limit(self, tx: BatchTransaction) -> BatchExecResult:
        limit = None if tx.params["limit"] is None else _int_param(tx.params, "limit")
        self.coordinator.set_deposit_limit(tx.sender, limit)
        return BatchExecResult(data={"limit": None if limit is None else str(limit)})

    # =====================================================================
    #  State root computation
    # =====================================================================

    def compute_state_root(self) -> str:
        """
        Deterministic hash of the entire batch state.

        Returns:
            64-char hex string (blake2b-256)
        """
        hasher = hashlib.blake2b(digest_size=32)
        ledger = self.ledger.to_dict()

        for side in Side:
            book = ledger[side.value]
            hasher.update(f"{side.value}:{book['current_round']}:{book['unclaimed_output']}".encode())

            # 1. Round totals
            for rnd in book["rounds"]:
                round_hash = hashlib.blake2b(
                    (f"{rnd['number']}:{rnd['total_reserved']}:{rnd['executed_amount']}:"
                     f"{rnd['total_output']}:{rnd['confirmed']}:{rnd['is_executing']}").encode(),
                    digest_size=16,
                ).digest()
                hasher.update(round_hash)

            # 2. Reservations (sorted by participant)
            for res in book["reservations"]:
                hasher.update(f"{res['participant']}:{res['amount']}:{res['round_number']}".encode())

            # 3. In-flight batch
            pending = self.coordinator.pending_status(side).as_tuple()
            hasher.update(json.dumps(pending).encode())

        # 4. Nonce state
        for addr in sorted(self._nonces.keys()):
            hasher.update(f"{addr}:{self._nonces[addr]}".encode())

        # 5. Block metadata
        hasher.update(self._current_block_height.to_bytes(8, "big"))

        return hasher.hexdigest()

    # =====================================================================
    #  Snapshot / restore (for revert)
    # =====================================================================

    def _capture(self) -> Dict[str, Any]:
        return {
            "ledger": self.ledger.snapshot(),
            "coordinator": self.coordinator.snapshot(),
            "nonces": dict(self._nonces),
            "total_claimed": dict(self._total_claimed),
        }

    def take_snapshot(self) -> Dict[str, Any]:
        """Capture current state for potential revert."""
        self._snapshot = self._capture()
        return self._snapshot

    def _restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self.ledger.restore(snapshot["ledger"])
        self.coordinator.restore(snapshot["coordinator"])
        self._nonces = dict(snapshot["nonces"])
        self._total_claimed = dict(snapshot["total_claimed"])

    # =====================================================================
    #  Query interface (read-only)
    # =====================================================================

    def get_nonce(self, address: str) -> int:
        return self._nonces.get(normalize_address(address), 0)

    def set_nonces(self, nonces: Dict[str, int]) -> None:
        """Install persisted nonces."""
        self._nonces = {normalize_address(a): int(n) for a, n in nonces.items()}

    @property
    def nonces(self) -> Dict[str, int]:
        return dict(self._nonces)

    def pending(self) -> Dict[Side, PendingExecution]:
        return {side: self.coordinator.pending_status(side) for side in Side}

    @property
    def block_results(self) -> List[BatchExecResult]:
        return list(self._block_results)

    def get_stats(self) -> Dict[str, Any]:
        """Engine-wide statistics."""
        stats: Dict[str, Any] = {
            "total_txs": self._total_txs,
            "failed_txs": self._failed_txs,
            "block_height": self._current_block_height,
        }
        for side in Side:
            stats[side.value] = {
                "current_round": self.ledger.current_round(side),
                "locked": self.ledger.is_locked(side),
                "state": self.coordinator.state(side).value,
                "unclaimed_output": self.ledger.unclaimed_output(side),
                "total_claimed": self._total_claimed[side],
            }
        return stats
