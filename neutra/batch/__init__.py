"""
Neutra Batched Reservation & Settlement Engine

Batches vault deposits and withdrawals into rounds and settles each round
against an asynchronous hedging venue.

Components:
  - Round Ledger (rounds, reservations, unclaimed output per side)
  - Batch Coordinator (operator-triggered two-leg execution state machine)
  - Claim Resolver (pro-rata payout of settled rounds)
  - Venue Adapter (instruction submission and confirmation routing)
  - Instruction codec (ABI-encoded per-asset instructions)
  - Role table (admin / operator / handler, blocked participants)
  - State manager and block processor (ordered, transactional processing)
"""

from .ledger import (
    Side,
    Round,
    Reservation,
    RoundLedger,
)
from .instructions import (
    ExecutionLeg,
    AssetInstruction,
    OPEN_TYPES,
    CLOSE_TYPES,
    encode_open_instruction,
    encode_close_instruction,
    decode_instruction,
    decode_instructions,
    leg_of,
)
from .venue import (
    VenueOutcome,
    PositionVenue,
    VenueAdapter,
)
from .authorization import (
    Role,
    RoleTable,
)
from .settlement import (
    Settlement,
    ExecutionSettlement,
    FixedRateSettlement,
    NavSettlement,
)
from .coordinator import (
    BatchState,
    PendingExecution,
    CoordinatorConfig,
    BatchCoordinator,
)
from .resolver import (
    ClaimResolver,
)
from .transactions import (
    BatchOpType,
    BatchTransaction,
)
from .state_manager import (
    BatchExecResult,
    BatchStateManager,
)
from .processor import (
    process_batch_transactions,
    validate_batch_state_root,
)

__all__ = [
    # Ledger
    "Side", "Round", "Reservation", "RoundLedger",
    # Instructions
    "ExecutionLeg", "AssetInstruction", "OPEN_TYPES", "CLOSE_TYPES",
    "encode_open_instruction", "encode_close_instruction",
    "decode_instruction", "decode_instructions", "leg_of",
    # Venue
    "VenueOutcome", "PositionVenue", "VenueAdapter",
    # Authorization
    "Role", "RoleTable",
    # Settlement
    "Settlement", "ExecutionSettlement", "FixedRateSettlement", "NavSettlement",
    # Coordinator
    "BatchState", "PendingExecution", "CoordinatorConfig", "BatchCoordinator",
    # Claims
    "ClaimResolver",
    # Transactions
    "BatchOpType", "BatchTransaction",
    # State Manager
    "BatchExecResult", "BatchStateManager",
    # Block Processor
    "process_batch_transactions", "validate_batch_state_root",
]
