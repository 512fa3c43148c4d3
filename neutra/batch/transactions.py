"""
Neutra Batch Transaction Types

Defines the envelope for every operation that mutates batch state. A
transaction is applied atomically by BatchStateManager: it either takes
full effect or leaves no trace.

Transaction Types:
  - RESERVE_DEPOSIT:    Reserve principal into the current deposit round
  - CANCEL_DEPOSIT:     Give back part of a deposit reservation
  - RESERVE_WITHDRAW:   Reserve shares into the current withdraw round
  - CANCEL_WITHDRAW:    Give back part of a withdraw reservation
  - EXECUTE_BATCH:      Lock a round and submit its hedge (operator)
  - CLAIM_DEPOSIT:      Claim shares of a settled deposit round
  - CLAIM_WITHDRAW:     Claim principal of a settled withdraw round
  - SET_SALE:           Open or close reservations per side (admin)
  - SET_DEPOSIT_LIMIT:  Cap the deposit round total (admin)

Security:
  - Nonce prevents replay
  - Deterministic hash over canonical bytes
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Tuple

from ..constants import VALID_ADDRESS_PATTERN


# ---------------------------------------------------------------------------
# Batch Operation Types
# ---------------------------------------------------------------------------

class BatchOpType(IntEnum):
    """All batch operation types. Values are persisted; do not renumber."""
    RESERVE_DEPOSIT = 1
    CANCEL_DEPOSIT = 2
    RESERVE_WITHDRAW = 3
    CANCEL_WITHDRAW = 4
    EXECUTE_BATCH = 5
    CLAIM_DEPOSIT = 6
    CLAIM_WITHDRAW = 7
    SET_SALE = 8
    SET_DEPOSIT_LIMIT = 9


REQUIRED_PARAMS: Dict[BatchOpType, Tuple[str, ...]] = {
    BatchOpType.RESERVE_DEPOSIT: ("amount",),
    BatchOpType.CANCEL_DEPOSIT: ("amount",),
    BatchOpType.RESERVE_WITHDRAW: ("amount",),
    BatchOpType.CANCEL_WITHDRAW: ("amount",),
    BatchOpType.EXECUTE_BATCH: ("side", "instructions", "aggregate_amount"),
    BatchOpType.CLAIM_DEPOSIT: (),
    BatchOpType.CLAIM_WITHDRAW: (),
    BatchOpType.SET_SALE: ("deposit", "withdraw"),
    BatchOpType.SET_DEPOSIT_LIMIT: ("limit",),
}


# ---------------------------------------------------------------------------
# Batch Transaction
# ---------------------------------------------------------------------------

@dataclass
class BatchTransaction:
    """
    Envelope for a single batch operation.

    Changing any of op_type, sender, nonce or params changes the tx hash.
    Instruction blobs in params are hex strings.
    """
    op_type: BatchOpType
    sender: str                         # participant, operator or admin address
    nonce: int                          # per-sender monotonic nonce
    params: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0

    # --- Computed after execution ---
    success: bool = False
    result: Dict[str, Any] = field(default_factory=dict)
    error: str = ""

    def __post_init__(self):
        if self.timestamp == 0.0:
            self.timestamp = time.time()

    # -- Hashing ------------------------------------------------------------

    def tx_hash(self) -> str:
        """Deterministic transaction hash."""
        return hashlib.blake2b(self._canonical_bytes(), digest_size=32).hexdigest()

    def _canonical_bytes(self) -> bytes:
        params_json = json.dumps(self.params, sort_keys=True, default=str).encode("utf-8")
        parts = [
            int(self.op_type).to_bytes(1, "big"),
            self.sender.lower().encode("utf-8"),
            self.nonce.to_bytes(8, "big"),
            params_json,
        ]
        return b"".join(parts)

    # -- Serialization ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op_type": int(self.op_type),
            "sender": self.sender,
            "nonce": self.nonce,
            "params": self.params,
            "timestamp": self.timestamp,
            "tx_hash": self.tx_hash(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BatchTransaction:
        return cls(
            op_type=BatchOpType(data["op_type"]),
            sender=data["sender"],
            nonce=data["nonce"],
            params=data.get("params", {}),
            timestamp=data.get("timestamp", 0.0),
        )

    # -- Validation ---------------------------------------------------------

    def validate_basic(self) -> bool:
        """
        Structural validation (no state access needed).

        Raises:
            ValueError: with specific reason
        """
        if not self.sender or not VALID_ADDRESS_PATTERN.match(self.sender):
            raise ValueError("Missing or malformed sender address")
        if self.nonce < 0:
            raise ValueError("Nonce must be non-negative")
        if self.op_type not in BatchOpType:
            raise ValueError(f"Unknown operation type: {self.op_type}")

        for key in REQUIRED_PARAMS[self.op_type]:
            if key not in self.params:
                raise ValueError(f"{self.op_type.name} missing param: {key}")

        if self.op_type == BatchOpType.EXECUTE_BATCH:
            instructions = self.params["instructions"]
            if not isinstance(instructions, list) or not instructions:
                raise ValueError("EXECUTE_BATCH needs a non-empty instruction list")
        return True

    def __repr__(self) -> str:
        return (f"BatchTransaction(op={self.op_type.name}, sender={self.sender[:10]}..., "
                f"nonce={self.nonce}, hash={self.tx_hash()[:12]}...)")
