"""
Batch Token

Minimal fungible token used as the claim collaborator of the batch engine:
  - Integer balances in the token's smallest unit
  - mint / burn restricted to registered minters
  - transfer between accounts
  - credit(account, amount) for the claim resolver: paid out of a funding
    account when one is set (principal held by the vault), minted otherwise
    (vault shares)
  - Event log of every balance change
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set

from ..address import normalize_address
from ..constants import TOKEN_DECIMALS, ZERO_ADDRESS
from ..exceptions import NeutraException
from ..logger import get_logger

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════

class TokenError(NeutraException):
    """Base exception for token operations."""


class InsufficientBalanceError(TokenError):
    """Raised when an account balance is too low."""


# ══════════════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransferEvent:
    """Emitted on every balance change; mints come from and burns go to the zero address."""
    token_symbol: str
    sender: str
    recipient: str
    amount: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Transfer",
            "token": self.token_symbol,
            "from": self.sender,
            "to": self.recipient,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
        }


class TokenSink(Protocol):
    """Anything the claim resolver can pay out through."""

    def credit(self, account: str, amount: int) -> Any: ...


# ══════════════════════════════════════════════════════════════════════
#  BATCH TOKEN
# ══════════════════════════════════════════════════════════════════════

class BatchToken:
    """
    Integer-balance token with a minter set.

    Mirrors ERC-20 semantics without allowances:
        - balance_of(address) -> int
        - transfer(sender, recipient, amount)
        - mint(minter, recipient, amount) / burn(minter, account, amount)
        - total_supply -> int
    """

    def __init__(
        self,
        name: str,
        symbol: str,
        decimals: int = TOKEN_DECIMALS,
        *,
        owner: str,
        funding_account: Optional[str] = None,
    ):
        """
        Args:
            name: Human-readable token name
            symbol: Short ticker (e.g. "nGLP")
            decimals: Fractional digits
            owner: Account allowed to manage minters; starts as a minter
            funding_account: When set, credit() transfers out of this
                account instead of minting
        """
        if not name:
            raise TokenError("Token name cannot be empty")
        if not symbol:
            raise TokenError("Token symbol cannot be empty")
        if decimals < 0 or decimals > 18:
            raise TokenError(f"Decimals must be 0-18, got {decimals}")

        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.owner = normalize_address(owner)
        self.funding_account = normalize_address(funding_account) if funding_account else None

        self._total_supply = 0
        self._balances: Dict[str, int] = {}
        self._minters: Set[str] = {self.owner}
        self._events: List[TransferEvent] = []

    # ── Read-only views ───────────────────────────────────────────────

    @property
    def total_supply(self) -> int:
        return self._total_supply

    def balance_of(self, address: str) -> int:
        return self._balances.get(normalize_address(address), 0)

    def is_minter(self, address: str) -> bool:
        return normalize_address(address) in self._minters

    @property
    def events(self) -> List[TransferEvent]:
        return list(self._events)

    # ── Administration ────────────────────────────────────────────────

    def set_minter(self, caller: str, minter: str, active: bool) -> None:
        if normalize_address(caller) != self.owner:
            raise TokenError(f"{caller} is not the owner of {self.symbol}")
        minter = normalize_address(minter)
        if active:
            self._minters.add(minter)
        else:
            self._minters.discard(minter)
        logger.info(f"{self.symbol} minter {minter} set to {active}")

    def _require_minter(self, caller: str) -> None:
        if normalize_address(caller) not in self._minters:
            raise TokenError(f"{caller} is not a minter of {self.symbol}")

    @staticmethod
    def _require_positive(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise TokenError("Amount must be a positive integer")

    # ── Core operations ───────────────────────────────────────────────

    def transfer(self, sender: str, recipient: str, amount: int) -> TransferEvent:
        self._require_positive(amount)
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        if sender == recipient:
            raise TokenError("Cannot transfer to self")

        bal = self._balances.get(sender, 0)
        if bal < amount:
            raise InsufficientBalanceError(f"{sender} balance {bal} < transfer amount {amount}")

        self._balances[sender] = bal - amount
        self._balances[recipient] = self._balances.get(recipient, 0) + amount
        return self._emit(sender, recipient, amount)

    def mint(self, minter: str, recipient: str, amount: int) -> TransferEvent:
        self._require_minter(minter)
        self._require_positive(amount)
        recipient = normalize_address(recipient)

        self._balances[recipient] = self._balances.get(recipient, 0) + amount
        self._total_supply += amount
        return self._emit(ZERO_ADDRESS, recipient, amount)

    def burn(self, minter: str, account: str, amount: int) -> TransferEvent:
        self._require_minter(minter)
        self._require_positive(amount)
        account = normalize_address(account)

        bal = self._balances.get(account, 0)
        if bal < amount:
            raise InsufficientBalanceError(f"{account} balance {bal} < burn amount {amount}")

        self._balances[account] = bal - amount
        self._total_supply -= amount
        return self._emit(account, ZERO_ADDRESS, amount)

    def credit(self, account: str, amount: int) -> TransferEvent:
        """Pay *amount* to *account* on behalf of the batch engine."""
        if self.funding_account is not None:
            return self.transfer(self.funding_account, account, amount)
        return self.mint(self.owner, account, amount)

    def _emit(self, sender: str, recipient: str, amount: int) -> TransferEvent:
        event = TransferEvent(
            token_symbol=self.symbol,
            sender=sender,
            recipient=recipient,
            amount=amount,
        )
        self._events.append(event)
        logger.debug(f"Transfer: {sender} → {recipient} {amount} {self.symbol}")
        return event
