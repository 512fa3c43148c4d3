"""
Neutra Perp Venue (simulated)

Asynchronous short-position venue used to hedge batched vault flows:
  - Position changes are *requested* and queued, never executed inline
  - A keeper pushes packed prices and executes a window of each queue
  - Increase requests (open) run before decrease requests (close)
  - Acceptable-price guard per request; a failed guard cancels the request
  - Every executed or cancelled request reports back through its callback
  - USD sizes and prices carry 30 decimals, collateral is taken in
    18-decimal principal units and converted 1:1 to USD

Security features:
  - Keeper-only execution
  - Keeper price deviation cap (rejected prices keep the previous price)
  - Max global short size per market
  - Deterministic request keys (blake2b)
  - Emergency pause
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..address import normalize_address
from ..constants import (
    BASIS_POINTS_DIVISOR,
    MAX_PRICE_DEVIATION_BPS,
    MAX_PRICES_PER_BITS,
    PRICE_PRECISION,
    TOKEN_UNIT,
)
from ..exceptions import UnauthorizedOperatorError, VenueError
from .prices import decode_price_bits, keeper_price_to_usd

logger = logging.getLogger(__name__)

# one principal unit (18 decimals) is worth one USD (30 decimals)
COLLATERAL_TO_USD = PRICE_PRECISION // TOKEN_UNIT
MAX_GLOBAL_SHORT_SIZE_DEFAULT = 50_000_000 * PRICE_PRECISION


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RequestKind(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


class RequestStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class PositionRequest:
    """A queued position change awaiting keeper execution."""
    key: str
    kind: RequestKind
    account: str
    index_token: str
    collateral_delta: int              # principal units on increase, USD on decrease
    size_delta: int                    # USD
    acceptable_price: int
    receiver: str = ""
    status: RequestStatus = RequestStatus.PENDING
    execution_price: int = 0
    realized_amount: int = 0           # USD paid to receiver on decrease
    cancel_reason: str = ""
    created_at: float = field(default_factory=time.time)
    executed_at: float = 0.0
    callback: Optional[Callable[["PositionRequest"], None]] = field(
        default=None, repr=False, compare=False,
    )

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    @property
    def executed(self) -> bool:
        return self.status == RequestStatus.EXECUTED


@dataclass
class ShortPosition:
    """Short exposure of one account on one index token."""
    account: str
    index_token: str
    size: int = 0                      # USD
    collateral: int = 0                # USD
    average_price: int = 0
    last_increased_at: float = 0.0

    def unrealized_pnl(self, price: int) -> int:
        if self.size == 0 or self.average_price == 0:
            return 0
        return self.size * (self.average_price - price) // self.average_price

    def value(self, price: int) -> int:
        """Collateral plus PnL, floored at zero."""
        return max(0, self.collateral + self.unrealized_pnl(price))


@dataclass
class IndexMarket:
    token: str
    price: int = 0
    last_price_update: float = 0.0
    global_short_size: int = 0
    max_global_short_size: int = MAX_GLOBAL_SHORT_SIZE_DEFAULT


# ---------------------------------------------------------------------------
# Perp Venue
# ---------------------------------------------------------------------------

class PerpVenue:
    """
    Keeper-driven short-position venue.

    Callers submit increase / decrease requests and get back a request key.
    Nothing changes until the keeper calls set_prices_with_bits_and_execute(),
    which updates index prices and then executes the queued requests in
    submission order, invoking each request's callback exactly once.
    """

    def __init__(
        self,
        keeper: str,
        price_tokens: Sequence[str],
        max_price_deviation_bps: int = MAX_PRICE_DEVIATION_BPS,
    ) -> None:
        if len(price_tokens) > MAX_PRICES_PER_BITS:
            raise VenueError(f"At most {MAX_PRICES_PER_BITS} price tokens per keeper tick")
        self.keeper = normalize_address(keeper)
        self.price_tokens: List[str] = [normalize_address(t) for t in price_tokens]
        self.max_price_deviation_bps = max_price_deviation_bps

        self._markets: Dict[str, IndexMarket] = {t: IndexMarket(token=t) for t in self.price_tokens}
        self._increase_queue: List[PositionRequest] = []
        self._decrease_queue: List[PositionRequest] = []
        self.increase_request_keys_start = 0
        self.decrease_request_keys_start = 0
        self._requests: Dict[str, PositionRequest] = {}
        self._positions: Dict[Tuple[str, str], ShortPosition] = {}
        self._payouts: Dict[str, int] = {}
        self._request_sequence = 0
        self._paused = False

    # -- Emergency controls -------------------------------------------------

    def pause(self) -> None:
        self._paused = True

    def unpause(self) -> None:
        self._paused = False

    @property
    def is_paused(self) -> bool:
        return self._paused

    # -- Prices ---------------------------------------------------------------

    def set_price(self, token: str, price: int) -> None:
        """Seed an index price directly (bypasses the deviation cap)."""
        market = self._market(token)
        if price <= 0:
            raise VenueError("Price must be positive")
        market.price = price
        market.last_price_update = time.time()

    def get_price(self, token: str) -> int:
        return self._market(token).price

    def has_market(self, token: str) -> bool:
        return normalize_address(token) in self._markets

    def _apply_keeper_prices(self, price_bits: int, timestamp: float) -> None:
        prices = decode_price_bits(price_bits, len(self.price_tokens))
        for token, keeper_price in zip(self.price_tokens, prices):
            if keeper_price == 0:
                continue
            market = self._markets[token]
            price = keeper_price_to_usd(keeper_price)
            if market.price > 0:
                deviation = abs(price - market.price) * BASIS_POINTS_DIVISOR // market.price
                if deviation > self.max_price_deviation_bps:
                    logger.warning(
                        "Keeper price for %s rejected: %d bps from %d",
                        token, deviation, market.price,
                    )
                    continue
            market.price = price
            market.last_price_update = timestamp

    # -- Requests -------------------------------------------------------------

    def create_increase_position(
        self,
        account: str,
        index_token: str,
        amount_in: int,
        size_delta: int,
        acceptable_price: int,
        callback: Optional[Callable[[PositionRequest], None]] = None,
    ) -> str:
        """
        Queue a short increase of *size_delta* backed by *amount_in* collateral.

        Returns:
            The request key

        Raises:
            VenueError: paused, unknown market, or non-positive amounts
        """
        self._check_request(index_token, size_delta)
        if amount_in <= 0:
            raise VenueError("Collateral must be positive")

        request = self._new_request(
            RequestKind.INCREASE, account, index_token,
            collateral_delta=amount_in,
            size_delta=size_delta,
            acceptable_price=acceptable_price,
            callback=callback,
        )
        self._increase_queue.append(request)
        logger.debug("Increase request %s queued for %s", request.key, request.index_token)
        return request.key

    def create_decrease_position(
        self,
        account: str,
        index_token: str,
        collateral_delta: int,
        size_delta: int,
        acceptable_price: int,
        receiver: str,
        callback: Optional[Callable[[PositionRequest], None]] = None,
    ) -> str:
        """
        Queue a short decrease of *size_delta*.

        A *collateral_delta* of zero releases collateral in proportion to
        the size closed.
        """
        self._check_request(index_token, size_delta)
        if collateral_delta < 0:
            raise VenueError("Collateral delta must not be negative")

        request = self._new_request(
            RequestKind.DECREASE, account, index_token,
            collateral_delta=collateral_delta,
            size_delta=size_delta,
            acceptable_price=acceptable_price,
            receiver=normalize_address(receiver),
            callback=callback,
        )
        self._decrease_queue.append(request)
        logger.debug("Decrease request %s queued for %s", request.key, request.index_token)
        return request.key

    def get_request(self, key: str) -> Optional[PositionRequest]:
        return self._requests.get(key)

    def get_request_queue_lengths(self) -> Tuple[int, int, int, int]:
        """(increase start, increase length, decrease start, decrease length)"""
        return (
            self.increase_request_keys_start,
            len(self._increase_queue),
            self.decrease_request_keys_start,
            len(self._decrease_queue),
        )

    # -- Keeper ---------------------------------------------------------------

    def set_prices_with_bits_and_execute(
        self,
        caller: str,
        price_bits: int,
        timestamp: Optional[float] = None,
        end_index_for_increase_positions: Optional[int] = None,
        end_index_for_decrease_positions: Optional[int] = None,
    ) -> Tuple[int, int]:
        """
        Push keeper prices and execute queued requests up to the given
        (exclusive) end indices. End indices past the queue are clamped.

        Returns:
            (increase requests processed, decrease requests processed)
        """
        if normalize_address(caller) != self.keeper:
            raise UnauthorizedOperatorError(f"{caller} is not the venue keeper")
        if self._paused:
            raise VenueError("Perp venue is paused")

        self._apply_keeper_prices(price_bits, timestamp or time.time())

        increase_end = len(self._increase_queue)
        if end_index_for_increase_positions is not None:
            increase_end = min(increase_end, end_index_for_increase_positions)
        decrease_end = len(self._decrease_queue)
        if end_index_for_decrease_positions is not None:
            decrease_end = min(decrease_end, end_index_for_decrease_positions)

        increases = 0
        while self.increase_request_keys_start < increase_end:
            request = self._increase_queue[self.increase_request_keys_start]
            self.increase_request_keys_start += 1
            self._execute_increase(request)
            increases += 1

        decreases = 0
        while self.decrease_request_keys_start < decrease_end:
            request = self._decrease_queue[self.decrease_request_keys_start]
            self.decrease_request_keys_start += 1
            self._execute_decrease(request)
            decreases += 1

        if increases or decreases:
            logger.info("Keeper executed %d increase / %d decrease requests", increases, decreases)
        return increases, decreases

    def _execute_increase(self, request: PositionRequest) -> None:
        market = self._markets[request.index_token]
        price = market.price
        # shorts open at or above the acceptable price
        if price <= 0 or price < request.acceptable_price:
            self._finish(request, price, cancel_reason="mark price lower than limit")
            return
        if market.global_short_size + request.size_delta > market.max_global_short_size:
            self._finish(request, price, cancel_reason="max shorts exceeded")
            return

        position = self._positions.setdefault(
            (request.account, request.index_token),
            ShortPosition(account=request.account, index_token=request.index_token),
        )
        next_size = position.size + request.size_delta
        position.average_price = (
            (position.size * position.average_price + request.size_delta * price) // next_size
        )
        position.size = next_size
        position.collateral += request.collateral_delta * COLLATERAL_TO_USD
        position.last_increased_at = time.time()
        market.global_short_size += request.size_delta

        self._finish(request, price)

    def _execute_decrease(self, request: PositionRequest) -> None:
        market = self._markets[request.index_token]
        price = market.price
        # shorts close at or below the acceptable price
        if price <= 0 or price > request.acceptable_price:
            self._finish(request, price, cancel_reason="mark price higher than limit")
            return

        position = self._positions.get((request.account, request.index_token))
        if position is None or position.size < request.size_delta:
            self._finish(request, price, cancel_reason="position size exceeded")
            return

        pnl = position.size * (position.average_price - price) // position.average_price
        pnl = pnl * request.size_delta // position.size
        released = request.collateral_delta or position.collateral * request.size_delta // position.size
        released = min(released, position.collateral)
        payout = max(0, released + pnl)

        position.size -= request.size_delta
        position.collateral -= released
        market.global_short_size -= request.size_delta
        if position.size == 0:
            del self._positions[(request.account, request.index_token)]

        self._payouts[request.receiver] = self._payouts.get(request.receiver, 0) + payout
        request.realized_amount = payout
        self._finish(request, price)

    def _finish(self, request: PositionRequest, price: int, cancel_reason: str = "") -> None:
        request.execution_price = price
        request.executed_at = time.time()
        if cancel_reason:
            request.status = RequestStatus.CANCELLED
            request.cancel_reason = cancel_reason
            logger.warning("%s request %s cancelled: %s", request.kind.value, request.key, cancel_reason)
        else:
            request.status = RequestStatus.EXECUTED

        if request.callback is None:
            return
        try:
            request.callback(request)
        except Exception as e:
            logger.error("Callback for request %s failed: %s", request.key, e)

    # -- Queries --------------------------------------------------------------

    def get_position(self, account: str, index_token: str) -> Optional[ShortPosition]:
        return self._positions.get((normalize_address(account), normalize_address(index_token)))

    def position_value(self, account: str) -> int:
        """USD value of all of *account*'s shorts at current index prices."""
        account = normalize_address(account)
        return sum(
            position.value(self._markets[token].price)
            for (owner, token), position in self._positions.items()
            if owner == account
        )

    def payout_of(self, receiver: str) -> int:
        return self._payouts.get(normalize_address(receiver), 0)

    # -- Internal helpers -----------------------------------------------------

    def _market(self, token: str) -> IndexMarket:
        market = self._markets.get(normalize_address(token))
        if market is None:
            raise VenueError(f"No market for index token {token}")
        return market

    def _check_request(self, index_token: str, size_delta: int) -> None:
        if self._paused:
            raise VenueError("Perp venue is paused")
        self._market(index_token)
        if size_delta <= 0:
            raise VenueError("Size delta must be positive")

    def _new_request(self, kind: RequestKind, account: str, index_token: str, **fields) -> PositionRequest:
        account = normalize_address(account)
        index_token = normalize_address(index_token)
        self._request_sequence += 1
        request = PositionRequest(
            key=self._deterministic_request_key(account, kind.value, self._request_sequence),
            kind=kind,
            account=account,
            index_token=index_token,
            **fields,
        )
        self._requests[request.key] = request
        return request

    @staticmethod
    def _deterministic_request_key(account: str, kind: str, seq: int) -> str:
        raw = f"{account}:{kind}:{seq}".encode()
        return "0x" + hashlib.blake2b(raw, digest_size=32).hexdigest()
