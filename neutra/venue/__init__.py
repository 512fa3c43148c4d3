"""
Neutra simulated execution venue.

Keeper-driven perpetual short venue with request queues, used to hedge
batched vault flows and by the test-suite.
"""

from .perp import (
    COLLATERAL_TO_USD,
    IndexMarket,
    PerpVenue,
    PositionRequest,
    RequestKind,
    RequestStatus,
    ShortPosition,
)
from .prices import decode_price_bits, get_price_bits, keeper_price_to_usd, usd_to_keeper_price

__all__ = [
    "COLLATERAL_TO_USD",
    "IndexMarket",
    "PerpVenue",
    "PositionRequest",
    "RequestKind",
    "RequestStatus",
    "ShortPosition",
    "decode_price_bits",
    "get_price_bits",
    "keeper_price_to_usd",
    "usd_to_keeper_price",
]
