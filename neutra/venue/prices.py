"""
Keeper price bits.

The keeper pushes up to eight prices per tick packed into one integer,
32 bits per price, lowest lane first. Each lane holds the price with
three decimals (KEEPER_PRICE_PRECISION) and must stay below 2**31.
"""

from typing import List, Sequence

from ..constants import (
    KEEPER_PRICE_PRECISION,
    MAX_PRICE_LANE_VALUE,
    MAX_PRICES_PER_BITS,
    PRICE_BITS_LANE_WIDTH,
    PRICE_PRECISION,
)

_LANE_MASK = (1 << PRICE_BITS_LANE_WIDTH) - 1


def get_price_bits(prices: Sequence[int]) -> int:
    """
    Pack keeper prices into a single integer.

    Raises:
        ValueError: more than eight prices, or a price outside [0, 2**31)
    """
    if len(prices) > MAX_PRICES_PER_BITS:
        raise ValueError("max prices.length exceeded")

    price_bits = 0
    for index, price in enumerate(prices):
        price = int(price)
        if price < 0 or price >= MAX_PRICE_LANE_VALUE:
            raise ValueError(f"price exceeds bit limit {price}")
        price_bits |= price << (index * PRICE_BITS_LANE_WIDTH)
    return price_bits


def decode_price_bits(price_bits: int, count: int) -> List[int]:
    """Unpack the first *count* keeper prices from *price_bits*."""
    if count > MAX_PRICES_PER_BITS:
        raise ValueError("max prices.length exceeded")
    if isinstance(price_bits, str):
        price_bits = int(price_bits, 0)
    return [
        (price_bits >> (index * PRICE_BITS_LANE_WIDTH)) & _LANE_MASK
        for index in range(count)
    ]


def keeper_price_to_usd(price: int) -> int:
    """Convert a 3-decimal keeper price to a 30-decimal venue price."""
    return price * PRICE_PRECISION // KEEPER_PRICE_PRECISION


def usd_to_keeper_price(price: int) -> int:
    return price * KEEPER_PRICE_PRECISION // PRICE_PRECISION
