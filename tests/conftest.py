"""
Shared fixtures for the batch engine test-suite.

The `engine` fixture wires a complete engine (ledger, role table, venue
adapter on a simulated perp venue, coordinator, resolver and tokens) with
both sales open, WBTC at 20,000 USD and WETH at 1,500 USD.
"""

import pytest

from neutra.batch import (
    BatchCoordinator,
    ClaimResolver,
    CoordinatorConfig,
    FixedRateSettlement,
    Role,
    RoleTable,
    RoundLedger,
    VenueAdapter,
    encode_close_instruction,
    encode_open_instruction,
)
from neutra.constants import PRICE_PRECISION, TOKEN_UNIT
from neutra.tokens import BatchToken
from neutra.venue import PerpVenue, get_price_bits


ADMIN = "0x" + "ad" * 20
OPERATOR = "0x" + "0e" * 20
KEEPER = "0x" + "4e" * 20
ESCROW = "0x" + "e5" * 20
ROUTER = "0x" + "70" * 20
WBTC = "0x" + "b7" * 20
WETH = "0x" + "e7" * 20

# keeper prices carry three decimals
WBTC_KEEPER_PRICE = 20_000_000
WETH_KEEPER_PRICE = 1_500_000


def tokens(amount) -> int:
    return int(amount * TOKEN_UNIT)


def usd(amount) -> int:
    return int(amount * PRICE_PRECISION)


class EngineHarness:
    """Everything a batch test needs, wired the way a node wires it."""

    admin = ADMIN
    operator = OPERATOR
    keeper = KEEPER
    escrow = ESCROW
    router = ROUTER
    wbtc = WBTC
    weth = WETH

    def __init__(self, settlement=None, sales_open: bool = True):
        self.venue = PerpVenue(KEEPER, [WBTC, WETH])
        self.venue.set_price(WBTC, usd(20_000))
        self.venue.set_price(WETH, usd(1_500))

        self.ledger = RoundLedger()
        self.roles = RoleTable(ADMIN)
        self.roles.grant(ADMIN, OPERATOR, Role.OPERATOR)
        self.adapter = VenueAdapter(self.venue, ESCROW)
        self.settlement = settlement or FixedRateSettlement()
        self.coordinator = BatchCoordinator(
            self.ledger,
            self.adapter,
            self.roles,
            self.settlement,
            CoordinatorConfig(deposit_sale=sales_open, withdraw_sale=sales_open),
        )
        self.share_token = BatchToken("Neutra GLP", "nGLP", owner=ESCROW)
        self.principal_token = BatchToken("Dai Stablecoin", "DAI", owner=ESCROW)
        self.resolver = ClaimResolver(self.ledger, self.share_token, self.principal_token)

    # -- Instructions ---------------------------------------------------------

    def open_instructions(self, wbtc_collateral=6_300, weth_collateral=11_700):
        """Open-leg blobs hedging the given principal amounts (whole tokens)."""
        return [
            encode_open_instruction(WBTC, tokens(wbtc_collateral), usd(19_900)),
            encode_open_instruction(WETH, tokens(weth_collateral), usd(1_490)),
        ]

    def close_instruction(self, asset=WETH, size=2_000, acceptable=1_510):
        return encode_close_instruction(asset, usd(size), usd(acceptable), ROUTER)

    # -- Keeper ---------------------------------------------------------------

    def tick(self, wbtc_price=WBTC_KEEPER_PRICE, weth_price=WETH_KEEPER_PRICE, **kwargs):
        """One keeper tick: push prices and execute every queued request."""
        price_bits = get_price_bits([wbtc_price, weth_price])
        return self.venue.set_prices_with_bits_and_execute(KEEPER, price_bits, **kwargs)


@pytest.fixture
def engine() -> EngineHarness:
    return EngineHarness()


@pytest.fixture
def ledger() -> RoundLedger:
    return RoundLedger()


@pytest.fixture
def make_engine():
    """Factory for tests that need more than one independent engine."""
    return EngineHarness
