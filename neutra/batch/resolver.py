"""
Neutra Claim Resolver

Converts a participant's reservation in a confirmed round into its
pro-rata share of that round's output:

    payout = reserved * round.total_output // round.total_reserved

Flooring means the sum of all claims of a round never exceeds its output;
the dust stays in the side's unclaimed pool. A claim with nothing reserved
pays 0, so repeating a claim is harmless.
"""

from __future__ import annotations

import logging

from ..address import normalize_address
from ..exceptions import StaleClaimError
from ..tokens import TokenSink
from .ledger import Reservation, Round, RoundLedger, Side

logger = logging.getLogger(__name__)


class ClaimResolver:

    def __init__(self, ledger: RoundLedger, share_token: TokenSink, principal_token: TokenSink) -> None:
        self.ledger = ledger
        self.share_token = share_token
        self.principal_token = principal_token

    @staticmethod
    def pro_rata(amount: int, rnd: Round) -> int:
        if rnd.total_reserved == 0:
            return 0
        return amount * rnd.total_output // rnd.total_reserved

    def claim_deposit(self, participant: str) -> int:
        """Claim vault shares for a settled deposit reservation."""
        return self._claim(participant, Side.DEPOSIT, self.share_token)

    def claim_withdraw(self, participant: str) -> int:
        """Claim principal for a settled withdraw reservation."""
        return self._claim(participant, Side.WITHDRAW, self.principal_token)

    def preview_claim(self, participant: str, side: Side) -> int:
        """Payout a claim would produce now; 0 when nothing is claimable."""
        side = Side(side)
        with self.ledger.lock:
            res = self.ledger.get_reservation(participant, side)
            if not res.is_active or res.round_number >= self.ledger.current_round(side):
                return 0
            return self.pro_rata(res.amount, self.ledger.get_round(side, res.round_number))

    def _settled_round(self, res: Reservation) -> Round:
        if res.round_number >= self.ledger.current_round(res.side):
            raise StaleClaimError(
                f"{res.side.value} round {res.round_number} has not been confirmed yet"
            )
        rnd = self.ledger.get_round(res.side, res.round_number)
        if not rnd.confirmed:
            raise StaleClaimError(
                f"{res.side.value} round {res.round_number} has not been confirmed yet"
            )
        return rnd

    def _claim(self, participant: str, side: Side, sink: TokenSink) -> int:
        participant = normalize_address(participant)
        with self.ledger.lock:
            res = self.ledger.get_reservation(participant, side)
            if not res.is_active:
                logger.debug("Nothing to claim on %s for %s", side.value, participant)
                return 0

            rnd = self._settled_round(res)
            payout = self.pro_rata(res.amount, rnd)
            if payout > 0:
                sink.credit(participant, payout)
            self.ledger.release(participant, side, payout)

            logger.info(
                "Claimed %d from %s round %d for %s (%d reserved)",
                payout, side.value, rnd.number, participant, res.amount,
            )
            return payout
