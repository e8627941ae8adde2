"""
opportunity_finder.py
=====================
Opportunity Finder.

Collects token_a -> token_b quotes from every venue, optionally drops the
ones that disagree with the oracle cross-rate, and emits a candidate when
the best and worst venue are far enough apart.

Ties on price are broken by venue name (lexicographic), so the result does
not depend on the order venues are configured in.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from config import OPPORTUNITY, get_logger
from models import Opportunity, Quote, Token
from venues import VenueConfig

logger = get_logger(__name__)


def spread_pct(buy_price: float, sell_price: float) -> float:
    if buy_price <= 0:
        return 0.0
    return (sell_price - buy_price) / buy_price * 100


def pick_extremes(quotes: Sequence[Quote]) -> Tuple[Quote, Quote]:
    """(lowest, highest) by price; equal prices resolved by venue name."""
    buy = min(quotes, key=lambda q: (q.price, q.venue))
    sell = min(quotes, key=lambda q: (-q.price, q.venue))
    return buy, sell


class OpportunityFinder:
    """
    Parameters
    ----------
    quote_provider       : QuoteProvider
    oracle               : PriceOracle, optional (needed for the validated variant)
    min_spread_pct       : spread must be strictly above this
    max_oracle_deviation : allowed |venue rate / oracle rate - 1|
    """

    def __init__(
        self,
        quote_provider,
        oracle=None,
        min_spread_pct: float = OPPORTUNITY["min_spread_pct"],
        max_oracle_deviation: float = OPPORTUNITY["max_oracle_deviation"],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.quotes = quote_provider
        self.oracle = oracle
        self.min_spread_pct = min_spread_pct
        self.max_oracle_deviation = max_oracle_deviation
        self.clock = clock

    async def find_opportunity(
        self,
        venues: Sequence[VenueConfig],
        token_a: Token,
        token_b: Token,
        amount_in: int,
    ) -> Optional[Opportunity]:
        quotes = await self.quotes.get_quotes(venues, token_a, token_b, amount_in)
        return self._evaluate(quotes, token_a, token_b, amount_in)

    async def find_validated_opportunity(
        self,
        venues: Sequence[VenueConfig],
        token_a: Token,
        token_b: Token,
        amount_in: int,
    ) -> Optional[Opportunity]:
        quotes = await self.quotes.get_quotes(venues, token_a, token_b, amount_in)
        if len(quotes) < 2:
            logger.debug("%s/%s: only %d venue(s) quoted", token_a.symbol, token_b.symbol, len(quotes))
            return None
        kept, deviations, validated = await self.validate_against_oracle(quotes, token_a, token_b)
        return self._evaluate(kept, token_a, token_b, amount_in,
                              validated=validated, deviations=deviations)

    async def validate_against_oracle(
        self,
        quotes: List[Quote],
        token_a: Token,
        token_b: Token,
    ) -> Tuple[List[Quote], Dict[str, float], bool]:
        """
        Drop quotes whose rate is too far from the oracle's implied rate.

        Returns
        -------
        (kept quotes, venue -> deviation, whether validation actually ran).
        When either oracle price is unavailable every quote is kept.
        """
        if self.oracle is None:
            return quotes, {}, False
        ref_a = await self.oracle.get_reference_price(token_a.symbol)
        ref_b = await self.oracle.get_reference_price(token_b.symbol)
        if ref_a is None or ref_b is None:
            logger.debug("%s/%s: oracle data unavailable, skipping validation",
                         token_a.symbol, token_b.symbol)
            return quotes, {}, False

        oracle_rate = ref_a.price / ref_b.price       # token_b per token_a
        kept: List[Quote] = []
        deviations: Dict[str, float] = {}
        for q in quotes:
            deviation = abs(q.price - oracle_rate) / oracle_rate
            deviations[q.venue] = deviation
            if deviation <= self.max_oracle_deviation:
                kept.append(q)
            else:
                logger.info(
                    "%s/%s: dropping %s quote %.6f, %.2f%% off oracle %.6f",
                    token_a.symbol, token_b.symbol, q.venue, q.price, deviation * 100, oracle_rate,
                )
        return kept, deviations, True

    def _evaluate(
        self,
        quotes: List[Quote],
        token_a: Token,
        token_b: Token,
        amount_in: int,
        validated: bool = False,
        deviations: Optional[Dict[str, float]] = None,
    ) -> Optional[Opportunity]:
        if len(quotes) < 2:
            logger.debug("%s/%s: fewer than 2 usable quotes", token_a.symbol, token_b.symbol)
            return None

        buy, sell = pick_extremes(quotes)
        if sell.price <= buy.price:
            return None
        spread = spread_pct(buy.price, sell.price)
        if spread <= self.min_spread_pct:
            logger.debug("%s/%s: spread %.3f%% below minimum %.3f%%",
                         token_a.symbol, token_b.symbol, spread, self.min_spread_pct)
            return None

        opp = Opportunity(
            token_a=token_a,
            token_b=token_b,
            buy_venue=buy.venue,
            buy_quote=buy,
            sell_venue=sell.venue,
            sell_quote=sell,
            spread_pct=spread,
            amount_in=int(amount_in),
            discovered_at=self.clock(),
            oracle_validated=validated,
            deviations=dict(deviations or {}),
        )
        logger.info(
            "Opportunity %s: buy %s @ %.6f, sell %s @ %.6f, spread %.3f%%",
            opp.pair, buy.venue, buy.price, sell.venue, sell.price, spread,
        )
        return opp
