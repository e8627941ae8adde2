"""
quote_provider.py
=================
Venue Quote Provider.

Dispatches ``get_quote`` to the venue's adapter, caches successful quotes
for a short TTL and turns every per-venue failure into "no quote from this
venue".  Partial venue availability is the normal state of affairs, so
nothing here raises for a venue problem.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence

from config import QUOTES, get_logger
from models import Quote, Token
from venues import (
    LiquidityFloor, VenueAdapter, VenueConfig, VenueType, default_adapters, get_adapter,
)

logger = get_logger(__name__)


class QuoteKey(NamedTuple):
    venue: str
    token_in: str          # lowercased address
    token_out: str         # lowercased address
    amount_in: int


class QuoteProvider:
    """
    Parameters
    ----------
    chain         : ChainClient (or anything with the same read methods)
    ttl           : seconds a cached quote stays valid
    min_liquidity : pool depth, in native-asset units, that at least one
                    reserve must reach
    timeout       : bound for one venue's quote
    clock         : time source, injectable for tests
    adapters      : venue-type -> adapter registry
    prices        : USD price source for valuing reserves (the PriceOracle);
                    the static fallback table is used when omitted
    """

    def __init__(
        self,
        chain,
        ttl: float = QUOTES["cache_ttl_s"],
        min_liquidity: float = QUOTES["min_liquidity_asset"],
        timeout: float = QUOTES["timeout_s"],
        clock: Callable[[], float] = time.time,
        adapters: Optional[Dict[VenueType, VenueAdapter]] = None,
        prices=None,
    ) -> None:
        self.chain = chain
        self.ttl = ttl
        self.floor = LiquidityFloor(min_liquidity, prices)
        self.timeout = timeout
        self.clock = clock
        self.adapters = adapters if adapters is not None else default_adapters()
        self._cache: Dict[QuoteKey, Quote] = {}
        self._hits = 0
        self._misses = 0
        self._failures = 0

    @staticmethod
    def cache_key(venue: VenueConfig, token_in: Token, token_out: Token, amount_in: int) -> QuoteKey:
        return QuoteKey(venue.name, token_in.address.lower(), token_out.address.lower(), int(amount_in))

    async def get_quote(
        self,
        venue: VenueConfig,
        token_in: Token,
        token_out: Token,
        amount_in: int,
    ) -> Optional[Quote]:
        """Quote from one venue, or None when it has nothing to offer."""
        key = self.cache_key(venue, token_in, token_out, amount_in)
        now = self.clock()
        cached = self._cache.get(key)
        if cached is not None and cached.is_fresh(self.ttl, now):
            self._hits += 1
            return cached
        self._misses += 1

        try:
            adapter = get_adapter(venue.venue_type, self.adapters)
            quote = await asyncio.wait_for(
                adapter.quote(self.chain, venue, token_in, token_out, amount_in, self.floor),
                self.timeout,
            )
        except asyncio.TimeoutError:
            self._failures += 1
            logger.debug("%s: quote timed out after %.1fs", venue.name, self.timeout)
            return None
        except Exception as exc:
            self._failures += 1
            logger.debug("%s: quote failed for %s/%s: %s",
                         venue.name, token_in.symbol, token_out.symbol, exc)
            return None

        if quote is None:
            return None
        quote = dataclasses.replace(quote, captured_at=self.clock())
        self._cache[key] = quote
        return quote

    async def get_quotes(
        self,
        venues: Sequence[VenueConfig],
        token_in: Token,
        token_out: Token,
        amount_in: int,
    ) -> List[Quote]:
        """Query every venue concurrently; only venues that answered are returned."""
        results = await asyncio.gather(
            *(self.get_quote(v, token_in, token_out, amount_in) for v in venues)
        )
        return [q for q in results if q is not None]

    def clear_cache(self) -> None:
        self._cache.clear()

    def prune(self) -> int:
        """Drop expired entries.  Returns how many were removed."""
        now = self.clock()
        stale = [k for k, q in self._cache.items() if not q.is_fresh(self.ttl, now)]
        for k in stale:
            del self._cache[k]
        return len(stale)

    def cache_stats(self) -> Dict[str, int]:
        return {
            "entries": len(self._cache),
            "hits": self._hits,
            "misses": self._misses,
            "failures": self._failures,
        }
