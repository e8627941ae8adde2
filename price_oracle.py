"""
price_oracle.py
===============
Reference Price Oracle.

Independent USD prices used to sanity-check venue quotes and to convert
costs into USD.  Sources are tried in order:

  1. Chainlink aggregator on-chain (``latestRoundData`` + ``decimals``)
  2. DeFi Llama current-price API (HTTP)
  3. Static fallback table

``get_reference_price`` only consults the live sources and returns None
when neither has usable data.  ``get_price`` always returns a finite,
positive number and never raises.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from config import ORACLE, get_logger
from http_utils import get_json
from models import OracleError, Token

logger = get_logger(__name__)


@dataclass(frozen=True)
class OraclePrice:
    symbol: str
    price: float
    updated_at: float
    source: str            # "chainlink" | "defillama"


class PriceOracle:
    """
    Parameters
    ----------
    chain           : ChainClient, optional.  Without it the on-chain feed is skipped.
    feeds           : symbol -> Chainlink aggregator address
    coingecko_ids   : symbol -> coingecko id used by the HTTP feed
    fallback_prices : symbol -> static USD price
    fetch_json      : blocking ``(url, params, headers) -> (data, latency_ms)``
    """

    def __init__(
        self,
        chain=None,
        feeds: Optional[Dict[str, str]] = None,
        coingecko_ids: Optional[Dict[str, str]] = None,
        fallback_prices: Optional[Dict[str, float]] = None,
        aliases: Optional[Dict[str, str]] = None,
        ttl: float = ORACLE["cache_ttl_s"],
        max_age: float = ORACLE["max_age_s"],
        timeout: float = ORACLE["timeout_s"],
        clock: Callable[[], float] = time.time,
        fetch_json: Optional[Callable] = get_json,
    ) -> None:
        self.chain = chain
        self.feeds = dict(ORACLE["chainlink_feeds"] if feeds is None else feeds)
        self.coingecko_ids = dict(ORACLE["coingecko_ids"] if coingecko_ids is None else coingecko_ids)
        self.fallback_prices = dict(ORACLE["fallback_prices"] if fallback_prices is None else fallback_prices)
        self.aliases = dict(ORACLE["aliases"] if aliases is None else aliases)
        self.ttl = ttl
        self.max_age = max_age
        self.timeout = timeout
        self.clock = clock
        self.fetch_json = fetch_json
        self._cache: Dict[str, Tuple[float, OraclePrice]] = {}
        self._feed_decimals: Dict[str, int] = {}
        self._fallbacks_served = 0

    # ── Helpers ─────────────────────────────────────────────────────────────

    def canonical(self, symbol: str) -> str:
        sym = symbol.upper()
        return self.aliases.get(sym, sym)

    def fallback_price(self, symbol: str) -> float:
        return float(self.fallback_prices.get(self.canonical(symbol), ORACLE["default_fallback_price"]))

    def _validate(self, symbol: str, price: float, updated_at: float, source: str) -> OraclePrice:
        if not math.isfinite(price) or price <= 0:
            raise OracleError(f"{source}: non-positive price {price} for {symbol}")
        age = self.clock() - updated_at
        if age > self.max_age:
            raise OracleError(f"{source}: {symbol} price is stale ({age:.0f}s old)")
        return OraclePrice(symbol=symbol, price=price, updated_at=updated_at, source=source)

    # ── Sources ─────────────────────────────────────────────────────────────

    async def _from_chainlink(self, symbol: str) -> Optional[OraclePrice]:
        feed = self.feeds.get(symbol)
        if self.chain is None or not feed:
            return None
        answer, updated_at = await asyncio.wait_for(self.chain.latest_round_data(feed), self.timeout)
        if feed not in self._feed_decimals:
            self._feed_decimals[feed] = await asyncio.wait_for(self.chain.feed_decimals(feed), self.timeout)
        price = answer / 10 ** self._feed_decimals[feed]
        return self._validate(symbol, price, updated_at, "chainlink")

    async def _from_defillama(self, symbol: str) -> Optional[OraclePrice]:
        cg_id = self.coingecko_ids.get(symbol)
        if self.fetch_json is None or not cg_id:
            return None
        coin_key = f"coingecko:{cg_id}"
        data, latency = await asyncio.wait_for(
            asyncio.to_thread(
                self.fetch_json, ORACLE["defillama_url"] + coin_key, None, None,
                retries=1, timeout=self.timeout,
            ),
            self.timeout,
        )
        logger.debug("DeFi Llama %s answered in %.0fms", symbol, latency)
        try:
            entry = data["coins"][coin_key]
            price = float(entry["price"])
            updated_at = float(entry.get("timestamp", self.clock()))
        except (KeyError, TypeError, ValueError) as exc:
            raise OracleError(f"defillama: malformed payload for {symbol}") from exc
        return self._validate(symbol, price, updated_at, "defillama")

    # ── Public API ──────────────────────────────────────────────────────────

    async def get_reference_price(self, symbol: str) -> Optional[OraclePrice]:
        """Live price for ``symbol`` or None if no live source has valid data."""
        sym = self.canonical(symbol)
        now = self.clock()
        cached = self._cache.get(sym)
        if cached is not None and now - cached[0] < self.ttl:
            return cached[1]

        for source in (self._from_chainlink, self._from_defillama):
            try:
                price = await source(sym)
            except asyncio.TimeoutError:
                logger.debug("Oracle: %s timed out for %s", source.__name__, sym)
                continue
            except Exception as exc:
                logger.debug("Oracle: %s failed for %s: %s", source.__name__, sym, exc)
                continue
            if price is not None:
                self._cache[sym] = (now, price)
                return price
        return None

    async def get_price(self, symbol: str) -> float:
        """USD price for ``symbol``.  Falls back to the static table; never raises."""
        try:
            ref = await self.get_reference_price(symbol)
        except Exception as exc:
            logger.warning("Oracle: unexpected error for %s: %s", symbol, exc)
            ref = None
        if ref is not None:
            return ref.price
        self._fallbacks_served += 1
        price = self.fallback_price(symbol)
        logger.warning("Oracle: no live price for %s, using fallback $%.4f", symbol, price)
        return price

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """Concurrent batch.  Each symbol falls back on its own."""
        symbols = list(symbols)
        prices = await asyncio.gather(*(self.get_price(s) for s in symbols))
        return dict(zip(symbols, prices))

    async def get_token_price_usd(self, token: Token, amount: int) -> float:
        """USD value of ``amount`` base units of ``token``."""
        return token.from_units(amount) * await self.get_price(token.symbol)

    async def validate_price_feeds(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, bool]:
        """True for each symbol whose live sources currently produce a valid price."""
        symbols = list(symbols) if symbols is not None else sorted(set(self.feeds) | set(self.coingecko_ids))
        self.clear_cache()
        refs = await asyncio.gather(*(self.get_reference_price(s) for s in symbols))
        status = {s: ref is not None for s, ref in zip(symbols, refs)}
        broken = [s for s, ok in status.items() if not ok]
        if broken:
            logger.warning("Oracle: feeds without live data: %s", ", ".join(broken))
        return status

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, object]:
        now = self.clock()
        return {
            "entries": len(self._cache),
            "fresh": sum(1 for ts, _ in self._cache.values() if now - ts < self.ttl),
            "symbols": sorted(self._cache),
            "fallbacks_served": self._fallbacks_served,
        }
