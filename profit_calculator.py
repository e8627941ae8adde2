"""
profit_calculator.py
====================
Profitability Calculator.

Turns an Opportunity into a full cost/benefit breakdown.

Round trip, with the loan taken in token_a:

  leg 1  sell venue   token_a -> token_b   (amount borrowed)
  leg 2  buy venue    token_b -> token_a   (everything leg 1 returned)

  gross    = amount * sell_price / buy_price - amount
  fees     = amount * sell_fee + returned * buy_fee
  premium  = amount * flash-loan premium
  gas      = gas price * (base + swap gas per leg + transfers + buffer)

All amounts are tracked in token_a units and converted to USD with the
reference oracle.  ``net = gross - (fees + premium + gas)`` holds exactly.
"""

from __future__ import annotations

import dataclasses
import math
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

from config import GAS, NETWORK, PROFIT, get_logger
from models import CostBreakdown, Opportunity, ProfitabilityReport, Quote, normalised_price
from opportunity_finder import spread_pct
from venues import VenueConfig

logger = get_logger(__name__)


def calculate_risk_score(spread: float, net_profit_usd: float, total_costs_usd: float) -> int:
    """Heuristic 0-100 score; higher is riskier."""
    score = 0
    if spread < 1:
        score += 30
    elif spread < 2:
        score += 20
    elif spread < 5:
        score += 10

    ratio = abs(net_profit_usd / total_costs_usd) if total_costs_usd > 0 else math.inf
    if ratio < 0.1:
        score += 25
    elif ratio < 0.2:
        score += 15
    elif ratio < 0.5:
        score += 10

    score += 5      # gas volatility
    score += 10     # liquidity depth not modelled
    return min(score, 100)


class ProfitCalculator:
    """
    Parameters
    ----------
    oracle       : PriceOracle, for USD conversion
    gas_strategy : GasStrategy, for the current gas price
    venues       : venue configs (fee rate and swap gas per venue)
    """

    def __init__(
        self,
        oracle,
        gas_strategy,
        venues: Iterable[VenueConfig],
        flash_loan_premium: float = PROFIT["flash_loan_premium"],
        gas_units: Optional[Dict] = None,
        native_symbol: str = NETWORK["native_symbol"],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.oracle = oracle
        self.gas = gas_strategy
        self.venues: Dict[str, VenueConfig] = {v.name: v for v in venues}
        self.flash_loan_premium = flash_loan_premium
        self.gas_units = gas_units or GAS["units"]
        self.native_symbol = native_symbol
        self.clock = clock

    def total_gas_units(self, opportunity: Opportunity) -> int:
        u = self.gas_units
        swaps = sum(
            u["swap"][self.venues[name].venue_type.value]
            for name in (opportunity.sell_venue, opportunity.buy_venue)
        )
        return u["flash_loan_base"] + swaps + u["token_transfer"] * u["transfers"] + u["buffer"]

    async def evaluate(self, opportunity: Opportunity) -> Optional[ProfitabilityReport]:
        """
        Full report for ``opportunity``.  Unprofitable trades still get a report;
        None means the computation itself broke.
        """
        try:
            return await self._evaluate(opportunity)
        except Exception as exc:
            logger.error("Profit calc failed for %s: %s", opportunity.pair, exc, exc_info=True)
            return None

    async def _evaluate(self, opportunity: Opportunity) -> ProfitabilityReport:
        token_a = opportunity.token_a
        sell_venue = self.venues[opportunity.sell_venue]
        buy_venue = self.venues[opportunity.buy_venue]

        amount = token_a.from_units(opportunity.amount_in)
        returned = amount * opportunity.sell_price / opportunity.buy_price
        gross = returned - amount

        venue_fees = amount * sell_venue.fee_rate + returned * buy_venue.fee_rate
        premium = amount * self.flash_loan_premium

        gas_price_gwei = await self.gas.current_gas_price_gwei()
        gas_units = self.total_gas_units(opportunity)
        gas_native = gas_units * gas_price_gwei / 1e9

        prices = await self.oracle.get_prices([self.native_symbol, token_a.symbol])
        native_usd = prices[self.native_symbol]
        asset_usd = prices[token_a.symbol]
        gas_usd = gas_native * native_usd
        gas_asset = gas_usd / asset_usd

        costs = CostBreakdown(
            venue_fees=venue_fees,
            loan_premium=premium,
            gas=gas_asset,
            venue_fees_usd=venue_fees * asset_usd,
            loan_premium_usd=premium * asset_usd,
            gas_usd=gas_usd,
            gas_native=gas_native,
        )
        net = gross - costs.total
        net_usd = net * asset_usd
        margin = net / amount * 100 if amount > 0 else 0.0
        spread = opportunity.spread_pct
        break_even = costs.total / (spread / 100) if spread > 0 else math.inf

        report = ProfitabilityReport(
            gross_profit=gross,
            gross_profit_usd=gross * asset_usd,
            costs=costs,
            net_profit=net,
            net_profit_usd=net_usd,
            profit_margin_pct=margin,
            break_even_amount=break_even,
            risk_score=calculate_risk_score(spread, net_usd, costs.total_usd),
            amount_in=amount,
            asset_price_usd=asset_usd,
            native_price_usd=native_usd,
            gas_price_gwei=gas_price_gwei,
            gas_units=gas_units,
            evaluated_at=self.clock(),
        )
        logger.debug(
            "%s %s->%s: gross $%.2f costs $%.2f (fees $%.2f, premium $%.2f, gas $%.2f) net $%.2f",
            opportunity.pair, opportunity.sell_venue, opportunity.buy_venue,
            report.gross_profit_usd, costs.total_usd, costs.venue_fees_usd,
            costs.loan_premium_usd, costs.gas_usd, net_usd,
        )
        return report

    @staticmethod
    def is_opportunity_viable(
        report: ProfitabilityReport,
        min_profit_usd: Optional[float] = None,
        max_risk_score: Optional[int] = None,
        min_margin_pct: Optional[float] = None,
    ) -> bool:
        min_profit_usd = PROFIT["min_profit_usd"] if min_profit_usd is None else min_profit_usd
        max_risk_score = PROFIT["max_risk_score"] if max_risk_score is None else max_risk_score
        min_margin_pct = PROFIT["min_margin_pct"] if min_margin_pct is None else min_margin_pct
        return (
            report.is_profitable
            and report.net_profit_usd >= min_profit_usd
            and report.risk_score <= max_risk_score
            and report.profit_margin_pct > min_margin_pct
        )

    # ── Trade sizing ────────────────────────────────────────────────────────

    def _resize_quote(self, quote: Quote, size: int, buying: bool) -> Quote:
        """
        Re-price ``quote`` for a different input size.

        With a reserve snapshot the price moves along the constant-product
        curve (against us on both legs); without one it scales linearly.
        """
        liq = quote.liquidity
        if liq is None or liq.reserve_in <= 0:
            amount_out = quote.amount_out * size // quote.amount_in
            return dataclasses.replace(quote, amount_in=size, amount_out=amount_out)
        factor = (liq.reserve_in + quote.amount_in) / (liq.reserve_in + size)
        price = quote.price / factor if buying else quote.price * factor
        amount_out = int(quote.token_out.to_units(quote.token_in.from_units(size) * price))
        return dataclasses.replace(
            quote, amount_in=size, amount_out=amount_out,
            price=normalised_price(quote.token_in, quote.token_out, size, amount_out),
        )

    def resize(self, opportunity: Opportunity, size: int) -> Opportunity:
        buy = self._resize_quote(opportunity.buy_quote, size, buying=True)
        sell = self._resize_quote(opportunity.sell_quote, size, buying=False)
        return dataclasses.replace(
            opportunity, amount_in=size, buy_quote=buy, sell_quote=sell,
            spread_pct=spread_pct(buy.price, sell.price),
        )

    async def find_optimal_trade_size(
        self,
        opportunity: Opportunity,
        max_amount: int,
        steps: int = PROFIT["optimal_size_steps"],
    ) -> Optional[Tuple[int, ProfitabilityReport]]:
        """Scan ``steps`` evenly spaced sizes up to ``max_amount``; best profitable one wins."""
        best: Optional[Tuple[int, ProfitabilityReport]] = None
        for i in range(1, steps + 1):
            size = max_amount * i // steps
            if size <= 0:
                continue
            candidate = self.resize(opportunity, size)
            if candidate.sell_price <= candidate.buy_price:
                continue
            report = await self.evaluate(candidate)
            if report is None or not report.is_profitable:
                continue
            if best is None or report.net_profit_usd > best[1].net_profit_usd:
                best = (size, report)
        return best
