"""
models.py
=========
Shared value types for the arbitrage pipeline.

Quotes and opportunities are immutable snapshots; reports and execution
results are plain records handed from one stage to the next.  Every type
has a ``to_dict`` for logging and cycle summaries.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple


# ─────────────────────────────────────────────────────────────────────────────
# ERRORS
# ─────────────────────────────────────────────────────────────────────────────


class ArbitrageError(Exception):
    """Base class for engine errors."""


class ConfigError(ArbitrageError):
    """Fatal misconfiguration.  The only error allowed to stop the process."""


class QuoteError(ArbitrageError):
    """A venue could not produce a quote."""


class OracleError(ArbitrageError):
    """A reference feed returned stale, non-positive or malformed data."""


class UnsupportedVenueError(ArbitrageError):
    """No quoting/encoding strategy exists for a venue type."""


class SettlementError(ArbitrageError):
    """The settlement contract call could not be built or submitted."""


# ─────────────────────────────────────────────────────────────────────────────
# TOKENS / QUOTES
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Token:
    symbol: str
    address: str           # checksummed
    decimals: int

    def to_units(self, amount: float) -> int:
        return int(round(amount * 10 ** self.decimals))

    def from_units(self, amount: int) -> float:
        return amount / 10 ** self.decimals


@dataclass(frozen=True)
class LiquiditySnapshot:
    """Pool reserves oriented to the quote direction (base units)."""

    reserve_in: int
    reserve_out: int
    pool: str = ""


@dataclass(frozen=True)
class TierAttempt:
    """One fee-tier attempt on a concentrated-liquidity venue."""

    fee: int
    amount_out: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.amount_out > 0


@dataclass(frozen=True)
class Quote:
    """Indicative exchange rate from one venue.  Immutable once captured."""

    venue: str
    token_in: Token
    token_out: Token
    amount_in: int                 # base units of token_in
    amount_out: int                # base units of token_out
    price: float                   # token_out per token_in, decimal-normalised
    captured_at: float
    liquidity: Optional[LiquiditySnapshot] = None
    fee_tier: Optional[int] = None
    attempts: Tuple[TierAttempt, ...] = ()

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.captured_at

    def is_fresh(self, ttl: float, now: Optional[float] = None) -> bool:
        return self.age(now) < ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "token_in": self.token_in.symbol,
            "token_out": self.token_out.symbol,
            "amount_in": str(self.amount_in),
            "amount_out": str(self.amount_out),
            "price": self.price,
            "captured_at": self.captured_at,
            "fee_tier": self.fee_tier,
            "liquidity": asdict(self.liquidity) if self.liquidity else None,
        }


def normalised_price(token_in: Token, token_out: Token, amount_in: int, amount_out: int) -> float:
    """token_out per token_in, adjusted for decimals."""
    if amount_in <= 0:
        return 0.0
    return token_out.from_units(amount_out) / token_in.from_units(amount_in)


# ─────────────────────────────────────────────────────────────────────────────
# OPPORTUNITY
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Opportunity:
    """
    A cross-venue spread on token_a/token_b.

    Both quotes are token_a -> token_b.  ``buy`` is the venue where token_a
    is cheapest (lowest price), ``sell`` the one paying the most token_b for
    it.  The loan is taken in token_a.
    """

    token_a: Token
    token_b: Token
    buy_venue: str
    buy_quote: Quote
    sell_venue: str
    sell_quote: Quote
    spread_pct: float
    amount_in: int                 # borrowed amount, base units of token_a
    discovered_at: float
    oracle_validated: bool = False
    deviations: Dict[str, float] = field(default_factory=dict)

    @property
    def pair(self) -> str:
        return f"{self.token_a.symbol}/{self.token_b.symbol}"

    @property
    def buy_price(self) -> float:
        return self.buy_quote.price

    @property
    def sell_price(self) -> float:
        return self.sell_quote.price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair": self.pair,
            "buy_venue": self.buy_venue,
            "sell_venue": self.sell_venue,
            "buy_price": self.buy_price,
            "sell_price": self.sell_price,
            "spread_pct": round(self.spread_pct, 4),
            "amount_in": str(self.amount_in),
            "discovered_at": self.discovered_at,
            "oracle_validated": self.oracle_validated,
        }


# ─────────────────────────────────────────────────────────────────────────────
# PROFITABILITY
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CostBreakdown:
    """Itemised costs, in units of the borrowed asset and in USD."""

    venue_fees: float
    loan_premium: float
    gas: float
    venue_fees_usd: float
    loan_premium_usd: float
    gas_usd: float
    gas_native: float

    @property
    def total(self) -> float:
        return self.venue_fees + self.loan_premium + self.gas

    @property
    def total_usd(self) -> float:
        return self.venue_fees_usd + self.loan_premium_usd + self.gas_usd


@dataclass(frozen=True)
class ProfitabilityReport:
    gross_profit: float              # asset units
    gross_profit_usd: float
    costs: CostBreakdown
    net_profit: float                # asset units
    net_profit_usd: float
    profit_margin_pct: float         # net / borrowed * 100
    break_even_amount: float         # asset units
    risk_score: int                  # 0-100
    amount_in: float                 # asset units
    asset_price_usd: float
    native_price_usd: float
    gas_price_gwei: float
    gas_units: int
    evaluated_at: float

    @property
    def is_profitable(self) -> bool:
        return self.net_profit > 0

    @property
    def position_size_usd(self) -> float:
        return self.amount_in * self.asset_price_usd

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["costs"]["total"] = self.costs.total
        d["costs"]["total_usd"] = self.costs.total_usd
        d["is_profitable"] = self.is_profitable
        return d


# ─────────────────────────────────────────────────────────────────────────────
# EXECUTION
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionResult:
    """Terminal outcome for one opportunity."""

    success: bool
    reason: Optional[str] = None           # machine-readable code when not successful
    tx_hash: Optional[str] = None
    gas_used: int = 0
    gas_cost_native: float = 0.0
    gas_cost_usd: float = 0.0
    realized_profit: float = 0.0           # asset units
    realized_profit_usd: float = 0.0
    block_number: Optional[int] = None
    latency_s: float = 0.0
    detail: str = ""

    @property
    def submitted(self) -> bool:
        return self.tx_hash is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
