"""
risk_manager.py
===============
Risk Manager: the last gate before execution.

Owns the day-scoped loss accounting and the circuit breaker.  Both live
in a single ``RiskState`` object handed in at construction, so one process
has exactly one, and tests can build their own.

Assessment order:
  1. emergency stop set              -> rejected, critical
  2. circuit breaker open            -> rejected, critical (closes itself once
                                        the cooldown has passed)
  3. accumulate factor points        margin, position size, slippage, gas,
                                     daily loss (critical), failure streak
  4. penalty for every extra high/critical factor, cap at 100
  5. approve iff no critical factor and score <= ceiling
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from config import RISK, get_logger
from models import ExecutionResult, Opportunity, ProfitabilityReport

logger = get_logger(__name__)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RiskFactor:
    code: str
    severity: Severity
    points: int
    message: str
    value: Optional[float] = None
    threshold: Optional[float] = None


@dataclass
class RiskAssessment:
    report: ProfitabilityReport
    factors: List[RiskFactor]
    risk_score: int
    approved: bool
    recommended_position_size: float          # token_a units
    recommended_max_slippage_pct: float
    assessed_at: float

    @property
    def critical_factors(self) -> List[RiskFactor]:
        return [f for f in self.factors if f.severity is Severity.CRITICAL]

    @property
    def reasons(self) -> List[str]:
        return [f.code for f in self.factors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "risk_score": self.risk_score,
            "factors": [{**asdict(f), "severity": f.severity.value} for f in self.factors],
            "recommended_position_size": self.recommended_position_size,
            "recommended_max_slippage_pct": self.recommended_max_slippage_pct,
        }


@dataclass
class DailyRiskStats:
    day: date
    realized_profit_usd: float = 0.0
    realized_loss_usd: float = 0.0
    trades_executed: int = 0
    trades_failed: int = 0
    consecutive_failures: int = 0

    @property
    def net_usd(self) -> float:
        return self.realized_profit_usd - self.realized_loss_usd

    def reset_if_new_day(self, today: date) -> bool:
        """Zero everything when the local calendar day has changed."""
        if today == self.day:
            return False
        self.day = today
        self.realized_profit_usd = 0.0
        self.realized_loss_usd = 0.0
        self.trades_executed = 0
        self.trades_failed = 0
        self.consecutive_failures = 0
        return True


@dataclass
class CircuitBreakerState:
    active: bool = False
    activated_at: Optional[float] = None

    def activate(self, now: float) -> None:
        self.active = True
        self.activated_at = now

    def deactivate(self) -> None:
        self.active = False
        self.activated_at = None


@dataclass
class RiskState:
    """Process-wide mutable risk state."""

    daily: DailyRiskStats
    breaker: CircuitBreakerState = field(default_factory=CircuitBreakerState)
    emergency_stop: bool = False
    history: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=RISK["history_size"]))


def _local_date(ts: float) -> date:
    return datetime.fromtimestamp(ts).date()


class RiskManager:
    """
    Parameters
    ----------
    state  : RiskState shared by the process; a fresh one is created if omitted
    limits : threshold dict, defaults to config.RISK
    clock  : time source (epoch seconds); also drives the local-day rollover
    """

    def __init__(
        self,
        state: Optional[RiskState] = None,
        limits: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limits = dict(RISK)
        if limits:
            self.limits.update(limits)
        self.clock = clock
        self.state = state or RiskState(daily=DailyRiskStats(day=_local_date(clock())))
        if self.limits.get("emergency_stop"):
            self.state.emergency_stop = True

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _roll_day(self) -> None:
        if self.state.daily.reset_if_new_day(_local_date(self.clock())):
            logger.info("Risk: daily stats reset for %s", self.state.daily.day.isoformat())

    def _rejection(self, report: ProfitabilityReport, factor: RiskFactor) -> RiskAssessment:
        return RiskAssessment(
            report=report,
            factors=[factor],
            risk_score=100,
            approved=False,
            recommended_position_size=0.0,
            recommended_max_slippage_pct=0.0,
            assessed_at=self.clock(),
        )

    @staticmethod
    def estimate_slippage_pct(opportunity: Opportunity) -> float:
        """
        Expected price impact in percent.

        Uses the sell-leg reserve snapshot when the venue exposes one,
        otherwise a tenth of the spread with a 0.1% floor.
        """
        liq = opportunity.sell_quote.liquidity
        if liq is not None and liq.reserve_in > 0:
            amount = opportunity.amount_in
            return amount / (liq.reserve_in + amount) * 100
        return max(0.1, opportunity.spread_pct * 0.1)

    # ── Assessment ──────────────────────────────────────────────────────────

    def assess(
        self,
        opportunity: Opportunity,
        report: ProfitabilityReport,
        gas_price_gwei: Optional[float] = None,
        slippage_estimate_pct: Optional[float] = None,
    ) -> RiskAssessment:
        self._roll_day()
        now = self.clock()
        lim = self.limits
        daily = self.state.daily
        breaker = self.state.breaker

        if self.state.emergency_stop:
            logger.warning("Risk: emergency stop active, rejecting %s", opportunity.pair)
            return self._rejection(report, RiskFactor(
                "emergency_stop", Severity.CRITICAL, 100, "Emergency stop is active"))

        if breaker.active:
            elapsed = now - (breaker.activated_at or now)
            if elapsed < lim["circuit_breaker_cooldown_s"]:
                return self._rejection(report, RiskFactor(
                    "circuit_breaker_active", Severity.CRITICAL, 100,
                    f"Circuit breaker active for another "
                    f"{lim['circuit_breaker_cooldown_s'] - elapsed:.0f}s",
                    value=breaker.activated_at,
                ))
            breaker.deactivate()
            daily.consecutive_failures = 0
            logger.info("Risk: circuit breaker cooled down after %.0fs, closed", elapsed)

        factors: List[RiskFactor] = []

        # Profit margin
        min_margin = lim["min_profit_margin_pct"]
        margin = report.profit_margin_pct
        if margin < min_margin:
            factors.append(RiskFactor("low_profit_margin", Severity.HIGH, 30,
                                      f"Margin {margin:.3f}% below minimum {min_margin}%",
                                      margin, min_margin))
        elif margin < min_margin * 2:
            factors.append(RiskFactor("marginal_profit", Severity.MEDIUM, 15,
                                      f"Margin {margin:.3f}% is marginal", margin, min_margin * 2))

        # Position size (USD)
        position_usd = report.position_size_usd
        max_position = lim["max_position_size_usd"]
        recommended_size = report.amount_in
        if position_usd > max_position:
            recommended_size = max_position / report.asset_price_usd if report.asset_price_usd > 0 else 0.0
            factors.append(RiskFactor("position_too_large", Severity.HIGH, 25,
                                      f"Position ${position_usd:,.0f} exceeds ${max_position:,.0f}; "
                                      f"reduce to {recommended_size:.6f} {opportunity.token_a.symbol}",
                                      position_usd, max_position))

        # Slippage
        impact = slippage_estimate_pct if slippage_estimate_pct is not None \
            else self.estimate_slippage_pct(opportunity)
        max_slip = lim["max_slippage_pct"]
        if impact > max_slip:
            factors.append(RiskFactor("high_slippage", Severity.HIGH, 20,
                                      f"Expected slippage {impact:.2f}% exceeds {max_slip}%",
                                      impact, max_slip))
        recommended_slippage = min(max(impact * 1.5, 0.5), max_slip)

        # Gas price
        gas_gwei = report.gas_price_gwei if gas_price_gwei is None else gas_price_gwei
        if gas_gwei > lim["max_gas_price_gwei"]:
            factors.append(RiskFactor("high_gas_price", Severity.MEDIUM, 15,
                                      f"Gas {gas_gwei:.1f} gwei exceeds {lim['max_gas_price_gwei']} gwei",
                                      gas_gwei, lim["max_gas_price_gwei"]))

        # Daily loss: worst case is the trade's own loss plus the gas burnt by a revert
        potential_loss = max(-report.net_profit_usd, 0.0) + report.costs.gas_usd
        projected = daily.realized_loss_usd + potential_loss
        if projected > lim["max_daily_loss_usd"]:
            factors.append(RiskFactor("daily_loss_limit", Severity.CRITICAL, 40,
                                      f"Projected daily loss ${projected:,.2f} exceeds "
                                      f"${lim['max_daily_loss_usd']:,.2f}",
                                      projected, lim["max_daily_loss_usd"]))

        # Failure streak
        threshold = lim["circuit_breaker_threshold"]
        if daily.consecutive_failures >= threshold - 1:
            factors.append(RiskFactor("high_failure_rate", Severity.HIGH, 25,
                                      f"{daily.consecutive_failures} consecutive failures "
                                      f"(breaker at {threshold})",
                                      daily.consecutive_failures, threshold))

        score = self.final_score(factors)
        has_critical = any(f.severity is Severity.CRITICAL for f in factors)
        approved = not has_critical and score <= lim["max_risk_score"]
        if score > lim["max_risk_score"]:
            factors.append(RiskFactor("high_risk_score", Severity.HIGH, 0,
                                      f"Risk score {score} exceeds {lim['max_risk_score']}",
                                      score, lim["max_risk_score"]))

        assessment = RiskAssessment(
            report=report,
            factors=factors,
            risk_score=score,
            approved=approved,
            recommended_position_size=recommended_size,
            recommended_max_slippage_pct=recommended_slippage,
            assessed_at=now,
        )
        log = logger.info if approved else logger.warning
        log("Risk: %s %s score=%d factors=[%s]", opportunity.pair,
            "APPROVED" if approved else "REJECTED", score, ", ".join(assessment.reasons))
        return assessment

    @staticmethod
    def final_score(factors: List[RiskFactor]) -> int:
        """Sum of points plus a penalty for every severe factor after the first."""
        score = sum(f.points for f in factors)
        severe = sorted(
            (f for f in factors if f.severity in (Severity.CRITICAL, Severity.HIGH)),
            key=lambda f: f.severity is not Severity.CRITICAL,
        )
        for extra in severe[1:]:
            score += 20 if extra.severity is Severity.CRITICAL else 10
        return min(score, 100)

    # ── Feedback ────────────────────────────────────────────────────────────

    def record_result(
        self,
        opportunity: Opportunity,
        report: ProfitabilityReport,
        result: ExecutionResult,
    ) -> None:
        self._roll_day()
        now = self.clock()
        daily = self.state.daily

        if result.success:
            daily.trades_executed += 1
            daily.consecutive_failures = 0
            profit_usd = result.realized_profit_usd
            if profit_usd >= 0:
                daily.realized_profit_usd += profit_usd
            else:
                daily.realized_loss_usd += -profit_usd
        else:
            daily.trades_failed += 1
            daily.consecutive_failures += 1
            daily.realized_loss_usd += result.gas_cost_usd
            threshold = self.limits["circuit_breaker_threshold"]
            if daily.consecutive_failures >= threshold and not self.state.breaker.active:
                self.state.breaker.activate(now)
                logger.error(
                    "Risk: CIRCUIT BREAKER ACTIVATED after %d consecutive failures (cooldown %.0fs)",
                    daily.consecutive_failures, self.limits["circuit_breaker_cooldown_s"],
                )

        self.state.history.append({
            "timestamp": now,
            "pair": opportunity.pair,
            "buy_venue": opportunity.buy_venue,
            "sell_venue": opportunity.sell_venue,
            "success": result.success,
            "reason": result.reason,
            "expected_profit_usd": report.net_profit_usd,
            "realized_profit_usd": result.realized_profit_usd,
            "gas_cost_usd": result.gas_cost_usd,
        })

    # ── Controls / stats ────────────────────────────────────────────────────

    def trigger_emergency_stop(self, reason: str = "manual") -> None:
        self.state.emergency_stop = True
        logger.error("Risk: EMERGENCY STOP (%s)", reason)

    def clear_emergency_stop(self) -> None:
        self.state.emergency_stop = False
        logger.warning("Risk: emergency stop cleared")

    def is_circuit_breaker_active(self) -> bool:
        return self.state.breaker.active

    def get_risk_stats(self) -> Dict[str, Any]:
        self._roll_day()
        daily = self.state.daily
        total = daily.trades_executed + daily.trades_failed
        return {
            "date": daily.day.isoformat(),
            "realized_profit_usd": round(daily.realized_profit_usd, 4),
            "realized_loss_usd": round(daily.realized_loss_usd, 4),
            "net_usd": round(daily.net_usd, 4),
            "trades_executed": daily.trades_executed,
            "trades_failed": daily.trades_failed,
            "success_rate": daily.trades_executed / total if total else 0.0,
            "consecutive_failures": daily.consecutive_failures,
            "circuit_breaker_active": self.state.breaker.active,
            "circuit_breaker_activated_at": self.state.breaker.activated_at,
            "emergency_stop": self.state.emergency_stop,
            "history_size": len(self.state.history),
        }

    def is_healthy(self) -> bool:
        daily = self.state.daily
        return (
            not self.state.emergency_stop
            and not self.state.breaker.active
            and daily.realized_loss_usd < self.limits["max_daily_loss_usd"] * 0.8
            and daily.consecutive_failures < self.limits["circuit_breaker_threshold"]
        )
