"""
performance.py
==============
Performance / telemetry aggregator.

Rolling counters, derived rates and threshold alerts.  Alerts are advisory:
they are logged and handed to registered handlers, and never stop
execution (that is the RiskManager's job).
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from tabulate import tabulate

from config import PERFORMANCE, get_logger
from models import ExecutionResult, Opportunity, ProfitabilityReport

logger = get_logger(__name__)

ALERT_SEVERITY: Dict[str, str] = {
    "low_success_rate": "high",
    "high_error_rate": "high",
    "high_execution_time": "medium",
    "low_profit_margin": "medium",
}


@dataclass(frozen=True)
class Alert:
    type: str
    severity: str
    message: str
    value: float
    threshold: float
    raised_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PerformanceMonitor:
    """
    Parameters
    ----------
    thresholds : alert thresholds, defaults to config.PERFORMANCE
    clock      : time source
    """

    def __init__(
        self,
        thresholds: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.thresholds = dict(PERFORMANCE)
        if thresholds:
            self.thresholds.update(thresholds)
        self.clock = clock
        self.started_at = clock()
        self.opportunities_found = 0
        self.trades_attempted = 0
        self.trades_succeeded = 0
        self.trades_failed = 0
        self.total_profit_usd = 0.0
        self.total_gas_usd = 0.0
        self.total_execution_time = 0.0
        self.price_updates = 0
        self.error_count = 0
        self._margins: Deque[float] = deque(maxlen=self.thresholds["history_size"])
        self.history: Deque[Dict[str, Any]] = deque(maxlen=self.thresholds["history_size"])
        self.errors: Deque[Dict[str, Any]] = deque(maxlen=self.thresholds["history_size"])
        self.active_alerts: List[Alert] = []
        self._handlers: List[Callable[[Alert], None]] = []

    # ── Recording ───────────────────────────────────────────────────────────

    def record_opportunity(self, opportunity: Opportunity, report: Optional[ProfitabilityReport] = None) -> None:
        self.opportunities_found += 1
        self.history.append({
            "timestamp": self.clock(),
            "kind": "opportunity",
            "pair": opportunity.pair,
            "spread_pct": opportunity.spread_pct,
            "net_profit_usd": report.net_profit_usd if report else None,
        })

    def record_execution(self, result: ExecutionResult, report: Optional[ProfitabilityReport] = None) -> None:
        self.trades_attempted += 1
        self.total_execution_time += result.latency_s
        self.total_gas_usd += result.gas_cost_usd
        if result.success:
            self.trades_succeeded += 1
            self.total_profit_usd += result.realized_profit_usd
            if report is not None:
                self._margins.append(report.profit_margin_pct)
        else:
            self.trades_failed += 1
        self.history.append({
            "timestamp": self.clock(),
            "kind": "execution",
            "success": result.success,
            "reason": result.reason,
            "profit_usd": result.realized_profit_usd,
            "gas_usd": result.gas_cost_usd,
            "latency_s": result.latency_s,
        })

    def record_price_update(self, count: int = 1) -> None:
        self.price_updates += count

    def record_error(self, source: str, error: Any) -> None:
        self.error_count += 1
        self.errors.append({"timestamp": self.clock(), "source": source, "error": str(error)})

    # ── Derived metrics ─────────────────────────────────────────────────────

    def get_metrics(self) -> Dict[str, Any]:
        uptime = max(self.clock() - self.started_at, 1e-9)
        hours = uptime / 3600
        return {
            "uptime_s": uptime,
            "opportunities_found": self.opportunities_found,
            "trades_attempted": self.trades_attempted,
            "trades_succeeded": self.trades_succeeded,
            "trades_failed": self.trades_failed,
            "success_rate": self.trades_succeeded / self.trades_attempted if self.trades_attempted else 0.0,
            "error_rate": self.error_count / self.opportunities_found if self.opportunities_found else 0.0,
            "total_profit_usd": self.total_profit_usd,
            "total_gas_usd": self.total_gas_usd,
            "net_profit_usd": self.total_profit_usd - self.total_gas_usd,
            "avg_execution_time_s": (self.total_execution_time / self.trades_attempted
                                     if self.trades_attempted else 0.0),
            "avg_profit_margin_pct": sum(self._margins) / len(self._margins) if self._margins else 0.0,
            "opportunities_per_hour": self.opportunities_found / hours,
            "profit_per_hour_usd": self.total_profit_usd / hours,
            "price_updates": self.price_updates,
            "errors": self.error_count,
        }

    # ── Alerts ──────────────────────────────────────────────────────────────

    def add_alert_handler(self, handler: Callable[[Alert], None]) -> None:
        self._handlers.append(handler)

    def _alert(self, kind: str, message: str, value: float, threshold: float) -> Alert:
        return Alert(kind, ALERT_SEVERITY[kind], message, value, threshold, self.clock())

    def check_alert_conditions(self) -> List[Alert]:
        """Evaluate all thresholds; the breached ones become the active alerts."""
        m = self.get_metrics()
        t = self.thresholds
        alerts: List[Alert] = []

        if m["trades_attempted"] > t["min_trades_for_success"] and m["success_rate"] < t["min_success_rate"]:
            alerts.append(self._alert("low_success_rate",
                                      f"Success rate {m['success_rate']:.1%} below {t['min_success_rate']:.0%}",
                                      m["success_rate"], t["min_success_rate"]))
        if m["opportunities_found"] > t["min_opps_for_error_rate"] and m["error_rate"] > t["max_error_rate"]:
            alerts.append(self._alert("high_error_rate",
                                      f"Error rate {m['error_rate']:.1%} above {t['max_error_rate']:.0%}",
                                      m["error_rate"], t["max_error_rate"]))
        if m["trades_attempted"] > 0 and m["avg_execution_time_s"] > t["max_execution_time_s"]:
            alerts.append(self._alert("high_execution_time",
                                      f"Average execution {m['avg_execution_time_s']:.1f}s above "
                                      f"{t['max_execution_time_s']:.0f}s",
                                      m["avg_execution_time_s"], t["max_execution_time_s"]))
        if m["trades_succeeded"] > t["min_trades_for_margin"] and m["avg_profit_margin_pct"] < t["min_profit_margin_pct"]:
            alerts.append(self._alert("low_profit_margin",
                                      f"Average margin {m['avg_profit_margin_pct']:.3f}% below "
                                      f"{t['min_profit_margin_pct']}%",
                                      m["avg_profit_margin_pct"], t["min_profit_margin_pct"]))

        self.active_alerts = alerts
        for alert in alerts:
            logger.warning("ALERT [%s] %s: %s", alert.severity.upper(), alert.type, alert.message)
            for handler in self._handlers:
                try:
                    handler(alert)
                except Exception as exc:
                    logger.error("Alert handler %r failed: %s", handler, exc)
        return alerts

    def get_health_status(self) -> Dict[str, Any]:
        severities = {a.severity for a in self.active_alerts}
        if "high" in severities:
            status = "unhealthy"
        elif severities:
            status = "warning"
        else:
            status = "healthy"
        m = self.get_metrics()
        return {
            "status": status,
            "alerts": [a.to_dict() for a in self.active_alerts],
            "uptime_s": m["uptime_s"],
            "success_rate": m["success_rate"],
            "error_rate": m["error_rate"],
        }

    def generate_report(self) -> str:
        m = self.get_metrics()
        rows = [
            ["Uptime", f"{m['uptime_s'] / 3600:.2f} h"],
            ["Opportunities", m["opportunities_found"]],
            ["Opportunities / hour", f"{m['opportunities_per_hour']:.2f}"],
            ["Trades (ok / failed)", f"{m['trades_succeeded']} / {m['trades_failed']}"],
            ["Success rate", f"{m['success_rate']:.1%}"],
            ["Error rate", f"{m['error_rate']:.1%}"],
            ["Profit", f"${m['total_profit_usd']:,.2f}"],
            ["Gas spent", f"${m['total_gas_usd']:,.2f}"],
            ["Profit / hour", f"${m['profit_per_hour_usd']:,.2f}"],
            ["Avg execution", f"{m['avg_execution_time_s']:.2f} s"],
            ["Avg margin", f"{m['avg_profit_margin_pct']:.3f}%"],
            ["Price updates", m["price_updates"]],
            ["Errors", m["errors"]],
        ]
        return tabulate(rows, headers=["Metric", "Value"], tablefmt="simple")
