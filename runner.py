"""
runner.py
=========
Continuous flash-loan arbitrage bot.

Wires every component together and drives them from a Scheduler:

    price refresh        every  5s
    opportunity scan     every 10s
    alert check          every 60s
    performance report   every 300s

Designed to be launched once and left running:
    nohup python3 runner.py &

``--once`` runs a single scan cycle and exits.  Dry run (simulated
settlement, nothing signed) is the default; ``--live`` submits real
transactions and needs PRIVATE_KEY and CONTRACT_ADDRESS.

Ctrl+C to stop gracefully.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from tabulate import tabulate

# ── Project imports ──────────────────────────────────────────────────────────
from chain import ChainClient, FlashLoanContract
from config import (
    EXECUTION, NETWORK, OPPORTUNITY, PID_FILE, SCAN, get_logger,
    load_pairs, load_tokens, load_venues, validate_config,
)
from executor import ArbitrageExecutor
from gas_strategy import GasStrategy
from models import ConfigError, Opportunity, ProfitabilityReport
from opportunity_finder import OpportunityFinder
from performance import PerformanceMonitor
from price_oracle import PriceOracle
from profit_calculator import ProfitCalculator
from quote_provider import QuoteProvider
from risk_manager import RiskManager
from scheduler import Scheduler
from simulator import SimulatedSettlement
from venues import VenueConfig, default_adapters

logger = get_logger("runner")


class ArbitrageBot:
    """
    Owns one instance of each component.

    Every collaborator can be passed in; anything omitted is built from
    config.  The scan pipeline per pair is:

        find (oracle-validated) -> evaluate -> viability gate -> risk gate -> execute

    Opportunities that fail the viability gate never reach the RiskManager.
    """

    def __init__(
        self,
        dry_run: bool = True,
        chain: Optional[ChainClient] = None,
        venues: Optional[Sequence[VenueConfig]] = None,
        pairs: Optional[List[Dict[str, Any]]] = None,
        quote_provider: Optional[QuoteProvider] = None,
        oracle: Optional[PriceOracle] = None,
        finder: Optional[OpportunityFinder] = None,
        gas_strategy: Optional[GasStrategy] = None,
        calculator: Optional[ProfitCalculator] = None,
        risk_manager: Optional[RiskManager] = None,
        monitor: Optional[PerformanceMonitor] = None,
        settlement=None,
        executor: Optional[ArbitrageExecutor] = None,
        use_oracle_validation: bool = OPPORTUNITY["use_oracle_validation"],
    ) -> None:
        self.dry_run = dry_run
        self.chain = chain if chain is not None else ChainClient()
        self.venues = list(venues) if venues is not None else load_venues()
        self.tokens = {}
        if pairs is None:
            self.tokens = load_tokens()
            pairs = load_pairs(self.tokens)
        else:
            for p in pairs:
                self.tokens.setdefault(p["token_a"].symbol, p["token_a"])
                self.tokens.setdefault(p["token_b"].symbol, p["token_b"])
        self.pairs = pairs
        self.use_oracle_validation = use_oracle_validation

        adapters = default_adapters()
        self.oracle = oracle or PriceOracle(chain=self.chain)
        self.quotes = quote_provider or QuoteProvider(self.chain, adapters=adapters, prices=self.oracle)
        self.finder = finder or OpportunityFinder(self.quotes, self.oracle)
        self.gas = gas_strategy or GasStrategy(self.chain)
        self.calculator = calculator or ProfitCalculator(self.oracle, self.gas, self.venues)
        self.risk = risk_manager or RiskManager()
        self.monitor = monitor or PerformanceMonitor()
        if settlement is None:
            settlement = SimulatedSettlement() if dry_run else FlashLoanContract(self.chain)
        self.settlement = settlement
        self.executor = executor or ArbitrageExecutor(
            self.settlement, self.gas, self.venues,
            risk_manager=self.risk, monitor=self.monitor, adapters=adapters,
        )

        self.cycle_num = 0
        self.last_opportunities: List[Dict[str, Any]] = []
        self.scheduler = Scheduler(on_error=self.monitor.record_error)
        self.scheduler.add("price_refresh", SCAN["price_refresh_interval_s"], self.refresh_prices)
        self.scheduler.add("opportunity_scan", SCAN["scan_interval_s"], self.run_cycle)
        self.scheduler.add("alert_check", SCAN["alert_interval_s"], self.check_alerts)
        self.scheduler.add("performance_report", SCAN["report_interval_s"], self.report)

    # ── Periodic tasks ──────────────────────────────────────────────────────

    async def refresh_prices(self) -> Dict[str, float]:
        symbols = sorted(set(self.tokens) | {NETWORK["native_symbol"]})
        prices = await self.oracle.get_prices(symbols)
        self.monitor.record_price_update(len(prices))
        pruned = self.quotes.prune()
        if pruned:
            logger.debug("Pruned %d stale quotes", pruned)
        return prices

    async def check_alerts(self) -> List[Any]:
        alerts = self.monitor.check_alert_conditions()
        if not self.risk.is_healthy():
            logger.warning("Risk manager unhealthy: %s", self.risk.get_risk_stats())
        return alerts

    async def report(self) -> str:
        text = self.monitor.generate_report()
        logger.info("Performance report\n%s", text)
        print(text)
        return text

    # ── Scan cycle ──────────────────────────────────────────────────────────

    async def _find(self, pair: Dict[str, Any]) -> Optional[Opportunity]:
        args = (self.venues, pair["token_a"], pair["token_b"], pair["amount_in"])
        if self.use_oracle_validation:
            return await self.finder.find_validated_opportunity(*args)
        return await self.finder.find_opportunity(*args)

    async def scan_pair(self, pair: Dict[str, Any], summary: Dict[str, Any]) -> None:
        label = f"{pair['token_a'].symbol}/{pair['token_b'].symbol}"
        opportunity = await self._find(pair)
        if opportunity is None:
            return
        summary["opportunities_found"] += 1

        report = await self.calculator.evaluate(opportunity)
        self.monitor.record_opportunity(opportunity, report)
        if report is None:
            self.monitor.record_error("profit_calculator", f"evaluation failed for {label}")
            return
        self._remember(opportunity, report)

        if not self.calculator.is_opportunity_viable(report):
            logger.info("%s: not viable (net $%.2f, margin %.3f%%, risk %d)",
                        label, report.net_profit_usd, report.profit_margin_pct, report.risk_score)
            return
        summary["viable"] += 1

        assessment = self.risk.assess(opportunity, report, gas_price_gwei=report.gas_price_gwei)
        if not assessment.approved:
            logger.info("%s: rejected by risk manager (score %d: %s)",
                        label, assessment.risk_score, ", ".join(assessment.reasons))
            summary["rejected"].append({"pair": label, "reasons": assessment.reasons})
            return
        summary["approved"] += 1

        result = await self.executor.execute(opportunity, report)
        summary["executions"].append({"pair": label, **result.to_dict()})
        if result.success:
            summary["succeeded"] += 1
            summary["realized_profit_usd"] += result.realized_profit_usd

    async def run_cycle(self) -> Dict[str, Any]:
        """One pass over every configured pair.  Never raises."""
        self.cycle_num += 1
        t0 = time.perf_counter()
        self.last_opportunities = []
        summary: Dict[str, Any] = {
            "cycle": self.cycle_num,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pairs_scanned": 0,
            "opportunities_found": 0,
            "viable": 0,
            "approved": 0,
            "succeeded": 0,
            "realized_profit_usd": 0.0,
            "rejected": [],
            "executions": [],
            "errors": 0,
        }
        for pair in self.pairs:
            summary["pairs_scanned"] += 1
            try:
                await self.scan_pair(pair, summary)
            except Exception as exc:
                summary["errors"] += 1
                self.monitor.record_error("scan", exc)
                logger.error("Scan of %s/%s failed: %s", pair["token_a"].symbol,
                             pair["token_b"].symbol, exc, exc_info=True)
        summary["elapsed_ms"] = round((time.perf_counter() - t0) * 1000, 1)
        logger.info("Cycle %d: %d pairs, %d opportunities, %d viable, %d approved, %d succeeded (%.0f ms)",
                    self.cycle_num, summary["pairs_scanned"], summary["opportunities_found"],
                    summary["viable"], summary["approved"], summary["succeeded"], summary["elapsed_ms"])
        return summary

    def _remember(self, opportunity: Opportunity, report: ProfitabilityReport) -> None:
        self.last_opportunities.append({
            "pair": opportunity.pair,
            "buy_venue": opportunity.buy_venue,
            "sell_venue": opportunity.sell_venue,
            "buy_price": opportunity.buy_price,
            "sell_price": opportunity.sell_price,
            "spread_pct": opportunity.spread_pct,
            "amount_in": report.amount_in,
            "net_profit_usd": report.net_profit_usd,
            "margin_pct": report.profit_margin_pct,
            "risk_score": report.risk_score,
        })

    def print_opportunity_table(self, top_n: int = 15) -> None:
        """Print this cycle's evaluated opportunities, best first."""
        ranked = sorted(self.last_opportunities, key=lambda o: o["net_profit_usd"], reverse=True)
        rows = [
            [i, o["pair"], o["buy_venue"], o["sell_venue"], f"{o['buy_price']:.6f}",
             f"{o['sell_price']:.6f}", f"{o['spread_pct']:.3f}%", f"{o['amount_in']:,.4f}",
             f"${o['net_profit_usd']:.2f}", f"{o['margin_pct']:.3f}%", o["risk_score"]]
            for i, o in enumerate(ranked[:top_n], 1)
        ]
        headers = ["#", "Pair", "Buy@", "Sell@", "Buy px", "Sell px", "Spread",
                   "Borrow", "Net Profit", "Margin", "Risk"]
        print("\n" + "─" * 100)
        print("  FLASH LOAN ARBITRAGE OPPORTUNITIES")
        print("─" * 100)
        if rows:
            print(tabulate(rows, headers=headers, tablefmt="simple"))
        else:
            print("  No cross-venue opportunities found.")
        print("─" * 100 + "\n")

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def run_forever(self) -> None:
        await self.refresh_prices()
        await self.scheduler.run_forever()

    async def run_once(self) -> Dict[str, Any]:
        await self.refresh_prices()
        summary = await self.run_cycle()
        self.print_opportunity_table()
        return summary


# ── Entry point ──────────────────────────────────────────────────────────────

def _acquire_pid_file() -> None:
    if os.path.exists(PID_FILE):
        try:
            with open(PID_FILE) as f:
                old_pid = int(f.read().strip())
            os.kill(old_pid, 0)
            print(f"[ERROR] Runner already active (PID {old_pid}). Exiting.")
            sys.exit(1)
        except (OSError, ValueError):
            pass
    with open(PID_FILE, "w") as f:
        f.write(str(os.getpid()))


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flash-loan cross-DEX arbitrage bot")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", dest="dry_run", action="store_true", default=None,
                      help="simulate settlement, sign nothing (default)")
    mode.add_argument("--live", dest="dry_run", action="store_false",
                      help="submit real flash-loan transactions")
    parser.add_argument("--once", action="store_true", help="run a single scan cycle and exit")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = create_parser().parse_args(argv)
    dry_run = NETWORK["dry_run"] if args.dry_run is None else args.dry_run

    try:
        validate_config(dry_run=dry_run)
    except ConfigError as exc:
        print(f"[ERROR] Configuration: {exc}")
        logger.error("Configuration invalid: %s", exc)
        sys.exit(1)

    if not args.once:
        _acquire_pid_file()

    bot = ArbitrageBot(dry_run=dry_run)

    print(f"\n{'═' * 60}")
    print("  FLASH LOAN ARBITRAGE BOT")
    print(f"  Mode      : {'DRY RUN' if dry_run else 'LIVE'}")
    print(f"  Chain     : {NETWORK['chain_id']}")
    print(f"  Venues    : {', '.join(v.name for v in bot.venues)}")
    print(f"  Pairs     : {', '.join(p['token_a'].symbol + '/' + p['token_b'].symbol for p in bot.pairs)}")
    print(f"  Cooldown  : {EXECUTION['cooldown_s']:.0f}s between executions")
    print(f"  PID       : {os.getpid()}")
    print(f"{'═' * 60}\n")

    try:
        if args.once:
            summary = asyncio.run(bot.run_once())
            print("Cycle Summary:")
            for k, v in summary.items():
                print(f"  {k}: {v}")
        else:
            asyncio.run(bot.run_forever())
    except KeyboardInterrupt:
        print("\n[Interrupted] Stopping...")
        print(bot.monitor.generate_report())
        print("[OK] Stopped.")
    finally:
        if not args.once and os.path.exists(PID_FILE):
            os.remove(PID_FILE)


if __name__ == "__main__":
    main()
