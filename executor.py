"""
executor.py
===========
Execution Orchestrator.

Single-flight: at most one settlement submission per process.  A request
arriving while one is in flight is rejected, never queued.

Per request:
  1. in-flight / cooldown gate              (not recorded anywhere)
  2. revalidate: age, gas drift, margin
  3. balance >= 2x estimated gas cost
  4. build per-leg swap calldata with min-output bounds
  5. submit requestFlashLoan, wait for the receipt
  6. interpret the receipt

Outcomes of steps 2-6 are fed to the RiskManager and the
PerformanceMonitor.  Nothing in here raises to the caller.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, Iterable, Optional, Tuple

from chain import encode_arbitrage_params
from config import EXECUTION, NETWORK, get_logger
from models import ExecutionResult, Opportunity, ProfitabilityReport, UnsupportedVenueError
from venues import SwapCall, VenueAdapter, VenueConfig, VenueType, default_adapters, get_adapter

logger = get_logger(__name__)

# Reason codes
IN_PROGRESS = "in_progress"
COOLDOWN_ACTIVE = "cooldown_active"
OPPORTUNITY_EXPIRED = "opportunity_expired"
GAS_PRICE_DRIFT = "gas_price_drift"
MARGIN_BELOW_FLOOR = "margin_below_floor"
INSUFFICIENT_BALANCE = "insufficient_balance"
UNSUPPORTED_VENUE = "unsupported_venue"
REVERTED = "reverted"
SUBMISSION_ERROR = "submission_error"
TIMEOUT = "timeout"


class ArbitrageExecutor:
    """
    Parameters
    ----------
    settlement   : FlashLoanContract or SimulatedSettlement
    gas_strategy : GasStrategy
    venues       : venue configs, looked up by name
    risk_manager : RiskManager, optional
    monitor      : PerformanceMonitor, optional
    """

    def __init__(
        self,
        settlement,
        gas_strategy,
        venues: Iterable[VenueConfig],
        risk_manager=None,
        monitor=None,
        config: Optional[Dict[str, Any]] = None,
        adapters: Optional[Dict[VenueType, VenueAdapter]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settlement = settlement
        self.gas = gas_strategy
        self.venues: Dict[str, VenueConfig] = {v.name: v for v in venues}
        self.risk = risk_manager
        self.monitor = monitor
        self.cfg = dict(EXECUTION)
        if config:
            self.cfg.update(config)
        self.adapters = adapters if adapters is not None else default_adapters()
        self.clock = clock
        self._executing = False
        self._last_execution: Optional[float] = None
        self.history: Deque[Dict[str, Any]] = deque(maxlen=self.cfg["history_size"])

    @property
    def in_progress(self) -> bool:
        return self._executing

    # ── Entry point ─────────────────────────────────────────────────────────

    async def execute(self, opportunity: Opportunity, report: ProfitabilityReport) -> ExecutionResult:
        if self._executing:
            logger.warning("Executor: %s rejected, another execution is in progress", opportunity.pair)
            return ExecutionResult(success=False, reason=IN_PROGRESS)

        now = self.clock()
        if self._last_execution is not None and now - self._last_execution < self.cfg["cooldown_s"]:
            remaining = self.cfg["cooldown_s"] - (now - self._last_execution)
            logger.info("Executor: cooldown active, %.0fs remaining", remaining)
            return ExecutionResult(success=False, reason=COOLDOWN_ACTIVE,
                                   detail=f"{remaining:.1f}s remaining")

        self._executing = True
        self._last_execution = now
        t0 = time.perf_counter()
        try:
            result = await self._run(opportunity, report)
        except Exception as exc:
            logger.error("Executor: unexpected failure for %s: %s", opportunity.pair, exc, exc_info=True)
            result = ExecutionResult(success=False, reason=SUBMISSION_ERROR, detail=str(exc))
        finally:
            self._executing = False

        if result.latency_s == 0.0:
            result = replace(result, latency_s=time.perf_counter() - t0)
        self._record(opportunity, report, result)
        return result

    # ── Steps ───────────────────────────────────────────────────────────────

    async def _run(self, opportunity: Opportunity, report: ProfitabilityReport) -> ExecutionResult:
        logger.info(
            "Executor: executing %s | borrow %.6f %s | buy %s sell %s | expected $%.2f (%.3f%%)",
            opportunity.pair, report.amount_in, opportunity.token_a.symbol,
            opportunity.buy_venue, opportunity.sell_venue, report.net_profit_usd, report.profit_margin_pct,
        )

        rejection = await self._revalidate(opportunity, report)
        if rejection is not None:
            return rejection

        rejection = await self._check_balance(report)
        if rejection is not None:
            return rejection

        try:
            params = await self._prepare_params(opportunity)
        except UnsupportedVenueError as exc:
            logger.error("Executor: %s", exc)
            return ExecutionResult(success=False, reason=UNSUPPORTED_VENUE, detail=str(exc))

        return await self._submit(opportunity, report, params)

    async def _revalidate(self, opportunity: Opportunity, report: ProfitabilityReport) -> Optional[ExecutionResult]:
        age = self.clock() - opportunity.discovered_at
        if age > self.cfg["max_opportunity_age_s"]:
            logger.warning("Executor: %s is %.1fs old, expired", opportunity.pair, age)
            return ExecutionResult(success=False, reason=OPPORTUNITY_EXPIRED, detail=f"age {age:.1f}s")

        current = await self.gas.current_gas_price_gwei()
        if current > report.gas_price_gwei * self.cfg["max_gas_drift"]:
            logger.warning("Executor: gas moved %.1f -> %.1f gwei, opportunity stale",
                           report.gas_price_gwei, current)
            return ExecutionResult(success=False, reason=GAS_PRICE_DRIFT,
                                   detail=f"{report.gas_price_gwei:.2f} -> {current:.2f} gwei")

        if report.profit_margin_pct < self.cfg["min_margin_pct"]:
            logger.warning("Executor: margin %.3f%% below floor", report.profit_margin_pct)
            return ExecutionResult(success=False, reason=MARGIN_BELOW_FLOOR,
                                   detail=f"{report.profit_margin_pct:.3f}%")
        return None

    async def _check_balance(self, report: ProfitabilityReport) -> Optional[ExecutionResult]:
        balance_wei = await self.settlement.get_account_balance()
        balance = balance_wei / 10 ** NETWORK["native_decimals"]
        required = report.costs.gas_native * self.cfg["balance_gas_multiple"]
        if balance < required:
            logger.error("Executor: insufficient balance %.6f < %.6f %s",
                         balance, required, NETWORK["native_symbol"])
            return ExecutionResult(success=False, reason=INSUFFICIENT_BALANCE,
                                   detail=f"{balance:.6f} < {required:.6f}")
        return None

    def _venue(self, name: str) -> VenueConfig:
        try:
            return self.venues[name]
        except KeyError:
            raise UnsupportedVenueError(f"venue {name!r} is not configured") from None

    def min_out(self, venue: VenueConfig, expected: int) -> int:
        tolerance = self.cfg["slippage_tolerance"][venue.venue_type.value]
        return int(expected * (1 - tolerance))

    async def build_legs(self, opportunity: Opportunity, deadline: int) -> Tuple[SwapCall, SwapCall]:
        """
        (leg1, leg2) swap calls.

        Leg 2 spends only leg 1's guaranteed minimum, so it can never try to
        spend more token_b than the contract holds.
        """
        recipient = self.settlement.address
        sell_venue = self._venue(opportunity.sell_venue)
        buy_venue = self._venue(opportunity.buy_venue)
        a, b = opportunity.token_a, opportunity.token_b

        expected_b = opportunity.sell_quote.amount_out * opportunity.amount_in // opportunity.sell_quote.amount_in
        leg1_min = self.min_out(sell_venue, expected_b)
        leg1 = await get_adapter(sell_venue.venue_type, self.adapters).build_swap_call(
            sell_venue, a, b, opportunity.amount_in, leg1_min, recipient, deadline,
            quote=opportunity.sell_quote,
        )

        expected_a = a.to_units(b.from_units(leg1_min) / opportunity.buy_price)
        leg2_min = self.min_out(buy_venue, expected_a)
        leg2 = await get_adapter(buy_venue.venue_type, self.adapters).build_swap_call(
            buy_venue, b, a, leg1_min, leg2_min, recipient, deadline,
            quote=opportunity.buy_quote,
        )
        return leg1, leg2

    async def _prepare_params(self, opportunity: Opportunity) -> bytes:
        deadline = int(self.clock()) + int(self.cfg["deadline_s"])
        legs = await self.build_legs(opportunity, deadline)
        a = opportunity.token_a
        return encode_arbitrage_params(
            token_a=a.address,
            token_b=opportunity.token_b.address,
            amount=opportunity.amount_in,
            targets=[leg.target for leg in legs],
            call_data=[leg.data for leg in legs],
            min_profit=a.to_units(self.cfg["min_profit_asset"]),
        )

    async def _submit(self, opportunity: Opportunity, report: ProfitabilityReport, params: bytes) -> ExecutionResult:
        a = opportunity.token_a
        t0 = time.perf_counter()
        tx_hash: Optional[str] = None
        try:
            tx = await self.settlement.build_request(a.address, opportunity.amount_in, params)
            gas = await self.gas.get_complete_gas_settings(tx, self.cfg["urgency"])
            logger.info("Executor: sending flash loan | gas limit %d | %.2f gwei | est. %.6f %s",
                        gas.gas_limit, gas.effective_gas_price / 1e9, gas.estimated_cost_native,
                        NETWORK["native_symbol"])
            tx_hash = await self.settlement.request_flash_loan(tx, gas.gas_limit, gas.fee_fields())
            logger.info("Executor: transaction sent %s", tx_hash)
            receipt = await asyncio.wait_for(
                self.settlement.wait_for_receipt(tx_hash, self.cfg["confirmation_timeout_s"]),
                self.cfg["confirmation_timeout_s"],
            )
        except asyncio.TimeoutError:
            logger.error("Executor: no confirmation for %s within %.0fs",
                         tx_hash or "(unsent)", self.cfg["confirmation_timeout_s"])
            return ExecutionResult(success=False, reason=TIMEOUT, tx_hash=tx_hash,
                                   latency_s=time.perf_counter() - t0)
        except Exception as exc:
            logger.error("Executor: submission failed: %s", exc)
            return ExecutionResult(success=False, reason=SUBMISSION_ERROR, tx_hash=tx_hash,
                                   detail=str(exc), latency_s=time.perf_counter() - t0)

        latency = time.perf_counter() - t0
        gas_native = receipt.gas_used * receipt.effective_gas_price / 10 ** NETWORK["native_decimals"]
        gas_usd = gas_native * report.native_price_usd

        if not receipt.succeeded:
            logger.error("Executor: transaction %s REVERTED (gas %d)", tx_hash, receipt.gas_used)
            return ExecutionResult(
                success=False, reason=REVERTED, tx_hash=tx_hash, gas_used=receipt.gas_used,
                gas_cost_native=gas_native, gas_cost_usd=gas_usd,
                block_number=receipt.block_number, latency_s=latency,
            )

        # The contract reports profit net of repayment; gas is paid from the account.
        if receipt.profit is not None:
            profit_asset = a.from_units(receipt.profit) - gas_usd / report.asset_price_usd
        else:
            profit_asset = report.net_profit
        profit_usd = profit_asset * report.asset_price_usd
        logger.info("Executor: SUCCESS %s | block %s | gas %d (%.6f %s) | profit $%.2f",
                    tx_hash, receipt.block_number, receipt.gas_used, gas_native,
                    NETWORK["native_symbol"], profit_usd)
        return ExecutionResult(
            success=True, tx_hash=tx_hash, gas_used=receipt.gas_used,
            gas_cost_native=gas_native, gas_cost_usd=gas_usd,
            realized_profit=profit_asset, realized_profit_usd=profit_usd,
            block_number=receipt.block_number, latency_s=latency,
        )

    # ── Bookkeeping ─────────────────────────────────────────────────────────

    def _record(self, opportunity: Opportunity, report: ProfitabilityReport, result: ExecutionResult) -> None:
        self.history.append({
            "timestamp": self.clock(),
            "pair": opportunity.pair,
            "buy_venue": opportunity.buy_venue,
            "sell_venue": opportunity.sell_venue,
            "expected_profit_usd": report.net_profit_usd,
            **result.to_dict(),
        })
        if self.risk is not None:
            self.risk.record_result(opportunity, report, result)
        if self.monitor is not None:
            self.monitor.record_execution(result, report)

    def get_execution_stats(self) -> Dict[str, Any]:
        total = len(self.history)
        successes = [h for h in self.history if h["success"]]
        failures: Dict[str, int] = {}
        for h in self.history:
            if not h["success"]:
                failures[h["reason"]] = failures.get(h["reason"], 0) + 1
        return {
            "total_executions": total,
            "successful": len(successes),
            "failed": total - len(successes),
            "success_rate": len(successes) / total if total else 0.0,
            "realized_profit_usd": sum(h["realized_profit_usd"] for h in successes),
            "expected_profit_usd": sum(h["expected_profit_usd"] for h in successes),
            "gas_spent_usd": sum(h["gas_cost_usd"] for h in self.history),
            "failure_reasons": failures,
            "in_progress": self._executing,
            "last_execution": self._last_execution,
        }
