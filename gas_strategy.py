"""
gas_strategy.py
===============
Gas Pricing Strategy.

Produces urgency-adjusted fee fields for the settlement transaction:

  fee-market chains   maxPriorityFeePerGas = suggested tip x priority multiplier
                      maxFeePerGas = (base fee + tip) x max-fee multiplier,
                      never below the tip itself
  legacy chains       gasPrice = network gas price x priority multiplier

Any RPC failure degrades (fee-market -> legacy -> fixed fallback price)
instead of blocking the caller.
"""

from __future__ import annotations

import asyncio
import statistics
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from config import FEE_MARKET_CHAINS, GAS, NETWORK, get_logger

logger = get_logger(__name__)

GWEI = 10 ** 9


class Urgency(str, Enum):
    SLOW = "slow"
    STANDARD = "standard"
    FAST = "fast"
    URGENT = "urgent"


@dataclass(frozen=True)
class GasSettings:
    mode: str                                  # "fee_market" | "legacy" | "fallback"
    urgency: Urgency
    gas_limit: int
    gas_price: Optional[int] = None            # wei, legacy / fallback
    max_fee_per_gas: Optional[int] = None      # wei, fee-market
    max_priority_fee_per_gas: Optional[int] = None
    base_fee: Optional[int] = None

    @property
    def effective_gas_price(self) -> int:
        """Worst-case per-unit price in wei."""
        if self.max_fee_per_gas is not None:
            return self.max_fee_per_gas
        return self.gas_price or 0

    @property
    def estimated_cost_wei(self) -> int:
        return self.gas_limit * self.effective_gas_price

    @property
    def estimated_cost_native(self) -> float:
        return self.estimated_cost_wei / 10 ** NETWORK["native_decimals"]

    def fee_fields(self) -> Dict[str, int]:
        """Fields to merge into a transaction dict."""
        if self.max_fee_per_gas is not None:
            return {
                "maxFeePerGas": self.max_fee_per_gas,
                "maxPriorityFeePerGas": self.max_priority_fee_per_gas or 0,
            }
        return {"gasPrice": self.gas_price or 0}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "urgency": self.urgency.value,
            "gas_limit": self.gas_limit,
            "fee_fields": self.fee_fields(),
            "effective_gas_price_gwei": self.effective_gas_price / GWEI,
            "estimated_cost_native": self.estimated_cost_native,
        }


class GasStrategy:
    """
    Parameters
    ----------
    chain    : ChainClient
    chain_id : decides between fee-market and legacy pricing
    """

    def __init__(
        self,
        chain,
        chain_id: int = NETWORK["chain_id"],
        config: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chain = chain
        self.chain_id = chain_id
        self.cfg = config or GAS
        self.timeout = timeout if timeout is not None else self.cfg["timeout_s"]
        self.clock = clock
        self._history: Deque[Tuple[float, float]] = deque(maxlen=self.cfg["history_size"])

    @property
    def supports_fee_market(self) -> bool:
        return self.chain_id in FEE_MARKET_CHAINS

    @staticmethod
    def _urgency(urgency) -> Urgency:
        return urgency if isinstance(urgency, Urgency) else Urgency(str(urgency).lower())

    def _fallback_wei(self) -> int:
        return int(self.cfg["fallback_gas_price_gwei"] * GWEI)

    def _record(self, price_wei: int) -> None:
        self._history.append((self.clock(), price_wei / GWEI))

    # ── Network reads ───────────────────────────────────────────────────────

    async def current_gas_price_gwei(self) -> float:
        """Network gas price in gwei; the fallback price if it cannot be read."""
        try:
            price = await asyncio.wait_for(self.chain.gas_price(), self.timeout)
        except Exception as exc:
            logger.debug("Gas: price query failed (%s), using fallback", exc)
            return self.cfg["fallback_gas_price_gwei"]
        self._record(price)
        return price / GWEI

    async def _fee_market_settings(self, urgency: Urgency, gas_limit: int) -> GasSettings:
        base_fee = await asyncio.wait_for(self.chain.base_fee(), self.timeout)
        if base_fee is None:
            raise ValueError("latest block has no base fee")
        try:
            tip = await asyncio.wait_for(self.chain.max_priority_fee(), self.timeout)
        except Exception as exc:
            logger.debug("Gas: priority fee query failed (%s), using default tip", exc)
            tip = int(self.cfg["default_priority_fee_gwei"] * GWEI)

        priority = int(tip * self.cfg["priority_multipliers"][urgency.value])
        max_fee = int((base_fee + priority) * self.cfg["max_fee_multipliers"][urgency.value])
        if max_fee < priority:
            max_fee = int(priority * 1.1)
        self._record(base_fee + priority)
        return GasSettings(
            mode="fee_market",
            urgency=urgency,
            gas_limit=gas_limit,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority,
            base_fee=base_fee,
        )

    async def _legacy_settings(self, urgency: Urgency, gas_limit: int) -> GasSettings:
        price = await asyncio.wait_for(self.chain.gas_price(), self.timeout)
        self._record(price)
        return GasSettings(
            mode="legacy",
            urgency=urgency,
            gas_limit=gas_limit,
            gas_price=int(price * self.cfg["priority_multipliers"][urgency.value]),
        )

    # ── Public API ──────────────────────────────────────────────────────────

    async def get_gas_settings(self, urgency=Urgency.STANDARD, gas_limit: Optional[int] = None) -> GasSettings:
        """Fee fields for ``urgency`` plus the estimated cost for ``gas_limit``."""
        level = self._urgency(urgency)
        limit = int(gas_limit or self.cfg["default_gas_limit"])

        if self.supports_fee_market:
            try:
                return await self._fee_market_settings(level, limit)
            except Exception as exc:
                logger.debug("Gas: fee-market pricing failed (%s), trying legacy", exc)
        try:
            return await self._legacy_settings(level, limit)
        except Exception as exc:
            logger.warning("Gas: legacy pricing failed (%s), using %.0f gwei fallback",
                           exc, self.cfg["fallback_gas_price_gwei"])
        return GasSettings(mode="fallback", urgency=level, gas_limit=limit, gas_price=self._fallback_wei())

    async def estimate_gas_limit(self, tx: Dict[str, Any]) -> int:
        """Node estimate plus safety margin; the default ceiling if estimation fails."""
        try:
            estimate = await asyncio.wait_for(self.chain.estimate_gas(tx), self.timeout)
        except Exception as exc:
            logger.debug("Gas: estimate failed (%s), using default limit", exc)
            return int(self.cfg["default_gas_limit"])
        return int(estimate * self.cfg["gas_limit_margin"])

    async def get_complete_gas_settings(self, tx: Dict[str, Any], urgency=Urgency.STANDARD) -> GasSettings:
        limit = await self.estimate_gas_limit(tx)
        return await self.get_gas_settings(urgency, gas_limit=limit)

    async def is_gas_price_acceptable(self, max_gwei: float) -> bool:
        return await self.current_gas_price_gwei() <= max_gwei

    def get_gas_analytics(self) -> Dict[str, Any]:
        """Statistics over the most recent observations."""
        window = [p for _, p in list(self._history)[-self.cfg["analytics_window"]:]]
        if not window:
            return {"samples": 0}
        trend = "flat"
        if len(window) >= 2:
            if window[-1] > window[0] * 1.05:
                trend = "rising"
            elif window[-1] < window[0] * 0.95:
                trend = "falling"
        return {
            "samples": len(window),
            "current_gwei": window[-1],
            "average_gwei": statistics.fmean(window),
            "min_gwei": min(window),
            "max_gwei": max(window),
            "trend": trend,
        }
