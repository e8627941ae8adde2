"""
simulator.py
============
Dry-run settlement.

Stands in for the on-chain settlement contract so the full pipeline can
run without signing anything.  Models the friction a real flash-loan
arbitrage meets:

1. MEV COMPETITION  most visible spreads are taken first -> revert
2. DEX SLIPPAGE     output lands below a leg's minimum -> revert
3. GAS VARIANCE     gas used scatters below the gas limit

Successful receipts carry no profit figure, so the executor books the
expected net profit.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, List, Optional

from chain import SettlementReceipt
from config import NETWORK, get_logger

logger = get_logger(__name__)

FLASH_LOAN_MEV_RATE = 0.85
GAS_USED_RANGE = (0.7, 0.95)          # fraction of the gas limit actually used
SLIPPAGE_REVERT_RATE = 0.05
SIMULATED_BALANCE_WEI = 10 ** 18      # 1 native unit

DRY_RUN_ADDRESS = "0x000000000000000000000000000000000000dEaD"


class SimulatedSettlement:
    """
    Same interface as ``chain.FlashLoanContract``.

    Parameters
    ----------
    mev_rate      : probability a submission is front-run and reverts
    slippage_rate : probability a surviving submission trips a min-output bound
    balance_wei   : account balance reported to the balance check
    seed          : seeds the private RNG, for reproducible runs
    """

    def __init__(
        self,
        mev_rate: float = FLASH_LOAN_MEV_RATE,
        slippage_rate: float = SLIPPAGE_REVERT_RATE,
        balance_wei: int = SIMULATED_BALANCE_WEI,
        seed: Optional[int] = None,
        address: str = DRY_RUN_ADDRESS,
        active_venues: Optional[List[str]] = None,
    ) -> None:
        self.mev_rate = mev_rate
        self.slippage_rate = slippage_rate
        self.balance_wei = balance_wei
        self.rng = random.Random(seed)
        self.address = address
        self.account = address
        self.active_venues = list(active_venues or [])
        self.submissions: List[Dict[str, Any]] = []
        self._receipts: Dict[str, SettlementReceipt] = {}

    async def get_account_balance(self) -> int:
        return self.balance_wei

    async def get_active_venues(self) -> List[str]:
        return list(self.active_venues)

    async def build_request(self, asset: str, amount: int, params: bytes) -> Dict[str, Any]:
        return {
            "to": self.address,
            "from": self.account,
            "asset": asset,
            "amount": int(amount),
            "params": params,
            "value": 0,
            "chainId": NETWORK["chain_id"],
        }

    async def request_flash_loan(self, tx: Dict[str, Any], gas_limit: int, fee_fields: Dict[str, int]) -> str:
        tx_hash = "0x" + "%064x" % self.rng.getrandbits(256)
        price = fee_fields.get("maxFeePerGas") or fee_fields.get("gasPrice") or 0
        gas_used = int(gas_limit * self.rng.uniform(*GAS_USED_RANGE))

        if self.rng.random() < self.mev_rate:
            status = 0
            logger.info("Simulator: %s front-run by MEV, reverting", tx_hash[:12])
        elif self.rng.random() < self.slippage_rate:
            status = 0
            logger.info("Simulator: %s hit a min-output bound, reverting", tx_hash[:12])
        else:
            status = 1
        receipt = SettlementReceipt(tx_hash=tx_hash, status=status, gas_used=gas_used,
                                    effective_gas_price=price)
        self.balance_wei = max(0, self.balance_wei - gas_used * price)
        self._receipts[tx_hash] = receipt
        self.submissions.append({"tx_hash": tx_hash, "gas_limit": gas_limit, **tx})
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> SettlementReceipt:
        await asyncio.sleep(0)
        return self._receipts[tx_hash]
