"""
chain.py
========
Thin async wrappers over web3 for everything the engine reads from, or
submits to, the chain.

  ChainClient        venue/oracle reads, gas data, balances, gas estimates
  FlashLoanContract  the settlement contract: build, sign, send, confirm

Every call is bounded by ``asyncio.wait_for``; callers decide what a
timeout means for them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import encode
from eth_utils import to_checksum_address
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted
from web3.logs import DISCARD

from config import NETWORK, ZERO_ADDRESS, get_logger
from models import SettlementError

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# ABIs (minimal)
# ─────────────────────────────────────────────────────────────────────────────

def _fn(name: str, inputs: Sequence[Tuple[str, str]], outputs: Sequence[str],
        mutability: str = "view") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
    }


ROUTER_V2_ABI = [
    _fn("factory", [], ["address"]),
    _fn("getAmountsOut", [("amountIn", "uint256"), ("path", "address[]")], ["uint256[]"]),
]

FACTORY_V2_ABI = [
    _fn("getPair", [("tokenA", "address"), ("tokenB", "address")], ["address"]),
]

PAIR_V2_ABI = [
    _fn("getReserves", [], ["uint112", "uint112", "uint32"]),
    _fn("token0", [], ["address"]),
]

QUOTER_V3_ABI = [
    _fn(
        "quoteExactInputSingle",
        [("tokenIn", "address"), ("tokenOut", "address"), ("fee", "uint24"),
         ("amountIn", "uint256"), ("sqrtPriceLimitX96", "uint160")],
        ["uint256"],
        mutability="nonpayable",
    ),
]

VAULT_ABI = [
    _fn("getPoolTokens", [("poolId", "bytes32")], ["address[]", "uint256[]", "uint256"]),
]

AGGREGATOR_V3_ABI = [
    _fn("latestRoundData", [], ["uint80", "int256", "uint256", "uint256", "uint80"]),
    _fn("decimals", [], ["uint8"]),
]

FLASH_LOAN_ABI = [
    _fn("requestFlashLoan", [("asset", "address"), ("amount", "uint256"), ("params", "bytes")], [],
        mutability="nonpayable"),
    _fn("getActiveVenues", [], ["address[]"]),
    {
        "type": "event",
        "name": "ArbitrageExecuted",
        "anonymous": False,
        "inputs": [
            {"name": "asset", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "profit", "type": "uint256", "indexed": False},
        ],
    },
]

# (tokenA, tokenB, amount, targets[], calldata[], minProfit)
ARBITRAGE_PARAMS_TYPE = "(address,address,uint256,address[],bytes[],uint256)"


def encode_arbitrage_params(
    token_a: str,
    token_b: str,
    amount: int,
    targets: Sequence[str],
    call_data: Sequence[bytes],
    min_profit: int,
) -> bytes:
    """ABI-encode the params blob handed to ``requestFlashLoan``."""
    return encode(
        [ARBITRAGE_PARAMS_TYPE],
        [(
            to_checksum_address(token_a),
            to_checksum_address(token_b),
            int(amount),
            [to_checksum_address(t) for t in targets],
            [bytes(c) for c in call_data],
            int(min_profit),
        )],
    )


# ─────────────────────────────────────────────────────────────────────────────
# READ CLIENT
# ─────────────────────────────────────────────────────────────────────────────


class ChainClient:
    """
    Async read access to the chain.

    Parameters
    ----------
    rpc_url : str
        HTTP JSON-RPC endpoint.
    timeout : float
        Upper bound in seconds for any single call.
    w3      : AsyncWeb3, optional
        Pre-built instance (mainly for tests).
    """

    def __init__(
        self,
        rpc_url: str = NETWORK["rpc_url"],
        timeout: float = NETWORK["rpc_timeout"],
        w3: Optional[AsyncWeb3] = None,
    ) -> None:
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.timeout = timeout

    async def bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, self.timeout)

    def _contract(self, address: str, abi):
        return self.w3.eth.contract(address=to_checksum_address(address), abi=abi)

    # ── Constant-product venues ─────────────────────────────────────────────

    async def get_factory(self, router: str) -> str:
        return await self.bounded(self._contract(router, ROUTER_V2_ABI).functions.factory().call())

    async def get_pair(self, factory: str, token_a: str, token_b: str) -> str:
        pair = await self.bounded(
            self._contract(factory, FACTORY_V2_ABI).functions.getPair(
                to_checksum_address(token_a), to_checksum_address(token_b)
            ).call()
        )
        return pair or ZERO_ADDRESS

    async def get_reserves(self, pair: str) -> Tuple[int, int]:
        r0, r1, _ = await self.bounded(self._contract(pair, PAIR_V2_ABI).functions.getReserves().call())
        return int(r0), int(r1)

    async def token0(self, pair: str) -> str:
        return await self.bounded(self._contract(pair, PAIR_V2_ABI).functions.token0().call())

    async def get_amounts_out(self, router: str, amount_in: int, path: Sequence[str]) -> List[int]:
        amounts = await self.bounded(
            self._contract(router, ROUTER_V2_ABI).functions.getAmountsOut(
                int(amount_in), [to_checksum_address(p) for p in path]
            ).call()
        )
        return [int(a) for a in amounts]

    # ── Concentrated-liquidity venues ───────────────────────────────────────

    async def quote_exact_input_single(
        self, quoter: str, token_in: str, token_out: str, fee: int, amount_in: int
    ) -> int:
        # The quoter reverts internally to return its result, so this is an eth_call.
        out = await self.bounded(
            self._contract(quoter, QUOTER_V3_ABI).functions.quoteExactInputSingle(
                to_checksum_address(token_in), to_checksum_address(token_out),
                int(fee), int(amount_in), 0,
            ).call()
        )
        return int(out)

    # ── Vault venues ────────────────────────────────────────────────────────

    async def get_pool_tokens(self, vault: str, pool_id: bytes) -> Tuple[List[str], List[int]]:
        tokens, balances, _ = await self.bounded(
            self._contract(vault, VAULT_ABI).functions.getPoolTokens(pool_id).call()
        )
        return list(tokens), [int(b) for b in balances]

    # ── Reference feeds ─────────────────────────────────────────────────────

    async def latest_round_data(self, feed: str) -> Tuple[int, int]:
        """Return (answer, updated_at) from a Chainlink aggregator."""
        _, answer, _, updated_at, _ = await self.bounded(
            self._contract(feed, AGGREGATOR_V3_ABI).functions.latestRoundData().call()
        )
        return int(answer), int(updated_at)

    async def feed_decimals(self, feed: str) -> int:
        return int(await self.bounded(self._contract(feed, AGGREGATOR_V3_ABI).functions.decimals().call()))

    # ── Gas / account ───────────────────────────────────────────────────────

    async def gas_price(self) -> int:
        return int(await self.bounded(self.w3.eth.gas_price))

    async def max_priority_fee(self) -> int:
        return int(await self.bounded(self.w3.eth.max_priority_fee))

    async def base_fee(self) -> Optional[int]:
        block = await self.bounded(self.w3.eth.get_block("latest"))
        fee = block.get("baseFeePerGas")
        return int(fee) if fee is not None else None

    async def get_balance(self, address: str) -> int:
        return int(await self.bounded(self.w3.eth.get_balance(to_checksum_address(address))))

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(await self.bounded(self.w3.eth.estimate_gas(tx)))


# ─────────────────────────────────────────────────────────────────────────────
# SETTLEMENT CONTRACT
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SettlementReceipt:
    tx_hash: str
    status: int                    # 1 success, 0 reverted
    gas_used: int
    effective_gas_price: int       # wei
    block_number: Optional[int] = None
    profit: Optional[int] = None   # from ArbitrageExecuted, base units of the asset

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class FlashLoanContract:
    """
    The on-chain settlement contract, seen as a black box.

    ``requestFlashLoan(asset, amount, params)`` borrows, runs the encoded
    swaps, repays and keeps the residual, or reverts as a whole.
    """

    def __init__(
        self,
        chain: ChainClient,
        address: str = NETWORK["contract_address"],
        private_key: str = NETWORK["private_key"],
    ) -> None:
        if not address:
            raise SettlementError("settlement contract address is not configured")
        self.chain = chain
        self.w3 = chain.w3
        self.address = to_checksum_address(address)
        self.contract = self.w3.eth.contract(address=self.address, abi=FLASH_LOAN_ABI)
        self._private_key = private_key
        self.account = self.w3.eth.account.from_key(private_key).address if private_key else (
            to_checksum_address(NETWORK["account_address"]) if NETWORK["account_address"] else ""
        )

    async def get_account_balance(self) -> int:
        return await self.chain.get_balance(self.account)

    async def get_active_venues(self) -> List[str]:
        return list(await self.chain.bounded(self.contract.functions.getActiveVenues().call()))

    async def build_request(self, asset: str, amount: int, params: bytes) -> Dict[str, Any]:
        """Unsigned transaction dict for ``requestFlashLoan`` (no gas fields yet)."""
        nonce = await self.chain.bounded(self.w3.eth.get_transaction_count(self.account, "pending"))
        return {
            "to": self.address,
            "from": self.account,
            "nonce": nonce,
            "data": self.contract.encode_abi("requestFlashLoan", args=[to_checksum_address(asset), int(amount), params]),
            "value": 0,
            "chainId": NETWORK["chain_id"],
        }

    async def request_flash_loan(self, tx: Dict[str, Any], gas_limit: int, fee_fields: Dict[str, int]) -> str:
        """Sign and broadcast.  Returns the transaction hash (hex)."""
        if not self._private_key:
            raise SettlementError("no signing key configured")
        full = dict(tx)
        full["gas"] = int(gas_limit)
        full.update(fee_fields)
        signed = self.w3.eth.account.sign_transaction(full, self._private_key)
        tx_hash = await self.chain.bounded(self.w3.eth.send_raw_transaction(signed.raw_transaction))
        return self.w3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> SettlementReceipt:
        """Block until mined.  Raises asyncio.TimeoutError when ``timeout`` elapses first."""
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as exc:
            raise asyncio.TimeoutError(f"{tx_hash} not mined within {timeout:.0f}s") from exc
        profit = None
        if receipt["status"] == 1:
            events = self.contract.events.ArbitrageExecuted().process_receipt(receipt, errors=DISCARD)
            if events:
                profit = int(events[0]["args"]["profit"])
            else:
                logger.debug("Receipt %s has no ArbitrageExecuted event", tx_hash)
        return SettlementReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            gas_used=int(receipt["gasUsed"]),
            effective_gas_price=int(receipt.get("effectiveGasPrice", 0)),
            block_number=receipt.get("blockNumber"),
            profit=profit,
        )
