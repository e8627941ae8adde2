"""In-memory stand-ins for the chain, the settlement contract and HTTP."""

import asyncio
from fractions import Fraction
from typing import Any, Dict, List, Optional, Tuple

from chain import SettlementReceipt
from config import load_tokens
from gas_strategy import GasSettings, Urgency
from models import CostBreakdown, Opportunity, ProfitabilityReport, Quote, Token
from price_oracle import OraclePrice
from venues import VenueConfig, VenueType

GWEI = 10 ** 9
TOKENS = load_tokens()
WETH = TOKENS["WETH"]
USDC = TOKENS["USDC"]
DAI = TOKENS["DAI"]
WBTC = TOKENS["WBTC"]

T0 = 1_700_000_000.0


def addr(n: int) -> str:
    return "0x" + f"{n:040x}"


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_venue(name: str, venue_type: str = "constant_product", fee_rate: float = 0.003,
               router: Optional[str] = None, **kwargs) -> VenueConfig:
    return VenueConfig(
        name=name,
        venue_type=VenueType(venue_type),
        router=router or addr(int.from_bytes(name.encode(), "big") % 2 ** 160),
        fee_rate=fee_rate,
        **kwargs,
    )


def make_quote(venue: str, price: float, token_in: Token = WETH, token_out: Token = USDC,
               amount: float = 1.0, captured_at: float = T0, **kwargs) -> Quote:
    amount_in = token_in.to_units(amount)
    return Quote(
        venue=venue,
        token_in=token_in,
        token_out=token_out,
        amount_in=amount_in,
        amount_out=token_out.to_units(amount * price),
        price=price,
        captured_at=captured_at,
        **kwargs,
    )


def make_opportunity(buy_price: float = 2000.0, sell_price: float = 2050.0, amount: float = 1.0,
                     buy_venue: str = "uniswap_v2", sell_venue: str = "sushiswap",
                     discovered_at: float = T0, token_a: Token = WETH, token_b: Token = USDC,
                     **quote_kwargs) -> Opportunity:
    buy = make_quote(buy_venue, buy_price, token_a, token_b, amount, discovered_at, **quote_kwargs)
    sell = make_quote(sell_venue, sell_price, token_a, token_b, amount, discovered_at, **quote_kwargs)
    return Opportunity(
        token_a=token_a,
        token_b=token_b,
        buy_venue=buy_venue,
        buy_quote=buy,
        sell_venue=sell_venue,
        sell_quote=sell,
        spread_pct=(sell_price - buy_price) / buy_price * 100,
        amount_in=buy.amount_in,
        discovered_at=discovered_at,
    )


def make_report(net_profit_usd: float = 40.0, margin_pct: float = 2.0, amount: float = 1.0,
                asset_price: float = 2000.0, gas_usd: float = 5.0, gas_gwei: float = 20.0,
                risk_score: int = 15) -> ProfitabilityReport:
    net = net_profit_usd / asset_price
    gas_native = gas_usd / asset_price
    costs = CostBreakdown(
        venue_fees=0.006, loan_premium=0.0009, gas=gas_native,
        venue_fees_usd=0.006 * asset_price, loan_premium_usd=0.0009 * asset_price,
        gas_usd=gas_usd, gas_native=gas_native,
    )
    return ProfitabilityReport(
        gross_profit=net + costs.total,
        gross_profit_usd=(net + costs.total) * asset_price,
        costs=costs,
        net_profit=net,
        net_profit_usd=net_profit_usd,
        profit_margin_pct=margin_pct,
        break_even_amount=0.1,
        risk_score=risk_score,
        amount_in=amount,
        asset_price_usd=asset_price,
        native_price_usd=asset_price,
        gas_price_gwei=gas_gwei,
        gas_units=482000,
        evaluated_at=T0,
    )


# ── Chain ───────────────────────────────────────────────────────────────────


class FakeChain:
    """
    Scripted ChainClient.  Set a method name in ``fail`` to make it raise,
    or in ``slow`` to make it hang for ``delay`` seconds.
    """

    def __init__(self) -> None:
        self.factories: Dict[str, str] = {}
        self.pairs: Dict[Tuple[str, frozenset], str] = {}
        self.reserves: Dict[str, Tuple[int, int]] = {}
        self.token0s: Dict[str, str] = {}
        self.rates: Dict[Tuple[str, str, str], Fraction] = {}
        self.tiers: Dict[Tuple[str, int], Any] = {}
        self.pools: Dict[str, Tuple[List[str], List[int]]] = {}
        self.feeds: Dict[str, Tuple[int, int, int]] = {}
        self.gas_price_wei = 20 * GWEI
        self.priority_fee_wei = 2 * GWEI
        self.base_fee_wei: Optional[int] = 20 * GWEI
        self.balances: Dict[str, int] = {}
        self.gas_estimate = 300_000
        self.fail: set = set()
        self.slow: set = set()
        self.delay = 1.0
        self.calls: Dict[str, int] = {}

    async def _enter(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.slow:
            await asyncio.sleep(self.delay)
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    # setup helpers

    def add_pool(self, router: str, token_in: Token, token_out: Token, price: float,
                 reserve_in: float, reserve_out: float, token0: Optional[Token] = None) -> str:
        factory = self.factories.setdefault(router, addr(len(self.factories) + 0x100))
        pair = addr(len(self.pairs) + 0x200)
        self.pairs[(factory, frozenset((token_in.address.lower(), token_out.address.lower())))] = pair
        token0 = token0 or token_in
        r_in, r_out = token_in.to_units(reserve_in), token_out.to_units(reserve_out)
        self.reserves[pair] = (r_in, r_out) if token0 is token_in else (r_out, r_in)
        self.token0s[pair] = token0.address
        self.set_rate(router, token_in, token_out, price)
        return pair

    def set_rate(self, router: str, token_in: Token, token_out: Token, price: float) -> None:
        rate = Fraction(str(price)) * 10 ** token_out.decimals / 10 ** token_in.decimals
        self.rates[(router, token_in.address.lower(), token_out.address.lower())] = rate

    # constant product

    async def get_factory(self, router: str) -> str:
        await self._enter("get_factory")
        return self.factories[router]

    async def get_pair(self, factory: str, token_a: str, token_b: str) -> str:
        await self._enter("get_pair")
        return self.pairs.get((factory, frozenset((token_a.lower(), token_b.lower()))), addr(0))

    async def get_reserves(self, pair: str) -> Tuple[int, int]:
        await self._enter("get_reserves")
        return self.reserves[pair]

    async def token0(self, pair: str) -> str:
        await self._enter("token0")
        return self.token0s[pair]

    async def get_amounts_out(self, router: str, amount_in: int, path: List[str]) -> List[int]:
        await self._enter("get_amounts_out")
        rate = self.rates[(router, path[0].lower(), path[-1].lower())]
        return [amount_in, int(amount_in * rate)]

    # concentrated liquidity

    async def quote_exact_input_single(self, quoter, token_in, token_out, fee, amount_in) -> int:
        await self._enter("quote_exact_input_single")
        outcome = self.tiers.get((quoter, fee), 0)
        if isinstance(outcome, Exception):
            raise outcome
        return int(outcome)

    # vault

    async def get_pool_tokens(self, vault: str, pool_id: bytes):
        await self._enter("get_pool_tokens")
        return self.pools[vault]

    # feeds

    async def latest_round_data(self, feed: str) -> Tuple[int, int]:
        await self._enter("latest_round_data")
        answer, updated_at, _ = self.feeds[feed]
        return answer, updated_at

    async def feed_decimals(self, feed: str) -> int:
        await self._enter("feed_decimals")
        return self.feeds[feed][2]

    # gas / account

    async def gas_price(self) -> int:
        await self._enter("gas_price")
        return self.gas_price_wei

    async def max_priority_fee(self) -> int:
        await self._enter("max_priority_fee")
        return self.priority_fee_wei

    async def base_fee(self) -> Optional[int]:
        await self._enter("base_fee")
        return self.base_fee_wei

    async def get_balance(self, address: str) -> int:
        await self._enter("get_balance")
        return self.balances.get(address, 0)

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        await self._enter("estimate_gas")
        return self.gas_estimate


# ── Oracle / gas / quotes ───────────────────────────────────────────────────


class FakeOracle:
    def __init__(self, prices: Optional[Dict[str, float]] = None, live: bool = True) -> None:
        self.prices = {"ETH": 2000.0, "WETH": 2000.0, "USDC": 1.0, "DAI": 1.0}
        if prices:
            self.prices.update(prices)
        self.live = live

    async def get_reference_price(self, symbol: str) -> Optional[OraclePrice]:
        if not self.live or symbol not in self.prices:
            return None
        return OraclePrice(symbol=symbol, price=self.prices[symbol], updated_at=T0, source="fake")

    async def get_price(self, symbol: str) -> float:
        return self.prices.get(symbol, 1.0)

    async def get_prices(self, symbols) -> Dict[str, float]:
        return {s: await self.get_price(s) for s in symbols}


class FakeGas:
    def __init__(self, gwei: float = 20.0, gas_limit: int = 400_000) -> None:
        self.gwei = gwei
        self.gas_limit = gas_limit
        self.requests: List[Dict[str, Any]] = []

    async def current_gas_price_gwei(self) -> float:
        return self.gwei

    async def get_complete_gas_settings(self, tx, urgency=Urgency.STANDARD) -> GasSettings:
        self.requests.append(tx)
        return GasSettings(mode="legacy", urgency=Urgency(urgency), gas_limit=self.gas_limit,
                           gas_price=int(self.gwei * GWEI))


class FakeQuoteProvider:
    def __init__(self, quotes: List[Quote]) -> None:
        self.quotes = list(quotes)
        self.calls = 0
        self.pruned = 0

    async def get_quotes(self, venues, token_in, token_out, amount_in) -> List[Quote]:
        self.calls += 1
        return list(self.quotes)

    def prune(self) -> int:
        self.pruned += 1
        return 0


# ── Settlement ──────────────────────────────────────────────────────────────


class FakeSettlement:
    def __init__(self, status: int = 1, balance_wei: int = 10 ** 18, delay: float = 0.0,
                 profit: Optional[int] = None, fail_submit: bool = False,
                 gas_used: int = 300_000, receipt_error: Optional[BaseException] = None) -> None:
        self.address = addr(0xC0FFEE)
        self.account = self.address
        self.status = status
        self.balance_wei = balance_wei
        self.delay = delay
        self.profit = profit
        self.fail_submit = fail_submit
        self.gas_used = gas_used
        self.receipt_error = receipt_error
        self.submissions: List[Dict[str, Any]] = []

    async def get_account_balance(self) -> int:
        return self.balance_wei

    async def get_active_venues(self) -> List[str]:
        return []

    async def build_request(self, asset: str, amount: int, params: bytes) -> Dict[str, Any]:
        return {"to": self.address, "from": self.account, "asset": asset,
                "amount": amount, "params": params}

    async def request_flash_loan(self, tx, gas_limit: int, fee_fields: Dict[str, int]) -> str:
        if self.fail_submit:
            raise RuntimeError("nonce too low")
        tx_hash = "0x" + f"{len(self.submissions) + 1:064x}"
        self.submissions.append({"tx": tx, "gas_limit": gas_limit, "fee_fields": fee_fields,
                                 "tx_hash": tx_hash})
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> SettlementReceipt:
        await asyncio.sleep(self.delay)
        if self.receipt_error is not None:
            raise self.receipt_error
        price = self.submissions[-1]["fee_fields"].get("gasPrice", 0)
        return SettlementReceipt(tx_hash=tx_hash, status=self.status, gas_used=self.gas_used,
                                 effective_gas_price=price, block_number=123, profit=self.profit)


class FakeHttp:
    """Callable with the ``get_json`` signature, answering from a url -> payload map."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.responses = dict(responses or {})
        self.calls: List[Tuple[str, Any, Any]] = []
        self.options: List[Dict[str, Any]] = []

    def __call__(self, url, params=None, headers=None, **options):
        self.calls.append((url, params, headers))
        self.options.append(options)
        for prefix, payload in self.responses.items():
            if url.startswith(prefix):
                if isinstance(payload, Exception):
                    raise payload
                return payload, 12.0
        raise RuntimeError(f"no route for {url}")
