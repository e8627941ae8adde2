"""
venues.py
=========
Liquidity venues as a closed set of tagged variants.

Each venue type has one adapter that knows how to

  * quote   token_in -> token_out for an input amount, and
  * encode  the swap call the settlement contract will make on that venue.

Supported types:

  constant_product        Uniswap V2 style router + pair reserves
  concentrated_liquidity  Uniswap V3 style quoter, tried across fee tiers
  vault                   Balancer V2 style vault holding a 50/50 pool
  call_data               HTTP swap aggregator returning ready calldata

Adding a type means adding an adapter and registering it in ``default_adapters``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from config import AGGREGATOR_API_KEY, GAS, NETWORK, ORACLE, QUOTES, get_logger
from http_utils import get_json
from models import (
    ConfigError,
    LiquiditySnapshot,
    Quote,
    QuoteError,
    TierAttempt,
    Token,
    UnsupportedVenueError,
    normalised_price,
)

logger = get_logger(__name__)


class VenueType(str, Enum):
    CONSTANT_PRODUCT = "constant_product"
    CONCENTRATED_LIQUIDITY = "concentrated_liquidity"
    VAULT = "vault"
    CALL_DATA = "call_data"


@dataclass(frozen=True)
class VenueConfig:
    """Static description of one venue, as parsed from config.VENUES."""

    name: str
    venue_type: VenueType
    router: str
    fee_rate: float
    quoter: Optional[str] = None
    default_fee_tier: int = 3000
    fee_tiers: Tuple[int, ...] = (500, 3000, 10000)
    pool_id: Optional[str] = None
    api_url: Optional[str] = None

    @property
    def swap_gas(self) -> int:
        return GAS["units"]["swap"][self.venue_type.value]

    @property
    def tier_order(self) -> List[int]:
        """Default tier first, then the rest, without duplicates."""
        order: List[int] = []
        for fee in (self.default_fee_tier, *self.fee_tiers):
            if fee not in order:
                order.append(fee)
        return order

    @classmethod
    def from_dict(cls, name: str, spec: Dict[str, Any]) -> "VenueConfig":
        try:
            venue_type = VenueType(spec["type"])
        except (KeyError, ValueError) as exc:
            raise ConfigError(f"venue {name}: unknown type {spec.get('type')!r}") from exc
        if not spec.get("router"):
            raise ConfigError(f"venue {name}: router address missing")
        if venue_type is VenueType.CONCENTRATED_LIQUIDITY and not spec.get("quoter"):
            raise ConfigError(f"venue {name}: quoter address missing")
        if venue_type is VenueType.VAULT and not spec.get("pool_id"):
            raise ConfigError(f"venue {name}: pool_id missing")
        if venue_type is VenueType.CALL_DATA and not spec.get("api_url"):
            raise ConfigError(f"venue {name}: api_url missing")
        return cls(
            name=name,
            venue_type=venue_type,
            router=to_checksum_address(spec["router"]),
            fee_rate=float(spec.get("fee_rate", 0.003)),
            quoter=to_checksum_address(spec["quoter"]) if spec.get("quoter") else None,
            default_fee_tier=int(spec.get("default_fee_tier", 3000)),
            fee_tiers=tuple(spec.get("fee_tiers", (500, 3000, 10000))),
            pool_id=spec.get("pool_id"),
            api_url=spec.get("api_url"),
        )


@dataclass(frozen=True)
class SwapCall:
    """One leg as the settlement contract will execute it."""

    target: str
    data: bytes
    venue: str = ""
    min_amount_out: int = 0


# ─────────────────────────────────────────────────────────────────────────────
# CALLDATA ENCODING
# ─────────────────────────────────────────────────────────────────────────────

SWAP_EXACT_TOKENS_SIG = "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)"
EXACT_INPUT_SINGLE_SIG = (
    "exactInputSingle((address,address,uint24,address,uint256,uint256,uint256,uint160))"
)
VAULT_SWAP_SIG = (
    "swap((bytes32,uint8,address,address,uint256,bytes),(address,bool,address,bool),uint256,uint256)"
)


def _calldata(signature: str, types: List[str], args: List[Any]) -> bytes:
    return function_signature_to_4byte_selector(signature) + encode(types, args)


def encode_swap_exact_tokens(amount_in: int, min_out: int, path: List[str],
                             recipient: str, deadline: int) -> bytes:
    return _calldata(
        SWAP_EXACT_TOKENS_SIG,
        ["uint256", "uint256", "address[]", "address", "uint256"],
        [int(amount_in), int(min_out), [to_checksum_address(p) for p in path],
         to_checksum_address(recipient), int(deadline)],
    )


def encode_exact_input_single(token_in: str, token_out: str, fee: int, recipient: str,
                              deadline: int, amount_in: int, min_out: int) -> bytes:
    return _calldata(
        EXACT_INPUT_SINGLE_SIG,
        ["(address,address,uint24,address,uint256,uint256,uint256,uint160)"],
        [(to_checksum_address(token_in), to_checksum_address(token_out), int(fee),
          to_checksum_address(recipient), int(deadline), int(amount_in), int(min_out), 0)],
    )


def encode_vault_swap(pool_id: bytes, token_in: str, token_out: str, amount_in: int,
                      recipient: str, min_out: int, deadline: int) -> bytes:
    single_swap = (pool_id, 0, to_checksum_address(token_in), to_checksum_address(token_out),
                   int(amount_in), b"")
    funds = (to_checksum_address(recipient), False, to_checksum_address(recipient), False)
    return _calldata(
        VAULT_SWAP_SIG,
        ["(bytes32,uint8,address,address,uint256,bytes)", "(address,bool,address,bool)",
         "uint256", "uint256"],
        [single_swap, funds, int(min_out), int(deadline)],
    )


def _pool_id_bytes(pool_id: str) -> bytes:
    raw = bytes.fromhex(pool_id[2:] if pool_id.startswith("0x") else pool_id)
    if len(raw) != 32:
        raise QuoteError(f"pool id must be 32 bytes, got {len(raw)}")
    return raw


# ─────────────────────────────────────────────────────────────────────────────
# LIQUIDITY FLOOR
# ─────────────────────────────────────────────────────────────────────────────


class LiquidityFloor:
    """
    Minimum pool depth, measured in units of the chain's native asset.

    Each reserve is valued at ``usd(token) / usd(native)``, so 200 USDC
    counts as 0.1 when ETH trades at 2000.  A pool is thin when neither
    side reaches ``minimum``.  ``prices`` is anything with an async
    ``get_price(symbol)``; without one the static table in ORACLE is used.
    """

    def __init__(self, minimum: float, prices=None, reference: str = NETWORK["native_symbol"]) -> None:
        self.minimum = minimum
        self.prices = prices
        self.reference = reference

    async def _usd(self, symbol: str) -> float:
        if self.prices is not None:
            return await self.prices.get_price(symbol)
        sym = ORACLE["aliases"].get(symbol.upper(), symbol.upper())
        return float(ORACLE["fallback_prices"].get(sym, ORACLE["default_fallback_price"]))

    async def reference_value(self, token: Token, amount: int) -> float:
        return token.from_units(amount) * await self._usd(token.symbol) / await self._usd(self.reference)

    async def is_thin(self, token_in: Token, token_out: Token, reserve_in: int, reserve_out: int) -> bool:
        value_in = await self.reference_value(token_in, reserve_in)
        value_out = await self.reference_value(token_out, reserve_out)
        return value_in < self.minimum and value_out < self.minimum


# ─────────────────────────────────────────────────────────────────────────────
# ADAPTERS
# ─────────────────────────────────────────────────────────────────────────────


class VenueAdapter:
    """Uniform quote/encode interface.  Subclasses implement one venue type."""

    venue_type: VenueType

    async def quote(
        self,
        chain,
        venue: VenueConfig,
        token_in: Token,
        token_out: Token,
        amount_in: int,
        floor: LiquidityFloor,
    ) -> Optional[Quote]:
        raise NotImplementedError

    async def build_swap_call(
        self,
        venue: VenueConfig,
        token_in: Token,
        token_out: Token,
        amount_in: int,
        min_amount_out: int,
        recipient: str,
        deadline: int,
        quote: Optional[Quote] = None,
    ) -> SwapCall:
        raise NotImplementedError

    @staticmethod
    def _make_quote(venue: VenueConfig, token_in: Token, token_out: Token, amount_in: int,
                    amount_out: int, **extra) -> Quote:
        return Quote(
            venue=venue.name,
            token_in=token_in,
            token_out=token_out,
            amount_in=int(amount_in),
            amount_out=int(amount_out),
            price=normalised_price(token_in, token_out, amount_in, amount_out),
            captured_at=time.time(),
            **extra,
        )


class ConstantProductAdapter(VenueAdapter):
    """Router/factory/pair venues quoting through ``getAmountsOut``."""

    venue_type = VenueType.CONSTANT_PRODUCT

    def __init__(self) -> None:
        self._factories: Dict[str, str] = {}

    async def _factory(self, chain, router: str) -> str:
        if router not in self._factories:
            self._factories[router] = await chain.get_factory(router)
        return self._factories[router]

    async def quote(self, chain, venue, token_in, token_out, amount_in, floor):
        factory = await self._factory(chain, venue.router)
        pair = await chain.get_pair(factory, token_in.address, token_out.address)
        if not pair or int(pair, 16) == 0:
            logger.debug("%s: no pair for %s/%s", venue.name, token_in.symbol, token_out.symbol)
            return None

        r0, r1 = await chain.get_reserves(pair)
        token0 = await chain.token0(pair)
        if token0.lower() == token_in.address.lower():
            reserve_in, reserve_out = r0, r1
        else:
            reserve_in, reserve_out = r1, r0

        if await floor.is_thin(token_in, token_out, reserve_in, reserve_out):
            logger.debug(
                "%s: insufficient liquidity %s/%s (reserves %d/%d)",
                venue.name, token_in.symbol, token_out.symbol, reserve_in, reserve_out,
            )
            return None

        amounts = await chain.get_amounts_out(venue.router, amount_in, [token_in.address, token_out.address])
        amount_out = amounts[-1] if amounts else 0
        if amount_out <= 0:
            return None
        return self._make_quote(
            venue, token_in, token_out, amount_in, amount_out,
            liquidity=LiquiditySnapshot(reserve_in=reserve_in, reserve_out=reserve_out, pool=pair),
        )

    async def build_swap_call(self, venue, token_in, token_out, amount_in, min_amount_out,
                              recipient, deadline, quote=None):
        data = encode_swap_exact_tokens(
            amount_in, min_amount_out, [token_in.address, token_out.address], recipient, deadline
        )
        return SwapCall(target=venue.router, data=data, venue=venue.name, min_amount_out=min_amount_out)


class ConcentratedLiquidityAdapter(VenueAdapter):
    """Quoter-based venues.  Fee tiers are an ordered fallback list."""

    venue_type = VenueType.CONCENTRATED_LIQUIDITY

    async def quote(self, chain, venue, token_in, token_out, amount_in, floor):
        attempts: List[TierAttempt] = []
        for fee in venue.tier_order:
            try:
                out = await chain.quote_exact_input_single(
                    venue.quoter, token_in.address, token_out.address, fee, amount_in
                )
            except Exception as exc:
                attempts.append(TierAttempt(fee=fee, error=f"{type(exc).__name__}: {exc}"))
                continue
            attempts.append(TierAttempt(fee=fee, amount_out=out))
            if out > 0:
                return self._make_quote(
                    venue, token_in, token_out, amount_in, out,
                    fee_tier=fee, attempts=tuple(attempts),
                )
        logger.debug(
            "%s: no viable fee tier for %s/%s: %s",
            venue.name, token_in.symbol, token_out.symbol,
            ", ".join(f"{a.fee}={a.error or a.amount_out}" for a in attempts),
        )
        return None

    async def build_swap_call(self, venue, token_in, token_out, amount_in, min_amount_out,
                              recipient, deadline, quote=None):
        fee = quote.fee_tier if quote is not None and quote.fee_tier else venue.default_fee_tier
        data = encode_exact_input_single(
            token_in.address, token_out.address, fee, recipient, deadline, amount_in, min_amount_out
        )
        return SwapCall(target=venue.router, data=data, venue=venue.name, min_amount_out=min_amount_out)


class VaultAdapter(VenueAdapter):
    """
    Vault-held two-token pool with equal weights.

    With 50/50 weights the weighted-pool invariant reduces to constant
    product, so the output is computed locally from vault balances.
    """

    venue_type = VenueType.VAULT

    async def quote(self, chain, venue, token_in, token_out, amount_in, floor):
        tokens, balances = await chain.get_pool_tokens(venue.router, _pool_id_bytes(venue.pool_id))
        lowered = [t.lower() for t in tokens]
        try:
            i = lowered.index(token_in.address.lower())
            j = lowered.index(token_out.address.lower())
        except ValueError:
            logger.debug("%s: pool does not hold %s/%s", venue.name, token_in.symbol, token_out.symbol)
            return None

        bal_in, bal_out = balances[i], balances[j]
        if await floor.is_thin(token_in, token_out, bal_in, bal_out):
            logger.debug("%s: insufficient liquidity %s/%s", venue.name, token_in.symbol, token_out.symbol)
            return None

        fee_ppm = int(round(venue.fee_rate * 1_000_000))
        in_after_fee = amount_in * (1_000_000 - fee_ppm) // 1_000_000
        amount_out = bal_out * in_after_fee // (bal_in + in_after_fee)
        if amount_out <= 0:
            return None
        return self._make_quote(
            venue, token_in, token_out, amount_in, amount_out,
            liquidity=LiquiditySnapshot(reserve_in=bal_in, reserve_out=bal_out, pool=venue.pool_id),
        )

    async def build_swap_call(self, venue, token_in, token_out, amount_in, min_amount_out,
                              recipient, deadline, quote=None):
        data = encode_vault_swap(
            _pool_id_bytes(venue.pool_id), token_in.address, token_out.address,
            amount_in, recipient, min_amount_out, deadline,
        )
        return SwapCall(target=venue.router, data=data, venue=venue.name, min_amount_out=min_amount_out)


class CallDataAdapter(VenueAdapter):
    """
    HTTP swap aggregator.  ``/quote`` returns an output amount, ``/swap``
    returns the router target and calldata to forward verbatim.
    """

    venue_type = VenueType.CALL_DATA

    def __init__(self, api_key: str = AGGREGATOR_API_KEY, fetch_json=get_json,
                 request_timeout: float = QUOTES["timeout_s"]) -> None:
        self.api_key = api_key
        self._fetch_json = fetch_json
        self.request_timeout = request_timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def _get(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        # Single attempt: a cancelled await does not stop the worker thread.
        data, latency = await asyncio.to_thread(
            self._fetch_json, url, params, self._headers(),
            retries=1, timeout=self.request_timeout,
        )
        logger.debug("aggregator %s answered in %.0fms", url, latency)
        if not isinstance(data, dict):
            raise QuoteError(f"unexpected aggregator payload from {url}")
        return data

    async def quote(self, chain, venue, token_in, token_out, amount_in, floor):
        data = await self._get(
            f"{venue.api_url}/quote",
            {"src": token_in.address, "dst": token_out.address, "amount": str(amount_in)},
        )
        amount_out = int(data.get("dstAmount", 0))
        if amount_out <= 0:
            return None
        return self._make_quote(venue, token_in, token_out, amount_in, amount_out)

    async def build_swap_call(self, venue, token_in, token_out, amount_in, min_amount_out,
                              recipient, deadline, quote=None):
        tolerance_pct = 1.0
        if quote is not None and quote.amount_out > 0:
            tolerance_pct = max(0.0, (1 - min_amount_out / quote.amount_out) * 100)
        data = await self._get(
            f"{venue.api_url}/swap",
            {
                "src": token_in.address,
                "dst": token_out.address,
                "amount": str(amount_in),
                "from": recipient,
                "receiver": recipient,
                "slippage": round(tolerance_pct, 2),
                "disableEstimate": "true",
            },
        )
        tx = data.get("tx") or {}
        if not tx.get("data") or not tx.get("to"):
            raise QuoteError("aggregator returned no calldata")
        raw = tx["data"]
        payload = bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)
        return SwapCall(target=to_checksum_address(tx["to"]), data=payload,
                        venue=venue.name, min_amount_out=min_amount_out)


def default_adapters() -> Dict[VenueType, VenueAdapter]:
    """One fresh adapter per venue type (adapters hold per-chain memos)."""
    return {
        VenueType.CONSTANT_PRODUCT: ConstantProductAdapter(),
        VenueType.CONCENTRATED_LIQUIDITY: ConcentratedLiquidityAdapter(),
        VenueType.VAULT: VaultAdapter(),
        VenueType.CALL_DATA: CallDataAdapter(),
    }


def get_adapter(venue_type: VenueType, adapters: Dict[VenueType, VenueAdapter]) -> VenueAdapter:
    try:
        return adapters[venue_type]
    except KeyError:
        raise UnsupportedVenueError(f"no adapter for venue type {venue_type!r}") from None
