import asyncio

import pytest

from fakes import DAI, USDC, WETH, FakeChain, FakeClock, FakeHttp, FakeOracle, addr, make_venue
from quote_provider import QuoteProvider
from venues import CallDataAdapter, LiquidityFloor, VenueType, default_adapters

UNI = make_venue("uniswap_v2")
SUSHI = make_venue("sushiswap")
V3 = make_venue("uniswap_v3", "concentrated_liquidity", quoter=addr(0xBEEF),
                default_fee_tier=3000, fee_tiers=(500, 3000, 10000))
VAULT = make_venue("balancer", "vault", router=addr(0xBA1), pool_id="0x" + "11" * 32)
AGG = make_venue("aggregator", "call_data", fee_rate=0.0, api_url="https://agg.example/v6")

ONE_WETH = WETH.to_units(1)


def _provider(chain, clock=None, **kwargs):
    return QuoteProvider(chain, ttl=5.0, min_liquidity=0.5, timeout=0.5,
                         clock=clock or FakeClock(), **kwargs)


def test_constant_product_quote_is_normalised():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, reserve_in=100, reserve_out=200_000)
    clock = FakeClock()
    quote = asyncio.run(_provider(chain, clock).get_quote(UNI, WETH, USDC, ONE_WETH))

    assert quote.venue == "uniswap_v2"
    assert quote.amount_out == USDC.to_units(2000)
    assert quote.price == 2000.0
    assert quote.captured_at == clock.now
    assert quote.liquidity.reserve_in == WETH.to_units(100)
    assert quote.liquidity.reserve_out == USDC.to_units(200_000)


def test_reserves_are_oriented_by_token0():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, reserve_in=100, reserve_out=200_000, token0=USDC)
    quote = asyncio.run(_provider(chain).get_quote(UNI, WETH, USDC, ONE_WETH))
    assert quote.liquidity.reserve_in == WETH.to_units(100)
    assert quote.liquidity.reserve_out == USDC.to_units(200_000)


def test_cache_hit_within_ttl_and_refetch_after():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, 100, 200_000)
    clock = FakeClock()
    provider = _provider(chain, clock)

    async def scenario():
        first = await provider.get_quote(UNI, WETH, USDC, ONE_WETH)
        clock.advance(4.9)
        second = await provider.get_quote(UNI, WETH, USDC, ONE_WETH)
        clock.advance(0.2)
        third = await provider.get_quote(UNI, WETH, USDC, ONE_WETH)
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert second is first
    assert third is not first
    assert chain.calls["get_amounts_out"] == 2
    assert chain.calls["get_factory"] == 1
    stats = provider.cache_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 2


def test_cache_is_keyed_by_amount():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, 100, 200_000)
    provider = _provider(chain)

    async def scenario():
        await provider.get_quote(UNI, WETH, USDC, ONE_WETH)
        await provider.get_quote(UNI, WETH, USDC, 2 * ONE_WETH)

    asyncio.run(scenario())
    assert chain.calls["get_amounts_out"] == 2


def test_thin_pool_on_both_sides_gives_no_quote():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, reserve_in=0.1, reserve_out=0.1)
    assert asyncio.run(_provider(chain).get_quote(UNI, WETH, USDC, ONE_WETH)) is None
    assert "get_amounts_out" not in chain.calls


def test_pool_depth_is_valued_in_the_native_asset():
    # 0.1 WETH and 200 USDC are both worth 0.1 ETH at 2000, under the 0.5 floor.
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, reserve_in=0.1, reserve_out=200)
    assert asyncio.run(_provider(chain).get_quote(UNI, WETH, USDC, WETH.to_units(0.01))) is None
    assert "get_amounts_out" not in chain.calls


def test_one_deep_side_is_enough():
    # 1000 USDC is worth 0.5 ETH, which meets the floor.
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, reserve_in=0.1, reserve_out=1000)
    assert asyncio.run(_provider(chain).get_quote(UNI, WETH, USDC, ONE_WETH)) is not None


def test_pool_depth_follows_live_native_price():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 100, reserve_in=0.1, reserve_out=200)
    provider = _provider(chain, prices=FakeOracle({"ETH": 100.0, "WETH": 100.0}))
    assert asyncio.run(provider.get_quote(UNI, WETH, USDC, WETH.to_units(0.01))) is not None


def test_thin_vault_pool_gives_no_quote():
    chain = FakeChain()
    chain.pools[VAULT.router] = ([WETH.address, USDC.address], [WETH.to_units(0.1), USDC.to_units(200)])
    assert asyncio.run(_provider(chain).get_quote(VAULT, WETH, USDC, WETH.to_units(0.01))) is None


def test_liquidity_floor_reference_value():
    floor = LiquidityFloor(0.5)
    assert asyncio.run(floor.reference_value(USDC, USDC.to_units(3000))) == pytest.approx(1.5)
    assert asyncio.run(floor.reference_value(WETH, WETH.to_units(2))) == pytest.approx(2.0)


def test_missing_pair_gives_no_quote():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, 100, 200_000)
    assert asyncio.run(_provider(chain).get_quote(UNI, WETH, DAI, ONE_WETH)) is None


def test_chain_failure_is_absorbed():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, 100, 200_000)
    chain.fail.add("get_reserves")
    provider = _provider(chain)
    assert asyncio.run(provider.get_quote(UNI, WETH, USDC, ONE_WETH)) is None
    assert provider.cache_stats()["failures"] == 1


def test_slow_venue_times_out():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, 100, 200_000)
    chain.slow.add("get_amounts_out")
    chain.delay = 1.0
    provider = QuoteProvider(chain, timeout=0.05, clock=FakeClock())
    assert asyncio.run(provider.get_quote(UNI, WETH, USDC, ONE_WETH)) is None


def test_unregistered_venue_type_gives_no_quote():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, 100, 200_000)
    provider = _provider(chain, adapters={})
    assert asyncio.run(provider.get_quote(UNI, WETH, USDC, ONE_WETH)) is None


def test_fee_tiers_are_tried_in_order_until_one_quotes():
    chain = FakeChain()
    chain.tiers[(V3.quoter, 3000)] = RuntimeError("pool not initialised")
    chain.tiers[(V3.quoter, 500)] = 0
    chain.tiers[(V3.quoter, 10000)] = USDC.to_units(1990)
    quote = asyncio.run(_provider(chain).get_quote(V3, WETH, USDC, ONE_WETH))

    assert quote.fee_tier == 10000
    assert quote.price == 1990.0
    assert [a.fee for a in quote.attempts] == [3000, 500, 10000]
    assert quote.attempts[0].error.startswith("RuntimeError")
    assert not quote.attempts[1].ok
    assert quote.attempts[2].ok


def test_no_viable_fee_tier_gives_no_quote():
    chain = FakeChain()
    assert asyncio.run(_provider(chain).get_quote(V3, WETH, USDC, ONE_WETH)) is None
    assert chain.calls["quote_exact_input_single"] == 3


def test_vault_quote_uses_pool_balances():
    chain = FakeChain()
    bal_in, bal_out = WETH.to_units(100), USDC.to_units(200_000)
    chain.pools[VAULT.router] = ([WETH.address, USDC.address], [bal_in, bal_out])
    quote = asyncio.run(_provider(chain).get_quote(VAULT, WETH, USDC, ONE_WETH))

    in_after_fee = ONE_WETH * 997_000 // 1_000_000
    assert quote.amount_out == bal_out * in_after_fee // (bal_in + in_after_fee)
    assert quote.liquidity.reserve_in == bal_in
    assert 1970 < quote.price < 1990


def test_vault_without_the_pair_gives_no_quote():
    chain = FakeChain()
    chain.pools[VAULT.router] = ([WETH.address, DAI.address], [10 ** 20, 10 ** 23])
    assert asyncio.run(_provider(chain).get_quote(VAULT, WETH, USDC, ONE_WETH)) is None


def test_aggregator_quote_over_http():
    http = FakeHttp({"https://agg.example/v6/quote": {"dstAmount": str(USDC.to_units(2010))}})
    adapters = default_adapters()
    adapters[VenueType.CALL_DATA] = CallDataAdapter(api_key="k", fetch_json=http)
    quote = asyncio.run(_provider(FakeChain(), adapters=adapters).get_quote(AGG, WETH, USDC, ONE_WETH))

    assert quote.price == 2010.0
    url, params, headers = http.calls[0]
    assert params["amount"] == str(ONE_WETH)
    assert headers == {"Authorization": "Bearer k"}
    assert http.options[0] == {"retries": 1, "timeout": 6.0}


def test_get_quotes_returns_only_answering_venues():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, 100, 200_000)
    chain.factories[SUSHI.router] = addr(0x999)
    quotes = asyncio.run(_provider(chain).get_quotes([UNI, SUSHI], WETH, USDC, ONE_WETH))
    assert [q.venue for q in quotes] == ["uniswap_v2"]


def test_prune_and_clear_cache():
    chain = FakeChain()
    chain.add_pool(UNI.router, WETH, USDC, 2000, 100, 200_000)
    clock = FakeClock()
    provider = _provider(chain, clock)
    asyncio.run(provider.get_quote(UNI, WETH, USDC, ONE_WETH))

    assert provider.prune() == 0
    clock.advance(10)
    assert provider.prune() == 1
    asyncio.run(provider.get_quote(UNI, WETH, USDC, ONE_WETH))
    provider.clear_cache()
    assert provider.cache_stats()["entries"] == 0
