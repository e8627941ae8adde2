import asyncio

import pytest

from config import ORACLE
from fakes import T0, WETH, FakeChain, FakeClock, FakeHttp, addr
from price_oracle import PriceOracle

ETH_FEED = addr(0xFEED)
LLAMA_ETH = ORACLE["defillama_url"] + "coingecko:ethereum"


def _llama(price, timestamp=T0 - 10):
    return {"coins": {"coingecko:ethereum": {"price": price, "timestamp": timestamp}}}


def _oracle(chain=None, http=None, clock=None, **kwargs):
    params = dict(
        feeds={"ETH": ETH_FEED},
        coingecko_ids={"ETH": "ethereum"},
        fallback_prices={"ETH": 1800.0, "USDC": 1.0},
        aliases={"WETH": "ETH"},
        clock=clock or FakeClock(),
        fetch_json=http,
    )
    params.update(kwargs)
    return PriceOracle(chain=chain, **params)


def _chain(answer=2000 * 10 ** 8, updated_at=T0 - 60, decimals=8):
    chain = FakeChain()
    chain.feeds[ETH_FEED] = (answer, int(updated_at), decimals)
    return chain


def test_chain_feed_is_preferred_and_aliases_resolve():
    http = FakeHttp({LLAMA_ETH: _llama(2010.0)})
    ref = asyncio.run(_oracle(_chain(), http).get_reference_price("WETH"))
    assert ref.symbol == "ETH"
    assert ref.price == pytest.approx(2000.0)
    assert ref.source == "chainlink"
    assert http.calls == []


def test_stale_chain_feed_falls_through_to_http():
    http = FakeHttp({LLAMA_ETH: _llama(2010.0)})
    oracle = _oracle(_chain(updated_at=T0 - 7200), http)
    ref = asyncio.run(oracle.get_reference_price("ETH"))
    assert ref.source == "defillama"
    assert ref.price == 2010.0


def test_non_positive_answer_is_rejected():
    http = FakeHttp({LLAMA_ETH: _llama(2010.0)})
    ref = asyncio.run(_oracle(_chain(answer=0), http).get_reference_price("ETH"))
    assert ref.source == "defillama"


def test_http_feed_without_chain():
    http = FakeHttp({LLAMA_ETH: _llama(1995.5)})
    assert asyncio.run(_oracle(None, http).get_price("WETH")) == 1995.5


def test_http_feed_is_a_single_attempt_bounded_by_the_oracle_timeout():
    http = FakeHttp({LLAMA_ETH: _llama(1995.5)})
    asyncio.run(_oracle(None, http, timeout=2.5).get_reference_price("ETH"))
    assert http.options == [{"retries": 1, "timeout": 2.5}]


def test_reference_price_is_none_when_every_live_source_fails():
    chain = _chain()
    chain.fail.add("latest_round_data")
    http = FakeHttp({LLAMA_ETH: RuntimeError("502")})
    assert asyncio.run(_oracle(chain, http).get_reference_price("ETH")) is None


def test_get_price_falls_back_and_never_raises():
    chain = _chain()
    chain.fail.add("latest_round_data")
    http = FakeHttp({LLAMA_ETH: RuntimeError("502")})
    oracle = _oracle(chain, http)
    assert asyncio.run(oracle.get_price("WETH")) == 1800.0
    assert oracle.cache_stats()["fallbacks_served"] == 1


def test_malformed_http_payload_falls_back():
    http = FakeHttp({LLAMA_ETH: {"coins": {}}})
    assert asyncio.run(_oracle(None, http).get_price("ETH")) == 1800.0


def test_unknown_symbol_uses_default_fallback():
    price = asyncio.run(_oracle(None, None).get_price("XYZ"))
    assert price == ORACLE["default_fallback_price"]


def test_live_prices_are_cached_for_ttl():
    chain = _chain()
    clock = FakeClock()
    oracle = _oracle(chain, None, clock, ttl=30.0)

    async def scenario():
        await oracle.get_price("ETH")
        await oracle.get_price("WETH")
        clock.advance(31)
        await oracle.get_price("ETH")

    asyncio.run(scenario())
    assert chain.calls["latest_round_data"] == 2
    assert chain.calls["feed_decimals"] == 1


def test_batch_prices_fall_back_individually():
    prices = asyncio.run(_oracle(_chain(), None).get_prices(["WETH", "USDC"]))
    assert prices["WETH"] == pytest.approx(2000.0)
    assert prices["USDC"] == 1.0


def test_token_value_in_usd():
    value = asyncio.run(_oracle(_chain(), None).get_token_price_usd(WETH, WETH.to_units(2)))
    assert value == pytest.approx(4000.0)


def test_validate_price_feeds_reports_dead_feeds():
    oracle = _oracle(_chain(), None, coingecko_ids={"ETH": "ethereum", "BTC": "bitcoin"})
    status = asyncio.run(oracle.validate_price_feeds())
    assert status == {"BTC": False, "ETH": True}
