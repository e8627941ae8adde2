import asyncio

import pytest
from eth_abi import decode
from eth_utils import function_signature_to_4byte_selector

import executor as ex
from chain import ARBITRAGE_PARAMS_TYPE
from executor import ArbitrageExecutor
from fakes import WETH, FakeClock, FakeGas, FakeSettlement, make_opportunity, make_report, make_venue
from performance import PerformanceMonitor
from risk_manager import RiskManager
from venues import SWAP_EXACT_TOKENS_SIG

UNI = make_venue("uniswap_v2")
SUSHI = make_venue("sushiswap")


def _setup(settlement=None, gas=None, **config):
    clock = FakeClock()
    risk = RiskManager(clock=clock)
    monitor = PerformanceMonitor(clock=clock)
    executor = ArbitrageExecutor(
        settlement or FakeSettlement(), gas or FakeGas(20.0), [UNI, SUSHI],
        risk_manager=risk, monitor=monitor, config=config or None, clock=clock,
    )
    return executor, clock, risk, monitor


def _opp(clock, **kwargs):
    return make_opportunity(discovered_at=clock.now, **kwargs)


def test_successful_execution_books_expected_profit():
    settlement = FakeSettlement()
    executor, clock, risk, monitor = _setup(settlement)
    result = asyncio.run(executor.execute(_opp(clock), make_report(net_profit_usd=40.0)))

    assert result.success
    assert result.reason is None
    assert result.tx_hash == settlement.submissions[0]["tx_hash"]
    assert result.gas_used == 300_000
    assert result.gas_cost_native == pytest.approx(0.006)
    assert result.gas_cost_usd == pytest.approx(12.0)
    assert result.realized_profit_usd == pytest.approx(40.0)
    assert result.block_number == 123
    assert risk.get_risk_stats()["trades_executed"] == 1
    assert monitor.trades_succeeded == 1


def test_profit_from_settlement_event_is_net_of_gas():
    settlement = FakeSettlement(profit=WETH.to_units(0.05))
    executor, clock, _, _ = _setup(settlement)
    result = asyncio.run(executor.execute(_opp(clock), make_report()))
    assert result.realized_profit == pytest.approx(0.05 - 12.0 / 2000.0)
    assert result.realized_profit_usd == pytest.approx(88.0)


def test_submitted_params_encode_both_legs():
    settlement = FakeSettlement()
    executor, clock, _, _ = _setup(settlement)
    opp = _opp(clock)
    asyncio.run(executor.execute(opp, make_report()))

    params = settlement.submissions[0]["tx"]["params"]
    token_a, token_b, amount, targets, call_data, min_profit = decode([ARBITRAGE_PARAMS_TYPE], params)[0]
    assert token_a.lower() == opp.token_a.address.lower()
    assert token_b.lower() == opp.token_b.address.lower()
    assert amount == opp.amount_in
    # leg 1 on the sell venue, leg 2 on the buy venue
    assert [t.lower() for t in targets] == [SUSHI.router.lower(), UNI.router.lower()]
    selector = function_signature_to_4byte_selector(SWAP_EXACT_TOKENS_SIG)
    assert all(data[:4] == selector for data in call_data)
    assert min_profit == WETH.to_units(0.001)


def test_leg_minimums_apply_slippage_tolerance():
    executor, clock, _, _ = _setup()
    opp = _opp(clock)
    leg1, leg2 = asyncio.run(executor.build_legs(opp, deadline=int(clock.now) + 300))

    assert leg1.venue == "sushiswap"
    assert leg1.min_amount_out == pytest.approx(opp.sell_quote.amount_out * 0.95, abs=1)
    assert leg2.venue == "uniswap_v2"
    expected_a = leg1.min_amount_out / 10 ** 6 / opp.buy_price * 10 ** 18
    assert leg2.min_amount_out == pytest.approx(expected_a * 0.95, rel=1e-9)


def test_single_flight_rejects_concurrent_request():
    executor, clock, risk, monitor = _setup(FakeSettlement(delay=0.05))

    async def race():
        return await asyncio.gather(
            executor.execute(_opp(clock), make_report()),
            executor.execute(_opp(clock), make_report()),
        )

    first, second = asyncio.run(race())
    assert first.success
    assert second.reason == ex.IN_PROGRESS
    assert not executor.in_progress
    assert monitor.trades_attempted == 1
    assert len(risk.state.history) == 1


def test_cooldown_between_attempts():
    executor, clock, _, _ = _setup()
    assert asyncio.run(executor.execute(_opp(clock), make_report())).success

    clock.advance(10)
    blocked = asyncio.run(executor.execute(_opp(clock), make_report()))
    assert blocked.reason == ex.COOLDOWN_ACTIVE

    clock.advance(20)
    assert asyncio.run(executor.execute(_opp(clock), make_report())).success


def test_cooldown_starts_even_when_attempt_is_rejected():
    executor, clock, _, _ = _setup()
    assert asyncio.run(executor.execute(_opp(clock), make_report(margin_pct=0.1))).reason == ex.MARGIN_BELOW_FLOOR
    assert asyncio.run(executor.execute(_opp(clock), make_report())).reason == ex.COOLDOWN_ACTIVE


def test_expired_opportunity_is_rejected():
    settlement = FakeSettlement()
    executor, clock, risk, _ = _setup(settlement)
    opp = _opp(clock)
    clock.advance(16)
    result = asyncio.run(executor.execute(opp, make_report()))
    assert result.reason == ex.OPPORTUNITY_EXPIRED
    assert settlement.submissions == []
    assert risk.get_risk_stats()["trades_failed"] == 1


def test_gas_drift_beyond_tolerance_is_rejected():
    executor, clock, _, _ = _setup(gas=FakeGas(25.0))
    result = asyncio.run(executor.execute(_opp(clock), make_report(gas_gwei=20.0)))
    assert result.reason == ex.GAS_PRICE_DRIFT


def test_gas_drift_within_tolerance_proceeds():
    executor, clock, _, _ = _setup(gas=FakeGas(23.0))
    assert asyncio.run(executor.execute(_opp(clock), make_report(gas_gwei=20.0))).success


def test_insufficient_balance_is_rejected_before_submission():
    settlement = FakeSettlement(balance_wei=10 ** 15)
    executor, clock, _, _ = _setup(settlement)
    result = asyncio.run(executor.execute(_opp(clock), make_report(gas_usd=5.0)))
    assert result.reason == ex.INSUFFICIENT_BALANCE
    assert settlement.submissions == []


def test_unconfigured_venue_is_unsupported():
    executor, clock, _, _ = _setup()
    result = asyncio.run(executor.execute(_opp(clock, sell_venue="curve"), make_report()))
    assert result.reason == ex.UNSUPPORTED_VENUE


def test_revert_books_gas_as_loss():
    executor, clock, risk, monitor = _setup(FakeSettlement(status=0))
    result = asyncio.run(executor.execute(_opp(clock), make_report()))
    assert not result.success
    assert result.reason == ex.REVERTED
    assert result.submitted
    assert result.gas_cost_usd == pytest.approx(12.0)
    assert risk.get_risk_stats()["realized_loss_usd"] == pytest.approx(12.0)
    assert monitor.trades_failed == 1


def test_submission_error_is_a_result_not_an_exception():
    executor, clock, _, _ = _setup(FakeSettlement(fail_submit=True))
    result = asyncio.run(executor.execute(_opp(clock), make_report()))
    assert result.reason == ex.SUBMISSION_ERROR
    assert "nonce" in result.detail
    assert not result.submitted


def test_confirmation_timeout():
    executor, clock, _, _ = _setup(FakeSettlement(delay=1.0), confirmation_timeout_s=0.05)
    result = asyncio.run(executor.execute(_opp(clock), make_report()))
    assert result.reason == ex.TIMEOUT
    assert result.submitted
    assert not executor.in_progress


def test_execution_stats():
    executor, clock, _, _ = _setup(FakeSettlement(status=0))
    asyncio.run(executor.execute(_opp(clock), make_report()))
    stats = executor.get_execution_stats()
    assert stats["total_executions"] == 1
    assert stats["failed"] == 1
    assert stats["failure_reasons"] == {ex.REVERTED: 1}
    assert stats["gas_spent_usd"] == pytest.approx(12.0)


def test_settlement_timeout_inside_the_wait_is_a_timeout():
    settlement = FakeSettlement(receipt_error=asyncio.TimeoutError("not mined within 120s"))
    executor, clock, _, _ = _setup(settlement)
    result = asyncio.run(executor.execute(_opp(clock), make_report()))
    assert result.reason == ex.TIMEOUT
    assert result.tx_hash == settlement.submissions[0]["tx_hash"]
