import asyncio

from simulator import SimulatedSettlement


def _submit(settlement, gas_limit=400_000, fee_fields=None):
    async def run():
        tx = await settlement.build_request("0x" + "11" * 20, 10 ** 18, b"\x01")
        tx_hash = await settlement.request_flash_loan(tx, gas_limit, fee_fields or {"gasPrice": 10 ** 10})
        return await settlement.wait_for_receipt(tx_hash, timeout=1.0)

    return asyncio.run(run())


def test_without_mev_or_slippage_every_submission_lands():
    settlement = SimulatedSettlement(mev_rate=0.0, slippage_rate=0.0, seed=1)
    receipt = _submit(settlement)
    assert receipt.succeeded
    assert receipt.profit is None
    assert 0.7 * 400_000 <= receipt.gas_used <= 0.95 * 400_000
    assert receipt.effective_gas_price == 10 ** 10


def test_mev_reverts_and_still_burns_gas():
    settlement = SimulatedSettlement(mev_rate=1.0, balance_wei=10 ** 18, seed=1)
    receipt = _submit(settlement)
    assert not receipt.succeeded
    assert settlement.balance_wei == 10 ** 18 - receipt.gas_used * 10 ** 10
    assert len(settlement.submissions) == 1


def test_fee_market_fields_use_max_fee():
    settlement = SimulatedSettlement(mev_rate=0.0, slippage_rate=0.0, seed=2)
    receipt = _submit(settlement, fee_fields={"maxFeePerGas": 3 * 10 ** 10, "maxPriorityFeePerGas": 10 ** 9})
    assert receipt.effective_gas_price == 3 * 10 ** 10


def test_seed_makes_runs_reproducible():
    first = _submit(SimulatedSettlement(seed=7))
    second = _submit(SimulatedSettlement(seed=7))
    assert first == second
