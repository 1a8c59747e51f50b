"""
Tests for one simulation attempt (fork faked at the ForkSimulator seam)
"""

import asyncio

import pytest

from arbexec.errors import ForkStartError, SimulationTimeoutError, UnsignedTransactionError
from arbexec.profit_calculator import GasPriceConfig, ProfitCalculator, ProfitThreshold
from arbexec.simulator import (
    ArbitrageParams,
    FixedProfitSource,
    MinimumOutputProfitSource,
    SimulationFailure,
    SimulationRunner,
)

from conftest import SIGNED_TX

GWEI = 10**9
ETH = 10**18

PARAMS = ArbitrageParams(asset="0x" + "11" * 20, amount=100 * ETH, min_out2=100 * ETH + ETH // 2)
GAS = GasPriceConfig(max_gas_price=100 * GWEI, base_fee=20 * GWEI, priority_fee=2 * GWEI)


class FakeFork:
    def __init__(self, receipt=None, error=None, hang=False):
        self.receipt = receipt or {"status": 1, "gasUsed": 500_000, "blockNumber": 101}
        self.error = error
        self.hang = hang
        self.started = 0
        self.stopped = 0

    async def start(self, block_number=None):
        self.started += 1
        if isinstance(self.error, ForkStartError):
            raise self.error

    async def execute_transaction(self, signed_transaction, sender=None):
        if isinstance(signed_transaction, dict):
            raise UnsignedTransactionError("unsigned")
        if self.hang:
            await asyncio.sleep(3600)
        if self.error is not None:
            raise self.error
        return self.receipt

    async def stop(self):
        self.stopped += 1


def make_runner(fork, **kwargs):
    forks = []

    def factory():
        forks.append(fork)
        return fork

    runner = SimulationRunner("https://upstream.example", fork_factory=factory, **kwargs)
    return runner, forks


class TestSimulate:

    @pytest.mark.asyncio
    async def test_success_prices_the_receipt(self):
        fork = FakeFork()
        runner, _ = make_runner(fork, profit_calculator=ProfitCalculator(fee_bps=5))

        result = await runner.simulate(SIGNED_TX, PARAMS, GAS)

        assert result.success
        assert result.gas_used == 500_000
        assert result.gross_profit == ETH // 2
        assert result.gas_cost == 500_000 * 22 * GWEI
        assert result.protocol_fee == 100 * ETH * 5 // 10_000
        assert result.net_profit == result.gross_profit - (result.gas_cost + result.protocol_fee)
        assert fork.stopped == 1

    @pytest.mark.asyncio
    async def test_revert_zeroes_profit_fields(self):
        fork = FakeFork(receipt={"status": 0, "gasUsed": 210_000, "blockNumber": 101})
        runner, _ = make_runner(fork)

        result = await runner.simulate(SIGNED_TX, PARAMS, GAS)

        assert not result.success
        assert result.failure is SimulationFailure.REVERTED
        assert result.revert_reason
        assert (result.gross_profit, result.net_profit, result.gas_cost, result.protocol_fee) == (0, 0, 0, 0)
        assert fork.stopped == 1

    @pytest.mark.asyncio
    async def test_over_gas_budget_never_spawns_a_fork(self):
        runner, forks = make_runner(FakeFork())
        expensive = GasPriceConfig(max_gas_price=100 * GWEI, base_fee=200 * GWEI, priority_fee=2 * GWEI)

        result = await runner.simulate(SIGNED_TX, PARAMS, expensive)

        assert result.failure is SimulationFailure.GAS_PRICE_TOO_HIGH
        assert forks == []

    @pytest.mark.asyncio
    async def test_timeout_is_distinct_from_revert(self):
        fork = FakeFork(error=SimulationTimeoutError("receipt", 10.0))
        runner, _ = make_runner(fork)

        result = await runner.simulate(SIGNED_TX, PARAMS, GAS)

        assert result.failure is SimulationFailure.TIMEOUT
        assert "timed out" in result.error
        assert fork.stopped == 1

    @pytest.mark.asyncio
    async def test_fork_start_failure(self):
        fork = FakeFork(error=ForkStartError("no anvil"))
        runner, _ = make_runner(fork)

        result = await runner.simulate(SIGNED_TX, PARAMS, GAS)

        assert result.failure is SimulationFailure.FORK_ERROR
        assert fork.stopped == 1

    @pytest.mark.asyncio
    async def test_unsigned_transaction_propagates(self):
        fork = FakeFork()
        runner, _ = make_runner(fork)

        with pytest.raises(UnsignedTransactionError):
            await runner.simulate({"to": "0x0"}, PARAMS, GAS)
        assert fork.stopped == 1

    @pytest.mark.asyncio
    async def test_cancellation_still_tears_down_fork(self):
        fork = FakeFork(hang=True)
        runner, _ = make_runner(fork)

        task = asyncio.create_task(runner.simulate(SIGNED_TX, PARAMS, GAS))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert fork.stopped == 1


class TestProfitSources:

    @pytest.mark.asyncio
    async def test_minimum_output_source(self):
        assert await MinimumOutputProfitSource().gross_profit(PARAMS, {}) == ETH // 2

    @pytest.mark.asyncio
    async def test_fixed_source_overrides_gross(self):
        runner, _ = make_runner(FakeFork(), profit_source=FixedProfitSource(ETH))
        result = await runner.simulate(SIGNED_TX, PARAMS, GAS)
        assert result.gross_profit == ETH


class TestThresholdAndFee:

    def test_threshold_roundtrip(self):
        runner, _ = make_runner(FakeFork())
        runner.set_profit_threshold(ProfitThreshold(min_profit_wei=5))
        assert runner.get_profit_threshold().min_profit_wei == 5

    def test_fee_passthrough(self):
        runner, _ = make_runner(FakeFork())
        runner.set_fee_bps(9)
        assert runner.get_fee_bps() == 9
        assert runner.calculator.fee_bps == 9

    @pytest.mark.asyncio
    async def test_evaluate_uses_threshold(self):
        runner, _ = make_runner(FakeFork(), threshold=ProfitThreshold(min_profit_wei=ETH))
        result = await runner.simulate(SIGNED_TX, PARAMS, GAS)

        assert result.success
        assert not runner.evaluate(result).ok
        assert runner.evaluate(result, ProfitThreshold(min_profit_wei=0)).ok
