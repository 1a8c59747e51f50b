"""
Tests for the profit arithmetic and the pre-submission guards
"""

import pytest

from arbexec.errors import ConfigurationError
from arbexec.filters.gas_check import gas_budget_guard
from arbexec.filters.profit_check import profit_guard
from arbexec.profit_calculator import (
    GasPriceConfig,
    ProfitCalculator,
    ProfitThreshold,
    format_profit_breakdown,
)
from arbexec.simulator import SimulationResult

GWEI = 10**9
ETH = 10**18


@pytest.fixture
def calculator():
    return ProfitCalculator(fee_bps=5)


class TestComputeProfit:

    def test_breakdown(self, calculator):
        gas = GasPriceConfig(max_gas_price=100 * GWEI, base_fee=20 * GWEI, priority_fee=2 * GWEI)
        breakdown = calculator.compute_profit(
            gross_profit=ETH // 10, gas_used=650_000, gas=gas, loan_amount=100 * ETH,
        )

        assert breakdown.gas_price == 22 * GWEI
        assert breakdown.gas_cost == 650_000 * 22 * GWEI
        assert breakdown.protocol_fee == 100 * ETH * 5 // 10_000
        assert breakdown.net_profit == breakdown.gross_profit - (breakdown.gas_cost + breakdown.protocol_fee)

    def test_protocol_fee_rounds_down(self, calculator):
        assert calculator.protocol_fee(1999) == 0
        assert calculator.protocol_fee(2000) == 1

    def test_gas_cost_exceeding_gross_is_rejected(self, calculator):
        """500 gwei, 650k gas, 0.1 ETH gross: gas alone costs 0.325 ETH"""
        gas = GasPriceConfig(max_gas_price=1000 * GWEI, base_fee=498 * GWEI, priority_fee=2 * GWEI)
        breakdown = calculator.compute_profit(ETH // 10, 650_000, gas, loan_amount=0)

        assert breakdown.gas_cost == 325 * 10**15
        assert breakdown.net_profit < 0
        assert not calculator.is_acceptable(breakdown, ProfitThreshold(min_profit_wei=0))


class TestAcceptance:

    def test_equality_is_accepted(self, calculator):
        result = SimulationResult(success=True, net_profit=10**16)
        assert calculator.is_acceptable(result, ProfitThreshold(min_profit_wei=10**16))

    def test_one_wei_short_is_rejected(self, calculator):
        result = SimulationResult(success=True, net_profit=10**16 - 1)
        assert not calculator.is_acceptable(result, ProfitThreshold(min_profit_wei=10**16))

    def test_missing_net_profit_is_rejected(self, calculator):
        assert not calculator.is_acceptable(object(), ProfitThreshold(min_profit_wei=0))

    def test_gas_budget(self, calculator):
        at_limit = GasPriceConfig(max_gas_price=100 * GWEI, base_fee=98 * GWEI, priority_fee=2 * GWEI)
        over = GasPriceConfig(max_gas_price=100 * GWEI, base_fee=99 * GWEI, priority_fee=2 * GWEI)
        assert calculator.validate_gas_budget(at_limit)
        assert not calculator.validate_gas_budget(over)

    def test_minimum_gross_profit(self, calculator):
        gas = GasPriceConfig(max_gas_price=100 * GWEI, base_fee=10 * GWEI, priority_fee=0)
        threshold = ProfitThreshold(min_profit_wei=10**16)
        minimum = calculator.minimum_gross_profit(100_000, gas, 10 * ETH, threshold)

        assert minimum == 100_000 * 10 * GWEI + 10 * ETH * 5 // 10_000 + 10**16
        breakdown = calculator.compute_profit(minimum, 100_000, gas, 10 * ETH)
        assert calculator.is_acceptable(breakdown, threshold)


class TestFeeConfiguration:

    @pytest.mark.parametrize("bps", [-1, 10_001])
    def test_out_of_range_rejected(self, calculator, bps):
        with pytest.raises(ConfigurationError):
            calculator.set_fee_bps(bps)
        assert calculator.fee_bps == 5

    @pytest.mark.parametrize("bps", [0, 9, 10_000])
    def test_in_range_accepted(self, calculator, bps):
        calculator.set_fee_bps(bps)
        assert calculator.fee_bps == bps


class TestGuards:

    def test_gas_guard_reports_inputs(self):
        gas = GasPriceConfig(max_gas_price=100 * GWEI, base_fee=150 * GWEI, priority_fee=2 * GWEI)
        verdict = gas_budget_guard(gas)

        assert not verdict.ok
        assert "exceeds" in verdict.reason
        assert verdict.details["gas_price"] == 152 * GWEI
        assert verdict.details["max_gas_price"] == 100 * GWEI

    def test_profit_guard_reports_inputs(self):
        result = SimulationResult(success=True, gross_profit=ETH // 10, gas_cost=ETH // 5, net_profit=-ETH // 10)
        verdict = profit_guard(result=result, threshold=ProfitThreshold(min_profit_wei=10**16))

        assert not verdict.ok
        assert verdict.details["net_profit"] == -ETH // 10
        assert verdict.details["min_profit_wei"] == 10**16

    def test_profit_guard_passes(self):
        result = SimulationResult(success=True, net_profit=2 * 10**16)
        assert profit_guard(result=result, threshold=ProfitThreshold(min_profit_wei=10**16)).ok


def test_format_profit_breakdown():
    calculator = ProfitCalculator()
    gas = GasPriceConfig(max_gas_price=100 * GWEI, base_fee=20 * GWEI, priority_fee=2 * GWEI)
    text = format_profit_breakdown(calculator.compute_profit(ETH, 100_000, gas, 0))

    assert text.startswith("Net: ")
    assert "22.0 gwei" in text
    assert format_profit_breakdown(None) == "N/A"
