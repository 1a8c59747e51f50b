# arbexec/profit_calculator.py
"""
Profit Calculator
Deterministic wei arithmetic: gas cost + protocol (flash loan) fee -> net profit
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from arbexec.config import AAVE_FLASH_LOAN_FEE_BPS, MAX_FEE_BPS
from arbexec.errors import ConfigurationError

WEI_PER_ETH = Decimal(10**18)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class GasPriceConfig:
    """Gas parameters for one candidate (all wei)"""
    max_gas_price: int
    base_fee: int
    priority_fee: int
    gas_limit: int = 0

    @property
    def gas_price(self) -> int:
        return self.base_fee + self.priority_fee


@dataclass(frozen=True)
class ProfitThreshold:
    min_profit_wei: int
    min_profit_usd: float = 0.0   # Advisory, logging only


@dataclass(frozen=True)
class ProfitBreakdown:
    """Complete profit breakdown after all costs (wei)"""
    gross_profit: int
    gas_used: int
    gas_price: int
    gas_cost: int
    protocol_fee: int
    total_fees: int
    net_profit: int


# =============================================================================
# PROFIT CALCULATOR
# =============================================================================

class ProfitCalculator:
    """
    Accept/reject arithmetic for simulated candidates

    The protocol fee is mutable at runtime (governance can change it).
    """

    def __init__(self, fee_bps: int = AAVE_FLASH_LOAN_FEE_BPS):
        self._fee_bps = 0
        self.set_fee_bps(fee_bps)

    @property
    def fee_bps(self) -> int:
        return self._fee_bps

    def set_fee_bps(self, fee_bps: int) -> None:
        if not 0 <= fee_bps <= MAX_FEE_BPS:
            raise ConfigurationError(f"Protocol fee must be between 0 and {MAX_FEE_BPS} BPS, got {fee_bps}")
        self._fee_bps = int(fee_bps)

    def protocol_fee(self, loan_amount: int) -> int:
        return (loan_amount * self._fee_bps) // 10_000

    def compute_profit(
        self,
        gross_profit: int,
        gas_used: int,
        gas: GasPriceConfig,
        loan_amount: int,
    ) -> ProfitBreakdown:
        """Pure: net = gross - (gas_used * (base + priority) + floor(loan * bps / 10000))"""
        gas_price = gas.gas_price
        gas_cost = gas_used * gas_price
        protocol_fee = self.protocol_fee(loan_amount)
        total_fees = gas_cost + protocol_fee

        return ProfitBreakdown(
            gross_profit=gross_profit,
            gas_used=gas_used,
            gas_price=gas_price,
            gas_cost=gas_cost,
            protocol_fee=protocol_fee,
            total_fees=total_fees,
            net_profit=gross_profit - total_fees,
        )

    def is_acceptable(self, result, threshold: ProfitThreshold) -> bool:
        """netProfit >= threshold; anything without a net profit is rejected"""
        net_profit = getattr(result, "net_profit", None)
        if net_profit is None:
            return False
        return net_profit >= threshold.min_profit_wei

    def validate_gas_budget(self, gas: GasPriceConfig) -> bool:
        return gas.gas_price <= gas.max_gas_price

    def minimum_gross_profit(
        self,
        gas_used: int,
        gas: GasPriceConfig,
        loan_amount: int,
        threshold: ProfitThreshold,
    ) -> int:
        """Smallest gross profit that still clears the threshold (pre-filter)"""
        return gas_used * gas.gas_price + self.protocol_fee(loan_amount) + threshold.min_profit_wei


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def wei_to_eth(value: Optional[int]) -> Decimal:
    return Decimal(value or 0) / WEI_PER_ETH


def format_profit_breakdown(breakdown: Optional[ProfitBreakdown]) -> str:
    """Format profit breakdown for logging"""
    if breakdown is None:
        return "N/A"

    return (
        f"Net: {wei_to_eth(breakdown.net_profit):.6f} ETH "
        f"(Gross: {wei_to_eth(breakdown.gross_profit):.6f}, "
        f"Gas: {wei_to_eth(breakdown.gas_cost):.6f} "
        f"[{breakdown.gas_used} @ {Decimal(breakdown.gas_price) / Decimal(10**9):.1f} gwei], "
        f"Protocol Fee: {wei_to_eth(breakdown.protocol_fee):.6f})"
    )
