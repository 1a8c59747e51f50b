# arbexec/simulator.py
"""
Simulation Runner
One simulation attempt = gas budget check -> fresh fork -> replay -> price.
With the fork disabled the replay is skipped and the candidate is priced at
the configured gas limit.

The fork is torn down before simulate() returns, on every path.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from arbexec.config import GAS_LIMIT_FLASH_LOAN, MIN_PROFIT_USD, MIN_PROFIT_WEI, SIMULATION_TIMEOUT_MS
from arbexec.errors import ForkStartError, SimulationTimeoutError, UnsignedTransactionError
from arbexec.filters import GuardResult
from arbexec.filters.gas_check import gas_budget_guard
from arbexec.filters.profit_check import profit_guard
from arbexec.fork import ForkSimulator
from arbexec.profit_calculator import (
    GasPriceConfig,
    ProfitCalculator,
    ProfitThreshold,
    format_profit_breakdown,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class ArbitrageParams:
    """Decoded description of the flash-loan candidate"""
    asset: str
    amount: int                     # Flash loan size (wei of asset)
    router1: str = ""
    router2: str = ""
    path1: Tuple[str, ...] = ()
    path2: Tuple[str, ...] = ()
    min_out1: int = 0
    min_out2: int = 0
    deadline: int = 0


class SimulationFailure(Enum):
    GAS_PRICE_TOO_HIGH = "gas_price_too_high"
    REVERTED = "reverted"
    TIMEOUT = "timeout"
    FORK_ERROR = "fork_error"
    ERROR = "error"


@dataclass(frozen=True)
class SimulationResult:
    """
    success=False -> every profit field is 0 and error/revert_reason is set
    success=True  -> net_profit == gross_profit - (gas_cost + protocol_fee), may be < 0
    """
    success: bool
    gas_used: int = 0
    base_fee: int = 0
    priority_fee: int = 0
    gas_price: int = 0
    gas_cost: int = 0
    protocol_fee: int = 0
    total_fees: int = 0
    gross_profit: int = 0
    net_profit: int = 0
    revert_reason: str = ""
    error: str = ""
    failure: Optional[SimulationFailure] = None
    receipt: Optional[Any] = None
    block_number: Optional[int] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def reason(self) -> str:
        return self.revert_reason or self.error

    @classmethod
    def failed(
        cls,
        failure: SimulationFailure,
        gas: GasPriceConfig,
        error: str = "",
        revert_reason: str = "",
        receipt=None,
    ) -> "SimulationResult":
        return cls(
            success=False,
            gas_used=int(receipt.get("gasUsed", 0)) if receipt else 0,
            base_fee=gas.base_fee,
            priority_fee=gas.priority_fee,
            gas_price=gas.gas_price,
            revert_reason=revert_reason,
            error=error,
            failure=failure,
            receipt=receipt,
            block_number=receipt.get("blockNumber") if receipt else None,
        )


# =============================================================================
# GROSS PROFIT SOURCES
# =============================================================================

class ProfitSource:
    """Where gross profit of a successful replay comes from"""

    async def gross_profit(self, params: ArbitrageParams, receipt) -> int:
        raise NotImplementedError


class MinimumOutputProfitSource(ProfitSource):
    """
    Lower bound: second-leg minimum output minus the borrowed amount
    The contract reverts below min_out2, so a mined receipt guarantees at least this.
    """

    async def gross_profit(self, params: ArbitrageParams, receipt) -> int:
        return params.min_out2 - params.amount


class FixedProfitSource(ProfitSource):
    def __init__(self, value: int):
        self.value = value

    async def gross_profit(self, params: ArbitrageParams, receipt) -> int:
        return self.value


# =============================================================================
# SIMULATION RUNNER
# =============================================================================

class SimulationRunner:
    """
    Owns one fork per simulate() call

    Business outcomes (over budget, revert) come back as results; only
    misuse (unsigned transaction) raises.
    """

    def __init__(
        self,
        fork_url: str,
        profit_calculator: Optional[ProfitCalculator] = None,
        profit_source: Optional[ProfitSource] = None,
        threshold: Optional[ProfitThreshold] = None,
        timeout: float = SIMULATION_TIMEOUT_MS / 1000,
        fork_factory: Optional[Callable[[], ForkSimulator]] = None,
        fork_enabled: bool = True,
    ):
        self.fork_url = fork_url
        self.calculator = profit_calculator or ProfitCalculator()
        self.profit_source = profit_source or MinimumOutputProfitSource()
        self.timeout = timeout
        self._threshold = threshold or ProfitThreshold(MIN_PROFIT_WEI, MIN_PROFIT_USD)
        self._fork_factory = fork_factory or (lambda: ForkSimulator(fork_url, timeout=timeout))
        self.fork_enabled = fork_enabled

    # -------------------------------------------------------------------------
    # Threshold / fee passthrough
    # -------------------------------------------------------------------------

    def get_profit_threshold(self) -> ProfitThreshold:
        return self._threshold

    def set_profit_threshold(self, threshold: ProfitThreshold) -> None:
        self._threshold = threshold
        logger.info(f"Min profit threshold set to {threshold.min_profit_wei / 1e18:.6f} ETH")

    def get_fee_bps(self) -> int:
        return self.calculator.fee_bps

    def set_fee_bps(self, fee_bps: int) -> None:
        self.calculator.set_fee_bps(fee_bps)
        logger.info(f"Protocol fee set to {fee_bps} bps")

    def evaluate(self, result: SimulationResult, threshold: Optional[ProfitThreshold] = None) -> GuardResult:
        return profit_guard(result=result, threshold=threshold or self._threshold)

    # -------------------------------------------------------------------------
    # Simulation
    # -------------------------------------------------------------------------

    async def simulate(
        self,
        signed_transaction,
        params: ArbitrageParams,
        gas: GasPriceConfig,
        sender: Optional[str] = None,
        block_number: Optional[int] = None,
    ) -> SimulationResult:
        gas_check = gas_budget_guard(gas)
        if not gas_check.ok:
            logger.warning(f"Skipping simulation: {gas_check.reason}")
            return SimulationResult.failed(SimulationFailure.GAS_PRICE_TOO_HIGH, gas, error=gas_check.reason)

        if not self.fork_enabled:
            return await self._estimate(params, gas)

        fork = self._fork_factory()
        started = time.perf_counter()

        try:
            await fork.start(block_number)
            receipt = await fork.execute_transaction(signed_transaction, sender)

            if receipt.get("status") != 1:
                logger.warning(f"Simulation reverted (gas used: {receipt.get('gasUsed', 0)})")
                return SimulationResult.failed(
                    SimulationFailure.REVERTED, gas,
                    revert_reason="Transaction reverted on fork",
                    receipt=receipt,
                )

            gas_used = int(receipt.get("gasUsed", 0))
            gross = await self.profit_source.gross_profit(params, receipt)
            breakdown = self.calculator.compute_profit(gross, gas_used, gas, params.amount)

            logger.info(
                f"Simulation OK in {(time.perf_counter() - started) * 1000:.0f}ms: "
                f"{format_profit_breakdown(breakdown)}"
            )

            return SimulationResult(
                success=True,
                gas_used=gas_used,
                base_fee=gas.base_fee,
                priority_fee=gas.priority_fee,
                gas_price=breakdown.gas_price,
                gas_cost=breakdown.gas_cost,
                protocol_fee=breakdown.protocol_fee,
                total_fees=breakdown.total_fees,
                gross_profit=breakdown.gross_profit,
                net_profit=breakdown.net_profit,
                receipt=receipt,
                block_number=receipt.get("blockNumber"),
            )

        except UnsignedTransactionError:
            raise
        except SimulationTimeoutError as e:
            logger.error(f"Simulation timeout: {e}")
            return SimulationResult.failed(SimulationFailure.TIMEOUT, gas, error=str(e))
        except ForkStartError as e:
            logger.error(f"Fork failed to start: {e}")
            return SimulationResult.failed(SimulationFailure.FORK_ERROR, gas, error=str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Simulation error")
            return SimulationResult.failed(SimulationFailure.ERROR, gas, error=str(e) or type(e).__name__)
        finally:
            await fork.stop()

    async def _estimate(self, params: ArbitrageParams, gas: GasPriceConfig) -> SimulationResult:
        """Fork disabled: price at the configured gas limit, no replay"""
        gas_used = gas.gas_limit or GAS_LIMIT_FLASH_LOAN
        gross = await self.profit_source.gross_profit(params, None)
        breakdown = self.calculator.compute_profit(gross, gas_used, gas, params.amount)
        logger.info(f"Fork simulation disabled, estimate at {gas_used} gas: {format_profit_breakdown(breakdown)}")

        return SimulationResult(
            success=True,
            gas_used=gas_used,
            base_fee=gas.base_fee,
            priority_fee=gas.priority_fee,
            gas_price=breakdown.gas_price,
            gas_cost=breakdown.gas_cost,
            protocol_fee=breakdown.protocol_fee,
            total_fees=breakdown.total_fees,
            gross_profit=breakdown.gross_profit,
            net_profit=breakdown.net_profit,
        )
