# arbexec/main.py
"""
Flash-Loan Arbitrage Execution Pipeline
candidate -> fork simulation -> profit check -> private bundle -> inclusion
(or public broadcast fallback)

THIS IS THE ENTRY POINT - Run with: python -m arbexec.main

MODES:
1. run:    Start the bot; runs until SIGINT/SIGTERM or the kill switch trips
2. health: One health pass over every RPC endpoint, then exit
"""

import argparse
import asyncio
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from eth_account import Account
from hexbytes import HexBytes

from arbexec.config import (
    CONFIRMATION_TIMEOUT_SECONDS,
    GAS_LIMIT_FLASH_LOAN,
    GWEI,
    MAX_CONSECUTIVE_FAILURES,
    MAX_GAS_PRICE_GWEI,
    MIN_PROFIT_USD,
    MIN_PROFIT_WEI,
    MONITOR_INTERVAL_MS,
    PRIORITY_FEE_GWEI,
    BotConfig,
    load_config,
    validate_config,
)
from arbexec.errors import ConfigurationError, PipelineError, RelayError
from arbexec.flash_loan import FlashLoanFeeOracle
from arbexec.opportunity import Candidate, NullOpportunitySource, OpportunitySource
from arbexec.profit_calculator import GasPriceConfig, ProfitCalculator, ProfitThreshold
from arbexec.providers import EndpointSet, parse_endpoint
from arbexec.relay import PrivateRelayClient
from arbexec.rpc_client import ResilientRpcClient
from arbexec.rpc_health import HealthEvent, HealthMonitor
from arbexec.simulator import SimulationFailure, SimulationResult, SimulationRunner

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(message)s'


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(level: str = "INFO", log_to_file: bool = False, log_file_path: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_to_file and log_file_path:
        path = Path(log_file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        dated = path.with_name(f"{path.stem}_{datetime.now().strftime('%Y%m%d')}{path.suffix}")
        handlers.append(logging.FileHandler(dated))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


# =============================================================================
# ENUMS & DATA CLASSES
# =============================================================================

class ExecutionStatus(Enum):
    INCLUDED = "included"                      # Bundle landed via the private relay
    FALLBACK_BROADCAST = "fallback_broadcast"  # Sent through the public mempool
    UNPROFITABLE = "unprofitable"              # Gas budget or profit threshold
    SIMULATION_FAILED = "simulation_failed"    # Revert, timeout, fork error
    RELAY_FAILED = "relay_failed"              # Relay rejected / broadcast failed


@dataclass
class ExecutionResult:
    """Outcome of one execution cycle"""
    status: ExecutionStatus
    candidate_id: str
    reason: str = ""
    tx_hash: Optional[str] = None
    bundle_hash: Optional[str] = None
    block_number: Optional[int] = None
    simulation: Optional[SimulationResult] = None
    details: Dict[str, Any] = field(default_factory=dict)
    execution_time_ms: float = 0

    @property
    def submitted(self) -> bool:
        return self.status in (ExecutionStatus.INCLUDED, ExecutionStatus.FALLBACK_BROADCAST)


# =============================================================================
# STATISTICS TRACKER
# =============================================================================

class StatisticsTracker:
    """Track bot performance statistics"""

    def __init__(self):
        self.start_time = datetime.now()
        self.cycles = 0
        self.counts: Dict[ExecutionStatus, int] = {status: 0 for status in ExecutionStatus}
        self.total_net_profit_wei = 0
        self.total_gas_cost_wei = 0
        self.best_net_profit_wei = 0

    def record(self, result: ExecutionResult) -> None:
        self.cycles += 1
        self.counts[result.status] += 1

        sim = result.simulation
        if result.submitted and sim is not None and sim.success:
            self.total_net_profit_wei += sim.net_profit
            self.total_gas_cost_wei += sim.gas_cost
            self.best_net_profit_wei = max(self.best_net_profit_wei, sim.net_profit)

    def get_summary(self) -> str:
        runtime = datetime.now() - self.start_time
        submitted = self.counts[ExecutionStatus.INCLUDED] + self.counts[ExecutionStatus.FALLBACK_BROADCAST]
        inclusion_rate = (self.counts[ExecutionStatus.INCLUDED] / submitted * 100) if submitted > 0 else 0

        return (
            f"\n{'='*60}\n"
            f"BOT STATISTICS\n"
            f"{'='*60}\n"
            f"Runtime: {runtime}\n"
            f"Cycles: {self.cycles}\n"
            f"Included (private): {self.counts[ExecutionStatus.INCLUDED]} ({inclusion_rate:.1f}% of submitted)\n"
            f"Fallback broadcasts: {self.counts[ExecutionStatus.FALLBACK_BROADCAST]}\n"
            f"Unprofitable: {self.counts[ExecutionStatus.UNPROFITABLE]}\n"
            f"Simulation failed: {self.counts[ExecutionStatus.SIMULATION_FAILED]}\n"
            f"Relay failed: {self.counts[ExecutionStatus.RELAY_FAILED]}\n"
            f"Expected Net Profit: {self.total_net_profit_wei / 1e18:.6f} ETH\n"
            f"Gas Spent (simulated): {self.total_gas_cost_wei / 1e18:.6f} ETH\n"
            f"Best Opportunity: {self.best_net_profit_wei / 1e18:.6f} ETH\n"
            f"{'='*60}\n"
        )


# =============================================================================
# MAIN BOT CLASS
# =============================================================================

class ArbitrageBot:
    """
    Orchestrator for the execution pipeline

    Cycle:
    1. Gas budget (before any fork is spawned)
    2. Fork simulation
    3. Profit threshold (one snapshot per cycle)
    4. Relay simulation, bundle for current + 1, bounded inclusion wait
    5. Public broadcast when the bundle expires or the relay errors

    Cycles never overlap. After max_consecutive_failures operational
    failures the periodic activity halts and stays halted until
    reset_failures() is called.
    """

    def __init__(
        self,
        rpc: ResilientRpcClient,
        simulator: SimulationRunner,
        relay: Optional[PrivateRelayClient] = None,
        health_monitor: Optional[HealthMonitor] = None,
        opportunity_source: Optional[OpportunitySource] = None,
        fee_oracle: Optional[FlashLoanFeeOracle] = None,
        threshold: Optional[ProfitThreshold] = None,
        max_gas_price: int = MAX_GAS_PRICE_GWEI * GWEI,
        priority_fee: int = PRIORITY_FEE_GWEI * GWEI,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
        monitor_interval: float = MONITOR_INTERVAL_MS / 1000,
        simulate_bundle: bool = True,
        public_fallback: bool = True,
        confirmation_timeout: float = CONFIRMATION_TIMEOUT_SECONDS,
        contract_address: Optional[str] = None,
    ):
        if max_consecutive_failures < 1:
            raise ConfigurationError("max_consecutive_failures must be at least 1")

        self.rpc = rpc
        self.simulator = simulator
        self.relay = relay
        self.health_monitor = health_monitor
        self.opportunity_source = opportunity_source or NullOpportunitySource()
        self.fee_oracle = fee_oracle

        self.max_gas_price = max_gas_price
        self.priority_fee = priority_fee
        self.max_consecutive_failures = max_consecutive_failures
        self.monitor_interval = monitor_interval
        self.simulate_bundle = simulate_bundle
        self.public_fallback = public_fallback
        self.confirmation_timeout = confirmation_timeout
        self.contract_address = contract_address

        self._threshold = threshold or ProfitThreshold(MIN_PROFIT_WEI, MIN_PROFIT_USD)
        self.consecutive_failures = 0
        self.halted = False
        self.running = False
        self.stats = StatisticsTracker()

        self._cycle_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._stage = "simulation"
        self._stopped = False

        if self.health_monitor is not None:
            self.health_monitor.on(HealthEvent.ALERT, self._on_health_alert)

    # -------------------------------------------------------------------------
    # Construction from configuration
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(cls, config: BotConfig, opportunity_source: Optional[OpportunitySource] = None) -> "ArbitrageBot":
        endpoints = EndpointSet(parse_endpoint(entry) for entry in config.rpc_endpoints)
        rpc = ResilientRpcClient(endpoints, quorum=config.rpc_quorum)
        health = HealthMonitor(endpoints, check_interval=config.health_check_interval_ms / 1000)

        calculator = ProfitCalculator(config.flash_loan_fee_bps)
        simulator = SimulationRunner(
            config.fork_rpc_url,
            profit_calculator=calculator,
            timeout=config.simulation_timeout_ms / 1000,
            fork_enabled=config.simulation_enabled,
        )

        relay = None
        if config.flashbots_enabled:
            relay = PrivateRelayClient(
                rpc,
                config.flashbots_auth_key,
                chain_id=config.chain_id,
                max_blocks_wait=config.flashbots_max_blocks_wait,
                verify_inclusion=config.flashbots_verify_inclusion,
            )

        return cls(
            rpc=rpc,
            simulator=simulator,
            relay=relay,
            health_monitor=health,
            opportunity_source=opportunity_source,
            fee_oracle=FlashLoanFeeOracle(rpc, chain_id=config.chain_id),
            threshold=ProfitThreshold(config.min_profit_wei, config.min_profit_usd),
            max_gas_price=config.max_gas_price_wei,
            priority_fee=config.priority_fee_wei,
            max_consecutive_failures=config.max_consecutive_failures,
            monitor_interval=config.monitor_interval_ms / 1000,
            simulate_bundle=config.flashbots_simulate_first,
            public_fallback=config.public_fallback_enabled,
            contract_address=config.flash_arb_contract,
        )

    # -------------------------------------------------------------------------
    # Threshold
    # -------------------------------------------------------------------------

    def get_profit_threshold(self) -> ProfitThreshold:
        return self._threshold

    def set_profit_threshold(self, threshold: ProfitThreshold) -> None:
        """Takes effect from the next cycle; a running cycle keeps its snapshot"""
        self._threshold = threshold
        logger.info(f"Profit threshold: {threshold.min_profit_wei / 1e18:.6f} ETH (${threshold.min_profit_usd:.2f})")

    # -------------------------------------------------------------------------
    # Execution cycle
    # -------------------------------------------------------------------------

    async def execute(self, candidate: Candidate) -> ExecutionResult:
        async with self._cycle_lock:
            self._cycle_task = asyncio.current_task()
            threshold = self._threshold
            started = time.perf_counter()
            self._stage = "simulation"

            try:
                result = await self._run_cycle(candidate, threshold)
            except asyncio.CancelledError:
                logger.warning(f"[{candidate.id}] Cycle cancelled")
                raise
            except Exception as e:
                logger.exception(f"[{candidate.id}] Unhandled error during cycle")
                status = (
                    ExecutionStatus.SIMULATION_FAILED if self._stage == "simulation"
                    else ExecutionStatus.RELAY_FAILED
                )
                result = ExecutionResult(status, candidate.id, reason=f"Unhandled error: {e}")
                await self._record_failure(result.reason)
            finally:
                self._cycle_task = None

            result.execution_time_ms = (time.perf_counter() - started) * 1000
            self.stats.record(result)
            logger.info(
                f"[{candidate.id}] {result.status.value}: {result.reason or 'ok'} "
                f"({result.execution_time_ms:.0f}ms)",
                extra={"event": "execution.result", "status": result.status.value, "candidate": candidate.id},
            )
            return result

    async def _current_gas(self) -> GasPriceConfig:
        fee = await self.rpc.get_fee_data()
        return GasPriceConfig(
            max_gas_price=self.max_gas_price,
            base_fee=fee.base_fee,
            priority_fee=self.priority_fee,
            gas_limit=GAS_LIMIT_FLASH_LOAN,
        )

    async def _run_cycle(self, candidate: Candidate, threshold: ProfitThreshold) -> ExecutionResult:
        gas = candidate.gas or await self._current_gas()

        # 1-2. Gas budget + fork simulation
        sim = await self.simulator.simulate(candidate.signed_transaction, candidate.params, gas, candidate.sender)

        if not sim.success:
            if sim.failure is SimulationFailure.GAS_PRICE_TOO_HIGH:
                return ExecutionResult(
                    ExecutionStatus.UNPROFITABLE, candidate.id, reason=sim.error, simulation=sim,
                    details={"gas_price": sim.gas_price, "max_gas_price": gas.max_gas_price},
                )

            result = ExecutionResult(
                ExecutionStatus.SIMULATION_FAILED, candidate.id, reason=sim.reason, simulation=sim,
                details={"failure": sim.failure.value if sim.failure else None, "gas_used": sim.gas_used},
            )
            # Reverts do not count toward the kill switch
            if sim.failure is not SimulationFailure.REVERTED:
                await self._record_failure(result.reason)
            return result

        # 3. Profit threshold
        verdict = self.simulator.evaluate(sim, threshold)
        if not verdict.ok:
            return ExecutionResult(
                ExecutionStatus.UNPROFITABLE, candidate.id, reason=verdict.reason,
                simulation=sim, details=verdict.details,
            )

        logger.info(f"[{candidate.id}] Profitable: net {sim.net_profit / 1e18:.6f} ETH, submitting")

        # 4-5. Submission
        self._stage = "submission"
        result = await self._submit(candidate, sim)
        if result.submitted and result.reason == "":
            self.consecutive_failures = 0
        return result

    async def _submit(self, candidate: Candidate, sim: SimulationResult) -> ExecutionResult:
        signed_tx = candidate.signed_transaction
        relay_error = ""

        if self.relay is not None:
            current_block = await self.rpc.get_block_number()
            target_block = current_block + 1

            if self.simulate_bundle:
                bundle_sim = await self.relay.simulate([signed_tx], target_block, state_block=current_block)
                if not bundle_sim.success:
                    result = ExecutionResult(
                        ExecutionStatus.RELAY_FAILED, candidate.id,
                        reason=f"Relay simulation failed: {bundle_sim.error}", simulation=sim,
                    )
                    await self._record_failure(result.reason)
                    return result

            try:
                bundle_hash = await self.relay.send_bundle([signed_tx], target_block)
            except RelayError as e:
                relay_error = str(e)
                logger.error(f"[{candidate.id}] Bundle submission failed: {e}")
                await self._record_failure(f"Relay error: {e}")
            else:
                inclusion = await self.relay.wait_for_inclusion(bundle_hash)
                if inclusion.included:
                    return ExecutionResult(
                        ExecutionStatus.INCLUDED, candidate.id,
                        bundle_hash=bundle_hash,
                        tx_hash=inclusion.transaction_hashes[0] if inclusion.transaction_hashes else None,
                        block_number=inclusion.block_number,
                        simulation=sim,
                        details={"blocks_waited": inclusion.blocks_waited},
                    )
                relay_error = f"Bundle {inclusion.state.value} after {inclusion.blocks_waited} blocks"

            if not self.public_fallback:
                return ExecutionResult(
                    ExecutionStatus.RELAY_FAILED, candidate.id, reason=relay_error, simulation=sim,
                )

        return await self._broadcast(candidate, sim, relay_error)

    async def _broadcast(self, candidate: Candidate, sim: SimulationResult, relay_error: str) -> ExecutionResult:
        """Public mempool fallback through the resilient client"""
        if relay_error:
            logger.warning(f"[{candidate.id}] Falling back to public broadcast ({relay_error})")

        try:
            tx_hash = HexBytes(await self.rpc.send_raw_transaction(
                getattr(candidate.signed_transaction, "raw_transaction", candidate.signed_transaction)
            )).to_0x_hex()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result = ExecutionResult(
                ExecutionStatus.RELAY_FAILED, candidate.id,
                reason=f"Public broadcast failed: {e}", simulation=sim,
            )
            await self._record_failure(result.reason)
            return result

        details: Dict[str, Any] = {"relay_error": relay_error} if relay_error else {}
        try:
            receipt = await self.rpc.wait_for_transaction(tx_hash, timeout=self.confirmation_timeout)
        except TimeoutError:
            return ExecutionResult(
                ExecutionStatus.FALLBACK_BROADCAST, candidate.id,
                reason=f"Not confirmed within {self.confirmation_timeout:.0f}s",
                tx_hash=tx_hash, simulation=sim, details=details,
            )

        if receipt.get("status") != 1:
            result = ExecutionResult(
                ExecutionStatus.FALLBACK_BROADCAST, candidate.id,
                reason="Reverted on chain", tx_hash=tx_hash,
                block_number=receipt.get("blockNumber"), simulation=sim, details=details,
            )
            await self._record_failure(result.reason)
            return result

        return ExecutionResult(
            ExecutionStatus.FALLBACK_BROADCAST, candidate.id,
            tx_hash=tx_hash, block_number=receipt.get("blockNumber"),
            simulation=sim, details=details,
        )

    # -------------------------------------------------------------------------
    # Kill switch
    # -------------------------------------------------------------------------

    async def _record_failure(self, reason: str) -> None:
        self.consecutive_failures += 1
        logger.warning(
            f"Consecutive failures: {self.consecutive_failures}/{self.max_consecutive_failures} ({reason})"
        )
        if self.consecutive_failures >= self.max_consecutive_failures and not self.halted:
            await self._halt()

    async def _halt(self) -> None:
        self.halted = True
        self.running = False
        logger.critical(
            f"Too many consecutive failures ({self.consecutive_failures}). Halting; manual restart required",
            extra={"event": "bot.halted", "consecutive_failures": self.consecutive_failures},
        )

        if self.health_monitor is not None:
            await self.health_monitor.stop()

        task = self._loop_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def reset_failures(self) -> None:
        """Manual intervention after the kill switch"""
        self.consecutive_failures = 0
        self.halted = False
        logger.info("Failure counter reset")

    def _on_health_alert(self, failure) -> None:
        logger.critical(f"RPC endpoint {failure.endpoint_name} failing ({failure.failure_count} in a row)")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._stopped:
            raise PipelineError("Bot has been stopped")
        if self.halted:
            raise PipelineError("Kill switch tripped; call reset_failures() first")
        if self.running:
            logger.warning("Bot already running")
            return

        logger.info("=" * 60)
        logger.info("ARBITRAGE EXECUTION PIPELINE STARTING")
        logger.info(f"Relay: {self.relay.relay_url if self.relay else 'disabled (public mempool only)'}")
        logger.info(f"Min profit: {self._threshold.min_profit_wei / 1e18:.6f} ETH")
        logger.info(f"Max gas price: {self.max_gas_price / GWEI:.0f} gwei")
        logger.info("=" * 60)

        if self.contract_address:
            await self._check_contract()

        if self.fee_oracle is not None:
            try:
                await self.fee_oracle.refresh(self.simulator.calculator)
            except (PipelineError, ValueError) as e:
                logger.warning(f"Could not read flash loan premium, keeping {self.simulator.get_fee_bps()} bps: {e}")

        self.running = True
        if self.health_monitor is not None:
            self.health_monitor.start()
        self._loop_task = asyncio.create_task(self._monitor_loop(), name="opportunity-loop")

    async def _check_contract(self) -> None:
        """The executor contract must be deployed on the connected chain"""
        code = await self.rpc.get_code(self.contract_address)
        if not code:
            raise ConfigurationError(f"No contract code at {self.contract_address}")
        logger.info(f"Executor contract: {self.contract_address} ({len(code)} bytes)")

    async def _monitor_loop(self) -> None:
        while self.running:
            try:
                candidate = await self.opportunity_source.next_candidate()
                if candidate is not None:
                    await self.execute(candidate)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Loop error: {e}")
                await self._record_failure(f"Loop error: {e}")

            if not self.running:
                break
            await asyncio.sleep(self.monitor_interval)

    async def stop(self) -> None:
        """Cancel the loop and any in-flight cycle, then release every resource"""
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        logger.info("Shutting down...")

        current = asyncio.current_task()
        for task in (self._loop_task, self._cycle_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Task ended with error during shutdown: {e}")
        self._loop_task = None

        if self.health_monitor is not None:
            await self.health_monitor.destroy()
        if self.relay is not None:
            await self.relay.close()
        await self.rpc.close()

        logger.info(self.stats.get_summary())
        logger.info("Bot stopped.")

    def get_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "running": self.running,
            "halted": self.halted,
            "consecutive_failures": self.consecutive_failures,
            "max_consecutive_failures": self.max_consecutive_failures,
            "min_profit_wei": self._threshold.min_profit_wei,
            "flash_loan_fee_bps": self.simulator.get_fee_bps(),
            "relay": self.relay.relay_url if self.relay else None,
            "cycles": self.stats.cycles,
        }
        if self.health_monitor is not None:
            status["endpoints"] = {
                name: state.status.value for name, state in self.health_monitor.snapshot().items()
            }
        return status


# =============================================================================
# ENTRY POINT
# =============================================================================

async def run_health_check(config: BotConfig) -> bool:
    """One pass over every endpoint; True when all are healthy"""
    endpoints = EndpointSet(parse_endpoint(entry) for entry in config.rpc_endpoints)
    monitor = HealthMonitor(endpoints)
    try:
        results = await monitor.check_all()
    finally:
        await monitor.destroy()

    for r in results:
        if r.is_healthy:
            print(f"  {r.endpoint_name}: OK (block {r.block_number}, {r.response_time_ms:.0f}ms)")
        else:
            print(f"  {r.endpoint_name}: FAILED - {r.error}")
    return all(r.is_healthy for r in results)


async def run_bot(config: BotConfig) -> None:
    validate_config(config)
    logger.info(f"Executor address: {Account.from_key(config.private_key).address}")

    bot = ArbitrageBot.from_config(config)

    chain_id = await bot.rpc.get_chain_id()
    if chain_id != config.chain_id:
        await bot.stop()
        raise ConfigurationError(f"RPC reports chain ID {chain_id}, expected {config.chain_id}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await bot.start()
    try:
        while not stop_event.is_set() and not bot.halted:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
    finally:
        if stop_event.is_set():
            logger.info("Shutdown signal received...")
        await bot.stop()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Flash-loan arbitrage execution pipeline")
    parser.add_argument(
        "--mode",
        choices=["run", "health"],
        default="run",
        help="run (start the bot), health (check RPC endpoints once)"
    )
    parser.add_argument(
        "--env",
        type=Path,
        default=None,
        help="Path to a .env file (default: config/.env)"
    )

    args = parser.parse_args()

    config = load_config(args.env)
    setup_logging(config.log_level, config.log_to_file, config.log_file_path)

    if args.mode == "health":
        healthy = asyncio.run(run_health_check(config))
        sys.exit(0 if healthy else 1)

    try:
        asyncio.run(run_bot(config))
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(2)


if __name__ == "__main__":
    main()
