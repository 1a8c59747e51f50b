# arbexec/__init__.py
"""
Flash-Loan Arbitrage Execution Pipeline
Off-chain simulate / evaluate / submit for pre-signed flash-loan transactions

Modules:
- config: Defaults, BotConfig, .env loading
- providers: RPC endpoint registry
- rpc_client: Multi-endpoint RPC client (failover + quorum)
- rpc_health: Endpoint health monitor
- fork: Anvil forked-state replica
- simulator: One simulation attempt per candidate
- profit_calculator: Net profit arithmetic
- flash_loan: Aave V3 premium refresh
- relay: Flashbots bundle client
- opportunity: Candidate sources
- main: Orchestrator + entry point
"""

__version__ = "1.0.0"

from arbexec.errors import (
    AllEndpointsFailedError,
    ConfigurationError,
    PipelineError,
    RelayError,
    SimulationTimeoutError,
)
from arbexec.profit_calculator import GasPriceConfig, ProfitCalculator, ProfitThreshold
from arbexec.providers import EndpointConfig, EndpointSet
from arbexec.rpc_client import ResilientRpcClient

__all__ = [
    "AllEndpointsFailedError",
    "ConfigurationError",
    "PipelineError",
    "RelayError",
    "SimulationTimeoutError",
    "GasPriceConfig",
    "ProfitCalculator",
    "ProfitThreshold",
    "EndpointConfig",
    "EndpointSet",
    "ResilientRpcClient",
]
