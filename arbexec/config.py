# arbexec/config.py
"""
Execution Pipeline Configuration
Defaults as module constants; one BotConfig built and validated at startup
and handed to each component constructor.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from arbexec.errors import ConfigurationError

BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / "config" / ".env"

GWEI = 10**9
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# -----------------------------
# Chain Configuration
# -----------------------------
DEFAULT_NETWORK = "mainnet"
DEFAULT_CHAIN_ID = 1

NETWORK_CHAIN_IDS = {
    "mainnet": 1,
    "sepolia": 11155111,
}

# -----------------------------
# RPC Configuration
# -----------------------------
DEFAULT_STALL_TIMEOUT_MS = 5000
DEFAULT_QUORUM = 1

# -----------------------------
# Health Monitoring
# -----------------------------
HEALTH_CHECK_INTERVAL_SECONDS = 30.0
HEALTH_CHECK_TIMEOUT_SECONDS = 5.0
BACKOFF_INITIAL_MS = 10_000     # 10s
BACKOFF_MULTIPLIER = 3          # 10s → 30s → 90s → 270s → 300s
BACKOFF_MAX_MS = 300_000        # 5 min cap
ALERT_FAILURE_THRESHOLD = 3     # Page someone at exactly this many failures

# -----------------------------
# Private Relay (Flashbots)
# -----------------------------
RELAY_URLS = {
    1: "https://relay.flashbots.net",
    11155111: "https://relay-sepolia.flashbots.net",
}
RELAY_MAX_BLOCKS_WAIT = 25
RELAY_REQUEST_TIMEOUT_SECONDS = 10.0
RELAY_BLOCK_POLL_SECONDS = 1.0
RELAY_BLOCK_TIMEOUT_SECONDS = 60.0   # Max wait for any single next block

# -----------------------------
# Fork Simulation (Anvil)
# -----------------------------
ANVIL_BINARY = "anvil"
FORK_START_TIMEOUT_SECONDS = 5.0
FORK_STOP_GRACE_SECONDS = 2.0
SIMULATION_TIMEOUT_MS = 10_000
IMPERSONATED_BALANCE_WEI = 100 * 10**18   # 100 ETH

# -----------------------------
# Profitability
# -----------------------------
AAVE_FLASH_LOAN_FEE_BPS = 5       # 0.05% (Aave V3)
MAX_FEE_BPS = 10_000
MIN_PROFIT_WEI = 10**16           # 0.01 ETH
MIN_PROFIT_USD = 30.0             # Advisory, logging only

# -----------------------------
# Gas Configuration
# -----------------------------
MAX_GAS_PRICE_GWEI = 100
PRIORITY_FEE_GWEI = 2
GAS_LIMIT_FLASH_LOAN = 650_000

# -----------------------------
# Orchestrator
# -----------------------------
MONITOR_INTERVAL_MS = 12_000
MAX_CONSECUTIVE_FAILURES = 5
CONFIRMATION_TIMEOUT_SECONDS = 120.0

# -----------------------------
# Logging
# -----------------------------
LOG_LEVEL = "INFO"
LOG_TO_FILE = False
LOG_FILE_PATH = str(BASE_DIR / "logs" / "arbexec.log")


@dataclass
class BotConfig:
    """Everything the pipeline needs; built once, validated once"""
    # Network
    network: str = DEFAULT_NETWORK
    chain_id: int = DEFAULT_CHAIN_ID

    # RPC providers: "name|url|priority|stall_ms"
    rpc_endpoints: List[str] = field(default_factory=list)
    rpc_quorum: int = DEFAULT_QUORUM

    # Flashbots
    flashbots_enabled: bool = False
    flashbots_auth_key: str = ""
    flashbots_max_blocks_wait: int = RELAY_MAX_BLOCKS_WAIT
    flashbots_simulate_first: bool = True
    flashbots_verify_inclusion: bool = False
    public_fallback_enabled: bool = True

    # Simulation
    fork_rpc_url: str = ""
    simulation_enabled: bool = True
    simulation_timeout_ms: int = SIMULATION_TIMEOUT_MS

    # Transaction signer
    private_key: str = ""

    # Contract
    flash_arb_contract: str = ""

    # Profitability
    min_profit_wei: int = MIN_PROFIT_WEI
    min_profit_usd: float = MIN_PROFIT_USD
    flash_loan_fee_bps: int = AAVE_FLASH_LOAN_FEE_BPS

    # Gas
    max_gas_price_gwei: int = MAX_GAS_PRICE_GWEI
    priority_fee_gwei: int = PRIORITY_FEE_GWEI

    # Monitoring
    monitor_interval_ms: int = MONITOR_INTERVAL_MS
    health_check_interval_ms: int = int(HEALTH_CHECK_INTERVAL_SECONDS * 1000)

    # Logging
    log_level: str = LOG_LEVEL
    log_to_file: bool = LOG_TO_FILE
    log_file_path: str = LOG_FILE_PATH

    # Kill switch
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES

    @property
    def max_gas_price_wei(self) -> int:
        return self.max_gas_price_gwei * GWEI

    @property
    def priority_fee_wei(self) -> int:
        return self.priority_fee_gwei * GWEI


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def load_config(env_path: Optional[Path] = None) -> BotConfig:
    """
    Load configuration from .env + environment
    Missing .env is fine (plain environment variables still apply).
    """
    env_file = Path(env_path) if env_path else ENV_PATH
    if env_file.exists():
        load_dotenv(env_file)

    network = os.getenv("NETWORK", DEFAULT_NETWORK)
    endpoints = [e for e in os.getenv("RPC_ENDPOINTS", "").split(",") if e.strip()]

    return BotConfig(
        network=network,
        chain_id=_env_int("CHAIN_ID", NETWORK_CHAIN_IDS.get(network, DEFAULT_CHAIN_ID)),
        rpc_endpoints=endpoints,
        rpc_quorum=_env_int("RPC_QUORUM", DEFAULT_QUORUM),
        flashbots_enabled=_env_bool("FLASHBOTS_ENABLED", False),
        flashbots_auth_key=os.getenv("FLASHBOTS_AUTH_KEY", ""),
        flashbots_max_blocks_wait=_env_int("FLASHBOTS_MAX_BLOCKS_WAIT", RELAY_MAX_BLOCKS_WAIT),
        flashbots_simulate_first=_env_bool("FLASHBOTS_SIMULATE_FIRST", True),
        flashbots_verify_inclusion=_env_bool("FLASHBOTS_VERIFY_INCLUSION", False),
        public_fallback_enabled=_env_bool("PUBLIC_FALLBACK_ENABLED", True),
        fork_rpc_url=os.getenv("FORK_RPC_URL", ""),
        simulation_enabled=_env_bool("SIMULATION_ENABLED", True),
        simulation_timeout_ms=_env_int("SIMULATION_TIMEOUT_MS", SIMULATION_TIMEOUT_MS),
        private_key=os.getenv("PRIVATE_KEY", ""),
        flash_arb_contract=os.getenv("FLASH_ARB_CONTRACT", ""),
        min_profit_wei=_env_int("MIN_PROFIT_WEI", MIN_PROFIT_WEI),
        min_profit_usd=_env_float("MIN_PROFIT_USD", MIN_PROFIT_USD),
        flash_loan_fee_bps=_env_int("FLASH_LOAN_FEE_BPS", AAVE_FLASH_LOAN_FEE_BPS),
        max_gas_price_gwei=_env_int("MAX_GAS_PRICE_GWEI", MAX_GAS_PRICE_GWEI),
        priority_fee_gwei=_env_int("PRIORITY_FEE_GWEI", PRIORITY_FEE_GWEI),
        monitor_interval_ms=_env_int("MONITOR_INTERVAL_MS", MONITOR_INTERVAL_MS),
        health_check_interval_ms=_env_int(
            "HEALTH_CHECK_INTERVAL_MS", int(HEALTH_CHECK_INTERVAL_SECONDS * 1000)
        ),
        log_level=os.getenv("LOG_LEVEL", LOG_LEVEL).upper(),
        log_to_file=_env_bool("LOG_TO_FILE", LOG_TO_FILE),
        log_file_path=os.getenv("LOG_FILE_PATH", LOG_FILE_PATH),
        max_consecutive_failures=_env_int("MAX_CONSECUTIVE_FAILURES", MAX_CONSECUTIVE_FAILURES),
    )


def validate_config(config: BotConfig) -> None:
    """Collect every problem, raise once"""
    errors = []

    if not config.rpc_endpoints:
        errors.append("RPC_ENDPOINTS is required (at least one endpoint)")
    if not config.private_key:
        errors.append("PRIVATE_KEY is required")
    if not config.flash_arb_contract:
        errors.append("FLASH_ARB_CONTRACT is required")

    if config.flashbots_enabled:
        if not config.flashbots_auth_key:
            errors.append("FLASHBOTS_AUTH_KEY is required when Flashbots is enabled")
        if config.chain_id not in RELAY_URLS:
            errors.append(f"Flashbots not supported on chain ID {config.chain_id}")

    if config.simulation_enabled and not config.fork_rpc_url:
        errors.append("FORK_RPC_URL is required when simulation is enabled")

    if not 0 <= config.flash_loan_fee_bps <= MAX_FEE_BPS:
        errors.append(f"FLASH_LOAN_FEE_BPS must be between 0 and {MAX_FEE_BPS}")
    if config.max_consecutive_failures < 1:
        errors.append("MAX_CONSECUTIVE_FAILURES must be at least 1")
    if config.rpc_quorum < 1:
        errors.append("RPC_QUORUM must be at least 1")
    if config.rpc_endpoints and config.rpc_quorum > len(config.rpc_endpoints):
        errors.append("RPC_QUORUM cannot exceed the number of RPC endpoints")

    if errors:
        raise ConfigurationError("Configuration validation failed:\n" + "\n".join(errors))
