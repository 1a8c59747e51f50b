# arbexec/flash_loan.py
"""
Aave V3 Flash Loan Fee
The premium is a governance parameter; read it from the pool instead of
trusting the configured default forever.
"""

import logging
from typing import Optional

from eth_abi import decode
from web3 import Web3

from arbexec.errors import ConfigurationError
from arbexec.profit_calculator import ProfitCalculator

logger = logging.getLogger(__name__)

# =============================================================================
# AAVE V3 POOL
# =============================================================================

AAVE_V3_POOLS = {
    1: Web3.to_checksum_address("0x87870Bca3F3fD6335C3F4ce8392D69350B4fA4E2"),
    11155111: Web3.to_checksum_address("0x6Ae43d3271ff6888e7Fc43Fd7321a503ff738951"),
}

# uint128 FLASHLOAN_PREMIUM_TOTAL() -> bps
PREMIUM_TOTAL_SELECTOR = Web3.to_hex(Web3.keccak(text="FLASHLOAN_PREMIUM_TOTAL()")[:4])


class FlashLoanFeeOracle:
    """Reads the pool's total flash loan premium through the RPC client"""

    def __init__(self, rpc, chain_id: int = 1, pool_address: Optional[str] = None):
        if pool_address is None:
            pool_address = AAVE_V3_POOLS.get(chain_id)
            if pool_address is None:
                raise ConfigurationError(f"No Aave V3 pool known for chain ID {chain_id}")

        self.rpc = rpc
        self.pool_address = Web3.to_checksum_address(pool_address)

    async def fetch_fee_bps(self) -> int:
        data = await self.rpc.call({"to": self.pool_address, "data": PREMIUM_TOTAL_SELECTOR})
        (premium,) = decode(["uint128"], bytes(data))
        return int(premium)

    async def refresh(self, calculator: ProfitCalculator) -> int:
        """Push the on-chain premium into the calculator if it moved"""
        fee_bps = await self.fetch_fee_bps()
        if fee_bps != calculator.fee_bps:
            logger.info(f"Flash loan premium changed: {calculator.fee_bps} -> {fee_bps} bps")
            calculator.set_fee_bps(fee_bps)
        return fee_bps
