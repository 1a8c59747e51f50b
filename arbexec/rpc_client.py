# arbexec/rpc_client.py
"""
Resilient RPC Client
One logical chain interface backed by N independent endpoints

- Endpoints tried by descending priority (ties: declaration order)
- Each attempt bounded by the endpoint's stall timeout
- Quorum of matching results (default 1: first success wins)
- One aggregated failure when every endpoint fails; no internal retry
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound, Web3RPCError

from arbexec.errors import AllEndpointsFailedError, ConfigurationError, PipelineError
from arbexec.providers import EndpointConfig, EndpointSet

logger = logging.getLogger(__name__)

Web3Factory = Callable[[EndpointConfig], AsyncWeb3]


def default_web3_factory(config: EndpointConfig) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(config.url))


@dataclass(frozen=True)
class FeeData:
    """EIP-1559 fee snapshot (wei)"""
    base_fee: int
    max_priority_fee: int
    gas_price: int

    @property
    def effective_gas_price(self) -> int:
        return self.base_fee + self.max_priority_fee


class ResilientRpcClient:
    """
    Multi-endpoint RPC client with priority failover and quorum

    The caller owns retry policy: if every endpoint fails the call raises
    AllEndpointsFailedError once.
    """

    def __init__(
        self,
        endpoints: Union[EndpointSet, Iterable[EndpointConfig]],
        quorum: int = 1,
        web3_factory: Optional[Web3Factory] = None,
    ):
        if not isinstance(endpoints, EndpointSet):
            endpoints = EndpointSet(endpoints)

        if quorum < 1 or quorum > len(endpoints):
            raise ConfigurationError(
                f"Quorum {quorum} must be between 1 and the number of endpoints ({len(endpoints)})"
            )

        self.quorum = quorum
        self._endpoints = endpoints
        self._ordered = endpoints.by_priority()

        factory = web3_factory or default_web3_factory
        self._clients: Dict[str, AsyncWeb3] = {c.name: factory(c) for c in endpoints}
        self._closed = False

        logger.info(f"RPC client initialized with {len(endpoints)} endpoints (quorum: {quorum})")
        for config in self._ordered:
            logger.info(
                f"  - {config.name} (priority: {config.priority}, stall: {config.stall_timeout_ms}ms)"
            )

    # -------------------------------------------------------------------------
    # Core failover loop
    # -------------------------------------------------------------------------

    async def _call(self, operation: str, fn: Callable[[AsyncWeb3], Awaitable[Any]]) -> Any:
        if self._closed:
            raise PipelineError("RPC client is closed")

        errors: Dict[str, str] = {}
        tallies: List[list] = []  # [value, agreeing endpoints]

        for config in self._ordered:
            w3 = self._clients[config.name]
            try:
                value = await asyncio.wait_for(fn(w3), timeout=config.stall_timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                errors[config.name] = f"stalled after {config.stall_timeout_ms}ms"
                logger.warning(f"{operation}: {config.name} stalled, failing over")
                continue
            except Exception as e:
                errors[config.name] = str(e) or type(e).__name__
                logger.warning(f"{operation}: {config.name} failed ({errors[config.name]}), failing over")
                continue

            for tally in tallies:
                if tally[0] == value:
                    tally[1] += 1
                    break
            else:
                tally = [value, 1]
                tallies.append(tally)

            if tally[1] >= self.quorum:
                if errors:
                    logger.info(f"{operation}: served by {config.name} after {len(errors)} failure(s)")
                return value

        if tallies:
            errors["quorum"] = (
                f"best agreement {max(t[1] for t in tallies)}/{self.quorum} "
                f"across {len(tallies)} distinct result(s)"
            )

        logger.error(f"{operation}: all endpoints failed")
        raise AllEndpointsFailedError(operation, errors, self.quorum)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_block_number(self) -> int:
        return await self._call("get_block_number", lambda w3: w3.eth.block_number)

    async def get_chain_id(self) -> int:
        """Network identity"""
        return await self._call("get_chain_id", lambda w3: w3.eth.chain_id)

    async def get_fee_data(self) -> FeeData:
        async def fetch(w3: AsyncWeb3) -> FeeData:
            block = await w3.eth.get_block("latest")
            return FeeData(
                base_fee=int(block.get("baseFeePerGas", 0) or 0),
                max_priority_fee=int(await w3.eth.max_priority_fee),
                gas_price=int(await w3.eth.gas_price),
            )

        return await self._call("get_fee_data", fetch)

    async def get_gas_price(self) -> int:
        return await self._call("get_gas_price", lambda w3: w3.eth.gas_price)

    async def get_transaction_receipt(self, tx_hash: Union[str, bytes]) -> Optional[dict]:
        """Receipt, or None while the transaction is not mined"""

        async def fetch(w3: AsyncWeb3):
            try:
                return await w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return await self._call("get_transaction_receipt", fetch)

    async def estimate_gas(self, transaction: dict) -> int:
        return await self._call("estimate_gas", lambda w3: w3.eth.estimate_gas(transaction))

    async def get_code(self, address: str) -> bytes:
        return await self._call("get_code", lambda w3: w3.eth.get_code(Web3.to_checksum_address(address)))

    async def call(self, transaction: dict, block_identifier: Union[str, int] = "latest") -> bytes:
        """Read-only eth_call"""
        return await self._call("call", lambda w3: w3.eth.call(transaction, block_identifier))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def send_raw_transaction(self, signed_transaction: Union[str, bytes]) -> HexBytes:
        """
        Broadcast a signed payload. An endpoint that already holds the
        transaction (e.g. accepted it just before stalling) counts as success.
        """
        raw = HexBytes(signed_transaction)
        tx_hash = HexBytes(Web3.keccak(raw))

        async def broadcast(w3: AsyncWeb3) -> HexBytes:
            try:
                return HexBytes(await w3.eth.send_raw_transaction(raw))
            except (ValueError, Web3RPCError) as e:
                if "already known" in str(e).lower():
                    return tx_hash
                raise

        return await self._call("send_raw_transaction", broadcast)

    async def wait_for_transaction(
        self,
        tx_hash: Union[str, bytes],
        confirmations: int = 1,
        timeout: float = 120.0,
        poll_interval: float = 1.0,
    ) -> dict:
        """Poll until the receipt has `confirmations` blocks on top (inclusive)"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt is not None and receipt.get("blockNumber") is not None:
                if confirmations <= 1:
                    return receipt
                current = await self.get_block_number()
                if current - receipt["blockNumber"] + 1 >= confirmations:
                    return receipt

            if loop.time() + poll_interval > deadline:
                raise TimeoutError(
                    f"Transaction {HexBytes(tx_hash).to_0x_hex()} not confirmed within {timeout:.0f}s"
                )
            await asyncio.sleep(poll_interval)

    # -------------------------------------------------------------------------
    # Introspection / teardown
    # -------------------------------------------------------------------------

    def get_configs(self) -> List[EndpointConfig]:
        """Snapshot copy; mutating it does not affect the client"""
        return self._endpoints.to_list()

    @property
    def endpoints(self) -> EndpointSet:
        return self._endpoints

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for name, w3 in self._clients.items():
            try:
                await w3.provider.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting {name}: {e}")

        logger.info("RPC client closed")

    async def __aenter__(self) -> "ResilientRpcClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
