# arbexec/fork.py
"""
Forked-State Replica (Anvil)
Disposable local copy of chain state used to replay one signed transaction.

Lifecycle: start() -> execute_transaction() -> stop()
The replica never mines on its own (--no-mining); each execution force-mines
exactly one block.
"""

import asyncio
import logging
import random
from collections.abc import Mapping
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted

from arbexec.config import (
    ANVIL_BINARY,
    FORK_START_TIMEOUT_SECONDS,
    FORK_STOP_GRACE_SECONDS,
    IMPERSONATED_BALANCE_WEI,
    SIMULATION_TIMEOUT_MS,
)
from arbexec.errors import (
    ForkNotStartedError,
    ForkStartError,
    PipelineError,
    SimulationTimeoutError,
    UnsignedTransactionError,
)
from arbexec.providers import EndpointConfig
from arbexec.rpc_client import Web3Factory, default_web3_factory

logger = logging.getLogger(__name__)

ProcessFactory = Callable[..., Awaitable[asyncio.subprocess.Process]]

READY_MARKER = "Listening on"
PORT_RANGE = (8545, 8600)


class ExitReason(Enum):
    NOT_STARTED = "not_started"
    STOPPED = "stopped"              # Exited within the grace period
    KILLED = "killed"                # Needed SIGKILL
    CRASHED = "crashed"              # Exited on its own
    START_TIMEOUT = "start_timeout"  # Never printed the ready marker


class ForkSimulator:
    """
    Anvil replica bound to 127.0.0.1:<port>

    All queries go to the replica only, never to the upstream endpoints.
    """

    def __init__(
        self,
        fork_url: str,
        port: Optional[int] = None,
        block_number: Optional[int] = None,
        timeout: float = SIMULATION_TIMEOUT_MS / 1000,
        start_timeout: float = FORK_START_TIMEOUT_SECONDS,
        stop_grace: float = FORK_STOP_GRACE_SECONDS,
        anvil_binary: str = ANVIL_BINARY,
        process_factory: Optional[ProcessFactory] = None,
        web3_factory: Optional[Web3Factory] = None,
    ):
        self.fork_url = fork_url
        self.port = port or random.randint(*PORT_RANGE)
        self.block_number = block_number
        self.timeout = timeout
        self.start_timeout = start_timeout
        self.stop_grace = stop_grace
        self.anvil_binary = anvil_binary

        self._process_factory = process_factory or asyncio.create_subprocess_exec
        self._web3_factory = web3_factory or default_web3_factory

        self._process: Optional[asyncio.subprocess.Process] = None
        self._w3: Optional[AsyncWeb3] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._stopping = False
        self.exit_reason = ExitReason.NOT_STARTED

    @property
    def rpc_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _command(self, block_number: Optional[int]) -> List[str]:
        args = [
            self.anvil_binary,
            "--fork-url", self.fork_url,
            "--port", str(self.port),
            "--no-mining",
        ]
        if block_number is not None:
            args += ["--fork-block-number", str(block_number)]
        return args

    async def start(self, block_number: Optional[int] = None) -> None:
        if self._process is not None:
            logger.warning("Fork already running")
            return

        if block_number is None:
            block_number = self.block_number

        logger.info(
            f"Starting Anvil fork on port {self.port}"
            + (f" at block {block_number}" if block_number is not None else "")
        )

        try:
            process = await self._process_factory(
                *self._command(block_number),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ForkStartError(f"Failed to spawn {self.anvil_binary}: {e}") from e

        self._stopping = False
        self._process = process

        try:
            await asyncio.wait_for(self._wait_until_ready(process), timeout=self.start_timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            self._process = None
            self.exit_reason = ExitReason.START_TIMEOUT
            raise ForkStartError(f"Anvil did not start within {self.start_timeout:.0f}s")
        except ForkStartError:
            self._process = None
            self.exit_reason = ExitReason.CRASHED
            raise

        # Keep the pipe drained so a chatty replica never blocks on write
        self._drain_task = asyncio.create_task(self._drain(process), name="anvil-stdout")
        self._w3 = self._web3_factory(
            EndpointConfig(url=self.rpc_url, name="anvil-fork", stall_timeout_ms=int(self.timeout * 1000))
        )
        logger.info(f"Anvil fork ready at {self.rpc_url}")

    async def _wait_until_ready(self, process) -> None:
        while True:
            line = await process.stdout.readline()
            if not line:
                code = await process.wait()
                raise ForkStartError(f"Anvil exited during startup (code {code})")
            text = line.decode(errors="replace").strip()
            logger.debug(f"[anvil] {text}")
            if READY_MARKER in text:
                return

    async def _drain(self, process) -> None:
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            logger.debug(f"[anvil] {line.decode(errors='replace').strip()}")

        if not self._stopping:
            self.exit_reason = ExitReason.CRASHED
            logger.error("Anvil fork exited unexpectedly")

    async def _kill(self, process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    async def stop(self) -> None:
        """SIGTERM, then SIGKILL after the grace period; safe to call twice"""
        process, self._process = self._process, None
        if process is None:
            return
        self._stopping = True

        w3, self._w3 = self._w3, None
        if w3 is not None:
            try:
                await w3.provider.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting fork client: {e}")

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_grace)
                self.exit_reason = ExitReason.STOPPED
            except asyncio.TimeoutError:
                logger.warning(f"Anvil ignored SIGTERM for {self.stop_grace:.0f}s, killing")
                await self._kill(process)
                self.exit_reason = ExitReason.KILLED
        elif self.exit_reason is ExitReason.NOT_STARTED:
            self.exit_reason = ExitReason.CRASHED

        drain, self._drain_task = self._drain_task, None
        if drain is not None and not drain.done():
            drain.cancel()
            try:
                await drain
            except asyncio.CancelledError:
                pass

        logger.info(f"Anvil fork stopped ({self.exit_reason.value})")

    async def __aenter__(self) -> "ForkSimulator":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Queries (replica only)
    # -------------------------------------------------------------------------

    def _require_w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise ForkNotStartedError("Fork not started")
        return self._w3

    async def _rpc(self, method: str, params: list) -> Any:
        response = await self._require_w3().provider.make_request(method, params)
        if response.get("error"):
            raise PipelineError(f"{method} failed: {response['error']}")
        return response.get("result")

    async def get_block_number(self) -> int:
        return await self._require_w3().eth.block_number

    async def get_block(self, block_identifier: Union[str, int] = "latest"):
        return await self._require_w3().eth.get_block(block_identifier)

    async def get_balance(self, address: str) -> int:
        return await self._require_w3().eth.get_balance(address)

    async def call(self, transaction: dict, block_identifier: Union[str, int] = "latest") -> bytes:
        return await self._require_w3().eth.call(transaction, block_identifier)

    async def estimate_gas(self, transaction: dict) -> int:
        return await self._require_w3().eth.estimate_gas(transaction)

    # -------------------------------------------------------------------------
    # Cheatcodes
    # -------------------------------------------------------------------------

    async def impersonate(self, address: str) -> None:
        """Unlock `address` and give it 100 ETH for gas"""
        await self._rpc("anvil_impersonateAccount", [address])
        await self._rpc("anvil_setBalance", [address, hex(IMPERSONATED_BALANCE_WEI)])
        logger.debug(f"Impersonating {address}")

    async def mine(self, blocks: int = 1) -> None:
        for _ in range(blocks):
            await self._rpc("evm_mine", [])

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute_transaction(self, signed_transaction, sender: Optional[str] = None):
        """
        Broadcast a pre-signed payload, mine one block, return the receipt

        Broadcast and receipt wait are each bounded by `timeout`. A revert is
        a receipt with status 0, not an exception.
        """
        if isinstance(signed_transaction, Mapping):
            raise UnsignedTransactionError(
                "Only pre-signed transactions can be executed on the fork"
            )

        w3 = self._require_w3()
        raw = HexBytes(getattr(signed_transaction, "raw_transaction", signed_transaction))

        if sender:
            await self.impersonate(sender)

        try:
            tx_hash = await asyncio.wait_for(w3.eth.send_raw_transaction(raw), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise SimulationTimeoutError("broadcast", self.timeout)

        await self.mine(1)

        try:
            receipt = await asyncio.wait_for(
                w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout, poll_latency=0.1),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, TimeExhausted):
            raise SimulationTimeoutError("receipt", self.timeout)

        status = "success" if receipt.get("status") == 1 else "reverted"
        logger.info(
            f"Fork execution {status}: {HexBytes(tx_hash).to_0x_hex()} "
            f"(gas used: {receipt.get('gasUsed', 0)})"
        )
        return receipt
