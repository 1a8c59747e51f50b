"""
Shared fakes for the execution pipeline tests

Nothing here touches the network or needs an anvil binary: upstream
endpoints, the replica process and the relay HTTP session are all in-memory.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound

from arbexec.providers import EndpointConfig

# Anvil's first dev account: well known, never holds real funds
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

SIGNED_TX = "0x02f86c0180843b9aca00850ba43b7400830f424094deadbeef"


# ==============================================================================
# Fake AsyncWeb3
# ==============================================================================

class FakeEth:
    def __init__(
        self,
        block_number: int = 100,
        chain_id: int = 1,
        base_fee: int = 20 * 10**9,
        priority_fee: int = 2 * 10**9,
        fail: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self._block_number = block_number
        self._chain_id = chain_id
        self.base_fee = base_fee
        self.priority_fee = priority_fee
        self.fail = fail
        self.delay = delay
        self.calls: List[str] = []
        self.receipts: Dict[str, dict] = {}
        self.send_error: Optional[Exception] = None
        self.receipt_delay = 0.0
        self.code = b"\x60\x80\x60\x40"

    async def _value(self, name: str, value: Any) -> Any:
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return value

    @property
    def block_number(self):
        return self._value("block_number", self._block_number)

    @property
    def chain_id(self):
        return self._value("chain_id", self._chain_id)

    @property
    def gas_price(self):
        return self._value("gas_price", self.base_fee + self.priority_fee)

    @property
    def max_priority_fee(self):
        return self._value("max_priority_fee", self.priority_fee)

    def get_block(self, block_identifier):
        return self._value("get_block", {"number": self._block_number, "baseFeePerGas": self.base_fee})

    def get_balance(self, address):
        return self._value("get_balance", 10**18)

    def estimate_gas(self, transaction):
        return self._value("estimate_gas", 650_000)

    def call(self, transaction, block_identifier="latest"):
        return self._value("call", b"")

    def get_code(self, address):
        return self._value("get_code", self.code)

    async def get_transaction_receipt(self, tx_hash):
        await self._value("get_transaction_receipt", None)
        receipt = self.receipts.get(HexBytes(tx_hash).to_0x_hex())
        if receipt is None:
            raise TransactionNotFound(f"Transaction {tx_hash} not found")
        return receipt

    async def send_raw_transaction(self, raw):
        await self._value("send_raw_transaction", None)
        if self.send_error is not None:
            raise self.send_error
        return HexBytes(Web3.keccak(HexBytes(raw)))

    async def wait_for_transaction_receipt(self, tx_hash, timeout=120, poll_latency=0.1):
        self.calls.append("wait_for_transaction_receipt")
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        return self.receipts.get(HexBytes(tx_hash).to_0x_hex()) or {
            "status": 1,
            "gasUsed": 650_000,
            "blockNumber": self._block_number + 1,
            "transactionHash": HexBytes(tx_hash),
        }


class FakeProvider:
    def __init__(self):
        self.disconnects = 0
        self.requests: List[tuple] = []

    async def disconnect(self):
        self.disconnects += 1

    async def make_request(self, method, params):
        self.requests.append((method, params))
        return {"jsonrpc": "2.0", "id": len(self.requests), "result": True}


class FakeWeb3:
    def __init__(self, **eth_kwargs):
        self.eth = FakeEth(**eth_kwargs)
        self.provider = FakeProvider()


def web3_factory_for(clients: Dict[str, FakeWeb3]) -> Callable[[EndpointConfig], FakeWeb3]:
    return lambda config: clients[config.name]


@pytest.fixture
def make_endpoints():
    def _make(*entries):
        """entries: (name, priority) or (name, priority, stall_ms)"""
        configs = []
        for entry in entries:
            name, priority = entry[0], entry[1]
            stall_ms = entry[2] if len(entry) > 2 else 1000
            configs.append(
                EndpointConfig(url=f"https://{name}.example", name=name, priority=priority, stall_timeout_ms=stall_ms)
            )
        return configs

    return _make


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ==============================================================================
# Fake anvil process
# ==============================================================================

class FakeProcess:
    def __init__(self, lines=(b"Listening on 127.0.0.1:8545\n",), ignore_term: bool = False, exit_code: Optional[int] = None):
        self.stdout = asyncio.StreamReader()
        for line in lines:
            self.stdout.feed_data(line)
        self.ignore_term = ignore_term
        self.returncode: Optional[int] = None
        self.terminated = 0
        self.killed = 0
        self._exited = asyncio.Event()
        if exit_code is not None:
            self._exit(exit_code)

    def _exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self.stdout.feed_eof()
            self._exited.set()

    def terminate(self):
        self.terminated += 1
        if not self.ignore_term:
            self._exit(0)

    def kill(self):
        self.killed += 1
        self._exit(-9)

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class ProcessFactory:
    def __init__(self, process: FakeProcess):
        self.process = process
        self.commands: List[tuple] = []

    async def __call__(self, *args, **kwargs):
        self.commands.append(args)
        return self.process


# ==============================================================================
# Fake relay transport
# ==============================================================================

class FakeResponse:
    def __init__(self, status: int, body: str):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """responder(payload) -> (status, body) where body is a dict, a str or an exception"""

    def __init__(self, responder: Callable[[dict], tuple]):
        self.responder = responder
        self.requests: List[dict] = []
        self.closed = False

    def methods(self) -> List[str]:
        return [r["payload"]["method"] for r in self.requests]

    def post(self, url, data=None, headers=None):
        payload = json.loads(data)
        self.requests.append({"url": url, "body": data, "payload": payload, "headers": headers})
        status, body = self.responder(payload)
        if isinstance(body, Exception):
            raise body
        if not isinstance(body, str):
            body = json.dumps(body)
        return FakeResponse(status, body)

    async def close(self):
        self.closed = True


def rpc_result(payload: dict, result: Any) -> tuple:
    return 200, {"jsonrpc": "2.0", "id": payload["id"], "result": result}


class FakeChain:
    """Minimal rpc for the relay: the head advances `step` blocks per read"""

    def __init__(self, start: int = 100, step: int = 1):
        self.block = start
        self.step = step
        self.reads = 0
        self.receipts: Dict[str, dict] = {}

    async def get_block_number(self) -> int:
        self.reads += 1
        current = self.block
        self.block += self.step
        return current

    async def get_transaction_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)
