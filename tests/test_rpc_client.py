"""
Tests for the resilient RPC client
"""

import asyncio

import pytest
from web3 import Web3
from web3.exceptions import Web3RPCError

from arbexec.errors import AllEndpointsFailedError, ConfigurationError, PipelineError
from arbexec.rpc_client import ResilientRpcClient

from conftest import SIGNED_TX, FakeWeb3, web3_factory_for


def make_client(make_endpoints, clients, *entries, quorum=1):
    return ResilientRpcClient(make_endpoints(*entries), quorum=quorum, web3_factory=web3_factory_for(clients))


class TestConstruction:

    def test_no_endpoints_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            ResilientRpcClient([])

    def test_quorum_larger_than_endpoint_count_rejected(self, make_endpoints):
        clients = {"a": FakeWeb3()}
        with pytest.raises(ConfigurationError):
            make_client(make_endpoints, clients, ("a", 1), quorum=2)

    def test_get_configs_returns_copy(self, make_endpoints):
        clients = {"a": FakeWeb3(), "b": FakeWeb3()}
        client = make_client(make_endpoints, clients, ("a", 1), ("b", 2))
        configs = client.get_configs()
        configs.pop()
        assert len(client.get_configs()) == 2


class TestFailover:
    """Priority order, stall timeouts, aggregated failure"""

    @pytest.mark.asyncio
    async def test_highest_priority_answers_and_others_untouched(self, make_endpoints):
        clients = {"low": FakeWeb3(block_number=1), "high": FakeWeb3(block_number=2)}
        client = make_client(make_endpoints, clients, ("low", 1), ("high", 5))

        assert await client.get_block_number() == 2
        assert clients["low"].eth.calls == []

    @pytest.mark.asyncio
    async def test_failing_endpoint_falls_through_to_next(self, make_endpoints):
        clients = {
            "primary": FakeWeb3(fail=ConnectionError("refused")),
            "backup": FakeWeb3(block_number=42),
        }
        client = make_client(make_endpoints, clients, ("primary", 2), ("backup", 1))

        assert await client.get_block_number() == 42
        assert clients["primary"].eth.calls == ["block_number"]

    @pytest.mark.asyncio
    async def test_stalled_endpoint_is_abandoned_after_stall_timeout(self, make_endpoints):
        clients = {"slow": FakeWeb3(delay=5.0, block_number=1), "fast": FakeWeb3(block_number=7)}
        client = make_client(make_endpoints, clients, ("slow", 2, 50), ("fast", 1, 1000))

        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await client.get_block_number() == 7
        assert loop.time() - started < 2.0

    @pytest.mark.asyncio
    async def test_all_endpoints_failing_raises_once_with_every_error(self, make_endpoints):
        clients = {
            "a": FakeWeb3(fail=ConnectionError("a down")),
            "b": FakeWeb3(fail=ValueError("b bad")),
        }
        client = make_client(make_endpoints, clients, ("a", 2), ("b", 1))

        with pytest.raises(AllEndpointsFailedError) as exc_info:
            await client.get_chain_id()

        assert exc_info.value.operation == "get_chain_id"
        assert set(exc_info.value.errors) == {"a", "b"}
        assert "a down" in exc_info.value.errors["a"]
        # No internal retry
        assert clients["a"].eth.calls == ["chain_id"]
        assert clients["b"].eth.calls == ["chain_id"]


class TestQuorum:

    @pytest.mark.asyncio
    async def test_quorum_of_two_needs_matching_results(self, make_endpoints):
        clients = {"a": FakeWeb3(block_number=10), "b": FakeWeb3(block_number=11), "c": FakeWeb3(block_number=10)}
        client = make_client(make_endpoints, clients, ("a", 3), ("b", 2), ("c", 1), quorum=2)

        assert await client.get_block_number() == 10
        assert clients["c"].eth.calls == ["block_number"]

    @pytest.mark.asyncio
    async def test_quorum_not_reached_raises(self, make_endpoints):
        clients = {"a": FakeWeb3(block_number=10), "b": FakeWeb3(block_number=11)}
        client = make_client(make_endpoints, clients, ("a", 2), ("b", 1), quorum=2)

        with pytest.raises(AllEndpointsFailedError) as exc_info:
            await client.get_block_number()
        assert "quorum" in exc_info.value.errors


class TestOperations:

    @pytest.mark.asyncio
    async def test_fee_data(self, make_endpoints):
        clients = {"a": FakeWeb3(base_fee=30 * 10**9, priority_fee=2 * 10**9)}
        client = make_client(make_endpoints, clients, ("a", 1))

        fee = await client.get_fee_data()
        assert fee.base_fee == 30 * 10**9
        assert fee.max_priority_fee == 2 * 10**9
        assert fee.effective_gas_price == 32 * 10**9

    @pytest.mark.asyncio
    async def test_get_code(self, make_endpoints):
        clients = {"a": FakeWeb3()}
        client = make_client(make_endpoints, clients, ("a", 1))

        assert await client.get_code("0x" + "22" * 20) == b"\x60\x80\x60\x40"
        assert clients["a"].eth.calls == ["get_code"]

    @pytest.mark.asyncio
    async def test_missing_receipt_is_none_not_failure(self, make_endpoints):
        clients = {"a": FakeWeb3()}
        client = make_client(make_endpoints, clients, ("a", 1))

        assert await client.get_transaction_receipt("0x" + "11" * 32) is None

    @pytest.mark.asyncio
    async def test_already_known_counts_as_sent(self, make_endpoints):
        clients = {"a": FakeWeb3()}
        clients["a"].eth.send_error = Web3RPCError("already known")
        client = make_client(make_endpoints, clients, ("a", 1))

        tx_hash = await client.send_raw_transaction(SIGNED_TX)
        assert tx_hash == Web3.keccak(hexstr=SIGNED_TX)

    @pytest.mark.asyncio
    async def test_wait_for_transaction_returns_receipt(self, make_endpoints):
        clients = {"a": FakeWeb3(block_number=105)}
        tx_hash = "0x" + "ab" * 32
        clients["a"].eth.receipts[tx_hash] = {"status": 1, "blockNumber": 103}
        client = make_client(make_endpoints, clients, ("a", 1))

        receipt = await client.wait_for_transaction(tx_hash, confirmations=3, timeout=1.0, poll_interval=0.01)
        assert receipt["blockNumber"] == 103

    @pytest.mark.asyncio
    async def test_wait_for_transaction_times_out(self, make_endpoints):
        clients = {"a": FakeWeb3()}
        client = make_client(make_endpoints, clients, ("a", 1))

        with pytest.raises(TimeoutError):
            await client.wait_for_transaction("0x" + "cd" * 32, timeout=0.05, poll_interval=0.01)


class TestClose:

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_endpoints):
        clients = {"a": FakeWeb3(), "b": FakeWeb3()}
        client = make_client(make_endpoints, clients, ("a", 1), ("b", 2))

        await client.close()
        await client.close()

        assert client.closed
        assert clients["a"].provider.disconnects == 1
        assert clients["b"].provider.disconnects == 1

    @pytest.mark.asyncio
    async def test_calls_after_close_fail(self, make_endpoints):
        clients = {"a": FakeWeb3()}
        async with make_client(make_endpoints, clients, ("a", 1)) as client:
            pass

        with pytest.raises(PipelineError):
            await client.get_block_number()
