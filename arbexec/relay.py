# arbexec/relay.py
"""
Private Relay Client (Flashbots)
Signed JSON-RPC to the relay: simulate -> send bundle -> watch for inclusion.

Every request body is signed (EIP-191 over keccak(body)) by a dedicated auth
key that holds no funds, and sent as
    X-Flashbots-Signature: <auth address>:<signature>

Inclusion is read from flashbots_getBundleStats (isSimulated && isHighPriority).
That is a relay-side heuristic; set verify_inclusion=True to also require
on-chain receipts for every transaction in the bundle.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct
from hexbytes import HexBytes
from web3 import Web3

from arbexec.config import (
    NETWORK_CHAIN_IDS,
    RELAY_BLOCK_POLL_SECONDS,
    RELAY_BLOCK_TIMEOUT_SECONDS,
    RELAY_MAX_BLOCKS_WAIT,
    RELAY_REQUEST_TIMEOUT_SECONDS,
    RELAY_URLS,
    ZERO_ADDRESS,
)
from arbexec.errors import ConfigurationError, RelayError

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS & DATA CLASSES
# =============================================================================

class InclusionState(Enum):
    INCLUDED = "included"
    EXPIRED = "expired"
    RELAY_ERROR = "relay_error"


@dataclass(frozen=True)
class Bundle:
    transactions: Tuple[str, ...]
    target_block: int
    max_block_number: int
    bundle_hash: str
    transaction_hashes: Tuple[str, ...]
    submitted_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class BundleSimulation:
    success: bool
    bundle_hash: str = ""
    total_gas_used: int = 0
    coinbase_diff: int = 0
    results: Tuple[dict, ...] = ()
    error: str = ""


@dataclass(frozen=True)
class InclusionStatus:
    """Exactly one outcome per bundle; never partial"""
    state: InclusionState
    bundle_hash: str
    block_number: Optional[int] = None
    transaction_hashes: Tuple[str, ...] = ()
    blocks_waited: int = 0
    error: str = ""

    @property
    def included(self) -> bool:
        return self.state is InclusionState.INCLUDED


def _to_hex_payload(tx) -> str:
    return HexBytes(getattr(tx, "raw_transaction", tx)).to_0x_hex()


def fallback_bundle_hash(transactions: Sequence[str]) -> str:
    """Deterministic stand-in when the relay answers without a bundleHash"""
    return Web3.keccak(text="".join(transactions)).to_0x_hex()


def resolve_relay_url(chain_id: Optional[int] = None, network: Optional[str] = None) -> str:
    if chain_id is None and network is not None:
        chain_id = NETWORK_CHAIN_IDS.get(network.lower())
        if chain_id is None:
            raise ConfigurationError(f"Unsupported network for private relay: {network}")
    if chain_id is None:
        raise ConfigurationError("Either chain_id or network is required to pick a relay")
    try:
        return RELAY_URLS[chain_id]
    except KeyError:
        raise ConfigurationError(f"No private relay for chain ID {chain_id}")


# =============================================================================
# PRIVATE RELAY CLIENT
# =============================================================================

class PrivateRelayClient:
    """
    Bundle submission over a private relay

    `rpc` only needs get_block_number() and get_transaction_receipt();
    the ResilientRpcClient fits.
    """

    def __init__(
        self,
        rpc,
        auth_signer,
        chain_id: Optional[int] = None,
        network: Optional[str] = None,
        relay_url: Optional[str] = None,
        max_blocks_wait: int = RELAY_MAX_BLOCKS_WAIT,
        request_timeout: float = RELAY_REQUEST_TIMEOUT_SECONDS,
        poll_interval: float = RELAY_BLOCK_POLL_SECONDS,
        block_timeout: float = RELAY_BLOCK_TIMEOUT_SECONDS,
        verify_inclusion: bool = False,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.relay_url = relay_url or resolve_relay_url(chain_id, network)

        if isinstance(auth_signer, str):
            try:
                auth_signer = Account.from_key(auth_signer)
            except ValueError as e:
                raise ConfigurationError(f"Invalid relay auth key: {e}") from e
        if not getattr(auth_signer, "address", None) or auth_signer.address == ZERO_ADDRESS:
            raise ConfigurationError("Relay auth signer must have a non-zero address")

        self.rpc = rpc
        self.max_blocks_wait = max_blocks_wait
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self.block_timeout = block_timeout
        self.verify_inclusion = verify_inclusion

        self._signer = auth_signer
        self._session = session
        self._owns_session = session is None
        self._closed = False
        self._request_id = 0
        self._bundles: Dict[str, Bundle] = {}

        logger.info(f"Private relay: {self.relay_url} (auth: {auth_signer.address})")

    @property
    def auth_address(self) -> str:
        return self._signer.address

    def get_bundle(self, bundle_hash: str) -> Optional[Bundle]:
        return self._bundles.get(bundle_hash)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def sign_body(self, body: str) -> str:
        """X-Flashbots-Signature value for this exact body"""
        message = encode_defunct(text=Web3.to_hex(Web3.keccak(text=body)))
        signed = self._signer.sign_message(message)
        return f"{self._signer.address}:{Web3.to_hex(signed.signature)}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise RelayError("Relay client is closed")
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self._session

    async def _request(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        body = json.dumps(payload)
        headers = {
            "Content-Type": "application/json",
            "X-Flashbots-Signature": self.sign_body(body),
        }

        session = self._get_session()
        try:
            async with session.post(self.relay_url, data=body, headers=headers) as response:
                text = await response.text()
                if not 200 <= response.status < 300:
                    raise RelayError(
                        f"{method}: HTTP {response.status}: {text[:200]}",
                        code=response.status,
                        method=method,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RelayError(f"{method}: network error: {str(e) or type(e).__name__}", method=method) from e

        try:
            data = json.loads(text)
        except ValueError:
            raise RelayError(f"{method}: invalid JSON response: {text[:200]}", method=method)

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            if isinstance(error, dict):
                raise RelayError(
                    f"{method}: {error.get('message', 'unknown relay error')}",
                    code=error.get("code"),
                    method=method,
                )
            raise RelayError(f"{method}: {error}", method=method)

        return data.get("result") if isinstance(data, dict) else None

    # -------------------------------------------------------------------------
    # Bundle operations
    # -------------------------------------------------------------------------

    async def simulate(
        self,
        transactions: Sequence,
        target_block: int,
        state_block: Optional[int] = None,
    ) -> BundleSimulation:
        """eth_callBundle; relay failures come back as success=False"""
        txs = [_to_hex_payload(tx) for tx in transactions]
        params = [{
            "txs": txs,
            "blockNumber": hex(target_block),
            "stateBlockNumber": hex(state_block) if state_block is not None else "latest",
        }]

        try:
            result = await self._request("eth_callBundle", params) or {}
        except RelayError as e:
            logger.warning(f"Bundle simulation failed: {e}")
            return BundleSimulation(success=False, error=str(e))

        results = tuple(result.get("results") or ())
        for tx_result in results:
            if tx_result.get("error") or tx_result.get("revert"):
                reason = tx_result.get("revert") or tx_result.get("error")
                logger.warning(f"Bundle simulation reverted: {reason}")
                return BundleSimulation(
                    success=False,
                    bundle_hash=result.get("bundleHash", ""),
                    results=results,
                    error=f"Transaction {tx_result.get('txHash', '?')} reverted: {reason}",
                )

        simulation = BundleSimulation(
            success=True,
            bundle_hash=result.get("bundleHash", ""),
            total_gas_used=int(result.get("totalGasUsed", 0) or 0),
            coinbase_diff=int(result.get("coinbaseDiff", 0) or 0),
            results=results,
        )
        logger.info(
            f"Bundle simulation OK (gas: {simulation.total_gas_used}, "
            f"coinbase diff: {simulation.coinbase_diff / 1e18:.6f} ETH)"
        )
        return simulation

    async def send_bundle(
        self,
        transactions: Sequence,
        target_block: int,
        max_block_number: Optional[int] = None,
        reverting_tx_hashes: Optional[Sequence[str]] = None,
    ) -> str:
        """eth_sendBundle; raises RelayError, returns the bundle hash"""
        if not transactions:
            raise ValueError("Bundle must contain at least one transaction")

        txs = [_to_hex_payload(tx) for tx in transactions]
        bundle_params: Dict[str, Any] = {"txs": txs, "blockNumber": hex(target_block)}
        if reverting_tx_hashes:
            bundle_params["revertingTxHashes"] = list(reverting_tx_hashes)

        result = await self._request("eth_sendBundle", [bundle_params])

        bundle_hash = result.get("bundleHash") if isinstance(result, dict) else None
        if not bundle_hash:
            bundle_hash = fallback_bundle_hash(txs)
            logger.warning(f"Relay returned no bundle hash, using {bundle_hash}")

        self._bundles[bundle_hash] = Bundle(
            transactions=tuple(txs),
            target_block=target_block,
            max_block_number=max_block_number or target_block + self.max_blocks_wait,
            bundle_hash=bundle_hash,
            transaction_hashes=tuple(Web3.keccak(hexstr=tx).to_0x_hex() for tx in txs),
        )
        logger.info(f"Bundle submitted: {bundle_hash} (target block {target_block})")
        return bundle_hash

    async def get_bundle_stats(self, bundle_hash: str, block_number: int) -> dict:
        result = await self._request(
            "flashbots_getBundleStats",
            [{"bundleHash": bundle_hash, "blockNumber": hex(block_number)}],
        )
        return result or {}

    # -------------------------------------------------------------------------
    # Inclusion watch
    # -------------------------------------------------------------------------

    async def _wait_for_block(self, number: int) -> int:
        """Return once the chain reaches `number`, or after block_timeout"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.block_timeout

        while True:
            try:
                current = await self.rpc.get_block_number()
                if current >= number:
                    return current
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"Block number poll failed: {e}")

            if loop.time() >= deadline:
                logger.warning(f"No block {number} after {self.block_timeout:.0f}s, moving on")
                return number
            await asyncio.sleep(self.poll_interval)

    async def _receipts_confirm(self, bundle: Bundle) -> Optional[int]:
        """Block of the bundle if every transaction has a receipt, else None"""
        block_number = None
        for tx_hash in bundle.transaction_hashes:
            try:
                receipt = await self.rpc.get_transaction_receipt(tx_hash)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"Receipt lookup failed for {tx_hash}: {e}")
                return None
            if receipt is None:
                return None
            block_number = receipt.get("blockNumber")
        return block_number

    async def wait_for_inclusion(self, bundle_hash: str, max_blocks: Optional[int] = None) -> InclusionStatus:
        """
        Poll once per new block for up to max_blocks blocks

        EXPIRED is returned right after the last polled block. Stats failures
        count as "not included yet".
        """
        if max_blocks is None:
            max_blocks = self.max_blocks_wait
        bundle = self._bundles.get(bundle_hash)
        tx_hashes = bundle.transaction_hashes if bundle else ()

        try:
            start_block = await self.rpc.get_block_number()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Cannot read block number to watch {bundle_hash}: {e}")
            self._bundles.pop(bundle_hash, None)
            return InclusionStatus(InclusionState.RELAY_ERROR, bundle_hash, error=str(e))

        for waited in range(1, max_blocks + 1):
            block_number = await self._wait_for_block(start_block + waited)
            stats_block = bundle.target_block if bundle else block_number

            try:
                stats = await self.get_bundle_stats(bundle_hash, stats_block)
            except RelayError as e:
                logger.debug(f"Bundle stats unavailable at block {block_number}: {e}")
                continue

            if not (stats.get("isSimulated") and stats.get("isHighPriority")):
                continue

            included_block = block_number
            if self.verify_inclusion and bundle is not None:
                confirmed = await self._receipts_confirm(bundle)
                if confirmed is None:
                    logger.info(f"Relay reports {bundle_hash} included but receipts are missing")
                    continue
                included_block = confirmed

            logger.info(f"Bundle included: {bundle_hash} (block {included_block}, waited {waited})")
            self._bundles.pop(bundle_hash, None)
            return InclusionStatus(
                InclusionState.INCLUDED,
                bundle_hash,
                block_number=included_block,
                transaction_hashes=tx_hashes,
                blocks_waited=waited,
            )

        logger.warning(f"Bundle {bundle_hash} not included after {max_blocks} blocks")
        self._bundles.pop(bundle_hash, None)
        return InclusionStatus(
            InclusionState.EXPIRED,
            bundle_hash,
            transaction_hashes=tx_hashes,
            blocks_waited=max_blocks,
        )

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        logger.info("Relay client closed")
