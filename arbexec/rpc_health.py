# arbexec/rpc_health.py
"""
RPC Health Monitoring
Polls every configured endpoint on a fixed cadence, independent of the RPC
client, with per-endpoint exponential backoff and edge-triggered alerts.

Per endpoint: HEALTHY -> (failure) -> DEGRADED(n) -> ... ; any success -> HEALTHY
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union

from web3 import AsyncWeb3

from arbexec.config import (
    ALERT_FAILURE_THRESHOLD,
    BACKOFF_INITIAL_MS,
    BACKOFF_MAX_MS,
    BACKOFF_MULTIPLIER,
    HEALTH_CHECK_INTERVAL_SECONDS,
    HEALTH_CHECK_TIMEOUT_SECONDS,
)
from arbexec.providers import EndpointConfig, EndpointSet
from arbexec.rpc_client import Web3Factory, default_web3_factory

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS & DATA CLASSES
# =============================================================================

class EndpointStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class HealthEvent(Enum):
    SUCCESS = "success"   # payload: HealthCheckResult
    FAILURE = "failure"   # payload: EndpointFailure
    ALERT = "alert"       # payload: EndpointFailure


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one check (or skipped check) of one endpoint"""
    endpoint_name: str
    is_healthy: bool
    timestamp: float
    response_time_ms: float = 0.0
    block_number: Optional[int] = None
    error: str = ""
    skipped: bool = False


@dataclass(frozen=True)
class EndpointFailure:
    """Failure / alert payload"""
    endpoint_name: str
    failure_count: int
    error: str
    timestamp: float
    backoff_ms: int


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff after k consecutive failures = min(initial * multiplier^(k-1), max)"""
    initial_delay_ms: int = BACKOFF_INITIAL_MS
    multiplier: int = BACKOFF_MULTIPLIER
    max_delay_ms: int = BACKOFF_MAX_MS

    def delay_for(self, failures: int) -> int:
        if failures <= 0:
            return self.initial_delay_ms
        return min(self.initial_delay_ms * self.multiplier ** (failures - 1), self.max_delay_ms)


@dataclass
class EndpointHealth:
    failure_count: int
    backoff_ms: int
    last_check: Optional[float] = None  # monotonic seconds

    @property
    def status(self) -> EndpointStatus:
        return EndpointStatus.HEALTHY if self.failure_count == 0 else EndpointStatus.DEGRADED


HealthObserver = Callable[[Union[HealthCheckResult, EndpointFailure]], object]


# =============================================================================
# HEALTH MONITOR
# =============================================================================

class HealthMonitor:
    """
    Periodic liveness checks for an endpoint set

    Health state is owned here exclusively; the RPC client never touches it.
    """

    def __init__(
        self,
        endpoints: Union[EndpointSet, Iterable[EndpointConfig]],
        check_interval: float = HEALTH_CHECK_INTERVAL_SECONDS,
        check_timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS,
        backoff: Optional[BackoffPolicy] = None,
        alert_threshold: int = ALERT_FAILURE_THRESHOLD,
        web3_factory: Optional[Web3Factory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not isinstance(endpoints, EndpointSet):
            endpoints = EndpointSet(endpoints)

        self.endpoints = endpoints
        self.check_interval = check_interval
        self.check_timeout = check_timeout
        self.backoff = backoff or BackoffPolicy()
        self.alert_threshold = alert_threshold
        self._clock = clock

        factory = web3_factory or default_web3_factory
        self._clients: Dict[str, AsyncWeb3] = {c.name: factory(c) for c in endpoints}
        self._health: Dict[str, EndpointHealth] = {
            c.name: EndpointHealth(failure_count=0, backoff_ms=self.backoff.initial_delay_ms)
            for c in endpoints
        }
        self._observers: Dict[HealthEvent, List[HealthObserver]] = {e: [] for e in HealthEvent}
        self._task: Optional[asyncio.Task] = None
        self._destroyed = False

        logger.info(
            f"Health monitor initialized with {len(endpoints)} endpoints "
            f"(interval: {check_interval}s, timeout: {check_timeout}s)"
        )

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def on(self, event: HealthEvent, callback: HealthObserver) -> None:
        self._observers[event].append(callback)

    def off(self, event: HealthEvent, callback: HealthObserver) -> None:
        if callback in self._observers.get(event, []):
            self._observers[event].remove(callback)

    async def _emit(self, event: HealthEvent, payload) -> None:
        for callback in list(self._observers.get(event, [])):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Error in {event.value} observer")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """One immediate pass, then every check_interval until stopped"""
        if self._destroyed:
            raise RuntimeError("Health monitor has been destroyed")
        if self.is_running:
            logger.warning("Health monitor already running")
            return

        logger.info("Starting health checks")
        self._task = asyncio.create_task(self._run(), name="health-monitor")

    async def _run(self) -> None:
        while True:
            try:
                await self.check_all()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Health check pass failed")
            await asyncio.sleep(self.check_interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped health checks")

    async def destroy(self) -> None:
        """Stop, drop all per-endpoint state and detach all observers"""
        if self._destroyed:
            return
        await self.stop()
        self._destroyed = True

        for name, w3 in self._clients.items():
            try:
                await w3.provider.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting health client {name}: {e}")

        self._clients.clear()
        self._health.clear()
        for listeners in self._observers.values():
            listeners.clear()
        logger.info("Health monitor destroyed")

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    async def check_all(self) -> List[HealthCheckResult]:
        if self._destroyed:
            raise RuntimeError("Health monitor has been destroyed")
        results = await asyncio.gather(*(self.check_endpoint(c) for c in self.endpoints))

        healthy = sum(1 for r in results if r.is_healthy)
        logger.info(f"Health status: {healthy} healthy, {len(results) - healthy} unhealthy")
        return list(results)

    async def check_endpoint(self, config: EndpointConfig) -> HealthCheckResult:
        if self._destroyed:
            raise RuntimeError("Health monitor has been destroyed")
        state = self._health[config.name]
        now = self._clock()

        if state.failure_count > 0 and state.last_check is not None:
            elapsed_ms = (now - state.last_check) * 1000
            if elapsed_ms < state.backoff_ms:
                remaining = (state.backoff_ms - elapsed_ms) / 1000
                return HealthCheckResult(
                    endpoint_name=config.name,
                    is_healthy=False,
                    timestamp=time.time(),
                    error=f"Still backing off ({remaining:.0f}s remaining)",
                    skipped=True,
                )

        w3 = self._clients[config.name]
        started = time.perf_counter()

        try:
            block_number = await asyncio.wait_for(w3.eth.block_number, timeout=self.check_timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            return await self._record_failure(
                config, state, now, f"Timeout after {self.check_timeout:.1f}s",
                (time.perf_counter() - started) * 1000,
            )
        except Exception as e:
            return await self._record_failure(
                config, state, now, str(e) or type(e).__name__,
                (time.perf_counter() - started) * 1000,
            )

        response_time_ms = (time.perf_counter() - started) * 1000
        state.failure_count = 0
        state.backoff_ms = self.backoff.initial_delay_ms
        state.last_check = now

        result = HealthCheckResult(
            endpoint_name=config.name,
            is_healthy=True,
            timestamp=time.time(),
            response_time_ms=response_time_ms,
            block_number=block_number,
        )
        logger.info(
            f"{config.name}: OK (block: {block_number}, {response_time_ms:.0f}ms)",
            extra={"event": "health.success", "endpoint": config.name, "block_number": block_number},
        )
        await self._emit(HealthEvent.SUCCESS, result)
        return result

    async def _record_failure(
        self,
        config: EndpointConfig,
        state: EndpointHealth,
        now: float,
        error: str,
        response_time_ms: float,
    ) -> HealthCheckResult:
        state.failure_count += 1
        state.backoff_ms = self.backoff.delay_for(state.failure_count)
        state.last_check = now

        failure = EndpointFailure(
            endpoint_name=config.name,
            failure_count=state.failure_count,
            error=error,
            timestamp=time.time(),
            backoff_ms=state.backoff_ms,
        )
        logger.error(
            f"{config.name}: FAILED ({state.failure_count} consecutive, "
            f"backoff: {state.backoff_ms / 1000:.0f}s) - {error}",
            extra={
                "event": "health.failure",
                "endpoint": config.name,
                "failure_count": state.failure_count,
                "backoff_ms": state.backoff_ms,
            },
        )
        await self._emit(HealthEvent.FAILURE, failure)

        # Edge-triggered: only the transition onto the threshold
        if state.failure_count == self.alert_threshold:
            logger.critical(
                f"ALERT: {config.name} has {state.failure_count} consecutive failures",
                extra={"event": "health.alert", "endpoint": config.name, "failure_count": state.failure_count},
            )
            await self._emit(HealthEvent.ALERT, failure)

        return HealthCheckResult(
            endpoint_name=config.name,
            is_healthy=False,
            timestamp=failure.timestamp,
            response_time_ms=response_time_ms,
            error=error,
        )

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def get_failure_count(self, name: str) -> int:
        state = self._health.get(name)
        return state.failure_count if state else 0

    def get_backoff_delay(self, name: str) -> int:
        """Current backoff in ms"""
        state = self._health.get(name)
        return state.backoff_ms if state else self.backoff.initial_delay_ms

    def get_state(self, name: str) -> EndpointStatus:
        state = self._health.get(name)
        return state.status if state else EndpointStatus.HEALTHY

    def snapshot(self) -> Dict[str, EndpointHealth]:
        return {name: replace(state) for name, state in self._health.items()}
