# arbexec/errors.py
"""
Exception hierarchy for the execution pipeline

Business outcomes (revert, unprofitable, gas over budget) are NOT exceptions;
they come back as result objects with a reason string.
"""

from typing import Dict, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors"""


class ConfigurationError(PipelineError, ValueError):
    """Fatal setup problem: never retried"""


class AllEndpointsFailedError(PipelineError):
    """Every configured RPC endpoint failed (or no result reached quorum)"""

    def __init__(self, operation: str, errors: Dict[str, str], quorum: int = 1):
        self.operation = operation
        self.errors = dict(errors)
        self.quorum = quorum
        details = ", ".join(f"{name}: {err}" for name, err in self.errors.items())
        super().__init__(
            f"{operation} failed on all endpoints (quorum={quorum}): {details or 'no endpoints'}"
        )


class ForkStartError(PipelineError):
    """Replica process did not come up"""


class ForkNotStartedError(PipelineError):
    """Replica query issued before start() or after stop()"""


class SimulationTimeoutError(PipelineError, TimeoutError):
    """Broadcast or receipt wait on the replica exceeded the simulation timeout"""

    def __init__(self, stage: str, timeout: float):
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"{stage} timed out after {timeout:.1f}s")


class UnsignedTransactionError(PipelineError, NotImplementedError):
    """Only pre-signed payloads can be replayed"""


class RelayError(PipelineError):
    """Relay transport failure or JSON-RPC error payload"""

    def __init__(self, message: str, code: Optional[int] = None, method: str = ""):
        self.code = code
        self.method = method
        super().__init__(message)
