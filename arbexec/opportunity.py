# arbexec/opportunity.py
"""
Opportunity Sources
Detection lives outside this package; the bot only asks "anything to run?"
once per monitor interval.
"""

import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Iterable, Optional

from arbexec.profit_calculator import GasPriceConfig
from arbexec.simulator import ArbitrageParams


@dataclass(frozen=True)
class Candidate:
    """Already-decided, already-signed flash-loan transaction"""
    signed_transaction: object         # hex str, bytes or eth_account SignedTransaction
    params: ArbitrageParams
    gas: Optional[GasPriceConfig] = None   # None: priced from live fee data
    sender: Optional[str] = None           # Impersonated on the fork when set
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class OpportunitySource:
    async def next_candidate(self) -> Optional[Candidate]:
        raise NotImplementedError


class NullOpportunitySource(OpportunitySource):
    """Default: never finds anything"""

    async def next_candidate(self) -> Optional[Candidate]:
        return None


class QueuedOpportunitySource(OpportunitySource):
    """FIFO of candidates pushed in by an external detector"""

    def __init__(self, candidates: Iterable[Candidate] = ()):
        self._queue: Deque[Candidate] = deque(candidates)

    def push(self, candidate: Candidate) -> None:
        self._queue.append(candidate)

    def __len__(self) -> int:
        return len(self._queue)

    async def next_candidate(self) -> Optional[Candidate]:
        return self._queue.popleft() if self._queue else None
