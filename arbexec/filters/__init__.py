# arbexec/filters/__init__.py
"""
Pre-submission guards
Each guard returns a GuardResult carrying its numeric inputs, so a rejection
can be reconstructed from the log line alone.
"""

from dataclasses import dataclass, field
from typing import Dict


@dataclass
class GuardResult:
    ok: bool
    reason: str = ""
    details: Dict[str, int] = field(default_factory=dict)
