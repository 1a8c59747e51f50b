# arbexec/providers.py
"""
Provider Registry
One immutable configuration per upstream RPC endpoint
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Tuple

from arbexec.errors import ConfigurationError


@dataclass(frozen=True)
class EndpointConfig:
    """Single upstream RPC endpoint"""
    url: str
    name: str
    priority: int = 1            # Higher = preferred
    stall_timeout_ms: int = 5000  # Per-call bound

    @property
    def stall_timeout(self) -> float:
        """Stall timeout in seconds"""
        return self.stall_timeout_ms / 1000.0


class EndpointSet:
    """
    Named, read-only set of endpoint configurations

    Shared by the RPC client and the health monitor. Validates once at
    construction: non-empty, unique names, positive timeouts.
    """

    def __init__(self, configs: Iterable[EndpointConfig]):
        configs = tuple(configs)
        if not configs:
            raise ConfigurationError("At least one endpoint configuration is required")

        seen = set()
        for config in configs:
            if config.name in seen:
                raise ConfigurationError(f"Duplicate endpoint name: {config.name}")
            if not config.url:
                raise ConfigurationError(f"Endpoint {config.name} has no URL")
            if config.stall_timeout_ms <= 0:
                raise ConfigurationError(
                    f"Endpoint {config.name} stall timeout must be positive"
                )
            seen.add(config.name)

        self._configs: Tuple[EndpointConfig, ...] = configs

    def __iter__(self) -> Iterator[EndpointConfig]:
        return iter(self._configs)

    def __len__(self) -> int:
        return len(self._configs)

    def __getitem__(self, name: str) -> EndpointConfig:
        for config in self._configs:
            if config.name == name:
                return config
        raise KeyError(name)

    @property
    def names(self) -> List[str]:
        return [c.name for c in self._configs]

    def by_priority(self) -> List[EndpointConfig]:
        """Descending priority; sort is stable so ties keep declaration order"""
        return sorted(self._configs, key=lambda c: -c.priority)

    def to_list(self) -> List[EndpointConfig]:
        return list(self._configs)


def parse_endpoint(entry: str, default_stall_ms: int = 5000) -> EndpointConfig:
    """
    Parse "name|url|priority|stall_ms" (priority and stall optional)
    e.g. "alchemy|https://eth-mainnet.g.alchemy.com/v2/KEY|2|5000"
    """
    parts = [p.strip() for p in entry.split("|")]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ConfigurationError(f"Invalid endpoint entry: {entry!r}")

    try:
        priority = int(parts[2]) if len(parts) > 2 and parts[2] else 1
        stall_ms = int(parts[3]) if len(parts) > 3 and parts[3] else default_stall_ms
    except ValueError:
        raise ConfigurationError(f"Invalid priority/stall timeout in endpoint entry: {entry!r}")

    return EndpointConfig(url=parts[1], name=parts[0], priority=priority, stall_timeout_ms=stall_ms)
