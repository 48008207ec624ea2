"""Circuit breakers, retry scheduling, connectivity and state snapshots."""

from signal_trader.resilience.breaker import CircuitBreakerRegistry, retry_delay
from signal_trader.resilience.connectivity import ConnectivityMonitor
from signal_trader.resilience.recovery import (
    AI_SERVICE,
    EXCHANGE_SERVICE,
    NETWORK_SERVICE,
    SERVICES,
    RecoverySystem,
)
from signal_trader.resilience.state_store import InMemoryStateStore, JsonFileStateStore

__all__ = [
    "AI_SERVICE",
    "EXCHANGE_SERVICE",
    "NETWORK_SERVICE",
    "SERVICES",
    "CircuitBreakerRegistry",
    "ConnectivityMonitor",
    "InMemoryStateStore",
    "JsonFileStateStore",
    "RecoverySystem",
    "retry_delay",
]
