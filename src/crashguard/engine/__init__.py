"""In-process session machinery: clock, retries, signals and triggers.

CheckpointCoordinator and SessionGuard live in crashguard.engine.coordinator
and crashguard.engine.session; they depend on crashguard.core and are not
re-exported here.
"""

from crashguard.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from crashguard.engine.collector import SignalCollector, assess_risk, estimate_tokens
from crashguard.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from crashguard.engine.triggers import TriggerEngine

__all__ = [
    "DEFAULT_CLOCK",
    "Clock",
    "MaxRetriesExceeded",
    "MockClock",
    "RetryConfig",
    "RetryManager",
    "SignalCollector",
    "SystemClock",
    "TriggerEngine",
    "assess_risk",
    "estimate_tokens",
]
