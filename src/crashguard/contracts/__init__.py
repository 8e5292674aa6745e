"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes are NOT re-exported here - import them from
crashguard.core.config.

Import patterns:
    from crashguard.contracts import Checkpoint, RiskLevel, SignalSnapshot
    from crashguard.core.config import CrashGuardSettings
"""

from crashguard.contracts.checkpoint import (
    Checkpoint,
    CheckpointResult,
    CheckpointSize,
    CheckpointStats,
    RestoredState,
    ResumeDetection,
    ResumeEvent,
    ResumePrompt,
    SectionRecord,
    StateSnapshot,
)
from crashguard.contracts.enums import (
    CheckpointStatus,
    CheckpointTrigger,
    InterruptionReason,
    LatencyTrend,
    RiskLevel,
    RiskTrend,
    StateSection,
)
from crashguard.contracts.errors import (
    AmbiguityWarning,
    CorruptCheckpointError,
    CorruptionError,
    CrashGuardError,
    IncompatibleCheckpointError,
    SerializationError,
    StorageError,
    ValidationError,
)
from crashguard.contracts.signals import (
    CONTEXT_USAGE,
    MESSAGE_COUNT,
    RISK_SIGNALS,
    SESSION_DURATION,
    TOOL_FAILURE_RATE,
    RiskAssessment,
    SessionCounters,
    SignalHistoryEntry,
    SignalSnapshot,
    TriggerDecision,
)

__all__ = [
    "CONTEXT_USAGE",
    "MESSAGE_COUNT",
    "RISK_SIGNALS",
    "SESSION_DURATION",
    "TOOL_FAILURE_RATE",
    "AmbiguityWarning",
    "Checkpoint",
    "CheckpointResult",
    "CheckpointSize",
    "CheckpointStats",
    "CheckpointStatus",
    "CheckpointTrigger",
    "CorruptCheckpointError",
    "CorruptionError",
    "CrashGuardError",
    "IncompatibleCheckpointError",
    "InterruptionReason",
    "LatencyTrend",
    "RestoredState",
    "ResumeDetection",
    "ResumeEvent",
    "ResumePrompt",
    "RiskAssessment",
    "RiskLevel",
    "RiskTrend",
    "SectionRecord",
    "SerializationError",
    "SessionCounters",
    "SignalHistoryEntry",
    "SignalSnapshot",
    "StateSection",
    "StateSnapshot",
    "StorageError",
    "TriggerDecision",
    "ValidationError",
]
