"""All status codes, levels, and reasons used across subsystem boundaries.

Values of StrEnums stored in the database are the persisted form. Do not
rename a value without a schema version bump.
"""

from enum import StrEnum


class RiskLevel(StrEnum):
    """Crash-risk classification derived from session signals.

    Ordered: SAFE < WARNING < DANGER < CRITICAL. Use ``severity`` for
    comparisons, never the string value.
    """

    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _RISK_SEVERITY[self]


_RISK_SEVERITY: dict[RiskLevel, int] = {
    RiskLevel.SAFE: 0,
    RiskLevel.WARNING: 1,
    RiskLevel.DANGER: 2,
    RiskLevel.CRITICAL: 3,
}


class CheckpointTrigger(StrEnum):
    """Condition that caused a checkpoint to be created.

    Stored in the database (checkpoints.trigger). Declaration order is
    the evaluation priority used by the TriggerEngine.
    """

    RISK_CRITICAL = "risk_critical"
    RISK_DANGER = "risk_danger"
    TOOL_COUNT_INTERVAL = "tool_count_interval"
    TIME_INTERVAL = "time_interval"
    MANUAL = "manual"
    SESSION_END = "session_end"


class CheckpointStatus(StrEnum):
    """Resume state of a persisted checkpoint.

    Stored in the database (checkpoints.status).

    Values:
        UNRESTORED: Newest checkpoint of its session, eligible for resume
        SUPERSEDED: A newer checkpoint exists; kept for history only
        RESTORED: Restoration outcome attached (exactly once)
    """

    UNRESTORED = "unrestored"
    SUPERSEDED = "superseded"
    RESTORED = "restored"


class InterruptionReason(StrEnum):
    """Inferred cause of the previous session ending.

    Stored in the database (resume_events.interruption_reason).
    """

    CRASH = "crash"
    TIMEOUT = "timeout"
    CLEAN_SHUTDOWN = "clean_shutdown"
    UNKNOWN = "unknown"


class StateSection(StrEnum):
    """Independently compressed sections of a session snapshot.

    Stored in the database (checkpoint_sections.name).
    """

    CONVERSATION = "conversation"
    TASK = "task"
    FILES = "files"
    TOOLS = "tools"


class LatencyTrend(StrEnum):
    """Direction of recent tool latency."""

    STABLE = "stable"
    INCREASING = "increasing"
    DECREASING = "decreasing"


class RiskTrend(StrEnum):
    """Direction of the risk score across recorded signal history."""

    RISING = "rising"
    FALLING = "falling"
    FLAT = "flat"
