"""Signal and risk contracts.

SignalSnapshot and RiskAssessment are immutable values produced by the
SignalCollector. SessionCounters is the one piece of mutable per-session
state: it is owned by the host session, fed by the collector, and reset
by the TriggerEngine when a checkpoint fires.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from crashguard.contracts.enums import CheckpointTrigger, LatencyTrend, RiskLevel

# Signal names reported in RiskAssessment.triggered_signals.
CONTEXT_USAGE = "context_usage"
MESSAGE_COUNT = "message_count"
TOOL_FAILURE_RATE = "tool_failure_rate"
SESSION_DURATION = "session_duration"

RISK_SIGNALS: tuple[str, ...] = (CONTEXT_USAGE, MESSAGE_COUNT, TOOL_FAILURE_RATE, SESSION_DURATION)


@dataclass
class SessionCounters:
    """Since-last-checkpoint counters for one session.

    Attributes:
        messages_since_checkpoint: Messages observed since the last reset
        tool_calls_since_checkpoint: Tool calls observed since the last reset
        last_checkpoint_at: Monotonic time of the last reset (session start until
            the first checkpoint; None until a collector is attached)
        last_checkpoint_risk: Risk level recorded at the last checkpoint
        last_fire_at: Monotonic time the TriggerEngine last fired (debounce)
        manual_requested: A manual checkpoint is pending
        session_ended: The host signalled session end
    """

    messages_since_checkpoint: int = 0
    tool_calls_since_checkpoint: int = 0
    last_checkpoint_at: float | None = None
    last_checkpoint_risk: RiskLevel = RiskLevel.SAFE
    last_fire_at: float | None = None
    manual_requested: bool = False
    session_ended: bool = False

    def reset(self, at: float, risk: RiskLevel | None = None) -> None:
        """Clear since-checkpoint counters after a checkpoint.

        Args:
            at: Monotonic time of the checkpoint
            risk: Risk level in effect when the checkpoint was taken
        """
        self.messages_since_checkpoint = 0
        self.tool_calls_since_checkpoint = 0
        self.last_checkpoint_at = at
        if risk is not None:
            self.last_checkpoint_risk = risk


@dataclass(frozen=True)
class SignalSnapshot:
    """Point-in-time view of the observable session signals."""

    captured_at: datetime
    session_duration_seconds: float
    message_count: int
    estimated_tokens: int
    context_usage: float  # fraction of the configured context budget
    tool_call_count: int
    tool_calls_since_checkpoint: int
    tool_failure_rate: float
    consecutive_tool_failures: int = 0
    avg_tool_latency_ms: float = 0.0
    latency_trend: LatencyTrend = LatencyTrend.STABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "captured_at": self.captured_at,
            "session_duration_seconds": self.session_duration_seconds,
            "message_count": self.message_count,
            "estimated_tokens": self.estimated_tokens,
            "context_usage": self.context_usage,
            "tool_call_count": self.tool_call_count,
            "tool_calls_since_checkpoint": self.tool_calls_since_checkpoint,
            "tool_failure_rate": self.tool_failure_rate,
            "consecutive_tool_failures": self.consecutive_tool_failures,
            "avg_tool_latency_ms": self.avg_tool_latency_ms,
            "latency_trend": self.latency_trend.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignalSnapshot":
        """Rebuild from to_dict() output.

        Direct key access: these dicts are written by us, a missing key is
        a bug or corruption and must raise.
        """
        return cls(
            captured_at=data["captured_at"],
            session_duration_seconds=float(data["session_duration_seconds"]),
            message_count=int(data["message_count"]),
            estimated_tokens=int(data["estimated_tokens"]),
            context_usage=float(data["context_usage"]),
            tool_call_count=int(data["tool_call_count"]),
            tool_calls_since_checkpoint=int(data["tool_calls_since_checkpoint"]),
            tool_failure_rate=float(data["tool_failure_rate"]),
            consecutive_tool_failures=int(data["consecutive_tool_failures"]),
            avg_tool_latency_ms=float(data["avg_tool_latency_ms"]),
            latency_trend=LatencyTrend(data["latency_trend"]),
        )


@dataclass(frozen=True)
class RiskAssessment:
    """Crash-risk classification of a SignalSnapshot.

    Attributes:
        level: Highest classification across all categories
        triggered_signals: Categories at or above warning, in RISK_SIGNALS order
        ratios: Per-category current/max ratio (unclamped)
        score: Weighted sum of clamped ratios, for diagnostics only
    """

    level: RiskLevel
    triggered_signals: tuple[str, ...] = ()
    ratios: dict[str, float] = field(default_factory=dict)
    score: float = 0.0


@dataclass(frozen=True)
class TriggerDecision:
    """Result of TriggerEngine.should_checkpoint()."""

    fire: bool
    reason: CheckpointTrigger | None
    risk: RiskAssessment
    debounced: bool = False

    def __post_init__(self) -> None:
        if self.fire and self.reason is None:
            raise ValueError("fire=True must carry a reason")
        if not self.fire and self.reason is not None:
            raise ValueError("fire=False must not carry a reason")


@dataclass(frozen=True)
class SignalHistoryEntry:
    """A persisted signal snapshot with the risk assessed at the time."""

    snapshot_id: str
    session_id: str
    sequence_number: int
    snapshot: SignalSnapshot
    risk_level: RiskLevel
    risk_score: float
    triggered_signals: tuple[str, ...] = ()
