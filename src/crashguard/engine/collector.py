# src/crashguard/engine/collector.py
"""SignalCollector: in-memory session signals and crash-risk assessment.

Everything here runs on the host's hot path, so it only touches
in-memory counters and bounded deques. Malformed input (negative or
non-finite latency, missing content) is clamped rather than rejected.
"""

import math
from collections import deque
from typing import Any

from crashguard.contracts import (
    CONTEXT_USAGE,
    MESSAGE_COUNT,
    RISK_SIGNALS,
    SESSION_DURATION,
    TOOL_FAILURE_RATE,
    LatencyTrend,
    RiskAssessment,
    RiskLevel,
    SessionCounters,
    SignalSnapshot,
)
from crashguard.core.config import RiskSettings
from crashguard.engine.clock import DEFAULT_CLOCK, Clock

# Latency trend: least-squares slope over the last _TREND_WINDOW samples,
# needs at least _TREND_MIN_SAMPLES, and ignores slopes within +/-_TREND_SLOPE ms.
_TREND_WINDOW = 10
_TREND_MIN_SAMPLES = 5
_TREND_SLOPE = 0.1


def estimate_tokens(content: Any, chars_per_token: float = 4.0) -> int:
    """Deterministic token estimate: ceil(characters / chars_per_token).

    An approximation, not a tokenizer. None counts as zero.
    """
    if content is None:
        return 0
    text = content if isinstance(content, str) else str(content)
    return math.ceil(len(text) / chars_per_token)


def _classify(ratio: float, settings: RiskSettings) -> RiskLevel:
    if ratio >= settings.critical_ratio:
        return RiskLevel.CRITICAL
    if ratio >= settings.danger_ratio:
        return RiskLevel.DANGER
    if ratio >= settings.warning_ratio:
        return RiskLevel.WARNING
    return RiskLevel.SAFE


def assess_risk(snapshot: SignalSnapshot, settings: RiskSettings) -> RiskAssessment:
    """Classify a snapshot.

    Each category ratio is current / max and is classified on its own;
    the overall level is the highest category. The tool failure rate only
    counts once min_tool_calls_for_failure_rate calls were observed.
    """
    failure_ratio = 0.0
    if snapshot.tool_call_count >= settings.min_tool_calls_for_failure_rate:
        failure_ratio = snapshot.tool_failure_rate / settings.tool_failure_rate_max

    ratios = {
        CONTEXT_USAGE: snapshot.context_usage / settings.context_usage_max,
        MESSAGE_COUNT: snapshot.message_count / settings.message_count_max,
        TOOL_FAILURE_RATE: failure_ratio,
        SESSION_DURATION: snapshot.session_duration_seconds / settings.session_duration_max_seconds,
    }
    weights = {
        CONTEXT_USAGE: settings.context_weight,
        MESSAGE_COUNT: settings.message_weight,
        TOOL_FAILURE_RATE: settings.failure_weight,
        SESSION_DURATION: settings.duration_weight,
    }

    levels = {name: _classify(ratios[name], settings) for name in RISK_SIGNALS}
    overall = max(levels.values(), key=lambda level: level.severity)
    triggered = tuple(name for name in RISK_SIGNALS if levels[name].severity >= RiskLevel.WARNING.severity)
    score = sum(weights[name] * min(max(ratios[name], 0.0), 1.0) for name in RISK_SIGNALS)

    return RiskAssessment(level=overall, triggered_signals=triggered, ratios=ratios, score=score)


def _latency_trend(latencies: list[float]) -> LatencyTrend:
    recent = latencies[-_TREND_WINDOW:]
    n = len(recent)
    if n < _TREND_MIN_SAMPLES:
        return LatencyTrend.STABLE
    mean_x = (n - 1) / 2
    mean_y = sum(recent) / n
    numerator = sum((x - mean_x) * (y - mean_y) for x, y in enumerate(recent))
    denominator = sum((x - mean_x) ** 2 for x in range(n))
    slope = numerator / denominator
    if slope > _TREND_SLOPE:
        return LatencyTrend.INCREASING
    if slope < -_TREND_SLOPE:
        return LatencyTrend.DECREASING
    return LatencyTrend.STABLE


class SignalCollector:
    """Tracks observable signals for one session.

    The collector writes into the shared SessionCounters; only the
    TriggerEngine (or reset_counter_since_checkpoint) resets them.

    Example:
        counters = SessionCounters()
        collector = SignalCollector(RiskSettings(), counters)

        collector.on_message("user", "hello")
        collector.on_tool_call("read_file", latency_ms=12.0, success=True)
        risk = collector.get_crash_risk()
    """

    def __init__(
        self,
        settings: RiskSettings | None = None,
        counters: SessionCounters | None = None,
        *,
        clock: Clock | None = None,
        window: int = 50,
    ) -> None:
        if window < 1:
            raise ValueError(f"window must be >= 1, got {window}")
        self._settings = settings if settings is not None else RiskSettings()
        self._counters = counters if counters is not None else SessionCounters()
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._started_at = self._clock.monotonic()
        if self._counters.last_checkpoint_at is None:
            self._counters.last_checkpoint_at = self._started_at

        self._message_count = 0
        self._estimated_tokens = 0
        self._tool_call_count = 0
        self._consecutive_failures = 0
        self._tool_results: deque[bool] = deque(maxlen=window)
        self._latencies: deque[float] = deque(maxlen=window)
        self._history: deque[SignalSnapshot] = deque(maxlen=window)

    @property
    def counters(self) -> SessionCounters:
        return self._counters

    @property
    def settings(self) -> RiskSettings:
        return self._settings

    @property
    def history(self) -> list[SignalSnapshot]:
        """Recent snapshots, newest last."""
        return list(self._history)

    def on_message(self, role: str, content: Any) -> None:
        """Count a message and add its estimated tokens to context usage."""
        self._message_count += 1
        self._estimated_tokens += estimate_tokens(content, self._settings.chars_per_token)
        self._counters.messages_since_checkpoint += 1

    def on_tool_call(self, name: str, latency_ms: float, success: bool) -> None:
        """Record a tool call outcome and its latency."""
        latency = float(latency_ms) if isinstance(latency_ms, int | float) else 0.0
        if not math.isfinite(latency) or latency < 0:
            latency = 0.0

        self._tool_call_count += 1
        self._tool_results.append(bool(success))
        self._latencies.append(latency)
        self._consecutive_failures = 0 if success else self._consecutive_failures + 1
        self._counters.tool_calls_since_checkpoint += 1

    def get_signals(self) -> SignalSnapshot:
        """Capture the current signals and append them to the history."""
        results = self._tool_results
        failure_rate = (sum(1 for ok in results if not ok) / len(results)) if results else 0.0
        latencies = list(self._latencies)
        snapshot = SignalSnapshot(
            captured_at=self._clock.now(),
            session_duration_seconds=max(0.0, self._clock.monotonic() - self._started_at),
            message_count=self._message_count,
            estimated_tokens=self._estimated_tokens,
            context_usage=self._estimated_tokens / self._settings.context_budget_tokens,
            tool_call_count=self._tool_call_count,
            tool_calls_since_checkpoint=self._counters.tool_calls_since_checkpoint,
            tool_failure_rate=failure_rate,
            consecutive_tool_failures=self._consecutive_failures,
            avg_tool_latency_ms=(sum(latencies) / len(latencies)) if latencies else 0.0,
            latency_trend=_latency_trend(latencies),
        )
        self._history.append(snapshot)
        return snapshot

    def assess(self, snapshot: SignalSnapshot) -> RiskAssessment:
        return assess_risk(snapshot, self._settings)

    def get_crash_risk(self) -> RiskAssessment:
        return self.assess(self.get_signals())

    def reset_counter_since_checkpoint(self) -> None:
        self._counters.reset(self._clock.monotonic())
