# src/crashguard/engine/triggers.py
"""TriggerEngine: decides when a checkpoint should be taken.

Conditions are evaluated in a fixed priority order and the first match
wins:

1. critical risk
2. danger risk
3. tool-call interval
4. time interval
5. manual request
6. session end

A risk condition fires when the level escalated past the level recorded
at the last checkpoint, or when it has stayed elevated for at least
risk_interval_seconds since then. Warning never fires on its own.
"""

import structlog

from crashguard.contracts import (
    CheckpointTrigger,
    RiskAssessment,
    RiskLevel,
    SessionCounters,
    TriggerDecision,
)
from crashguard.core.config import TriggerSettings
from crashguard.engine.clock import DEFAULT_CLOCK, Clock
from crashguard.engine.collector import SignalCollector

logger = structlog.get_logger(__name__)

_RISK_TRIGGERS: dict[RiskLevel, CheckpointTrigger] = {
    RiskLevel.CRITICAL: CheckpointTrigger.RISK_CRITICAL,
    RiskLevel.DANGER: CheckpointTrigger.RISK_DANGER,
}


class TriggerEngine:
    """Evaluates trigger conditions against the session counters.

    Firing resets the counters, so each returned fire=True decision is
    consumed: the host is expected to create the checkpoint it asks for,
    or call rollback() when that checkpoint could not be written.
    """

    def __init__(
        self,
        settings: TriggerSettings | None,
        collector: SignalCollector,
        counters: SessionCounters | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings if settings is not None else TriggerSettings()
        self._collector = collector
        self._counters = counters if counters is not None else collector.counters
        if self._counters is not collector.counters:
            raise ValueError("TriggerEngine and SignalCollector must share one SessionCounters instance")
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        if self._counters.last_checkpoint_at is None:
            self._counters.last_checkpoint_at = self._clock.monotonic()

    @property
    def counters(self) -> SessionCounters:
        return self._counters

    def request_manual(self) -> None:
        self._counters.manual_requested = True

    def signal_session_end(self) -> None:
        self._counters.session_ended = True

    def should_checkpoint(self) -> TriggerDecision:
        """Evaluate all conditions once.

        Returns:
            fire=True with the highest-priority reason, or fire=False. A
            match within min_gap_seconds of the previous fire is
            suppressed and reported with debounced=True.
        """
        risk = self._collector.get_crash_risk()
        now = self._clock.monotonic()
        reason = self._evaluate(risk, now)
        if reason is None:
            return TriggerDecision(fire=False, reason=None, risk=risk)

        if self.within_min_gap():
            logger.debug("Checkpoint trigger debounced", reason=reason.value)
            return TriggerDecision(fire=False, reason=None, risk=risk, debounced=True)

        self.record_checkpoint(reason, risk.level)
        logger.debug("Checkpoint trigger fired", reason=reason.value, risk=risk.level.value)
        return TriggerDecision(fire=True, reason=reason, risk=risk)

    def within_min_gap(self) -> bool:
        """True while the previous fire is less than min_gap_seconds old."""
        last_fire = self._counters.last_fire_at
        return last_fire is not None and self._clock.monotonic() - last_fire < self._settings.min_gap_seconds

    def record_checkpoint(self, reason: CheckpointTrigger, risk: RiskLevel | None = None) -> None:
        """Reset counters as if a checkpoint for ``reason`` was just taken.

        Used for fired decisions and for checkpoints forced outside
        should_checkpoint() (manual, session end).
        """
        now = self._clock.monotonic()
        self._counters.reset(now, risk)
        self._counters.last_fire_at = now
        self._counters.manual_requested = False
        if reason == CheckpointTrigger.SESSION_END:
            self._counters.session_ended = False

    def rollback(self, previous: SessionCounters) -> None:
        """Undo a fire whose checkpoint was never written.

        Restores the counters, risk level and pending flags captured
        before should_checkpoint(), so the same condition fires again.
        last_fire_at is kept: the retry still honours min_gap_seconds.
        """
        counters = self._counters
        counters.messages_since_checkpoint = previous.messages_since_checkpoint
        counters.tool_calls_since_checkpoint = previous.tool_calls_since_checkpoint
        counters.last_checkpoint_at = previous.last_checkpoint_at
        counters.last_checkpoint_risk = previous.last_checkpoint_risk
        counters.manual_requested = previous.manual_requested
        counters.session_ended = previous.session_ended
        logger.debug("Checkpoint trigger rolled back", tool_calls_since_checkpoint=counters.tool_calls_since_checkpoint)

    def _evaluate(self, risk: RiskAssessment, now: float) -> CheckpointTrigger | None:
        counters = self._counters
        last_checkpoint = counters.last_checkpoint_at if counters.last_checkpoint_at is not None else now
        since_checkpoint = now - last_checkpoint

        risk_reason = _RISK_TRIGGERS.get(risk.level)
        if risk_reason is not None:
            escalated = risk.level.severity > counters.last_checkpoint_risk.severity
            sustained = since_checkpoint >= self._settings.risk_interval_seconds
            if escalated or sustained:
                return risk_reason

        if counters.tool_calls_since_checkpoint >= self._settings.tool_call_interval:
            return CheckpointTrigger.TOOL_COUNT_INTERVAL
        if since_checkpoint >= self._settings.time_interval_seconds:
            return CheckpointTrigger.TIME_INTERVAL
        if counters.manual_requested:
            return CheckpointTrigger.MANUAL
        if counters.session_ended:
            return CheckpointTrigger.SESSION_END
        return None
