# src/crashguard/core/checkpoint/resume.py
"""ResumeDetector: find a recoverable checkpoint at session start.

Infers why the previous session ended from the newest unrestored
checkpoint and scores how confident an offer to resume should be. The
score only phrases the offer; restoring is always the host's decision.
"""

import warnings
from typing import Any

import structlog

from crashguard.contracts import (
    AmbiguityWarning,
    Checkpoint,
    CheckpointTrigger,
    CorruptCheckpointError,
    CorruptionError,
    IncompatibleCheckpointError,
    InterruptionReason,
    RestoredState,
    ResumeDetection,
    ResumePrompt,
    StorageError,
)
from crashguard.core.checkpoint.codec import decode_section
from crashguard.core.checkpoint.prompt import build_resume_prompt
from crashguard.core.checkpoint.store import CheckpointStore
from crashguard.core.config import ResumeSettings, RiskSettings, TriggerSettings
from crashguard.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)

# Base confidence per trigger; session_end is handled separately.
_TRIGGER_CONFIDENCE: dict[CheckpointTrigger, float] = {
    CheckpointTrigger.RISK_CRITICAL: 0.95,
    CheckpointTrigger.RISK_DANGER: 0.90,
    CheckpointTrigger.TOOL_COUNT_INTERVAL: 0.85,
    CheckpointTrigger.TIME_INTERVAL: 0.80,
    CheckpointTrigger.MANUAL: 0.75,
}

CLEAN_SHUTDOWN_CONFIDENCE = 0.1
_GAP_PENALTY = 0.9
_MIN_AGE_FACTOR = 0.5

_RISK_TRIGGERS = frozenset({CheckpointTrigger.RISK_CRITICAL, CheckpointTrigger.RISK_DANGER})


class ResumeDetector:
    """Detects whether a session should be offered a resume."""

    def __init__(
        self,
        store: CheckpointStore,
        settings: ResumeSettings | None = None,
        *,
        risk_settings: RiskSettings | None = None,
        trigger_settings: TriggerSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._settings = settings if settings is not None else ResumeSettings()
        self._risk_settings = risk_settings if risk_settings is not None else RiskSettings()
        self._trigger_settings = trigger_settings if trigger_settings is not None else TriggerSettings()
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def check_resume(self, session_id: str) -> ResumeDetection:
        """Look for the newest unrestored checkpoint of a session.

        Never raises: storage failures and unreadable records come back as
        a no-resume detection with the problem listed in ``anomalies``.
        """
        try:
            candidates = self._store.get_unrestored_checkpoints(session_id)
        except (StorageError, IncompatibleCheckpointError, CorruptCheckpointError) as e:
            logger.warning("Resume detection failed", session_id=session_id, error=str(e))
            return ResumeDetection(should_resume=False, anomalies=(str(e),))

        if not candidates:
            logger.debug("No unrestored checkpoint", session_id=session_id)
            return ResumeDetection(should_resume=False)

        anomalies: tuple[str, ...] = ()
        if len(candidates) > 1:
            message = (
                f"Session '{session_id}' has {len(candidates)} unrestored checkpoints; using the newest "
                f"({candidates[0].checkpoint_id})"
            )
            warnings.warn(message, AmbiguityWarning, stacklevel=2)
            logger.warning(
                "Multiple unrestored checkpoints",
                session_id=session_id,
                count=len(candidates),
                selected=candidates[0].checkpoint_id,
            )
            anomalies = (message,)

        checkpoint = candidates[0]
        age_seconds = max(0.0, (self._clock.now() - checkpoint.created_at).total_seconds())
        reason = self.infer_interruption_reason(checkpoint)
        confidence = self.calculate_confidence(checkpoint, age_seconds)
        should_resume = reason != InterruptionReason.CLEAN_SHUTDOWN and confidence >= self._settings.min_confidence

        logger.info(
            "Resume candidate found",
            session_id=session_id,
            checkpoint_id=checkpoint.checkpoint_id,
            reason=reason.value,
            confidence=round(confidence, 3),
            should_resume=should_resume,
        )
        return ResumeDetection(
            should_resume=should_resume,
            checkpoint=checkpoint,
            interruption_reason=reason,
            time_since_checkpoint_seconds=age_seconds,
            confidence=confidence,
            prompt=self.generate_resume_prompt(checkpoint, reason),
            anomalies=anomalies,
        )

    def infer_interruption_reason(self, checkpoint: Checkpoint) -> InterruptionReason:
        if checkpoint.trigger == CheckpointTrigger.SESSION_END:
            return InterruptionReason.CLEAN_SHUTDOWN
        if checkpoint.trigger in _RISK_TRIGGERS:
            return InterruptionReason.CRASH
        if checkpoint.signals.session_duration_seconds >= self._risk_settings.session_duration_max_seconds:
            return InterruptionReason.TIMEOUT
        return InterruptionReason.UNKNOWN

    def calculate_confidence(self, checkpoint: Checkpoint, age_seconds: float) -> float:
        """Score in [0, 1] combining trigger type, checkpoint age and gap.

        The age factor falls linearly from 1.0 to 0.5 over
        stale_after_hours. A checkpoint older than one time interval is
        further penalised: work was likely done after it.
        """
        if checkpoint.trigger == CheckpointTrigger.SESSION_END:
            return CLEAN_SHUTDOWN_CONFIDENCE

        base = _TRIGGER_CONFIDENCE[checkpoint.trigger]
        stale_seconds = self._settings.stale_after_hours * 3600.0
        age_factor = 1.0 - (1.0 - _MIN_AGE_FACTOR) * min(age_seconds / stale_seconds, 1.0)
        gap_factor = 1.0 if age_seconds < self._trigger_settings.time_interval_seconds else _GAP_PENALTY
        return min(max(base * age_factor * gap_factor, 0.0), 1.0)

    def generate_resume_prompt(
        self,
        checkpoint: Checkpoint,
        reason: InterruptionReason | None = None,
        restored: RestoredState | None = None,
    ) -> ResumePrompt:
        """Summarise a checkpoint for the host.

        Args:
            checkpoint: Checkpoint to summarise
            reason: Inferred interruption reason (None for a neutral summary)
            restored: Already-decoded state; sections are decoded here otherwise
        """
        sections: dict[str, Any]
        if restored is not None:
            sections = dict(restored.sections)
            lost = restored.lost_sections
        else:
            sections = {}
            lost_list: list[str] = []
            for name, record in checkpoint.sections.items():
                try:
                    sections[name] = decode_section(record)
                except CorruptionError:
                    lost_list.append(name)
            lost = tuple(lost_list)
        # Lost sections stay listed so the recovery line can name them.
        for name in lost:
            sections.setdefault(name, None)
        return build_resume_prompt(
            checkpoint.checkpoint_id,
            sections,
            trigger=checkpoint.trigger,
            created_at=checkpoint.created_at,
            reason=reason,
            lost_sections=lost,
        )
