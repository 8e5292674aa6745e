# src/crashguard/core/checkpoint/restore.py
"""SessionRestorer: rebuild session state from a checkpoint.

Each section is decoded on its own. A section that fails its checksum or
decompression is reported as lost and the rest are still returned, with
fidelity reduced in proportion.
"""

from typing import Any

import structlog

from crashguard.contracts import (
    Checkpoint,
    CorruptCheckpointError,
    CorruptionError,
    IncompatibleCheckpointError,
    InterruptionReason,
    RestoredState,
    StorageError,
)
from crashguard.core.checkpoint.codec import decode_section
from crashguard.core.checkpoint.store import CheckpointStore
from crashguard.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)


class SessionRestorer:
    """Restores checkpoints and records the outcome.

    Usage:
        restorer = SessionRestorer(store)

        state = restorer.restore_state(checkpoint_id)
        if state.fidelity > 0:
            host.apply(state.sections)
            restorer.restore_and_mark(checkpoint_id, True, state.fidelity)
    """

    def __init__(self, store: CheckpointStore, *, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def load_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        """Load a checkpoint without decoding its sections.

        Raises:
            IncompatibleCheckpointError: If written by a newer schema version
            CorruptCheckpointError: If the checkpoint row is unreadable
            StorageError: If the database is unavailable
        """
        return self._store.get_by_id(checkpoint_id)

    def load_most_recent(self, session_id: str) -> Checkpoint | None:
        """Load the newest checkpoint of a session, restored or not."""
        return self._store.get_most_recent(session_id)

    @staticmethod
    def calculate_fidelity(present: int, restored: int) -> float:
        """Fraction of present sections that decoded, in [0, 1]."""
        if present <= 0:
            return 0.0
        return min(max(restored / present, 0.0), 1.0)

    def decode(self, checkpoint: Checkpoint) -> RestoredState:
        """Decode every section of an already loaded checkpoint."""
        sections: dict[str, Any] = {}
        lost: list[str] = []
        for name in sorted(checkpoint.sections):
            try:
                sections[name] = decode_section(checkpoint.sections[name])
            except CorruptionError as e:
                logger.warning(
                    "Section lost",
                    checkpoint_id=checkpoint.checkpoint_id,
                    section=e.section,
                    error=str(e),
                )
                lost.append(name)

        return RestoredState(
            checkpoint_id=checkpoint.checkpoint_id,
            sections=sections,
            lost_sections=tuple(lost),
            fidelity=self.calculate_fidelity(len(checkpoint.sections), len(sections)),
        )

    def restore_state(self, checkpoint_id: str) -> RestoredState:
        """Decode a checkpoint into session state.

        Read-only and repeatable. Never raises: a missing, unreadable or
        incompatible checkpoint yields fidelity 0 with ``error`` set.
        """
        try:
            checkpoint = self._store.get_by_id(checkpoint_id)
        except (StorageError, IncompatibleCheckpointError, CorruptCheckpointError) as e:
            logger.warning("Checkpoint unavailable", checkpoint_id=checkpoint_id, error=str(e))
            return RestoredState(checkpoint_id=checkpoint_id, error=str(e))

        if checkpoint is None:
            return RestoredState(checkpoint_id=checkpoint_id, error=f"Checkpoint '{checkpoint_id}' not found")

        state = self.decode(checkpoint)
        logger.info(
            "Checkpoint decoded",
            checkpoint_id=checkpoint_id,
            fidelity=round(state.fidelity, 3),
            lost_sections=list(state.lost_sections),
        )
        return state

    def restore_and_mark(self, checkpoint_id: str, success: bool, fidelity: float) -> bool:
        """Attach the restoration outcome once.

        Returns:
            True if marked by this call, False if already marked, unknown,
            or the database was unavailable
        """
        try:
            return self._store.mark_restored(checkpoint_id, success, fidelity)
        except StorageError as e:
            logger.error("Could not mark checkpoint restored", checkpoint_id=checkpoint_id, error=str(e))
            return False

    def restore(
        self,
        checkpoint_id: str,
        *,
        interruption_reason: InterruptionReason = InterruptionReason.UNKNOWN,
        confidence: float = 0.0,
    ) -> RestoredState:
        """Restore, mark the checkpoint once, and record a resume event.

        A repeated call decodes again and records another event, but the
        first restoration outcome stays attached.
        """
        try:
            checkpoint = self._store.get_by_id(checkpoint_id)
        except (StorageError, IncompatibleCheckpointError, CorruptCheckpointError) as e:
            logger.warning("Checkpoint unavailable", checkpoint_id=checkpoint_id, error=str(e))
            return RestoredState(checkpoint_id=checkpoint_id, error=str(e))
        if checkpoint is None:
            return RestoredState(checkpoint_id=checkpoint_id, error=f"Checkpoint '{checkpoint_id}' not found")

        state = self.decode(checkpoint)
        success = state.fidelity > 0.0
        self.restore_and_mark(checkpoint_id, success, state.fidelity)

        age_seconds = (self._clock.now() - checkpoint.created_at).total_seconds()
        try:
            self._store.record_resume_event(
                checkpoint,
                interruption_reason=interruption_reason,
                time_since_checkpoint_seconds=age_seconds,
                confidence=confidence,
                success=success,
                fidelity=state.fidelity,
                lost_sections=state.lost_sections,
            )
        except StorageError as e:
            logger.error("Could not record resume event", checkpoint_id=checkpoint_id, error=str(e))

        logger.info(
            "Session restored",
            session_id=checkpoint.session_id,
            checkpoint_id=checkpoint_id,
            fidelity=round(state.fidelity, 3),
            lost_sections=list(state.lost_sections),
        )
        return state
