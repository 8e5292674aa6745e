# src/crashguard/core/retention/sweep.py
"""Retention sweep for checkpoints and signal history.

Checkpoints older than the retention age are deleted except for the
newest keep_last_n of every session. Signal history has its own, usually
shorter, age limit. Resume events are never swept.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from time import perf_counter

import structlog

from crashguard.core.checkpoint.store import CheckpointStore
from crashguard.core.config import RetentionSettings
from crashguard.core.signals.history import SignalHistoryRepository
from crashguard.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetentionResult:
    """Result of a retention sweep."""

    deleted_checkpoints: int
    deleted_snapshots: int
    duration_seconds: float


class RetentionManager:
    """Applies the retention policy to the checkpoint database."""

    def __init__(
        self,
        store: CheckpointStore,
        history: SignalHistoryRepository | None = None,
        settings: RetentionSettings | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        """Initialize RetentionManager.

        Args:
            store: Checkpoint store to sweep
            history: Signal history to prune (skipped when None)
            settings: Retention ages and keep_last_n
            clock: Reference time source when sweep() gets no as_of
        """
        self._store = store
        self._history = history
        self._settings = settings if settings is not None else RetentionSettings()
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def sweep(self, as_of: datetime | None = None) -> RetentionResult:
        """Delete expired checkpoints and signal snapshots.

        Args:
            as_of: Reference datetime for cutoff calculation (defaults to now)

        Raises:
            StorageError: If the database stays unavailable after retries
        """
        if as_of is None:
            as_of = self._clock.now()
        start = perf_counter()

        deleted_checkpoints = self._store.delete_older_than(
            timedelta(days=self._settings.max_age_days),
            self._settings.keep_last_n,
            as_of=as_of,
        )
        deleted_snapshots = 0
        if self._history is not None:
            deleted_snapshots = self._history.prune_older_than(
                timedelta(days=self._settings.signal_history_days),
                as_of=as_of,
            )

        result = RetentionResult(
            deleted_checkpoints=deleted_checkpoints,
            deleted_snapshots=deleted_snapshots,
            duration_seconds=perf_counter() - start,
        )
        logger.info(
            "Retention sweep complete",
            deleted_checkpoints=result.deleted_checkpoints,
            deleted_snapshots=result.deleted_snapshots,
            duration_ms=round(result.duration_seconds * 1000, 2),
        )
        return result
