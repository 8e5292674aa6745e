# src/crashguard/engine/session.py
"""SessionGuard: the host-facing entry point for one chat session.

Wires collector, trigger engine, coordinator, resume detector and
restorer around a single session id. Hosts feed it events and receive
result values; nothing here raises for operational failures.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Self

import structlog

from crashguard.contracts import (
    CheckpointResult,
    CheckpointTrigger,
    RestoredState,
    ResumeDetection,
    SessionCounters,
    SignalHistoryEntry,
    StorageError,
)
from crashguard.core.checkpoint.builder import CheckpointBuilder
from crashguard.core.checkpoint.restore import SessionRestorer
from crashguard.core.checkpoint.resume import ResumeDetector
from crashguard.core.checkpoint.store import CheckpointStore
from crashguard.core.config import CrashGuardSettings
from crashguard.core.retention.sweep import RetentionManager, RetentionResult
from crashguard.core.signals.history import SignalHistoryRepository
from crashguard.core.storage.database import CrashGuardDB
from crashguard.engine.clock import DEFAULT_CLOCK, Clock
from crashguard.engine.collector import SignalCollector
from crashguard.engine.coordinator import CheckpointCoordinator, StateProvider
from crashguard.engine.retry import RetryConfig, RetryManager
from crashguard.engine.triggers import TriggerEngine

logger = structlog.get_logger(__name__)


def is_tool_failure(result: Any) -> bool:
    """Infer failure from a tool result without interpreting its content.

    Exceptions, and mappings carrying a truthy ``is_error`` or ``error``
    key, count as failures.
    """
    if isinstance(result, BaseException):
        return True
    if isinstance(result, Mapping):
        return bool(result.get("is_error")) or bool(result.get("error"))
    return False


class SessionGuard:
    """Crash protection for one session.

    Example:
        guard = SessionGuard.from_settings(settings, "session-42", host.snapshot_state)

        detection = guard.check_resume_at_startup()
        if detection.should_resume and user_accepts(detection.prompt.render()):
            host.apply(guard.restore(detection).sections)

        guard.on_message("user", text)
        guard.on_tool_call("read_file", args, result, latency_ms=42.0)
        guard.on_session_end()
        guard.close()
    """

    def __init__(
        self,
        session_id: str,
        state_provider: StateProvider,
        *,
        collector: SignalCollector,
        engine: TriggerEngine,
        coordinator: CheckpointCoordinator,
        detector: ResumeDetector,
        restorer: SessionRestorer,
        history: SignalHistoryRepository | None = None,
        retention: RetentionManager | None = None,
        db: CrashGuardDB | None = None,
    ) -> None:
        """Initialize from already-built components.

        Args:
            db: Database to close on close(); pass only when this guard owns it
        """
        if not session_id:
            raise ValueError("session_id is required and cannot be empty")
        self._session_id = session_id
        self._state_provider = state_provider
        self._collector = collector
        self._engine = engine
        self._coordinator = coordinator
        self._detector = detector
        self._restorer = restorer
        self._history = history
        self._retention = retention
        self._owned_db = db

    @classmethod
    def from_settings(
        cls,
        settings: CrashGuardSettings,
        session_id: str,
        state_provider: StateProvider,
        *,
        db: CrashGuardDB | None = None,
        clock: Clock | None = None,
    ) -> Self:
        """Build the full component graph for a session.

        Args:
            settings: Validated configuration
            session_id: Session to protect
            state_provider: Returns the current StateSnapshot (or mapping) on demand
            db: Shared database; opened from settings.storage.url (and owned) when None
            clock: Time source (tests inject MockClock)
        """
        clock = clock if clock is not None else DEFAULT_CLOCK
        owned_db = None
        if db is None:
            db = owned_db = CrashGuardDB.from_url(settings.storage.url)

        retry = RetryManager(RetryConfig.from_settings(settings.storage.retry))
        store = CheckpointStore(db, retry, clock=clock)
        history = SignalHistoryRepository(db, retry, clock=clock)
        counters = SessionCounters()
        collector = SignalCollector(settings.risk, counters, clock=clock, window=settings.checkpoint.signal_window)
        engine = TriggerEngine(settings.triggers, collector, counters, clock=clock)
        builder = CheckpointBuilder(settings.checkpoint, clock=clock)
        return cls(
            session_id,
            state_provider,
            collector=collector,
            engine=engine,
            coordinator=CheckpointCoordinator(session_id, builder, store, engine, collector),
            detector=ResumeDetector(
                store,
                settings.resume,
                risk_settings=settings.risk,
                trigger_settings=settings.triggers,
                clock=clock,
            ),
            restorer=SessionRestorer(store, clock=clock),
            history=history,
            retention=RetentionManager(store, history, settings.retention, clock=clock),
            db=owned_db,
        )

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def collector(self) -> SignalCollector:
        return self._collector

    @property
    def coordinator(self) -> CheckpointCoordinator:
        return self._coordinator

    # === Host events ===

    def on_message(self, role: str, text: Any) -> CheckpointResult | None:
        """Record a message and checkpoint if a trigger fires."""
        self._collector.on_message(role, text)
        return self._coordinator.maybe_checkpoint(self._state_provider)

    def on_tool_call(
        self,
        name: str,
        args: Any = None,
        result: Any = None,
        latency_ms: float = 0.0,
    ) -> CheckpointResult | None:
        """Record a tool call and checkpoint if a trigger fires.

        ``args`` is accepted for call-site symmetry and never inspected.
        """
        self._collector.on_tool_call(name, latency_ms, not is_tool_failure(result))
        return self._coordinator.maybe_checkpoint(self._state_provider)

    def on_manual_checkpoint_request(self) -> CheckpointResult | None:
        """Request a checkpoint.

        Returns None when debounced; the request stays pending and fires
        on the next evaluation.
        """
        self._engine.request_manual()
        return self._coordinator.maybe_checkpoint(self._state_provider)

    def on_session_end(self) -> CheckpointResult:
        """Write the final session_end checkpoint, bypassing the debounce gap."""
        self._engine.signal_session_end()
        return self._coordinator.create_checkpoint(self._state_provider, CheckpointTrigger.SESSION_END)

    # === Startup ===

    def check_resume_at_startup(self) -> ResumeDetection:
        return self._detector.check_resume(self._session_id)

    def restore(self, detection: ResumeDetection) -> RestoredState:
        """Restore the checkpoint a detection selected and record the attempt."""
        if detection.checkpoint is None:
            return RestoredState(checkpoint_id="", error="No checkpoint to restore")
        return self._restorer.restore(
            detection.checkpoint.checkpoint_id,
            interruption_reason=detection.interruption_reason,
            confidence=detection.confidence,
        )

    def restore_and_mark(self, checkpoint_id: str, success: bool, fidelity: float) -> bool:
        return self._restorer.restore_and_mark(checkpoint_id, success, fidelity)

    # === Maintenance ===

    def record_signals(self) -> SignalHistoryEntry | None:
        """Persist the current signals to history (None when disabled or unavailable)."""
        if self._history is None:
            return None
        snapshot = self._collector.get_signals()
        try:
            return self._history.record(self._session_id, snapshot, self._collector.assess(snapshot))
        except StorageError as e:
            logger.warning("Signal snapshot not recorded", session_id=self._session_id, error=str(e))
            return None

    def sweep_retention(self) -> RetentionResult | None:
        if self._retention is None:
            return None
        try:
            return self._retention.sweep()
        except StorageError as e:
            logger.warning("Retention sweep failed", error=str(e))
            return None

    def close(self) -> None:
        """Drain queued checkpoints and release an owned database."""
        self._coordinator.close()
        if self._owned_db is not None:
            self._owned_db.close()
            self._owned_db = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
