# src/crashguard/engine/coordinator.py
"""CheckpointCoordinator: ties triggers, builder and store together.

Checkpoint creation never raises into the host. Every failure
(malformed state, size limit, storage outage, a state provider that
blows up) becomes CheckpointResult(success=False) and a log line; the
session keeps running unprotected until the next successful trigger.

Background creation goes through a single-worker executor: a request
that arrives while another is still being written waits behind it and
never touches the store concurrently.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Any

import structlog

from crashguard.contracts import (
    CheckpointResult,
    CheckpointTrigger,
    CrashGuardError,
    SignalSnapshot,
    StateSnapshot,
    TriggerDecision,
)
from crashguard.core.checkpoint.builder import CheckpointBuilder
from crashguard.core.checkpoint.store import CheckpointStore
from crashguard.engine.collector import SignalCollector
from crashguard.engine.triggers import TriggerEngine

logger = structlog.get_logger(__name__)

StateProvider = Callable[[], StateSnapshot | Mapping[str, Any]]

# Creation slower than this is logged as a warning.
LATENCY_BUDGET_MS = 100.0


class CheckpointCoordinator:
    """Creates checkpoints for one session.

    Usage:
        coordinator = CheckpointCoordinator(session_id, builder, store, engine, collector)

        result = coordinator.maybe_checkpoint(lambda: host.snapshot_state())
        if result is not None and not result.success:
            ...  # logged already; keep going
    """

    def __init__(
        self,
        session_id: str,
        builder: CheckpointBuilder,
        store: CheckpointStore,
        engine: TriggerEngine,
        collector: SignalCollector,
    ) -> None:
        self._session_id = session_id
        self._builder = builder
        self._store = store
        self._engine = engine
        self._collector = collector
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._closed = False

    @property
    def session_id(self) -> str:
        return self._session_id

    def should_checkpoint(self) -> TriggerDecision:
        return self._engine.should_checkpoint()

    def create_checkpoint(self, state_provider: StateProvider, reason: CheckpointTrigger) -> CheckpointResult:
        """Capture state now and write a checkpoint synchronously.

        On success the session counters are reset and the current risk
        level is recorded as the checkpointed level. Direct requests
        honour min_gap_seconds like fired triggers; only SESSION_END is
        exempt. A debounced request writes nothing and returns
        success=False with error "debounced".
        """
        if reason != CheckpointTrigger.SESSION_END and self._engine.within_min_gap():
            logger.debug("Checkpoint request debounced", session_id=self._session_id, reason=reason.value)
            return CheckpointResult(success=False, reason=reason, error="debounced")
        return self._create(state_provider, reason)

    def _create(self, state_provider: StateProvider, reason: CheckpointTrigger) -> CheckpointResult:
        start = time.perf_counter()
        captured = self._capture(state_provider, reason)
        if isinstance(captured, CheckpointResult):
            return captured
        state, signals = captured
        result = self._persist(state, signals, reason, start)
        if result.success:
            self._engine.record_checkpoint(reason, self._collector.assess(signals).level)
        return result

    def maybe_checkpoint(self, state_provider: StateProvider) -> CheckpointResult | None:
        """Evaluate triggers and checkpoint if one fires.

        A failed creation rolls the trigger back, so the condition that
        fired is still pending on the next evaluation.

        Returns:
            None when no trigger fired (or it was debounced)
        """
        previous = replace(self._engine.counters)
        decision = self._engine.should_checkpoint()
        if not decision.fire or decision.reason is None:
            return None
        result = self._create(state_provider, decision.reason)
        if not result.success:
            self._engine.rollback(previous)
        return result

    def submit(self, state_provider: StateProvider, reason: CheckpointTrigger) -> Future[CheckpointResult]:
        """Capture state on the caller's thread and write it in the background.

        Counters are reset at submission so the host thread stays the only
        writer of SessionCounters. Requests are written one at a time in
        submission order.

        Raises:
            RuntimeError: If the coordinator is closed
        """
        start = time.perf_counter()
        captured = self._capture(state_provider, reason)
        future: Future[CheckpointResult]
        if isinstance(captured, CheckpointResult):
            future = Future()
            future.set_result(captured)
            return future

        state, signals = captured
        self._engine.record_checkpoint(reason, self._collector.assess(signals).level)
        return self._worker().submit(self._persist, state, signals, reason, start)

    def close(self) -> None:
        """Wait for queued checkpoints and stop the worker."""
        with self._executor_lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def _worker(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._closed:
                raise RuntimeError("CheckpointCoordinator is closed")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"crashguard-{self._session_id}")
            return self._executor

    def _capture(
        self, state_provider: StateProvider, reason: CheckpointTrigger
    ) -> tuple[StateSnapshot | Mapping[str, Any], SignalSnapshot] | CheckpointResult:
        try:
            state = state_provider()
        except Exception as e:  # host code; must not take the session down
            logger.warning(
                "State provider failed",
                session_id=self._session_id,
                reason=reason.value,
                error=f"{type(e).__name__}: {e}",
            )
            return CheckpointResult(success=False, reason=reason, error=f"state provider failed: {type(e).__name__}: {e}")
        return state, self._collector.get_signals()

    def _persist(
        self,
        state: StateSnapshot | Mapping[str, Any],
        signals: SignalSnapshot,
        reason: CheckpointTrigger,
        start: float,
    ) -> CheckpointResult:
        try:
            risk_level = self._collector.assess(signals).level
            checkpoint = self._builder.build(self._session_id, reason, state, signals, risk_level=risk_level)
            checkpoint_id = self._store.save(checkpoint)
        except CrashGuardError as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "Checkpoint creation failed",
                session_id=self._session_id,
                reason=reason.value,
                error_type=type(e).__name__,
                error=str(e),
                duration_ms=round(duration_ms, 2),
            )
            return CheckpointResult(success=False, reason=reason, error=f"{type(e).__name__}: {e}")

        duration_ms = (time.perf_counter() - start) * 1000
        log = logger.warning if duration_ms > LATENCY_BUDGET_MS else logger.info
        log(
            "Checkpoint created",
            session_id=self._session_id,
            checkpoint_id=checkpoint_id,
            reason=reason.value,
            sequence_number=checkpoint.sequence_number,
            total_bytes=checkpoint.total_bytes,
            duration_ms=round(duration_ms, 2),
        )
        return CheckpointResult(success=True, checkpoint_id=checkpoint_id, reason=reason)
