# tests/engine/test_coordinator.py
"""Tests for CheckpointCoordinator: failure isolation and background writes."""

import secrets
from typing import Any

import pytest

from crashguard.contracts import CheckpointTrigger, RiskLevel, StateSnapshot
from crashguard.core.checkpoint.builder import CheckpointBuilder
from crashguard.core.checkpoint.store import CheckpointStore
from crashguard.core.config import CheckpointSettings, RiskSettings
from crashguard.core.storage.database import CrashGuardDB
from crashguard.core.storage.schema import metadata
from crashguard.engine.clock import MockClock
from crashguard.engine.collector import SignalCollector
from crashguard.engine.coordinator import CheckpointCoordinator
from crashguard.engine.triggers import TriggerEngine
from tests.fixtures.factories import make_state


def _make_coordinator(
    store: CheckpointStore,
    clock: MockClock,
    settings: CheckpointSettings | None = None,
    risk: RiskSettings | None = None,
) -> tuple[CheckpointCoordinator, SignalCollector]:
    collector = SignalCollector(risk, clock=clock)
    engine = TriggerEngine(None, collector, clock=clock)
    builder = CheckpointBuilder(settings, clock=clock)
    return CheckpointCoordinator("session-1", builder, store, engine, collector), collector


def _state() -> StateSnapshot:
    return make_state()


def _broken() -> StateSnapshot:
    raise RuntimeError("host state unavailable")


class TestCreateCheckpoint:
    def test_success(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, collector = _make_coordinator(store, clock)
        collector.on_tool_call("read_file", 5.0, True)
        collector.on_tool_call("read_file", 5.0, True)

        result = coordinator.create_checkpoint(_state, CheckpointTrigger.MANUAL)

        assert result.success is True
        assert result.reason == CheckpointTrigger.MANUAL
        assert result.checkpoint_id is not None
        saved = store.get_by_id(result.checkpoint_id)
        assert saved is not None
        assert saved.signals.tool_call_count == 2
        assert collector.counters.tool_calls_since_checkpoint == 0

    def test_state_provider_failure(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, _ = _make_coordinator(store, clock)

        def broken() -> StateSnapshot:
            raise RuntimeError("host state unavailable")

        result = coordinator.create_checkpoint(broken, CheckpointTrigger.MANUAL)

        assert result.success is False
        assert result.error == "state provider failed: RuntimeError: host state unavailable"
        assert store.list_by_session("session-1") == []

    def test_malformed_state(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, _ = _make_coordinator(store, clock)

        result = coordinator.create_checkpoint(lambda: {"scratchpad": {}}, CheckpointTrigger.MANUAL)

        assert result.success is False
        assert result.error is not None
        assert result.error.startswith("ValidationError:")

    def test_size_limit(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, _ = _make_coordinator(store, clock, CheckpointSettings(max_checkpoint_bytes=2_048))
        state = {"conversation": {"summary": secrets.token_hex(4_096)}}

        result = coordinator.create_checkpoint(lambda: state, CheckpointTrigger.RISK_CRITICAL)

        assert result.success is False
        assert result.error is not None
        assert result.error.startswith("SerializationError:")
        assert store.list_by_session("session-1") == []

    def test_storage_outage_keeps_counters(self, db: CrashGuardDB, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, collector = _make_coordinator(store, clock)
        collector.on_tool_call("read_file", 5.0, True)
        metadata.drop_all(db.engine)

        result = coordinator.create_checkpoint(_state, CheckpointTrigger.MANUAL)

        assert result.success is False
        assert result.error is not None
        assert result.error.startswith("StorageError:")
        assert collector.counters.tool_calls_since_checkpoint == 1

    def test_direct_requests_debounced(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, _ = _make_coordinator(store, clock)

        first = coordinator.create_checkpoint(_state, CheckpointTrigger.MANUAL)
        second = coordinator.create_checkpoint(_state, CheckpointTrigger.MANUAL)
        clock.advance(2.0)
        third = coordinator.create_checkpoint(_state, CheckpointTrigger.MANUAL)

        assert first.success is True
        assert second.success is False
        assert second.error == "debounced"
        assert third.success is True
        assert len(store.list_by_session("session-1")) == 2

    def test_session_end_ignores_min_gap(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, _ = _make_coordinator(store, clock)

        coordinator.create_checkpoint(_state, CheckpointTrigger.MANUAL)
        result = coordinator.create_checkpoint(_state, CheckpointTrigger.SESSION_END)

        assert result.success is True
        assert len(store.list_by_session("session-1")) == 2


class TestMaybeCheckpoint:
    def test_none_without_trigger(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, _ = _make_coordinator(store, clock)

        assert coordinator.maybe_checkpoint(_state) is None

    def test_fires_on_tool_interval(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, collector = _make_coordinator(store, clock)
        for _ in range(5):
            collector.on_tool_call("read_file", 5.0, True)

        result = coordinator.maybe_checkpoint(_state)

        assert result is not None
        assert result.success is True
        assert result.reason == CheckpointTrigger.TOOL_COUNT_INTERVAL
        assert coordinator.should_checkpoint().fire is False

    def test_failed_risk_checkpoint_fires_again(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, collector = _make_coordinator(store, clock, risk=RiskSettings(message_count_max=10))
        for _ in range(10):
            collector.on_message("user", "hi")

        failed = coordinator.maybe_checkpoint(_broken)
        clock.advance(2.0)
        retried = coordinator.maybe_checkpoint(_state)

        assert failed is not None
        assert failed.success is False
        assert failed.reason == CheckpointTrigger.RISK_CRITICAL
        assert retried is not None
        assert retried.success is True
        assert retried.reason == CheckpointTrigger.RISK_CRITICAL
        assert collector.counters.last_checkpoint_risk == RiskLevel.CRITICAL
        assert [cp.checkpoint_id for cp in store.list_by_risk(RiskLevel.CRITICAL)] == [retried.checkpoint_id]

    def test_failed_interval_checkpoint_keeps_counters(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, collector = _make_coordinator(store, clock)
        for _ in range(5):
            collector.on_tool_call("read_file", 5.0, True)

        failed = coordinator.maybe_checkpoint(_broken)

        assert failed is not None
        assert failed.success is False
        assert collector.counters.tool_calls_since_checkpoint == 5
        assert collector.counters.last_checkpoint_risk == RiskLevel.SAFE
        assert coordinator.maybe_checkpoint(_state) is None  # still inside min_gap

        clock.advance(2.0)
        collector.on_tool_call("read_file", 5.0, True)
        retried = coordinator.maybe_checkpoint(_state)

        assert retried is not None
        assert retried.success is True
        assert retried.reason == CheckpointTrigger.TOOL_COUNT_INTERVAL
        assert collector.counters.tool_calls_since_checkpoint == 0

    def test_failed_manual_checkpoint_stays_pending(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, collector = _make_coordinator(store, clock)
        collector.counters.manual_requested = True

        failed = coordinator.maybe_checkpoint(_broken)

        assert failed is not None
        assert failed.reason == CheckpointTrigger.MANUAL
        assert collector.counters.manual_requested is True


class TestSubmit:
    def test_background_writes_in_order(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, collector = _make_coordinator(store, clock)
        futures = []
        for index in range(3):
            collector.on_tool_call("read_file", 5.0, True)
            futures.append(coordinator.submit(lambda i=index: {"task": {"step": i}}, CheckpointTrigger.MANUAL))
        coordinator.close()

        results = [future.result(timeout=5) for future in futures]
        saved = store.list_by_session("session-1")

        assert all(result.success for result in results)
        assert [cp.checkpoint_id for cp in saved] == [result.checkpoint_id for result in results]
        assert collector.counters.tool_calls_since_checkpoint == 0

    def test_provider_failure_returns_completed_future(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, _ = _make_coordinator(store, clock)

        def broken() -> dict[str, Any]:
            raise KeyError("task")

        future = coordinator.submit(broken, CheckpointTrigger.MANUAL)

        assert future.done()
        assert future.result().success is False
        coordinator.close()

    def test_submit_after_close(self, store: CheckpointStore, clock: MockClock) -> None:
        coordinator, _ = _make_coordinator(store, clock)
        coordinator.close()

        with pytest.raises(RuntimeError, match="closed"):
            coordinator.submit(_state, CheckpointTrigger.MANUAL)
