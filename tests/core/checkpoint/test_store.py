# tests/core/checkpoint/test_store.py
"""Tests for CheckpointStore persistence, supersede discipline and retention."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from crashguard.contracts import (
    CheckpointStatus,
    CheckpointTrigger,
    CorruptCheckpointError,
    IncompatibleCheckpointError,
    InterruptionReason,
    RiskLevel,
    StorageError,
)
from crashguard.core.checkpoint.builder import CheckpointBuilder
from crashguard.core.checkpoint.codec import decode_section
from crashguard.core.checkpoint.store import CheckpointStore
from crashguard.core.storage.database import CrashGuardDB
from crashguard.core.storage.schema import checkpoint_sections_table, metadata
from crashguard.engine.clock import MockClock
from tests.fixtures.factories import WALL_START, make_signals, make_state, save_checkpoint
from tests.fixtures.storage import update_checkpoint_row


class TestSave:
    def test_round_trip(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        signals = make_signals(consecutive_tool_failures=1, avg_tool_latency_ms=42.0)
        saved = save_checkpoint(store, builder, trigger=CheckpointTrigger.RISK_DANGER, signals=signals)

        loaded = store.get_by_id(saved.checkpoint_id)

        assert loaded is not None
        assert loaded.session_id == "session-1"
        assert loaded.trigger == CheckpointTrigger.RISK_DANGER
        assert loaded.created_at == WALL_START
        assert loaded.signals == signals
        assert loaded.resume_prompt == saved.resume_prompt
        assert loaded.total_bytes == saved.total_bytes
        assert set(loaded.sections) == set(saved.sections)
        assert decode_section(loaded.sections["files"]) == make_state().files

    def test_sequence_numbers_per_session(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        first = save_checkpoint(store, builder)
        second = save_checkpoint(store, builder)
        other = save_checkpoint(store, builder, session_id="session-2")

        assert (first.sequence_number, second.sequence_number) == (1, 2)
        assert other.sequence_number == 1
        assert store.next_sequence_number("session-1") == 3
        assert store.next_sequence_number("unknown") == 1

    def test_save_supersedes_previous_unrestored(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        first = save_checkpoint(store, builder)
        second = save_checkpoint(store, builder)

        unrestored = store.get_unrestored_checkpoints("session-1")
        reloaded_first = store.get_by_id(first.checkpoint_id)

        assert [cp.checkpoint_id for cp in unrestored] == [second.checkpoint_id]
        assert reloaded_first is not None
        assert reloaded_first.status == CheckpointStatus.SUPERSEDED

    def test_save_leaves_restored_checkpoint_alone(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        first = save_checkpoint(store, builder)
        store.mark_restored(first.checkpoint_id, True, 1.0)

        save_checkpoint(store, builder)

        reloaded = store.get_by_id(first.checkpoint_id)
        assert reloaded is not None
        assert reloaded.status == CheckpointStatus.RESTORED

    def test_other_sessions_not_superseded(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        save_checkpoint(store, builder, session_id="session-1")
        save_checkpoint(store, builder, session_id="session-2")

        assert store.get_unrestored_checkpoint("session-1") is not None
        assert store.get_unrestored_checkpoint("session-2") is not None

    def test_storage_failure_raises_storage_error(
        self, db: CrashGuardDB, store: CheckpointStore, builder: CheckpointBuilder
    ) -> None:
        metadata.drop_all(db.engine)
        checkpoint = builder.build("session-1", CheckpointTrigger.MANUAL, make_state(), make_signals())

        with pytest.raises(StorageError) as exc_info:
            store.save(checkpoint)

        assert exc_info.value.operation == "save"
        assert exc_info.value.attempts == 1


class TestQueries:
    def test_get_by_id_unknown(self, store: CheckpointStore) -> None:
        assert store.get_by_id("cp-missing") is None

    def test_most_recent_and_listing(
        self, store: CheckpointStore, builder: CheckpointBuilder, clock: MockClock
    ) -> None:
        ids = []
        for _ in range(3):
            ids.append(save_checkpoint(store, builder).checkpoint_id)
            clock.advance(60.0)

        most_recent = store.get_most_recent("session-1")

        assert most_recent is not None
        assert most_recent.checkpoint_id == ids[-1]
        assert [cp.checkpoint_id for cp in store.list_by_session("session-1")] == ids
        assert store.list_by_session("nobody") == []

    def test_newer_schema_version_rejected(
        self, db: CrashGuardDB, store: CheckpointStore, builder: CheckpointBuilder
    ) -> None:
        saved = save_checkpoint(store, builder)
        update_checkpoint_row(db, saved.checkpoint_id, schema_version=2)

        with pytest.raises(IncompatibleCheckpointError, match="schema version 2"):
            store.get_by_id(saved.checkpoint_id)

    @pytest.mark.parametrize(
        ("column", "value"),
        [
            ("signals_json", "{not json"),
            ("trigger_reason", "power_cut"),
            ("status", "archived"),
        ],
    )
    def test_unreadable_row_raises_corrupt_checkpoint(
        self, db: CrashGuardDB, store: CheckpointStore, builder: CheckpointBuilder, column: str, value: str
    ) -> None:
        saved = save_checkpoint(store, builder)
        update_checkpoint_row(db, saved.checkpoint_id, **{column: value})

        with pytest.raises(CorruptCheckpointError) as exc_info:
            store.get_by_id(saved.checkpoint_id)

        assert exc_info.value.checkpoint_id == saved.checkpoint_id


class TestRiskSizeAndStats:
    def test_risk_level_round_trips(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        checkpoint = builder.build(
            "session-1", CheckpointTrigger.RISK_DANGER, make_state(), make_signals(), risk_level=RiskLevel.DANGER
        )
        store.save(checkpoint)

        loaded = store.get_by_id(checkpoint.checkpoint_id)

        assert loaded is not None
        assert loaded.risk_level == RiskLevel.DANGER

    def test_list_by_risk(self, store: CheckpointStore, builder: CheckpointBuilder, clock: MockClock) -> None:
        ids = []
        for session_id, level in [("a", RiskLevel.CRITICAL), ("b", RiskLevel.SAFE), ("b", RiskLevel.CRITICAL)]:
            checkpoint = builder.build(session_id, CheckpointTrigger.MANUAL, make_state(), make_signals(), risk_level=level)
            ids.append(store.save(checkpoint))
            clock.advance(60.0)

        critical = store.list_by_risk(RiskLevel.CRITICAL)

        assert [cp.checkpoint_id for cp in critical] == [ids[2], ids[0]]
        assert [cp.checkpoint_id for cp in store.list_by_risk(RiskLevel.CRITICAL, session_id="b")] == [ids[2]]
        assert store.list_by_risk(RiskLevel.WARNING) == []

    def test_checkpoint_size(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        saved = save_checkpoint(store, builder)

        size = store.get_checkpoint_size(saved.checkpoint_id)

        assert size is not None
        assert size.uncompressed_bytes == sum(record.raw_size for record in saved.sections.values())
        assert size.compressed_bytes == sum(record.compressed_size for record in saved.sections.values())
        assert size.compression_ratio == pytest.approx(size.uncompressed_bytes / size.compressed_bytes)

    def test_checkpoint_size_unknown(self, store: CheckpointStore) -> None:
        assert store.get_checkpoint_size("cp-missing") is None

    def test_stats(self, store: CheckpointStore, builder: CheckpointBuilder, clock: MockClock) -> None:
        first = save_checkpoint(store, builder)
        store.mark_restored(first.checkpoint_id, True, 1.0)
        clock.advance(60.0)
        save_checkpoint(store, builder)
        clock.advance(60.0)
        last = save_checkpoint(store, builder)
        save_checkpoint(store, builder, session_id="other")

        stats = store.get_checkpoint_stats("session-1")

        assert stats.total_checkpoints == 3
        assert stats.restored_checkpoints == 1
        assert stats.last_checkpoint is not None
        assert stats.last_checkpoint.checkpoint_id == last.checkpoint_id

    def test_stats_empty_session(self, store: CheckpointStore) -> None:
        stats = store.get_checkpoint_stats("nobody")

        assert stats.total_checkpoints == 0
        assert stats.restored_checkpoints == 0
        assert stats.last_checkpoint is None


class TestMarkRestored:
    def test_marks_exactly_once(self, store: CheckpointStore, builder: CheckpointBuilder, clock: MockClock) -> None:
        saved = save_checkpoint(store, builder)
        clock.advance(30.0)

        assert store.mark_restored(saved.checkpoint_id, True, 0.75) is True
        assert store.mark_restored(saved.checkpoint_id, False, 0.1) is False

        reloaded = store.get_by_id(saved.checkpoint_id)
        assert reloaded is not None
        assert reloaded.restored is True
        assert reloaded.restore_success is True
        assert reloaded.fidelity == pytest.approx(0.75)
        assert reloaded.restored_at == WALL_START + timedelta(seconds=30)
        assert store.get_unrestored_checkpoint("session-1") is None

    def test_fidelity_clamped(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        saved = save_checkpoint(store, builder)

        store.mark_restored(saved.checkpoint_id, True, 1.5)

        reloaded = store.get_by_id(saved.checkpoint_id)
        assert reloaded is not None
        assert reloaded.fidelity == 1.0

    def test_unknown_checkpoint(self, store: CheckpointStore) -> None:
        assert store.mark_restored("cp-missing", True, 1.0) is False

    def test_superseded_checkpoint_can_be_marked(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        first = save_checkpoint(store, builder)
        save_checkpoint(store, builder)

        assert store.mark_restored(first.checkpoint_id, True, 1.0) is True


class TestDeleteOlderThan:
    def _section_count(self, db: CrashGuardDB) -> int:
        with db.connection() as conn:
            return int(conn.execute(select(func.count()).select_from(checkpoint_sections_table)).scalar_one())

    def test_keeps_newest_n_per_session(
        self, db: CrashGuardDB, store: CheckpointStore, builder: CheckpointBuilder, clock: MockClock
    ) -> None:
        for _ in range(5):
            save_checkpoint(store, builder, session_id="session-1")
            clock.advance(3600.0)
        save_checkpoint(store, builder, session_id="session-2")
        as_of = clock.now() + timedelta(days=10)

        deleted = store.delete_older_than(timedelta(days=7), keep_last_n=2, as_of=as_of)

        remaining = store.list_by_session("session-1")
        assert deleted == 3
        assert [cp.sequence_number for cp in remaining] == [4, 5]
        assert len(store.list_by_session("session-2")) == 1
        assert self._section_count(db) == 3 * 4

    def test_recent_checkpoints_kept(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        for _ in range(3):
            save_checkpoint(store, builder)

        assert store.delete_older_than(timedelta(days=7), keep_last_n=0) == 0
        assert len(store.list_by_session("session-1")) == 3

    def test_keep_zero_deletes_all_expired(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        for _ in range(3):
            save_checkpoint(store, builder)

        deleted = store.delete_older_than(timedelta(days=1), as_of=datetime(2026, 2, 1, tzinfo=UTC))

        assert deleted == 3
        assert store.list_by_session("session-1") == []

    def test_negative_keep_rejected(self, store: CheckpointStore) -> None:
        with pytest.raises(ValueError, match="keep_last_n"):
            store.delete_older_than(timedelta(days=1), keep_last_n=-1)


class TestResumeEvents:
    def test_record_and_list(self, store: CheckpointStore, builder: CheckpointBuilder, clock: MockClock) -> None:
        saved = save_checkpoint(store, builder)
        first = store.record_resume_event(
            saved,
            interruption_reason=InterruptionReason.CRASH,
            time_since_checkpoint_seconds=12.0,
            confidence=0.9,
            success=True,
            fidelity=1.0,
        )
        clock.advance(10.0)
        second = store.record_resume_event(
            saved,
            interruption_reason=InterruptionReason.UNKNOWN,
            time_since_checkpoint_seconds=-5.0,
            confidence=1.4,
            success=False,
            fidelity=-0.2,
            lost_sections=("tools",),
        )

        events = store.list_resume_events("session-1")

        assert [event.event_id for event in events] == [first.event_id, second.event_id]
        assert events[0] == first
        assert events[1].time_since_checkpoint_seconds == 0.0
        assert events[1].confidence == 1.0
        assert events[1].fidelity == 0.0
        assert events[1].lost_sections == ("tools",)
        assert events[1].event_id.startswith("re-")

    def test_events_outlive_deleted_checkpoints(self, store: CheckpointStore, builder: CheckpointBuilder) -> None:
        saved = save_checkpoint(store, builder)
        store.record_resume_event(
            saved,
            interruption_reason=InterruptionReason.CRASH,
            time_since_checkpoint_seconds=1.0,
            confidence=0.9,
            success=True,
            fidelity=1.0,
        )

        store.delete_older_than(timedelta(days=1), as_of=datetime(2026, 2, 1, tzinfo=UTC))

        assert len(store.list_resume_events("session-1")) == 1
