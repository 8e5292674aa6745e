# tests/integration/test_scenarios.py
"""End-to-end session scenarios over a real SQLite file."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from crashguard.contracts import CheckpointTrigger, InterruptionReason, RiskLevel, StateSnapshot
from crashguard.core.config import CrashGuardSettings, RiskSettings
from crashguard.core.storage.database import CrashGuardDB
from crashguard.engine.clock import MockClock
from crashguard.engine.session import SessionGuard
from tests.fixtures.factories import make_state
from tests.fixtures.storage import corrupt_section

pytestmark = pytest.mark.integration


@pytest.fixture
def file_db(tmp_path: Path) -> Iterator[CrashGuardDB]:
    database = CrashGuardDB(f"sqlite:///{tmp_path / 'crashguard' / 'checkpoints.db'}")
    yield database
    database.close()


def _guard(
    db: CrashGuardDB,
    clock: MockClock,
    state: StateSnapshot | None = None,
    settings: CrashGuardSettings | None = None,
) -> SessionGuard:
    snapshot = state if state is not None else make_state()
    return SessionGuard.from_settings(
        settings if settings is not None else CrashGuardSettings(),
        "session-1",
        lambda: snapshot,
        db=db,
        clock=clock,
    )


class TestScenarios:
    def test_context_growth_reports_warning(self, file_db: CrashGuardDB) -> None:
        settings = CrashGuardSettings(risk=RiskSettings(context_budget_tokens=1000))
        guard = _guard(file_db, MockClock(), settings=settings)
        for _ in range(36):
            assert guard.on_message("assistant", "") is None
        assert guard.on_message("user", "x" * 2480) is None

        entry = guard.record_signals()
        guard.close()

        assert entry is not None
        assert entry.snapshot.message_count == 37
        assert entry.risk_level == RiskLevel.WARNING
        assert entry.triggered_signals == ("context_usage",)

    def test_tool_interval_checkpoint(self, file_db: CrashGuardDB) -> None:
        guard = _guard(file_db, MockClock())

        results = [guard.on_tool_call("read_file", latency_ms=8.0) for _ in range(5)]
        guard.close()

        assert results[4] is not None
        assert results[4].reason == CheckpointTrigger.TOOL_COUNT_INTERVAL

    def test_resume_picks_newest_unrestored(self, file_db: CrashGuardDB) -> None:
        clock = MockClock()
        first_run = _guard(file_db, clock)
        older = first_run.on_manual_checkpoint_request()
        assert older is not None and older.checkpoint_id is not None
        assert first_run.restore_and_mark(older.checkpoint_id, True, 1.0) is True
        first_run.close()

        clock.advance(30.0)
        second_run = _guard(file_db, clock)
        second_run.collector.on_message("user", "x" * 640_000)  # context usage 0.8 of the default budget
        newer = second_run.on_tool_call("read_file")
        assert newer is not None
        assert newer.reason == CheckpointTrigger.RISK_DANGER
        second_run.close()

        third_run = _guard(file_db, clock)
        detection = third_run.check_resume_at_startup()
        third_run.close()

        assert detection.checkpoint is not None
        assert detection.checkpoint.checkpoint_id == newer.checkpoint_id
        assert detection.interruption_reason == InterruptionReason.CRASH
        assert detection.confidence >= 0.85
        assert detection.should_resume is True

    def test_corrupt_tools_section_partial_restore(self, file_db: CrashGuardDB) -> None:
        clock = MockClock()
        guard = _guard(file_db, clock, state=make_state(files=None))
        result = guard.on_manual_checkpoint_request()
        guard.close()
        assert result is not None and result.checkpoint_id is not None
        corrupt_section(file_db, result.checkpoint_id, "tools")

        restarted = _guard(file_db, clock)
        detection = restarted.check_resume_at_startup()
        state = restarted.restore(detection)
        restarted.close()

        assert set(state.sections) == {"conversation", "task"}
        assert state.lost_sections == ("tools",)
        assert state.fidelity == pytest.approx(0.67, abs=0.01)
        assert detection.prompt is not None
        assert "tool activity lost" in detection.prompt.render()
