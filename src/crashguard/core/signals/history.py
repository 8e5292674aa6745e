# src/crashguard/core/signals/history.py
"""Signal history: persisted signal snapshots for post-hoc analysis.

Snapshots are append-only. Each row keeps the full snapshot as JSON plus
a few denormalized columns so risk and time-range queries do not need to
decode every row.
"""

import json
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, TypeVar

import structlog
from sqlalchemy import and_, asc, delete, desc, func, select
from sqlalchemy.engine import Row

from crashguard.contracts import (
    RiskAssessment,
    RiskLevel,
    RiskTrend,
    SignalHistoryEntry,
    SignalSnapshot,
)
from crashguard.core.checkpoint.serialization import checkpoint_dumps, checkpoint_loads
from crashguard.core.storage._helpers import generate_id, run_storage_operation, to_utc
from crashguard.core.storage.database import CrashGuardDB
from crashguard.core.storage.schema import signal_history_table
from crashguard.engine.clock import DEFAULT_CLOCK, Clock
from crashguard.engine.retry import RetryConfig, RetryManager

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Slope of risk score per snapshot below which the trend counts as flat.
_TREND_TOLERANCE = 0.01


def risk_trend(entries: Sequence[SignalHistoryEntry], *, tolerance: float = _TREND_TOLERANCE) -> RiskTrend:
    """Least-squares slope of risk score over entries in recorded order.

    Fewer than two entries are flat.
    """
    n = len(entries)
    if n < 2:
        return RiskTrend.FLAT
    scores = [entry.risk_score for entry in entries]
    mean_x = (n - 1) / 2
    mean_y = sum(scores) / n
    numerator = sum((x - mean_x) * (y - mean_y) for x, y in enumerate(scores))
    denominator = sum((x - mean_x) ** 2 for x in range(n))
    slope = numerator / denominator
    if slope > tolerance:
        return RiskTrend.RISING
    if slope < -tolerance:
        return RiskTrend.FALLING
    return RiskTrend.FLAT


class SignalHistoryRepository:
    """Records and queries signal snapshots per session."""

    def __init__(
        self,
        db: CrashGuardDB,
        retry: RetryManager | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._db = db
        self._retry = retry if retry is not None else RetryManager(RetryConfig())
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        return run_storage_operation(self._retry, operation, fn)

    def record(self, session_id: str, snapshot: SignalSnapshot, assessment: RiskAssessment) -> SignalHistoryEntry:
        """Append a snapshot with its risk assessment.

        Raises:
            StorageError: If the write fails after retries
        """
        snapshot_id = generate_id("sig")

        def _insert() -> int:
            with self._db.connection() as conn:
                current = conn.execute(
                    select(func.max(signal_history_table.c.sequence_number)).where(
                        signal_history_table.c.session_id == session_id
                    )
                ).scalar()
                sequence_number = 1 if current is None else int(current) + 1
                conn.execute(
                    signal_history_table.insert().values(
                        snapshot_id=snapshot_id,
                        session_id=session_id,
                        sequence_number=sequence_number,
                        captured_at=to_utc(snapshot.captured_at),
                        risk_level=assessment.level.value,
                        risk_score=assessment.score,
                        triggered_signals_json=json.dumps(list(assessment.triggered_signals)),
                        context_usage=snapshot.context_usage,
                        message_count=snapshot.message_count,
                        tool_call_count=snapshot.tool_call_count,
                        tool_failure_rate=snapshot.tool_failure_rate,
                        session_duration_seconds=snapshot.session_duration_seconds,
                        signals_json=checkpoint_dumps(snapshot.to_dict()),
                    )
                )
                return sequence_number

        sequence_number = self._run("record_signals", _insert)
        return SignalHistoryEntry(
            snapshot_id=snapshot_id,
            session_id=session_id,
            sequence_number=sequence_number,
            snapshot=snapshot,
            risk_level=assessment.level,
            risk_score=assessment.score,
            triggered_signals=assessment.triggered_signals,
        )

    def list_for_session(self, session_id: str, *, limit: int | None = None) -> list[SignalHistoryEntry]:
        """Snapshots of a session, oldest first.

        With ``limit``, the newest ``limit`` snapshots (still oldest first).
        """
        if limit is None:
            return self._select(
                "list_for_session",
                signal_history_table.c.session_id == session_id,
                order=asc(signal_history_table.c.sequence_number),
            )
        newest = self._select(
            "list_for_session",
            signal_history_table.c.session_id == session_id,
            order=desc(signal_history_table.c.sequence_number),
            limit=limit,
        )
        return list(reversed(newest))

    def latest(self, session_id: str) -> SignalHistoryEntry | None:
        entries = self._select(
            "latest_signals",
            signal_history_table.c.session_id == session_id,
            order=desc(signal_history_table.c.sequence_number),
            limit=1,
        )
        return entries[0] if entries else None

    def list_by_risk(self, level: RiskLevel, *, session_id: str | None = None) -> list[SignalHistoryEntry]:
        """Snapshots assessed at ``level`` or above, newest first."""
        levels = [candidate.value for candidate in RiskLevel if candidate.severity >= level.severity]
        condition = signal_history_table.c.risk_level.in_(levels)
        if session_id is not None:
            condition = and_(condition, signal_history_table.c.session_id == session_id)
        return self._select("list_by_risk", condition, order=desc(signal_history_table.c.captured_at))

    def list_in_range(self, start: datetime, end: datetime, *, session_id: str | None = None) -> list[SignalHistoryEntry]:
        """Snapshots captured in [start, end), oldest first."""
        condition = and_(
            signal_history_table.c.captured_at >= to_utc(start),
            signal_history_table.c.captured_at < to_utc(end),
        )
        if session_id is not None:
            condition = and_(condition, signal_history_table.c.session_id == session_id)
        return self._select("list_in_range", condition, order=asc(signal_history_table.c.captured_at))

    def prune_older_than(self, max_age: timedelta, *, as_of: datetime | None = None) -> int:
        """Delete snapshots captured before ``as_of - max_age``."""
        cutoff = to_utc(as_of if as_of is not None else self._clock.now()) - max_age

        def _delete() -> int:
            with self._db.connection() as conn:
                result = conn.execute(delete(signal_history_table).where(signal_history_table.c.captured_at < cutoff))
                return int(result.rowcount)

        deleted = self._run("prune_signals", _delete)
        logger.info("Signal history pruned", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

    def delete_session(self, session_id: str) -> int:
        def _delete() -> int:
            with self._db.connection() as conn:
                result = conn.execute(delete(signal_history_table).where(signal_history_table.c.session_id == session_id))
                return int(result.rowcount)

        return self._run("delete_session_signals", _delete)

    def _select(
        self,
        operation: str,
        condition: Any,
        *,
        order: Any,
        limit: int | None = None,
    ) -> list[SignalHistoryEntry]:
        query = select(signal_history_table).where(condition).order_by(order, signal_history_table.c.snapshot_id)
        if limit is not None:
            query = query.limit(limit)

        def _read() -> list[Row[Any]]:
            with self._db.connection() as conn:
                return list(conn.execute(query).fetchall())

        return [
            SignalHistoryEntry(
                snapshot_id=row.snapshot_id,
                session_id=row.session_id,
                sequence_number=row.sequence_number,
                snapshot=SignalSnapshot.from_dict(checkpoint_loads(row.signals_json)),
                risk_level=RiskLevel(row.risk_level),
                risk_score=row.risk_score,
                triggered_signals=tuple(json.loads(row.triggered_signals_json)),
            )
            for row in self._run(operation, _read)
        ]
