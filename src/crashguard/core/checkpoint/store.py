# src/crashguard/core/checkpoint/store.py
"""CheckpointStore: durable checkpoint and resume-event persistence.

Every write is a single engine.begin() transaction, so a checkpoint and
its sections become visible together or not at all. Transient database
errors (SQLITE_BUSY, disk I/O) are retried through RetryManager; running
out of attempts surfaces as StorageError.
"""

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

import structlog
from sqlalchemy import Connection, and_, asc, case, delete, desc, func, select, update
from sqlalchemy.engine import Row

from crashguard.contracts import (
    Checkpoint,
    CheckpointSize,
    CheckpointStats,
    CheckpointStatus,
    CheckpointTrigger,
    CorruptCheckpointError,
    IncompatibleCheckpointError,
    InterruptionReason,
    ResumeEvent,
    RiskLevel,
    SectionRecord,
    SignalSnapshot,
)
from crashguard.core.checkpoint.serialization import checkpoint_dumps, checkpoint_loads
from crashguard.core.storage._helpers import generate_id, run_storage_operation, to_utc
from crashguard.core.storage.database import CrashGuardDB
from crashguard.core.storage.schema import (
    checkpoint_sections_table,
    checkpoints_table,
    resume_events_table,
)
from crashguard.engine.clock import DEFAULT_CLOCK, Clock
from crashguard.engine.retry import RetryConfig, RetryManager

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CheckpointStore:
    """Persists checkpoints, their sections, and resume events.

    Maintains the at-most-one-unrestored invariant: save() supersedes
    any earlier unrestored checkpoint of the same session inside the
    insert transaction.
    """

    def __init__(
        self,
        db: CrashGuardDB,
        retry: RetryManager | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        """Initialize with checkpoint database.

        Args:
            db: CrashGuardDB instance for storage
            retry: Retry policy for transient database errors (default: 3 attempts)
            clock: Wall-clock source for restored_at and retention cutoffs
        """
        self._db = db
        self._retry = retry if retry is not None else RetryManager(RetryConfig())
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        return run_storage_operation(self._retry, operation, fn)

    # === Checkpoints ===

    def save(self, checkpoint: Checkpoint) -> str:
        """Persist a checkpoint atomically and return its id.

        Assigns the next per-session sequence number and marks earlier
        unrestored checkpoints of the session as superseded, all in the
        same transaction. checkpoint.sequence_number is updated in place.

        Raises:
            StorageError: If the write fails after retries
        """

        def _save() -> int:
            with self._db.connection() as conn:
                sequence_number = self._next_sequence_number(conn, checkpoint.session_id)
                conn.execute(
                    update(checkpoints_table)
                    .where(
                        and_(
                            checkpoints_table.c.session_id == checkpoint.session_id,
                            checkpoints_table.c.status == CheckpointStatus.UNRESTORED.value,
                        )
                    )
                    .values(status=CheckpointStatus.SUPERSEDED.value)
                )
                conn.execute(
                    checkpoints_table.insert().values(
                        checkpoint_id=checkpoint.checkpoint_id,
                        session_id=checkpoint.session_id,
                        sequence_number=sequence_number,
                        trigger_reason=checkpoint.trigger.value,
                        created_at=to_utc(checkpoint.created_at),
                        schema_version=checkpoint.schema_version,
                        status=CheckpointStatus.UNRESTORED.value,
                        signals_json=checkpoint_dumps(checkpoint.signals.to_dict()),
                        resume_prompt=checkpoint.resume_prompt,
                        total_bytes=checkpoint.total_bytes,
                        risk_level=checkpoint.risk_level.value,
                    )
                )
                if checkpoint.sections:
                    conn.execute(
                        checkpoint_sections_table.insert(),
                        [
                            {
                                "checkpoint_id": checkpoint.checkpoint_id,
                                "name": record.name,
                                "payload": record.payload,
                                "checksum": record.checksum,
                                "raw_size": record.raw_size,
                            }
                            for record in checkpoint.sections.values()
                        ],
                    )
                return sequence_number

        sequence_number = self._run("save", _save)
        checkpoint.sequence_number = sequence_number
        checkpoint.status = CheckpointStatus.UNRESTORED
        logger.debug(
            "Checkpoint saved",
            checkpoint_id=checkpoint.checkpoint_id,
            session_id=checkpoint.session_id,
            sequence_number=sequence_number,
            total_bytes=checkpoint.total_bytes,
        )
        return checkpoint.checkpoint_id

    @staticmethod
    def _next_sequence_number(conn: Connection, session_id: str) -> int:
        current = conn.execute(
            select(func.max(checkpoints_table.c.sequence_number)).where(checkpoints_table.c.session_id == session_id)
        ).scalar()
        return 1 if current is None else int(current) + 1

    def next_sequence_number(self, session_id: str) -> int:
        """Sequence number the next saved checkpoint of the session will get."""

        def _next() -> int:
            with self._db.connection() as conn:
                return self._next_sequence_number(conn, session_id)

        return self._run("next_sequence_number", _next)

    def get_by_id(self, checkpoint_id: str) -> Checkpoint | None:
        """Load one checkpoint with its sections.

        Raises:
            IncompatibleCheckpointError: If written by a newer schema version
            CorruptCheckpointError: If the row cannot be decoded
        """
        rows = self._fetch("get_by_id", checkpoints_table.c.checkpoint_id == checkpoint_id, limit=1)
        return rows[0] if rows else None

    def get_most_recent(self, session_id: str) -> Checkpoint | None:
        """Latest checkpoint of a session regardless of status."""
        rows = self._fetch(
            "get_most_recent",
            checkpoints_table.c.session_id == session_id,
            order=desc(checkpoints_table.c.sequence_number),
            limit=1,
        )
        return rows[0] if rows else None

    def list_by_session(self, session_id: str) -> list[Checkpoint]:
        """All checkpoints of a session in creation order."""
        return self._fetch(
            "list_by_session",
            checkpoints_table.c.session_id == session_id,
            order=asc(checkpoints_table.c.sequence_number),
        )

    def get_unrestored_checkpoints(self, session_id: str) -> list[Checkpoint]:
        """Unrestored checkpoints of a session, newest first.

        Normally zero or one. More than one means rows were written
        outside save() and callers must pick the newest.
        """
        return self._fetch(
            "get_unrestored_checkpoints",
            and_(
                checkpoints_table.c.session_id == session_id,
                checkpoints_table.c.status == CheckpointStatus.UNRESTORED.value,
            ),
            order=(desc(checkpoints_table.c.created_at), desc(checkpoints_table.c.sequence_number)),
        )

    def get_unrestored_checkpoint(self, session_id: str) -> Checkpoint | None:
        """The resumable checkpoint of a session, if any."""
        checkpoints = self.get_unrestored_checkpoints(session_id)
        return checkpoints[0] if checkpoints else None

    def list_by_risk(self, level: RiskLevel, *, session_id: str | None = None) -> list[Checkpoint]:
        """Checkpoints taken at a given risk level, newest first."""
        condition = checkpoints_table.c.risk_level == level.value
        if session_id is not None:
            condition = and_(condition, checkpoints_table.c.session_id == session_id)
        return self._fetch(
            "list_by_risk",
            condition,
            order=(desc(checkpoints_table.c.created_at), desc(checkpoints_table.c.sequence_number)),
        )

    def get_checkpoint_size(self, checkpoint_id: str) -> CheckpointSize | None:
        """Uncompressed vs stored section bytes, without loading payloads.

        Returns:
            None if the checkpoint is unknown
        """
        query = (
            select(
                checkpoints_table.c.checkpoint_id,
                func.coalesce(func.sum(checkpoint_sections_table.c.raw_size), 0).label("uncompressed"),
                func.coalesce(func.sum(func.length(checkpoint_sections_table.c.payload)), 0).label("compressed"),
            )
            .select_from(
                checkpoints_table.outerjoin(
                    checkpoint_sections_table,
                    checkpoint_sections_table.c.checkpoint_id == checkpoints_table.c.checkpoint_id,
                )
            )
            .where(checkpoints_table.c.checkpoint_id == checkpoint_id)
            .group_by(checkpoints_table.c.checkpoint_id)
        )

        def _read() -> Row[Any] | None:
            with self._db.connection() as conn:
                return conn.execute(query).first()

        row = self._run("get_checkpoint_size", _read)
        if row is None:
            return None
        uncompressed, compressed = int(row.uncompressed), int(row.compressed)
        return CheckpointSize(
            checkpoint_id=checkpoint_id,
            uncompressed_bytes=uncompressed,
            compressed_bytes=compressed,
            compression_ratio=uncompressed / compressed if compressed else 0.0,
        )

    def get_checkpoint_stats(self, session_id: str) -> CheckpointStats:
        """Checkpoint counts and the latest checkpoint of a session."""
        query = select(
            func.count().label("total"),
            func.coalesce(
                func.sum(case((checkpoints_table.c.status == CheckpointStatus.RESTORED.value, 1), else_=0)), 0
            ).label("restored"),
        ).where(checkpoints_table.c.session_id == session_id)

        def _read() -> Row[Any]:
            with self._db.connection() as conn:
                return conn.execute(query).one()

        counts = self._run("get_checkpoint_stats", _read)
        return CheckpointStats(
            session_id=session_id,
            total_checkpoints=int(counts.total),
            restored_checkpoints=int(counts.restored),
            last_checkpoint=self.get_most_recent(session_id) if counts.total else None,
        )

    def _fetch(
        self,
        operation: str,
        condition: Any,
        *,
        order: Any = None,
        limit: int | None = None,
    ) -> list[Checkpoint]:
        query = select(checkpoints_table).where(condition)
        if order is not None:
            query = query.order_by(*order) if isinstance(order, tuple) else query.order_by(order)
        if limit is not None:
            query = query.limit(limit)

        def _read() -> tuple[list[Row[Any]], dict[str, dict[str, SectionRecord]]]:
            with self._db.connection() as conn:
                rows = list(conn.execute(query).fetchall())
                ids = [row.checkpoint_id for row in rows]
                sections: dict[str, dict[str, SectionRecord]] = {cid: {} for cid in ids}
                if ids:
                    for sec in conn.execute(
                        select(checkpoint_sections_table).where(checkpoint_sections_table.c.checkpoint_id.in_(ids))
                    ):
                        sections[sec.checkpoint_id][sec.name] = SectionRecord(
                            name=sec.name,
                            payload=bytes(sec.payload),
                            checksum=sec.checksum,
                            raw_size=sec.raw_size,
                        )
                return rows, sections

        rows, sections = self._run(operation, _read)
        return [self._row_to_checkpoint(row, sections[row.checkpoint_id]) for row in rows]

    @staticmethod
    def _row_to_checkpoint(row: Row[Any], sections: dict[str, SectionRecord]) -> Checkpoint:
        """Map a checkpoints row to a Checkpoint.

        Raises:
            IncompatibleCheckpointError: If written by a newer schema version
            CorruptCheckpointError: If trigger, status, risk level or the signal
                snapshot cannot be decoded
        """
        if row.schema_version > Checkpoint.CURRENT_SCHEMA_VERSION:
            raise IncompatibleCheckpointError(
                f"Checkpoint '{row.checkpoint_id}' has schema version {row.schema_version}; "
                f"this release reads up to version {Checkpoint.CURRENT_SCHEMA_VERSION}."
            )
        try:
            trigger = CheckpointTrigger(row.trigger_reason)
            status = CheckpointStatus(row.status)
            risk_level = RiskLevel(row.risk_level)
            signals_data = checkpoint_loads(row.signals_json)
            if not isinstance(signals_data, dict):
                raise TypeError(f"signal snapshot is {type(signals_data).__name__}, expected object")
            signals = SignalSnapshot.from_dict(signals_data)
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Checkpoint record unreadable", checkpoint_id=row.checkpoint_id, error=f"{type(e).__name__}: {e}")
            raise CorruptCheckpointError(row.checkpoint_id, f"{type(e).__name__}: {e}") from e

        return Checkpoint(
            checkpoint_id=row.checkpoint_id,
            session_id=row.session_id,
            sequence_number=row.sequence_number,
            trigger=trigger,
            created_at=to_utc(row.created_at),
            sections=sections,
            signals=signals,
            resume_prompt=row.resume_prompt,
            schema_version=row.schema_version,
            status=status,
            restore_success=row.restore_success,
            fidelity=row.fidelity,
            restored_at=to_utc(row.restored_at) if row.restored_at is not None else None,
            total_bytes=row.total_bytes,
            risk_level=risk_level,
        )

    def mark_restored(
        self,
        checkpoint_id: str,
        success: bool,
        fidelity: float,
        *,
        restored_at: datetime | None = None,
    ) -> bool:
        """Attach the restoration outcome, exactly once.

        Args:
            checkpoint_id: Checkpoint that was restored
            success: Whether the host considers the restore successful
            fidelity: Fraction of state recovered, clamped into [0, 1]
            restored_at: Defaults to the clock's now()

        Returns:
            True if this call attached the outcome, False if the checkpoint
            is unknown or was already marked
        """
        clamped = min(max(float(fidelity), 0.0), 1.0)
        when = to_utc(restored_at if restored_at is not None else self._clock.now())

        def _mark() -> int:
            with self._db.connection() as conn:
                result = conn.execute(
                    update(checkpoints_table)
                    .where(
                        and_(
                            checkpoints_table.c.checkpoint_id == checkpoint_id,
                            checkpoints_table.c.status != CheckpointStatus.RESTORED.value,
                        )
                    )
                    .values(
                        status=CheckpointStatus.RESTORED.value,
                        restore_success=success,
                        fidelity=clamped,
                        restored_at=when,
                    )
                )
                return int(result.rowcount)

        marked = self._run("mark_restored", _mark) == 1
        if marked:
            logger.info("Checkpoint marked restored", checkpoint_id=checkpoint_id, success=success, fidelity=clamped)
        else:
            logger.debug("Checkpoint already marked or unknown", checkpoint_id=checkpoint_id)
        return marked

    def delete_older_than(
        self,
        max_age: timedelta,
        keep_last_n: int = 0,
        *,
        as_of: datetime | None = None,
    ) -> int:
        """Retention sweep: delete checkpoints older than max_age.

        The newest keep_last_n checkpoints of every session are kept
        regardless of age. Sections are deleted with their checkpoint.

        Args:
            max_age: Age beyond which checkpoints are eligible
            keep_last_n: Newest checkpoints always kept per session
            as_of: Reference time for the cutoff (defaults to now)

        Returns:
            Number of checkpoints deleted
        """
        if keep_last_n < 0:
            raise ValueError(f"keep_last_n must be >= 0, got {keep_last_n}")
        cutoff = to_utc(as_of if as_of is not None else self._clock.now()) - max_age

        ranked = select(
            checkpoints_table.c.checkpoint_id,
            checkpoints_table.c.created_at,
            func.row_number()
            .over(
                partition_by=checkpoints_table.c.session_id,
                order_by=desc(checkpoints_table.c.sequence_number),
            )
            .label("row_rank"),
        ).subquery()
        expired = select(ranked.c.checkpoint_id).where(and_(ranked.c.created_at < cutoff, ranked.c.row_rank > keep_last_n))

        def _delete() -> int:
            with self._db.connection() as conn:
                ids = [row[0] for row in conn.execute(expired)]
                if not ids:
                    return 0
                # Explicit section delete: cascade depends on PRAGMA foreign_keys
                conn.execute(delete(checkpoint_sections_table).where(checkpoint_sections_table.c.checkpoint_id.in_(ids)))
                result = conn.execute(delete(checkpoints_table).where(checkpoints_table.c.checkpoint_id.in_(ids)))
                return int(result.rowcount)

        deleted = self._run("delete_older_than", _delete)
        logger.info("Expired checkpoints deleted", deleted=deleted, cutoff=cutoff.isoformat(), keep_last_n=keep_last_n)
        return deleted

    # === Resume events ===

    def record_resume_event(
        self,
        checkpoint: Checkpoint,
        *,
        interruption_reason: InterruptionReason,
        time_since_checkpoint_seconds: float,
        confidence: float,
        success: bool,
        fidelity: float,
        lost_sections: tuple[str, ...] = (),
        resumed_at: datetime | None = None,
    ) -> ResumeEvent:
        """Append an immutable record of a recovery attempt."""
        event = ResumeEvent(
            event_id=generate_id("re"),
            checkpoint_id=checkpoint.checkpoint_id,
            session_id=checkpoint.session_id,
            resumed_at=to_utc(resumed_at if resumed_at is not None else self._clock.now()),
            interruption_reason=interruption_reason,
            time_since_checkpoint_seconds=max(0.0, time_since_checkpoint_seconds),
            confidence=min(max(confidence, 0.0), 1.0),
            success=success,
            fidelity=min(max(fidelity, 0.0), 1.0),
            lost_sections=tuple(lost_sections),
        )

        def _insert() -> None:
            with self._db.connection() as conn:
                conn.execute(
                    resume_events_table.insert().values(
                        event_id=event.event_id,
                        checkpoint_id=event.checkpoint_id,
                        session_id=event.session_id,
                        resumed_at=event.resumed_at,
                        interruption_reason=event.interruption_reason.value,
                        time_since_checkpoint_seconds=event.time_since_checkpoint_seconds,
                        confidence=event.confidence,
                        success=event.success,
                        fidelity=event.fidelity,
                        lost_sections_json=json.dumps(list(event.lost_sections)),
                    )
                )

        self._run("record_resume_event", _insert)
        return event

    def list_resume_events(self, session_id: str) -> list[ResumeEvent]:
        """Resume events of a session, oldest first."""

        def _read() -> list[Row[Any]]:
            with self._db.connection() as conn:
                return list(
                    conn.execute(
                        select(resume_events_table)
                        .where(resume_events_table.c.session_id == session_id)
                        .order_by(asc(resume_events_table.c.resumed_at))
                    ).fetchall()
                )

        return [
            ResumeEvent(
                event_id=row.event_id,
                checkpoint_id=row.checkpoint_id,
                session_id=row.session_id,
                resumed_at=to_utc(row.resumed_at),
                interruption_reason=InterruptionReason(row.interruption_reason),
                time_since_checkpoint_seconds=row.time_since_checkpoint_seconds,
                confidence=row.confidence,
                success=row.success,
                fidelity=row.fidelity,
                lost_sections=tuple(json.loads(row.lost_sections_json)),
            )
            for row in self._run("list_resume_events", _read)
        ]
