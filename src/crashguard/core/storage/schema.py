# src/crashguard/core/storage/schema.py
"""SQLAlchemy table definitions for the checkpoint database.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
)

# Shared metadata for all tables
metadata = MetaData()

# === Checkpoints ===

checkpoints_table = Table(
    "checkpoints",
    metadata,
    Column("checkpoint_id", String(64), primary_key=True),
    Column("session_id", String(128), nullable=False),
    Column("sequence_number", Integer, nullable=False),  # Per-session creation order
    Column("trigger_reason", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("schema_version", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("signals_json", Text, nullable=False),
    Column("resume_prompt", Text, nullable=False),
    Column("total_bytes", Integer, nullable=False),
    Column("risk_level", String(16), nullable=False),  # Assessed risk at checkpoint time
    # Restoration outcome - attached exactly once
    Column("restore_success", Boolean),
    Column("fidelity", Float),
    Column("restored_at", DateTime(timezone=True)),
    UniqueConstraint("session_id", "sequence_number", name="uq_checkpoints_session_seq"),
    CheckConstraint("fidelity IS NULL OR (fidelity >= 0 AND fidelity <= 1)", name="ck_checkpoints_fidelity"),
)

Index("ix_checkpoints_session_created", checkpoints_table.c.session_id, checkpoints_table.c.created_at)
Index("ix_checkpoints_session_status", checkpoints_table.c.session_id, checkpoints_table.c.status)
Index("ix_checkpoints_risk", checkpoints_table.c.risk_level, checkpoints_table.c.created_at)

# Each state section compressed independently so one corrupt section
# does not take the others down with it.
checkpoint_sections_table = Table(
    "checkpoint_sections",
    metadata,
    Column(
        "checkpoint_id",
        String(64),
        ForeignKey("checkpoints.checkpoint_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("name", String(32), nullable=False),
    Column("payload", LargeBinary, nullable=False),  # zlib-compressed JSON
    Column("checksum", String(64), nullable=False),  # sha256 hex of payload
    Column("raw_size", Integer, nullable=False),
    PrimaryKeyConstraint("checkpoint_id", "name"),
)

# === Resume events ===

# No FK to checkpoints: events outlive checkpoints removed by retention.
resume_events_table = Table(
    "resume_events",
    metadata,
    Column("event_id", String(64), primary_key=True),
    Column("checkpoint_id", String(64), nullable=False),
    Column("session_id", String(128), nullable=False),
    Column("resumed_at", DateTime(timezone=True), nullable=False),
    Column("interruption_reason", String(32), nullable=False),
    Column("time_since_checkpoint_seconds", Float, nullable=False),
    Column("confidence", Float, nullable=False),
    Column("success", Boolean, nullable=False),
    Column("fidelity", Float, nullable=False),
    Column("lost_sections_json", Text, nullable=False),
)

Index("ix_resume_events_session", resume_events_table.c.session_id, resume_events_table.c.resumed_at)
Index("ix_resume_events_checkpoint", resume_events_table.c.checkpoint_id)

# === Signal history ===

signal_history_table = Table(
    "signal_history",
    metadata,
    Column("snapshot_id", String(64), primary_key=True),
    Column("session_id", String(128), nullable=False),
    Column("sequence_number", Integer, nullable=False),
    Column("captured_at", DateTime(timezone=True), nullable=False),
    Column("risk_level", String(16), nullable=False),
    Column("risk_score", Float, nullable=False),
    Column("triggered_signals_json", Text, nullable=False),
    # Denormalized for trend queries; signals_json is the full snapshot
    Column("context_usage", Float, nullable=False),
    Column("message_count", Integer, nullable=False),
    Column("tool_call_count", Integer, nullable=False),
    Column("tool_failure_rate", Float, nullable=False),
    Column("session_duration_seconds", Float, nullable=False),
    Column("signals_json", Text, nullable=False),
    UniqueConstraint("session_id", "sequence_number", name="uq_signal_history_session_seq"),
)

Index("ix_signal_history_session_captured", signal_history_table.c.session_id, signal_history_table.c.captured_at)
Index("ix_signal_history_risk", signal_history_table.c.risk_level, signal_history_table.c.captured_at)
