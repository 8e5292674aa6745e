"""Checkpoint database: connection management and table definitions."""

from crashguard.core.storage.database import CrashGuardDB, SchemaCompatibilityError
from crashguard.core.storage.schema import (
    checkpoint_sections_table,
    checkpoints_table,
    metadata,
    resume_events_table,
    signal_history_table,
)

__all__ = [
    "CrashGuardDB",
    "SchemaCompatibilityError",
    "checkpoint_sections_table",
    "checkpoints_table",
    "metadata",
    "resume_events_table",
    "signal_history_table",
]
