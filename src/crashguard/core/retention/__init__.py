"""Retention policy for checkpoints and signal history."""

from crashguard.core.retention.sweep import RetentionManager, RetentionResult

__all__ = ["RetentionManager", "RetentionResult"]
