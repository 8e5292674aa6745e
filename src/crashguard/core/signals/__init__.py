"""Persisted signal history."""

from crashguard.core.signals.history import SignalHistoryRepository, risk_trend

__all__ = ["SignalHistoryRepository", "risk_trend"]
