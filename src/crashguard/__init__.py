"""
crashguard: Crash-risk aware checkpointing for long-running chat sessions.

Watches runtime signals of an interactive session, decides when a
recoverable snapshot must be persisted, and reconstructs that snapshot
on the next startup.
"""

__version__ = "0.1.0"
