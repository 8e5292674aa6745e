"""Core infrastructure: configuration, logging, storage, checkpoints, retention."""
