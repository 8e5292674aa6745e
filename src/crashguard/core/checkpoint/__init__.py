"""Checkpoint creation, persistence and recovery."""

from crashguard.core.checkpoint.builder import CheckpointBuilder
from crashguard.core.checkpoint.codec import decode_section, encode_section
from crashguard.core.checkpoint.prompt import build_resume_prompt
from crashguard.core.checkpoint.restore import SessionRestorer
from crashguard.core.checkpoint.resume import ResumeDetector
from crashguard.core.checkpoint.serialization import checkpoint_dumps, checkpoint_loads
from crashguard.core.checkpoint.store import CheckpointStore

__all__ = [
    "CheckpointBuilder",
    "CheckpointStore",
    "ResumeDetector",
    "SessionRestorer",
    "build_resume_prompt",
    "checkpoint_dumps",
    "checkpoint_loads",
    "decode_section",
    "encode_section",
]
