"""Checkpoint and recovery domain contracts.

Checkpoint mirrors a row of the checkpoints table plus its sections.
The remaining types are results handed back to the host session.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from crashguard.contracts.enums import CheckpointStatus, CheckpointTrigger, InterruptionReason, RiskLevel, StateSection
from crashguard.contracts.signals import SignalSnapshot


@dataclass(frozen=True)
class StateSnapshot:
    """Host-supplied session state, one mapping per section.

    Sections left as None are not written to the checkpoint. The content
    is opaque: only its size and compressibility matter here.
    """

    conversation: dict[str, Any] | None = None
    task: dict[str, Any] | None = None
    files: dict[str, Any] | None = None
    tools: dict[str, Any] | None = None

    def sections(self) -> dict[str, Any]:
        return {
            name.value: value
            for name, value in (
                (StateSection.CONVERSATION, self.conversation),
                (StateSection.TASK, self.task),
                (StateSection.FILES, self.files),
                (StateSection.TOOLS, self.tools),
            )
            if value is not None
        }


@dataclass(frozen=True)
class SectionRecord:
    """One independently compressed section of a checkpoint.

    Attributes:
        name: Section name (a StateSection value for current records)
        payload: zlib-compressed JSON bytes
        checksum: sha256 hex digest of payload
        raw_size: Size of the uncompressed JSON in bytes
    """

    name: str
    payload: bytes
    checksum: str
    raw_size: int

    @property
    def compressed_size(self) -> int:
        return len(self.payload)


@dataclass
class Checkpoint:
    """Persisted, recoverable snapshot of a session.

    Immutable after write except for the restoration outcome
    (status, restore_success, fidelity, restored_at), which is attached
    exactly once.

    Schema Versions:
        Version 1: Four named sections, zlib + sha256 per section (current)
    """

    CURRENT_SCHEMA_VERSION: ClassVar[int] = 1

    checkpoint_id: str
    session_id: str
    sequence_number: int
    trigger: CheckpointTrigger
    created_at: datetime
    sections: dict[str, SectionRecord]
    signals: SignalSnapshot
    resume_prompt: str
    schema_version: int = 1
    status: CheckpointStatus = CheckpointStatus.UNRESTORED
    restore_success: bool | None = None
    fidelity: float | None = None
    restored_at: datetime | None = None
    total_bytes: int = 0
    risk_level: RiskLevel = RiskLevel.SAFE

    def __post_init__(self) -> None:
        if not self.checkpoint_id:
            raise ValueError("checkpoint_id is required and cannot be empty")
        if not self.session_id:
            raise ValueError("session_id is required and cannot be empty")
        if not isinstance(self.trigger, CheckpointTrigger):
            raise TypeError(f"trigger must be CheckpointTrigger, got {type(self.trigger).__name__}: {self.trigger!r}")

    @property
    def restored(self) -> bool:
        return self.status == CheckpointStatus.RESTORED


@dataclass(frozen=True)
class CheckpointSize:
    """Stored size of a checkpoint's sections.

    Attributes:
        uncompressed_bytes: Sum of the sections' JSON sizes
        compressed_bytes: Sum of the sections' stored payload sizes
        compression_ratio: uncompressed / compressed (0.0 with no payload)
    """

    checkpoint_id: str
    uncompressed_bytes: int
    compressed_bytes: int
    compression_ratio: float


@dataclass(frozen=True)
class CheckpointStats:
    """Per-session checkpoint summary."""

    session_id: str
    total_checkpoints: int
    restored_checkpoints: int
    last_checkpoint: Checkpoint | None = None


@dataclass(frozen=True)
class CheckpointResult:
    """Outcome of a checkpoint creation attempt.

    Creation failures are values, not exceptions: the host session keeps
    running unprotected until the next successful trigger.
    """

    success: bool
    checkpoint_id: str | None = None
    reason: CheckpointTrigger | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if self.success and self.checkpoint_id is None:
            raise ValueError("success=True must carry a checkpoint_id")
        if not self.success and self.error is None:
            raise ValueError("success=False must carry an error explaining why")


@dataclass(frozen=True)
class ResumePrompt:
    """Structured summary of a checkpoint for the host to present.

    Every entry of ``sections`` is a short human-readable paragraph;
    render() joins the non-empty ones.
    """

    checkpoint_id: str
    sections: dict[str, str]
    interruption_reason: InterruptionReason | None = None
    progress: float | None = None

    SECTION_ORDER: ClassVar[tuple[str, ...]] = (
        "situation",
        "recovery",
        "progress",
        "context",
        "decisions",
        "next",
        "files",
        "tools",
        "blockers",
    )

    def render(self) -> str:
        lines: list[str] = []
        for key in self.SECTION_ORDER:
            text = self.sections.get(key, "")
            if text:
                lines.append(f"{key.upper()}: {text}")
        return "\n".join(lines)


@dataclass(frozen=True)
class ResumeDetection:
    """Result of looking for a recoverable checkpoint at startup.

    Confidence only phrases the prompt; the host always decides whether
    to restore.
    """

    should_resume: bool
    checkpoint: Checkpoint | None = None
    interruption_reason: InterruptionReason = InterruptionReason.UNKNOWN
    time_since_checkpoint_seconds: float = 0.0
    confidence: float = 0.0
    prompt: ResumePrompt | None = None
    anomalies: tuple[str, ...] = ()


@dataclass(frozen=True)
class RestoredState:
    """Reconstructed session state.

    Attributes:
        checkpoint_id: Checkpoint the state came from
        sections: Successfully decoded sections by name
        lost_sections: Sections present in the checkpoint that failed to decode
        fidelity: restored / present, in [0, 1]
        error: Why nothing could be restored (checkpoint missing, incompatible)
    """

    checkpoint_id: str
    sections: dict[str, Any] = field(default_factory=dict)
    lost_sections: tuple[str, ...] = ()
    fidelity: float = 0.0
    error: str | None = None

    @property
    def complete(self) -> bool:
        return self.error is None and not self.lost_sections

    def get(self, section: StateSection | str) -> Any:
        return self.sections.get(str(section))


@dataclass(frozen=True)
class ResumeEvent:
    """Record of a recovery attempt. Never mutated after creation."""

    event_id: str
    checkpoint_id: str
    session_id: str
    resumed_at: datetime
    interruption_reason: InterruptionReason
    time_since_checkpoint_seconds: float
    confidence: float
    success: bool
    fidelity: float
    lost_sections: tuple[str, ...] = ()
