"""CheckpointBuilder: validate, encode and size-check a session snapshot."""

import uuid
from collections.abc import Mapping
from typing import Any

from crashguard.contracts import (
    Checkpoint,
    CheckpointTrigger,
    RiskLevel,
    SectionRecord,
    SerializationError,
    SignalSnapshot,
    StateSection,
    StateSnapshot,
    ValidationError,
)
from crashguard.core.checkpoint.codec import encode_section
from crashguard.core.checkpoint.prompt import build_resume_prompt
from crashguard.core.checkpoint.serialization import checkpoint_dumps
from crashguard.core.config import CheckpointSettings
from crashguard.engine.clock import DEFAULT_CLOCK, Clock

_KNOWN_SECTIONS = frozenset(section.value for section in StateSection)


def _validate_value(section: str, value: Any, path: str) -> None:
    """Reject values that would not come back unchanged from JSON."""
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(f"Section '{section}': non-string key {key!r} at {path or '<root>'}")
            _validate_value(section, item, f"{path}.{key}" if path else key)
    elif isinstance(value, tuple):
        raise ValidationError(f"Section '{section}': tuple at {path or '<root>'} would restore as a list; pass a list")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _validate_value(section, item, f"{path}[{index}]")


class CheckpointBuilder:
    """Turns host state into an unsaved Checkpoint.

    Nothing is written here: a ValidationError or SerializationError
    leaves the store untouched.
    """

    def __init__(self, settings: CheckpointSettings | None = None, *, clock: Clock | None = None) -> None:
        self._settings = settings if settings is not None else CheckpointSettings()
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def build(
        self,
        session_id: str,
        trigger: CheckpointTrigger,
        state: StateSnapshot | Mapping[str, Any],
        signals: SignalSnapshot,
        sequence_number: int = 0,
        *,
        risk_level: RiskLevel = RiskLevel.SAFE,
    ) -> Checkpoint:
        """Build a checkpoint from a state snapshot.

        Args:
            session_id: Owning session
            trigger: Why the checkpoint is being taken
            state: StateSnapshot, or a mapping of section name to section content
            signals: Signal snapshot at checkpoint time
            sequence_number: Provisional sequence number (the store assigns
                the final one on save)
            risk_level: Assessed risk when the snapshot was taken

        Returns:
            Checkpoint ready for CheckpointStore.save()

        Raises:
            ValidationError: Malformed state
            SerializationError: Encoding failure or size limit exceeded
        """
        if not session_id:
            raise ValidationError("session_id is required")
        sections = self._validate_state(state)

        records: dict[str, SectionRecord] = {}
        for name, value in sections.items():
            try:
                records[name] = encode_section(name, value, level=self._settings.compression_level)
            except ValueError as e:  # NaN / Infinity
                raise ValidationError(f"Section '{name}': {e}") from e
            except TypeError as e:
                raise SerializationError(f"Section '{name}' is not serializable: {e}") from e

        checkpoint_id = f"cp-{uuid.uuid4().hex}"
        created_at = self._clock.now()
        prompt = build_resume_prompt(checkpoint_id, sections, trigger=trigger, created_at=created_at).render()
        signals_json = checkpoint_dumps(signals.to_dict())

        total_bytes = (
            sum(record.compressed_size for record in records.values())
            + len(signals_json.encode("utf-8"))
            + len(prompt.encode("utf-8"))
        )
        if total_bytes > self._settings.max_checkpoint_bytes:
            raise SerializationError(
                f"Checkpoint is {total_bytes} bytes, limit is {self._settings.max_checkpoint_bytes}",
                total_bytes=total_bytes,
                limit_bytes=self._settings.max_checkpoint_bytes,
            )

        return Checkpoint(
            checkpoint_id=checkpoint_id,
            session_id=session_id,
            sequence_number=sequence_number,
            trigger=trigger,
            created_at=created_at,
            sections=records,
            signals=signals,
            resume_prompt=prompt,
            schema_version=Checkpoint.CURRENT_SCHEMA_VERSION,
            total_bytes=total_bytes,
            risk_level=risk_level,
        )

    @staticmethod
    def _validate_state(state: StateSnapshot | Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(state, StateSnapshot):
            sections = state.sections()
        elif isinstance(state, Mapping):
            sections = {key: value for key, value in state.items() if value is not None}
        else:
            raise ValidationError(f"State must be a StateSnapshot or mapping, got {type(state).__name__}")

        unknown = sorted(str(name) for name in sections if name not in _KNOWN_SECTIONS)
        if unknown:
            raise ValidationError(f"Unknown state sections: {unknown}. Expected a subset of {sorted(_KNOWN_SECTIONS)}")
        if not sections:
            raise ValidationError("State snapshot has no sections")

        for name, value in sections.items():
            if not isinstance(value, Mapping):
                raise ValidationError(f"Section '{name}' must be a mapping, got {type(value).__name__}")
            _validate_value(name, value, "")

        return {str(name): dict(value) for name, value in sections.items()}
