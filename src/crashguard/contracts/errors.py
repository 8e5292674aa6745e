"""Error taxonomy for checkpoint creation, storage, and recovery.

Creation path:
    ValidationError     - malformed snapshot input, rejected before any I/O
    SerializationError  - compression or size-limit failure, nothing written
    StorageError        - I/O or lock failure after bounded retries

Recovery path:
    CorruptionError             - a section failed checksum or decompression
    CorruptCheckpointError      - the checkpoint row itself is unreadable
    IncompatibleCheckpointError - record written by a newer schema version
    AmbiguityWarning            - more than one unrestored checkpoint found

None of these escape the host-facing entry points (CheckpointCoordinator,
ResumeDetector, SessionRestorer, SessionGuard); they are converted into
result values there.
"""


class CrashGuardError(Exception):
    """Base class for all crashguard errors."""

    pass


class ValidationError(CrashGuardError):
    """Raised when a state snapshot is malformed."""

    pass


class SerializationError(CrashGuardError):
    """Raised when a snapshot cannot be encoded within the size limit.

    Attributes:
        total_bytes: Encoded size when the limit was exceeded (None for
            encoding failures)
        limit_bytes: Configured hard limit (None for encoding failures)
    """

    def __init__(self, message: str, *, total_bytes: int | None = None, limit_bytes: int | None = None) -> None:
        self.total_bytes = total_bytes
        self.limit_bytes = limit_bytes
        super().__init__(message)


class StorageError(CrashGuardError):
    """Raised when the checkpoint database stays unavailable after retries.

    Attributes:
        operation: Store operation that failed (e.g. "save")
        attempts: Number of attempts made before giving up
    """

    def __init__(self, operation: str, attempts: int, cause: BaseException) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"Storage operation '{operation}' failed after {attempts} attempt(s): {cause}")


class CorruptionError(CrashGuardError):
    """Raised when a persisted section cannot be decoded.

    Attributes:
        section: Name of the section that failed
    """

    def __init__(self, section: str, detail: str) -> None:
        self.section = section
        super().__init__(f"Section '{section}' is corrupt: {detail}")


class CorruptCheckpointError(CrashGuardError):
    """Raised when a checkpoint row itself cannot be decoded.

    Covers the record fields (trigger, status, signal snapshot). A bad
    section only loses that section and raises CorruptionError instead.

    Attributes:
        checkpoint_id: Checkpoint whose row failed to decode
    """

    def __init__(self, checkpoint_id: str, detail: str) -> None:
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint '{checkpoint_id}' record is corrupt: {detail}")


class IncompatibleCheckpointError(CrashGuardError):
    """Raised when a checkpoint was written by an unsupported schema version."""

    pass


class AmbiguityWarning(UserWarning):
    """Emitted when a session has more than one unrestored checkpoint.

    The newest checkpoint is used. This indicates rows written outside the
    store's supersede discipline (e.g. by an older release).
    """

    pass
