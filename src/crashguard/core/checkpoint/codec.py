"""Per-section encoding: JSON -> UTF-8 -> zlib, guarded by a sha256 checksum.

Sections are encoded independently so a corrupt section can be reported
and skipped while its siblings still restore.
"""

import hashlib
import zlib
from typing import Any

from crashguard.contracts import CorruptionError, SectionRecord
from crashguard.core.checkpoint.serialization import checkpoint_dumps, checkpoint_loads


def payload_checksum(payload: bytes) -> str:
    """sha256 hex digest of a compressed section payload."""
    return hashlib.sha256(payload).hexdigest()


def encode_section(name: str, value: Any, *, level: int = 6) -> SectionRecord:
    """Encode one section.

    Args:
        name: Section name
        value: JSON-compatible section content (datetimes allowed)
        level: zlib compression level

    Raises:
        ValueError: If value contains NaN or Infinity
        TypeError: If value contains non-serializable types
    """
    raw = checkpoint_dumps(value).encode("utf-8")
    payload = zlib.compress(raw, level)
    return SectionRecord(
        name=name,
        payload=payload,
        checksum=payload_checksum(payload),
        raw_size=len(raw),
    )


def decode_section(record: SectionRecord) -> Any:
    """Decode one section, verifying its checksum first.

    Raises:
        CorruptionError: On checksum mismatch, zlib failure, invalid UTF-8 or JSON
    """
    if payload_checksum(record.payload) != record.checksum:
        raise CorruptionError(record.name, "checksum mismatch")
    try:
        raw = zlib.decompress(record.payload)
    except zlib.error as e:
        raise CorruptionError(record.name, f"decompression failed: {e}") from e
    if len(raw) != record.raw_size:
        raise CorruptionError(record.name, f"size mismatch: expected {record.raw_size} bytes, got {len(raw)}")
    try:
        return checkpoint_loads(raw.decode("utf-8"))
    except ValueError as e:  # UnicodeDecodeError, JSONDecodeError, bad datetime envelope
        raise CorruptionError(record.name, f"invalid payload: {e}") from e
