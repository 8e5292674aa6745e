"""Type-preserving JSON serialization for checkpoint sections and signals.

Session state is opaque to crashguard, but it must come back exactly as it
went in. Plain json.dumps() cannot encode datetime values and would turn
them into strings on the way back, so datetimes travel inside
collision-safe type envelopes keyed by ``__crashguard_type__`` and
``__crashguard_value__``. A host dict that happens to contain the reserved
type key is wrapped in an escape envelope before encoding.

NaN and Infinity are rejected: they do not survive a JSON round trip
unchanged (NaN != NaN) and have no meaning in session state.
"""

from __future__ import annotations

import json
import math
from datetime import UTC, datetime
from typing import Any

_ENVELOPE_TYPE_KEY = "__crashguard_type__"
_ENVELOPE_VALUE_KEY = "__crashguard_value__"


class CheckpointEncoder(json.JSONEncoder):
    """JSON encoder that wraps datetime values in type envelopes.

    Naive datetimes are taken to be UTC.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=UTC)
            return {
                _ENVELOPE_TYPE_KEY: "datetime",
                _ENVELOPE_VALUE_KEY: obj.isoformat(),
            }
        return super().default(obj)


def _reject_nan_infinity(obj: Any) -> Any:
    """Recursively check for NaN/Infinity in a data structure.

    Raises:
        ValueError: If NaN or Infinity found
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(f"Cannot serialize non-finite float: {obj}. Use None for missing values, not NaN/Infinity.")
    elif isinstance(obj, dict):
        for v in obj.values():
            _reject_nan_infinity(v)
    elif isinstance(obj, list | tuple):
        for v in obj:
            _reject_nan_infinity(v)
    return obj


def _escape_reserved_keys(obj: Any) -> Any:
    """Wrap host dicts that contain the reserved type key in an escape envelope."""
    if isinstance(obj, datetime):
        return obj
    if isinstance(obj, dict):
        escaped = {k: _escape_reserved_keys(v) for k, v in obj.items()}
        if _ENVELOPE_TYPE_KEY in escaped:
            return {
                _ENVELOPE_TYPE_KEY: "escaped_dict",
                _ENVELOPE_VALUE_KEY: escaped,
            }
        return escaped
    if isinstance(obj, list):
        return [_escape_reserved_keys(v) for v in obj]
    return obj


def checkpoint_dumps(obj: Any) -> str:
    """Serialize to JSON, preserving datetimes.

    Output is key-sorted and compact so identical state always encodes to
    identical bytes.

    Raises:
        ValueError: If data contains NaN or Infinity
        TypeError: If data contains non-serializable types
    """
    _reject_nan_infinity(obj)
    escaped = _escape_reserved_keys(obj)
    return json.dumps(escaped, cls=CheckpointEncoder, allow_nan=False, sort_keys=True, separators=(",", ":"))


def _restore_types(obj: Any) -> Any:
    """Recursively unwrap type envelopes."""
    if isinstance(obj, dict):
        if _ENVELOPE_TYPE_KEY in obj and _ENVELOPE_VALUE_KEY in obj and len(obj) == 2:
            envelope_type = obj[_ENVELOPE_TYPE_KEY]
            envelope_value = obj[_ENVELOPE_VALUE_KEY]

            if envelope_type == "datetime" and isinstance(envelope_value, str):
                return datetime.fromisoformat(envelope_value)

            if envelope_type == "escaped_dict" and isinstance(envelope_value, dict):
                return {k: _restore_types(v) for k, v in envelope_value.items()}

        return {k: _restore_types(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_restore_types(v) for v in obj]
    return obj


def checkpoint_loads(s: str | bytes) -> Any:
    """Deserialize checkpoint_dumps() output, restoring datetimes.

    Raises:
        json.JSONDecodeError: If input is not valid JSON
    """
    return _restore_types(json.loads(s))
