# tests/core/checkpoint/test_codec.py
"""Tests for per-section compression and checksum verification."""

import dataclasses
import zlib

import pytest

from crashguard.contracts import CorruptionError
from crashguard.core.checkpoint.codec import decode_section, encode_section, payload_checksum


class TestEncodeSection:
    def test_record_fields(self) -> None:
        record = encode_section("task", {"operation": "deploy", "progress": 0.5})

        assert record.name == "task"
        assert record.checksum == payload_checksum(record.payload)
        assert len(zlib.decompress(record.payload)) == record.raw_size

    def test_repetitive_content_compresses(self) -> None:
        record = encode_section("conversation", {"summary": "retry " * 2000})

        assert record.compressed_size < record.raw_size / 10

    def test_decode_returns_original(self) -> None:
        value = {"active_files": ["a.py", "b.py"], "modified_files": []}

        assert decode_section(encode_section("files", value)) == value

    def test_compression_level_zero_still_decodes(self) -> None:
        value = {"summary": "x" * 100}

        assert decode_section(encode_section("conversation", value, level=0)) == value


class TestDecodeSectionCorruption:
    def test_checksum_mismatch(self) -> None:
        record = encode_section("tools", {"recent_tool_calls": []})
        tampered = dataclasses.replace(record, payload=record.payload[:-1] + bytes([record.payload[-1] ^ 0xFF]))

        with pytest.raises(CorruptionError, match="checksum mismatch") as exc_info:
            decode_section(tampered)

        assert exc_info.value.section == "tools"

    def test_invalid_zlib_with_matching_checksum(self) -> None:
        garbage = b"not zlib at all"
        record = encode_section("tools", {})
        broken = dataclasses.replace(record, payload=garbage, checksum=payload_checksum(garbage))

        with pytest.raises(CorruptionError, match="decompression failed"):
            decode_section(broken)

    def test_size_mismatch(self) -> None:
        record = encode_section("task", {"operation": "deploy"})
        broken = dataclasses.replace(record, raw_size=record.raw_size + 1)

        with pytest.raises(CorruptionError, match="size mismatch"):
            decode_section(broken)

    def test_invalid_json_payload(self) -> None:
        raw = b"{not json"
        payload = zlib.compress(raw)
        record = encode_section("task", {})
        broken = dataclasses.replace(record, payload=payload, checksum=payload_checksum(payload), raw_size=len(raw))

        with pytest.raises(CorruptionError, match="invalid payload"):
            decode_section(broken)
