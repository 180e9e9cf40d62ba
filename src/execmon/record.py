"""Decoding of exec counter map values.

The value layout is defined by the kernel program, not by Python:

    offset  size  field
    0       16    comm   (NUL-padded process name)
    16      4     pid    (u32, little-endian)
    20      8     count  (u64, little-endian)

Fields are extracted at these explicit offsets. Values whose size does not match
the expected record size are returned as a RawRecord carrying the hex bytes and,
when the blob is long enough, a best-effort decode of the leading fields.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

import structlog

log = structlog.get_logger()

COMM_LEN = 16
PID_OFFSET = 16
COUNT_OFFSET = 20
VALUE_SIZE = 28  # 16 + 4 + 8, packed

_PID = struct.Struct("<I")
_COUNT = struct.Struct("<Q")


@dataclass(frozen=True)
class RawEntry:
    """One key/value pair read from the map in a single pass."""

    key: int
    value: bytes


@dataclass(frozen=True)
class ProcessRecord:
    """Decoded per-process exec counter."""

    name: str
    pid: int
    count: int

    def to_dict(self) -> dict:
        """Return the value object used by the JSON line output."""
        return {"comm": self.name, "pid": self.pid, "count": self.count}


@dataclass(frozen=True)
class RawRecord:
    """Fallback result for a value whose size disagrees with the schema."""

    key: int
    value_hex: str
    expected_size: int
    actual_size: int
    partial: ProcessRecord | None = None
    trailing_hex: str = ""


def decode_comm(buf: bytes) -> str:
    """Extract the process name from the first COMM_LEN bytes.

    Stops at the first NUL byte. Invalid UTF-8 is kept visible as escapes.
    """
    comm = buf[:COMM_LEN]
    end = comm.find(b"\x00")
    if end != -1:
        comm = comm[:end]
    return comm.decode("utf-8", errors="backslashreplace")


def _decode_fields(value: bytes) -> ProcessRecord:
    if len(value) < VALUE_SIZE:
        raise ValueError(f"value too short: {len(value)} < {VALUE_SIZE} bytes")
    (pid,) = _PID.unpack_from(value, PID_OFFSET)
    (count,) = _COUNT.unpack_from(value, COUNT_OFFSET)
    return ProcessRecord(name=decode_comm(value), pid=pid, count=count)


def decode_value(value: bytes) -> ProcessRecord:
    """Decode a value blob of exactly VALUE_SIZE bytes.

    Raises:
        ValueError: If the blob size differs from VALUE_SIZE.
    """
    if len(value) != VALUE_SIZE:
        raise ValueError(f"value size {len(value)} does not match expected {VALUE_SIZE}")
    return _decode_fields(value)


def decode_raw(entry: RawEntry) -> RawRecord:
    """Build the raw fallback view of an entry.

    Leading fields are decoded when the blob holds at least one full record.
    """
    value = entry.value
    partial = None
    trailing = ""
    if len(value) >= VALUE_SIZE:
        partial = _decode_fields(value)
        trailing = value[VALUE_SIZE:].hex()
    return RawRecord(
        key=entry.key,
        value_hex=value.hex(),
        expected_size=VALUE_SIZE,
        actual_size=len(value),
        partial=partial,
        trailing_hex=trailing,
    )


def decode_entry(entry: RawEntry) -> ProcessRecord | RawRecord:
    """Decode one map entry, falling back to raw mode on a size mismatch.

    Never raises for any value length.
    """
    if len(entry.value) == VALUE_SIZE:
        return _decode_fields(entry.value)

    raw = decode_raw(entry)
    log.warning(
        "schema_mismatch",
        key=entry.key,
        expected_size=VALUE_SIZE,
        actual_size=raw.actual_size,
        partial_decode=raw.partial is not None,
        value_hex=raw.value_hex[:128],
    )
    return raw


def encode_value(record: ProcessRecord) -> bytes:
    """Encode a record into the 28-byte kernel layout.

    The name is truncated to COMM_LEN bytes and NUL-padded.
    """
    buf = bytearray(VALUE_SIZE)
    comm = record.name.encode("utf-8")[:COMM_LEN]
    buf[: len(comm)] = comm
    _PID.pack_into(buf, PID_OFFSET, record.pid)
    _COUNT.pack_into(buf, COUNT_OFFSET, record.count)
    return bytes(buf)


def records_from(decoded: list[ProcessRecord | RawRecord]) -> list[ProcessRecord]:
    """Return the records usable for aggregation.

    Raw fallbacks contribute their partial decode when one was possible.
    """
    records = []
    for item in decoded:
        if isinstance(item, ProcessRecord):
            records.append(item)
        elif item.partial is not None:
            records.append(item.partial)
    return records
