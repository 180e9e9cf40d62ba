"""Tests for map value decoding."""

import struct

import pytest

from execmon.record import (
    COMM_LEN,
    VALUE_SIZE,
    ProcessRecord,
    RawEntry,
    RawRecord,
    decode_comm,
    decode_entry,
    decode_raw,
    decode_value,
    encode_value,
    records_from,
)


def test_layout_constants():
    """Record layout is comm[16] + u32 pid + u64 count, packed."""
    assert COMM_LEN == 16
    assert VALUE_SIZE == 28


def test_decode_value_explicit_offsets():
    """Fields come from fixed little-endian offsets, not native struct padding."""
    value = b"bash".ljust(16, b"\x00") + struct.pack("<I", 4242) + struct.pack("<Q", 2**40 + 7)

    record = decode_value(value)

    assert record == ProcessRecord(name="bash", pid=4242, count=2**40 + 7)


@pytest.mark.parametrize(
    "record",
    [
        ProcessRecord(name="bash", pid=100, count=5),
        ProcessRecord(name="", pid=0, count=0),
        ProcessRecord(name="kworker/u16:2", pid=2**32 - 1, count=2**64 - 1),
        ProcessRecord(name="sixteen_chars_xx", pid=1, count=1),
    ],
)
def test_encode_decode_round_trip(record):
    """Encoding then decoding the 28-byte layout preserves every field."""
    value = encode_value(record)

    assert len(value) == VALUE_SIZE
    assert decode_value(value) == record


def test_decode_value_wrong_size_raises():
    """decode_value() is strict about size."""
    with pytest.raises(ValueError, match="does not match"):
        decode_value(b"\x00" * 27)


class TestDecodeComm:
    """Tests for process name extraction."""

    def test_stops_at_first_nul(self):
        """Bytes after the first NUL are ignored."""
        assert decode_comm(b"sh\x00garbage\x00\x00\x00\x00\x00\x00") == "sh"

    def test_full_width_name_without_nul(self):
        """A 16-byte name with no terminator uses the whole slice."""
        assert decode_comm(b"abcdefghijklmnopEXTRA") == "abcdefghijklmnop"

    def test_invalid_utf8_passes_through(self):
        """Invalid bytes stay visible instead of failing the decode."""
        assert decode_comm(b"ab\xffcd\x00") == "ab\\xffcd"

    def test_empty_buffer(self):
        """Empty input gives an empty name."""
        assert decode_comm(b"") == ""


class TestDecodeEntry:
    """Tests for decode_entry() and the raw fallback."""

    def test_matching_size_decodes(self):
        """A 28-byte value decodes to a ProcessRecord."""
        entry = RawEntry(key=1, value=encode_value(ProcessRecord("bash", 100, 5)))

        assert decode_entry(entry) == ProcessRecord("bash", 100, 5)

    def test_40_byte_value_falls_back_with_partial_decode(self):
        """A 40-byte blob yields hex output plus the leading fields."""
        body = encode_value(ProcessRecord("python3", 321, 9))
        value = body + bytes(range(12))
        entry = RawEntry(key=7, value=value)

        result = decode_entry(entry)

        assert isinstance(result, RawRecord)
        assert result.key == 7
        assert result.value_hex == value.hex()
        assert result.expected_size == 28
        assert result.actual_size == 40
        assert result.partial == ProcessRecord("python3", 321, 9)
        assert result.trailing_hex == bytes(range(12)).hex()

    def test_fallback_logs_warning(self):
        """Size mismatch is reported as a schema_mismatch warning."""
        from structlog.testing import capture_logs

        with capture_logs() as logs:
            decode_entry(RawEntry(key=3, value=b"\x01" * 40))

        warnings = [entry for entry in logs if entry["event"] == "schema_mismatch"]
        assert len(warnings) == 1
        assert warnings[0]["log_level"] == "warning"
        assert warnings[0]["expected_size"] == 28
        assert warnings[0]["actual_size"] == 40

    def test_short_value_falls_back_without_partial(self):
        """Blobs shorter than a record only get the hex view."""
        result = decode_entry(RawEntry(key=1, value=b"\xab" * 10))

        assert isinstance(result, RawRecord)
        assert result.partial is None
        assert result.value_hex == "ab" * 10
        assert result.trailing_hex == ""

    @pytest.mark.parametrize("size", [0, 1, 15, 16, 20, 27, 29, 32, 64, 256])
    def test_any_mismatched_size_never_raises(self, size):
        """Fallback handles every length without raising."""
        result = decode_entry(RawEntry(key=size, value=b"\x7f" * size))

        assert isinstance(result, RawRecord)
        assert result.actual_size == size
        assert (result.partial is not None) == (size >= VALUE_SIZE)


def test_decode_raw_on_matching_size():
    """decode_raw() also works on well-formed values (dump --raw)."""
    value = encode_value(ProcessRecord("cat", 55, 2))

    result = decode_raw(RawEntry(key=9, value=value))

    assert result.partial == ProcessRecord("cat", 55, 2)
    assert result.actual_size == VALUE_SIZE
    assert result.trailing_hex == ""


def test_records_from_keeps_partial_decodes():
    """Decoded records and partial fallbacks feed aggregation; hex-only ones don't."""
    ok = ProcessRecord("bash", 1, 1)
    partial = RawRecord(
        key=2, value_hex="", expected_size=28, actual_size=40, partial=ProcessRecord("zsh", 2, 2)
    )
    hex_only = RawRecord(key=3, value_hex="00", expected_size=28, actual_size=1)

    assert records_from([ok, partial, hex_only]) == [ok, ProcessRecord("zsh", 2, 2)]
