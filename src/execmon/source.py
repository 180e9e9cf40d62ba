"""Map sources producing raw entries for one sampling pass.

Two interchangeable sources:
- PinnedMapSource: reads the pinned map directly through bpf(2)
- BpftoolSource: runs `bpftool map dump pinned <path>` and parses its JSON

Both yield RawEntry(key, value) so decoding and aggregation don't care where
the bytes came from.
"""

from __future__ import annotations

import json
import os
import re
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import structlog

from execmon import bpf
from execmon.bpf import MapInfo
from execmon.record import ProcessRecord, RawEntry, encode_value

log = structlog.get_logger()

KEY_SIZE = 4  # u32 keys


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────


class ExecmonError(Exception):
    """Base class for errors that abort one sampling cycle."""


class MapUnavailable(ExecmonError):
    """Raised when the pinned map can't be opened (missing, permissions, wrong type)."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"map {path} unavailable: {reason}")
        self.path = path
        self.reason = reason


class IterationError(ExecmonError):
    """Raised when a read fails partway through a pass."""

    def __init__(self, path: str, reason: str, entries_read: int = 0):
        super().__init__(f"iterating {path} failed after {entries_read} entries: {reason}")
        self.path = path
        self.reason = reason
        self.entries_read = entries_read


class SubprocessFailure(ExecmonError):
    """Raised when the dump tool can't be run or exits non-zero."""

    def __init__(self, command: list[str], reason: str, output: str = ""):
        super().__init__(f"{' '.join(command)}: {reason}")
        self.command = command
        self.reason = reason
        self.output = output


class ParseError(ExecmonError):
    """Raised when dump tool output isn't the expected JSON."""

    def __init__(self, reason: str, payload: str):
        super().__init__(f"unparseable dump output: {reason}")
        self.reason = reason
        self.payload = payload


# ─────────────────────────────────────────────────────────────────────────────
# Sources
# ─────────────────────────────────────────────────────────────────────────────


class MapSource(ABC):
    """One full pass over the exec counter map per entries() call."""

    def __init__(self, path: str | Path):
        self.path = str(path)

    @abstractmethod
    def entries(self) -> Iterator[RawEntry]:
        """Yield every entry of the map once.

        Raises:
            MapUnavailable: If the map can't be opened
            IterationError / SubprocessFailure / ParseError: On read failures
        """

    def info(self) -> MapInfo | None:
        """Return map metadata, or None if this source can't provide it."""
        return None


class PinnedMapSource(MapSource):
    """Direct keyed access to a pinned map via the bpf syscall."""

    def _open(self) -> int:
        try:
            return bpf.obj_get(self.path)
        except OSError as e:
            raise MapUnavailable(self.path, e.strerror or str(e)) from e

    def info(self) -> MapInfo:
        fd = self._open()
        try:
            return bpf.map_info(fd)
        except OSError as e:
            raise MapUnavailable(self.path, f"map info: {e.strerror or e}") from e
        finally:
            os.close(fd)

    def entries(self) -> Iterator[RawEntry]:
        fd = self._open()
        try:
            try:
                info = bpf.map_info(fd)
            except OSError as e:
                raise MapUnavailable(self.path, f"map info: {e.strerror or e}") from e
            if info.key_size != KEY_SIZE:
                raise MapUnavailable(
                    self.path, f"key size {info.key_size}, expected {KEY_SIZE} (u32)"
                )

            count = 0
            pairs = bpf.iter_map(fd, info.key_size, info.value_size, info.max_entries)
            while True:
                try:
                    key, value = next(pairs)
                except StopIteration:
                    break
                except OSError as e:
                    raise IterationError(self.path, e.strerror or str(e), count) from e
                count += 1
                yield RawEntry(key=int.from_bytes(key, "little"), value=value)
        finally:
            os.close(fd)


_NOISE_LINE = re.compile(r"^(Found \d+ elements?|-+|=+)$")


def strip_separator_lines(output: str) -> str:
    """Drop non-data lines around and between the JSON document."""
    lines = [line for line in output.splitlines() if line.strip()]
    lines = [line for line in lines if not _NOISE_LINE.match(line.strip())]
    for i, line in enumerate(lines):
        if line.lstrip().startswith(("[", "{")):
            return "\n".join(lines[i:])
    return ""


def _hex_bytes(items: list[Any]) -> bytes:
    return bytes(int(item, 16) if isinstance(item, str) else int(item) for item in items)


def _parse_key(key: Any) -> int:
    if isinstance(key, int):
        return key
    if isinstance(key, list):
        return int.from_bytes(_hex_bytes(key), "little")
    raise ValueError(f"unsupported key {key!r}")


def _parse_comm(comm: Any) -> str:
    if isinstance(comm, str):
        return comm
    raw = _hex_bytes(comm)
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="backslashreplace")


def _parse_value(value: Any) -> bytes:
    if isinstance(value, list):
        return _hex_bytes(value)
    if isinstance(value, dict):
        record = ProcessRecord(
            name=_parse_comm(value["comm"]),
            pid=int(value["pid"]),
            count=int(value["count"]),
        )
        return encode_value(record)
    raise ValueError(f"unsupported value {value!r}")


def parse_dump(output: str) -> list[RawEntry]:
    """Parse `bpftool map dump` JSON into raw entries.

    Accepts hex byte arrays (`"key": ["0x01", ...]`) and BTF-formatted
    entries (`{"key": 1, "value": {"comm": ..., "pid": ..., "count": ...}}`,
    either top-level or under "formatted"). When an entry carries both raw
    bytes and a "formatted" object, the raw bytes win so a value whose size
    disagrees with the record layout still reaches the raw fallback.

    Raises:
        ParseError: If the output isn't valid JSON of the expected shape.
    """
    text = strip_separator_lines(output)
    if not text:
        raise ParseError("no JSON document in output", output)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(str(e), output) from e

    if isinstance(data, dict):
        data = [data]

    entries = []
    for item in data:
        try:
            if not isinstance(item.get("value"), list) and "formatted" in item:
                item = item["formatted"]
            entries.append(RawEntry(key=_parse_key(item["key"]), value=_parse_value(item["value"])))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ParseError(f"bad entry {item!r}: {e}", output) from e
    return entries


class BpftoolSource(MapSource):
    """Map contents from the bpftool CLI.

    Args:
        path: Pinned map path
        bpftool: bpftool executable
        timeout: Seconds to wait for bpftool, None to wait indefinitely
    """

    def __init__(self, path: str | Path, bpftool: str = "bpftool", timeout: float | None = None):
        super().__init__(path)
        self.bpftool = bpftool
        self.timeout = timeout

    @property
    def command(self) -> list[str]:
        return [self.bpftool, "--json", "map", "dump", "pinned", self.path]

    def _run(self) -> str:
        cmd = self.command
        try:
            completed = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise SubprocessFailure(cmd, f"{self.bpftool} not found") from e
        except subprocess.TimeoutExpired as e:
            raise SubprocessFailure(cmd, f"timed out after {self.timeout}s") from e

        if completed.returncode != 0:
            output = (completed.stderr or "") + (completed.stdout or "")
            reason = (
                _bpftool_error(completed.stdout)
                or (completed.stderr or "").strip()
                or f"exit status {completed.returncode}"
            )
            if "obj get" in reason or "No such file" in reason or "ermission" in reason:
                raise MapUnavailable(self.path, reason)
            raise SubprocessFailure(cmd, reason, output)
        return completed.stdout

    def entries(self) -> Iterator[RawEntry]:
        output = self._run()
        log.debug("bpftool_dump", bytes=len(output))
        yield from parse_dump(output)


def _bpftool_error(stdout: str | None) -> str | None:
    """Extract the message from bpftool's JSON error object, if present."""
    if not stdout:
        return None
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict) and "error" in data:
        return str(data["error"])
    return None


def make_source(
    kind: str, path: str | Path, bpftool: str = "bpftool", timeout: float | None = None
) -> MapSource:
    """Build the map source named by the config/CLI."""
    if kind == "direct":
        return PinnedMapSource(path)
    if kind == "bpftool":
        return BpftoolSource(path, bpftool=bpftool, timeout=timeout)
    raise ValueError(f"Unknown source: {kind!r}. Valid sources: ['bpftool', 'direct']")
