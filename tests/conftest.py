"""Shared test fixtures for execmon."""

from collections.abc import Iterator

import pytest

from execmon.config import Config
from execmon.record import ProcessRecord, RawEntry, encode_value
from execmon.source import ExecmonError, MapSource


def make_entry(key: int, name: str, pid: int, count: int) -> RawEntry:
    """Create a RawEntry holding a well-formed 28-byte value."""
    return RawEntry(key=key, value=encode_value(ProcessRecord(name=name, pid=pid, count=count)))


def make_records(*rows: tuple[str, int, int]) -> list[ProcessRecord]:
    """Create ProcessRecords from (name, pid, count) tuples."""
    return [ProcessRecord(name=name, pid=pid, count=count) for name, pid, count in rows]


class FakeSource(MapSource):
    """MapSource serving a scripted sequence of passes.

    Each entries() call consumes the next pass; an exception in the script is
    raised instead of yielding entries.
    """

    def __init__(self, passes: list[list[RawEntry] | ExecmonError]):
        super().__init__("/sys/fs/bpf/test_map")
        self.passes = list(passes)
        self.calls = 0

    def entries(self) -> Iterator[RawEntry]:
        self.calls += 1
        current = self.passes.pop(0) if self.passes else []
        if isinstance(current, Exception):
            raise current
        yield from current


@pytest.fixture
def bash_entries() -> list[RawEntry]:
    """Two bash entries with distinct PIDs plus one sleep entry."""
    return [
        make_entry(1, "bash", 100, 5),
        make_entry(2, "sleep", 200, 4),
        make_entry(3, "bash", 101, 3),
    ]


@pytest.fixture
def config() -> Config:
    """Default config with a short interval and an ephemeral metrics port."""
    cfg = Config()
    cfg.monitor.sample_interval = 0.01
    cfg.metrics.listen_address = "127.0.0.1"
    cfg.metrics.port = 0
    return cfg
