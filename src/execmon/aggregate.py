"""Per-process-name aggregation of decoded exec counters."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from execmon.record import ProcessRecord


@dataclass
class AggregatedStat:
    """Exec totals for every map entry sharing one process name."""

    name: str
    total_count: int = 0
    executions: int = 0
    pids: list[int] = field(default_factory=list)


def aggregate(records: Iterable[ProcessRecord]) -> list[AggregatedStat]:
    """Group records by name, sorted by total_count descending.

    Single pass into an insertion-ordered dict; sorted() is stable, so names
    with equal totals keep their first-seen order. Zero-count records still
    produce a stat.
    """
    by_name: dict[str, AggregatedStat] = {}
    for record in records:
        stat = by_name.get(record.name)
        if stat is None:
            stat = by_name[record.name] = AggregatedStat(name=record.name)
        stat.total_count += record.count
        stat.executions += 1
        stat.pids.append(record.pid)

    return sorted(by_name.values(), key=lambda s: s.total_count, reverse=True)


def grand_total(stats: Iterable[AggregatedStat]) -> int:
    """Sum of total_count across all names."""
    return sum(s.total_count for s in stats)
