"""Formatting utilities for consistent output across dump, report and monitor."""

import json

from execmon.aggregate import AggregatedStat
from execmon.bpf import MapInfo
from execmon.record import VALUE_SIZE, ProcessRecord, RawRecord

PID_DISPLAY_LIMIT = 5


def format_json_line(key: int, record: ProcessRecord) -> str:
    """Format one decoded entry as a JSON line.

    Returns:
        '{"key": 1, "value": {"comm": "bash", "pid": 100, "count": 5}}'
    """
    return json.dumps({"key": key, "value": record.to_dict()}, ensure_ascii=False)


def format_raw(raw: RawRecord) -> list[str]:
    """Format the raw view of an entry: key, hex value, leading fields, trailing bytes."""
    lines = [f"key: {raw.key}", f"value (hex): {raw.value_hex}"]
    if raw.partial is not None:
        p = raw.partial
        lines.append(f'fields: comm="{p.name}", pid={p.pid}, count={p.count}')
        if raw.trailing_hex:
            lines.append(f"trailing bytes: {raw.trailing_hex}")
    else:
        lines.append(f"too short to decode: {raw.actual_size} < {VALUE_SIZE} bytes")
    return lines


def format_map_header(info: MapInfo) -> list[str]:
    """Describe a map and how its value size compares with the record layout."""
    lines = [
        f"Map name: {info.name}",
        f"Key size: {info.key_size} bytes",
        f"Value size: {info.value_size} bytes",
        f"Max entries: {info.max_entries}",
        f"Record size: {VALUE_SIZE} bytes (comm=16, pid=4, count=8)",
    ]
    return lines


def format_pids(pids: list[int], limit: int = PID_DISPLAY_LIMIT) -> str:
    """Format a PID list, truncated after limit entries.

    Returns:
        "100, 101" or "1, 2, 3, 4, 5 and 1 more"
    """
    shown = ", ".join(str(pid) for pid in pids[:limit])
    extra = len(pids) - limit
    if extra > 0:
        return f"{shown} and {extra} more"
    return shown


def format_report(stats: list[AggregatedStat]) -> list[str]:
    """Format aggregated stats as a table, in the order given."""
    lines = [
        f"{'Process':16}  {'Total':>12}  {'Execs':>6}  PIDs",
        "-" * 75,
    ]
    for stat in stats:
        lines.append(
            f"{stat.name[:16]:16}  {stat.total_count:>12}  {stat.executions:>6}  "
            f"{format_pids(stat.pids)}"
        )
    return lines
