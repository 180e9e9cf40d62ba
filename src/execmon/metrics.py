"""Prometheus metrics derived from aggregated exec counts.

Counters exposed here never go backwards. The map behind them can be reset,
processes can restart with fresh counts, or a decode anomaly can shrink a
total; when an observed total drops below its baseline, the baseline is moved
down to the new value and nothing is added for that cycle.

Baselines live in PublishedMetricState, which is handed to MetricPublisher so
the delta logic can be exercised without a running daemon.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge

from execmon.aggregate import AggregatedStat, grand_total

log = structlog.get_logger()

NAMESPACE = "execmon"


@dataclass
class PublishedMetricState:
    """Last observed totals used as the baseline for the next increment."""

    last_totals: dict[str, int] = field(default_factory=dict)
    global_last_total: int = 0

    def advance(self, name: str, current: int) -> tuple[int, bool]:
        """Move the baseline for name to current.

        Returns:
            (delta, reset) - delta is 0 and reset True when current went backwards.
        """
        last = self.last_totals.get(name, 0)
        self.last_totals[name] = current
        if current < last:
            return 0, True
        return current - last, False

    def advance_global(self, current: int) -> tuple[int, bool]:
        """Same as advance() for the cross-name total."""
        last = self.global_last_total
        self.global_last_total = current
        if current < last:
            return 0, True
        return current - last, False


@dataclass
class PublishResult:
    """What one publish() call changed."""

    names: int = 0
    delta: int = 0
    global_delta: int = 0
    resets: list[str] = field(default_factory=list)
    global_reset: bool = False


class MetricPublisher:
    """Owns the metric families and applies one aggregated report per cycle.

    prometheus_client guards every metric child with its own lock, so the HTTP
    exposition thread can read while the sampling loop writes.
    """

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        state: PublishedMetricState | None = None,
    ):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.state = state if state is not None else PublishedMetricState()

        self.exec_total = Counter(
            "process_exec",
            "Cumulative execve calls observed per process name",
            ["comm"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.instances = Gauge(
            "process_instances",
            "Map entries (process instances) per process name in the last sample",
            ["comm"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.global_total = Counter(
            "exec",
            "Cumulative execve calls observed across all processes",
            namespace=NAMESPACE,
            registry=self.registry,
        )

    def publish(self, stats: list[AggregatedStat]) -> PublishResult:
        """Apply one cycle's aggregated report to the exposed metrics."""
        result = PublishResult(names=len(stats))
        seen = set()

        for stat in stats:
            seen.add(stat.name)
            self.instances.labels(comm=stat.name).set(stat.executions)

            delta, reset = self.state.advance(stat.name, stat.total_count)
            if reset:
                result.resets.append(stat.name)
                log.info(
                    "counter_baseline_reset",
                    comm=stat.name,
                    new_baseline=stat.total_count,
                )
            # Touch the child even when delta is 0 so the series exists
            counter = self.exec_total.labels(comm=stat.name)
            if delta:
                counter.inc(delta)
            result.delta += delta

        # Names gone from this sample keep their counter; no live instances
        for name in self.state.last_totals:
            if name not in seen:
                self.instances.labels(comm=name).set(0)

        global_delta, global_reset = self.state.advance_global(grand_total(stats))
        if global_reset:
            log.info("global_counter_baseline_reset", new_baseline=self.state.global_last_total)
        if global_delta:
            self.global_total.inc(global_delta)
        result.global_delta = global_delta
        result.global_reset = global_reset

        return result

    def counter_value(self, name: str) -> float:
        """Current exposed per-name counter value (0 if never published)."""
        value = self.registry.get_sample_value(
            f"{NAMESPACE}_process_exec_total", {"comm": name}
        )
        return value or 0.0

    def global_value(self) -> float:
        """Current exposed global counter value."""
        return self.registry.get_sample_value(f"{NAMESPACE}_exec_total") or 0.0
