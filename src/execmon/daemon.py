"""Sampling daemon: map -> decode -> aggregate -> publish, once per interval."""

import asyncio
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import psutil
import structlog
from prometheus_client import start_http_server

from execmon import logging as console
from execmon.aggregate import AggregatedStat, aggregate, grand_total
from execmon.config import Config
from execmon.metrics import MetricPublisher, PublishResult
from execmon.record import VALUE_SIZE, decode_entry, records_from
from execmon.source import ExecmonError, MapSource, ParseError, SubprocessFailure, make_source

log = structlog.get_logger()

FAILURE_DETAIL_LIMIT = 2048  # chars of tool output or payload kept in the log


class DaemonPhase(Enum):
    """Where the sampling loop currently is."""

    IDLE = "idle"
    SAMPLING = "sampling"
    PUBLISHING = "publishing"
    STOPPED = "stopped"


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    phase: DaemonPhase = DaemonPhase.IDLE
    cycle_count: int = 0
    failed_cycles: int = 0
    last_cycle_time: datetime | None = None
    last_names: int = 0
    last_total: int = 0
    last_error: str | None = field(default=None, repr=False)

    def update_cycle(self, names: int, total: int) -> None:
        """Update state after a published cycle."""
        self.cycle_count += 1
        self.last_names = names
        self.last_total = total
        self.last_cycle_time = datetime.now()

    def record_failure(self, error: str) -> None:
        """Update state after a skipped cycle."""
        self.failed_cycles += 1
        self.last_error = error


class Daemon:
    """Drives the sampling cycles and owns the metrics endpoint."""

    def __init__(
        self,
        config: Config,
        source: MapSource | None = None,
        publisher: MetricPublisher | None = None,
    ):
        self.config = config
        self.state = DaemonState()

        monitor = config.monitor
        self.source = source or make_source(
            monitor.source,
            monitor.map_path,
            bpftool=monitor.bpftool_path,
            timeout=monitor.dump_timeout or None,
        )
        self.publisher = publisher or MetricPublisher()

        self._shutdown_event = asyncio.Event()
        self._http_server = None
        self._http_thread = None
        self._owns_pid_file = False

    def sample(self) -> list[AggregatedStat]:
        """Read one full pass of the map and aggregate it.

        The whole pass is materialized before aggregating, so a failure
        partway through discards everything read in this cycle.
        """
        entries = list(self.source.entries())
        decoded = [decode_entry(entry) for entry in entries]
        return aggregate(records_from(decoded))

    async def run_cycle(self) -> PublishResult:
        """Sample, aggregate and publish once.

        Raises:
            ExecmonError: If the map couldn't be read; nothing is published.
        """
        self.state.phase = DaemonPhase.SAMPLING
        try:
            stats = await asyncio.to_thread(self.sample)
        finally:
            self.state.phase = DaemonPhase.IDLE

        self.state.phase = DaemonPhase.PUBLISHING
        try:
            result = self.publisher.publish(stats)
        finally:
            self.state.phase = DaemonPhase.IDLE

        total = grand_total(stats)
        self.state.update_cycle(len(stats), total)

        for name in result.resets:
            console.baseline_reset(name, self.publisher.state.last_totals[name])

        log.debug(
            "cycle_published",
            names=result.names,
            total=total,
            delta=result.delta,
            global_delta=result.global_delta,
        )
        return result

    async def start(self) -> None:
        """Start the daemon."""
        from importlib.metadata import version

        log.info("daemon_starting", version=version("execmon"))
        console.version_info("execmon", version("execmon"))

        monitor = self.config.monitor
        log.info(
            "daemon_config",
            map_path=monitor.map_path,
            source=monitor.source,
            sample_interval=monitor.sample_interval,
            dump_timeout=monitor.dump_timeout,
        )
        console.source_summary(monitor.source, monitor.map_path, monitor.sample_interval)

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        # Check for existing instance
        if self._check_already_running():
            log.error("daemon_already_running")
            console.already_running()
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        self._check_schema()
        self._start_metrics_server()

        self.state.running = True
        log.info("daemon_started")
        console.daemon_started()

        await self._main_loop()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False

        if self._http_server is not None:
            self._http_server.shutdown()
            self._http_server.server_close()
            self._http_server = None
        if self._http_thread is not None:
            self._http_thread.join(timeout=5.0)
            self._http_thread = None

        # Only the PID file this instance wrote
        if self._owns_pid_file:
            self._remove_pid_file()
            self._owns_pid_file = False
        self.state.phase = DaemonPhase.STOPPED

        log.info("daemon_stopped", cycles=self.state.cycle_count)
        console.daemon_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    def _start_metrics_server(self) -> None:
        """Serve the publisher's registry from a background thread."""
        metrics = self.config.metrics
        self._http_server, self._http_thread = start_http_server(
            metrics.port,
            addr=metrics.listen_address,
            registry=self.publisher.registry,
        )
        log.info("metrics_listening", address=metrics.listen_address, port=metrics.port)
        console.metrics_listening(metrics.listen_address, metrics.port, metrics.path)

    def _check_schema(self) -> None:
        """Warn up front when the map's value size disagrees with the record layout."""
        try:
            info = self.source.info()
        except ExecmonError as e:
            # Not fatal for the monitor; cycles keep retrying
            log.warning("map_info_unavailable", error=str(e))
            return
        if info is None:
            return
        log.info(
            "map_info",
            name=info.name,
            key_size=info.key_size,
            value_size=info.value_size,
            max_entries=info.max_entries,
        )
        if info.value_size != VALUE_SIZE:
            log.warning(
                "schema_mismatch", expected_size=VALUE_SIZE, actual_size=info.value_size
            )
            console.schema_mismatch(VALUE_SIZE, info.value_size)

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if daemon is already running.

        Verifies not just that a process with the PID exists, but that it's
        actually an execmon monitor.
        """
        if not self.config.pid_path.exists():
            return False

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline = proc.cmdline()

            if "execmon" in " ".join(cmdline).lower():
                log.info("daemon_already_running_verified", pid=pid, cmdline=" ".join(cmdline[:3]))
                return True
            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            self._remove_pid_file()
            return False

        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self._remove_pid_file()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return True

    async def _main_loop(self) -> None:
        """Run cycles at the configured interval until shutdown.

        Each cycle completes before the next one starts. A failed cycle is
        logged and the loop waits for the next tick; published counters are
        left untouched. The shutdown flag is only checked between cycles.
        """
        sample_interval = self.config.monitor.sample_interval
        heartbeat_interval = self.config.monitor.heartbeat_cycles
        heartbeat_count = 0

        while not self._shutdown_event.is_set():
            iteration_start = asyncio.get_running_loop().time()
            try:
                await self.run_cycle()
                heartbeat_count += 1
            except asyncio.CancelledError:
                log.info("main_loop_cancelled")
                break
            except ExecmonError as e:
                self.state.record_failure(str(e))
                log.error(
                    "cycle_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    **_failure_details(e),
                )
                console.cycle_failed(str(e))
            except Exception as e:
                self.state.record_failure(str(e))
                log.exception("cycle_crashed", error=str(e))
                console.cycle_failed(str(e))

            if heartbeat_count >= heartbeat_interval:
                log.info(
                    "daemon_heartbeat",
                    cycles=self.state.cycle_count,
                    failed=self.state.failed_cycles,
                    names=self.state.last_names,
                    total=self.state.last_total,
                )
                console.heartbeat(
                    self.state.cycle_count,
                    self.state.last_names,
                    self.state.last_total,
                    self.state.failed_cycles,
                )
                heartbeat_count = 0

            # Sleep for remaining interval (maintains consistent cycle rate)
            elapsed = asyncio.get_running_loop().time() - iteration_start
            sleep_time = sample_interval - elapsed
            if sleep_time > 0:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=sleep_time)
                    break  # Shutdown requested during sleep
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue to next cycle


def _failure_details(e: ExecmonError) -> dict:
    """Extra log fields for a skipped cycle: what the dump tool actually said."""
    if isinstance(e, ParseError):
        return {"payload": e.payload[:FAILURE_DETAIL_LIMIT]}
    if isinstance(e, SubprocessFailure):
        return {"output": e.output[:FAILURE_DETAIL_LIMIT]}
    return {}


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    console.configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
