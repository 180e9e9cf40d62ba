"""Configuration system for execmon."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

VALID_SOURCES = ("bpftool", "direct")


@dataclass
class MonitorConfig:
    """Sampling configuration."""

    map_path: str = "/sys/fs/bpf/exec_count"  # Pinned exec counter map
    sample_interval: float = 5.0  # Seconds between cycles
    source: str = "bpftool"  # "bpftool" (subprocess + JSON) or "direct" (bpf syscall)
    bpftool_path: str = "bpftool"
    dump_timeout: float = 0.0  # Seconds to wait for bpftool, 0 = no limit
    heartbeat_cycles: int = 12  # Log heartbeat every N cycles (~1 min at 5s)


@dataclass
class MetricsConfig:
    """Metrics endpoint configuration."""

    listen_address: str = "0.0.0.0"
    port: int = 2112
    path: str = "/metrics"  # prometheus_client answers on every path


@dataclass
class SystemConfig:
    """Daemon housekeeping configuration."""

    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "execmon"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "execmon"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID file)."""
        return Path("/tmp/execmon")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("monitor", "metrics", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        sys_defaults = defaults.system
        system_data = data.get("system", {})

        return cls(
            monitor=_load_monitor_config(data.get("monitor", {})),
            metrics=_load_metrics_config(data.get("metrics", {})),
            system=SystemConfig(
                log_max_bytes=_number(
                    system_data, "log_max_bytes", sys_defaults.log_max_bytes, int
                ),
                log_backup_count=_number(
                    system_data, "log_backup_count", sys_defaults.log_backup_count, int
                ),
            ),
        )


def _number(data: dict, key: str, default: float, kind: type = float) -> float:
    """Read a numeric setting, rejecting strings and booleans with ValueError."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    if kind is int and not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return kind(value)


def _load_monitor_config(data: dict) -> MonitorConfig:
    """Load monitor config from TOML data, using dataclass defaults for missing fields."""
    d = MonitorConfig()

    source = data.get("source", d.source)
    if source not in VALID_SOURCES:
        raise ValueError(f"Invalid source: {source!r}. Must be one of {list(VALID_SOURCES)}")

    sample_interval = _number(data, "sample_interval", d.sample_interval)
    if sample_interval <= 0:
        raise ValueError(f"sample_interval must be > 0, got {sample_interval}")

    dump_timeout = _number(data, "dump_timeout", d.dump_timeout)
    if dump_timeout < 0:
        raise ValueError(f"dump_timeout must be >= 0, got {dump_timeout}")

    heartbeat_cycles = _number(data, "heartbeat_cycles", d.heartbeat_cycles, int)
    if heartbeat_cycles < 1:
        raise ValueError(f"heartbeat_cycles must be >= 1, got {heartbeat_cycles}")

    return MonitorConfig(
        map_path=str(data.get("map_path", d.map_path)),
        sample_interval=sample_interval,
        source=str(source),
        bpftool_path=str(data.get("bpftool_path", d.bpftool_path)),
        dump_timeout=dump_timeout,
        heartbeat_cycles=heartbeat_cycles,
    )


def _load_metrics_config(data: dict) -> MetricsConfig:
    """Load metrics endpoint config from TOML data."""
    d = MetricsConfig()

    port = _number(data, "port", d.port, int)
    if not 0 < port < 65536:
        raise ValueError(f"port must be in 1-65535, got {port}")

    return MetricsConfig(
        listen_address=str(data.get("listen_address", d.listen_address)),
        port=port,
        path=str(data.get("path", d.path)),
    )
