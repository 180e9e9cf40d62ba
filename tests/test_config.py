"""Tests for configuration system."""

from pathlib import Path

import pytest

from execmon.config import Config, MetricsConfig, MonitorConfig, SystemConfig


def test_monitor_config_defaults():
    """MonitorConfig has correct defaults."""
    config = MonitorConfig()
    assert config.map_path == "/sys/fs/bpf/exec_count"
    assert config.sample_interval == 5.0
    assert config.source == "bpftool"
    assert config.dump_timeout == 0.0


def test_metrics_config_defaults():
    """MetricsConfig has correct defaults."""
    config = MetricsConfig()
    assert config.listen_address == "0.0.0.0"
    assert config.port == 2112
    assert config.path == "/metrics"


def test_system_config_defaults():
    config = SystemConfig()
    assert config.log_max_bytes == 5 * 1024 * 1024
    assert config.log_backup_count == 3


def test_config_paths():
    """Config provides correct data paths."""
    config = Config()
    assert config.config_dir == Path.home() / ".config" / "execmon"
    assert config.config_path == config.config_dir / "config.toml"
    assert config.log_path == Path.home() / ".local" / "state" / "execmon" / "daemon.log"
    assert config.pid_path == Path("/tmp/execmon/daemon.pid")


def test_load_missing_file_returns_defaults(tmp_path):
    config = Config.load(tmp_path / "missing.toml")
    assert config == Config()


def test_save_and_load_roundtrip(tmp_path):
    """Saved values come back from load()."""
    path = tmp_path / "config.toml"
    config = Config()
    config.monitor.map_path = "/sys/fs/bpf/other"
    config.monitor.source = "direct"
    config.monitor.dump_timeout = 2.5
    config.metrics.port = 9100
    config.system.log_backup_count = 1
    config.save(path)

    loaded = Config.load(path)

    assert loaded.monitor.map_path == "/sys/fs/bpf/other"
    assert loaded.monitor.source == "direct"
    assert loaded.monitor.dump_timeout == 2.5
    assert loaded.metrics.port == 9100
    assert loaded.system.log_backup_count == 1


def test_saved_file_has_sections(tmp_path):
    path = tmp_path / "config.toml"
    Config().save(path)
    content = path.read_text()
    assert "[monitor]" in content
    assert "[metrics]" in content
    assert "[system]" in content


def test_partial_file_uses_defaults(tmp_path):
    """Missing keys fall back to dataclass defaults."""
    path = tmp_path / "config.toml"
    path.write_text("[monitor]\nsample_interval = 1\n")

    config = Config.load(path)

    assert config.monitor.sample_interval == 1.0
    assert isinstance(config.monitor.sample_interval, float)
    assert config.monitor.source == "bpftool"
    assert config.metrics.port == 2112


@pytest.mark.parametrize(
    ("toml", "message"),
    [
        ('[monitor]\nsource = "bcc"\n', "Invalid source"),
        ("[monitor]\nsample_interval = 0\n", "sample_interval"),
        ("[monitor]\ndump_timeout = -1\n", "dump_timeout"),
        ("[monitor]\nheartbeat_cycles = 0\n", "heartbeat_cycles"),
        ("[metrics]\nport = 70000\n", "port"),
        ('[monitor]\nsample_interval = "5"\n', "sample_interval must be a number"),
        ("[monitor]\nheartbeat_cycles = true\n", "heartbeat_cycles must be a number"),
        ("[metrics]\nport = 2112.5\n", "port must be an integer"),
        ('[system]\nlog_backup_count = "3"\n', "log_backup_count must be a number"),
    ],
)
def test_invalid_values(tmp_path, toml, message):
    path = tmp_path / "config.toml"
    path.write_text(toml)
    with pytest.raises(ValueError, match=message):
        Config.load(path)


def test_unparseable_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[monitor\n")
    with pytest.raises(ValueError, match="Failed to parse"):
        Config.load(path)
