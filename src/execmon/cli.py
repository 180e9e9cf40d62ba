"""CLI commands for execmon."""

import click

SOURCE_CHOICE = click.Choice(["direct", "bpftool"])


@click.group()
@click.version_option(package_name="execmon")
def main() -> None:
    """Republish eBPF execve counters as Prometheus metrics."""
    pass


def _require_map_path(map_path: str | None) -> str:
    """Exit 1 with usage text when the map path is missing."""
    if not map_path:
        ctx = click.get_current_context()
        click.echo(ctx.get_usage(), err=True)
        click.echo("Error: missing MAP_PATH (pinned eBPF map)", err=True)
        raise SystemExit(1)
    return map_path


@main.command()
@click.argument("map_path", required=False)
@click.option("--raw", is_flag=True, help="Show raw hex bytes with best-effort field decode")
@click.option("--source", type=SOURCE_CHOICE, default="direct", show_default=True)
@click.option("--bpftool", "bpftool_path", default="bpftool", help="bpftool executable")
def dump(map_path: str | None, raw: bool, source: str, bpftool_path: str) -> None:
    """Dump every entry of a pinned exec counter map.

    Prints one JSON line per entry, or the raw bytes with --raw.
    """
    from execmon import logging as console
    from execmon.formatting import format_json_line, format_map_header, format_raw
    from execmon.record import VALUE_SIZE, RawRecord, decode_entry, decode_raw
    from execmon.source import ExecmonError, make_source

    map_path = _require_map_path(map_path)
    console.configure_cli()
    src = make_source(source, map_path, bpftool=bpftool_path)

    try:
        info = src.info()
        if info is not None:
            for line in format_map_header(info):
                click.echo(line)
            if info.value_size != VALUE_SIZE:
                console.schema_mismatch(VALUE_SIZE, info.value_size)

        click.echo("Map contents:")
        click.echo("-" * 28)

        for entry in src.entries():
            if raw:
                for line in format_raw(decode_raw(entry)):
                    click.echo(line)
                click.echo()
                continue

            decoded = decode_entry(entry)
            if isinstance(decoded, RawRecord):
                for line in format_raw(decoded):
                    click.echo(line)
                click.echo()
            else:
                click.echo(format_json_line(entry.key, decoded))
    except ExecmonError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.command()
@click.argument("map_path", required=False)
@click.option("--source", type=SOURCE_CHOICE, default="direct", show_default=True)
@click.option("--bpftool", "bpftool_path", default="bpftool", help="bpftool executable")
def report(map_path: str | None, source: str, bpftool_path: str) -> None:
    """Show exec totals per process name, highest first."""
    from execmon import logging as console
    from execmon.aggregate import aggregate, grand_total
    from execmon.formatting import format_report
    from execmon.record import decode_entry, records_from
    from execmon.source import ExecmonError, make_source

    map_path = _require_map_path(map_path)
    console.configure_cli()
    src = make_source(source, map_path, bpftool=bpftool_path)

    try:
        decoded = [decode_entry(entry) for entry in src.entries()]
    except ExecmonError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    stats = aggregate(records_from(decoded))
    if not stats:
        click.echo("No entries in map.")
        return

    for line in format_report(stats):
        click.echo(line)
    click.echo()
    click.echo(f"{len(stats)} process names, {grand_total(stats)} execs total")


@main.command()
@click.option("--interval", "-i", type=float, default=None, help="Override sample interval")
@click.option("--port", "-p", type=int, default=None, help="Override metrics port")
@click.option("--source", type=SOURCE_CHOICE, default=None, help="Override map source")
def monitor(interval: float | None, port: int | None, source: str | None) -> None:
    """Sample the pinned map continuously and serve Prometheus metrics."""
    import asyncio

    from execmon.config import Config
    from execmon.daemon import run_daemon

    try:
        cfg = Config.load()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    if interval is not None:
        cfg.monitor.sample_interval = interval
    if port is not None:
        cfg.metrics.port = port
    if source is not None:
        cfg.monitor.source = source

    try:
        asyncio.run(run_daemon(cfg))
    except (RuntimeError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from execmon.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[monitor]")
    click.echo(f"  map_path = {cfg.monitor.map_path}")
    click.echo(f"  sample_interval = {cfg.monitor.sample_interval}")
    click.echo(f"  source = {cfg.monitor.source}")
    click.echo(f"  bpftool_path = {cfg.monitor.bpftool_path}")
    click.echo(f"  dump_timeout = {cfg.monitor.dump_timeout}")
    click.echo()
    click.echo("[metrics]")
    click.echo(f"  listen_address = {cfg.metrics.listen_address}")
    click.echo(f"  port = {cfg.metrics.port}")
    click.echo(f"  path = {cfg.metrics.path}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from execmon.config import Config

    cfg = Config.load()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from execmon.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
