"""Command line interface for the beaconbridge package."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

from . import protocol
from .backend import BackendClient
from .config import BridgeConfig, load_config
from .dispatch import Dispatcher, EventSink, MqttEventQueue
from .engine import SensorCycleEngine
from .errors import TransportError
from .link import SensorLink
from .models import devices_from_config
from .reporting import export_report, load_error_trail
from .roster import RosterSync
from .status import CycleState, CycleStatus
from .trail import configure_logging
from .transport import SerialTransport

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, context_settings={"help_option_names": ["-h", "--help"]})

CONFIG_OPTION = typer.Option(Path("config/bridge.json"), "--config", "-c", help="Path to bridge config.")
OVERRIDE_OPTION = typer.Option(
    None,
    "--set",
    help="Override config keys, e.g. --set serial.port=/dev/ttyUSB1 --set timing.handshake_timeout_sec=2",
)


def _load(config_path: Path, override: Optional[List[str]]) -> BridgeConfig:
    try:
        cfg = load_config(config_path, override or None)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Cannot load {config_path}: {exc}", param_hint="--config") from exc
    configure_logging(cfg.log_level, cfg.error_trail_dir)
    return cfg


def open_transport(cfg: BridgeConfig, retry: bool = False) -> SerialTransport:
    transport = SerialTransport(cfg.serial)
    delay = max(cfg.serial.reconnect_initial_sec, 0.1)
    while True:
        try:
            transport.open()
            return transport
        except TransportError as exc:
            if not retry:
                raise
            logger.warning("%s; retrying in %.1fs", exc, delay)
            time.sleep(delay)
            delay = min(delay * 2, max(cfg.serial.reconnect_max_sec, delay))


def _open_or_exit(cfg: BridgeConfig) -> SerialTransport:
    try:
        return open_transport(cfg)
    except TransportError as exc:
        typer.echo(f"[error] {exc}", err=True)
        raise typer.Exit(code=2) from exc


def _echo_state(state: CycleState) -> None:
    where = state.address or "-"
    typer.echo(f"[lap {state.lap} #{state.iteration}] {where} {state.phase.value} {state.attempt or ''}".rstrip())


@app.command("run")
def run_bridge(
    config_path: Path = CONFIG_OPTION,
    override: Optional[List[str]] = OVERRIDE_OPTION,
    show_status: bool = typer.Option(False, "--status", help="Echo every phase change to the console."),
) -> None:
    """Poll every sensor forever and forward their events."""

    cfg = _load(config_path, override)
    if not cfg.devices:
        raise typer.BadParameter("No devices configured", param_hint="--config")

    sinks: List[EventSink] = []
    queue_sink: Optional[MqttEventQueue] = None
    backend: Optional[BackendClient] = None
    if cfg.queue.enabled:
        queue_sink = MqttEventQueue(cfg.queue)
        queue_sink.start()
        sinks.append(queue_sink)
    if cfg.backend.enabled:
        backend = BackendClient(cfg.backend)
        sinks.append(backend)

    status = CycleStatus()
    if show_status:
        status.subscribe(_echo_state)

    transport = open_transport(cfg, retry=True)
    link = SensorLink(transport, command_gap_sec=cfg.timing.command_gap_sec)
    engine = SensorCycleEngine(
        cfg,
        link,
        Dispatcher(sinks),
        roster_sync=RosterSync(link, cfg.timing, cfg.roster),
        roster_source=backend.fetch_roster if backend is not None else None,
        status=status,
    )
    try:
        engine.run_forever()
    except KeyboardInterrupt:
        logger.info("Stopping bridge (Ctrl+C)")
    finally:
        engine.stop()
        transport.close()
        if queue_sink is not None:
            queue_sink.stop()
        if backend is not None:
            backend.close()


@app.command()
def approve(
    beacon_id: str = typer.Argument(..., help="Beacon address xx:xx:xx:xx:xx:xx"),
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Only this sensor (default: all)."),
    config_path: Path = CONFIG_OPTION,
    override: Optional[List[str]] = OVERRIDE_OPTION,
) -> None:
    """Push one approved beacon id and verify it was stored."""

    if not protocol.is_mac(beacon_id):
        raise typer.BadParameter("Expected 6 colon-separated hex octets", param_hint="BEACON_ID")
    cfg = _load(config_path, override)
    devices = devices_from_config(cfg.devices)
    if device is not None:
        devices = [entry for entry in devices if entry.address == device]
        if not devices:
            raise typer.BadParameter(f"Unknown device '{device}'", param_hint="--device")
    transport = _open_or_exit(cfg)
    failed = []
    try:
        roster = RosterSync(SensorLink(transport, command_gap_sec=cfg.timing.command_gap_sec), cfg.timing, cfg.roster)
        for entry in devices:
            if roster.push_entry(entry, beacon_id):
                typer.echo(f"{entry.address}: stored")
            else:
                failed.append(entry.address)
                typer.echo(f"{entry.address}: NOT validated")
    finally:
        transport.close()
    if failed:
        raise typer.Exit(code=1)


@app.command()
def send(
    command: str = typer.Argument(..., help="Raw command line, e.g. 'P1 BTV'."),
    idle: float = typer.Option(1.0, "--idle", help="Stop after this many silent seconds."),
    config_path: Path = CONFIG_OPTION,
    override: Optional[List[str]] = OVERRIDE_OPTION,
) -> None:
    """Send one raw command and print whatever the sensors answer."""

    cfg = _load(config_path, override)
    transport = _open_or_exit(cfg)
    try:
        link = SensorLink(transport)
        address = command.split(" ", 1)[0]
        frame = link.request_block(command, address, idle, cfg.timing.data_max_sec)
    finally:
        transport.close()
    for line in frame.lines:
        typer.echo(line)
    if frame.complete:
        typer.echo(protocol.BLOCK_TERMINATOR)


@app.command("set-clock")
def set_clock(
    config_path: Path = CONFIG_OPTION,
    override: Optional[List[str]] = OVERRIDE_OPTION,
) -> None:
    """Set every sensor clock to the host time."""

    cfg = _load(config_path, override)
    transport = _open_or_exit(cfg)
    try:
        link = SensorLink(transport, command_gap_sec=cfg.timing.command_gap_sec)
        for entry in cfg.devices:
            link.send(protocol.set_clock(entry.address, datetime.now()))
            typer.echo(f"{entry.address}: clock set")
    finally:
        transport.close()


@app.command()
def report(
    trail_dir: Path = typer.Option(Path("logs"), "--trail-dir", help="Directory holding Errors_*.txt files."),
    out_dir: Path = typer.Option(Path("error_report"), "--out", help="Output directory for the report."),
) -> None:
    """Summarize the error trail per device."""

    df = load_error_trail(trail_dir)
    summary = export_report(df, out_dir, trail_dir=trail_dir)
    typer.echo(f"{len(df)} errors across {len(summary)} devices, report written to {out_dir}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
