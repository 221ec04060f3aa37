from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence

DEFAULT_RSSI_THRESHOLD = 80


@dataclass
class SerialConfig:
    port: str = "/dev/ttyUSB0"
    baudrate: int = 115200
    read_timeout_sec: float = 0.05
    write_timeout_sec: float = 1.0
    newline: str = "\n"
    reconnect_initial_sec: float = 0.5
    reconnect_max_sec: float = 5.0


@dataclass
class TimingConfig:
    handshake_timeout_sec: float = 3.0
    handshake_attempts: int = 2
    data_idle_timeout_sec: float = 3.0
    data_max_sec: float = 60.0
    clear_confirm_timeout_sec: float = 0.0  # 0 = fire-and-continue
    roster_confirm_timeout_sec: float = 10.0
    roster_max_attempts: int = 5
    command_gap_sec: float = 0.1
    idle_lap_delay_sec: float = 1.0
    stats_log_interval: float = 60.0


@dataclass
class RosterConfig:
    enabled: bool = True
    every_laps: int = 1  # 0 = on demand only
    batch_size: int = 10
    broadcast: bool = False
    purge_invalid: bool = True


@dataclass
class BackendConfig:
    base_url: str = "http://localhost:3000/api/v1"
    timeout_sec: float = 5.0
    enabled: bool = True


@dataclass
class QueueConfig:
    host: str = "localhost"
    port: int = 1883
    topic: str = "events"
    qos: int = 1
    client_id: str = "beaconbridge"
    keepalive: int = 60
    max_queued: int = 10000  # offline buffer cap, 0 = unbounded
    enabled: bool = True


@dataclass
class EventContext:
    employee_id: str = "-"
    project_id: str = "projectid"


@dataclass
class DeviceConfig:
    address: str
    rssi_threshold: int = DEFAULT_RSSI_THRESHOLD

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "DeviceConfig":
        address = str(data.get("address", "")).strip()
        if not address:
            raise ValueError("device entries require a non-empty 'address'")
        if " " in address:
            raise ValueError(f"device address '{address}' may not contain spaces")
        return DeviceConfig(
            address=address,
            rssi_threshold=int(data.get("rssi_threshold", DEFAULT_RSSI_THRESHOLD)),
        )


@dataclass
class BridgeConfig:
    devices: List[DeviceConfig] = field(default_factory=list)
    serial: SerialConfig = field(default_factory=SerialConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    roster: RosterConfig = field(default_factory=RosterConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    context: EventContext = field(default_factory=EventContext)
    error_trail_dir: Path = Path(".")
    log_level: str = "INFO"

    def device(self, address: str) -> DeviceConfig:
        for entry in self.devices:
            if entry.address == address:
                return entry
        raise KeyError(address)


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must hold a JSON object, got {type(data).__name__}")
    return data


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def parse_devices(entries: Sequence[Any]) -> List[DeviceConfig]:
    devices: List[DeviceConfig] = []
    seen = set()
    for entry in entries:
        if isinstance(entry, str):
            entry = {"address": entry}
        if not isinstance(entry, dict):
            raise ValueError(f"Unsupported device entry {entry!r}")
        device = DeviceConfig.from_mapping(entry)
        if device.address in seen:
            raise ValueError(f"Duplicate device address '{device.address}'")
        seen.add(device.address)
        devices.append(device)
    return devices


def config_from_mapping(merged: Dict[str, Any]) -> BridgeConfig:
    serial_data = merged.get("serial") or {}
    timing_data = merged.get("timing") or {}
    roster_data = merged.get("roster") or {}
    backend_data = merged.get("backend") or {}
    queue_data = merged.get("queue") or {}
    context_data = merged.get("context") or {}
    return BridgeConfig(
        devices=parse_devices(merged.get("devices") or []),
        serial=SerialConfig(
            port=str(serial_data.get("port", "/dev/ttyUSB0")),
            baudrate=int(serial_data.get("baudrate", 115200)),
            read_timeout_sec=float(serial_data.get("read_timeout_sec", 0.05)),
            write_timeout_sec=float(serial_data.get("write_timeout_sec", 1.0)),
            newline=str(serial_data.get("newline", "\n")),
            reconnect_initial_sec=float(serial_data.get("reconnect_initial_sec", 0.5)),
            reconnect_max_sec=float(serial_data.get("reconnect_max_sec", 5.0)),
        ),
        timing=TimingConfig(
            handshake_timeout_sec=float(timing_data.get("handshake_timeout_sec", 3.0)),
            handshake_attempts=max(int(timing_data.get("handshake_attempts", 2)), 1),
            data_idle_timeout_sec=float(timing_data.get("data_idle_timeout_sec", 3.0)),
            data_max_sec=float(timing_data.get("data_max_sec", 60.0)),
            clear_confirm_timeout_sec=float(timing_data.get("clear_confirm_timeout_sec", 0.0)),
            roster_confirm_timeout_sec=float(timing_data.get("roster_confirm_timeout_sec", 10.0)),
            roster_max_attempts=max(int(timing_data.get("roster_max_attempts", 5)), 1),
            command_gap_sec=float(timing_data.get("command_gap_sec", 0.1)),
            idle_lap_delay_sec=float(timing_data.get("idle_lap_delay_sec", 1.0)),
            stats_log_interval=float(timing_data.get("stats_log_interval", 60.0)),
        ),
        roster=RosterConfig(
            enabled=bool(roster_data.get("enabled", True)),
            every_laps=int(roster_data.get("every_laps", 1)),
            batch_size=max(int(roster_data.get("batch_size", 10)), 1),
            broadcast=bool(roster_data.get("broadcast", False)),
            purge_invalid=bool(roster_data.get("purge_invalid", True)),
        ),
        backend=BackendConfig(
            base_url=str(backend_data.get("base_url", "http://localhost:3000/api/v1")).rstrip("/"),
            timeout_sec=float(backend_data.get("timeout_sec", 5.0)),
            enabled=bool(backend_data.get("enabled", True)),
        ),
        queue=QueueConfig(
            host=str(queue_data.get("host", "localhost")),
            port=int(queue_data.get("port", 1883)),
            topic=str(queue_data.get("topic", "events")),
            qos=int(queue_data.get("qos", 1)),
            client_id=str(queue_data.get("client_id", "beaconbridge")),
            keepalive=int(queue_data.get("keepalive", 60)),
            max_queued=max(int(queue_data.get("max_queued", 10000)), 0),
            enabled=bool(queue_data.get("enabled", True)),
        ),
        context=EventContext(
            employee_id=str(context_data.get("employee_id", "-")),
            project_id=str(context_data.get("project_id", "projectid")),
        ),
        error_trail_dir=Path(merged.get("error_trail_dir") or "."),
        log_level=str(merged.get("log_level", "INFO")).upper(),
    )


def load_config(path: Path | str, overrides: Sequence[str] | None = None) -> BridgeConfig:
    """
    Load the bridge configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["serial.port=/dev/ttyUSB1", "timing.handshake_timeout_sec=1.5"]
    """
    config_path = Path(path)
    data = _load_json(config_path)
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    return config_from_mapping(_merge(data, override_data))


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
        if not isinstance(cursor, dict):
            raise ValueError(f"Override '{dotted_key}' conflicts with a scalar value for '{part}'")
    cursor[parts[-1]] = value
