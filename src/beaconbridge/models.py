"""Records shared by the cycle engine, parser and sinks."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Sequence

from .config import DeviceConfig


class Action(enum.IntEnum):
    """Beacon movement reported by a sensor.

    Values are the integer codes the backend stores for each action.
    """

    ENTER = 3
    EXIT = 7


ACTION_CODES: Dict[str, Action] = {"F1": Action.ENTER, "L1": Action.EXIT}


@dataclass
class Device:
    """One sensor on the shared serial line."""

    address: str
    rssi_threshold: int
    consecutive_handshake_failures: int = 0
    missed_laps: int = 0

    @staticmethod
    def from_config(entry: DeviceConfig) -> "Device":
        return Device(address=entry.address, rssi_threshold=entry.rssi_threshold)


def devices_from_config(entries: Sequence[DeviceConfig]) -> List[Device]:
    return [Device.from_config(entry) for entry in entries]


@dataclass(frozen=True)
class Event:
    id: str
    sensor_id: str
    beacon_id: str
    timestamp: datetime
    action: Action
    status: int
    employee_id: str
    project_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sensorId": self.sensor_id,
            "employeeId": self.employee_id,
            "timestamp": self.timestamp.isoformat(),
            "projectId": self.project_id,
            "action": int(self.action),
            "beaconId": self.beacon_id,
            "status": self.status,
        }
