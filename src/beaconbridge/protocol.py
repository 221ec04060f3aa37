"""
Command vocabulary understood by the sensor firmware.

Every command is one ASCII line prefixed with the device address. `P0`
addresses all devices at once and is never answered.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable, List, Sequence

BROADCAST_ADDRESS = "P0"
BLOCK_TERMINATOR = "}"
BLOCK_HEADER_PREFIX = "{"

MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}$")


def handshake(address: str) -> str:
    return f"{address} OK"


def handshake_reply(address: str) -> str:
    return f"{address} Yes"


def request_data(address: str) -> str:
    return f"{address} SDATAFULL"


def clear_data(address: str) -> List[str]:
    return [f"{address} CLDATA", f"{address} CLDATA2"]


def clear_reply(command: str) -> str:
    return f"{command} OK"


def approve(address: str, beacon_ids: Sequence[str]) -> str:
    if not beacon_ids:
        raise ValueError("approve requires at least one beacon id")
    return f"{address} A," + ",".join(beacon_ids)


def approve_reply(address: str) -> str:
    return f"{address} A OK"


def list_stored(address: str) -> str:
    return f"{address} SL"


def remove_stored(address: str, beacon_id: str) -> str:
    return f"{address} CL,{beacon_id}"


def remove_reply(address: str) -> str:
    return f"{address} CL OK"


def set_clock(address: str, moment: datetime) -> str:
    return f"{address} ST,{moment:%Y-%m-%d %H:%M:%S}"


def block_header(address: str) -> str:
    return f"{BLOCK_HEADER_PREFIX}{address}"


def is_frame_marker(line: str) -> bool:
    stripped = line.strip()
    return stripped == BLOCK_TERMINATOR or stripped.startswith(BLOCK_HEADER_PREFIX)


def is_mac(value: str) -> bool:
    return bool(MAC_RE.match(value.strip()))


def parse_stored_list(address: str, lines: Iterable[str]) -> List[str]:
    """Return stored allow-list entries from an `SL` reply, in device order."""
    echo_prefix = f"{address} "
    entries: List[str] = []
    for line in lines:
        stripped = line.strip()
        if not stripped or is_frame_marker(stripped):
            continue
        if stripped.startswith(echo_prefix):
            continue
        entries.append(stripped)
    return entries


def chunked(values: Sequence[str], size: int) -> List[List[str]]:
    size = max(size, 1)
    return [list(values[idx : idx + size]) for idx in range(0, len(values), size)]
