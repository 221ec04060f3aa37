"""Data-block line grammar: `YYYY-MM-DD HH:MM:SS beaconId,[status,]F1|L1`."""
from __future__ import annotations

import enum
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .config import EventContext
from .models import ACTION_CODES, Device, Event
from .protocol import is_frame_marker

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

LINE_RE = re.compile(
    r"^(?P<timestamp>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\s+"
    r"(?P<beacon>[^,]+?)\s*,\s*"
    r"(?:(?P<status>\d{1,3})\s*,\s*)?"
    r"(?P<code>[A-Z]\d)\b"
)


class Rejection(str, enum.Enum):
    MALFORMED = "malformed"
    FRAMING = "framing"
    THRESHOLD = "threshold"


@dataclass(frozen=True)
class ParseResult:
    event: Optional[Event] = None
    rejection: Optional[Rejection] = None
    detail: str = ""

    @property
    def accepted(self) -> bool:
        return self.event is not None


def parse_event(
    line: str,
    device: Device,
    *,
    context: Optional[EventContext] = None,
    event_id: Optional[str] = None,
) -> ParseResult:
    """
    Turn one body line into an Event for *device*.

    A missing status reads as 0 and is then checked against the device
    threshold; `status == threshold` is accepted. Anything after the action
    code (e.g. ` STL`) is ignored.
    """
    stripped = line.strip()
    if not stripped or is_frame_marker(stripped):
        return ParseResult(rejection=Rejection.FRAMING, detail=f"framing line {stripped!r}")
    match = LINE_RE.match(stripped)
    if match is None:
        return ParseResult(rejection=Rejection.MALFORMED, detail=f"unparsable line {stripped!r}")
    action = ACTION_CODES.get(match.group("code"))
    if action is None:
        return ParseResult(
            rejection=Rejection.MALFORMED,
            detail=f"unknown action code {match.group('code')!r}",
        )
    try:
        timestamp = datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT)
    except ValueError:
        return ParseResult(rejection=Rejection.MALFORMED, detail=f"bad timestamp in {stripped!r}")
    status = int(match.group("status")) if match.group("status") else 0
    if status > device.rssi_threshold:
        return ParseResult(
            rejection=Rejection.THRESHOLD,
            detail=f"status {status} above threshold {device.rssi_threshold}",
        )
    ctx = context or EventContext()
    return ParseResult(
        event=Event(
            id=event_id or str(uuid.uuid4()),
            sensor_id=device.address,
            beacon_id=match.group("beacon").strip(),
            timestamp=timestamp,
            action=action,
            status=status,
            employee_id=ctx.employee_id,
            project_id=ctx.project_id,
        )
    )


def log_rejection(device: Device, result: ParseResult) -> None:
    if result.rejection is Rejection.THRESHOLD:
        logger.info("Discarded reading from %s: %s", device.address, result.detail)
    elif result.rejection is not None:
        logger.warning("Parse failure at %s: %s", device.address, result.detail)
