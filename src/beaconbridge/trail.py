"""
Logging setup and the dated error trail.

Error records that carry a `device` attribute (pass `extra={"device": addr}`)
are appended to `Errors_YYYYMMDD.txt` as
`<timestamp>: Error at <device> - <message>`.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
TRAIL_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
TRAIL_FILE_PATTERN = "Errors_*.txt"


def trail_path(directory: Path, moment: datetime) -> Path:
    return directory / f"Errors_{moment:%Y%m%d}.txt"


def format_trail_line(moment: datetime, device: str, message: str) -> str:
    flat = " ".join(message.splitlines())
    return f"{moment:{TRAIL_TIMESTAMP_FORMAT}}: Error at {device} - {flat}"


class ErrorTrailHandler(logging.Handler):
    def __init__(
        self,
        directory: Path,
        level: int = logging.ERROR,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(level)
        self.directory = Path(directory)
        self._clock = clock
        self._write_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        device = getattr(record, "device", None)
        if device is None:
            return
        try:
            moment = self._clock()
            line = format_trail_line(moment, str(device), record.getMessage())
            with self._write_lock:
                self.directory.mkdir(parents=True, exist_ok=True)
                with trail_path(self.directory, moment).open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "INFO", trail_dir: Optional[Path] = None) -> Optional[ErrorTrailHandler]:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    if trail_dir is None:
        return None
    handler = ErrorTrailHandler(trail_dir)
    logging.getLogger("beaconbridge").addHandler(handler)
    return handler
