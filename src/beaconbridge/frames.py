from __future__ import annotations

import enum
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .protocol import BLOCK_HEADER_PREFIX, BLOCK_TERMINATOR

logger = logging.getLogger(__name__)


class FrameState(str, enum.Enum):
    OPEN = "open"
    TERMINATED = "terminated"
    TIMED_OUT = "timed_out"


@dataclass
class Frame:
    """Multi-line reply to a data request, up to (not including) the `}` line."""

    address: str
    lines: List[str] = field(default_factory=list)
    state: FrameState = FrameState.OPEN

    @property
    def complete(self) -> bool:
        return self.state is FrameState.TERMINATED

    @property
    def header(self) -> Optional[str]:
        for line in self.lines:
            if line.startswith(BLOCK_HEADER_PREFIX):
                return line
        return None

    @property
    def body(self) -> List[str]:
        if self.state is FrameState.OPEN:
            raise ValueError("Frame is still open")
        for idx, line in enumerate(self.lines):
            if line.startswith(BLOCK_HEADER_PREFIX):
                return self.lines[idx + 1 :]
        return list(self.lines)


def split_lines(buffer: bytes) -> Tuple[List[str], str]:
    """Split raw bytes into complete, stripped, non-empty lines plus the pending tail."""
    text = buffer.decode("utf-8", errors="ignore")
    parts = text.split("\n")
    tail = parts.pop()
    lines = [part.strip() for part in parts if part.strip()]
    return lines, tail.strip()


class ResponseWait:
    """
    Bytes received while one command is in flight.

    The buffer belongs to this wait alone; it is discarded when the wait ends.
    """

    def __init__(self, cond: threading.Condition, clock: Callable[[], float]) -> None:
        self._cond = cond
        self._clock = clock
        self.buffer = bytearray()
        self.started = clock()
        self.last_rx = self.started

    def _append(self, data: bytes) -> None:
        self.buffer.extend(data)
        self.last_rx = self._clock()

    @property
    def text(self) -> str:
        return self.buffer.decode("utf-8", errors="ignore")

    def confirm(self, marker: str, timeout: float) -> bool:
        """Wait until *marker* shows up anywhere in the reply; False on timeout."""
        deadline = self._clock() + timeout
        with self._cond:
            while marker not in self.text:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def block(self, address: str, idle_timeout: float, max_duration: Optional[float] = None) -> Frame:
        """
        Collect lines until a `}` line arrives or the line stays silent for
        *idle_timeout*. A silent line yields a TIMED_OUT frame holding whatever
        was received.
        """
        hard_deadline = self.started + max_duration if max_duration else None
        with self._cond:
            while True:
                lines, tail = split_lines(bytes(self.buffer))
                if tail == BLOCK_TERMINATOR:
                    lines.append(tail)
                    tail = ""
                if BLOCK_TERMINATOR in lines:
                    end = lines.index(BLOCK_TERMINATOR)
                    return Frame(address=address, lines=lines[:end], state=FrameState.TERMINATED)
                now = self._clock()
                idle_left = self.last_rx + idle_timeout - now
                if hard_deadline is not None:
                    idle_left = min(idle_left, hard_deadline - now)
                if idle_left <= 0:
                    if tail:
                        lines.append(tail)
                    return Frame(address=address, lines=lines, state=FrameState.TIMED_OUT)
                self._cond.wait(idle_left)


class FrameAssembler:
    """
    Receives the transport byte stream and routes it to the single active wait.

    Bytes arriving while nobody listens are counted and dropped.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._active: Optional[ResponseWait] = None
        self._stats: Dict[str, int] = {"waits": 0, "frames": 0, "incomplete": 0, "dropped_bytes": 0}

    def feed(self, data: bytes) -> None:
        with self._cond:
            if self._active is None:
                self._stats["dropped_bytes"] += len(data)
                logger.debug("Dropping %d unsolicited bytes: %r", len(data), data[:64])
                return
            self._active._append(data)
            self._cond.notify_all()

    @contextmanager
    def listen(self) -> Iterator[ResponseWait]:
        with self._cond:
            if self._active is not None:
                raise RuntimeError("A response wait is already active")
            wait = ResponseWait(self._cond, self._clock)
            self._active = wait
            self._stats["waits"] += 1
        try:
            yield wait
        finally:
            with self._cond:
                self._active = None

    def record(self, frame: Frame) -> None:
        if frame.state is FrameState.TERMINATED:
            self._stats["frames"] += 1
        elif frame.state is FrameState.TIMED_OUT:
            self._stats["incomplete"] += 1

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
