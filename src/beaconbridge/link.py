from __future__ import annotations

import logging
import time
from typing import Optional

from .frames import Frame, FrameAssembler, FrameState
from .transport import SerialTransport

logger = logging.getLogger(__name__)


class SensorLink:
    """
    Synchronous request/response calls over the shared serial line.

    Each call holds a transport session for its whole exchange and starts
    listening before the command is written.
    """

    def __init__(
        self,
        transport: SerialTransport,
        assembler: Optional[FrameAssembler] = None,
        *,
        command_gap_sec: float = 0.0,
    ) -> None:
        self.transport = transport
        self.assembler = assembler or FrameAssembler()
        self.command_gap_sec = max(command_gap_sec, 0.0)
        transport.set_consumer(self.assembler.feed)

    def send(self, command: str) -> None:
        """Fire-and-continue; any reply is ignored."""
        with self.transport.session():
            self.transport.write_line(command)
            if self.command_gap_sec:
                time.sleep(self.command_gap_sec)

    def confirm(self, command: str, marker: str, timeout: float) -> bool:
        with self.transport.session(), self.assembler.listen() as wait:
            self.transport.write_line(command)
            matched = wait.confirm(marker, timeout)
        if not matched:
            logger.debug("No '%s' within %.1fs after '%s'", marker, timeout, command)
        return matched

    def request_block(
        self,
        command: str,
        address: str,
        idle_timeout: float,
        max_duration: Optional[float] = None,
    ) -> Frame:
        with self.transport.session(), self.assembler.listen() as wait:
            self.transport.write_line(command)
            frame = wait.block(address, idle_timeout, max_duration)
        self.assembler.record(frame)
        if frame.state is FrameState.TIMED_OUT:
            logger.warning(
                "Incomplete block from %s after '%s' (%d lines, no terminator)",
                address,
                command,
                len(frame.lines),
            )
        return frame
