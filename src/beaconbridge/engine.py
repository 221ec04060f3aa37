from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional, Sequence

from . import protocol
from .config import BridgeConfig
from .dispatch import Dispatcher
from .frames import Frame
from .link import SensorLink
from .models import Device, devices_from_config
from .parser import log_rejection, parse_event
from .roster import RosterSync
from .status import CycleStatus, Phase

logger = logging.getLogger(__name__)

RosterSource = Callable[[], Sequence[str]]


class SensorCycleEngine:
    """
    Round-robin poll of every configured sensor over one serial line.

    Per device: handshake, data request, cleanup. Any fault inside a device's
    turn is logged and the cycle moves on; run_forever() only returns after
    stop().
    """

    def __init__(
        self,
        config: BridgeConfig,
        link: SensorLink,
        dispatcher: Dispatcher,
        *,
        roster_sync: Optional[RosterSync] = None,
        roster_source: Optional[RosterSource] = None,
        status: Optional[CycleStatus] = None,
        devices: Optional[List[Device]] = None,
    ) -> None:
        self.config = config
        self.timing = config.timing
        self.link = link
        self.dispatcher = dispatcher
        self.roster_sync = roster_sync
        self.roster_source = roster_source
        self.status = status or CycleStatus()
        self.devices = devices if devices is not None else devices_from_config(config.devices)
        self._stop_event = threading.Event()
        self._lap = 0
        self._iteration = 0
        self._accepted = 0
        self._rejected = 0
        self._failed_turns = 0
        self._next_stats = time.monotonic() + max(self.timing.stats_log_interval, 1.0)

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run_forever(self) -> None:
        logger.info("Starting cycle over %d devices", len(self.devices))
        while not self._stop_event.is_set():
            try:
                self.run_lap()
            except Exception:
                logger.exception("Lap %d aborted, starting next lap", self._lap)
        logger.info("Cycle stopped after %d laps", self._lap)

    def run_lap(self) -> None:
        self._lap += 1
        if not self.devices:
            self._stop_event.wait(self.timing.idle_lap_delay_sec)
            return
        if not self.link.transport.wait_ready(self.timing.idle_lap_delay_sec):
            logger.warning("Serial channel not connected, lap %d skipped", self._lap)
            return
        if self._roster_due():
            self.sync_roster()
        for index, device in enumerate(self.devices):
            if self._stop_event.is_set():
                return
            self.poll_device(index, device)
        self._maybe_log_stats()

    def _roster_due(self) -> bool:
        roster = self.config.roster
        if self.roster_sync is None or self.roster_source is None or not roster.enabled:
            return False
        if roster.every_laps <= 0:
            return False
        return (self._lap - 1) % roster.every_laps == 0

    def sync_roster(self) -> None:
        if self.roster_sync is None or self.roster_source is None:
            return
        self.status.update(lap=self._lap, device_index=-1, address=None, phase=Phase.ROSTER_SYNC, attempt=0)
        try:
            try:
                roster = list(self.roster_source())
            except Exception as exc:
                logger.error("Roster fetch failed, keeping stored lists: %s", exc)
                return
            results = self.roster_sync.sync(self.devices, roster)
        except Exception:
            logger.exception("Roster sync aborted")
            return
        finally:
            self.status.update(phase=Phase.IDLE)
        failed = sorted(address for address, ok in results.items() if not ok)
        if failed:
            logger.warning("Roster not validated on %s", ", ".join(failed))

    def poll_device(self, index: int, device: Device) -> bool:
        """One device turn; True when data was requested and the buffer cleared."""
        self._iteration += 1
        self.status.update(
            lap=self._lap,
            iteration=self._iteration,
            device_index=index,
            address=device.address,
            phase=Phase.IDLE,
            attempt=0,
        )
        try:
            if not self.handshake(device):
                device.missed_laps += 1
                logger.warning(
                    "No answer from %s after %d attempts, skipping",
                    device.address,
                    self.timing.handshake_attempts,
                )
                return False
            device.missed_laps = 0
            frame = self.request_data(device)
            self.process_frame(device, frame)
            self.clean(device)
            return True
        except Exception as exc:
            self._failed_turns += 1
            logger.error("%s", exc, extra={"device": device.address})
            logger.debug("Turn failure at %s", device.address, exc_info=True)
            return False
        finally:
            self.status.update(phase=Phase.IDLE, attempt=0)

    def handshake(self, device: Device) -> bool:
        address = device.address
        device.consecutive_handshake_failures = 0
        while device.consecutive_handshake_failures < self.timing.handshake_attempts:
            attempt = device.consecutive_handshake_failures + 1
            self.status.update(phase=Phase.HANDSHAKING, attempt=attempt)
            if self.link.confirm(
                protocol.handshake(address),
                protocol.handshake_reply(address),
                self.timing.handshake_timeout_sec,
            ):
                device.consecutive_handshake_failures = 0
                return True
            device.consecutive_handshake_failures += 1
            logger.debug("Handshake %d/%d with %s timed out", attempt, self.timing.handshake_attempts, address)
        device.consecutive_handshake_failures = 0
        return False

    def request_data(self, device: Device) -> Frame:
        self.status.update(phase=Phase.AWAITING_DATA, attempt=1)
        return self.link.request_block(
            protocol.request_data(device.address),
            device.address,
            self.timing.data_idle_timeout_sec,
            self.timing.data_max_sec,
        )

    def process_frame(self, device: Device, frame: Frame) -> int:
        dispatched = 0
        for line in frame.body:
            result = parse_event(line, device, context=self.config.context)
            if result.event is None:
                self._rejected += 1
                log_rejection(device, result)
                continue
            self._accepted += 1
            self.dispatcher.publish(result.event)
            dispatched += 1
        if dispatched:
            logger.info("%s: forwarded %d events", device.address, dispatched)
        return dispatched

    def clean(self, device: Device) -> None:
        self.status.update(phase=Phase.CLEANING, attempt=1)
        wait = self.timing.clear_confirm_timeout_sec
        for command in protocol.clear_data(device.address):
            if wait > 0:
                if not self.link.confirm(command, protocol.clear_reply(command), wait):
                    logger.warning("No confirmation for '%s'", command)
            else:
                self.link.send(command)

    def _maybe_log_stats(self) -> None:
        if time.monotonic() < self._next_stats:
            return
        self._next_stats = time.monotonic() + max(self.timing.stats_log_interval, 1.0)
        transport = self.link.transport.stats()
        dispatch = self.dispatcher.stats()
        logger.info(
            "laps=%d turns=%d failed=%d accepted=%d rejected=%d published=%d lines_out=%d reconnects=%d",
            self._lap,
            self._iteration,
            self._failed_turns,
            self._accepted,
            self._rejected,
            dispatch.get("published", 0),
            transport.get("lines_out", 0),
            transport.get("reconnects", 0),
        )
