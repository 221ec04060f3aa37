"""Push the approved beacon roster to every sensor and verify it was stored."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from . import protocol
from .config import RosterConfig, TimingConfig
from .errors import TransportError
from .link import SensorLink
from .models import Device

logger = logging.getLogger(__name__)


class RosterSync:
    def __init__(self, link: SensorLink, timing: TimingConfig, config: Optional[RosterConfig] = None) -> None:
        self.link = link
        self.timing = timing
        self.config = config or RosterConfig()

    def stored_entries(self, device: Device) -> List[str]:
        frame = self.link.request_block(
            protocol.list_stored(device.address),
            device.address,
            self.timing.data_idle_timeout_sec,
            self.timing.data_max_sec,
        )
        return protocol.parse_stored_list(device.address, frame.lines)

    def sync(self, devices: Sequence[Device], roster: Sequence[str]) -> Dict[str, bool]:
        """Run the purge and push passes for every device; returns validation per address."""
        ids = _unique(entry for entry in roster if protocol.is_mac(entry))
        skipped = len(roster) - len(ids)
        if skipped:
            logger.warning("Ignoring %d malformed or duplicate roster entries", skipped)
        if self.config.broadcast and ids:
            self.broadcast(ids)
        results: Dict[str, bool] = {}
        for device in devices:
            try:
                if not self.reachable(device):
                    logger.warning("%s did not answer, roster sync skipped", device.address)
                    results[device.address] = False
                    continue
                if self.config.purge_invalid:
                    self.purge_invalid(device)
                results[device.address] = self.push(device, ids, verify_first=self.config.broadcast) if ids else True
            except TransportError as exc:
                logger.error("Roster sync failed: %s", exc, extra={"device": device.address})
                results[device.address] = False
        return results

    def reachable(self, device: Device) -> bool:
        """Handshake before touching the stored list; a silent device is not waited on."""
        for _attempt in range(max(self.timing.handshake_attempts, 1)):
            if self.link.confirm(
                protocol.handshake(device.address),
                protocol.handshake_reply(device.address),
                self.timing.handshake_timeout_sec,
            ):
                return True
        return False

    def broadcast(self, ids: Sequence[str]) -> None:
        for batch in protocol.chunked(ids, self.config.batch_size):
            self.link.send(protocol.approve(protocol.BROADCAST_ADDRESS, batch))
        logger.info("Broadcast %d approved ids", len(ids))

    def push_entry(self, device: Device, beacon_id: str) -> bool:
        if not protocol.is_mac(beacon_id):
            raise ValueError(f"'{beacon_id}' is not a 6-octet hex address")
        if not self.reachable(device):
            logger.warning("%s did not answer, %s not pushed", device.address, beacon_id)
            return False
        return self.push(device, [beacon_id])

    def push(self, device: Device, ids: Sequence[str], *, verify_first: bool = False) -> bool:
        """
        Send `A,` commands until `SL` echoes every id, at most
        `roster_max_attempts` rounds. Each round re-sends only what is missing.
        With *verify_first* (after a broadcast) ids already stored are not re-sent.
        """
        address = device.address
        wanted = _unique(ids)
        pending = list(wanted)
        if verify_first:
            stored = set(_normalized(self.stored_entries(device)))
            pending = [beacon for beacon in wanted if beacon.lower() not in stored]
        attempt = 0
        while pending:
            attempt += 1
            if attempt > self.timing.roster_max_attempts:
                logger.error(
                    "Roster not validated after %d attempts, %d ids missing",
                    self.timing.roster_max_attempts,
                    len(pending),
                    extra={"device": address},
                )
                return False
            if attempt > 1:
                logger.info("Resending %d ids to %s (attempt %d)", len(pending), address, attempt)
            for batch in protocol.chunked(pending, self.config.batch_size):
                acked = self.link.confirm(
                    protocol.approve(address, batch),
                    protocol.approve_reply(address),
                    self.timing.roster_confirm_timeout_sec,
                )
                if not acked:
                    logger.warning("%s did not acknowledge %d ids", address, len(batch))
            stored = set(_normalized(self.stored_entries(device)))
            pending = [beacon for beacon in pending if beacon.lower() not in stored]
        logger.info("Roster validated on %s (%d ids)", address, len(wanted))
        return True

    def purge_invalid(self, device: Device) -> bool:
        """Remove stored entries that are not 6-octet hex addresses, re-checking via `SL`."""
        address = device.address
        for attempt in range(1, self.timing.roster_max_attempts + 2):
            invalid = [entry for entry in self.stored_entries(device) if not protocol.is_mac(entry)]
            if not invalid:
                return True
            if attempt > self.timing.roster_max_attempts:
                break
            logger.info("Removing %d invalid entries from %s (attempt %d)", len(invalid), address, attempt)
            for entry in invalid:
                self.link.confirm(
                    protocol.remove_stored(address, entry),
                    protocol.remove_reply(address),
                    self.timing.roster_confirm_timeout_sec,
                )
        logger.error("Invalid roster entries remain after purge", extra={"device": address})
        return False


def _normalized(entries: Sequence[str]) -> List[str]:
    return [entry.strip().lower() for entry in entries]


def _unique(values) -> List[str]:
    seen = set()
    result: List[str] = []
    for value in values:
        key = value.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(value.strip())
    return result
