from __future__ import annotations


class BridgeError(Exception):
    """Base class for faults raised by the bridge."""


class TransportError(BridgeError):
    """Serial channel unavailable, closed, or a write failed."""


class BackendError(BridgeError):
    """HTTP backend unreachable or answered with an unusable payload."""


class DispatchError(BridgeError):
    """A downstream sink refused an event."""
