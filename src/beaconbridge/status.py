from __future__ import annotations

import enum
import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Phase(str, enum.Enum):
    IDLE = "idle"
    ROSTER_SYNC = "roster_sync"
    HANDSHAKING = "handshaking"
    AWAITING_DATA = "awaiting_data"
    CLEANING = "cleaning"


@dataclass(frozen=True)
class CycleState:
    lap: int = 0
    iteration: int = 0
    device_index: int = -1
    address: Optional[str] = None
    phase: Phase = Phase.IDLE
    attempt: int = 0


Listener = Callable[[CycleState], None]


class CycleStatus:
    """Where the cycle is right now; written by the engine, read by displays."""

    def __init__(self, history: int = 64) -> None:
        self._lock = threading.Lock()
        self._state = CycleState()
        self._history: Deque[Tuple[Optional[str], Phase, int]] = deque(maxlen=history)
        self._listeners: List[Listener] = []

    def snapshot(self) -> CycleState:
        with self._lock:
            return self._state

    def history(self) -> List[Tuple[Optional[str], Phase, int]]:
        with self._lock:
            return list(self._history)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def update(self, **changes) -> CycleState:
        with self._lock:
            self._state = replace(self._state, **changes)
            state = self._state
            self._history.append((state.address, state.phase, state.attempt))
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.debug("Status listener failed", exc_info=True)
        return state
