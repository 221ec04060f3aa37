from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

import serial

from .config import SerialConfig
from .errors import TransportError

logger = logging.getLogger(__name__)

ByteConsumer = Callable[[bytes], None]


class SerialTransport:
    """
    Owns the serial port shared by every sensor.

    A background reader appends incoming bytes to the registered consumer.
    Callers that write hold a session; pause() waits for the running session
    to finish, parks the reader and keeps new sessions out until resume().
    """

    def __init__(self, settings: SerialConfig) -> None:
        self.settings = settings
        self._handle = None
        self._consumer: Optional[ByteConsumer] = None
        self._stop_event = threading.Event()
        self._ready_event = threading.Event()
        self._cond = threading.Condition()
        self._io_lock = threading.Lock()
        self._paused = False
        self._busy = False
        self._thread: Optional[threading.Thread] = None
        self._connected_once = False
        self._stats: Dict[str, int] = {"lines_out": 0, "bytes_in": 0, "reconnects": 0, "write_errors": 0}

    def set_consumer(self, consumer: Optional[ByteConsumer]) -> None:
        self._consumer = consumer

    @property
    def connected(self) -> bool:
        return self._handle is not None

    def open(self) -> None:
        if self._handle is not None:
            return
        try:
            self._handle = self._open_serial()
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransportError(f"Cannot open {self.settings.port}: {exc}") from exc
        self._connected_once = True
        self._stop_event.clear()
        self._ready_event.set()
        logger.info("Connected to %s", self.settings.port)
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self._read_loop, name="serial-reader", daemon=True)
            self._thread.start()

    def close(self) -> None:
        self._stop_event.set()
        with self._cond:
            self._paused = False
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self._drop_handle()

    def wait_ready(self, timeout: float) -> bool:
        return self._ready_event.wait(timeout)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    @contextmanager
    def session(self) -> Iterator["SerialTransport"]:
        with self._cond:
            while self._paused and not self._stop_event.is_set():
                self._cond.wait(0.5)
            if self._stop_event.is_set():
                raise TransportError("Serial transport closed")
            self._busy = True
        try:
            yield self
        finally:
            with self._cond:
                self._busy = False
                self._cond.notify_all()

    def write_line(self, text: str) -> None:
        handle = self._handle
        if handle is None:
            raise TransportError(f"{self.settings.port} not connected")
        payload = (text + self.settings.newline).encode("ascii", errors="ignore")
        try:
            handle.write(payload)
            handle.flush()
        except (serial.SerialException, OSError) as exc:
            self._stats["write_errors"] += 1
            raise TransportError(f"Write of '{text}' failed: {exc}") from exc
        self._stats["lines_out"] += 1
        logger.debug(">> %s", text)

    def pause(self, timeout: Optional[float] = None) -> bool:
        """Take the port away from the cycle; returns False if an exchange outlived timeout."""
        with self._cond:
            self._paused = True
            if not self._cond.wait_for(lambda: not self._busy, timeout):
                self._paused = False
                self._cond.notify_all()
                return False
        # reader checks the pause flag while holding the lock
        with self._io_lock:
            pass
        logger.info("Serial channel paused for external use")
        return True

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info("Serial channel resumed")

    @property
    def paused(self) -> bool:
        return self._paused

    @contextmanager
    def exclusive(self, timeout: Optional[float] = None) -> Iterator["ExclusivePort"]:
        if not self.pause(timeout):
            raise TransportError("Serial channel busy, could not pause")
        try:
            yield ExclusivePort(self)
        finally:
            self.resume()

    def _parked(self) -> bool:
        return self._paused and not self._busy

    def _read_loop(self) -> None:
        initial_delay = max(self.settings.reconnect_initial_sec, 0.05)
        max_delay = max(self.settings.reconnect_max_sec, initial_delay)
        backoff = initial_delay
        while not self._stop_event.is_set():
            if self._handle is None:
                if not self._reconnect():
                    wait_time = min(backoff, max_delay)
                    logger.info("Reconnecting in %.1fs", wait_time)
                    self._stop_event.wait(wait_time)
                    backoff = min(backoff * 2, max_delay)
                    continue
                backoff = initial_delay
            if self._parked():
                self._stop_event.wait(0.05)
                continue
            try:
                with self._io_lock:
                    handle = self._handle
                    if handle is None or self._parked():
                        continue
                    data = handle.read(max(1, handle.in_waiting or 0))
            except (serial.SerialException, OSError) as exc:
                logger.warning("Serial error (%s): %s", self.settings.port, exc)
                self._drop_handle()
                continue
            if not data:
                continue
            self._stats["bytes_in"] += len(data)
            consumer = self._consumer
            if consumer is None:
                continue
            try:
                consumer(data)
            except Exception:  # pragma: no cover - consumer bugs must not kill the reader
                logger.exception("Byte consumer failed")

    def _reconnect(self) -> bool:
        try:
            handle = self._open_serial()
        except (serial.SerialException, OSError) as exc:
            logger.warning("Serial error (%s): %s", self.settings.port, exc)
            return False
        self._handle = handle
        if self._connected_once:
            self._stats["reconnects"] += 1
            logger.info("Reconnected to %s", self.settings.port)
        self._connected_once = True
        self._ready_event.set()
        return True

    def _drop_handle(self) -> None:
        self._ready_event.clear()
        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                handle.close()
            except (serial.SerialException, OSError):
                logger.debug("Ignoring close error on %s", self.settings.port, exc_info=True)

    def _open_serial(self):
        return serial.Serial(
            port=self.settings.port,
            baudrate=self.settings.baudrate,
            timeout=self.settings.read_timeout_sec,
            write_timeout=self.settings.write_timeout_sec,
        )


class ExclusivePort:
    """Raw line access handed to an external caller while the cycle is paused."""

    def __init__(self, transport: SerialTransport) -> None:
        self._transport = transport

    def write_line(self, text: str) -> None:
        self._transport.write_line(text)

    def read_line(self, timeout: float = 1.0) -> Optional[str]:
        handle = self._transport._handle
        if handle is None:
            raise TransportError("Serial transport not connected")
        deadline = time.monotonic() + timeout
        buffer = bytearray()
        while time.monotonic() < deadline:
            try:
                chunk = handle.read(1)
            except (serial.SerialException, OSError) as exc:
                raise TransportError(f"Read failed: {exc}") from exc
            if not chunk:
                continue
            if chunk == b"\n":
                return buffer.decode("utf-8", errors="ignore").rstrip("\r")
            buffer.extend(chunk)
        return None
