from __future__ import annotations

import threading
import time

import pytest

from beaconbridge.config import SerialConfig
from beaconbridge.errors import TransportError
from beaconbridge.transport import SerialTransport
from fakes import FakeSerialModule


def _settings() -> SerialConfig:
    return SerialConfig(port="/dev/ttyFAKE", read_timeout_sec=0.01, reconnect_initial_sec=0.01, reconnect_max_sec=0.02)


def _wait_for(predicate, timeout: float = 1.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def test_open_failure_raises_transport_error(monkeypatch) -> None:
    fake_serial = FakeSerialModule(fail_opens=1)
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    transport = SerialTransport(_settings())
    with pytest.raises(TransportError):
        transport.open()
    assert not transport.connected


def test_write_line_appends_newline_and_counts(monkeypatch) -> None:
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    transport = SerialTransport(_settings())
    transport.open()
    try:
        with transport.session():
            transport.write_line("P1 OK")
        assert fake_serial.instances[0].written == [b"P1 OK\n"]
        assert transport.stats()["lines_out"] == 1
    finally:
        transport.close()
    with pytest.raises(TransportError):
        transport.write_line("P1 OK")


def test_reader_feeds_consumer(monkeypatch) -> None:
    fake_serial = FakeSerialModule([b"P1 Yes\r\n"])
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    received = bytearray()
    transport = SerialTransport(_settings())
    transport.set_consumer(received.extend)
    transport.open()
    try:
        assert _wait_for(lambda: bytes(received) == b"P1 Yes\r\n")
        assert transport.stats()["bytes_in"] == len(b"P1 Yes\r\n")
    finally:
        transport.close()


def test_reader_reconnects_after_read_error(monkeypatch) -> None:
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    transport = SerialTransport(_settings())
    transport.open()
    try:
        fake_serial.fail_reads = 1
        assert _wait_for(lambda: transport.stats()["reconnects"] >= 1)
        assert fake_serial.instances[0].closed
        assert transport.wait_ready(1.0)
        assert fake_serial.calls >= 2  # initial open + reconnect
    finally:
        transport.close()


def test_pause_blocks_sessions_until_resume(monkeypatch) -> None:
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    transport = SerialTransport(_settings())
    transport.open()
    entered = threading.Event()

    def cycle_turn() -> None:
        with transport.session():
            entered.set()

    try:
        assert transport.pause(timeout=1.0)
        assert transport.paused
        worker = threading.Thread(target=cycle_turn)
        worker.start()
        assert not entered.wait(0.1)
        transport.resume()
        assert entered.wait(1.0)
        worker.join(timeout=1.0)
    finally:
        transport.close()


def test_pause_waits_for_running_session(monkeypatch) -> None:
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    transport = SerialTransport(_settings())
    transport.open()
    try:
        with transport.session():
            assert transport.pause(timeout=0.05) is False
        assert transport.pause(timeout=0.5) is True
        transport.resume()
    finally:
        transport.close()


def test_failed_pause_leaves_channel_usable(monkeypatch) -> None:
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    transport = SerialTransport(_settings())
    transport.open()
    entered = threading.Event()

    def next_turn() -> None:
        with transport.session():
            entered.set()

    try:
        with transport.session():
            assert transport.pause(timeout=0.05) is False
            assert not transport.paused
            with pytest.raises(TransportError):
                with transport.exclusive(timeout=0.05):
                    pass
            assert not transport.paused
        worker = threading.Thread(target=next_turn)
        worker.start()
        assert entered.wait(0.5)
        worker.join(timeout=1.0)
    finally:
        transport.close()


def test_exclusive_port_reads_raw_lines(monkeypatch) -> None:
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    received = bytearray()
    transport = SerialTransport(_settings())
    transport.set_consumer(received.extend)
    transport.open()
    try:
        with transport.exclusive(timeout=1.0) as port:
            fake_serial.instances[0].push(b"P1 BTV 3.1\r\n")
            port.write_line("P1 BTV")
            assert port.read_line(timeout=1.0) == "P1 BTV 3.1"
        assert not transport.paused
        assert bytes(received) == b""
        assert fake_serial.instances[0].written == [b"P1 BTV\n"]
    finally:
        transport.close()


def test_session_after_close_raises(monkeypatch) -> None:
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    transport = SerialTransport(_settings())
    transport.open()
    transport.close()
    with pytest.raises(TransportError):
        with transport.session():
            pass
