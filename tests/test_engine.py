from __future__ import annotations

import threading
import time

from beaconbridge.dispatch import Dispatcher
from beaconbridge.engine import SensorCycleEngine
from beaconbridge.errors import BackendError
from beaconbridge.link import SensorLink
from beaconbridge.models import Action
from beaconbridge.roster import RosterSync
from beaconbridge.status import Phase
from beaconbridge.transport import SerialTransport
from fakes import FakeSensor, FakeSensorBus, FakeSerialModule, bridge_config

GOOD_MAC = "ff:ff:10:e2:34:06"


class RecordingSink:
    def __init__(self, name: str = "recording") -> None:
        self.name = name
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)


class FailingSink:
    name = "failing"

    def publish(self, event) -> None:
        raise BackendError("backend down")


def _engine(link, addresses, sinks=None, **kwargs):
    cfg = bridge_config(addresses, **kwargs.pop("timing", {}))
    sink = RecordingSink()
    engine = SensorCycleEngine(cfg, link, Dispatcher(sinks if sinks is not None else [sink]), **kwargs)
    return engine, sink


def test_dead_device_gets_two_handshakes_then_is_skipped(make_bus) -> None:
    _bus, transport, link = make_bus(
        P1=FakeSensor(),
        P2=FakeSensor(alive=False),
        P3=FakeSensor(),
    )
    engine, _sink = _engine(link, ["P1", "P2", "P3"])
    engine.run_lap()

    p2_commands = [line for line in transport.written if line.startswith("P2 ")]
    assert p2_commands == ["P2 OK", "P2 OK"]
    assert transport.written.index("P3 OK") > transport.written.index("P2 OK")
    p2_history = [entry for entry in engine.status.history() if entry[0] == "P2"]
    assert p2_history == [
        ("P2", Phase.IDLE, 0),
        ("P2", Phase.HANDSHAKING, 1),
        ("P2", Phase.HANDSHAKING, 2),
        ("P2", Phase.IDLE, 0),
    ]
    assert engine.devices[1].missed_laps == 1
    assert engine.devices[1].consecutive_handshake_failures == 0


def test_device_turn_sends_commands_in_order(make_bus) -> None:
    _bus, transport, link = make_bus(P1=FakeSensor())
    engine, _sink = _engine(link, ["P1"])
    engine.run_lap()
    assert transport.written == ["P1 OK", "P1 SDATAFULL", "P1 CLDATA", "P1 CLDATA2"]


def test_accepted_events_are_dispatched_and_buffer_cleared(make_bus) -> None:
    bus, _transport, link = make_bus(
        P1=FakeSensor(
            data=[
                "2024-01-11 14:24:42 ff:ff:10:e2:34:06,L1",
                "2024-01-11 14:45:57 ff:ff:10:e2:33:64,95,F1",
                "garbage",
                "2024-01-11 14:48:11 ff:ff:10:e2:34:06,42,F1 STL",
            ]
        )
    )
    engine, sink = _engine(link, ["P1"])
    engine.run_lap()

    assert [(event.beacon_id, event.action, event.status) for event in sink.events] == [
        ("ff:ff:10:e2:34:06", Action.EXIT, 0),
        ("ff:ff:10:e2:34:06", Action.ENTER, 42),
    ]
    assert all(event.sensor_id == "P1" for event in sink.events)
    assert bus.sensors["P1"].data == []
    assert engine.status.snapshot().phase is Phase.IDLE


def test_missing_terminator_still_cleans_and_moves_on(make_bus) -> None:
    _bus, transport, link = make_bus(
        P5=FakeSensor(terminate_blocks=False),
        P6=FakeSensor(),
    )
    engine, sink = _engine(link, ["P5", "P6"])
    engine.run_lap()
    assert sink.events == []
    assert "P5 CLDATA" in transport.written
    assert "P5 CLDATA2" in transport.written
    assert transport.written[-1] == "P6 CLDATA2"
    assert link.assembler.stats()["incomplete"] == 1


def test_failing_sink_does_not_stop_the_cycle(make_bus) -> None:
    _bus, transport, link = make_bus(
        P1=FakeSensor(data=["2024-01-11 14:24:42 ff:ff:10:e2:34:06,L1"]),
        P2=FakeSensor(data=["2024-01-11 14:25:08 ff:ff:10:e2:34:06,F1"]),
    )
    recording = RecordingSink()
    engine, _sink = _engine(link, ["P1", "P2"], sinks=[FailingSink(), recording])
    engine.run_lap()
    assert [event.sensor_id for event in recording.events] == ["P1", "P2"]
    assert engine.dispatcher.stats()["failures_failing"] == 2
    assert transport.written[-1] == "P2 CLDATA2"


def test_transport_fault_skips_only_that_device(make_bus) -> None:
    _bus, transport, link = make_bus(P1=FakeSensor(), P2=FakeSensor())
    transport.fail_commands.add("P1 SDATAFULL")
    engine, _sink = _engine(link, ["P1", "P2"])
    engine.run_lap()
    assert "P1 CLDATA" not in transport.written
    assert transport.written[-4:] == ["P2 OK", "P2 SDATAFULL", "P2 CLDATA", "P2 CLDATA2"]
    assert engine.status.snapshot().phase is Phase.IDLE


def test_disconnected_channel_skips_lap(make_bus) -> None:
    _bus, transport, link = make_bus(P1=FakeSensor())
    transport.ready = False
    engine, _sink = _engine(link, ["P1"])
    engine.run_lap()
    assert transport.written == []


def test_strict_clear_waits_for_confirmation(make_bus) -> None:
    _bus, transport, link = make_bus(P1=FakeSensor(answer_clear=False), P2=FakeSensor())
    engine, _sink = _engine(link, ["P1", "P2"], timing={"clear_confirm_timeout_sec": 0.05})
    engine.run_lap()
    assert transport.written[:4] == ["P1 OK", "P1 SDATAFULL", "P1 CLDATA", "P1 CLDATA2"]
    assert transport.written[-1] == "P2 CLDATA2"
    assert engine.poll_device(1, engine.devices[1]) is True


def test_roster_sync_runs_at_lap_start(make_bus) -> None:
    bus, transport, link = make_bus(P1=FakeSensor(stored=["junk"]))
    roster = [GOOD_MAC, "not-a-mac"]
    engine, _sink = _engine(
        link,
        ["P1"],
        roster_source=lambda: roster,
    )
    engine.roster_sync = RosterSync(link, engine.timing, engine.config.roster)
    engine.run_lap()

    assert bus.sensors["P1"].stored == [GOOD_MAC]
    assert "P1 CL,junk" in transport.written
    assert f"P1 A,{GOOD_MAC}" in transport.written
    assert transport.written.index(f"P1 A,{GOOD_MAC}") < transport.written.index("P1 SDATAFULL")
    assert transport.written[0] == "P1 OK"
    phases = [entry[1] for entry in engine.status.history()]
    assert phases[0] is Phase.ROSTER_SYNC
    assert phases[1] is Phase.IDLE


def test_roster_fetch_failure_keeps_cycle_going(make_bus) -> None:
    _bus, transport, link = make_bus(P1=FakeSensor())

    def broken_source():
        raise BackendError("roster endpoint down")

    engine, _sink = _engine(link, ["P1"], roster_source=broken_source)
    engine.roster_sync = RosterSync(link, engine.timing, engine.config.roster)
    engine.run_lap()
    assert transport.written == ["P1 OK", "P1 SDATAFULL", "P1 CLDATA", "P1 CLDATA2"]
    assert engine.status.snapshot().phase is Phase.IDLE


def test_run_forever_survives_faults_until_stopped(make_bus) -> None:
    _bus, transport, link = make_bus(P1=FakeSensor(), P2=FakeSensor(alive=False))
    transport.fail_commands.add("P1 CLDATA")
    engine, _sink = _engine(link, ["P1", "P2"], sinks=[FailingSink()])
    worker = threading.Thread(target=engine.run_forever, daemon=True)
    worker.start()
    deadline = time.monotonic() + 2.0
    while engine.status.snapshot().lap < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    engine.stop()
    worker.join(timeout=2.0)
    assert not worker.is_alive()
    assert engine.status.snapshot().lap >= 3
    assert engine.devices[1].missed_laps >= 2


def test_pause_mid_lap_neither_skips_nor_repeats_devices(monkeypatch) -> None:
    addresses = ["P1", "P2", "P3"]
    bus = FakeSensorBus({address: FakeSensor() for address in addresses})
    fake_serial = FakeSerialModule(responder=bus)
    monkeypatch.setattr("beaconbridge.transport.serial", fake_serial)
    cfg = bridge_config(addresses, handshake_timeout_sec=0.5, data_idle_timeout_sec=0.2)
    cfg.serial.read_timeout_sec = 0.01
    transport = SerialTransport(cfg.serial)
    transport.open()
    link = SensorLink(transport)
    engine = SensorCycleEngine(cfg, link, Dispatcher([RecordingSink()]))
    worker = threading.Thread(target=engine.run_forever, daemon=True)
    worker.start()
    try:
        deadline = time.monotonic() + 2.0
        while len(fake_serial.written_lines()) < 6 and time.monotonic() < deadline:
            time.sleep(0.001)
        assert transport.pause(timeout=2.0)
        held = len(fake_serial.written_lines())
        time.sleep(0.2)
        assert len(fake_serial.written_lines()) == held
        transport.resume()

        deadline = time.monotonic() + 5.0
        while engine.status.snapshot().lap < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        engine.stop()
        worker.join(timeout=3.0)
        transport.close()

    assert not worker.is_alive()
    lines = fake_serial.written_lines()
    lap = [f"{address} {command}" for address in addresses for command in ("OK", "SDATAFULL", "CLDATA", "CLDATA2")]
    laps = len(lines) // len(lap) + 1
    assert len(lines) % 4 == 0
    assert len(lines) >= 2 * len(lap)
    assert lines == (lap * laps)[: len(lines)]
