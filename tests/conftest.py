from __future__ import annotations

import pytest

from beaconbridge.link import SensorLink
from fakes import FakeSensor, FakeSensorBus, ScriptedTransport


@pytest.fixture
def make_bus():
    def factory(**sensors: FakeSensor):
        bus = FakeSensorBus(dict(sensors))
        transport = ScriptedTransport(bus)
        link = SensorLink(transport)  # type: ignore[arg-type]
        return bus, transport, link

    return factory
