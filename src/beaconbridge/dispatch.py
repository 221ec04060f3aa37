from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Protocol

import paho.mqtt.client as mqtt

from .config import QueueConfig
from .errors import DispatchError
from .models import Event

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    name: str

    def publish(self, event: Event) -> None:
        ...


class MqttEventQueue:
    """
    Durable event queue on an MQTT broker.

    QoS 1 on a persistent session keeps undelivered events on the broker;
    while disconnected, paho buffers QoS>0 messages until it reconnects.
    The local buffer holds at most `max_queued` events; beyond that a
    publish fails with a DispatchError.
    """

    name = "queue"

    def __init__(self, config: QueueConfig, client: Optional[mqtt.Client] = None) -> None:
        self.config = config
        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            clean_session=False,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.max_queued_messages_set(config.max_queued)
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._client.connect_async(self.config.host, self.config.port, keepalive=self.config.keepalive)
        self._client.loop_start()
        self._started = True

    def stop(self) -> None:
        if not self._started:
            return
        self._client.disconnect()
        self._client.loop_stop()
        self._started = False

    def publish(self, event: Event) -> None:
        payload = json.dumps(event.to_dict())
        info = self._client.publish(self.config.topic, payload, qos=self.config.qos)
        if info.rc == mqtt.MQTT_ERR_NO_CONN and self.config.qos > 0:
            logger.debug("Broker offline, event %s queued locally", event.id)
            return
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise DispatchError(f"Publish to '{self.config.topic}' failed: {mqtt.error_string(info.rc)}")

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        logger.info("Connected to broker %s:%d (%s)", self.config.host, self.config.port, reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        logger.warning("Disconnected from broker (%s)", reason_code)


class Dispatcher:
    """Hands each accepted event to every sink; a failing sink never stops the others."""

    def __init__(self, sinks: List[EventSink]) -> None:
        self.sinks = list(sinks)
        self._published = 0
        self._failures: Dict[str, int] = {sink.name: 0 for sink in self.sinks}

    def publish(self, event: Event) -> int:
        delivered = 0
        for sink in self.sinks:
            try:
                sink.publish(event)
            except Exception as exc:
                self._failures[sink.name] = self._failures.get(sink.name, 0) + 1
                logger.error(
                    "Dispatch of %s to %s failed: %s",
                    event.id,
                    sink.name,
                    exc,
                    extra={"device": event.sensor_id},
                )
                continue
            delivered += 1
        self._published += 1
        return delivered

    def stats(self) -> Dict[str, int]:
        stats = {"published": self._published}
        for name, count in self._failures.items():
            stats[f"failures_{name}"] = count
        return stats
