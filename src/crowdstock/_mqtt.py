"""MQTT transport collaborator for change events.

The forwarder owns one :class:`Subscription`, drains it on a background
thread and publishes each event's payload to
``<topic_prefix>/<location_id>/<item_id>``.  Publishing failures are
logged and never reach the engine.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from typing import Any, cast

import paho.mqtt.client as mqtt

from crowdstock.config import MqttConfig
from crowdstock.notifier import Subscription
from crowdstock.state.events import ChangeEvent


def build_mqtt_client(config: MqttConfig) -> mqtt.Client:
    """Create a paho client configured from *config* (not yet connected)."""
    client = mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=config.client_id,
        protocol=mqtt.MQTTv5,
    )
    if config.username:
        client.username_pw_set(config.username, config.password)
    if config.tls:
        client.tls_set()
    return client


def topic_for(config: MqttConfig, event: ChangeEvent) -> str:
    prefix = config.topic_prefix.rstrip("/")
    return f"{prefix}/{event.entity_key.location_id}/{event.entity_key.item_id}"


class MqttEventForwarder:
    """Threaded paho-mqtt runtime that forwards change events to a broker."""

    def __init__(
        self,
        config: MqttConfig,
        subscription: Subscription,
        *,
        client_factory: Callable[[MqttConfig], mqtt.Client] = build_mqtt_client,
        poll_interval: float = 0.5,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._subscription = subscription
        self._client_factory = client_factory
        self._poll_interval = poll_interval
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._running = False
        self.forwarded_count = 0

    @property
    def is_running(self) -> bool:
        """Whether the forwarder is actively draining its subscription."""
        return self._running

    def start(self) -> None:
        """Connect to the broker and start forwarding."""
        self.stop()
        self._logger.debug(
            "MQTT forwarder start requested host=%s port=%s prefix=%s client_id=%s",
            self._config.host,
            self._config.port,
            self._config.topic_prefix,
            self._config.client_id,
        )

        client = self._client_factory(self._config)
        client.enable_logger(self._logger)

        def on_connect(
            _c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected successfully reason=%s", reason_code)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect

        client.connect(self._config.host, self._config.port, keepalive=self._config.keepalive)
        client.loop_start()

        self._client = client
        self._stop.clear()
        self._running = True
        self._thread = threading.Thread(target=self._run, name="crowdstock-mqtt-forwarder", daemon=True)
        self._thread.start()
        self._logger.debug("MQTT forwarder started")

    def _run(self) -> None:
        while not self._stop.is_set():
            event = self._subscription.get(timeout=self._poll_interval)
            if event is None:
                if self._subscription.closed:
                    break
                continue
            self.forward(event)

    def forward(self, event: ChangeEvent) -> bool:
        """Publish one event; returns ``False`` when the broker did not accept it."""
        client = self._client
        if client is None:
            return False
        topic = topic_for(self._config, event)
        try:
            info = client.publish(
                topic,
                json.dumps(event.payload(), separators=(",", ":")),
                qos=self._config.qos,
                retain=self._config.retain,
            )
        except Exception:
            self._logger.debug("MQTT publish to %s failed", topic, exc_info=True)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.debug("MQTT publish to %s returned rc=%s", topic, info.rc)
            return False
        self.forwarded_count += 1
        return True

    def stop(self) -> None:
        """Stop forwarding and disconnect from the broker."""
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout=self._poll_interval * 4)

        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
