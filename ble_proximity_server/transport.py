from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .config_manager import ConfigManager
from .models import DeliveryResult


logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class MqttTransport:
    """
    Process-wide MQTT connection handle.

    ``connect`` is idempotent and ``disconnect`` tears the client down. When
    the broker drops the connection the client is torn down too: nothing here
    reconnects on its own, callers decide when to call ``connect`` again.
    """

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager
        self.client: Optional[mqtt.Client] = None
        self.client_id: Optional[str] = None
        self._lock = threading.Lock()
        self._connected = threading.Event()
        self._closing = False
        self._message_handler: Optional[MessageHandler] = None

    # ---------- Status ----------
    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def status(self) -> Dict[str, Any]:
        mqtt_config = self.config_manager.get_mqtt_config()
        return {
            "connected": self.is_connected,
            "host": mqtt_config["ip"],
            "port": mqtt_config["port"],
            "client_id": self.client_id,
        }

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    # ---------- Lifecycle ----------
    def _new_client(self) -> mqtt.Client:
        mqtt_config = self.config_manager.get_mqtt_config()
        self.client_id = f"{mqtt_config.get('client_id', 'safety-proximity')}-{int(time.time() * 1000)}"
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
        )
        if mqtt_config.get("username"):
            client.username_pw_set(mqtt_config["username"], mqtt_config.get("password") or None)
        client.on_connect = self.on_connect
        client.on_disconnect = self.on_disconnect
        client.on_message = self.on_message
        return client

    def connect(self, timeout: float = 10.0) -> bool:
        """Connect and start the network loop; no-op success when already connected."""
        with self._lock:
            if self.is_connected:
                return True
            self._teardown()
            mqtt_config = self.config_manager.get_mqtt_config()
            client = self._new_client()
            try:
                client.connect(mqtt_config["ip"], int(mqtt_config["port"]), int(mqtt_config.get("keepalive", 60)))
            except (OSError, ValueError) as e:
                logger.error("MQTT connection error %s:%s: %s", mqtt_config["ip"], mqtt_config["port"], e)
                return False
            self._closing = False
            client.loop_start()
            self.client = client
            logger.info("Connecting to MQTT broker %s:%s", mqtt_config["ip"], mqtt_config["port"])

        if not self._connected.wait(timeout):
            logger.warning("MQTT broker did not acknowledge the connection within %.1fs", timeout)
        return self.is_connected

    def disconnect(self) -> None:
        with self._lock:
            self._teardown()

    def _teardown(self) -> None:
        # caller holds self._lock
        client, self.client = self.client, None
        self._connected.clear()
        if client is None:
            return
        self._closing = True
        try:
            client.disconnect()
            client.loop_stop()
            logger.info("MQTT connection closed")
        except Exception as e:
            logger.error("Error while closing MQTT connection: %s", e)

    # ---------- Publish ----------
    def publish(self, topic: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> DeliveryResult:
        """Publish JSON and wait at most ``timeout`` seconds for the broker hand-off."""
        client = self.client
        if client is None or not self.is_connected:
            return DeliveryResult.NOT_CONNECTED
        mqtt_config = self.config_manager.get_mqtt_config()
        if timeout is None:
            timeout = float(mqtt_config.get("command_timeout", 2.0))

        info = client.publish(topic, json.dumps(payload), qos=int(mqtt_config.get("qos", 1)))
        if info.rc == mqtt.MQTT_ERR_NO_CONN:
            return DeliveryResult.NOT_CONNECTED
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("MQTT publish to %s rejected: %s", topic, mqtt.error_string(info.rc))
            return DeliveryResult.TIMED_OUT
        try:
            info.wait_for_publish(timeout)
        except (RuntimeError, ValueError) as e:
            logger.warning("MQTT publish to %s failed: %s", topic, e)
            return DeliveryResult.NOT_CONNECTED
        if info.is_published():
            return DeliveryResult.DELIVERED
        logger.warning("MQTT publish to %s not acknowledged within %.1fs", topic, timeout)
        return DeliveryResult.TIMED_OUT

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            return
        logger.info("Connected to MQTT broker")
        topics = self.config_manager.get_mqtt_config().get("sighting_topics") or []
        for topic in topics:
            client.subscribe(topic)
            logger.info("Subscribed to %s", topic)
        self._connected.set()

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self._connected.clear()
        if self._closing:
            return
        logger.warning("MQTT connection lost (%s); waiting for an explicit reconnect", reason_code)
        # stop paho's own retry loop; must not join the loop thread from inside it
        threading.Thread(target=self._drop_client, args=(client,), daemon=True).start()

    def _drop_client(self, client: mqtt.Client) -> None:
        with self._lock:
            if self.client is client:
                self._teardown()

    def on_message(self, client, userdata, msg: MQTTMessage):
        handler = self._message_handler
        if handler is None:
            return
        try:
            handler(msg.topic, msg.payload)
        except Exception as e:
            logger.exception("Error handling message on %s: %s", msg.topic, e)
