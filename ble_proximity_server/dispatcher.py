from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from .config_manager import ConfigManager
from .data_store import DataStore
from .errors import InvalidInputError, NotFoundError
from .models import DeliveryResult, Gateway, RingCommand


logger = logging.getLogger(__name__)


class CommandTransport(Protocol):
    @property
    def is_connected(self) -> bool: ...

    def publish(self, topic: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> DeliveryResult: ...


class CommandDispatcher:
    """Sends ring/vibration commands to a beacon through one of the gateways."""

    def __init__(self, transport: CommandTransport, data_store: DataStore, config_manager: ConfigManager):
        self.transport = transport
        self.data_store = data_store
        self.config_manager = config_manager

    def _resolve_gateway(self, gateway_id: Optional[str]) -> Gateway:
        if gateway_id:
            gateway = self.data_store.get_gateway(gateway_id)
            if gateway is None:
                raise NotFoundError(f"gateway {gateway_id} not found")
            return gateway
        gateway = self.data_store.first_active_gateway()
        if gateway is None:
            raise NotFoundError("no active gateway")
        return gateway

    def ring_command(self, mac_address: str, ring_type: Optional[int] = None, ring_time: Optional[int] = None) -> RingCommand:
        proximity = self.config_manager.get_proximity_config()
        return RingCommand(
            mac=mac_address,
            ring_type=int(ring_type if ring_type is not None else proximity.get("ring_type", 4)),
            ring_time=int(ring_time if ring_time is not None else proximity.get("ring_time", 4000)),
            led_on=int(proximity.get("led_on", 500)),
            led_off=int(proximity.get("led_off", 1500)),
        )

    def send_command(
        self,
        beacon_id: str,
        payload: Optional[Dict[str, Any]] = None,
        gateway_id: Optional[str] = None,
    ) -> DeliveryResult:
        """
        Publish a command for ``beacon_id`` on the gateway's command topic.

        ``payload`` entries override the default ring envelope; ``mac`` is
        always the beacon's colon-stripped address. A disconnected transport
        yields NOT_CONNECTED straight away; nothing is queued or retried.
        """
        beacon = self.data_store.get_beacon(beacon_id)
        if beacon is None:
            raise NotFoundError(f"beacon {beacon_id} not found")
        if not beacon.mac_address:
            raise InvalidInputError(f"beacon {beacon_id} has no MAC address")
        gateway = self._resolve_gateway(gateway_id)

        envelope = self.ring_command(beacon.mac_address).to_payload()
        if payload:
            envelope.update(payload)
        envelope["mac"] = RingCommand.normalize_mac(beacon.mac_address)

        if not self.transport.is_connected:
            logger.warning("Command for %s not sent: MQTT not connected", beacon_id)
            return DeliveryResult.NOT_CONNECTED

        topic = self.config_manager.get_mqtt_config()["command_topic"].format(
            gateway_id=gateway.gateway_id, mqtt_topic=gateway.mqtt_topic
        )
        timeout = float(self.config_manager.get_mqtt_config().get("command_timeout", 2.0))
        result = self.transport.publish(topic, envelope, timeout=timeout)
        if result.delivered:
            logger.info("Command %s sent to %s via %s", envelope.get("msg"), beacon_id, gateway.gateway_id)
        else:
            logger.warning(
                "Command %s for %s via %s not delivered: %s",
                envelope.get("msg"),
                beacon_id,
                gateway.gateway_id,
                result.value,
            )
        return result

    def vibrate(
        self,
        beacon_id: str,
        gateway_id: Optional[str] = None,
        ring_type: Optional[int] = None,
        ring_time: Optional[int] = None,
    ) -> DeliveryResult:
        overrides: Dict[str, Any] = {}
        if ring_type is not None:
            overrides["ringType"] = int(ring_type)
        if ring_time is not None:
            overrides["ringTime"] = int(ring_time)
        return self.send_command(beacon_id, overrides or None, gateway_id)
