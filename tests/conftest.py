from typing import Any, Dict, List, Optional, Tuple

import pytest

from ble_proximity_server.calibration_store import CalibrationStore
from ble_proximity_server.config_manager import ConfigManager
from ble_proximity_server.data_store import DataStore
from ble_proximity_server.dispatcher import CommandDispatcher
from ble_proximity_server.estimator import DistanceEstimator
from ble_proximity_server.models import Beacon, DeliveryResult, Gateway
from ble_proximity_server.pipeline import ProximityPipeline


class FakeTransport:
    """In-memory stand-in for MqttTransport."""

    def __init__(self, connected: bool = True, result: DeliveryResult = DeliveryResult.DELIVERED):
        self.connected = connected
        self.result = result
        self.published: List[Tuple[str, Dict[str, Any], Optional[float]]] = []
        self.handler = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    def publish(self, topic, payload, timeout=None):
        if not self.connected:
            return DeliveryResult.NOT_CONNECTED
        self.published.append((topic, dict(payload), timeout))
        return self.result

    def set_message_handler(self, handler):
        self.handler = handler

    def connect(self, timeout: float = 10.0) -> bool:
        self.connected = True
        return True

    def disconnect(self) -> None:
        self.connected = False

    def status(self) -> Dict[str, Any]:
        return {"connected": self.connected}


@pytest.fixture
def config(tmp_path):
    """Config file under tmp_path with data stored beside it."""
    cm = ConfigManager(str(tmp_path / "config" / "config.yaml"))
    cm.config["paths"]["data_dir"] = str(tmp_path / "data")
    cm.config["retention"]["enabled"] = False
    cm.config["proximity"]["ingestion_workers"] = 2
    return cm


@pytest.fixture
def data_store(config):
    return DataStore(config)


@pytest.fixture
def calibration_store(data_store):
    return CalibrationStore(data_store)


@pytest.fixture
def estimator(config):
    return DistanceEstimator(config)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def dispatcher(transport, data_store, config):
    return CommandDispatcher(transport, data_store, config)


@pytest.fixture
def pipeline(config, data_store, calibration_store, estimator, dispatcher):
    return ProximityPipeline(config, data_store, calibration_store, estimator, dispatcher)


@pytest.fixture
def site(data_store):
    """One gateway with auto vibration on, one with it off, and a beacon."""
    data_store.upsert_gateway(
        Gateway(gateway_id="GW1", name="Dock", mqtt_topic="dock", proximity_threshold=5.0, auto_vibration=True)
    )
    data_store.upsert_gateway(
        Gateway(gateway_id="GW2", name="Yard", mqtt_topic="yard", proximity_threshold=5.0, auto_vibration=False)
    )
    data_store.upsert_beacon(Beacon(beacon_id="B1", name="Worker 1", mac_address="AA:BB:CC:DD:EE:01"))
    return data_store
