import pytest

from ble_proximity_server.admin import AdminService
from ble_proximity_server.models import Beacon, Gateway
from ble_proximity_server.mqtt_processor import MQTTIngestionService


@pytest.fixture
def service(config, transport):
    svc = MQTTIngestionService(config, transport=transport)
    svc.load()
    return svc


@pytest.fixture
def admin(service):
    admin = AdminService(service)
    admin.register_gateway(Gateway(gateway_id="GW1", name="Dock", proximity_threshold=5.0, auto_vibration=True))
    admin.register_beacon(Beacon(beacon_id="B1", name="Worker 1", mac_address="AA:BB:CC:DD:EE:01"))
    return admin


def test_calibration_round(admin):
    response = admin.add_calibration_point("B1", "GW1", 1.0, -55)
    assert response.success
    assert response.data["status"]["point_count"] == 1

    created = admin.create_calibration_point("B1", "GW1", 6.0, -77)
    assert created.success and created.status == 201

    duplicate = admin.create_calibration_point("B1", "GW1", 6.0, -76)
    assert not duplicate.success
    assert duplicate.status == 409

    missing = admin.update_calibration_point("B1", "GW1", 7.0, -79)
    assert missing.status == 404

    shown = admin.get_calibration("B1", "GW1")
    assert [p["distance"] for p in shown.data["calibration"]["points"]] == [1.0, 6.0]
    assert shown.data["quality"]["rating"] == "fair"
    assert shown.data["recommended_distances"][0] == 0.5

    listing = admin.list_calibrations()
    assert listing.data["total"] == 1

    assert admin.reload_calibration().data["pairs"] == 1
    assert admin.remove_calibration("B1", "GW1").success
    assert admin.remove_calibration("B1", "GW1").status == 404


def test_invalid_input_maps_to_400(admin):
    response = admin.add_calibration_point("B1", "GW1", -2.0, -55)
    assert not response.success
    assert response.status == 400
    assert "message" in response.to_dict()


def test_gateway_settings(admin):
    response = admin.update_gateway_settings("GW1", proximity_threshold=2.5, auto_vibration=False)
    assert response.success
    assert response.data == {"gateway_id": "GW1", "proximity_threshold": 2.5, "auto_vibration": False}

    assert admin.update_gateway_settings("GW1", proximity_threshold=0.05).status == 400
    assert admin.update_gateway_settings("GW1", proximity_threshold=150).status == 400
    assert admin.update_gateway_settings("GW9", proximity_threshold=3).status == 404


def test_retention_operations(admin):
    policies = admin.retention_policies().data["policies"]
    assert len(policies) == 8
    assert {"log_type": "proximity", "severity": "all"}.items() <= next(
        p for p in policies if p["log_type"] == "proximity"
    ).items()

    stats = admin.log_statistics()
    assert stats.data["monitoring_logs"]["total"] == 0

    sweep = admin.run_retention_sweep()
    assert sweep.success
    assert sweep.data["total_deleted"] == 0


def test_vibrate(admin, service):
    response = admin.vibrate("B1")
    assert response.success
    assert service.transport.published[0][1]["mac"] == "AABBCCDDEE01"

    service.transport.disconnect()
    offline = admin.vibrate("B1")
    assert not offline.success
    assert offline.data["delivery"] == "not_connected"

    assert admin.vibrate("B9").status == 404


def test_mqtt_status(admin):
    assert admin.mqtt_status().data["connected"] is True
    assert admin.mqtt_disconnect().data["connected"] is False
    assert admin.mqtt_connect().success
