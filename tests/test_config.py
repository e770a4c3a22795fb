import yaml

from ble_proximity_server.config_manager import ConfigManager


def test_missing_file_is_created_with_defaults(tmp_path):
    path = tmp_path / "conf" / "config.yaml"
    cm = ConfigManager(str(path))
    assert path.exists()
    assert cm.get_mqtt_config()["port"] == 1883
    assert cm.get_proximity_config()["alert_cooldown_seconds"] == 0
    assert cm.get_retention_config()["batch_size"] == 500


def test_partial_file_is_merged(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"mqtt": {"ip": "broker.local"}, "paths": {"data_dir": "/srv/data"}}))
    cm = ConfigManager(str(path))
    assert cm.get_mqtt_config()["ip"] == "broker.local"
    assert cm.get_mqtt_config()["port"] == 1883
    assert cm.get_data_dir() == "/srv/data"
    assert cm.get_rssi_model_config()["tx_power"] == -59.0


def test_env_overrides_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("BLE_MQTT_PORT", "8883")
    monkeypatch.setenv("BLE_RETENTION_ENABLED", "false")
    cm = ConfigManager(str(tmp_path / "config.yaml"))
    assert cm.get_mqtt_config()["port"] == 8883
    assert cm.get_retention_config()["enabled"] is False


def test_broken_yaml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("mqtt: [unclosed\n")
    cm = ConfigManager(str(path))
    assert cm.get_mqtt_config()["ip"] == "localhost"


def test_setters_persist(tmp_path):
    path = tmp_path / "config.yaml"
    cm = ConfigManager(str(path))
    cm.set_mqtt_config("10.0.0.5", 1884)
    cm.set_rssi_model_config(-62, 2.7)
    cm.set_alert_cooldown(30)

    reloaded = ConfigManager(str(path))
    assert reloaded.get_mqtt_config()["ip"] == "10.0.0.5"
    assert reloaded.get_mqtt_config()["port"] == 1884
    assert reloaded.get_rssi_model_config()["path_loss_exponent"] == 2.7
    assert reloaded.get_proximity_config()["alert_cooldown_seconds"] == 30
