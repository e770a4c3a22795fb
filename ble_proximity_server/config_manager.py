from __future__ import annotations

import copy
import logging
import os
import yaml

from typing import Callable, Any


logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except Exception:
            return v
    return default


def _env_bool(v: str) -> bool:
    return v.lower() in ("1", "true", "yes")


DEFAULT_CONFIG_PATH = _env_or_default(
    "BLE_PROXIMITY_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


class ConfigManager:
    """YAML configuration with environment overrides for every default."""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "mqtt": {
                "ip": _env_or_default("BLE_MQTT_IP", "localhost"),
                "port": _env_or_default("BLE_MQTT_PORT", 1883, int),
                "username": _env_or_default("BLE_MQTT_USERNAME", ""),
                "password": _env_or_default("BLE_MQTT_PASSWORD", ""),
                "client_id": _env_or_default("BLE_MQTT_CLIENT_ID", "safety-proximity"),
                "keepalive": _env_or_default("BLE_MQTT_KEEPALIVE", 60, int),
                "sighting_topics": ["safety/beacon/+", "safety/gateway/+/beacon"],
                "command_topic": _env_or_default(
                    "BLE_MQTT_COMMAND_TOPIC", "safety/gateway/{gateway_id}/command"
                ),
                "qos": _env_or_default("BLE_MQTT_QOS", 1, int),
                "command_timeout": _env_or_default("BLE_MQTT_COMMAND_TIMEOUT", 2.0, float),
            },
            "rssi_model": {
                "tx_power": _env_or_default("BLE_RSSI_TX_POWER", -59.0, float),
                "path_loss_exponent": _env_or_default("BLE_RSSI_PATH_LOSS", 2.0, float),
                "min_distance": _env_or_default("BLE_RSSI_MIN_DISTANCE", 0.1, float),
                "max_distance": _env_or_default("BLE_RSSI_MAX_DISTANCE", 100.0, float),
            },
            "proximity": {
                "default_threshold": _env_or_default("BLE_PROXIMITY_THRESHOLD", 5.0, float),
                "alert_cooldown_seconds": _env_or_default("BLE_ALERT_COOLDOWN", 0.0, float),
                "live_rssi_ttl": _env_or_default("BLE_LIVE_RSSI_TTL", 5.0, float),
                "ingestion_workers": _env_or_default("BLE_INGESTION_WORKERS", 4, int),
                "ring_type": _env_or_default("BLE_RING_TYPE", 4, int),
                "ring_time": _env_or_default("BLE_RING_TIME", 4000, int),
                "led_on": _env_or_default("BLE_RING_LED_ON", 500, int),
                "led_off": _env_or_default("BLE_RING_LED_OFF", 1500, int),
            },
            "retention": {
                "enabled": _env_or_default("BLE_RETENTION_ENABLED", True, _env_bool),
                "interval_hours": _env_or_default("BLE_RETENTION_INTERVAL_HOURS", 24.0, float),
                "batch_size": _env_or_default("BLE_RETENTION_BATCH_SIZE", 500, int),
            },
            "paths": {
                "data_dir": _env_or_default("BLE_PATH_DATA_DIR", os.path.join(".", "data")),
            },
            "logging": {
                "level": _env_or_default("BLE_LOG_LEVEL", "INFO"),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """Load the config file, creating it from defaults when missing."""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r", encoding="utf-8") as f:
                    self.config = yaml.safe_load(f) or {}
                self._merge_default_config()
            else:
                self.config = copy.deepcopy(self.default_config)
                self.save_config()
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to read config %s, using defaults: %s", self.config_file, e)
            self.config = copy.deepcopy(self.default_config)

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                )
        except OSError as e:
            logger.warning("Failed to write config %s: %s", self.config_file, e)

    # ---------- Accessors ----------
    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_rssi_model_config(self):
        return self.config["rssi_model"]

    def get_proximity_config(self):
        return self.config["proximity"]

    def get_retention_config(self):
        return self.config["retention"]

    def get_paths(self):
        return self.config.get("paths", {})

    def get_data_dir(self) -> str:
        return self.get_paths()["data_dir"]

    def get_log_level(self) -> str:
        return str(self.config.get("logging", {}).get("level", "INFO")).upper()

    def set_mqtt_config(self, ip, port, command_topic=None):
        self.config["mqtt"]["ip"] = ip
        self.config["mqtt"]["port"] = port
        if command_topic is not None:
            self.config["mqtt"]["command_topic"] = command_topic
        self.save_config()

    def set_rssi_model_config(self, tx_power: float, path_loss_exponent: float):
        self.config["rssi_model"]["tx_power"] = tx_power
        self.config["rssi_model"]["path_loss_exponent"] = path_loss_exponent
        self.save_config()

    def set_alert_cooldown(self, seconds: float):
        self.config["proximity"]["alert_cooldown_seconds"] = float(seconds)
        self.save_config()
