"""BLE Proximity Server package.

This package provides:
- ConfigManager: YAML-based configuration management
- CalibrationStore: per beacon/gateway RSSI calibration sets, CSV-backed
- DistanceEstimator: RSSI to distance from calibration or the path-loss model
- CalibrationQualityEvaluator: rates calibration sets against gateway thresholds
- ProximityPipeline: per-sighting alert and vibration decision
- CommandDispatcher: ring/vibration commands over MQTT
- LogRetentionSweeper: policy-driven cleanup of logs and alerts
- MQTTIngestionService: MQTT ingestion wiring everything together
"""

from .calibration_store import CalibrationStore
from .config_manager import ConfigManager
from .dispatcher import CommandDispatcher
from .estimator import DistanceEstimator
from .mqtt_processor import MQTTIngestionService
from .pipeline import ProximityPipeline
from .quality import CalibrationQualityEvaluator
from .retention import LogRetentionSweeper, RetentionScheduler

__all__ = [
    "CalibrationQualityEvaluator",
    "CalibrationStore",
    "CommandDispatcher",
    "ConfigManager",
    "DistanceEstimator",
    "LogRetentionSweeper",
    "MQTTIngestionService",
    "ProximityPipeline",
    "RetentionScheduler",
]
