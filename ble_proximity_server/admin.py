from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import DuplicateCalibrationPointError, InvalidInputError, NotFoundError, ProximityError
from .models import Beacon, Gateway
from .mqtt_processor import MQTTIngestionService
from .quality import CalibrationQualityEvaluator


logger = logging.getLogger(__name__)


@dataclass
class AdminResponse:
    success: bool
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    status: int = 200

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data:
            out["data"] = self.data
        return out


def _failure(e: ProximityError) -> AdminResponse:
    if isinstance(e, DuplicateCalibrationPointError):
        status = 409
    elif isinstance(e, NotFoundError):
        status = 404
    elif isinstance(e, InvalidInputError):
        status = 400
    else:
        status = 500
    return AdminResponse(success=False, message=str(e), status=status)


def _guarded(fn: Callable[..., AdminResponse]) -> Callable[..., AdminResponse]:
    @functools.wraps(fn)
    def wrapper(*args, **kwargs) -> AdminResponse:
        try:
            return fn(*args, **kwargs)
        except ProximityError as e:
            logger.warning("%s failed: %s", fn.__name__, e)
            return _failure(e)

    return wrapper


class AdminService:
    """Administrative operations over a running (or loaded) ingestion service."""

    def __init__(self, service: MQTTIngestionService):
        self.service = service
        self.calibration = service.calibration_store
        self.data_store = service.data_store
        self.quality: CalibrationQualityEvaluator = service.quality

    # ---------- Calibration ----------
    def _set_payload(self, beacon_id: str, gateway_id: str) -> Dict[str, Any]:
        calibration_set = self.calibration.get_set(beacon_id, gateway_id)
        return {
            "calibration": calibration_set.to_dict() if calibration_set else None,
            "status": self.quality.status(beacon_id, gateway_id).to_dict(),
            "quality": self.quality.evaluate(beacon_id, gateway_id).to_dict(),
        }

    @_guarded
    def add_calibration_point(self, beacon_id: str, gateway_id: str, distance: float, rssi: float) -> AdminResponse:
        self.calibration.add_point(beacon_id, gateway_id, distance, rssi)
        return AdminResponse(True, "calibration point saved", self._set_payload(beacon_id, gateway_id))

    @_guarded
    def create_calibration_point(self, beacon_id: str, gateway_id: str, distance: float, rssi: float) -> AdminResponse:
        self.calibration.create_point(beacon_id, gateway_id, distance, rssi)
        return AdminResponse(True, "calibration point created", self._set_payload(beacon_id, gateway_id), status=201)

    @_guarded
    def update_calibration_point(self, beacon_id: str, gateway_id: str, distance: float, rssi: float) -> AdminResponse:
        self.calibration.update_point(beacon_id, gateway_id, distance, rssi)
        return AdminResponse(True, "calibration point updated", self._set_payload(beacon_id, gateway_id))

    @_guarded
    def remove_calibration(self, beacon_id: str, gateway_id: str) -> AdminResponse:
        if not self.calibration.remove_point(beacon_id, gateway_id):
            raise NotFoundError(f"no calibration data for {beacon_id}/{gateway_id}")
        return AdminResponse(True, "calibration data removed")

    @_guarded
    def get_calibration(self, beacon_id: str, gateway_id: str) -> AdminResponse:
        data = self._set_payload(beacon_id, gateway_id)
        data["recommended_distances"] = self.quality.recommended_distances()
        return AdminResponse(True, "", data)

    @_guarded
    def list_calibrations(self) -> AdminResponse:
        sets = [s.to_dict() for s in self.calibration.list_all()]
        return AdminResponse(True, "", {"calibrations": sets, "total": len(sets)})

    @_guarded
    def reload_calibration(self) -> AdminResponse:
        pairs = self.calibration.reload_from_durable_store()
        return AdminResponse(True, f"reloaded {pairs} calibration set(s)", {"pairs": pairs})

    # ---------- Retention ----------
    @_guarded
    def retention_policies(self) -> AdminResponse:
        policies = [
            {
                "log_type": p.log_type,
                "severity": p.severity,
                "retention_days": p.retention_days,
                "is_active": p.is_active,
                "last_cleanup": p.last_cleanup.isoformat() if p.last_cleanup else None,
            }
            for p in self.data_store.list_retention_policies()
        ]
        return AdminResponse(True, "", {"policies": policies})

    @_guarded
    def log_statistics(self) -> AdminResponse:
        return AdminResponse(True, "", self.data_store.log_statistics())

    @_guarded
    def run_retention_sweep(self) -> AdminResponse:
        summary = self.service.sweeper.sweep()
        return AdminResponse(
            success=not summary.errors,
            message=f"deleted {summary.total_deleted} record(s)",
            data=summary.to_dict(),
        )

    @_guarded
    def seed_retention_policies(self) -> AdminResponse:
        added = self.data_store.seed_default_policies()
        return AdminResponse(True, f"added {added} default policies", {"added": added})

    # ---------- Commands ----------
    @_guarded
    def vibrate(
        self,
        beacon_id: str,
        gateway_id: Optional[str] = None,
        ring_type: Optional[int] = None,
        ring_time: Optional[int] = None,
    ) -> AdminResponse:
        result = self.service.dispatcher.vibrate(beacon_id, gateway_id, ring_type, ring_time)
        return AdminResponse(
            success=result.delivered,
            message="vibration command sent" if result.delivered else f"command not delivered ({result.value})",
            data={"delivery": result.value},
            status=200 if result.delivered else 503,
        )

    # ---------- MQTT ----------
    def mqtt_status(self) -> AdminResponse:
        return AdminResponse(True, "", self.service.transport.status())

    def mqtt_connect(self) -> AdminResponse:
        connected = self.service.transport.connect()
        return AdminResponse(
            success=connected,
            message="connected" if connected else "connection failed",
            data=self.service.transport.status(),
            status=200 if connected else 503,
        )

    def mqtt_disconnect(self) -> AdminResponse:
        self.service.transport.disconnect()
        return AdminResponse(True, "disconnected", self.service.transport.status())

    # ---------- Gateways / beacons ----------
    @_guarded
    def update_gateway_settings(
        self,
        gateway_id: str,
        proximity_threshold: Optional[float] = None,
        auto_vibration: Optional[bool] = None,
    ) -> AdminResponse:
        gateway = self.data_store.update_gateway_settings(gateway_id, proximity_threshold, auto_vibration)
        if gateway is None:
            raise NotFoundError(f"gateway {gateway_id} not found")
        return AdminResponse(
            True,
            "gateway settings updated",
            {
                "gateway_id": gateway.gateway_id,
                "proximity_threshold": gateway.proximity_threshold,
                "auto_vibration": gateway.auto_vibration,
            },
        )

    @_guarded
    def register_gateway(self, gateway: Gateway) -> AdminResponse:
        self.data_store.upsert_gateway(gateway)
        return AdminResponse(True, f"gateway {gateway.gateway_id} saved")

    @_guarded
    def register_beacon(self, beacon: Beacon) -> AdminResponse:
        self.data_store.upsert_beacon(beacon)
        return AdminResponse(True, f"beacon {beacon.beacon_id} saved")
