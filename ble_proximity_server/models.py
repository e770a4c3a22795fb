from __future__ import annotations

import json
import math
from dataclasses import dataclass, asdict, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Iterator, Tuple, Union

from .errors import InvalidInputError


PairKey = Tuple[str, str]

SEVERITIES = ("debug", "info", "warning", "error")


@dataclass(frozen=True)
class CalibrationPoint:
    distance: float
    rssi: float
    sample_count: int = 1
    last_updated: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class CalibrationSet:
    """
    Calibration points of one beacon-gateway pair.

    Instances are never mutated: ``with_point`` returns a new set, so a reader
    holding a reference always sees a complete one.
    """

    beacon_id: str
    gateway_id: str
    points: Tuple[CalibrationPoint, ...] = ()
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[CalibrationPoint]:
        return iter(self.points)

    @property
    def key(self) -> PairKey:
        return (self.beacon_id, self.gateway_id)

    @property
    def is_empty(self) -> bool:
        return len(self.points) == 0

    @property
    def distances(self) -> List[float]:
        return [p.distance for p in self.points]

    @property
    def rssis(self) -> List[float]:
        return [p.rssi for p in self.points]

    def point_at(self, distance: float) -> Optional[CalibrationPoint]:
        for p in self.points:
            if p.distance == distance:
                return p
        return None

    def with_point(self, point: CalibrationPoint, now: Optional[datetime] = None) -> "CalibrationSet":
        # exact numeric match on distance, no binning
        others = [p for p in self.points if p.distance != point.distance]
        points = tuple(sorted(others + [point], key=lambda p: p.distance))
        return replace(self, points=points, updated_at=now or datetime.now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "beacon_id": self.beacon_id,
            "gateway_id": self.gateway_id,
            "points": [
                {
                    "distance": p.distance,
                    "rssi": p.rssi,
                    "sample_count": p.sample_count,
                    "last_updated": p.last_updated.isoformat(),
                }
                for p in self.points
            ],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class Beacon:
    beacon_id: str
    name: str = ""
    mac_address: str = ""
    tx_power: Optional[float] = None
    status: str = "active"


@dataclass(frozen=True)
class Gateway:
    gateway_id: str
    name: str = ""
    mqtt_topic: str = ""
    status: str = "active"
    proximity_threshold: float = 5.0
    auto_vibration: bool = False

    @property
    def policy(self) -> "GatewayPolicy":
        return GatewayPolicy(
            gateway_id=self.gateway_id,
            name=self.name,
            proximity_threshold=self.proximity_threshold,
            auto_vibration=self.auto_vibration,
        )


@dataclass(frozen=True)
class GatewayPolicy:
    gateway_id: str
    name: str
    proximity_threshold: float
    auto_vibration: bool


@dataclass(frozen=True)
class ProximityAlert:
    beacon_id: str
    gateway_id: str
    distance: float
    alert_type: str
    message: str
    is_alert: bool = True
    rssi: Optional[float] = None
    threshold: Optional[float] = None
    alert_time: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class MonitoringLogEntry:
    type: str
    source_id: str
    message: str
    severity: str = "info"
    created_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class LogRetentionPolicy:
    log_type: str
    severity: str
    retention_days: int
    is_active: bool = True
    last_cleanup: Optional[datetime] = None


# ---------- Estimation ----------
class EstimateMethod(Enum):
    CALIBRATED = "calibrated"
    INTERPOLATED = "interpolated"
    EXTRAPOLATED = "extrapolated"
    SINGLE_POINT = "single_point"
    FALLBACK = "fallback"
    REPORTED = "reported"


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class DistanceEstimate:
    distance: float
    method: EstimateMethod
    confidence: Confidence


class QualityRating(Enum):
    NONE = "none"
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"


@dataclass
class CalibrationQuality:
    rating: QualityRating
    reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["rating"] = self.rating.value
        return d


@dataclass(frozen=True)
class CalibrationStatus:
    is_calibrated: bool
    point_count: int
    distance_range: Tuple[float, float] = (0.0, 0.0)
    rssi_range: Tuple[float, float] = (0.0, 0.0)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return d


# ---------- Commands ----------
class DeliveryResult(Enum):
    DELIVERED = "delivered"
    NOT_CONNECTED = "not_connected"
    TIMED_OUT = "timed_out"

    @property
    def delivered(self) -> bool:
        return self is DeliveryResult.DELIVERED


@dataclass(frozen=True)
class RingCommand:
    """Ring envelope understood by the gateway firmware."""

    mac: str
    ring_type: int = 4  # 0x4: vibration
    ring_time: int = 4000  # ms
    led_on: int = 500
    led_off: int = 1500

    @staticmethod
    def normalize_mac(mac_address: str) -> str:
        return mac_address.replace(":", "").strip()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "msg": "ring",
            "mac": self.normalize_mac(self.mac),
            "ringType": self.ring_type,
            "ringTime": self.ring_time,
            "ledOn": self.led_on,
            "ledOff": self.led_off,
        }


# ---------- Pipeline ----------
class DecisionOutcome(Enum):
    ALERTED = "alerted"
    AUTO_VIBRATION_DISABLED = "auto_vibration_disabled"
    OUT_OF_RANGE = "out_of_range"
    COOLDOWN = "cooldown"


@dataclass
class PipelineResult:
    """
    Outcome of one inbound event.

    ``degraded`` is set when the decision stands but the alert or log entry
    could not be persisted.
    """

    beacon_id: str
    gateway_id: str
    outcome: DecisionOutcome
    distance: float
    threshold: float
    rssi: Optional[float] = None
    method: EstimateMethod = EstimateMethod.REPORTED
    danger_level: str = "safe"
    delivery: Optional[DeliveryResult] = None
    degraded: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def is_alert(self) -> bool:
        return self.outcome is DecisionOutcome.ALERTED

    @property
    def vibration_sent(self) -> bool:
        return self.delivery is not None and self.delivery.delivered

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["outcome"] = self.outcome.value
        d["method"] = self.method.value
        d["delivery"] = self.delivery.value if self.delivery else None
        return {k: v for k, v in d.items() if v is not None}


# ---------- Inbound messages ----------
def _check_finite(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InvalidInputError(f"'{name}' must be a finite number")


@dataclass(frozen=True)
class BeaconSighting:
    beacon_id: str
    gateway_id: str
    rssi: float
    timestamp: Optional[float] = None

    def __post_init__(self):
        _check_finite("rssi", self.rssi)

    @property
    def key(self) -> PairKey:
        return (self.beacon_id, self.gateway_id)


@dataclass(frozen=True)
class DistanceReport:
    beacon_id: str
    gateway_id: str
    distance: float
    rssi: Optional[float] = None
    timestamp: Optional[float] = None

    def __post_init__(self):
        _check_finite("distance", self.distance)
        if self.distance <= 0:
            raise InvalidInputError("'distance' must be positive")
        if self.rssi is not None:
            _check_finite("rssi", self.rssi)

    @property
    def key(self) -> PairKey:
        return (self.beacon_id, self.gateway_id)


InboundEvent = Union[BeaconSighting, DistanceReport]


def _require_id(data: Dict[str, Any], key: str) -> str:
    v = data.get(key)
    if not isinstance(v, str) or not v.strip():
        raise InvalidInputError(f"'{key}' must be a non-empty string")
    return v.strip()


def _optional_number(data: Dict[str, Any], key: str) -> Optional[float]:
    v = data.get(key)
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise InvalidInputError(f"'{key}' must be a number")
    v = float(v)
    if not math.isfinite(v):
        raise InvalidInputError(f"'{key}' must be finite")
    return v


def _coerce_timestamp(ts_raw: Any) -> Optional[float]:
    """Epoch seconds from seconds, milliseconds or an ISO string."""
    if ts_raw is None or isinstance(ts_raw, bool):
        return None
    if isinstance(ts_raw, (int, float)):
        ts = float(ts_raw)
    elif isinstance(ts_raw, str):
        try:
            ts = float(ts_raw)
        except ValueError:
            try:
                return datetime.fromisoformat(ts_raw.strip()).timestamp()
            except ValueError:
                return None
    else:
        return None
    if ts > 1_000_000_000_000:
        ts = ts / 1000.0
    return ts


def parse_inbound(data: Any) -> InboundEvent:
    """Validate a decoded payload into a sighting or a distance report."""
    if not isinstance(data, dict):
        raise InvalidInputError("message must be a JSON object")
    beacon_id = _require_id(data, "beaconId")
    gateway_id = _require_id(data, "gatewayId")
    rssi = _optional_number(data, "rssi")
    distance = _optional_number(data, "distance")
    timestamp = _coerce_timestamp(data.get("timestamp"))

    if distance is not None:
        if distance <= 0:
            raise InvalidInputError("'distance' must be positive")
        return DistanceReport(
            beacon_id=beacon_id,
            gateway_id=gateway_id,
            distance=distance,
            rssi=rssi,
            timestamp=timestamp,
        )
    if rssi is not None:
        return BeaconSighting(
            beacon_id=beacon_id, gateway_id=gateway_id, rssi=rssi, timestamp=timestamp
        )
    raise InvalidInputError("one of 'rssi' or 'distance' is required")


def parse_transport_payload(payload: Union[bytes, str]) -> List[InboundEvent]:
    """
    Decode one MQTT payload.

    Accepts a single sighting/report object, a gateway ``advData`` batch
    (one sighting per advertised beacon) or a gateway ``alive`` heartbeat,
    which carries no readings.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidInputError(f"payload is not UTF-8: {e}") from e
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"payload is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise InvalidInputError("message must be a JSON object")

    match data.get("msg"):
        case "alive":
            return []
        case "advData":
            return _parse_adv_data(data)
        case _:
            return [parse_inbound(data)]


def _parse_adv_data(data: Dict[str, Any]) -> List[InboundEvent]:
    gmac = data.get("gmac")
    objs = data.get("obj")
    if not isinstance(gmac, str) or not gmac or not isinstance(objs, list):
        raise InvalidInputError("advData requires 'gmac' and an 'obj' list")
    gateway_id = f"GW_{gmac}"
    events: List[InboundEvent] = []
    for obj in objs:
        if not isinstance(obj, dict) or not isinstance(obj.get("dmac"), str):
            raise InvalidInputError("advData entry requires 'dmac'")
        rssi = _optional_number(obj, "rssi")
        if rssi is None:
            raise InvalidInputError("advData entry requires 'rssi'")
        events.append(
            BeaconSighting(
                beacon_id=f"BEACON_{obj['dmac'].upper()}",
                gateway_id=gateway_id,
                rssi=rssi,
                timestamp=_coerce_timestamp(obj.get("time")),
            )
        )
    return events
