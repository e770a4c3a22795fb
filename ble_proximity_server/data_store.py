from __future__ import annotations

import logging
import os
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, cast

import pandas as pd

from .config_manager import ConfigManager
from .errors import DuplicateCalibrationPointError, InvalidInputError, PersistenceError
from .models import (
    Beacon,
    CalibrationPoint,
    Gateway,
    LogRetentionPolicy,
    MonitoringLogEntry,
    ProximityAlert,
)


logger = logging.getLogger(__name__)

THRESHOLD_RANGE = (0.1, 100.0)

# Defaults seeded on first start; keyed by (log_type, severity).
DEFAULT_RETENTION_POLICIES: Dict[Tuple[str, str], int] = {
    ("monitoring", "error"): 90,
    ("monitoring", "warning"): 30,
    ("monitoring", "info"): 7,
    ("monitoring", "debug"): 3,
    ("proximity", "all"): 30,
    ("system", "error"): 180,
    ("system", "warning"): 60,
    ("system", "info"): 14,
}

SYSTEM_LOG_TYPE = "system"


class _Table:
    """One CSV-backed table held as a DataFrame."""

    def __init__(self, name: str, schema: Dict[str, str], data_dir: str):
        self.name = name
        self.schema = schema
        self.path = os.path.join(data_dir, f"{name}.csv")
        self.df = self.normalize(pd.DataFrame(columns=list(schema)))

    def normalize(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        for col, kind in self.schema.items():
            if col not in df.columns:
                df[col] = None
            match kind:
                case "str":
                    df[col] = df[col].fillna("").astype(str)
                case "float":
                    df[col] = pd.to_numeric(df[col], errors="coerce").astype("float64")
                case "int":
                    df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0).astype("int64")
                case "bool":
                    df[col] = df[col].map(
                        lambda v: str(v).strip().lower() in ("1", "true", "yes")
                    ).astype(bool)
                case "datetime":
                    df[col] = pd.to_datetime(df[col], errors="coerce", format="mixed")
        return df[list(self.schema)].reset_index(drop=True)

    def load(self) -> None:
        if not os.path.exists(self.path):
            self.df = self.normalize(pd.DataFrame(columns=list(self.schema)))
            return
        try:
            df = pd.read_csv(self.path, dtype=str, keep_default_na=True)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"failed to read {self.path}: {e}") from e
        self.df = self.normalize(df)

    def save(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            self.df.to_csv(self.path, index=False, encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"failed to write {self.path}: {e}") from e

    def append(self, row: Dict[str, Any]) -> None:
        new = self.normalize(pd.DataFrame([row]))
        if self.df.empty:
            self.df = new
        else:
            self.df = pd.concat([self.df, new], ignore_index=True)

    def next_id(self) -> int:
        if self.df.empty:
            return 1
        return int(self.df["id"].max()) + 1


def _none_if_nan(v: Any) -> Any:
    if v is None or pd.isna(v):
        return None
    return v


def _to_datetime(v: Any) -> Optional[datetime]:
    v = _none_if_nan(v)
    return None if v is None else pd.Timestamp(v).to_pydatetime()


class DataStore:
    """Durable tables (pandas + CSV) backing calibration, alerts, logs and policies."""

    def __init__(self, config_manager: Optional[ConfigManager] = None, data_dir: Optional[str] = None):
        self._config = config_manager
        self.data_dir = data_dir or (config_manager or ConfigManager()).get_data_dir()
        self._lock = threading.RLock()
        self._calibration = _Table(
            "calibration_points",
            {
                "beacon_id": "str",
                "gateway_id": "str",
                "distance": "float",
                "rssi": "float",
                "samples": "int",
                "updated_at": "datetime",
            },
            self.data_dir,
        )
        self._alerts = _Table(
            "proximity_alerts",
            {
                "id": "int",
                "beacon_id": "str",
                "gateway_id": "str",
                "distance": "float",
                "rssi": "float",
                "threshold": "float",
                "alert_type": "str",
                "message": "str",
                "is_alert": "bool",
                "alert_time": "datetime",
                "created_at": "datetime",
            },
            self.data_dir,
        )
        self._logs = _Table(
            "monitoring_logs",
            {
                "id": "int",
                "type": "str",
                "source_id": "str",
                "message": "str",
                "severity": "str",
                "created_at": "datetime",
            },
            self.data_dir,
        )
        self._policies = _Table(
            "retention_policies",
            {
                "log_type": "str",
                "severity": "str",
                "retention_days": "int",
                "is_active": "bool",
                "last_cleanup": "datetime",
            },
            self.data_dir,
        )
        self._gateways = _Table(
            "gateways",
            {
                "gateway_id": "str",
                "name": "str",
                "mqtt_topic": "str",
                "status": "str",
                "proximity_threshold": "float",
                "auto_vibration": "bool",
            },
            self.data_dir,
        )
        self._beacons = _Table(
            "beacons",
            {
                "beacon_id": "str",
                "name": "str",
                "mac_address": "str",
                "tx_power": "float",
                "status": "str",
            },
            self.data_dir,
        )
        self._tables = [
            self._calibration,
            self._alerts,
            self._logs,
            self._policies,
            self._gateways,
            self._beacons,
        ]

    # ---- Load ----
    def load(self) -> None:
        with self._lock:
            for table in self._tables:
                table.load()
        logger.info("Data store loaded from %s", self.data_dir)

    # ---- Calibration points ----
    def load_calibration_points(self, refresh: bool = True) -> List[Tuple[str, str, CalibrationPoint]]:
        """All persisted points; re-reads the CSV file unless ``refresh`` is False."""
        with self._lock:
            if refresh:
                self._calibration.load()
            df = self._calibration.df.copy()
        rows: List[Tuple[str, str, CalibrationPoint]] = []
        for _, row in df.iterrows():
            r = cast(pd.Series, row)
            if pd.isna(r.at["distance"]) or pd.isna(r.at["rssi"]):
                continue
            rows.append(
                (
                    str(r.at["beacon_id"]),
                    str(r.at["gateway_id"]),
                    CalibrationPoint(
                        distance=float(r.at["distance"]),
                        rssi=float(r.at["rssi"]),
                        sample_count=max(int(r.at["samples"]), 1),
                        last_updated=_to_datetime(r.at["updated_at"]) or datetime.now(),
                    ),
                )
            )
        return rows

    def _calibration_mask(self, beacon_id: str, gateway_id: str, distance: Optional[float] = None):
        df = self._calibration.df
        mask = (df["beacon_id"] == beacon_id) & (df["gateway_id"] == gateway_id)
        if distance is not None:
            mask &= df["distance"] == float(distance)
        return mask

    def has_calibration_point(self, beacon_id: str, gateway_id: str, distance: float) -> bool:
        with self._lock:
            return bool(self._calibration_mask(beacon_id, gateway_id, distance).any())

    def upsert_calibration_point(self, beacon_id: str, gateway_id: str, point: CalibrationPoint) -> None:
        with self._lock:
            mask = self._calibration_mask(beacon_id, gateway_id, point.distance)
            if mask.any():
                df = self._calibration.df
                df.loc[mask, "rssi"] = float(point.rssi)
                df.loc[mask, "samples"] = int(point.sample_count)
                df.loc[mask, "updated_at"] = pd.Timestamp(point.last_updated)
            else:
                self._calibration.append(
                    {
                        "beacon_id": beacon_id,
                        "gateway_id": gateway_id,
                        "distance": float(point.distance),
                        "rssi": float(point.rssi),
                        "samples": int(point.sample_count),
                        "updated_at": point.last_updated,
                    }
                )
            self._calibration.save()

    def insert_calibration_point(self, beacon_id: str, gateway_id: str, point: CalibrationPoint) -> None:
        with self._lock:
            if self._calibration_mask(beacon_id, gateway_id, point.distance).any():
                raise DuplicateCalibrationPointError(beacon_id, gateway_id, point.distance)
            self.upsert_calibration_point(beacon_id, gateway_id, point)

    def delete_calibration_pair(self, beacon_id: str, gateway_id: str) -> int:
        with self._lock:
            mask = self._calibration_mask(beacon_id, gateway_id)
            count = int(mask.sum())
            if count:
                self._calibration.df = self._calibration.df[~mask].reset_index(drop=True)
                self._calibration.save()
            return count

    # ---- Gateways / beacons ----
    def upsert_gateway(self, gateway: Gateway) -> None:
        lo, hi = THRESHOLD_RANGE
        if not lo <= gateway.proximity_threshold <= hi:
            raise InvalidInputError(f"proximity threshold must be within {lo}m and {hi}m")
        with self._lock:
            df = self._gateways.df
            self._gateways.df = df[df["gateway_id"] != gateway.gateway_id].reset_index(drop=True)
            self._gateways.append(
                {
                    "gateway_id": gateway.gateway_id,
                    "name": gateway.name,
                    "mqtt_topic": gateway.mqtt_topic,
                    "status": gateway.status,
                    "proximity_threshold": gateway.proximity_threshold,
                    "auto_vibration": gateway.auto_vibration,
                }
            )
            self._gateways.save()

    @staticmethod
    def _gateway_from_row(r: pd.Series) -> Gateway:
        threshold = _none_if_nan(r.at["proximity_threshold"])
        return Gateway(
            gateway_id=str(r.at["gateway_id"]),
            name=str(r.at["name"]),
            mqtt_topic=str(r.at["mqtt_topic"]),
            status=str(r.at["status"]) or "active",
            proximity_threshold=float(threshold) if threshold is not None else 5.0,
            auto_vibration=bool(r.at["auto_vibration"]),
        )

    def get_gateway(self, gateway_id: str) -> Optional[Gateway]:
        with self._lock:
            df = self._gateways.df
            rows = df[df["gateway_id"] == gateway_id]
            if rows.empty:
                return None
            return self._gateway_from_row(cast(pd.Series, rows.iloc[-1]))

    def first_active_gateway(self) -> Optional[Gateway]:
        with self._lock:
            df = self._gateways.df
            rows = df[df["status"] == "active"]
            if rows.empty:
                return None
            return self._gateway_from_row(cast(pd.Series, rows.iloc[0]))

    def update_gateway_settings(
        self,
        gateway_id: str,
        proximity_threshold: Optional[float] = None,
        auto_vibration: Optional[bool] = None,
    ) -> Optional[Gateway]:
        gateway = self.get_gateway(gateway_id)
        if gateway is None:
            return None
        changes: Dict[str, Any] = {}
        if proximity_threshold is not None:
            changes["proximity_threshold"] = float(proximity_threshold)
        if auto_vibration is not None:
            changes["auto_vibration"] = bool(auto_vibration)
        updated = replace(gateway, **changes)
        self.upsert_gateway(updated)
        return updated

    def upsert_beacon(self, beacon: Beacon) -> None:
        with self._lock:
            df = self._beacons.df
            self._beacons.df = df[df["beacon_id"] != beacon.beacon_id].reset_index(drop=True)
            self._beacons.append(
                {
                    "beacon_id": beacon.beacon_id,
                    "name": beacon.name,
                    "mac_address": beacon.mac_address,
                    "tx_power": beacon.tx_power,
                    "status": beacon.status,
                }
            )
            self._beacons.save()

    def get_beacon(self, beacon_id: str) -> Optional[Beacon]:
        with self._lock:
            df = self._beacons.df
            rows = df[df["beacon_id"] == beacon_id]
            if rows.empty:
                return None
            r = cast(pd.Series, rows.iloc[-1])
        tx_power = _none_if_nan(r.at["tx_power"])
        return Beacon(
            beacon_id=str(r.at["beacon_id"]),
            name=str(r.at["name"]),
            mac_address=str(r.at["mac_address"]),
            tx_power=float(tx_power) if tx_power is not None else None,
            status=str(r.at["status"]) or "active",
        )

    # ---- Alerts / logs (append-only) ----
    def add_alert(self, alert: ProximityAlert) -> int:
        with self._lock:
            alert_id = self._alerts.next_id()
            self._alerts.append(
                {
                    "id": alert_id,
                    "beacon_id": alert.beacon_id,
                    "gateway_id": alert.gateway_id,
                    "distance": alert.distance,
                    "rssi": alert.rssi,
                    "threshold": alert.threshold,
                    "alert_type": alert.alert_type,
                    "message": alert.message,
                    "is_alert": alert.is_alert,
                    "alert_time": alert.alert_time,
                    "created_at": alert.alert_time,
                }
            )
            self._alerts.save()
            return alert_id

    def add_log(self, entry: MonitoringLogEntry) -> int:
        with self._lock:
            log_id = self._logs.next_id()
            self._logs.append(
                {
                    "id": log_id,
                    "type": entry.type,
                    "source_id": entry.source_id,
                    "message": entry.message,
                    "severity": entry.severity,
                    "created_at": entry.created_at,
                }
            )
            self._logs.save()
            return log_id

    def list_alerts(self) -> List[ProximityAlert]:
        with self._lock:
            df = self._alerts.df.copy()
        result: List[ProximityAlert] = []
        for _, row in df.iterrows():
            r = cast(pd.Series, row)
            rssi = _none_if_nan(r.at["rssi"])
            threshold = _none_if_nan(r.at["threshold"])
            result.append(
                ProximityAlert(
                    beacon_id=str(r.at["beacon_id"]),
                    gateway_id=str(r.at["gateway_id"]),
                    distance=float(r.at["distance"]),
                    alert_type=str(r.at["alert_type"]),
                    message=str(r.at["message"]),
                    is_alert=bool(r.at["is_alert"]),
                    rssi=float(rssi) if rssi is not None else None,
                    threshold=float(threshold) if threshold is not None else None,
                    alert_time=_to_datetime(r.at["alert_time"]) or datetime.now(),
                )
            )
        return result

    def list_logs(self) -> List[MonitoringLogEntry]:
        with self._lock:
            df = self._logs.df.copy()
        return [
            MonitoringLogEntry(
                type=str(r.at["type"]),
                source_id=str(r.at["source_id"]),
                message=str(r.at["message"]),
                severity=str(r.at["severity"]),
                created_at=_to_datetime(r.at["created_at"]) or datetime.now(),
            )
            for _, r in df.iterrows()
        ]

    def delete_logs_before(
        self,
        cutoff: datetime,
        severity: str = "all",
        log_type: Optional[str] = None,
        exclude_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> int:
        """Delete at most ``limit`` monitoring entries created before ``cutoff``."""
        with self._lock:
            df = self._logs.df
            mask = df["created_at"] < pd.Timestamp(cutoff)
            if severity != "all":
                mask &= df["severity"] == severity
            if log_type is not None:
                mask &= df["type"] == log_type
            if exclude_type is not None:
                mask &= df["type"] != exclude_type
            idx = df.index[mask]
            if limit is not None:
                idx = idx[:limit]
            if len(idx) == 0:
                return 0
            self._logs.df = df.drop(index=idx).reset_index(drop=True)
            self._logs.save()
            return len(idx)

    def delete_alerts_before(self, cutoff: datetime, limit: Optional[int] = None) -> int:
        with self._lock:
            df = self._alerts.df
            idx = df.index[df["created_at"] < pd.Timestamp(cutoff)]
            if limit is not None:
                idx = idx[:limit]
            if len(idx) == 0:
                return 0
            self._alerts.df = df.drop(index=idx).reset_index(drop=True)
            self._alerts.save()
            return len(idx)

    def purge_alerts(self) -> int:
        with self._lock:
            count = len(self._alerts.df)
            self._alerts.df = self._alerts.df.iloc[0:0]
            self._alerts.save()
            return count

    def log_statistics(self) -> Dict[str, Any]:
        with self._lock:
            logs = self._logs.df.copy()
            alerts = self._alerts.df.copy()

        def oldest(series: pd.Series) -> Optional[str]:
            v = series.min() if not series.empty else None
            return None if v is None or pd.isna(v) else pd.Timestamp(v).isoformat()

        return {
            "monitoring_logs": {
                "total": int(len(logs)),
                "by_severity": {str(k): int(v) for k, v in logs["severity"].value_counts().items()},
            },
            "proximity_alerts": {
                "total": int(len(alerts)),
                "active": int(alerts["is_alert"].sum()) if not alerts.empty else 0,
            },
            "oldest_logs": {
                "monitoring": oldest(logs["created_at"]),
                "proximity": oldest(alerts["created_at"]),
            },
        }

    # ---- Retention policies ----
    def list_retention_policies(self, active_only: bool = False) -> List[LogRetentionPolicy]:
        with self._lock:
            df = self._policies.df.copy()
        if active_only:
            df = df[df["is_active"]]
        df = df.sort_values(["log_type", "severity"])
        return [
            LogRetentionPolicy(
                log_type=str(r.at["log_type"]),
                severity=str(r.at["severity"]),
                retention_days=int(r.at["retention_days"]),
                is_active=bool(r.at["is_active"]),
                last_cleanup=_to_datetime(r.at["last_cleanup"]),
            )
            for _, r in df.iterrows()
        ]

    def upsert_retention_policy(self, policy: LogRetentionPolicy) -> None:
        if policy.retention_days <= 0:
            raise InvalidInputError("retention_days must be positive")
        with self._lock:
            df = self._policies.df
            mask = (df["log_type"] == policy.log_type) & (df["severity"] == policy.severity)
            self._policies.df = df[~mask].reset_index(drop=True)
            self._policies.append(
                {
                    "log_type": policy.log_type,
                    "severity": policy.severity,
                    "retention_days": policy.retention_days,
                    "is_active": policy.is_active,
                    "last_cleanup": policy.last_cleanup,
                }
            )
            self._policies.save()

    def mark_policy_cleanup(self, log_type: str, severity: str, when: datetime) -> None:
        with self._lock:
            df = self._policies.df
            mask = (df["log_type"] == log_type) & (df["severity"] == severity)
            if mask.any():
                df.loc[mask, "last_cleanup"] = pd.Timestamp(when)
                self._policies.save()

    def seed_default_policies(self) -> int:
        """Insert the default retention policies that do not exist yet."""
        existing = {(p.log_type, p.severity) for p in self.list_retention_policies()}
        added = 0
        for (log_type, severity), days in DEFAULT_RETENTION_POLICIES.items():
            if (log_type, severity) in existing:
                continue
            self.upsert_retention_policy(
                LogRetentionPolicy(log_type=log_type, severity=severity, retention_days=days)
            )
            added += 1
        if added:
            logger.info("Seeded %d retention policies", added)
        return added
