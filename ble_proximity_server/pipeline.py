from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

from .calibration_store import CalibrationStore
from .config_manager import ConfigManager
from .data_store import DataStore
from .dispatcher import CommandDispatcher
from .errors import NotFoundError, PersistenceError, ProximityError
from .estimator import DistanceEstimator, danger_level
from .models import (
    DecisionOutcome,
    DistanceReport,
    EstimateMethod,
    InboundEvent,
    MonitoringLogEntry,
    PairKey,
    PipelineResult,
    ProximityAlert,
    parse_inbound,
)


logger = logging.getLogger(__name__)

AUTO_VIBRATION = "auto_vibration"


class ProximityPipeline:
    """
    Per-event decision: distance, gateway policy, then alert + vibration.

    Every in-range report alerts again. ``proximity.alert_cooldown_seconds``
    (0 by default) suppresses repeats for a pair inside that window; the window
    starts only once a vibration command has been delivered.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        data_store: DataStore,
        calibration_store: CalibrationStore,
        estimator: DistanceEstimator,
        dispatcher: CommandDispatcher,
    ):
        self.config_manager = config_manager
        self.data_store = data_store
        self.calibration_store = calibration_store
        self.estimator = estimator
        self.dispatcher = dispatcher

        proximity = config_manager.get_proximity_config()
        self.alert_cooldown = float(proximity.get("alert_cooldown_seconds", 0.0))
        self.live_rssi_ttl = float(proximity.get("live_rssi_ttl", 5.0))

        self._state_lock = threading.Lock()
        self._last_alert: Dict[PairKey, float] = {}
        self._latest_rssi: Dict[PairKey, Tuple[float, float]] = {}

    # ---------- Live RSSI ----------
    def _remember_rssi(self, key: PairKey, rssi: Optional[float]) -> None:
        if rssi is None:
            return
        now = time.monotonic()
        with self._state_lock:
            self._latest_rssi[key] = (rssi, now)
            stale = [k for k, (_, seen) in self._latest_rssi.items() if now - seen > self.live_rssi_ttl]
            for k in stale:
                del self._latest_rssi[k]

    def latest_rssi(self, beacon_id: str, gateway_id: str) -> Optional[float]:
        """Most recent RSSI of a pair, or None when older than ``live_rssi_ttl``."""
        key = (beacon_id, gateway_id)
        with self._state_lock:
            entry = self._latest_rssi.get(key)
            if entry is None:
                return None
            rssi, seen = entry
            if time.monotonic() - seen > self.live_rssi_ttl:
                del self._latest_rssi[key]
                return None
            return rssi

    # ---------- Cooldown hook ----------
    def _in_cooldown(self, key: PairKey, now: float) -> bool:
        if self.alert_cooldown <= 0:
            return False
        with self._state_lock:
            last = self._last_alert.get(key)
            return last is not None and now - last < self.alert_cooldown

    def _start_cooldown(self, key: PairKey, now: float) -> None:
        if self.alert_cooldown <= 0:
            return
        with self._state_lock:
            self._last_alert[key] = now
            # forget pairs that have been quiet for two windows
            stale = [k for k, t in self._last_alert.items() if now - t > 2 * self.alert_cooldown]
            for k in stale:
                del self._last_alert[k]

    # ---------- Core processing ----------
    def process_message(self, data: Dict[str, Any]) -> PipelineResult:
        return self.process(parse_inbound(data))

    def process(self, event: InboundEvent) -> PipelineResult:
        key = event.key
        self._remember_rssi(key, event.rssi)

        gateway = self.data_store.get_gateway(event.gateway_id)
        if gateway is None:
            raise NotFoundError(f"gateway {event.gateway_id} not found")
        policy = gateway.policy

        beacon = None
        if isinstance(event, DistanceReport):
            distance = event.distance
            method = EstimateMethod.REPORTED
        else:
            beacon = self.data_store.get_beacon(event.beacon_id)
            estimate = self.estimator.estimate(
                event.rssi,
                self.calibration_store.get_set(event.beacon_id, event.gateway_id),
                tx_power=beacon.tx_power if beacon else None,
            )
            distance = estimate.distance
            method = estimate.method

        result = PipelineResult(
            beacon_id=event.beacon_id,
            gateway_id=event.gateway_id,
            outcome=DecisionOutcome.OUT_OF_RANGE,
            distance=distance,
            threshold=policy.proximity_threshold,
            rssi=event.rssi,
            method=method,
            danger_level=danger_level(distance),
        )

        if not policy.auto_vibration:
            result.outcome = DecisionOutcome.AUTO_VIBRATION_DISABLED
            logger.debug("%s/%s: auto vibration disabled", event.beacon_id, event.gateway_id)
            return result

        if distance > policy.proximity_threshold:
            logger.debug(
                "%s/%s: %.2fm beyond threshold %.2fm",
                event.beacon_id,
                event.gateway_id,
                distance,
                policy.proximity_threshold,
            )
            return result

        if beacon is None:
            beacon = self.data_store.get_beacon(event.beacon_id)
        if beacon is None:
            raise NotFoundError(f"beacon {event.beacon_id} not found")

        now = time.monotonic()
        if self._in_cooldown(key, now):
            result.outcome = DecisionOutcome.COOLDOWN
            logger.debug("%s/%s: within alert cooldown", event.beacon_id, event.gateway_id)
            return result

        result.outcome = DecisionOutcome.ALERTED
        beacon_name = beacon.name or beacon.beacon_id
        gateway_name = gateway.name or gateway.gateway_id
        logger.info(
            "Proximity alert: %s at %.2fm from %s (threshold %.2fm, %s)",
            beacon_name,
            distance,
            gateway_name,
            policy.proximity_threshold,
            method.value,
        )

        try:
            result.delivery = self.dispatcher.send_command(event.beacon_id, gateway_id=event.gateway_id)
        except ProximityError as e:
            # no MAC or the gateway vanished: the alert still stands
            logger.error("Vibration for %s not sent: %s", event.beacon_id, e)
            result.errors.append(str(e))
        if result.vibration_sent:
            self._start_cooldown(key, now)

        alert = ProximityAlert(
            beacon_id=event.beacon_id,
            gateway_id=event.gateway_id,
            distance=distance,
            rssi=event.rssi,
            threshold=policy.proximity_threshold,
            alert_type=AUTO_VIBRATION,
            message=f"Auto vibration: {beacon_name} within {distance:.2f}m of {gateway_name}",
            is_alert=True,
        )
        entry = MonitoringLogEntry(
            type=AUTO_VIBRATION,
            source_id=event.beacon_id,
            message=(
                f"Auto vibration sent: {beacon_name} ({gateway_name}, {distance:.2f}m, "
                f"{result.delivery.value if result.delivery else 'not sent'})"
            ),
            severity="info",
        )
        for record, write in ((alert, self.data_store.add_alert), (entry, self.data_store.add_log)):
            try:
                write(record)
            except PersistenceError as e:
                logger.warning("Alert record for %s not persisted: %s", event.beacon_id, e)
                result.degraded = True
                result.errors.append(str(e))
        return result
