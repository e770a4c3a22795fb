from __future__ import annotations

import math
from typing import Optional

import numpy as np

from .config_manager import ConfigManager
from .errors import InvalidInputError
from .models import CalibrationSet, Confidence, DistanceEstimate, EstimateMethod


def danger_level(distance: float) -> str:
    """Coarse risk band for a distance in meters."""
    if distance > 5:
        return "safe"
    if distance > 2:
        return "warning"
    return "danger"


class DistanceEstimator:
    """RSSI to distance, from a calibration set or the log-distance path-loss model."""

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        rssi_config = (config_manager or ConfigManager()).get_rssi_model_config()

        # RSSI at 1 m (dBm)
        self.tx_power = float(rssi_config.get("tx_power", -59.0))

        # path-loss exponent
        self.path_loss_exponent = float(rssi_config.get("path_loss_exponent", 2.0))

        self.min_distance = float(rssi_config.get("min_distance", 0.1))
        self.max_distance = float(rssi_config.get("max_distance", 100.0))

    def _clamp(self, distance: float) -> float:
        if not math.isfinite(distance):
            return self.max_distance
        return min(max(distance, self.min_distance), self.max_distance)

    def path_loss_distance(self, rssi: float, tx_power: Optional[float] = None) -> float:
        """distance = 10 ^ ((txPower - rssi) / (10 * n)), clamped to the configured range."""
        tx = self.tx_power if tx_power is None else tx_power
        exponent = (tx - rssi) / (10.0 * self.path_loss_exponent)
        # beyond ~1e308 pow overflows; the clamp handles it either way
        if exponent > 300:
            return self.max_distance
        return self._clamp(math.pow(10, exponent))

    def estimate(
        self,
        rssi: float,
        calibration_set: Optional[CalibrationSet] = None,
        tx_power: Optional[float] = None,
    ) -> DistanceEstimate:
        if rssi is None or not math.isfinite(rssi):
            raise InvalidInputError("rssi must be a finite number")

        points = list(calibration_set.points) if calibration_set is not None else []

        if len(points) == 0:
            return DistanceEstimate(
                distance=self.path_loss_distance(rssi, tx_power),
                method=EstimateMethod.FALLBACK,
                confidence=Confidence.LOW,
            )

        if len(points) == 1:
            # move the reference power so the model passes through the single point
            p = points[0]
            tx = p.rssi + 10.0 * self.path_loss_exponent * math.log10(p.distance)
            return DistanceEstimate(
                distance=self.path_loss_distance(rssi, tx),
                method=EstimateMethod.SINGLE_POINT,
                confidence=Confidence.MEDIUM,
            )

        return self._from_calibration(rssi, points)

    def estimate_distance(
        self,
        rssi: float,
        calibration_set: Optional[CalibrationSet] = None,
        tx_power: Optional[float] = None,
    ) -> float:
        return self.estimate(rssi, calibration_set, tx_power).distance

    def _from_calibration(self, rssi: float, points) -> DistanceEstimate:
        # sorted by distance; ties on RSSI then resolve to the nearer point
        order = np.argsort([p.distance for p in points], kind="stable")
        distances = np.array([points[i].distance for i in order], dtype=float)
        rssis = np.array([points[i].rssi for i in order], dtype=float)

        exact = np.flatnonzero(rssis == rssi)
        if exact.size:
            return DistanceEstimate(
                distance=float(distances[exact[0]]),
                method=EstimateMethod.CALIBRATED,
                confidence=Confidence.HIGH,
            )

        above = np.flatnonzero(rssis > rssi)
        below = np.flatnonzero(rssis < rssi)

        if below.size == 0:
            # weaker than every calibrated point
            return DistanceEstimate(
                distance=self._extrapolate_far(rssi, distances, rssis),
                method=EstimateMethod.EXTRAPOLATED,
                confidence=Confidence.MEDIUM,
            )

        if above.size == 0:
            # stronger than every calibrated point: never closer than calibrated
            strongest = float(rssis.max())
            idx = np.flatnonzero(rssis == strongest)[0]
            return DistanceEstimate(
                distance=float(distances[idx]),
                method=EstimateMethod.EXTRAPOLATED,
                confidence=Confidence.MEDIUM,
            )

        # closest RSSI above and below the input
        upper_rssi = float(rssis[above].min())
        lower_rssi = float(rssis[below].max())
        upper = int(np.flatnonzero(rssis == upper_rssi)[0])
        lower = int(np.flatnonzero(rssis == lower_rssi)[0])

        d_upper = float(distances[upper])
        d_lower = float(distances[lower])
        span = upper_rssi - lower_rssi
        if span == 0:
            distance = min(d_upper, d_lower)
        else:
            ratio = (rssi - lower_rssi) / span
            distance = d_lower + ratio * (d_upper - d_lower)

        return DistanceEstimate(
            distance=float(distance),
            method=EstimateMethod.INTERPOLATED,
            confidence=Confidence.HIGH,
        )

    def _extrapolate_far(self, rssi: float, distances: np.ndarray, rssis: np.ndarray) -> float:
        weakest_rssi = float(rssis.min())
        weakest_distance = float(distances[np.flatnonzero(rssis == weakest_rssi)[0]])

        # slope of the two farthest points
        d_near, d_far = float(distances[-2]), float(distances[-1])
        r_near, r_far = float(rssis[-2]), float(rssis[-1])
        if r_far == r_near:
            distance = weakest_distance
        else:
            slope = (d_far - d_near) / (r_far - r_near)
            distance = d_far + slope * (rssi - r_far)

        if not math.isfinite(distance):
            distance = self.max_distance
        floor = min(weakest_distance, self.max_distance)
        return float(min(max(distance, floor), self.max_distance))
