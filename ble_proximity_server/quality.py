from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from .calibration_store import CalibrationStore
from .config_manager import ConfigManager
from .data_store import DataStore
from .models import CalibrationQuality, CalibrationSet, CalibrationStatus, QualityRating


logger = logging.getLogger(__name__)

GOOD_MIN_POINTS = 4
STALE_DAYS = 30

RECOMMENDED_DISTANCES = [0.5, 1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0, 4.5, 5.0]


class CalibrationQualityEvaluator:
    """Rates how far a pair's calibration can be trusted around the gateway threshold."""

    def __init__(
        self,
        calibration_store: CalibrationStore,
        data_store: DataStore,
        config_manager: Optional[ConfigManager] = None,
    ):
        self.calibration_store = calibration_store
        self.data_store = data_store
        proximity = (config_manager or ConfigManager()).get_proximity_config()
        self.default_threshold = float(proximity.get("default_threshold", 5.0))

    @staticmethod
    def recommended_distances() -> List[float]:
        return list(RECOMMENDED_DISTANCES)

    def _threshold(self, gateway_id: str, reasons: List[str]) -> float:
        try:
            gateway = self.data_store.get_gateway(gateway_id)
        except Exception as e:
            logger.warning("Gateway %s lookup failed during quality evaluation: %s", gateway_id, e)
            gateway = None
        if gateway is None:
            reasons.append(
                f"gateway {gateway_id} unknown, judged against default threshold {self.default_threshold}m"
            )
            return self.default_threshold
        return gateway.proximity_threshold

    def evaluate(self, beacon_id: str, gateway_id: str, now: Optional[datetime] = None) -> CalibrationQuality:
        """Never raises; a missing or empty set rates ``none``."""
        calibration_set = self.calibration_store.get_set(beacon_id, gateway_id)
        if calibration_set is None or calibration_set.is_empty:
            return CalibrationQuality(
                rating=QualityRating.NONE,
                reasons=["no calibration data"],
                recommendations=["measure RSSI at 1m, 2m, 3m, 4m and 5m"],
                score=0,
            )
        reasons: List[str] = []
        threshold = self._threshold(gateway_id, reasons)
        return self._rate(calibration_set, threshold, reasons, now or datetime.now())

    def _rate(
        self,
        calibration_set: CalibrationSet,
        threshold: float,
        reasons: List[str],
        now: datetime,
    ) -> CalibrationQuality:
        recommendations: List[str] = []
        points = calibration_set.points
        count = len(points)
        distances = [p.distance for p in points]
        min_d, max_d = min(distances), max(distances)
        brackets = min_d <= threshold <= max_d
        low_confidence = [p for p in points if p.sample_count == 1]

        if count < GOOD_MIN_POINTS:
            reasons.append(f"only {count} calibration point(s), {GOOD_MIN_POINTS} needed")
            recommendations.append("measure at more distances")
        if not brackets:
            reasons.append(
                f"calibrated range {min_d}m-{max_d}m does not bracket threshold {threshold}m"
            )
            recommendations.append(f"measure below and above {threshold}m")
        for p in low_confidence:
            reasons.append(f"point at {p.distance}m has a single sample (low confidence)")
        if low_confidence:
            recommendations.append("repeat the single-sample measurements")

        if count >= GOOD_MIN_POINTS and brackets and not low_confidence:
            rating = QualityRating.GOOD
        elif count >= 2 and brackets:
            rating = QualityRating.FAIR
        else:
            rating = QualityRating.POOR

        # 0-100 score: points, range, samples, freshness
        score = 30 if count >= 5 else 20 if count >= 3 else 10
        if min_d <= 1.0 and max_d >= 5.0:
            score += 30
        elif min_d <= 2.0 and max_d >= 4.0:
            score += 20
        else:
            score += 10
        avg_samples = sum(p.sample_count for p in points) / count
        score += 20 if avg_samples >= 10 else 15 if avg_samples >= 5 else 10
        age_days = (now - calibration_set.updated_at).total_seconds() / 86400
        if age_days <= 7:
            score += 20
        elif age_days <= STALE_DAYS:
            score += 15
        else:
            score += 5
            reasons.append(f"calibration is {int(age_days)} days old")
            recommendations.append("recalibrate")

        return CalibrationQuality(
            rating=rating, reasons=reasons, recommendations=recommendations, score=score
        )

    def status(self, beacon_id: str, gateway_id: str) -> CalibrationStatus:
        calibration_set = self.calibration_store.get_set(beacon_id, gateway_id)
        if calibration_set is None or calibration_set.is_empty:
            return CalibrationStatus(is_calibrated=False, point_count=0)
        distances = calibration_set.distances
        rssis = calibration_set.rssis
        return CalibrationStatus(
            is_calibrated=True,
            point_count=len(calibration_set),
            distance_range=(min(distances), max(distances)),
            rssi_range=(min(rssis), max(rssis)),
            last_updated=calibration_set.updated_at,
        )
