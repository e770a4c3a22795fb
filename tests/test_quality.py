from datetime import datetime, timedelta

from ble_proximity_server.models import QualityRating
from ble_proximity_server.quality import CalibrationQualityEvaluator


def _evaluator(calibration_store, data_store, config):
    return CalibrationQualityEvaluator(calibration_store, data_store, config)


def _add(store, pairs, samples=1, gateway="GW1"):
    for d, r in pairs:
        for i in range(samples):
            store.add_point("B1", gateway, d, r - i * 0.1)


def test_none_without_points(calibration_store, site, config):
    quality = _evaluator(calibration_store, site, config).evaluate("B1", "GW1")
    assert quality.rating is QualityRating.NONE
    assert quality.score == 0


def test_none_only_when_empty(calibration_store, site, config):
    _add(calibration_store, [(1.0, -55)])
    quality = _evaluator(calibration_store, site, config).evaluate("B1", "GW1")
    assert quality.rating is not QualityRating.NONE
    assert quality.rating is QualityRating.POOR


def test_good_needs_points_bracketing_and_samples(calibration_store, site, config):
    _add(calibration_store, [(1.0, -55), (3.0, -67), (5.0, -74), (8.0, -80)], samples=3)
    quality = _evaluator(calibration_store, site, config).evaluate("B1", "GW1")
    assert quality.rating is QualityRating.GOOD
    assert quality.reasons == []


def test_single_sample_points_cap_rating_at_fair(calibration_store, site, config):
    _add(calibration_store, [(1.0, -55), (3.0, -67), (5.0, -74)], samples=3)
    _add(calibration_store, [(8.0, -80)], samples=1)
    quality = _evaluator(calibration_store, site, config).evaluate("B1", "GW1")
    assert quality.rating is QualityRating.FAIR
    assert any("8.0m" in r and "low confidence" in r for r in quality.reasons)


def test_range_not_bracketing_threshold_is_poor(calibration_store, site, config):
    _add(calibration_store, [(0.5, -50), (1.0, -55), (1.5, -58), (2.0, -62)], samples=3)
    quality = _evaluator(calibration_store, site, config).evaluate("B1", "GW1")
    assert quality.rating is QualityRating.POOR
    assert any("does not bracket" in r for r in quality.reasons)


def test_threshold_follows_gateway(calibration_store, site, config):
    site.update_gateway_settings("GW1", proximity_threshold=1.5)
    _add(calibration_store, [(0.5, -50), (1.0, -55), (1.5, -58), (2.0, -62)], samples=3)
    quality = _evaluator(calibration_store, site, config).evaluate("B1", "GW1")
    assert quality.rating is QualityRating.GOOD


def test_unknown_gateway_uses_default_threshold(calibration_store, data_store, config):
    _add(calibration_store, [(1.0, -55), (3.0, -67), (5.0, -74), (8.0, -80)], samples=3, gateway="GW9")
    quality = _evaluator(calibration_store, data_store, config).evaluate("B1", "GW9")
    assert quality.rating is QualityRating.GOOD
    assert any("default threshold" in r for r in quality.reasons)


def test_stale_calibration_is_reported(calibration_store, site, config):
    _add(calibration_store, [(1.0, -55), (3.0, -67), (5.0, -74), (8.0, -80)], samples=3)
    later = datetime.now() + timedelta(days=45)
    quality = _evaluator(calibration_store, site, config).evaluate("B1", "GW1", now=later)
    assert any("days old" in r for r in quality.reasons)
    assert "recalibrate" in quality.recommendations


def test_status(calibration_store, site, config):
    evaluator = _evaluator(calibration_store, site, config)
    assert evaluator.status("B1", "GW1").is_calibrated is False

    _add(calibration_store, [(1.0, -55), (4.0, -71)])
    status = evaluator.status("B1", "GW1")
    assert status.is_calibrated is True
    assert status.point_count == 2
    assert status.distance_range == (1.0, 4.0)
    assert status.rssi_range == (-71.0, -55.0)


def test_recommended_distances():
    distances = CalibrationQualityEvaluator.recommended_distances()
    assert distances[0] == 0.5 and distances[-1] == 5.0
    assert len(distances) == 10
