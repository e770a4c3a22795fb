import math

import pytest

from ble_proximity_server.errors import InvalidInputError
from ble_proximity_server.estimator import danger_level
from ble_proximity_server.models import CalibrationPoint, CalibrationSet, Confidence, EstimateMethod


def _set(*pairs):
    return CalibrationSet(
        beacon_id="B1",
        gateway_id="GW1",
        points=tuple(CalibrationPoint(distance=d, rssi=r, sample_count=3) for d, r in pairs),
    )


MONOTONIC = _set((1.0, -55.0), (2.0, -62.0), (3.0, -67.0), (5.0, -74.0), (8.0, -80.0))


def test_no_points_uses_path_loss_model(estimator):
    est = estimator.estimate(-59.0)
    assert est.method is EstimateMethod.FALLBACK
    assert est.confidence is Confidence.LOW
    assert est.distance == pytest.approx(1.0)

    # 20 dB weaker at n=2 -> ten times farther
    assert estimator.estimate_distance(-79.0) == pytest.approx(10.0)


def test_path_loss_is_clamped(estimator):
    assert estimator.estimate_distance(0.0) == pytest.approx(estimator.min_distance)
    assert estimator.estimate_distance(-400.0) == pytest.approx(estimator.max_distance)


def test_beacon_tx_power_overrides_model(estimator):
    assert estimator.estimate_distance(-70.0, tx_power=-70.0) == pytest.approx(1.0)


def test_single_point_anchors_model(estimator):
    est = estimator.estimate(-65.0, _set((2.0, -65.0)))
    assert est.method is EstimateMethod.SINGLE_POINT
    assert est.confidence is Confidence.MEDIUM
    assert est.distance == pytest.approx(2.0)


@pytest.mark.parametrize("distance,rssi", [(1.0, -55.0), (3.0, -67.0), (8.0, -80.0)])
def test_exact_rssi_returns_point_distance(estimator, distance, rssi):
    est = estimator.estimate(rssi, MONOTONIC)
    assert est.method is EstimateMethod.CALIBRATED
    assert est.distance == distance


def test_exact_match_prefers_nearest_on_duplicate_rssi(estimator):
    est = estimator.estimate(-60.0, _set((4.0, -60.0), (1.5, -60.0), (6.0, -70.0)))
    assert est.distance == 1.5


def test_interpolates_between_neighbours(estimator):
    est = estimator.estimate(-70.5, MONOTONIC)
    assert est.method is EstimateMethod.INTERPOLATED
    assert est.confidence is Confidence.HIGH
    assert est.distance == pytest.approx(4.0)


def test_estimates_are_monotonic(estimator):
    readings = [-50.0 - 0.5 * i for i in range(80)]
    distances = [estimator.estimate_distance(r, MONOTONIC) for r in readings]
    assert all(a <= b for a, b in zip(distances, distances[1:]))


def test_stronger_than_all_points_is_never_closer_than_calibrated(estimator):
    est = estimator.estimate(-40.0, MONOTONIC)
    assert est.method is EstimateMethod.EXTRAPOLATED
    assert est.distance == 1.0


def test_weaker_than_all_points_extrapolates_outward(estimator):
    est = estimator.estimate(-86.0, MONOTONIC)
    assert est.method is EstimateMethod.EXTRAPOLATED
    # slope of the two farthest points: 3m per 6dB
    assert est.distance == pytest.approx(11.0)


def test_far_extrapolation_capped(estimator):
    assert estimator.estimate_distance(-1000.0, MONOTONIC) == estimator.max_distance


def test_point_order_does_not_matter(estimator):
    shuffled = _set((5.0, -74.0), (1.0, -55.0), (8.0, -80.0), (3.0, -67.0), (2.0, -62.0))
    for rssi in (-58.0, -66.0, -77.0):
        assert estimator.estimate_distance(rssi, shuffled) == pytest.approx(
            estimator.estimate_distance(rssi, MONOTONIC)
        )


@pytest.mark.parametrize("bad", [math.nan, math.inf, None])
def test_rejects_non_finite_rssi(estimator, bad):
    with pytest.raises(InvalidInputError):
        estimator.estimate(bad, MONOTONIC)


def test_danger_levels():
    assert danger_level(1.5) == "danger"
    assert danger_level(2.0) == "danger"
    assert danger_level(4.0) == "warning"
    assert danger_level(5.0) == "warning"
    assert danger_level(5.1) == "safe"
