import math

import pytest

from ble_proximity_server.errors import InvalidInputError, NotFoundError, PersistenceError
from ble_proximity_server.models import (
    BeaconSighting,
    DecisionOutcome,
    DeliveryResult,
    DistanceReport,
    EstimateMethod,
)
from ble_proximity_server.pipeline import ProximityPipeline


def test_within_threshold_alerts_and_vibrates(pipeline, site, transport):
    result = pipeline.process(DistanceReport("B1", "GW1", distance=3.0))

    assert result.outcome is DecisionOutcome.ALERTED
    assert result.is_alert
    assert result.vibration_sent
    assert result.danger_level == "warning"

    topic, payload, timeout = transport.published[0]
    assert topic == "safety/gateway/GW1/command"
    assert payload["msg"] == "ring" and payload["mac"] == "AABBCCDDEE01"
    assert timeout == pytest.approx(2.0)

    alerts = site.list_alerts()
    assert len(alerts) == 1
    assert alerts[0].alert_type == "auto_vibration"
    assert alerts[0].distance == 3.0
    logs = site.list_logs()
    assert len(logs) == 1
    assert logs[0].severity == "info"
    assert logs[0].source_id == "B1"


def test_threshold_is_inclusive(pipeline, site):
    assert pipeline.process(DistanceReport("B1", "GW1", distance=5.0)).is_alert
    result = pipeline.process(DistanceReport("B1", "GW1", distance=5.01))
    assert result.outcome is DecisionOutcome.OUT_OF_RANGE
    assert len(site.list_alerts()) == 1


def test_auto_vibration_disabled_never_alerts(pipeline, site, transport):
    for d in (0.2, 1.0, 4.9):
        result = pipeline.process(DistanceReport("B1", "GW2", distance=d))
        assert result.outcome is DecisionOutcome.AUTO_VIBRATION_DISABLED
        assert result.distance == d
    assert site.list_alerts() == []
    assert site.list_logs() == []
    assert transport.published == []


def test_unknown_gateway_raises(pipeline, site):
    with pytest.raises(NotFoundError):
        pipeline.process(DistanceReport("B1", "NOPE", distance=1.0))


def test_unknown_beacon_raises_only_when_in_range(pipeline, site):
    result = pipeline.process(DistanceReport("B9", "GW1", distance=9.0))
    assert result.outcome is DecisionOutcome.OUT_OF_RANGE
    with pytest.raises(NotFoundError):
        pipeline.process(DistanceReport("B9", "GW1", distance=1.0))


def test_rssi_sighting_uses_calibration(pipeline, site, calibration_store):
    for d, r in [(1.0, -55), (3.0, -67), (5.0, -74), (8.0, -80)]:
        calibration_store.add_point("B1", "GW1", d, r)

    near = pipeline.process(BeaconSighting("B1", "GW1", rssi=-67.0))
    assert near.method is EstimateMethod.CALIBRATED
    assert near.distance == 3.0
    assert near.is_alert

    far = pipeline.process(BeaconSighting("B1", "GW1", rssi=-80.0))
    assert far.distance == 8.0
    assert far.outcome is DecisionOutcome.OUT_OF_RANGE


def test_rssi_sighting_without_calibration_falls_back(pipeline, site):
    result = pipeline.process(BeaconSighting("B1", "GW1", rssi=-59.0))
    assert result.method is EstimateMethod.FALLBACK
    assert result.distance == pytest.approx(1.0)
    assert result.is_alert


def test_repeated_reports_alert_each_time(pipeline, site, transport):
    for _ in range(3):
        assert pipeline.process(DistanceReport("B1", "GW1", distance=1.0)).is_alert
    assert len(site.list_alerts()) == 3
    assert len(transport.published) == 3


def test_cooldown_suppresses_repeats(config, site, calibration_store, estimator, dispatcher):
    config.set_alert_cooldown(60)
    pipeline = ProximityPipeline(config, site, calibration_store, estimator, dispatcher)
    assert pipeline.process(DistanceReport("B1", "GW1", distance=1.0)).is_alert
    assert pipeline.process(DistanceReport("B1", "GW1", distance=1.0)).outcome is DecisionOutcome.COOLDOWN
    assert len(site.list_alerts()) == 1


def test_disconnected_transport_still_records_alert(pipeline, site, transport):
    transport.connected = False
    result = pipeline.process(DistanceReport("B1", "GW1", distance=1.0))
    assert result.is_alert
    assert result.delivery is DeliveryResult.NOT_CONNECTED
    assert not result.vibration_sent
    assert len(site.list_alerts()) == 1


def test_persistence_failure_degrades_result(pipeline, site, monkeypatch):
    def broken(entry):
        raise PersistenceError("read-only filesystem")

    monkeypatch.setattr(site, "add_log", broken)
    result = pipeline.process(DistanceReport("B1", "GW1", distance=1.0))
    assert result.is_alert
    assert result.vibration_sent
    assert result.degraded
    assert "read-only filesystem" in result.errors
    assert len(site.list_alerts()) == 1


def test_process_message_validates(pipeline, site):
    assert pipeline.process_message({"beaconId": "B1", "gatewayId": "GW1", "distance": 2}).is_alert
    with pytest.raises(InvalidInputError):
        pipeline.process_message({"beaconId": "B1", "gatewayId": "GW1"})


def test_latest_rssi(pipeline, site):
    pipeline.process(BeaconSighting("B1", "GW1", rssi=-70.0))
    assert pipeline.latest_rssi("B1", "GW1") == -70.0
    assert pipeline.latest_rssi("B1", "GW2") is None

    pipeline.live_rssi_ttl = -1
    assert pipeline.latest_rssi("B1", "GW1") is None


@pytest.mark.parametrize("distance", [math.nan, math.inf, -3.0, 0.0])
def test_invalid_distance_report_is_rejected(pipeline, site, transport, distance):
    with pytest.raises(InvalidInputError):
        pipeline.process(DistanceReport("B1", "GW1", distance=distance))
    assert site.list_alerts() == []
    assert transport.published == []


def test_invalid_sighting_rssi_is_rejected():
    with pytest.raises(InvalidInputError):
        BeaconSighting("B1", "GW1", rssi=math.nan)
    with pytest.raises(InvalidInputError):
        DistanceReport("B1", "GW1", distance=1.0, rssi=math.inf)


def test_undelivered_vibration_does_not_start_cooldown(config, site, calibration_store, estimator, dispatcher, transport):
    config.set_alert_cooldown(60)
    pipeline = ProximityPipeline(config, site, calibration_store, estimator, dispatcher)
    transport.connected = False
    first = pipeline.process(DistanceReport("B1", "GW1", distance=1.0))
    assert first.delivery is DeliveryResult.NOT_CONNECTED

    transport.connected = True
    second = pipeline.process(DistanceReport("B1", "GW1", distance=1.0))
    assert second.is_alert
    assert second.vibration_sent
    assert pipeline.process(DistanceReport("B1", "GW1", distance=1.0)).outcome is DecisionOutcome.COOLDOWN


def test_expired_rssi_entries_are_pruned_on_write(pipeline, site):
    pipeline.process(BeaconSighting("B1", "GW2", rssi=-70.0))
    pipeline.live_rssi_ttl = -1
    pipeline.process(BeaconSighting("B1", "GW1", rssi=-65.0))
    assert ("B1", "GW2") not in pipeline._latest_rssi
