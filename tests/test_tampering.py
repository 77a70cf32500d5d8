from datetime import datetime, timedelta, timezone

from provenance.config import DetectionConfig
from provenance.data_models import MileageObservation
from provenance.tampering import (
    days_between,
    evaluate_manual_entry,
    evaluate_owner_update,
    evaluate_telemetry,
    highest_manual_observation,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _obs(mileage: int, days: float = 0, source: str = "manual", seq: int = 1) -> MileageObservation:
    return MileageObservation(
        id=f"obs-{seq}",
        vehicle_id="v1",
        mileage=mileage,
        observed_at=T0 + timedelta(days=days),
        source=source,
        sequence=seq,
    )


def test_manual_entry_without_history_passes():
    assert evaluate_manual_entry(10_000, []) is None


def test_manual_entry_skipped_when_mileage_absent():
    assert evaluate_manual_entry(None, [_obs(50_000)]) is None


def test_manual_entry_compares_against_maximum_not_latest():
    # Newest-first, as the ledger returns it: latest is lower than an older peak.
    prior = [_obs(30_000, days=10, seq=3), _obs(50_000, days=5, seq=2), _obs(20_000, days=0, seq=1)]
    finding = evaluate_manual_entry(40_000, prior)
    assert finding is not None
    assert finding.kind == "rollback"
    assert finding.severity == "critical"
    assert finding.reference_mileage == 50_000
    assert finding.reference_observation_id == "obs-2"
    assert finding.rejects_write is True


def test_manual_entry_equal_mileage_is_not_rollback():
    assert evaluate_manual_entry(50_000, [_obs(50_000)]) is None


def test_manual_entry_ignores_telemetry_observations():
    prior = [_obs(90_000, source="iot", seq=2), _obs(10_000, seq=1)]
    assert evaluate_manual_entry(20_000, prior) is None


def test_highest_manual_observation():
    prior = [_obs(1, seq=1), _obs(7, seq=2), _obs(99, source="iot", seq=3)]
    assert highest_manual_observation(prior).mileage == 7
    assert highest_manual_observation([]) is None


def test_telemetry_first_reading_has_no_findings():
    assert evaluate_telemetry(100, None, T0) == []


def test_telemetry_rollback_is_flagged_not_rejected():
    last = _obs(1_200, source="iot")
    findings = evaluate_telemetry(1_000, last, T0 + timedelta(hours=1))
    assert [f.kind for f in findings] == ["rollback"]
    assert findings[0].severity == "critical"
    assert findings[0].rejects_write is False
    assert "IoT detected mileage rollback" in findings[0].description


def test_telemetry_high_rate():
    last = _obs(10_000, source="iot")
    findings = evaluate_telemetry(12_500, last, T0 + timedelta(days=2))
    assert [f.kind for f in findings] == ["high-rate"]
    assert findings[0].severity == "high"
    assert findings[0].daily_rate == 1_250


def test_telemetry_rate_at_threshold_is_not_flagged():
    last = _obs(10_000, source="iot")
    assert evaluate_telemetry(11_000, last, T0 + timedelta(days=1)) == []


def test_telemetry_rate_check_skipped_without_elapsed_time():
    last = _obs(10_000, source="iot")
    assert evaluate_telemetry(90_000, last, T0) == []


def test_telemetry_threshold_is_configurable():
    last = _obs(10_000, source="iot")
    config = DetectionConfig(high_rate_km_per_day=100.0)
    findings = evaluate_telemetry(10_500, last, T0 + timedelta(days=1), config)
    assert [f.kind for f in findings] == ["high-rate"]


def test_owner_update_rollback_is_high_severity():
    finding = evaluate_owner_update(40_000, 45_000)
    assert finding is not None
    assert finding.severity == "high"
    assert evaluate_owner_update(45_000, 45_000) is None
    assert evaluate_owner_update(None, 45_000) is None


def test_days_between():
    assert days_between(T0, T0 + timedelta(hours=36)) == 1.5
