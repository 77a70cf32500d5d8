from datetime import datetime, timedelta, timezone

import pytest

from provenance.config import DetectionConfig
from provenance.data_models import Event, Incident, Ownership
from provenance.risk import (
    assess_risk,
    clamp_score,
    count_recent_owners,
    purchase_recommendations,
    risk_level,
    vehicle_status,
    years_before,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _incident(kind: str = "rollback", n: int = 0) -> Incident:
    return Incident(
        id=f"i{n}",
        vehicle_id="v1",
        kind=kind,
        severity="critical",
        description="",
        observed_at=NOW,
        detected_at=NOW,
    )


def _accident(severity: str = "high", n: int = 0) -> Event:
    return Event(id=f"e{n}", vehicle_id="v1", event_type="accident", event_date=NOW, severity=severity)


def _owner(years_ago: float, n: int) -> Ownership:
    return Ownership(id=f"o{n}", vehicle_id="v1", user_id=f"u{n}", started_at=NOW - timedelta(days=365 * years_ago))


@pytest.mark.parametrize(
    "score,level",
    [(0, "low"), (30, "low"), (31, "medium"), (70, "medium"), (71, "high"), (100, "high")],
)
def test_risk_level_bounds(score, level):
    assert risk_level(score) == level


def test_status_blocks_at_threshold():
    assert vehicle_status(89) == "active"
    assert vehicle_status(90) == "blocked"


def test_clamp_score():
    assert clamp_score(120) == 100
    assert clamp_score(-5) == 0


def test_rollbacks_count_not_magnitude():
    result = assess_risk(incidents=[_incident(n=1), _incident(n=2)], events=[], ownerships=[], now=NOW)
    assert result.score == 80
    assert result.level == "high"
    assert result.status == "active"


def test_score_is_capped():
    incidents = [_incident(n=i) for i in range(3)]
    result = assess_risk(incidents=incidents, events=[], ownerships=[], now=NOW)
    assert result.score == 100
    assert result.status == "blocked"


def test_non_rollback_incidents_do_not_score():
    incidents = [_incident("high-rate", 1), _incident("statistical-outlier", 2), _incident("maintenance_leak", 3)]
    result = assess_risk(incidents=incidents, events=[], ownerships=[], now=NOW)
    assert result.score == 0
    assert result.factors == []


def test_only_high_severity_accidents_score():
    events = [_accident("high", 1), _accident("medium", 2)]
    result = assess_risk(incidents=[], events=events, ownerships=[], now=NOW)
    assert result.score == 20
    assert result.high_accidents == 1


def test_ownership_churn_needs_more_than_four_recent_owners():
    four = [_owner(0.5 * i, i) for i in range(4)]
    assert assess_risk(incidents=[], events=[], ownerships=four, now=NOW).score == 0

    five = four + [_owner(2.5, 5)]
    assert assess_risk(incidents=[], events=[], ownerships=five, now=NOW).score == 25

    old = four + [_owner(4, 6)]
    assert count_recent_owners(old, NOW) == 4


def test_thresholds_are_configurable():
    config = DetectionConfig(rollback_penalty=10)
    result = assess_risk(incidents=[_incident()], events=[], ownerships=[], now=NOW, config=config)
    assert result.score == 10


def test_years_before_leap_day():
    assert years_before(datetime(2024, 2, 29, tzinfo=timezone.utc), 3) == datetime(2021, 2, 28, tzinfo=timezone.utc)


def test_purchase_recommendations():
    assert purchase_recommendations(0, [_incident()], [])[0]["severity"] == "critical"
    assert purchase_recommendations(95, [], [])[0]["severity"] == "critical"
    assert purchase_recommendations(60, [], [])[0]["severity"] == "high"
    assert purchase_recommendations(0, [], [_accident()])[0]["severity"] == "high"
    assert purchase_recommendations(35, [], [])[0]["severity"] == "medium"
    assert purchase_recommendations(10, [], [])[0]["severity"] == "low"
