from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from provenance.config import DetectionConfig
from provenance.data_models import Event, Incident, Ownership, RiskLevel, VehicleStatus


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: RiskLevel
    status: VehicleStatus
    rollback_incidents: int = 0
    high_accidents: int = 0
    recent_owners: int = 0
    factors: list[str] = field(default_factory=list)


def clamp_score(score: int, config: DetectionConfig | None = None) -> int:
    cfg = config or DetectionConfig()
    return max(0, min(int(score), cfg.max_risk_score))


def risk_level(score: int, config: DetectionConfig | None = None) -> RiskLevel:
    cfg = config or DetectionConfig()
    if score <= cfg.low_risk_ceiling:
        return "low"
    if score <= cfg.medium_risk_ceiling:
        return "medium"
    return "high"


def vehicle_status(score: int, config: DetectionConfig | None = None) -> VehicleStatus:
    cfg = config or DetectionConfig()
    return "blocked" if score >= cfg.block_threshold else "active"


def years_before(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        # 29 February
        return moment.replace(year=moment.year - years, day=28)


def count_recent_owners(
    ownerships: Iterable[Ownership], now: datetime, config: DetectionConfig | None = None,
) -> int:
    cfg = config or DetectionConfig()
    cutoff = years_before(now, cfg.ownership_churn_window_years)
    return len({o.id for o in ownerships if o.started_at >= cutoff})


def assess_risk(
    *,
    incidents: Iterable[Incident],
    events: Iterable[Event],
    ownerships: Iterable[Ownership],
    now: datetime,
    config: DetectionConfig | None = None,
) -> RiskAssessment:
    """Full recompute of a vehicle's risk from the facts known right now.

    Additive and capped: a fixed penalty per rollback incident (counted,
    regardless of rollback size), per high-severity accident, and a flat
    penalty for ownership churn.
    """
    cfg = config or DetectionConfig()
    rollbacks = sum(1 for i in incidents if i.kind == "rollback")
    accidents = sum(1 for e in events if e.event_type == "accident" and e.severity == "high")
    owners = count_recent_owners(ownerships, now, cfg)

    raw = rollbacks * cfg.rollback_penalty + accidents * cfg.high_accident_penalty
    factors: list[str] = []
    if rollbacks:
        factors.append(f"{rollbacks} mileage rollback incident(s)")
    if accidents:
        factors.append(f"{accidents} high-severity accident(s)")
    if owners > cfg.ownership_churn_max_owners:
        raw += cfg.ownership_churn_penalty
        factors.append(f"{owners} owners in the last {cfg.ownership_churn_window_years} years")

    score = clamp_score(raw, cfg)
    return RiskAssessment(
        score=score,
        level=risk_level(score, cfg),
        status=vehicle_status(score, cfg),
        rollback_incidents=rollbacks,
        high_accidents=accidents,
        recent_owners=owners,
        factors=factors,
    )


def purchase_recommendations(
    score: int,
    incidents: Iterable[Incident],
    events: Iterable[Event],
    config: DetectionConfig | None = None,
) -> list[dict[str, Any]]:
    cfg = config or DetectionConfig()
    has_rollback = any(i.kind == "rollback" for i in incidents)
    has_accident = any(e.event_type == "accident" and e.severity == "high" for e in events)

    if score >= cfg.block_threshold or has_rollback:
        return [{"severity": "critical", "message": "DO NOT BUY: Mileage tampering or critical risk detected"}]
    if score >= cfg.review_threshold or has_accident:
        return [{"severity": "high", "message": "High risk. Professional inspection required"}]
    if score >= cfg.low_risk_ceiling:
        return [{"severity": "medium", "message": "Moderate risk. Check history carefully"}]
    return [{"severity": "low", "message": "No major issues found. Vehicle appears clean"}]
