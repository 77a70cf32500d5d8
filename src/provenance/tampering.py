"""
Odometer tampering policies.

Both policies compare a new mileage value against a reference value taken
from the vehicle's ledger, never against ``current_mileage`` alone:

* manual entries are checked against the highest mileage of every prior
  manual observation and a rollback rejects the write;
* telemetry is checked against the single most recent prior telemetry
  observation, and findings are flagged without rejecting the reading.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from provenance.config import DetectionConfig
from provenance.data_models import IncidentKind, MileageObservation, Severity

SECONDS_PER_DAY = 86_400.0


@dataclass(frozen=True)
class TamperingFinding:
    kind: IncidentKind
    severity: Severity
    description: str
    new_mileage: int
    reference_mileage: int
    reference_observation_id: str | None = None
    daily_rate: float | None = None
    rejects_write: bool = False


def days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / SECONDS_PER_DAY


def highest_manual_observation(observations: Iterable[MileageObservation]) -> MileageObservation | None:
    best: MileageObservation | None = None
    for obs in observations:
        if obs.source != "manual" or obs.mileage is None:
            continue
        if best is None or obs.mileage > best.mileage:
            best = obs
    return best


def evaluate_manual_entry(
    new_mileage: int | None,
    prior: Iterable[MileageObservation],
) -> TamperingFinding | None:
    """Strict rollback check for a user-submitted mileage."""
    if new_mileage is None:
        return None
    reference = highest_manual_observation(prior)
    if reference is None or new_mileage >= reference.mileage:
        return None
    return TamperingFinding(
        kind="rollback",
        severity="critical",
        description=f"Mileage rollback detected: {new_mileage} km < {reference.mileage} km",
        new_mileage=new_mileage,
        reference_mileage=reference.mileage,
        reference_observation_id=reference.id,
        rejects_write=True,
    )


def evaluate_telemetry(
    new_mileage: int | None,
    last_telemetry: MileageObservation | None,
    observed_at: datetime,
    config: DetectionConfig | None = None,
) -> list[TamperingFinding]:
    """Rollback and rate-of-change checks for a device reading.

    The two checks are independent. A non-positive elapsed time skips the
    rate check since no daily rate can be derived from it.
    """
    cfg = config or DetectionConfig()
    if new_mileage is None or last_telemetry is None:
        return []

    findings: list[TamperingFinding] = []
    previous = last_telemetry.mileage

    if new_mileage < previous:
        findings.append(
            TamperingFinding(
                kind="rollback",
                severity="critical",
                description=(
                    f"CRITICAL: IoT detected mileage rollback! Previous: {previous} km -> "
                    f"Current: {new_mileage} km (delta: {previous - new_mileage} km)"
                ),
                new_mileage=new_mileage,
                reference_mileage=previous,
                reference_observation_id=last_telemetry.id,
            )
        )

    elapsed = days_between(last_telemetry.observed_at, observed_at)
    if elapsed > 0:
        rate = (new_mileage - previous) / elapsed
        if rate > cfg.high_rate_km_per_day:
            findings.append(
                TamperingFinding(
                    kind="high-rate",
                    severity="high",
                    description=(
                        f"Suspicious high mileage increase: {new_mileage - previous} km in "
                        f"{elapsed:.1f} days ({round(rate)} km/day)"
                    ),
                    new_mileage=new_mileage,
                    reference_mileage=previous,
                    reference_observation_id=last_telemetry.id,
                    daily_rate=rate,
                )
            )
    return findings


def evaluate_owner_update(new_mileage: int | None, current_mileage: int) -> TamperingFinding | None:
    """An owner editing the vehicle's mileage below its high-watermark."""
    if new_mileage is None or new_mileage >= current_mileage:
        return None
    return TamperingFinding(
        kind="rollback",
        severity="high",
        description=f"Mileage rollback detected: {current_mileage} -> {new_mileage} km",
        new_mileage=new_mileage,
        reference_mileage=current_mileage,
    )
