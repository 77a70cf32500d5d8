from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from provenance.config import DeviceDefaults


Source = Literal["manual", "iot"]
Severity = Literal["info", "low", "medium", "high", "critical"]
IncidentKind = Literal[
    "rollback",
    "high-rate",
    "statistical-outlier",
    "maintenance_battery",
    "maintenance_leak",
]
RiskLevel = Literal["low", "medium", "high"]
VehicleStatus = Literal["active", "blocked"]
TelemetryEventType = Literal["periodic", "engine_start", "engine_stop"]

TAMPERING_KINDS: tuple[str, ...] = ("rollback", "high-rate")
MAINTENANCE_KINDS: tuple[str, ...] = ("maintenance_battery", "maintenance_leak")


def to_scaled(value: float) -> int:
    """Store a decimal threshold as an integer number of hundredths."""
    return int(round(value * 100))


def from_scaled(value: int) -> float:
    return value / 100


@dataclass
class Vehicle:
    id: str
    vin: str
    make: str
    model: str
    year: int
    color: str | None = None
    engine_type: str | None = None
    transmission: str | None = None
    fuel_type: str | None = None
    description: str | None = None
    mileage_unit: str = "km"
    current_mileage: int = 0
    risk_score: int = 0
    risk_level: RiskLevel = "low"
    status: VehicleStatus = "active"
    is_verified: bool = False
    verified_at: datetime | None = None
    verified_by: str | None = None
    verification_notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class User:
    id: str
    email: str
    display_name: str | None = None


@dataclass(frozen=True)
class Ownership:
    id: str
    vehicle_id: str
    user_id: str
    started_at: datetime
    ended_at: datetime | None = None
    is_current: bool = True
    started_mileage: int | None = None


@dataclass(frozen=True)
class MileageObservation:
    """One odometer reading in a vehicle's ledger.

    ``sequence`` is assigned by the ledger store on append and breaks ties
    between observations sharing the same ``observed_at``.
    """

    id: str
    vehicle_id: str
    mileage: int
    observed_at: datetime
    source: Source
    verified: bool = False
    context: str | None = None
    event_id: str | None = None
    telemetry_id: str | None = None
    sequence: int = 0


@dataclass(frozen=True)
class Incident:
    id: str
    vehicle_id: str
    kind: IncidentKind
    severity: Severity
    description: str
    observed_at: datetime
    detected_at: datetime
    iot_verified: bool = False
    mileage: int | None = None
    previous_mileage: int | None = None
    observation_id: str | None = None

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "severity": self.severity,
            "description": self.description,
            "mileage": self.mileage,
            "previous_mileage": self.previous_mileage,
            "iot_verified": self.iot_verified,
            "observed_at": self.observed_at.isoformat(),
            "detected_at": self.detected_at.isoformat(),
            "observation_id": self.observation_id,
        }


@dataclass
class Event:
    id: str
    vehicle_id: str
    event_type: str
    event_date: datetime
    severity: Severity | None = None
    mileage: int | None = None
    description: str | None = None
    location: str | None = None
    cost: float | None = None
    document_url: str | None = None
    reported_by: str | None = None
    verified_by_iot: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class TelemetryReading:
    id: str
    vehicle_id: str
    vin: str
    mileage: int
    recorded_at: datetime
    engine_running: bool = False
    event_type: TelemetryEventType = "periodic"
    fuel_level: float | None = None
    humidity: float | None = None
    battery_voltage: float | None = None


@dataclass
class DeviceConfig:
    """Per-vehicle device settings; thresholds are held in hundredths."""

    vehicle_id: str
    target_vin: str
    active_interval_ms: int
    idle_interval_ms: int
    battery_low_threshold_x100: int
    fuel_low_threshold_x100: int
    humidity_high_threshold_x100: int
    smoothing_alpha_fuel_x100: int
    smoothing_alpha_battery_x100: int
    enabled: bool = True
    last_sync: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def with_defaults(
        cls, vehicle_id: str, vin: str, now: datetime, defaults: DeviceDefaults | None = None,
    ) -> DeviceConfig:
        d = defaults or DeviceDefaults()
        return cls(
            vehicle_id=vehicle_id,
            target_vin=vin,
            active_interval_ms=d.active_interval_ms,
            idle_interval_ms=d.idle_interval_ms,
            battery_low_threshold_x100=to_scaled(d.battery_low_threshold),
            fuel_low_threshold_x100=to_scaled(d.fuel_low_threshold),
            humidity_high_threshold_x100=to_scaled(d.humidity_high_threshold),
            smoothing_alpha_fuel_x100=to_scaled(d.smoothing_alpha_fuel),
            smoothing_alpha_battery_x100=to_scaled(d.smoothing_alpha_battery),
            enabled=d.enabled,
            created_at=now,
            updated_at=now,
        )

    @property
    def battery_low_threshold(self) -> float:
        return from_scaled(self.battery_low_threshold_x100)

    @property
    def fuel_low_threshold(self) -> float:
        return from_scaled(self.fuel_low_threshold_x100)

    @property
    def humidity_high_threshold(self) -> float:
        return from_scaled(self.humidity_high_threshold_x100)

    def to_public(self) -> dict[str, Any]:
        return {
            "target_vin": self.target_vin,
            "active_interval": self.active_interval_ms,
            "idle_interval": self.idle_interval_ms,
            "battery_low_threshold": self.battery_low_threshold,
            "fuel_low_threshold": self.fuel_low_threshold,
            "humidity_high_threshold": self.humidity_high_threshold,
            "smoothing": {
                "fuel": from_scaled(self.smoothing_alpha_fuel_x100),
                "battery": from_scaled(self.smoothing_alpha_battery_x100),
            },
            "enabled": self.enabled,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
        }
