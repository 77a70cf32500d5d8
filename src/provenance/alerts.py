from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from provenance.data_models import DeviceConfig, IncidentKind, Severity, to_scaled

AlertCode = Literal["battery_low", "humidity_high", "fuel_low"]


@dataclass(frozen=True)
class DeviceAlert:
    code: AlertCode
    message: str
    severity: Severity
    # Alerts with an incident kind are also persisted as maintenance incidents.
    incident_kind: IncidentKind | None = None


def evaluate_alerts(
    config: DeviceConfig,
    *,
    battery_voltage: float | None = None,
    humidity: float | None = None,
    fuel_level: float | None = None,
) -> list[DeviceAlert]:
    """Compare one telemetry reading against the vehicle's device thresholds.

    Readings are scaled to hundredths before comparison so they line up with
    the stored thresholds exactly.
    """
    alerts: list[DeviceAlert] = []

    if battery_voltage is not None and to_scaled(battery_voltage) < config.battery_low_threshold_x100:
        alerts.append(
            DeviceAlert(
                code="battery_low",
                message=f"Low battery voltage: {battery_voltage}V",
                severity="medium",
                incident_kind="maintenance_battery",
            )
        )

    if humidity is not None and to_scaled(humidity) > config.humidity_high_threshold_x100:
        alerts.append(
            DeviceAlert(
                code="humidity_high",
                message=f"High humidity detected ({humidity}%). Possible leak.",
                severity="high",
                incident_kind="maintenance_leak",
            )
        )

    if fuel_level is not None and to_scaled(fuel_level) < config.fuel_low_threshold_x100:
        alerts.append(
            DeviceAlert(
                code="fuel_low",
                message=f"Low fuel level: {fuel_level}%",
                severity="low",
            )
        )

    return alerts
