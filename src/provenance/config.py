from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DetectionConfig:
    # Risk scoring
    rollback_penalty: int = 40
    high_accident_penalty: int = 20
    ownership_churn_penalty: int = 25
    ownership_churn_max_owners: int = 4
    ownership_churn_window_years: int = 3
    max_risk_score: int = 100
    block_threshold: int = 90
    low_risk_ceiling: int = 30
    medium_risk_ceiling: int = 70
    review_threshold: int = 60

    # Manual verification queue; priority is high above the first bound, medium above the second
    verification_high_priority: int = 70
    verification_medium_priority: int = 40

    # Tampering detection
    high_rate_km_per_day: float = 1000.0
    dedup_window_hours: int = 24

    # Statistical analysis
    z_score_threshold: float = 2.0
    z_score_critical: float = 3.0
    min_anomaly_points: int = 3
    min_forecast_points: int = 2
    min_forecast_days: int = 1
    max_forecast_days: int = 3650
    high_accuracy_r2: float = 0.9
    moderate_accuracy_r2: float = 0.7

    # Device telemetry
    device_online_window_minutes: int = 60


@dataclass(frozen=True)
class DeviceDefaults:
    active_interval_ms: int = 10_000
    idle_interval_ms: int = 1_800_000
    battery_low_threshold: float = 11.50
    fuel_low_threshold: float = 10.0
    humidity_high_threshold: float = 80.0
    smoothing_alpha_fuel: float = 0.10
    smoothing_alpha_battery: float = 0.30
    enabled: bool = True
