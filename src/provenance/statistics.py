from __future__ import annotations

import logging
from typing import Any, Iterable

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.linear_model import LinearRegression

from provenance.config import DetectionConfig
from provenance.data_models import MileageObservation
from provenance.tampering import SECONDS_PER_DAY

logger = logging.getLogger(__name__)

FRAME_COLUMNS = ["observation_id", "mileage", "observed_at", "source", "sequence"]


def observations_frame(observations: Iterable[MileageObservation]) -> pd.DataFrame:
    """Mileage-bearing observations, oldest first (ties by ledger sequence)."""
    rows = [
        {
            "observation_id": o.id,
            "mileage": o.mileage,
            "observed_at": pd.Timestamp(o.observed_at),
            "source": o.source,
            "sequence": o.sequence,
        }
        for o in observations
        if o.mileage is not None
    ]
    frame = pd.DataFrame(rows, columns=FRAME_COLUMNS)
    if frame.empty:
        return frame
    return frame.sort_values(["observed_at", "sequence"], kind="stable").reset_index(drop=True)


def _elapsed_days(frame: pd.DataFrame) -> np.ndarray:
    first = frame["observed_at"].iloc[0]
    return np.array(
        [(ts - first).total_seconds() / SECONDS_PER_DAY for ts in frame["observed_at"]],
        dtype=float,
    )


def detect_mileage_anomalies(frame: pd.DataFrame, config: DetectionConfig | None = None) -> dict[str, Any]:
    """Z-score outlier detection over successive mileage deltas.

    Uses the population standard deviation. When every delta is identical
    the deviation is zero and nothing is flagged.
    """
    cfg = config or DetectionConfig()
    if len(frame) < cfg.min_anomaly_points:
        return {
            "anomalies": [],
            "message": "Not enough data for analysis",
            "statistics": {"total_data_points": len(frame)},
        }

    mileage = frame["mileage"].to_numpy(dtype=float)
    deltas = np.diff(mileage)
    days = np.diff(_elapsed_days(frame))

    mean = float(np.mean(deltas))
    std_dev = float(np.std(deltas))
    if std_dev == 0:
        z_scores = np.zeros_like(deltas)
    else:
        z_scores = stats.zscore(deltas)

    anomalies: list[dict[str, Any]] = []
    for i, (delta, elapsed, z) in enumerate(zip(deltas, days, z_scores)):
        if abs(z) <= cfg.z_score_threshold:
            continue
        row = frame.iloc[i + 1]
        daily = delta / elapsed if elapsed > 0 else None
        if delta < 0:
            description = f"Mileage decreased by {abs(int(delta))} km"
        else:
            rate_text = f"{round(daily)} km/day" if daily is not None else "same day"
            description = f"Abnormally high mileage: {int(delta)} km in {round(elapsed)} days ({rate_text})"
        anomalies.append(
            {
                "event_index": i + 1,
                "observation_id": row["observation_id"],
                "source": row["source"],
                "date": row["observed_at"].isoformat(),
                "mileage": int(row["mileage"]),
                "mileage_difference": int(delta),
                "days_elapsed": round(float(elapsed)),
                "daily_mileage": round(daily) if daily is not None else None,
                "z_score": round(float(z), 2),
                "severity": "critical" if abs(z) > cfg.z_score_critical else "high",
                "type": "rollback" if delta < 0 else "unusually_high",
                "description": description,
            }
        )

    logger.debug("Z-score analysis over %d deltas flagged %d anomalies", len(deltas), len(anomalies))
    return {
        "anomalies": anomalies,
        "statistics": {
            "total_data_points": len(frame),
            "mean_mileage_change": round(mean),
            "standard_deviation": round(std_dev),
            "analysis_method": "Z-Score (standard deviation)",
        },
    }


def r_squared(y: np.ndarray, fitted: np.ndarray) -> float:
    """Coefficient of determination; a constant series counts as a perfect fit."""
    ss_total = float(np.sum((y - np.mean(y)) ** 2))
    ss_residual = float(np.sum((y - fitted) ** 2))
    if ss_total == 0:
        return 1.0
    return 1.0 - ss_residual / ss_total


def interpret_r_squared(value: float, config: DetectionConfig | None = None) -> str:
    cfg = config or DetectionConfig()
    if value > cfg.high_accuracy_r2:
        return "High accuracy"
    if value > cfg.moderate_accuracy_r2:
        return "Moderate accuracy"
    return "Low accuracy"


def predict_future_mileage(
    frame: pd.DataFrame, days_ahead: int, config: DetectionConfig | None = None,
) -> dict[str, Any]:
    """Least-squares line of mileage against days since the first observation.

    ``days_ahead`` is expected to be validated by the caller.
    """
    cfg = config or DetectionConfig()
    if len(frame) < cfg.min_forecast_points:
        return {"error": "Not enough historical data", "data_points_used": len(frame)}

    x = _elapsed_days(frame)
    y = frame["mileage"].to_numpy(dtype=float)
    if np.ptp(x) == 0:
        return {"error": "All observations share one timestamp; no trend can be fitted", "data_points_used": len(frame)}

    model = LinearRegression()
    model.fit(x.reshape(-1, 1), y)
    slope = float(model.coef_[0])
    intercept = float(model.intercept_)
    r2 = r_squared(y, model.predict(x.reshape(-1, 1)))

    future_x = float(x[-1]) + days_ahead
    predicted = slope * future_x + intercept

    return {
        "current_mileage": int(y[-1]),
        "predicted_mileage": round(predicted),
        "days_ahead": days_ahead,
        "daily_mileage_rate": round(slope, 2),
        "annual_mileage_rate": round(slope * 365),
        "confidence": {
            "r_squared": round(r2, 4),
            "interpretation": interpret_r_squared(r2, cfg),
        },
        "data_points_used": len(frame),
        "model": {
            "equation": f"y = {slope:.2f}x + {intercept:.2f}",
            "slope": round(slope, 4),
            "intercept": round(intercept, 4),
        },
    }
