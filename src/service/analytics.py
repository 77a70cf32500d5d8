from __future__ import annotations

import logging
import math
from typing import Any, get_args

from provenance.config import DetectionConfig
from provenance.data_models import RiskLevel, Vehicle
from provenance.errors import InvalidInputError, NotFoundError
from provenance.statistics import detect_mileage_anomalies, observations_frame, predict_future_mileage
from service.clock import Clock, ensure_utc, utcnow
from service.ledger import MileageLedger
from service.locks import VehicleLocks
from service.repositories import EventRepository, IncidentRepository, UserRepository, VehicleRepository
from service.scoring import RiskService

logger = logging.getLogger(__name__)


class AnalyticsService:
    """Read-side statistics over vehicle ledgers and the fleet as a whole.

    Nothing here feeds the risk score. Outliers are only persisted when the
    caller asks for it, as ``statistical-outlier`` incidents.
    """

    def __init__(
        self,
        *,
        vehicles: VehicleRepository,
        incidents: IncidentRepository,
        users: UserRepository,
        events: EventRepository,
        ledger: MileageLedger,
        risk: RiskService,
        locks: VehicleLocks,
        config: DetectionConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.vehicles = vehicles
        self.incidents = incidents
        self.users = users
        self.events = events
        self.ledger = ledger
        self.risk = risk
        self.locks = locks
        self.config = config or DetectionConfig()
        self.clock = clock

    async def _require_vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = await self.vehicles.get_vehicle(vehicle_id)
        if vehicle is None:
            raise NotFoundError("Vehicle not found", {"vehicle_id": vehicle_id})
        return vehicle

    async def detect_anomalies(self, vehicle_id: str, record: bool = False) -> dict[str, Any]:
        vehicle = await self._require_vehicle(vehicle_id)
        frame = observations_frame(await self.ledger.history(vehicle_id))
        result = detect_mileage_anomalies(frame, self.config)
        result["vin"] = vehicle.vin

        if not record:
            return result
        recorded = 0
        if result["anomalies"]:
            async with self.locks.hold(vehicle_id):
                seen = {
                    i.observation_id
                    for i in await self.incidents.list_incidents(vehicle_id, kind="statistical-outlier")
                }
                for anomaly in result["anomalies"]:
                    if anomaly["observation_id"] in seen:
                        continue
                    await self.risk.record_incident(
                        vehicle,
                        kind="statistical-outlier",
                        severity=anomaly["severity"],
                        description=anomaly["description"],
                        observed_at=ensure_utc(frame["observed_at"].iloc[anomaly["event_index"]].to_pydatetime()),
                        iot_verified=anomaly["source"] == "iot",
                        mileage=anomaly["mileage"],
                        previous_mileage=anomaly["mileage"] - anomaly["mileage_difference"],
                        observation_id=anomaly["observation_id"],
                    )
                    recorded += 1
            logger.info("Recorded %d statistical outliers for %s", recorded, vehicle.vin)
        result["recorded_incidents"] = recorded
        return result

    async def predict_mileage(self, vehicle_id: str, days_ahead: int = 365) -> dict[str, Any]:
        cfg = self.config
        if not cfg.min_forecast_days <= days_ahead <= cfg.max_forecast_days:
            raise InvalidInputError(
                f"days_ahead must be between {cfg.min_forecast_days} and {cfg.max_forecast_days}",
                {"days_ahead": days_ahead},
            )
        vehicle = await self._require_vehicle(vehicle_id)
        frame = observations_frame(await self.ledger.history(vehicle_id))
        result = predict_future_mileage(frame, days_ahead, cfg)
        result["vin"] = vehicle.vin
        return result

    async def system_analytics(self) -> dict[str, Any]:
        """Fleet-wide totals, risk distribution and event breakdown."""
        distribution = {level: 0 for level in get_args(RiskLevel)}
        distribution.update(await self.vehicles.risk_level_counts())
        events_by_type = await self.events.event_type_counts()
        average = await self.vehicles.average_risk_score()
        return {
            "totals": {
                "users": await self.users.count_users(),
                "vehicles": sum(distribution.values()),
                "events": sum(events_by_type.values()),
            },
            "risk_analysis": {
                "distribution": distribution,
                "average_risk_score": math.floor(average + 0.5),
            },
            "event_breakdown": dict(sorted(events_by_type.items())),
            "generated_at": self.clock().isoformat(),
        }
