from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import pandas as pd

from provenance.alerts import evaluate_alerts
from provenance.config import DetectionConfig
from provenance.data_models import Event, TelemetryEventType, TelemetryReading
from provenance.errors import InvalidInputError
from provenance.tampering import evaluate_telemetry
from service.clock import Clock, ensure_utc, utcnow
from service.devices import DeviceConfigService
from service.ledger import MileageLedger, validate_mileage
from service.locks import VehicleLocks
from service.messaging import DEVICE_ALERTS_TOPIC, KafkaBus
from service.repositories import EventRepository, TelemetryRepository, VehicleRepository
from service.scoring import RiskService

logger = logging.getLogger(__name__)

TELEMETRY_EVENT_TYPES: tuple[str, ...] = ("periodic", "engine_start", "engine_stop")


class TelemetryService:
    """Device telemetry ingestion: the IoT path into the ledger.

    Readings are never rejected for tampering; findings are flagged and the
    reading is stored regardless.
    """

    def __init__(
        self,
        *,
        vehicles: VehicleRepository,
        telemetry: TelemetryRepository,
        events: EventRepository,
        ledger: MileageLedger,
        devices: DeviceConfigService,
        risk: RiskService,
        locks: VehicleLocks,
        bus: KafkaBus | None = None,
        config: DetectionConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.vehicles = vehicles
        self.telemetry = telemetry
        self.events = events
        self.ledger = ledger
        self.devices = devices
        self.risk = risk
        self.locks = locks
        self.bus = bus
        self.config = config or DetectionConfig()
        self.clock = clock

    async def ingest(
        self,
        *,
        vin: str,
        mileage: int | None,
        engine_running: bool = False,
        event_type: TelemetryEventType = "periodic",
        fuel_level: float | None = None,
        humidity: float | None = None,
        battery_voltage: float | None = None,
        recorded_at: datetime | None = None,
    ) -> dict[str, Any]:
        if not vin:
            raise InvalidInputError("Telemetry requires a VIN")
        if mileage is None:
            raise InvalidInputError("Telemetry requires a mileage reading", {"vin": vin})
        validate_mileage(mileage)
        if event_type not in TELEMETRY_EVENT_TYPES:
            raise InvalidInputError("Unknown telemetry event type", {"event_type": event_type})

        vehicle = await self.devices.vehicle_by_vin(vin)
        observed_at = ensure_utc(recorded_at) if recorded_at else self.clock()

        async with self.locks.hold(vehicle.id):
            device_config = await self.devices.get_or_create(vehicle)
            last = await self.ledger.last_observation(vehicle.id, source="iot")
            findings = evaluate_telemetry(mileage, last, observed_at, self.config)

            reading = TelemetryReading(
                id=str(uuid4()),
                vehicle_id=vehicle.id,
                vin=vehicle.vin,
                mileage=mileage,
                recorded_at=observed_at,
                engine_running=engine_running,
                event_type=event_type,
                fuel_level=fuel_level,
                humidity=humidity,
                battery_voltage=battery_voltage,
            )
            await self.telemetry.insert_telemetry(reading)
            observation = await self.ledger.append(
                vehicle.id,
                mileage=mileage,
                observed_at=observed_at,
                source="iot",
                verified=True,
                context=event_type,
                telemetry_id=reading.id,
            )

            for finding in findings:
                if finding.kind == "rollback":
                    recent = await self.risk.recent_incident(vehicle.id, "rollback")
                    if recent is not None:
                        logger.info(
                            "Rollback on %s suppressed, incident %s already recorded within %dh",
                            vehicle.vin, recent.id, self.config.dedup_window_hours,
                        )
                        continue
                await self.risk.record_incident(
                    vehicle,
                    kind=finding.kind,
                    severity=finding.severity,
                    description=finding.description,
                    observed_at=observed_at,
                    iot_verified=True,
                    mileage=mileage,
                    previous_mileage=finding.reference_mileage,
                    observation_id=observation.id,
                )
                # High-rate findings are informational and leave the score alone.
                if finding.kind == "rollback":
                    await self.risk.recompute(vehicle.id)

            mileage_updated = await self.vehicles.raise_current_mileage(vehicle.id, mileage, self.clock())

            if event_type in ("engine_start", "engine_stop"):
                verb = "started" if event_type == "engine_start" else "stopped"
                now = self.clock()
                await self.events.insert_event(
                    Event(
                        id=str(uuid4()),
                        vehicle_id=vehicle.id,
                        event_type="trip_update",
                        event_date=observed_at,
                        severity="info",
                        mileage=mileage,
                        description=f"Engine {verb} at {mileage} km",
                        verified_by_iot=True,
                        created_at=now,
                        updated_at=now,
                    )
                )

            alerts = evaluate_alerts(
                device_config,
                battery_voltage=battery_voltage,
                humidity=humidity,
                fuel_level=fuel_level,
            )
            for alert in alerts:
                if alert.incident_kind is None:
                    continue
                if await self.risk.recent_incident(vehicle.id, alert.incident_kind) is not None:
                    continue
                await self.risk.record_incident(
                    vehicle,
                    kind=alert.incident_kind,
                    severity=alert.severity,
                    description=alert.message,
                    observed_at=observed_at,
                    iot_verified=True,
                    mileage=mileage,
                )

        messages = [a.message for a in alerts]
        if messages and self.bus is not None:
            await self.bus.publish(
                DEVICE_ALERTS_TOPIC,
                {"vin": vehicle.vin, "alerts": messages, "recorded_at": observed_at.isoformat()},
                key=vehicle.vin,
            )
        if messages:
            logger.info("Device alerts for %s: %s", vehicle.vin, messages)

        return {
            "success": True,
            "telemetry_id": reading.id,
            "vin": vehicle.vin,
            "mileage_updated": mileage_updated,
            "alerts": messages,
            "flags": [f.kind for f in findings],
            "recorded_at": observed_at.isoformat(),
        }

    async def history(self, vin: str, limit: int = 100) -> dict[str, Any]:
        vehicle = await self.devices.vehicle_by_vin(vin)
        rows = await self.telemetry.list_telemetry(vehicle.id, limit=limit)
        return {
            "vin": vehicle.vin,
            "total_records": len(rows),
            "telemetry": [_reading_public(r) for r in rows],
        }

    async def latest(self, vin: str) -> dict[str, Any]:
        vehicle = await self.devices.vehicle_by_vin(vin)
        latest = await self.telemetry.latest_telemetry(vehicle.id)
        if latest is None:
            return {"vin": vehicle.vin, "message": "No IoT data available yet", "iot_connected": False}
        window = timedelta(minutes=self.config.device_online_window_minutes)
        return {
            "vin": vehicle.vin,
            "iot_connected": latest.recorded_at > self.clock() - window,
            "last_update": latest.recorded_at.isoformat(),
            "data": {
                "mileage": latest.mileage,
                "fuel_level": latest.fuel_level,
                "humidity": latest.humidity,
                "battery_voltage": latest.battery_voltage,
                "engine_running": latest.engine_running,
            },
        }

    async def stats(self, vin: str, days: int = 30) -> dict[str, Any]:
        if days < 1:
            raise InvalidInputError("Statistics window must be at least one day", {"days": days})
        vehicle = await self.devices.vehicle_by_vin(vin)
        rows = await self.telemetry.list_telemetry(vehicle.id, since=self.clock() - timedelta(days=days))
        period = f"Last {days} days"
        if not rows:
            return {"vin": vehicle.vin, "period": period, "message": "No data available for this period"}

        frame = pd.DataFrame(
            [{"mileage": r.mileage, "event_type": r.event_type, "recorded_at": r.recorded_at} for r in rows]
        ).sort_values("recorded_at")
        start, end = int(frame["mileage"].min()), int(frame["mileage"].max())
        engine_starts = int((frame["event_type"] == "engine_start").sum())
        return {
            "vin": vehicle.vin,
            "period": period,
            "total_data_points": len(frame),
            "mileage_stats": {
                "total_mileage_driven": end - start,
                "average_daily_mileage": round((end - start) / days),
                "start_mileage": start,
                "end_mileage": end,
            },
            "usage": {
                "engine_starts": engine_starts,
                "average_trips_per_day": round(engine_starts / days, 1),
            },
            "last_update": frame["recorded_at"].iloc[-1].isoformat(),
        }


def _reading_public(reading: TelemetryReading) -> dict[str, Any]:
    return {
        "id": reading.id,
        "mileage": reading.mileage,
        "fuel_level": reading.fuel_level,
        "humidity": reading.humidity,
        "battery_voltage": reading.battery_voltage,
        "engine_running": reading.engine_running,
        "event_type": reading.event_type,
        "recorded_at": reading.recorded_at.isoformat(),
    }
