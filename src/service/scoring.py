from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from provenance.config import DetectionConfig
from provenance.data_models import (
    MAINTENANCE_KINDS,
    TAMPERING_KINDS,
    Event,
    Incident,
    IncidentKind,
    Severity,
    Vehicle,
)
from provenance.errors import NotFoundError
from provenance.risk import assess_risk, purchase_recommendations
from service.clock import Clock, utcnow
from service.locks import VehicleLocks
from service.messaging import MILEAGE_INCIDENTS_TOPIC, VEHICLE_BLOCKED_TOPIC, KafkaBus
from service.repositories import EventRepository, IncidentRepository, OwnershipRepository, VehicleRepository

logger = logging.getLogger(__name__)


class RiskService:
    """Incident recording and full-recompute risk scoring.

    ``recompute`` never takes the vehicle lock itself: callers that write
    incidents or events already hold it and recompute inside the same unit.
    """

    def __init__(
        self,
        *,
        vehicles: VehicleRepository,
        incidents: IncidentRepository,
        events: EventRepository,
        ownerships: OwnershipRepository,
        locks: VehicleLocks,
        bus: KafkaBus | None = None,
        config: DetectionConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.vehicles = vehicles
        self.incidents = incidents
        self.events = events
        self.ownerships = ownerships
        self.locks = locks
        self.bus = bus
        self.config = config or DetectionConfig()
        self.clock = clock

    async def _require_vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = await self.vehicles.get_vehicle(vehicle_id)
        if vehicle is None:
            raise NotFoundError("Vehicle not found", {"vehicle_id": vehicle_id})
        return vehicle

    async def recompute(self, vehicle_id: str) -> int:
        vehicle = await self._require_vehicle(vehicle_id)
        now = self.clock()
        assessment = assess_risk(
            incidents=await self.incidents.list_incidents(vehicle_id),
            events=await self.events.list_events(vehicle_id, event_type="accident"),
            ownerships=await self.ownerships.list_ownerships(vehicle_id),
            now=now,
            config=self.config,
        )
        await self.vehicles.set_risk(
            vehicle_id,
            score=assessment.score,
            level=assessment.level,
            status=assessment.status,
            now=now,
        )
        logger.info(
            "Risk recomputed for %s: %d -> %d (%s)",
            vehicle.vin, vehicle.risk_score, assessment.score, assessment.level,
        )
        if assessment.status == "blocked" and vehicle.status != "blocked":
            logger.warning("Vehicle %s blocked at risk score %d", vehicle.vin, assessment.score)
            if self.bus is not None:
                await self.bus.publish(
                    VEHICLE_BLOCKED_TOPIC,
                    {"vehicle_id": vehicle_id, "vin": vehicle.vin, "risk_score": assessment.score},
                    key=vehicle.vin,
                )
        return assessment.score

    async def record_incident(
        self,
        vehicle: Vehicle,
        *,
        kind: IncidentKind,
        severity: Severity,
        description: str,
        observed_at: datetime,
        iot_verified: bool,
        mileage: int | None = None,
        previous_mileage: int | None = None,
        observation_id: str | None = None,
    ) -> Incident:
        incident = Incident(
            id=str(uuid4()),
            vehicle_id=vehicle.id,
            kind=kind,
            severity=severity,
            description=description,
            observed_at=observed_at,
            detected_at=self.clock(),
            iot_verified=iot_verified,
            mileage=mileage,
            previous_mileage=previous_mileage,
            observation_id=observation_id,
        )
        await self.incidents.insert_incident(incident)
        logger.warning("Incident %s/%s for %s: %s", kind, severity, vehicle.vin, description)
        if self.bus is not None and kind not in MAINTENANCE_KINDS:
            await self.bus.publish(
                MILEAGE_INCIDENTS_TOPIC,
                {"vin": vehicle.vin, **incident.to_public()},
                key=vehicle.vin,
            )
        return incident

    async def recent_incident(self, vehicle_id: str, kind: IncidentKind) -> Incident | None:
        since = self.clock() - timedelta(hours=self.config.dedup_window_hours)
        rows = await self.incidents.list_incidents(vehicle_id, kind=kind, since=since)
        return rows[0] if rows else None

    async def delete_incident(self, incident_id: str) -> Incident:
        incident = await self.incidents.get_incident(incident_id)
        if incident is None:
            raise NotFoundError("Incident not found", {"incident_id": incident_id})
        async with self.locks.hold(incident.vehicle_id):
            deleted = await self.incidents.delete_incident(incident_id)
            if deleted is None:
                raise NotFoundError("Incident not found", {"incident_id": incident_id})
            await self.recompute(incident.vehicle_id)
        return deleted

    async def report(self, vehicle_id: str) -> dict[str, Any]:
        vehicle = await self._require_vehicle(vehicle_id)
        incidents = await self.incidents.list_incidents(vehicle_id)
        accidents = await self.events.list_events(vehicle_id, event_type="accident")
        assessment = assess_risk(
            incidents=incidents,
            events=accidents,
            ownerships=await self.ownerships.list_ownerships(vehicle_id),
            now=self.clock(),
            config=self.config,
        )
        return {
            "vehicle_id": vehicle.id,
            "vin": vehicle.vin,
            "current_mileage": vehicle.current_mileage,
            "risk_score": vehicle.risk_score,
            "risk_level": vehicle.risk_level,
            "status": vehicle.status,
            "factors": assessment.factors,
            "incidents": [i.to_public() for i in incidents],
            "recommendations": purchase_recommendations(vehicle.risk_score, incidents, accidents, self.config),
        }

    async def tampering_history(self, vehicle_id: str) -> dict[str, Any]:
        vehicle = await self._require_vehicle(vehicle_id)
        rows = [
            i for i in await self.incidents.list_incidents(vehicle_id)
            if i.kind in TAMPERING_KINDS
        ]
        return {
            "vin": vehicle.vin,
            "total_tampering_events": len(rows),
            "events": [i.to_public() for i in rows],
        }

    def verification_priority(self, score: int) -> str:
        if score > self.config.verification_high_priority:
            return "high"
        if score > self.config.verification_medium_priority:
            return "medium"
        return "low"

    async def verify_vehicle(
        self,
        vehicle_id: str,
        *,
        verifier_id: str,
        is_verified: bool = True,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Mark a vehicle as checked by a reviewer, or revoke that mark.

        The decision is also written to the vehicle's history as an
        ``admin_verification`` event. It does not touch the risk score.
        """
        await self._require_vehicle(vehicle_id)
        now = self.clock()
        vehicle = await self.vehicles.set_verification(
            vehicle_id, is_verified=is_verified, verified_by=verifier_id, notes=notes, now=now,
        )
        if vehicle is None:
            raise NotFoundError("Vehicle not found", {"vehicle_id": vehicle_id})
        await self.events.insert_event(
            Event(
                id=str(uuid4()),
                vehicle_id=vehicle_id,
                event_type="admin_verification",
                event_date=now,
                severity="info",
                description=(
                    f"Car verified by admin. Notes: {notes or 'None'}"
                    if is_verified
                    else "Car verification revoked by admin"
                ),
                reported_by=verifier_id,
                verified_by_iot=False,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("Vehicle %s verification set to %s by %s", vehicle.vin, is_verified, verifier_id)
        return {
            "vehicle_id": vehicle.id,
            "vin": vehicle.vin,
            "is_verified": vehicle.is_verified,
            "verified_at": vehicle.verified_at.isoformat() if vehicle.verified_at else None,
            "verified_by": vehicle.verified_by,
            "verification_notes": vehicle.verification_notes,
            "message": "Car verified successfully" if is_verified else "Car verification revoked",
        }

    async def vehicles_awaiting_verification(self, limit: int = 50) -> list[dict[str, Any]]:
        """Unverified vehicles, newest first, with a review priority from the risk score."""
        out: list[dict[str, Any]] = []
        for vehicle in await self.vehicles.list_unverified_vehicles(limit):
            incidents = await self.incidents.list_incidents(vehicle.id)
            owner = await self.ownerships.current_owner(vehicle.id)
            out.append(
                {
                    "id": vehicle.id,
                    "vin": vehicle.vin,
                    "make": vehicle.make,
                    "model": vehicle.model,
                    "year": vehicle.year,
                    "risk_score": vehicle.risk_score,
                    "current_mileage": vehicle.current_mileage,
                    "status": vehicle.status,
                    "created_at": vehicle.created_at.isoformat() if vehicle.created_at else None,
                    "current_owner_id": owner.user_id if owner else None,
                    "tampering_incidents": sum(1 for i in incidents if i.kind in TAMPERING_KINDS),
                    "priority": self.verification_priority(vehicle.risk_score),
                }
            )
        return out

    async def high_risk_vehicles(self, min_score: int | None = None, limit: int = 20) -> list[dict[str, Any]]:
        threshold = self.config.review_threshold if min_score is None else min_score
        out: list[dict[str, Any]] = []
        for vehicle in await self.vehicles.list_vehicles_by_risk(threshold, limit):
            rollbacks = await self.incidents.list_incidents(vehicle.id, kind="rollback")
            owner = await self.ownerships.current_owner(vehicle.id)
            out.append(
                {
                    "vin": vehicle.vin,
                    "make": vehicle.make,
                    "model": vehicle.model,
                    "year": vehicle.year,
                    "risk_score": vehicle.risk_score,
                    "risk_level": vehicle.risk_level,
                    "status": vehicle.status,
                    "current_mileage": vehicle.current_mileage,
                    "has_current_owner": owner is not None,
                    "tampering_incidents": len(rollbacks),
                    "recommendation": (
                        "BLOCK IMMEDIATELY"
                        if vehicle.risk_score >= self.config.block_threshold
                        else "REQUIRES VERIFICATION"
                    ),
                }
            )
        return out
