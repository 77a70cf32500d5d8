from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from provenance.data_models import Event, Severity, Vehicle
from provenance.errors import ForbiddenError, FraudRejectedError, InvalidInputError, NotFoundError
from provenance.tampering import evaluate_manual_entry
from service.clock import Clock, ensure_utc, utcnow
from service.ledger import MileageLedger, validate_mileage
from service.locks import VehicleLocks
from service.repositories import EventRepository, VehicleRepository
from service.scoring import RiskService

logger = logging.getLogger(__name__)

SEVERITIES: tuple[str, ...] = ("info", "low", "medium", "high", "critical")
EDITABLE_FIELDS: frozenset[str] = frozenset({"description", "cost", "document_url", "severity"})


class EventService:
    """User-submitted vehicle history: the manual-entry path into the ledger."""

    def __init__(
        self,
        *,
        vehicles: VehicleRepository,
        events: EventRepository,
        ledger: MileageLedger,
        risk: RiskService,
        locks: VehicleLocks,
        clock: Clock = utcnow,
    ) -> None:
        self.vehicles = vehicles
        self.events = events
        self.ledger = ledger
        self.risk = risk
        self.locks = locks
        self.clock = clock

    async def _require_vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = await self.vehicles.get_vehicle(vehicle_id)
        if vehicle is None:
            raise NotFoundError("Vehicle not found", {"vehicle_id": vehicle_id})
        return vehicle

    async def _require_authored(self, event_id: str, user_id: str) -> Event:
        event = await self.events.get_event(event_id)
        if event is None:
            raise NotFoundError("Event not found", {"event_id": event_id})
        if event.reported_by != user_id:
            raise ForbiddenError("You can only change events you created", {"event_id": event_id})
        return event

    async def record_event(
        self,
        vehicle_id: str,
        *,
        event_type: str,
        event_date: datetime,
        severity: Severity | None = None,
        mileage: int | None = None,
        description: str | None = None,
        location: str | None = None,
        cost: float | None = None,
        document_url: str | None = None,
        reported_by: str | None = None,
    ) -> Event:
        """Record an event; a mileage below any prior manual mileage is rejected.

        On rejection the rollback incident is persisted and the risk score
        recomputed before ``FraudRejectedError`` propagates; the event itself
        and its mileage are not stored.
        """
        if mileage is not None:
            validate_mileage(mileage)
        if severity is not None and severity not in SEVERITIES:
            raise InvalidInputError("Unknown severity", {"severity": severity})
        event_date = ensure_utc(event_date)

        await self._require_vehicle(vehicle_id)
        async with self.locks.hold(vehicle_id):
            vehicle = await self._require_vehicle(vehicle_id)

            if mileage is not None:
                prior = await self.ledger.history(vehicle_id, source="manual")
                finding = evaluate_manual_entry(mileage, prior)
                if finding is not None:
                    await self.risk.record_incident(
                        vehicle,
                        kind=finding.kind,
                        severity=finding.severity,
                        description=finding.description,
                        observed_at=event_date,
                        iot_verified=False,
                        mileage=mileage,
                        previous_mileage=finding.reference_mileage,
                    )
                    score = await self.risk.recompute(vehicle_id)
                    logger.warning(
                        "Rejected manual mileage %d for %s (recorded max %d)",
                        mileage, vehicle.vin, finding.reference_mileage,
                    )
                    error = FraudRejectedError(finding.reference_mileage, mileage, vehicle_id)
                    error.details["risk_score"] = score
                    raise error

            now = self.clock()
            event = Event(
                id=str(uuid4()),
                vehicle_id=vehicle_id,
                event_type=event_type,
                event_date=event_date,
                severity=severity,
                mileage=mileage,
                description=description,
                location=location,
                cost=cost,
                document_url=document_url,
                reported_by=reported_by,
                verified_by_iot=False,
                created_at=now,
                updated_at=now,
            )
            await self.events.insert_event(event)
            if mileage is not None:
                await self.ledger.append(
                    vehicle_id,
                    mileage=mileage,
                    observed_at=event_date,
                    source="manual",
                    context=event_type,
                    event_id=event.id,
                )
                await self.vehicles.raise_current_mileage(vehicle_id, mileage, now)
            await self.risk.recompute(vehicle_id)

        logger.info("Recorded %s event for %s", event_type, vehicle.vin)
        return event

    async def update_event(self, event_id: str, fields: dict[str, Any], user_id: str) -> Event:
        if "mileage" in fields:
            raise InvalidInputError("Mileage cannot be edited; record a new event instead")
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise InvalidInputError("Fields cannot be edited", {"fields": sorted(unknown)})
        if fields.get("severity") is not None and fields["severity"] not in SEVERITIES:
            raise InvalidInputError("Unknown severity", {"severity": fields["severity"]})

        event = await self._require_authored(event_id, user_id)
        async with self.locks.hold(event.vehicle_id):
            updated = await self.events.update_event(event_id, fields, self.clock())
            if updated is None:
                raise NotFoundError("Event not found", {"event_id": event_id})
            await self.risk.recompute(event.vehicle_id)
        return updated

    async def delete_event(self, event_id: str, user_id: str) -> Event:
        event = await self._require_authored(event_id, user_id)
        async with self.locks.hold(event.vehicle_id):
            deleted = await self.events.delete_event(event_id)
            if deleted is None:
                raise NotFoundError("Event not found", {"event_id": event_id})
            await self.risk.recompute(event.vehicle_id)
        logger.info("Deleted event %s for vehicle %s", event_id, event.vehicle_id)
        return deleted

    async def list_events(
        self,
        vehicle_id: str,
        *,
        event_type: str | None = None,
        severity: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        await self._require_vehicle(vehicle_id)
        return await self.events.list_events(
            vehicle_id,
            event_type=event_type,
            severity=severity,
            start=ensure_utc(start) if start else None,
            end=ensure_utc(end) if end else None,
        )
