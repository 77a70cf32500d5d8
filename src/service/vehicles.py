from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any
from uuid import uuid4

from provenance.data_models import Ownership, User, Vehicle
from provenance.errors import ForbiddenError, InvalidInputError, NotFoundError
from provenance.tampering import evaluate_owner_update
from provenance.vin import require_valid_vin
from service.clock import Clock, utcnow
from service.ledger import MileageLedger, validate_mileage
from service.locks import VehicleLocks
from service.memory import VEHICLE_PROFILE_FIELDS
from service.repositories import OwnershipRepository, UserRepository, VehicleRepository
from service.scoring import RiskService

logger = logging.getLogger(__name__)


class VehicleService:
    """Vehicle registration, profile edits and ownership."""

    def __init__(
        self,
        *,
        vehicles: VehicleRepository,
        users: UserRepository,
        ownerships: OwnershipRepository,
        ledger: MileageLedger,
        risk: RiskService,
        locks: VehicleLocks,
        clock: Clock = utcnow,
    ) -> None:
        self.vehicles = vehicles
        self.users = users
        self.ownerships = ownerships
        self.ledger = ledger
        self.risk = risk
        self.locks = locks
        self.clock = clock

    async def register_user(self, email: str, display_name: str | None = None) -> User:
        if not email or "@" not in email:
            raise InvalidInputError("A valid email is required", {"email": email})
        normalized = email.strip().lower()
        if await self.users.get_user_by_email(normalized) is not None:
            raise InvalidInputError("User with this email already exists", {"email": normalized})
        user = User(id=str(uuid4()), email=normalized, display_name=display_name)
        return await self.users.insert_user(user)

    async def require_user(self, user_id: str) -> User:
        user = await self.users.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", {"user_id": user_id})
        return user

    async def get_vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = await self.vehicles.get_vehicle(vehicle_id)
        if vehicle is None:
            raise NotFoundError("Vehicle not found", {"vehicle_id": vehicle_id})
        return vehicle

    async def register_vehicle(
        self,
        *,
        vin: str,
        make: str,
        model: str,
        year: int,
        owner_id: str,
        current_mileage: int | None = None,
        **profile: Any,
    ) -> Vehicle:
        normalized = require_valid_vin(vin)
        if current_mileage is not None:
            validate_mileage(current_mileage)
        unknown = set(profile) - VEHICLE_PROFILE_FIELDS
        if unknown:
            raise InvalidInputError("Unknown vehicle fields", {"fields": sorted(unknown)})
        await self.require_user(owner_id)
        if await self.vehicles.get_vehicle_by_vin(normalized) is not None:
            raise InvalidInputError("Car with this VIN already exists", {"vin": normalized})

        now = self.clock()
        vehicle = await self.vehicles.insert_vehicle(
            Vehicle(
                id=str(uuid4()),
                vin=normalized,
                make=make,
                model=model,
                year=year,
                current_mileage=current_mileage or 0,
                created_at=now,
                updated_at=now,
                **profile,
            )
        )
        await self.ownerships.insert_ownership(
            Ownership(
                id=str(uuid4()),
                vehicle_id=vehicle.id,
                user_id=owner_id,
                started_at=now,
                started_mileage=current_mileage,
            )
        )
        if current_mileage is not None:
            await self.ledger.append(
                vehicle.id,
                mileage=current_mileage,
                observed_at=now,
                source="manual",
                context="registration",
            )
        logger.info("Registered vehicle %s (%s %s %d)", normalized, make, model, year)
        return vehicle

    async def _require_current_owner(self, vehicle_id: str, user_id: str) -> Ownership:
        owner = await self.ownerships.current_owner(vehicle_id)
        if owner is None or owner.user_id != user_id:
            raise ForbiddenError("You are not the current owner of this vehicle", {"vehicle_id": vehicle_id})
        return owner

    async def update_vehicle(self, vehicle_id: str, fields: dict[str, Any], user_id: str) -> Vehicle:
        """Owner edit of the profile and, optionally, the odometer.

        A mileage below the current watermark is logged as a self-reported
        rollback incident; the watermark itself never moves down.
        """
        fields = {k: v for k, v in fields.items() if v is not None}
        mileage = fields.pop("current_mileage", None)
        if mileage is not None:
            validate_mileage(mileage)
        unknown = set(fields) - VEHICLE_PROFILE_FIELDS
        if unknown:
            raise InvalidInputError("Fields cannot be edited", {"fields": sorted(unknown)})

        await self.get_vehicle(vehicle_id)
        async with self.locks.hold(vehicle_id):
            vehicle = await self.get_vehicle(vehicle_id)
            await self._require_current_owner(vehicle_id, user_id)
            now = self.clock()

            if mileage is not None:
                finding = evaluate_owner_update(mileage, vehicle.current_mileage)
                if finding is not None:
                    await self.risk.record_incident(
                        vehicle,
                        kind=finding.kind,
                        severity=finding.severity,
                        description=finding.description,
                        observed_at=now,
                        iot_verified=False,
                        mileage=mileage,
                        previous_mileage=finding.reference_mileage,
                    )
                    await self.risk.recompute(vehicle_id)
                elif mileage > vehicle.current_mileage:
                    await self.ledger.append(
                        vehicle_id,
                        mileage=mileage,
                        observed_at=now,
                        source="manual",
                        context="owner_update",
                    )
                    await self.vehicles.raise_current_mileage(vehicle_id, mileage, now)

            if fields:
                await self.vehicles.update_vehicle(vehicle_id, fields, now)
            return await self.get_vehicle(vehicle_id)

    async def transfer_ownership(self, vehicle_id: str, new_owner_id: str, user_id: str) -> Ownership:
        await self.require_user(new_owner_id)
        await self.get_vehicle(vehicle_id)
        async with self.locks.hold(vehicle_id):
            vehicle = await self.get_vehicle(vehicle_id)
            current = await self._require_current_owner(vehicle_id, user_id)
            if current.user_id == new_owner_id:
                raise InvalidInputError("New owner already owns this vehicle", {"user_id": new_owner_id})
            now = self.clock()
            await self.ownerships.end_ownership(replace(current, ended_at=now, is_current=False))
            ownership = await self.ownerships.insert_ownership(
                Ownership(
                    id=str(uuid4()),
                    vehicle_id=vehicle_id,
                    user_id=new_owner_id,
                    started_at=now,
                    started_mileage=vehicle.current_mileage,
                )
            )
            await self.risk.recompute(vehicle_id)
        logger.info("Ownership of %s transferred to %s", vehicle.vin, new_owner_id)
        return ownership

    async def vehicle_profile(self, vehicle_id: str) -> dict[str, Any]:
        vehicle = await self.get_vehicle(vehicle_id)
        owners = await self.ownerships.list_ownerships(vehicle_id)
        return {
            "id": vehicle.id,
            "vin": vehicle.vin,
            "make": vehicle.make,
            "model": vehicle.model,
            "year": vehicle.year,
            "color": vehicle.color,
            "engine_type": vehicle.engine_type,
            "transmission": vehicle.transmission,
            "fuel_type": vehicle.fuel_type,
            "description": vehicle.description,
            "mileage_unit": vehicle.mileage_unit,
            "current_mileage": vehicle.current_mileage,
            "risk_score": vehicle.risk_score,
            "risk_level": vehicle.risk_level,
            "status": vehicle.status,
            "is_verified": vehicle.is_verified,
            "owners": [
                {
                    "user_id": o.user_id,
                    "started_at": o.started_at.isoformat(),
                    "ended_at": o.ended_at.isoformat() if o.ended_at else None,
                    "is_current": o.is_current,
                }
                for o in owners
            ],
        }
