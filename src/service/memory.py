from __future__ import annotations

import itertools
from collections import Counter
from contextlib import AbstractAsyncContextManager
from dataclasses import replace
from datetime import datetime
from typing import Any

from provenance.data_models import (
    DeviceConfig,
    Event,
    Incident,
    MileageObservation,
    Ownership,
    TelemetryReading,
    User,
    Vehicle,
)
from provenance.errors import InvalidInputError
from service.locks import LockTable

VEHICLE_PROFILE_FIELDS = frozenset(
    {"make", "model", "year", "color", "engine_type", "transmission", "fuel_type", "description", "mileage_unit"}
)
EVENT_MUTABLE_FIELDS = frozenset({"description", "cost", "document_url", "severity"})


class InMemoryStore:
    """Process-local implementation of every repository protocol.

    Serves as the fallback when Postgres is unreachable and as the fake the
    test-suite injects. Returned objects are copies; mutating them never
    touches stored state.
    """

    def __init__(self) -> None:
        self._vehicles: dict[str, Vehicle] = {}
        self._users: dict[str, User] = {}
        self._ownerships: list[Ownership] = []
        self._events: list[Event] = []
        self._incidents: list[Incident] = []
        self._observations: list[MileageObservation] = []
        self._telemetry: list[TelemetryReading] = []
        self._device_configs: dict[str, DeviceConfig] = {}
        self._sequence = itertools.count(1)
        self._locks = LockTable()

    def vehicle_lock(self, vehicle_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.acquire(vehicle_id)

    # ── Vehicles ────────────────────────────────────────────────────

    async def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        vehicle = self._vehicles.get(vehicle_id)
        return replace(vehicle) if vehicle else None

    async def get_vehicle_by_vin(self, vin: str) -> Vehicle | None:
        for vehicle in self._vehicles.values():
            if vehicle.vin == vin:
                return replace(vehicle)
        return None

    async def insert_vehicle(self, vehicle: Vehicle) -> Vehicle:
        if any(v.vin == vehicle.vin for v in self._vehicles.values()):
            raise InvalidInputError("Car with this VIN already exists", {"vin": vehicle.vin})
        self._vehicles[vehicle.id] = replace(vehicle)
        return replace(vehicle)

    async def update_vehicle(self, vehicle_id: str, fields: dict[str, Any], now: datetime) -> Vehicle | None:
        vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None:
            return None
        allowed = {k: v for k, v in fields.items() if k in VEHICLE_PROFILE_FIELDS}
        updated = replace(vehicle, **allowed, updated_at=now)
        self._vehicles[vehicle_id] = updated
        return replace(updated)

    async def raise_current_mileage(self, vehicle_id: str, mileage: int, now: datetime) -> bool:
        vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None or mileage <= vehicle.current_mileage:
            return False
        self._vehicles[vehicle_id] = replace(vehicle, current_mileage=mileage, updated_at=now)
        return True

    async def set_risk(self, vehicle_id: str, *, score: int, level: str, status: str, now: datetime) -> None:
        vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None:
            return
        self._vehicles[vehicle_id] = replace(
            vehicle, risk_score=score, risk_level=level, status=status, updated_at=now,
        )

    async def list_vehicles_by_risk(self, min_score: int, limit: int) -> list[Vehicle]:
        rows = [v for v in self._vehicles.values() if v.risk_score >= min_score]
        rows.sort(key=lambda v: v.risk_score, reverse=True)
        return [replace(v) for v in rows[:limit]]

    async def set_verification(
        self,
        vehicle_id: str,
        *,
        is_verified: bool,
        verified_by: str | None,
        notes: str | None,
        now: datetime,
    ) -> Vehicle | None:
        vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None:
            return None
        updated = replace(
            vehicle,
            is_verified=is_verified,
            verified_at=now if is_verified else None,
            verified_by=verified_by if is_verified else None,
            verification_notes=notes,
            updated_at=now,
        )
        self._vehicles[vehicle_id] = updated
        return replace(updated)

    async def list_unverified_vehicles(self, limit: int) -> list[Vehicle]:
        rows = [v for v in self._vehicles.values() if not v.is_verified]
        rows.sort(key=lambda v: v.created_at.timestamp() if v.created_at else 0.0, reverse=True)
        return [replace(v) for v in rows[:limit]]

    async def risk_level_counts(self) -> dict[str, int]:
        return dict(Counter(v.risk_level for v in self._vehicles.values()))

    async def average_risk_score(self) -> float:
        if not self._vehicles:
            return 0.0
        return sum(v.risk_score for v in self._vehicles.values()) / len(self._vehicles)

    # ── Users / ownership ───────────────────────────────────────────

    async def get_user(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    async def get_user_by_email(self, email: str) -> User | None:
        for user in self._users.values():
            if user.email == email:
                return user
        return None

    async def insert_user(self, user: User) -> User:
        if await self.get_user_by_email(user.email) is not None:
            raise InvalidInputError("User with this email already exists", {"email": user.email})
        self._users[user.id] = user
        return user

    async def count_users(self) -> int:
        return len(self._users)

    async def insert_ownership(self, ownership: Ownership) -> Ownership:
        self._ownerships.append(ownership)
        return ownership

    async def end_ownership(self, ownership: Ownership) -> Ownership:
        self._ownerships = [ownership if o.id == ownership.id else o for o in self._ownerships]
        return ownership

    async def list_ownerships(self, vehicle_id: str, since: datetime | None = None) -> list[Ownership]:
        rows = [
            o for o in reversed(self._ownerships)
            if o.vehicle_id == vehicle_id and (since is None or o.started_at >= since)
        ]
        return sorted(rows, key=lambda o: o.started_at, reverse=True)

    async def current_owner(self, vehicle_id: str) -> Ownership | None:
        for o in reversed(self._ownerships):
            if o.vehicle_id == vehicle_id and o.is_current:
                return o
        return None

    # ── Events ──────────────────────────────────────────────────────

    async def insert_event(self, event: Event) -> Event:
        self._events.append(replace(event))
        return replace(event)

    async def get_event(self, event_id: str) -> Event | None:
        for event in self._events:
            if event.id == event_id:
                return replace(event)
        return None

    async def update_event(self, event_id: str, fields: dict[str, Any], now: datetime) -> Event | None:
        for i, event in enumerate(self._events):
            if event.id == event_id:
                allowed = {k: v for k, v in fields.items() if k in EVENT_MUTABLE_FIELDS}
                self._events[i] = replace(event, **allowed, updated_at=now)
                return replace(self._events[i])
        return None

    async def delete_event(self, event_id: str) -> Event | None:
        for i, event in enumerate(self._events):
            if event.id == event_id:
                return self._events.pop(i)
        return None

    async def list_events(
        self,
        vehicle_id: str,
        *,
        event_type: str | None = None,
        severity: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        rows = [
            e for e in reversed(self._events)
            if e.vehicle_id == vehicle_id
            and (event_type is None or e.event_type == event_type)
            and (severity is None or e.severity == severity)
            and (start is None or e.event_date >= start)
            and (end is None or e.event_date <= end)
        ]
        return [replace(e) for e in sorted(rows, key=lambda e: e.event_date, reverse=True)]

    async def event_type_counts(self) -> dict[str, int]:
        return dict(Counter(e.event_type for e in self._events))

    # ── Incidents ───────────────────────────────────────────────────

    async def insert_incident(self, incident: Incident) -> Incident:
        self._incidents.append(incident)
        return incident

    async def get_incident(self, incident_id: str) -> Incident | None:
        for incident in self._incidents:
            if incident.id == incident_id:
                return incident
        return None

    async def delete_incident(self, incident_id: str) -> Incident | None:
        for i, incident in enumerate(self._incidents):
            if incident.id == incident_id:
                return self._incidents.pop(i)
        return None

    async def list_incidents(
        self,
        vehicle_id: str,
        *,
        kind: str | None = None,
        since: datetime | None = None,
    ) -> list[Incident]:
        rows = [
            i for i in reversed(self._incidents)
            if i.vehicle_id == vehicle_id
            and (kind is None or i.kind == kind)
            and (since is None or i.detected_at >= since)
        ]
        return sorted(rows, key=lambda i: i.detected_at, reverse=True)

    # ── Ledger observations ─────────────────────────────────────────

    async def append_observation(self, observation: MileageObservation) -> MileageObservation:
        stored = replace(observation, sequence=next(self._sequence))
        self._observations.append(stored)
        return stored

    async def list_observations(
        self,
        vehicle_id: str,
        *,
        source: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[MileageObservation]:
        rows = [
            o for o in self._observations
            if o.vehicle_id == vehicle_id
            and (source is None or o.source == source)
            and (since is None or o.observed_at >= since)
            and (until is None or o.observed_at <= until)
        ]
        return sorted(rows, key=lambda o: (o.observed_at, o.sequence), reverse=True)

    async def latest_observation(self, vehicle_id: str, source: str | None = None) -> MileageObservation | None:
        rows = await self.list_observations(vehicle_id, source=source)
        return rows[0] if rows else None

    # ── Telemetry ───────────────────────────────────────────────────

    async def insert_telemetry(self, reading: TelemetryReading) -> TelemetryReading:
        self._telemetry.append(reading)
        return reading

    async def list_telemetry(
        self, vehicle_id: str, *, limit: int | None = None, since: datetime | None = None,
    ) -> list[TelemetryReading]:
        rows = [
            t for t in reversed(self._telemetry)
            if t.vehicle_id == vehicle_id and (since is None or t.recorded_at >= since)
        ]
        rows = sorted(rows, key=lambda t: t.recorded_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    async def latest_telemetry(self, vehicle_id: str) -> TelemetryReading | None:
        rows = await self.list_telemetry(vehicle_id, limit=1)
        return rows[0] if rows else None

    # ── Device configs ──────────────────────────────────────────────

    async def get_device_config(self, vehicle_id: str) -> DeviceConfig | None:
        config = self._device_configs.get(vehicle_id)
        return replace(config) if config else None

    async def insert_device_config(self, config: DeviceConfig) -> DeviceConfig:
        existing = self._device_configs.get(config.vehicle_id)
        if existing is not None:
            return replace(existing)
        self._device_configs[config.vehicle_id] = replace(config)
        return replace(config)

    async def save_device_config(self, config: DeviceConfig) -> DeviceConfig:
        self._device_configs[config.vehicle_id] = replace(config)
        return replace(config)
