"""
Repository interfaces consumed by the application services.

Both ``PostgresStore`` and ``InMemoryStore`` satisfy every protocol here;
services only ever see the narrow interface they were constructed with.
List operations return newest first unless stated otherwise.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

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


class VehicleRepository(Protocol):
    async def get_vehicle(self, vehicle_id: str) -> Vehicle | None: ...
    async def get_vehicle_by_vin(self, vin: str) -> Vehicle | None: ...
    async def insert_vehicle(self, vehicle: Vehicle) -> Vehicle:
        """Raises ``InvalidInputError`` when the VIN is already registered."""
        ...

    async def update_vehicle(self, vehicle_id: str, fields: dict[str, Any], now: datetime) -> Vehicle | None: ...

    async def raise_current_mileage(self, vehicle_id: str, mileage: int, now: datetime) -> bool:
        """Set current mileage only if ``mileage`` is higher; report whether it moved."""
        ...

    async def set_risk(self, vehicle_id: str, *, score: int, level: str, status: str, now: datetime) -> None: ...
    async def list_vehicles_by_risk(self, min_score: int, limit: int) -> list[Vehicle]: ...

    async def set_verification(
        self,
        vehicle_id: str,
        *,
        is_verified: bool,
        verified_by: str | None,
        notes: str | None,
        now: datetime,
    ) -> Vehicle | None:
        """Revoking clears the verifier and the verification time."""
        ...

    async def list_unverified_vehicles(self, limit: int) -> list[Vehicle]: ...
    async def risk_level_counts(self) -> dict[str, int]: ...
    async def average_risk_score(self) -> float: ...


class UserRepository(Protocol):
    async def get_user(self, user_id: str) -> User | None: ...
    async def get_user_by_email(self, email: str) -> User | None: ...

    async def insert_user(self, user: User) -> User:
        """Raises ``InvalidInputError`` when the email is already registered."""
        ...

    async def count_users(self) -> int: ...


class OwnershipRepository(Protocol):
    async def insert_ownership(self, ownership: Ownership) -> Ownership: ...
    async def end_ownership(self, ownership: Ownership) -> Ownership: ...
    async def list_ownerships(self, vehicle_id: str, since: datetime | None = None) -> list[Ownership]: ...
    async def current_owner(self, vehicle_id: str) -> Ownership | None: ...


class EventRepository(Protocol):
    async def insert_event(self, event: Event) -> Event: ...
    async def get_event(self, event_id: str) -> Event | None: ...
    async def update_event(self, event_id: str, fields: dict[str, Any], now: datetime) -> Event | None: ...
    async def delete_event(self, event_id: str) -> Event | None: ...

    async def list_events(
        self,
        vehicle_id: str,
        *,
        event_type: str | None = None,
        severity: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]: ...

    async def event_type_counts(self) -> dict[str, int]: ...


class IncidentRepository(Protocol):
    async def insert_incident(self, incident: Incident) -> Incident: ...
    async def get_incident(self, incident_id: str) -> Incident | None: ...
    async def delete_incident(self, incident_id: str) -> Incident | None: ...

    async def list_incidents(
        self,
        vehicle_id: str,
        *,
        kind: str | None = None,
        since: datetime | None = None,
    ) -> list[Incident]:
        """``since`` filters on detection time."""
        ...


class ObservationRepository(Protocol):
    async def append_observation(self, observation: MileageObservation) -> MileageObservation:
        """Persist and return the observation with its ledger sequence assigned."""
        ...

    async def list_observations(
        self,
        vehicle_id: str,
        *,
        source: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[MileageObservation]:
        """Ordered by observation time then sequence, newest first."""
        ...

    async def latest_observation(self, vehicle_id: str, source: str | None = None) -> MileageObservation | None: ...


class TelemetryRepository(Protocol):
    async def insert_telemetry(self, reading: TelemetryReading) -> TelemetryReading: ...

    async def list_telemetry(
        self, vehicle_id: str, *, limit: int | None = None, since: datetime | None = None,
    ) -> list[TelemetryReading]: ...

    async def latest_telemetry(self, vehicle_id: str) -> TelemetryReading | None: ...


class DeviceConfigRepository(Protocol):
    async def get_device_config(self, vehicle_id: str) -> DeviceConfig | None: ...

    async def insert_device_config(self, config: DeviceConfig) -> DeviceConfig:
        """Insert unless a config already exists; returns the stored one."""
        ...

    async def save_device_config(self, config: DeviceConfig) -> DeviceConfig: ...
