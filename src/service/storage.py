from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, AsyncIterator, TypeVar

import redis.asyncio as redis
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

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
from service.memory import EVENT_MUTABLE_FIELDS, VEHICLE_PROFILE_FIELDS, InMemoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

metadata = MetaData()

vehicles_table = Table(
    "vehicles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vin", String(17), nullable=False, unique=True, index=True),
    Column("make", String(100), nullable=False),
    Column("model", String(100), nullable=False),
    Column("year", Integer, nullable=False),
    Column("color", String(50), nullable=True),
    Column("engine_type", String(50), nullable=True),
    Column("transmission", String(50), nullable=True),
    Column("fuel_type", String(50), nullable=True),
    Column("description", Text, nullable=True),
    Column("mileage_unit", String(10), nullable=False, default="km"),
    Column("current_mileage", Integer, nullable=False, default=0),
    Column("risk_score", Integer, nullable=False, default=0),
    Column("risk_level", String(20), nullable=False, default="low"),
    Column("status", String(20), nullable=False, default="active"),
    Column("is_verified", Boolean, nullable=False, default=False),
    Column("verified_at", DateTime(timezone=True), nullable=True),
    Column("verified_by", String(36), nullable=True),
    Column("verification_notes", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=True),
)

users_table = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=True),
)

ownerships_table = Table(
    "ownerships",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("ended_at", DateTime(timezone=True), nullable=True),
    Column("is_current", Boolean, nullable=False, default=True),
    Column("started_mileage", Integer, nullable=True),
)

events_table = Table(
    "events",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("event_type", String(50), nullable=False),
    Column("event_date", DateTime(timezone=True), nullable=False),
    Column("severity", String(20), nullable=True),
    Column("mileage", Integer, nullable=True),
    Column("description", Text, nullable=True),
    Column("location", String(255), nullable=True),
    Column("cost", Float, nullable=True),
    Column("document_url", String(500), nullable=True),
    Column("reported_by", String(36), nullable=True),
    Column("verified_by_iot", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=True),
)

incidents_table = Table(
    "incidents",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("kind", String(32), nullable=False, index=True),
    Column("severity", String(20), nullable=False),
    Column("description", Text, nullable=False),
    Column("observed_at", DateTime(timezone=True), nullable=False),
    Column("detected_at", DateTime(timezone=True), nullable=False),
    Column("iot_verified", Boolean, nullable=False, default=False),
    Column("mileage", Integer, nullable=True),
    Column("previous_mileage", Integer, nullable=True),
    Column("observation_id", String(36), nullable=True),
)

observations_table = Table(
    "observations",
    metadata,
    Column("sequence", Integer, primary_key=True, autoincrement=True),
    Column("id", String(36), nullable=False, unique=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("mileage", Integer, nullable=False),
    Column("observed_at", DateTime(timezone=True), nullable=False),
    Column("source", String(16), nullable=False),
    Column("verified", Boolean, nullable=False, default=False),
    Column("context", Text, nullable=True),
    Column("event_id", String(36), nullable=True),
    Column("telemetry_id", String(36), nullable=True),
)

telemetry_table = Table(
    "telemetry",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("vin", String(17), nullable=False),
    Column("mileage", Integer, nullable=False),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
    Column("engine_running", Boolean, nullable=False, default=False),
    Column("event_type", String(20), nullable=False, default="periodic"),
    Column("fuel_level", Float, nullable=True),
    Column("humidity", Float, nullable=True),
    Column("battery_voltage", Float, nullable=True),
)

device_configs_table = Table(
    "device_configs",
    metadata,
    Column("vehicle_id", String(36), primary_key=True),
    Column("target_vin", String(17), nullable=False),
    Column("active_interval_ms", Integer, nullable=False),
    Column("idle_interval_ms", Integer, nullable=False),
    Column("battery_low_threshold_x100", Integer, nullable=False),
    Column("fuel_low_threshold_x100", Integer, nullable=False),
    Column("humidity_high_threshold_x100", Integer, nullable=False),
    Column("smoothing_alpha_fuel_x100", Integer, nullable=False),
    Column("smoothing_alpha_battery_x100", Integer, nullable=False),
    Column("enabled", Boolean, nullable=False, default=True),
    Column("last_sync", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=True),
)


def _to_model(cls: type[T], row: Any) -> T:
    return cls(**dict(row._mapping))


class RedisCache:
    """JSON cache on Redis with a process-local fallback when Redis is down."""

    def __init__(self, redis_url: str, namespace: str = "provenance") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, tuple[float, str]] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            logger.warning("Redis unreachable at %s, using in-process cache", self.redis_url)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                return None
        entry = self._mem.get(full_key)
        if entry is None:
            return None
        expires_at, raw = entry
        if time.monotonic() > expires_at:
            self._mem.pop(full_key, None)
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                logger.debug("Redis set failed for %s, caching locally", full_key)
        self._mem[full_key] = (time.monotonic() + ttl_seconds, payload)

    async def delete(self, key: str) -> None:
        full_key = self._build_key(key)
        self._mem.pop(full_key, None)
        if self._client is not None:
            try:
                await self._client.delete(full_key)
            except Exception:
                logger.debug("Redis delete failed for %s", full_key)


class PostgresStore:
    """SQL implementation of the repository protocols.

    Falls back to an ``InMemoryStore`` when the database cannot be reached
    on connect, so a degraded instance keeps serving with the same semantics.
    """

    def __init__(self, dsn: str, pool_size: int = 10) -> None:
        self.dsn = dsn
        self.pool_size = pool_size
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem = InMemoryStore()
        # A vehicle lock pins one pooled connection; cap holders so the
        # statements run inside a hold always find a free connection.
        self._lock_slots = asyncio.Semaphore(pool_size)

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(
                self.dsn, future=True, pool_size=self.pool_size, max_overflow=self.pool_size,
            )
            await self.init_schema()
        except Exception:
            logger.warning("Database unreachable, falling back to in-memory store")
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    @asynccontextmanager
    async def vehicle_lock(self, vehicle_id: str) -> AsyncIterator[None]:
        """Hold ``pg_advisory_xact_lock`` on the vehicle for the block.

        Every process writing to the same database takes the same lock, and
        Postgres releases it when the transaction ends, even if this worker
        dies mid-hold.
        """
        if self.engine is None:
            async with self._mem.vehicle_lock(vehicle_id):
                yield
            return
        async with self._lock_slots:
            async with self.engine.begin() as conn:
                await conn.execute(select(func.pg_advisory_xact_lock(func.hashtext(vehicle_id))))
                yield

    async def _insert_unique(self, stmt: Any, message: str, details: dict[str, Any]) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(stmt)
        except IntegrityError as exc:
            raise InvalidInputError(message, details) from exc

    async def _fetch_one(self, stmt: Any, cls: type[T]) -> T | None:
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return _to_model(cls, row) if row else None

    async def _fetch_all(self, stmt: Any, cls: type[T]) -> list[T]:
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [_to_model(cls, r) for r in rows]

    # ── Vehicles ────────────────────────────────────────────────────

    async def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        if self.engine is None:
            return await self._mem.get_vehicle(vehicle_id)
        return await self._fetch_one(select(vehicles_table).where(vehicles_table.c.id == vehicle_id), Vehicle)

    async def get_vehicle_by_vin(self, vin: str) -> Vehicle | None:
        if self.engine is None:
            return await self._mem.get_vehicle_by_vin(vin)
        return await self._fetch_one(select(vehicles_table).where(vehicles_table.c.vin == vin), Vehicle)

    async def insert_vehicle(self, vehicle: Vehicle) -> Vehicle:
        if self.engine is None:
            return await self._mem.insert_vehicle(vehicle)
        await self._insert_unique(
            insert(vehicles_table).values(**asdict(vehicle)),
            "Car with this VIN already exists",
            {"vin": vehicle.vin},
        )
        return vehicle

    async def update_vehicle(self, vehicle_id: str, fields: dict[str, Any], now: datetime) -> Vehicle | None:
        if self.engine is None:
            return await self._mem.update_vehicle(vehicle_id, fields, now)
        values = {k: v for k, v in fields.items() if k in VEHICLE_PROFILE_FIELDS}
        values["updated_at"] = now
        async with self.engine.begin() as conn:
            await conn.execute(update(vehicles_table).where(vehicles_table.c.id == vehicle_id).values(**values))
        return await self.get_vehicle(vehicle_id)

    async def raise_current_mileage(self, vehicle_id: str, mileage: int, now: datetime) -> bool:
        if self.engine is None:
            return await self._mem.raise_current_mileage(vehicle_id, mileage, now)
        stmt = (
            update(vehicles_table)
            .where(vehicles_table.c.id == vehicle_id)
            .where(vehicles_table.c.current_mileage < mileage)
            .values(current_mileage=mileage, updated_at=now)
        )
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
        return result.rowcount > 0

    async def set_risk(self, vehicle_id: str, *, score: int, level: str, status: str, now: datetime) -> None:
        if self.engine is None:
            await self._mem.set_risk(vehicle_id, score=score, level=level, status=status, now=now)
            return
        async with self.engine.begin() as conn:
            await conn.execute(
                update(vehicles_table)
                .where(vehicles_table.c.id == vehicle_id)
                .values(risk_score=score, risk_level=level, status=status, updated_at=now)
            )

    async def list_vehicles_by_risk(self, min_score: int, limit: int) -> list[Vehicle]:
        if self.engine is None:
            return await self._mem.list_vehicles_by_risk(min_score, limit)
        stmt = (
            select(vehicles_table)
            .where(vehicles_table.c.risk_score >= min_score)
            .order_by(vehicles_table.c.risk_score.desc())
            .limit(limit)
        )
        return await self._fetch_all(stmt, Vehicle)

    async def set_verification(
        self,
        vehicle_id: str,
        *,
        is_verified: bool,
        verified_by: str | None,
        notes: str | None,
        now: datetime,
    ) -> Vehicle | None:
        if self.engine is None:
            return await self._mem.set_verification(
                vehicle_id, is_verified=is_verified, verified_by=verified_by, notes=notes, now=now,
            )
        async with self.engine.begin() as conn:
            await conn.execute(
                update(vehicles_table)
                .where(vehicles_table.c.id == vehicle_id)
                .values(
                    is_verified=is_verified,
                    verified_at=now if is_verified else None,
                    verified_by=verified_by if is_verified else None,
                    verification_notes=notes,
                    updated_at=now,
                )
            )
        return await self.get_vehicle(vehicle_id)

    async def list_unverified_vehicles(self, limit: int) -> list[Vehicle]:
        if self.engine is None:
            return await self._mem.list_unverified_vehicles(limit)
        stmt = (
            select(vehicles_table)
            .where(vehicles_table.c.is_verified == False)  # noqa: E712
            .order_by(vehicles_table.c.created_at.desc())
            .limit(limit)
        )
        return await self._fetch_all(stmt, Vehicle)

    async def risk_level_counts(self) -> dict[str, int]:
        if self.engine is None:
            return await self._mem.risk_level_counts()
        stmt = select(vehicles_table.c.risk_level, func.count()).group_by(vehicles_table.c.risk_level)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return {level: int(n) for level, n in rows}

    async def average_risk_score(self) -> float:
        if self.engine is None:
            return await self._mem.average_risk_score()
        async with self.engine.connect() as conn:
            value = (await conn.execute(select(func.avg(vehicles_table.c.risk_score)))).scalar()
        return float(value or 0.0)

    # ── Users / ownership ───────────────────────────────────────────

    async def get_user(self, user_id: str) -> User | None:
        if self.engine is None:
            return await self._mem.get_user(user_id)
        return await self._fetch_one(select(users_table).where(users_table.c.id == user_id), User)

    async def get_user_by_email(self, email: str) -> User | None:
        if self.engine is None:
            return await self._mem.get_user_by_email(email)
        return await self._fetch_one(select(users_table).where(users_table.c.email == email), User)

    async def insert_user(self, user: User) -> User:
        if self.engine is None:
            return await self._mem.insert_user(user)
        await self._insert_unique(
            insert(users_table).values(**asdict(user)),
            "User with this email already exists",
            {"email": user.email},
        )
        return user

    async def count_users(self) -> int:
        if self.engine is None:
            return await self._mem.count_users()
        async with self.engine.connect() as conn:
            return int((await conn.execute(select(func.count()).select_from(users_table))).scalar())

    async def insert_ownership(self, ownership: Ownership) -> Ownership:
        if self.engine is None:
            return await self._mem.insert_ownership(ownership)
        async with self.engine.begin() as conn:
            await conn.execute(insert(ownerships_table).values(**asdict(ownership)))
        return ownership

    async def end_ownership(self, ownership: Ownership) -> Ownership:
        if self.engine is None:
            return await self._mem.end_ownership(ownership)
        async with self.engine.begin() as conn:
            await conn.execute(
                update(ownerships_table)
                .where(ownerships_table.c.id == ownership.id)
                .values(ended_at=ownership.ended_at, is_current=False)
            )
        return ownership

    async def list_ownerships(self, vehicle_id: str, since: datetime | None = None) -> list[Ownership]:
        if self.engine is None:
            return await self._mem.list_ownerships(vehicle_id, since)
        stmt = select(ownerships_table).where(ownerships_table.c.vehicle_id == vehicle_id)
        if since is not None:
            stmt = stmt.where(ownerships_table.c.started_at >= since)
        return await self._fetch_all(stmt.order_by(ownerships_table.c.started_at.desc()), Ownership)

    async def current_owner(self, vehicle_id: str) -> Ownership | None:
        if self.engine is None:
            return await self._mem.current_owner(vehicle_id)
        stmt = (
            select(ownerships_table)
            .where(ownerships_table.c.vehicle_id == vehicle_id)
            .where(ownerships_table.c.is_current == True)  # noqa: E712
            .order_by(ownerships_table.c.started_at.desc())
            .limit(1)
        )
        return await self._fetch_one(stmt, Ownership)

    # ── Events ──────────────────────────────────────────────────────

    async def insert_event(self, event: Event) -> Event:
        if self.engine is None:
            return await self._mem.insert_event(event)
        async with self.engine.begin() as conn:
            await conn.execute(insert(events_table).values(**asdict(event)))
        return event

    async def get_event(self, event_id: str) -> Event | None:
        if self.engine is None:
            return await self._mem.get_event(event_id)
        return await self._fetch_one(select(events_table).where(events_table.c.id == event_id), Event)

    async def update_event(self, event_id: str, fields: dict[str, Any], now: datetime) -> Event | None:
        if self.engine is None:
            return await self._mem.update_event(event_id, fields, now)
        values = {k: v for k, v in fields.items() if k in EVENT_MUTABLE_FIELDS}
        values["updated_at"] = now
        async with self.engine.begin() as conn:
            await conn.execute(update(events_table).where(events_table.c.id == event_id).values(**values))
        return await self.get_event(event_id)

    async def delete_event(self, event_id: str) -> Event | None:
        if self.engine is None:
            return await self._mem.delete_event(event_id)
        event = await self.get_event(event_id)
        if event is None:
            return None
        async with self.engine.begin() as conn:
            await conn.execute(delete(events_table).where(events_table.c.id == event_id))
        return event

    async def list_events(
        self,
        vehicle_id: str,
        *,
        event_type: str | None = None,
        severity: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        if self.engine is None:
            return await self._mem.list_events(
                vehicle_id, event_type=event_type, severity=severity, start=start, end=end,
            )
        stmt = select(events_table).where(events_table.c.vehicle_id == vehicle_id)
        if event_type is not None:
            stmt = stmt.where(events_table.c.event_type == event_type)
        if severity is not None:
            stmt = stmt.where(events_table.c.severity == severity)
        if start is not None:
            stmt = stmt.where(events_table.c.event_date >= start)
        if end is not None:
            stmt = stmt.where(events_table.c.event_date <= end)
        stmt = stmt.order_by(events_table.c.event_date.desc(), events_table.c.created_at.desc())
        return await self._fetch_all(stmt, Event)

    async def event_type_counts(self) -> dict[str, int]:
        if self.engine is None:
            return await self._mem.event_type_counts()
        stmt = select(events_table.c.event_type, func.count()).group_by(events_table.c.event_type)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return {event_type: int(n) for event_type, n in rows}

    # ── Incidents ───────────────────────────────────────────────────

    async def insert_incident(self, incident: Incident) -> Incident:
        if self.engine is None:
            return await self._mem.insert_incident(incident)
        async with self.engine.begin() as conn:
            await conn.execute(insert(incidents_table).values(**asdict(incident)))
        return incident

    async def get_incident(self, incident_id: str) -> Incident | None:
        if self.engine is None:
            return await self._mem.get_incident(incident_id)
        return await self._fetch_one(select(incidents_table).where(incidents_table.c.id == incident_id), Incident)

    async def delete_incident(self, incident_id: str) -> Incident | None:
        if self.engine is None:
            return await self._mem.delete_incident(incident_id)
        incident = await self.get_incident(incident_id)
        if incident is None:
            return None
        async with self.engine.begin() as conn:
            await conn.execute(delete(incidents_table).where(incidents_table.c.id == incident_id))
        return incident

    async def list_incidents(
        self,
        vehicle_id: str,
        *,
        kind: str | None = None,
        since: datetime | None = None,
    ) -> list[Incident]:
        if self.engine is None:
            return await self._mem.list_incidents(vehicle_id, kind=kind, since=since)
        stmt = select(incidents_table).where(incidents_table.c.vehicle_id == vehicle_id)
        if kind is not None:
            stmt = stmt.where(incidents_table.c.kind == kind)
        if since is not None:
            stmt = stmt.where(incidents_table.c.detected_at >= since)
        return await self._fetch_all(stmt.order_by(incidents_table.c.detected_at.desc()), Incident)

    # ── Ledger observations ─────────────────────────────────────────

    async def append_observation(self, observation: MileageObservation) -> MileageObservation:
        if self.engine is None:
            return await self._mem.append_observation(observation)
        row = asdict(observation)
        row.pop("sequence")
        async with self.engine.begin() as conn:
            result = await conn.execute(insert(observations_table).values(**row))
            sequence = int(result.inserted_primary_key[0])
        return MileageObservation(**row, sequence=sequence)

    async def list_observations(
        self,
        vehicle_id: str,
        *,
        source: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[MileageObservation]:
        if self.engine is None:
            return await self._mem.list_observations(vehicle_id, source=source, since=since, until=until)
        stmt = select(observations_table).where(observations_table.c.vehicle_id == vehicle_id)
        if source is not None:
            stmt = stmt.where(observations_table.c.source == source)
        if since is not None:
            stmt = stmt.where(observations_table.c.observed_at >= since)
        if until is not None:
            stmt = stmt.where(observations_table.c.observed_at <= until)
        stmt = stmt.order_by(observations_table.c.observed_at.desc(), observations_table.c.sequence.desc())
        return await self._fetch_all(stmt, MileageObservation)

    async def latest_observation(self, vehicle_id: str, source: str | None = None) -> MileageObservation | None:
        if self.engine is None:
            return await self._mem.latest_observation(vehicle_id, source)
        stmt = select(observations_table).where(observations_table.c.vehicle_id == vehicle_id)
        if source is not None:
            stmt = stmt.where(observations_table.c.source == source)
        stmt = stmt.order_by(observations_table.c.observed_at.desc(), observations_table.c.sequence.desc()).limit(1)
        return await self._fetch_one(stmt, MileageObservation)

    # ── Telemetry ───────────────────────────────────────────────────

    async def insert_telemetry(self, reading: TelemetryReading) -> TelemetryReading:
        if self.engine is None:
            return await self._mem.insert_telemetry(reading)
        async with self.engine.begin() as conn:
            await conn.execute(insert(telemetry_table).values(**asdict(reading)))
        return reading

    async def list_telemetry(
        self, vehicle_id: str, *, limit: int | None = None, since: datetime | None = None,
    ) -> list[TelemetryReading]:
        if self.engine is None:
            return await self._mem.list_telemetry(vehicle_id, limit=limit, since=since)
        stmt = select(telemetry_table).where(telemetry_table.c.vehicle_id == vehicle_id)
        if since is not None:
            stmt = stmt.where(telemetry_table.c.recorded_at >= since)
        stmt = stmt.order_by(telemetry_table.c.recorded_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return await self._fetch_all(stmt, TelemetryReading)

    async def latest_telemetry(self, vehicle_id: str) -> TelemetryReading | None:
        rows = await self.list_telemetry(vehicle_id, limit=1)
        return rows[0] if rows else None

    # ── Device configs ──────────────────────────────────────────────

    async def get_device_config(self, vehicle_id: str) -> DeviceConfig | None:
        if self.engine is None:
            return await self._mem.get_device_config(vehicle_id)
        stmt = select(device_configs_table).where(device_configs_table.c.vehicle_id == vehicle_id)
        return await self._fetch_one(stmt, DeviceConfig)

    async def insert_device_config(self, config: DeviceConfig) -> DeviceConfig:
        if self.engine is None:
            return await self._mem.insert_device_config(config)
        stmt = pg_insert(device_configs_table).values(**asdict(config)).on_conflict_do_nothing(
            index_elements=["vehicle_id"],
        )
        async with self.engine.begin() as conn:
            await conn.execute(stmt)
        return await self.get_device_config(config.vehicle_id) or config

    async def save_device_config(self, config: DeviceConfig) -> DeviceConfig:
        if self.engine is None:
            return await self._mem.save_device_config(config)
        values = asdict(config)
        values.pop("vehicle_id")
        async with self.engine.begin() as conn:
            await conn.execute(
                update(device_configs_table)
                .where(device_configs_table.c.vehicle_id == config.vehicle_id)
                .values(**values)
            )
        return config
