from __future__ import annotations

import time
import uuid
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from provenance.data_models import Event, User
from provenance.errors import (
    ForbiddenError,
    FraudRejectedError,
    InsufficientDataError,
    InvalidInputError,
    NotFoundError,
    ProvenanceError,
)
from service.logging_config import configure_logging, correlation_id
from service.messaging import KafkaBus
from service.settings import ServiceSettings
from service.storage import PostgresStore, RedisCache
from service.wiring import build_services


# ── Request / Response Models ───────────────────────────────────────

class UserCreateRequest(BaseModel):
    email: str = Field(min_length=3)
    display_name: str | None = None


class VehicleCreateRequest(BaseModel):
    vin: str = Field(min_length=17, max_length=17)
    make: str
    model: str
    year: int = Field(ge=1900, le=2100)
    color: str | None = None
    engine_type: str | None = None
    transmission: str | None = None
    fuel_type: str | None = None
    description: str | None = None
    mileage_unit: str = "km"
    current_mileage: int | None = Field(default=None, ge=0)


class VehicleUpdateRequest(BaseModel):
    current_mileage: int | None = Field(default=None, ge=0)
    description: str | None = None
    color: str | None = None


class TransferRequest(BaseModel):
    new_owner_id: str


class VerificationRequest(BaseModel):
    is_verified: bool = True
    notes: str | None = Field(default=None, max_length=2000)


class EventCreateRequest(BaseModel):
    event_type: str
    event_date: datetime
    severity: Literal["info", "low", "medium", "high", "critical"] | None = None
    mileage: int | None = Field(default=None, ge=0)
    description: str | None = None
    location: str | None = None
    cost: float | None = Field(default=None, ge=0)
    document_url: str | None = None


class EventUpdateRequest(BaseModel):
    description: str | None = None
    cost: float | None = Field(default=None, ge=0)
    document_url: str | None = None
    severity: Literal["info", "low", "medium", "high", "critical"] | None = None


class TelemetryRequest(BaseModel):
    vin: str
    mileage: int = Field(ge=0)
    engine_running: bool = False
    event_type: Literal["periodic", "engine_start", "engine_stop"] = "periodic"
    fuel_level: float | None = None
    humidity: float | None = None
    battery_voltage: float | None = None
    recorded_at: datetime | None = None


class SmoothingUpdate(BaseModel):
    fuel: float | None = Field(default=None, ge=0, le=1)
    battery: float | None = Field(default=None, ge=0, le=1)


class DeviceConfigUpdateRequest(BaseModel):
    active_interval: int | None = Field(default=None, ge=1)
    idle_interval: int | None = Field(default=None, ge=1)
    battery_low_threshold: float | None = Field(default=None, ge=0)
    fuel_low_threshold: float | None = Field(default=None, ge=0, le=100)
    humidity_high_threshold: float | None = Field(default=None, ge=0, le=100)
    smoothing: SmoothingUpdate | None = None
    enabled: bool | None = None


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── Prometheus-style Metrics ────────────────────────────────────────

# Quantiles are computed over the most recent samples only; count and sum
# stay cumulative.
LATENCY_WINDOW = 1_000

_prom_counters: dict[str, int] = defaultdict(int)
_latency_windows: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=LATENCY_WINDOW))
_latency_totals: dict[str, float] = defaultdict(float)


def _metric_name(key: str) -> str:
    return "provenance_" + key.replace(".", "_").replace("-", "_")


def _record_latency(name: str, seconds: float) -> None:
    _latency_windows[name].append(seconds)
    _latency_totals[name] += seconds
    _prom_counters[f"{name}_count"] += 1


def _quantile(samples: list[float], q: float) -> float:
    return samples[min(int(len(samples) * q), len(samples) - 1)]


def _prometheus_text() -> str:
    """Render counters and latency summaries in Prometheus exposition format."""
    lines: list[str] = []
    for key, value in sorted(_prom_counters.items()):
        lines.append(f"# TYPE {_metric_name(key)} counter")
        lines.append(f"{_metric_name(key)} {value}")

    for name, window in sorted(_latency_windows.items()):
        if not window:
            continue
        metric = _metric_name(name) + "_seconds"
        samples = sorted(window)
        lines.append(f"# TYPE {metric} summary")
        for q in (0.5, 0.9, 0.99):
            lines.append(f'{metric}{{quantile="{q}"}} {_quantile(samples, q):.6f}')
        lines.append(f"{metric}_count {_prom_counters[f'{name}_count']}")
        lines.append(f"{metric}_sum {_latency_totals[name]:.6f}")

    return "\n".join(lines) + "\n"


def _event_public(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "vehicle_id": event.vehicle_id,
        "event_type": event.event_type,
        "event_date": event.event_date.isoformat(),
        "severity": event.severity,
        "mileage": event.mileage,
        "description": event.description,
        "location": event.location,
        "cost": event.cost,
        "document_url": event.document_url,
        "reported_by": event.reported_by,
        "verified_by_iot": event.verified_by_iot,
    }


def _error_body(exc: ProvenanceError) -> dict[str, Any]:
    return {"error": type(exc).__name__, "message": exc.message, "details": exc.details}


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cache = RedisCache(redis_url=settings.redis_url)
    store = PostgresStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )
    services = build_services(
        store,
        cache=cache,
        bus=kafka,
        config=settings.detection_config(),
        defaults=settings.device_defaults(),
        cache_ttl_seconds=settings.device_config_cache_ttl_seconds,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        await kafka.connect()
        try:
            yield
        finally:
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Mileage Provenance API", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.state.store = store
    app.state.bus = kafka

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:12]
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    # ── Error mapping ───────────────────────────────────────────────

    @app.exception_handler(NotFoundError)
    async def not_found_handler(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_body(exc))

    @app.exception_handler(FraudRejectedError)
    async def fraud_handler(_: Request, exc: FraudRejectedError) -> JSONResponse:
        _prom_counters["fraud_rejections"] += 1
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_body(exc))

    @app.exception_handler(InvalidInputError)
    async def invalid_input_handler(_: Request, exc: InvalidInputError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_body(exc))

    @app.exception_handler(InsufficientDataError)
    async def insufficient_data_handler(_: Request, exc: InsufficientDataError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_body(exc))

    @app.exception_handler(ForbiddenError)
    async def forbidden_handler(_: Request, exc: ForbiddenError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=_error_body(exc))

    async def current_user(x_user_id: str | None = Header(default=None)) -> User:
        if not x_user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
        user = await store.get_user(x_user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
        return user

    # ── Users / Vehicles ────────────────────────────────────────────

    @app.post("/users", status_code=status.HTTP_201_CREATED)
    async def register_user(req: UserCreateRequest) -> dict[str, Any]:
        user = await services.vehicles.register_user(req.email, req.display_name)
        return {"id": user.id, "email": user.email, "display_name": user.display_name}

    @app.post("/vehicles", status_code=status.HTTP_201_CREATED)
    async def register_vehicle(req: VehicleCreateRequest, user: User = Depends(current_user)) -> dict[str, Any]:
        payload = req.model_dump(exclude_none=True)
        vehicle = await services.vehicles.register_vehicle(owner_id=user.id, **payload)
        _prom_counters["vehicles_registered"] += 1
        return await services.vehicles.vehicle_profile(vehicle.id)

    @app.get("/vehicles/high-risk")
    async def high_risk_vehicles(
        min_score: int | None = Query(default=None, ge=0, le=100),
        limit: int = Query(default=20, ge=1, le=100),
    ) -> dict[str, Any]:
        rows = await services.risk.high_risk_vehicles(min_score=min_score, limit=limit)
        return {"total": len(rows), "vehicles": rows}

    @app.get("/vehicles/awaiting-verification")
    async def vehicles_awaiting_verification(limit: int = Query(default=50, ge=1, le=200)) -> dict[str, Any]:
        rows = await services.risk.vehicles_awaiting_verification(limit=limit)
        return {"total": len(rows), "vehicles": rows}

    @app.get("/vehicles/{vehicle_id}")
    async def get_vehicle(vehicle_id: str) -> dict[str, Any]:
        return await services.vehicles.vehicle_profile(vehicle_id)

    @app.patch("/vehicles/{vehicle_id}")
    async def update_vehicle(
        vehicle_id: str, req: VehicleUpdateRequest, user: User = Depends(current_user),
    ) -> dict[str, Any]:
        await services.vehicles.update_vehicle(vehicle_id, req.model_dump(exclude_none=True), user.id)
        return await services.vehicles.vehicle_profile(vehicle_id)

    @app.post("/vehicles/{vehicle_id}/transfer")
    async def transfer_vehicle(
        vehicle_id: str, req: TransferRequest, user: User = Depends(current_user),
    ) -> dict[str, Any]:
        ownership = await services.vehicles.transfer_ownership(vehicle_id, req.new_owner_id, user.id)
        return {"vehicle_id": vehicle_id, "owner_id": ownership.user_id, "started_at": ownership.started_at.isoformat()}

    @app.post("/vehicles/{vehicle_id}/verification")
    async def verify_vehicle(
        vehicle_id: str, req: VerificationRequest, user: User = Depends(current_user),
    ) -> dict[str, Any]:
        return await services.risk.verify_vehicle(
            vehicle_id, verifier_id=user.id, is_verified=req.is_verified, notes=req.notes,
        )

    # ── Events / Ledger ─────────────────────────────────────────────

    @app.post("/vehicles/{vehicle_id}/events", status_code=status.HTTP_201_CREATED)
    async def record_event(
        vehicle_id: str, req: EventCreateRequest, user: User = Depends(current_user),
    ) -> dict[str, Any]:
        t0 = time.monotonic()
        event = await services.events.record_event(vehicle_id, reported_by=user.id, **req.model_dump())
        _record_latency("record_event", time.monotonic() - t0)
        return _event_public(event)

    @app.get("/vehicles/{vehicle_id}/events")
    async def list_events(
        vehicle_id: str,
        event_type: str | None = None,
        severity: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        rows = await services.events.list_events(
            vehicle_id, event_type=event_type, severity=severity, start=start, end=end,
        )
        return {"total": len(rows), "events": [_event_public(e) for e in rows]}

    @app.patch("/events/{event_id}")
    async def update_event(event_id: str, req: EventUpdateRequest, user: User = Depends(current_user)) -> dict[str, Any]:
        event = await services.events.update_event(event_id, req.model_dump(exclude_none=True), user.id)
        return _event_public(event)

    @app.delete("/events/{event_id}")
    async def delete_event(event_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
        event = await services.events.delete_event(event_id, user.id)
        return {"deleted": event.id}

    @app.get("/vehicles/{vehicle_id}/mileage-history")
    async def mileage_history(
        vehicle_id: str,
        source: Literal["manual", "iot"] | None = None,
        limit: int | None = Query(default=None, ge=1),
    ) -> dict[str, Any]:
        await services.vehicles.get_vehicle(vehicle_id)
        rows = await services.ledger.history(vehicle_id, source=source, limit=limit)
        return {
            "vehicle_id": vehicle_id,
            "observations": [
                {
                    "id": o.id,
                    "mileage": o.mileage,
                    "observed_at": o.observed_at.isoformat(),
                    "source": o.source,
                    "verified": o.verified,
                    "context": o.context,
                }
                for o in rows
            ],
        }

    # ── Risk ────────────────────────────────────────────────────────

    @app.get("/vehicles/{vehicle_id}/risk-report")
    async def risk_report(vehicle_id: str) -> dict[str, Any]:
        return await services.risk.report(vehicle_id)

    @app.get("/vehicles/{vehicle_id}/tampering-history")
    async def vehicle_tampering_history(vehicle_id: str) -> dict[str, Any]:
        return await services.risk.tampering_history(vehicle_id)

    @app.delete("/incidents/{incident_id}")
    async def delete_incident(incident_id: str, _: User = Depends(current_user)) -> dict[str, Any]:
        incident = await services.risk.delete_incident(incident_id)
        return {"deleted": incident.id}

    # ── Analytics ───────────────────────────────────────────────────

    @app.get("/vehicles/{vehicle_id}/anomalies")
    async def detect_anomalies(vehicle_id: str) -> dict[str, Any]:
        return await services.analytics.detect_anomalies(vehicle_id)

    @app.post("/vehicles/{vehicle_id}/anomalies")
    async def record_anomalies(vehicle_id: str, _: User = Depends(current_user)) -> dict[str, Any]:
        result = await services.analytics.detect_anomalies(vehicle_id, record=True)
        _prom_counters["statistical_outliers_recorded"] += result.get("recorded_incidents", 0)
        return result

    @app.get("/analytics/system")
    async def system_analytics() -> dict[str, Any]:
        return await services.analytics.system_analytics()

    @app.get("/vehicles/{vehicle_id}/prediction")
    async def predict_mileage(vehicle_id: str, days_ahead: int = Query(default=365, ge=1, le=3650)) -> dict[str, Any]:
        result = await services.analytics.predict_mileage(vehicle_id, days_ahead)
        if "error" in result:
            raise InsufficientDataError(result["error"], {"data_points_used": result.get("data_points_used", 0)})
        return result

    # ── Telemetry / Devices ─────────────────────────────────────────

    @app.post("/iot/telemetry", status_code=status.HTTP_201_CREATED)
    async def ingest_telemetry(req: TelemetryRequest) -> dict[str, Any]:
        t0 = time.monotonic()
        result = await services.telemetry.ingest(**req.model_dump())
        _record_latency("telemetry_ingest", time.monotonic() - t0)
        _prom_counters["telemetry_ingested"] += 1
        _prom_counters["device_alerts"] += len(result["alerts"])
        for flag in result["flags"]:
            _prom_counters[f"telemetry_flag_{flag}"] += 1
        return result

    @app.get("/iot/config/{vin}")
    async def get_device_config(vin: str) -> dict[str, Any]:
        return await services.devices.get_config(vin)

    @app.put("/iot/config/{vin}")
    async def update_device_config(vin: str, req: DeviceConfigUpdateRequest) -> dict[str, Any]:
        updates = req.model_dump(exclude={"smoothing"}, exclude_none=True)
        if req.smoothing is not None:
            updates["smoothing_alpha_fuel"] = req.smoothing.fuel
            updates["smoothing_alpha_battery"] = req.smoothing.battery
        return await services.devices.update_config(vin, updates)

    @app.post("/iot/sync/{vin}")
    async def sync_device(vin: str) -> dict[str, Any]:
        return await services.devices.sync_device(vin)

    @app.get("/iot/telemetry/{vin}")
    async def telemetry_history(vin: str, limit: int = Query(default=100, ge=1, le=1000)) -> dict[str, Any]:
        return await services.telemetry.history(vin, limit=limit)

    @app.get("/iot/telemetry/{vin}/latest")
    async def latest_telemetry(vin: str) -> dict[str, Any]:
        return await services.telemetry.latest(vin)

    @app.get("/iot/telemetry/{vin}/stats")
    async def telemetry_stats(vin: str, days: int = Query(default=30, ge=1, le=3650)) -> dict[str, Any]:
        return await services.telemetry.stats(vin, days=days)

    @app.get("/iot/tampering/{vin}")
    async def tampering_history_by_vin(vin: str) -> dict[str, Any]:
        vehicle = await services.devices.vehicle_by_vin(vin)
        return await services.risk.tampering_history(vehicle.id)

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Operational Endpoints ───────────────────────────────────────

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        samples = sorted(_latency_windows.get("telemetry_ingest", ()))
        return {
            "counters": dict(_prom_counters),
            "telemetry_latency": {
                "count": _prom_counters.get("telemetry_ingest_count", 0),
                "window": len(samples),
                "p50_ms": round(_quantile(samples, 0.5) * 1000, 1) if samples else 0,
                "p99_ms": round(_quantile(samples, 0.99) * 1000, 1) if samples else 0,
            },
        }

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
