from __future__ import annotations

from dataclasses import dataclass

from provenance.config import DetectionConfig, DeviceDefaults
from service.analytics import AnalyticsService
from service.clock import Clock, utcnow
from service.devices import DeviceConfigService
from service.events import EventService
from service.ledger import MileageLedger
from service.locks import VehicleLocks
from service.memory import InMemoryStore
from service.messaging import KafkaBus
from service.scoring import RiskService
from service.storage import PostgresStore, RedisCache
from service.telemetry import TelemetryService
from service.vehicles import VehicleService


@dataclass
class Services:
    ledger: MileageLedger
    locks: VehicleLocks
    risk: RiskService
    vehicles: VehicleService
    events: EventService
    devices: DeviceConfigService
    telemetry: TelemetryService
    analytics: AnalyticsService


def build_services(
    store: PostgresStore | InMemoryStore,
    *,
    cache: RedisCache | None = None,
    bus: KafkaBus | None = None,
    config: DetectionConfig | None = None,
    defaults: DeviceDefaults | None = None,
    cache_ttl_seconds: int = 3_600,
    clock: Clock = utcnow,
) -> Services:
    """Wire every application service onto one store.

    The store object implements all repository protocols, so it is passed
    for each of them.
    """
    config = config or DetectionConfig()
    locks = VehicleLocks(store)
    ledger = MileageLedger(store)
    risk = RiskService(
        vehicles=store,
        incidents=store,
        events=store,
        ownerships=store,
        locks=locks,
        bus=bus,
        config=config,
        clock=clock,
    )
    devices = DeviceConfigService(
        vehicles=store,
        configs=store,
        telemetry=store,
        cache=cache,
        defaults=defaults,
        cache_ttl_seconds=cache_ttl_seconds,
        clock=clock,
    )
    return Services(
        ledger=ledger,
        locks=locks,
        risk=risk,
        vehicles=VehicleService(
            vehicles=store, users=store, ownerships=store, ledger=ledger, risk=risk, locks=locks, clock=clock,
        ),
        events=EventService(vehicles=store, events=store, ledger=ledger, risk=risk, locks=locks, clock=clock),
        devices=devices,
        telemetry=TelemetryService(
            vehicles=store,
            telemetry=store,
            events=store,
            ledger=ledger,
            devices=devices,
            risk=risk,
            locks=locks,
            bus=bus,
            config=config,
            clock=clock,
        ),
        analytics=AnalyticsService(
            vehicles=store,
            incidents=store,
            users=store,
            events=store,
            ledger=ledger,
            risk=risk,
            locks=locks,
            config=config,
            clock=clock,
        ),
    )
