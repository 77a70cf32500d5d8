from datetime import datetime, timedelta, timezone

import pytest

from provenance.errors import InvalidInputError, NotFoundError
from service.memory import InMemoryStore
from service.messaging import DEVICE_ALERTS_TOPIC, MILEAGE_INCIDENTS_TOPIC, KafkaBus
from service.wiring import build_services

T0 = datetime(2025, 4, 1, 8, 0, tzinfo=timezone.utc)
VIN = "JH4KA7561PC008269"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def bus():
    return KafkaBus(bootstrap_servers="127.0.0.1:1", client_id="test")


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def services(store, bus, clock):
    return build_services(store, bus=bus, clock=clock)


async def _vehicle(services, mileage: int = 5_000):
    owner = await services.vehicles.register_user("driver@example.com")
    return await services.vehicles.register_vehicle(
        vin=VIN, make="Acura", model="Legend", year=1993, owner_id=owner.id, current_mileage=mileage,
    )


@pytest.mark.asyncio
async def test_first_reading_creates_config_and_raises_watermark(services, store):
    vehicle = await _vehicle(services)
    result = await services.telemetry.ingest(vin=VIN.lower(), mileage=10_000)

    assert result["success"] is True
    assert result["vin"] == VIN
    assert result["mileage_updated"] is True
    assert result["flags"] == []
    assert result["alerts"] == []
    assert await store.get_device_config(vehicle.id) is not None
    assert (await store.get_vehicle(vehicle.id)).current_mileage == 10_000

    latest = await services.ledger.last_observation(vehicle.id, source="iot")
    assert latest.verified is True
    assert latest.telemetry_id == result["telemetry_id"]


@pytest.mark.asyncio
async def test_rollback_is_flagged_stored_and_deduplicated(services, store, clock, bus):
    vehicle = await _vehicle(services)
    readings = [10_000, 10_020, 9_900, 9_800]
    results = []
    for mileage in readings:
        results.append(await services.telemetry.ingest(vin=VIN, mileage=mileage))
        clock.advance(hours=1)

    assert results[2]["flags"] == ["rollback"]
    assert results[2]["mileage_updated"] is False
    assert results[3]["flags"] == ["rollback"]

    rollbacks = await store.list_incidents(vehicle.id, kind="rollback")
    assert len(rollbacks) == 1
    assert rollbacks[0].iot_verified is True
    assert rollbacks[0].previous_mileage == 10_020
    assert (await store.get_vehicle(vehicle.id)).risk_score == 40
    assert len(await store.list_telemetry(vehicle.id)) == 4

    clock.advance(hours=25)
    await services.telemetry.ingest(vin=VIN, mileage=9_700)
    assert len(await store.list_incidents(vehicle.id, kind="rollback")) == 2
    assert (await store.get_vehicle(vehicle.id)).risk_score == 80
    assert len(bus.drain(MILEAGE_INCIDENTS_TOPIC)) == 2


@pytest.mark.asyncio
async def test_current_mileage_is_running_maximum(services, store, clock):
    vehicle = await _vehicle(services, mileage=0)
    seen = 0
    for mileage in [100, 300, 250, 400, 50, 420]:
        await services.telemetry.ingest(vin=VIN, mileage=mileage)
        seen = max(seen, mileage)
        assert (await store.get_vehicle(vehicle.id)).current_mileage == seen
        clock.advance(hours=6)


@pytest.mark.asyncio
async def test_high_rate_is_informational(services, store, clock):
    vehicle = await _vehicle(services)
    await services.telemetry.ingest(vin=VIN, mileage=10_000)
    clock.advance(days=1)
    result = await services.telemetry.ingest(vin=VIN, mileage=13_000)

    assert result["flags"] == ["high-rate"]
    assert result["mileage_updated"] is True
    incidents = await store.list_incidents(vehicle.id, kind="high-rate")
    assert len(incidents) == 1
    assert incidents[0].severity == "high"
    assert (await store.get_vehicle(vehicle.id)).risk_score == 0


@pytest.mark.asyncio
async def test_rollback_compares_against_latest_telemetry_only(services, store, clock):
    vehicle = await _vehicle(services, mileage=90_000)
    result = await services.telemetry.ingest(vin=VIN, mileage=10_000)
    assert result["flags"] == []
    assert await store.list_incidents(vehicle.id) == []


@pytest.mark.asyncio
async def test_maintenance_alerts_are_deduplicated(services, store, clock, bus):
    vehicle = await _vehicle(services)
    first = await services.telemetry.ingest(
        vin=VIN, mileage=10_000, battery_voltage=11.0, humidity=90.0, fuel_level=4.0,
    )
    assert first["alerts"] == [
        "Low battery voltage: 11.0V",
        "High humidity detected (90.0%). Possible leak.",
        "Low fuel level: 4.0%",
    ]
    clock.advance(hours=2)
    second = await services.telemetry.ingest(vin=VIN, mileage=10_010, battery_voltage=11.1)
    assert second["alerts"] == ["Low battery voltage: 11.1V"]

    assert len(await store.list_incidents(vehicle.id, kind="maintenance_battery")) == 1
    assert len(await store.list_incidents(vehicle.id, kind="maintenance_leak")) == 1
    assert len(await store.list_incidents(vehicle.id)) == 2
    assert (await store.get_vehicle(vehicle.id)).risk_score == 0
    assert len(bus.drain(DEVICE_ALERTS_TOPIC)) == 2
    assert bus.drain(MILEAGE_INCIDENTS_TOPIC) == []

    clock.advance(hours=24)
    await services.telemetry.ingest(vin=VIN, mileage=10_020, battery_voltage=11.0)
    assert len(await store.list_incidents(vehicle.id, kind="maintenance_battery")) == 2


@pytest.mark.asyncio
async def test_alerts_use_updated_thresholds(services, clock):
    await _vehicle(services)
    await services.devices.sync_device(VIN)
    await services.devices.update_config(VIN, {"fuel_low_threshold": 30})
    result = await services.telemetry.ingest(vin=VIN, mileage=10_000, fuel_level=25.0)
    assert result["alerts"] == ["Low fuel level: 25.0%"]


@pytest.mark.asyncio
async def test_engine_events_record_trip_updates(services, store, clock):
    vehicle = await _vehicle(services)
    await services.telemetry.ingest(vin=VIN, mileage=10_000, event_type="engine_start", engine_running=True)
    clock.advance(hours=1)
    await services.telemetry.ingest(vin=VIN, mileage=10_040, event_type="engine_stop")
    clock.advance(hours=1)
    await services.telemetry.ingest(vin=VIN, mileage=10_040)

    trips = await store.list_events(vehicle.id, event_type="trip_update")
    assert [e.description for e in trips] == ["Engine stopped at 10040 km", "Engine started at 10000 km"]
    assert all(e.verified_by_iot for e in trips)


@pytest.mark.asyncio
async def test_ingest_validation(services):
    await _vehicle(services)
    with pytest.raises(NotFoundError):
        await services.telemetry.ingest(vin="1HGCM82633A123456", mileage=10)
    with pytest.raises(InvalidInputError):
        await services.telemetry.ingest(vin=VIN, mileage=-1)
    with pytest.raises(InvalidInputError):
        await services.telemetry.ingest(vin=VIN, mileage=None)
    with pytest.raises(InvalidInputError):
        await services.telemetry.ingest(vin=VIN, mileage=10, event_type="ignition")


@pytest.mark.asyncio
async def test_history_latest_and_stats(services, clock):
    await _vehicle(services)
    assert (await services.telemetry.latest(VIN))["iot_connected"] is False

    for mileage in [10_000, 10_100, 10_300]:
        await services.telemetry.ingest(vin=VIN, mileage=mileage, event_type="engine_start")
        clock.advance(days=1)

    history = await services.telemetry.history(VIN, limit=2)
    assert history["total_records"] == 2
    assert [r["mileage"] for r in history["telemetry"]] == [10_300, 10_100]

    latest = await services.telemetry.latest(VIN)
    assert latest["data"]["mileage"] == 10_300
    assert latest["iot_connected"] is False

    stats = await services.telemetry.stats(VIN, days=10)
    assert stats["total_data_points"] == 3
    assert stats["mileage_stats"]["total_mileage_driven"] == 300
    assert stats["mileage_stats"]["average_daily_mileage"] == 30
    assert stats["usage"]["engine_starts"] == 3

    await services.telemetry.ingest(vin=VIN, mileage=10_350)
    clock.advance(minutes=30)
    assert (await services.telemetry.latest(VIN))["iot_connected"] is True
