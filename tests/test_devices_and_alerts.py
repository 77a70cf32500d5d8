from datetime import datetime, timezone

import pytest

from provenance.alerts import evaluate_alerts
from provenance.config import DeviceDefaults
from provenance.data_models import DeviceConfig, Vehicle
from provenance.errors import InvalidInputError, NotFoundError
from service.devices import DeviceConfigService
from service.memory import InMemoryStore
from service.storage import RedisCache

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
VIN = "1HGCM82633A123456"


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def devices(store):
    return DeviceConfigService(
        vehicles=store,
        configs=store,
        telemetry=store,
        cache=RedisCache(redis_url="redis://127.0.0.1:1/0"),
        clock=lambda: NOW,
    )


async def _vehicle(store: InMemoryStore) -> Vehicle:
    return await store.insert_vehicle(Vehicle(id="v1", vin=VIN, make="Honda", model="Accord", year=2003))


def test_defaults_are_scaled_integers():
    config = DeviceConfig.with_defaults("v1", VIN, NOW)
    assert config.battery_low_threshold_x100 == 1150
    assert config.fuel_low_threshold_x100 == 1000
    assert config.humidity_high_threshold_x100 == 8000
    assert config.smoothing_alpha_fuel_x100 == 10
    assert config.smoothing_alpha_battery_x100 == 30

    public = config.to_public()
    assert public["battery_low_threshold"] == 11.5
    assert public["active_interval"] == 10_000
    assert public["idle_interval"] == 1_800_000
    assert public["smoothing"] == {"fuel": 0.1, "battery": 0.3}
    assert public["enabled"] is True


def test_alerts_for_each_threshold():
    config = DeviceConfig.with_defaults("v1", VIN, NOW)
    alerts = evaluate_alerts(config, battery_voltage=11.2, humidity=85.0, fuel_level=5.0)
    assert [a.code for a in alerts] == ["battery_low", "humidity_high", "fuel_low"]
    assert alerts[0].message == "Low battery voltage: 11.2V"
    assert alerts[0].incident_kind == "maintenance_battery"
    assert alerts[1].incident_kind == "maintenance_leak"
    assert alerts[2].incident_kind is None


def test_alerts_on_exact_threshold_do_not_fire():
    config = DeviceConfig.with_defaults("v1", VIN, NOW)
    assert evaluate_alerts(config, battery_voltage=11.5, humidity=80.0, fuel_level=10.0) == []


def test_zero_readings_still_count():
    config = DeviceConfig.with_defaults("v1", VIN, NOW)
    codes = [a.code for a in evaluate_alerts(config, battery_voltage=0.0, fuel_level=0.0)]
    assert codes == ["battery_low", "fuel_low"]


def test_missing_readings_are_skipped():
    config = DeviceConfig.with_defaults("v1", VIN, NOW)
    assert evaluate_alerts(config) == []


@pytest.mark.asyncio
async def test_get_config_creates_lazily(store, devices):
    await _vehicle(store)
    assert await store.get_device_config("v1") is None
    public = await devices.get_config(VIN.lower())
    assert public["target_vin"] == VIN
    assert await store.get_device_config("v1") is not None


@pytest.mark.asyncio
async def test_get_config_unknown_vin(devices):
    with pytest.raises(NotFoundError):
        await devices.get_config(VIN)


@pytest.mark.asyncio
async def test_update_requires_prior_sync(store, devices):
    await _vehicle(store)
    with pytest.raises(NotFoundError):
        await devices.update_config(VIN, {"fuel_low_threshold": 15})


@pytest.mark.asyncio
async def test_update_scales_and_invalidates_cache(store, devices):
    await _vehicle(store)
    await devices.sync_device(VIN)
    before = await devices.get_config(VIN)
    assert before["fuel_low_threshold"] == 10.0

    updated = await devices.update_config(
        VIN, {"fuel_low_threshold": 15.25, "smoothing_alpha_fuel": 0.2, "enabled": False, "idle_interval": None},
    )
    assert updated["fuel_low_threshold"] == 15.25
    assert updated["smoothing"]["fuel"] == 0.2
    assert updated["enabled"] is False
    assert updated["idle_interval"] == 1_800_000

    stored = await store.get_device_config("v1")
    assert stored.fuel_low_threshold_x100 == 1525
    assert (await devices.get_config(VIN))["fuel_low_threshold"] == 15.25


@pytest.mark.asyncio
async def test_update_rejects_out_of_range(store, devices):
    await _vehicle(store)
    await devices.sync_device(VIN)
    with pytest.raises(InvalidInputError):
        await devices.update_config(VIN, {"humidity_high_threshold": 140})
    with pytest.raises(InvalidInputError):
        await devices.update_config(VIN, {"unknown_field": 1})


@pytest.mark.asyncio
async def test_sync_stamps_last_sync(store, devices):
    await _vehicle(store)
    result = await devices.sync_device(VIN)
    assert result["vin"] == VIN
    assert result["last_sync"] is None
    assert result["config"]["last_sync"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_custom_defaults(store):
    await _vehicle(store)
    devices = DeviceConfigService(
        vehicles=store, configs=store, telemetry=store,
        defaults=DeviceDefaults(fuel_low_threshold=20.0), clock=lambda: NOW,
    )
    assert (await devices.get_config(VIN))["fuel_low_threshold"] == 20.0
