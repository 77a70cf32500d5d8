from __future__ import annotations

import logging
from typing import Any

from provenance.config import DeviceDefaults
from provenance.data_models import DeviceConfig, Vehicle, to_scaled
from provenance.errors import InvalidInputError, NotFoundError
from provenance.vin import normalize_vin
from service.clock import Clock, utcnow
from service.repositories import DeviceConfigRepository, TelemetryRepository, VehicleRepository
from service.storage import RedisCache

logger = logging.getLogger(__name__)

# update key -> (stored attribute, scaled to hundredths, lower bound, upper bound)
_UPDATABLE: dict[str, tuple[str, bool, float, float | None]] = {
    "active_interval": ("active_interval_ms", False, 1, None),
    "idle_interval": ("idle_interval_ms", False, 1, None),
    "battery_low_threshold": ("battery_low_threshold_x100", True, 0, None),
    "fuel_low_threshold": ("fuel_low_threshold_x100", True, 0, 100),
    "humidity_high_threshold": ("humidity_high_threshold_x100", True, 0, 100),
    "smoothing_alpha_fuel": ("smoothing_alpha_fuel_x100", True, 0, 1),
    "smoothing_alpha_battery": ("smoothing_alpha_battery_x100", True, 0, 1),
}


class DeviceConfigService:
    def __init__(
        self,
        *,
        vehicles: VehicleRepository,
        configs: DeviceConfigRepository,
        telemetry: TelemetryRepository,
        cache: RedisCache | None = None,
        defaults: DeviceDefaults | None = None,
        cache_ttl_seconds: int = 3_600,
        clock: Clock = utcnow,
    ) -> None:
        self.vehicles = vehicles
        self.configs = configs
        self.telemetry = telemetry
        self.cache = cache
        self.defaults = defaults or DeviceDefaults()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.clock = clock

    @staticmethod
    def _cache_key(vin: str) -> str:
        return f"device_config:{vin}"

    async def vehicle_by_vin(self, vin: str) -> Vehicle:
        normalized = normalize_vin(vin)
        vehicle = await self.vehicles.get_vehicle_by_vin(normalized)
        if vehicle is None:
            raise NotFoundError(f"Car with VIN {normalized} not found", {"vin": normalized})
        return vehicle

    async def get_or_create(self, vehicle: Vehicle) -> DeviceConfig:
        config = await self.configs.get_device_config(vehicle.id)
        if config is not None:
            return config
        created = await self.configs.insert_device_config(
            DeviceConfig.with_defaults(vehicle.id, vehicle.vin, self.clock(), self.defaults)
        )
        logger.info("Created default device config for %s", vehicle.vin)
        return created

    async def get_config(self, vin: str) -> dict[str, Any]:
        vehicle = await self.vehicle_by_vin(vin)
        if self.cache is not None:
            cached = await self.cache.get_json(self._cache_key(vehicle.vin))
            if cached is not None:
                return cached
        public = (await self.get_or_create(vehicle)).to_public()
        if self.cache is not None:
            await self.cache.set_json(self._cache_key(vehicle.vin), public, ttl_seconds=self.cache_ttl_seconds)
        return public

    async def update_config(self, vin: str, updates: dict[str, Any]) -> dict[str, Any]:
        vehicle = await self.vehicle_by_vin(vin)
        config = await self.configs.get_device_config(vehicle.id)
        if config is None:
            raise NotFoundError("IoT config not found. Device needs to sync first.", {"vin": vehicle.vin})

        for key, value in updates.items():
            if value is None:
                continue
            if key == "enabled":
                config.enabled = bool(value)
                continue
            if key not in _UPDATABLE:
                raise InvalidInputError("Unknown device config field", {"field": key})
            attr, scaled, low, high = _UPDATABLE[key]
            if value < low or (high is not None and value > high):
                raise InvalidInputError("Device config value out of range", {"field": key, "value": value})
            setattr(config, attr, to_scaled(value) if scaled else int(value))

        config.updated_at = self.clock()
        await self.configs.save_device_config(config)
        if self.cache is not None:
            await self.cache.delete(self._cache_key(vehicle.vin))
        logger.info("Device config updated for %s: %s", vehicle.vin, sorted(k for k, v in updates.items() if v is not None))
        return config.to_public()

    async def sync_device(self, vin: str) -> dict[str, Any]:
        vehicle = await self.vehicle_by_vin(vin)
        config = await self.get_or_create(vehicle)
        config.last_sync = self.clock()
        await self.configs.save_device_config(config)
        if self.cache is not None:
            await self.cache.delete(self._cache_key(vehicle.vin))
        last = await self.telemetry.latest_telemetry(vehicle.id)
        return {
            "vin": vehicle.vin,
            "current_mileage": vehicle.current_mileage,
            "last_sync": last.recorded_at.isoformat() if last else None,
            "config": config.to_public(),
        }
