from __future__ import annotations

import logging
from datetime import datetime
from uuid import uuid4

from provenance.data_models import MileageObservation, Source
from provenance.errors import InvalidInputError
from service.clock import ensure_utc
from service.repositories import ObservationRepository

logger = logging.getLogger(__name__)

SOURCES: tuple[str, ...] = ("manual", "iot")


def validate_mileage(mileage: object) -> int:
    if isinstance(mileage, bool) or not isinstance(mileage, int):
        raise InvalidInputError("Mileage must be an integer", {"mileage": mileage})
    if mileage < 0:
        raise InvalidInputError("Mileage cannot be negative", {"mileage": mileage})
    return mileage


class MileageLedger:
    """Append-only mileage history per vehicle.

    Storage only: detection and scoring are driven by the callers. There is
    no edit or delete; a correction is a new observation.
    """

    def __init__(self, observations: ObservationRepository) -> None:
        self.observations = observations

    async def append(
        self,
        vehicle_id: str,
        *,
        mileage: int,
        observed_at: datetime,
        source: Source,
        verified: bool = False,
        context: str | None = None,
        event_id: str | None = None,
        telemetry_id: str | None = None,
    ) -> MileageObservation:
        validate_mileage(mileage)
        if source not in SOURCES:
            raise InvalidInputError("Unknown observation source", {"source": source})
        observation = MileageObservation(
            id=str(uuid4()),
            vehicle_id=vehicle_id,
            mileage=mileage,
            observed_at=ensure_utc(observed_at),
            source=source,
            verified=verified,
            context=context,
            event_id=event_id,
            telemetry_id=telemetry_id,
        )
        stored = await self.observations.append_observation(observation)
        logger.debug("Ledger append %s: %d km from %s (seq %d)", vehicle_id, mileage, source, stored.sequence)
        return stored

    async def history(
        self,
        vehicle_id: str,
        *,
        source: Source | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[MileageObservation]:
        rows = await self.observations.list_observations(vehicle_id, source=source, since=since, until=until)
        return rows[:limit] if limit is not None else rows

    async def last_observation(self, vehicle_id: str, source: Source | None = None) -> MileageObservation | None:
        return await self.observations.latest_observation(vehicle_id, source)
