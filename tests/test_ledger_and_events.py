from datetime import datetime, timedelta, timezone

import pytest

from provenance.errors import ForbiddenError, FraudRejectedError, InvalidInputError, NotFoundError
from service.ledger import MileageLedger, validate_mileage
from service.memory import InMemoryStore
from service.messaging import MILEAGE_INCIDENTS_TOPIC, VEHICLE_BLOCKED_TOPIC, KafkaBus
from service.wiring import build_services

T0 = datetime(2025, 1, 10, 9, 0, tzinfo=timezone.utc)
VIN = "WVWZZZ1JZXW000001"


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


async def _setup(services, mileage: int | None = 50_000):
    owner = await services.vehicles.register_user("owner@example.com")
    vehicle = await services.vehicles.register_vehicle(
        vin=VIN, make="VW", model="Golf", year=1999, owner_id=owner.id, current_mileage=mileage,
    )
    return owner, vehicle


# ── Ledger ──────────────────────────────────────────────────────────


def test_validate_mileage():
    assert validate_mileage(0) == 0
    for bad in (-1, 1.5, "100", True):
        with pytest.raises(InvalidInputError):
            validate_mileage(bad)


@pytest.mark.asyncio
async def test_history_newest_first_with_insertion_tiebreak(store):
    ledger = MileageLedger(store)
    a = await ledger.append("v1", mileage=100, observed_at=T0, source="manual")
    b = await ledger.append("v1", mileage=300, observed_at=T0 + timedelta(days=2), source="iot")
    c = await ledger.append("v1", mileage=200, observed_at=T0, source="iot")
    await ledger.append("v2", mileage=999, observed_at=T0, source="iot")

    history = await ledger.history("v1")
    assert [o.id for o in history] == [b.id, c.id, a.id]
    assert a.sequence < b.sequence < c.sequence


@pytest.mark.asyncio
async def test_history_filters(store):
    ledger = MileageLedger(store)
    await ledger.append("v1", mileage=100, observed_at=T0, source="manual")
    await ledger.append("v1", mileage=200, observed_at=T0 + timedelta(days=1), source="iot")
    await ledger.append("v1", mileage=300, observed_at=T0 + timedelta(days=2), source="iot")

    assert [o.mileage for o in await ledger.history("v1", source="iot")] == [300, 200]
    assert [o.mileage for o in await ledger.history("v1", since=T0 + timedelta(days=1))] == [300, 200]
    assert [o.mileage for o in await ledger.history("v1", until=T0)] == [100]
    assert [o.mileage for o in await ledger.history("v1", limit=1)] == [300]
    assert (await ledger.last_observation("v1", source="manual")).mileage == 100
    assert await ledger.last_observation("v9") is None


@pytest.mark.asyncio
async def test_append_rejects_bad_input(store):
    ledger = MileageLedger(store)
    with pytest.raises(InvalidInputError):
        await ledger.append("v1", mileage=-5, observed_at=T0, source="manual")
    with pytest.raises(InvalidInputError):
        await ledger.append("v1", mileage=5, observed_at=T0, source="carrier-pigeon")


# ── Manual events ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_repeated_rollbacks_escalate_to_block(services, store, bus):
    owner, vehicle = await _setup(services)

    expected = [(40, "medium", "active"), (80, "high", "active"), (100, "high", "blocked")]
    for attempt, (score, level, status) in enumerate(expected):
        with pytest.raises(FraudRejectedError) as exc_info:
            await services.events.record_event(
                vehicle.id,
                event_type="service",
                event_date=T0 + timedelta(days=attempt + 1),
                mileage=49_000 - attempt,
                reported_by=owner.id,
            )
        assert exc_info.value.details["previous_mileage"] == 50_000
        assert exc_info.value.details["risk_score"] == score

        stored = await store.get_vehicle(vehicle.id)
        assert (stored.risk_score, stored.risk_level, stored.status) == (score, level, status)
        assert stored.current_mileage == 50_000

    assert await store.list_events(vehicle.id) == []
    assert [o.mileage for o in await services.ledger.history(vehicle.id)] == [50_000]
    assert len(bus.drain(MILEAGE_INCIDENTS_TOPIC)) == 3
    assert [m["risk_score"] for m in bus.drain(VEHICLE_BLOCKED_TOPIC)] == [100]


@pytest.mark.asyncio
async def test_reference_is_maximum_of_all_manual_entries(services, store):
    owner, vehicle = await _setup(services, mileage=10_000)
    await services.events.record_event(
        vehicle.id, event_type="service", event_date=T0 + timedelta(days=30), mileage=60_000, reported_by=owner.id,
    )
    # Back-dated entry above the registration value but below the peak.
    with pytest.raises(FraudRejectedError):
        await services.events.record_event(
            vehicle.id, event_type="inspection", event_date=T0 + timedelta(days=10), mileage=20_000,
            reported_by=owner.id,
        )


@pytest.mark.asyncio
async def test_accepted_event_advances_ledger_and_watermark(services, store):
    owner, vehicle = await _setup(services)
    event = await services.events.record_event(
        vehicle.id,
        event_type="service",
        event_date=T0 + timedelta(days=5),
        severity="info",
        mileage=52_000,
        cost=120.5,
        reported_by=owner.id,
    )
    assert event.verified_by_iot is False
    assert (await store.get_vehicle(vehicle.id)).current_mileage == 52_000

    latest = await services.ledger.last_observation(vehicle.id)
    assert latest.mileage == 52_000
    assert latest.event_id == event.id
    assert latest.source == "manual"


@pytest.mark.asyncio
async def test_event_without_mileage_skips_detection(services, store):
    owner, vehicle = await _setup(services)
    await services.events.record_event(
        vehicle.id, event_type="accident", event_date=T0, severity="high", reported_by=owner.id,
    )
    stored = await store.get_vehicle(vehicle.id)
    assert stored.risk_score == 20
    assert len(await services.ledger.history(vehicle.id)) == 1


@pytest.mark.asyncio
async def test_record_event_unknown_vehicle(services):
    with pytest.raises(NotFoundError):
        await services.events.record_event("missing", event_type="service", event_date=T0, mileage=1)


@pytest.mark.asyncio
async def test_update_and_delete_event_recompute(services, store):
    owner, vehicle = await _setup(services)
    other = await services.vehicles.register_user("other@example.com")
    event = await services.events.record_event(
        vehicle.id, event_type="accident", event_date=T0, severity="medium", reported_by=owner.id,
    )
    assert (await store.get_vehicle(vehicle.id)).risk_score == 0

    with pytest.raises(ForbiddenError):
        await services.events.update_event(event.id, {"severity": "high"}, other.id)
    with pytest.raises(InvalidInputError):
        await services.events.update_event(event.id, {"mileage": 10}, owner.id)

    updated = await services.events.update_event(event.id, {"severity": "high", "cost": 900.0}, owner.id)
    assert updated.severity == "high"
    assert (await store.get_vehicle(vehicle.id)).risk_score == 20

    with pytest.raises(ForbiddenError):
        await services.events.delete_event(event.id, other.id)
    await services.events.delete_event(event.id, owner.id)
    assert (await store.get_vehicle(vehicle.id)).risk_score == 0


@pytest.mark.asyncio
async def test_deleting_event_keeps_ledger_observation(services):
    owner, vehicle = await _setup(services)
    event = await services.events.record_event(
        vehicle.id, event_type="service", event_date=T0 + timedelta(days=1), mileage=51_000, reported_by=owner.id,
    )
    await services.events.delete_event(event.id, owner.id)
    assert [o.mileage for o in await services.ledger.history(vehicle.id)] == [51_000, 50_000]


@pytest.mark.asyncio
async def test_list_events_filters(services):
    owner, vehicle = await _setup(services)
    for day, (etype, sev) in enumerate([("service", "info"), ("accident", "high"), ("service", "low")]):
        await services.events.record_event(
            vehicle.id, event_type=etype, severity=sev, event_date=T0 + timedelta(days=day), reported_by=owner.id,
        )
    rows = await services.events.list_events(vehicle.id, event_type="service")
    assert [e.severity for e in rows] == ["low", "info"]
    rows = await services.events.list_events(vehicle.id, start=T0 + timedelta(days=1))
    assert len(rows) == 2


@pytest.mark.asyncio
async def test_deleting_incident_recomputes(services, store):
    owner, vehicle = await _setup(services)
    with pytest.raises(FraudRejectedError):
        await services.events.record_event(
            vehicle.id, event_type="service", event_date=T0, mileage=1_000, reported_by=owner.id,
        )
    incident = (await store.list_incidents(vehicle.id))[0]
    await services.risk.delete_incident(incident.id)
    assert (await store.get_vehicle(vehicle.id)).risk_score == 0
    with pytest.raises(NotFoundError):
        await services.risk.delete_incident(incident.id)


@pytest.mark.asyncio
async def test_risk_report(services):
    owner, vehicle = await _setup(services)
    with pytest.raises(FraudRejectedError):
        await services.events.record_event(
            vehicle.id, event_type="service", event_date=T0, mileage=1_000, reported_by=owner.id,
        )
    report = await services.risk.report(vehicle.id)
    assert report["risk_score"] == 40
    assert report["risk_level"] == "medium"
    assert report["status"] == "active"
    assert len(report["incidents"]) == 1
    assert report["incidents"][0]["kind"] == "rollback"
    assert report["recommendations"][0]["severity"] == "critical"
