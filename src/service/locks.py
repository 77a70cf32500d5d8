from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol

from service.logging_config import vehicle_context


class VehicleLockBackend(Protocol):
    def vehicle_lock(self, vehicle_id: str) -> AbstractAsyncContextManager[None]:
        """Exclusive hold on one vehicle for everyone sharing the store."""
        ...


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class LockTable:
    """Process-local ``asyncio.Lock`` per key.

    An entry lives only while some task holds or waits on it.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    def is_locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()


class VehicleLocks:
    """Serializes the read-reference, evaluate, write sequence per vehicle.

    The lock itself comes from the store: ``InMemoryStore`` keeps a
    ``LockTable`` and ``PostgresStore`` takes a transaction-scoped advisory
    lock, so service instances in other processes sharing the same database
    are excluded too. Locks are not reentrant. Different vehicles never
    contend.
    """

    def __init__(self, backend: VehicleLockBackend | None = None) -> None:
        self._local = LockTable()
        self.backend = backend

    @asynccontextmanager
    async def hold(self, vehicle_id: str) -> AsyncIterator[None]:
        token = vehicle_context.set(vehicle_id)
        try:
            if self.backend is None:
                async with self._local.acquire(vehicle_id):
                    yield
            else:
                async with self.backend.vehicle_lock(vehicle_id):
                    yield
        finally:
            vehicle_context.reset(token)
