from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any

from aiokafka import AIOKafkaProducer

logger = logging.getLogger(__name__)

MILEAGE_INCIDENTS_TOPIC = "mileage_incidents"
DEVICE_ALERTS_TOPIC = "device_alerts"
VEHICLE_BLOCKED_TOPIC = "vehicle_blocked"


class KafkaBus:
    """Publishes domain notifications keyed by VIN.

    When the broker cannot be reached messages land on per-topic in-process
    queues instead, which is also what tests read back.
    """

    def __init__(self, bootstrap_servers: str, client_id: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(asyncio.Queue)

    async def connect(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
        except Exception:
            logger.warning("Kafka unreachable at %s, queueing messages in-process", self.bootstrap_servers)
            self._producer = None

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(MILEAGE_INCIDENTS_TOPIC)
            return partitions is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await self._producer.send_and_wait(topic, value=value, key=encoded_key)
                return
            except Exception:
                logger.warning("Kafka publish to %s failed, queueing in-process", topic)
        await self._queues[topic].put(value)

    def drain(self, topic: str) -> list[dict[str, Any]]:
        queue = self._queues[topic]
        out: list[dict[str, Any]] = []
        while not queue.empty():
            out.append(queue.get_nowait())
        return out
