"""Rollup notification transport between ingestion and aggregation.

Ingestion publishes one notification per stored reading (fire-and-forget);
the aggregation engine's workers consume them. Two backends: an in-process
asyncio queue (single process, default) and a Redis Stream consumer group
(multiple API processes sharing one aggregation pool).
"""

import asyncio
import json
import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
import redis.asyncio as aioredis

from sensorhub.core.metrics import set_rollup_queue_depth

logger = structlog.get_logger()

STREAM_NAME = "rollups:stream"
GROUP_NAME = "rollup-workers"


def numeric_value(metrics: dict | None, field: str) -> float | None:
    """The rollup field as a float, or None when absent or not numeric."""
    if not metrics:
        return None
    value = metrics.get(field)
    # bool is an int subclass; it is not a measurement.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    if not math.isfinite(value):
        return None
    return value


class RollupQueueFull(Exception):
    """The queue refused a notification."""


@dataclass
class RollupNotification:
    """A reading landed in (device, hour); ``replaced`` is the overwritten value.

    ``ingested_at`` is when the store accepted the write; a refresh that
    already saw that write makes the notification a no-op.
    """

    device_id: uuid.UUID
    time: datetime
    value: float | None
    replaced: float | None = None
    ingested_at: datetime | None = None

    def to_payload(self) -> str:
        return json.dumps({
            "device_id": str(self.device_id),
            "time": self.time.isoformat(),
            "value": self.value,
            "replaced": self.replaced,
            "ingested_at": self.ingested_at.isoformat() if self.ingested_at else None,
        })

    @classmethod
    def from_payload(cls, raw: str | bytes) -> "RollupNotification":
        if isinstance(raw, bytes):
            raw = raw.decode()
        data = json.loads(raw)
        return cls(
            device_id=uuid.UUID(data["device_id"]),
            time=datetime.fromisoformat(data["time"]),
            value=data.get("value"),
            replaced=data.get("replaced"),
            ingested_at=datetime.fromisoformat(data["ingested_at"]) if data.get("ingested_at") else None,
        )


class RollupQueue(ABC):
    """At-least-once delivery of rollup notifications."""

    async def start(self) -> None:
        """Prepare the transport (create consumer groups etc.)."""

    async def close(self) -> None:
        """Release transport resources."""

    @abstractmethod
    async def publish(self, notification: RollupNotification) -> None:
        ...

    @abstractmethod
    async def consume(
        self, consumer: str, count: int, timeout: float
    ) -> list[tuple[Any, RollupNotification]]:
        """Up to ``count`` notifications; waits at most ``timeout`` seconds (0 = no wait)."""

    @abstractmethod
    async def ack(self, tokens: list[Any]) -> None:
        ...

    @abstractmethod
    async def depth(self) -> int:
        ...


class InMemoryRollupQueue(RollupQueue):
    """asyncio.Queue backend. Notifications are lost on process exit."""

    def __init__(self, maxsize: int = 100000):
        self._queue: asyncio.Queue[RollupNotification] = asyncio.Queue(maxsize=maxsize)

    async def publish(self, notification: RollupNotification) -> None:
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            raise RollupQueueFull("Rollup queue is full")
        set_rollup_queue_depth(self._queue.qsize())

    async def consume(
        self, consumer: str, count: int, timeout: float
    ) -> list[tuple[Any, RollupNotification]]:
        items: list[tuple[Any, RollupNotification]] = []
        if self._queue.empty():
            if timeout <= 0:
                return items
            try:
                first = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return items
            items.append((None, first))
            self._queue.task_done()

        while len(items) < count:
            try:
                items.append((None, self._queue.get_nowait()))
                self._queue.task_done()
            except asyncio.QueueEmpty:
                break

        set_rollup_queue_depth(self._queue.qsize())
        return items

    async def ack(self, tokens: list[Any]) -> None:
        # Items leave the in-process queue on consume; there is nothing to redeliver.
        return None

    async def depth(self) -> int:
        return self._queue.qsize()


class RedisStreamRollupQueue(RollupQueue):
    """Redis Streams backend using a consumer group.

    Unacknowledged entries stay in the group's pending list. A consumer walks
    its own pending entries from id "0" with an advancing cursor before it
    takes new ones, and walks them again every ``rescan_interval`` seconds so
    entries whose rollup update failed are redelivered.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        maxlen: int = 100000,
        rescan_interval: float = 30.0,
    ):
        self.redis = redis_client
        self.maxlen = maxlen
        self.rescan_interval = rescan_interval
        # consumer -> last pending id read; None once its backlog is empty
        self._backlog_cursor: dict[str, Any] = {}
        self._rescan_at: dict[str, float] = {}

    async def start(self) -> None:
        try:
            await self.redis.xgroup_create(STREAM_NAME, GROUP_NAME, id="0", mkstream=True)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def close(self) -> None:
        await self.redis.aclose()

    async def publish(self, notification: RollupNotification) -> None:
        await self.redis.xadd(
            STREAM_NAME,
            {
                "device_id": str(notification.device_id),
                "payload": notification.to_payload(),
            },
            maxlen=self.maxlen,
            approximate=True,
        )

    async def consume(
        self, consumer: str, count: int, timeout: float
    ) -> list[tuple[Any, RollupNotification]]:
        cursor = self._backlog_cursor.get(consumer, "0")
        if cursor is None and time.monotonic() >= self._rescan_at.get(consumer, 0.0):
            cursor = "0"

        while cursor is not None:
            items, last_id = await self._read(consumer, cursor, count, block=None)
            if last_id is None:
                # Backlog walked to the end; failures are picked up on the next walk.
                self._backlog_cursor[consumer] = None
                self._rescan_at[consumer] = time.monotonic() + self.rescan_interval
                break
            self._backlog_cursor[consumer] = cursor = last_id
            if items:
                return items

        block = int(timeout * 1000) if timeout > 0 else None
        items, _ = await self._read(consumer, ">", count, block=block)
        return items

    async def _read(
        self, consumer: str, start_id: str, count: int, block: int | None
    ) -> tuple[list[tuple[Any, RollupNotification]], Any]:
        messages = await self.redis.xreadgroup(
            groupname=GROUP_NAME,
            consumername=consumer,
            streams={STREAM_NAME: start_id},
            count=count,
            block=block,
        )

        items: list[tuple[Any, RollupNotification]] = []
        unreadable = []
        last_id = None
        for _stream, msg_list in messages or []:
            for msg_id, msg_data in msg_list:
                last_id = msg_id
                # Trimmed entries come back from the pending list without fields.
                msg_data = msg_data or {}
                raw_payload = msg_data.get(b"payload") or msg_data.get("payload")
                if raw_payload:
                    items.append((msg_id, RollupNotification.from_payload(raw_payload)))
                else:
                    unreadable.append(msg_id)

        if unreadable:
            logger.warning("Dropping unreadable rollup entries", count=len(unreadable))
            await self.ack(unreadable)
        return items, last_id

    async def ack(self, tokens: list[Any]) -> None:
        if tokens:
            await self.redis.xack(STREAM_NAME, GROUP_NAME, *tokens)

    async def depth(self) -> int:
        """Entries not yet acknowledged: delivered-but-pending plus undelivered lag."""
        depth = 0
        for group in await self.redis.xinfo_groups(STREAM_NAME):
            name = group.get("name")
            if isinstance(name, bytes):
                name = name.decode()
            if name != GROUP_NAME:
                continue
            depth = int(group.get("pending") or 0) + int(group.get("lag") or 0)
        set_rollup_queue_depth(depth)
        return depth
