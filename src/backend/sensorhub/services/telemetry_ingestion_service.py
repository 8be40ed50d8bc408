"""Telemetry ingestion service.

Validates a measurement against the device's declared telemetry schema,
appends it to the reading store, advances the device's liveness state and
signals the aggregation engine. The store write is the only step that can
fail the request; rollup notification is fire-and-forget.
"""

import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from sensorhub.core.errors import NotFoundError, TelemetryError, ValidationError
from sensorhub.core.metrics import ingestion_duration, record_ingested, record_rejected
from sensorhub.models.reading import DeviceReading
from sensorhub.services.device_registry import DeviceRegistry
from sensorhub.services.reading_store import ReadingStore
from sensorhub.services.rollup_queue import RollupNotification, RollupQueue, numeric_value

logger = structlog.get_logger()


def normalize_timestamp(timestamp: datetime | None) -> datetime:
    """UTC-aware timestamp; naive values are read as UTC, missing means now."""
    if timestamp is None:
        return datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def _is_json_value(value: Any) -> bool:
    if value is None or isinstance(value, (bool, str)):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, int):
        return True
    if isinstance(value, list):
        return all(_is_json_value(v) for v in value)
    if isinstance(value, dict):
        return all(isinstance(k, str) and _is_json_value(v) for k, v in value.items())
    return False


def validate_metrics(metrics: Any, schema_lookup: dict[str, str] | None = None) -> dict:
    """Validate a metrics map, against the device's schema when it declares one.

    Raises:
        ValidationError: If the map is empty or malformed, or a key or type
            does not match the schema.
    """
    if not isinstance(metrics, dict) or not metrics:
        raise ValidationError("metrics must be a non-empty object")

    validated = {}

    for key, value in metrics.items():
        if not isinstance(key, str) or not key:
            raise ValidationError("metric names must be non-empty strings")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(f"Metric {key} is not a finite number")
        if not _is_json_value(value):
            raise ValidationError(f"Metric {key} is not a number or JSON value")

        if schema_lookup:
            if key not in schema_lookup:
                raise ValidationError(f"Unknown metric key: {key}")

            expected_type = schema_lookup[key]

            # bool before numeric: isinstance(True, int) is True
            if expected_type == "boolean":
                if not isinstance(value, bool):
                    raise ValidationError(
                        f"Metric {key} expected boolean, got {type(value).__name__}"
                    )
            elif expected_type == "numeric":
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ValidationError(
                        f"Metric {key} expected numeric, got {type(value).__name__}"
                    )
            elif expected_type == "string":
                if not isinstance(value, str):
                    raise ValidationError(
                        f"Metric {key} expected string, got {type(value).__name__}"
                    )

        validated[key] = value

    return validated


@dataclass
class BatchItemResult:
    index: int
    status_code: int
    reading: DeviceReading | None = None
    error: TelemetryError | None = None

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"index": self.index, "status": self.status_code}
        if self.reading is not None:
            body["reading"] = self.reading.to_dict()
        if self.error is not None:
            body.update(self.error.to_dict())
        return body


class TelemetryIngestionService:
    """Accepts measurements from field devices."""

    def __init__(
        self,
        registry: DeviceRegistry,
        store: ReadingStore,
        queue: RollupQueue | None = None,
        rollup_field: str = "value",
    ):
        self.registry = registry
        self.store = store
        self.queue = queue
        self.rollup_field = rollup_field

    async def ingest(
        self,
        device_id: uuid.UUID | str,
        metrics: Any,
        timestamp: datetime | None = None,
    ) -> DeviceReading:
        """Validate, store and signal one measurement.

        Raises:
            NotFoundError: If the device is not registered.
            ValidationError: If the metrics are malformed.
            StorageError: If the reading cannot be stored.
        """
        started = time.perf_counter()
        try:
            device = await self.registry.find(device_id)
            if device is None:
                raise NotFoundError(f"Device {device_id} not found")
            device_id = device.id

            validated = validate_metrics(metrics, device.schema_lookup)
            ts = normalize_timestamp(timestamp)

            result = await self.store.append(device_id, ts, validated)
        except TelemetryError as e:
            record_rejected(e.kind)
            raise

        record_ingested(result.overwritten)
        if result.overwritten:
            logger.info("Reading overwritten", device_id=str(device_id), time=ts.isoformat())

        await self.registry.mark_seen(device_id, ts)
        await self._notify(device_id, ts, validated, result.replaced, result.reading.ingested_at)

        ingestion_duration.observe(time.perf_counter() - started)
        return result.reading

    async def ingest_batch(self, items: list[dict]) -> list[BatchItemResult]:
        """Ingest each item independently; one bad item does not fail the rest."""
        results = []
        for index, item in enumerate(items):
            try:
                reading = await self.ingest(
                    item["device_id"],
                    item.get("metrics"),
                    item.get("timestamp"),
                )
            except TelemetryError as e:
                results.append(BatchItemResult(index=index, status_code=e.status_code, error=e))
            else:
                results.append(BatchItemResult(index=index, status_code=201, reading=reading))
        return results

    async def _notify(
        self,
        device_id: uuid.UUID,
        ts: datetime,
        metrics: dict,
        replaced: dict | None,
        ingested_at: datetime | None = None,
    ) -> None:
        if self.queue is None:
            return
        value = numeric_value(metrics, self.rollup_field)
        old = numeric_value(replaced, self.rollup_field) if replaced is not None else None
        if value is None and old is None:
            return

        try:
            await self.queue.publish(
                RollupNotification(
                    device_id=device_id,
                    time=ts,
                    value=value,
                    replaced=old,
                    ingested_at=ingested_at,
                )
            )
        except Exception as e:
            # The reading is stored; the hour can be rebuilt with refresh().
            logger.error(
                "Rollup notification failed",
                device_id=str(device_id),
                time=ts.isoformat(),
                error=str(e),
            )
