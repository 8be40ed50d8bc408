"""HTTP telemetry ingestion and query endpoints."""

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import Field

from sensorhub.api.schemas import CamelModel
from sensorhub.core.deps import get_ingestion_service, get_query_service
from sensorhub.core.errors import NotFoundError, ValidationError
from sensorhub.services.telemetry_ingestion_service import TelemetryIngestionService
from sensorhub.services.telemetry_query_service import TelemetryQueryService

router = APIRouter()


# ==================== Schemas ====================

class TelemetryIngestRequest(CamelModel):
    """Telemetry payload from a device."""
    device_id: str
    timestamp: datetime | None = None
    metrics: Any = None


class TelemetryBatchRequest(CamelModel):
    items: list[TelemetryIngestRequest] = Field(..., min_length=1, max_length=1000)


class ReadingResponse(CamelModel):
    id: str
    device_id: str
    timestamp: str
    metrics: dict[str, Any]


# ==================== Ingestion ====================

@router.post("", response_model=ReadingResponse, status_code=status.HTTP_201_CREATED)
async def ingest_telemetry(
    payload: TelemetryIngestRequest,
    service: TelemetryIngestionService = Depends(get_ingestion_service),
):
    """Store one reading. The device must already be registered."""
    reading = await service.ingest(payload.device_id, payload.metrics, payload.timestamp)
    return ReadingResponse.model_validate(reading.to_dict())


@router.post("/batch", status_code=status.HTTP_207_MULTI_STATUS)
async def ingest_telemetry_batch(
    payload: TelemetryBatchRequest,
    service: TelemetryIngestionService = Depends(get_ingestion_service),
):
    """Store many readings; each item succeeds or fails on its own."""
    results = await service.ingest_batch([
        {"device_id": item.device_id, "timestamp": item.timestamp, "metrics": item.metrics}
        for item in payload.items
    ])
    accepted = sum(1 for r in results if r.error is None)
    return JSONResponse(
        status_code=status.HTTP_207_MULTI_STATUS,
        content={
            "accepted": accepted,
            "rejected": len(results) - accepted,
            "results": [r.to_dict() for r in results],
        },
    )


# ==================== Queries ====================

@router.get("")
async def query_telemetry(
    device_id: str | None = Query(None, alias="deviceId"),
    start_time: datetime | None = Query(None, alias="from"),
    end_time: datetime | None = Query(None, alias="to"),
    limit: int | None = Query(None, ge=1),
    service: TelemetryQueryService = Depends(get_query_service),
) -> dict:
    """Readings for a device, newest first. ``limit`` is capped server-side."""
    if not device_id:
        raise ValidationError("deviceId is required")
    return await service.raw(device_id, start_time, end_time, limit)


@router.get("/rollups")
async def query_rollups(
    device_id: str | None = Query(None, alias="deviceId"),
    start_time: datetime | None = Query(None, alias="from"),
    end_time: datetime | None = Query(None, alias="to"),
    service: TelemetryQueryService = Depends(get_query_service),
) -> dict:
    """Hourly rollups, oldest first. Defaults to the last 24 hours."""
    if not device_id:
        raise ValidationError("deviceId is required")
    end_time = end_time or datetime.now(timezone.utc)
    start_time = start_time or end_time - timedelta(hours=24)
    return await service.hourly(device_id, start_time, end_time)


@router.get("/latest", response_model=ReadingResponse)
async def latest_reading(
    device_id: str | None = Query(None, alias="deviceId"),
    service: TelemetryQueryService = Depends(get_query_service),
):
    """Most recent reading of a device."""
    if not device_id:
        raise ValidationError("deviceId is required")
    reading = await service.latest(device_id)
    if reading is None:
        raise NotFoundError(f"Device {device_id} has no readings")
    return ReadingResponse.model_validate(reading)
