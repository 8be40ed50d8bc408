"""Device registry API endpoints."""

import math
from typing import Any

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from sensorhub.api.schemas import CamelModel
from sensorhub.core.deps import get_device_registry, get_reading_store
from sensorhub.core.errors import ValidationError
from sensorhub.models.device import DeviceStatus, IoTDevice
from sensorhub.services.device_registry import DeviceRegistry
from sensorhub.services.reading_store import ReadingStore

router = APIRouter()

MAX_PAGE_SIZE = 100


# ==================== Schemas ====================

class SchemaItem(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: str = "numeric"


class DeviceCreate(CamelModel):
    """Register device request."""
    name: str = Field(..., min_length=1, max_length=200)
    device_type: str = Field(..., alias="type", min_length=1, max_length=50)
    village_id: str = Field(..., min_length=1, max_length=64)
    latitude: float | None = Field(None, ge=-90, le=90)
    longitude: float | None = Field(None, ge=-180, le=180)
    elevation: float | None = None
    location_name: str | None = Field(None, alias="location", max_length=200)
    config: dict | None = None
    telemetry_schema: list[SchemaItem] | None = Field(None, alias="schema")
    firmware_version: str | None = Field(None, alias="firmware", max_length=50)


class DeviceUpdate(CamelModel):
    """Partial update request; omitted fields are left unchanged."""
    name: str | None = Field(None, min_length=1, max_length=200)
    device_type: str | None = Field(None, alias="type", min_length=1, max_length=50)
    village_id: str | None = Field(None, min_length=1, max_length=64)
    latitude: float | None = Field(None, ge=-90, le=90)
    longitude: float | None = Field(None, ge=-180, le=180)
    elevation: float | None = None
    location_name: str | None = Field(None, alias="location", max_length=200)
    config: dict | None = None
    telemetry_schema: list[SchemaItem] | None = Field(None, alias="schema")
    firmware_version: str | None = Field(None, alias="firmware", max_length=50)
    status: DeviceStatus | None = None


class DeviceResponse(CamelModel):
    id: str
    name: str
    device_type: str = Field(..., alias="type")
    village_id: str
    latitude: float | None = None
    longitude: float | None = None
    elevation: float | None = None
    location_name: str | None = Field(None, alias="location")
    config: dict | None = None
    telemetry_schema: list | None = Field(None, alias="schema")
    firmware_version: str | None = Field(None, alias="firmware")
    status: str
    last_seen: str | None = None
    reading_count: int | None = None
    created_at: str
    updated_at: str


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class DeviceListResponse(CamelModel):
    devices: list[DeviceResponse]
    pagination: Pagination


class StatusHistoryEntry(CamelModel):
    old_status: str | None = None
    new_status: str
    changed_at: str
    reason: str | None = None


class StatusHistoryResponse(CamelModel):
    device_id: str
    history: list[StatusHistoryEntry]
    total: int


def device_to_response(device: IoTDevice, reading_count: int | None = None) -> DeviceResponse:
    return DeviceResponse(
        id=str(device.id),
        name=device.name,
        device_type=device.device_type,
        village_id=device.village_id,
        latitude=device.latitude,
        longitude=device.longitude,
        elevation=device.elevation,
        location_name=device.location_name,
        config=device.config,
        telemetry_schema=device.telemetry_schema,
        firmware_version=device.firmware_version,
        status=device.status,
        last_seen=device.last_seen.isoformat() if device.last_seen else None,
        reading_count=reading_count,
        created_at=device.created_at.isoformat(),
        updated_at=device.updated_at.isoformat(),
    )


def _attributes(payload: BaseModel, exclude_unset: bool = False) -> dict[str, Any]:
    data = payload.model_dump(exclude_unset=exclude_unset)
    if "telemetry_schema" in data and data["telemetry_schema"] is not None:
        data["telemetry_schema"] = [dict(item) for item in data["telemetry_schema"]]
    return data


# ==================== Endpoints ====================

@router.get("", response_model=DeviceListResponse)
async def list_devices(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    device_type: str | None = Query(None, alias="type"),
    device_status: str | None = Query(None, alias="status"),
    village_id: str | None = Query(None, alias="villageId"),
    registry: DeviceRegistry = Depends(get_device_registry),
    store: ReadingStore = Depends(get_reading_store),
):
    """List devices with reading counts, newest first. ``status`` is case-insensitive."""
    limit = min(limit, MAX_PAGE_SIZE)
    status_filter = None
    if device_status:
        try:
            status_filter = DeviceStatus(device_status.lower())
        except ValueError:
            raise ValidationError(f"Unknown status: {device_status}")

    devices, total = await registry.list_devices(
        device_type=device_type,
        status=status_filter,
        village_id=village_id,
        limit=limit,
        offset=(page - 1) * limit,
    )
    counts = await store.counts_for([d.id for d in devices])

    return DeviceListResponse(
        devices=[device_to_response(d, counts.get(d.id, 0)) for d in devices],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.post("", response_model=DeviceResponse, status_code=status.HTTP_201_CREATED)
async def register_device(
    payload: DeviceCreate,
    registry: DeviceRegistry = Depends(get_device_registry),
):
    """Register a device. It starts OFFLINE until its first reading."""
    device = await registry.register(**_attributes(payload))
    return device_to_response(device, 0)


@router.get("/{device_id}", response_model=DeviceResponse)
async def get_device(
    device_id: str,
    registry: DeviceRegistry = Depends(get_device_registry),
    store: ReadingStore = Depends(get_reading_store),
):
    device = await registry.get(device_id)
    return device_to_response(device, await store.count(device.id))


@router.patch("/{device_id}", response_model=DeviceResponse)
async def update_device(
    device_id: str,
    payload: DeviceUpdate,
    registry: DeviceRegistry = Depends(get_device_registry),
):
    """Partial update; only supplied fields change."""
    device = await registry.update_attributes(device_id, **_attributes(payload, exclude_unset=True))
    return device_to_response(device)


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_device(
    device_id: str,
    registry: DeviceRegistry = Depends(get_device_registry),
):
    """Delete a device. Rejected with 409 while readings exist unless cascade is configured."""
    await registry.delete(device_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{device_id}/status-history", response_model=StatusHistoryResponse)
async def get_status_history(
    device_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    registry: DeviceRegistry = Depends(get_device_registry),
):
    entries, total = await registry.status_history(device_id, limit=limit, offset=offset)
    return StatusHistoryResponse(
        device_id=str(device_id),
        history=[
            StatusHistoryEntry(
                old_status=e.old_status,
                new_status=e.new_status,
                changed_at=e.changed_at.isoformat(),
                reason=e.reason,
            )
            for e in entries
        ],
        total=total,
    )
