"""Device registry: identity, attributes and liveness state."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sensorhub.core.config import DeviceDeletePolicy
from sensorhub.core.errors import ConflictError, NotFoundError, StorageError, ValidationError
from sensorhub.core.metrics import record_status_transition
from sensorhub.models.device import IoTDevice, DeviceStatus
from sensorhub.models.device_status_history import DeviceStatusHistory
from sensorhub.models.rollup import HourlyRollup
from sensorhub.services.reading_store import ReadingStore

logger = structlog.get_logger()

REQUIRED_FIELDS = ("name", "device_type", "village_id")

EDITABLE_FIELDS = {
    "name",
    "device_type",
    "village_id",
    "latitude",
    "longitude",
    "elevation",
    "location_name",
    "config",
    "telemetry_schema",
    "firmware_version",
}

# Statuses an admin may set directly; ONLINE is only reached through heartbeats.
ADMIN_STATUSES = {DeviceStatus.OFFLINE, DeviceStatus.MAINTENANCE, DeviceStatus.ERROR}

SCHEMA_TYPES = {"numeric", "boolean", "string", "json"}


def parse_device_id(value: uuid.UUID | str) -> uuid.UUID | None:
    """Device ids are opaque to callers; anything that is not one of ours is unknown."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def validate_telemetry_schema(schema: Any) -> list[dict]:
    """Check a declared telemetry schema: a list of {name, type} items."""
    if schema is None:
        return []
    if not isinstance(schema, list):
        raise ValidationError("schema must be a list of {name, type} items")
    seen = set()
    for item in schema:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str) or not item["name"]:
            raise ValidationError("schema items must be objects with a non-empty name")
        item_type = item.get("type", "numeric")
        if item_type not in SCHEMA_TYPES:
            raise ValidationError(
                f"schema item {item['name']} has unknown type {item_type!r}"
            )
        if item["name"] in seen:
            raise ValidationError(f"schema declares {item['name']} twice")
        seen.add(item["name"])
    return schema


class DeviceRegistry:
    """Device CRUD, heartbeat compare-and-set and status history."""

    def __init__(
        self,
        db: AsyncSession,
        store: ReadingStore,
        delete_policy: DeviceDeletePolicy = DeviceDeletePolicy.REJECT,
    ):
        self.db = db
        self.store = store
        self.delete_policy = delete_policy

    # ==================== CRUD ====================

    async def register(self, **attributes: Any) -> IoTDevice:
        """Register a new device. It starts OFFLINE with no last_seen.

        Raises:
            ValidationError: If name, device_type or village_id is missing.
        """
        missing = [f for f in REQUIRED_FIELDS if not attributes.get(f)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        unknown = set(attributes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown device fields: {', '.join(sorted(unknown))}")

        device = IoTDevice(
            id=uuid.uuid4(),
            name=attributes["name"],
            device_type=attributes["device_type"],
            village_id=attributes["village_id"],
            latitude=attributes.get("latitude"),
            longitude=attributes.get("longitude"),
            elevation=attributes.get("elevation"),
            location_name=attributes.get("location_name"),
            config=attributes.get("config") or {},
            telemetry_schema=validate_telemetry_schema(attributes.get("telemetry_schema")),
            firmware_version=attributes.get("firmware_version"),
            status=DeviceStatus.OFFLINE.value,
            last_seen=None,
        )

        self.db.add(device)
        await self._commit("register device")
        await self.db.refresh(device)
        logger.info("Device registered", device_id=str(device.id), device_type=device.device_type)
        return device

    async def get(self, device_id: uuid.UUID | str) -> IoTDevice:
        """Get a device by ID.

        Raises:
            NotFoundError: If the device is unknown.
        """
        device = await self.find(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")
        return device

    async def find(self, device_id: uuid.UUID | str) -> IoTDevice | None:
        parsed = parse_device_id(device_id)
        if parsed is None:
            return None
        result = await self.db.execute(select(IoTDevice).where(IoTDevice.id == parsed))
        return result.scalar_one_or_none()

    async def list_devices(
        self,
        device_type: str | None = None,
        status: DeviceStatus | None = None,
        village_id: str | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[IoTDevice], int]:
        """List devices with optional filters, newest first."""
        query = select(IoTDevice)

        if device_type:
            query = query.where(IoTDevice.device_type == device_type)
        if status:
            query = query.where(IoTDevice.status == DeviceStatus(status).value)
        if village_id:
            query = query.where(IoTDevice.village_id == village_id)

        # Count total
        count_query = select(func.count()).select_from(query.subquery())
        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        # Apply pagination
        query = query.order_by(IoTDevice.created_at.desc(), IoTDevice.id).limit(limit).offset(offset)
        result = await self.db.execute(query)

        return list(result.scalars().all()), total

    async def update_attributes(self, device_id: uuid.UUID | str, **fields: Any) -> IoTDevice:
        """Partial update: only supplied fields change.

        ``status`` may be set to offline, maintenance or error; the change is
        recorded in the status history.

        Raises:
            NotFoundError: If the device is unknown.
            ValidationError: On unknown fields, an empty required field or a
                status that only heartbeats may set.
        """
        device = await self.get(device_id)

        new_status = fields.pop("status", None)
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown device fields: {', '.join(sorted(unknown))}")

        for key in REQUIRED_FIELDS:
            if key in fields and not fields[key]:
                raise ValidationError(f"{key} cannot be empty")

        if "telemetry_schema" in fields:
            fields["telemetry_schema"] = validate_telemetry_schema(fields["telemetry_schema"])

        for key, value in fields.items():
            setattr(device, key, value)

        if new_status is not None:
            try:
                status = DeviceStatus(new_status)
            except ValueError:
                raise ValidationError(f"Unknown status: {new_status}")
            if status not in ADMIN_STATUSES:
                raise ValidationError(f"Status {status.value} cannot be set directly")
            if device.status != status.value:
                self._record_status_change(device.id, device.status, status.value, "admin update")
                device.status = status.value

        await self._commit("update device")
        await self.db.refresh(device)
        return device

    async def delete(self, device_id: uuid.UUID | str) -> None:
        """Delete a device according to the configured policy.

        Only raw or compressed readings block a ``reject`` delete. Rollups are
        derived data and always go with the device, including rollups that
        outlived their raw partitions.

        Raises:
            NotFoundError: If the device is unknown.
            ConflictError: If readings exist and the policy is ``reject``.
        """
        device = await self.get(device_id)
        device_id = device.id

        if await self.store.has_readings(device_id):
            if self.delete_policy == DeviceDeletePolicy.REJECT:
                raise ConflictError(
                    f"Device {device_id} has readings; delete is rejected by policy"
                )
            removed = await self.store.delete_device(device_id)
            logger.info("Device readings cascaded", device_id=str(device_id), rows=removed)

        await self.db.execute(delete(HourlyRollup).where(HourlyRollup.device_id == device_id))
        await self.db.execute(
            delete(DeviceStatusHistory).where(DeviceStatusHistory.device_id == device_id)
        )
        await self.db.delete(device)
        await self._commit("delete device")
        logger.info("Device deleted", device_id=str(device_id))

    # ==================== Liveness ====================

    async def mark_seen(self, device_id: uuid.UUID, timestamp: datetime) -> bool:
        """Advance last_seen and set the device ONLINE.

        Compare-and-set on last_seen: only a strictly newer timestamp wins, so
        out-of-order heartbeats never move last_seen backward or change status.
        MAINTENANCE is kept (an admin decision); last_seen still advances.

        Returns:
            True if this heartbeat advanced the device, False if it was stale
            or the device no longer exists.
        """
        previous = await self.db.execute(
            select(IoTDevice.status).where(IoTDevice.id == device_id)
        )
        old_status = previous.scalar_one_or_none()
        if old_status is None:
            # Deleted between the existence check and the append.
            logger.warning("Heartbeat for missing device ignored", device_id=str(device_id))
            return False

        newer = or_(IoTDevice.last_seen.is_(None), IoTDevice.last_seen < timestamp)
        advance = await self.db.execute(
            update(IoTDevice)
            .where(IoTDevice.id == device_id, newer, IoTDevice.status == DeviceStatus.MAINTENANCE.value)
            .values(last_seen=timestamp)
        )
        advanced = (advance.rowcount or 0) > 0

        if not advanced:
            result = await self.db.execute(
                update(IoTDevice)
                .where(IoTDevice.id == device_id, newer, IoTDevice.status != DeviceStatus.MAINTENANCE.value)
                .values(last_seen=timestamp, status=DeviceStatus.ONLINE.value)
            )
            advanced = (result.rowcount or 0) > 0
            if advanced and old_status != DeviceStatus.ONLINE.value:
                self._record_status_change(device_id, old_status, DeviceStatus.ONLINE.value, "heartbeat")

        await self._commit("mark device seen")
        return advanced

    async def demote_silent(self, now: datetime, timeout: timedelta) -> list[uuid.UUID]:
        """Transition ONLINE devices silent for longer than ``timeout`` to OFFLINE."""
        cutoff = now - timeout
        result = await self.db.execute(
            select(IoTDevice.id).where(
                IoTDevice.status == DeviceStatus.ONLINE.value,
                IoTDevice.last_seen < cutoff,
            )
        )
        candidates = [row[0] for row in result.all()]

        demoted = []
        for device_id in candidates:
            # Re-check inside the UPDATE so a heartbeat landing meanwhile wins.
            outcome = await self.db.execute(
                update(IoTDevice)
                .where(
                    IoTDevice.id == device_id,
                    IoTDevice.status == DeviceStatus.ONLINE.value,
                    IoTDevice.last_seen < cutoff,
                )
                .values(status=DeviceStatus.OFFLINE.value)
            )
            if (outcome.rowcount or 0) > 0:
                self._record_status_change(
                    device_id,
                    DeviceStatus.ONLINE.value,
                    DeviceStatus.OFFLINE.value,
                    f"no heartbeat for {int(timeout.total_seconds())}s",
                )
                demoted.append(device_id)

        await self._commit("demote silent devices")
        if demoted:
            logger.info("Devices demoted to offline", count=len(demoted))
        return demoted

    async def status_history(
        self,
        device_id: uuid.UUID | str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DeviceStatusHistory], int]:
        """Status history for a device, most recent first."""
        device_id = (await self.get(device_id)).id

        query = select(DeviceStatusHistory).where(DeviceStatusHistory.device_id == device_id)

        count_query = select(func.count()).select_from(query.subquery())
        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        query = query.order_by(DeviceStatusHistory.changed_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(query)

        return list(result.scalars().all()), total

    # ==================== Helpers ====================

    def _record_status_change(
        self,
        device_id: uuid.UUID,
        old_status: str | None,
        new_status: str,
        reason: str | None = None,
    ) -> DeviceStatusHistory:
        history = DeviceStatusHistory(
            id=uuid.uuid4(),
            device_id=device_id,
            old_status=old_status,
            new_status=new_status,
            changed_at=datetime.now(timezone.utc),
            reason=reason,
        )
        self.db.add(history)
        record_status_transition(new_status)
        return history

    async def _commit(self, action: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Registry write failed", action=action, error=str(e))
            raise StorageError(f"Failed to {action}") from e
