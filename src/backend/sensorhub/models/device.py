"""IoT Device model for village sensors and actuators."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import String, Float, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from sensorhub.models.base import Base, TimestampMixin, UTCDateTime


class DeviceStatus(str, Enum):
    """Device liveness status."""

    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"
    ERROR = "error"


class IoTDevice(Base, TimestampMixin):
    """Registered physical device that reports telemetry."""

    __tablename__ = "iot_devices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Identification
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    device_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    firmware_version: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Owning site
    village_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Physical location
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    elevation: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Device-specific configuration and declared telemetry fields,
    # e.g. [{"name": "value", "type": "numeric"}]
    config: Mapped[dict | None] = mapped_column(JSON, default=dict)
    telemetry_schema: Mapped[list | None] = mapped_column(JSON, default=list)

    # Liveness
    status: Mapped[str] = mapped_column(
        String(20),
        default=DeviceStatus.OFFLINE.value,
        nullable=False,
        index=True,
    )
    last_seen: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<IoTDevice(id={self.id}, name={self.name}, type={self.device_type})>"

    @property
    def schema_lookup(self) -> dict[str, str]:
        """Map of declared metric name to type, empty when no schema is declared."""
        return {
            item["name"]: item.get("type", "numeric")
            for item in (self.telemetry_schema or [])
            if isinstance(item, dict) and "name" in item
        }
