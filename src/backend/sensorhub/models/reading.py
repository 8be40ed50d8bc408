"""Device reading model (time-partitioned raw telemetry)."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from sensorhub.models.base import Base, UTCDateTime, utcnow


class DeviceReading(Base):
    """One timestamped measurement from a device.

    ``device_id`` is a weak reference: there is deliberately no foreign key,
    so a reading can briefly outlive its device while a delete is in flight.
    ``partition_start`` ties the row to its ``ReadingPartition``.
    """

    __tablename__ = "device_readings"
    __table_args__ = (
        UniqueConstraint("device_id", "time", name="uq_device_readings_device_time"),
        Index("ix_device_readings_partition_device", "partition_start", "device_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    device_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    partition_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    metrics: Mapped[dict] = mapped_column(JSON, nullable=False)

    # Bumped on every last-write-wins overwrite; compression only removes
    # rows at the revision it read.
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ingested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    # Tail row of a compressed partition whose time is also folded in a
    # chunk; it wins on read and is not counted twice.
    overrides_chunk: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<DeviceReading(device_id={self.device_id}, time={self.time})>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "deviceId": str(self.device_id),
            "timestamp": self.time.isoformat(),
            "metrics": self.metrics,
        }


# Serves "latest N readings for device X" as a bounded index scan.
Index(
    "ix_device_readings_device_time_desc",
    DeviceReading.device_id,
    DeviceReading.time.desc(),
)
