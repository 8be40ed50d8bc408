"""Hourly rollup model (derived aggregates)."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Float, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from sensorhub.models.base import Base, UTCDateTime, utcnow


class HourlyRollup(Base):
    """count/avg/min/max of the rollup field per device and hour bucket."""

    __tablename__ = "hourly_rollups"

    device_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    bucket: Mapped[datetime] = mapped_column(UTCDateTime(), primary_key=True, index=True)
    metric_name: Mapped[str] = mapped_column(String(100), nullable=False)

    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg: Mapped[float | None] = mapped_column(Float, nullable=True)
    min: Mapped[float | None] = mapped_column(Float, nullable=True)
    max: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Set when an overwrite removed the current min or max; recomputed from
    # raw rows on the next read.
    stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Newest ingested_at folded in by the last refresh; notifications for
    # writes at or before it are already counted.
    refreshed_through: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<HourlyRollup(device_id={self.device_id}, bucket={self.bucket}, count={self.count})>"

    def to_dict(self) -> dict:
        return {
            "deviceId": str(self.device_id),
            "hour": self.bucket.isoformat(),
            "metric": self.metric_name,
            "count": self.count,
            "avg": self.avg,
            "min": self.min,
            "max": self.max,
        }
