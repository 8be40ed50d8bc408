"""Device Status History model for tracking status changes."""

import uuid
from datetime import datetime

from sqlalchemy import String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from sensorhub.models.base import Base, UTCDateTime, utcnow


class DeviceStatusHistory(Base):
    """Tracks device status changes over time."""

    __tablename__ = "device_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    # No foreign key; DeviceRegistry.delete removes history rows itself.
    device_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    old_status: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,  # null for initial status
    )
    new_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    changed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        index=True,
    )
    reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<DeviceStatusHistory(id={self.id}, device_id={self.device_id}, {self.old_status} -> {self.new_status})>"
