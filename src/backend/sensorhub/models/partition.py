"""Reading store partition metadata and compressed chunk storage."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Integer, LargeBinary, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from sensorhub.models.base import Base, UTCDateTime, utcnow


class PartitionState(str, Enum):
    """Storage representation of a partition."""

    OPEN = "open"
    COMPRESSED = "compressed"


class ReadingPartition(Base):
    """Fixed-width, epoch-aligned time range of the reading store.

    The unit of compression and retention.
    """

    __tablename__ = "reading_partitions"

    range_start: Mapped[datetime] = mapped_column(UTCDateTime(), primary_key=True)
    range_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PartitionState.OPEN.value,
        index=True,
    )
    # Rows folded into chunks; raw tail rows are not counted here.
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    compressed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<ReadingPartition({self.range_start.isoformat()}..{self.range_end.isoformat()}, {self.state})>"

    @property
    def is_compressed(self) -> bool:
        return self.state == PartitionState.COMPRESSED.value


class ReadingChunk(Base):
    """Compressed rows of one device within one partition (segment-by device)."""

    __tablename__ = "reading_chunks"

    partition_start: Mapped[datetime] = mapped_column(UTCDateTime(), primary_key=True)
    device_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    max_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<ReadingChunk(partition={self.partition_start}, device_id={self.device_id}, rows={self.row_count})>"
