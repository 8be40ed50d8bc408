"""SensorHub Database Models."""

from sensorhub.models.base import Base, TimestampMixin, UTCDateTime
from sensorhub.models.device import IoTDevice, DeviceStatus
from sensorhub.models.device_status_history import DeviceStatusHistory
from sensorhub.models.reading import DeviceReading
from sensorhub.models.partition import ReadingPartition, ReadingChunk, PartitionState
from sensorhub.models.rollup import HourlyRollup

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "IoTDevice",
    "DeviceStatus",
    "DeviceStatusHistory",
    "DeviceReading",
    "ReadingPartition",
    "ReadingChunk",
    "PartitionState",
    "HourlyRollup",
]
