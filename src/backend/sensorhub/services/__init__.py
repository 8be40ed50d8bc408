"""SensorHub Services Module."""

from sensorhub.services.partition_catalog import PartitionCatalog
from sensorhub.services.reading_store import ReadingStore, AppendResult, CompressionResult
from sensorhub.services.device_registry import DeviceRegistry
from sensorhub.services.rollup_queue import (
    RollupNotification,
    RollupQueue,
    InMemoryRollupQueue,
    RedisStreamRollupQueue,
)
from sensorhub.services.aggregation_engine import AggregationEngine
from sensorhub.services.telemetry_ingestion_service import TelemetryIngestionService
from sensorhub.services.telemetry_query_service import TelemetryQueryService
from sensorhub.services.lifecycle_manager import LifecycleManager, SweepReport
from sensorhub.services.liveness_monitor import LivenessMonitor
from sensorhub.services.health_service import HealthService

__all__ = [
    "PartitionCatalog",
    "ReadingStore",
    "AppendResult",
    "CompressionResult",
    "DeviceRegistry",
    "RollupNotification",
    "RollupQueue",
    "InMemoryRollupQueue",
    "RedisStreamRollupQueue",
    "AggregationEngine",
    "TelemetryIngestionService",
    "TelemetryQueryService",
    "LifecycleManager",
    "SweepReport",
    "LivenessMonitor",
    "HealthService",
]
