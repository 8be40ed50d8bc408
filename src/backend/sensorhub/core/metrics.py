"""Prometheus metrics instrumentation for SensorHub."""

from prometheus_client import Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator, metrics

# Custom metrics for the telemetry pipeline

readings_ingested = Counter(
    "sensorhub_readings_ingested_total",
    "Readings accepted by the ingestion service",
    ["outcome"],  # created | overwritten
)

ingestion_rejected = Counter(
    "sensorhub_ingestion_rejected_total",
    "Ingestion requests rejected",
    ["kind"],
)

ingestion_duration = Histogram(
    "sensorhub_ingestion_seconds",
    "Time spent in the ingestion write path",
    buckets=[0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

rollup_queue_depth = Gauge(
    "sensorhub_rollup_queue_depth",
    "Rollup notifications waiting to be aggregated",
)

rollup_updates = Counter(
    "sensorhub_rollup_updates_total",
    "Rollup bucket updates applied",
    ["mode"],  # add | replace | refresh
)

sweep_partitions = Counter(
    "sensorhub_lifecycle_partitions_total",
    "Partitions processed by lifecycle sweeps",
    ["policy", "result"],
)

sweep_duration = Histogram(
    "sensorhub_lifecycle_sweep_seconds",
    "Lifecycle sweep duration",
    ["policy"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)

device_status_transitions = Counter(
    "sensorhub_device_status_transitions_total",
    "Device status transitions",
    ["status"],
)

db_pool_available = Gauge(
    "sensorhub_db_pool_available",
    "Number of available database connections in the pool",
)

redis_connected = Gauge(
    "sensorhub_redis_connected",
    "Whether the application is connected to Redis (1=connected, 0=disconnected)",
)


def setup_metrics(app) -> Instrumentator:
    """Set up Prometheus metrics instrumentation for FastAPI app."""
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/health", "/health/live", "/health/ready", "/metrics"],
        env_var_name="METRICS_ENABLED",
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    )

    instrumentator.add(
        metrics.default(
            metric_namespace="",
            metric_subsystem="",
            should_include_handler=True,
            should_include_method=True,
            should_include_status=True,
            latency_highr_buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )
    )

    instrumentator.add(
        metrics.request_size(
            metric_namespace="",
            metric_subsystem="",
            should_include_handler=True,
            should_include_method=True,
            should_include_status=True,
        )
    )

    instrumentator.instrument(app)

    return instrumentator


def expose_metrics(app, instrumentator: Instrumentator) -> None:
    """Expose the /metrics endpoint."""
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)


# Helper functions for updating custom metrics


def record_ingested(overwritten: bool) -> None:
    readings_ingested.labels(outcome="overwritten" if overwritten else "created").inc()


def record_rejected(kind: str) -> None:
    ingestion_rejected.labels(kind=kind).inc()


def record_rollup_update(mode: str) -> None:
    rollup_updates.labels(mode=mode).inc()


def set_rollup_queue_depth(depth: int) -> None:
    rollup_queue_depth.set(depth)


def record_sweep_partition(policy: str, result: str) -> None:
    sweep_partitions.labels(policy=policy, result=result).inc()


def observe_sweep(policy: str, duration: float) -> None:
    sweep_duration.labels(policy=policy).observe(duration)


def record_status_transition(status: str) -> None:
    device_status_transitions.labels(status=status).inc()


def set_db_pool_available(count: int) -> None:
    """Set available database connections."""
    db_pool_available.set(count)


def set_redis_connected(connected: bool) -> None:
    """Set Redis connection status."""
    redis_connected.set(1 if connected else 0)
