"""Locust load test suite for the SensorHub backend.

Tests two personas:
- FieldDevice (80%): Registers itself, then posts a reading every few seconds
- TelemetryViewer (20%): Reads raw ranges, rollups and the device list

Target metrics:
- 1000 readings/sec sustained ingestion
- p95 ingest latency < 100ms
- p95 rollup query latency < 200ms

Run ``seed_data.py`` first if the viewer should have history to read.
"""

import random
from datetime import datetime, timedelta, timezone

from locust import between, events, task
from locust.contrib.fasthttp import FastHttpUser

DEVICE_TYPES = ["temperature", "humidity", "water_level", "soil_moisture", "rain_gauge"]


# ==================== Test Data Generators ====================

def generate_device_payload() -> dict:
    """Generate a device registration payload."""
    return {
        "name": f"loadtest-{random.randint(100000, 999999)}",
        "type": random.choice(DEVICE_TYPES),
        "villageId": f"village-{random.randint(1, 40):02d}",
        "latitude": 12.35 + random.uniform(-0.5, 0.5),
        "longitude": -1.52 + random.uniform(-0.5, 0.5),
        "firmware": "1.4.2",
    }


def generate_metrics(last_value: float) -> dict:
    """Random-walk reading around the previous value."""
    return {
        "value": round(last_value + random.uniform(-0.5, 0.5), 2),
        "battery": random.randint(20, 100),
        "rssi": random.randint(-110, -60),
    }


# ==================== User Classes ====================

class FieldDevice(FastHttpUser):
    """A sensor reporting telemetry.

    Weight: 80% of traffic
    Behavior:
    - Registers once on start
    - Posts single readings at a high rate, occasionally a batch
    - Sometimes resends a reading (duplicate timestamp overwrite)
    """

    weight = 8
    wait_time = between(0.5, 2)

    def on_start(self):
        """Register a device for this simulated user."""
        self.device_id = None
        self.value = random.uniform(10, 30)
        self.last_timestamp = None
        response = self.client.post("/api/v1/devices", json=generate_device_payload(), name="POST /devices")
        if response.status_code == 201:
            self.device_id = response.json()["id"]

    @task(20)
    def send_reading(self):
        """Post one reading - primary task."""
        if not self.device_id:
            return
        self.value += random.uniform(-0.5, 0.5)
        self.last_timestamp = datetime.now(timezone.utc).isoformat()
        self.client.post(
            "/api/v1/telemetry",
            json={
                "deviceId": self.device_id,
                "timestamp": self.last_timestamp,
                "metrics": generate_metrics(self.value),
            },
            name="POST /telemetry",
        )

    @task(2)
    def send_batch(self):
        """Upload readings buffered while offline."""
        if not self.device_id:
            return
        now = datetime.now(timezone.utc)
        items = [
            {
                "deviceId": self.device_id,
                "timestamp": (now - timedelta(minutes=5 * i)).isoformat(),
                "metrics": generate_metrics(self.value),
            }
            for i in range(1, 13)
        ]
        self.client.post("/api/v1/telemetry/batch", json={"items": items}, name="POST /telemetry/batch")

    @task(1)
    def resend_reading(self):
        """Resend the previous reading with a corrected value."""
        if not self.device_id or not self.last_timestamp:
            return
        self.client.post(
            "/api/v1/telemetry",
            json={
                "deviceId": self.device_id,
                "timestamp": self.last_timestamp,
                "metrics": generate_metrics(self.value),
            },
            name="POST /telemetry (overwrite)",
        )


class TelemetryViewer(FastHttpUser):
    """Dashboard user - reads only.

    Weight: 20% of traffic
    """

    weight = 2
    wait_time = between(2, 5)

    def on_start(self):
        """Pick up a page of known devices."""
        self.device_ids = []
        response = self.client.get("/api/v1/devices?page=1&limit=100", name="GET /devices")
        if response.status_code == 200:
            self.device_ids = [d["id"] for d in response.json()["devices"]]

    def _device(self) -> str | None:
        return random.choice(self.device_ids) if self.device_ids else None

    @task(5)
    def view_rollups(self):
        """Last 24 hours of hourly rollups."""
        device_id = self._device()
        if device_id:
            self.client.get(
                f"/api/v1/telemetry/rollups?deviceId={device_id}",
                name="GET /telemetry/rollups",
            )

    @task(3)
    def view_raw(self):
        """Most recent raw readings."""
        device_id = self._device()
        if device_id:
            self.client.get(
                f"/api/v1/telemetry?deviceId={device_id}&limit=500",
                name="GET /telemetry",
            )

    @task(2)
    def view_latest(self):
        device_id = self._device()
        if device_id:
            self.client.get(f"/api/v1/telemetry/latest?deviceId={device_id}", name="GET /telemetry/latest")

    @task(1)
    def view_device_list(self):
        self.client.get("/api/v1/devices?page=1&limit=50&status=online", name="GET /devices (online)")


# ==================== Event Handlers ====================

@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    """Print test configuration at start."""
    print("\n" + "="*80)
    print("SensorHub Load Test Starting")
    print("="*80)
    print(f"Target host: {environment.host}")
    print("User classes: FieldDevice (80%), TelemetryViewer (20%)")
    print("Target metrics:")
    print("  - 1000 readings/sec throughput")
    print("  - p95 ingest latency < 100ms")
    print("  - p95 rollup query latency < 200ms")
    print("="*80 + "\n")


@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Print test summary at completion."""
    print("\n" + "="*80)
    print("SensorHub Load Test Complete")
    print("="*80)

    stats = environment.stats
    print(f"Total requests: {stats.total.num_requests}")
    print(f"Total failures: {stats.total.num_failures}")
    print(f"Average response time: {stats.total.avg_response_time:.2f}ms")
    print(f"Max response time: {stats.total.max_response_time:.2f}ms")
    print(f"Requests/sec: {stats.total.total_rps:.2f}")

    if stats.total.num_requests > 0:
        print("\nResponse Time Percentiles:")
        print(f"  50th: {stats.total.get_response_time_percentile(0.5):.2f}ms")
        print(f"  90th: {stats.total.get_response_time_percentile(0.90):.2f}ms")
        print(f"  95th: {stats.total.get_response_time_percentile(0.95):.2f}ms")
        print(f"  99th: {stats.total.get_response_time_percentile(0.99):.2f}ms")

    print("="*80 + "\n")
