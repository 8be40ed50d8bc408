#!/usr/bin/env python3
"""
SensorHub device simulator.

Registers a handful of sample village sensors and posts telemetry for each
on its own interval until interrupted.

Run: python scripts/device_sim.py [start|list] [--base-url URL] [--speedup N]
"""

import argparse
import asyncio
import math
import random
import sys
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx


@dataclass
class SampleDevice:
    key: str
    name: str
    device_type: str
    latitude: float
    longitude: float
    location: str
    interval: float  # seconds
    device_id: str | None = None


SAMPLE_DEVICES = [
    SampleDevice("air-quality-001", "Village Center Air Quality Monitor", "air_quality",
                 29.5456, 80.0964, "Village Center", 30),
    SampleDevice("energy-meter-001", "Solar Microgrid Main Meter", "energy_meter",
                 29.5460, 80.0970, "Solar Array", 10),
    SampleDevice("solar-panel-001", "Rooftop Solar Panel", "solar_panel",
                 29.5458, 80.0968, "School Rooftop", 30),
    SampleDevice("weather-001", "Village Weather Station", "weather_station",
                 29.5450, 80.0960, "Weather Station", 60),
    SampleDevice("water-001", "Spring Water Sensor", "water_sensor",
                 29.5448, 80.0955, "Spring Tank", 60),
]


def _r(value: float) -> float:
    return round(value, 2)


def generate_metrics(device_type: str) -> dict:
    """Plausible readings per device type. ``value`` carries the primary measurement."""
    if device_type == "air_quality":
        pm25 = _r(random.uniform(10, 60))
        return {
            "value": pm25,
            "pm25": pm25,
            "pm10": _r(random.uniform(20, 100)),
            "co2": random.randint(400, 600),
            "humidity": _r(random.uniform(30, 70)),
            "temperature": _r(random.uniform(10, 25)),
        }
    if device_type == "energy_meter":
        power = _r(random.uniform(1000, 3000))
        return {
            "value": power,
            "voltage": _r(random.uniform(220, 240)),
            "current": _r(random.uniform(5, 15)),
            "frequency": _r(random.uniform(49, 51)),
            "powerFactor": _r(random.uniform(0.8, 1.0)),
        }
    if device_type == "solar_panel":
        hour = datetime.now().hour
        daylight = math.sin((hour - 6) * math.pi / 12) if 6 <= hour <= 18 else 0.0
        return {
            "value": _r(random.uniform(0, 1000) * daylight + 100),
            "irradiance": _r(random.uniform(0, 800) * daylight + 100),
            "panelTemp": _r(random.uniform(25, 45)),
        }
    if device_type == "weather_station":
        temperature = _r(random.uniform(10, 25))
        return {
            "value": temperature,
            "temperature": temperature,
            "humidity": _r(random.uniform(40, 80)),
            "pressure": _r(random.uniform(1000, 1050)),
            "windSpeed": _r(random.uniform(2, 22)),
            "rainfall": _r(random.uniform(0, 5)),
        }
    if device_type == "water_sensor":
        return {
            "value": _r(random.uniform(50, 150)),
            "flow": _r(random.uniform(10, 60)),
            "ph": _r(random.uniform(6.5, 8.5)),
            "turbidity": _r(random.uniform(0, 5)),
        }
    return {"value": _r(random.uniform(0, 100)), "status": "active"}


class DeviceSimulator:
    def __init__(self, base_url: str, devices: list[SampleDevice], speedup: float = 1.0):
        self.api_url = f"{base_url.rstrip('/')}/api/v1"
        self.devices = devices
        self.speedup = speedup
        self.sent = 0
        self.failed = 0

    async def register(self, client: httpx.AsyncClient) -> None:
        for device in self.devices:
            response = await client.post(
                f"{self.api_url}/devices",
                json={
                    "name": device.name,
                    "type": device.device_type,
                    "villageId": "damday",
                    "latitude": device.latitude,
                    "longitude": device.longitude,
                    "location": device.location,
                },
            )
            response.raise_for_status()
            device.device_id = response.json()["id"]
            print(f"  ✅ {device.name} registered as {device.device_id}")

    async def run_device(self, client: httpx.AsyncClient, device: SampleDevice) -> None:
        while True:
            payload = {
                "deviceId": device.device_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "metrics": generate_metrics(device.device_type),
            }
            try:
                response = await client.post(f"{self.api_url}/telemetry", json=payload)
                if response.status_code == 201:
                    self.sent += 1
                else:
                    self.failed += 1
                    print(f"  ❌ {device.key}: HTTP {response.status_code} {response.text[:120]}")
            except httpx.RequestError as e:
                self.failed += 1
                print(f"  ❌ {device.key}: {e}")
            await asyncio.sleep(device.interval / self.speedup)

    async def report(self) -> None:
        while True:
            await asyncio.sleep(30)
            print(f"📊 Simulation active - {len(self.devices)} devices, {self.sent} sent, {self.failed} failed")

    async def start(self) -> None:
        async with httpx.AsyncClient(timeout=10.0) as client:
            print("📋 Registering devices...")
            await self.register(client)

            print("\n🚀 Starting simulation. Press Ctrl+C to stop.")
            tasks = [asyncio.create_task(self.run_device(client, d)) for d in self.devices]
            tasks.append(asyncio.create_task(self.report()))
            try:
                await asyncio.gather(*tasks)
            finally:
                for task in tasks:
                    task.cancel()


def list_devices() -> None:
    print("Key | Name | Type | Interval")
    print("----|------|------|---------")
    for d in SAMPLE_DEVICES:
        print(f"{d.key} | {d.name} | {d.device_type} | {d.interval:.0f}s")


def main():
    parser = argparse.ArgumentParser(description="SensorHub device simulator")
    parser.add_argument("command", nargs="?", default="start", choices=["start", "list"])
    parser.add_argument("--base-url", default="http://localhost:8000", help="SensorHub base URL")
    parser.add_argument("--speedup", type=float, default=1.0, help="Divide every interval by this factor")
    args = parser.parse_args()

    if args.command == "list":
        list_devices()
        return

    simulator = DeviceSimulator(args.base_url, SAMPLE_DEVICES, speedup=args.speedup)
    try:
        asyncio.run(simulator.start())
    except KeyboardInterrupt:
        print(f"\n⏹️ Simulation stopped - {simulator.sent} readings sent")
    except httpx.HTTPError as e:
        print(f"❌ Failed to start device simulation: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
