"""API Routes Module."""

from fastapi import APIRouter

from sensorhub.api import devices, telemetry

router = APIRouter()

router.include_router(devices.router, prefix="/devices", tags=["Devices"])
router.include_router(telemetry.router, prefix="/telemetry", tags=["Telemetry"])
