"""Error taxonomy shared by the telemetry services and the HTTP layer."""


class TelemetryError(Exception):
    """Base class for errors surfaced to telemetry callers."""

    kind = "telemetry_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "detail": self.message}


class ValidationError(TelemetryError):
    """Malformed or missing input."""

    kind = "validation_error"
    status_code = 400


class NotFoundError(TelemetryError):
    """Unknown device."""

    kind = "not_found"
    status_code = 404


class ConflictError(TelemetryError):
    """Operation blocked by existing state, e.g. deleting a device with readings."""

    kind = "conflict"
    status_code = 409


class StorageError(TelemetryError):
    """Store or partition failure. Callers are expected to retry with backoff."""

    kind = "storage_error"
    status_code = 500
