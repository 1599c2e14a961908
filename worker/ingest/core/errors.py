"""Exception types shared across the ingestion worker."""


class IngestError(RuntimeError):
    """Base class for ingestion failures."""


class ConfigError(IngestError):
    """Raised when run configuration is invalid or incomplete."""


class TransientError(IngestError):
    """A failure worth retrying: timeouts, dropped connections, 429/5xx."""


class StructuralError(IngestError):
    """Raised when a source page no longer has the markup an adapter expects."""


class GeocodingError(TransientError):
    """Raised when a geocoding provider returns an error response."""


class InvalidTransition(IngestError):
    """Raised when a staged record cannot move to the requested status."""

    def __init__(self, current, requested) -> None:
        super().__init__(f"cannot move staged record from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested
