class MetricsError(Exception):
    """Base error for metric definition and write failures."""


class MetricsInvalid(MetricsError):
    """Raised by the strict write path when validation fails."""

    def __init__(self, errors=None) -> None:
        self.errors = errors
        detail = ", ".join(errors.full_messages()) if errors else ""
        super().__init__(f"Validation failed: {detail}" if detail else "Validation failed")


class MetricsAlreadyWritten(MetricsError):
    """Raised when a metric instance is written a second time."""


class MetricsAborted(MetricsError):
    """Raised by the strict write path when a before-write hook halts."""


class SeriesResolutionError(MetricsError):
    """Raised when a series specification cannot be turned into a name."""


class ClientError(Exception):
    """Transport failure talking to the time-series database."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
