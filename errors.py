"""Error types raised by the ridesharing core."""


class RideshareError(Exception):
    """Base class for errors that can be shown to the user as a short message."""


class ValidationError(RideshareError):
    """Missing or malformed input: unresolved location, bad date, bad seat count."""


class InsufficientCapacityError(RideshareError):
    """More seats were requested than the ride has available."""

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough seats available: requested {requested}, available {available}"
        )


class UpstreamUnavailableError(RideshareError):
    """Geocoding or routing service failed."""


class BackendError(RideshareError):
    """The document store could not be reached or rejected a read."""


class BackendWriteError(BackendError):
    """A create or update against the document store failed."""


class AuthenticationError(RideshareError):
    """Sign-in, sign-up or session handling failed."""
