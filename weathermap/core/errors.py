"""Error taxonomy for map service operations.

None of these reach the caller of a client. They are raised where they are
detected and caught where the operation that hit them ends: response
delivery for request failures, the capabilities parse (which keeps the
partial registry), CRS parsing and the reprojection row loop.
"""


class WeatherMapError(Exception):
    """Base class for map service errors."""

    def __init__(self, message: str, url: str | None = None, status: int | None = None):
        self.message = message
        self.url = url
        self.status = status

        parts = [message]
        if status is not None:
            parts.append(f"(HTTP {status})")
        if url:
            parts.append(f"[{url}]")
        super().__init__(" ".join(parts))


class TransportError(WeatherMapError):
    """Raised for connection, DNS or TLS failures."""


class StatusError(WeatherMapError):
    """Raised when the service answers with a non-success HTTP status."""


class EmptyBodyError(WeatherMapError):
    """Raised when a successful response carries no payload."""


class ParseError(WeatherMapError):
    """Raised for malformed capabilities markup or JSON."""


class UnknownIdentifierError(WeatherMapError):
    """Raised when a CRS identifier is not recognized."""


class TypeMismatchError(WeatherMapError):
    """Raised when a product is used with a service of the wrong kind."""


class RangeViolation(WeatherMapError):
    """Raised when reprojection computes a source row outside the tile."""
