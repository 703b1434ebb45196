"""Coordinate reference systems and conversion through the linear map space."""

import logging
import math
import re
from enum import Enum

from weathermap.core.errors import UnknownIdentifierError

logger = logging.getLogger(__name__)

# Half of the equatorial circumference used by spherical web mercator (meters)
MERCATOR_HALF_CIRCUMFERENCE = 20037508.342789244

# Decimal-point-only number syntax (coordinates arrive from the network in fixed notation)
_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class CoordinateSystem(Enum):
    """Supported coordinate reference systems.

    Each member carries the identifier used on the wire and whether the
    system lists latitude before longitude.
    """

    NONE = ("none", False)
    CRS84 = ("CRS:84", False)
    EPSG4326 = ("EPSG:4326", True)
    EPSG3857 = ("EPSG:3857", False)

    def __init__(self, ident: str, latitude_first: bool):
        self.ident = ident
        self.latitude_first = latitude_first

    @classmethod
    def lookup(cls, identifier: str | None) -> "CoordinateSystem":
        """
        Look up a CRS identifier (case-insensitive).

        Raises:
            UnknownIdentifierError: If the identifier names no supported system
        """
        wanted = (identifier or "").strip().upper()
        for crs in cls:
            if crs is not cls.NONE and crs.ident == wanted:
                return crs
        raise UnknownIdentifierError(f"Unrecognized coordinate system identifier: {identifier!r}")

    @classmethod
    def parse(cls, identifier: str | None) -> "CoordinateSystem":
        """
        Parse a CRS identifier.

        Args:
            identifier: Identifier like "EPSG:4326" (case-insensitive)

        Returns:
            Matching system, or NONE if the identifier is not recognized
        """
        try:
            return cls.lookup(identifier)
        except UnknownIdentifierError as e:
            logger.debug(str(e))
            return cls.NONE

    @property
    def is_mercator(self) -> bool:
        return self is CoordinateSystem.EPSG3857

    @property
    def lon_scale(self) -> float:
        if self is CoordinateSystem.NONE:
            return 1.0
        if self.is_mercator:
            return MERCATOR_HALF_CIRCUMFERENCE
        return 180.0

    @property
    def lat_scale(self) -> float:
        if self is CoordinateSystem.NONE:
            return 1.0
        if self.is_mercator:
            return MERCATOR_HALF_CIRCUMFERENCE
        return 90.0


def identifier(crs: CoordinateSystem) -> str:
    """Get the wire identifier for a system ("none" for NONE)."""
    return crs.ident


def is_latitude_first(crs: CoordinateSystem) -> bool:
    """Check the axis order (only EPSG:4326 is latitude first)."""
    return crs.latitude_first


def _norm_to_radians(norm: float) -> float:
    return norm * math.pi / 2.0


def _radians_to_norm(rad: float) -> float:
    return rad / (math.pi / 2.0)


def project_latitude(crs: CoordinateSystem, linear: float) -> float:
    """
    Apply the forward latitude transform of a system.

    Works on normalized values: the input is a linear latitude fraction
    (-1...1 for pole to pole), the output the fraction of the system's own
    latitude axis. Mercator math runs on the magnitude and the sign is
    re-applied afterwards, so both hemispheres share one formula.

    Args:
        crs: Coordinate system
        linear: Linear latitude fraction

    Returns:
        Normalized latitude in the system's projection
    """
    if not crs.is_mercator:
        return linear
    magnitude = min(abs(linear), 1.0)
    # asinh(tan(x)) == ln(tan(pi/4 + x/2)), exact at the equator
    projected = math.asinh(math.tan(_norm_to_radians(magnitude))) / math.pi
    return math.copysign(projected, linear)


def unproject_latitude(crs: CoordinateSystem, normalized: float) -> float:
    """
    Invert project_latitude.

    Args:
        crs: Coordinate system
        normalized: Normalized latitude in the system's projection

    Returns:
        Linear latitude fraction
    """
    if not crs.is_mercator:
        return normalized
    rad = math.atan(math.sinh(abs(normalized) * math.pi))
    return math.copysign(_radians_to_norm(rad), normalized)


def to_linear_lon(crs: CoordinateSystem, value: float) -> float:
    """Map a longitude (degrees or meters) to the linear range -1...1."""
    return value / crs.lon_scale


def from_linear_lon(crs: CoordinateSystem, linear: float) -> float:
    """Map a linear longitude back to the system's units."""
    return linear * crs.lon_scale


def to_linear_lat(crs: CoordinateSystem, value: float) -> float:
    """Map a latitude (degrees or meters) to the linear range -1...1."""
    return unproject_latitude(crs, value / crs.lat_scale)


def from_linear_lat(crs: CoordinateSystem, linear: float) -> float:
    """Map a linear latitude back to the system's units."""
    return project_latitude(crs, linear) * crs.lat_scale


def parse_number(text: str) -> float:
    """
    Parse a coordinate number independent of the host locale.

    Args:
        text: Number in fixed or scientific notation with '.' as decimal point

    Returns:
        Parsed value

    Raises:
        ValueError: If the text is not a plain decimal number
    """
    stripped = text.strip()
    if not _NUMBER_PATTERN.match(stripped):
        raise ValueError(f"Not a decimal number: {text!r}")
    return float(stripped)


def format_number(value: float, precision: int = 3) -> str:
    """Format a number with '.' as decimal point regardless of locale."""
    return f"{value:.{precision}f}"
