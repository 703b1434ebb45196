"""Data models for geographic coordinates and bounds."""

import logging
from dataclasses import dataclass, field

from weathermap.core.crs import (
    CoordinateSystem,
    format_number,
    from_linear_lat,
    from_linear_lon,
    parse_number,
    to_linear_lat,
    to_linear_lon,
)

logger = logging.getLogger(__name__)


@dataclass
class GeoCoordinate:
    """A longitude/latitude pair tagged with its coordinate system.

    Values are treated as immutable; the parse/set helpers exist for the
    capabilities parser, which fills a coordinate incrementally.
    """

    longitude: float = 0.0
    latitude: float = 0.0
    crs: CoordinateSystem = CoordinateSystem.NONE

    def parse_longitude(self, text: str) -> float:
        self.longitude = parse_number(text)
        return self.longitude

    def parse_latitude(self, text: str) -> float:
        self.latitude = parse_number(text)
        return self.latitude

    def set_crs(self, crs: CoordinateSystem) -> None:
        self.crs = crs

    @property
    def linear_longitude(self) -> float:
        return to_linear_lon(self.crs, self.longitude)

    @property
    def linear_latitude(self) -> float:
        return to_linear_lat(self.crs, self.latitude)

    def convert(self, target: CoordinateSystem) -> "GeoCoordinate":
        """
        Convert to another coordinate system.

        Conversion always passes through the linear space, so a NONE source
        or target leaves the values untouched.

        Args:
            target: Target coordinate system

        Returns:
            New coordinate in the target system
        """
        if self.crs is CoordinateSystem.NONE or target is CoordinateSystem.NONE:
            return GeoCoordinate(self.longitude, self.latitude, self.crs)
        return GeoCoordinate(
            longitude=from_linear_lon(target, self.linear_longitude),
            latitude=from_linear_lat(target, self.linear_latitude),
            crs=target,
        )

    def print_value(self, separator: str = ",") -> str:
        """
        Format the coordinate in the axis order of its system.

        Returns:
            "lat,lon" for latitude-first systems, "lon,lat" otherwise
        """
        if self.crs.latitude_first:
            first, second = self.latitude, self.longitude
        else:
            first, second = self.longitude, self.latitude
        return f"{format_number(first)}{separator}{format_number(second)}"


def convert(coordinate: GeoCoordinate, target: CoordinateSystem) -> GeoCoordinate:
    """Convert a coordinate to the target system via the linear space."""
    return coordinate.convert(target)


@dataclass
class GeoBounds:
    """Geographic bounds given by the south-west and north-east corners."""

    west_south: GeoCoordinate = field(default_factory=GeoCoordinate)
    east_north: GeoCoordinate = field(default_factory=GeoCoordinate)

    @property
    def crs(self) -> CoordinateSystem:
        if self.west_south.crs != self.east_north.crs:
            logger.warning(
                f"Bounds corners disagree on coordinate system: "
                f"{self.west_south.crs.ident} vs {self.east_north.crs.ident}"
            )
        return self.west_south.crs

    @property
    def west(self) -> float:
        return self.west_south.longitude

    @property
    def south(self) -> float:
        return self.west_south.latitude

    @property
    def east(self) -> float:
        return self.east_north.longitude

    @property
    def north(self) -> float:
        return self.east_north.latitude

    def is_valid(self) -> bool:
        """
        Check if bounds can be used for arithmetic.

        Returns:
            True if the system is known and min values are less than max values
        """
        return (self.crs is not CoordinateSystem.NONE and
                self.west < self.east and
                self.south < self.north)

    def convert(self, target: CoordinateSystem) -> "GeoBounds":
        return GeoBounds(self.west_south.convert(target), self.east_north.convert(target))

    def bbox_value(self) -> str:
        """Format as BBOX query value (axis order follows the system)."""
        return f"{self.west_south.print_value(',')},{self.east_north.print_value(',')}"

    @classmethod
    def from_edges(
        cls, west: float, south: float, east: float, north: float, crs: CoordinateSystem
    ) -> "GeoBounds":
        """
        Create bounds from edge values.

        Args:
            west: West edge (longitude)
            south: South edge (latitude)
            east: East edge (longitude)
            north: North edge (latitude)
            crs: Coordinate system of all values

        Returns:
            GeoBounds instance
        """
        return cls(GeoCoordinate(west, south, crs), GeoCoordinate(east, north, crs))
