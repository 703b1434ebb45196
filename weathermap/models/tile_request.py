"""Tile request model."""

from dataclasses import dataclass

from weathermap.core.crs import CoordinateSystem, format_number
from weathermap.models.geo import GeoBounds


@dataclass
class TileRequest:
    """One quadrant image request and where its pixels go in the composite."""

    product_id: str
    bounds: GeoBounds
    pix_x: int
    pix_y: int
    pix_width: int
    pix_height: int
    raster_crs: CoordinateSystem
    time: str | None = None

    def __post_init__(self):
        """Validate the pixel rectangle."""
        if self.pix_width <= 0 or self.pix_height <= 0:
            raise ValueError(
                f"Tile size must be positive, got {self.pix_width}x{self.pix_height}"
            )
        if self.pix_x < 0 or self.pix_y < 0:
            raise ValueError(f"Tile offset must not be negative, got {self.pix_x},{self.pix_y}")

    @property
    def is_north(self) -> bool:
        """Whether the tile lies in the northern hemisphere."""
        return self.bounds.north > 0.0

    def to_wms_query(self) -> dict[str, str]:
        """
        Build the GetMap query parameters.

        Returns:
            Query dictionary (TIME only if the product has a time dimension)
        """
        query = {
            "service": "WMS",
            "version": "1.3.0",
            "REQUEST": "GetMap",
            "LAYERS": self.product_id,
            "CRS": self.bounds.crs.ident,
            "FORMAT": "image/png",
            "WIDTH": str(self.pix_width),
            "HEIGHT": str(self.pix_height),
            "TRANSPARENT": "TRUE",
        }
        if self.time:
            query["TIME"] = self.time
        query["BBOX"] = self.bounds.bbox_value()
        return query

    def to_rest_query(self) -> dict[str, str]:
        """Build the api/image query parameters (bounds as south,west,north,east)."""
        bounds = ",".join(
            format_number(value)
            for value in (self.bounds.south, self.bounds.west, self.bounds.north, self.bounds.east)
        )
        query = {"products": self.product_id, "bounds": bounds}
        if self.time:
            query["time"] = self.time
        query["width"] = str(self.pix_width)
        query["height"] = str(self.pix_height)
        return query
