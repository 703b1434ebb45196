"""Quadrant splitting of product bounds into tile requests."""

import logging

from weathermap.core.crs import CoordinateSystem, to_linear_lat, to_linear_lon
from weathermap.models.geo import GeoBounds, GeoCoordinate
from weathermap.models.product import Product
from weathermap.models.tile_request import TileRequest

logger = logging.getLogger(__name__)


class TileRequestPlanner:
    """Splits a product's bounds into up to four quadrant requests.

    Quadrants are cut at the equator and at longitude 0 (expressed in the
    product's own system). The composite image spans the product's linear
    longitude range horizontally and pole to pole vertically: north
    quadrants fill the top half, south quadrants the bottom half. Every
    quadrant reaches the equator, which the reprojector relies on.
    """

    def __init__(self, raster_crs: CoordinateSystem | None = None):
        """
        Initialize planner.

        Args:
            raster_crs: System the provider renders rows in, if not the product's own
        """
        self.raster_crs = raster_crs

    @staticmethod
    def origin(crs: CoordinateSystem) -> GeoCoordinate:
        """Longitude 0 / latitude 0 of CRS:84 expressed in the given system."""
        return GeoCoordinate(0.0, 0.0, CoordinateSystem.CRS84).convert(crs)

    @staticmethod
    def split_widths(bounds: GeoBounds, meridian: float, image_size: int) -> tuple[int, int]:
        """
        Calculate the pixel widths of the west and east halves.

        Each half gets the share of the image its longitude range covers;
        the east half takes the remainder so both tile the image exactly.

        Args:
            bounds: Product bounds
            meridian: Longitude 0 in the bounds' system
            image_size: Composite width in pixels

        Returns:
            (west_width, east_width), 0 for a half that is not requested
        """
        crs = bounds.crs
        has_west = bounds.west < meridian
        has_east = bounds.east > meridian
        if not has_west:
            return 0, image_size if has_east else 0
        if not has_east:
            return image_size, 0

        west = to_linear_lon(crs, bounds.west)
        east = to_linear_lon(crs, bounds.east)
        middle = to_linear_lon(crs, meridian)
        fraction = (middle - west) / (east - west)
        west_width = min(max(round(image_size * fraction), 1), image_size - 1)
        return west_width, image_size - west_width

    def plan(self, product: Product, image_size: int, time_token: str | None = None) -> list[TileRequest]:
        """
        Plan the requests for one product.

        Args:
            product: Product with known bounds
            image_size: Composite width and height in pixels
            time_token: TIME value to request (None without time dimension)

        Returns:
            List of 0 to 4 tile requests
        """
        bounds = product.bounds
        if bounds is None or not bounds.is_valid():
            logger.warning(f"Product {product.id} has no usable bounds, nothing to request")
            return []
        if image_size < 2:
            raise ValueError(f"Image size must be at least 2, got {image_size}")

        crs = bounds.crs
        raster_crs = self.raster_crs or crs
        origin = self.origin(crs)
        meridian = origin.longitude
        equator = origin.latitude

        west_width, east_width = self.split_widths(bounds, meridian, image_size)
        columns = []
        if west_width:
            columns.append((0, west_width, bounds.west, min(bounds.east, meridian)))
        if east_width:
            columns.append((west_width, east_width, max(bounds.west, meridian), bounds.east))

        north_height = image_size // 2
        rows = []
        if to_linear_lat(crs, bounds.north) > 0.0:
            rows.append((0, north_height, equator, bounds.north))
        if to_linear_lat(crs, bounds.south) < 0.0:
            rows.append((north_height, image_size - north_height, bounds.south, equator))

        requests = []
        for pix_y, height, south, north in rows:
            for pix_x, width, west, east in columns:
                requests.append(
                    TileRequest(
                        product_id=product.id,
                        bounds=GeoBounds.from_edges(west, south, east, north, crs),
                        pix_x=pix_x,
                        pix_y=pix_y,
                        pix_width=width,
                        pix_height=height,
                        raster_crs=raster_crs,
                        time=time_token,
                    )
                )
        logger.debug(f"Planned {len(requests)} tile requests for {product.id}")
        return requests
