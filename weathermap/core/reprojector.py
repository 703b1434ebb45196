"""Per-scanline reprojection of fetched tiles into the linear composite."""

import logging

import numpy as np

from weathermap.core.crs import CoordinateSystem, project_latitude, to_linear_lat
from weathermap.core.errors import RangeViolation
from weathermap.models.geo import GeoBounds
from weathermap.models.tile_request import TileRequest

logger = logging.getLogger(__name__)


def source_row(
    dest_row: int,
    dest_height: int,
    src_height: int,
    is_north: bool,
    origin: float,
    crs: CoordinateSystem,
) -> int | None:
    """
    Map a destination scanline to the source tile row it is copied from.

    The destination half spans equator to pole linearly. North tiles have
    their highest latitude in the top row, south tiles their lowest
    magnitude latitude.

    Args:
        dest_row: Destination row within the quadrant
        dest_height: Destination quadrant height
        src_height: Source tile height
        is_north: Whether the tile lies in the northern hemisphere
        origin: Normalized latitude the tile's far edge reaches in the source system
        crs: System the source rows are rendered in

    Returns:
        Source row index, or None if the row lies beyond the tile's coverage.
        The index is not bounds checked.
    """
    if origin <= 0.0:
        return None
    if is_north:
        rel_lat = (dest_height - dest_row) / dest_height
    else:
        rel_lat = dest_row / dest_height
    rel_source = project_latitude(crs, rel_lat)
    if rel_source > origin:
        return None
    rel_map = 1.0 - rel_source / origin if is_north else rel_source / origin
    return int(rel_map * src_height)


class TileReprojector:
    """Copies fetched tiles into a composite RGBA raster row by row."""

    @staticmethod
    def origin_fraction(bounds: GeoBounds, raster_crs: CoordinateSystem) -> float:
        """
        Normalized latitude the tile's polar edge reaches in the raster system.

        Args:
            bounds: Tile bounds (one edge on the equator)
            raster_crs: System the provider renders rows in

        Returns:
            Fraction of the equator to pole span, compressed like the raster rows
        """
        edge = bounds.north if bounds.north > 0.0 else bounds.south
        linear = abs(to_linear_lat(bounds.crs, edge))
        return project_latitude(raster_crs, linear)

    def reproject(self, tile: np.ndarray, request: TileRequest, destination: np.ndarray) -> int:
        """
        Resample a tile into its pixel rectangle of the destination.

        Args:
            tile: Decoded tile as (height, width, 4) uint8 array
            request: Request the tile answers
            destination: Composite (height, width, 4) uint8 array, modified in place

        Returns:
            Number of transparent rows written
        """
        src_height = tile.shape[0]
        width = min(tile.shape[1], request.pix_width, destination.shape[1] - request.pix_x)
        is_north = request.is_north
        origin = self.origin_fraction(request.bounds, request.raster_crs)
        x0 = request.pix_x

        transparent = 0
        for row in range(request.pix_height):
            target = request.pix_y + row
            if target >= destination.shape[0]:
                break
            src_row = source_row(row, request.pix_height, src_height, is_north, origin, request.raster_crs)
            if src_row is None:
                destination[target, x0:x0 + width] = 0
                transparent += 1
            else:
                try:
                    destination[target, x0:x0 + width] = self.tile_row(tile, src_row, width, request.product_id)
                except RangeViolation as e:
                    logger.warning(f"Skipping row {target}: {e}")
        return transparent

    @staticmethod
    def tile_row(tile: np.ndarray, src_row: int, width: int, product_id: str) -> np.ndarray:
        """
        Get a row of a tile.

        Raises:
            RangeViolation: If the row lies outside the tile
        """
        src_height = tile.shape[0]
        if not 0 <= src_row < src_height:
            raise RangeViolation(f"Source row {src_row} for {product_id} exceeds tile height {src_height}")
        return tile[src_row, :width]
