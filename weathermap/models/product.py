"""Product model."""

import logging
from dataclasses import dataclass, field

import numpy as np

from weathermap.core.config import MAX_MERCATOR_LAT
from weathermap.core.crs import CoordinateSystem
from weathermap.core.time_dimension import TimeDimension
from weathermap.models.geo import GeoBounds
from weathermap.models.service_config import WMS_CAPABILITIES, ProductCapabilities

logger = logging.getLogger(__name__)

# Output type of REST products delivered as images
RASTER_OUTPUT_TYPE = "png24"


@dataclass
class Product:
    """A time-varying raster product published by a map service.

    Products are built completely by one capabilities parse (or REST
    discovery) and replaced as a whole on the next refresh.
    """

    id: str = ""
    display_name: str = ""
    description: str = ""
    keywords: str = ""
    attribution: str = ""
    crs: CoordinateSystem = CoordinateSystem.NONE
    bounds: GeoBounds | None = None
    time_dimension: TimeDimension | None = None
    legend_urls: list[str] = field(default_factory=list)
    legend: np.ndarray | None = None
    extent_width: int = 0
    extent_height: int = 0
    capabilities: ProductCapabilities = WMS_CAPABILITIES
    service_kind: str = "wms"
    data_id: str = ""
    output_type: str = ""
    seed_lat_bound: float = MAX_MERCATOR_LAT

    @property
    def legend_url(self) -> str:
        """First collected legend URL (the default style), empty if none."""
        if self.legend_urls:
            return self.legend_urls[0]
        return ""

    @property
    def has_extent(self) -> bool:
        """Whether usable bounds are known."""
        return self.bounds is not None and self.bounds.is_valid()

    def is_displayable(self) -> bool:
        """
        Check if the product can be requested and shown.

        A product needs a known time if its service announces discrete
        times. Bounds are only required when the service has no extent query.

        Returns:
            True if tiles can be requested for the product
        """
        if self.capabilities.has_time_dimension and self.time_dimension is None:
            return False
        if self.output_type and self.output_type != RASTER_OUTPUT_TYPE:
            return False
        if self.crs is CoordinateSystem.NONE:
            return False
        return self.has_extent or self.capabilities.has_extent_query

    def set_extent(self, bounds: GeoBounds, width: int, height: int) -> None:
        """
        Set the extent reported by the service.

        Latitudes are clamped to the seed latitude bound, as some services
        report 90 degrees but can't render it.

        Args:
            bounds: Reported bounds
            width: Native raster width
            height: Native raster height
        """
        north = min(bounds.north, self.seed_lat_bound)
        south = max(bounds.south, -self.seed_lat_bound)
        self.bounds = GeoBounds.from_edges(bounds.west, south, bounds.east, north, bounds.crs)
        self.extent_width = width
        self.extent_height = height
        logger.debug(
            f"Extent of {self.id}: west {bounds.west} south {south} east {bounds.east} "
            f"north {north} size {width}x{height}"
        )
