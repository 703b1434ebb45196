"""Configuration model for a map service."""

from dataclasses import dataclass
from typing import Any, Literal

from weathermap.core.crs import CoordinateSystem


@dataclass(frozen=True)
class ProductCapabilities:
    """Capability set of the products a service publishes.

    Attributes:
        has_time_dimension: Every product announces discrete times, so a product
            is only displayable once one is known and freshness is checked even
            before the first time arrives
        has_legend_url: Legends are linked per product (otherwise they come from
            the service's legend endpoint)
        supports_axis_order_rule: Latitude-first systems list BBOX corners latitude first
        has_extent_query: Bounds are queried separately instead of arriving with the products
    """

    has_time_dimension: bool
    has_legend_url: bool
    supports_axis_order_rule: bool
    has_extent_query: bool = False


WMS_CAPABILITIES = ProductCapabilities(
    has_time_dimension=False, has_legend_url=True, supports_axis_order_rule=True
)
REST_CAPABILITIES = ProductCapabilities(
    has_time_dimension=True, has_legend_url=False, supports_axis_order_rule=False, has_extent_query=True
)


@dataclass(frozen=True)
class ServiceConfig:
    """Configuration for a map service.

    Supports WMS 1.3.0 services (kind "wms") and the RealEarth style REST
    API (kind "rest").
    """

    name: str
    base_url: str
    kind: Literal["wms", "rest"] = "wms"
    path: str = ""
    display_name: str = ""
    response_delay_seconds: int = 600
    min_polling_period_seconds: int = 300
    prefer_current_time: bool = False
    raster_crs: str | None = None
    description: str = ""

    def __post_init__(self):
        """Validate service settings."""
        if self.kind not in ("wms", "rest"):
            raise ValueError(f"Service kind must be 'wms' or 'rest', got {self.kind}")
        if self.response_delay_seconds < 0:
            raise ValueError(f"Response delay must not be negative, got {self.response_delay_seconds}")
        if self.min_polling_period_seconds <= 0:
            raise ValueError(f"Polling period must be positive, got {self.min_polling_period_seconds}")

    @property
    def address(self) -> str:
        """Base URL joined with the service path."""
        base = self.base_url.rstrip("/")
        if not self.path:
            return base
        return f"{base}/{self.path.strip('/')}"

    def endpoint(self, path: str) -> str:
        """Address of a sub path (REST endpoints like api/products)."""
        return f"{self.address}/{path.lstrip('/')}"

    @property
    def capabilities(self) -> ProductCapabilities:
        return WMS_CAPABILITIES if self.kind == "wms" else REST_CAPABILITIES

    @property
    def raster_coordinate_system(self) -> CoordinateSystem | None:
        """System the provider renders raster rows in, if it differs from the product's."""
        if self.raster_crs is None:
            return None
        return CoordinateSystem.parse(self.raster_crs)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for YAML serialization.

        Returns:
            Dictionary with name, kind, base_url and the non-default settings
        """
        result: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "base_url": self.base_url,
        }
        if self.path:
            result["path"] = self.path
        if self.display_name:
            result["display_name"] = self.display_name
        result["response_delay_seconds"] = self.response_delay_seconds
        result["min_polling_period_seconds"] = self.min_polling_period_seconds
        if self.prefer_current_time:
            result["prefer_current_time"] = True
        if self.raster_crs:
            result["raster_crs"] = self.raster_crs
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceConfig":
        """
        Create service config from dictionary (loaded from YAML).

        Args:
            data: Dictionary with name and base_url plus optional settings

        Returns:
            ServiceConfig instance
        """
        return cls(
            name=data["name"],
            base_url=data["base_url"],
            kind=data.get("kind", "wms"),
            path=data.get("path", ""),
            display_name=data.get("display_name", data["name"]),
            response_delay_seconds=data.get("response_delay_seconds", 600),
            min_polling_period_seconds=data.get("min_polling_period_seconds", 300),
            prefer_current_time=data.get("prefer_current_time", False),
            raster_crs=data.get("raster_crs"),
            description=data.get("description", ""),
        )
