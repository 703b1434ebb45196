"""Configuration for map services and application settings."""

from weathermap.models.service_config import ServiceConfig

# Available map services
SERVICES: dict[str, ServiceConfig] = {
    "dwd": ServiceConfig(
        name="dwd",
        display_name="Deutscher Wetterdienst",
        kind="wms",
        base_url="https://maps.dwd.de",
        path="geoserver/ows",
        response_delay_seconds=600,
        min_polling_period_seconds=300,
        prefer_current_time=True,
        description="Weather radar, satellite and forecast layers of the German weather service",
    ),
    "eumetsat": ServiceConfig(
        name="eumetsat",
        display_name="EUMETSAT View Service",
        kind="wms",
        base_url="https://view.eumetsat.int",
        path="geoserver/ows",
        response_delay_seconds=1800,
        min_polling_period_seconds=900,
        prefer_current_time=False,
        description="Meteosat and Sentinel-3 imagery and derived products",
    ),
    "realearth": ServiceConfig(
        name="realearth",
        display_name="RealEarth",
        kind="rest",
        base_url="https://realearth.ssec.wisc.edu",
        path="",
        response_delay_seconds=0,
        min_polling_period_seconds=600,
        prefer_current_time=False,
        raster_crs="EPSG:3857",
        description="Global composites from SSEC (web mercator rasters)",
    ),
}


def build_service_registry(config: dict | None) -> dict[str, ServiceConfig]:
    """
    Build the service registry from defaults and a loaded config file.

    Entries under "services" override built-in services of the same name.

    Args:
        config: Configuration dictionary (may be None)

    Returns:
        Dictionary mapping service name to ServiceConfig
    """
    registry = dict(SERVICES)
    if not config:
        return registry

    for entry in config.get("services", []) or []:
        service = ServiceConfig.from_dict(entry)
        registry[service.name] = service
    return registry


# Network settings
DOWNLOAD_TIMEOUT = 30  # seconds
USER_AGENT = "weathermap/0.1 (map private use)"

# Raster settings
DEFAULT_IMAGE_SIZE = 1024  # composite width/height in pixels
MAX_MERCATOR_LAT = 85.0  # beyond this web mercator rasters are not useful

# REST extent defaults (used when the service omits a field)
DEFAULT_EXTENT = {
    "north": "85",
    "south": "-85",
    "west": "-180",
    "east": "180",
    "width": "1024",
    "height": "1024",
}
