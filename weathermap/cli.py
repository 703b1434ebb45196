"""CLI mode for batch downloads with YAML config."""

import asyncio
import logging
import re
from pathlib import Path

import yaml

from weathermap.core.config import DEFAULT_IMAGE_SIZE, build_service_registry
from weathermap.core.service_client import ServiceClient, create_client
from weathermap.core.transport import AiohttpTransport
from weathermap.models.product import Product
from weathermap.models.service_config import ServiceConfig
from weathermap.models.tile_request import TileRequest
from weathermap.utils.image_decoding import ImageCodec
from weathermap.utils.image_metadata import build_png_text

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def load_config(config_path: str) -> tuple[dict, Path]:
    """
    Load YAML configuration file.

    Args:
        config_path: Path to YAML config file

    Returns:
        Tuple of (configuration dictionary, config directory path)

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is invalid
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_file) as f:
        config = yaml.safe_load(f)

    # Return config and its directory for relative path resolution
    config_dir = config_file.parent.resolve()

    return config, config_dir


def validate_config(config: dict, service_registry: dict | None = None) -> None:
    """
    Validate configuration using Pydantic schema validation.

    The structure is checked before any service is built from it.

    Args:
        config: Configuration dictionary
        service_registry: Optional service registry, built from the config's services by default

    Raises:
        ValueError: If configuration is invalid
    """
    from pydantic import ValidationError

    from weathermap.models.schema import DownloadConfiguration

    if not isinstance(config, dict):
        raise ValueError("Configuration must be a mapping")

    # Pydantic structural validation
    try:
        DownloadConfiguration.model_validate(config)
    except ValidationError as e:
        # Convert Pydantic errors to ValueError for consistency
        raise ValueError(f"Configuration validation failed:\n{e}") from e

    if service_registry is None:
        service_registry = build_service_registry(config)

    # Service must exist in registry (business logic Pydantic can't handle)
    service = config["service"]
    if service not in service_registry:
        raise ValueError(f"Invalid service: {service}. Valid services: {', '.join(service_registry.keys())}")


def validate_services(config: dict) -> None:
    """
    Validate the "services" entries of a configuration file.

    Args:
        config: Configuration dictionary

    Raises:
        ValueError: If the file is not a mapping or a service entry is invalid
    """
    from pydantic import TypeAdapter, ValidationError

    from weathermap.models.schema import ServiceEntry

    if not isinstance(config, dict):
        raise ValueError("Configuration must be a mapping")

    try:
        TypeAdapter(list[ServiceEntry]).validate_python(config.get("services") or [])
    except ValidationError as e:
        raise ValueError(f"Configuration validation failed:\n{e}") from e


def product_specs(config: dict) -> list[tuple[str, bool]]:
    """
    Normalize the products list.

    Returns:
        List of (product id, fetch legend) tuples
    """
    specs = []
    for entry in config["products"]:
        # Support both simple string format and dict format
        if isinstance(entry, str):
            specs.append((entry, True))
        else:
            specs.append((entry["id"], entry.get("legend", True)))
    return specs


def output_filename(service: str, product_id: str, suffix: str = "") -> str:
    """File name for a product image (characters like ':' replaced)."""
    stem = _UNSAFE_FILENAME_CHARS.sub("_", f"{service}_{product_id}")
    return f"{stem}{suffix}.png"


class DownloadListener:
    """Counts client notifications during a download."""

    def __init__(self):
        self.products_loaded = 0
        self.tiles: dict[str, int] = {}
        self.legends: list[str] = []

    def products_ready(self) -> None:
        self.products_loaded += 1
        logger.debug(f"Product registry loaded ({self.products_loaded})")

    def tile_ready(self, request: TileRequest) -> None:
        self.tiles[request.product_id] = self.tiles.get(request.product_id, 0) + 1

    def legend_ready(self, product: Product) -> None:
        self.legends.append(product.id)


async def load_products(
    service: ServiceConfig, transport: AiohttpTransport, listener=None, image_size: int = DEFAULT_IMAGE_SIZE
) -> ServiceClient:
    """
    Create a client and wait for its product registry.

    Args:
        service: Service configuration
        transport: Open transport
        listener: Optional receiver of notifications
        image_size: Composite width and height in pixels

    Returns:
        Client with its registry loaded (empty if the service failed)
    """
    client = create_client(service, transport, listener, image_size)
    client.refresh_capabilities()
    await transport.drain()
    return client


async def download_products(
    service: ServiceConfig,
    specs: list[tuple[str, bool]],
    output_dir: Path,
    image_size: int = DEFAULT_IMAGE_SIZE,
    attribution: str | None = None,
) -> list[Path]:
    """
    Download composites (and legends) of products.

    Products are requested one after another, as a client only keeps one
    request waiting for extent metadata.

    Args:
        service: Service configuration
        specs: List of (product id, fetch legend) tuples
        output_dir: Directory for the PNG files
        image_size: Composite width and height in pixels
        attribution: Attribution written into the PNG files instead of the products' own

    Returns:
        Paths of the written files
    """
    listener = DownloadListener()
    written = []

    async with AiohttpTransport() as transport:
        client = await load_products(service, transport, listener, image_size)
        if not listener.products_loaded:
            logger.error(f"Product list of {service.name} could not be loaded")
            return written
        if not client.products:
            logger.error(f"No products received from {service.name}")
            return written

        for product_id, with_legend in specs:
            product = client.find_product(product_id)
            if product is None:
                logger.error(f"Unknown product {product_id} for service {service.name}")
                continue
            if not product.is_displayable():
                logger.warning(f"Product {product_id} is not displayable, skipping")
                continue

            time_token = client.time_token(product)
            client.request_tiles(product_id)
            if with_legend:
                client.fetch_legend(product)
            await transport.drain()

            tiles = listener.tiles.get(product_id, 0)
            if not tiles:
                logger.error(f"No tiles received for {product_id}")
                continue
            logger.info(f"Received {tiles} tiles for {product_id}")

            text = build_png_text(service, product, time_token, attribution)
            path = output_dir / output_filename(service.name, product_id)
            written.append(ImageCodec.save_png(client.composite(product_id), path, text))
            logger.info(f"✓ Created: {path}")
            if product_id in listener.legends:
                legend_path = output_dir / output_filename(service.name, product_id, "_legend")
                legend_text = build_png_text(service, product, attribution=attribution)
                written.append(ImageCodec.save_png(product.legend, legend_path, legend_text))
                logger.info(f"✓ Created: {legend_path}")
            elif with_legend:
                logger.warning(f"No legend received for {product_id}")

    return written


def run_cli(config_path: str) -> int:
    """
    Run CLI mode with config file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Exit code (0 for success, 1 for error)
    """
    try:
        # Load and validate config
        logger.info(f"Loading configuration from: {config_path}")
        config, config_dir = load_config(config_path)

        validate_config(config)

        # Build service registry (includes default SERVICES + custom services)
        service_registry = build_service_registry(config)

        service = service_registry[config["service"]]
        specs = product_specs(config)
        image_size = config.get("image_size", DEFAULT_IMAGE_SIZE)

        output_dir = Path(config.get("output_dir", "output"))
        if not output_dir.is_absolute():
            output_dir = config_dir / output_dir

        logger.info("Configuration:")
        logger.info(f"  Service: {service.display_name or service.name} ({service.address})")
        logger.info(f"  Products: {', '.join(product_id for product_id, _ in specs)}")
        logger.info(f"  Image size: {image_size}x{image_size}")
        logger.info(f"  Output: {output_dir}")

        attribution = config.get("attribution")
        written = asyncio.run(download_products(service, specs, output_dir, image_size, attribution))
        composites = [path for path in written if not path.stem.endswith("_legend")]
        if len(composites) < len(specs):
            logger.error(f"Downloaded {len(composites)} of {len(specs)} products")
            return 1

        logger.info("All products downloaded successfully")
        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


def run_products(service_name: str, config_path: str | None = None) -> int:
    """
    Print the products a service offers.

    Args:
        service_name: Name of a built-in or configured service
        config_path: Optional YAML file with additional services

    Returns:
        Exit code (0 for success, 1 for error)
    """
    try:
        config = None
        if config_path:
            config, _ = load_config(config_path)
            validate_services(config)
        registry = build_service_registry(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Configuration error: {e}")
        return 1

    service = registry.get(service_name)
    if service is None:
        logger.error(f"Invalid service: {service_name}. Valid services: {', '.join(registry.keys())}")
        return 1

    async def fetch() -> ServiceClient:
        async with AiohttpTransport() as transport:
            return await load_products(service, transport)

    client = asyncio.run(fetch())
    if not client.products:
        logger.error(f"No products received from {service.name}")
        return 1

    print(f"Products of {service.display_name or service.name}:")
    print()
    for product_id in sorted(client.products):
        product = client.products[product_id]
        marker = "*" if product.is_displayable() else " "
        print(f" {marker} {product_id}")
        if product.display_name:
            print(f"     {product.display_name}")
        details = [f"CRS: {product.crs.ident}"]
        if product.time_dimension is not None:
            details.append(f"latest: {product.time_dimension.end}")
            details.append(f"period: {product.time_dimension.period_seconds}s")
        print(f"     {', '.join(details)}")
    print()
    print("* displayable")
    return 0
