"""Service clients orchestrating discovery, freshness checks and tile fetches."""

import itertools
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Optional, Protocol

import numpy as np

from weathermap.core.capabilities_parser import CapabilitiesParser
from weathermap.core.config import DEFAULT_EXTENT, DEFAULT_IMAGE_SIZE, MAX_MERCATOR_LAT
from weathermap.core.crs import CoordinateSystem, parse_number
from weathermap.core.errors import (
    EmptyBodyError,
    ParseError,
    StatusError,
    TransportError,
    TypeMismatchError,
    WeatherMapError,
)
from weathermap.core.reprojector import TileReprojector
from weathermap.core.tile_planner import TileRequestPlanner
from weathermap.core.time_dimension import TimeDimension
from weathermap.core.transport import MapRequest, Transport
from weathermap.models.geo import GeoBounds
from weathermap.models.product import Product
from weathermap.models.service_config import ServiceConfig
from weathermap.models.tile_request import TileRequest
from weathermap.utils.image_decoding import ImageCodec

logger = logging.getLogger(__name__)

HTTP_OK = 200

Continuation = Callable[[bytes], None]


class ServiceListener(Protocol):
    """Receiver of client notifications."""

    def products_ready(self) -> None: ...

    def tile_ready(self, request: TileRequest) -> None: ...

    def legend_ready(self, product: Product) -> None: ...


class ServiceClient(ABC):
    """Base client for one map service.

    Every outbound request is registered in a continuation table keyed by
    request id; the entry is removed exactly once when the transport
    delivers the response. Failures (transport, status, empty body, parse)
    raise a WeatherMapError that is logged at delivery and abandons only
    the operation that issued the request.
    """

    kind = ""

    def __init__(
        self,
        config: ServiceConfig,
        transport: Transport,
        listener: Optional[ServiceListener] = None,
        image_size: int = DEFAULT_IMAGE_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize client.

        Args:
            config: Service configuration
            transport: Transport performing the requests (owned for the client's lifetime)
            listener: Optional receiver of notifications
            image_size: Composite width and height in pixels
            clock: Returns the current UTC time (for tests)
        """
        if config.kind != self.kind:
            raise ValueError(f"{type(self).__name__} can't serve {config.kind} service {config.name}")
        self.config = config
        self.transport = transport
        self.listener = listener
        self.image_size = image_size
        self.products: dict[str, Product] = {}
        self.pending_product_id: Optional[str] = None
        self.planner = TileRequestPlanner(config.raster_coordinate_system)
        self.reprojector = TileReprojector()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._continuations: dict[int, tuple[MapRequest, Continuation]] = {}
        self._request_ids = itertools.count(1)
        self._composites: dict[str, np.ndarray] = {}

    @property
    def outstanding_requests(self) -> int:
        """Number of requests waiting for delivery."""
        return len(self._continuations)

    def now(self) -> datetime:
        return self._clock()

    # Request bookkeeping

    def send(self, address: str, query: dict[str, str], continuation: Continuation) -> int:
        """
        Send a request and register its continuation.

        Args:
            address: Request address
            query: Query parameters
            continuation: Called with the payload on success

        Returns:
            Request id
        """
        rid = next(self._request_ids)
        request = MapRequest(address, query, rid)
        self._continuations[rid] = (request, continuation)
        self.transport.send(request, partial(self._deliver, rid))
        return rid

    @staticmethod
    def check_response(request: MapRequest, error: Optional[str], status: int, payload: bytes) -> None:
        """
        Check the outcome of a request.

        Raises:
            TransportError: If the request did not reach the service
            StatusError: If the service answered with a non-success status
            EmptyBodyError: If a successful response carries no data
        """
        if error:
            raise TransportError(error, url=request.url)
        if status != HTTP_OK:
            raise StatusError("Request failed", url=request.url, status=status)
        if not payload:
            raise EmptyBodyError("Response without data", url=request.url, status=status)

    def _deliver(self, rid: int, error: Optional[str], status: int, payload: bytes) -> None:
        entry = self._continuations.pop(rid, None)
        if entry is None:
            logger.warning(f"Response for unknown request {rid} ignored")
            return
        request, continuation = entry

        try:
            self.check_response(request, error, status, payload)
            continuation(payload)
        except WeatherMapError as e:
            logger.warning(f"Request {rid} abandoned: {e}")

    # Registry

    def find_product(self, product_id: str) -> Optional[Product]:
        return self.products.get(product_id)

    def replace_products(self, products: dict[str, Product]) -> None:
        """Swap in a new registry and notify the listener."""
        self.products = products
        for product_id in list(self._composites):
            if product_id not in products:
                del self._composites[product_id]
        displayable = sum(1 for product in products.values() if product.is_displayable())
        logger.info(f"{self.config.name}: {len(products)} products, {displayable} displayable")
        if self.listener:
            self.listener.products_ready()

    def require_kind(self, product: Product) -> None:
        """
        Check that a product belongs to this kind of service.

        Raises:
            TypeMismatchError: If the product was published by another kind of service
        """
        if product.service_kind != self.kind:
            raise TypeMismatchError(
                f"Product {product.id} of kind {product.service_kind} used with {self.kind} service {self.config.name}"
            )

    def _matches_kind(self, product: Product) -> bool:
        try:
            self.require_kind(product)
        except TypeMismatchError as e:
            logger.warning(str(e))
            return False
        return True

    @abstractmethod
    def refresh_capabilities(self) -> int:
        """Request the product list; the registry is replaced when it arrives."""
        ...

    # Freshness and tiles

    def check_freshness(self, product_id: str) -> None:
        """
        Request new tiles if the product has outdated data.

        Does nothing for an unknown id or while no products are known.
        Products without a time dimension are only checked when their
        service announces times for every product.
        """
        if not product_id or not self.products:
            return
        product = self.find_product(product_id)
        if product is None or not self._matches_kind(product):
            return
        if product.time_dimension is None and not product.capabilities.has_time_dimension:
            logger.debug(f"Product {product_id} has no time dimension, nothing to refresh")
            return
        self._check_product(product)

    @abstractmethod
    def _check_product(self, product: Product) -> None:
        """Look for newer data of a product and request its tiles if there is some."""
        ...

    def request_tiles(self, product_id: str) -> None:
        """
        Request the tiles of a product.

        If the product's extent is not known yet the request is deferred:
        the id is remembered in a single pending slot (a later deferral
        replaces it) and replayed once the extent query completes.
        """
        product = self.find_product(product_id)
        if product is None:
            logger.debug(f"Unknown product {product_id}, no tiles requested")
            return
        if not self._matches_kind(product):
            return
        if not product.has_extent:
            if self.pending_product_id and self.pending_product_id != product_id:
                logger.debug(f"Deferred request for {self.pending_product_id} replaced by {product_id}")
            self.pending_product_id = product_id
            self._request_extent(product)
            return

        time_token = self.time_token(product)
        for request in self.planner.plan(product, self.image_size, time_token):
            self.send(self._image_address(), self._image_query(request), partial(self._on_image, request))

    def time_token(self, product: Product) -> Optional[str]:
        """TIME value for the product's next image requests."""
        dimension = product.time_dimension
        if dimension is None:
            return None
        moment = dimension.latest_acceptable_time(
            self.config.prefer_current_time, self.now(), self.config.response_delay_seconds
        )
        return dimension.time_token(moment)

    @abstractmethod
    def _request_extent(self, product: Product) -> None:
        """Query the bounds of a product, replaying the pending request on arrival (or drop it)."""
        ...

    def _replay_pending(self) -> None:
        product_id = self.pending_product_id
        self.pending_product_id = None
        if product_id:
            logger.debug(f"Replaying deferred request for {product_id}")
            self.request_tiles(product_id)

    @abstractmethod
    def _image_address(self) -> str:
        ...

    @abstractmethod
    def _image_query(self, request: TileRequest) -> dict[str, str]:
        ...

    def composite(self, product_id: str) -> np.ndarray:
        """Composite raster of a product, created transparent on first use."""
        if product_id not in self._composites:
            self._composites[product_id] = ImageCodec.new_raster(self.image_size, self.image_size)
        return self._composites[product_id]

    def _on_image(self, request: TileRequest, payload: bytes) -> None:
        try:
            tile = ImageCodec.decode_raster(payload)
        except ValueError as e:
            raise ParseError(f"Tile of {request.product_id}: {e}") from e
        if self.find_product(request.product_id) is None:
            logger.debug(f"Product {request.product_id} vanished before its tile arrived")
            return
        transparent = self.reprojector.reproject(tile, request, self.composite(request.product_id))
        logger.debug(
            f"Tile {request.product_id} at {request.pix_x},{request.pix_y} "
            f"({transparent} transparent rows)"
        )
        if self.listener:
            self.listener.tile_ready(request)

    # Legends

    def fetch_legend(self, product: Product) -> Optional[np.ndarray]:
        """
        Get the legend of a product.

        Returns the cached legend, or issues one legend request and returns
        None; the listener is notified when the legend arrives. There is no
        guard against duplicate requests while one is outstanding.

        The legend comes from the product's own link when its service links
        legends per product, otherwise from the service's legend endpoint.
        """
        if product.legend is not None:
            return product.legend
        if not self._matches_kind(product):
            return None
        if product.capabilities.has_legend_url:
            target = (product.legend_url, {}) if product.legend_url else None
        else:
            target = self._legend_endpoint(product)
        if target is None:
            logger.debug(f"No legend for {product.id}")
            return None
        address, query = target
        self.send(address, query, partial(self._on_legend, product))
        return None

    @abstractmethod
    def _legend_endpoint(self, product: Product) -> Optional[tuple[str, dict[str, str]]]:
        """Address and query of the service's legend endpoint, None if it has none."""
        ...

    def _on_legend(self, product: Product, payload: bytes) -> None:
        try:
            product.legend = ImageCodec.decode_raster(payload)
        except ValueError as e:
            raise ParseError(f"Legend of {product.id}: {e}") from e
        logger.debug(f"Legend of {product.id}: {product.legend.shape[1]}x{product.legend.shape[0]}")
        if self.listener:
            self.listener.legend_ready(product)


class WebMapServiceClient(ServiceClient):
    """Client for WMS 1.3.0 services."""

    kind = "wms"

    def refresh_capabilities(self) -> int:
        query = {"service": "WMS", "version": "1.3.0", "request": "GetCapabilities"}
        return self.send(self.config.address, query, self._on_capabilities)

    def _on_capabilities(self, payload: bytes) -> None:
        parser = CapabilitiesParser(self.config)
        self.replace_products(parser.parse(payload, url=self.config.address))

    def _check_product(self, product: Product) -> None:
        dimension = product.time_dimension
        if dimension is None:
            return
        if dimension.is_stale(self.now(), self.config.response_delay_seconds):
            logger.info(f"Product {product.id} is outdated, requesting tiles")
            self.request_tiles(product.id)

    def _request_extent(self, product: Product) -> None:
        # Bounds only come with the capabilities document
        logger.warning(f"Product {product.id} has no usable bounds, dropping request")
        self.pending_product_id = None

    def _image_address(self) -> str:
        return self.config.address

    def _image_query(self, request: TileRequest) -> dict[str, str]:
        return request.to_wms_query()

    def _legend_endpoint(self, product: Product) -> Optional[tuple[str, dict[str, str]]]:
        return None


class RealEarthClient(ServiceClient):
    """Client for the RealEarth REST API.

    Products come from api/products; their extent is unknown until
    api/extents answers, and freshness is checked with api/latest.
    """

    kind = "rest"

    def refresh_capabilities(self) -> int:
        query = {"search": "global", "timespan": "-6h"}
        return self.send(self.config.endpoint("api/products"), query, self._on_products)

    def _load_json(self, payload: bytes, what: str):
        try:
            return json.loads(payload)
        except ValueError as e:
            raise ParseError(f"Malformed {what} JSON: {e}", url=self.config.address) from e

    def _on_products(self, payload: bytes) -> None:
        entries = self._load_json(payload, "products")
        if not isinstance(entries, list):
            raise ParseError("Products response is not a list", url=self.config.address)

        products = {}
        for entry in entries:
            product = self.product_from_json(entry)
            if product is not None:
                products[product.id] = product
        self.replace_products(products)

    def product_from_json(self, entry: dict) -> Optional[Product]:
        """
        Build a product from one api/products entry.

        Returns:
            Product, or None if the entry has no id
        """
        if not isinstance(entry, dict) or not entry.get("id"):
            logger.debug(f"Skipping product entry without id: {entry!r}")
            return None
        times = sorted(str(value) for value in entry.get("times") or [])
        try:
            seed_lat_bound = float(entry.get("seedlatbound", MAX_MERCATOR_LAT))
        except (TypeError, ValueError):
            seed_lat_bound = MAX_MERCATOR_LAT
        return Product(
            id=str(entry["id"]),
            display_name=entry.get("name", ""),
            description=entry.get("description", ""),
            crs=CoordinateSystem.CRS84,
            time_dimension=TimeDimension.from_values(times, self.config.min_polling_period_seconds),
            capabilities=self.config.capabilities,
            service_kind=self.kind,
            data_id=entry.get("dataid", ""),
            output_type=entry.get("outputtype", ""),
            seed_lat_bound=seed_lat_bound,
        )

    def _check_product(self, product: Product) -> None:
        query = {"products": product.id}
        self.send(self.config.endpoint("api/latest"), query, self._on_latest)

    def _on_latest(self, payload: bytes) -> None:
        latest = self._load_json(payload, "latest")
        if not isinstance(latest, dict):
            raise ParseError("Latest response is not an object", url=self.config.address)
        for product_id, token in latest.items():
            product = self.find_product(product_id)
            if product is None or not token:
                continue
            if product.time_dimension is None:
                # First time of a product listed without any
                product.time_dimension = TimeDimension.from_values(
                    [str(token)], self.config.min_polling_period_seconds
                )
                logger.info(f"First time {token} for {product_id}, requesting tiles")
                self.request_tiles(product_id)
            elif product.time_dimension.observe(str(token)):
                logger.info(f"New time {token} for {product_id}, requesting tiles")
                self.request_tiles(product_id)

    def _request_extent(self, product: Product) -> None:
        query = {"products": product.id}
        self.send(self.config.endpoint("api/extents"), query, self._on_extents)

    def _on_extents(self, payload: bytes) -> None:
        try:
            extents = self._load_json(payload, "extents")
            if isinstance(extents, dict):
                for product_id, entry in extents.items():
                    product = self.find_product(product_id)
                    if product is not None and isinstance(entry, dict):
                        self._apply_extent(product, entry)
        finally:
            self._replay_pending()

    def _apply_extent(self, product: Product, entry: dict) -> None:
        values = {key: str(entry.get(key, default)) for key, default in DEFAULT_EXTENT.items()}
        try:
            bounds = GeoBounds.from_edges(
                parse_number(values["west"]),
                parse_number(values["south"]),
                parse_number(values["east"]),
                parse_number(values["north"]),
                CoordinateSystem.CRS84,
            )
            width = int(parse_number(values["width"]))
            height = int(parse_number(values["height"]))
        except ValueError as e:
            logger.warning(f"Ignoring extent of {product.id}: {e}")
            return
        product.set_extent(bounds, width, height)

    def _image_address(self) -> str:
        return self.config.endpoint("api/image")

    def _image_query(self, request: TileRequest) -> dict[str, str]:
        return request.to_rest_query()

    def _legend_endpoint(self, product: Product) -> Optional[tuple[str, dict[str, str]]]:
        return self.config.endpoint("api/legend"), {"products": product.id}


CLIENT_TYPES: dict[str, type[ServiceClient]] = {
    "wms": WebMapServiceClient,
    "rest": RealEarthClient,
}


def create_client(
    config: ServiceConfig,
    transport: Transport,
    listener: Optional[ServiceListener] = None,
    image_size: int = DEFAULT_IMAGE_SIZE,
    clock: Optional[Callable[[], datetime]] = None,
) -> ServiceClient:
    """
    Create the client matching a service's kind.

    Args:
        config: Service configuration
        transport: Transport performing the requests
        listener: Optional receiver of notifications
        image_size: Composite width and height in pixels
        clock: Returns the current UTC time (for tests)

    Returns:
        WebMapServiceClient or RealEarthClient
    """
    return CLIENT_TYPES[config.kind](config, transport, listener, image_size, clock)
