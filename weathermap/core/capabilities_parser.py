"""WMS capabilities document parser building the product registry."""

import logging
import xml.etree.ElementTree as ET
from enum import Enum, auto

from weathermap.core.crs import CoordinateSystem, parse_number
from weathermap.core.errors import ParseError
from weathermap.core.time_dimension import TimeDimension
from weathermap.models.geo import GeoBounds, GeoCoordinate
from weathermap.models.product import Product
from weathermap.models.service_config import ServiceConfig

logger = logging.getLogger(__name__)

XLINK_NAMESPACE = "http://www.w3.org/1999/xlink"


class ParseTag(Enum):
    """Parse context of the element currently open inside a product."""

    NONE = auto()
    LAYER = auto()
    NAME = auto()
    TITLE = auto()
    ABSTRACT = auto()
    KEYWORD_LIST = auto()
    KEYWORD = auto()
    CRS = auto()
    GEOGRAPHIC_BOUNDING_BOX = auto()
    WEST_BOUND_LONGITUDE = auto()
    EAST_BOUND_LONGITUDE = auto()
    SOUTH_BOUND_LATITUDE = auto()
    NORTH_BOUND_LATITUDE = auto()
    BOUNDING_BOX = auto()
    DIMENSION = auto()
    TIME_DIMENSION = auto()
    STYLE = auto()
    LEGEND_URL = auto()
    FORMAT = auto()
    ONLINE_RESOURCE = auto()
    ATTRIBUTION = auto()
    MIN_SCALE_DENOMINATOR = auto()
    MAX_SCALE_DENOMINATOR = auto()


_ELEMENT_TAGS = {
    "Layer": ParseTag.LAYER,
    "Name": ParseTag.NAME,
    "Title": ParseTag.TITLE,
    "Abstract": ParseTag.ABSTRACT,
    "KeywordList": ParseTag.KEYWORD_LIST,
    "Keyword": ParseTag.KEYWORD,
    "CRS": ParseTag.CRS,
    "EX_GeographicBoundingBox": ParseTag.GEOGRAPHIC_BOUNDING_BOX,
    "BoundingBox": ParseTag.BOUNDING_BOX,
    "Style": ParseTag.STYLE,
    "LegendURL": ParseTag.LEGEND_URL,
    "Format": ParseTag.FORMAT,
    "OnlineResource": ParseTag.ONLINE_RESOURCE,
    "Attribution": ParseTag.ATTRIBUTION,
    "MinScaleDenominator": ParseTag.MIN_SCALE_DENOMINATOR,
    "MaxScaleDenominator": ParseTag.MAX_SCALE_DENOMINATOR,
}

# Edges of EX_GeographicBoundingBox, only meaningful inside it
_BOUND_TAGS = {
    "westBoundLongitude": ParseTag.WEST_BOUND_LONGITUDE,
    "eastBoundLongitude": ParseTag.EAST_BOUND_LONGITUDE,
    "southBoundLatitude": ParseTag.SOUTH_BOUND_LATITUDE,
    "northBoundLatitude": ParseTag.NORTH_BOUND_LATITUDE,
}

# Depth of the parse stack (including its NONE base) for direct children of a product
PRODUCT_CHILD_DEPTH = 2
# Depth of the edge elements inside the geographic bounding box
BOUND_EDGE_DEPTH = 3


def next_tag(current: ParseTag, element_name: str, attributes: dict[str, str]) -> ParseTag:
    """
    Transition of the parse context on an element start.

    Args:
        current: Context of the enclosing element
        element_name: Local name of the element being opened
        attributes: Element attributes (local names, "xlink:" prefixed for XLink)

    Returns:
        Context for the new element (NONE for elements without effect)
    """
    if element_name in _BOUND_TAGS:
        if current is ParseTag.GEOGRAPHIC_BOUNDING_BOX:
            return _BOUND_TAGS[element_name]
        return ParseTag.NONE
    if element_name == "Dimension":
        if attributes.get("name") == "time":
            return ParseTag.TIME_DIMENSION
        return ParseTag.DIMENSION
    return _ELEMENT_TAGS.get(element_name, ParseTag.NONE)


def expand_line_breaks(text: str) -> str:
    """Expand carriage return and line feed character references left in text."""
    return text.replace("&#13;", "\r").replace("&#10;", "\n")


def local_name(name: str) -> str:
    """
    Reduce an expanded ElementTree name to the name the parser dispatches on.

    "{ns}Layer" becomes "Layer"; attributes in the XLink namespace keep
    their conventional "xlink:" prefix.
    """
    if not name.startswith("{"):
        return name
    namespace, _, local = name[1:].partition("}")
    if namespace == XLINK_NAMESPACE:
        return f"xlink:{local}"
    return local


class _EventTarget:
    """Adapter turning ElementTree parser callbacks into parser events.

    Text arrives in chunks; it is collected and dispatched as one event
    before the next element boundary.
    """

    def __init__(self, parser: "CapabilitiesParser"):
        self._parser = parser
        self._chunks: list[str] = []

    def _flush(self):
        if not self._chunks:
            return
        text = "".join(self._chunks).strip()
        self._chunks = []
        if text:
            self._parser.text(text)

    def start(self, tag, attrib):
        self._flush()
        attributes = {local_name(key): value for key, value in attrib.items()}
        self._parser.start_element(local_name(tag), attributes)

    def end(self, tag):
        self._flush()
        self._parser.end_element(local_name(tag))

    def data(self, data):
        self._chunks.append(data)

    def close(self):
        self._flush()


class CapabilitiesParser:
    """Build products from a WMS 1.3.0 capabilities document.

    A product starts at each Layer with queryable="1" and is registered
    when that Layer ends. Inside a product an explicit stack of parse tags
    tracks the element context, so nested and repeated element names
    restore the parent context on their end.
    """

    def __init__(self, service_config: ServiceConfig):
        self.service_config = service_config
        self._products: dict[str, Product] = {}
        self._product: Product | None = None
        self._stack: list[ParseTag] = []
        self._nested_layers = 0
        self._legend_width = ""

    @property
    def products(self) -> dict[str, Product]:
        return self._products

    def _feed(self, document: bytes, url: str | None) -> None:
        """
        Run the document through an XML parser feeding the event handlers.

        Raises:
            ParseError: If the markup is not well formed
        """
        parser = ET.XMLParser(target=_EventTarget(self))
        try:
            parser.feed(document)
            parser.close()
        except ET.ParseError as e:
            raise ParseError(f"Malformed capabilities document: {e}", url=url) from e

    @property
    def current_tag(self) -> ParseTag:
        return self._stack[-1] if self._stack else ParseTag.NONE

    def parse(self, document: bytes, url: str | None = None) -> dict[str, Product]:
        """
        Parse a capabilities document.

        Malformed markup stops the scan; the products completed up to that
        point are still returned.

        Args:
            document: Raw capabilities XML
            url: Source address (for log messages)

        Returns:
            Dictionary mapping product id to Product
        """
        self._products = {}
        self._product = None
        self._stack = []
        self._nested_layers = 0
        self._legend_width = ""

        try:
            self._feed(document, url)
        except ParseError as e:
            logger.warning(f"{e}, keeping {len(self._products)} parsed products")

        logger.info(f"Parsed {len(self._products)} products from {self.service_config.name} capabilities")
        return self._products

    def start_element(self, element_name: str, attributes: dict[str, str]) -> None:
        """Handle an element start."""
        if self._product is None:
            if element_name == "Layer" and attributes.get("queryable") == "1":
                self._open_product()
            return

        if element_name == "Layer":
            self._nested_layers += 1
        tag = next_tag(self.current_tag, element_name, attributes)
        if self._nested_layers == 0:
            self._apply_attributes(tag, attributes)
        self._stack.append(tag)

    def end_element(self, element_name: str) -> None:
        """Handle an element end."""
        if self._product is None:
            return

        if element_name == "Layer" and self._nested_layers == 0:
            product = self._product
            if product.id:
                self._products[product.id] = product
            else:
                logger.debug("Dropping queryable layer without name")
            self._product = None
            self._stack = []
            return

        if element_name == "Layer":
            self._nested_layers -= 1
        if len(self._stack) > 1:
            self._stack.pop()

    def text(self, text: str) -> None:
        """Handle element text."""
        if self._product is None or self._nested_layers > 0:
            return

        value = expand_line_breaks(text)
        tag = self.current_tag
        depth = len(self._stack)
        product = self._product

        if tag is ParseTag.NAME:
            if depth == PRODUCT_CHILD_DEPTH:
                product.id = value
        elif tag is ParseTag.TITLE:
            if depth == PRODUCT_CHILD_DEPTH:
                product.display_name = value
        elif tag is ParseTag.ABSTRACT:
            product.description = value
        elif tag is ParseTag.KEYWORD:
            product.keywords = value
        elif tag is ParseTag.ATTRIBUTION:
            product.attribution = value
        elif tag is ParseTag.CRS:
            if product.crs is CoordinateSystem.NONE:
                product.crs = CoordinateSystem.parse(value)
        elif tag in (
            ParseTag.WEST_BOUND_LONGITUDE,
            ParseTag.EAST_BOUND_LONGITUDE,
            ParseTag.SOUTH_BOUND_LATITUDE,
            ParseTag.NORTH_BOUND_LATITUDE,
        ):
            if depth == BOUND_EDGE_DEPTH and product.crs is not CoordinateSystem.NONE:
                self._bound_edge(tag, value)
        elif tag is ParseTag.TIME_DIMENSION:
            dimension = TimeDimension.parse_interval(
                value, self.service_config.min_polling_period_seconds
            )
            if dimension is not None:
                product.time_dimension = dimension
            else:
                logger.debug(f"Unusable time dimension for {product.id}: {value!r}")

    def _open_product(self):
        self._product = Product(
            bounds=GeoBounds(),
            capabilities=self.service_config.capabilities,
            service_kind=self.service_config.kind,
        )
        self._stack = [ParseTag.NONE]
        self._nested_layers = 0
        self._legend_width = ""

    def _apply_attributes(self, tag: ParseTag, attributes: dict[str, str]):
        if tag is ParseTag.BOUNDING_BOX:
            self._bounding_box(attributes)
        elif tag is ParseTag.LEGEND_URL:
            width = attributes.get("width")
            if width:
                self._legend_width = width
        elif tag is ParseTag.ONLINE_RESOURCE and self.current_tag is ParseTag.LEGEND_URL:
            self._online_resource(attributes)

    def _bound_edge(self, tag: ParseTag, value: str):
        product = self._product
        crs = product.crs
        try:
            if tag is ParseTag.WEST_BOUND_LONGITUDE:
                product.bounds.west_south.parse_longitude(value)
                product.bounds.west_south.set_crs(crs)
            elif tag is ParseTag.SOUTH_BOUND_LATITUDE:
                product.bounds.west_south.parse_latitude(value)
                product.bounds.west_south.set_crs(crs)
            elif tag is ParseTag.EAST_BOUND_LONGITUDE:
                product.bounds.east_north.parse_longitude(value)
                product.bounds.east_north.set_crs(crs)
            else:
                product.bounds.east_north.parse_latitude(value)
                product.bounds.east_north.set_crs(crs)
        except ValueError as e:
            logger.warning(f"Ignoring bound of {product.id}: {e}")

    def _bounding_box(self, attributes: dict[str, str]):
        product = self._product
        box_crs = CoordinateSystem.parse(attributes.get("CRS"))
        if product.crs is CoordinateSystem.NONE:
            product.crs = box_crs
        if box_crs is CoordinateSystem.NONE or box_crs is not product.crs:
            return

        try:
            minx = parse_number(attributes["minx"])
            miny = parse_number(attributes["miny"])
            maxx = parse_number(attributes["maxx"])
            maxy = parse_number(attributes["maxy"])
        except KeyError as e:
            logger.debug(f"BoundingBox of {product.id} lacks attribute {e}")
            return
        except ValueError as e:
            logger.warning(f"Ignoring BoundingBox of {product.id}: {e}")
            return

        if box_crs.latitude_first and product.capabilities.supports_axis_order_rule:
            west_south = GeoCoordinate(miny, minx, box_crs)
            east_north = GeoCoordinate(maxy, maxx, box_crs)
        else:
            west_south = GeoCoordinate(minx, miny, box_crs)
            east_north = GeoCoordinate(maxx, maxy, box_crs)
        product.bounds = GeoBounds(west_south, east_north)

    def _online_resource(self, attributes: dict[str, str]):
        if attributes.get("xlink:type") != "simple":
            return
        href = attributes.get("xlink:href")
        if not href:
            return
        if self._legend_width:
            href = f"{href}&WIDTH={self._legend_width}"
            self._legend_width = ""
        self._product.legend_urls.append(href)
