"""Tests for the service clients using a transport driven by the test."""

import json
import logging
from datetime import datetime, timezone

import pytest

from tests.map_fixtures import REST_EXTENTS, REST_PRODUCTS, capabilities_document, minimal_capabilities, png_bytes
from weathermap.core.crs import CoordinateSystem
from weathermap.core.errors import EmptyBodyError, StatusError, TransportError, TypeMismatchError
from weathermap.core.service_client import RealEarthClient, ServiceClient, WebMapServiceClient, create_client
from weathermap.core.transport import MapRequest
from weathermap.models.service_config import ProductCapabilities, ServiceConfig

BASE = "http://maps.example.org"

WMS = ServiceConfig(
    name="test-wms",
    base_url=BASE,
    path="wms",
    response_delay_seconds=600,
    min_polling_period_seconds=60,
)
REST = ServiceConfig(
    name="test-rest",
    base_url=BASE,
    kind="rest",
    response_delay_seconds=0,
    min_polling_period_seconds=600,
    raster_crs="EPSG:3857",
)


def clock_at(*args):
    moment = datetime(*args, tzinfo=timezone.utc)
    return lambda: moment


@pytest.fixture
def wms_client(fake_transport, listener):
    return WebMapServiceClient(WMS, fake_transport, listener, image_size=64, clock=clock_at(2024, 5, 1, 12, 1))


@pytest.fixture
def loaded_wms_client(wms_client, fake_transport):
    wms_client.refresh_capabilities()
    fake_transport.respond(fake_transport.sent.pop(), capabilities_document(BASE))
    return wms_client


@pytest.fixture
def rest_client(fake_transport, listener):
    client = RealEarthClient(REST, fake_transport, listener, image_size=64, clock=clock_at(2024, 5, 1, 12, 30))
    client.refresh_capabilities()
    fake_transport.respond(fake_transport.sent.pop(), json.dumps(REST_PRODUCTS).encode())
    return client


def test_create_client_by_kind(fake_transport):
    """Test the client class follows the service kind."""
    assert isinstance(create_client(WMS, fake_transport), WebMapServiceClient)
    assert isinstance(create_client(REST, fake_transport), RealEarthClient)
    with pytest.raises(ValueError):
        WebMapServiceClient(REST, fake_transport)


def test_refresh_capabilities_request(wms_client, fake_transport):
    """Test the capabilities request parameters."""
    wms_client.refresh_capabilities()

    request, _ = fake_transport.sent[0]
    assert request.address == f"{BASE}/wms"
    assert request.query == {"service": "WMS", "version": "1.3.0", "request": "GetCapabilities"}
    assert wms_client.outstanding_requests == 1


def test_refresh_replaces_registry(loaded_wms_client, fake_transport, listener):
    """Test each refresh replaces the registry wholesale."""
    assert sorted(loaded_wms_client.products) == ["radar", "temperature"]
    assert listener.products_ready_calls == 1

    loaded_wms_client.refresh_capabilities()
    fake_transport.respond(fake_transport.sent.pop(), minimal_capabilities("<CRS>CRS:84</CRS>"))

    assert list(loaded_wms_client.products) == ["single"]
    assert listener.products_ready_calls == 2
    assert loaded_wms_client.outstanding_requests == 0


def test_concurrent_refreshes_last_response_wins(wms_client, fake_transport):
    """Test refreshes are not coalesced."""
    wms_client.refresh_capabilities()
    wms_client.refresh_capabilities()
    first, second = fake_transport.sent

    fake_transport.respond(second, minimal_capabilities("<CRS>CRS:84</CRS>"))
    fake_transport.respond(first, capabilities_document(BASE))

    assert sorted(wms_client.products) == ["radar", "temperature"]


def test_malformed_capabilities_notify_partial(wms_client, fake_transport, listener):
    """Test a broken document still completes the refresh."""
    document = capabilities_document(BASE)
    truncated = document[: document.index(b"<Layer queryable=\"1\">\n        <Name>temperature")] + b"<Layer"

    wms_client.refresh_capabilities()
    fake_transport.respond(fake_transport.sent.pop(), truncated)

    assert list(wms_client.products) == ["radar"]
    assert listener.products_ready_calls == 1


@pytest.mark.parametrize(
    "error,status,payload,message",
    [
        ("Connection refused", 0, b"", "Connection refused"),
        (None, 503, b"busy", "HTTP 503"),
        (None, 200, b"", "without data"),
    ],
)
def test_failures_abandon_operation(wms_client, fake_transport, listener, caplog, error, status, payload, message):
    """Test transport, status and empty body failures are logged and dropped."""
    wms_client.refresh_capabilities()

    with caplog.at_level(logging.WARNING):
        fake_transport.respond(fake_transport.sent.pop(), payload, status=status, error=error)

    assert wms_client.products == {}
    assert listener.products_ready_calls == 0
    assert wms_client.outstanding_requests == 0
    assert message in caplog.text


def test_duplicate_delivery_ignored(wms_client, fake_transport, listener, caplog):
    """Test a continuation runs at most once."""
    wms_client.refresh_capabilities()
    entry = fake_transport.sent.pop()
    fake_transport.respond(entry, capabilities_document(BASE))

    with caplog.at_level(logging.WARNING):
        fake_transport.respond(entry, capabilities_document(BASE))

    assert listener.products_ready_calls == 1
    assert "unknown request" in caplog.text


def test_check_freshness_ignores_unknown(wms_client, loaded_wms_client, fake_transport):
    """Test unknown ids and an empty registry are no-ops."""
    empty = WebMapServiceClient(WMS, fake_transport)
    empty.check_freshness("radar")
    loaded_wms_client.check_freshness("missing")
    loaded_wms_client.check_freshness("")

    assert fake_transport.sent == []


def test_check_freshness_stale_requests_tiles(loaded_wms_client, fake_transport):
    """Test a stale product triggers the quadrant requests."""
    loaded_wms_client._clock = clock_at(2024, 5, 1, 12, 30)

    loaded_wms_client.check_freshness("radar")

    requests = [request for request, _ in fake_transport.sent]
    assert len(requests) == 4
    assert all(request.query["LAYERS"] == "radar" for request in requests)
    assert all(request.address == f"{BASE}/wms" for request in requests)
    assert loaded_wms_client.products["radar"].time_dimension.end == "2024-05-01T12:05:00Z"


def test_check_freshness_fresh_product(loaded_wms_client, fake_transport):
    """Test a fresh product is not requested."""
    loaded_wms_client.check_freshness("radar")
    loaded_wms_client.check_freshness("temperature")  # no time dimension

    assert fake_transport.sent == []


def test_request_tiles_time_parameter(loaded_wms_client, fake_transport):
    """Test the declared end is requested verbatim."""
    loaded_wms_client.request_tiles("radar")

    assert {request.query["TIME"] for request, _ in fake_transport.sent} == {"2024-05-01T12:00:00.000Z"}


def test_request_tiles_prefer_current_time(fake_transport):
    """Test forecast ends are rolled back when the service prefers current time."""
    config = ServiceConfig(name="fc", base_url=BASE, path="wms", response_delay_seconds=0,
                           min_polling_period_seconds=60, prefer_current_time=True)
    client = WebMapServiceClient(config, fake_transport, image_size=64, clock=clock_at(2024, 5, 1, 11, 7))
    client.refresh_capabilities()
    fake_transport.respond(fake_transport.sent.pop(), capabilities_document(BASE))

    client.request_tiles("radar")

    assert {request.query["TIME"] for request, _ in fake_transport.sent} == {"2024-05-01T11:05:00Z"}


def test_tile_arrival_fills_composite(loaded_wms_client, fake_transport, listener):
    """Test arriving tiles are reprojected into the product's composite."""
    loaded_wms_client.request_tiles("radar")

    for entry in list(fake_transport.sent):
        request, _ = entry
        fake_transport.respond(entry, png_bytes(int(request.query["WIDTH"]), int(request.query["HEIGHT"])))

    assert len(listener.tiles) == 4
    composite = loaded_wms_client.composite("radar")
    assert composite.shape == (64, 64, 4)
    # the radar product reaches 70N of 90: the top rows stay transparent
    assert composite[0, :, 3].max() == 0
    assert composite[31, :, 3].min() == 255
    assert composite[32, :, 3].min() == 255


def test_tile_for_vanished_product_tolerated(loaded_wms_client, fake_transport, listener):
    """Test a tile whose product disappeared is dropped quietly."""
    loaded_wms_client.request_tiles("radar")
    tile_entries = list(fake_transport.sent)
    loaded_wms_client.refresh_capabilities()
    fake_transport.respond(fake_transport.sent[-1], minimal_capabilities("<CRS>CRS:84</CRS>"))

    request, _ = tile_entries[0]
    fake_transport.respond(tile_entries[0], png_bytes(int(request.query["WIDTH"]), int(request.query["HEIGHT"])))

    assert listener.tiles == []


def test_undecodable_tile_logged(loaded_wms_client, fake_transport, listener, caplog):
    """Test a payload that is not an image is a parse error."""
    loaded_wms_client.request_tiles("radar")

    with caplog.at_level(logging.WARNING):
        fake_transport.respond(fake_transport.sent[0], b"<ServiceExceptionReport/>")

    assert listener.tiles == []
    assert "Undecodable image" in caplog.text


def test_wms_product_without_bounds_dropped(wms_client, fake_transport):
    """Test WMS products without bounds are not deferred."""
    wms_client.refresh_capabilities()
    fake_transport.respond(fake_transport.sent.pop(), minimal_capabilities("<CRS>CRS:84</CRS>"))

    wms_client.request_tiles("single")

    assert fake_transport.sent == []
    assert wms_client.pending_product_id is None


def test_fetch_legend_once_then_cached(loaded_wms_client, fake_transport, listener):
    """Test one legend request, then the cached image."""
    radar = loaded_wms_client.products["radar"]

    assert loaded_wms_client.fetch_legend(radar) is None
    request, _ = fake_transport.sent[0]
    assert request.url == f"{BASE}/legend?layer=radar&WIDTH=120"

    fake_transport.respond(fake_transport.sent[0], png_bytes(12, 30))

    assert listener.legends == [radar]
    legend = loaded_wms_client.fetch_legend(radar)
    assert legend.shape == (30, 12, 4)
    assert len(fake_transport.sent) == 1


def test_fetch_legend_without_url(loaded_wms_client, fake_transport):
    """Test products without legend link issue no request."""
    assert loaded_wms_client.fetch_legend(loaded_wms_client.products["temperature"]) is None
    assert fake_transport.sent == []


def test_type_mismatch(loaded_wms_client, rest_client, fake_transport, caplog):
    """Test a product of another service kind is refused."""
    rest_product = rest_client.products["globalir"]
    sent_before = len(fake_transport.sent)

    with caplog.at_level(logging.WARNING):
        assert loaded_wms_client.fetch_legend(rest_product) is None

    assert len(fake_transport.sent) == sent_before
    assert "used with wms service" in caplog.text


def test_rest_products(rest_client, fake_transport, listener):
    """Test REST discovery and displayability."""
    products = rest_client.products

    assert sorted(products) == ["globalir", "nexrad", "shapes"]
    assert products["globalir"].is_displayable()
    assert products["nexrad"].is_displayable()
    assert not products["shapes"].is_displayable()
    assert products["globalir"].time_dimension.end == "20240501.120000"
    assert products["globalir"].seed_lat_bound == 80.0
    assert products["nexrad"].seed_lat_bound == 85.0
    assert not products["globalir"].has_extent
    assert listener.products_ready_calls == 1


def test_rest_discovery_query(fake_transport):
    """Test the api/products parameters."""
    client = RealEarthClient(REST, fake_transport)
    client.refresh_capabilities()

    request, _ = fake_transport.sent[0]
    assert request.address == f"{BASE}/api/products"
    assert request.query == {"search": "global", "timespan": "-6h"}


def test_rest_malformed_json(fake_transport, listener, caplog):
    """Test unparseable product lists leave the registry alone."""
    client = RealEarthClient(REST, fake_transport, listener)
    client.refresh_capabilities()

    with caplog.at_level(logging.WARNING):
        fake_transport.respond(fake_transport.sent.pop(), b"{not json")

    assert client.products == {}
    assert listener.products_ready_calls == 0
    assert "Malformed products JSON" in caplog.text


def test_deferred_request_replayed_once(rest_client, fake_transport):
    """Test a request for a product without extent waits for api/extents."""
    rest_client.request_tiles("globalir")

    assert rest_client.pending_product_id == "globalir"
    assert [entry[0].query for entry in fake_transport.find("api/extents")] == [{"products": "globalir"}]
    assert fake_transport.find("api/image") == []

    fake_transport.respond(fake_transport.find("api/extents")[0], json.dumps({"globalir": REST_EXTENTS["globalir"]}).encode())

    images = fake_transport.find("api/image")
    assert len(images) == 4
    assert rest_client.pending_product_id is None
    assert {entry[0].query["products"] for entry in images} == {"globalir"}
    assert {entry[0].query["time"] for entry in images} == {"20240501.120000"}
    bounds = {entry[0].query["bounds"] for entry in images}
    assert bounds == {
        "0.000,-180.000,80.000,0.000",
        "0.000,0.000,80.000,180.000",
        "-80.000,-180.000,0.000,0.000",
        "-80.000,0.000,0.000,180.000",
    }


def test_deferred_request_slot_overwritten(rest_client, fake_transport):
    """Test only the most recently deferred product is replayed."""
    rest_client.request_tiles("globalir")
    rest_client.request_tiles("nexrad")
    assert rest_client.pending_product_id == "nexrad"

    first_extents = fake_transport.find("api/extents")[0]
    fake_transport.respond(first_extents, json.dumps({"globalir": REST_EXTENTS["globalir"]}).encode())

    # nexrad still lacks its extent: deferred again, nothing fetched for globalir
    assert fake_transport.find("api/image") == []
    assert rest_client.pending_product_id == "nexrad"

    for entry in fake_transport.find("api/extents")[1:]:
        fake_transport.respond(entry, json.dumps({"nexrad": REST_EXTENTS["nexrad"]}).encode())

    images = fake_transport.find("api/image")
    assert images
    assert {entry[0].query["products"] for entry in images} == {"nexrad"}


def test_rest_extent_defaults(rest_client, fake_transport):
    """Test missing extent fields fall back to the defaults."""
    rest_client.request_tiles("nexrad")
    fake_transport.respond(fake_transport.find("api/extents")[0], json.dumps({"nexrad": {"north": "50"}}).encode())

    nexrad = rest_client.products["nexrad"]
    assert (nexrad.bounds.west, nexrad.bounds.south, nexrad.bounds.east, nexrad.bounds.north) == (
        -180.0,
        -85.0,
        180.0,
        50.0,
    )
    assert (nexrad.extent_width, nexrad.extent_height) == (1024, 1024)
    assert nexrad.bounds.crs is CoordinateSystem.CRS84


def test_rest_tiles_use_mercator_rows(rest_client, fake_transport):
    """Test REST tiles are reprojected from web mercator rows."""
    rest_client.request_tiles("globalir")
    fake_transport.respond(fake_transport.find("api/extents")[0], json.dumps({"globalir": REST_EXTENTS["globalir"]}).encode())

    entry = fake_transport.find("api/image")[0]
    assert entry[0].query["width"] == "32"
    assert entry[0].query["height"] == "32"
    _, continuation = rest_client._continuations[entry[0].rid]
    tile_request = continuation.args[0]
    assert tile_request.raster_crs is CoordinateSystem.EPSG3857
    assert tile_request.bounds.crs is CoordinateSystem.CRS84


def test_rest_latest_triggers_request(rest_client, fake_transport):
    """Test an unseen latest time requests tiles; a known one doesn't."""
    rest_client.request_tiles("globalir")
    fake_transport.respond(fake_transport.find("api/extents")[0], json.dumps({"globalir": REST_EXTENTS["globalir"]}).encode())
    fake_transport.sent.clear()

    rest_client.check_freshness("globalir")
    latest = fake_transport.find("api/latest")
    assert [entry[0].query for entry in latest] == [{"products": "globalir"}]

    fake_transport.respond(latest[0], json.dumps({"globalir": "20240501.120000"}).encode())
    assert fake_transport.find("api/image") == []

    rest_client.check_freshness("globalir")
    fake_transport.respond(fake_transport.find("api/latest")[1], json.dumps({"globalir": "20240501.130000"}).encode())

    images = fake_transport.find("api/image")
    assert len(images) == 4
    assert {entry[0].query["time"] for entry in images} == {"20240501.130000"}


def test_rest_legend(rest_client, fake_transport, listener):
    """Test REST legends come from api/legend."""
    product = rest_client.products["globalir"]

    rest_client.fetch_legend(product)
    entry = fake_transport.find("api/legend")[0]
    assert entry[0].query == {"products": "globalir"}

    fake_transport.respond(entry, png_bytes(20, 10))
    assert product.legend.shape == (10, 20, 4)
    assert listener.legends == [product]


def test_base_client_is_abstract(fake_transport):
    """Test only the service specific clients can be created."""
    with pytest.raises(TypeError):
        ServiceClient(WMS, fake_transport)


def test_check_response_errors():
    """Test failed responses raise the matching error."""
    request = MapRequest(f"{BASE}/wms", {"request": "GetMap"}, 7)

    with pytest.raises(TransportError, match="Connection refused"):
        ServiceClient.check_response(request, "Connection refused", 0, b"")
    with pytest.raises(StatusError) as excinfo:
        ServiceClient.check_response(request, None, 404, b"missing")
    assert excinfo.value.status == 404
    assert excinfo.value.url == f"{BASE}/wms?request=GetMap"
    with pytest.raises(EmptyBodyError):
        ServiceClient.check_response(request, None, 200, b"")
    ServiceClient.check_response(request, None, 200, b"tile")


def test_require_kind(loaded_wms_client, rest_client):
    """Test products of another kind raise TypeMismatchError."""
    loaded_wms_client.require_kind(loaded_wms_client.products["radar"])
    with pytest.raises(TypeMismatchError, match="globalir of kind rest"):
        loaded_wms_client.require_kind(rest_client.products["globalir"])


def test_wms_freshness_without_time_dimension(loaded_wms_client, fake_transport):
    """Test WMS products without a time dimension are never refreshed."""
    loaded_wms_client.check_freshness("temperature")

    assert fake_transport.sent == []


def test_rest_latest_for_product_without_times(fake_transport):
    """Test a product listed without times gets its first time from api/latest."""
    client = RealEarthClient(REST, fake_transport, image_size=64, clock=clock_at(2024, 5, 1, 13, 30))
    client.refresh_capabilities()
    quiet = {"id": "quiet", "name": "Quiet product", "outputtype": "png24", "times": []}
    fake_transport.respond(fake_transport.sent.pop(), json.dumps([quiet]).encode())
    product = client.products["quiet"]
    assert product.time_dimension is None
    assert not product.is_displayable()

    client.check_freshness("quiet")
    latest = fake_transport.find("api/latest")
    assert [entry[0].query for entry in latest] == [{"products": "quiet"}]
    fake_transport.respond(latest[0], json.dumps({"quiet": "20240501.130000"}).encode())

    assert product.time_dimension.end == "20240501.130000"
    assert product.is_displayable()
    assert client.pending_product_id == "quiet"
    assert [entry[0].query for entry in fake_transport.find("api/extents")] == [{"products": "quiet"}]

    fake_transport.respond(fake_transport.find("api/extents")[0], json.dumps({"quiet": {}}).encode())

    images = fake_transport.find("api/image")
    assert len(images) == 4
    assert {entry[0].query["time"] for entry in images} == {"20240501.130000"}


def test_rest_malformed_extents_replay_pending(rest_client, fake_transport, caplog):
    """Test the deferred request is replayed even if the extents can't be read."""
    rest_client.request_tiles("globalir")

    with caplog.at_level(logging.WARNING):
        fake_transport.respond(fake_transport.find("api/extents")[0], b"[broken")

    assert "Malformed extents JSON" in caplog.text
    assert len(fake_transport.find("api/extents")) == 2
    assert rest_client.pending_product_id == "globalir"
    assert fake_transport.find("api/image") == []


def test_legend_link_used_when_service_links_legends(rest_client, fake_transport):
    """Test a product's own legend link wins when its capabilities say legends are linked."""
    product = rest_client.products["globalir"]
    product.capabilities = ProductCapabilities(
        has_time_dimension=True, has_legend_url=True, supports_axis_order_rule=False, has_extent_query=True
    )
    product.legend_urls = [f"{BASE}/legends/globalir.png"]

    rest_client.fetch_legend(product)

    assert fake_transport.find("api/legend") == []
    assert fake_transport.sent[-1][0].url == f"{BASE}/legends/globalir.png"


def test_legend_endpoint_used_without_linked_legends(loaded_wms_client, fake_transport):
    """Test products of services without legend links ask the service's endpoint."""
    radar = loaded_wms_client.products["radar"]
    radar.capabilities = ProductCapabilities(
        has_time_dimension=False, has_legend_url=False, supports_axis_order_rule=True
    )

    # WMS has no legend endpoint
    assert loaded_wms_client.fetch_legend(radar) is None
    assert fake_transport.sent == []
