"""Pytest configuration and fixtures."""

import http.server
import json
import socketserver
import threading
from urllib.parse import parse_qsl, urlsplit

import pytest

from tests.map_fixtures import REST_EXTENTS, REST_PRODUCTS, capabilities_document, png_bytes


@pytest.fixture
def map_server():
    """
    Fixture for a local map service answering WMS and REST requests.

    Routes are keyed by path, plus "?<value>" of the request parameter for
    WMS style calls ("/wms?GetCapabilities", "/wms?GetMap"). Bodies may be
    bytes or a callable taking the (lower-cased) query dict.

    Usage:
        def test_download(map_server):
            map_server.serve_wms()
            url = map_server.base_url
            ...

    Attributes:
        port (int): The port the server is listening on
        base_url (str): http://127.0.0.1:<port>
        requests (list): (path, query) of every request received
    """

    class MapServer:
        def __init__(self, port, server, thread):
            self.port = port
            self.routes = {}
            self.requests = []
            self._server = server
            self._thread = thread

        @property
        def base_url(self):
            return f"http://127.0.0.1:{self.port}"

        def add(self, key, body, status=200, content_type="image/png"):
            self.routes[key] = (status, content_type, body)

        def serve_wms(self):
            """Register capabilities, GetMap and legend routes under /wms."""
            self.add("/wms?getcapabilities", capabilities_document(self.base_url), content_type="text/xml")
            self.add("/wms?getmap", lambda query: png_bytes(int(query["width"]), int(query["height"])))
            self.add("/legend", png_bytes(12, 30, (0, 0, 255, 255)))

        def serve_rest(self):
            """Register the RealEarth style api routes."""
            self.add("/api/products", json.dumps(REST_PRODUCTS).encode(), content_type="application/json")
            self.add(
                "/api/extents",
                lambda query: json.dumps(
                    {pid: REST_EXTENTS[pid] for pid in query["products"].split(",") if pid in REST_EXTENTS}
                ).encode(),
                content_type="application/json",
            )
            self.add(
                "/api/latest",
                lambda query: json.dumps({pid: "20240501.130000" for pid in query["products"].split(",")}).encode(),
                content_type="application/json",
            )
            self.add("/api/image", lambda query: png_bytes(int(query["width"]), int(query["height"])))
            self.add("/api/legend", png_bytes(20, 10, (0, 255, 0, 255)))

        def requests_to(self, path):
            return [query for request_path, query in self.requests if request_path == path]

    routes_holder = {}

    class MapHTTPRequestHandler(http.server.BaseHTTPRequestHandler):
        def do_GET(self):
            parts = urlsplit(self.path)
            query = {key.lower(): value for key, value in parse_qsl(parts.query)}
            server_state = routes_holder["server"]
            server_state.requests.append((parts.path, query))

            key = parts.path
            if "request" in query:
                key = f"{parts.path}?{query['request'].lower()}"
            route = server_state.routes.get(key)
            if route is None:
                self.send_error(404)
                return

            status, content_type, body = route
            if callable(body):
                body = body(query)
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            pass  # Suppress logging during tests

    class ThreadedServer(socketserver.ThreadingTCPServer):
        daemon_threads = True

    # Start server on auto-assigned port
    server = ThreadedServer(("127.0.0.1", 0), MapHTTPRequestHandler)
    port = server.server_address[1]

    # Start server thread
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    # Yield map server instance to test
    map_server_instance = MapServer(port, server, thread)
    routes_holder["server"] = map_server_instance
    yield map_server_instance

    # Cleanup: shutdown server
    server.shutdown()
    server.server_close()
    thread.join(timeout=1.0)


class FakeTransport:
    """Transport recording requests; responses are delivered by the test."""

    def __init__(self):
        self.sent = []

    def send(self, request, callback):
        self.sent.append((request, callback))

    def find(self, path_suffix):
        """Requests whose address ends with path_suffix, oldest first."""
        return [entry for entry in self.sent if entry[0].address.endswith(path_suffix)]

    def respond(self, entry, payload=b"", status=200, error=None):
        """Deliver a response for one recorded (request, callback) entry."""
        request, callback = entry
        callback(error, status, payload)
        return request


class RecordingListener:
    """Listener collecting client notifications."""

    def __init__(self):
        self.products_ready_calls = 0
        self.tiles = []
        self.legends = []

    def products_ready(self):
        self.products_ready_calls += 1

    def tile_ready(self, request):
        self.tiles.append(request)

    def legend_ready(self, product):
        self.legends.append(product)


@pytest.fixture
def fake_transport():
    """Transport that never touches the network."""
    return FakeTransport()


@pytest.fixture
def listener():
    """Listener recording notifications."""
    return RecordingListener()
