"""HTTP transport delivering map service responses to callbacks."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol
from urllib.parse import urlencode

import aiohttp

from weathermap.core.config import DOWNLOAD_TIMEOUT, USER_AGENT

logger = logging.getLogger(__name__)

# (error, status, payload); error is None on success
ResponseCallback = Callable[[Optional[str], int, bytes], None]


@dataclass
class MapRequest:
    """One outbound GET request."""

    address: str
    query: dict[str, str] = field(default_factory=dict)
    rid: int = 0

    @property
    def url(self) -> str:
        """Full URL with the query string appended."""
        if not self.query:
            return self.address
        separator = "&" if "?" in self.address else "?"
        return f"{self.address}{separator}{urlencode(self.query, safe=',:')}"


class Transport(Protocol):
    """Anything that performs requests and reports each outcome exactly once."""

    def send(self, request: MapRequest, callback: ResponseCallback) -> None: ...


class AiohttpTransport:
    """Transport backed by one aiohttp session.

    The session is created on context entry and closed on exit; send()
    needs a running event loop. There are no retries: each request
    produces exactly one callback.
    """

    def __init__(self, timeout: float = DOWNLOAD_TIMEOUT, user_agent: str = USER_AGENT):
        """
        Initialize transport.

        Args:
            timeout: Total timeout per request in seconds
            user_agent: User-Agent header sent with every request
        """
        self.timeout = timeout
        self.user_agent = user_agent
        self.session: Optional[aiohttp.ClientSession] = None
        self._tasks: set[asyncio.Task] = set()

    async def __aenter__(self):
        """Async context manager entry."""
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"User-Agent": self.user_agent},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self.session:
            await self.session.close()
            self.session = None

    @property
    def outstanding(self) -> int:
        """Number of requests not yet delivered."""
        return len(self._tasks)

    def send(self, request: MapRequest, callback: ResponseCallback) -> None:
        """
        Schedule a request.

        Args:
            request: Request to perform
            callback: Receives (error, status, payload) once the request completes

        Raises:
            RuntimeError: If the transport was not entered
        """
        if self.session is None:
            raise RuntimeError("Transport session not open, use 'async with AiohttpTransport()'")
        task = asyncio.get_running_loop().create_task(self._fetch(request, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fetch(self, request: MapRequest, callback: ResponseCallback) -> None:
        url = request.url
        logger.debug(f"GET {url}")
        try:
            async with self.session.get(url) as response:
                payload = await response.read()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            message = str(e) or type(e).__name__
            callback(message, 0, b"")
            return
        callback(None, status, payload)

    async def drain(self) -> None:
        """Wait until all requests, including ones sent from callbacks, are delivered."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
