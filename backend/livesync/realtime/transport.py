"""Physical transports for the change feed.

ConnectionManager only talks to the Transport interface: open it with two
callbacks, send JSON frames, close it. WebSocketTransport is the production
implementation on top of the ``websockets`` asyncio client; tests use an
in-memory transport with the same interface.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from livesync.errors import NotConnected, TransportError

logger = logging.getLogger(__name__)

FrameCallback = Callable[[Dict[str, Any]], None]
CloseCallback = Callable[[Optional[BaseException]], None]


class Transport(ABC):
    """Abstract bidirectional frame transport.

    Implementations call ``on_frame`` for every decoded inbound frame and
    ``on_close`` exactly once when the link goes away on its own (remote
    close or error). A close requested through ``close()`` does not invoke
    ``on_close``.
    """

    @abstractmethod
    async def open(self, on_frame: FrameCallback, on_close: CloseCallback) -> None:
        """Open the link.

        Raises:
            TransportError: If the link cannot be established.
        """

    @abstractmethod
    async def send(self, frame: Dict[str, Any]) -> None:
        """Send one frame.

        Raises:
            NotConnected: If the link is not open.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the link. Safe to call when already closed."""


class WebSocketTransport(Transport):
    """JSON-over-WebSocket transport.

    Ping/pong keepalive is left to the websockets library (default 20s
    interval), so dead links surface as ConnectionClosed in the reader.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> None:
        self.url = url
        self._api_key = api_key
        self._access_token = access_token
        self._ws: Optional[ClientConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self._api_key:
            headers["apikey"] = self._api_key
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    async def open(self, on_frame: FrameCallback, on_close: CloseCallback) -> None:
        self._closing = False
        try:
            self._ws = await connect(self.url, additional_headers=self._headers())
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            raise TransportError(f"Could not open {self.url}: {exc}") from exc

        logger.info("[Transport] WebSocket opened: %s", self.url)
        self._reader = asyncio.create_task(self._read_loop(self._ws, on_frame, on_close))

    async def _read_loop(
        self,
        ws: ClientConnection,
        on_frame: FrameCallback,
        on_close: CloseCallback,
    ) -> None:
        error: Optional[BaseException] = None
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("[Transport] Dropping undecodable frame: %r", raw[:200])
                    continue
                if not isinstance(frame, dict):
                    logger.warning("[Transport] Dropping non-object frame: %r", frame)
                    continue
                on_frame(frame)
        except ConnectionClosed as exc:
            error = exc
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("[Transport] Reader failed: %s", exc)
            error = exc

        if self._closing:
            return
        self._ws = None
        logger.info("[Transport] WebSocket closed by remote: %s", error)
        on_close(error)

    async def send(self, frame: Dict[str, Any]) -> None:
        if self._ws is None:
            raise NotConnected()
        try:
            await self._ws.send(json.dumps(frame))
        except ConnectionClosed as exc:
            raise NotConnected(f"Connection closed while sending: {exc}") from exc

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if ws is not None:
            await ws.close()
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
