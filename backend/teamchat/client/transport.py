"""Transport interface and the WebSocket implementation.

A transport carries JSON frames ``{"event": str, "data": any}`` over one
link to the relay. It knows nothing about rooms or reconnection; it only
maps link failures onto the error taxonomy:

    - AuthError: the relay refused the credential (HTTP 401/403 on the
      handshake, or close code 4401 after it)
    - TransportError: anything else that ends or prevents the link

Usage:
    transport = WebSocketTransport("ws://localhost:5000")
    await transport.open(token)
    frame = await transport.receive()
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from teamchat.errors import AuthError, TransportError

logger = logging.getLogger(__name__)

# Close code the relay uses when it rejects the bearer token
AUTH_FAILED_CLOSE_CODE = 4401

_AUTH_HTTP_STATUSES = (401, 403)


class Transport(ABC):
    """Abstract base class for relay transports.

    Implementations must raise AuthError or TransportError, never
    library-specific exceptions, so the connection manager can decide
    between giving up and retrying.
    """

    @abstractmethod
    async def open(self, token: str) -> None:
        """Open the link, presenting ``token`` as the bearer credential."""
        pass

    @abstractmethod
    async def send(self, frame: dict) -> None:
        """Write one frame."""
        pass

    @abstractmethod
    async def receive(self) -> dict:
        """Wait for and return the next frame."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the link. Safe to call on a link that is already closed."""
        pass


class WebSocketTransport(Transport):
    """Transport over a ``websockets`` client connection to ``{relay_url}/ws``."""

    def __init__(self, relay_url: str, open_timeout: float = 20.0) -> None:
        self.url = relay_url.rstrip("/") + "/ws"
        self.open_timeout = open_timeout
        self._ws: Optional[ClientConnection] = None

    async def open(self, token: str) -> None:
        try:
            self._ws = await connect(
                self.url,
                additional_headers={"Authorization": f"Bearer {token}"},
                open_timeout=self.open_timeout,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in _AUTH_HTTP_STATUSES:
                raise AuthError(f"Authentication error (HTTP {status})") from e
            raise TransportError(f"Relay refused the connection (HTTP {status})") from e
        except (OSError, TimeoutError, WebSocketException) as e:
            raise TransportError(f"Cannot reach relay at {self.url}: {e}") from e
        logger.debug("[Transport] Opened %s", self.url)

    async def send(self, frame: dict) -> None:
        if self._ws is None:
            raise TransportError("Transport is not open")
        try:
            await self._ws.send(json.dumps(frame))
        except ConnectionClosed as e:
            raise self._closed_error(e) from e

    async def receive(self) -> dict:
        if self._ws is None:
            raise TransportError("Transport is not open")
        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosed as e:
                raise self._closed_error(e) from e
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.warning("[Transport] Dropping non-JSON frame: %r", raw[:100])
                continue
            if not isinstance(frame, dict) or "event" not in frame:
                logger.warning("[Transport] Dropping malformed frame: %r", frame)
                continue
            return frame

    async def close(self) -> None:
        if self._ws is None:
            return
        ws, self._ws = self._ws, None
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug("[Transport] Error while closing: %s", e)

    @staticmethod
    def _closed_error(error: ConnectionClosed) -> Exception:
        close = error.rcvd
        if close is not None and close.code == AUTH_FAILED_CLOSE_CODE:
            return AuthError(close.reason or "Authentication error")
        return TransportError(f"Connection to relay closed: {error}")
