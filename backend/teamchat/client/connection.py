"""Connection manager: one authenticated relay link per session.

The manager owns the transport and the ``Connection`` handle. Other
components (room membership, message channel, typing tracker) borrow the
handle to emit frames and subscribe to events, but only the manager opens,
reopens or closes the link.

Lifecycle:
    connect(token)
      -> CONNECTING -> CONNECTED                 (handshake accepted)
      -> CONNECTING -> DISCONNECTED + AuthError  (credential refused, no retry)
      -> CONNECTING -> RECONNECTING              (relay unreachable, retry loop)
    link lost
      -> RECONNECTING -> CONNECTED               (backoff, then reopen)
    disconnect()
      -> teardown hooks (implicit room leave) -> DISCONNECTED

Transient failures are never raised; subscribers observe them as state
changes. ``last_error`` keeps the most recent failure for display.

Concurrency:
    Frames received on the link are dispatched to handlers one at a time
    on the event loop, in the order the relay sent them. Frames emitted by
    the client go through a FIFO queue drained by a writer task, so
    ``emit`` never blocks the caller.
"""
import asyncio
import logging
import random
import uuid
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from teamchat.config import ClientSettings
from teamchat.errors import AuthError, TeamChatError, TransportError
from teamchat.schemas import Event, Identity

from .events import EventBus, Subscription
from .transport import Transport

logger = logging.getLogger(__name__)

# Lifecycle channel names on the handle's internal bus
_STATE = "state"
_TEARDOWN = "teardown"

# How long disconnect() waits for queued frames (e.g. the implicit leave) to go out
FLUSH_TIMEOUT_SECONDS = 1.0


class ConnectionState(str, Enum):
    """Connectivity state exposed to subscribers."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class Connection:
    """Handle to the session's relay link.

    Attributes:
        id: Client-side identifier of this handle.
        auth_token: Bearer credential presented on every (re)connect.
        state: Current ConnectionState.
        last_error: Most recent failure, if any.
        user: Identity reported by the relay after authentication.
    """

    def __init__(self, auth_token: str) -> None:
        self.id = str(uuid.uuid4())
        self.auth_token = auth_token
        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[TeamChatError] = None
        self.user: Optional[Identity] = None

        self._events = EventBus("Connection")
        self._lifecycle = EventBus("Connection")
        self._outbox: Optional[asyncio.Queue] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def user_id(self) -> Optional[str]:
        return self.user.userId if self.user else None

    def on(self, event: Event, handler: Callable[[Any], None]) -> Subscription:
        """Subscribe to a relay event. The handler receives the frame's data."""
        return self._events.subscribe(event.value, handler)

    def on_state(self, handler: Callable[[ConnectionState], None]) -> Subscription:
        """Subscribe to connectivity state transitions."""
        return self._lifecycle.subscribe(_STATE, handler)

    def on_teardown(self, handler: Callable[[None], None]) -> Subscription:
        """Subscribe to the teardown that precedes an explicit disconnect."""
        return self._lifecycle.subscribe(_TEARDOWN, handler)

    def emit(self, event: Event, data: Any = None) -> bool:
        """Queue a frame for the relay without waiting for it to be written.

        Returns:
            True if the frame was queued, False if the link is not connected
            (the frame is dropped).
        """
        if self.state != ConnectionState.CONNECTED or self._outbox is None:
            logger.debug(f"[Connection] Dropped '{event.value}' while {self.state.value}")
            return False
        self._outbox.put_nowait({"event": event.value, "data": data})
        return True

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} {self.state.value}>"


class ConnectionManager:
    """Owns the transport behind a ``Connection`` and keeps it alive.

    Args:
        transport_factory: Builds a fresh transport for every (re)connect attempt.
        settings: Timeouts and backoff policy. Defaults to ``ClientSettings()``.
    """

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        settings: Optional[ClientSettings] = None,
    ) -> None:
        self._transport_factory = transport_factory
        self.settings = settings or ClientSettings()
        self.connection: Optional[Connection] = None

        self._transport: Optional[Transport] = None
        self._run_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._attempts = 0

    # =========================================================================
    # Public API
    # =========================================================================

    async def connect(self, token: str) -> Connection:
        """Open the relay link and return its handle.

        If the relay is unreachable the handle is still returned, in
        RECONNECTING, and retries continue in the background.

        Raises:
            AuthError: The relay refused the credential. Not retried.
        """
        if self.connection is not None and self.connection.state != ConnectionState.DISCONNECTED:
            logger.debug("[Connection] connect() called on a live connection; reusing it")
            return self.connection

        conn = Connection(token)
        self.connection = conn
        self._attempts = 0
        self._set_state(conn, ConnectionState.CONNECTING)

        try:
            await self._open(conn)
        except AuthError as e:
            logger.warning(f"[Connection] Authentication failed: {e.message}")
            self._fail(conn, e)
            raise
        except TransportError as e:
            logger.warning(f"[Connection] Initial connect failed, will retry: {e.message}")
            conn.last_error = e
            self._set_state(conn, ConnectionState.RECONNECTING)
            self._run_task = asyncio.create_task(self._run(conn, reconnect_first=True))
            return conn

        self._run_task = asyncio.create_task(self._run(conn))
        return conn

    async def disconnect(self) -> None:
        """Leave any active room and close the link. Idempotent."""
        conn = self.connection
        if conn is None:
            return

        # Implicit room leave and typing stop are queued here
        conn._lifecycle.dispatch(_TEARDOWN)
        await self._flush(conn)

        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None

        await self._drop_link(conn)
        self._set_state(conn, ConnectionState.DISCONNECTED)
        self.connection = None
        logger.info("[Connection] Disconnected")

    # =========================================================================
    # Link management
    # =========================================================================

    async def _open(self, conn: Connection) -> None:
        """Open a transport and run the handshake. Raises AuthError or TransportError."""
        transport = self._transport_factory()
        timeout = self.settings.connect_timeout_ms / 1000
        try:
            await asyncio.wait_for(transport.open(conn.auth_token), timeout)
            frame = await asyncio.wait_for(transport.receive(), timeout)
            if frame.get("event") != Event.CONNECTED.value:
                raise TransportError(f"Unexpected handshake frame: {frame.get('event')!r}")
            conn.user = Identity.model_validate(frame.get("data") or {})
        except asyncio.TimeoutError as e:
            await transport.close()
            raise TransportError("Timed out connecting to relay") from e
        except ValidationError as e:
            await transport.close()
            raise TransportError(f"Invalid handshake payload: {e}") from e
        except (AuthError, TransportError, asyncio.CancelledError):
            await transport.close()
            raise

        self._transport = transport
        conn._outbox = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._write_loop(transport, conn._outbox))
        self._attempts = 0
        conn.last_error = None
        logger.info(f"[Connection] Connected as {conn.user.userName or conn.user.userId}")
        self._set_state(conn, ConnectionState.CONNECTED)

    async def _run(self, conn: Connection, reconnect_first: bool = False) -> None:
        """Read frames until the link drops, then reconnect; forever."""
        if reconnect_first and not await self._reconnect(conn):
            return
        while True:
            try:
                await self._read_loop(conn)
            except AuthError as e:
                logger.warning(f"[Connection] Relay revoked the session: {e.message}")
                await self._drop_link(conn)
                self._fail(conn, e)
                return
            except TransportError as e:
                logger.warning(f"[Connection] Link lost: {e.message}")
                conn.last_error = e

            await self._drop_link(conn)
            self._set_state(conn, ConnectionState.RECONNECTING)
            if not await self._reconnect(conn):
                return

    async def _read_loop(self, conn: Connection) -> None:
        while True:
            frame = await self._transport.receive()
            conn._events.dispatch(frame.get("event"), frame.get("data"))

    async def _reconnect(self, conn: Connection) -> bool:
        """Retry with backoff until connected, refused, or out of attempts."""
        max_attempts = self.settings.max_reconnect_attempts
        while True:
            self._attempts += 1
            if max_attempts and self._attempts > max_attempts:
                logger.error(f"[Connection] Giving up after {max_attempts} reconnection attempts")
                self._fail(conn, conn.last_error or TransportError("Reconnection attempts exhausted"))
                return False

            attempt = self._attempts
            delay = self.backoff_delay(attempt)
            logger.info(f"[Connection] Reconnection attempt {attempt} in {delay:.2f}s")
            await asyncio.sleep(delay)

            try:
                await self._open(conn)
            except AuthError as e:
                logger.warning(f"[Connection] Reconnection refused: {e.message}")
                self._fail(conn, e)
                return False
            except TransportError as e:
                logger.debug(f"[Connection] Reconnection attempt {attempt} failed: {e.message}")
                conn.last_error = e
                continue

            logger.info(f"[Connection] Reconnected after {attempt} attempts")
            return True

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter, in seconds.

        ``reconnect_delay_ms * 2 ** (attempt - 1)`` capped at
        ``max_reconnect_delay_ms``, then moved up or down by up to
        ``randomization_factor`` of itself, and capped again.
        """
        base = self.settings.reconnect_delay_ms
        ceiling = self.settings.max_reconnect_delay_ms
        delay = min(base * (2 ** max(attempt - 1, 0)), ceiling)
        factor = self.settings.randomization_factor
        if factor:
            deviation = random.random() * factor * delay
            delay = delay - deviation if random.random() < 0.5 else delay + deviation
        return min(delay, ceiling) / 1000

    async def _write_loop(self, transport: Transport, outbox: asyncio.Queue) -> None:
        while True:
            frame = await outbox.get()
            try:
                await transport.send(frame)
            except (AuthError, TransportError) as e:
                # The read loop sees the same failure and handles reconnection
                logger.debug(f"[Connection] Write failed: {e.message}")
                return
            finally:
                outbox.task_done()

    async def _flush(self, conn: Connection) -> None:
        if conn._outbox is None or self._writer_task is None or self._writer_task.done():
            return
        try:
            await asyncio.wait_for(conn._outbox.join(), FLUSH_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("[Connection] Pending frames not flushed before disconnect")

    async def _drop_link(self, conn: Connection) -> None:
        conn._outbox = None
        if self._writer_task is not None:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None
        if self._transport is not None:
            transport, self._transport = self._transport, None
            await transport.close()

    def _fail(self, conn: Connection, error: TeamChatError) -> None:
        conn.last_error = error
        self._set_state(conn, ConnectionState.DISCONNECTED)

    def _set_state(self, conn: Connection, state: ConnectionState) -> None:
        if conn.state == state:
            return
        previous, conn.state = conn.state, state
        logger.info(f"[Connection] {previous.value} -> {state.value}")
        conn._lifecycle.dispatch(_STATE, state)
