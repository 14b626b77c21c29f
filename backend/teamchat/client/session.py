"""Chat session: the messaging core wired together for one signed-in user.

    session = ChatSession(config)
    await session.start(token)              # AuthError if the token is refused
    await session.enter_room("workspace-1") # history seeded, live events flowing
    session.on_input("hel")                 # typing-start, idle timer armed
    session.send("hello")                   # typing-stop, message echoed back
    await session.close()                   # implicit leave, link closed

``is_connected`` is the binary indicator that gates the message input.
"""
import logging
from datetime import date, tzinfo
from typing import Callable, List, Optional

import httpx

from teamchat.config import AppConfig, get_config
from teamchat.errors import HistoryFetchError
from teamchat.schemas import Message, MessageType

from .channel import MessageChannel
from .connection import Connection, ConnectionManager, ConnectionState
from .history import HistoryLoader
from .presence import TypingTracker
from .rooms import RoomMembership
from .sequencer import MessageView, group_messages
from .transport import Transport, WebSocketTransport

logger = logging.getLogger(__name__)


class ChatSession:
    """One user's connection, room, typing presence and message list.

    Args:
        config: Application config. Defaults to ``get_config()``.
        transport_factory: Builds relay transports. Defaults to
            ``WebSocketTransport`` on ``client.relay_url``.
        http_client: Optional ``httpx.AsyncClient`` for history requests.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        transport_factory: Optional[Callable[[], Transport]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or get_config()
        client_settings = self.config.client
        if transport_factory is None:
            def transport_factory() -> Transport:
                return WebSocketTransport(
                    client_settings.relay_url,
                    open_timeout=client_settings.connect_timeout_ms / 1000,
                )
        self.manager = ConnectionManager(transport_factory, client_settings)
        self._http_client = http_client

        self.connection: Optional[Connection] = None
        self.rooms: Optional[RoomMembership] = None
        self.typing: Optional[TypingTracker] = None
        self.channel: Optional[MessageChannel] = None
        self.history: Optional[HistoryLoader] = None

    async def start(self, token: str) -> Connection:
        """Connect to the relay and build the room-level components.

        Calling it again while the link is up (or still reconnecting) returns
        the current connection and keeps the active room.

        Raises:
            AuthError: The relay refused the token.
        """
        if self.connection is not None and self.connection.state != ConnectionState.DISCONNECTED:
            logger.debug("[Session] Already started; keeping the current connection")
            return self.connection

        # Components of a previous, closed link must stop following it
        if self.typing:
            self.typing.close()
        if self.rooms:
            self.rooms.close()
        if self.history:
            await self.history.aclose()
        self.connection = self.rooms = self.typing = self.channel = self.history = None

        connection = await self.manager.connect(token)
        self.connection = connection
        self.rooms = RoomMembership(connection)
        self.typing = TypingTracker(connection, self.rooms, self.config.presence)
        self.channel = MessageChannel(connection, self.rooms)
        self.history = HistoryLoader(
            self.config.client.api_url,
            token,
            client=self._http_client,
            page_size=self.config.history.page_size,
        )
        return connection

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and self.connection.is_connected

    @property
    def current_room(self) -> Optional[str]:
        return self.rooms.current if self.rooms else None

    @property
    def messages(self) -> List[Message]:
        return self.channel.messages if self.channel else []

    def typing_indicator(self) -> str:
        return self.typing.indicator() if self.typing else ""

    def views(self, tz: Optional[tzinfo] = None, today: Optional[date] = None) -> List[MessageView]:
        return group_messages(self.messages, tz=tz, today=today)

    async def enter_room(self, workspace_id: str) -> List[Message]:
        """Switch to a workspace room and load its backlog.

        Live messages arriving while the backlog loads are held back and
        appended after it. A failed history fetch leaves the room with an
        empty backlog; live events keep flowing.
        """
        self._require_started()
        self.rooms.join_room(workspace_id)

        try:
            history = await self.history.fetch(workspace_id)
        except HistoryFetchError as e:
            logger.warning(f"[Session] {e.message}; continuing with empty history")
            history = []

        if self.rooms.current != workspace_id:
            logger.debug(f"[Session] Left {workspace_id} while its history was loading")
            return []

        self.channel.seed(history)
        return self.channel.messages

    def leave_room(self) -> None:
        if self.rooms and self.rooms.current is not None:
            self.rooms.leave_room(self.rooms.current)

    def on_input(self, text: str) -> None:
        """Keystroke in the message input."""
        if not self.typing:
            return
        if text.strip():
            self.typing.local_start_typing()
        else:
            self.typing.local_stop_typing()

    def blur(self) -> None:
        """The message input lost focus."""
        if self.typing:
            self.typing.local_stop_typing()

    def send(self, content: str, type: MessageType = MessageType.TEXT) -> bool:
        """Send a message to the active room. See ``MessageChannel.send``."""
        if not self.channel:
            return False
        sent = self.channel.send(content, type)
        # Sending ends the typing burst even when nothing went out
        self.typing.local_stop_typing()
        return sent

    async def close(self) -> None:
        """Tear the session down: stop typing, leave the room, disconnect."""
        if self.typing:
            self.typing.close()
        await self.manager.disconnect()
        if self.history:
            await self.history.aclose()
        logger.info("[Session] Closed")

    def _require_started(self) -> None:
        if self.connection is None:
            raise RuntimeError("ChatSession.start() must be awaited first")
