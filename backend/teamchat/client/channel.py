"""Message channel: publish to and receive from the active room.

The sender never appends its own message locally. The relay echoes every
message to the whole room, sender included, and that echo is the only way a
message enters the log, so every client sees the same order.
"""
import logging
from typing import Any, Callable, Iterable, List, Set

from pydantic import ValidationError

from teamchat.schemas import Event, Message, MessageType

from .connection import Connection
from .events import EventBus, Subscription
from .rooms import RoomMembership

logger = logging.getLogger(__name__)

_MESSAGE = "message"


class MessageLog:
    """Ordered messages of the active room.

    History seeds the log; live messages that arrive before the history
    is in are held back and appended after it, skipping any the history
    already contains.
    """

    def __init__(self) -> None:
        self.messages: List[Message] = []
        self.seeded = False
        self._ids: Set[str] = set()
        self._pending: List[Message] = []

    def seed(self, history: Iterable[Message]) -> List[Message]:
        """Replace the log with ``history``, then append the held-back live messages.

        Returns:
            The held-back messages that were actually appended, in order.
        """
        self.messages = []
        self._ids = set()
        # sorted() is stable: equal timestamps keep the relay's order
        for message in sorted(history, key=lambda m: m.timestamp):
            self._add(message)
        self.seeded = True

        pending, self._pending = self._pending, []
        return [message for message in pending if self._add(message)]

    def append(self, message: Message) -> bool:
        """Add a live message. Returns False if it was buffered or a duplicate."""
        if not self.seeded:
            self._pending.append(message)
            return False
        return self._add(message)

    def reset(self) -> None:
        self.messages = []
        self.seeded = False
        self._ids = set()
        self._pending = []

    def _add(self, message: Message) -> bool:
        if message.id in self._ids:
            return False
        self._ids.add(message.id)
        self.messages.append(message)
        return True

    def __len__(self) -> int:
        return len(self.messages)


class MessageChannel:
    """Sends chat messages and delivers the room's broadcasts in relay order."""

    def __init__(self, connection: Connection, membership: RoomMembership) -> None:
        self._connection = connection
        self._membership = membership
        self.log = MessageLog()
        self._bus = EventBus("Channel")

        membership.on_join(self._on_room_join)

    @property
    def messages(self) -> List[Message]:
        return self.log.messages

    def send(self, content: str, type: MessageType = MessageType.TEXT) -> bool:
        """Publish a message to the active room without waiting for delivery.

        Returns:
            True if the message was handed to the connection. False if the
            content is blank, or there is no joined room on a live link; in
            that case nothing is sent.
        """
        text = content.strip()
        if not text:
            return False

        workspace_id = self._membership.current
        if workspace_id is None or not self._membership.joined:
            logger.warning(
                f"[Channel] Message not sent: "
                f"{'no active room' if workspace_id is None else 'not connected'}"
            )
            return False

        return self._connection.emit(Event.SEND_MESSAGE, {
            "workspaceId": workspace_id,
            "message": text,
            "type": MessageType(type).value,
        })

    def on_message(self, handler: Callable[[Message], None]) -> Subscription:
        """Subscribe to messages broadcast in the active room, own echoes included."""
        return self._bus.subscribe(_MESSAGE, handler)

    def seed(self, history: Iterable[Message]) -> None:
        """Load the room backlog, then deliver live messages held back during the load."""
        for message in self.log.seed(history):
            self._bus.dispatch(_MESSAGE, message)

    def _on_room_join(self, workspace_id: str) -> None:
        self.log.reset()
        self._membership.listen(Event.NEW_MESSAGE, self._handle_new_message)

    def _handle_new_message(self, data: Any) -> None:
        try:
            message = Message.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[Channel] Ignoring malformed new-message payload: {e}")
            return
        if message.workspaceId != self._membership.current:
            logger.debug(f"[Channel] Ignoring message for workspace {message.workspaceId}")
            return
        # Held back until seed() while the history loads
        if self.log.append(message):
            self._bus.dispatch(_MESSAGE, message)
