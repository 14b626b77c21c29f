"""Room membership: at most one active workspace room per connection.

Joining is a state-conditioned effect rather than a one-shot call: the
``join-workspace`` frame goes out as soon as the connection is CONNECTED,
whether the join was requested before that or the link has just come back
after a drop.

Listeners registered through ``listen()`` are room-scoped. Leaving the room
unsubscribes all of them before ``leave-workspace`` is emitted, so events of
the old room can never reach handlers installed for the next one.
"""
import logging
from typing import Any, Callable, List, Optional

from teamchat.schemas import Event

from .connection import Connection, ConnectionState
from .events import EventBus, Subscription

logger = logging.getLogger(__name__)

_JOINED = "joined"
_LEAVING = "leaving"


class RoomMembership:
    """Tracks the active room and the listeners scoped to it.

    Attributes:
        current: Workspace ID of the active room, or None.
    """

    def __init__(self, connection: Connection) -> None:
        self._connection = connection
        self.current: Optional[str] = None
        self._announced = False
        self._room_subscriptions: List[Subscription] = []
        self._hooks = EventBus("Rooms")

        self._connection_subscriptions = [
            connection.on_state(self._on_state),
            connection.on_teardown(self._on_teardown),
        ]

    @property
    def joined(self) -> bool:
        """True when the relay has been told about the active room on the current link."""
        return self.current is not None and self._announced and self._connection.is_connected

    def join_room(self, workspace_id: str) -> None:
        """Make ``workspace_id`` the active room, leaving the previous one first."""
        if self.current == workspace_id:
            self._announce()
            return
        if self.current is not None:
            self.leave_room(self.current)

        self.current = workspace_id
        self._announced = False
        logger.info(f"[Rooms] Entering workspace {workspace_id}")
        self._hooks.dispatch(_JOINED, workspace_id)
        self._announce()

    def leave_room(self, workspace_id: str) -> None:
        """Leave the active room. Leaving any other room is a no-op."""
        if workspace_id != self.current:
            logger.debug(f"[Rooms] Not in workspace {workspace_id}; nothing to leave")
            return

        self._hooks.dispatch(_LEAVING, workspace_id)

        for subscription in self._room_subscriptions:
            subscription.unsubscribe()
        self._room_subscriptions.clear()

        if self._announced:
            self._connection.emit(Event.LEAVE_WORKSPACE, workspace_id)
        self.current = None
        self._announced = False
        logger.info(f"[Rooms] Left workspace {workspace_id}")

    def listen(self, event: Event, handler: Callable[[Any], None]) -> Subscription:
        """Subscribe to a relay event until the active room is left."""
        subscription = self._connection.on(event, handler)
        self._room_subscriptions.append(subscription)
        return subscription

    def on_join(self, hook: Callable[[str], None]) -> Subscription:
        """Run ``hook(workspace_id)`` whenever a new room becomes active."""
        return self._hooks.subscribe(_JOINED, hook)

    def on_leave(self, hook: Callable[[str], None]) -> Subscription:
        """Run ``hook(workspace_id)`` before the room's listeners are removed."""
        return self._hooks.subscribe(_LEAVING, hook)

    def close(self) -> None:
        """Leave the active room and stop following the connection."""
        if self.current is not None:
            self.leave_room(self.current)
        for subscription in self._connection_subscriptions:
            subscription.unsubscribe()
        self._connection_subscriptions.clear()
        self._hooks.clear()

    def _announce(self) -> None:
        if self.current is None or self._announced:
            return
        if self._connection.emit(Event.JOIN_WORKSPACE, self.current):
            self._announced = True
            logger.debug(f"[Rooms] join-workspace sent for {self.current}")
        else:
            logger.debug(f"[Rooms] Join of {self.current} deferred until connected")

    def _on_state(self, state: ConnectionState) -> None:
        if state == ConnectionState.CONNECTED:
            # Fresh link: the relay has no memory of our room
            self._announced = False
            self._announce()
        else:
            self._announced = False

    def _on_teardown(self, _: Any = None) -> None:
        if self.current is not None:
            self.leave_room(self.current)
