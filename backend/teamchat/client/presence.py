"""Typing presence for the active room.

Two halves:

* Local: every keystroke (re-)announces ``typing-start`` and re-arms an idle
  timer; when the timer runs out, or the user sends, blurs the input, closes
  the view or leaves the room, ``typing-stop`` is announced and the timer is
  cancelled. The timer is an explicit cancellable object, so a cancelled
  stop can never fire later.
* Remote: peers' ``user-typing`` events insert or refresh one entry per
  user; ``user-stopped-typing`` removes it. Entries also expire after
  ``remote_typing_ttl_ms`` so a peer that vanishes without a stop does not
  leave a stuck indicator (0 disables expiry).
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from teamchat.config import PresenceSettings
from teamchat.schemas import Event, TypingEvent, TypingStopEvent

from .connection import Connection
from .events import EventBus, Subscription
from .rooms import RoomMembership

logger = logging.getLogger(__name__)

_CHANGED = "changed"


@dataclass(frozen=True)
class TypingEntry:
    """A peer currently typing.

    Attributes:
        user_id: The peer's user ID.
        user_name: Display name used by the indicator.
        expires_at: Event-loop time at which the entry lapses, or None.
    """
    user_id: str
    user_name: str
    expires_at: Optional[float] = None


def format_typing_indicator(typists: Sequence[TypingEntry]) -> str:
    """Render the typing line shown under the message list."""
    if not typists:
        return ""
    if len(typists) == 1:
        return f"{typists[0].user_name} is typing…"
    return f"{len(typists)} people are typing…"


class IdleTimer:
    """One-shot timer that can be re-armed and cancelled.

    Must be used from within a running event loop.
    """

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        """Start the countdown, restarting it if already running."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


class TypingTracker:
    """Local typing announcements and the set of remote typists."""

    def __init__(
        self,
        connection: Connection,
        membership: RoomMembership,
        settings: Optional[PresenceSettings] = None,
    ) -> None:
        self._connection = connection
        self._membership = membership
        self.settings = settings or PresenceSettings()

        self._entries: Dict[str, TypingEntry] = {}
        self._expiry: Dict[str, asyncio.TimerHandle] = {}
        self._idle = IdleTimer(self.settings.typing_idle_ms / 1000, self._on_idle)
        self._bus = EventBus("Typing")

        membership.on_join(self._on_room_join)
        membership.on_leave(self._on_room_leave)

    # =========================================================================
    # Local typist
    # =========================================================================

    @property
    def is_typing(self) -> bool:
        return self._idle.active

    def local_start_typing(self) -> None:
        """Announce a keystroke and restart the idle countdown."""
        workspace_id = self._membership.current
        if workspace_id is None or not self._connection.is_connected:
            return
        self._connection.emit(Event.TYPING_START, {"workspaceId": workspace_id})
        self._idle.arm()

    def local_stop_typing(self) -> None:
        """Cancel the idle countdown and announce the stop if one was pending."""
        if not self._idle.active:
            return
        self._idle.cancel()
        self._announce_stop()

    def _on_idle(self) -> None:
        self._announce_stop()

    def _announce_stop(self) -> None:
        workspace_id = self._membership.current
        if workspace_id is not None:
            self._connection.emit(Event.TYPING_STOP, {"workspaceId": workspace_id})

    # =========================================================================
    # Remote typists
    # =========================================================================

    def active_typists(self) -> List[TypingEntry]:
        """Peers currently typing, in the order they started."""
        return list(self._entries.values())

    def indicator(self) -> str:
        return format_typing_indicator(self.active_typists())

    def on_change(self, handler: Callable[[List[TypingEntry]], None]) -> Subscription:
        """Subscribe to changes of the visible typist set."""
        return self._bus.subscribe(_CHANGED, handler)

    def on_typing_start(self, event: TypingEvent) -> None:
        if event.userId == self._connection.user_id:
            return

        ttl = self.settings.remote_typing_ttl_ms / 1000
        expires_at = None
        if ttl > 0:
            loop = asyncio.get_running_loop()
            expires_at = loop.time() + ttl
            self._cancel_expiry(event.userId)
            self._expiry[event.userId] = loop.call_at(expires_at, self._expire, event.userId)

        is_new = event.userId not in self._entries
        self._entries[event.userId] = TypingEntry(
            user_id=event.userId,
            user_name=event.userName,
            expires_at=expires_at,
        )
        if is_new:
            self._notify()

    def on_typing_stop(self, event: TypingStopEvent) -> None:
        self._cancel_expiry(event.userId)
        if self._entries.pop(event.userId, None) is not None:
            self._notify()

    def _expire(self, user_id: str) -> None:
        self._expiry.pop(user_id, None)
        if self._entries.pop(user_id, None) is not None:
            logger.debug(f"[Typing] Entry for {user_id} expired without a stop")
            self._notify()

    def _cancel_expiry(self, user_id: str) -> None:
        handle = self._expiry.pop(user_id, None)
        if handle is not None:
            handle.cancel()

    def _clear_remote(self) -> None:
        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()
        if self._entries:
            self._entries.clear()
            self._notify()

    def _notify(self) -> None:
        self._bus.dispatch(_CHANGED, self.active_typists())

    # =========================================================================
    # Room wiring
    # =========================================================================

    def _on_room_join(self, workspace_id: str) -> None:
        self._membership.listen(Event.USER_TYPING, self._handle_user_typing)
        self._membership.listen(Event.USER_STOPPED_TYPING, self._handle_user_stopped_typing)

    def _on_room_leave(self, workspace_id: str) -> None:
        self.local_stop_typing()
        self._clear_remote()

    def close(self) -> None:
        """Stop local typing and drop all timers (the view is going away)."""
        self.local_stop_typing()
        self._clear_remote()

    def _handle_user_typing(self, data: Any) -> None:
        try:
            event = TypingEvent.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[Typing] Ignoring malformed user-typing payload: {e}")
            return
        self.on_typing_start(event)

    def _handle_user_stopped_typing(self, data: Any) -> None:
        try:
            event = TypingStopEvent.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[Typing] Ignoring malformed user-stopped-typing payload: {e}")
            return
        self.on_typing_stop(event)
