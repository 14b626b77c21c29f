"""Real-time messaging client for workspace rooms.

Usage:
    from teamchat.client import ChatSession

    session = ChatSession()
    await session.start(token)
    await session.enter_room(workspace_id)
    session.send("hello")
"""
from .channel import MessageChannel, MessageLog
from .connection import Connection, ConnectionManager, ConnectionState
from .events import EventBus, Subscription
from .history import HistoryLoader
from .presence import IdleTimer, TypingEntry, TypingTracker, format_typing_indicator
from .rooms import RoomMembership
from .sequencer import (
    MessageView,
    date_label,
    group_messages,
    needs_date_separator,
    shows_author_header,
    time_label,
)
from .session import ChatSession
from .transport import Transport, WebSocketTransport

__all__ = [
    "ChatSession",
    "Connection",
    "ConnectionManager",
    "ConnectionState",
    "EventBus",
    "HistoryLoader",
    "IdleTimer",
    "MessageChannel",
    "MessageLog",
    "MessageView",
    "RoomMembership",
    "Subscription",
    "Transport",
    "TypingEntry",
    "TypingTracker",
    "WebSocketTransport",
    "date_label",
    "format_typing_indicator",
    "group_messages",
    "needs_date_separator",
    "shows_author_header",
    "time_label",
]
