"""Presentation hints for an ordered message list.

Pure functions: no state, no I/O, same output for the same input.

    needs_date_separator(curr, prev)  -> a day label goes above ``curr``
    shows_author_header(curr, next)   -> ``curr`` carries the author's name

The author header follows a trailing-edge rule: it is decided by looking at
the *next* message, so within a run of messages from the same author (each
no more than five minutes after the previous one) it is the last message
of the run that shows the name.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import List, Optional, Sequence

from teamchat.schemas import Message

# Gap after which the same author starts a new run
AUTHOR_RUN_GAP = timedelta(milliseconds=300000)

# en-US labels, independent of the process locale
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def _local_date(ts: datetime, tz: Optional[tzinfo]) -> date:
    # astimezone(None) converts to the machine's local zone
    return ts.astimezone(tz).date()


def needs_date_separator(
    curr: Message, prev: Optional[Message], tz: Optional[tzinfo] = None
) -> bool:
    """True if ``prev`` is absent or falls on another calendar day than ``curr``.

    Args:
        curr: The message being rendered.
        prev: The message rendered just before it, if any.
        tz: The viewer's zone. Defaults to the local zone.
    """
    if prev is None:
        return True
    return _local_date(curr.timestamp, tz) != _local_date(prev.timestamp, tz)


def shows_author_header(curr: Message, next_message: Optional[Message]) -> bool:
    """True if ``curr`` ends a run of messages from its author."""
    if next_message is None:
        return True
    if next_message.senderId != curr.senderId:
        return True
    return next_message.timestamp - curr.timestamp > AUTHOR_RUN_GAP


def date_label(ts: datetime, today: Optional[date] = None, tz: Optional[tzinfo] = None) -> str:
    """Separator text: "Today", "Yesterday", or e.g. "Mar 5, 2024"."""
    day = _local_date(ts, tz)
    if today is None:
        today = datetime.now(tz).date() if tz is not None else date.today()
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{_MONTHS[day.month - 1]} {day.day}, {day.year}"


def time_label(ts: datetime, tz: Optional[tzinfo] = None) -> str:
    """Clock time shown under a message, e.g. "09:05 AM"."""
    local = ts.astimezone(tz)
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{local:%I:%M} {meridiem}"


@dataclass(frozen=True)
class MessageView:
    """A message together with how it should be rendered."""
    message: Message
    show_date_separator: bool
    show_author_header: bool
    date_label: str
    time_label: str


def group_messages(
    messages: Sequence[Message],
    tz: Optional[tzinfo] = None,
    today: Optional[date] = None,
) -> List[MessageView]:
    """Compute the rendering hints for every message of an ordered list."""
    views = []
    for index, message in enumerate(messages):
        prev = messages[index - 1] if index > 0 else None
        next_message = messages[index + 1] if index < len(messages) - 1 else None
        views.append(MessageView(
            message=message,
            show_date_separator=needs_date_separator(message, prev, tz),
            show_author_header=shows_author_header(message, next_message),
            date_label=date_label(message.timestamp, today, tz),
            time_label=time_label(message.timestamp, tz),
        ))
    return views
