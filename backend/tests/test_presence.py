"""Tests for typing presence: local debounce and the remote typist set."""
import asyncio
from unittest.mock import MagicMock

import pytest

from teamchat.client.presence import IdleTimer, TypingEntry, TypingTracker, format_typing_indicator
from teamchat.client.rooms import RoomMembership
from teamchat.config import PresenceSettings
from teamchat.schemas import TypingEvent, TypingStopEvent

from conftest import settle


def make_tracker(connection, idle_ms=1000, ttl_ms=5000):
    membership = RoomMembership(connection)
    tracker = TypingTracker(
        connection,
        membership,
        PresenceSettings(typing_idle_ms=idle_ms, remote_typing_ttl_ms=ttl_ms),
    )
    return membership, tracker


class TestIndicatorText:

    def test_nobody(self):
        assert format_typing_indicator([]) == ""

    def test_one_typist(self):
        assert format_typing_indicator([TypingEntry("u1", "Bob")]) == "Bob is typing…"

    def test_several_typists(self):
        typists = [TypingEntry("u1", "Bob"), TypingEntry("u2", "Carol"), TypingEntry("u3", "Dan")]
        assert format_typing_indicator(typists) == "3 people are typing…"


class TestIdleTimer:

    @pytest.mark.asyncio
    async def test_fires_once(self):
        callback = MagicMock()
        timer = IdleTimer(0.01, callback)
        timer.arm()
        assert timer.active
        await asyncio.sleep(0.03)
        callback.assert_called_once_with()
        assert not timer.active

    @pytest.mark.asyncio
    async def test_rearm_restarts_countdown(self):
        callback = MagicMock()
        timer = IdleTimer(0.06, callback)
        timer.arm()
        await asyncio.sleep(0.04)
        timer.arm()
        await asyncio.sleep(0.04)
        callback.assert_not_called()
        await asyncio.sleep(0.06)
        callback.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_cancel_prevents_fire(self):
        callback = MagicMock()
        timer = IdleTimer(0.01, callback)
        timer.arm()
        timer.cancel()
        await asyncio.sleep(0.03)
        callback.assert_not_called()


class TestRemoteTypists:

    @pytest.mark.asyncio
    async def test_own_events_are_ignored(self, connection):
        _, tracker = make_tracker(connection)
        tracker.on_typing_start(TypingEvent(userId="me", userName="Me"))
        assert tracker.active_typists() == []

    @pytest.mark.asyncio
    async def test_insert_or_refresh(self, connection):
        _, tracker = make_tracker(connection)
        changes = []
        tracker.on_change(changes.append)

        tracker.on_typing_start(TypingEvent(userId="bob", userName="Bob"))
        tracker.on_typing_start(TypingEvent(userId="bob", userName="Bob"))

        assert [t.user_id for t in tracker.active_typists()] == ["bob"]
        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_two_typists_then_one_stops(self, connection):
        _, tracker = make_tracker(connection)
        tracker.on_typing_start(TypingEvent(userId="bob", userName="Bob"))
        tracker.on_typing_start(TypingEvent(userId="carol", userName="Carol"))
        assert tracker.indicator() == "2 people are typing…"

        tracker.on_typing_stop(TypingStopEvent(userId="bob"))
        assert tracker.indicator() == "Carol is typing…"

        tracker.on_typing_stop(TypingStopEvent(userId="carol"))
        assert tracker.indicator() == ""

    @pytest.mark.asyncio
    async def test_stop_for_unknown_user_is_harmless(self, connection):
        _, tracker = make_tracker(connection)
        changes = []
        tracker.on_change(changes.append)
        tracker.on_typing_stop(TypingStopEvent(userId="ghost"))
        assert changes == []

    @pytest.mark.asyncio
    async def test_entry_expires_without_stop(self, connection):
        _, tracker = make_tracker(connection, ttl_ms=20)
        tracker.on_typing_start(TypingEvent(userId="bob", userName="Bob"))
        assert tracker.indicator() == "Bob is typing…"
        await asyncio.sleep(0.05)
        assert tracker.active_typists() == []

    @pytest.mark.asyncio
    async def test_refresh_extends_expiry(self, connection):
        _, tracker = make_tracker(connection, ttl_ms=100)
        tracker.on_typing_start(TypingEvent(userId="bob", userName="Bob"))
        await asyncio.sleep(0.06)
        tracker.on_typing_start(TypingEvent(userId="bob", userName="Bob"))
        await asyncio.sleep(0.06)
        assert [t.user_id for t in tracker.active_typists()] == ["bob"]

    @pytest.mark.asyncio
    async def test_zero_ttl_keeps_entry(self, connection):
        _, tracker = make_tracker(connection, ttl_ms=0)
        tracker.on_typing_start(TypingEvent(userId="bob", userName="Bob"))
        await asyncio.sleep(0.02)
        assert tracker.active_typists()[0].expires_at is None
        assert tracker.indicator() == "Bob is typing…"

    @pytest.mark.asyncio
    async def test_relay_events_reach_tracker_while_in_room(self, connection, fake_relay):
        membership, tracker = make_tracker(connection)
        membership.join_room("ws-1")

        fake_relay.push("user-typing", {"userId": "bob", "userName": "Bob"})
        fake_relay.push("user-typing", {"userId": "carol", "userName": "Carol"})
        await settle()
        assert tracker.indicator() == "2 people are typing…"

        fake_relay.push("user-stopped-typing", {"userId": "carol"})
        await settle()
        assert tracker.indicator() == "Bob is typing…"

    @pytest.mark.asyncio
    async def test_malformed_payload_is_ignored(self, connection, fake_relay):
        membership, tracker = make_tracker(connection)
        membership.join_room("ws-1")
        fake_relay.push("user-typing", {"userName": "no id"})
        await settle()
        assert tracker.active_typists() == []

    @pytest.mark.asyncio
    async def test_leaving_room_clears_typists_and_listeners(self, connection, fake_relay):
        membership, tracker = make_tracker(connection)
        membership.join_room("ws-1")
        fake_relay.push("user-typing", {"userId": "bob", "userName": "Bob"})
        await settle()

        membership.leave_room("ws-1")
        assert tracker.active_typists() == []

        # A late event from the old room has no listener left
        fake_relay.push("user-typing", {"userId": "dave", "userName": "Dave"})
        await settle()
        assert tracker.active_typists() == []


class TestLocalTyping:

    @pytest.mark.asyncio
    async def test_keystroke_emits_start_and_idle_emits_stop(self, connection, fake_relay):
        membership, tracker = make_tracker(connection, idle_ms=20)
        membership.join_room("ws-1")

        tracker.local_start_typing()
        assert tracker.is_typing
        await settle()
        assert fake_relay.events("typing-start") == [("typing-start", {"workspaceId": "ws-1"})]

        await asyncio.sleep(0.05)
        assert not tracker.is_typing
        assert fake_relay.events("typing-stop") == [("typing-stop", {"workspaceId": "ws-1"})]

    @pytest.mark.asyncio
    async def test_each_keystroke_reemits_start(self, connection, fake_relay):
        membership, tracker = make_tracker(connection)
        membership.join_room("ws-1")
        tracker.local_start_typing()
        tracker.local_start_typing()
        tracker.local_start_typing()
        await settle()
        assert len(fake_relay.events("typing-start")) == 3
        assert fake_relay.events("typing-stop") == []
        tracker.close()

    @pytest.mark.asyncio
    async def test_explicit_stop_cannot_be_followed_by_timer_stop(self, connection, fake_relay):
        membership, tracker = make_tracker(connection, idle_ms=20)
        membership.join_room("ws-1")

        tracker.local_start_typing()
        tracker.local_stop_typing()
        await asyncio.sleep(0.05)

        assert len(fake_relay.events("typing-stop")) == 1

    @pytest.mark.asyncio
    async def test_stop_without_start_emits_nothing(self, connection, fake_relay):
        membership, tracker = make_tracker(connection)
        membership.join_room("ws-1")
        tracker.local_stop_typing()
        await settle()
        assert fake_relay.events("typing-stop") == []

    @pytest.mark.asyncio
    async def test_no_room_no_emit(self, connection, fake_relay):
        _, tracker = make_tracker(connection)
        tracker.local_start_typing()
        await settle()
        assert fake_relay.events("typing-start") == []
        assert not tracker.is_typing

    @pytest.mark.asyncio
    async def test_room_leave_cancels_timer_before_leaving(self, connection, fake_relay):
        membership, tracker = make_tracker(connection, idle_ms=20)
        membership.join_room("ws-1")
        tracker.local_start_typing()

        membership.leave_room("ws-1")
        await asyncio.sleep(0.05)

        events = [event for event, _ in fake_relay.events()]
        assert events == ["join-workspace", "typing-start", "typing-stop", "leave-workspace"]

    @pytest.mark.asyncio
    async def test_close_cancels_timer(self, connection, fake_relay):
        membership, tracker = make_tracker(connection, idle_ms=20)
        membership.join_room("ws-1")
        tracker.local_start_typing()

        tracker.close()
        await asyncio.sleep(0.05)

        assert len(fake_relay.events("typing-stop")) == 1
