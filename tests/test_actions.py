"""
Tests for reply action parsing and dispatch
"""

import asyncio

import pytest

from jarvis_voice.actions import ActionDispatcher, create_default_dispatcher, parse_actions
from jarvis_voice.conversation_types import ActionKind


class TestParseActions:
    """Test parse_actions"""

    def test_known_kinds(self):
        actions = parse_actions({"reminder": "Call Pepper", "MUSIC": "Back in Black", "maps": "Malibu"})
        assert actions == {
            ActionKind.REMINDER: "Call Pepper",
            ActionKind.MUSIC: "Back in Black",
            ActionKind.MAPS: "Malibu",
        }

    def test_unknown_and_null_dropped(self):
        assert parse_actions({"launch": "suit", "note": None}) == {}

    def test_non_mapping(self):
        assert parse_actions(None) == {}
        assert parse_actions(["reminder"]) == {}


class TestActionDispatcher:
    """Test fire-and-forget dispatch"""

    @pytest.mark.asyncio
    async def test_dispatches_sync_and_async_handlers(self):
        received = []

        async def on_reminder(payload):
            await asyncio.sleep(0)
            received.append(("reminder", payload))

        dispatcher = ActionDispatcher({ActionKind.REMINDER: on_reminder})
        dispatcher.register(ActionKind.NOTE, lambda payload: received.append(("note", payload)))

        scheduled = dispatcher.dispatch({ActionKind.REMINDER: "Meeting", ActionKind.NOTE: "Arc reactor"})
        assert scheduled == 2
        assert received == []

        await dispatcher.drain()
        assert sorted(received) == [("note", "Arc reactor"), ("reminder", "Meeting")]

    @pytest.mark.asyncio
    async def test_missing_handler_skipped(self):
        dispatcher = ActionDispatcher()
        assert dispatcher.dispatch({ActionKind.CALENDAR: "Lunch"}) == 0

    @pytest.mark.asyncio
    async def test_handler_failure_is_contained(self):
        def broken(payload):
            raise RuntimeError("calendar unavailable")

        dispatcher = ActionDispatcher({ActionKind.CALENDAR: broken})
        dispatcher.dispatch({ActionKind.CALENDAR: "Lunch"})
        await dispatcher.drain()

        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_unregister(self):
        received = []
        dispatcher = ActionDispatcher({ActionKind.MUSIC: received.append})
        dispatcher.unregister(ActionKind.MUSIC)

        assert dispatcher.dispatch({ActionKind.MUSIC: "play"}) == 0

    @pytest.mark.asyncio
    async def test_default_dispatcher_handles_every_kind(self):
        dispatcher = create_default_dispatcher()
        actions = {kind: "payload" for kind in ActionKind}

        assert dispatcher.dispatch(actions) == len(ActionKind)
        await dispatcher.drain()
