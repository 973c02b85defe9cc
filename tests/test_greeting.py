"""
Tests for the cached greeting audio
"""

import pytest

from jarvis_voice.conversation_types import AssistantContext, AssistantReply
from jarvis_voice.error_handling import RemoteError, RemoteErrorKind
from jarvis_voice.greeting import DEFAULT_GREETING, GreetingCache
from jarvis_voice.remote_assistant import RemoteAssistant

CONTEXT = AssistantContext(timezone="UTC")


class StubRemote(RemoteAssistant):
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.messages = []

    async def send(self, text, context):
        self.messages.append(text)
        if self.error is not None:
            raise self.error
        return self.reply


class TestGreetingCache:
    """Test loading, fetching and clearing the greeting audio"""

    def test_load_missing(self, tmp_path):
        cache = GreetingCache(str(tmp_path / "greeting.mp3"))
        assert cache.load() is None
        assert cache.audio is None

    def test_load_existing(self, tmp_path):
        path = tmp_path / "greeting.mp3"
        path.write_bytes(b"cached")
        assert GreetingCache(str(path)).load() == b"cached"

    @pytest.mark.asyncio
    async def test_ensure_fetches_and_stores(self, tmp_path):
        path = tmp_path / "data" / "greeting.mp3"
        remote = StubRemote(reply=AssistantReply(text=DEFAULT_GREETING, audio=b"voiced"))
        cache = GreetingCache(str(path))

        audio = await cache.ensure(remote, CONTEXT)

        assert audio == b"voiced"
        assert path.read_bytes() == b"voiced"
        assert remote.messages == [DEFAULT_GREETING]

    @pytest.mark.asyncio
    async def test_ensure_uses_cache(self, tmp_path):
        path = tmp_path / "greeting.mp3"
        path.write_bytes(b"cached")
        remote = StubRemote(reply=AssistantReply(text="", audio=b"fresh"))

        audio = await GreetingCache(str(path)).ensure(remote, CONTEXT)

        assert audio == b"cached"
        assert remote.messages == []

    @pytest.mark.asyncio
    async def test_ensure_without_audio(self, tmp_path):
        remote = StubRemote(reply=AssistantReply(text=DEFAULT_GREETING))
        cache = GreetingCache(str(tmp_path / "greeting.mp3"))

        assert await cache.ensure(remote, CONTEXT) is None
        assert not (tmp_path / "greeting.mp3").exists()

    @pytest.mark.asyncio
    async def test_ensure_remote_failure(self, tmp_path):
        remote = StubRemote(error=RemoteError(RemoteErrorKind.NETWORK, "offline"))
        cache = GreetingCache(str(tmp_path / "greeting.mp3"), greeting_text="Welcome home, sir.")

        assert await cache.ensure(remote, CONTEXT) is None
        assert remote.messages == ["Welcome home, sir."]

    def test_clear(self, tmp_path):
        path = tmp_path / "greeting.mp3"
        cache = GreetingCache(str(path))
        cache.store(b"voiced")

        cache.clear()

        assert cache.audio is None
        assert not path.exists()
