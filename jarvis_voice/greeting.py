"""
Cached wake greeting audio

The first time the assistant starts it asks the remote assistant to voice
the greeting and keeps the returned audio on disk, so later wake-ups play
instantly without a network round trip.
"""

import logging
from pathlib import Path
from typing import Optional

from .conversation_types import AssistantContext
from .error_handling import RemoteError
from .remote_assistant import RemoteAssistant

logger = logging.getLogger(__name__)

DEFAULT_GREETING = "Hello, sir. At your service."


class GreetingCache:
    """Pre-synthesized greeting audio stored in a file"""

    def __init__(self, cache_path: str, greeting_text: str = DEFAULT_GREETING):
        self.cache_path = Path(cache_path)
        self.greeting_text = greeting_text
        self._audio: Optional[bytes] = None

    @property
    def audio(self) -> Optional[bytes]:
        return self._audio

    def load(self) -> Optional[bytes]:
        """Load cached audio from disk if present"""
        if self.cache_path.exists():
            self._audio = self.cache_path.read_bytes()
            logger.info(f"Loaded cached greeting audio ({len(self._audio)} bytes)")
        return self._audio

    async def ensure(self, remote: RemoteAssistant, context: AssistantContext) -> Optional[bytes]:
        """Load the cache, fetching and storing the greeting audio when missing"""
        if self.load() is not None:
            return self._audio

        try:
            reply = await remote.send(self.greeting_text, context)
        except RemoteError as e:
            logger.warning(f"Could not fetch greeting audio: {e}")
            return None

        if not reply.audio:
            logger.info("Remote assistant returned no greeting audio")
            return None

        self.store(reply.audio)
        return self._audio

    def store(self, audio: bytes) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        self.cache_path.write_bytes(audio)
        self._audio = audio
        logger.info("Cached greeting audio for future use")

    def clear(self) -> None:
        """Drop the cached audio so the next ensure() downloads a fresh copy"""
        if self.cache_path.exists():
            self.cache_path.unlink()
        self._audio = None
        logger.info("Cleared cached greeting audio")


__all__ = ['GreetingCache', 'DEFAULT_GREETING']
