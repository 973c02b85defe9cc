"""
Offline Assistant - On-device replies when the network is unavailable

Replies are produced by the first matching strategy:
1. Time queries answered from the local clock
2. Location queries (nearest place lookup or a map request)
3. Music playback requests
4. On-device language model generation with the J.A.R.V.I.S. persona
5. A fixed "limited capabilities" message

`respond()` never raises; generation failures become an apology.
"""

import asyncio
import logging
import os
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config_manager import OfflineConfig
from .conversation_types import ActionKind, AssistantReply, ReplySource
from .error_handling import OFFLINE_GENERATION_APOLOGY, OfflineGenerationError

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.34

MOVIE_TERMS = ["movie", "film", "runtime", "duration", "long", "length", "minutes", "hours"]
TIME_PATTERNS = [
    "what time is it",
    "current time",
    "tell me the time",
    "what's the time",
    "time right now",
]

LIMITED_CAPABILITIES_MESSAGE = (
    "I'm operating in offline mode without advanced language capabilities, sir. "
    "I can still help with basic tasks like playing music, setting reminders, and checking the time."
)
LOCATION_REQUIRED_MESSAGE = "I need access to your location to find nearby places, sir."
MAP_REQUEST_MESSAGE = "I'll find that location for you, sir."
MUSIC_REQUEST_MESSAGE = "Certainly, sir. I'll handle your music request."
MUSIC_ADJUSTED_MESSAGE = "Music playback adjusted, sir."

PERSONA_PROMPT = """You are J.A.R.V.I.S., Tony Stark's AI assistant. Answer the following question in character:

User: {text}

Important: If the user is asking about:
- Movie runtime, duration, or length: Explain that you need internet access to look up current movie information
- Album art or music covers: Explain that you cannot display images in offline mode
- Any specific factual information you don't have: Be honest that you need internet access for that information

Provide a helpful, accurate response in J.A.R.V.I.S.'s characteristic British style. Keep it concise but informative."""

_NEAREST_STRIP = re.compile(r"nearest|closest|find|show me the", re.IGNORECASE)
_MAP_STRIP = re.compile(r"where is|map of|show me|the map of", re.IGNORECASE)


@dataclass
class Place:
    """A point of interest returned by a PlaceFinder"""
    name: Optional[str]
    distance_meters: float


class PlaceFinder(ABC):
    """Local place search around the user's position"""

    @property
    @abstractmethod
    def has_location(self) -> bool:
        """Whether the user's position is known"""

    @abstractmethod
    async def search(self, query: str) -> List[Place]:
        """Places matching the query near the user, in any order"""


class LocalLanguageModel(ABC):
    """On-device text generation"""

    @property
    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Generate a reply; raises OfflineGenerationError on failure"""


class LlamaCppModel(LocalLanguageModel):
    """Gemma model driven through the llama.cpp CLI"""

    def __init__(self, config: OfflineConfig):
        self.config = config

    @property
    def is_available(self) -> bool:
        return (
            self.config.enabled
            and os.path.exists(self.config.model_path)
            and shutil.which(self.config.llama_binary) is not None
        )

    def _build_prompt(self, prompt: str) -> str:
        # Gemma 2 turn format
        return f"""<start_of_turn>user
{prompt}
<end_of_turn>
<start_of_turn>model
"""

    async def generate(self, prompt: str) -> str:
        cmd = [
            self.config.llama_binary,
            "-m", self.config.model_path,
            "-p", self._build_prompt(prompt),
            "-n", str(self.config.max_tokens),
            "-t", str(self.config.threads),
            "--temp", str(self.config.temperature),
            "--top-p", "0.9",
            "--repeat-penalty", "1.1",
            "--ctx-size", str(self.config.context_size),
            "--no-display-prompt",
        ]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise OfflineGenerationError(f"Could not start {self.config.llama_binary}: {e}", e)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise OfflineGenerationError("LLaMA.cpp timeout", e)

        if process.returncode != 0:
            raise OfflineGenerationError(
                f"LLaMA.cpp failed ({process.returncode}): {stderr.decode(errors='replace').strip()}"
            )

        response = stdout.decode(errors='replace').replace("<end_of_turn>", "").strip()
        if not response:
            raise OfflineGenerationError("LLaMA.cpp produced no output")
        return response


def is_time_query(text: str) -> bool:
    lower = text.lower()
    if any(term in lower for term in MOVIE_TERMS):
        return False
    return any(pattern in lower for pattern in TIME_PATTERNS)


def format_time_reply(now: datetime) -> str:
    hour = now.hour % 12 or 12
    meridiem = "AM" if now.hour < 12 else "PM"
    zone_name = now.tzname() or "local time"
    return f"The current time is {hour}:{now.minute:02d} {meridiem} {zone_name}, sir."


class OfflineAssistant:
    """Rule-based replies with optional on-device generation"""

    def __init__(
        self,
        model: Optional[LocalLanguageModel] = None,
        place_finder: Optional[PlaceFinder] = None,
        timezone: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.model = model
        self.place_finder = place_finder
        self.timezone = timezone
        self._clock = clock or self._local_now

    def _local_now(self) -> datetime:
        if self.timezone:
            try:
                return datetime.now(ZoneInfo(self.timezone))
            except (ZoneInfoNotFoundError, ValueError, OSError) as e:
                # Abbreviations such as "PDT" are not IANA keys
                logger.warning(f"Unknown time zone {self.timezone!r}, using the local zone: {e}")
        return datetime.now().astimezone()

    async def respond(self, text: str) -> AssistantReply:
        lower = text.lower()

        if is_time_query(text):
            return self._reply(format_time_reply(self._clock()))

        if "where is" in lower or "map" in lower or (
            ("nearest" in lower or "closest" in lower) and "movie" not in lower
        ):
            return await self._handle_location_query(text)

        music_reply = self._handle_music_query(text)
        if music_reply is not None:
            return music_reply

        if self.model is not None and self.model.is_available:
            return await self._generate(text)

        return self._reply(LIMITED_CAPABILITIES_MESSAGE)

    def _reply(self, text: str, actions: Optional[Dict[ActionKind, str]] = None) -> AssistantReply:
        logger.info(f"📴 Offline reply: {text}")
        return AssistantReply(text=text, actions=actions or {}, source=ReplySource.OFFLINE)

    async def _handle_location_query(self, text: str) -> AssistantReply:
        lower = text.lower()

        if "nearest" in lower or "closest" in lower:
            if self.place_finder is None or not self.place_finder.has_location:
                return self._reply(LOCATION_REQUIRED_MESSAGE)

            if "airport" in lower:
                query = "airport"
            elif "hospital" in lower:
                query = "hospital"
            elif "restaurant" in lower:
                query = "restaurant"
            elif "gas" in lower or "petrol" in lower:
                query = "gas station"
            else:
                query = _NEAREST_STRIP.sub("", text).strip()

            return await self._find_nearest(query)

        location_query = _MAP_STRIP.sub("", text).strip()
        return self._reply(MAP_REQUEST_MESSAGE, {ActionKind.MAPS: location_query})

    async def _find_nearest(self, query: str) -> AssistantReply:
        try:
            places = await self.place_finder.search(query)
        except Exception as e:
            logger.error(f"Place search for '{query}' failed: {e}")
            places = []

        if not places:
            return self._reply(f"I couldn't find any {query} nearby, sir.")

        nearest = min(places, key=lambda place: place.distance_meters)
        name = nearest.name or "unnamed"
        miles = nearest.distance_meters / METERS_PER_MILE
        return self._reply(
            f"The nearest {query} is {name}, approximately {miles:.1f} miles away, sir.",
            {ActionKind.MAPS: nearest.name or query}
        )

    def _handle_music_query(self, text: str) -> Optional[AssistantReply]:
        lower = text.lower()

        if "play" in lower and any(term in lower for term in ("music", "song", "artist", "album")):
            # Album art questions fall through so generation can explain the limitation
            if "album art" not in lower and "cover" not in lower:
                return self._reply(MUSIC_REQUEST_MESSAGE, {ActionKind.MUSIC: text})

        if ("music" in lower or "song" in lower) and any(
            term in lower for term in ("stop", "pause", "next", "skip", "previous")
        ):
            return self._reply(MUSIC_ADJUSTED_MESSAGE, {ActionKind.MUSIC: text})

        return None

    async def _generate(self, text: str) -> AssistantReply:
        try:
            generated = await self.model.generate(PERSONA_PROMPT.format(text=text))
        except OfflineGenerationError as e:
            logger.error(f"Offline generation failed: {e}")
            return self._reply(OFFLINE_GENERATION_APOLOGY)
        except Exception as e:
            logger.error(f"Unexpected offline model error: {e}", exc_info=True)
            return self._reply(OFFLINE_GENERATION_APOLOGY)

        lower = text.lower()
        actions: Dict[ActionKind, str] = {}
        if "reminder" in lower:
            actions[ActionKind.REMINDER] = text
        elif "calendar" in lower:
            actions[ActionKind.CALENDAR] = text

        return self._reply(generated, actions)


__all__ = [
    'OfflineAssistant',
    'LocalLanguageModel',
    'LlamaCppModel',
    'PlaceFinder',
    'Place',
    'is_time_query',
    'format_time_reply',
    'PERSONA_PROMPT',
    'LIMITED_CAPABILITIES_MESSAGE',
]
