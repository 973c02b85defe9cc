"""
Shared data types for the conversation core
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ConversationState(Enum):
    """Voice conversation states"""
    IDLE = "idle"
    LISTENING_FOR_WAKE_WORD = "listening_for_wake_word"
    LISTENING_FOR_UTTERANCE = "listening_for_utterance"
    AWAITING_REPLY = "awaiting_reply"
    SPEAKING = "speaking"


class CaptureMode(Enum):
    """How the controller interprets a capture stream"""
    WAKE_WORD = "wake_word"
    UTTERANCE = "utterance"


class UpdateKind(Enum):
    PARTIAL = "partial"
    FINAL = "final"


class ReplySource(Enum):
    """Which assistant produced a reply"""
    REMOTE = "remote"
    OFFLINE = "offline"
    APOLOGY = "apology"


class ActionKind(Enum):
    """Side effects a reply can request"""
    REMINDER = "reminder"
    CALENDAR = "calendar"
    NOTE = "note"
    MUSIC = "music"
    MAPS = "maps"


@dataclass(frozen=True)
class TranscriptUpdate:
    """One recognizer result"""
    kind: UpdateKind
    text: str

    @classmethod
    def partial(cls, text: str) -> "TranscriptUpdate":
        return cls(UpdateKind.PARTIAL, text)

    @classmethod
    def final(cls, text: str) -> "TranscriptUpdate":
        return cls(UpdateKind.FINAL, text)


class Transcript:
    """Append-only fragments recognized in the current utterance window"""

    def __init__(self):
        self._fragments: List[str] = []

    def append(self, text: str) -> None:
        self._fragments.append(text)

    def clear(self) -> None:
        self._fragments.clear()

    @property
    def fragments(self) -> List[str]:
        return list(self._fragments)

    @property
    def latest(self) -> Optional[str]:
        return self._fragments[-1] if self._fragments else None

    def __len__(self) -> int:
        return len(self._fragments)

    def __bool__(self) -> bool:
        return bool(self._fragments)


@dataclass
class PendingUtterance:
    """Latest stabilized utterance text and when it was last updated (loop time)"""
    text: str
    updated_at: float


@dataclass
class AssistantContext:
    """Context sent alongside the user text"""
    timezone: str
    location_description: Optional[str] = None


@dataclass
class AssistantReply:
    """Reply produced by the remote or offline assistant, consumed once per turn"""
    text: str
    image_urls: List[str] = field(default_factory=list)
    actions: Dict[ActionKind, str] = field(default_factory=dict)
    audio: Optional[bytes] = None
    source: ReplySource = ReplySource.REMOTE

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.audio


@dataclass(frozen=True)
class ConversationSettings:
    """Read-only settings snapshot taken at the start of each transition"""
    wake_word_enabled: bool = True
    wake_token: str = "jarvis"
    silence_timeout: float = 5.0
    offline_mode: bool = False
    voice: str = "alloy"
    use_premium_voice: bool = True


__all__ = [
    'ConversationState',
    'CaptureMode',
    'UpdateKind',
    'ReplySource',
    'ActionKind',
    'TranscriptUpdate',
    'Transcript',
    'PendingUtterance',
    'AssistantContext',
    'AssistantReply',
    'ConversationSettings',
]
